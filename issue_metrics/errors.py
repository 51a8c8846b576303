from __future__ import annotations


class PipelineError(RuntimeError):
    retryable = True


class SourceUnavailable(PipelineError):
    """The object store returned no readable body for the source."""


class MalformedSource(PipelineError):
    """The byte stream could not be decoded or tokenized as delimited text."""

    retryable = False


class RecordWriteFailure(PipelineError):
    """The record store rejected a write group."""


class MissingAggregate(PipelineError):
    """Finalize was invoked without an accumulated aggregate."""

    retryable = False
