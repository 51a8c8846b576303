from __future__ import annotations

import contextvars
import logging
from contextlib import contextmanager
from typing import Iterator, Optional

NO_JOB = "no-job"
NO_STEP = "-"

_job_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("job_id", default=NO_JOB)
_step_var: contextvars.ContextVar[str] = contextvars.ContextVar("pipeline_step", default=NO_STEP)
_configured = False


class PipelineContextFilter(logging.Filter):
    """Tag records with the ingestion job and pipeline step running in this context."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "job_id"):
            record.job_id = _job_id_var.get()
        if not hasattr(record, "step"):
            record.step = _step_var.get()
        return True


def configure_logging(level: str = "INFO") -> None:
    global _configured
    root = logging.getLogger()
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    if not _configured:
        if not root.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(
                logging.Formatter(
                    "%(asctime)s %(levelname)s [%(name)s] [job=%(job_id)s step=%(step)s] %(message)s"
                )
            )
            root.addHandler(handler)
        for handler in root.handlers:
            handler.addFilter(PipelineContextFilter())
        _configured = True

    root.setLevel(numeric_level)


def set_job_id(job_id: str) -> contextvars.Token[str]:
    return _job_id_var.set(job_id)


def reset_job_id(token: contextvars.Token[str]) -> None:
    _job_id_var.reset(token)


def get_job_id() -> str:
    return _job_id_var.get()


@contextmanager
def pipeline_step(name: str) -> Iterator[None]:
    token = _step_var.set(name)
    try:
        yield
    finally:
        _step_var.reset(token)


def get_pipeline_step() -> str:
    return _step_var.get()


def get_logger(name: Optional[str] = None) -> logging.Logger:
    return logging.getLogger(name)
