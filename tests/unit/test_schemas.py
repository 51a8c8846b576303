from __future__ import annotations

from uuid import uuid4

import pytest
from pydantic import ValidationError

from issue_metrics.schemas import IngestionJob, RegisterJobRequest, SourceRef


def _job(**overrides) -> IngestionJob:
    values = dict(
        job_id=uuid4(),
        source=SourceRef(container="exports", key="team/2026/jira.csv"),
        file_name="jira.csv",
        status="processing",
        window_size=100,
    )
    values.update(overrides)
    return IngestionJob(**values)


def test_source_ref_file_name_and_validation() -> None:
    assert SourceRef(container="exports", key="team/2026/jira.csv").file_name == "jira.csv"
    assert SourceRef(container="exports", key="jira.csv").file_name == "jira.csv"

    with pytest.raises(ValidationError):
        SourceRef(container="", key="jira.csv")


def test_ingestion_job_progress_percent() -> None:
    assert _job().progress_percent == 0
    assert _job(total_records=40, processed_records=10).progress_percent == 25
    assert _job(total_records=10, processed_records=12).progress_percent == 100
    assert _job(status="completed").progress_percent == 100


def test_ingestion_job_terminal_states() -> None:
    assert _job(status="completed").is_terminal
    assert _job(status="failed").is_terminal
    assert not _job(status="pending").is_terminal

    with pytest.raises(ValidationError):
        _job(status="queued")


def test_register_job_request_bounds() -> None:
    assert RegisterJobRequest(source={"container": "exports", "key": "a.csv"}).enqueue is True

    with pytest.raises(ValidationError):
        RegisterJobRequest(source={"container": "exports", "key": "a.csv"}, window_size=0)
