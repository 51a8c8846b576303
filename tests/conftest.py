from __future__ import annotations

import importlib
import io
import os
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple
from urllib.parse import quote
from uuid import UUID, uuid4

import psycopg
import pytest
from alembic import command
from alembic.config import Config
from fastapi.testclient import TestClient
from psycopg import sql

from issue_metrics.errors import RecordWriteFailure, SourceUnavailable
from issue_metrics.records import StructuredRecord
from issue_metrics.schemas import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_PROCESSING,
    IngestionJob,
    SourceRef,
)

DEFAULT_SCHEMA_PREFIX = "metrics_test"
SAFE_TEST_SCHEMA_RE = re.compile(r"^metrics_test(?:_[a-z0-9]+)?$")

EXPORT_HEADER = (
    "Summary,Issue key,Issue id,Issue Type,Status,Priority,Assignee,"
    "Created,Updated,Resolved,Project key,Project name"
)


def export_csv(rows: Sequence[Sequence[str]], header: str = EXPORT_HEADER) -> bytes:
    lines = [header]
    for row in rows:
        lines.append(",".join(row))
    return ("\n".join(lines) + "\n").encode("utf-8")


def numbered_rows(count: int) -> List[Tuple[str, ...]]:
    return [
        (
            f"Issue {idx}",
            f"PRJ-{idx}",
            str(1000 + idx),
            "Task",
            "To Do",
            "Medium",
            "alice",
            "2026-10-01 09:00",
            "2026-10-02 09:00",
            "",
            "PRJ",
            "Project",
        )
        for idx in range(1, count + 1)
    ]


class FakeObjectStore:
    def __init__(self) -> None:
        self.objects: Dict[Tuple[str, str], bytes] = {}
        self.opened: List[io.BytesIO] = []

    def put(self, container: str, key: str, data: bytes) -> SourceRef:
        self.objects[(container, key)] = data
        return SourceRef(container=container, key=key)

    def get(self, container: str, key: str) -> io.BytesIO:
        if (container, key) not in self.objects:
            raise SourceUnavailable(f"No body for object {container}/{key}")
        body = io.BytesIO(self.objects[(container, key)])
        self.opened.append(body)
        return body


class FakeJobStore:
    def __init__(self) -> None:
        self.jobs: Dict[UUID, IngestionJob] = {}
        self.calls: List[str] = []

    def create(self, source: SourceRef, *, window_size: Optional[int] = None) -> IngestionJob:
        now = datetime.now(timezone.utc)
        job = IngestionJob(
            job_id=uuid4(),
            source=source,
            file_name=source.file_name,
            status=STATUS_PENDING,
            window_size=window_size or 1000,
            created_at=now,
            updated_at=now,
        )
        self.jobs[job.job_id] = job
        return job.model_copy(deep=True)

    def get(self, job_id: UUID) -> IngestionJob:
        if job_id not in self.jobs:
            raise KeyError(f"ingestion job not found: {job_id}")
        return self.jobs[job_id].model_copy(deep=True)

    def list(self, *, status: Optional[str] = None, limit: int = 50) -> List[IngestionJob]:
        jobs = [job for job in self.jobs.values() if status is None or job.status == status]
        return jobs[:limit]

    def list_completed(self, *, limit: int = 100) -> List[IngestionJob]:
        completed = [job for job in self.jobs.values() if job.status == STATUS_COMPLETED]
        recent = sorted(completed, key=lambda job: job.created_at)[-limit:]
        return [job.model_copy(deep=True) for job in recent]

    def _update(self, name: str, job_id: UUID, allowed: Sequence[str], **changes: Any) -> bool:
        self.calls.append(name)
        job = self.jobs.get(job_id)
        if job is None or job.status not in allowed:
            return False
        self.jobs[job_id] = job.model_copy(update=changes)
        return True

    def mark_processing(self, job_id: UUID) -> bool:
        return self._update(
            "mark_processing", job_id, [STATUS_PENDING], status=STATUS_PROCESSING
        )

    def record_batch(
        self,
        job_id: UUID,
        *,
        processed: int,
        next_start_row: Optional[int],
        aggregate: Dict[str, Any],
        seen_rows: int = 0,
    ) -> bool:
        job = self.jobs[job_id]
        processed_records = job.processed_records + processed
        return self._update(
            "record_batch",
            job_id,
            [STATUS_PENDING, STATUS_PROCESSING],
            processed_records=processed_records,
            total_records=max(job.total_records, processed_records, seen_rows),
            next_start_row=next_start_row,
            aggregate=aggregate,
        )

    def complete(self, job_id: UUID, *, report: Dict[str, Any], total_records: int) -> bool:
        return self._update(
            "complete",
            job_id,
            [STATUS_PENDING, STATUS_PROCESSING],
            status=STATUS_COMPLETED,
            report=report,
            total_records=total_records,
            processed_records=total_records,
            aggregate=None,
            next_start_row=None,
        )

    def mark_failed(self, job_id: UUID, error: str) -> bool:
        return self._update(
            "mark_failed",
            job_id,
            [STATUS_PENDING, STATUS_PROCESSING],
            status=STATUS_FAILED,
            error_detail=error,
        )

    def delete(self, job_id: UUID) -> bool:
        return self.jobs.pop(job_id, None) is not None


class FakeRecordStore:
    def __init__(self, group_size: int = 25) -> None:
        self.group_size = group_size
        self.items: Dict[UUID, Dict[str, StructuredRecord]] = {}
        self.groups: List[int] = []
        self.fail_on_group: Optional[int] = None
        self.fail_next_calls = 0

    def put_many(self, job_id: UUID, records: Sequence[StructuredRecord]) -> int:
        if self.fail_next_calls > 0:
            self.fail_next_calls -= 1
            raise RecordWriteFailure("record store temporarily unavailable")
        written = 0
        for start in range(0, len(records), self.group_size):
            if self.fail_on_group is not None and len(self.groups) == self.fail_on_group:
                raise RecordWriteFailure(f"record store rejected write group at offset {start}")
            group = records[start : start + self.group_size]
            bucket = self.items.setdefault(job_id, {})
            for record in group:
                bucket[record.issue_key] = record
            self.groups.append(len(group))
            written += len(group)
        return written

    def list_for_job(self, job_id: UUID, *, limit: int = 100, offset: int = 0) -> List[Dict[str, Any]]:
        records = sorted(self.items.get(job_id, {}).values(), key=lambda item: item.issue_key)
        return [record.to_document() for record in records[offset : offset + limit]]


@pytest.fixture()
def object_store() -> FakeObjectStore:
    return FakeObjectStore()


@pytest.fixture()
def job_store() -> FakeJobStore:
    return FakeJobStore()


@pytest.fixture()
def record_store() -> FakeRecordStore:
    return FakeRecordStore()


@pytest.fixture()
def fixed_now() -> datetime:
    return datetime(2026, 10, 15, 12, 0, tzinfo=timezone.utc)


def _admin_url(url: str) -> str:
    if url.startswith("postgresql+psycopg://"):
        url = "postgresql://" + url.split("postgresql+psycopg://", 1)[1]
    return url.split("?", 1)[0]


def _resolve_test_schema() -> str:
    configured_schema = os.getenv("TEST_SCHEMA")
    schema = configured_schema or f"{DEFAULT_SCHEMA_PREFIX}_{uuid4().hex[:8]}"
    if not SAFE_TEST_SCHEMA_RE.fullmatch(schema):
        raise ValueError(
            "TEST_SCHEMA must match 'metrics_test' or 'metrics_test_<suffix>' "
            "to prevent accidental destructive operations."
        )
    return schema


@pytest.fixture(scope="session")
def test_schema_name() -> str:
    return _resolve_test_schema()


@pytest.fixture(scope="session")
def test_database_url(test_schema_name: str) -> Iterator[str]:
    base_url = os.getenv("TEST_DATABASE_URL")
    if not base_url:
        pytest.skip("TEST_DATABASE_URL is not set")
    schema = test_schema_name
    admin_url = _admin_url(base_url)
    keep_schema = os.getenv("TEST_SCHEMA_KEEP", "false").lower() in {
        "1",
        "true",
        "yes",
    }
    with psycopg.connect(admin_url, autocommit=True) as conn:
        conn.execute(
            sql.SQL("DROP SCHEMA IF EXISTS {} CASCADE").format(sql.Identifier(schema))
        )
        conn.execute(sql.SQL("CREATE SCHEMA {}").format(sql.Identifier(schema)))

    separator = "&" if "?" in base_url else "?"
    search_path_option = quote(f"-c search_path={schema},public")
    db_url = f"{base_url}{separator}options={search_path_option}"
    yield db_url

    if keep_schema:
        return

    with psycopg.connect(admin_url, autocommit=True) as conn:
        conn.execute(
            sql.SQL("DROP SCHEMA IF EXISTS {} CASCADE").format(sql.Identifier(schema))
        )


@pytest.fixture(scope="session")
def apply_migrations(test_database_url: str, test_schema_name: str) -> None:
    os.environ["DATABASE_URL"] = test_database_url
    os.environ["ALEMBIC_VERSION_TABLE_SCHEMA"] = test_schema_name
    config = Config(str(Path(__file__).resolve().parents[1] / "alembic.ini"))
    command.upgrade(config, "head")


@pytest.fixture()
def db_modules(test_database_url: str, apply_migrations: None, tmp_path: Path):
    os.environ["DATABASE_URL"] = test_database_url
    os.environ["REDIS_URL"] = "redis://localhost:6379/0"
    os.environ["INGEST_QUEUE_NAME"] = "ingest"
    os.environ["OBJECT_STORE_BACKEND"] = "filesystem"
    os.environ["OBJECT_STORE_ROOT"] = str(tmp_path / "objects")
    os.environ["LOG_LEVEL"] = "INFO"

    import issue_metrics.config as config_module
    import issue_metrics.db as db_module
    import issue_metrics.stores as stores_module
    import issue_metrics.object_store as object_store_module
    import issue_metrics.orchestrator as orchestrator_module
    import issue_metrics.main as main_module

    importlib.reload(config_module)
    importlib.reload(db_module)
    importlib.reload(stores_module)
    importlib.reload(object_store_module)
    importlib.reload(orchestrator_module)
    importlib.reload(main_module)
    return db_module, stores_module, orchestrator_module, main_module


@pytest.fixture()
def client(db_modules) -> TestClient:
    main_module = db_modules[3]
    return TestClient(main_module.app)


@pytest.fixture()
def make_export():
    return export_csv


@pytest.fixture()
def make_rows():
    return numbered_rows
