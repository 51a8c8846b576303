from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Protocol, Sequence
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from .config import settings
from .errors import RecordWriteFailure
from .logging_utils import get_logger
from .records import StructuredRecord
from .schemas import (
    JOB_STATUS,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_PROCESSING,
    IngestionJob,
    SourceRef,
)

logger = get_logger(__name__)

_JOB_COLUMNS = """
    job_id, source_container, source_key, file_name, status, window_size,
    total_records, processed_records, next_start_row, aggregate, error_detail,
    report, created_at, updated_at, started_at, completed_at
"""
# Terminal rows never change again.
_NOT_TERMINAL = f"status NOT IN ('{STATUS_COMPLETED}', '{STATUS_FAILED}')"


class JobStore(Protocol):
    def get(self, job_id: UUID) -> IngestionJob: ...

    def mark_processing(self, job_id: UUID) -> bool: ...

    def record_batch(
        self,
        job_id: UUID,
        *,
        processed: int,
        next_start_row: Optional[int],
        aggregate: Dict[str, Any],
        seen_rows: int = 0,
    ) -> bool: ...

    def complete(self, job_id: UUID, *, report: Dict[str, Any], total_records: int) -> bool: ...

    def mark_failed(self, job_id: UUID, error: str) -> bool: ...


class RecordStore(Protocol):
    def put_many(self, job_id: UUID, records: Sequence[StructuredRecord]) -> int: ...


def _row_to_job(row: Dict[str, Any]) -> IngestionJob:
    return IngestionJob(
        job_id=row["job_id"],
        source=SourceRef(container=row["source_container"], key=row["source_key"]),
        file_name=row["file_name"],
        status=row["status"],
        window_size=row["window_size"],
        total_records=row["total_records"],
        processed_records=row["processed_records"],
        next_start_row=row["next_start_row"],
        aggregate=row["aggregate"],
        error_detail=row["error_detail"],
        report=row["report"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        started_at=row["started_at"],
        completed_at=row["completed_at"],
    )


class SqlJobStore:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def create(self, source: SourceRef, *, window_size: Optional[int] = None) -> IngestionJob:
        with self.engine.begin() as conn:
            row = conn.execute(
                text(
                    f"""
                    INSERT INTO ingestion_jobs
                      (source_container, source_key, file_name, status, window_size)
                    VALUES
                      (:source_container, :source_key, :file_name, :status, :window_size)
                    RETURNING {_JOB_COLUMNS}
                    """
                ),
                {
                    "source_container": source.container,
                    "source_key": source.key,
                    "file_name": source.file_name,
                    "status": STATUS_PENDING,
                    "window_size": window_size or settings.ingest_window_size,
                },
            ).mappings().one()
        job = _row_to_job(dict(row))
        logger.info(
            "ingestion_job.created job_id=%s source=%s/%s",
            job.job_id,
            source.container,
            source.key,
        )
        return job

    def get(self, job_id: UUID) -> IngestionJob:
        with self.engine.connect() as conn:
            row = conn.execute(
                text(
                    f"""
                    SELECT {_JOB_COLUMNS}
                    FROM ingestion_jobs
                    WHERE job_id = :job_id
                    """
                ),
                {"job_id": job_id},
            ).mappings().first()
        if row is None:
            raise KeyError(f"ingestion job not found: {job_id}")
        return _row_to_job(dict(row))

    def list(self, *, status: Optional[JOB_STATUS] = None, limit: int = 50) -> List[IngestionJob]:
        where_clause = ""
        params: Dict[str, Any] = {"limit": limit}
        if status is not None:
            where_clause = "WHERE status = :status"
            params["status"] = status
        with self.engine.connect() as conn:
            rows = conn.execute(
                text(
                    f"""
                    SELECT {_JOB_COLUMNS}
                    FROM ingestion_jobs
                    {where_clause}
                    ORDER BY created_at DESC, job_id DESC
                    LIMIT :limit
                    """
                ),
                params,
            ).mappings()
            return [_row_to_job(dict(row)) for row in rows]

    def list_completed(self, *, limit: int = 100) -> List[IngestionJob]:
        """The most recent ``limit`` completed jobs, oldest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                text(
                    f"""
                    SELECT {_JOB_COLUMNS}
                    FROM (
                      SELECT {_JOB_COLUMNS}
                      FROM ingestion_jobs
                      WHERE status = :status
                      ORDER BY created_at DESC, job_id DESC
                      LIMIT :limit
                    ) recent
                    ORDER BY created_at ASC, job_id ASC
                    """
                ),
                {"status": STATUS_COMPLETED, "limit": limit},
            ).mappings()
            return [_row_to_job(dict(row)) for row in rows]

    def _guarded_update(
        self,
        job_id: UUID,
        set_clauses: Sequence[str],
        params: Dict[str, Any],
        *,
        only_from: str = "",
    ) -> bool:
        where = f"job_id = :job_id AND {only_from or _NOT_TERMINAL}"
        with self.engine.begin() as conn:
            result = conn.execute(
                text(
                    f"""
                    UPDATE ingestion_jobs
                    SET {", ".join([*set_clauses, "updated_at = now()"])}
                    WHERE {where}
                    """
                ),
                {"job_id": job_id, **params},
            )
        return result.rowcount > 0

    def mark_processing(self, job_id: UUID) -> bool:
        return self._guarded_update(
            job_id,
            ["status = :status", "started_at = COALESCE(started_at, now())"],
            {"status": STATUS_PROCESSING},
            only_from=f"status = '{STATUS_PENDING}'",
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
        """Add ``processed`` to the counter and store the checkpoint in one statement."""
        return self._guarded_update(
            job_id,
            [
                "processed_records = processed_records + :processed",
                "total_records = GREATEST(total_records, processed_records + :processed, :seen_rows)",
                "next_start_row = :next_start_row",
                "aggregate = CAST(:aggregate AS jsonb)",
            ],
            {
                "processed": processed,
                "seen_rows": seen_rows,
                "next_start_row": next_start_row,
                "aggregate": json.dumps(aggregate),
            },
        )

    def complete(self, job_id: UUID, *, report: Dict[str, Any], total_records: int) -> bool:
        return self._guarded_update(
            job_id,
            [
                "status = :status",
                "report = CAST(:report AS jsonb)",
                "total_records = :total_records",
                "processed_records = :total_records",
                "error_detail = NULL",
                "aggregate = NULL",
                "next_start_row = NULL",
                "completed_at = now()",
            ],
            {
                "status": STATUS_COMPLETED,
                "report": json.dumps(report),
                "total_records": total_records,
            },
        )

    def mark_failed(self, job_id: UUID, error: str) -> bool:
        return self._guarded_update(
            job_id,
            ["status = :status", "error_detail = :error", "completed_at = now()"],
            {"status": STATUS_FAILED, "error": error},
        )

    def delete(self, job_id: UUID) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                text("DELETE FROM ingestion_jobs WHERE job_id = :job_id"),
                {"job_id": job_id},
            )
        return result.rowcount > 0


class SqlRecordStore:
    def __init__(self, engine: Engine, *, group_size: Optional[int] = None) -> None:
        self.engine = engine
        self.group_size = max(1, int(group_size or settings.record_write_group_size))

    def put_many(self, job_id: UUID, records: Sequence[StructuredRecord]) -> int:
        written = 0
        for start in range(0, len(records), self.group_size):
            group = records[start : start + self.group_size]
            params = [
                {
                    **record.to_document(),
                    "job_id": job_id,
                    "extra": json.dumps(dict(record.extra)),
                }
                for record in group
            ]
            try:
                with self.engine.begin() as conn:
                    conn.execute(
                        text(
                            """
                            INSERT INTO work_items
                              (job_id, issue_key, issue_id, issue_type, status, priority,
                               assignee, created, updated, resolved, project_key,
                               project_name, summary, extra)
                            VALUES
                              (:job_id, :issue_key, :issue_id, :issue_type, :status, :priority,
                               :assignee, :created, :updated, :resolved, :project_key,
                               :project_name, :summary, CAST(:extra AS jsonb))
                            ON CONFLICT (job_id, issue_key)
                            DO UPDATE SET
                              issue_id = EXCLUDED.issue_id,
                              issue_type = EXCLUDED.issue_type,
                              status = EXCLUDED.status,
                              priority = EXCLUDED.priority,
                              assignee = EXCLUDED.assignee,
                              created = EXCLUDED.created,
                              updated = EXCLUDED.updated,
                              resolved = EXCLUDED.resolved,
                              project_key = EXCLUDED.project_key,
                              project_name = EXCLUDED.project_name,
                              summary = EXCLUDED.summary,
                              extra = EXCLUDED.extra,
                              written_at = now()
                            """
                        ),
                        params,
                    )
            except SQLAlchemyError as exc:
                logger.error(
                    "record_store.write_failed job_id=%s group_start=%s group_size=%s error=%s",
                    job_id,
                    start,
                    len(group),
                    str(exc),
                )
                raise RecordWriteFailure(
                    f"record store rejected write group at offset {start}: {exc}"
                ) from exc
            written += len(group)
        return written

    def list_for_job(self, job_id: UUID, *, limit: int = 100, offset: int = 0) -> List[Dict[str, Any]]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                text(
                    """
                    SELECT issue_key, issue_id, issue_type, status, priority, assignee,
                           created, updated, resolved, project_key, project_name,
                           summary, extra
                    FROM work_items
                    WHERE job_id = :job_id
                    ORDER BY issue_key ASC
                    LIMIT :limit OFFSET :offset
                    """
                ),
                {"job_id": job_id, "limit": limit, "offset": offset},
            ).mappings()
            return [dict(row) for row in rows]
