from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Dict, Optional, Protocol
from uuid import UUID

from .config import settings
from .schemas import IngestionJob, SourceRef


class StepResult(Protocol):
    processed_count: int
    has_more: bool
    next_start_row: Optional[int]
    total_rows_hint: int


@dataclass(frozen=True)
class Cursor:
    """Position of a job within its source; ``start_row`` is 1-based over data rows."""

    job_id: UUID
    source: SourceRef
    start_row: int
    window_size: int
    has_more: bool = True
    next_start_row: Optional[int] = None
    total_rows_hint: Optional[int] = None

    @classmethod
    def for_job(cls, job: IngestionJob) -> "Cursor":
        return cls(
            job_id=job.job_id,
            source=job.source,
            start_row=job.next_start_row or settings.ingest_first_row,
            window_size=job.window_size,
            total_rows_hint=job.total_records or None,
        )

    def advance(self, result: StepResult) -> "Cursor":
        if not result.has_more or result.next_start_row is None:
            raise ValueError("cannot advance a cursor past the end of its source")
        if result.next_start_row != self.start_row + result.processed_count:
            raise ValueError(
                f"next_start_row={result.next_start_row} does not follow "
                f"start_row={self.start_row} + processed={result.processed_count}"
            )
        return replace(
            self,
            start_row=result.next_start_row,
            has_more=True,
            next_start_row=None,
            total_rows_hint=result.total_rows_hint,
        )

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "job_id": str(self.job_id),
            "source": self.source.model_dump(),
            "start_row": self.start_row,
            "window_size": self.window_size,
            "has_more": self.has_more,
        }
        if self.next_start_row is not None:
            payload["next_start_row"] = self.next_start_row
        if self.total_rows_hint is not None:
            payload["total_rows_hint"] = self.total_rows_hint
        return payload
