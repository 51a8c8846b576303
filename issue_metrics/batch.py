from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import UUID

from .cursor import Cursor
from .logging_utils import get_logger
from .metrics import MetricsAggregate, merge
from .object_store import ObjectStore
from .stores import JobStore, RecordStore
from .windowing import read_window

logger = get_logger(__name__)


@dataclass(frozen=True)
class BatchOutcome:
    processed_count: int
    has_more: bool
    next_start_row: Optional[int]
    total_rows_hint: int
    aggregate: MetricsAggregate

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "processed_count": self.processed_count,
            "has_more": self.has_more,
            "total_rows_hint": self.total_rows_hint,
            "aggregate": self.aggregate.model_dump(mode="json"),
        }
        if self.next_start_row is not None:
            payload["next_start_row"] = self.next_start_row
        return payload


class BatchStep:
    """Read one window of the source, persist its records and fold them into the aggregate.

    The aggregate passed in is never mutated, so a failed invocation can be
    retried with the same input. Errors propagate unchanged; flipping the job
    to ``failed`` is the orchestrator's call.
    """

    def __init__(
        self,
        object_store: ObjectStore,
        record_store: RecordStore,
        job_store: JobStore,
    ) -> None:
        self.object_store = object_store
        self.record_store = record_store
        self.job_store = job_store

    def process(
        self,
        job_id: UUID,
        cursor: Cursor,
        aggregate: Optional[MetricsAggregate] = None,
        *,
        now: Optional[datetime] = None,
    ) -> BatchOutcome:
        if self.job_store.mark_processing(job_id):
            logger.info("batch_step.job_processing job_id=%s", job_id)

        window = read_window(
            self.object_store,
            cursor.source,
            cursor.start_row,
            cursor.window_size,
        )
        self.record_store.put_many(job_id, window.records)

        working = aggregate.model_copy(deep=True) if aggregate is not None else None
        merged = merge(working, window.records, now=now)

        processed = window.consumed_count
        next_start_row = cursor.start_row + processed if window.has_more else None
        total_rows_hint = cursor.start_row - 1 + processed
        self.job_store.record_batch(
            job_id,
            processed=processed,
            next_start_row=next_start_row,
            aggregate=merged.model_dump(mode="json"),
            seen_rows=total_rows_hint,
        )
        logger.info(
            "batch_step.complete job_id=%s start_row=%s processed=%s has_more=%s next_start_row=%s",
            job_id,
            cursor.start_row,
            processed,
            window.has_more,
            next_start_row,
        )
        return BatchOutcome(
            processed_count=processed,
            has_more=window.has_more,
            next_start_row=next_start_row,
            total_rows_hint=total_rows_hint,
            aggregate=merged,
        )
