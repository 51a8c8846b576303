from __future__ import annotations

import time
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple, TypeVar
from uuid import UUID

from pydantic import ValidationError
from redis import Redis
from rq import Queue
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from .batch import BatchStep
from .config import settings
from .cursor import Cursor
from .db import engine
from .errors import MissingAggregate
from .logging_utils import get_logger, pipeline_step, reset_job_id, set_job_id
from .metrics import MetricsAggregate
from .object_store import ObjectStore, build_object_store
from .report import finalize
from .schemas import STATUS_COMPLETED, IngestionJob, SourceRef
from .stores import JobStore, RecordStore, SqlJobStore, SqlRecordStore

logger = get_logger(__name__)

T = TypeVar("T")


def _redis() -> Redis:
    return Redis.from_url(settings.redis_url)


def _is_retryable(exc: BaseException) -> bool:
    return bool(getattr(exc, "retryable", True))


def _log_retry(name: str, job_id: UUID, attempts: int) -> Callable[[RetryCallState], None]:
    def _before_sleep(retry_state: RetryCallState) -> None:
        logger.warning(
            "pipeline.step_retry job_id=%s step=%s attempt=%s max_attempts=%s delay_s=%s error=%s",
            job_id,
            name,
            retry_state.attempt_number,
            attempts,
            retry_state.next_action.sleep if retry_state.next_action else None,
            str(retry_state.outcome.exception()) if retry_state.outcome else None,
        )

    return _before_sleep


def run_step(
    name: str,
    step: Callable[[], T],
    *,
    job_id: UUID,
    max_attempts: Optional[int] = None,
    backoff_s: Optional[float] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``step``, sleeping ``base``, ``2 * base``, ``4 * base``... between attempts."""
    attempts = max(1, int(max_attempts or settings.step_max_attempts))
    base = max(0.0, float(settings.step_retry_backoff_s if backoff_s is None else backoff_s))
    retryer = Retrying(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=base, exp_base=2),
        retry=retry_if_exception(_is_retryable),
        before_sleep=_log_retry(name, job_id, attempts),
        sleep=sleep,
        reraise=True,
    )
    with pipeline_step(name):
        return retryer(step)


def _resume_point(job: IngestionJob) -> Tuple[Optional[Cursor], Optional[MetricsAggregate]]:
    """Where a (re)started run picks up: a cursor, or ``None`` when only Finalize is left."""
    if job.aggregate is None:
        return Cursor.for_job(job), None
    try:
        aggregate = MetricsAggregate.model_validate(job.aggregate)
    except ValidationError as exc:
        raise MissingAggregate(
            f"checkpointed aggregate for job {job.job_id} is malformed"
        ) from exc
    if job.next_start_row is None:
        return None, aggregate
    return Cursor.for_job(job), aggregate


def run_pipeline(
    job_id: UUID,
    *,
    job_store: JobStore,
    record_store: RecordStore,
    object_store: ObjectStore,
    now: Optional[datetime] = None,
    max_attempts: Optional[int] = None,
    backoff_s: Optional[float] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Dict[str, Any]:
    """Drive one job from its current position through Finalize.

    Batch steps run strictly one after another. Each step is retried on its
    own; once retries are exhausted, or a non-retryable error surfaces, the
    job is recorded as ``failed`` and the error is re-raised.
    """
    token = set_job_id(str(job_id))
    try:
        job = job_store.get(job_id)
        if job.is_terminal:
            logger.info("pipeline.skip_terminal job_id=%s status=%s", job_id, job.status)
            return {"job_id": str(job_id), "status": job.status}

        step = BatchStep(object_store, record_store, job_store)
        retry_options = dict(
            job_id=job_id, max_attempts=max_attempts, backoff_s=backoff_s, sleep=sleep
        )
        batches = 0
        try:
            cursor, aggregate = _resume_point(job)
            logger.info(
                "pipeline.start job_id=%s source=%s/%s start_row=%s resumed=%s",
                job_id,
                job.source.container,
                job.source.key,
                cursor.start_row if cursor is not None else None,
                aggregate is not None,
            )
            while cursor is not None:
                current = cursor
                outcome = run_step(
                    "batch_step",
                    lambda: step.process(job_id, current, aggregate, now=now),
                    **retry_options,
                )
                batches += 1
                aggregate = outcome.aggregate
                cursor = cursor.advance(outcome) if outcome.has_more else None

            report = run_step(
                "finalize",
                lambda: finalize(job_id, aggregate, job_store=job_store, now=now),
                **retry_options,
            )
        except Exception as exc:
            job_store.mark_failed(job_id, str(exc))
            logger.exception(
                "pipeline.failed job_id=%s batches=%s error=%s", job_id, batches, str(exc)
            )
            raise

        logger.info(
            "pipeline.complete job_id=%s batches=%s total_issues=%s",
            job_id,
            batches,
            report.total_issues,
        )
        return {
            "job_id": str(job_id),
            "status": STATUS_COMPLETED,
            "batches": batches,
            "total_records": report.total_issues,
        }
    finally:
        reset_job_id(token)


def process_ingestion_job(job_id: str) -> Dict[str, Any]:
    """Queue entry point: run the whole pipeline for one job inside the worker."""
    return run_pipeline(
        UUID(job_id),
        job_store=SqlJobStore(engine),
        record_store=SqlRecordStore(engine),
        object_store=build_object_store(),
    )


def enqueue_ingestion_job(job_id: UUID) -> str:
    queue = Queue(settings.ingest_queue_name, connection=_redis())
    rq_job = queue.enqueue(
        "issue_metrics.orchestrator.process_ingestion_job",
        str(job_id),
        job_id=str(job_id),
        job_timeout=settings.ingest_job_timeout_s,
    )
    logger.info(
        "ingestion_job.enqueued job_id=%s queue=%s",
        job_id,
        settings.ingest_queue_name,
    )
    return rq_job.id


def register_ingestion_job(
    source: SourceRef,
    *,
    job_store: SqlJobStore,
    window_size: Optional[int] = None,
    enqueue: Optional[Callable[[UUID], str]] = enqueue_ingestion_job,
) -> Tuple[IngestionJob, Optional[str]]:
    """Create a pending job and hand it to ``enqueue``; pass ``enqueue=None`` to only register."""
    job = job_store.create(source, window_size=window_size)
    queued_id: Optional[str] = None
    if enqueue is not None:
        queued_id = enqueue(job.job_id)
    return job, queued_id
