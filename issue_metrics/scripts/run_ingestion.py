from __future__ import annotations

import argparse
import json
from typing import Optional, Sequence

from issue_metrics.config import settings
from issue_metrics.db import engine
from issue_metrics.logging_utils import configure_logging, get_logger
from issue_metrics.object_store import build_object_store
from issue_metrics.orchestrator import (
    enqueue_ingestion_job,
    register_ingestion_job,
    run_pipeline,
)
from issue_metrics.schemas import SourceRef
from issue_metrics.stores import SqlJobStore, SqlRecordStore


def main(argv: Optional[Sequence[str]] = None) -> None:
    configure_logging(settings.log_level)
    logger = get_logger(__name__)
    parser = argparse.ArgumentParser(
        description="Register an issue export and compute its metrics report."
    )
    parser.add_argument("container", help="Object store container (bucket or directory).")
    parser.add_argument("key", help="Object key of the exported CSV file.")
    parser.add_argument(
        "--window-size",
        type=int,
        default=settings.ingest_window_size,
        help="Data rows read per batch step.",
    )
    parser.add_argument(
        "--enqueue",
        action="store_true",
        help="Hand the job to the rq worker instead of running it inline.",
    )
    args = parser.parse_args(argv)

    if args.window_size <= 0:
        raise SystemExit("--window-size must be > 0")

    job_store = SqlJobStore(engine)
    job, queued_id = register_ingestion_job(
        SourceRef(container=args.container, key=args.key),
        job_store=job_store,
        window_size=args.window_size,
        enqueue=enqueue_ingestion_job if args.enqueue else None,
    )
    if args.enqueue:
        print(json.dumps({"job_id": str(job.job_id), "queue_job_id": queued_id}))
        return

    result = run_pipeline(
        job.job_id,
        job_store=job_store,
        record_store=SqlRecordStore(engine),
        object_store=build_object_store(),
    )
    logger.info("run_ingestion.done job_id=%s status=%s", job.job_id, result["status"])
    print(json.dumps(job_store.get(job.job_id).report, indent=2, sort_keys=True))


if __name__ == "__main__":
    main()
