from __future__ import annotations

import argparse

from redis import Redis
from rq import Queue, Worker

from issue_metrics.config import settings
from issue_metrics.logging_utils import configure_logging, get_logger


def main() -> None:
    configure_logging(settings.log_level)
    logger = get_logger(__name__)
    parser = argparse.ArgumentParser(
        description="Run an rq worker that processes queued ingestion jobs."
    )
    parser.add_argument(
        "--burst",
        action="store_true",
        help="Drain the queue and exit instead of waiting for new jobs.",
    )
    args = parser.parse_args()

    connection = Redis.from_url(settings.redis_url)
    logger.info(
        "ingest_worker.start queue=%s redis=%s burst=%s",
        settings.ingest_queue_name,
        settings.redis_url,
        args.burst,
    )
    queue = Queue(settings.ingest_queue_name, connection=connection)
    worker = Worker([queue], connection=connection)
    worker.work(burst=args.burst)


if __name__ == "__main__":
    main()
