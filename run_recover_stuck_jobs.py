"""Return jobs stranded in Processing by a crashed instance to the queue."""

from __future__ import annotations

import argparse
import logging
from typing import Mapping, Optional

from pyjobqueue.config import JobsConfig
from pyjobqueue.server.queue_manager import DistributedQueueManager
from pyjobqueue.storage.sql_storage import SqlJobStore

logger = logging.getLogger("pyjobqueue.recover")


def build_arg_parser(config: JobsConfig) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Requeue pyjobqueue jobs stuck in Processing")
    parser.add_argument(
        "--connection-url",
        default=config.database_url,
        required=config.database_url is None,
        help="SQLAlchemy URL of the job store (default: PYJOBQUEUE_DATABASE_URL).",
    )
    parser.add_argument(
        "--redis-url",
        default=config.redis_url if config.use_redis else None,
        help="Shared cache to re-announce recovered jobs on (default: PYJOBQUEUE_REDIS_URL "
        "when PYJOBQUEUE_USE_REDIS is set).",
    )
    parser.add_argument(
        "--max-age-seconds",
        type=float,
        default=config.stuck_job_timeout or config.lock_timeout,
        help="Age after which a Processing job counts as stuck (default: the stuck job "
        "timeout, else the lock timeout).",
    )
    parser.add_argument("--limit", type=int, default=100, help="Most jobs to recover in one run.")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    return parser


def announce(store: SqlJobStore, queue_manager: DistributedQueueManager, job_ids: list[str]) -> int:
    announced = 0
    for job_id in job_ids:
        job = store.get_queue_job(job_id)
        if job is not None and queue_manager.enqueue_job(job.id, job.priority):
            announced += 1
    return announced


def main(argv: list[str] | None = None, environ: Optional[Mapping[str, str]] = None) -> list[str]:
    config = JobsConfig.from_env(environ)
    args = build_arg_parser(config).parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)

    store = SqlJobStore(connection_url=args.connection_url, create_tables=False)
    recovered = store.recover_stuck_jobs(max_age_seconds=args.max_age_seconds, limit=args.limit)
    if not recovered:
        print("No stuck jobs recovered.")
        return recovered

    print(f"Recovered {len(recovered)} stuck jobs:")
    for job_id in recovered:
        print(f"- {job_id}")

    if args.redis_url:
        from pyjobqueue.cache.redis_cache import RedisCache

        queue_manager = DistributedQueueManager(RedisCache(url=args.redis_url))
        announced = announce(store, queue_manager, recovered)
        logger.info(f"Re-announced {announced} of {len(recovered)} jobs on the shared queue")
    return recovered


if __name__ == "__main__":
    main()
