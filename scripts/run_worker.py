#!/usr/bin/env python3
"""
Operator CLI for the orchestration worker.

Usage:
    python scripts/run_worker.py [--config path.yaml] init-db
    python scripts/run_worker.py [--config path.yaml] run [--once] [--worker-id ID]
    python scripts/run_worker.py [--config path.yaml] failed [--tenant T]
    python scripts/run_worker.py [--config path.yaml] purge-idempotency

The database URL comes from the config file (database.url).
"""

import argparse
import signal
import sys
import threading

from flow_config import get_engine_config
from flow_kernel.db.engine import (
    create_tables,
    get_session_factory,
    init_engine_from_url,
    session_scope,
)
from flow_kernel.db.immutability import register_immutability_listeners
from flow_kernel.logging_config import configure_logging, get_logger
from flow_kernel.services.idempotency_service import IdempotencyService
from flow_services.authorization import InMemoryAssigneeDirectory
from flow_services.runtime import build_worker

logger = get_logger("scripts.run_worker")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Workflow orchestration worker")
    parser.add_argument("--config", help="Engine config YAML (default: flow_config/defaults.yaml)")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create all tables")

    run = sub.add_parser("run", help="Process orchestration jobs")
    run.add_argument("--once", action="store_true", help="Process due jobs, then exit")
    run.add_argument("--worker-id", default=None)

    failed = sub.add_parser("failed", help="List jobs that exhausted their attempts")
    failed.add_argument("--tenant", default=None)
    failed.add_argument("--limit", type=int, default=50)

    sub.add_parser("purge-idempotency", help="Delete expired idempotency records")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    config = get_engine_config(args.config)
    configure_logging(level=config.logging.level)
    init_engine_from_url(
        config.database.url,
        echo=config.database.echo,
        pool_size=config.database.pool_size,
    )
    register_immutability_listeners()

    if args.command == "init-db":
        create_tables()
        print("Tables created.")
        return 0

    if args.command == "purge-idempotency":
        with session_scope() as session:
            count = IdempotencyService(session).purge_expired()
        print(f"Purged {count} expired idempotency record(s).")
        return 0

    worker = build_worker(
        config,
        get_session_factory(),
        InMemoryAssigneeDirectory(),
        worker_id=getattr(args, "worker_id", None),
    )

    if args.command == "failed":
        jobs = worker.list_failed_jobs(tenant_id=args.tenant, limit=args.limit)
        if not jobs:
            print("No failed jobs.")
        for job in jobs:
            print(f"{job.job_key}  tenant={job.tenant_id}  attempts={job.attempts}  {job.last_error}")
        return 0

    if args.once:
        processed = worker.drain()
        print(f"Processed {processed} job(s).")
        return 0

    done = threading.Event()

    def _shutdown(signum, frame):
        logger.info("worker_signal_received", extra={"signal": signum})
        done.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    worker.start()
    done.wait()
    worker.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
