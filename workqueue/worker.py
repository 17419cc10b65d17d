#!/usr/bin/env python3
"""
Workqueue Worker

Standalone entry point for processing tasks outside the HTTP service.

Usage:
    python -m workqueue.worker once --handlers myapp.tasks
    python -m workqueue.worker run --handlers myapp.tasks:registry --max-concurrent 5
    python -m workqueue.worker stats
    python -m workqueue.worker cleanup --older-than-days 14
    python -m workqueue.worker recover-stuck
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import List, Optional

from workqueue.config import configure_logging, settings
from workqueue.executor import TaskExecutor, load_registry
from workqueue.models import SessionLocal, init_db
from workqueue.queue import cleanup_old_tasks, get_queue_stats, recover_stuck_tasks

logger = logging.getLogger("workqueue.worker")


def _print(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def _build_executor(args: argparse.Namespace) -> TaskExecutor:
    registry = load_registry(args.handlers or settings.HANDLER_MODULES)
    if not len(registry):
        logger.warning("No handlers registered - every claimed task will fail")
    return TaskExecutor(registry, session_factory=SessionLocal)


async def _run(executor: TaskExecutor, args: argparse.Namespace) -> None:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops; Ctrl+C still raises KeyboardInterrupt
            pass

    await executor.run_forever(
        poll_interval=args.poll_interval,
        max_concurrent=args.max_concurrent,
        stop_event=stop_event,
    )


def cmd_once(args: argparse.Namespace) -> int:
    executor = _build_executor(args)
    report = asyncio.run(executor.process_pending_tasks(args.batch_size))
    _print(report.to_dict())
    return 0 if report.failed == 0 else 1


def cmd_run(args: argparse.Namespace) -> int:
    executor = _build_executor(args)
    try:
        asyncio.run(_run(executor, args))
    except KeyboardInterrupt:
        logger.info("Interrupted")
    return 0


def cmd_stats(args: argparse.Namespace) -> int:
    with SessionLocal() as db:
        _print(get_queue_stats(db, workspace_id=args.workspace_id))
    return 0


def cmd_cleanup(args: argparse.Namespace) -> int:
    with SessionLocal() as db:
        deleted = cleanup_old_tasks(db, args.older_than_days)
    _print({"deleted": deleted})
    return 0


def cmd_recover_stuck(args: argparse.Namespace) -> int:
    with SessionLocal() as db:
        _print(recover_stuck_tasks(db, args.threshold_minutes))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="workqueue-worker",
        description="Workqueue task worker and maintenance commands",
    )
    parser.add_argument(
        "--init-db",
        action="store_true",
        help="Create missing tables before running (development only; use alembic in production)"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    handlers_help = (
        "Handler module as module[:attribute], attribute defaults to 'registry'. "
        "Repeatable. Default: HANDLER_MODULES"
    )

    once = sub.add_parser("once", help="Process one batch and exit")
    once.add_argument("--handlers", action="append", help=handlers_help)
    once.add_argument(
        "--batch-size",
        type=int,
        default=None,
        help=f"Tasks to process. Default: {settings.TASK_BATCH_SIZE}"
    )
    once.set_defaults(func=cmd_once)

    run = sub.add_parser("run", help="Poll the queue until interrupted")
    run.add_argument("--handlers", action="append", help=handlers_help)
    run.add_argument(
        "--poll-interval",
        type=float,
        default=None,
        help=f"Seconds between polls when idle. Default: {settings.TASK_POLL_INTERVAL_SECONDS}"
    )
    run.add_argument(
        "--max-concurrent",
        type=int,
        default=None,
        help=f"Tasks in flight at once. Default: {settings.TASK_MAX_CONCURRENT}"
    )
    run.set_defaults(func=cmd_run)

    stats = sub.add_parser("stats", help="Print queue counts")
    stats.add_argument("--workspace-id", default=None, help="Limit counts to one workspace")
    stats.set_defaults(func=cmd_stats)

    cleanup = sub.add_parser("cleanup", help="Delete old terminal tasks")
    cleanup.add_argument(
        "--older-than-days",
        type=int,
        default=None,
        help=f"Retention window. Default: {settings.CLEANUP_RETENTION_DAYS}"
    )
    cleanup.set_defaults(func=cmd_cleanup)

    recover = sub.add_parser("recover-stuck", help="Requeue or fail stuck running tasks")
    recover.add_argument(
        "--threshold-minutes",
        type=int,
        default=None,
        help=f"Stuck threshold. Default: {settings.STUCK_TASK_THRESHOLD_MINUTES}"
    )
    recover.set_defaults(func=cmd_recover_stuck)

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    configure_logging()
    args = build_parser().parse_args(argv)
    if args.init_db:
        init_db()
    sys.exit(args.func(args))


if __name__ == "__main__":
    main()
