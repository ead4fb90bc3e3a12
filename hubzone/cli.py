#!/usr/bin/env python3
"""
Operator command line for the HUBZone map update pipeline.

Usage:
    python -m hubzone.cli run                       # Full national run
    python -m hubzone.cli run --state 06,36         # Scoped run
    python -m hubzone.cli run --dry-run             # Compute only, change nothing
    python -m hubzone.cli run --no-notify           # Persist without notifying businesses
    python -m hubzone.cli status                    # Job status and recent history
    python -m hubzone.cli history --limit 20        # Execution history
    python -m hubzone.cli show exec_1a2b3c          # One execution with errors/warnings
    python -m hubzone.cli cancel exec_1a2b3c        # Cancel at the next stage boundary
    python -m hubzone.cli scheduler                 # Run the quarterly scheduler in the foreground
    python -m hubzone.cli evict-cache               # Remove stale cached datasets
"""

import argparse
import asyncio
import inspect
import json
import logging
import sys
from typing import List, Optional

from pydantic import ValidationError

from hubzone.core.config import get_settings
from hubzone.core.database import create_tables, get_session_factory, session_scope
from hubzone.core.errors import ExecutionAlreadyRunning, ExecutionNotFound
from hubzone.core.models import ExecutionStatus, TriggerType
from hubzone.core.schemas import ExecutionSummary, ImportOptions

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_ALREADY_RUNNING = 2
EXIT_CANCELLED = 3
EXIT_USAGE = 64

_EXIT_BY_STATUS = {
    ExecutionStatus.COMPLETED: EXIT_OK,
    ExecutionStatus.FAILED: EXIT_FAILED,
    ExecutionStatus.CANCELLED: EXIT_CANCELLED,
}


def parse_states(values: Optional[List[str]]) -> Optional[List[str]]:
    """Flatten repeated/comma-separated --state values."""
    if not values:
        return None
    states = []
    for value in values:
        states.extend(s.strip() for s in value.split(",") if s.strip())
    return states or None


def _print_json(payload) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else getattr(logging, get_settings().log_level, logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


async def cmd_run(args) -> int:
    from hubzone.jobs.map_update_job import MapUpdateJob

    try:
        options = ImportOptions(
            dry_run=args.dry_run,
            skip_notifications=args.no_notify,
            states=parse_states(args.state),
        )
    except ValidationError as e:
        print(f"Invalid options: {e}", file=sys.stderr)
        return EXIT_USAGE

    job = MapUpdateJob(cache_directory=args.cache_dir)
    try:
        detail = await job.run(options, trigger_type=TriggerType.MANUAL, triggered_by=args.triggered_by)
    except ExecutionAlreadyRunning as e:
        print(f"Already running: {e.execution_id}", file=sys.stderr)
        return EXIT_ALREADY_RUNNING
    finally:
        await job.close()

    _print_json(detail.model_dump(mode="json", exclude={"changeset"}))
    return _EXIT_BY_STATUS.get(detail.status, EXIT_FAILED)


def cmd_status(args) -> int:
    from hubzone.jobs.map_update_job import MapUpdateJob

    job = MapUpdateJob()
    _print_json(job.get_status().model_dump(mode="json"))
    return EXIT_OK


def cmd_history(args) -> int:
    from hubzone.jobs.execution_status import get_execution_history

    with session_scope() as db:
        rows = [ExecutionSummary.from_model(e).model_dump(mode="json")
                for e in get_execution_history(db, limit=args.limit)]
    _print_json(rows)
    return EXIT_OK


def cmd_show(args) -> int:
    from hubzone.jobs.execution_status import get_execution_detail

    try:
        with session_scope() as db:
            detail = get_execution_detail(db, args.execution_id)
    except ExecutionNotFound as e:
        print(str(e), file=sys.stderr)
        return EXIT_FAILED
    _print_json(detail.model_dump(mode="json"))
    return EXIT_OK


def cmd_cancel(args) -> int:
    from hubzone.jobs.execution_status import request_cancel

    try:
        with session_scope() as db:
            accepted = request_cancel(db, args.execution_id)
    except ExecutionNotFound as e:
        print(str(e), file=sys.stderr)
        return EXIT_FAILED
    print("Cancellation requested" if accepted else "Execution already finished")
    return EXIT_OK if accepted else EXIT_FAILED


async def cmd_scheduler(args) -> int:
    from hubzone.core.scheduler_service import (
        get_next_run_time,
        start_scheduler,
        stop_scheduler,
    )

    start_scheduler()
    logger.info(f"Scheduler running; next map update at {get_next_run_time().isoformat()}")
    try:
        await asyncio.Event().wait()
    finally:
        stop_scheduler()
    return EXIT_OK


def cmd_evict_cache(args) -> int:
    from hubzone.services.dataset_cache import DatasetCacheManager

    settings = get_settings()
    cache = DatasetCacheManager.from_settings(
        settings, session_factory=get_session_factory(), cache_directory=args.cache_dir
    )
    evicted = cache.evict_expired()
    print(f"Evicted {evicted} stale cache entries")
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hubzone",
        description="HUBZone designation import and reconciliation pipeline"
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true",
        help="Enable debug logging"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run a map update now")
    run.add_argument(
        "--dry-run", action="store_true",
        help="Compute changes and affected businesses without writing or notifying"
    )
    run.add_argument(
        "--no-notify", action="store_true",
        help="Do not hand off business notifications"
    )
    run.add_argument(
        "--state", action="append", default=None,
        help="State FIPS code or abbreviation; comma-separated or repeated"
    )
    run.add_argument(
        "--cache-dir", type=str, default=None,
        help="Override the dataset cache directory"
    )
    run.add_argument(
        "--triggered-by", type=str, default="cli",
        help="Actor recorded on the execution"
    )
    run.add_argument(
        "--verbose", "-v", action="store_true", dest="verbose",
        default=argparse.SUPPRESS,
        help="Enable debug logging"
    )

    sub.add_parser("status", help="Show job status and recent executions")

    history = sub.add_parser("history", help="List recent executions")
    history.add_argument("--limit", type=int, default=10)

    show = sub.add_parser("show", help="Show one execution")
    show.add_argument("execution_id")

    cancel = sub.add_parser("cancel", help="Cancel a running execution")
    cancel.add_argument("execution_id")

    sub.add_parser("scheduler", help="Run the quarterly scheduler in the foreground")

    evict = sub.add_parser("evict-cache", help="Remove stale cached datasets")
    evict.add_argument("--cache-dir", type=str, default=None)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)
    create_tables()

    handlers = {
        "run": cmd_run,
        "status": cmd_status,
        "history": cmd_history,
        "show": cmd_show,
        "cancel": cmd_cancel,
        "scheduler": cmd_scheduler,
        "evict-cache": cmd_evict_cache,
    }
    handler = handlers[args.command]
    if inspect.iscoroutinefunction(handler):
        return asyncio.run(handler(args))
    return handler(args)


if __name__ == "__main__":
    sys.exit(main())
