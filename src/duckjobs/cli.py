"""
Operator CLI for the orchestration store.

Inspects and repairs state in the database; it does not execute notebooks
or queries (that needs a notebook runner and a query engine, wired in code).
"""

import argparse
import sys
from dataclasses import replace
from typing import List, Optional

from .infra.config import Settings
from .infra.logging_config import setup_logging
from .orchestration.errors import OrchestrationError
from .orchestration.service import OrchestrationService


EXIT_SUCCESS = 0
EXIT_ERROR = 1
EXIT_INVALID_INPUT = 2


def _build_service(settings: Settings, args: argparse.Namespace) -> OrchestrationService:
    if args.db:
        settings = replace(settings, db_path=args.db)
    return OrchestrationService.create(settings)


def cmd_recover(service: OrchestrationService, args: argparse.Namespace) -> int:
    stats = service.recovery_manager.recover_on_startup()

    print(f"Orphaned runs failed: {stats['orphaned_runs_failed']}")
    print(f"Job runs failed: {stats['job_runs_failed']}")
    print(f"Stale query jobs reaped: {stats['stale_query_jobs']}")
    print(f"Pending runs: {len(stats['pending_runs'])}")
    for run_id in stats["pending_runs"]:
        print(f"  {run_id}")

    if stats["errors"]:
        for error in stats["errors"]:
            print(f"Error: {error}", file=sys.stderr)
        return EXIT_ERROR
    return EXIT_SUCCESS


def cmd_runs(service: OrchestrationService, args: argparse.Namespace) -> int:
    runs, total = service.list_runs(args.pipeline, status=args.status, limit=args.limit)

    if not runs:
        print(f"No runs found for pipeline '{args.pipeline}'")
        return EXIT_SUCCESS

    print(f"Runs of '{args.pipeline}' (showing {len(runs)} of {total}):")
    print()
    for run in runs:
        line = f"  {run.run_id}  {run.created_at}  [{run.status.value}]  {run.triggered_by}"
        if run.error_message:
            line += f"  {run.error_message}"
        print(line)
    return EXIT_SUCCESS


def cmd_cancel_pending(service: OrchestrationService, args: argparse.Namespace) -> int:
    count = service.cancel_pending(args.principal, args.pipeline)
    print(f"Cancelled {count} pending runs of '{args.pipeline}'")
    return EXIT_SUCCESS


def cmd_query_jobs(service: OrchestrationService, args: argparse.Namespace) -> int:
    jobs = service.list_query_jobs(args.principal, status=args.status, limit=args.limit)

    if not jobs:
        print(f"No query jobs found for {args.principal}")
        return EXIT_SUCCESS

    print(f"Query jobs of {args.principal} (showing {len(jobs)}):")
    print()
    for job in jobs:
        print(
            f"  {job.query_job_id}  {job.created_at}  [{job.status.value}]  "
            f"attempts {job.attempt_count}/{job.max_attempts}  rows {job.row_count}"
        )
    return EXIT_SUCCESS


COMMANDS = {
    "recover": cmd_recover,
    "runs": cmd_runs,
    "cancel-pending": cmd_cancel_pending,
    "query-jobs": cmd_query_jobs,
}


def create_parser() -> argparse.ArgumentParser:
    """
    Create argument parser.

    Returns:
        Configured ArgumentParser
    """
    parser = argparse.ArgumentParser(
        prog="duckjobs",
        description="duckjobs - inspect and repair pipeline runs and query jobs",
    )

    parser.add_argument(
        "--db",
        help="SQLite database path (default: DUCKJOBS_DB_PATH or data/duckjobs.db)"
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging"
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # recover command
    subparsers.add_parser("recover", help="Run crash recovery against the database")

    # runs command
    runs_parser = subparsers.add_parser("runs", help="List runs of a pipeline")
    runs_parser.add_argument(
        "pipeline",
        help="Pipeline name"
    )
    runs_parser.add_argument(
        "--status",
        help="Only runs in this status (PENDING, RUNNING, SUCCESS, FAILED, CANCELLED)"
    )
    runs_parser.add_argument(
        "-n", "--limit",
        type=int,
        default=20,
        help="Maximum number of runs to show (default: 20)"
    )

    # cancel-pending command
    cancel_parser = subparsers.add_parser("cancel-pending", help="Cancel all PENDING runs of a pipeline")
    cancel_parser.add_argument(
        "pipeline",
        help="Pipeline name"
    )
    cancel_parser.add_argument(
        "--principal",
        default="cli",
        help="Principal recorded in the audit log (default: cli)"
    )

    # query-jobs command
    query_parser = subparsers.add_parser("query-jobs", help="List query jobs of a principal")
    query_parser.add_argument(
        "principal",
        help="Principal that submitted the jobs"
    )
    query_parser.add_argument(
        "--status",
        help="Only jobs in this status (QUEUED, RUNNING, RETRYING, SUCCEEDED, FAILED, CANCELLED)"
    )
    query_parser.add_argument(
        "-n", "--limit",
        type=int,
        default=20,
        help="Maximum number of jobs to show (default: 20)"
    )

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point.

    Args:
        argv: Command line arguments (default: sys.argv[1:])

    Returns:
        Exit code
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    handler = COMMANDS.get(args.command)
    if handler is None:
        parser.print_help()
        return EXIT_SUCCESS

    settings = Settings.from_env()
    setup_logging("DEBUG" if args.verbose else settings.log_level, settings.log_dir)

    service = _build_service(settings, args)
    try:
        return handler(service, args)
    except OrchestrationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_INVALID_INPUT
    finally:
        service.stop()


if __name__ == "__main__":
    sys.exit(main())
