"""Command line entry point for the periodic jobs.

    python -m revenue_kernel.jobs.cron upload --limit 100
    python -m revenue_kernel.jobs.cron attempt-cap --max-attempts 5
    python -m revenue_kernel.jobs.cron recover-processing --min-age-minutes 15
    python -m revenue_kernel.jobs.cron reconcile-enqueue
    python -m revenue_kernel.jobs.cron reconcile-run --limit 50
    python -m revenue_kernel.jobs.cron backfill --from 2025-01 --to 2025-06 [--site-id s1]

Every command takes its cron lock, prints a JSON summary on stdout and exits
non-zero when the run failed.
"""
from __future__ import annotations

import argparse
import json
import os
import sys
from typing import Any, Dict, List, Optional

from revenue_kernel.database import Base, engine
from revenue_kernel.jobs.tasks import (
    TaskContext,
    build_task_context,
    run_attempt_cap_task,
    run_backfill_task,
    run_reconcile_enqueue_task,
    run_reconcile_run_task,
    run_recover_processing_task,
    run_upload_task,
)
from revenue_kernel.utils import get_logger, setup_logging

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="revenue-kernel-cron", description="Run revenue pipeline jobs")
    subparsers = parser.add_subparsers(dest="command", required=True)

    upload = subparsers.add_parser("upload", help="Upload eligible offline conversions")
    upload.add_argument("--provider", dest="provider_key", default=None)
    upload.add_argument("--limit", type=int, default=None)

    cap = subparsers.add_parser("attempt-cap", help="Fail rows that reached the attempt cap")
    cap.add_argument("--max-attempts", type=int, default=None)
    cap.add_argument("--min-age-minutes", type=int, default=0)

    recover = subparsers.add_parser("recover-processing", help="Recover rows stuck in PROCESSING")
    recover.add_argument("--min-age-minutes", type=int, default=None)

    subparsers.add_parser("reconcile-enqueue", help="Enqueue usage reconciliation jobs for active sites")

    run = subparsers.add_parser("reconcile-run", help="Process queued usage reconciliation jobs")
    run.add_argument("--limit", type=int, default=None)

    backfill = subparsers.add_parser("backfill", help="Enqueue reconciliation jobs for past periods")
    backfill.add_argument("--from", dest="from_year_month", required=True, help="YYYY-MM")
    backfill.add_argument("--to", dest="to_year_month", required=True, help="YYYY-MM")
    backfill.add_argument("--site-id", default=None)
    return parser


def dispatch(ctx: TaskContext, args: argparse.Namespace) -> Dict[str, Any]:
    if args.command == "upload":
        return run_upload_task(ctx, provider_key=args.provider_key, limit=args.limit)
    if args.command == "attempt-cap":
        return run_attempt_cap_task(ctx, max_attempts=args.max_attempts, min_age_minutes=args.min_age_minutes)
    if args.command == "recover-processing":
        return run_recover_processing_task(ctx, min_age_minutes=args.min_age_minutes)
    if args.command == "reconcile-enqueue":
        return run_reconcile_enqueue_task(ctx)
    if args.command == "reconcile-run":
        return run_reconcile_run_task(ctx, limit=args.limit)
    if args.command == "backfill":
        return run_backfill_task(ctx, args.from_year_month, args.to_year_month, site_id=args.site_id)
    raise ValueError(f"Unknown command: {args.command}")


def main(argv: Optional[List[str]] = None, *, ctx: Optional[TaskContext] = None) -> int:
    args = build_parser().parse_args(argv)
    if ctx is None:
        setup_logging(log_level=os.getenv("LOG_LEVEL", "INFO"), log_file=os.getenv("LOG_FILE"), console_stream=sys.stderr)
        Base.metadata.create_all(bind=engine)
        ctx = build_task_context()

    try:
        summary = dispatch(ctx, args)
    except Exception as e:
        logger.error("Cron command failed", command=args.command, error=str(e), exc_info=True)
        print(json.dumps({"ok": False, "command": args.command, "error": str(e)}))
        return 1

    print(json.dumps({"command": args.command, **summary}, default=str))
    return 0 if summary.get("ok") else 1


if __name__ == "__main__":
    sys.exit(main())
