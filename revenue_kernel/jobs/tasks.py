"""Periodic tasks shared by the cron endpoints, the CLI and the scheduler.

Each task runs under its cron lock and returns ``{"ok": True, ...counts}``;
when another run holds the lock it returns ``{"ok": True, "skipped": True}``
without touching the database.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from revenue_kernel.database import SessionLocal
from revenue_kernel.integrations import default_registry, load_credential_store
from revenue_kernel.jobs.cron_lock import CronLock, create_cron_lock
from revenue_kernel.jobs.semaphore import create_semaphore
from revenue_kernel.jobs.upload_runner import RunMode, UploadRunner
from revenue_kernel.services.conversion_queue import sweep_attempt_cap, sweep_stuck_processing
from revenue_kernel.services.usage_counter import UsageCounter, create_usage_counter
from revenue_kernel.services.usage_reconciliation import (
    backfill_reconciliation_jobs,
    enqueue_reconciliation_jobs,
    recover_stuck_reconciliation_jobs,
    run_reconciliation_cycle,
)
from revenue_kernel.utils import get_logger
from revenue_kernel.utils.metrics import PipelineMetrics

logger = get_logger(__name__)

UPLOAD_LOCK = "upload"
ATTEMPT_CAP_LOCK = "attempt_cap"
RECOVER_PROCESSING_LOCK = "recover_processing"
RECONCILE_ENQUEUE_LOCK = "reconcile_enqueue"
RECONCILE_RUN_LOCK = "reconcile_run"
RECONCILE_BACKFILL_LOCK = "reconcile_backfill"


@dataclass
class TaskContext:
    session_factory: Callable[[], Session]
    runner: UploadRunner
    cron_lock: CronLock
    counter: UsageCounter
    metrics: PipelineMetrics


def build_task_context(session_factory: Optional[Callable[[], Session]] = None) -> TaskContext:
    """Wire the default collaborators from configuration."""
    session_factory = session_factory or SessionLocal
    metrics = PipelineMetrics()
    runner = UploadRunner(
        session_factory=session_factory,
        registry=default_registry(),
        credential_store=load_credential_store(),
        semaphore=create_semaphore(),
        metrics=metrics,
    )
    return TaskContext(
        session_factory=session_factory,
        runner=runner,
        cron_lock=create_cron_lock(),
        counter=create_usage_counter(),
        metrics=metrics,
    )


def _skipped(ctx: TaskContext, lock_name: str) -> Dict[str, Any]:
    ctx.metrics.increment(PipelineMetrics.CRON_LOCK_SKIPPED)
    return {"ok": True, "skipped": True, "lock": lock_name}


def _with_session(ctx: TaskContext, fn: Callable[[Session], Any]) -> Any:
    session = ctx.session_factory()
    try:
        return fn(session)
    finally:
        session.close()


def run_upload_task(ctx: TaskContext, *, provider_key: Optional[str] = None, limit: Optional[int] = None) -> Dict[str, Any]:
    with ctx.cron_lock.hold(UPLOAD_LOCK) as acquired:
        if not acquired:
            return _skipped(ctx, UPLOAD_LOCK)
        result = ctx.runner.run_upload_cycle(provider_key, RunMode.CRON, limit=limit)
        return {"ok": True, **result.as_dict()}


def run_attempt_cap_task(
    ctx: TaskContext,
    *,
    max_attempts: Optional[int] = None,
    min_age_minutes: int = 0,
) -> Dict[str, Any]:
    with ctx.cron_lock.hold(ATTEMPT_CAP_LOCK) as acquired:
        if not acquired:
            return _skipped(ctx, ATTEMPT_CAP_LOCK)
        swept = _with_session(ctx, lambda s: sweep_attempt_cap(s, max_attempts, min_age_minutes))
        ctx.metrics.increment(PipelineMetrics.ATTEMPT_CAP_SWEPT, swept)
        return {"ok": True, "failed": swept}


def run_recover_processing_task(ctx: TaskContext, *, min_age_minutes: Optional[int] = None) -> Dict[str, Any]:
    """Return stuck PROCESSING upload rows to RETRY and stuck reconciliation jobs to QUEUED."""
    with ctx.cron_lock.hold(RECOVER_PROCESSING_LOCK) as acquired:
        if not acquired:
            return _skipped(ctx, RECOVER_PROCESSING_LOCK)
        recovered = _with_session(ctx, lambda s: sweep_stuck_processing(s, min_age_minutes))
        jobs_recovered = _with_session(ctx, lambda s: recover_stuck_reconciliation_jobs(s, min_age_minutes))
        ctx.metrics.increment(PipelineMetrics.STUCK_RECOVERED, recovered)
        return {"ok": True, "recovered": recovered, "reconciliation_jobs_recovered": jobs_recovered}


def run_reconcile_enqueue_task(ctx: TaskContext) -> Dict[str, Any]:
    with ctx.cron_lock.hold(RECONCILE_ENQUEUE_LOCK) as acquired:
        if not acquired:
            return _skipped(ctx, RECONCILE_ENQUEUE_LOCK)
        counts = _with_session(ctx, enqueue_reconciliation_jobs)
        return {"ok": True, **counts}


def run_reconcile_run_task(ctx: TaskContext, *, limit: Optional[int] = None) -> Dict[str, Any]:
    with ctx.cron_lock.hold(RECONCILE_RUN_LOCK) as acquired:
        if not acquired:
            return _skipped(ctx, RECONCILE_RUN_LOCK)
        counts = run_reconciliation_cycle(ctx.session_factory, counter=ctx.counter, limit=limit, metrics=ctx.metrics)
        return {"ok": True, **counts}


def run_backfill_task(
    ctx: TaskContext,
    from_year_month: str,
    to_year_month: str,
    *,
    site_id: Optional[str] = None,
) -> Dict[str, Any]:
    with ctx.cron_lock.hold(RECONCILE_BACKFILL_LOCK) as acquired:
        if not acquired:
            return _skipped(ctx, RECONCILE_BACKFILL_LOCK)
        counts = _with_session(
            ctx, lambda s: backfill_reconciliation_jobs(s, from_year_month, to_year_month, site_id=site_id)
        )
        return {"ok": True, **counts}


__all__ = [
    "TaskContext",
    "build_task_context",
    "run_upload_task",
    "run_attempt_cap_task",
    "run_recover_processing_task",
    "run_reconcile_enqueue_task",
    "run_reconcile_run_task",
    "run_backfill_task",
]
