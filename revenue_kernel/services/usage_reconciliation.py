"""Usage reconciliation: authoritative counts vs. fast-path counters.

Per (site, period):
1. Count billable and overage events from ``ingest_idempotency`` (the source
   of truth, never the cache) and sum ledger revenue for the period.
2. Compare with the fast-path counter: ``drift = fast - authoritative``.
   When ``|drift| > max(abs_threshold, pct_threshold * authoritative)`` the
   period is flagged and the counter overwritten; a missing counter is seeded.
   Cache failures are logged and never fail the job.
3. Upsert the ``site_usage_monthly`` snapshot.

Jobs (one per site and period) are claimed with the same skip-locked plus
conditional-update discipline as the upload queue.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from revenue_kernel.config import QUEUE_SETTINGS, RECONCILIATION_SETTINGS
from revenue_kernel.models.db.enums import BillingState, ReconciliationJobStatus
from revenue_kernel.models.db.ledger import LedgerEntry
from revenue_kernel.models.db.reconciliation_jobs import ReconciliationJob
from revenue_kernel.models.db.usage import BillableEvent, SiteUsageMonthly
from revenue_kernel.services.usage_counter import CacheUnavailableError, UsageCounter
from revenue_kernel.utils import get_logger, log_business_event, log_performance
from revenue_kernel.utils.metrics import PipelineMetrics, drift_exceeds_threshold, drift_pct
from revenue_kernel.utils.time import (
    current_year_month,
    iter_year_months,
    month_bounds,
    parse_year_month,
    previous_year_month,
    utc_now,
)

logger = get_logger(__name__)

CLAIMABLE_JOB_STATUSES = (ReconciliationJobStatus.QUEUED, ReconciliationJobStatus.FAILED)


@dataclass
class ReconcileResult:
    site_id: str
    year_month: str
    billable_count: int
    overage_count: int
    revenue_minor: int
    fast_path_count: Optional[int] = None
    drift: Optional[int] = None
    drift_pct: Optional[float] = None
    flagged: bool = False
    corrected: bool = False
    seeded: bool = False
    cache_error: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


# --------------------------------------------------------------------------- #
# Authoritative side
# --------------------------------------------------------------------------- #

def count_billable_events(session: Session, site_id: str, year_month: str) -> tuple[int, int]:
    """Return ``(billable, overage)`` counts from the idempotency record."""
    billable = session.execute(
        select(func.count())
        .select_from(BillableEvent)
        .where(
            BillableEvent.site_id == site_id,
            BillableEvent.year_month == year_month,
            BillableEvent.billable.is_(True),
        )
    ).scalar_one()
    overage = session.execute(
        select(func.count())
        .select_from(BillableEvent)
        .where(
            BillableEvent.site_id == site_id,
            BillableEvent.year_month == year_month,
            BillableEvent.billable.is_(True),
            BillableEvent.billing_state == BillingState.OVERAGE,
        )
    ).scalar_one()
    return int(billable or 0), int(overage or 0)


def sum_ledger_revenue(session: Session, site_id: str, year_month: str) -> int:
    start, end = month_bounds(year_month)
    total = session.execute(
        select(func.coalesce(func.sum(LedgerEntry.value_minor), 0)).where(
            LedgerEntry.site_id == site_id,
            LedgerEntry.recorded_at >= start,
            LedgerEntry.recorded_at < end,
        )
    ).scalar_one()
    return int(total or 0)


def _upsert_snapshot(session: Session, result: ReconcileResult, now: datetime) -> SiteUsageMonthly:
    def _load() -> SiteUsageMonthly | None:
        return (
            session.query(SiteUsageMonthly)
            .filter(SiteUsageMonthly.site_id == result.site_id, SiteUsageMonthly.year_month == result.year_month)
            .one_or_none()
        )

    snapshot = _load()
    if snapshot is None:
        try:
            with session.begin_nested():
                snapshot = SiteUsageMonthly(site_id=result.site_id, year_month=result.year_month)
                session.add(snapshot)
        except IntegrityError:
            snapshot = _load()
            if snapshot is None:
                raise

    snapshot.event_count = result.billable_count
    snapshot.overage_count = result.overage_count
    snapshot.revenue_minor = result.revenue_minor
    snapshot.last_synced_at = now
    # Drift fields only move when the cache could be compared
    if result.cache_error is None:
        snapshot.last_drift = result.drift
        snapshot.last_drift_pct = result.drift_pct
        snapshot.drift_flagged = result.flagged
    session.flush()
    return snapshot


def reconcile_usage_for_month(
    session: Session,
    site_id: str,
    year_month: str,
    *,
    counter: UsageCounter,
    metrics: Optional[PipelineMetrics] = None,
    now: Optional[datetime] = None,
) -> ReconcileResult:
    """Recompute usage for one period and correct the fast-path counter.

    Flushes the snapshot; the caller commits.
    """
    parse_year_month(year_month)
    now = now or utc_now()
    billable, overage = count_billable_events(session, site_id, year_month)
    result = ReconcileResult(
        site_id=site_id,
        year_month=year_month,
        billable_count=billable,
        overage_count=overage,
        revenue_minor=sum_ledger_revenue(session, site_id, year_month),
    )

    try:
        fast = counter.get(site_id, year_month)
        if fast is None:
            counter.set(site_id, year_month, billable, now=now)
            result.seeded = True
        else:
            result.fast_path_count = fast
            result.drift = fast - billable
            result.drift_pct = drift_pct(fast, billable)
            result.flagged = drift_exceeds_threshold(
                result.drift,
                billable,
                abs_threshold=float(RECONCILIATION_SETTINGS["drift_threshold_abs"]),
                pct_threshold=float(RECONCILIATION_SETTINGS["drift_threshold_pct"]),
            )
            if result.flagged:
                counter.set(site_id, year_month, billable, now=now)
                result.corrected = True
    except CacheUnavailableError as e:
        result.cache_error = str(e)
        if metrics is not None:
            metrics.increment(PipelineMetrics.CACHE_UNAVAILABLE)
        logger.warning("Usage cache unavailable; snapshot written without drift check", site_id=site_id, year_month=year_month, error=str(e))

    _upsert_snapshot(session, result, now)

    if result.corrected:
        if metrics is not None:
            metrics.increment(PipelineMetrics.RECONCILE_DRIFT_CORRECTED)
        log_business_event(
            "usage_drift_corrected",
            {
                "year_month": year_month,
                "fast_path_count": result.fast_path_count,
                "authoritative_count": billable,
                "drift": result.drift,
            },
            site_id=site_id,
        )
    return result


# --------------------------------------------------------------------------- #
# Job lifecycle
# --------------------------------------------------------------------------- #

def _insert_job_if_absent(session: Session, site_id: str, year_month: str) -> bool:
    existing = (
        session.query(ReconciliationJob.id)
        .filter(ReconciliationJob.site_id == site_id, ReconciliationJob.year_month == year_month)
        .first()
    )
    if existing is not None:
        return False
    try:
        with session.begin_nested():
            session.add(ReconciliationJob(site_id=site_id, year_month=year_month, status=ReconciliationJobStatus.QUEUED))
        return True
    except IntegrityError:
        return False


def active_site_ids(session: Session, *, now: Optional[datetime] = None) -> list[str]:
    """Sites with billable events in the current period or the trailing window."""
    now = now or utc_now()
    since = now - timedelta(hours=int(RECONCILIATION_SETTINGS["active_window_hours"]))
    rows = session.execute(
        select(BillableEvent.site_id)
        .where(or_(BillableEvent.year_month == current_year_month(now), BillableEvent.created_at >= since))
        .distinct()
    ).scalars()
    return sorted(set(rows))


def enqueue_reconciliation_jobs(session: Session, *, now: Optional[datetime] = None) -> Dict[str, int]:
    """Insert-if-absent jobs for current and previous period of every active site.

    A COMPLETED job for the current period goes back to QUEUED since its
    counts keep moving until the period closes.
    """
    now = now or utc_now()
    sites = active_site_ids(session, now=now)
    if not sites:
        return {"enqueued": 0, "active_sites": 0}

    current, previous = current_year_month(now), previous_year_month(now)
    enqueued = 0
    for site_id in sites:
        for period in (current, previous):
            if _insert_job_if_absent(session, site_id, period):
                enqueued += 1
    requeued = session.execute(
        update(ReconciliationJob)
        .where(
            ReconciliationJob.site_id.in_(sites),
            ReconciliationJob.year_month == current,
            ReconciliationJob.status == ReconciliationJobStatus.COMPLETED,
        )
        .values(status=ReconciliationJobStatus.QUEUED, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    session.commit()
    enqueued += int(requeued.rowcount or 0)
    logger.info("Reconciliation jobs enqueued", enqueued=enqueued, active_sites=len(sites))
    return {"enqueued": enqueued, "active_sites": len(sites)}


def backfill_reconciliation_jobs(
    session: Session,
    from_year_month: str,
    to_year_month: str,
    *,
    site_id: Optional[str] = None,
) -> Dict[str, int]:
    """Insert missing jobs for a closed range of periods (at most 12 months)."""
    periods = iter_year_months(from_year_month, to_year_month)
    if not periods:
        raise ValueError("from_year_month must not be after to_year_month")
    max_months = int(RECONCILIATION_SETTINGS["backfill_max_months"])
    if len(periods) > max_months:
        raise ValueError(f"Backfill range exceeds {max_months} months")

    if site_id:
        sites = [site_id]
    else:
        sites = sorted(set(session.execute(
            select(BillableEvent.site_id).where(BillableEvent.year_month.in_(periods)).distinct()
        ).scalars()))

    enqueued = 0
    for site in sites:
        for period in periods:
            if _insert_job_if_absent(session, site, period):
                enqueued += 1
    session.commit()
    logger.info("Reconciliation backfill enqueued", enqueued=enqueued, sites=len(sites), periods=len(periods))
    return {"enqueued": enqueued, "sites": len(sites), "periods": len(periods)}


def claim_reconciliation_jobs(session: Session, limit: int, *, now: Optional[datetime] = None) -> list[ReconciliationJob]:
    if limit <= 0:
        return []
    now = now or utc_now()
    stmt = (
        select(ReconciliationJob.id)
        .where(ReconciliationJob.status.in_(CLAIMABLE_JOB_STATUSES))
        .order_by(ReconciliationJob.updated_at, ReconciliationJob.id)
        .limit(limit)
        .with_for_update(skip_locked=True)
    )
    claimed_ids: list[int] = []
    try:
        for job_id in list(session.execute(stmt).scalars()):
            result = session.execute(
                update(ReconciliationJob)
                .where(ReconciliationJob.id == job_id, ReconciliationJob.status.in_(CLAIMABLE_JOB_STATUSES))
                .values(
                    status=ReconciliationJobStatus.PROCESSING,
                    claimed_at=now,
                    updated_at=now,
                    attempt_count=ReconciliationJob.attempt_count + 1,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                claimed_ids.append(job_id)
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        logger.error("Reconciliation claim failed; returning empty batch", error=str(e), exc_info=True)
        return []
    if not claimed_ids:
        return []
    return (
        session.query(ReconciliationJob)
        .filter(ReconciliationJob.id.in_(claimed_ids))
        .order_by(ReconciliationJob.id)
        .all()
    )


def recover_stuck_reconciliation_jobs(session: Session, min_age_minutes: Optional[int] = None, *, now: Optional[datetime] = None) -> int:
    now = now or utc_now()
    minutes = int(min_age_minutes if min_age_minutes is not None else QUEUE_SETTINGS["stuck_processing_minutes"])
    result = session.execute(
        update(ReconciliationJob)
        .where(
            ReconciliationJob.status == ReconciliationJobStatus.PROCESSING,
            ReconciliationJob.claimed_at < now - timedelta(minutes=max(1, minutes)),
        )
        .values(status=ReconciliationJobStatus.QUEUED, claimed_at=None, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    session.commit()
    recovered = int(result.rowcount or 0)
    if recovered:
        logger.warning("Recovered stuck reconciliation jobs", recovered=recovered)
    return recovered


def _finish_job(session: Session, job_id: int, values: Dict[str, Any]) -> None:
    session.execute(
        update(ReconciliationJob)
        .where(ReconciliationJob.id == job_id, ReconciliationJob.status == ReconciliationJobStatus.PROCESSING)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    session.commit()


def run_reconciliation_cycle(
    session_factory: Callable[[], Session],
    *,
    counter: UsageCounter,
    limit: Optional[int] = None,
    metrics: Optional[PipelineMetrics] = None,
    now: Optional[datetime] = None,
) -> Dict[str, int]:
    """Claim up to ``limit`` jobs and reconcile each; one failure never stops the batch."""
    limit = max(1, min(int(limit or RECONCILIATION_SETTINGS["batch_size"]), int(RECONCILIATION_SETTINGS["max_batch_size"])))
    counts = {"processed": 0, "completed": 0, "failed": 0}
    started = utc_now()

    session = session_factory()
    try:
        jobs = claim_reconciliation_jobs(session, limit, now=now)
        for job in jobs:
            job_id, site_id, year_month = job.id, job.site_id, job.year_month
            counts["processed"] += 1
            job_now = now or utc_now()
            try:
                result = reconcile_usage_for_month(session, site_id, year_month, counter=counter, metrics=metrics, now=job_now)
                _finish_job(session, job_id, {
                    "status": ReconciliationJobStatus.COMPLETED,
                    "last_error": None,
                    "last_drift_pct": result.drift_pct,
                    "claimed_at": None,
                    "updated_at": job_now,
                })
                counts["completed"] += 1
                if metrics is not None:
                    metrics.increment(PipelineMetrics.RECONCILE_COMPLETED)
                logger.info(
                    "Usage reconciled",
                    site_id=site_id,
                    year_month=year_month,
                    billable_count=result.billable_count,
                    overage_count=result.overage_count,
                    drift=result.drift,
                    drift_pct=result.drift_pct,
                    corrected=result.corrected,
                )
            except Exception as e:
                session.rollback()
                logger.error("Usage reconciliation failed", site_id=site_id, year_month=year_month, error=str(e), exc_info=True)
                _finish_job(session, job_id, {
                    "status": ReconciliationJobStatus.FAILED,
                    "last_error": f"{type(e).__name__}: {e}"[: int(QUEUE_SETTINGS["last_error_max_len"])],
                    "claimed_at": None,
                    "updated_at": job_now,
                })
                counts["failed"] += 1
                if metrics is not None:
                    metrics.increment(PipelineMetrics.RECONCILE_FAILED)
    finally:
        session.close()

    duration_ms = (utc_now() - started).total_seconds() * 1000
    log_performance("billing_reconciliation_cycle", duration_ms, dict(counts))
    return counts


__all__ = [
    "ReconcileResult",
    "count_billable_events",
    "sum_ledger_revenue",
    "reconcile_usage_for_month",
    "active_site_ids",
    "enqueue_reconciliation_jobs",
    "backfill_reconciliation_jobs",
    "claim_reconciliation_jobs",
    "recover_stuck_reconciliation_jobs",
    "run_reconciliation_cycle",
]
