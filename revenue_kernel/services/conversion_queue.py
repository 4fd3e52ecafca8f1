"""Offline conversion queue: enqueue, claim, sweeps and operator actions.

Every state transition is a conditional UPDATE filtered on the current
status, so a row only moves when it is still where the caller expects it.
Claims use ``SELECT ... FOR UPDATE SKIP LOCKED`` where the backend supports
it; the status predicate on the follow-up UPDATE keeps claims exclusive on
backends without row locks (SQLite).
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, Sequence

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from revenue_kernel.config import QUEUE_SETTINGS
from revenue_kernel.models.db.enums import (
    CLAIMABLE_STATUSES,
    ProviderErrorCategory,
    QueueAction,
    QueueStatus,
    TERMINAL_STATUSES,
)
from revenue_kernel.models.db.offline_conversions import OfflineConversionJob
from revenue_kernel.utils import get_logger, log_business_event
from revenue_kernel.utils.time import utc_now

logger = get_logger(__name__)

MAX_ATTEMPTS_EXCEEDED = "MAX_ATTEMPTS_EXCEEDED"
STUCK_PROCESSING_RECOVERED = "STUCK_PROCESSING_RECOVERED"
MANUAL_FAIL = "MANUAL_FAIL"
MANUALLY_MARKED_FAILED = "MANUALLY_MARKED_FAILED"


def truncate_error(message: str | None) -> str | None:
    if message is None:
        return None
    return message[: int(QUEUE_SETTINGS["last_error_max_len"])]


def truncate_code(code: str | None) -> str | None:
    if code is None:
        return None
    return code[: int(QUEUE_SETTINGS["error_code_max_len"])]


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, int(value)))


# --------------------------------------------------------------------------- #
# Enqueue
# --------------------------------------------------------------------------- #

def enqueue_conversion(
    session: Session,
    *,
    site_id: str,
    provider_key: str,
    source_event_id: str,
    occurred_at: datetime,
    amount_minor: int,
    currency: str = "USD",
    click_ids: Dict[str, str | None] | None = None,
    payload: Dict[str, Any] | None = None,
) -> tuple[OfflineConversionJob, bool]:
    """Insert a QUEUED row for a confirmed business event.

    Returns ``(row, created)``. A second call for the same
    (site, provider, source event) returns the existing row untouched.
    """
    if amount_minor < 0:
        raise ValueError("amount_minor must be >= 0")
    currency = (currency or "").strip().upper()
    if len(currency) != 3:
        raise ValueError("currency must be a 3-letter ISO code")
    click_ids = click_ids or {}

    existing = _find_by_event(session, site_id, provider_key, source_event_id)
    if existing is not None:
        logger.debug("Duplicate enqueue ignored", site_id=site_id, source_event_id=source_event_id, job_id=existing.id)
        return existing, False

    row = OfflineConversionJob(
        site_id=site_id,
        provider_key=provider_key,
        source_event_id=source_event_id,
        occurred_at=occurred_at,
        amount_minor=int(amount_minor),
        currency=currency,
        gclid=click_ids.get("gclid") or None,
        wbraid=click_ids.get("wbraid") or None,
        gbraid=click_ids.get("gbraid") or None,
        payload=dict(payload or {}),
        status=QueueStatus.QUEUED,
        attempt_count=0,
        provider_attempt_count=0,
    )
    try:
        session.add(row)
        session.commit()
    except IntegrityError:
        # Lost an insert race against another enqueue of the same event
        session.rollback()
        existing = _find_by_event(session, site_id, provider_key, source_event_id)
        if existing is None:
            raise
        return existing, False

    logger.info(
        "Conversion enqueued",
        job_id=row.id,
        site_id=site_id,
        provider_key=provider_key,
        source_event_id=source_event_id,
        has_click_id=row.click_id is not None,
    )
    return row, True


def _find_by_event(session: Session, site_id: str, provider_key: str, source_event_id: str) -> OfflineConversionJob | None:
    return (
        session.query(OfflineConversionJob)
        .filter(
            OfflineConversionJob.site_id == site_id,
            OfflineConversionJob.provider_key == provider_key,
            OfflineConversionJob.source_event_id == source_event_id,
        )
        .one_or_none()
    )


# --------------------------------------------------------------------------- #
# Claim
# --------------------------------------------------------------------------- #

def _eligible_clause(now: datetime, max_attempts: int):
    return and_(
        OfflineConversionJob.status.in_(CLAIMABLE_STATUSES),
        or_(OfflineConversionJob.next_retry_at.is_(None), OfflineConversionJob.next_retry_at <= now),
        OfflineConversionJob.provider_attempt_count < max_attempts,
    )


def list_eligible_groups(
    session: Session,
    *,
    provider_key: str | None = None,
    now: datetime | None = None,
    limit: int | None = None,
) -> list[tuple[str, str, int]]:
    """Return ``(site_id, provider_key, eligible_count)`` groups, busiest first."""
    now = now or utc_now()
    max_attempts = int(QUEUE_SETTINGS["max_attempts"])
    limit = int(limit or QUEUE_SETTINGS["list_groups_limit"])
    stmt = (
        select(OfflineConversionJob.site_id, OfflineConversionJob.provider_key, func.count())
        .where(_eligible_clause(now, max_attempts))
        .group_by(OfflineConversionJob.site_id, OfflineConversionJob.provider_key)
        .order_by(func.count().desc(), OfflineConversionJob.site_id)
        .limit(limit)
    )
    if provider_key:
        stmt = stmt.where(OfflineConversionJob.provider_key == provider_key)
    return [(site, provider, int(count)) for site, provider, count in session.execute(stmt).all()]


def claim_batch(
    session: Session,
    limit: int,
    *,
    provider_key: str | None = None,
    site_id: str | None = None,
    now: datetime | None = None,
    max_attempts: int | None = None,
) -> list[OfflineConversionJob]:
    """Atomically move up to ``limit`` eligible rows to PROCESSING and return them.

    Each returned row had ``attempt_count`` incremented and ``claimed_at`` set;
    ``provider_attempt_count`` only moves once an upload outcome is stored.
    Storage errors roll back and yield an empty batch.
    """
    if limit <= 0:
        return []
    now = now or utc_now()
    cap = int(max_attempts or QUEUE_SETTINGS["max_attempts"])

    stmt = (
        select(OfflineConversionJob.id)
        .where(_eligible_clause(now, cap))
        .order_by(OfflineConversionJob.updated_at, OfflineConversionJob.id)
        .limit(limit)
        .with_for_update(skip_locked=True)
    )
    if provider_key:
        stmt = stmt.where(OfflineConversionJob.provider_key == provider_key)
    if site_id:
        stmt = stmt.where(OfflineConversionJob.site_id == site_id)

    claimed_ids: list[str] = []
    try:
        candidate_ids = list(session.execute(stmt).scalars())
        for row_id in candidate_ids:
            result = session.execute(
                update(OfflineConversionJob)
                .where(
                    OfflineConversionJob.id == row_id,
                    OfflineConversionJob.status.in_(CLAIMABLE_STATUSES),
                    OfflineConversionJob.provider_attempt_count < cap,
                )
                .values(
                    status=QueueStatus.PROCESSING,
                    claimed_at=now,
                    updated_at=now,
                    attempt_count=OfflineConversionJob.attempt_count + 1,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                claimed_ids.append(row_id)
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        logger.error("Claim failed; returning empty batch", error=str(e), site_id=site_id, provider_key=provider_key, exc_info=True)
        return []

    if not claimed_ids:
        return []
    rows = (
        session.query(OfflineConversionJob)
        .filter(OfflineConversionJob.id.in_(claimed_ids))
        .order_by(OfflineConversionJob.created_at, OfflineConversionJob.id)
        .all()
    )
    logger.debug("Claimed batch", claimed=len(rows), requested=limit, site_id=site_id, provider_key=provider_key)
    return rows


def release_claims(session: Session, row_ids: Sequence[str], *, now: datetime | None = None) -> int:
    """Hand claimed-but-unprocessed rows back to QUEUED (attempt count is kept)."""
    if not row_ids:
        return 0
    now = now or utc_now()
    result = session.execute(
        update(OfflineConversionJob)
        .where(OfflineConversionJob.id.in_(list(row_ids)), OfflineConversionJob.status == QueueStatus.PROCESSING)
        .values(status=QueueStatus.QUEUED, claimed_at=None, next_retry_at=None, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    session.commit()
    released = int(result.rowcount or 0)
    if released:
        logger.info("Released unprocessed claims", released=released)
    return released


def finish_claimed_row(session: Session, row_id: str, values: Dict[str, Any]) -> bool:
    """Apply the outcome of an upload to a row still in PROCESSING.

    Returns False when the row left PROCESSING meanwhile (operator action or
    sweep), in which case nothing is written.
    """
    result = session.execute(
        update(OfflineConversionJob)
        .where(OfflineConversionJob.id == row_id, OfflineConversionJob.status == QueueStatus.PROCESSING)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    session.commit()
    if result.rowcount != 1:
        logger.warning("Row left PROCESSING before its outcome was stored", job_id=row_id, target_status=str(values.get("status")))
        return False
    return True


# --------------------------------------------------------------------------- #
# Sweeps
# --------------------------------------------------------------------------- #

def sweep_attempt_cap(
    session: Session,
    max_attempts: int | None = None,
    min_age_minutes: int = 0,
    *,
    now: datetime | None = None,
) -> int:
    """Force non-terminal rows whose provider attempts reached the cap to FAILED/PERMANENT.

    Concurrency deferrals never count towards the cap.
    """
    now = now or utc_now()
    cap = _clamp(
        max_attempts if max_attempts is not None else QUEUE_SETTINGS["max_attempts"],
        int(QUEUE_SETTINGS["attempt_cap_min"]),
        int(QUEUE_SETTINGS["attempt_cap_max"]),
    )
    min_age = _clamp(min_age_minutes or 0, 0, int(QUEUE_SETTINGS["min_age_minutes_max"]))

    stmt = update(OfflineConversionJob).where(
        OfflineConversionJob.status.notin_(TERMINAL_STATUSES),
        OfflineConversionJob.provider_attempt_count >= cap,
    )
    if min_age > 0:
        stmt = stmt.where(OfflineConversionJob.updated_at <= now - timedelta(minutes=min_age))

    result = session.execute(
        stmt.values(
            status=QueueStatus.FAILED,
            provider_error_code=MAX_ATTEMPTS_EXCEEDED,
            provider_error_category=ProviderErrorCategory.PERMANENT,
            last_error=f"{MAX_ATTEMPTS_EXCEEDED}: provider_attempt_count >= {cap}",
            claimed_at=None,
            next_retry_at=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    session.commit()
    affected = int(result.rowcount or 0)
    if affected:
        logger.warning("Attempt cap sweep marked rows FAILED", affected=affected, max_attempts=cap, min_age_minutes=min_age)
        log_business_event("ocq_attempt_cap_marked", {"affected": affected, "max_attempts": cap})
    return affected


def sweep_stuck_processing(
    session: Session,
    min_age_minutes: int | None = None,
    *,
    now: datetime | None = None,
) -> int:
    """Return PROCESSING rows abandoned by crashed workers to RETRY."""
    now = now or utc_now()
    minutes = _clamp(
        min_age_minutes if min_age_minutes is not None else QUEUE_SETTINGS["stuck_processing_minutes"],
        int(QUEUE_SETTINGS["stuck_minutes_min"]),
        int(QUEUE_SETTINGS["stuck_minutes_max"]),
    )
    cutoff = now - timedelta(minutes=minutes)

    result = session.execute(
        update(OfflineConversionJob)
        .where(
            OfflineConversionJob.status == QueueStatus.PROCESSING,
            or_(
                OfflineConversionJob.claimed_at < cutoff,
                and_(OfflineConversionJob.claimed_at.is_(None), OfflineConversionJob.updated_at < cutoff),
            ),
        )
        .values(
            status=QueueStatus.RETRY,
            claimed_at=None,
            next_retry_at=None,
            # The upload may have reached the provider before the worker died
            provider_attempt_count=OfflineConversionJob.provider_attempt_count + 1,
            provider_error_code=STUCK_PROCESSING_RECOVERED,
            provider_error_category=ProviderErrorCategory.TRANSIENT,
            last_error=f"{STUCK_PROCESSING_RECOVERED}: PROCESSING longer than {minutes} minutes",
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    session.commit()
    recovered = int(result.rowcount or 0)
    if recovered:
        logger.warning("Recovered stuck PROCESSING rows", recovered=recovered, min_age_minutes=minutes)
    return recovered


# --------------------------------------------------------------------------- #
# Operator actions
# --------------------------------------------------------------------------- #

_ACTION_SOURCE_STATUSES: dict[QueueAction, tuple[QueueStatus, ...]] = {
    QueueAction.RETRY_SELECTED: (QueueStatus.FAILED, QueueStatus.RETRY),
    QueueAction.RESET_TO_QUEUED: (QueueStatus.QUEUED, QueueStatus.RETRY, QueueStatus.PROCESSING, QueueStatus.FAILED),
    QueueAction.MARK_FAILED: (QueueStatus.PROCESSING, QueueStatus.QUEUED, QueueStatus.RETRY),
}


def apply_queue_action(
    session: Session,
    site_id: str,
    action: QueueAction | str,
    ids: Iterable[str],
    *,
    reason: str | None = None,
    error_code: str | None = None,
    error_category: ProviderErrorCategory | str | None = None,
    clear_errors: bool = False,
    now: datetime | None = None,
) -> int:
    """Bulk operator action scoped to one site; returns the affected row count.

    Rows not in an eligible source status are skipped silently so an
    in-flight worker is never overridden. Requeued rows get a fresh
    provider attempt budget; ``attempt_count`` keeps counting claims.
    """
    action = QueueAction(action)
    row_ids = sorted({str(i) for i in ids if i})
    if not row_ids:
        return 0
    now = now or utc_now()

    values: Dict[str, Any] = {"updated_at": now}
    if action == QueueAction.RETRY_SELECTED:
        values.update(status=QueueStatus.QUEUED, claimed_at=None, next_retry_at=None, provider_attempt_count=0)
    elif action == QueueAction.RESET_TO_QUEUED:
        values.update(status=QueueStatus.QUEUED, claimed_at=None, next_retry_at=None, provider_attempt_count=0)
        if clear_errors:
            values.update(last_error=None, provider_error_code=None, provider_error_category=None)
    else:
        category = ProviderErrorCategory(error_category) if error_category else ProviderErrorCategory.PERMANENT
        values.update(
            status=QueueStatus.FAILED,
            claimed_at=None,
            next_retry_at=None,
            provider_error_code=truncate_code(error_code or MANUAL_FAIL),
            provider_error_category=category,
            last_error=truncate_error(reason or MANUALLY_MARKED_FAILED),
        )

    result = session.execute(
        update(OfflineConversionJob)
        .where(
            OfflineConversionJob.site_id == site_id,
            OfflineConversionJob.id.in_(row_ids),
            OfflineConversionJob.status.in_(_ACTION_SOURCE_STATUSES[action]),
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    session.commit()
    affected = int(result.rowcount or 0)
    log_business_event(
        "ocq_queue_action",
        {"action": action.value, "requested": len(row_ids), "affected": affected},
        site_id=site_id,
    )
    return affected


# --------------------------------------------------------------------------- #
# Read side
# --------------------------------------------------------------------------- #

def queue_stats(session: Session, site_id: str, *, now: datetime | None = None) -> Dict[str, Any]:
    """Totals per status plus rows stuck in PROCESSING past the threshold."""
    now = now or utc_now()
    totals = {status.value: 0 for status in QueueStatus}
    rows = (
        session.query(OfflineConversionJob.status, func.count())
        .filter(OfflineConversionJob.site_id == site_id)
        .group_by(OfflineConversionJob.status)
        .all()
    )
    for status, count in rows:
        totals[QueueStatus(status).value] = int(count)

    cutoff = now - timedelta(minutes=int(QUEUE_SETTINGS["stuck_processing_minutes"]))
    stuck = (
        session.query(func.count())
        .select_from(OfflineConversionJob)
        .filter(
            OfflineConversionJob.site_id == site_id,
            OfflineConversionJob.status == QueueStatus.PROCESSING,
            OfflineConversionJob.claimed_at < cutoff,
        )
        .scalar()
    )
    return {
        "site_id": site_id,
        "totals": totals,
        "stuck_processing": int(stuck or 0),
        "total": sum(totals.values()),
    }


def list_rows(
    session: Session,
    site_id: str,
    *,
    status: QueueStatus | str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[OfflineConversionJob], int]:
    query = session.query(OfflineConversionJob).filter(OfflineConversionJob.site_id == site_id)
    if status:
        query = query.filter(OfflineConversionJob.status == QueueStatus(status))
    total = query.count()
    rows = (
        query.order_by(OfflineConversionJob.updated_at.desc(), OfflineConversionJob.id)
        .offset(max(0, offset))
        .limit(_clamp(limit, 1, 200))
        .all()
    )
    return rows, total


__all__ = [
    "enqueue_conversion",
    "list_eligible_groups",
    "claim_batch",
    "release_claims",
    "finish_claimed_row",
    "sweep_attempt_cap",
    "sweep_stuck_processing",
    "apply_queue_action",
    "queue_stats",
    "list_rows",
    "truncate_error",
    "truncate_code",
    "MAX_ATTEMPTS_EXCEEDED",
    "STUCK_PROCESSING_RECOVERED",
]
