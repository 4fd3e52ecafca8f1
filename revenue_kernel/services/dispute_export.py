"""Dispute export: one site's ingest idempotency record for a billing period, as CSV.

Rows are read in ``(created_at, id)`` order with ``yield_per`` and emitted one
CSV line at a time, so an export never holds a whole period in memory. The
SHA-256 of the emitted bytes is logged once the last line has been produced.
"""
from __future__ import annotations

import csv
import hashlib
import io
from typing import Iterator

from sqlalchemy import select
from sqlalchemy.orm import Session

from revenue_kernel.models.db.enums import BillingState
from revenue_kernel.models.db.usage import BillableEvent
from revenue_kernel.utils import get_logger, log_business_event
from revenue_kernel.utils.time import ensure_utc, parse_year_month

logger = get_logger(__name__)

DISPUTE_EXPORT_COLUMNS = ("created_at", "idempotency_key", "billing_state", "billable")
FETCH_SIZE = 500


def dispute_export_filename(site_id: str, year_month: str) -> str:
    return f"dispute-export-{site_id[:8]}-{year_month}.csv"


def validate_export_request(site_id: str, year_month: str) -> None:
    if not site_id:
        raise ValueError("site_id is required")
    parse_year_month(year_month)


def stream_dispute_export(session: Session, site_id: str, year_month: str) -> Iterator[str]:
    """Return an iterator of CSV lines (header first) for ``site_id`` in ``year_month``.

    Raises ``ValueError`` up front for a malformed period, before any line
    is produced.
    """
    validate_export_request(site_id, year_month)
    return _generate(session, site_id, year_month)


def _generate(session: Session, site_id: str, year_month: str) -> Iterator[str]:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    digest = hashlib.sha256()

    def take() -> str:
        line = buffer.getvalue()
        buffer.seek(0)
        buffer.truncate(0)
        digest.update(line.encode("utf-8"))
        return line

    writer.writerow(DISPUTE_EXPORT_COLUMNS)
    yield take()

    stmt = (
        select(
            BillableEvent.created_at,
            BillableEvent.idempotency_key,
            BillableEvent.billing_state,
            BillableEvent.billable,
        )
        .where(BillableEvent.site_id == site_id, BillableEvent.year_month == year_month)
        .order_by(BillableEvent.created_at, BillableEvent.id)
        .execution_options(yield_per=FETCH_SIZE)
    )
    row_count = 0
    for created_at, idempotency_key, billing_state, billable in session.execute(stmt):
        writer.writerow([
            ensure_utc(created_at).isoformat(),
            idempotency_key,
            BillingState(billing_state).value,
            "true" if billable else "false",
        ])
        row_count += 1
        yield take()

    export_hash = digest.hexdigest()
    logger.info("Dispute export streamed", site_id=site_id, year_month=year_month, row_count=row_count)
    log_business_event(
        "billing_dispute_export",
        {"year_month": year_month, "row_count": row_count, "export_hash": export_hash},
        site_id=site_id,
    )


__all__ = [
    "DISPUTE_EXPORT_COLUMNS",
    "dispute_export_filename",
    "stream_dispute_export",
    "validate_export_request",
]
