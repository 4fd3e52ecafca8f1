"""Deterministic provider-side order ids for queue rows.

The same row always yields the same id, so a retried upload collides at the
provider instead of creating a duplicate conversion. Two rows sharing click
id and timestamp still differ because row id and amount feed the hash.
"""
from __future__ import annotations

import hashlib
from datetime import datetime

from revenue_kernel.config import ORDER_ID_PREFIX
from revenue_kernel.models.db.offline_conversions import OfflineConversionJob
from revenue_kernel.utils.time import ensure_utc

MAX_ORDER_ID_LENGTH = 128
HASH_SUFFIX_LENGTH = 8


def canonical_timestamp(value: datetime) -> str:
    """UTC, second precision: ``YYYYMMDDHHMMSS``."""
    return ensure_utc(value).strftime("%Y%m%d%H%M%S")


def build_order_id(prefix: str, click_id: str | None, occurred_at: datetime, row_id: str, amount_minor: int) -> str:
    """Compose the idempotency key for one row (≤ 128 chars)."""
    token = (click_id or "").strip()
    if not token:
        return f"{prefix}_{row_id}"[:MAX_ORDER_ID_LENGTH]

    timestamp = canonical_timestamp(occurred_at)
    digest = hashlib.sha256(f"{token}|{timestamp}|{row_id}|{int(amount_minor)}".encode("utf-8")).hexdigest()
    suffix = digest[:HASH_SUFFIX_LENGTH]
    composed = f"{token}_{timestamp}_{prefix}"
    # Keep the hash suffix intact when the composite has to be shortened.
    room = MAX_ORDER_ID_LENGTH - HASH_SUFFIX_LENGTH - 1
    return f"{composed[:room]}_{suffix}"


def order_id_for_row(row: OfflineConversionJob, prefix: str | None = None) -> str:
    return build_order_id(
        prefix or ORDER_ID_PREFIX,
        row.click_id,
        row.occurred_at,
        row.id,
        row.amount_minor,
    )


__all__ = ["build_order_id", "order_id_for_row", "canonical_timestamp", "MAX_ORDER_ID_LENGTH"]
