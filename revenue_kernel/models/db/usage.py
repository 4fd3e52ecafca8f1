from __future__ import annotations
"""SQLAlchemy models for metered usage: ingest idempotency record and monthly snapshot."""
from datetime import datetime

from sqlalchemy import Integer, String, Boolean, Enum, Float, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from revenue_kernel.database import Base
from revenue_kernel.utils.time import utc_now
from .enums import BillingState
from .types import UTCDateTime


class BillableEvent(Base):
    """Idempotency record for ingested events; source of truth for usage counts."""

    __tablename__ = "ingest_idempotency"
    __table_args__ = (
        Index("ix_ingest_idempotency_site_period", "site_id", "year_month"),
        Index("ix_ingest_idempotency_created", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    site_id: Mapped[str] = mapped_column(String(64), nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    year_month: Mapped[str] = mapped_column(String(7), nullable=False)
    billable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    billing_state: Mapped[BillingState] = mapped_column(Enum(BillingState), nullable=False, default=BillingState.INCLUDED)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)


class SiteUsageMonthly(Base):
    """Corrected usage snapshot written by the reconciliation worker."""

    __tablename__ = "site_usage_monthly"
    __table_args__ = (
        UniqueConstraint("site_id", "year_month", name="uq_site_usage_monthly_site_period"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    site_id: Mapped[str] = mapped_column(String(64), nullable=False)
    year_month: Mapped[str] = mapped_column(String(7), nullable=False)
    event_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    overage_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    revenue_minor: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_drift: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_drift_pct: Mapped[float | None] = mapped_column(Float, nullable=True)
    drift_flagged: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_synced_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
