from __future__ import annotations
"""SQLAlchemy model for billing reconciliation jobs (one per site and period)."""
from datetime import datetime

from sqlalchemy import Integer, String, Text, Float, Enum, UniqueConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column

from revenue_kernel.database import Base
from revenue_kernel.utils.time import utc_now
from .enums import ReconciliationJobStatus
from .types import UTCDateTime


class ReconciliationJob(Base):
    __tablename__ = "billing_reconciliation_jobs"
    __table_args__ = (
        UniqueConstraint("site_id", "year_month", name="uq_billing_reconciliation_site_period"),
        Index("ix_billing_reconciliation_status", "status", "updated_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    site_id: Mapped[str] = mapped_column(String(64), nullable=False)
    year_month: Mapped[str] = mapped_column(String(7), nullable=False)
    status: Mapped[ReconciliationJobStatus] = mapped_column(
        Enum(ReconciliationJobStatus), nullable=False, default=ReconciliationJobStatus.QUEUED
    )
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    claimed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_drift_pct: Mapped[float | None] = mapped_column(Float, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now)
