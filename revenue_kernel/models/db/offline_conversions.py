from __future__ import annotations
"""SQLAlchemy model for the offline conversion upload queue."""
import uuid
from datetime import datetime

from sqlalchemy import Integer, String, Text, JSON, Enum, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from revenue_kernel.database import Base
from revenue_kernel.utils.time import utc_now
from .enums import QueueStatus, ProviderErrorCategory
from .types import UTCDateTime


def _new_id() -> str:
    return str(uuid.uuid4())


class OfflineConversionJob(Base):
    """One upload job. Rows are retained after reaching a terminal status."""

    __tablename__ = "offline_conversion_queue"
    __table_args__ = (
        # One row per business event and provider; makes enqueue idempotent
        UniqueConstraint("site_id", "provider_key", "source_event_id", name="uq_ocq_site_provider_event"),
        Index("ix_ocq_claim", "status", "next_retry_at", "updated_at"),
        Index("ix_ocq_site_status", "site_id", "status"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    site_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    provider_key: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    source_event_id: Mapped[str] = mapped_column(String(128), nullable=False)

    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    amount_minor: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    gclid: Mapped[str | None] = mapped_column(String(256), nullable=True)
    wbraid: Mapped[str | None] = mapped_column(String(256), nullable=True)
    gbraid: Mapped[str | None] = mapped_column(String(256), nullable=True)

    status: Mapped[QueueStatus] = mapped_column(Enum(QueueStatus), nullable=False, default=QueueStatus.QUEUED)
    # Bumped on every claim, deferrals included
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # Bumped only when a provider outcome is stored; drives the cap and backoff
    provider_attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    claimed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    next_retry_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    uploaded_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now)

    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    provider_error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    provider_error_category: Mapped[ProviderErrorCategory | None] = mapped_column(Enum(ProviderErrorCategory), nullable=True)
    provider_ref: Mapped[str | None] = mapped_column(String(256), nullable=True)

    @property
    def click_id(self) -> str | None:
        """First present correlation token, in provider preference order."""
        for value in (self.gclid, self.wbraid, self.gbraid):
            if value and value.strip():
                return value.strip()
        return None

    def __repr__(self) -> str:  # pragma: no cover
        return f"<OfflineConversionJob id={self.id} site={self.site_id} status={self.status.value} attempts={self.provider_attempt_count}/{self.attempt_count}>"
