from __future__ import annotations
"""SQLAlchemy model for per (site, provider) circuit breaker state."""
from datetime import datetime

from sqlalchemy import Integer, String, Enum, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from revenue_kernel.database import Base
from revenue_kernel.utils.time import utc_now
from .enums import BreakerState
from .types import UTCDateTime


class ProviderHealth(Base):
    __tablename__ = "provider_health"
    __table_args__ = (
        UniqueConstraint("site_id", "provider_key", name="uq_provider_health_site_provider"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    site_id: Mapped[str] = mapped_column(String(64), nullable=False)
    provider_key: Mapped[str] = mapped_column(String(64), nullable=False)
    state: Mapped[BreakerState] = mapped_column(Enum(BreakerState), nullable=False, default=BreakerState.CLOSED)
    failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    opened_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    next_probe_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    probe_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now)
