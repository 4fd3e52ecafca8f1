"""SQLAlchemy model for the per-batch provider upload attempt log.

Each claimed (site, provider) batch writes a STARTED row before the first
upload and a FINISHED row with the outcome counts afterwards. Rows are
never updated; the ORM refuses flushes that would modify or delete one.
"""
from __future__ import annotations
import uuid
from datetime import datetime

from sqlalchemy import Integer, String, Enum, Index, event
from sqlalchemy.orm import Mapped, mapped_column

from revenue_kernel.database import Base
from revenue_kernel.utils.time import utc_now
from .enums import UploadAttemptPhase, ProviderErrorCategory
from .types import UTCDateTime


class UploadAttemptImmutableError(RuntimeError):
    """Raised when application code tries to modify or delete an attempt row."""


def new_batch_id() -> str:
    return str(uuid.uuid4())


class ProviderUploadAttempt(Base):
    __tablename__ = "provider_upload_attempts"
    __table_args__ = (
        Index("ix_pua_site_provider_created", "site_id", "provider_key", "created_at"),
        Index("ix_pua_batch", "batch_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    site_id: Mapped[str] = mapped_column(String(64), nullable=False)
    provider_key: Mapped[str] = mapped_column(String(64), nullable=False)
    batch_id: Mapped[str] = mapped_column(String(36), nullable=False)
    phase: Mapped[UploadAttemptPhase] = mapped_column(Enum(UploadAttemptPhase), nullable=False)

    claimed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completed_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    failed_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    retry_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    error_category: Mapped[ProviderErrorCategory | None] = mapped_column(Enum(ProviderErrorCategory), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)

    def __repr__(self) -> str:  # pragma: no cover
        return f"<ProviderUploadAttempt batch={self.batch_id} phase={self.phase.value} claimed={self.claimed_count}>"


@event.listens_for(ProviderUploadAttempt, "before_update")
def _reject_update(mapper, connection, target: ProviderUploadAttempt) -> None:
    raise UploadAttemptImmutableError(f"provider_upload_attempts is append-only: update of {target.id} rejected")


@event.listens_for(ProviderUploadAttempt, "before_delete")
def _reject_delete(mapper, connection, target: ProviderUploadAttempt) -> None:
    raise UploadAttemptImmutableError(f"provider_upload_attempts is append-only: delete of {target.id} rejected")
