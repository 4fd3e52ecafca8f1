"""SQLAlchemy model for the append-only revenue ledger.

Immutability is enforced twice: storage-level triggers installed together
with the table (SQLite and PostgreSQL), and ORM mapper events that refuse
flushes touching an existing entry.
"""
from __future__ import annotations
from datetime import datetime

from sqlalchemy import DDL, Integer, String, Index, event
from sqlalchemy.orm import Mapped, mapped_column

from revenue_kernel.database import Base
from revenue_kernel.utils.time import utc_now
from .types import UTCDateTime

IMMUTABLE_MESSAGE = "revenue_ledger is append-only"


class LedgerImmutableError(RuntimeError):
    """Raised when application code tries to modify or delete a ledger entry."""


class LedgerEntry(Base):
    __tablename__ = "revenue_ledger"
    __table_args__ = (
        Index("ix_revenue_ledger_site_recorded", "site_id", "recorded_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    site_id: Mapped[str] = mapped_column(String(64), nullable=False)
    value_minor: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    recorded_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    reference: Mapped[str | None] = mapped_column(String(128), nullable=True)


# ---------------------------- storage guards ---------------------------- #

_SQLITE_NO_UPDATE = DDL(
    "CREATE TRIGGER IF NOT EXISTS revenue_ledger_no_update "
    "BEFORE UPDATE ON revenue_ledger "
    f"BEGIN SELECT RAISE(ABORT, '{IMMUTABLE_MESSAGE}'); END"
)
_SQLITE_NO_DELETE = DDL(
    "CREATE TRIGGER IF NOT EXISTS revenue_ledger_no_delete "
    "BEFORE DELETE ON revenue_ledger "
    f"BEGIN SELECT RAISE(ABORT, '{IMMUTABLE_MESSAGE}'); END"
)
_PG_GUARD_FUNCTION = DDL(
    "CREATE OR REPLACE FUNCTION revenue_ledger_immutable() RETURNS trigger AS $$ "
    f"BEGIN RAISE EXCEPTION '{IMMUTABLE_MESSAGE}'; END; "
    "$$ LANGUAGE plpgsql"
)
_PG_GUARD_TRIGGER = DDL(
    "CREATE TRIGGER revenue_ledger_immutable_trg "
    "BEFORE UPDATE OR DELETE ON revenue_ledger "
    "FOR EACH ROW EXECUTE FUNCTION revenue_ledger_immutable()"
)

event.listen(LedgerEntry.__table__, "after_create", _SQLITE_NO_UPDATE.execute_if(dialect="sqlite"))
event.listen(LedgerEntry.__table__, "after_create", _SQLITE_NO_DELETE.execute_if(dialect="sqlite"))
event.listen(LedgerEntry.__table__, "after_create", _PG_GUARD_FUNCTION.execute_if(dialect="postgresql"))
event.listen(LedgerEntry.__table__, "after_create", _PG_GUARD_TRIGGER.execute_if(dialect="postgresql"))


@event.listens_for(LedgerEntry, "before_update")
def _reject_update(mapper, connection, target: LedgerEntry) -> None:
    raise LedgerImmutableError(f"{IMMUTABLE_MESSAGE}: update of entry {target.id} rejected")


@event.listens_for(LedgerEntry, "before_delete")
def _reject_delete(mapper, connection, target: LedgerEntry) -> None:
    raise LedgerImmutableError(f"{IMMUTABLE_MESSAGE}: delete of entry {target.id} rejected")
