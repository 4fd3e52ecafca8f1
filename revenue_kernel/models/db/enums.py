"""Central Enum definitions for queue, reconciliation and provider states.

These replace scattered string literals to ensure consistency across
DB models, schemas, and business logic.
"""
from __future__ import annotations
import enum


class QueueStatus(str, enum.Enum):
    QUEUED = "QUEUED"
    RETRY = "RETRY"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


CLAIMABLE_STATUSES = (QueueStatus.QUEUED, QueueStatus.RETRY)
TERMINAL_STATUSES = (QueueStatus.COMPLETED, QueueStatus.FAILED)


class ProviderErrorCategory(str, enum.Enum):
    VALIDATION = "VALIDATION"
    TRANSIENT = "TRANSIENT"
    PERMANENT = "PERMANENT"
    DETERMINISTIC_SKIP = "DETERMINISTIC_SKIP"
    AUTH = "AUTH"


class QueueAction(str, enum.Enum):
    RETRY_SELECTED = "RETRY_SELECTED"
    RESET_TO_QUEUED = "RESET_TO_QUEUED"
    MARK_FAILED = "MARK_FAILED"


class UploadAttemptPhase(str, enum.Enum):
    STARTED = "STARTED"
    FINISHED = "FINISHED"

# ------------------ Reconciliation / Billing Enums ------------------ #

class ReconciliationJobStatus(str, enum.Enum):
    QUEUED = "QUEUED"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class BillingState(str, enum.Enum):
    INCLUDED = "INCLUDED"
    OVERAGE = "OVERAGE"

# ------------------------- Provider health -------------------------- #

class BreakerState(str, enum.Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


__all__ = [
    "QueueStatus",
    "CLAIMABLE_STATUSES",
    "TERMINAL_STATUSES",
    "ProviderErrorCategory",
    "QueueAction",
    "UploadAttemptPhase",
    "ReconciliationJobStatus",
    "BillingState",
    "BreakerState",
]
