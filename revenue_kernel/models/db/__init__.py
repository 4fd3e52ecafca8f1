from .enums import (
    QueueStatus,
    ProviderErrorCategory,
    QueueAction,
    UploadAttemptPhase,
    ReconciliationJobStatus,
    BillingState,
    BreakerState,
)
from .offline_conversions import OfflineConversionJob
from .ledger import LedgerEntry, LedgerImmutableError
from .usage import BillableEvent, SiteUsageMonthly
from .reconciliation_jobs import ReconciliationJob
from .provider_health import ProviderHealth
from .provider_upload_attempts import ProviderUploadAttempt, UploadAttemptImmutableError

__all__ = [
    "QueueStatus",
    "ProviderErrorCategory",
    "QueueAction",
    "UploadAttemptPhase",
    "ReconciliationJobStatus",
    "BillingState",
    "BreakerState",
    "OfflineConversionJob",
    "LedgerEntry",
    "LedgerImmutableError",
    "BillableEvent",
    "SiteUsageMonthly",
    "ReconciliationJob",
    "ProviderHealth",
    "ProviderUploadAttempt",
    "UploadAttemptImmutableError",
]
