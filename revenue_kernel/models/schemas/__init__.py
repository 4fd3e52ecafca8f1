from .base import ResponseBase
from .queue import (
    ClickIds,
    ConversionEnqueue,
    QueueActionRequest,
    QueueRowRead,
    QueueRowPage,
    QueueStats,
)
from .cron import (
    UploadRunRequest,
    AttemptCapRequest,
    RecoverProcessingRequest,
    ReconcileRunRequest,
    BackfillRequest,
)

__all__ = [
    "ResponseBase",

    # Queue
    "ClickIds",
    "ConversionEnqueue",
    "QueueActionRequest",
    "QueueRowRead",
    "QueueRowPage",
    "QueueStats",

    # Cron
    "UploadRunRequest",
    "AttemptCapRequest",
    "RecoverProcessingRequest",
    "ReconcileRunRequest",
    "BackfillRequest",
]
