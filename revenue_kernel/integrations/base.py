from __future__ import annotations

import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict

from revenue_kernel.models.db.enums import ProviderErrorCategory
from revenue_kernel.models.db.offline_conversions import OfflineConversionJob


class UploadStatus(str, enum.Enum):
    SUCCESS = "SUCCESS"
    RETRYABLE_FAILURE = "RETRYABLE_FAILURE"
    PERMANENT_FAILURE = "PERMANENT_FAILURE"


@dataclass
class UploadOutcome:
    status: UploadStatus
    error_code: str | None = None
    error_category: ProviderErrorCategory | None = None
    error_message: str | None = None
    provider_ref: str | None = None

    @classmethod
    def success(cls, provider_ref: str | None = None) -> "UploadOutcome":
        return cls(status=UploadStatus.SUCCESS, provider_ref=provider_ref)


@dataclass(frozen=True)
class ConversionUpload:
    """Provider-agnostic view of a queue row handed to adapters."""

    job_id: str
    site_id: str
    order_id: str
    occurred_at: str
    amount_minor: int
    currency: str
    click_ids: Dict[str, str]
    payload: Dict[str, Any]

    @classmethod
    def from_row(cls, row: OfflineConversionJob, order_id: str) -> "ConversionUpload":
        click_ids = {k: v for k, v in (("gclid", row.gclid), ("wbraid", row.wbraid), ("gbraid", row.gbraid)) if v}
        return cls(
            job_id=row.id,
            site_id=row.site_id,
            order_id=order_id,
            occurred_at=row.occurred_at.isoformat(),
            amount_minor=int(row.amount_minor),
            currency=row.currency,
            click_ids=click_ids,
            payload=dict(row.payload or {}),
        )


class ProviderAdapter(ABC):
    """Uploads one conversion to an external ad platform.

    Subclasses implement ``_upload``; ``upload`` classifies anything it
    raises so callers always receive an ``UploadOutcome``.
    """

    provider_key: str = ""

    def upload(self, job: ConversionUpload, idempotency_key: str, credentials: Any) -> UploadOutcome:
        from .errors import classify_provider_error

        try:
            return self._upload(job, idempotency_key, credentials)
        except Exception as exc:  # boundary: every adapter failure is classified here
            return classify_provider_error(exc)

    @abstractmethod
    def _upload(self, job: ConversionUpload, idempotency_key: str, credentials: Any) -> UploadOutcome:
        """Send the conversion; ``idempotency_key`` is the provider order id."""
        pass
