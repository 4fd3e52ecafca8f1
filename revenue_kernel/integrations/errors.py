"""Provider error taxonomy and the single classification point.

Adapters either return an ``UploadOutcome`` or raise; whatever they raise is
turned into an outcome here, once, and nothing downstream re-interprets it.
"""
from __future__ import annotations

from revenue_kernel.models.db.enums import ProviderErrorCategory

from .base import UploadOutcome, UploadStatus

RETRYABLE_CATEGORIES = frozenset({ProviderErrorCategory.TRANSIENT, ProviderErrorCategory.AUTH})
PERMANENT_CATEGORIES = frozenset({
    ProviderErrorCategory.VALIDATION,
    ProviderErrorCategory.PERMANENT,
    ProviderErrorCategory.DETERMINISTIC_SKIP,
})


class ProviderError(Exception):
    """Raised by adapters that already know how a failure should be treated."""

    def __init__(self, message: str, *, category: ProviderErrorCategory, code: str | None = None):
        super().__init__(message)
        self.category = ProviderErrorCategory(category)
        self.code = code


class UnknownProviderError(LookupError):
    """No adapter registered under the requested provider key."""


class CredentialsMissingError(LookupError):
    """No usable credentials for a (site, provider) pair."""


def outcome_for_category(category: ProviderErrorCategory, *, code: str | None, message: str | None) -> UploadOutcome:
    status = UploadStatus.RETRYABLE_FAILURE if category in RETRYABLE_CATEGORIES else UploadStatus.PERMANENT_FAILURE
    return UploadOutcome(status=status, error_code=code, error_category=category, error_message=message)


def classify_provider_error(exc: BaseException) -> UploadOutcome:
    """Map an adapter exception to an outcome.

    Unknown exceptions are retryable: rate limits, timeouts and network
    hiccups are TRANSIENT, credential rejections are AUTH.
    """
    if isinstance(exc, ProviderError):
        return outcome_for_category(exc.category, code=exc.code, message=str(exc))

    msg = str(exc) or type(exc).__name__
    lowered = msg.lower()
    if "401" in msg or "403" in msg or "unauthorized" in lowered or "auth" in lowered:
        return outcome_for_category(ProviderErrorCategory.AUTH, code="AUTH_ERROR", message=msg)
    if "rate limit" in lowered or "429" in msg or "quota" in lowered:
        return outcome_for_category(ProviderErrorCategory.TRANSIENT, code="RATE_LIMITED", message=msg)
    if isinstance(exc, (TimeoutError, ConnectionError)) or "timeout" in lowered:
        return outcome_for_category(ProviderErrorCategory.TRANSIENT, code="NETWORK_ERROR", message=msg)
    return outcome_for_category(ProviderErrorCategory.TRANSIENT, code="PROVIDER_ERROR", message=msg)


__all__ = [
    "ProviderError",
    "UnknownProviderError",
    "CredentialsMissingError",
    "RETRYABLE_CATEGORIES",
    "PERMANENT_CATEGORIES",
    "outcome_for_category",
    "classify_provider_error",
]
