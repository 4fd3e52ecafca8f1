"""
Mock conversion-import adapter.
Simulates a provider for local development and tests: scripted outcomes
first, then random transient failures at ``MOCK_FAILURE_RATE``.
"""
import random
import threading
from typing import Any, Iterable, List, Optional, Tuple

from revenue_kernel.config import MOCK_FAILURE_RATE
from revenue_kernel.models.db.enums import ProviderErrorCategory
from revenue_kernel.utils import get_logger

from .base import ConversionUpload, ProviderAdapter, UploadOutcome
from .errors import ProviderError

logger = get_logger(__name__)


class MockConversionAdapter(ProviderAdapter):
    """In-process stand-in for an ad platform's conversion upload API."""

    provider_key = "mock"

    def __init__(
        self,
        script: Optional[Iterable[Any]] = None,
        *,
        failure_rate: Optional[float] = None,
        seed: Optional[int] = None,
        provider_key: Optional[str] = None,
    ):
        if provider_key:
            self.provider_key = provider_key
        self._script: List[Any] = list(script or [])
        self._failure_rate = MOCK_FAILURE_RATE if failure_rate is None else float(failure_rate)
        self._random = random.Random(seed)
        self._lock = threading.Lock()
        # (job_id, idempotency_key) per call, in order
        self.calls: List[Tuple[str, str]] = []
        self._accepted: dict[str, str] = {}

    def _next_scripted(self) -> Optional[Any]:
        with self._lock:
            if self._script:
                return self._script.pop(0)
        return None

    def _upload(self, job: ConversionUpload, idempotency_key: str, credentials: Any) -> UploadOutcome:
        with self._lock:
            self.calls.append((job.job_id, idempotency_key))

        scripted = self._next_scripted()
        if isinstance(scripted, BaseException):
            raise scripted
        if isinstance(scripted, UploadOutcome):
            return scripted

        if self._failure_rate > 0 and self._random.random() < self._failure_rate:
            raise ProviderError(
                "Simulated provider timeout",
                category=ProviderErrorCategory.TRANSIENT,
                code="MOCK_TIMEOUT",
            )

        with self._lock:
            # Same order id twice: the provider reports it as already processed
            if idempotency_key in self._accepted:
                return UploadOutcome.success(provider_ref=self._accepted[idempotency_key])
            ref = f"mock-{len(self._accepted) + 1}"
            self._accepted[idempotency_key] = ref
        logger.debug("Mock upload accepted", job_id=job.job_id, order_id=idempotency_key, provider_ref=ref)
        return UploadOutcome.success(provider_ref=ref)

    @property
    def accepted_order_ids(self) -> List[str]:
        with self._lock:
            return list(self._accepted)
