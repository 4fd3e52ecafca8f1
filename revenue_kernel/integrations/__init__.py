"""
Provider integrations: adapter contract, registry and credential lookup.
"""
from typing import Dict, Iterable, List, Optional

from revenue_kernel.utils import get_logger

from .base import ConversionUpload, ProviderAdapter, UploadOutcome, UploadStatus
from .credentials import CredentialStore, StaticCredentialStore, load_credential_store
from .errors import (
    CredentialsMissingError,
    ProviderError,
    UnknownProviderError,
    classify_provider_error,
)
from .mock import MockConversionAdapter

logger = get_logger(__name__)


class ProviderRegistry:
    """Maps provider keys to adapter instances."""

    def __init__(self, adapters: Optional[Iterable[ProviderAdapter]] = None):
        self._adapters: Dict[str, ProviderAdapter] = {}
        for adapter in adapters or ():
            self.register(adapter)

    def register(self, adapter: ProviderAdapter, provider_key: Optional[str] = None) -> None:
        key = (provider_key or adapter.provider_key).lower()
        if not key:
            raise ValueError("Adapter has no provider_key")
        self._adapters[key] = adapter

    def get(self, provider_key: str) -> ProviderAdapter:
        adapter = self._adapters.get(provider_key.lower())
        if adapter is None:
            logger.error(
                "Unsupported provider",
                provider_key=provider_key,
                supported_providers=self.keys(),
            )
            raise UnknownProviderError(provider_key)
        return adapter

    def keys(self) -> List[str]:
        return sorted(self._adapters)


def default_registry() -> ProviderRegistry:
    return ProviderRegistry([MockConversionAdapter()])


__all__ = [
    "ConversionUpload",
    "ProviderAdapter",
    "UploadOutcome",
    "UploadStatus",
    "CredentialStore",
    "StaticCredentialStore",
    "load_credential_store",
    "CredentialsMissingError",
    "ProviderError",
    "UnknownProviderError",
    "classify_provider_error",
    "MockConversionAdapter",
    "ProviderRegistry",
    "default_registry",
]
