"""Credential lookup for provider uploads.

Storage and encryption of credentials live outside this service; the
runner only needs an opaque blob per (site, provider).
"""
from __future__ import annotations

import json
from typing import Any, Dict, Optional, Protocol, Tuple

from revenue_kernel.config import PROVIDER_CREDENTIALS_JSON
from revenue_kernel.utils import get_logger

logger = get_logger(__name__)


class CredentialStore(Protocol):
    def get_credentials(self, site_id: str, provider_key: str) -> Optional[Any]: ...


class StaticCredentialStore:
    """Credentials from an in-memory mapping keyed by (site_id, provider_key).

    A ``"*"`` site entry acts as a default for every site of that provider.
    """

    def __init__(self, credentials: Optional[Dict[Tuple[str, str], Any]] = None):
        self._credentials: Dict[Tuple[str, str], Any] = dict(credentials or {})

    def set(self, site_id: str, provider_key: str, blob: Any) -> None:
        self._credentials[(site_id, provider_key)] = blob

    def get_credentials(self, site_id: str, provider_key: str) -> Optional[Any]:
        blob = self._credentials.get((site_id, provider_key))
        if blob is None:
            blob = self._credentials.get(("*", provider_key))
        return blob


def load_credential_store(raw_json: Optional[str] = None) -> StaticCredentialStore:
    """Build the store from ``PROVIDER_CREDENTIALS_JSON``.

    Expected shape: ``{"<site_id>:<provider_key>": <blob>, ...}``.
    Malformed input yields an empty store (every upload then reports
    missing credentials).
    """
    raw = raw_json if raw_json is not None else PROVIDER_CREDENTIALS_JSON
    if not raw:
        return StaticCredentialStore()
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.error("PROVIDER_CREDENTIALS_JSON is not valid JSON", error=str(e))
        return StaticCredentialStore()
    if not isinstance(data, dict):
        logger.error("PROVIDER_CREDENTIALS_JSON must be an object")
        return StaticCredentialStore()

    credentials: Dict[Tuple[str, str], Any] = {}
    for key, blob in data.items():
        site_id, sep, provider_key = str(key).rpartition(":")
        if not sep or not site_id or not provider_key:
            logger.warning("Ignoring credential entry with malformed key", key=key)
            continue
        credentials[(site_id, provider_key)] = blob
    return StaticCredentialStore(credentials)


__all__ = ["CredentialStore", "StaticCredentialStore", "load_credential_store"]
