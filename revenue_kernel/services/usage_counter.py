"""Fast-path usage counters (cache) keyed by site and billing period.

Ingest increments these for cheap quota checks; the reconciliation worker
compares them with the authoritative count and overwrites them on drift.
Every failure talking to the cache surfaces as ``CacheUnavailableError`` so
callers can treat the cache as best effort.
"""
from __future__ import annotations

import threading
from datetime import datetime
from typing import Dict, Optional, Protocol

import redis

from revenue_kernel.config import RECONCILIATION_SETTINGS, REDIS_SETTINGS
from revenue_kernel.utils import get_logger
from revenue_kernel.utils.time import seconds_until_period_end

logger = get_logger(__name__)


class CacheUnavailableError(RuntimeError):
    """The fast-path counter store could not be reached or returned garbage."""


def usage_key(site_id: str, year_month: str) -> str:
    return f"{RECONCILIATION_SETTINGS['cache_key_prefix']}{site_id}:{year_month}"


def usage_ttl_seconds(year_month: str, now: Optional[datetime] = None) -> int:
    """Keys live until the end of their period, never longer than the cap."""
    cap = int(RECONCILIATION_SETTINGS["cache_max_ttl_seconds"])
    return max(1, min(seconds_until_period_end(year_month, now), cap))


class UsageCounter(Protocol):
    def get(self, site_id: str, year_month: str) -> Optional[int]: ...
    def set(self, site_id: str, year_month: str, value: int, *, now: Optional[datetime] = None) -> None: ...
    def increment(self, site_id: str, year_month: str, amount: int = 1, *, now: Optional[datetime] = None) -> int: ...


class RedisUsageCounter:
    def __init__(self, client: Optional[redis.Redis] = None, *, url: Optional[str] = None) -> None:
        if client is None:
            client = redis.from_url(
                str(url or REDIS_SETTINGS["url"]),
                socket_timeout=float(REDIS_SETTINGS["socket_timeout"]),  # type: ignore[arg-type]
            )
        self._client = client

    def get(self, site_id: str, year_month: str) -> Optional[int]:
        try:
            raw = self._client.get(usage_key(site_id, year_month))
        except redis.RedisError as e:
            raise CacheUnavailableError(str(e)) from e
        if raw is None:
            return None
        try:
            return int(raw)
        except (TypeError, ValueError) as e:
            raise CacheUnavailableError(f"Non-integer usage counter value: {raw!r}") from e

    def set(self, site_id: str, year_month: str, value: int, *, now: Optional[datetime] = None) -> None:
        try:
            self._client.set(usage_key(site_id, year_month), int(value), ex=usage_ttl_seconds(year_month, now))
        except redis.RedisError as e:
            raise CacheUnavailableError(str(e)) from e

    def increment(self, site_id: str, year_month: str, amount: int = 1, *, now: Optional[datetime] = None) -> int:
        key = usage_key(site_id, year_month)
        try:
            value = self._client.incrby(key, int(amount))
            self._client.expire(key, usage_ttl_seconds(year_month, now))
        except redis.RedisError as e:
            raise CacheUnavailableError(str(e)) from e
        return int(value)


class InMemoryUsageCounter:
    """Process-local counter store for single-process deployments and tests."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._values: Dict[str, int] = {}

    def get(self, site_id: str, year_month: str) -> Optional[int]:
        with self._lock:
            return self._values.get(usage_key(site_id, year_month))

    def set(self, site_id: str, year_month: str, value: int, *, now: Optional[datetime] = None) -> None:
        with self._lock:
            self._values[usage_key(site_id, year_month)] = int(value)

    def increment(self, site_id: str, year_month: str, amount: int = 1, *, now: Optional[datetime] = None) -> int:
        key = usage_key(site_id, year_month)
        with self._lock:
            self._values[key] = self._values.get(key, 0) + int(amount)
            return self._values[key]


def create_usage_counter() -> UsageCounter:
    if REDIS_SETTINGS.get("use_redis"):
        logger.info("Using Redis usage counters", url=str(REDIS_SETTINGS["url"]))
        return RedisUsageCounter()
    return InMemoryUsageCounter()


__all__ = [
    "CacheUnavailableError",
    "UsageCounter",
    "RedisUsageCounter",
    "InMemoryUsageCounter",
    "create_usage_counter",
    "usage_key",
    "usage_ttl_seconds",
]
