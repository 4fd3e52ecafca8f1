"""TTL-bounded counting semaphore for in-flight provider uploads.

Each scope is a sorted set: members are random tokens, scores are expiry
timestamps in milliseconds. Acquire purges expired members, counts, and adds
a token only while under the limit; on Redis the three steps run as one Lua
script so concurrent callers cannot both observe a free slot.

Failure policy is fail-closed: if Redis is unreachable acquire returns None
("no slot"). Release is best effort; leftover tokens expire via their TTL.

Keys:
  conc:{site_id}:{provider_key}   per tenant and provider
  conc:global:{provider_key}      per provider across tenants
"""
from __future__ import annotations

import threading
import time
import uuid
from typing import Dict, Optional, Protocol

import redis

from revenue_kernel.config import REDIS_SETTINGS
from revenue_kernel.utils import get_logger

logger = get_logger(__name__)

ACQUIRE_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local ttl = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local token = ARGV[4]
redis.call('ZREMRANGEBYSCORE', key, '-inf', now)
local count = redis.call('ZCARD', key)
if count < limit then
  redis.call('ZADD', key, now + ttl, token)
  redis.call('PEXPIRE', key, ttl)
  return 1
end
return 0
"""

RELEASE_SCRIPT = """
return redis.call('ZREM', KEYS[1], ARGV[1])
"""


def site_provider_key(site_id: str, provider_key: str) -> str:
    return f"conc:{site_id}:{provider_key}"


def global_provider_key(provider_key: str) -> str:
    return f"conc:global:{provider_key}"


def _now_ms() -> int:
    return int(time.time() * 1000)


class ConcurrencySemaphore(Protocol):
    def acquire(self, key: str, limit: int, ttl_ms: int) -> Optional[str]: ...
    def release(self, key: str, token: str) -> None: ...


class RedisSemaphore:
    def __init__(self, client: Optional[redis.Redis] = None, *, url: Optional[str] = None) -> None:
        if client is None:
            client = redis.from_url(
                str(url or REDIS_SETTINGS["url"]),
                socket_timeout=float(REDIS_SETTINGS["socket_timeout"]),  # type: ignore[arg-type]
            )
        self._client = client

    def acquire(self, key: str, limit: int, ttl_ms: int) -> Optional[str]:
        if limit <= 0:
            return None
        token = uuid.uuid4().hex
        try:
            acquired = self._client.eval(ACQUIRE_SCRIPT, 1, key, _now_ms(), int(ttl_ms), int(limit), token)
        except redis.RedisError as e:
            logger.warning("Semaphore acquire failed; treating as no slot", key=key, error=str(e))
            return None
        if int(acquired or 0) == 1:
            return token
        return None

    def release(self, key: str, token: str) -> None:
        try:
            self._client.eval(RELEASE_SCRIPT, 1, key, token)
        except redis.RedisError as e:
            logger.warning("Semaphore release failed; slot will expire via TTL", key=key, error=str(e))


class InMemorySemaphore:
    """Process-local equivalent for single-process deployments and tests."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._slots: Dict[str, Dict[str, int]] = {}

    def acquire(self, key: str, limit: int, ttl_ms: int) -> Optional[str]:
        if limit <= 0:
            return None
        now = _now_ms()
        with self._lock:
            members = self._slots.setdefault(key, {})
            for token, expires_at in list(members.items()):
                if expires_at <= now:
                    del members[token]
            if len(members) >= limit:
                return None
            token = uuid.uuid4().hex
            members[token] = now + int(ttl_ms)
            return token

    def release(self, key: str, token: str) -> None:
        with self._lock:
            members = self._slots.get(key)
            if members is not None:
                members.pop(token, None)

    def in_flight(self, key: str) -> int:
        now = _now_ms()
        with self._lock:
            return sum(1 for expires_at in self._slots.get(key, {}).values() if expires_at > now)


def create_semaphore() -> ConcurrencySemaphore:
    """Redis-backed when enabled in config, otherwise process-local.

    No local fallback once Redis is configured: an unreachable Redis yields
    no slots.
    """
    if REDIS_SETTINGS.get("use_redis"):
        logger.info("Using Redis-backed concurrency semaphore", url=str(REDIS_SETTINGS["url"]))
        return RedisSemaphore()
    logger.info("Using in-memory concurrency semaphore")
    return InMemorySemaphore()


__all__ = [
    "ConcurrencySemaphore",
    "RedisSemaphore",
    "InMemorySemaphore",
    "create_semaphore",
    "site_provider_key",
    "global_provider_key",
    "ACQUIRE_SCRIPT",
    "RELEASE_SCRIPT",
]
