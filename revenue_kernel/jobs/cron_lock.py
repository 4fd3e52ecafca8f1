"""Short-TTL lock preventing overlapping runs of the same periodic job.

Redis variant: ``SET cron_lock:{name} <token> NX EX ttl``; release deletes
the key only if it still holds the caller's token. If Redis cannot be
reached the lock is reported as not acquired and the run is skipped.

``acquire`` returns the ownership token (or None) and ``release`` needs it
back, so a run that outlived its TTL cannot free a lock someone else has
taken since.
"""
from __future__ import annotations

import threading
import time
import uuid
from contextlib import contextmanager
from typing import ContextManager, Dict, Iterator, Optional, Protocol, Tuple

import redis

from revenue_kernel.config import CRON_SETTINGS, REDIS_SETTINGS
from revenue_kernel.utils import get_logger

logger = get_logger(__name__)

RELEASE_IF_OWNER_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('DEL', KEYS[1])
end
return 0
"""


def lock_ttl_for(name: str) -> int:
    ttls = CRON_SETTINGS.get("lock_ttl_seconds") or {}
    return int(ttls.get(name, CRON_SETTINGS["default_lock_ttl_seconds"]))  # type: ignore[union-attr]


class CronLock(Protocol):
    def acquire(self, name: str, ttl_seconds: int) -> Optional[str]: ...
    def release(self, name: str, token: str) -> bool: ...
    def hold(self, name: str, ttl_seconds: Optional[int] = None) -> ContextManager[bool]: ...


class _HoldMixin:
    @contextmanager
    def hold(self, name: str, ttl_seconds: Optional[int] = None) -> Iterator[bool]:
        """Yield True when the lock was acquired; releases only the token it took."""
        ttl = int(ttl_seconds or lock_ttl_for(name))
        token = self.acquire(name, ttl)  # type: ignore[attr-defined]
        if token is None:
            logger.info("Cron lock held elsewhere; skipping run", lock=name)
        try:
            yield token is not None
        finally:
            if token is not None and not self.release(name, token):  # type: ignore[attr-defined]
                logger.warning("Cron lock expired before release", lock=name, ttl_seconds=ttl)


class RedisCronLock(_HoldMixin):
    def __init__(self, client: Optional[redis.Redis] = None, *, url: Optional[str] = None) -> None:
        if client is None:
            client = redis.from_url(
                str(url or REDIS_SETTINGS["url"]),
                socket_timeout=float(REDIS_SETTINGS["socket_timeout"]),  # type: ignore[arg-type]
            )
        self._client = client
        self._prefix = str(CRON_SETTINGS["lock_key_prefix"])

    def _key(self, name: str) -> str:
        return f"{self._prefix}{name}"

    def acquire(self, name: str, ttl_seconds: int) -> Optional[str]:
        token = uuid.uuid4().hex
        try:
            ok = self._client.set(self._key(name), token, nx=True, ex=max(1, int(ttl_seconds)))
        except redis.RedisError as e:
            logger.warning("Cron lock acquire failed; skipping run", lock=name, error=str(e))
            return None
        return token if ok else None

    def release(self, name: str, token: str) -> bool:
        """Delete the lock if it still holds ``token``; False when it did not."""
        try:
            deleted = self._client.eval(RELEASE_IF_OWNER_SCRIPT, 1, self._key(name), token)
        except redis.RedisError as e:
            logger.warning("Cron lock release failed; lock will expire", lock=name, error=str(e))
            return False
        return int(deleted or 0) == 1


class InMemoryCronLock(_HoldMixin):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        # name -> (token, monotonic expiry)
        self._held: Dict[str, Tuple[str, float]] = {}

    def acquire(self, name: str, ttl_seconds: int) -> Optional[str]:
        now = time.monotonic()
        with self._lock:
            current = self._held.get(name)
            if current is not None and current[1] > now:
                return None
            token = uuid.uuid4().hex
            self._held[name] = (token, now + max(1, int(ttl_seconds)))
            return token

    def release(self, name: str, token: str) -> bool:
        with self._lock:
            current = self._held.get(name)
            if current is None or current[0] != token:
                return False
            del self._held[name]
            return True


def create_cron_lock() -> CronLock:
    if REDIS_SETTINGS.get("use_redis"):
        return RedisCronLock()
    return InMemoryCronLock()


__all__ = ["CronLock", "RedisCronLock", "InMemoryCronLock", "create_cron_lock", "lock_ttl_for"]
