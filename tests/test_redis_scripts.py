"""Semaphore and cron lock Lua scripts executed by a Redis server.

Runs against fakeredis (with its Lua runtime) by default. To use a real
server instead:
    export USE_REAL_REDIS=true
    export REDIS_URL=redis://localhost:6379/15
    pytest tests/test_redis_scripts.py
"""
import os
import threading

import pytest
import redis

from revenue_kernel.jobs.cron_lock import RedisCronLock
from revenue_kernel.jobs.semaphore import RedisSemaphore, site_provider_key

USE_REAL_REDIS = os.environ.get("USE_REAL_REDIS", "").lower() in ("true", "1", "yes")


@pytest.fixture()
def redis_client():
    if USE_REAL_REDIS:
        client = redis.from_url(os.environ.get("REDIS_URL", "redis://localhost:6379/15"), socket_connect_timeout=2.0)
        try:
            client.ping()
        except redis.RedisError as e:
            pytest.skip(f"Real Redis requested but not available: {e}")
    else:
        fakeredis = pytest.importorskip("fakeredis")
        client = fakeredis.FakeRedis()
        try:
            client.eval("return 1", 0)
        except (redis.RedisError, ImportError) as e:
            pytest.skip(f"fakeredis installed without Lua support: {e}")
    client.flushdb()
    yield client
    client.flushdb()


# ---------- semaphore ----------

def test_acquire_grants_up_to_limit(redis_client):
    sem = RedisSemaphore(redis_client)
    key = site_provider_key("site-a", "mock")

    tokens = [sem.acquire(key, 3, 60_000) for _ in range(5)]

    granted = [t for t in tokens if t is not None]
    assert len(granted) == 3
    assert tokens[3:] == [None, None]
    assert redis_client.zcard(key) == 3
    assert 0 < redis_client.pttl(key) <= 60_000


def test_release_frees_a_slot(redis_client):
    sem = RedisSemaphore(redis_client)
    first = sem.acquire("k", 1, 60_000)
    assert first is not None
    assert sem.acquire("k", 1, 60_000) is None

    sem.release("k", first)

    assert sem.acquire("k", 1, 60_000) is not None


def test_expired_tokens_are_purged_on_acquire(redis_client):
    sem = RedisSemaphore(redis_client)
    # A crashed holder's slot, already past its expiry score
    redis_client.zadd("k", {"stale-token": 1})

    assert sem.acquire("k", 1, 60_000) is not None
    assert redis_client.zscore("k", "stale-token") is None


def test_concurrent_acquires_never_exceed_limit(redis_client):
    sem = RedisSemaphore(redis_client)
    results = []
    guard = threading.Lock()
    barrier = threading.Barrier(8)

    def worker():
        barrier.wait()
        token = sem.acquire("hot", 3, 60_000)
        with guard:
            results.append(token)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len([t for t in results if t is not None]) == 3
    assert redis_client.zcard("hot") == 3


# ---------- cron lock ----------

def test_cron_lock_is_exclusive_across_instances(redis_client):
    first, second = RedisCronLock(redis_client), RedisCronLock(redis_client)

    token = first.acquire("upload", 60)
    assert token is not None
    assert second.acquire("upload", 60) is None
    assert 0 < redis_client.ttl("cron_lock:upload") <= 60

    assert first.release("upload", token) is True
    assert second.acquire("upload", 60) is not None


def test_cron_lock_release_checks_owner(redis_client):
    lock = RedisCronLock(redis_client)
    stale = lock.acquire("upload", 60)
    # TTL ran out and another run took the lock
    redis_client.delete("cron_lock:upload")
    current = lock.acquire("upload", 60)

    assert lock.release("upload", stale) is False
    assert redis_client.get("cron_lock:upload") == current.encode()
    assert lock.release("upload", current) is True
    assert redis_client.exists("cron_lock:upload") == 0


def test_cron_lock_hold_releases_on_exit(redis_client):
    lock = RedisCronLock(redis_client)
    with lock.hold("reconcile_run") as acquired:
        assert acquired is True
        assert redis_client.exists("cron_lock:reconcile_run") == 1
    assert redis_client.exists("cron_lock:reconcile_run") == 0
