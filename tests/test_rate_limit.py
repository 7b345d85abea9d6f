"""Tests for per-IP admission control."""

import asyncio
import threading
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from warden.config import Settings
from warden.service.errors import RateLimitedError, StorageUnavailableError
from warden.service.rate_limit import (
    MemoryRateLimitStore,
    RateLimiter,
    RateLimitRule,
    RedisRateLimitStore,
    rate_limit_key,
    rules_from_settings,
)


class ManualClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


async def test_eleventh_login_in_window_is_rejected():
    clock = ManualClock()
    limiter = RateLimiter(MemoryRateLimitStore(clock=clock))
    rule = RateLimitRule(requests=10, window_seconds=60)

    for _ in range(10):
        await limiter.enforce("10.0.0.1", rule, endpoint="/api/auth/login")
    with pytest.raises(RateLimitedError) as exc:
        await limiter.enforce("10.0.0.1", rule, endpoint="/api/auth/login")
    assert exc.value.status_code == 429
    assert 1 <= exc.value.retry_after <= 60

    clock.now += 61
    decision = await limiter.enforce("10.0.0.1", rule, endpoint="/api/auth/login")
    assert decision.allowed
    assert decision.remaining == 9


async def test_ips_are_counted_separately():
    limiter = RateLimiter(MemoryRateLimitStore())
    rule = RateLimitRule(requests=1, window_seconds=60)
    await limiter.enforce("10.0.0.1", rule)
    await limiter.enforce("10.0.0.2", rule)
    with pytest.raises(RateLimitedError):
        await limiter.enforce("10.0.0.1", rule)


async def test_endpoint_specific_scope():
    limiter = RateLimiter(MemoryRateLimitStore())
    scoped = RateLimitRule(requests=1, window_seconds=60, endpoint_specific=True)
    await limiter.enforce("10.0.0.1", scoped, endpoint="/a")
    await limiter.enforce("10.0.0.1", scoped, endpoint="/b")
    with pytest.raises(RateLimitedError):
        await limiter.enforce("10.0.0.1", scoped, endpoint="/a")


async def test_global_scope_shares_budget_across_endpoints():
    limiter = RateLimiter(MemoryRateLimitStore())
    shared = RateLimitRule(requests=1, window_seconds=60, endpoint_specific=False)
    await limiter.enforce("10.0.0.1", shared, endpoint="/a")
    with pytest.raises(RateLimitedError):
        await limiter.enforce("10.0.0.1", shared, endpoint="/b")


async def test_disabled_limiter_and_zero_limit_allow_everything():
    store = MemoryRateLimitStore()
    off = RateLimiter(store, enabled=False)
    for _ in range(5):
        await off.enforce("10.0.0.1", RateLimitRule(requests=1, window_seconds=60))
    on = RateLimiter(store)
    for _ in range(5):
        await on.enforce("10.0.0.1", RateLimitRule(requests=0, window_seconds=60))
    assert len(store) == 0


async def test_invalid_window_falls_back():
    clock = ManualClock()
    limiter = RateLimiter(MemoryRateLimitStore(clock=clock))
    decision = await limiter.check_and_consume("10.0.0.1", None, 5, 0)
    assert decision.allowed
    assert decision.reset_seconds == 60


def test_concurrent_hits_are_counted_exactly():
    store = MemoryRateLimitStore()
    limiter = RateLimiter(store)
    allowed = []
    lock = threading.Lock()
    barrier = threading.Barrier(20)

    def _worker():
        barrier.wait()
        for _ in range(5):
            decision = asyncio.run(limiter.check_and_consume("10.0.0.9", None, 50, 60))
            with lock:
                allowed.append(decision.allowed)

    threads = [threading.Thread(target=_worker) for _ in range(20)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(allowed) == 100
    assert allowed.count(True) == 50
    count, _ = store.hit_sync(rate_limit_key("10.0.0.9"), 60)
    assert count == 101


def test_expired_buckets_are_pruned():
    clock = ManualClock()
    store = MemoryRateLimitStore(clock=clock, prune_every=1)
    store.hit_sync("a", 10)
    store.hit_sync("b", 10)
    clock.now += 11
    store.hit_sync("c", 10)
    assert len(store) == 1


async def test_redis_store_uses_single_round_trip():
    cache = MagicMock()
    cache.hit_fixed_window = AsyncMock(return_value=(3, 42_500))
    limiter = RateLimiter(RedisRateLimitStore(cache))
    decision = await limiter.check_and_consume("10.0.0.1", "/api/auth/login", 10, 60)
    cache.hit_fixed_window.assert_awaited_once_with("rate:ip:10.0.0.1:/api/auth/login", 60)
    assert decision.allowed
    assert decision.remaining == 7
    assert decision.reset_seconds == 43


async def test_redis_store_over_limit():
    cache = MagicMock()
    cache.hit_fixed_window = AsyncMock(return_value=(11, 1_000))
    limiter = RateLimiter(RedisRateLimitStore(cache))
    with pytest.raises(RateLimitedError) as exc:
        await limiter.enforce("10.0.0.1", RateLimitRule(requests=10, window_seconds=60))
    assert exc.value.retry_after == 1


async def test_redis_failure_surfaces_as_storage_unavailable():
    cache = MagicMock()
    cache.hit_fixed_window = AsyncMock(side_effect=RedisConnectionError("down"))
    limiter = RateLimiter(RedisRateLimitStore(cache))
    with pytest.raises(StorageUnavailableError):
        await limiter.check_and_consume("10.0.0.1", None, 10, 60)


def test_rules_from_settings():
    settings = Settings(
        jwt_secret="unit-test-secret-key-with-at-least-32-chars",
        login_rate_limit_requests=7,
        login_rate_limit_window_seconds=30,
        rate_limit_endpoint_specific=False,
    )
    rules = rules_from_settings(settings)
    assert rules["login"] == RateLimitRule(requests=7, window_seconds=30, endpoint_specific=False)
    assert set(rules) >= {"register", "refresh", "forgot_password", "change_password"}
