"""Per-IP admission control.

A fixed-window counter keyed by client IP, optionally scoped to an endpoint.
Counter stores are injected so a single instance can use an in-process map
while a fleet shares Redis.
"""

from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Dict, Optional, Protocol, Tuple

from redis.exceptions import RedisError

from warden.logging import get_logger
from warden.service.errors import RateLimitedError, StorageUnavailableError

if TYPE_CHECKING:
    from warden.config import Settings
    from warden.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

DEFAULT_WINDOW_SECONDS = 60


@dataclass(frozen=True)
class RateLimitRule:
    requests: int
    window_seconds: int
    endpoint_specific: bool = False

    @property
    def enabled(self) -> bool:
        return self.requests > 0


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_seconds: int


def rate_limit_key(client_ip: str, endpoint: Optional[str] = None) -> str:
    if endpoint:
        return f"rate:ip:{client_ip}:{endpoint}"
    return f"rate:ip:{client_ip}"


class CounterStore(Protocol):
    async def hit(self, key: str, window_seconds: int) -> Tuple[int, float]:
        """Count one hit; return ``(count_in_window, seconds_until_reset)``."""
        ...


class MemoryRateLimitStore:
    """Lock-guarded fixed-window counters for single-instance deployments."""

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.monotonic,
        prune_every: int = 1000,
    ) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._buckets: Dict[str, Tuple[int, float]] = {}
        self._prune_every = max(1, prune_every)
        self._hits_since_prune = 0

    def _prune(self, now: float) -> None:
        expired = [key for key, (_, reset_at) in self._buckets.items() if reset_at <= now]
        for key in expired:
            del self._buckets[key]

    def hit_sync(self, key: str, window_seconds: int) -> Tuple[int, float]:
        with self._lock:
            now = self._clock()
            self._hits_since_prune += 1
            if self._hits_since_prune >= self._prune_every:
                self._prune(now)
                self._hits_since_prune = 0
            count, reset_at = self._buckets.get(key, (0, 0.0))
            if reset_at <= now:
                count, reset_at = 0, now + window_seconds
            count += 1
            self._buckets[key] = (count, reset_at)
            return count, reset_at - now

    async def hit(self, key: str, window_seconds: int) -> Tuple[int, float]:
        return self.hit_sync(key, window_seconds)

    def __len__(self) -> int:
        with self._lock:
            return len(self._buckets)


class RedisRateLimitStore:
    """Shared counters in Redis; increment and expiry happen in one Lua call."""

    def __init__(self, cache: "RedisCache | SyncRedisCache") -> None:
        self.cache = cache

    async def hit(self, key: str, window_seconds: int) -> Tuple[int, float]:
        try:
            count, ttl_ms = await self.cache.hit_fixed_window(key, window_seconds)
        except RedisError as exc:
            logger.error("rate_limit_store_unavailable", error=str(exc))
            raise StorageUnavailableError(
                "Rate limit store unavailable", detail={"error": str(exc)}
            ) from exc
        return count, max(ttl_ms, 0) / 1000.0


class RateLimiter:
    def __init__(self, store: CounterStore, *, enabled: bool = True) -> None:
        self.store = store
        self.enabled = enabled

    async def check_and_consume(
        self,
        client_ip: str,
        endpoint: Optional[str],
        limit: int,
        window_seconds: int,
    ) -> RateLimitDecision:
        """Consume one unit of the caller's budget and report whether it fit."""

        if not self.enabled or limit <= 0:
            return RateLimitDecision(True, limit, max(limit, 0), 0)
        if window_seconds <= 0:
            logger.warning(
                "rate_limit_window_invalid",
                window_seconds=window_seconds,
                fallback=DEFAULT_WINDOW_SECONDS,
            )
            window_seconds = DEFAULT_WINDOW_SECONDS
        key = rate_limit_key(client_ip, endpoint)
        count, reset_in = await self.store.hit(key, window_seconds)
        reset_seconds = max(1, math.ceil(reset_in))
        allowed = count <= limit
        return RateLimitDecision(
            allowed=allowed,
            limit=limit,
            remaining=max(0, limit - count),
            reset_seconds=reset_seconds,
        )

    async def enforce(
        self,
        client_ip: str,
        rule: RateLimitRule,
        *,
        endpoint: Optional[str] = None,
    ) -> RateLimitDecision:
        """Raise ``RateLimitedError`` when the rule's budget is exhausted."""

        decision = await self.check_and_consume(
            client_ip,
            endpoint if rule.endpoint_specific else None,
            rule.requests,
            rule.window_seconds,
        )
        if not decision.allowed:
            logger.warning(
                "rate_limit_exceeded",
                client_ip=client_ip,
                endpoint=endpoint,
                limit=decision.limit,
                retry_after=decision.reset_seconds,
            )
            raise RateLimitedError(
                retry_after=decision.reset_seconds,
                detail={"limit": decision.limit},
            )
        return decision


OPERATIONS = (
    "register",
    "login",
    "refresh",
    "verify",
    "resend_verification",
    "forgot_password",
    "reset_password",
    "change_password",
)


def rules_from_settings(settings: "Settings") -> Dict[str, RateLimitRule]:
    """Build the per-operation rules from ``<op>_rate_limit_*`` settings."""

    rules: Dict[str, RateLimitRule] = {}
    for op in OPERATIONS:
        rules[op] = RateLimitRule(
            requests=getattr(settings, f"{op}_rate_limit_requests"),
            window_seconds=getattr(settings, f"{op}_rate_limit_window_seconds"),
            endpoint_specific=settings.rate_limit_endpoint_specific,
        )
    return rules
