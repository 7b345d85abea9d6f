from __future__ import annotations

import json
from typing import Any, Dict, Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for rate-limit counters and the outbound event stream."""

    # Fixed window counter: increment, arm the expiry on the first hit and report
    # the remaining window in one round trip.
    _FIXED_WINDOW_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('PEXPIRE', KEYS[1], ARGV[1])
end
local ttl = redis.call('PTTL', KEYS[1])
if ttl < 0 then
  redis.call('PEXPIRE', KEYS[1], ARGV[1])
  ttl = tonumber(ARGV[1])
end
return {count, ttl}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""

        # A short-lived sync client keeps the async client off a temporary loop.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def hit_fixed_window(self, key: str, window_seconds: int) -> Tuple[int, int]:
        """Count one hit against ``key``; returns ``(count, remaining_window_ms)``."""

        count, ttl_ms = await self._fixed_window(
            keys=[key], args=[int(window_seconds * 1000)]
        )
        return int(count), int(ttl_ms)

    async def append_event(
        self, stream_key: str, payload: Dict[str, Any], *, max_len: Optional[int] = None
    ) -> str:
        fields = {"event_type": payload.get("event_type", ""), "payload": json.dumps(payload)}
        return await self.client.xadd(
            stream_key, fields, maxlen=max_len, approximate=True
        )

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for tests and scripts.

    Uses a synchronous client internally to avoid event loop binding issues but
    exposes the same awaitable surface as ``RedisCache``.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self._sync_client.register_script(
            RedisCache._FIXED_WINDOW_SCRIPT
        )

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def hit_fixed_window(self, key: str, window_seconds: int) -> Tuple[int, int]:
        count, ttl_ms = self._fixed_window(keys=[key], args=[int(window_seconds * 1000)])
        return int(count), int(ttl_ms)

    async def append_event(
        self, stream_key: str, payload: Dict[str, Any], *, max_len: Optional[int] = None
    ) -> str:
        fields = {"event_type": payload.get("event_type", ""), "payload": json.dumps(payload)}
        return self._sync_client.xadd(stream_key, fields, maxlen=max_len, approximate=True)

    async def close(self) -> None:
        self._sync_client.close()
