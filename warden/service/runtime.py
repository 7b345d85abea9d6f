from __future__ import annotations

import asyncio
import threading
from typing import Dict, Optional, Union
from urllib.parse import urlparse, urlunparse

from warden.config import get_settings, reset_settings_cache
from warden.logging import get_logger
from warden.service.auth import AuthService
from warden.service.cleanup_worker import TokenCleanupWorker
from warden.service.events import InMemoryEventPublisher, QueuedEventPublisher
from warden.service.passwords import PasswordHasher
from warden.service.rate_limit import (
    MemoryRateLimitStore,
    RateLimiter,
    RateLimitRule,
    RedisRateLimitStore,
    rules_from_settings,
)
from warden.service.token_lifecycle import TokenLifecycleService
from warden.service.tokens import JwtService
from warden.storage.memory import MemoryStore
from warden.storage.postgres import PostgresStore
from warden.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse(
                (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
            )
        return url
    except Exception:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[Union[RedisCache, SyncRedisCache]] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to a per-test event loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for shared rate limits and the event stream; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; rate limits are per-process "
                    "and events are kept in memory."
                ),
                mode=fallback_mode,
            )

        if self.cache:
            self.events: Union[QueuedEventPublisher, InMemoryEventPublisher] = QueuedEventPublisher(
                self.cache,
                stream_key=self.settings.event_stream_key,
                max_queue_size=self.settings.event_queue_max_size,
                stream_max_len=self.settings.event_stream_max_len,
            )
            counter_store = RedisRateLimitStore(self.cache)
        else:
            self.events = InMemoryEventPublisher()
            counter_store = MemoryRateLimitStore()

        self.rate_limiter = RateLimiter(counter_store, enabled=self.settings.rate_limit_enabled)
        self.rate_limit_rules: Dict[str, RateLimitRule] = rules_from_settings(self.settings)

        self.hasher = PasswordHasher()
        self.jwt = JwtService(self.settings)
        self.lifecycle = TokenLifecycleService(
            self.store, self.hasher, self.settings, publisher=self.events
        )
        self.auth = AuthService(
            self.store, self.jwt, self.hasher, self.lifecycle, publisher=self.events
        )
        self.cleanup_worker = TokenCleanupWorker(
            self.lifecycle, interval=self.settings.token_cleanup_interval_seconds
        )

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            rate_limit_enabled=self.settings.rate_limit_enabled,
            event_publisher=type(self.events).__name__,
        )

    async def start_background(self) -> None:
        if isinstance(self.events, QueuedEventPublisher):
            await self.events.start()
        if self.settings.token_cleanup_enabled and not self.settings.test_mode:
            await self.cleanup_worker.start()

    async def stop_background(self) -> None:
        await self.cleanup_worker.stop()
        if isinstance(self.events, QueuedEventPublisher):
            await self.events.stop()

    async def close(self) -> None:
        """Release the database pool and Redis connections."""
        close_store = getattr(self.store, "close", None)
        if close_store is not None:
            try:
                await asyncio.to_thread(close_store)
            except Exception as exc:
                logger.error("runtime_store_close_failed", error=str(exc))
        if self.cache is not None:
            try:
                await self.cache.close()
            except Exception as exc:
                logger.error("runtime_cache_close_failed", error=str(exc))
        logger.info("runtime_closed", store_type=type(self.store).__name__)


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def _close_previous(previous: Runtime) -> None:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        asyncio.run(previous.close())
        return
    loop.create_task(previous.close())


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            _close_previous(runtime)

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
