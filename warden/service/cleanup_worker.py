"""Background sweep of expired verification, reset and refresh tokens."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Dict, Optional

from warden.logging import get_logger

if TYPE_CHECKING:
    from warden.service.token_lifecycle import TokenLifecycleService

logger = get_logger(__name__)

DEFAULT_INTERVAL_SECONDS = 24 * 60 * 60
MAX_BACKOFF_SECONDS = 300


class TokenCleanupWorker:
    """Runs ``cleanup_expired_tokens`` on a fixed interval.

    Each sweep is an idempotent delete, so a failed run is simply retried on the
    next tick (sooner, with backoff, after repeated failures).
    """

    def __init__(
        self,
        lifecycle: "TokenLifecycleService",
        *,
        interval: int = DEFAULT_INTERVAL_SECONDS,
        retry_delay: int = 30,
    ) -> None:
        self.lifecycle = lifecycle
        self.interval = interval
        self.retry_delay = retry_delay
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.last_result: Optional[Dict[str, int]] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the background worker."""
        if self._running:
            logger.warning("token_cleanup_worker_already_running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("token_cleanup_worker_started", interval=self.interval)

    async def stop(self) -> None:
        """Stop the background worker."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("token_cleanup_worker_stopped")

    async def run_once(self) -> Dict[str, int]:
        self.last_result = await self.lifecycle.cleanup_expired_tokens()
        return self.last_result

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        while self._running:
            try:
                await self.run_once()
                consecutive_errors = 0
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "token_cleanup_failed",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
                backoff = min(
                    MAX_BACKOFF_SECONDS,
                    self.retry_delay * (2 ** (consecutive_errors - 1)),
                    self.interval,
                )
                await asyncio.sleep(backoff)
                continue

            await asyncio.sleep(self.interval)
