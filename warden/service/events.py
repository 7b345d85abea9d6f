"""Outbound domain events.

Services construct these values after the store call that produced them has
returned and hand them to an ``EventPublisher``. Publishing never blocks the
request and never raises into the caller; delivery is the bus consumer's concern.
"""

from __future__ import annotations

import asyncio
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, ClassVar, List, Optional, Protocol, Union

from warden.logging import get_logger

if TYPE_CHECKING:
    from warden.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

# Queued by ``QueuedEventPublisher.stop`` behind the events still to deliver.
_STOP = object()


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class UserCreated:
    event_type: ClassVar[str] = "user.created"

    user_id: str
    email: str
    username: str
    verification_token: str
    occurred_at: datetime = field(default_factory=_now)

    def to_payload(self) -> dict:
        payload = asdict(self)
        payload["occurred_at"] = self.occurred_at.isoformat()
        payload["event_type"] = self.event_type
        return payload


@dataclass(frozen=True)
class ResendVerificationRequested:
    event_type: ClassVar[str] = "user.request_resend_verification"

    user_id: str
    email: str
    username: str
    verification_token: str
    occurred_at: datetime = field(default_factory=_now)

    def to_payload(self) -> dict:
        payload = asdict(self)
        payload["occurred_at"] = self.occurred_at.isoformat()
        payload["event_type"] = self.event_type
        return payload


@dataclass(frozen=True)
class ResetPasswordRequested:
    event_type: ClassVar[str] = "user.request_reset_password"

    user_id: str
    email: str
    username: str
    reset_token: str
    occurred_at: datetime = field(default_factory=_now)

    def to_payload(self) -> dict:
        payload = asdict(self)
        payload["occurred_at"] = self.occurred_at.isoformat()
        payload["event_type"] = self.event_type
        return payload


UserEvent = Union[UserCreated, ResendVerificationRequested, ResetPasswordRequested]


class EventPublisher(Protocol):
    def publish(self, event: UserEvent) -> None: ...


class InMemoryEventPublisher:
    """Records published events; used in development and tests."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: List[UserEvent] = []

    def publish(self, event: UserEvent) -> None:
        with self._lock:
            self._events.append(event)
        logger.info("event_published", event_type=event.event_type, user_id=event.user_id)

    @property
    def events(self) -> List[UserEvent]:
        with self._lock:
            return list(self._events)

    def of_type(self, event_cls: type) -> List[UserEvent]:
        return [e for e in self.events if isinstance(e, event_cls)]

    def clear(self) -> None:
        with self._lock:
            self._events.clear()


class QueuedEventPublisher:
    """Bounded in-process queue drained into a Redis stream by a background task.

    ``publish`` only enqueues. When the queue is full the event is dropped and
    logged rather than applying backpressure to the request.
    """

    def __init__(
        self,
        cache: "RedisCache | SyncRedisCache",
        *,
        stream_key: str = "events:user",
        max_queue_size: int = 10_000,
        stream_max_len: Optional[int] = 100_000,
    ) -> None:
        self.cache = cache
        self.stream_key = stream_key
        self.stream_max_len = stream_max_len
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue_size)
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._draining = True
        self._in_flight: Optional[UserEvent] = None
        self.dropped = 0

    def publish(self, event: UserEvent) -> None:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.error(
                "event_dropped_queue_full",
                event_type=event.event_type,
                user_id=event.user_id,
                dropped_total=self.dropped,
            )

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def start(self) -> None:
        if self._running:
            logger.warning("event_dispatcher_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("event_dispatcher_started", stream_key=self.stream_key)

    async def stop(self, *, drain: bool = True) -> None:
        """Stop the dispatcher without abandoning an event mid-delivery.

        With ``drain`` a stop marker is queued behind everything already
        published and the loop exits when it reaches it. Without ``drain`` the
        loop exits after the delivery in progress, if any, and the rest stays
        queued.
        """
        self._running = False
        self._draining = drain
        task = self._task
        if task is None or task.done():
            self._task = None
            if drain:
                await self.flush()
        else:
            if drain:
                await self._queue.put(_STOP)
            elif self._in_flight is None:
                # Idle in ``get()``: cancelling there loses nothing.
                task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("event_dispatcher_stopped", pending=self.pending)

    async def flush(self) -> int:
        """Deliver everything currently queued; returns the number delivered."""

        delivered = 0
        while not self._queue.empty():
            event = self._queue.get_nowait()
            if await self._deliver(event):
                delivered += 1
            self._queue.task_done()
        return delivered

    async def _deliver(self, event: UserEvent) -> bool:
        try:
            await self.cache.append_event(
                self.stream_key, event.to_payload(), max_len=self.stream_max_len
            )
        except Exception as exc:
            logger.error(
                "event_publish_failed",
                event_type=event.event_type,
                user_id=event.user_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return False
        logger.info("event_published", event_type=event.event_type, user_id=event.user_id)
        return True

    async def _run_loop(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                if event is _STOP:
                    return
                self._in_flight = event
                await self._deliver(event)
            finally:
                self._in_flight = None
                self._queue.task_done()
            if not self._running and not self._draining:
                return


def safe_publish(publisher: Optional[EventPublisher], event: UserEvent) -> None:
    """Publish without letting a publisher failure reach the caller."""

    if publisher is None:
        return
    try:
        publisher.publish(event)
    except Exception as exc:
        logger.error(
            "event_publish_failed",
            event_type=event.event_type,
            user_id=event.user_id,
            error=str(exc),
            error_type=type(exc).__name__,
        )
