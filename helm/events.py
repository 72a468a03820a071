"""Session lifecycle notifications.

The runner publishes what happened to a conversation (compressions,
reinforcement injections, limits, finished turns) onto an EventBus.
Subscribers such as the JSONL SessionRecorder consume them off the hot
path: publishing only enqueues, and a subscriber that raises is logged
and skipped.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

EventHandler = Callable[["Event"], Awaitable[None]]

CHAT_COMPRESSED = "chat_compressed"
COMPRESSION_FAILED = "compression_failed"
INJECTION = "injection"
NEXT_SPEAKER = "next_speaker"
LIMIT_EXCEEDED = "limit_exceeded"
TURN_FINISHED = "turn_finished"
SESSION_RESET = "session_reset"
SESSION_ENDED = "session_ended"

# Subscription key for handlers that want every event type
_ALL = "*"


@dataclass
class Event:
    """Something that happened to one session, stamped in UTC."""

    type: str
    session_id: str
    data: dict[str, Any] = field(default_factory=dict)
    prompt_id: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "session_id": self.session_id,
            "prompt_id": self.prompt_id,
            "timestamp": self.timestamp.isoformat(),
            "data": self.data,
        }


class EventBus:
    """Bounded queue of session events plus a delivery task.

    Call start() to deliver in the background; stop() delivers whatever
    is still queued before returning, so a bus that was never started
    still flushes on shutdown.
    """

    def __init__(self, max_queue: int = 1000):
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)
        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=max_queue)
        self._task: asyncio.Task | None = None

    def on(self, event_type: str, handler: EventHandler) -> None:
        self._subscribers[event_type].append(handler)
        logger.debug("Subscribed %s to '%s'", handler.__qualname__, event_type)

    def on_any(self, handler: EventHandler) -> None:
        self._subscribers[_ALL].append(handler)
        logger.debug("Subscribed %s to all events", handler.__qualname__)

    async def emit(self, event: Event) -> None:
        """Queue an event without waiting for delivery; drops it when the queue is full."""
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Dropping %s for session %s: queue full", event.type, event.session_id)

    async def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._deliver_forever(), name="helm-events")
        logger.debug("Event delivery started")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._flush()
        logger.debug("Event delivery stopped")

    async def _flush(self) -> None:
        while True:
            try:
                event = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            await self._deliver(event)

    async def _deliver_forever(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._deliver(event)
            except Exception:
                logger.exception("Delivery of %s failed", event.type)

    async def _deliver(self, event: Event) -> None:
        handlers = [*self._subscribers.get(_ALL, ()), *self._subscribers.get(event.type, ())]
        if handlers:
            await asyncio.gather(*(self._call(handler, event) for handler in handlers))

    async def _call(self, handler: EventHandler, event: Event) -> None:
        try:
            await handler(event)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(
                "Subscriber %s raised on %s (session %s)",
                handler.__qualname__,
                event.type,
                event.session_id,
            )

    @property
    def pending(self) -> int:
        """Events queued but not yet delivered."""
        return self._queue.qsize()
