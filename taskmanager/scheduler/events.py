"""Execution events and the live event stream.

One ``ExecutionEvent`` is emitted per execution attempt.  ``ExecutionEvents``
fans it out to independent handlers (the audit service and the event bus);
``EventBus`` broadcasts short text lines to live subscribers with a bounded
replay buffer.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from taskmanager.scheduler.models import TaskKey, TaskOutcome, utcnow

logger = logging.getLogger(__name__)


def stamp(moment: datetime | None = None) -> str:
    """Timestamp prefix used on every event line."""
    return (moment or utcnow()).strftime("%Y-%m-%d | %H:%M:%S.%f")


@dataclass(frozen=True)
class ExecutionEvent:
    """Outcome of one execution attempt."""

    group_id: str
    task_id: str
    consumer_type: str
    fire_time: datetime
    run_time_ms: int
    outcome: TaskOutcome
    line: str
    log: str | None = None
    detail: str | None = None
    misfire: bool = False

    @property
    def key(self) -> TaskKey:
        return TaskKey(self.group_id, self.task_id)


ExecutionHandler = Callable[[ExecutionEvent], None]


class ExecutionEvents:
    """In-process publish/subscribe for execution events.

    Handlers run synchronously on emit and must not block; a failing handler
    is logged and never affects the others or the emitter.
    """

    def __init__(self) -> None:
        self._handlers: list[ExecutionHandler] = []

    def subscribe(self, handler: ExecutionHandler) -> ExecutionHandler:
        """Register a handler.  Usable as a decorator."""
        self._handlers.append(handler)
        return handler

    def unsubscribe(self, handler: ExecutionHandler) -> None:
        with contextlib.suppress(ValueError):
            self._handlers.remove(handler)

    def emit(self, event: ExecutionEvent) -> None:
        for handler in list(self._handlers):
            try:
                handler(event)
            except Exception:
                logger.exception("Execution event handler failed for %s", event.key)


# -- Live stream ---------------------------------------------------------------


class Subscription:
    """One subscriber's bounded channel.  Drops its oldest line on overflow."""

    def __init__(self, bus: EventBus, maxsize: int) -> None:
        self._bus = bus
        self._queue: asyncio.Queue[str | None] = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def offer(self, line: str | None) -> None:
        """Enqueue without blocking, evicting the oldest line when full."""
        if self._queue.full():
            with contextlib.suppress(asyncio.QueueEmpty):
                self._queue.get_nowait()
                self.dropped += 1
        self._queue.put_nowait(line)

    def pending(self) -> list[str]:
        """Drain and return the lines currently buffered."""
        lines = []
        while not self._queue.empty():
            line = self._queue.get_nowait()
            if line is not None:
                lines.append(line)
        return lines

    async def get(self) -> str | None:
        """Wait for the next line.  Returns None once the subscription is closed."""
        if self._closed and self._queue.empty():
            return None
        return await self._queue.get()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._bus.unsubscribe(self)
        self.offer(None)

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> str:
        line = await self.get()
        if line is None:
            raise StopAsyncIteration
        return line

    async def __aenter__(self) -> Subscription:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()


class EventBus:
    """Best-effort broadcast of human-readable execution lines.

    Args:
        replay_size: How many recent lines a new subscriber receives first.
        subscriber_buffer: Per-subscriber channel capacity.
    """

    def __init__(self, replay_size: int = 100, subscriber_buffer: int = 50) -> None:
        self._replay: deque[str] = deque(maxlen=replay_size)
        self._subscriber_buffer = subscriber_buffer
        self._subscribers: set[Subscription] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def push(self, line: str) -> None:
        """Record a line and hand it to every subscriber.  Never blocks."""
        self._replay.append(line)
        for subscription in list(self._subscribers):
            subscription.offer(line)

    def subscribe(self) -> Subscription:
        """Open a subscription pre-loaded with the replay buffer."""
        subscription = Subscription(self, self._subscriber_buffer)
        for line in self._replay:
            subscription.offer(line)
        self._subscribers.add(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        self._subscribers.discard(subscription)

    def history(self) -> list[str]:
        return list(self._replay)

    def clear(self) -> None:
        """Wipe the replay buffer.  Subscribers stay connected."""
        self._replay.clear()

    def on_execution(self, event: ExecutionEvent) -> None:
        self.push(event.line)
