"""
Event fan-out for log lines and session updates.

Each subscriber gets its own bounded buffer. When a buffer is full the
oldest item is dropped, so a slow subscriber never blocks the publisher or
the other subscribers. Items reach every subscriber in publication order.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Generic, List, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_BUFFER = 256


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    SUCCESS = "success"


@dataclass(frozen=True)
class LogEvent:
    """One log line or milestone, as delivered to subscribers."""
    text: str
    severity: Severity = Severity.INFO
    source: str = "monitor"
    timestamp: float = field(default_factory=time.time)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def format(self) -> str:
        """Render as ``[HH:MM:SS] text``."""
        return f"[{time.strftime('%H:%M:%S', time.localtime(self.timestamp))}] {self.text}"


class Subscription(Generic[T]):
    """
    A subscriber's view of an EventHub.

    Consume either by iterating (``async for item in sub``), by awaiting
    ``get()``, or by passing a handler to ``EventHub.subscribe`` which then
    runs in its own delivery task.
    """

    def __init__(self, hub: "EventHub[T]", maxsize: int, handler: Optional[Callable[[T], Any]] = None):
        self._hub = hub
        self._buffer: Deque[T] = deque(maxlen=maxsize)
        self._ready = asyncio.Event()
        self._closed = False
        self.handler = handler
        self.dropped = 0
        self.task: Optional[asyncio.Task] = None

    @property
    def closed(self) -> bool:
        return self._closed

    def _push(self, item: T) -> None:
        if self._closed:
            return
        if len(self._buffer) == self._buffer.maxlen:
            self.dropped += 1
        self._buffer.append(item)
        self._ready.set()

    def pending(self) -> List[T]:
        """Drain and return everything buffered."""
        items = list(self._buffer)
        self._buffer.clear()
        return items

    async def get(self) -> T:
        """
        Wait for the next item.

        Raises:
            StopAsyncIteration: Subscription closed and drained
        """
        while not self._buffer:
            if self._closed:
                raise StopAsyncIteration
            self._ready.clear()
            await self._ready.wait()
        return self._buffer.popleft()

    def __aiter__(self) -> "Subscription[T]":
        return self

    async def __anext__(self) -> T:
        return await self.get()

    def close(self) -> None:
        """Stop receiving. Buffered items can still be drained."""
        self._closed = True
        self._ready.set()

    async def _deliver(self) -> None:
        async for item in self:
            try:
                result = self.handler(item)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Event handler raised; continuing")


class EventHub(Generic[T]):
    """Publish/subscribe channel with per-subscriber drop-oldest buffers."""

    def __init__(self, name: str = "events"):
        self.name = name
        self._subscribers: List[Subscription[T]] = []
        self._closed = False

    def subscribe(self, handler: Optional[Callable[[T], Any]] = None, maxsize: int = DEFAULT_BUFFER) -> Subscription[T]:
        """
        Register a subscriber.

        Args:
            handler: Optional sync or async callable. When given, a delivery
                     task is started on the running loop and the handler is
                     called for each item in order.
            maxsize: Buffer length before the oldest item is dropped

        Returns:
            Subscription; pass it to unsubscribe() to stop delivery
        """
        if maxsize < 1:
            raise ValueError("maxsize must be >= 1")
        sub: Subscription[T] = Subscription(self, maxsize, handler)
        if self._closed:
            sub.close()
            return sub
        self._subscribers.append(sub)
        if handler is not None:
            sub.task = asyncio.get_running_loop().create_task(sub._deliver())
        return sub

    def unsubscribe(self, sub: Subscription[T]) -> None:
        """Stop delivery to sub. Unknown subscriptions are ignored."""
        if sub in self._subscribers:
            self._subscribers.remove(sub)
        sub.close()
        if sub.task is not None and not sub.task.done():
            sub.task.cancel()

    def publish(self, item: T) -> None:
        """Deliver item to every subscriber without waiting on any of them."""
        if self._closed:
            return
        for sub in list(self._subscribers):
            sub._push(item)

    def close(self) -> None:
        """Close every subscription; handler tasks finish their backlog."""
        self._closed = True
        for sub in self._subscribers:
            sub.close()
        self._subscribers.clear()
