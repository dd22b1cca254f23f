"""Fan-out message bus with one FIFO queue per subscriber.

``publish`` may be called from any thread: driver callbacks are not
guaranteed to arrive on the event loop, so delivery into a subscriber's
queue is marshalled onto the loop that created the subscription.
"""

from __future__ import annotations

import asyncio
import threading
from typing import AsyncIterator

from loguru import logger

from meshlink.bus.events import CoreEvent, EventKind


class EventSubscription:
    """A subscriber's view of the bus, filtered to a set of event kinds."""

    def __init__(
        self,
        bus: "MessageBus",
        kinds: frozenset[EventKind],
        loop: asyncio.AbstractEventLoop,
    ) -> None:
        self._bus = bus
        self.kinds = kinds
        self._loop = loop
        self._queue: asyncio.Queue[CoreEvent] = asyncio.Queue()
        self.closed = False

    def wants(self, event: CoreEvent) -> bool:
        return not self.kinds or event.kind in self.kinds

    def _deliver(self, event: CoreEvent) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._queue.put_nowait(event)
        elif not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._queue.put_nowait, event)

    @property
    def pending(self) -> int:
        """Number of events waiting to be consumed."""
        return self._queue.qsize()

    async def get(self) -> CoreEvent:
        return await self._queue.get()

    def get_nowait(self) -> CoreEvent:
        """Return the next queued event or raise ``asyncio.QueueEmpty``."""
        return self._queue.get_nowait()

    def drain(self) -> list[CoreEvent]:
        """Pop every event queued so far."""
        events: list[CoreEvent] = []
        while not self._queue.empty():
            events.append(self._queue.get_nowait())
        return events

    def close(self) -> None:
        self.closed = True
        self._bus._unsubscribe(self)

    def __aiter__(self) -> AsyncIterator[CoreEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[CoreEvent]:
        while not self.closed:
            yield await self._queue.get()


class MessageBus:
    """Publish/subscribe hub for :class:`CoreEvent` values."""

    def __init__(self) -> None:
        self._subs: list[EventSubscription] = []
        self._lock = threading.Lock()

    def subscribe(self, *kinds: EventKind) -> EventSubscription:
        """Open a subscription for *kinds* (all kinds when none are given).

        Must be called from a running event loop; events are delivered to
        that loop.
        """
        sub = EventSubscription(self, frozenset(kinds), asyncio.get_running_loop())
        with self._lock:
            self._subs.append(sub)
        return sub

    def _unsubscribe(self, sub: EventSubscription) -> None:
        with self._lock:
            if sub in self._subs:
                self._subs.remove(sub)

    def publish(self, event: CoreEvent) -> None:
        """Deliver *event* to every matching subscriber, in publish order."""
        with self._lock:
            targets = [s for s in self._subs if s.wants(event)]
        logger.trace("[Bus] {} {} {}", event.source, event.kind.value, event.state or event.value)
        for sub in targets:
            sub._deliver(event)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subs)
