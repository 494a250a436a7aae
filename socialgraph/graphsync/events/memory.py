"""
In-memory event source for testing.

This module provides a simple in-memory relay for:
- Unit tests
- Integration tests
- Local development without a running relay

Invariants:
    - All data is lost on process exit
    - Same current-event rule as the relay backend
    - Published events reach every active subscription

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with EventSource protocol
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import AsyncIterator

from ..errors import TransientIOError
from .base import Event, pick_latest

logger = logging.getLogger(__name__)

_CLOSED = object()


class InMemoryEventSource:
    """In-memory implementation of EventSource for testing.

    Stores every published event, so superseded events stay visible to
    export() the way a relay that keeps history would, while point lookups
    only ever return the current one.

    Example:
        >>> source = InMemoryEventSource()
        >>> await source.connect()
        >>> await source.publish(Event(id="e1", actor_key="a", kind=3, created_at=1))
        >>> await source.get_latest_event("a", 3)
        Event(id='e1', ...)
    """

    def __init__(self) -> None:
        self._events: dict[tuple[str, int], list[Event]] = defaultdict(list)
        self._subscribers: list[asyncio.Queue] = []
        self._connected = False
        self._fail_lookups = 0
        self.lookup_count = 0

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        self._connected = True
        logger.debug("InMemoryEventSource connected")

    async def close(self) -> None:
        """Close and end all subscriptions."""
        self._connected = False
        for queue in self._subscribers:
            queue.put_nowait(_CLOSED)
        logger.debug("InMemoryEventSource closed")

    async def publish(self, event: Event) -> None:
        """Store an event and deliver it to live subscribers."""
        self._events[(event.actor_key, event.kind)].append(event)
        for queue in self._subscribers:
            queue.put_nowait(event)

    async def get_latest_event(self, actor_key: str, kind: int) -> Event | None:
        self._check_lookup()
        events = self._events.get((actor_key, kind))
        if not events:
            return None
        return pick_latest(events)[(actor_key, kind)]

    async def get_latest_ids(self, actor_keys: list[str], kind: int) -> dict[str, str]:
        self._check_lookup()
        result = {}
        for actor_key in actor_keys:
            events = self._events.get((actor_key, kind))
            if events:
                result[actor_key] = pick_latest(events)[(actor_key, kind)].id
        return result

    async def subscribe(self, kinds: list[int]) -> AsyncIterator[Event]:
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(queue)
        wanted = set(kinds)
        try:
            while True:
                item = await queue.get()
                if item is _CLOSED:
                    return
                if item.kind in wanted:
                    yield item
        finally:
            self._subscribers.remove(queue)

    async def export(self, kinds: list[int]) -> AsyncIterator[Event]:
        wanted = set(kinds)
        events = [
            event
            for (_, kind), stored in self._events.items()
            if kind in wanted
            for event in stored
        ]
        events.sort(key=lambda e: (-e.created_at, e.id))
        for event in events:
            yield event

    # Testing helpers

    def delete(self, actor_key: str, kind: int) -> None:
        """Forget every event for (actor_key, kind)."""
        self._events.pop((actor_key, kind), None)

    def fail_next_lookups(self, count: int) -> None:
        """Make the next `count` lookups raise TransientIOError."""
        self._fail_lookups = count

    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def _check_lookup(self) -> None:
        self.lookup_count += 1
        if self._fail_lookups > 0:
            self._fail_lookups -= 1
            raise TransientIOError("Injected event source failure", backend="memory")
