"""
Ingestion coalescer for GraphSync.

The Coalescer consumes the live subscription for watched kinds and turns
every event into a queue marker for its (actor_key, kind). Tags are
discarded: the marker is a trigger, and the engine re-fetches the current
event when it processes the key. However many events arrive for one key
before the consumer gets to it, one marker is left.

Invariants:
    - The only side effect is a marker write; the graph is never touched
    - A failed marker write is logged and dropped, never raised; the
      comparison sweep recovers the update
    - No ordering between different actors

How to change safely:
    - Do not read marker content here; the consumer only needs presence
    - Keep the sweep running wherever the coalescer runs
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from ..errors import GraphSyncError
from ..events.base import Event, EventSource
from ..queue.base import QueueKey, RetryQueue

logger = logging.getLogger(__name__)


class Coalescer:
    """Writes one queue marker per live event.

    Example:
        >>> coalescer = Coalescer(source, queue, kinds=[3, 10000, 1984])
        >>> await coalescer.start()  # Runs until stopped
    """

    def __init__(self, source: EventSource, queue: RetryQueue, kinds: list[int]) -> None:
        """Initialize the coalescer.

        Args:
            source: Event source to subscribe to
            queue: Retry queue receiving markers
            kinds: Watched event kinds
        """
        self.source = source
        self.queue = queue
        self.kinds = list(kinds)

        self._running = False
        self._received_count = 0
        self._written_count = 0
        self._dropped_count = 0

    async def start(self) -> None:
        """Start the subscription loop.

        Runs until stop() is called or the subscription ends.
        """
        if self._running:
            logger.warning("Coalescer already running")
            return

        self._running = True
        logger.info("Starting coalescer", extra={"kinds": self.kinds})

        try:
            async for event in self.source.subscribe(self.kinds):
                if not self._running:
                    break
                await self.handle(event)
        except asyncio.CancelledError:
            logger.info("Coalescer cancelled")
        finally:
            self._running = False

    async def stop(self) -> None:
        self._running = False
        logger.info("Stopping coalescer")

    async def handle(self, event: Event) -> bool:
        """Write the marker for one event.

        Returns:
            True if the marker was written
        """
        self._received_count += 1
        if event.kind not in self.kinds:
            return False
        try:
            key = QueueKey(event.actor_key, event.kind)
            await self.queue.enqueue_or_replace(key)
        except (GraphSyncError, OSError, ValueError) as e:
            self._dropped_count += 1
            logger.warning(
                f"Dropped marker write: {e}",
                extra={"actor_key": event.actor_key, "kind": event.kind, "event_id": event.id},
            )
            return False

        self._written_count += 1
        logger.debug(
            "Marker written",
            extra={"actor_key": event.actor_key, "kind": event.kind, "event_id": event.id},
        )
        return True

    @property
    def stats(self) -> dict[str, Any]:
        """Get coalescer statistics."""
        return {
            "running": self._running,
            "received_count": self._received_count,
            "written_count": self._written_count,
            "dropped_count": self._dropped_count,
        }
