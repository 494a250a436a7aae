"""
Retry queue consumer for GraphSync.

The consumer lists pending markers and runs the diff-and-apply engine on
them with bounded concurrency. A marker is acked only after the engine
returns; any failure leaves it in place, records the attempt, and the
next pass retries it.

Invariants:
    - A key is never claimed twice at once within this process
    - ack() happens only after a successful process_key()
    - No error escapes a pass; one failing key never stops the others
    - Restart needs no recovery step: the next pass lists the queue

How to change safely:
    - Keep concurrency small; each key costs one relay query and a few
      store round-trips
    - Alerting is log-based (alert=True); keep the field name stable
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from ..errors import GraphSyncError
from ..queue.base import QueueItem, QueueKey, RetryQueue
from .engine import DiffApplyEngine, ReconcileResult

logger = logging.getLogger(__name__)


@dataclass
class PassResult:
    """Outcome of one consumer pass."""

    listed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped_in_flight: int = 0
    results: list[ReconcileResult] = field(default_factory=list)


class QueueConsumer:
    """Drains the retry queue through the engine.

    Example:
        >>> consumer = QueueConsumer(queue, engine, max_concurrent=5)
        >>> await consumer.run_once()
        >>> await consumer.start()  # Runs until stopped
    """

    def __init__(
        self,
        queue: RetryQueue,
        engine: DiffApplyEngine,
        max_concurrent: int = 5,
        poll_interval_seconds: float = 5.0,
        alert_after_attempts: int = 10,
    ) -> None:
        """Initialize the consumer.

        Args:
            queue: Retry queue to drain
            engine: Engine applying each key
            max_concurrent: Keys processed at once
            poll_interval_seconds: Idle wait between passes
            alert_after_attempts: Failed attempts before a key is escalated
        """
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.queue = queue
        self.engine = engine
        self.max_concurrent = max_concurrent
        self.poll_interval_seconds = poll_interval_seconds
        self.alert_after_attempts = alert_after_attempts

        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._in_flight: set[QueueKey] = set()
        self._wakeup = asyncio.Event()
        self._running = False
        self._passes = 0
        self._processed_count = 0
        self._error_count = 0
        self._alerted: set[QueueKey] = set()
        self._last_pass_at: float | None = None

    async def start(self) -> None:
        """Run passes until stop() is called."""
        if self._running:
            logger.warning("Consumer already running")
            return

        self._running = True
        logger.info(
            "Starting queue consumer",
            extra={"max_concurrent": self.max_concurrent},
        )
        try:
            while self._running:
                result = await self.run_once()
                if result.listed - result.skipped_in_flight > 0 and result.failed == 0:
                    # More may have arrived while this pass ran
                    continue
                try:
                    await asyncio.wait_for(self._wakeup.wait(), self.poll_interval_seconds)
                except asyncio.TimeoutError:
                    pass
                self._wakeup.clear()
        except asyncio.CancelledError:
            logger.info("Consumer cancelled")
        finally:
            self._running = False

    async def stop(self) -> None:
        self._running = False
        self._wakeup.set()
        logger.info("Stopping queue consumer")

    def notify(self) -> None:
        """Wake the consumer loop before its poll interval elapses."""
        self._wakeup.set()

    async def run_once(self) -> PassResult:
        """Process every currently pending marker once."""
        result = PassResult()
        try:
            items = await self.queue.list_pending()
        except GraphSyncError as e:
            logger.error(f"Cannot list pending markers: {e}")
            return result

        result.listed = len(items)
        claimed: list[QueueItem] = []
        for item in items:
            if item.key in self._in_flight:
                result.skipped_in_flight += 1
                continue
            self._in_flight.add(item.key)
            claimed.append(item)

        outcomes = await asyncio.gather(*(self._process_item(item) for item in claimed))
        for outcome in outcomes:
            if outcome is None:
                result.failed += 1
            else:
                result.succeeded += 1
                result.results.append(outcome)

        self._passes += 1
        self._last_pass_at = time.time()
        if claimed:
            logger.info(
                "Consumer pass complete",
                extra={
                    "listed": result.listed,
                    "succeeded": result.succeeded,
                    "failed": result.failed,
                },
            )
        return result

    async def _process_item(self, item: QueueItem) -> ReconcileResult | None:
        try:
            async with self._semaphore:
                try:
                    outcome = await self.engine.process_key(item.key)
                    await self.queue.ack(item)
                except GraphSyncError as e:
                    await self._record_failure(item, f"{e.code}: {e.message}")
                    return None
                except Exception as e:
                    logger.error(f"Unexpected error processing key: {e}", exc_info=True)
                    await self._record_failure(item, str(e) or type(e).__name__)
                    return None
        finally:
            self._in_flight.discard(item.key)

        self._processed_count += 1
        self._alerted.discard(item.key)
        return outcome

    async def _record_failure(self, item: QueueItem, error: str) -> None:
        self._error_count += 1
        try:
            attempts = await self.queue.record_failure(item, error)
        except (GraphSyncError, OSError) as e:
            logger.error(f"Cannot record failure on marker: {e}", extra={"queue_key": item.key.name})
            attempts = item.attempts + 1

        extra = {
            "actor_key": item.actor_key,
            "kind": item.kind,
            "attempts": attempts,
            "error": error,
        }
        if attempts >= self.alert_after_attempts:
            self._alerted.add(item.key)
            logger.error("Key keeps failing to apply", extra={**extra, "alert": True})
        else:
            logger.error("Failed to apply key; will retry", extra=extra)

    @property
    def stats(self) -> dict[str, Any]:
        """Get consumer statistics."""
        return {
            "running": self._running,
            "passes": self._passes,
            "processed_count": self._processed_count,
            "error_count": self._error_count,
            "in_flight": len(self._in_flight),
            "alerting_keys": len(self._alerted),
            "last_pass_at": self._last_pass_at,
        }
