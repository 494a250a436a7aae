"""
Operations servicer for GraphSync.

Backs the ops HTTP endpoints. Triggers never run work inline: they are
recorded as scheduler tasks (or queue markers) and the service loop
picks them up.

Invariants:
    - Handlers are cheap; no sweep, rebuild or apply runs in a request
    - Enqueue only accepts watched kinds
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

from ..errors import GraphSyncError
from ..graph.base import GraphStore
from ..queue.base import QueueKey, RetryQueue
from ..relations import RelationRegistry
from ..schedule.scheduler import (
    PRIORITY_FULL_REBUILD,
    PRIORITY_INCREMENTAL_SWEEP,
    PrioritizedTask,
    TaskScheduler,
    TaskType,
)

logger = logging.getLogger(__name__)


class SyncServicer:
    """Implements the ops operations over the running components.

    Example:
        >>> servicer = SyncServicer(queue, store, scheduler, registry)
        >>> await servicer.status()
        {'queue_depth': 0, ...}
    """

    def __init__(
        self,
        queue: RetryQueue,
        store: GraphStore,
        scheduler: TaskScheduler,
        registry: RelationRegistry,
        stats_providers: dict[str, Callable[[], dict[str, Any]]] | None = None,
        on_enqueue: Callable[[], None] | None = None,
    ) -> None:
        """Initialize the servicer.

        Args:
            queue: Retry queue
            store: Graph store
            scheduler: Scheduler receiving triggers
            registry: Watched relation kinds
            stats_providers: Named callables returning component stats
            on_enqueue: Called after a manual enqueue (e.g. consumer.notify)
        """
        self.queue = queue
        self.store = store
        self.scheduler = scheduler
        self.registry = registry
        self.stats_providers = stats_providers or {}
        self.on_enqueue = on_enqueue
        self.started_at = time.time()

    async def health(self) -> dict[str, Any]:
        try:
            await self.store.stats()
            await self.queue.depth()
        except GraphSyncError as e:
            return {"healthy": False, "error": e.message, "error_code": e.code}
        return {"healthy": True, "uptime_seconds": round(time.time() - self.started_at, 1)}

    async def status(self) -> dict[str, Any]:
        depth = await self.queue.depth()
        oldest = await self.queue.oldest_enqueued_at()
        return {
            "queue_depth": depth,
            "convergence_lag_seconds": round(time.time() - oldest, 3) if oldest else 0.0,
            "graph": await self.store.stats(),
            "watched_kinds": self.registry.kinds,
            "scheduled_tasks": [t.to_dict() for t in self.scheduler.pending()],
            "components": {name: provider() for name, provider in self.stats_providers.items()},
        }

    async def request_sweep(self, reason: str = "manual trigger") -> dict[str, Any]:
        task = PrioritizedTask(
            TaskType.INCREMENTAL_SWEEP, priority=PRIORITY_INCREMENTAL_SWEEP, reason=reason
        )
        self.scheduler.submit(task)
        return {"scheduled": task.to_dict()}

    async def request_rebuild(self, reason: str = "manual trigger") -> dict[str, Any]:
        task = PrioritizedTask(TaskType.FULL_REBUILD, priority=PRIORITY_FULL_REBUILD, reason=reason)
        self.scheduler.submit(task)
        return {"scheduled": task.to_dict()}

    async def enqueue(self, actor_key: str, kind: int) -> dict[str, Any]:
        """Write a marker for one key.

        Raises:
            ValueError: If the kind is not watched or the key is invalid
        """
        if kind not in self.registry:
            raise ValueError(f"Kind {kind} is not watched")
        item = await self.queue.enqueue_or_replace(QueueKey(actor_key, kind))
        logger.info("Manual enqueue", extra={"actor_key": actor_key, "kind": kind})
        if self.on_enqueue is not None:
            self.on_enqueue()
        return {"enqueued": item.to_dict()}
