"""
Diff-and-apply engine for GraphSync.

For one queue key (actor_key, kind) the engine:
1. Reads the stored checkpoint
2. Fetches the current event for the key from the event source
3. Decides: missing / already converged / stale / apply
4. Computes the edge delta against the graph
5. Upserts added and re-typed edges, deletes removed edges, then
   advances the checkpoint

The three writes in step 5 are not one transaction. The delta is
recomputed from graph state on every call, so re-running a key after a
partial failure only performs the writes that are still missing, and
running it again after success performs none.

Invariants:
    - The checkpoint is written last, and only moves forward
    - An event with no targets revokes every edge of its type
    - Missing current event: no-op by default, revoke-all by policy;
      the checkpoint is left untouched either way
    - Store and source failures propagate to the caller unchanged

How to change safely:
    - Never cache events or targets between calls
    - Keep write order: upserts, deletes, checkpoint
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from ..config import MissingEventPolicy
from ..errors import MissingAuthoritativeEventError
from ..events.base import EventSource
from ..graph.base import GraphStore
from ..queue.base import QueueKey
from ..relations import RelationRegistry
from .delta import compute_delta

logger = logging.getLogger(__name__)


class ReconcileStatus(Enum):
    """Outcome of processing one key."""

    APPLIED = "applied"
    CONVERGED = "converged"
    STALE = "stale"
    MISSING = "missing"
    MISSING_REVOKED = "missing_revoked"
    UNWATCHED = "unwatched"


@dataclass
class ReconcileResult:
    """Result of processing one key.

    Every status is terminal for the marker: the consumer acks it.

    Attributes:
        key: Queue key processed
        status: Outcome
        event_id: Id of the current event, if any
        added: Edges created
        removed: Edges deleted
        updated: Edges whose sub-type was rewritten
        checkpoint_advanced: Whether the checkpoint moved
        revoke_all: The current event asserted no targets
        message: Context for non-applied outcomes
    """

    key: QueueKey
    status: ReconcileStatus
    event_id: str | None = None
    added: int = 0
    removed: int = 0
    updated: int = 0
    checkpoint_advanced: bool = False
    revoke_all: bool = False
    message: str | None = None

    @property
    def writes(self) -> int:
        return self.added + self.removed + self.updated + int(self.checkpoint_advanced)


class DiffApplyEngine:
    """Reconciles one (actor_key, kind) at a time against the graph.

    Thread safety:
        Safe to run for different keys concurrently. The retry queue
        guarantees one marker per key, so the same key is never applied
        twice at once.

    Example:
        >>> engine = DiffApplyEngine(source, store, default_registry())
        >>> result = await engine.process_key(QueueKey(pubkey, 3))
        >>> result.status
        <ReconcileStatus.APPLIED: 'applied'>
    """

    def __init__(
        self,
        source: EventSource,
        store: GraphStore,
        registry: RelationRegistry,
        missing_event_policy: MissingEventPolicy = MissingEventPolicy.NOOP,
    ) -> None:
        """Initialize the engine.

        Args:
            source: Event source holding the current events
            store: Graph store to reconcile
            registry: Relation kinds to mirror
            missing_event_policy: What to do when a key has no current event
        """
        self.source = source
        self.store = store
        self.registry = registry
        self.missing_event_policy = missing_event_policy
        self._status_counts: dict[str, int] = {s.value: 0 for s in ReconcileStatus}
        self._edges_added = 0
        self._edges_removed = 0

    async def process_key(self, key: QueueKey) -> ReconcileResult:
        """Reconcile the edges of one key with its current event.

        Raises:
            TransientIOError: Event source or store unavailable
            StoreWriteError: A write failed; replaying the key is safe
        """
        result = await self._process(key)
        self._status_counts[result.status.value] += 1
        self._edges_added += result.added
        self._edges_removed += result.removed
        return result

    async def _process(self, key: QueueKey) -> ReconcileResult:
        relation = self.registry.get(key.kind)
        if relation is None:
            logger.warning(
                "Ignoring key for unwatched kind",
                extra={"actor_key": key.actor_key, "kind": key.kind},
            )
            return ReconcileResult(key, ReconcileStatus.UNWATCHED)

        checkpoint = await self.store.get_checkpoint(key.actor_key, key.kind)
        latest = await self.source.get_latest_event(key.actor_key, key.kind)

        if latest is None:
            return await self._handle_missing(key, relation.edge_type)

        if checkpoint is not None and latest.id == checkpoint.event_id:
            logger.debug(
                "Key already converged",
                extra={"actor_key": key.actor_key, "kind": key.kind, "event_id": latest.id},
            )
            return ReconcileResult(key, ReconcileStatus.CONVERGED, event_id=latest.id)

        if checkpoint is not None and not checkpoint.is_superseded_by(
            latest.id, latest.created_at
        ):
            logger.info(
                "Current event is older than checkpoint; skipping",
                extra={
                    "actor_key": key.actor_key,
                    "kind": key.kind,
                    "event_id": latest.id,
                    "checkpoint_event_id": checkpoint.event_id,
                },
            )
            return ReconcileResult(key, ReconcileStatus.STALE, event_id=latest.id)

        desired = relation.target_set(latest)
        current = await self.store.get_edge_targets(key.actor_key, relation.edge_type)
        delta = compute_delta(desired, current)

        await self.store.upsert_edges(
            key.actor_key, relation.edge_type, delta.upserts, latest.created_at
        )
        await self.store.delete_edges(key.actor_key, relation.edge_type, delta.to_remove)
        advanced = await self.store.set_checkpoint(
            key.actor_key, key.kind, latest.id, latest.created_at
        )

        result = ReconcileResult(
            key,
            ReconcileStatus.APPLIED,
            event_id=latest.id,
            added=len(delta.to_add),
            removed=len(delta.to_remove),
            updated=len(delta.to_update),
            checkpoint_advanced=advanced,
            revoke_all=not desired,
        )
        logger.info(
            "Applied edge delta",
            extra={
                "actor_key": key.actor_key,
                "kind": key.kind,
                "edge_type": relation.edge_type,
                "event_id": latest.id,
                "added": result.added,
                "removed": result.removed,
                "updated": result.updated,
                "revoke_all": result.revoke_all,
            },
        )
        return result

    async def _handle_missing(self, key: QueueKey, edge_type: str) -> ReconcileResult:
        missing = MissingAuthoritativeEventError(key.actor_key, key.kind)

        if self.missing_event_policy == MissingEventPolicy.REVOKE:
            current = await self.store.get_edge_targets(key.actor_key, edge_type)
            removed = await self.store.delete_edges(key.actor_key, edge_type, sorted(current))
            logger.warning(
                f"{missing.message}; revoked existing edges",
                extra={"actor_key": key.actor_key, "kind": key.kind, "removed": removed},
            )
            return ReconcileResult(
                key,
                ReconcileStatus.MISSING_REVOKED,
                removed=removed,
                revoke_all=True,
                message=missing.message,
            )

        logger.warning(
            f"{missing.message}; leaving edges unchanged",
            extra={"actor_key": key.actor_key, "kind": key.kind, "code": missing.code},
        )
        return ReconcileResult(key, ReconcileStatus.MISSING, message=missing.message)

    @property
    def stats(self) -> dict[str, Any]:
        """Get engine statistics."""
        return {
            "status_counts": dict(self._status_counts),
            "edges_added": self._edges_added,
            "edges_removed": self._edges_removed,
        }
