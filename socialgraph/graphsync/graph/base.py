"""
Base protocol and types for the materialized graph store.

The graph store holds actor nodes, typed directed edges and per-(actor,
kind) checkpoints. It is a derived view of the event source: every
mutation goes through the diff-and-apply engine or the bulk loader.

Invariants:
    - A node exists for every actor referenced by an edge or checkpoint
    - At most one edge per (source, edge_type, target)
    - set_checkpoint never moves a checkpoint backwards

How to change safely:
    - Protocol changes require updating all implementations
    - Edge types are interpolated into queries by some backends; callers
      must only pass edge types from the relation registry
"""

from __future__ import annotations

import logging
from abc import abstractmethod
from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from ..events.base import is_newer

if TYPE_CHECKING:
    from ..config import SyncConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Checkpoint:
    """The event last reflected in the graph for an (actor, kind) pair.

    Attributes:
        event_id: Id of the reflected event
        created_at: created_at of the reflected event (Unix seconds)
    """

    event_id: str
    created_at: int

    def is_superseded_by(self, event_id: str, created_at: int) -> bool:
        """Whether an event with (event_id, created_at) is newer than this checkpoint."""
        return is_newer(created_at, event_id, self.created_at, self.event_id)


@dataclass(frozen=True)
class Edge:
    """A directed, typed edge.

    Attributes:
        source: Source actor key
        target: Target actor key
        edge_type: Edge type (e.g. FOLLOWS)
        timestamp: created_at of the event that asserted the edge
        subtype: Optional refinement (e.g. report type)
    """

    source: str
    target: str
    edge_type: str
    timestamp: int
    subtype: str | None = None


@dataclass
class LoadResult:
    """Counts from a bulk load."""

    nodes: int = 0
    edges: int = 0
    checkpoints: int = 0


@runtime_checkable
class GraphStore(Protocol):
    """Protocol for graph store backends."""

    @abstractmethod
    async def initialize(self) -> None:
        """Open connections and create schema/indexes."""
        ...

    @abstractmethod
    async def close(self) -> None: ...

    @abstractmethod
    async def get_checkpoint(self, actor_key: str, kind: int) -> Checkpoint | None:
        """Point read of the checkpoint for (actor_key, kind)."""
        ...

    @abstractmethod
    async def get_checkpoints(self, actor_keys: list[str], kind: int) -> dict[str, Checkpoint]:
        """Checkpoints for many actors; actors without one are omitted."""
        ...

    @abstractmethod
    async def get_edge_targets(self, actor_key: str, edge_type: str) -> dict[str, str | None]:
        """Current targets of (actor_key, edge_type) mapped to their sub-type."""
        ...

    @abstractmethod
    async def upsert_edges(
        self,
        actor_key: str,
        edge_type: str,
        targets: Mapping[str, str | None],
        timestamp: int,
    ) -> int:
        """Create or update edges to `targets`, creating nodes as needed.

        Returns:
            Number of edges written
        """
        ...

    @abstractmethod
    async def delete_edges(self, actor_key: str, edge_type: str, targets: list[str]) -> int:
        """Delete edges to `targets`.

        Returns:
            Number of edges deleted
        """
        ...

    @abstractmethod
    async def set_checkpoint(
        self, actor_key: str, kind: int, event_id: str, created_at: int
    ) -> bool:
        """Advance the checkpoint if (event_id, created_at) is newer.

        Returns:
            True if the checkpoint changed
        """
        ...

    @abstractmethod
    def iter_actor_keys(self, batch_size: int) -> AsyncIterator[list[str]]:
        """Yield all known actor keys in batches, in key order."""
        ...

    @abstractmethod
    async def stats(self) -> dict[str, int]:
        """Node, edge and checkpoint counts."""
        ...

    @abstractmethod
    async def bulk_load(
        self, nodes_path: str, relationships_path: str, events_path: str
    ) -> LoadResult:
        """Ingest the three normalized bulk tables."""
        ...


def create_graph_store(config: "SyncConfig") -> GraphStore:
    """Factory function to create a graph store from configuration.

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import GraphBackend

    if config.graph_backend == GraphBackend.SQLITE:
        from .sqlite_store import SqliteGraphStore

        return SqliteGraphStore(
            data_dir=config.storage.data_dir,
            db_name=config.storage.graph_db_name,
            wal_mode=config.storage.wal_mode,
            busy_timeout_ms=config.storage.busy_timeout_ms,
        )
    elif config.graph_backend == GraphBackend.NEO4J:
        from .neo4j_store import Neo4jGraphStore

        return Neo4jGraphStore(config.neo4j)
    else:
        raise ValueError(f"Unsupported graph backend: {config.graph_backend}")
