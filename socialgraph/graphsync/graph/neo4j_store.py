"""
Neo4j graph store for GraphSync.

Actors are (:NostrUser {pubkey}) nodes; edges are relationships named by
edge type carrying `timestamp` and `subtype`; checkpoints are node
properties `kind{K}EventId` / `kind{K}CreatedAt`, the layout the trust
calculator reads.

Relationship types cannot be query parameters, so they are interpolated
after validation against the edge-type naming rule. Everything else is
passed as parameters.

Invariants:
    - pubkey is unique across NostrUser nodes (constraint created at startup)
    - Checkpoint properties only move forward
    - Driver unavailability surfaces as TransientIOError, failed writes
      as StoreWriteError

How to change safely:
    - Test against a real Neo4j 5 instance before deploying
    - Keep UNWIND batches bounded (NEO4J_WRITE_BATCH)
"""

from __future__ import annotations

import csv
import logging
from collections import defaultdict
from collections.abc import AsyncIterator, Mapping
from typing import Any

from neo4j import AsyncDriver, AsyncGraphDatabase
from neo4j.exceptions import (
    Neo4jError,
    ServiceUnavailable,
    SessionExpired,
    TransientError,
)

from ..errors import StoreWriteError, TransientIOError
from ..relations import is_valid_edge_type
from .base import Checkpoint, LoadResult

logger = logging.getLogger(__name__)


def _rel(edge_type: str) -> str:
    if not is_valid_edge_type(edge_type):
        raise ValueError(f"Invalid edge type: {edge_type!r}")
    return edge_type


def _checkpoint_props(kind: int) -> tuple[str, str]:
    return f"kind{int(kind)}EventId", f"kind{int(kind)}CreatedAt"


class Neo4jGraphStore:
    """Neo4j implementation of GraphStore protocol.

    Example:
        >>> store = Neo4jGraphStore(Neo4jConfig(uri="bolt://localhost:7687"))
        >>> await store.initialize()
        >>> await store.get_edge_targets(pubkey, "FOLLOWS")
    """

    def __init__(self, config: Any) -> None:
        """Initialize Neo4j store.

        Args:
            config: Neo4jConfig instance with connection settings
        """
        self.config = config
        self._driver: AsyncDriver | None = None

    async def initialize(self) -> None:
        if self._driver is None:
            self._driver = AsyncGraphDatabase.driver(
                self.config.uri, auth=(self.config.user, self.config.password)
            )
            try:
                await self._driver.verify_connectivity()
            except (ServiceUnavailable, SessionExpired) as e:
                raise TransientIOError(f"Neo4j unavailable: {e}", backend="neo4j") from e
        await self._run(
            "CREATE CONSTRAINT nostr_user_pubkey IF NOT EXISTS "
            "FOR (u:NostrUser) REQUIRE u.pubkey IS UNIQUE",
            write=True,
        )
        logger.info("Connected to Neo4j", extra={"neo4j_uri": self.config.uri})

    async def close(self) -> None:
        if self._driver is not None:
            await self._driver.close()
            self._driver = None
            logger.info("Closed Neo4j connection")

    async def _run(
        self, query: str, params: dict[str, Any] | None = None, write: bool = False
    ) -> list[dict[str, Any]]:
        if self._driver is None:
            raise TransientIOError("Neo4j store not initialized", backend="neo4j")
        try:
            async with self._driver.session(database=self.config.database) as session:
                result = await session.run(query, params or {})
                return await result.data()
        except (ServiceUnavailable, SessionExpired, TransientError) as e:
            raise TransientIOError(f"Neo4j unavailable: {e}", backend="neo4j") from e
        except Neo4jError as e:
            if write:
                raise StoreWriteError(f"Neo4j write failed: {e}", operation=query[:60]) from e
            raise

    async def get_checkpoint(self, actor_key: str, kind: int) -> Checkpoint | None:
        id_prop, at_prop = _checkpoint_props(kind)
        rows = await self._run(
            f"MATCH (u:NostrUser {{pubkey: $pubkey}}) "
            f"RETURN u.{id_prop} AS event_id, u.{at_prop} AS created_at",
            {"pubkey": actor_key},
        )
        if not rows or rows[0]["event_id"] is None:
            return None
        return Checkpoint(rows[0]["event_id"], int(rows[0]["created_at"] or 0))

    async def get_checkpoints(self, actor_keys: list[str], kind: int) -> dict[str, Checkpoint]:
        if not actor_keys:
            return {}
        id_prop, at_prop = _checkpoint_props(kind)
        rows = await self._run(
            f"UNWIND $keys AS key "
            f"MATCH (u:NostrUser {{pubkey: key}}) WHERE u.{id_prop} IS NOT NULL "
            f"RETURN u.pubkey AS pubkey, u.{id_prop} AS event_id, u.{at_prop} AS created_at",
            {"keys": actor_keys},
        )
        return {
            r["pubkey"]: Checkpoint(r["event_id"], int(r["created_at"] or 0)) for r in rows
        }

    async def get_edge_targets(self, actor_key: str, edge_type: str) -> dict[str, str | None]:
        rows = await self._run(
            f"MATCH (u:NostrUser {{pubkey: $pubkey}})-[r:{_rel(edge_type)}]->(t:NostrUser) "
            f"RETURN t.pubkey AS target, r.subtype AS subtype",
            {"pubkey": actor_key},
        )
        return {r["target"]: r["subtype"] for r in rows}

    async def upsert_edges(
        self,
        actor_key: str,
        edge_type: str,
        targets: Mapping[str, str | None],
        timestamp: int,
    ) -> int:
        if not targets:
            return 0
        rows = [{"target": t, "subtype": s} for t, s in targets.items()]
        batch = self.config.write_batch
        for i in range(0, len(rows), batch):
            await self._run(
                f"MERGE (u:NostrUser {{pubkey: $pubkey}}) "
                f"WITH u UNWIND $rows AS row "
                f"MERGE (t:NostrUser {{pubkey: row.target}}) "
                f"MERGE (u)-[r:{_rel(edge_type)}]->(t) "
                f"SET r.timestamp = $timestamp, r.subtype = row.subtype",
                {"pubkey": actor_key, "rows": rows[i : i + batch], "timestamp": timestamp},
                write=True,
            )
        return len(rows)

    async def delete_edges(self, actor_key: str, edge_type: str, targets: list[str]) -> int:
        if not targets:
            return 0
        rows = await self._run(
            f"MATCH (u:NostrUser {{pubkey: $pubkey}})-[r:{_rel(edge_type)}]->(t:NostrUser) "
            f"WHERE t.pubkey IN $targets "
            f"DELETE r RETURN count(r) AS deleted",
            {"pubkey": actor_key, "targets": list(targets)},
            write=True,
        )
        return int(rows[0]["deleted"]) if rows else 0

    async def set_checkpoint(
        self, actor_key: str, kind: int, event_id: str, created_at: int
    ) -> bool:
        rows = await self._run(
            self._checkpoint_query(kind),
            {"rows": [{"pubkey": actor_key, "event_id": event_id, "created_at": created_at}]},
            write=True,
        )
        return bool(rows and rows[0]["advanced"])

    @staticmethod
    def _checkpoint_query(kind: int) -> str:
        id_prop, at_prop = _checkpoint_props(kind)
        # Newer created_at wins; equal created_at goes to the lower id
        return (
            f"UNWIND $rows AS row "
            f"MERGE (u:NostrUser {{pubkey: row.pubkey}}) "
            f"WITH u, row WHERE u.{at_prop} IS NULL "
            f"OR row.created_at > u.{at_prop} "
            f"OR (row.created_at = u.{at_prop} AND row.event_id < u.{id_prop}) "
            f"SET u.{id_prop} = row.event_id, u.{at_prop} = row.created_at "
            f"RETURN count(u) AS advanced"
        )

    async def iter_actor_keys(self, batch_size: int) -> AsyncIterator[list[str]]:
        last = ""
        while True:
            rows = await self._run(
                "MATCH (u:NostrUser) WHERE u.pubkey > $last "
                "RETURN u.pubkey AS pubkey ORDER BY u.pubkey LIMIT $limit",
                {"last": last, "limit": batch_size},
            )
            if not rows:
                return
            batch = [r["pubkey"] for r in rows]
            yield batch
            last = batch[-1]
            if len(batch) < batch_size:
                return

    async def stats(self) -> dict[str, int]:
        nodes = await self._run("MATCH (u:NostrUser) RETURN count(u) AS n")
        edges = await self._run("MATCH (:NostrUser)-[r]->(:NostrUser) RETURN count(r) AS n")
        return {"nodes": int(nodes[0]["n"]), "edges": int(edges[0]["n"])}

    async def bulk_load(
        self, nodes_path: str, relationships_path: str, events_path: str
    ) -> LoadResult:
        """Load normalized tables with batched UNWIND writes.

        For very large corpora prefer `neo4j-admin database import` on the
        same files; their headers follow its format.
        """
        result = LoadResult()
        batch = self.config.write_batch

        rows: list[dict[str, Any]] = []
        for row in _iter_csv(nodes_path):
            if row and row[0]:
                rows.append({"pubkey": row[0]})
            if len(rows) >= batch:
                result.nodes += await self._load_nodes(rows)
                rows = []
        if rows:
            result.nodes += await self._load_nodes(rows)

        by_type: dict[str, list[dict[str, Any]]] = defaultdict(list)
        for row in _iter_csv(relationships_path):
            if len(row) < 3 or not row[0] or not row[1]:
                continue
            pending = by_type[row[2]]
            pending.append(
                {"source": row[0], "target": row[1], "subtype": row[3] if len(row) > 3 and row[3] else None}
            )
            if len(pending) >= batch:
                result.edges += await self._load_edges(row[2], pending)
                by_type[row[2]] = []
        for edge_type, pending in by_type.items():
            if pending:
                result.edges += await self._load_edges(edge_type, pending)

        by_kind: dict[int, list[dict[str, Any]]] = defaultdict(list)
        for row in _iter_csv(events_path):
            try:
                kind, created_at = int(row[1]), int(row[3])
            except (IndexError, ValueError):
                logger.warning("Skipping malformed event row", extra={"row": row})
                continue
            pending = by_kind[kind]
            pending.append({"pubkey": row[0], "event_id": row[2], "created_at": created_at})
            if len(pending) >= batch:
                result.checkpoints += await self._load_checkpoints(kind, pending)
                by_kind[kind] = []
        for kind, pending in by_kind.items():
            if pending:
                result.checkpoints += await self._load_checkpoints(kind, pending)

        logger.info(
            "Bulk load complete",
            extra={
                "nodes": result.nodes,
                "edges": result.edges,
                "checkpoints": result.checkpoints,
            },
        )
        return result

    async def _load_nodes(self, rows: list[dict[str, Any]]) -> int:
        await self._run(
            "UNWIND $rows AS row MERGE (:NostrUser {pubkey: row.pubkey})",
            {"rows": rows},
            write=True,
        )
        return len(rows)

    async def _load_edges(self, edge_type: str, rows: list[dict[str, Any]]) -> int:
        await self._run(
            f"UNWIND $rows AS row "
            f"MERGE (s:NostrUser {{pubkey: row.source}}) "
            f"MERGE (t:NostrUser {{pubkey: row.target}}) "
            f"MERGE (s)-[r:{_rel(edge_type)}]->(t) "
            f"ON CREATE SET r.timestamp = 0 "
            f"SET r.subtype = row.subtype",
            {"rows": rows},
            write=True,
        )
        return len(rows)

    async def _load_checkpoints(self, kind: int, rows: list[dict[str, Any]]) -> int:
        result = await self._run(self._checkpoint_query(kind), {"rows": rows}, write=True)
        return int(result[0]["advanced"]) if result else 0


def _iter_csv(path: str):
    with open(path, newline="", encoding="utf-8") as f:
        reader = csv.reader(f)
        next(reader, None)
        yield from reader
