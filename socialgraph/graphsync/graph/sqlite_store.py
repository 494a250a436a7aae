"""
SQLite graph store for GraphSync.

This module manages a single SQLite database that stores:
- Actor nodes
- Typed directed edges with sub-type and asserting timestamp
- Per-(actor, kind) checkpoints

It is the default backend and the one used by tests. It can be rebuilt at
any time from the event source via the bulk path.

Invariants:
    - Each write method is its own transaction
    - Checkpoints only move forward (see events.base.is_newer)
    - Nodes are created on first reference by an edge or checkpoint

How to change safely:
    - Schema migrations must be backward compatible
    - Keep upsert, delete and checkpoint writes separate; the engine
      relies on replaying them, not on their atomicity

Table schema:
    nodes:
        - actor_key TEXT PRIMARY KEY
        - created_at INTEGER (Unix ms)

    edges:
        - source TEXT
        - edge_type TEXT
        - target TEXT
        - subtype TEXT NULL
        - timestamp INTEGER (event created_at, 0 if bulk-loaded)
        - PRIMARY KEY (source, edge_type, target)

    checkpoints:
        - actor_key TEXT
        - kind INTEGER
        - event_id TEXT
        - created_at INTEGER
        - PRIMARY KEY (actor_key, kind)
"""

from __future__ import annotations

import asyncio
import csv
import logging
import sqlite3
import time
from collections.abc import AsyncIterator, Iterator, Mapping
from contextlib import contextmanager
from pathlib import Path

from ..errors import StoreWriteError, TransientIOError
from .base import Checkpoint, Edge, LoadResult

logger = logging.getLogger(__name__)

_LOAD_BATCH = 5000


class SqliteGraphStore:
    """SQLite implementation of GraphStore protocol.

    Thread safety:
        Each operation opens its own connection.
        SQLite handles concurrent access via WAL mode.

    Example:
        >>> store = SqliteGraphStore("/var/lib/graphsync")
        >>> await store.initialize()
        >>> await store.upsert_edges("alice", "FOLLOWS", {"bob": None}, 1700000000)
        >>> await store.get_edge_targets("alice", "FOLLOWS")
        {'bob': None}
    """

    SCHEMA_VERSION = 1

    def __init__(
        self,
        data_dir: str,
        db_name: str = "graph.db",
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        cache_size_pages: int = -64000,
    ) -> None:
        """Initialize the graph store.

        Args:
            data_dir: Directory for the SQLite database file
            db_name: Database file name
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
            cache_size_pages: SQLite cache size (negative = KB)
        """
        self.data_dir = Path(data_dir)
        self.db_path = self.data_dir / db_name
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self.cache_size_pages = cache_size_pages
        self._lock = asyncio.Lock()
        # Rows changed by edge and checkpoint writes since startup
        self.write_count = 0

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        try:
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.busy_timeout_ms / 1000.0,
                isolation_level=None,  # Autocommit by default, explicit transactions
            )
        except sqlite3.OperationalError as e:
            raise TransientIOError(f"Cannot open graph database: {e}", backend="sqlite") from e
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            conn.execute(f"PRAGMA cache_size = {self.cache_size_pages}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _write(self, operation: str) -> Iterator[sqlite3.Connection]:
        """Run a write transaction, mapping sqlite failures to StoreWriteError."""
        with self._get_connection() as conn:
            try:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    yield conn
                    conn.execute("COMMIT")
                except Exception:
                    conn.execute("ROLLBACK")
                    raise
            except sqlite3.Error as e:
                raise StoreWriteError(f"{operation} failed: {e}", operation=operation) from e

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS nodes (
                actor_key TEXT PRIMARY KEY,
                created_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS edges (
                source TEXT NOT NULL,
                edge_type TEXT NOT NULL,
                target TEXT NOT NULL,
                subtype TEXT,
                timestamp INTEGER NOT NULL,
                PRIMARY KEY (source, edge_type, target)
            );

            CREATE INDEX IF NOT EXISTS idx_edges_target ON edges(target, edge_type);

            CREATE TABLE IF NOT EXISTS checkpoints (
                actor_key TEXT NOT NULL,
                kind INTEGER NOT NULL,
                event_id TEXT NOT NULL,
                created_at INTEGER NOT NULL,
                PRIMARY KEY (actor_key, kind)
            );

            INSERT OR IGNORE INTO schema_version (version, applied_at)
            VALUES (1, strftime('%s', 'now') * 1000);
        """)

    async def initialize(self) -> None:
        async with self._lock:
            with self._get_connection() as conn:
                self._create_schema(conn)
        logger.info("Graph store initialized", extra={"db_path": str(self.db_path)})

    async def close(self) -> None:
        # Connections are per-operation
        pass

    def _read(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._get_connection() as conn:
            try:
                return conn.execute(sql, params).fetchall()
            except sqlite3.OperationalError as e:
                raise TransientIOError(f"Graph read failed: {e}", backend="sqlite") from e

    @staticmethod
    def _ensure_nodes(conn: sqlite3.Connection, actor_keys: list[str]) -> None:
        now = int(time.time() * 1000)
        conn.executemany(
            "INSERT OR IGNORE INTO nodes (actor_key, created_at) VALUES (?, ?)",
            [(key, now) for key in actor_keys],
        )

    async def get_checkpoint(self, actor_key: str, kind: int) -> Checkpoint | None:
        rows = self._read(
            "SELECT event_id, created_at FROM checkpoints WHERE actor_key = ? AND kind = ?",
            (actor_key, kind),
        )
        if not rows:
            return None
        return Checkpoint(event_id=rows[0]["event_id"], created_at=rows[0]["created_at"])

    async def get_checkpoints(self, actor_keys: list[str], kind: int) -> dict[str, Checkpoint]:
        if not actor_keys:
            return {}
        result: dict[str, Checkpoint] = {}
        # Stay under SQLite's bound-parameter limit
        for i in range(0, len(actor_keys), 500):
            batch = actor_keys[i : i + 500]
            placeholders = ",".join("?" * len(batch))
            rows = self._read(
                f"SELECT actor_key, event_id, created_at FROM checkpoints "
                f"WHERE kind = ? AND actor_key IN ({placeholders})",
                (kind, *batch),
            )
            for row in rows:
                result[row["actor_key"]] = Checkpoint(row["event_id"], row["created_at"])
        return result

    async def get_edge_targets(self, actor_key: str, edge_type: str) -> dict[str, str | None]:
        rows = self._read(
            "SELECT target, subtype FROM edges WHERE source = ? AND edge_type = ?",
            (actor_key, edge_type),
        )
        return {row["target"]: row["subtype"] for row in rows}

    async def upsert_edges(
        self,
        actor_key: str,
        edge_type: str,
        targets: Mapping[str, str | None],
        timestamp: int,
    ) -> int:
        if not targets:
            return 0
        with self._write("upsert_edges") as conn:
            self._ensure_nodes(conn, [actor_key, *targets])
            conn.executemany(
                """
                INSERT INTO edges (source, edge_type, target, subtype, timestamp)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (source, edge_type, target)
                DO UPDATE SET subtype = excluded.subtype, timestamp = excluded.timestamp
                """,
                [(actor_key, edge_type, t, s, timestamp) for t, s in targets.items()],
            )
        self.write_count += len(targets)
        return len(targets)

    async def delete_edges(self, actor_key: str, edge_type: str, targets: list[str]) -> int:
        if not targets:
            return 0
        with self._write("delete_edges") as conn:
            cursor = conn.executemany(
                "DELETE FROM edges WHERE source = ? AND edge_type = ? AND target = ?",
                [(actor_key, edge_type, t) for t in targets],
            )
            deleted = cursor.rowcount
        self.write_count += deleted
        return deleted

    async def set_checkpoint(
        self, actor_key: str, kind: int, event_id: str, created_at: int
    ) -> bool:
        with self._write("set_checkpoint") as conn:
            changed = self._advance_checkpoint(conn, actor_key, kind, event_id, created_at)
        if changed:
            self.write_count += 1
        return changed

    def _advance_checkpoint(
        self,
        conn: sqlite3.Connection,
        actor_key: str,
        kind: int,
        event_id: str,
        created_at: int,
    ) -> bool:
        row = conn.execute(
            "SELECT event_id, created_at FROM checkpoints WHERE actor_key = ? AND kind = ?",
            (actor_key, kind),
        ).fetchone()
        if row is not None:
            current = Checkpoint(row["event_id"], row["created_at"])
            if not current.is_superseded_by(event_id, created_at):
                return False
        self._ensure_nodes(conn, [actor_key])
        conn.execute(
            """
            INSERT INTO checkpoints (actor_key, kind, event_id, created_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT (actor_key, kind)
            DO UPDATE SET event_id = excluded.event_id, created_at = excluded.created_at
            """,
            (actor_key, kind, event_id, created_at),
        )
        return True

    async def iter_actor_keys(self, batch_size: int) -> AsyncIterator[list[str]]:
        last = ""
        while True:
            rows = self._read(
                "SELECT actor_key FROM nodes WHERE actor_key > ? ORDER BY actor_key LIMIT ?",
                (last, batch_size),
            )
            if not rows:
                return
            batch = [row["actor_key"] for row in rows]
            yield batch
            last = batch[-1]
            if len(batch) < batch_size:
                return

    async def stats(self) -> dict[str, int]:
        with self._get_connection() as conn:
            return {
                "nodes": conn.execute("SELECT COUNT(*) FROM nodes").fetchone()[0],
                "edges": conn.execute("SELECT COUNT(*) FROM edges").fetchone()[0],
                "checkpoints": conn.execute("SELECT COUNT(*) FROM checkpoints").fetchone()[0],
            }

    async def bulk_load(
        self, nodes_path: str, relationships_path: str, events_path: str
    ) -> LoadResult:
        """Load normalized tables produced by the bulk extractor.

        Edges get timestamp 0; the incremental path stamps them on the
        next change. Duplicate event rows resolve to the newest checkpoint.
        """
        result = LoadResult()
        now = int(time.time() * 1000)

        for batch in _read_csv_batches(nodes_path):
            with self._write("bulk_load_nodes") as conn:
                conn.executemany(
                    "INSERT OR IGNORE INTO nodes (actor_key, created_at) VALUES (?, ?)",
                    [(row[0], now) for row in batch if row and row[0]],
                )
            result.nodes += len(batch)

        for batch in _read_csv_batches(relationships_path):
            rows = [r for r in batch if len(r) >= 3 and r[0] and r[1]]
            with self._write("bulk_load_edges") as conn:
                self._ensure_nodes(conn, sorted({k for r in rows for k in r[:2]}))
                conn.executemany(
                    """
                    INSERT INTO edges (source, edge_type, target, subtype, timestamp)
                    VALUES (?, ?, ?, ?, 0)
                    ON CONFLICT (source, edge_type, target)
                    DO UPDATE SET subtype = excluded.subtype
                    """,
                    [(r[0], r[2], r[1], (r[3] if len(r) > 3 and r[3] else None)) for r in rows],
                )
            result.edges += len(rows)

        for batch in _read_csv_batches(events_path):
            with self._write("bulk_load_checkpoints") as conn:
                for row in batch:
                    if len(row) < 4:
                        continue
                    try:
                        kind, created_at = int(row[1]), int(row[3])
                    except ValueError:
                        logger.warning("Skipping malformed event row", extra={"row": row})
                        continue
                    if self._advance_checkpoint(conn, row[0], kind, row[2], created_at):
                        result.checkpoints += 1

        logger.info(
            "Bulk load complete",
            extra={
                "nodes": result.nodes,
                "edges": result.edges,
                "checkpoints": result.checkpoints,
            },
        )
        return result

    # Testing helpers

    async def get_edges(self, actor_key: str, edge_type: str) -> list[Edge]:
        rows = self._read(
            "SELECT source, target, edge_type, timestamp, subtype FROM edges "
            "WHERE source = ? AND edge_type = ? ORDER BY target",
            (actor_key, edge_type),
        )
        return [
            Edge(
                source=r["source"],
                target=r["target"],
                edge_type=r["edge_type"],
                timestamp=r["timestamp"],
                subtype=r["subtype"],
            )
            for r in rows
        ]


def _read_csv_batches(path: str) -> Iterator[list[list[str]]]:
    """Yield rows of a headed CSV file in batches, skipping the header."""
    with open(path, newline="", encoding="utf-8") as f:
        reader = csv.reader(f)
        next(reader, None)
        batch: list[list[str]] = []
        for row in reader:
            batch.append(row)
            if len(batch) >= _LOAD_BATCH:
                yield batch
                batch = []
        if batch:
            yield batch
