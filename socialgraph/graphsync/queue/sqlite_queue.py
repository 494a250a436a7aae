"""
SQLite-backed retry queue.

An embedded key-value alternative to the directory queue for hosts where
many small files are a problem. One row per pending key.

Invariants:
    - name is the primary key, so at most one marker per key
    - ack deletes only the row carrying the claimed token
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from ..errors import QueueCorruptionError, TransientIOError
from .base import QueueItem, QueueKey, new_token

logger = logging.getLogger(__name__)


class SqliteRetryQueue:
    """SQLite implementation of RetryQueue protocol."""

    def __init__(
        self,
        queue_dir: str,
        db_name: str = "queue.db",
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> None:
        self.queue_dir = Path(queue_dir)
        self.db_path = self.queue_dir / db_name
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        self.queue_dir.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            yield conn
        except sqlite3.OperationalError as e:
            raise TransientIOError(f"Queue database unavailable: {e}", backend="sqlite") from e
        finally:
            conn.close()

    async def initialize(self) -> None:
        with self._get_connection() as conn:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS queue_items (
                    name TEXT PRIMARY KEY,
                    actor_key TEXT NOT NULL,
                    kind INTEGER NOT NULL,
                    token TEXT NOT NULL,
                    enqueued_at REAL NOT NULL,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    last_error TEXT
                );

                CREATE INDEX IF NOT EXISTS idx_queue_enqueued ON queue_items(enqueued_at);
            """)
        logger.info("SQLite queue ready", extra={"db_path": str(self.db_path)})

    async def close(self) -> None:
        pass

    async def enqueue_or_replace(self, key: QueueKey) -> QueueItem:
        item = QueueItem(key=key)
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO queue_items (name, actor_key, kind, token, enqueued_at, attempts)
                VALUES (?, ?, ?, ?, ?, 0)
                ON CONFLICT (name) DO UPDATE SET token = excluded.token
                """,
                (key.name, key.actor_key, key.kind, item.token, item.enqueued_at),
            )
            row = conn.execute("SELECT * FROM queue_items WHERE name = ?", (key.name,)).fetchone()
        return self._row_to_item(row)

    async def list_pending(self) -> list[QueueItem]:
        with self._get_connection() as conn:
            rows = conn.execute("SELECT * FROM queue_items ORDER BY enqueued_at, name").fetchall()
        items = []
        for row in rows:
            try:
                items.append(self._row_to_item(row))
            except QueueCorruptionError as e:
                logger.error(f"Skipping unreadable queue row: {e.message}", extra={"marker": e.marker})
        return items

    async def ack(self, item: QueueItem) -> bool:
        with self._get_connection() as conn:
            cursor = conn.execute(
                "DELETE FROM queue_items WHERE name = ? AND token = ?",
                (item.key.name, item.token),
            )
        return cursor.rowcount > 0

    async def record_failure(self, item: QueueItem, error: str) -> int:
        with self._get_connection() as conn:
            conn.execute(
                "UPDATE queue_items SET attempts = attempts + 1, last_error = ? WHERE name = ?",
                (error[:500], item.key.name),
            )
            row = conn.execute(
                "SELECT attempts FROM queue_items WHERE name = ?", (item.key.name,)
            ).fetchone()
        return row["attempts"] if row else item.attempts + 1

    async def depth(self) -> int:
        with self._get_connection() as conn:
            return conn.execute("SELECT COUNT(*) FROM queue_items").fetchone()[0]

    async def oldest_enqueued_at(self) -> float | None:
        with self._get_connection() as conn:
            row = conn.execute("SELECT MIN(enqueued_at) FROM queue_items").fetchone()
        return row[0]

    @staticmethod
    def _row_to_item(row: sqlite3.Row) -> QueueItem:
        try:
            key = QueueKey(row["actor_key"], int(row["kind"]))
        except (TypeError, ValueError) as e:
            raise QueueCorruptionError(str(e), marker=row["name"]) from e
        return QueueItem(
            key=key,
            token=row["token"] or new_token(),
            enqueued_at=row["enqueued_at"],
            attempts=row["attempts"],
            last_error=row["last_error"],
        )
