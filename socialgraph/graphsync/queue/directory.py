"""
Directory-of-files retry queue.

One JSON file per pending key, named "<actor_key>_<kind>.json". Writes
go to a temporary file and are renamed into place, so a reader sees
either the old marker or the new one, never a torn write.

Unreadable markers are moved to the "quarantine" subdirectory with a
timestamp suffix and logged; they never stop list_pending().

Invariants:
    - One file per key; os.replace() makes overwrite atomic
    - Empty marker files are accepted and read from their file name
    - The directory is the only state; no in-memory bookkeeping

How to change safely:
    - Keep the file naming stable; markers outlive deploys
"""

from __future__ import annotations

import json
import logging
import os
import time
from pathlib import Path

from ..errors import QueueCorruptionError
from .base import QueueItem, QueueKey

logger = logging.getLogger(__name__)

MARKER_SUFFIX = ".json"
QUARANTINE_DIR = "quarantine"


class DirectoryRetryQueue:
    """Directory implementation of RetryQueue protocol.

    Example:
        >>> queue = DirectoryRetryQueue("/var/lib/graphsync/queue")
        >>> await queue.initialize()
        >>> item = await queue.enqueue_or_replace(QueueKey("ab12", 3))
        >>> [i.key for i in await queue.list_pending()]
        [QueueKey(actor_key='ab12', kind=3)]
    """

    def __init__(self, queue_dir: str) -> None:
        self.queue_dir = Path(queue_dir)
        self.quarantine_dir = self.queue_dir / QUARANTINE_DIR

    async def initialize(self) -> None:
        self.queue_dir.mkdir(parents=True, exist_ok=True)
        self.quarantine_dir.mkdir(parents=True, exist_ok=True)
        logger.info("Directory queue ready", extra={"queue_dir": str(self.queue_dir)})

    async def close(self) -> None:
        pass

    def _path(self, key: QueueKey) -> Path:
        return self.queue_dir / f"{key.name}{MARKER_SUFFIX}"

    def _write(self, item: QueueItem) -> None:
        path = self._path(item.key)
        tmp = self.queue_dir / f".{item.key.name}.{item.token}.tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(item.to_dict(), f)
        os.replace(tmp, path)

    def _read(self, path: Path) -> QueueItem:
        """Read one marker.

        Raises:
            QueueCorruptionError: If the marker cannot be parsed
            FileNotFoundError: If the marker was removed concurrently
        """
        name = path.name[: -len(MARKER_SUFFIX)]
        raw = path.read_text(encoding="utf-8")
        if not raw.strip():
            key = QueueKey.parse(name)
            return QueueItem(key=key, token="", enqueued_at=path.stat().st_mtime)
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise QueueCorruptionError(f"Marker is not JSON: {e}", marker=name) from e
        item = QueueItem.from_dict(data, marker=name)
        if item.key.name != name:
            raise QueueCorruptionError(
                f"Marker content {item.key.name!r} does not match its name", marker=name
            )
        return item

    def _read_existing(self, key: QueueKey) -> QueueItem | None:
        try:
            return self._read(self._path(key))
        except FileNotFoundError:
            return None
        except QueueCorruptionError as e:
            self._quarantine(self._path(key), e)
            return None

    def _quarantine(self, path: Path, error: QueueCorruptionError) -> None:
        self.quarantine_dir.mkdir(parents=True, exist_ok=True)
        dest = self.quarantine_dir / f"{path.name}.{int(time.time() * 1000)}"
        try:
            os.replace(path, dest)
        except FileNotFoundError:
            return
        logger.error(
            f"Quarantined unreadable marker: {error.message}",
            extra={"marker": error.marker, "quarantine_path": str(dest)},
        )

    async def enqueue_or_replace(self, key: QueueKey) -> QueueItem:
        existing = self._read_existing(key)
        item = existing.replaced() if existing is not None else QueueItem(key=key)
        self._write(item)
        return item

    async def list_pending(self) -> list[QueueItem]:
        items: list[QueueItem] = []
        for path in self.queue_dir.glob(f"*{MARKER_SUFFIX}"):
            try:
                items.append(self._read(path))
            except FileNotFoundError:
                continue
            except QueueCorruptionError as e:
                self._quarantine(path, e)
        items.sort(key=lambda i: (i.enqueued_at, i.key))
        return items

    async def ack(self, item: QueueItem) -> bool:
        current = self._read_existing(item.key)
        if current is None:
            return False
        if current.token != item.token:
            logger.debug(
                "Marker replaced during processing; keeping it",
                extra={"queue_key": item.key.name},
            )
            return False
        try:
            self._path(item.key).unlink()
        except FileNotFoundError:
            return False
        return True

    async def record_failure(self, item: QueueItem, error: str) -> int:
        current = self._read_existing(item.key)
        if current is None:
            return item.attempts + 1
        failed = current.failed(error)
        self._write(failed)
        return failed.attempts

    async def depth(self) -> int:
        return sum(1 for _ in self.queue_dir.glob(f"*{MARKER_SUFFIX}"))

    async def oldest_enqueued_at(self) -> float | None:
        items = await self.list_pending()
        return items[0].enqueued_at if items else None

    # Testing helpers

    def quarantined(self) -> list[str]:
        if not self.quarantine_dir.exists():
            return []
        return sorted(p.name for p in self.quarantine_dir.iterdir())
