"""
Base protocol and types for the durable retry queue.

The queue is a durable key set: at most one marker per (actor_key, kind).
Writing a marker for a key that already has one replaces it, which is how
bursts of updates coalesce. A marker is a trigger only; the engine always
re-fetches the current event when it processes the key.

Invariants:
    - At most one marker per key
    - A marker is removed only by ack() after a successful apply
    - ack() removes a marker only if it still carries the claimed token,
      so a marker replaced during processing survives for another pass
    - list_pending() alone is enough to resume after a crash

How to change safely:
    - Protocol changes require updating all implementations
    - Keep the marker fields backward compatible; markers outlive deploys
"""

from __future__ import annotations

import logging
import re
import time
import uuid
from abc import abstractmethod
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from ..errors import QueueCorruptionError

if TYPE_CHECKING:
    from ..config import SyncConfig

logger = logging.getLogger(__name__)

_ACTOR_KEY_RE = re.compile(r"^[A-Za-z0-9.-]+$")


@dataclass(frozen=True, order=True)
class QueueKey:
    """Identity of a pending marker.

    Attributes:
        actor_key: Actor whose edges need reconciling
        kind: Event kind
    """

    actor_key: str
    kind: int

    def __post_init__(self) -> None:
        if not _ACTOR_KEY_RE.match(self.actor_key):
            raise ValueError(f"Invalid actor key for queue: {self.actor_key!r}")

    @property
    def name(self) -> str:
        return f"{self.actor_key}_{self.kind}"

    @classmethod
    def parse(cls, name: str) -> QueueKey:
        """Parse a marker name of the form "<actor_key>_<kind>".

        Raises:
            QueueCorruptionError: If the name is not a marker name
        """
        actor_key, sep, kind = name.rpartition("_")
        if not sep or not kind.isdigit():
            raise QueueCorruptionError(f"Not a marker name: {name!r}", marker=name)
        try:
            return cls(actor_key, int(kind))
        except ValueError as e:
            raise QueueCorruptionError(str(e), marker=name) from e


def new_token() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class QueueItem:
    """A pending marker as read from the queue.

    Attributes:
        key: Queue key
        token: Identity of this write of the marker
        enqueued_at: Unix time the key first became pending
        attempts: Failed processing attempts so far
        last_error: Message of the most recent failure
    """

    key: QueueKey
    token: str = field(default_factory=new_token)
    enqueued_at: float = field(default_factory=time.time)
    attempts: int = 0
    last_error: str | None = None

    @property
    def actor_key(self) -> str:
        return self.key.actor_key

    @property
    def kind(self) -> int:
        return self.key.kind

    def to_dict(self) -> dict[str, Any]:
        return {
            "actorKey": self.key.actor_key,
            "kind": self.key.kind,
            "token": self.token,
            "enqueuedAt": self.enqueued_at,
            "attempts": self.attempts,
            "lastError": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: Any, marker: str | None = None) -> QueueItem:
        """Build an item from a stored marker.

        Raises:
            QueueCorruptionError: If required fields are missing or invalid
        """
        if not isinstance(data, dict):
            raise QueueCorruptionError("Marker is not an object", marker=marker)
        try:
            key = QueueKey(str(data["actorKey"]), int(data["kind"]))
            return cls(
                key=key,
                token=str(data.get("token") or ""),
                enqueued_at=float(data.get("enqueuedAt") or 0.0),
                attempts=int(data.get("attempts") or 0),
                last_error=data.get("lastError"),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise QueueCorruptionError(f"Invalid marker: {e}", marker=marker) from e

    def replaced(self) -> QueueItem:
        """The marker written when this key is enqueued again."""
        return replace(self, token=new_token())

    def failed(self, error: str) -> QueueItem:
        return replace(self, attempts=self.attempts + 1, last_error=error[:500])


@runtime_checkable
class RetryQueue(Protocol):
    """Protocol for retry queue backends."""

    @abstractmethod
    async def initialize(self) -> None: ...

    @abstractmethod
    async def close(self) -> None: ...

    @abstractmethod
    async def enqueue_or_replace(self, key: QueueKey) -> QueueItem:
        """Create or overwrite the marker for `key`.

        Attempts and enqueued_at of an existing marker are kept; the
        token is always new.
        """
        ...

    @abstractmethod
    async def list_pending(self) -> list[QueueItem]:
        """All current markers, oldest first. Never raises on bad markers."""
        ...

    @abstractmethod
    async def ack(self, item: QueueItem) -> bool:
        """Remove the marker if it still carries item.token.

        Returns:
            True if the marker was removed
        """
        ...

    @abstractmethod
    async def record_failure(self, item: QueueItem, error: str) -> int:
        """Record a failed attempt on the marker.

        Returns:
            The attempt count after this failure
        """
        ...

    @abstractmethod
    async def depth(self) -> int: ...

    @abstractmethod
    async def oldest_enqueued_at(self) -> float | None: ...


def create_retry_queue(config: "SyncConfig") -> RetryQueue:
    """Factory function to create a retry queue from configuration.

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import QueueBackend

    if config.queue_backend == QueueBackend.DIRECTORY:
        from .directory import DirectoryRetryQueue

        return DirectoryRetryQueue(config.queue.queue_dir)
    elif config.queue_backend == QueueBackend.SQLITE:
        from .sqlite_queue import SqliteRetryQueue

        return SqliteRetryQueue(
            config.queue.queue_dir,
            wal_mode=config.storage.wal_mode,
            busy_timeout_ms=config.storage.busy_timeout_ms,
        )
    else:
        raise ValueError(f"Unsupported queue backend: {config.queue_backend}")
