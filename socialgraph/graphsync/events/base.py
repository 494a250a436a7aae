"""
Base protocol and types for the upstream event source.

This module defines the Event record, the ordering rule for replaceable
events, and the EventSource protocol that all backends implement.

Invariants:
    - Events are immutable once observed
    - For a given (actor_key, kind) only the newest event is current
    - Newest means greatest created_at; ties go to the lowest event id
    - Point lookups never return a superseded event

How to change safely:
    - Protocol changes require updating all implementations
    - Keep Event.to_dict() the stripped wire shape used by exports
"""

from __future__ import annotations

import json
import logging
from abc import abstractmethod
from collections.abc import AsyncIterator, Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from ..errors import MalformedEventError

if TYPE_CHECKING:
    from ..config import SyncConfig

logger = logging.getLogger(__name__)


def is_newer(
    created_at: int,
    event_id: str,
    other_created_at: int,
    other_event_id: str,
) -> bool:
    """Whether (created_at, event_id) supersedes (other_created_at, other_event_id).

    Greater created_at wins. On equal created_at the lexicographically
    lowest id wins, so every replica picks the same current event.
    """
    if created_at != other_created_at:
        return created_at > other_created_at
    return event_id < other_event_id


@dataclass(frozen=True)
class Event:
    """A signed, replaceable relay event.

    Only the fields the pipeline needs are kept; content and signature
    are dropped at parse time.

    Attributes:
        id: Event id (hex)
        actor_key: Author public key (wire name "pubkey")
        kind: Event kind
        created_at: Creation time (Unix seconds)
        tags: Tag list, each tag a list of strings

    Example:
        {
            "id": "4376c65d...",
            "pubkey": "6e468422...",
            "created_at": 1673347337,
            "kind": 3,
            "tags": [["p", "91cf9..."], ["p", "14aeb..."]]
        }
    """

    id: str
    actor_key: str
    kind: int
    created_at: int
    tags: tuple[tuple[str, ...], ...] = field(default_factory=tuple)

    @classmethod
    def from_dict(cls, data: Any) -> Event:
        """Create from a decoded JSON object.

        Raises:
            MalformedEventError: If required fields are missing or mistyped
        """
        if not isinstance(data, dict):
            raise MalformedEventError(f"Event must be an object, got {type(data).__name__}")

        required = ["id", "pubkey", "kind", "created_at"]
        missing = [f for f in required if f not in data]
        if missing:
            raise MalformedEventError(f"Missing required fields: {missing}")

        event_id = data["id"]
        actor_key = data["pubkey"]
        if not isinstance(event_id, str) or not event_id:
            raise MalformedEventError("Event id must be a non-empty string")
        if not isinstance(actor_key, str) or not actor_key:
            raise MalformedEventError("Event pubkey must be a non-empty string")

        kind = data["kind"]
        created_at = data["created_at"]
        if isinstance(kind, bool) or not isinstance(kind, int):
            raise MalformedEventError(f"Event kind must be an integer, got {kind!r}")
        if isinstance(created_at, bool) or not isinstance(created_at, int):
            raise MalformedEventError(f"Event created_at must be an integer, got {created_at!r}")

        raw_tags = data.get("tags") or []
        if not isinstance(raw_tags, list):
            raise MalformedEventError("Event tags must be a list")

        tags = tuple(
            tuple(str(v) for v in tag)
            for tag in raw_tags
            if isinstance(tag, list) and tag
        )

        return cls(
            id=event_id,
            actor_key=actor_key,
            kind=kind,
            created_at=created_at,
            tags=tags,
        )

    @classmethod
    def from_json(cls, line: str | bytes) -> Event:
        """Parse one NDJSON line.

        Raises:
            MalformedEventError: If the line is not a valid event
        """
        try:
            data = json.loads(line)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raw = line if isinstance(line, str) else None
            raise MalformedEventError(f"Invalid JSON: {e}", raw=raw)
        return cls.from_dict(data)

    def to_dict(self) -> dict[str, Any]:
        """Stripped wire representation (no content, no signature)."""
        return {
            "id": self.id,
            "pubkey": self.actor_key,
            "created_at": self.created_at,
            "kind": self.kind,
            "tags": [list(tag) for tag in self.tags],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    def supersedes(self, other: Event) -> bool:
        """Whether this event replaces other for the same (actor, kind)."""
        return is_newer(self.created_at, self.id, other.created_at, other.id)


def pick_latest(events: Iterable[Event]) -> dict[tuple[str, int], Event]:
    """Reduce events to the current one per (actor_key, kind)."""
    latest: dict[tuple[str, int], Event] = {}
    for event in events:
        key = (event.actor_key, event.kind)
        current = latest.get(key)
        if current is None or event.supersedes(current):
            latest[key] = event
    return latest


@runtime_checkable
class EventSource(Protocol):
    """Protocol for upstream event sources.

    The pipeline uses the source in three ways:
    - Point lookup of the current event for one (actor, kind)
    - Batched lookup of current event ids, used by the comparison sweep
    - Live subscription and full-corpus export

    Failure contract:
        Backends raise TransientIOError when the source is unreachable.
        Malformed records are skipped and logged, never raised to callers
        of subscribe() or export().
    """

    @abstractmethod
    async def connect(self) -> None:
        """Prepare the source for use."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release connections."""
        ...

    @abstractmethod
    async def get_latest_event(self, actor_key: str, kind: int) -> Event | None:
        """Fetch the current event for (actor_key, kind).

        Returns:
            The current event, or None if the actor never published one

        Raises:
            TransientIOError: If the source is unavailable
        """
        ...

    @abstractmethod
    async def get_latest_ids(self, actor_keys: list[str], kind: int) -> dict[str, str]:
        """Fetch current event ids for a batch of actors.

        Returns:
            Mapping of actor_key to current event id; actors with no event
            are absent

        Raises:
            TransientIOError: If the source is unavailable
        """
        ...

    @abstractmethod
    def subscribe(self, kinds: list[int]) -> AsyncIterator[Event]:
        """Yield live events of the given kinds as they arrive."""
        ...

    @abstractmethod
    def export(self, kinds: list[int]) -> AsyncIterator[Event]:
        """Yield every stored event of the given kinds, newest first."""
        ...


def create_event_source(config: "SyncConfig") -> EventSource:
    """Factory function to create an event source from configuration.

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import EventSourceBackend
    from .memory import InMemoryEventSource
    from .relay import RelayEventSource

    if config.event_source == EventSourceBackend.RELAY:
        return RelayEventSource(config.relay)
    elif config.event_source == EventSourceBackend.MEMORY:
        return InMemoryEventSource()
    else:
        raise ValueError(f"Unsupported event source: {config.event_source}")
