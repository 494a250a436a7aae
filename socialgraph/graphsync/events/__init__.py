"""
Upstream event source abstraction for GraphSync.

This module provides a pluggable event source interface supporting:
- Relays speaking the NIP-01 websocket protocol (production)
- In-memory (for testing)

The relay is the source of truth for every relationship. The graph store
is a derived view that can always be rebuilt from it.

Invariants:
    - Point lookups return only the current event per (actor, kind)
    - Malformed events never reach callers
    - Unavailability surfaces as TransientIOError
"""

from .base import Event, EventSource, create_event_source, is_newer, pick_latest
from .memory import InMemoryEventSource
from .relay import RelayEventSource

__all__ = [
    "Event",
    "EventSource",
    "is_newer",
    "pick_latest",
    "create_event_source",
    "RelayEventSource",
    "InMemoryEventSource",
]
