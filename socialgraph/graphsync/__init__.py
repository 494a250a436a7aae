"""
GraphSync - keeps a materialized social graph in sync with relay events.

Each actor publishes at most one current event per (actor, kind). The tag
list of that event fully defines the actor's outgoing relationships of the
matching type (FOLLOWS, MUTES, REPORTS). GraphSync keeps the graph store
converged on those current events.

Architecture:
    ┌─────────────┐     ┌─────────────┐     ┌─────────────────┐
    │    Relay    │────▶│  Coalescer  │────▶│   Retry Queue   │
    │ (live sub)  │     │ (markers)   │     │ (one per key)   │
    └─────────────┘     └─────────────┘     └────────┬────────┘
           ▲                                         │
           │ latest event                            ▼
           │                              ┌─────────────────────┐
           └──────────────────────────────│ Diff-and-Apply      │
                                          │ Engine              │
                                          └──────────┬──────────┘
                                                     │ edge delta
    ┌─────────────┐     ┌─────────────┐              ▼
    │ Full export │────▶│    Bulk     │────▶┌─────────────────┐
    │  (NDJSON)   │     │  Extractor  │     │   Graph Store   │
    └─────────────┘     └─────────────┘     │ (SQLite/Neo4j)  │
                                            └─────────────────┘

Invariants:
    - The relay is the source of truth; the graph is a derived view
    - Edges of (actor, type) always converge on the current event's targets
    - Checkpoints only move forward
    - A queue marker is removed only after a fully successful apply

How to change safely:
    - Keep every apply step replay-safe (recompute the delta, never cache it)
    - Add relation kinds through the RelationRegistry only
    - Test partial failures by failing a store write mid-apply

Version: see _version.py.
"""

from ._version import __version__

__all__ = ["__version__"]
