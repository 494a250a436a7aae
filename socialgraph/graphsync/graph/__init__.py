"""
Materialized graph store for GraphSync.

This module provides a pluggable graph store interface supporting:
- SQLite (default, single node)
- Neo4j (production graph consumed by the trust calculator)

Invariants:
    - Only the diff-and-apply engine and the bulk loader mutate the graph
    - Checkpoints only move forward
"""

from .base import Checkpoint, Edge, GraphStore, LoadResult, create_graph_store
from .sqlite_store import SqliteGraphStore

__all__ = [
    "Checkpoint",
    "Edge",
    "GraphStore",
    "LoadResult",
    "create_graph_store",
    "SqliteGraphStore",
]
