"""
CLI tools for GraphSync administration.

Invariants:
    - Tools work offline (no running server required)
    - Operations are idempotent
"""

from .cli import GraphSyncCLI

__all__ = ["GraphSyncCLI"]
