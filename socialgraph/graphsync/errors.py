"""
Error types for GraphSync.

This module defines the exception taxonomy shared by every component:
- GraphSyncError: Base exception
- TransientIOError: Event source or graph store unavailable
- MalformedEventError: Unparseable event record
- MissingAuthoritativeEventError: Queued key has no current event upstream
- QueueCorruptionError: Unreadable queue marker
- StoreWriteError: Graph store write failed mid-apply

Invariants:
    - All errors inherit from GraphSyncError
    - Errors carry a code and context for structured logging
    - None of these errors may terminate a consumer, coalescer or bulk loop
"""

from __future__ import annotations

from typing import Any


class GraphSyncError(Exception):
    """Base exception for all GraphSync errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "GRAPHSYNC_ERROR"
        self.details = details or {}


class TransientIOError(GraphSyncError):
    """Event source or graph store is temporarily unavailable.

    Raised when:
    - The relay connection fails or times out
    - The graph store refuses connections or times out

    The queue item is left in place and retried.
    """

    def __init__(self, message: str, backend: str | None = None) -> None:
        super().__init__(message, code="TRANSIENT_IO", details={"backend": backend})
        self.backend = backend


class MalformedEventError(GraphSyncError):
    """An event record could not be parsed.

    Skipped and logged; never fatal to a batch or worker.
    """

    def __init__(self, message: str, raw: str | None = None) -> None:
        super().__init__(
            message,
            code="MALFORMED_EVENT",
            details={"raw": raw[:200] if raw else None},
        )
        self.raw = raw


class MissingAuthoritativeEventError(GraphSyncError):
    """A queued key has no current event upstream."""

    def __init__(self, actor_key: str, kind: int) -> None:
        super().__init__(
            f"No current kind {kind} event for {actor_key}",
            code="MISSING_EVENT",
            details={"actor_key": actor_key, "kind": kind},
        )
        self.actor_key = actor_key
        self.kind = kind


class QueueCorruptionError(GraphSyncError):
    """A queue marker could not be read.

    The marker is quarantined rather than crashing the consumer loop.
    """

    def __init__(self, message: str, marker: str | None = None) -> None:
        super().__init__(message, code="QUEUE_CORRUPTION", details={"marker": marker})
        self.marker = marker


class StoreWriteError(GraphSyncError):
    """A graph store write failed.

    The apply may have partially completed; replaying the same queue item
    is safe because the edge delta is recomputed from current graph state.
    """

    def __init__(self, message: str, operation: str | None = None) -> None:
        super().__init__(message, code="STORE_WRITE", details={"operation": operation})
        self.operation = operation
