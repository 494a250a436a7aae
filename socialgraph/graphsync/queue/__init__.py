"""
Durable retry queue for GraphSync.

Backings:
- Directory of marker files (default)
- SQLite table

Invariants:
    - At most one marker per (actor_key, kind)
    - Markers are removed only after a successful apply
"""

from .base import QueueItem, QueueKey, RetryQueue, create_retry_queue
from .directory import DirectoryRetryQueue
from .sqlite_queue import SqliteRetryQueue

__all__ = [
    "QueueItem",
    "QueueKey",
    "RetryQueue",
    "create_retry_queue",
    "DirectoryRetryQueue",
    "SqliteRetryQueue",
]
