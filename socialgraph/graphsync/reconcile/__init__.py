"""
Incremental reconciliation for GraphSync.

- delta: edge delta computation
- engine: diff-and-apply for one key
- consumer: bounded-concurrency queue draining
- sweep: full-corpus comparison backstop
"""

from .consumer import PassResult, QueueConsumer
from .delta import EdgeDelta, compute_delta
from .engine import DiffApplyEngine, ReconcileResult, ReconcileStatus
from .sweep import ComparisonSweep, SweepResult

__all__ = [
    "EdgeDelta",
    "compute_delta",
    "DiffApplyEngine",
    "ReconcileResult",
    "ReconcileStatus",
    "QueueConsumer",
    "PassResult",
    "ComparisonSweep",
    "SweepResult",
]
