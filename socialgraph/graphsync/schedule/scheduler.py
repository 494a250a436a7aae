"""
Task scheduler for GraphSync.

The scheduler turns a snapshot of system state into prioritized tasks and
keeps them in a single deduplicated priority queue that the service loop
(or an external driver) consumes.

    SystemState --policy.evaluate()--> [PrioritizedTask] --merge()--> queue

Lower priority values are more urgent. Tasks are deduplicated by
(type, target); a target of None means "global".

Invariants:
    - At most one queued task per (type, target); the most urgent wins
    - The queue is always sorted by (priority, created_at)
    - Policies are pure: they read state and return tasks, nothing else

How to change safely:
    - New task types need a handler in the service loop before they are
      emitted by a policy
    - Keep the persisted JSON field names stable
"""

from __future__ import annotations

import json
import logging
import os
import time
from abc import abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


class TaskType(Enum):
    """Work the scheduler can ask for."""

    FULL_REBUILD = "full_rebuild"
    PROCESS_QUEUE = "process_queue"
    INCREMENTAL_SWEEP = "incremental_sweep"


PRIORITY_FULL_REBUILD = 10
PRIORITY_PROCESS_QUEUE = 100
PRIORITY_INCREMENTAL_SWEEP = 300


@dataclass(frozen=True)
class PrioritizedTask:
    """A unit of scheduled work.

    Attributes:
        type: What to run
        target: What to run it on (None = global)
        priority: Lower runs first
        created_at: Unix time the task was created
        reason: Why the task was emitted
    """

    type: TaskType
    target: str | None = None
    priority: int = 500
    created_at: float = field(default_factory=time.time)
    reason: str | None = None

    @property
    def dedup_key(self) -> str:
        return f"{self.type.value}:{self.target or 'global'}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "target": self.target,
            "priority": self.priority,
            "createdAt": self.created_at,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PrioritizedTask:
        return cls(
            type=TaskType(data["type"]),
            target=data.get("target"),
            priority=int(data.get("priority", 500)),
            created_at=float(data.get("createdAt") or time.time()),
            reason=data.get("reason"),
        )


@dataclass
class SystemState:
    """Snapshot the policy decides from.

    Attributes:
        queue_depth: Pending retry queue markers
        oldest_pending_age: Seconds since the oldest marker was enqueued
        last_sweep_at: Unix time of the last completed sweep
        last_rebuild_at: Unix time of the last completed rebuild
        graph_node_count: Nodes in the graph store
        now: Unix time of the snapshot
    """

    queue_depth: int = 0
    oldest_pending_age: float | None = None
    last_sweep_at: float | None = None
    last_rebuild_at: float | None = None
    graph_node_count: int = 0
    now: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "queue_depth": self.queue_depth,
            "oldest_pending_age": self.oldest_pending_age,
            "last_sweep_at": self.last_sweep_at,
            "last_rebuild_at": self.last_rebuild_at,
            "graph_node_count": self.graph_node_count,
            "now": self.now,
        }


@runtime_checkable
class SchedulingPolicy(Protocol):
    """Protocol for scheduling policies."""

    @abstractmethod
    def evaluate(self, state: SystemState) -> list[PrioritizedTask]: ...


class ConvergencePolicy:
    """Default policy: rebuild an empty graph, drain the queue, sweep on interval."""

    def __init__(self, sweep_interval_seconds: float = 3600) -> None:
        self.sweep_interval_seconds = sweep_interval_seconds

    def evaluate(self, state: SystemState) -> list[PrioritizedTask]:
        tasks: list[PrioritizedTask] = []

        if state.graph_node_count == 0 and state.last_rebuild_at is None:
            tasks.append(
                PrioritizedTask(
                    TaskType.FULL_REBUILD,
                    priority=PRIORITY_FULL_REBUILD,
                    created_at=state.now,
                    reason="graph is empty",
                )
            )

        if state.queue_depth > 0:
            tasks.append(
                PrioritizedTask(
                    TaskType.PROCESS_QUEUE,
                    priority=PRIORITY_PROCESS_QUEUE,
                    created_at=state.now,
                    reason=f"{state.queue_depth} pending markers",
                )
            )

        if (
            state.last_sweep_at is None
            or state.now - state.last_sweep_at >= self.sweep_interval_seconds
        ):
            tasks.append(
                PrioritizedTask(
                    TaskType.INCREMENTAL_SWEEP,
                    priority=PRIORITY_INCREMENTAL_SWEEP,
                    created_at=state.now,
                    reason="sweep interval elapsed",
                )
            )

        return tasks


class TaskScheduler:
    """Deduplicated priority queue of tasks fed by a policy.

    Example:
        >>> scheduler = TaskScheduler(ConvergencePolicy(3600))
        >>> scheduler.evaluate(SystemState(queue_depth=3, last_sweep_at=time.time()))
        >>> scheduler.pop_next().type
        <TaskType.PROCESS_QUEUE: 'process_queue'>
    """

    def __init__(self, policy: SchedulingPolicy, queue_path: str | None = None) -> None:
        """Initialize the scheduler.

        Args:
            policy: Policy that emits tasks from system state
            queue_path: JSON file to persist the queue to (None = memory only)
        """
        self.policy = policy
        self.queue_path = Path(queue_path) if queue_path else None
        self._queue: list[PrioritizedTask] = []
        if self.queue_path is not None:
            self._load()

    def evaluate(self, state: SystemState) -> list[PrioritizedTask]:
        """Run the policy and merge its tasks into the queue."""
        tasks = self.policy.evaluate(state)
        if tasks:
            self.merge(tasks)
        return tasks

    def submit(self, task: PrioritizedTask) -> None:
        """Add one task, e.g. from a manual trigger."""
        self.merge([task])
        logger.info(
            "Task submitted",
            extra={"task_type": task.type.value, "target": task.target, "priority": task.priority},
        )

    def merge(self, tasks: list[PrioritizedTask]) -> None:
        """Merge tasks into the queue, keeping the most urgent per (type, target)."""
        combined = sorted([*self._queue, *tasks], key=lambda t: (t.priority, t.created_at))
        seen: set[str] = set()
        unique: list[PrioritizedTask] = []
        for task in combined:
            if task.dedup_key in seen:
                continue
            seen.add(task.dedup_key)
            unique.append(task)
        self._queue = unique
        self._persist()

    def pop_next(self) -> PrioritizedTask | None:
        if not self._queue:
            return None
        task = self._queue.pop(0)
        self._persist()
        return task

    def peek(self) -> PrioritizedTask | None:
        return self._queue[0] if self._queue else None

    def pending(self) -> list[PrioritizedTask]:
        return list(self._queue)

    def __len__(self) -> int:
        return len(self._queue)

    def _load(self) -> None:
        assert self.queue_path is not None
        if not self.queue_path.exists():
            return
        try:
            data = json.loads(self.queue_path.read_text(encoding="utf-8"))
            self._queue = [PrioritizedTask.from_dict(d) for d in data]
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.error(f"Error loading task queue, starting empty: {e}")
            self._queue = []
            return
        self._queue.sort(key=lambda t: (t.priority, t.created_at))

    def _persist(self) -> None:
        if self.queue_path is None:
            return
        self.queue_path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.queue_path.with_suffix(".tmp")
        tmp.write_text(json.dumps([t.to_dict() for t in self._queue], indent=2), encoding="utf-8")
        os.replace(tmp, self.queue_path)
