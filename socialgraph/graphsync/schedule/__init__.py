"""
Task scheduling for GraphSync.
"""

from .scheduler import (
    ConvergencePolicy,
    PrioritizedTask,
    SchedulingPolicy,
    SystemState,
    TaskScheduler,
    TaskType,
)

__all__ = [
    "ConvergencePolicy",
    "PrioritizedTask",
    "SchedulingPolicy",
    "SystemState",
    "TaskScheduler",
    "TaskType",
]
