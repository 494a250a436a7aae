"""
Edge delta computation.

Given the target set asserted by an actor's current event (T) and the
targets currently in the graph (C):

    to_add    = T - C
    to_remove = C - T
    to_update = targets in both whose sub-type differs

The delta is always computed from fresh graph state, which is what makes
replaying a partially applied key safe: whatever was already written no
longer shows up in the delta.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field


@dataclass(frozen=True)
class EdgeDelta:
    """Minimal set of edge writes to converge (actor, edge_type).

    Attributes:
        to_add: New targets mapped to their sub-type
        to_remove: Targets whose edge must be deleted (sorted)
        to_update: Kept targets whose sub-type changed
    """

    to_add: dict[str, str | None] = field(default_factory=dict)
    to_remove: list[str] = field(default_factory=list)
    to_update: dict[str, str | None] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not (self.to_add or self.to_remove or self.to_update)

    @property
    def upserts(self) -> dict[str, str | None]:
        """Targets to write, added and updated together."""
        return {**self.to_add, **self.to_update}

    def __len__(self) -> int:
        return len(self.to_add) + len(self.to_remove) + len(self.to_update)


def compute_delta(
    desired: Mapping[str, str | None], current: Mapping[str, str | None]
) -> EdgeDelta:
    """Diff the desired target set against the current one.

    Example:
        >>> d = compute_delta({"Y": None, "Z": None}, {"X": None, "Y": None})
        >>> d.to_add, d.to_remove
        ({'Z': None}, ['X'])
    """
    to_add = {t: s for t, s in desired.items() if t not in current}
    to_remove = sorted(t for t in current if t not in desired)
    to_update = {t: s for t, s in desired.items() if t in current and current[t] != s}
    return EdgeDelta(to_add=to_add, to_remove=to_remove, to_update=to_update)
