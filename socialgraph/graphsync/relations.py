"""
Relation kinds for GraphSync.

A relation kind maps an event kind to the edge type it asserts, and says
which tags carry targets and, optionally, which tag position refines the
edge with a sub-type.

    kind 3      -> FOLLOWS   (targets from "p" tags)
    kind 10000  -> MUTES     (targets from "p" tags)
    kind 1984   -> REPORTS   (targets from "p" tags, sub-type from tag[2])

Invariants:
    - Each event kind maps to exactly one edge type
    - Edge type names are upper-case identifiers (safe as graph labels)
    - Empty targets are never emitted

How to change safely:
    - Add new kinds with register(); never change an existing mapping,
      since stored checkpoints and edges are keyed by it
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Iterator
from dataclasses import dataclass

from .events.base import Event

logger = logging.getLogger(__name__)

_EDGE_TYPE_RE = re.compile(r"^[A-Z][A-Z0-9_]*$")


def is_valid_edge_type(name: str) -> bool:
    """Whether `name` is safe to use as a graph relationship type."""
    return bool(_EDGE_TYPE_RE.match(name))


class DuplicateRelationError(Exception):
    """Raised when a kind or edge type is registered twice."""

    pass


@dataclass(frozen=True)
class RelationKind:
    """Mapping from an event kind to an edge type.

    Attributes:
        kind: Event kind
        edge_type: Edge type written to the graph
        tag_name: Tag name whose second element is a target key
        subtype_index: Tag position holding the sub-type, if any
        default_subtype: Sub-type used when the tag is too short
        empty_subtype: Sub-type used when the tag holds an empty string
    """

    kind: int
    edge_type: str
    tag_name: str = "p"
    subtype_index: int | None = None
    default_subtype: str | None = None
    empty_subtype: str | None = None

    def iter_targets(self, event: Event) -> Iterator[tuple[str, str | None]]:
        """Yield (target, subtype) for every target-bearing tag, repeats included."""
        for tag in event.tags:
            if len(tag) < 2 or tag[0] != self.tag_name:
                continue
            target = tag[1]
            if not target:
                continue
            yield target, self._subtype(tag)

    def target_set(self, event: Event) -> dict[str, str | None]:
        """Distinct targets of an event; the first occurrence fixes the sub-type."""
        targets: dict[str, str | None] = {}
        for target, subtype in self.iter_targets(event):
            targets.setdefault(target, subtype)
        return targets

    def _subtype(self, tag: tuple[str, ...]) -> str | None:
        if self.subtype_index is None:
            return None
        if len(tag) <= self.subtype_index:
            return self.default_subtype
        return tag[self.subtype_index] or self.empty_subtype


FOLLOWS = RelationKind(kind=3, edge_type="FOLLOWS")
MUTES = RelationKind(kind=10000, edge_type="MUTES")
REPORTS = RelationKind(
    kind=1984,
    edge_type="REPORTS",
    subtype_index=2,
    default_subtype="other",
    empty_subtype="unspecified",
)


class RelationRegistry:
    """Lookup of relation kinds by event kind and by edge type.

    Example:
        >>> registry = default_registry()
        >>> registry.require(3).edge_type
        'FOLLOWS'
    """

    def __init__(self, relations: Iterable[RelationKind] = ()) -> None:
        self._by_kind: dict[int, RelationKind] = {}
        self._by_edge_type: dict[str, RelationKind] = {}
        for relation in relations:
            self.register(relation)

    def register(self, relation: RelationKind) -> None:
        """Register a relation kind.

        Raises:
            DuplicateRelationError: If the kind or edge type is taken
            ValueError: If the edge type is not an upper-case identifier
        """
        if not is_valid_edge_type(relation.edge_type):
            raise ValueError(f"Invalid edge type name: {relation.edge_type!r}")
        if relation.kind in self._by_kind:
            raise DuplicateRelationError(f"Kind {relation.kind} already registered")
        if relation.edge_type in self._by_edge_type:
            raise DuplicateRelationError(f"Edge type {relation.edge_type} already registered")
        self._by_kind[relation.kind] = relation
        self._by_edge_type[relation.edge_type] = relation

    def get(self, kind: int) -> RelationKind | None:
        return self._by_kind.get(kind)

    def require(self, kind: int) -> RelationKind:
        """Get the relation for a kind.

        Raises:
            KeyError: If the kind is not watched
        """
        relation = self._by_kind.get(kind)
        if relation is None:
            raise KeyError(f"Kind {kind} is not a watched relation kind")
        return relation

    def for_edge_type(self, edge_type: str) -> RelationKind | None:
        return self._by_edge_type.get(edge_type)

    @property
    def kinds(self) -> list[int]:
        return sorted(self._by_kind)

    @property
    def edge_types(self) -> list[str]:
        return [self._by_kind[k].edge_type for k in self.kinds]

    def __iter__(self) -> Iterator[RelationKind]:
        return iter(self._by_kind[k] for k in self.kinds)

    def __contains__(self, kind: object) -> bool:
        return kind in self._by_kind

    def __len__(self) -> int:
        return len(self._by_kind)


def default_registry(kinds: Iterable[int] | None = None) -> RelationRegistry:
    """Build the standard FOLLOWS/MUTES/REPORTS registry.

    Args:
        kinds: Restrict to these kinds (all standard kinds if None)

    Raises:
        ValueError: If a requested kind has no standard mapping
    """
    standard = {r.kind: r for r in (FOLLOWS, MUTES, REPORTS)}
    if kinds is None:
        return RelationRegistry(standard.values())

    wanted = list(kinds)
    unknown = [k for k in wanted if k not in standard]
    if unknown:
        raise ValueError(f"No relation mapping for kinds: {unknown}")
    return RelationRegistry(standard[k] for k in wanted)
