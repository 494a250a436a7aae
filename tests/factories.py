"""
Builders shared by the test suite.
"""

from socialgraph.graphsync.events import Event


def make_event(actor_key, kind, created_at, targets=(), event_id=None, extra_tags=()):
    """Build an event whose "p" tags point at `targets`, in order."""
    tags = [("p", t) for t in targets]
    tags.extend(tuple(t) for t in extra_tags)
    return Event(
        id=event_id or f"{actor_key}-{kind}-{created_at}",
        actor_key=actor_key,
        kind=kind,
        created_at=created_at,
        tags=tuple(tags),
    )


def make_report(actor_key, created_at, reports, event_id=None):
    """Build a kind 1984 event; `reports` maps target to report type (None = no type)."""
    tags = []
    for target, report_type in reports.items():
        tags.append(("p", target) if report_type is None else ("p", target, report_type))
    return Event(
        id=event_id or f"{actor_key}-1984-{created_at}",
        actor_key=actor_key,
        kind=1984,
        created_at=created_at,
        tags=tuple(tags),
    )
