"""
Full-corpus export to NDJSON.

Writes every watched-kind event the source returns, one stripped event
(id, pubkey, created_at, kind, tags) per line, for the bulk extractor.
The file is written under a temporary name and renamed when complete,
so an interrupted export never looks finished.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from ..events.base import EventSource

logger = logging.getLogger(__name__)


async def export_to_file(source: EventSource, kinds: list[int], path: str) -> int:
    """Export events of `kinds` to `path`.

    Returns:
        Number of events written
    """
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    tmp = target.with_name(f".{target.name}.partial")

    count = 0
    with open(tmp, "w", encoding="utf-8") as f:
        async for event in source.export(kinds):
            f.write(event.to_json())
            f.write("\n")
            count += 1
            if count % 100_000 == 0:
                logger.info("Export progress", extra={"events": count})
    os.replace(tmp, target)

    logger.info("Export complete", extra={"path": str(target), "events": count, "kinds": kinds})
    return count
