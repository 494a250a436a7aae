"""
Bulk loader for GraphSync.

Feeds the three tables written by the bulk extractor into a graph store.
Loading is idempotent: nodes and edges are merged, and checkpoints only
move forward, so duplicate event rows settle on the newest event.
"""

from __future__ import annotations

import logging
import os

from ..errors import GraphSyncError
from ..graph.base import GraphStore, LoadResult
from .extractor import EVENTS_FILE, NODES_FILE, RELATIONSHIPS_FILE, BulkResult

logger = logging.getLogger(__name__)


class IncompleteExtractionError(GraphSyncError):
    """The extraction run being loaded did not finish."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="INCOMPLETE_EXTRACTION")


class BulkLoader:
    """Loads normalized bulk tables into a graph store.

    Example:
        >>> loader = BulkLoader(store)
        >>> await loader.load_result(extractor.run("/tmp/export.ndjson"))
    """

    def __init__(self, store: GraphStore) -> None:
        self.store = store

    async def load_result(self, result: BulkResult, force: bool = False) -> LoadResult:
        """Load the output of an extraction run.

        Raises:
            IncompleteExtractionError: If the run was incomplete and not forced
        """
        if not result.complete and not force:
            raise IncompleteExtractionError(
                f"Extraction processed {result.processed_lines} of "
                f"{result.total_lines} lines; re-run it before loading"
            )
        return await self.load_dir(result.output_dir)

    async def load_dir(self, output_dir: str) -> LoadResult:
        """Load the three tables found in `output_dir`.

        Raises:
            FileNotFoundError: If a table is missing
        """
        paths = [os.path.join(output_dir, name) for name in (NODES_FILE, RELATIONSHIPS_FILE, EVENTS_FILE)]
        for path in paths:
            if not os.path.exists(path):
                raise FileNotFoundError(f"Bulk table not found: {path}")

        logger.info("Starting bulk load", extra={"output_dir": output_dir})
        return await self.store.bulk_load(*paths)
