"""
Cold-start and full-rebuild path for GraphSync.

A full export is extracted in parallel into normalized tables, which the
loader then feeds into the graph store.
"""

from .export import export_to_file
from .extractor import (
    BulkExtractor,
    BulkResult,
    ChunkResult,
    ExtractionState,
    extract_chunk,
)
from .loader import BulkLoader, IncompleteExtractionError

__all__ = [
    "BulkExtractor",
    "BulkResult",
    "ChunkResult",
    "ExtractionState",
    "extract_chunk",
    "export_to_file",
    "BulkLoader",
    "IncompleteExtractionError",
]
