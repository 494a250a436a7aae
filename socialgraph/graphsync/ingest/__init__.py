"""
Live ingestion for GraphSync.

Turns the live event subscription into retry queue markers.
"""

from .coalescer import Coalescer

__all__ = ["Coalescer"]
