"""
Ops interface for GraphSync.

Exposes health, status and trigger points (sweep, rebuild, enqueue)
over HTTP. Triggers are scheduled, never executed inline.
"""

from .http_server import create_http_app, run_http_server
from .servicer import SyncServicer

__all__ = [
    "SyncServicer",
    "create_http_app",
    "run_http_server",
]
