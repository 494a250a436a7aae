"""
GraphSync Test Suite.

This package contains:
- unit/: Unit tests (no external services)
- integration/: Integration tests (SQLite, in-memory event source, aiohttp)
"""
