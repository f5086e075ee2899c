"""
RoomHub Test Suite.

This package contains:
- unit/: Unit tests (in-memory store, no external dependencies)
- integration/: Integration tests (SQLite store, HTTP API)
- helpers.py: Seeding helpers shared by both
"""
