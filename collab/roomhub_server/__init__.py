"""
RoomHub Server - Room access control and activity aggregation.

This package implements the core of a multi-tenant collaboration backend:
- Rooms (PUBLIC, PRIVATE, DM, TICKET) with OWNER/MODERATOR/MEMBER roles
- A table-driven access controller guarding every membership change
- A ticket assignment workflow for support rooms
- An activity feed merging audit records, rooms, tickets and messages
- A best-effort audit recorder

Architecture:
    ┌─────────────┐     ┌─────────────┐     ┌──────────────────┐
    │   Client    │────▶│  HTTP API   │────▶│ Member / Ticket  │
    │             │     │  (FastAPI)  │     │    services      │
    └─────────────┘     └──────┬──────┘     └────────┬─────────┘
                               │                     │
                               ▼                     ▼
                        ┌─────────────┐     ┌──────────────────┐
                        │  Activity   │────▶│ Access Controller│
                        │ Aggregator  │     └────────┬─────────┘
                        └──────┬──────┘              │
                               │                     ▼
                               │            ┌──────────────────┐
                               └───────────▶│  Store (SQLite / │
                                            │  in-memory)      │
                                            └──────────────────┘

Invariants:
    - A room with more than one member always has at least one OWNER
    - Users never change or remove their own membership role
    - OWNER only moves through ownership transfer or ticket assignment
    - Audit records are append-only

How to change safely:
    - Role rules live in access/transitions.py, change them there only
    - New feed event types need a normalizer and an ActivityEventType member
    - Persisted enum values must never be renamed
"""

from ._version import __version__

__all__ = ["__version__"]
