"""
Storage module for RoomHub.

This module provides the interfaces the core consumes and two backends:
- Store / EventSource / AuditSink interfaces
- InMemoryStore for tests and local development
- SqliteStore with one SQLite file per tenant

Invariants:
    - Event source queries are ordered newest first
    - Membership writes are atomic and never leave a shared room without an OWNER

How to change safely:
    - Keep both backends behaviourally identical
    - Test new queries against both backends
"""

from .base import (
    AuditQuery,
    AuditSink,
    EventSource,
    MembershipReader,
    MembershipTransaction,
    MessageQuery,
    RoomQuery,
    SortKey,
    Store,
)
from .memory import InMemoryStore
from .sqlite_store import SqliteStore

__all__ = [
    "AuditQuery",
    "AuditSink",
    "EventSource",
    "MembershipReader",
    "MembershipTransaction",
    "MessageQuery",
    "RoomQuery",
    "SortKey",
    "Store",
    "InMemoryStore",
    "SqliteStore",
]
