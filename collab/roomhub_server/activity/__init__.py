"""
Activity feed for RoomHub.

This module provides:
- ActivityEvent and friends: the normalized feed shape
- normalize_*: pure functions mapping source rows to events
- ActivityAggregator: permission-filtered, cursor-paginated feed pages
"""

from .aggregator import ActivityAggregator, parse_type_filter, retry_read
from .normalize import normalize_audit_record, normalize_message, normalize_room
from .types import (
    ActivityActor,
    ActivityEvent,
    ActivityEventType,
    ActivityTarget,
    EventSourceKind,
    FeedPage,
)

__all__ = [
    "ActivityAggregator",
    "parse_type_filter",
    "retry_read",
    "normalize_audit_record",
    "normalize_message",
    "normalize_room",
    "ActivityActor",
    "ActivityEvent",
    "ActivityEventType",
    "ActivityTarget",
    "EventSourceKind",
    "FeedPage",
]
