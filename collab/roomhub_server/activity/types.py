"""
Activity feed types for RoomHub.

Every feed source is normalized into one ActivityEvent shape:
- id: source-prefixed ("audit-<id>", "room-<id>", "message-<id>")
- type: one of ActivityEventType
- timestamp: Unix ms, serialized as ISO-8601 UTC
- actor / target: who did it, and to what
- metadata: event-specific fields
- source / source_id: origin table and record id

Invariants:
    - Event ids are unique across sources thanks to the prefix
    - to_dict() output is deterministic for identical events

How to change safely:
    - Add new event types at the end of ActivityEventType
    - Keep to_dict() keys stable, clients render them directly
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class ActivityEventType(str, Enum):
    """Kinds of feed events."""

    TICKET_CREATED = "ticket.created"
    TICKET_STATUS_CHANGED = "ticket.status.changed"
    TICKET_ASSIGNED = "ticket.assigned"
    ROOM_CREATED = "room.created"
    MESSAGE_POSTED = "message.posted"


class EventSourceKind(str, Enum):
    """Table an event was derived from."""

    AUDIT = "audit"
    ROOM = "room"
    MESSAGE = "message"


def format_timestamp(ms: int) -> str:
    """Render Unix ms as ISO-8601 UTC with millisecond precision."""
    dt = datetime.fromtimestamp(ms / 1000, tz=timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class ActivityActor:
    """Who performed the action. An empty id means a system action."""

    id: str
    name: str | None = None
    email: str | None = None
    image: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "email": self.email, "image": self.image}


SYSTEM_ACTOR = ActivityActor(id="")


@dataclass(frozen=True)
class ActivityTarget:
    """What the action was applied to (room, ticket or message room)."""

    id: str
    title: str | None = None
    type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "title": self.title, "type": self.type}


@dataclass(frozen=True)
class ActivityEvent:
    """One entry of the activity feed.

    Attributes:
        id: Source-prefixed unique id
        type: Event type
        timestamp: When it happened (Unix ms)
        actor: Who did it
        target: What it was done to
        metadata: Event-specific data
        source: Origin table
        source_id: Origin record id
    """

    id: str
    type: ActivityEventType
    timestamp: int
    actor: ActivityActor
    target: ActivityTarget
    metadata: dict[str, Any] = field(default_factory=dict)
    source: EventSourceKind = EventSourceKind.AUDIT
    source_id: str = ""

    def sort_key(self) -> tuple[int, str]:
        return (self.timestamp, self.id)

    def to_dict(self) -> dict[str, Any]:
        """Render as the JSON shape clients consume."""
        return {
            "id": self.id,
            "type": self.type.value,
            "timestamp": format_timestamp(self.timestamp),
            "actor": self.actor.to_dict(),
            "target": self.target.to_dict(),
            "metadata": dict(self.metadata),
            "source": self.source.value,
            "sourceId": self.source_id,
        }


@dataclass
class FeedPage:
    """One page of the activity feed.

    Attributes:
        events: Events, newest first
        next_cursor: Id of the last event when more remain, else None
        has_more: Whether another page may exist
    """

    events: list[ActivityEvent]
    next_cursor: str | None = None
    has_more: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "events": [event.to_dict() for event in self.events],
            "cursor": self.next_cursor,
            "hasMore": self.has_more,
        }
