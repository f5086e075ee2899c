"""
Event normalization for the activity feed.

Pure functions turning raw source rows into ActivityEvents. Rows the
feed does not show (unmapped audit actions) normalize to None.

Invariants:
    - No side effects, identical input gives identical output
    - Metadata is copied, never aliased with the source row
"""

from __future__ import annotations

import copy

from ..models import AuditAction, AuditRecord, Message, Room, RoomType, User
from .types import (
    SYSTEM_ACTOR,
    ActivityActor,
    ActivityEvent,
    ActivityEventType,
    ActivityTarget,
    EventSourceKind,
)

CONTENT_PREVIEW_LENGTH = 100

# Event ids are the source row id behind one of these prefixes
AUDIT_ID_PREFIX = "audit-"
ROOM_ID_PREFIX = "room-"
MESSAGE_ID_PREFIX = "message-"

AUDIT_EVENT_TYPES: dict[str, ActivityEventType] = {
    AuditAction.TICKET_STATUS_CHANGE.value: ActivityEventType.TICKET_STATUS_CHANGED,
    AuditAction.TICKET_ASSIGN.value: ActivityEventType.TICKET_ASSIGNED,
}

ROOM_EVENT_TYPES = frozenset({ActivityEventType.TICKET_CREATED, ActivityEventType.ROOM_CREATED})


def actor_from_user(user: User | None) -> ActivityActor:
    if user is None:
        return SYSTEM_ACTOR
    return ActivityActor(id=user.id, name=user.name, email=user.email, image=user.image)


def normalize_audit_record(record: AuditRecord, actor: User | None) -> ActivityEvent | None:
    """Map a ticket audit record to a feed event, or None if unmapped."""
    event_type = AUDIT_EVENT_TYPES.get(record.action)
    if event_type is None:
        return None

    metadata = copy.deepcopy(record.metadata or {})
    return ActivityEvent(
        id=f"{AUDIT_ID_PREFIX}{record.id}",
        type=event_type,
        timestamp=record.created_at,
        actor=actor_from_user(actor) if actor else ActivityActor(id=record.actor_id),
        target=ActivityTarget(
            id=record.target_id or "",
            title=metadata.get("ticketTitle") or None,
            type=None,
        ),
        metadata=metadata,
        source=EventSourceKind.AUDIT,
        source_id=record.id,
    )


def normalize_room(
    room: Room, label: ActivityEventType, creator: User | None
) -> ActivityEvent:
    """Map a room to ``ticket.created`` or ``room.created``."""
    if label not in ROOM_EVENT_TYPES:
        raise ValueError(f"Not a room event type: {label}")

    metadata: dict = {"roomId": room.id, "roomTitle": room.title}
    if room.type == RoomType.TICKET:
        metadata["ticketDepartment"] = room.department
        metadata["status"] = room.status.value if room.status else None
    else:
        metadata["roomType"] = room.type.value
        metadata["isPrivate"] = room.is_private

    return ActivityEvent(
        id=f"{ROOM_ID_PREFIX}{room.id}",
        type=label,
        timestamp=room.created_at,
        actor=actor_from_user(creator),
        target=ActivityTarget(id=room.id, title=room.title, type=room.type.value),
        metadata=metadata,
        source=EventSourceKind.ROOM,
        source_id=room.id,
    )


def normalize_message(message: Message, author: User | None, room: Room | None) -> ActivityEvent:
    """Map a message to ``message.posted`` with a truncated preview."""
    return ActivityEvent(
        id=f"{MESSAGE_ID_PREFIX}{message.id}",
        type=ActivityEventType.MESSAGE_POSTED,
        timestamp=message.created_at,
        actor=actor_from_user(author) if author else ActivityActor(id=message.author_id),
        target=ActivityTarget(
            id=message.room_id,
            title=room.title if room else None,
            type=room.type.value if room else None,
        ),
        metadata={
            "messageId": message.id,
            "roomId": message.room_id,
            "content": message.content[:CONTENT_PREVIEW_LENGTH],
            "isThreadReply": message.parent_message_id is not None,
        },
        source=EventSourceKind.MESSAGE,
        source_id=message.id,
    )
