"""
Domain records for RoomHub.

This module defines the persisted shapes the core works with:
- Users with a global role and optional department
- Rooms (PUBLIC, PRIVATE, DM, TICKET) and their memberships
- Append-only audit records
- Chat messages with optional thread parent and soft delete

Invariants:
    - All timestamps are Unix milliseconds (UTC)
    - Ticket status is only meaningful for TICKET rooms
    - A room with more than one member has at least one OWNER
    - Audit records are never mutated after creation

How to change safely:
    - Add new enum members at the end, never rename existing values
    - Values are persisted as strings, keep them stable
    - New record fields must have defaults
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


def now_ms() -> int:
    """Current time as Unix milliseconds."""
    return int(time.time() * 1000)


def new_id() -> str:
    """Generate a new record identifier."""
    return str(uuid.uuid4())


class GlobalRole(str, Enum):
    """Account-wide role."""

    USER = "USER"
    ADMIN = "ADMIN"


class RoomType(str, Enum):
    """Kinds of collaboration spaces."""

    PUBLIC = "PUBLIC"
    PRIVATE = "PRIVATE"
    DM = "DM"
    TICKET = "TICKET"


class RoomRole(str, Enum):
    """Role a user holds inside a single room."""

    OWNER = "OWNER"
    MODERATOR = "MODERATOR"
    MEMBER = "MEMBER"


class TicketStatus(str, Enum):
    """Lifecycle of a support ticket."""

    OPEN = "OPEN"
    WAITING = "WAITING"
    RESOLVED = "RESOLVED"


class AuditAction(str, Enum):
    """Closed set of actions written to the audit log."""

    USER_BAN = "user.ban"
    USER_UNBAN = "user.unban"
    ROOM_DELETE = "room.delete"
    MEMBER_REMOVE = "member.remove"
    MEMBER_ROLE_CHANGE = "member.role.change"
    OWNERSHIP_TRANSFER = "ownership.transfer"
    ROOM_EDIT = "room.edit"
    MESSAGE_DELETE = "message.delete"
    TICKET_STATUS_CHANGE = "ticket.status.change"
    TICKET_ASSIGN = "ticket.assign"


INTERNAL_ROOM_TYPES = frozenset({RoomType.PUBLIC, RoomType.PRIVATE})


@dataclass
class User:
    """A person using the system.

    Attributes:
        id: User identifier
        name: Display name
        email: Email address
        role: Global role (USER or ADMIN)
        department: Staff department, None for customers
        image: Avatar URL
        created_at: Signup timestamp (Unix ms)
    """

    id: str
    name: str | None = None
    email: str | None = None
    role: GlobalRole = GlobalRole.USER
    department: str | None = None
    image: str | None = None
    created_at: int = field(default_factory=now_ms)

    @property
    def is_admin(self) -> bool:
        return self.role == GlobalRole.ADMIN


@dataclass
class Room:
    """A collaboration space.

    Attributes:
        id: Room identifier
        name: Unique slug
        title: Human readable title
        type: Room type
        status: Ticket status (TICKET rooms only)
        department: Optional department tag
        is_private: Visibility flag for regular rooms
        creator_id: Creating user, None for system-created rooms
        created_at: Creation timestamp (Unix ms)
    """

    id: str
    name: str
    title: str | None = None
    type: RoomType = RoomType.PUBLIC
    status: TicketStatus | None = None
    department: str | None = None
    is_private: bool = False
    creator_id: str | None = None
    created_at: int = field(default_factory=now_ms)

    @property
    def is_ticket(self) -> bool:
        return self.type == RoomType.TICKET


@dataclass
class Membership:
    """A (user, room, role) triple."""

    user_id: str
    room_id: str
    role: RoomRole
    id: str = field(default_factory=new_id)
    created_at: int = field(default_factory=now_ms)


@dataclass(frozen=True)
class AuditRecord:
    """Immutable audit log entry.

    Attributes:
        id: Record identifier
        action: What happened
        actor_id: Who did it
        target_type: Kind of target ("room", "member", "message")
        target_id: Target identifier
        metadata: Free-form context
        created_at: Timestamp (Unix ms)
    """

    id: str
    action: str
    actor_id: str
    target_type: str | None = None
    target_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: int = field(default_factory=now_ms)


@dataclass
class Message:
    """A chat message inside exactly one room."""

    id: str
    room_id: str
    author_id: str
    content: str
    parent_message_id: str | None = None
    created_at: int = field(default_factory=now_ms)
    deleted_at: int | None = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None
