"""
Seeding helpers for RoomHub tests.

Fixtures stay synchronous, so async tests seed their store with these
coroutines before exercising the code under test.
"""

from __future__ import annotations

from collab.roomhub_server.models import (
    GlobalRole,
    Room,
    RoomRole,
    RoomType,
    TicketStatus,
    User,
    now_ms,
)
from collab.roomhub_server.store.base import Store


async def add_user(
    store: Store,
    user_id: str,
    role: GlobalRole = GlobalRole.USER,
    department: str | None = None,
    name: str | None = None,
    created_at: int | None = None,
) -> User:
    """Create a user, named after its id unless a name is given."""
    user = User(
        id=user_id,
        name=name or user_id.title(),
        email=f"{user_id}@example.com",
        role=role,
        department=department,
        created_at=created_at if created_at is not None else now_ms(),
    )
    return await store.create_user(user)


async def add_room(
    store: Store,
    room_id: str,
    room_type: RoomType = RoomType.PUBLIC,
    members: dict[str, RoomRole] | None = None,
    creator_id: str | None = None,
    department: str | None = None,
    title: str | None = None,
    created_at: int | None = None,
) -> Room:
    """Create a room and its memberships in one transaction."""
    room = Room(
        id=room_id,
        name=room_id,
        title=title or room_id.title(),
        type=room_type,
        status=TicketStatus.OPEN if room_type == RoomType.TICKET else None,
        department=department,
        is_private=room_type != RoomType.PUBLIC,
        creator_id=creator_id,
        created_at=created_at if created_at is not None else now_ms(),
    )
    async with store.transaction() as tx:
        await tx.create_room(room)
        for user_id, role in (members or {}).items():
            await tx.upsert_membership(user_id, room_id, role)
    return room
