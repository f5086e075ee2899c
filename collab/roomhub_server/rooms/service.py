"""
Room and message services for RoomHub.

This module provides:
- RoomService: create, delete, join and leave rooms, open direct rooms
- MessageService: post and soft-delete messages

Invariants:
    - A new room always starts with its creator as OWNER
    - Only PUBLIC rooms can be joined, everything else is invite-only
    - The sole OWNER cannot leave while other members remain
    - Both participants of a direct room are its OWNERs
    - Deleting a room removes its memberships and messages
    - Deleted messages keep their row, content is replaced

How to change safely:
    - Changes made on behalf of another user belong in access/members.py
    - Keep audit metadata keys stable, the activity feed reads them
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from ..access.controller import AccessController
from ..audit import AuditRecorder
from ..errors import (
    FORBIDDEN,
    INVALID_REQUEST,
    LAST_OWNER,
    NOT_MEMBER,
    AccessError,
    InvariantViolation,
    NotFoundError,
    ValidationError,
)
from ..models import (
    INTERNAL_ROOM_TYPES,
    AuditAction,
    GlobalRole,
    Membership,
    Message,
    Room,
    RoomRole,
    RoomType,
    User,
    new_id,
    now_ms,
)
from ..ratelimit import SlidingWindowRateLimiter
from ..store.base import Store

logger = logging.getLogger(__name__)

ROOM_EXISTS = "ROOM_EXISTS"
ALREADY_DELETED = "ALREADY_DELETED"
INVALID_PARENT = "INVALID_PARENT"

DELETED_MESSAGE_CONTENT = "[Message deleted]"
MAX_ROOM_NAME_LENGTH = 100
MAX_MESSAGE_LENGTH = 4000
DIRECT_ROOM_PREFIX = "dm-"


def direct_room_name(user_a: str, user_b: str) -> str:
    """Stable room name for the direct room of two users."""
    first, second = sorted((user_a, user_b))
    return f"{DIRECT_ROOM_PREFIX}{first}-{second}"


@dataclass
class JoinResult:
    """Outcome of joining a room.

    Attributes:
        membership: The caller's membership
        created: False when the caller was already a member
    """

    membership: Membership
    created: bool


@dataclass
class DirectRoom:
    """A direct room and whether this call created it."""

    room: Room
    created: bool


class RoomService:
    """Room lifecycle operations."""

    def __init__(self, store: Store, controller: AccessController, recorder: AuditRecorder) -> None:
        self.store = store
        self.controller = controller
        self.recorder = recorder

    async def create_room(
        self,
        creator: User,
        name: str,
        title: str | None = None,
        room_type: RoomType = RoomType.PUBLIC,
        department: str | None = None,
        is_private: bool = False,
    ) -> Room:
        """Create a PUBLIC or PRIVATE room owned by ``creator``.

        Raises:
            ValidationError: Bad name, unsupported type or duplicate name
        """
        name = name.strip()
        if not name or len(name) > MAX_ROOM_NAME_LENGTH:
            raise ValidationError(
                f"Room name must be 1-{MAX_ROOM_NAME_LENGTH} characters", field_name="name"
            )
        if room_type not in INTERNAL_ROOM_TYPES:
            raise ValidationError(
                f"Cannot create {room_type.value} rooms here", field_name="room_type"
            )
        if await self.store.get_room_by_name(name) is not None:
            raise ValidationError(f"Room already exists: {name}", field_name="name", code=ROOM_EXISTS)

        room = Room(
            id=new_id(),
            name=name,
            title=title or name,
            type=room_type,
            department=department,
            is_private=is_private or room_type == RoomType.PRIVATE,
            creator_id=creator.id,
        )
        try:
            async with self.store.transaction() as tx:
                await tx.create_room(room)
                await tx.upsert_membership(creator.id, room.id, RoomRole.OWNER)
        except ValueError:
            raise ValidationError(f"Room already exists: {name}", field_name="name", code=ROOM_EXISTS)

        logger.info(
            "Room created",
            extra={"room_id": room.id, "room_type": room_type.value, "creator_id": creator.id},
        )
        return room

    async def delete_room(self, caller: User, room_id: str) -> Room:
        """Delete a room with its memberships and messages (administrators only).

        Raises:
            AccessError: Caller is not an administrator
            NotFoundError: Room does not exist
        """
        self.controller.assert_global_role(caller, GlobalRole.ADMIN)
        room = await self.controller.require_room(room_id)

        async with self.store.transaction() as tx:
            if not await tx.delete_room(room_id):
                raise NotFoundError("Room", room_id)

        logger.info("Room deleted", extra={"room_id": room_id, "deleted_by": caller.id})
        await self.recorder.record(
            AuditAction.ROOM_DELETE,
            caller.id,
            "room",
            room_id,
            {"roomName": room.name, "roomTitle": room.title, "roomType": room.type.value},
        )
        return room

    async def join_room(self, user: User, room_id: str) -> JoinResult:
        """Join a PUBLIC room as MEMBER.

        Joining a room the user already belongs to returns the existing
        membership.

        Raises:
            NotFoundError: Room does not exist
            AccessError: Room is not PUBLIC or hidden from the user (FORBIDDEN)
        """
        room = await self.controller.require_room(room_id)
        if room.type != RoomType.PUBLIC or room.is_private:
            raise AccessError(
                "Cannot join a private room, ask a room owner for an invite",
                code=FORBIDDEN,
                user_id=user.id,
                room_id=room_id,
            )
        if not user.is_admin and not await self.controller.can_access_room(user, room):
            raise AccessError(
                "Room is not open to this user",
                code=FORBIDDEN,
                user_id=user.id,
                room_id=room_id,
            )

        async with self.store.transaction() as tx:
            existing = await tx.find_membership(user.id, room_id)
            if existing is not None:
                return JoinResult(membership=existing, created=False)
            membership = await tx.upsert_membership(user.id, room_id, RoomRole.MEMBER)

        logger.info("Room joined", extra={"room_id": room_id, "user_id": user.id})
        return JoinResult(membership=membership, created=True)

    async def leave_room(self, user: User, room_id: str) -> Membership:
        """Drop the user's own membership.

        Returns:
            The membership that was removed

        Raises:
            NotFoundError: Room does not exist
            AccessError: User is not a member (NOT_MEMBER)
            InvariantViolation: User is the only OWNER and others remain
        """
        await self.controller.require_room(room_id)

        async with self.store.transaction() as tx:
            membership = await tx.find_membership(user.id, room_id)
            if membership is None:
                raise AccessError(
                    "Not a member of this room",
                    code=NOT_MEMBER,
                    user_id=user.id,
                    room_id=room_id,
                )
            if (
                membership.role == RoomRole.OWNER
                and await tx.count_owners(room_id) == 1
                and await tx.count_members(room_id) > 1
            ):
                raise InvariantViolation(
                    "The only owner cannot leave, transfer ownership or remove members first",
                    invariant=LAST_OWNER,
                    user_id=user.id,
                    room_id=room_id,
                )
            await tx.delete_membership(user.id, room_id)

        logger.info(
            "Room left",
            extra={"room_id": room_id, "user_id": user.id, "role": membership.role.value},
        )
        return membership

    async def open_direct_room(self, caller: User, other_user_id: str) -> DirectRoom:
        """Get or create the direct room between ``caller`` and another user.

        A participant who left is added back when the room is reopened.

        Raises:
            ValidationError: Caller targets themself
            NotFoundError: Other user does not exist
        """
        if other_user_id == caller.id:
            raise ValidationError(
                "Cannot open a direct room with yourself",
                field_name="user_id",
                code=INVALID_REQUEST,
            )
        other = await self.controller.require_user(other_user_id)

        try:
            return await self._open_direct_room(caller, other)
        except ValueError:
            # The other participant created the room first
            return await self._open_direct_room(caller, other)

    async def _open_direct_room(self, caller: User, other: User) -> DirectRoom:
        name = direct_room_name(caller.id, other.id)
        room = await self.store.get_room_by_name(name)
        created = room is None

        async with self.store.transaction() as tx:
            if room is None:
                room = Room(
                    id=new_id(),
                    name=name,
                    title=f"DM: {caller.name or caller.email} & {other.name or other.email}",
                    type=RoomType.DM,
                    is_private=True,
                    creator_id=caller.id,
                )
                await tx.create_room(room)
            for user_id in (caller.id, other.id):
                if await tx.find_membership(user_id, room.id) is None:
                    await tx.upsert_membership(user_id, room.id, RoomRole.OWNER)

        if created:
            logger.info(
                "Direct room created",
                extra={"room_id": room.id, "user_ids": [caller.id, other.id]},
            )
        return DirectRoom(room=room, created=created)


class MessageService:
    """Posting and deleting chat messages."""

    def __init__(
        self,
        store: Store,
        controller: AccessController,
        recorder: AuditRecorder,
        limiter: SlidingWindowRateLimiter | None = None,
    ) -> None:
        self.store = store
        self.controller = controller
        self.recorder = recorder
        self.limiter = limiter

    async def post_message(
        self,
        author: User,
        room_id: str,
        content: str,
        parent_message_id: str | None = None,
    ) -> Message:
        """Post a message, optionally as a thread reply.

        Raises:
            ValidationError: Empty or oversized content, bad parent
            NotFoundError: Room does not exist
            AccessError: Author may not post in the room
            RateLimitedError: Author is posting too fast
        """
        if not content.strip() or len(content) > MAX_MESSAGE_LENGTH:
            raise ValidationError(
                f"Message must be 1-{MAX_MESSAGE_LENGTH} characters", field_name="content"
            )

        room = await self.controller.require_room(room_id)
        if not author.is_admin:
            membership = await self.store.find_membership(author.id, room_id)
            if membership is None or not await self.controller.can_access_room(author, room):
                raise AccessError(
                    "Cannot post in this room",
                    code=FORBIDDEN,
                    user_id=author.id,
                    room_id=room_id,
                )

        if parent_message_id is not None:
            parent = await self.store.get_message(parent_message_id)
            if parent is None or parent.room_id != room_id:
                raise ValidationError(
                    "Parent message must exist in the same room",
                    field_name="parent_message_id",
                    code=INVALID_PARENT,
                )

        if self.limiter is not None:
            self.limiter.check(author.id)

        message = await self.store.create_message(
            Message(
                id=new_id(),
                room_id=room_id,
                author_id=author.id,
                content=content,
                parent_message_id=parent_message_id,
            )
        )
        logger.debug(
            "Message posted",
            extra={"message_id": message.id, "room_id": room_id, "author_id": author.id},
        )
        return message

    async def delete_message(self, caller: User, message_id: str) -> Message:
        """Soft-delete a message (author only).

        Raises:
            NotFoundError: Message does not exist
            AccessError: Caller is not the author
            ValidationError: Message already deleted
        """
        message = await self.store.get_message(message_id)
        if message is None:
            raise NotFoundError("Message", message_id)
        if message.author_id != caller.id:
            raise AccessError(
                "Only the author can delete a message",
                code=FORBIDDEN,
                user_id=caller.id,
                room_id=message.room_id,
            )
        if message.is_deleted:
            raise ValidationError(
                "Message already deleted", field_name="message_id", code=ALREADY_DELETED
            )

        deleted = await self.store.soft_delete_message(message_id, now_ms(), DELETED_MESSAGE_CONTENT)
        if deleted is None:
            raise NotFoundError("Message", message_id)

        logger.info(
            "Message deleted",
            extra={"message_id": message_id, "room_id": message.room_id, "deleted_by": caller.id},
        )
        await self.recorder.record(
            AuditAction.MESSAGE_DELETE,
            caller.id,
            "message",
            message_id,
            {"roomId": message.room_id},
        )
        return deleted
