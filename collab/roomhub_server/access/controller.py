"""
Access controller for RoomHub.

Decides who may read, write and manage a room:
- Classifies users as internal staff or external customers
- Answers room access questions
- Asserts room and global roles before mutations
- Computes the visibility scope the activity feed is filtered by

Invariants:
    - ADMIN satisfies every room-level and global role check
    - External customers only ever see TICKET rooms they belong to
    - The controller never writes to the store

How to change safely:
    - Membership transition rules belong in transitions.py
    - Widening a visibility rule exposes data, add a test per user kind
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass

from ..errors import INSUFFICIENT_ROLE, NOT_MEMBER, AccessError, NotFoundError
from ..models import INTERNAL_ROOM_TYPES, GlobalRole, Membership, Room, RoomRole, RoomType, User
from ..store.base import Store

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VisibilityScope:
    """Rooms a user's activity feed may draw from.

    A ``None`` set means unrestricted (administrators).

    Attributes:
        user_id: The user the scope was computed for
        is_admin: User holds the global ADMIN role
        is_external: User is an external customer
        ticket_room_ids: TICKET rooms whose events are visible
        room_ids: PUBLIC/PRIVATE rooms whose creation events are visible
        message_room_ids: Rooms whose messages are visible
    """

    user_id: str
    is_admin: bool = False
    is_external: bool = False
    ticket_room_ids: frozenset[str] | None = None
    room_ids: frozenset[str] | None = None
    message_room_ids: frozenset[str] | None = None


class AccessController:
    """Authorization decisions over a Store.

    Example:
        >>> controller = AccessController(store)
        >>> await controller.can_access_room(user, room)
        True
        >>> await controller.assert_role(user, room, {RoomRole.OWNER})
    """

    def __init__(self, store: Store) -> None:
        self.store = store

    async def require_user(self, user_id: str) -> User:
        user = await self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("User", user_id)
        return user

    async def require_room(self, room_id: str) -> Room:
        room = await self.store.get_room(room_id)
        if room is None:
            raise NotFoundError("Room", room_id)
        return room

    async def _membership_rooms(self, user: User) -> dict[str, Room]:
        """Rooms the user holds a membership in, keyed by id."""
        memberships = await self.store.list_user_memberships(user.id)
        return await self.store.get_rooms({m.room_id for m in memberships})

    @staticmethod
    def _is_external(user: User, rooms: Iterable[Room]) -> bool:
        if user.role != GlobalRole.USER or user.department:
            return False
        return not any(room.type in INTERNAL_ROOM_TYPES for room in rooms)

    async def is_external_customer(self, user: User) -> bool:
        """USER role, no department and no PUBLIC/PRIVATE membership."""
        if user.role != GlobalRole.USER or user.department:
            return False
        rooms = await self._membership_rooms(user)
        return self._is_external(user, rooms.values())

    async def is_internal_user(self, user: User) -> bool:
        return not await self.is_external_customer(user)

    @staticmethod
    def _department_allows(user: User, room: Room) -> bool:
        return room.department is None or room.department == user.department

    async def can_access_room(self, user: User, room: Room) -> bool:
        """Whether ``user`` may read ``room``."""
        if user.is_admin:
            return True

        rooms = await self._membership_rooms(user)
        is_member = room.id in rooms

        if self._is_external(user, rooms.values()):
            return room.is_ticket and is_member
        if is_member:
            return True
        return room.type == RoomType.PUBLIC and self._department_allows(user, room)

    async def assert_role(
        self, user: User, room: Room, allowed_roles: Iterable[RoomRole]
    ) -> Membership | None:
        """Require one of ``allowed_roles`` in ``room``.

        Returns:
            The caller's membership, or None for administrators without one

        Raises:
            AccessError: NOT_MEMBER or INSUFFICIENT_ROLE
        """
        membership = await self.store.find_membership(user.id, room.id)
        if user.is_admin:
            return membership
        if membership is None:
            raise AccessError(
                "Not a member of this room",
                code=NOT_MEMBER,
                user_id=user.id,
                room_id=room.id,
            )
        allowed = frozenset(allowed_roles)
        if membership.role not in allowed:
            logger.info(
                "Room role check denied",
                extra={"user_id": user.id, "room_id": room.id, "role": membership.role.value},
            )
            raise AccessError(
                f"Requires one of: {', '.join(sorted(r.value for r in allowed))}",
                code=INSUFFICIENT_ROLE,
                user_id=user.id,
                room_id=room.id,
            )
        return membership

    def assert_global_role(self, user: User, required_role: GlobalRole) -> None:
        """Require a global role; ADMIN satisfies any requirement."""
        if user.is_admin or user.role == required_role:
            return
        raise AccessError(
            f"Requires global role {required_role.value}",
            code=INSUFFICIENT_ROLE,
            user_id=user.id,
        )

    async def visibility_scope(self, user: User) -> VisibilityScope:
        """Compute which rooms feed events may come from for ``user``."""
        if user.is_admin:
            return VisibilityScope(user_id=user.id, is_admin=True)

        rooms = await self._membership_rooms(user)
        tickets = frozenset(rid for rid, room in rooms.items() if room.type == RoomType.TICKET)

        if self._is_external(user, rooms.values()):
            return VisibilityScope(
                user_id=user.id,
                is_external=True,
                ticket_room_ids=tickets,
                room_ids=frozenset(),
                message_room_ids=tickets,
            )

        public = await self.store.list_rooms(frozenset({RoomType.PUBLIC}))
        accessible = {r.id for r in public if self._department_allows(user, r)}
        accessible.update(rid for rid, room in rooms.items() if room.type in INTERNAL_ROOM_TYPES)
        direct = {rid for rid, room in rooms.items() if room.type == RoomType.DM}

        return VisibilityScope(
            user_id=user.id,
            ticket_room_ids=tickets,
            room_ids=frozenset(accessible),
            message_room_ids=frozenset(accessible | direct | tickets),
        )
