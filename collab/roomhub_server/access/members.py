"""
Member management for RoomHub.

Invite, remove, role update and ownership transfer. Each operation:
1. Loads the caller's and target's memberships inside one transaction
2. Runs the transition validator from transitions.py
3. Writes, letting the store re-check the owner count at commit
4. Records an audit event after the commit succeeds

Invariants:
    - No write happens before every check has passed
    - Checks and writes share one store transaction
    - Audit failures never undo a committed change
    - DM rooms keep the two participants they were opened with

How to change safely:
    - New operations need a MemberOperation and table rows first
    - Keep audit metadata keys stable, the activity feed reads them
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from ..audit import AuditRecorder
from ..errors import INVALID_REQUEST, ValidationError
from ..models import AuditAction, Membership, RoomRole, RoomType, User
from ..store.base import MembershipTransaction, Store
from .controller import AccessController
from .transitions import MemberOperation, RoleChange, validate_role_change

logger = logging.getLogger(__name__)

INVITABLE_ROOM_TYPES = frozenset({RoomType.PRIVATE, RoomType.TICKET})
INVITABLE_ROLES = frozenset({RoomRole.MEMBER, RoomRole.MODERATOR})
# Rooms whose member list is set when the room is created
FIXED_MEMBERSHIP_TYPES = frozenset({RoomType.DM})


@dataclass
class InviteResult:
    """Outcome of an invite.

    Attributes:
        membership: The target's membership
        created: False when the target was already a member
    """

    membership: Membership
    created: bool


class MemberManager:
    """Membership mutations guarded by the transition table.

    Example:
        >>> members = MemberManager(store, AccessController(store), AuditRecorder(store))
        >>> result = await members.invite_member(owner, room.id, "user_2")
        >>> result.created
        True
    """

    def __init__(self, store: Store, controller: AccessController, recorder: AuditRecorder) -> None:
        self.store = store
        self.controller = controller
        self.recorder = recorder

    async def _require_mutable_membership(self, room_id: str) -> None:
        room = await self.controller.require_room(room_id)
        if room.type in FIXED_MEMBERSHIP_TYPES:
            raise ValidationError(
                f"Members of {room.type.value} rooms cannot be changed",
                field_name="room_id",
                code=INVALID_REQUEST,
            )

    async def _change(
        self,
        tx: MembershipTransaction,
        operation: MemberOperation,
        caller: User,
        room_id: str,
        target_id: str,
        target: Membership | None,
        role_after: RoomRole | None,
    ) -> None:
        caller_membership = await tx.find_membership(caller.id, room_id)
        validate_role_change(
            RoleChange(
                operation=operation,
                room_id=room_id,
                caller_id=caller.id,
                caller_role=caller_membership.role if caller_membership else None,
                caller_is_admin=caller.is_admin,
                target_id=target_id,
                role_before=target.role if target else None,
                role_after=role_after,
                owner_count=await tx.count_owners(room_id),
                member_count=await tx.count_members(room_id),
            )
        )

    async def invite_member(
        self,
        caller: User,
        room_id: str,
        target_user_id: str,
        role: RoomRole = RoomRole.MEMBER,
    ) -> InviteResult:
        """Add ``target_user_id`` to a PRIVATE or TICKET room.

        Inviting an existing member returns their membership unchanged.

        Raises:
            NotFoundError: Room or target user does not exist
            ValidationError: Room type or role cannot be invited to
            AccessError: Caller is not OWNER/MODERATOR
        """
        room = await self.controller.require_room(room_id)
        if room.type not in INVITABLE_ROOM_TYPES:
            raise ValidationError(
                f"Cannot invite to {room.type.value} rooms",
                field_name="room_id",
                code=INVALID_REQUEST,
            )
        if role not in INVITABLE_ROLES:
            raise ValidationError(
                f"Invited role must be MEMBER or MODERATOR, got {role.value}",
                field_name="role",
            )
        await self.controller.require_user(target_user_id)

        async with self.store.transaction() as tx:
            await self._change(
                tx, MemberOperation.INVITE, caller, room_id, target_user_id, None, role
            )
            existing = await tx.find_membership(target_user_id, room_id)
            if existing is not None:
                return InviteResult(membership=existing, created=False)
            membership = await tx.upsert_membership(target_user_id, room_id, role)

        logger.info(
            "Member invited",
            extra={
                "room_id": room_id,
                "user_id": target_user_id,
                "role": role.value,
                "invited_by": caller.id,
            },
        )
        return InviteResult(membership=membership, created=True)

    async def remove_member(self, caller: User, room_id: str, target_user_id: str) -> Membership:
        """Remove ``target_user_id`` from the room.

        Returns:
            The deleted membership

        Raises:
            NotFoundError: Room missing or target not a member
            AccessError: Caller is not OWNER, targets themself, or would
                remove the sole OWNER while other members remain
            ValidationError: Room is a DM
        """
        await self._require_mutable_membership(room_id)

        async with self.store.transaction() as tx:
            target = await tx.find_membership(target_user_id, room_id)
            await self._change(
                tx, MemberOperation.REMOVE, caller, room_id, target_user_id, target, None
            )
            await tx.delete_membership(target_user_id, room_id)

        logger.info(
            "Member removed",
            extra={"room_id": room_id, "user_id": target_user_id, "removed_by": caller.id},
        )
        await self.recorder.record(
            AuditAction.MEMBER_REMOVE,
            caller.id,
            "member",
            target_user_id,
            {"roomId": room_id, "removedRole": target.role.value},
        )
        return target

    async def update_member_role(
        self, caller: User, room_id: str, target_user_id: str, new_role: RoomRole
    ) -> Membership:
        """Switch a member between MEMBER and MODERATOR.

        Raises:
            NotFoundError: Room missing or target not a member
            AccessError: Caller is not OWNER, targets themself, or the change
                grants or revokes OWNER
            ValidationError: Room is a DM
        """
        await self._require_mutable_membership(room_id)

        async with self.store.transaction() as tx:
            target = await tx.find_membership(target_user_id, room_id)
            await self._change(
                tx, MemberOperation.UPDATE_ROLE, caller, room_id, target_user_id, target, new_role
            )
            old_role = target.role
            updated = await tx.upsert_membership(target_user_id, room_id, new_role)

        logger.info(
            "Member role changed",
            extra={
                "room_id": room_id,
                "user_id": target_user_id,
                "old_role": old_role.value,
                "new_role": new_role.value,
            },
        )
        await self.recorder.record(
            AuditAction.MEMBER_ROLE_CHANGE,
            caller.id,
            "member",
            target_user_id,
            {"roomId": room_id, "oldRole": old_role.value, "newRole": new_role.value},
        )
        return updated

    async def transfer_ownership(self, caller: User, room_id: str, new_owner_id: str) -> Membership:
        """Make ``new_owner_id`` the room's only OWNER.

        Every current OWNER is demoted to MODERATOR in the same transaction.

        Raises:
            NotFoundError: Room missing or new owner not a member
            AccessError: Caller is not OWNER or targets themself
            ValidationError: Room is a DM
        """
        await self._require_mutable_membership(room_id)

        async with self.store.transaction() as tx:
            target = await tx.find_membership(new_owner_id, room_id)
            await self._change(
                tx,
                MemberOperation.TRANSFER_OWNERSHIP,
                caller,
                room_id,
                new_owner_id,
                target,
                RoomRole.OWNER,
            )

            previous_owner_ids = []
            for membership in await tx.list_memberships(room_id):
                if membership.role == RoomRole.OWNER and membership.user_id != new_owner_id:
                    await tx.upsert_membership(membership.user_id, room_id, RoomRole.MODERATOR)
                    previous_owner_ids.append(membership.user_id)
            promoted = await tx.upsert_membership(new_owner_id, room_id, RoomRole.OWNER)

        logger.info(
            "Room ownership transferred",
            extra={"room_id": room_id, "new_owner_id": new_owner_id, "by": caller.id},
        )
        await self.recorder.record(
            AuditAction.OWNERSHIP_TRANSFER,
            caller.id,
            "room",
            room_id,
            {"newOwnerId": new_owner_id, "previousOwnerIds": previous_owner_ids},
        )
        return promoted
