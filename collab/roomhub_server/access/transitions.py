"""
Membership role transition table for RoomHub.

Every member-management operation is checked by one table-driven
validator instead of ad hoc branches:
- ROLE_PERMISSIONS: which room roles may perform which operation
- TARGET_TRANSITIONS: which (role before, role after) pairs an operation
  may produce for the target membership
- SELF_GUARDED: operations a caller may never apply to themself

Invariants:
    - A room with more than one member keeps at least one OWNER
    - Callers never change or remove their own membership here
    - OWNER is only granted or revoked by ownership transfer or
      ticket assignment

How to change safely:
    - Adding a transition widens what callers can do, review with care
    - Keep DENIAL_CODES in sync with the error codes clients rely on
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..errors import (
    FORBIDDEN,
    INSUFFICIENT_ROLE,
    LAST_OWNER,
    NOT_MEMBER,
    OWNER_TRANSFER_ONLY,
    ROLE_TRANSITION,
    SELF_CHANGE,
    AccessError,
    InvariantViolation,
    NotFoundError,
)
from ..models import RoomRole

OWNER = RoomRole.OWNER
MODERATOR = RoomRole.MODERATOR
MEMBER = RoomRole.MEMBER


class MemberOperation(str, Enum):
    """Operations that create, change or delete memberships."""

    INVITE = "invite"
    REMOVE = "remove"
    UPDATE_ROLE = "update_role"
    TRANSFER_OWNERSHIP = "transfer_ownership"
    ASSIGN_TICKET = "assign_ticket"


ROLE_PERMISSIONS: dict[RoomRole, frozenset[MemberOperation]] = {
    OWNER: frozenset(
        {
            MemberOperation.INVITE,
            MemberOperation.REMOVE,
            MemberOperation.UPDATE_ROLE,
            MemberOperation.TRANSFER_OWNERSHIP,
        }
    ),
    MODERATOR: frozenset({MemberOperation.INVITE}),
    MEMBER: frozenset(),
}

# Ticket assignment is reserved to global administrators.
ADMIN_ONLY: frozenset[MemberOperation] = frozenset({MemberOperation.ASSIGN_TICKET})

DENIAL_CODES: dict[MemberOperation, str] = {
    MemberOperation.INVITE: FORBIDDEN,
}

TARGET_TRANSITIONS: dict[MemberOperation, frozenset[tuple[Optional[RoomRole], Optional[RoomRole]]]] = {
    MemberOperation.INVITE: frozenset({(None, MEMBER), (None, MODERATOR)}),
    MemberOperation.REMOVE: frozenset({(MEMBER, None), (MODERATOR, None), (OWNER, None)}),
    MemberOperation.UPDATE_ROLE: frozenset(
        {(MEMBER, MODERATOR), (MODERATOR, MEMBER), (MEMBER, MEMBER), (MODERATOR, MODERATOR)}
    ),
    MemberOperation.TRANSFER_OWNERSHIP: frozenset(
        {(MEMBER, OWNER), (MODERATOR, OWNER), (OWNER, OWNER)}
    ),
    MemberOperation.ASSIGN_TICKET: frozenset(
        {(None, OWNER), (MEMBER, OWNER), (MODERATOR, OWNER), (OWNER, OWNER)}
    ),
}

SELF_GUARDED: frozenset[MemberOperation] = frozenset(
    {
        MemberOperation.REMOVE,
        MemberOperation.UPDATE_ROLE,
        MemberOperation.TRANSFER_OWNERSHIP,
    }
)

# Operations that act on an existing membership of the target.
TARGET_REQUIRED = SELF_GUARDED


@dataclass(frozen=True)
class RoleChange:
    """A proposed change to one membership.

    Attributes:
        operation: What is being done
        room_id: Room the membership belongs to
        caller_id: User performing the operation
        caller_role: Caller's role in the room (None = not a member)
        caller_is_admin: Caller holds the global ADMIN role
        target_id: User whose membership changes
        role_before: Target role before (None = no membership)
        role_after: Target role after (None = membership removed)
        owner_count: OWNERs in the room before the change
        member_count: Members in the room before the change
    """

    operation: MemberOperation
    room_id: str
    caller_id: str
    caller_role: Optional[RoomRole]
    caller_is_admin: bool
    target_id: str
    role_before: Optional[RoomRole]
    role_after: Optional[RoomRole]
    owner_count: int = 0
    member_count: int = 0


def can_perform(role: Optional[RoomRole], operation: MemberOperation) -> bool:
    """Whether a room role grants an operation (admins are handled separately)."""
    if role is None:
        return False
    return operation in ROLE_PERMISSIONS[role]


def check_caller(change: RoleChange) -> None:
    """Reject callers whose role does not grant the operation.

    Raises:
        AccessError: NOT_MEMBER, FORBIDDEN or INSUFFICIENT_ROLE
    """
    if change.caller_is_admin:
        return
    if change.operation in ADMIN_ONLY:
        raise AccessError(
            f"Only administrators may {change.operation.value}",
            code=INSUFFICIENT_ROLE,
            user_id=change.caller_id,
            room_id=change.room_id,
        )
    if change.caller_role is None:
        raise AccessError(
            "Not a member of this room",
            code=NOT_MEMBER,
            user_id=change.caller_id,
            room_id=change.room_id,
        )
    if not can_perform(change.caller_role, change.operation):
        raise AccessError(
            f"{change.caller_role.value} may not {change.operation.value}",
            code=DENIAL_CODES.get(change.operation, INSUFFICIENT_ROLE),
            user_id=change.caller_id,
            room_id=change.room_id,
        )


def check_self(change: RoleChange) -> None:
    """Reject self-targeted membership changes."""
    if change.operation in SELF_GUARDED and change.caller_id == change.target_id:
        raise InvariantViolation(
            "Cannot change or remove your own membership",
            invariant=SELF_CHANGE,
            user_id=change.caller_id,
            room_id=change.room_id,
        )


def check_target(change: RoleChange) -> None:
    """Reject operations on a membership that does not exist."""
    if change.role_before is None and change.operation in TARGET_REQUIRED:
        raise NotFoundError("Membership", f"{change.target_id}@{change.room_id}")


def check_transition(change: RoleChange) -> None:
    """Reject role pairs the operation may not produce."""
    pair = (change.role_before, change.role_after)
    if pair in TARGET_TRANSITIONS[change.operation]:
        return
    if OWNER in pair:
        raise InvariantViolation(
            "Ownership can only change through ownership transfer",
            invariant=OWNER_TRANSFER_ONLY,
            user_id=change.target_id,
            room_id=change.room_id,
        )
    before = change.role_before.value if change.role_before else "none"
    after = change.role_after.value if change.role_after else "none"
    raise InvariantViolation(
        f"{change.operation.value} cannot change role {before} to {after}",
        invariant=ROLE_TRANSITION,
        user_id=change.target_id,
        room_id=change.room_id,
    )


def check_last_owner(change: RoleChange) -> None:
    """Reject dropping the sole OWNER while other members remain."""
    if change.operation in (MemberOperation.TRANSFER_OWNERSHIP, MemberOperation.ASSIGN_TICKET):
        return
    if change.role_before != OWNER or change.role_after == OWNER:
        return
    if change.owner_count <= 1 and change.member_count > 1:
        raise InvariantViolation(
            "Cannot remove the last owner while other members exist. "
            "Transfer ownership first.",
            invariant=LAST_OWNER,
            user_id=change.target_id,
            room_id=change.room_id,
        )


def validate_role_change(change: RoleChange) -> None:
    """Run every check for a proposed membership change.

    Order: self-targeting, caller permission, target exists, allowed
    transition, last owner.

    Raises:
        AccessError: Caller lacks permission
        NotFoundError: Target membership is missing
        InvariantViolation: The change would break a membership invariant
    """
    check_self(change)
    check_caller(change)
    check_target(change)
    check_transition(change)
    check_last_owner(change)
