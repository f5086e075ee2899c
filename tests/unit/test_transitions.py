"""
Unit tests for the membership transition table.

Tests cover:
- Role permissions per operation
- Allowed target transitions
- Validator check order and error codes
- Last-owner, self-change and owner-transfer rules
"""

import pytest

from collab.roomhub_server.access.transitions import (
    ROLE_PERMISSIONS,
    TARGET_TRANSITIONS,
    MemberOperation,
    RoleChange,
    can_perform,
    validate_role_change,
)
from collab.roomhub_server.errors import (
    FORBIDDEN,
    INSUFFICIENT_ROLE,
    INVALID_REQUEST,
    LAST_OWNER,
    NOT_MEMBER,
    OWNER_TRANSFER_ONLY,
    ROLE_TRANSITION,
    SELF_CHANGE,
    AccessError,
    InvariantViolation,
    NotFoundError,
)
from collab.roomhub_server.models import RoomRole

OWNER = RoomRole.OWNER
MODERATOR = RoomRole.MODERATOR
MEMBER = RoomRole.MEMBER


def change(operation, **overrides):
    """Build a RoleChange with an OWNER caller acting on a MEMBER target."""
    values = dict(
        operation=operation,
        room_id="room_1",
        caller_id="caller",
        caller_role=OWNER,
        caller_is_admin=False,
        target_id="target",
        role_before=MEMBER,
        role_after=None,
        owner_count=1,
        member_count=3,
    )
    values.update(overrides)
    return RoleChange(**values)


class TestRolePermissions:
    """Tests for which room roles grant which operations."""

    def test_owner_manages_members(self):
        """OWNER may invite, remove, update roles and transfer."""
        for op in (
            MemberOperation.INVITE,
            MemberOperation.REMOVE,
            MemberOperation.UPDATE_ROLE,
            MemberOperation.TRANSFER_OWNERSHIP,
        ):
            assert can_perform(OWNER, op)

    def test_moderator_only_invites(self):
        """MODERATOR may invite but nothing else."""
        assert ROLE_PERMISSIONS[MODERATOR] == frozenset({MemberOperation.INVITE})

    def test_member_has_no_permissions(self):
        """MEMBER cannot manage memberships."""
        assert not any(can_perform(MEMBER, op) for op in MemberOperation)

    def test_no_role_has_no_permissions(self):
        """Non-members cannot perform anything."""
        assert not can_perform(None, MemberOperation.INVITE)

    def test_assignment_not_granted_by_room_roles(self):
        """Ticket assignment is not granted by any room role."""
        for role in RoomRole:
            assert not can_perform(role, MemberOperation.ASSIGN_TICKET)


class TestTargetTransitions:
    """Tests for the allowed (before, after) pairs."""

    def test_invite_never_grants_owner(self):
        """Invites only produce MEMBER or MODERATOR."""
        afters = {after for _, after in TARGET_TRANSITIONS[MemberOperation.INVITE]}
        assert afters == {MEMBER, MODERATOR}

    def test_update_role_never_touches_owner(self):
        """Role updates neither read nor write OWNER."""
        for before, after in TARGET_TRANSITIONS[MemberOperation.UPDATE_ROLE]:
            assert OWNER not in (before, after)

    def test_transfer_and_assign_end_in_owner(self):
        """Transfer and assignment always produce OWNER."""
        for op in (MemberOperation.TRANSFER_OWNERSHIP, MemberOperation.ASSIGN_TICKET):
            assert {after for _, after in TARGET_TRANSITIONS[op]} == {OWNER}


class TestValidateRoleChange:
    """Tests for validate_role_change."""

    def test_owner_removes_member(self):
        """A valid removal passes."""
        validate_role_change(change(MemberOperation.REMOVE))

    def test_self_removal_rejected(self):
        """Callers cannot remove themselves."""
        with pytest.raises(InvariantViolation) as exc_info:
            validate_role_change(change(MemberOperation.REMOVE, target_id="caller"))

        assert exc_info.value.code == INVALID_REQUEST
        assert exc_info.value.invariant == SELF_CHANGE

    def test_self_check_runs_before_permission_check(self):
        """A MEMBER changing their own role gets INVALID_REQUEST, not INSUFFICIENT_ROLE."""
        with pytest.raises(InvariantViolation) as exc_info:
            validate_role_change(
                change(
                    MemberOperation.UPDATE_ROLE,
                    caller_role=MEMBER,
                    target_id="caller",
                    role_after=MODERATOR,
                )
            )

        assert exc_info.value.code == INVALID_REQUEST

    def test_admin_cannot_target_self(self):
        """The self-change rule applies to administrators too."""
        with pytest.raises(InvariantViolation):
            validate_role_change(
                change(MemberOperation.REMOVE, caller_is_admin=True, target_id="caller")
            )

    def test_non_member_denied(self):
        """Callers without a membership get NOT_MEMBER."""
        with pytest.raises(AccessError) as exc_info:
            validate_role_change(change(MemberOperation.REMOVE, caller_role=None))

        assert exc_info.value.code == NOT_MEMBER

    def test_member_cannot_invite(self):
        """A MEMBER inviting gets FORBIDDEN."""
        with pytest.raises(AccessError) as exc_info:
            validate_role_change(
                change(
                    MemberOperation.INVITE, caller_role=MEMBER, role_before=None, role_after=MEMBER
                )
            )

        assert exc_info.value.code == FORBIDDEN

    def test_moderator_cannot_remove(self):
        """A MODERATOR removing gets INSUFFICIENT_ROLE."""
        with pytest.raises(AccessError) as exc_info:
            validate_role_change(change(MemberOperation.REMOVE, caller_role=MODERATOR))

        assert exc_info.value.code == INSUFFICIENT_ROLE

    def test_admin_bypasses_role_check(self):
        """Administrators need no membership."""
        validate_role_change(
            change(MemberOperation.REMOVE, caller_role=None, caller_is_admin=True)
        )

    def test_assignment_requires_admin(self):
        """Even a ticket OWNER cannot assign without the ADMIN role."""
        with pytest.raises(AccessError) as exc_info:
            validate_role_change(
                change(MemberOperation.ASSIGN_TICKET, role_before=None, role_after=OWNER)
            )

        assert exc_info.value.code == INSUFFICIENT_ROLE

    def test_missing_target_not_found(self):
        """Removing a non-member raises NotFoundError."""
        with pytest.raises(NotFoundError):
            validate_role_change(change(MemberOperation.REMOVE, role_before=None))

    def test_update_to_owner_rejected(self):
        """Role updates cannot grant OWNER."""
        with pytest.raises(InvariantViolation) as exc_info:
            validate_role_change(change(MemberOperation.UPDATE_ROLE, role_after=OWNER))

        assert exc_info.value.invariant == OWNER_TRANSFER_ONLY

    def test_update_from_owner_rejected(self):
        """Role updates cannot demote an OWNER."""
        with pytest.raises(InvariantViolation) as exc_info:
            validate_role_change(
                change(
                    MemberOperation.UPDATE_ROLE,
                    role_before=OWNER,
                    role_after=MEMBER,
                    owner_count=2,
                )
            )

        assert exc_info.value.invariant == OWNER_TRANSFER_ONLY

    def test_invite_existing_member_is_not_a_transition(self):
        """Invites only start from no membership."""
        with pytest.raises(InvariantViolation) as exc_info:
            validate_role_change(
                change(MemberOperation.INVITE, role_before=MEMBER, role_after=MODERATOR)
            )

        assert exc_info.value.invariant == ROLE_TRANSITION

    def test_last_owner_removal_rejected(self):
        """The sole OWNER cannot be removed while others remain."""
        with pytest.raises(InvariantViolation) as exc_info:
            validate_role_change(
                change(
                    MemberOperation.REMOVE,
                    caller_is_admin=True,
                    role_before=OWNER,
                    owner_count=1,
                    member_count=2,
                )
            )

        assert exc_info.value.invariant == LAST_OWNER
        assert "Transfer ownership first" in exc_info.value.message

    def test_last_owner_of_solo_room_can_leave(self):
        """An OWNER who is the only member may be removed."""
        validate_role_change(
            change(
                MemberOperation.REMOVE,
                caller_is_admin=True,
                role_before=OWNER,
                owner_count=1,
                member_count=1,
            )
        )

    def test_one_of_two_owners_can_be_removed(self):
        """Removing an OWNER is fine when another OWNER remains."""
        validate_role_change(
            change(MemberOperation.REMOVE, role_before=OWNER, owner_count=2, member_count=3)
        )

    def test_transfer_to_member(self):
        """OWNER may transfer ownership to a MEMBER."""
        validate_role_change(change(MemberOperation.TRANSFER_OWNERSHIP, role_after=OWNER))
