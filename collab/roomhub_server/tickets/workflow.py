"""
Ticket workflow for RoomHub.

Support tickets are TICKET rooms. This module handles:
- Opening a ticket (requester joins as MEMBER, an admin as OWNER)
- Assigning a ticket to another administrator
- Changing ticket status

Invariants:
    - A ticket keeps exactly one OWNER after assignment
    - The previous owner is demoted to MODERATOR, never removed
    - Demotion and promotion commit together or not at all
    - Assigning to the current owner writes nothing and records nothing

How to change safely:
    - Assignment rules belong in access/transitions.py (ASSIGN_TICKET)
    - Keep audit metadata keys stable, the activity feed reads them
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

from ..access.controller import AccessController
from ..access.transitions import MemberOperation, RoleChange, validate_role_change
from ..audit import AuditRecorder
from ..errors import NotFoundError, RoomHubError, ValidationError
from ..models import (
    AuditAction,
    GlobalRole,
    Membership,
    Message,
    Room,
    RoomRole,
    RoomType,
    TicketStatus,
    User,
    new_id,
    now_ms,
)
from ..store.base import Store

logger = logging.getLogger(__name__)

INVALID_ASSIGNEE = "INVALID_ASSIGNEE"
NO_ADMIN = "NO_ADMIN"

MAX_SUBJECT_LENGTH = 200
MAX_TICKET_MESSAGE_LENGTH = 5000


@dataclass
class AssignmentResult:
    """Outcome of a ticket assignment.

    Attributes:
        ticket_id: The ticket room
        owner: The assignee's OWNER membership
        previous_owner_id: OWNER replaced by the assignment (None when nothing
            changed or the ticket had no OWNER)
        changed: False when the assignee already owned the ticket
    """

    ticket_id: str
    owner: Membership
    previous_owner_id: str | None
    changed: bool


@dataclass
class OpenedTicket:
    """A freshly opened ticket and its first message."""

    room: Room
    message: Message
    owner_id: str


class TicketWorkflow:
    """Ticket lifecycle operations.

    Example:
        >>> workflow = TicketWorkflow(store, AccessController(store), AuditRecorder(store))
        >>> result = await workflow.assign_ticket(admin, ticket.id, "admin_2")
        >>> result.changed
        True
    """

    def __init__(self, store: Store, controller: AccessController, recorder: AuditRecorder) -> None:
        self.store = store
        self.controller = controller
        self.recorder = recorder

    async def _require_ticket(self, ticket_id: str) -> Room:
        room = await self.store.get_room(ticket_id)
        if room is None or not room.is_ticket:
            raise NotFoundError("Ticket", ticket_id)
        return room

    async def assign_ticket(
        self, caller: User, ticket_id: str, new_owner_user_id: str
    ) -> AssignmentResult:
        """Make ``new_owner_user_id`` the ticket's OWNER.

        Raises:
            AccessError: Caller is not an administrator
            NotFoundError: Ticket does not exist
            ValidationError: Assignee missing or not an administrator
        """
        self.controller.assert_global_role(caller, GlobalRole.ADMIN)
        ticket = await self._require_ticket(ticket_id)

        assignee = await self.store.get_user(new_owner_user_id)
        if assignee is None:
            raise ValidationError(
                f"Assignee not found: {new_owner_user_id}",
                field_name="new_owner_user_id",
                code=INVALID_ASSIGNEE,
            )
        if not assignee.is_admin:
            raise ValidationError(
                "Tickets can only be assigned to administrators",
                field_name="new_owner_user_id",
                code=INVALID_ASSIGNEE,
            )

        async with self.store.transaction() as tx:
            owners = [
                m for m in await tx.list_memberships(ticket_id) if m.role == RoomRole.OWNER
            ]
            existing = await tx.find_membership(new_owner_user_id, ticket_id)

            if existing is not None and existing.role == RoomRole.OWNER and len(owners) == 1:
                return AssignmentResult(
                    ticket_id=ticket_id,
                    owner=existing,
                    previous_owner_id=None,
                    changed=False,
                )

            caller_membership = await tx.find_membership(caller.id, ticket_id)
            validate_role_change(
                RoleChange(
                    operation=MemberOperation.ASSIGN_TICKET,
                    room_id=ticket_id,
                    caller_id=caller.id,
                    caller_role=caller_membership.role if caller_membership else None,
                    caller_is_admin=caller.is_admin,
                    target_id=new_owner_user_id,
                    role_before=existing.role if existing else None,
                    role_after=RoomRole.OWNER,
                    owner_count=len(owners),
                    member_count=await tx.count_members(ticket_id),
                )
            )

            previous_owner_id = None
            for owner in owners:
                if owner.user_id == new_owner_user_id:
                    continue
                if previous_owner_id is None:
                    previous_owner_id = owner.user_id
                await tx.upsert_membership(owner.user_id, ticket_id, RoomRole.MODERATOR)
            membership = await tx.upsert_membership(new_owner_user_id, ticket_id, RoomRole.OWNER)

        logger.info(
            "Ticket assigned",
            extra={
                "ticket_id": ticket_id,
                "assignee_id": new_owner_user_id,
                "previous_owner_id": previous_owner_id,
            },
        )
        await self.recorder.record(
            AuditAction.TICKET_ASSIGN,
            caller.id,
            "room",
            ticket_id,
            {
                "assignedToUserId": assignee.id,
                "assignedToName": assignee.name or assignee.email or "Unknown",
                "ticketTitle": ticket.title,
                "previousOwnerId": previous_owner_id,
            },
        )
        return AssignmentResult(
            ticket_id=ticket_id,
            owner=membership,
            previous_owner_id=previous_owner_id,
            changed=True,
        )

    async def change_status(self, caller: User, ticket_id: str, status: TicketStatus) -> Room:
        """Set the ticket status (administrators only)."""
        self.controller.assert_global_role(caller, GlobalRole.ADMIN)
        ticket = await self._require_ticket(ticket_id)

        updated = await self.store.update_room_status(ticket_id, status)
        if updated is None:
            raise NotFoundError("Ticket", ticket_id)

        old_status = ticket.status.value if ticket.status else None
        logger.info(
            f"Ticket status {old_status} -> {status.value}",
            extra={"ticket_id": ticket_id, "changed_by": caller.id},
        )
        await self.recorder.record(
            AuditAction.TICKET_STATUS_CHANGE,
            caller.id,
            "room",
            ticket_id,
            {"oldStatus": old_status, "newStatus": status.value, "ticketTitle": ticket.title},
        )
        return updated

    async def open_ticket(
        self,
        requester: User,
        subject: str,
        message: str,
        department: str | None = None,
    ) -> OpenedTicket:
        """Open a support ticket on behalf of ``requester``.

        The longest-standing administrator becomes the ticket OWNER.

        Raises:
            ValidationError: Subject or message empty or too long
            RoomHubError: NO_ADMIN when no administrator exists
        """
        subject = subject.strip()
        if not subject or len(subject) > MAX_SUBJECT_LENGTH:
            raise ValidationError(
                f"Subject must be 1-{MAX_SUBJECT_LENGTH} characters", field_name="subject"
            )
        if not message.strip() or len(message) > MAX_TICKET_MESSAGE_LENGTH:
            raise ValidationError(
                f"Message must be 1-{MAX_TICKET_MESSAGE_LENGTH} characters", field_name="message"
            )

        admin = await self.store.find_oldest_admin()
        if admin is None:
            raise RoomHubError("No admin available to assign ticket", code=NO_ADMIN)

        room = Room(
            id=new_id(),
            name=f"ticket-{now_ms()}-{uuid.uuid4().hex[:7]}",
            title=subject,
            type=RoomType.TICKET,
            status=TicketStatus.OPEN,
            department=department,
            is_private=True,
            creator_id=requester.id,
        )

        async with self.store.transaction() as tx:
            await tx.create_room(room)
            if requester.id != admin.id:
                await tx.upsert_membership(requester.id, room.id, RoomRole.MEMBER)
            await tx.upsert_membership(admin.id, room.id, RoomRole.OWNER)

        first = await self.store.create_message(
            Message(id=new_id(), room_id=room.id, author_id=requester.id, content=message)
        )
        logger.info(
            "Ticket opened",
            extra={"ticket_id": room.id, "requester_id": requester.id, "owner_id": admin.id},
        )
        return OpenedTicket(room=room, message=first, owner_id=admin.id)
