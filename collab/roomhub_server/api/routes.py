"""
API routes for RoomHub.

Thin HTTP wrappers around the RoomHub services. The caller is identified
by the X-User-ID header set by the upstream auth proxy. Every response is
``{"ok": true, "data": ...}``; errors are rendered by the app's
RoomHubError handler.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from pydantic import BaseModel, Field

from ..activity.types import format_timestamp
from ..errors import NotFoundError
from ..models import Membership, Message, Room, RoomRole, RoomType, TicketStatus, User
from ..server import RoomHub

logger = logging.getLogger(__name__)

router = APIRouter(tags=["RoomHub"])


# --- Request Models ---


class CreateRoomRequest(BaseModel):
    """Request to create a room."""

    name: str = Field(..., min_length=1, max_length=100, description="Unique room slug")
    title: str | None = Field(None, description="Display title")
    type: RoomType = Field(RoomType.PUBLIC, description="PUBLIC or PRIVATE")
    department: str | None = Field(None, description="Department tag")
    is_private: bool = Field(False, description="Hide from discovery")


class InviteRequest(BaseModel):
    """Request to invite a user into a room."""

    user_id: str = Field(..., description="User to invite")
    role: RoomRole = Field(RoomRole.MEMBER, description="MEMBER or MODERATOR")


class RoleUpdateRequest(BaseModel):
    """Request to change a member's role."""

    role: RoomRole = Field(..., description="MEMBER or MODERATOR")


class TransferOwnershipRequest(BaseModel):
    """Request to hand room ownership to another member."""

    new_owner_id: str = Field(..., description="Member to promote")


class PostMessageRequest(BaseModel):
    """Request to post a message."""

    content: str = Field(..., description="Message text")
    parent_message_id: str | None = Field(None, description="Thread parent")


class OpenTicketRequest(BaseModel):
    """Request to open a support ticket."""

    subject: str = Field(..., description="Ticket subject")
    message: str = Field(..., description="First message")
    department: str | None = Field(None, description="Department to route to")


class AssignTicketRequest(BaseModel):
    """Request to assign a ticket."""

    assign_to_user_id: str = Field(..., description="Administrator to assign")


class TicketStatusRequest(BaseModel):
    """Request to change ticket status."""

    status: TicketStatus


# --- Dependencies ---


def get_hub(request: Request) -> RoomHub:
    """Get RoomHub from app state."""
    return request.app.state.hub


async def get_current_user(request: Request, hub: RoomHub = Depends(get_hub)) -> User:
    """Resolve the caller from the identity header."""
    header = request.app.state.settings.user_header
    user_id = request.headers.get(header)
    if not user_id:
        raise HTTPException(status_code=401, detail=f"Missing {header} header")
    try:
        return await hub.require_user(user_id)
    except NotFoundError:
        raise HTTPException(status_code=401, detail="Unknown user")


# --- Serialization ---


def _room_to_dict(room: Room) -> dict[str, Any]:
    return {
        "id": room.id,
        "name": room.name,
        "title": room.title,
        "type": room.type.value,
        "status": room.status.value if room.status else None,
        "department": room.department,
        "isPrivate": room.is_private,
        "creatorId": room.creator_id,
        "createdAt": format_timestamp(room.created_at),
    }


def _membership_to_dict(membership: Membership) -> dict[str, Any]:
    return {
        "userId": membership.user_id,
        "roomId": membership.room_id,
        "role": membership.role.value,
        "createdAt": format_timestamp(membership.created_at),
    }


def _message_to_dict(message: Message) -> dict[str, Any]:
    return {
        "id": message.id,
        "roomId": message.room_id,
        "userId": message.author_id,
        "content": message.content,
        "parentMessageId": message.parent_message_id,
        "createdAt": format_timestamp(message.created_at),
        "deletedAt": format_timestamp(message.deleted_at) if message.deleted_at else None,
    }


def _ok(data: Any) -> dict[str, Any]:
    return {"ok": True, "data": data}


# --- Activity Routes ---


@router.get("/activity/feed")
async def get_activity_feed(
    limit: int | None = Query(None, description="Page size (max 200)"),
    cursor: str | None = Query(None, description="Id of the last event seen"),
    types: str | None = Query(None, description="Comma-separated event types"),
    hub: RoomHub = Depends(get_hub),
    user: User = Depends(get_current_user),
):
    """
    Get the caller's activity feed.

    Events are newest first. Pass the returned cursor to get the next page.
    """
    type_filter = types.split(",") if types else None
    page = await hub.feed.get_feed(user, limit=limit, cursor=cursor, type_filter=type_filter)
    return _ok(page.to_dict())


# --- Room Routes ---


@router.post("/rooms", status_code=201)
async def create_room(
    body: CreateRoomRequest,
    hub: RoomHub = Depends(get_hub),
    user: User = Depends(get_current_user),
):
    """Create a PUBLIC or PRIVATE room owned by the caller."""
    room = await hub.rooms.create_room(
        user,
        body.name,
        title=body.title,
        room_type=body.type,
        department=body.department,
        is_private=body.is_private,
    )
    return _ok(_room_to_dict(room))


@router.delete("/rooms/{room_id}")
async def delete_room(
    room_id: str,
    hub: RoomHub = Depends(get_hub),
    user: User = Depends(get_current_user),
):
    """Delete a room with its memberships and messages (administrators only)."""
    room = await hub.rooms.delete_room(user, room_id)
    return _ok({"roomId": room.id})


@router.post("/rooms/{room_id}/join")
async def join_room(
    room_id: str,
    response: Response,
    hub: RoomHub = Depends(get_hub),
    user: User = Depends(get_current_user),
):
    """
    Join a PUBLIC room as MEMBER.

    Joining a room twice returns the existing membership with status 200
    instead of 201.
    """
    result = await hub.rooms.join_room(user, room_id)
    response.status_code = 201 if result.created else 200
    return _ok({"membership": _membership_to_dict(result.membership), "created": result.created})


@router.post("/rooms/{room_id}/leave")
async def leave_room(
    room_id: str,
    hub: RoomHub = Depends(get_hub),
    user: User = Depends(get_current_user),
):
    """Leave a room. The only OWNER must hand over ownership first."""
    membership = await hub.rooms.leave_room(user, room_id)
    return _ok(_membership_to_dict(membership))


@router.post("/dm/{user_id}")
async def open_direct_room(
    user_id: str,
    response: Response,
    hub: RoomHub = Depends(get_hub),
    user: User = Depends(get_current_user),
):
    """Get or create the caller's direct room with another user (201 when created)."""
    direct = await hub.rooms.open_direct_room(user, user_id)
    response.status_code = 201 if direct.created else 200
    return _ok({"room": _room_to_dict(direct.room), "created": direct.created})


@router.post("/rooms/{room_id}/invite")
async def invite_member(
    room_id: str,
    body: InviteRequest,
    hub: RoomHub = Depends(get_hub),
    user: User = Depends(get_current_user),
):
    """
    Invite a user into a PRIVATE room or ticket.

    Inviting an existing member returns the existing membership.
    """
    result = await hub.members.invite_member(user, room_id, body.user_id, body.role)
    return _ok({"membership": _membership_to_dict(result.membership), "created": result.created})


@router.patch("/rooms/{room_id}/members/{user_id}")
async def update_member_role(
    room_id: str,
    user_id: str,
    body: RoleUpdateRequest,
    hub: RoomHub = Depends(get_hub),
    user: User = Depends(get_current_user),
):
    """Switch a member between MEMBER and MODERATOR (owners only)."""
    membership = await hub.members.update_member_role(user, room_id, user_id, body.role)
    return _ok(_membership_to_dict(membership))


@router.delete("/rooms/{room_id}/members/{user_id}")
async def remove_member(
    room_id: str,
    user_id: str,
    hub: RoomHub = Depends(get_hub),
    user: User = Depends(get_current_user),
):
    """Remove a member from the room (owners only)."""
    removed = await hub.members.remove_member(user, room_id, user_id)
    return _ok(_membership_to_dict(removed))


@router.post("/rooms/{room_id}/ownership")
async def transfer_ownership(
    room_id: str,
    body: TransferOwnershipRequest,
    hub: RoomHub = Depends(get_hub),
    user: User = Depends(get_current_user),
):
    """Make another member the room's OWNER."""
    membership = await hub.members.transfer_ownership(user, room_id, body.new_owner_id)
    return _ok(_membership_to_dict(membership))


# --- Message Routes ---


@router.post("/rooms/{room_id}/messages", status_code=201)
async def post_message(
    room_id: str,
    body: PostMessageRequest,
    hub: RoomHub = Depends(get_hub),
    user: User = Depends(get_current_user),
):
    """Post a message, optionally as a thread reply."""
    message = await hub.messages.post_message(
        user, room_id, body.content, parent_message_id=body.parent_message_id
    )
    return _ok(_message_to_dict(message))


@router.delete("/messages/{message_id}")
async def delete_message(
    message_id: str,
    hub: RoomHub = Depends(get_hub),
    user: User = Depends(get_current_user),
):
    """Soft-delete one of the caller's messages."""
    message = await hub.messages.delete_message(user, message_id)
    return _ok(_message_to_dict(message))


# --- Ticket Routes ---


@router.post("/tickets", status_code=201)
async def open_ticket(
    body: OpenTicketRequest,
    hub: RoomHub = Depends(get_hub),
    user: User = Depends(get_current_user),
):
    """Open a support ticket as the caller."""
    opened = await hub.tickets.open_ticket(
        user, body.subject, body.message, department=body.department
    )
    return _ok(
        {
            "ticket": _room_to_dict(opened.room),
            "message": _message_to_dict(opened.message),
            "ownerId": opened.owner_id,
        }
    )


@router.post("/tickets/{ticket_id}/assign")
async def assign_ticket(
    ticket_id: str,
    body: AssignTicketRequest,
    hub: RoomHub = Depends(get_hub),
    user: User = Depends(get_current_user),
):
    """Assign a ticket to another administrator (administrators only)."""
    result = await hub.tickets.assign_ticket(user, ticket_id, body.assign_to_user_id)
    return _ok(
        {
            "ticketId": result.ticket_id,
            "assignedTo": result.owner.user_id,
            "previousOwnerId": result.previous_owner_id,
            "changed": result.changed,
        }
    )


@router.patch("/tickets/{ticket_id}/status")
async def change_ticket_status(
    ticket_id: str,
    body: TicketStatusRequest,
    hub: RoomHub = Depends(get_hub),
    user: User = Depends(get_current_user),
):
    """Change a ticket's status (administrators only)."""
    room = await hub.tickets.change_status(user, ticket_id, body.status)
    return _ok({"ticketId": room.id, "status": room.status.value if room.status else None})
