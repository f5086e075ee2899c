"""
Unit tests for RoomService and MessageService.

Tests cover:
- Room creation and duplicate names
- Room deletion cascade and audit
- Joining and leaving rooms
- Direct rooms between two users
- Message posting permissions, threads and rate limits
- Message soft deletion
"""

import pytest

from collab.roomhub_server.access import AccessController
from collab.roomhub_server.audit import AuditRecorder
from collab.roomhub_server.errors import (
    FORBIDDEN,
    INVALID_REQUEST,
    LAST_OWNER,
    NOT_MEMBER,
    AccessError,
    InvariantViolation,
    NotFoundError,
    RateLimitedError,
    ValidationError,
)
from collab.roomhub_server.models import GlobalRole, RoomRole, RoomType
from collab.roomhub_server.ratelimit import InMemoryCounterStore, SlidingWindowRateLimiter
from collab.roomhub_server.rooms import MessageService, RoomService, direct_room_name
from collab.roomhub_server.rooms.service import (
    ALREADY_DELETED,
    DELETED_MESSAGE_CONTENT,
    INVALID_PARENT,
    ROOM_EXISTS,
)
from collab.roomhub_server.store import InMemoryStore
from tests.helpers import add_room, add_user


class TestRoomService:
    """Tests for RoomService."""

    @pytest.fixture
    def store(self):
        return InMemoryStore()

    @pytest.fixture
    def rooms(self, store):
        return RoomService(store, AccessController(store), AuditRecorder(store))

    @pytest.mark.asyncio
    async def test_creator_becomes_owner(self, store, rooms):
        """New rooms start with their creator as OWNER."""
        creator = await add_user(store, "creator", department="support")

        room = await rooms.create_room(creator, "general", title="General")

        assert room.type == RoomType.PUBLIC
        assert room.creator_id == "creator"
        assert (await store.find_membership("creator", room.id)).role == RoomRole.OWNER

    @pytest.mark.asyncio
    async def test_private_rooms_are_private(self, store, rooms):
        """PRIVATE rooms are always flagged private."""
        creator = await add_user(store, "creator")

        room = await rooms.create_room(creator, "team", room_type=RoomType.PRIVATE)

        assert room.is_private
        assert room.title == "team"

    @pytest.mark.asyncio
    async def test_duplicate_name_rejected(self, store, rooms):
        """Room names are unique."""
        creator = await add_user(store, "creator")
        await rooms.create_room(creator, "general")

        with pytest.raises(ValidationError) as exc_info:
            await rooms.create_room(creator, "general")

        assert exc_info.value.code == ROOM_EXISTS

    @pytest.mark.asyncio
    async def test_ticket_rooms_not_created_here(self, store, rooms):
        """Tickets are opened through the ticket workflow."""
        creator = await add_user(store, "creator")

        with pytest.raises(ValidationError):
            await rooms.create_room(creator, "sneaky", room_type=RoomType.TICKET)

    @pytest.mark.asyncio
    async def test_delete_room_cascades(self, store, rooms):
        """Deleting a room removes memberships and messages, and is audited."""
        admin = await add_user(store, "admin", role=GlobalRole.ADMIN)
        await add_room(store, "team", RoomType.PRIVATE, {"admin": RoomRole.OWNER}, title="Team")
        messages = MessageService(store, AccessController(store), AuditRecorder(store))
        message = await messages.post_message(admin, "team", "hello")

        await rooms.delete_room(admin, "team")

        assert await store.get_room("team") is None
        assert await store.count_members("team") == 0
        assert await store.get_message(message.id) is None
        records = store.get_audit_records()
        assert records[-1].action == "room.delete"
        assert records[-1].metadata == {
            "roomName": "team",
            "roomTitle": "Team",
            "roomType": "PRIVATE",
        }

    @pytest.mark.asyncio
    async def test_delete_room_requires_admin(self, store, rooms):
        """Room OWNERs cannot delete rooms."""
        owner = await add_user(store, "owner")
        await add_room(store, "team", RoomType.PRIVATE, {"owner": RoomRole.OWNER})

        with pytest.raises(AccessError):
            await rooms.delete_room(owner, "team")


class TestJoinAndLeave:
    """Tests for joining and leaving rooms."""

    @pytest.fixture
    def store(self):
        return InMemoryStore()

    @pytest.fixture
    def rooms(self, store):
        return RoomService(store, AccessController(store), AuditRecorder(store))

    @pytest.mark.asyncio
    async def test_join_public_room(self, store, rooms):
        """Staff join PUBLIC rooms as MEMBER."""
        await add_user(store, "owner", department="support")
        staff = await add_user(store, "staff", department="support")
        await add_room(store, "general", members={"owner": RoomRole.OWNER})

        result = await rooms.join_room(staff, "general")

        assert result.created
        assert result.membership.role == RoomRole.MEMBER
        assert (await store.find_membership("staff", "general")).role == RoomRole.MEMBER

    @pytest.mark.asyncio
    async def test_join_twice_returns_existing(self, store, rooms):
        """A second join leaves the membership as it was."""
        await add_user(store, "owner", department="support")
        mod = await add_user(store, "mod", department="support")
        await add_room(
            store, "general", members={"owner": RoomRole.OWNER, "mod": RoomRole.MODERATOR}
        )

        result = await rooms.join_room(mod, "general")

        assert not result.created
        assert result.membership.role == RoomRole.MODERATOR
        assert await store.count_members("general") == 2

    @pytest.mark.asyncio
    async def test_join_private_room_forbidden(self, store, rooms):
        """PRIVATE rooms are invite-only, even for administrators."""
        admin = await add_user(store, "admin", role=GlobalRole.ADMIN)
        await add_user(store, "owner", department="support")
        await add_room(store, "team", RoomType.PRIVATE, {"owner": RoomRole.OWNER})

        with pytest.raises(AccessError) as exc_info:
            await rooms.join_room(admin, "team")

        assert exc_info.value.code == FORBIDDEN
        assert await store.find_membership("admin", "team") is None

    @pytest.mark.asyncio
    async def test_join_ticket_forbidden(self, store, rooms):
        """Tickets cannot be joined."""
        staff = await add_user(store, "staff", department="support")
        await add_room(store, "ticket-1", RoomType.TICKET)

        with pytest.raises(AccessError) as exc_info:
            await rooms.join_room(staff, "ticket-1")

        assert exc_info.value.code == FORBIDDEN

    @pytest.mark.asyncio
    async def test_join_other_department_forbidden(self, store, rooms):
        """Department rooms are closed to other departments."""
        sales = await add_user(store, "sales", department="sales")
        await add_room(store, "support-only", department="support")

        with pytest.raises(AccessError) as exc_info:
            await rooms.join_room(sales, "support-only")

        assert exc_info.value.code == FORBIDDEN

    @pytest.mark.asyncio
    async def test_external_customer_cannot_join(self, store, rooms):
        """External customers stay confined to their tickets."""
        customer = await add_user(store, "customer")
        await add_room(store, "general")

        with pytest.raises(AccessError) as exc_info:
            await rooms.join_room(customer, "general")

        assert exc_info.value.code == FORBIDDEN
        assert await store.count_members("general") == 0

    @pytest.mark.asyncio
    async def test_join_missing_room(self, store, rooms):
        """Unknown rooms raise NotFoundError."""
        staff = await add_user(store, "staff", department="support")

        with pytest.raises(NotFoundError):
            await rooms.join_room(staff, "nowhere")

    @pytest.mark.asyncio
    async def test_leave_room(self, store, rooms):
        """Members can leave and the removed membership is returned."""
        await add_user(store, "owner", department="support")
        member = await add_user(store, "member", department="support")
        await add_room(
            store, "general", members={"owner": RoomRole.OWNER, "member": RoomRole.MEMBER}
        )

        left = await rooms.leave_room(member, "general")

        assert left.role == RoomRole.MEMBER
        assert await store.find_membership("member", "general") is None
        assert await store.count_members("general") == 1

    @pytest.mark.asyncio
    async def test_sole_owner_cannot_leave_while_others_remain(self, store, rooms):
        """The only OWNER has to hand over ownership first."""
        owner = await add_user(store, "owner", department="support")
        await add_user(store, "member", department="support")
        await add_room(
            store, "general", members={"owner": RoomRole.OWNER, "member": RoomRole.MEMBER}
        )

        with pytest.raises(InvariantViolation) as exc_info:
            await rooms.leave_room(owner, "general")

        assert exc_info.value.invariant == LAST_OWNER
        assert (await store.find_membership("owner", "general")).role == RoomRole.OWNER

    @pytest.mark.asyncio
    async def test_co_owner_can_leave(self, store, rooms):
        """One of two OWNERs may leave."""
        first = await add_user(store, "first", department="support")
        await add_user(store, "second", department="support")
        await add_room(
            store, "general", members={"first": RoomRole.OWNER, "second": RoomRole.OWNER}
        )

        await rooms.leave_room(first, "general")

        assert await store.count_owners("general") == 1

    @pytest.mark.asyncio
    async def test_last_member_can_leave(self, store, rooms):
        """An OWNER alone in the room may leave it empty."""
        owner = await add_user(store, "owner", department="support")
        await add_room(store, "general", members={"owner": RoomRole.OWNER})

        await rooms.leave_room(owner, "general")

        assert await store.count_members("general") == 0

    @pytest.mark.asyncio
    async def test_non_member_cannot_leave(self, store, rooms):
        """Leaving a room you are not in raises NOT_MEMBER."""
        staff = await add_user(store, "staff", department="support")
        await add_room(store, "general")

        with pytest.raises(AccessError) as exc_info:
            await rooms.leave_room(staff, "general")

        assert exc_info.value.code == NOT_MEMBER


class TestDirectRooms:
    """Tests for direct rooms between two users."""

    @pytest.fixture
    def store(self):
        return InMemoryStore()

    @pytest.fixture
    def rooms(self, store):
        return RoomService(store, AccessController(store), AuditRecorder(store))

    @pytest.mark.asyncio
    async def test_open_creates_room_with_two_owners(self, store, rooms):
        """Both participants own a new direct room."""
        alice = await add_user(store, "alice", department="support")
        await add_user(store, "bob", department="support")

        direct = await rooms.open_direct_room(alice, "bob")

        assert direct.created
        assert direct.room.type == RoomType.DM
        assert direct.room.is_private
        assert direct.room.name == direct_room_name("alice", "bob")
        assert direct.room.title == "DM: Alice & Bob"
        assert (await store.find_membership("alice", direct.room.id)).role == RoomRole.OWNER
        assert (await store.find_membership("bob", direct.room.id)).role == RoomRole.OWNER

    @pytest.mark.asyncio
    async def test_open_reuses_room_from_either_side(self, store, rooms):
        """The second participant gets the same room back."""
        alice = await add_user(store, "alice", department="support")
        bob = await add_user(store, "bob", department="support")

        first = await rooms.open_direct_room(alice, "bob")
        second = await rooms.open_direct_room(bob, "alice")

        assert not second.created
        assert second.room.id == first.room.id
        assert await store.count_members(first.room.id) == 2

    @pytest.mark.asyncio
    async def test_reopen_restores_participant_who_left(self, store, rooms):
        """Reopening adds back a participant who left."""
        alice = await add_user(store, "alice", department="support")
        bob = await add_user(store, "bob", department="support")
        direct = await rooms.open_direct_room(alice, "bob")
        await rooms.leave_room(bob, direct.room.id)

        again = await rooms.open_direct_room(bob, "alice")

        assert not again.created
        assert (await store.find_membership("bob", direct.room.id)).role == RoomRole.OWNER

    @pytest.mark.asyncio
    async def test_cannot_open_with_self(self, store, rooms):
        """A direct room needs two different users."""
        alice = await add_user(store, "alice", department="support")

        with pytest.raises(ValidationError) as exc_info:
            await rooms.open_direct_room(alice, "alice")

        assert exc_info.value.code == INVALID_REQUEST

    @pytest.mark.asyncio
    async def test_unknown_user(self, store, rooms):
        """The other participant must exist."""
        alice = await add_user(store, "alice", department="support")

        with pytest.raises(NotFoundError):
            await rooms.open_direct_room(alice, "ghost")

    @pytest.mark.asyncio
    async def test_direct_room_cannot_be_joined(self, store, rooms):
        """Outsiders cannot join a direct room."""
        alice = await add_user(store, "alice", department="support")
        await add_user(store, "bob", department="support")
        carol = await add_user(store, "carol", department="support")
        direct = await rooms.open_direct_room(alice, "bob")

        with pytest.raises(AccessError) as exc_info:
            await rooms.join_room(carol, direct.room.id)

        assert exc_info.value.code == FORBIDDEN


class TestMessageService:

    """Tests for MessageService."""

    @pytest.fixture
    def store(self):
        return InMemoryStore()

    @pytest.fixture
    def messages(self, store):
        return MessageService(store, AccessController(store), AuditRecorder(store))

    @pytest.mark.asyncio
    async def test_member_posts(self, store, messages):
        """Members can post in their rooms."""
        author = await add_user(store, "author", department="support")
        await add_room(store, "team", RoomType.PRIVATE, {"author": RoomRole.MEMBER})

        message = await messages.post_message(author, "team", "hello")

        assert message.room_id == "team"
        assert (await store.get_message(message.id)).content == "hello"

    @pytest.mark.asyncio
    async def test_non_member_cannot_post(self, store, messages):
        """Posting requires a membership."""
        author = await add_user(store, "author", department="support")
        await add_room(store, "lobby", RoomType.PUBLIC)

        with pytest.raises(AccessError) as exc_info:
            await messages.post_message(author, "lobby", "hello")

        assert exc_info.value.code == FORBIDDEN

    @pytest.mark.asyncio
    async def test_empty_message_rejected(self, store, messages):
        """Blank content fails validation."""
        author = await add_user(store, "author")

        with pytest.raises(ValidationError):
            await messages.post_message(author, "team", "   ")

    @pytest.mark.asyncio
    async def test_thread_parent_must_share_room(self, store, messages):
        """Replies must point at a message in the same room."""
        admin = await add_user(store, "admin", role=GlobalRole.ADMIN)
        await add_room(store, "one", RoomType.PUBLIC)
        await add_room(store, "two", RoomType.PUBLIC)
        parent = await messages.post_message(admin, "one", "question")

        reply = await messages.post_message(admin, "one", "answer", parent_message_id=parent.id)
        assert reply.parent_message_id == parent.id

        with pytest.raises(ValidationError) as exc_info:
            await messages.post_message(admin, "two", "answer", parent_message_id=parent.id)

        assert exc_info.value.code == INVALID_PARENT

    @pytest.mark.asyncio
    async def test_rate_limited(self, store):
        """The fourth message inside the window is rejected."""
        author = await add_user(store, "author", department="support")
        await add_room(store, "team", RoomType.PRIVATE, {"author": RoomRole.MEMBER})
        limiter = SlidingWindowRateLimiter(InMemoryCounterStore(), 60_000, 3, prefix="message")
        messages = MessageService(store, AccessController(store), AuditRecorder(store), limiter)

        for i in range(3):
            await messages.post_message(author, "team", f"message {i}")

        with pytest.raises(RateLimitedError):
            await messages.post_message(author, "team", "one too many")

    @pytest.mark.asyncio
    async def test_delete_own_message(self, store, messages):
        """Authors soft-delete their messages."""
        author = await add_user(store, "author", department="support")
        await add_room(store, "team", RoomType.PRIVATE, {"author": RoomRole.MEMBER})
        message = await messages.post_message(author, "team", "oops")

        deleted = await messages.delete_message(author, message.id)

        assert deleted.is_deleted
        assert deleted.content == DELETED_MESSAGE_CONTENT
        assert store.get_audit_records()[0].action == "message.delete"

        with pytest.raises(ValidationError) as exc_info:
            await messages.delete_message(author, message.id)
        assert exc_info.value.code == ALREADY_DELETED

    @pytest.mark.asyncio
    async def test_cannot_delete_others_message(self, store, messages):
        """Only the author may delete a message."""
        author = await add_user(store, "author", department="support")
        other = await add_user(store, "other", department="support")
        await add_room(
            store,
            "team",
            RoomType.PRIVATE,
            {"author": RoomRole.OWNER, "other": RoomRole.MEMBER},
        )
        message = await messages.post_message(author, "team", "mine")

        with pytest.raises(AccessError) as exc_info:
            await messages.delete_message(other, message.id)

        assert exc_info.value.code == FORBIDDEN

    @pytest.mark.asyncio
    async def test_delete_missing_message(self, store, messages):
        """Unknown messages raise NotFoundError."""
        author = await add_user(store, "author")

        with pytest.raises(NotFoundError):
            await messages.delete_message(author, "ghost")
