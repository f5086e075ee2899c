"""
In-memory store implementation for testing.

This module provides a complete in-memory Store for:
- Unit tests
- Integration tests of the HTTP layer
- Local development without a data directory

Invariants:
    - All data is lost on process exit
    - Provides the same ordering guarantees as the SQLite store
    - Transactions copy memberships and stage their own room creates and
      deletes, rooms and messages written outside a transaction survive commit

How to change safely:
    - Keep behaviour aligned with SqliteStore
    - Keep interface compatible with Store
    - Add features to help with testing scenarios
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import replace
from typing import Dict, List, Optional, Set, Tuple

from ..models import (
    AuditRecord,
    GlobalRole,
    Membership,
    Message,
    Room,
    RoomRole,
    RoomType,
    TicketStatus,
    User,
)
from .base import AuditQuery, MessageQuery, OwnerLedger, RoomQuery, SortKey, Store

logger = logging.getLogger(__name__)

MembershipKey = Tuple[str, str]


def _sorts_before(row, key: SortKey | None) -> bool:
    return key is None or (row.created_at, row.id) < key


def _newest_first(rows: list, limit: int) -> list:
    rows.sort(key=lambda r: (r.created_at, r.id), reverse=True)
    return rows[:limit]


class _MembershipView:
    """Membership reads over a (room, membership) snapshot."""

    def __init__(
        self,
        rooms: Dict[str, Room],
        memberships: Dict[MembershipKey, Membership],
    ) -> None:
        self._rooms = rooms
        self._memberships = memberships

    async def find_membership(self, user_id: str, room_id: str) -> Membership | None:
        return self._memberships.get((user_id, room_id))

    async def list_memberships(self, room_id: str) -> list[Membership]:
        members = [m for m in self._memberships.values() if m.room_id == room_id]
        members.sort(key=lambda m: (list(RoomRole).index(m.role), m.created_at, m.id))
        return members

    async def list_user_memberships(self, user_id: str) -> list[Membership]:
        return [m for m in self._memberships.values() if m.user_id == user_id]

    async def count_owners(self, room_id: str) -> int:
        return sum(
            1
            for m in self._memberships.values()
            if m.room_id == room_id and m.role == RoomRole.OWNER
        )

    async def count_members(self, room_id: str) -> int:
        return sum(1 for m in self._memberships.values() if m.room_id == room_id)


class InMemoryTransaction(_MembershipView):
    """Copy-on-write transaction over an InMemoryStore.

    Memberships are copied whole since only transactions write them and
    transactions hold the store lock. Room creates and deletes are staged
    and replayed onto the live store at commit.
    """

    def __init__(self, store: InMemoryStore) -> None:
        super().__init__(dict(store._rooms), dict(store._memberships))
        self._created_rooms: Dict[str, Room] = {}
        self._deleted_room_ids: Set[str] = set()
        self.ledger = OwnerLedger()

    async def _track(self, room_id: str) -> None:
        if not self.ledger.is_tracking(room_id):
            self.ledger.track(room_id, await self.count_owners(room_id))

    async def upsert_membership(self, user_id: str, room_id: str, role: RoomRole) -> Membership:
        await self._track(room_id)
        existing = self._memberships.get((user_id, room_id))
        if existing is not None:
            membership = replace(existing, role=role)
        else:
            membership = Membership(user_id=user_id, room_id=room_id, role=role)
        self._memberships[(user_id, room_id)] = membership
        return membership

    async def delete_membership(self, user_id: str, room_id: str) -> bool:
        await self._track(room_id)
        return self._memberships.pop((user_id, room_id), None) is not None

    async def get_room(self, room_id: str) -> Room | None:
        return self._rooms.get(room_id)

    async def create_room(self, room: Room) -> Room:
        if any(r.name == room.name for r in self._rooms.values()):
            raise ValueError(f"Room name already exists: {room.name}")
        self._rooms[room.id] = room
        self._created_rooms[room.id] = room
        self._deleted_room_ids.discard(room.id)
        return room

    async def delete_room(self, room_id: str) -> bool:
        if self._rooms.pop(room_id, None) is None:
            return False
        for key in [k for k in self._memberships if k[1] == room_id]:
            del self._memberships[key]
        self._created_rooms.pop(room_id, None)
        self._deleted_room_ids.add(room_id)
        self.ledger.forget(room_id)
        return True

    async def verify(self) -> None:
        for room_id in self.ledger.room_ids:
            self.ledger.verify(
                room_id,
                owners_after=await self.count_owners(room_id),
                members_after=await self.count_members(room_id),
            )

    def commit_to(self, store: InMemoryStore) -> None:
        store._memberships = self._memberships
        for room in self._created_rooms.values():
            store._rooms[room.id] = room
        for room_id in self._deleted_room_ids:
            store._rooms.pop(room_id, None)
            for message_id in [m.id for m in store._messages.values() if m.room_id == room_id]:
                del store._messages[message_id]


class InMemoryStore(Store):
    """In-memory implementation of Store for testing.

    Thread safety:
        Writers are serialized with an asyncio lock. Readers see either the
        state before or after a transaction, never an intermediate one.

    Example:
        >>> store = InMemoryStore()
        >>> await store.create_user(User(id="u1", role=GlobalRole.ADMIN))
        >>> async with store.transaction() as tx:
        ...     await tx.upsert_membership("u1", "r1", RoomRole.OWNER)
    """

    def __init__(self) -> None:
        self._users: Dict[str, User] = {}
        self._rooms: Dict[str, Room] = {}
        self._memberships: Dict[MembershipKey, Membership] = {}
        self._messages: Dict[str, Message] = {}
        self._audit: List[AuditRecord] = []
        self._lock = asyncio.Lock()
        self._audit_failure: Optional[Exception] = None
        self._query_failures: List[Exception] = []
        self._query_delay: float = 0.0

    def _view(self) -> _MembershipView:
        return _MembershipView(self._rooms, self._memberships)

    # --- users ---

    async def create_user(self, user: User) -> User:
        self._users[user.id] = user
        return user

    async def get_user(self, user_id: str) -> User | None:
        return self._users.get(user_id)

    async def get_users(self, user_ids: set[str]) -> dict[str, User]:
        return {uid: self._users[uid] for uid in user_ids if uid in self._users}

    async def find_oldest_admin(self) -> User | None:
        admins = [u for u in self._users.values() if u.role == GlobalRole.ADMIN]
        if not admins:
            return None
        return min(admins, key=lambda u: (u.created_at, u.id))

    # --- rooms ---

    async def get_room(self, room_id: str) -> Room | None:
        return self._rooms.get(room_id)

    async def get_rooms(self, room_ids: set[str]) -> dict[str, Room]:
        return {rid: self._rooms[rid] for rid in room_ids if rid in self._rooms}

    async def get_room_by_name(self, name: str) -> Room | None:
        for room in self._rooms.values():
            if room.name == name:
                return room
        return None

    async def list_rooms(self, types: frozenset[RoomType] | None = None) -> list[Room]:
        return [r for r in self._rooms.values() if types is None or r.type in types]

    async def update_room_status(self, room_id: str, status: TicketStatus) -> Room | None:
        room = self._rooms.get(room_id)
        if room is None:
            return None
        updated = replace(room, status=status)
        self._rooms[room_id] = updated
        return updated

    # --- memberships ---

    async def find_membership(self, user_id: str, room_id: str) -> Membership | None:
        return await self._view().find_membership(user_id, room_id)

    async def list_memberships(self, room_id: str) -> list[Membership]:
        return await self._view().list_memberships(room_id)

    async def list_user_memberships(self, user_id: str) -> list[Membership]:
        return await self._view().list_user_memberships(user_id)

    async def count_owners(self, room_id: str) -> int:
        return await self._view().count_owners(room_id)

    async def count_members(self, room_id: str) -> int:
        return await self._view().count_members(room_id)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[InMemoryTransaction]:
        async with self._lock:
            tx = InMemoryTransaction(self)
            yield tx
            await tx.verify()
            tx.commit_to(self)

    # --- messages ---

    async def create_message(self, message: Message) -> Message:
        self._messages[message.id] = message
        return message

    async def get_message(self, message_id: str) -> Message | None:
        return self._messages.get(message_id)

    async def soft_delete_message(
        self, message_id: str, deleted_at: int, replacement: str
    ) -> Message | None:
        message = self._messages.get(message_id)
        if message is None:
            return None
        updated = replace(message, deleted_at=deleted_at, content=replacement)
        self._messages[message_id] = updated
        return updated

    # --- event sources ---

    async def _before_query(self) -> None:
        if self._query_delay:
            await asyncio.sleep(self._query_delay)
        if self._query_failures:
            raise self._query_failures.pop(0)

    async def get_audit_record(self, record_id: str) -> AuditRecord | None:
        for record in self._audit:
            if record.id == record_id:
                return record
        return None

    async def query_audit_records(self, query: AuditQuery, limit: int) -> list[AuditRecord]:
        await self._before_query()
        rows = [
            r
            for r in self._audit
            if (query.actions is None or r.action in query.actions)
            and (query.target_ids is None or r.target_id in query.target_ids)
            and _sorts_before(r, query.before)
        ]
        return _newest_first(rows, limit)

    async def query_rooms(self, query: RoomQuery, limit: int) -> list[Room]:
        await self._before_query()
        rows = [
            r
            for r in self._rooms.values()
            if (query.types is None or r.type in query.types)
            and (query.room_ids is None or r.id in query.room_ids)
            and (not query.require_creator or r.creator_id is not None)
            and _sorts_before(r, query.before)
        ]
        return _newest_first(rows, limit)

    async def query_messages(self, query: MessageQuery, limit: int) -> list[Message]:
        await self._before_query()
        rows = [
            m
            for m in self._messages.values()
            if (query.room_ids is None or m.room_id in query.room_ids)
            and (query.include_deleted or m.deleted_at is None)
            and _sorts_before(m, query.before)
        ]
        return _newest_first(rows, limit)

    # --- audit sink ---

    async def append(self, record: AuditRecord) -> None:
        if self._audit_failure is not None:
            raise self._audit_failure
        self._audit.append(record)

    # Testing helpers

    def get_audit_records(self) -> List[AuditRecord]:
        """All audit records in append order (testing helper)."""
        return list(self._audit)

    def fail_audit_appends(self, exception: Optional[Exception]) -> None:
        """Make every audit append raise ``exception`` (None to reset)."""
        self._audit_failure = exception

    def fail_next_queries(self, *exceptions: Exception) -> None:
        """Raise these exceptions from the next event source queries, in order."""
        self._query_failures.extend(exceptions)

    def delay_queries(self, seconds: float) -> None:
        """Sleep before every event source query (testing helper)."""
        self._query_delay = seconds
