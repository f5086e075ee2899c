"""
Base interfaces for RoomHub storage.

This module defines the narrow interfaces the core consumes:
- MembershipReader / MembershipTransaction: membership reads and writes
- Store: users, rooms, messages and transactional membership access
- EventSource: the raw feed sources, newest first
- AuditSink: append-only audit log

Invariants:
    - Every EventSource query returns rows ordered by created_at DESC, id DESC
    - A query with ``before`` set resumes strictly after that key (keyset paging)
    - Membership writes only happen inside Store.transaction()
    - A transaction never commits a room that had an OWNER, still has more
      than one member and has no OWNER left

How to change safely:
    - Interface changes require updating every implementation
    - Add new query fields with defaults meaning "unrestricted"
    - Keep ordering guarantees identical across backends
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from typing import Awaitable, Callable, Protocol, Tuple, TypeVar, runtime_checkable

from ..errors import LAST_OWNER, InvariantViolation
from ..models import AuditRecord, Membership, Message, Room, RoomRole, RoomType, TicketStatus, User

logger = logging.getLogger(__name__)

T = TypeVar("T")

# (created_at, id) of a source row, the order every EventSource query uses
SortKey = Tuple[int, str]


@dataclass(frozen=True)
class AuditQuery:
    """Filter for audit record queries.

    Attributes:
        actions: Only these actions (None = all)
        target_ids: Only these targets (None = all, empty = none)
        before: Only rows sorting strictly before this (created_at, id) key
    """

    actions: frozenset[str] | None = None
    target_ids: frozenset[str] | None = None
    before: SortKey | None = None


@dataclass(frozen=True)
class RoomQuery:
    """Filter for room queries.

    Attributes:
        types: Only these room types (None = all)
        room_ids: Only these rooms (None = all, empty = none)
        require_creator: Skip system-created rooms
        before: Only rows sorting strictly before this (created_at, id) key
    """

    types: frozenset[RoomType] | None = None
    room_ids: frozenset[str] | None = None
    require_creator: bool = False
    before: SortKey | None = None


@dataclass(frozen=True)
class MessageQuery:
    """Filter for message queries.

    Attributes:
        room_ids: Only messages in these rooms (None = all, empty = none)
        include_deleted: Include soft-deleted messages
        before: Only rows sorting strictly before this (created_at, id) key
    """

    room_ids: frozenset[str] | None = None
    include_deleted: bool = False
    before: SortKey | None = None


@runtime_checkable
class MembershipReader(Protocol):
    """Read access to room memberships."""

    async def find_membership(self, user_id: str, room_id: str) -> Membership | None:
        ...

    async def list_memberships(self, room_id: str) -> list[Membership]:
        ...

    async def list_user_memberships(self, user_id: str) -> list[Membership]:
        ...

    async def count_owners(self, room_id: str) -> int:
        ...

    async def count_members(self, room_id: str) -> int:
        ...


@runtime_checkable
class MembershipTransaction(MembershipReader, Protocol):
    """Transactional view of the store.

    All reads observe the transaction's own writes. Nothing is visible to
    other callers until the surrounding context exits without error.
    """

    async def upsert_membership(self, user_id: str, room_id: str, role: RoomRole) -> Membership:
        ...

    async def delete_membership(self, user_id: str, room_id: str) -> bool:
        ...

    async def get_room(self, room_id: str) -> Room | None:
        ...

    async def create_room(self, room: Room) -> Room:
        ...

    async def delete_room(self, room_id: str) -> bool:
        ...


@runtime_checkable
class EventSource(Protocol):
    """Raw activity sources, each ordered newest first."""

    async def query_audit_records(self, query: AuditQuery, limit: int) -> list[AuditRecord]:
        ...

    async def query_rooms(self, query: RoomQuery, limit: int) -> list[Room]:
        ...

    async def query_messages(self, query: MessageQuery, limit: int) -> list[Message]:
        ...


@runtime_checkable
class AuditSink(Protocol):
    """Append-only destination for audit records."""

    async def append(self, record: AuditRecord) -> None:
        ...


class Store(ABC):
    """Storage backend consumed by the core.

    A Store is also an EventSource and an AuditSink so a single backend can
    serve a whole tenant. Implementations must honour the ordering and
    transaction contracts documented in this module.
    """

    # --- users ---

    @abstractmethod
    async def create_user(self, user: User) -> User:
        ...

    @abstractmethod
    async def get_user(self, user_id: str) -> User | None:
        ...

    @abstractmethod
    async def get_users(self, user_ids: set[str]) -> dict[str, User]:
        ...

    @abstractmethod
    async def find_oldest_admin(self) -> User | None:
        ...

    # --- rooms ---

    @abstractmethod
    async def get_room(self, room_id: str) -> Room | None:
        ...

    @abstractmethod
    async def get_rooms(self, room_ids: set[str]) -> dict[str, Room]:
        ...

    @abstractmethod
    async def get_room_by_name(self, name: str) -> Room | None:
        ...

    @abstractmethod
    async def list_rooms(self, types: frozenset[RoomType] | None = None) -> list[Room]:
        ...

    @abstractmethod
    async def update_room_status(self, room_id: str, status: TicketStatus) -> Room | None:
        ...

    # --- memberships (reads) ---

    @abstractmethod
    async def find_membership(self, user_id: str, room_id: str) -> Membership | None:
        ...

    @abstractmethod
    async def list_memberships(self, room_id: str) -> list[Membership]:
        ...

    @abstractmethod
    async def list_user_memberships(self, user_id: str) -> list[Membership]:
        ...

    @abstractmethod
    async def count_owners(self, room_id: str) -> int:
        ...

    @abstractmethod
    async def count_members(self, room_id: str) -> int:
        ...

    # --- transactions ---

    @abstractmethod
    def transaction(self) -> AbstractAsyncContextManager[MembershipTransaction]:
        """Open an atomic unit of work.

        Usage:
            >>> async with store.transaction() as tx:
            ...     await tx.upsert_membership("u1", "r1", RoomRole.OWNER)
        """
        ...

    async def with_transaction(self, fn: Callable[[MembershipTransaction], Awaitable[T]]) -> T:
        """Run ``fn`` inside a transaction and return its result."""
        async with self.transaction() as tx:
            return await fn(tx)

    # --- messages ---

    @abstractmethod
    async def create_message(self, message: Message) -> Message:
        ...

    @abstractmethod
    async def get_message(self, message_id: str) -> Message | None:
        ...

    @abstractmethod
    async def soft_delete_message(
        self, message_id: str, deleted_at: int, replacement: str
    ) -> Message | None:
        ...

    # --- event sources ---

    @abstractmethod
    async def get_audit_record(self, record_id: str) -> AuditRecord | None:
        ...

    @abstractmethod
    async def query_audit_records(self, query: AuditQuery, limit: int) -> list[AuditRecord]:
        ...

    @abstractmethod
    async def query_rooms(self, query: RoomQuery, limit: int) -> list[Room]:
        ...

    @abstractmethod
    async def query_messages(self, query: MessageQuery, limit: int) -> list[Message]:
        ...

    # --- audit sink ---

    @abstractmethod
    async def append(self, record: AuditRecord) -> None:
        ...

    async def close(self) -> None:
        """Release backend resources."""
        return None


class OwnerLedger:
    """Tracks OWNER counts of rooms touched by a transaction.

    The first time a room is written, its owner count is remembered. At
    commit, :meth:`verify` rejects any room that had an OWNER, still has
    more than one member and no longer has an OWNER.
    """

    def __init__(self) -> None:
        self._owners_before: dict[str, int] = {}

    def is_tracking(self, room_id: str) -> bool:
        return room_id in self._owners_before

    def track(self, room_id: str, owners_before: int) -> None:
        self._owners_before.setdefault(room_id, owners_before)

    def forget(self, room_id: str) -> None:
        self._owners_before.pop(room_id, None)

    @property
    def room_ids(self) -> list[str]:
        return list(self._owners_before)

    def verify(self, room_id: str, owners_after: int, members_after: int) -> None:
        owners_before = self._owners_before.get(room_id, 0)
        if owners_before > 0 and owners_after == 0 and members_after > 1:
            logger.warning(
                "Rejected transaction leaving room without owner",
                extra={"room_id": room_id, "members": members_after},
            )
            raise InvariantViolation(
                "Room would be left without an owner while other members remain",
                invariant=LAST_OWNER,
                room_id=room_id,
            )
