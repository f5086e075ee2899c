"""
Activity aggregator for RoomHub.

Builds one permission-filtered, cursor-paginated feed from four sources:
- Audit records (ticket status changes and assignments)
- TICKET rooms (ticket created)
- PUBLIC/PRIVATE rooms with a creator (room created)
- Non-deleted messages (message posted)

Algorithm:
    1. Compute the caller's visibility scope
    2. Resolve the cursor event to its (timestamp, id) position
    3. Query every source concurrently, newest first, starting strictly
       after the cursor and bounded to limit * multiplier rows (a larger
       multiplier when paging); scope and type filter are part of each query
    4. Normalize and sort by (timestamp, id) descending
    5. Drop events older than the last row of any source that had more
       rows than were fetched, they may be missing rows of that source
    6. Take ``limit`` events

Invariants:
    - Events are ordered by timestamp DESC, then id DESC
    - A cursor is the id of the last event of the previous page
    - An unknown cursor yields an empty page, never the first page
    - has_more is True exactly when older visible events exist
    - Source reads are bounded by a timeout and retried with backoff

How to change safely:
    - New sources need a normalizer, an id prefix and a visibility rule
    - Every post-query filter must also be expressible in the source
      query, or a truncated source can produce empty pages
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import Any, TypeVar

from ..access.controller import AccessController, VisibilityScope
from ..config import FeedConfig
from ..errors import InfrastructureError, StoreTimeoutError, ValidationError
from ..models import INTERNAL_ROOM_TYPES, AuditRecord, Message, Room, RoomType, User
from ..store.base import AuditQuery, MessageQuery, RoomQuery, SortKey, Store
from .normalize import (
    AUDIT_EVENT_TYPES,
    AUDIT_ID_PREFIX,
    MESSAGE_ID_PREFIX,
    ROOM_ID_PREFIX,
    normalize_audit_record,
    normalize_message,
    normalize_room,
)
from .types import ActivityEvent, ActivityEventType, FeedPage

logger = logging.getLogger(__name__)

T = TypeVar("T")

TICKET_TYPES = frozenset({RoomType.TICKET})


async def retry_read(
    operation: str,
    read: Callable[[], Awaitable[T]],
    timeout_seconds: float,
    retries: int = 0,
    retry_delay_ms: int = 0,
) -> T:
    """Run a read with a timeout, retrying infrastructure failures.

    Each attempt is bounded by ``timeout_seconds``. Timeouts and
    InfrastructureErrors are retried up to ``retries`` times, sleeping
    ``retry_delay_ms`` and doubling the delay after every attempt. Any
    other exception propagates immediately.

    Raises:
        StoreTimeoutError: The last attempt timed out
        InfrastructureError: The last attempt failed
    """
    delay = retry_delay_ms / 1000
    attempt = 0
    while True:
        try:
            return await asyncio.wait_for(read(), timeout=timeout_seconds)
        except asyncio.TimeoutError:
            error: InfrastructureError = StoreTimeoutError(operation, timeout_seconds)
        except InfrastructureError as e:
            error = e

        if attempt >= retries:
            logger.error(
                f"Read '{operation}' failed after {attempt + 1} attempts: {error.message}",
                extra={"operation": operation, "code": error.code},
            )
            raise error

        attempt += 1
        logger.warning(
            f"Read '{operation}' failed, retrying in {delay:.3f}s",
            extra={"operation": operation, "attempt": attempt, "code": error.code},
        )
        await asyncio.sleep(delay)
        delay *= 2


def parse_type_filter(
    types: Iterable[str | ActivityEventType] | None,
) -> frozenset[ActivityEventType] | None:
    """Turn a list of event type names into a filter (None = all types).

    Raises:
        ValidationError: An unknown event type was given
    """
    if types is None:
        return None
    parsed = set()
    for value in types:
        if isinstance(value, ActivityEventType):
            parsed.add(value)
            continue
        value = value.strip()
        if not value:
            continue
        try:
            parsed.add(ActivityEventType(value))
        except ValueError:
            raise ValidationError(f"Unknown activity event type: {value}", field_name="types")
    return frozenset(parsed) or None


@dataclass(frozen=True)
class FeedCursor:
    """Feed position of the last event of the previous page.

    Attributes:
        timestamp: Event timestamp (Unix ms)
        event_id: Prefixed event id
    """

    timestamp: int
    event_id: str

    @property
    def sort_key(self) -> tuple[int, str]:
        return (self.timestamp, self.event_id)

    def bound_for(self, prefix: str) -> SortKey:
        """Translate the position into a raw (created_at, id) key for one source.

        Rows of the source whose event sorts below the cursor are exactly
        the rows whose raw key is below the returned key.
        """
        if self.event_id.startswith(prefix):
            return (self.timestamp, self.event_id[len(prefix) :])
        if prefix < self.event_id:
            # Every row at the cursor's timestamp sorts below it
            return (self.timestamp + 1, "")
        return (self.timestamp, "")


@dataclass
class _SourceRows:
    prefix: str
    rows: Sequence[Any]
    truncated: bool = False

    def horizon(self) -> tuple[int, str] | None:
        """Sort key of the oldest fetched row when the source was cut short."""
        if not self.truncated or not self.rows:
            return None
        last = self.rows[-1]
        return (last.created_at, f"{self.prefix}{last.id}")


class ActivityAggregator:
    """Merges feed sources into pages of ActivityEvents.

    Example:
        >>> aggregator = ActivityAggregator(store, AccessController(store))
        >>> page = await aggregator.get_feed(user, limit=20)
        >>> page = await aggregator.get_feed(user, limit=20, cursor=page.next_cursor)
    """

    def __init__(
        self,
        store: Store,
        controller: AccessController,
        config: FeedConfig | None = None,
    ) -> None:
        self.store = store
        self.controller = controller
        self.config = config or FeedConfig()

    def resolve_limit(self, limit: int | None) -> int:
        """Apply the default and clamp to the configured maximum."""
        if limit is None:
            return self.config.default_limit
        if limit < 1:
            raise ValidationError(f"limit must be positive, got {limit}", field_name="limit")
        return min(limit, self.config.max_limit)

    async def _read(self, operation: str, read: Callable[[], Awaitable[T]]) -> T:
        return await retry_read(
            operation,
            read,
            timeout_seconds=self.config.source_timeout_seconds,
            retries=self.config.read_retries,
            retry_delay_ms=self.config.retry_delay_ms,
        )

    async def resolve_cursor(self, cursor: str) -> FeedCursor | None:
        """Look up the source row behind ``cursor`` (None when it is unknown)."""
        row: AuditRecord | Room | Message | None = None
        if cursor.startswith(AUDIT_ID_PREFIX):
            record_id = cursor[len(AUDIT_ID_PREFIX) :]
            row = await self._read("get_audit_record", lambda: self.store.get_audit_record(record_id))
        elif cursor.startswith(ROOM_ID_PREFIX):
            room_id = cursor[len(ROOM_ID_PREFIX) :]
            row = await self._read("get_room", lambda: self.store.get_room(room_id))
        elif cursor.startswith(MESSAGE_ID_PREFIX):
            message_id = cursor[len(MESSAGE_ID_PREFIX) :]
            row = await self._read("get_message", lambda: self.store.get_message(message_id))
        if row is None:
            return None
        return FeedCursor(timestamp=row.created_at, event_id=cursor)

    async def _fetch(
        self,
        operation: str,
        prefix: str,
        read: Callable[[int], Awaitable[Sequence[Any]]],
        fetch_limit: int,
    ) -> _SourceRows:
        # One extra row tells whether the source holds more than fetch_limit
        rows = await self._read(operation, lambda: read(fetch_limit + 1))
        if len(rows) > fetch_limit:
            return _SourceRows(prefix, rows[:fetch_limit], truncated=True)
        return _SourceRows(prefix, rows)

    async def _fetch_audit(
        self,
        scope: VisibilityScope,
        wanted: frozenset[ActivityEventType] | None,
        after: FeedCursor | None,
        fetch_limit: int,
    ) -> _SourceRows:
        actions = frozenset(
            action for action, label in AUDIT_EVENT_TYPES.items() if wanted is None or label in wanted
        )
        target_ids = None if scope.is_admin else scope.ticket_room_ids
        if not actions or (target_ids is not None and not target_ids):
            return _SourceRows(AUDIT_ID_PREFIX, [])
        query = AuditQuery(
            actions=actions,
            target_ids=target_ids,
            before=after.bound_for(AUDIT_ID_PREFIX) if after else None,
        )
        return await self._fetch(
            "query_audit_records",
            AUDIT_ID_PREFIX,
            lambda n: self.store.query_audit_records(query, n),
            fetch_limit,
        )

    async def _fetch_rooms(
        self,
        label: ActivityEventType,
        types: frozenset[RoomType],
        room_ids: frozenset[str] | None,
        wanted: frozenset[ActivityEventType] | None,
        after: FeedCursor | None,
        fetch_limit: int,
    ) -> _SourceRows:
        if (wanted is not None and label not in wanted) or (room_ids is not None and not room_ids):
            return _SourceRows(ROOM_ID_PREFIX, [])
        query = RoomQuery(
            types=types,
            room_ids=room_ids,
            require_creator=label == ActivityEventType.ROOM_CREATED,
            before=after.bound_for(ROOM_ID_PREFIX) if after else None,
        )
        return await self._fetch(
            f"query_rooms[{label.value}]",
            ROOM_ID_PREFIX,
            lambda n: self.store.query_rooms(query, n),
            fetch_limit,
        )

    async def _fetch_messages(
        self,
        scope: VisibilityScope,
        wanted: frozenset[ActivityEventType] | None,
        after: FeedCursor | None,
        fetch_limit: int,
    ) -> _SourceRows:
        if wanted is not None and ActivityEventType.MESSAGE_POSTED not in wanted:
            return _SourceRows(MESSAGE_ID_PREFIX, [])
        if scope.message_room_ids is not None and not scope.message_room_ids:
            return _SourceRows(MESSAGE_ID_PREFIX, [])
        query = MessageQuery(
            room_ids=scope.message_room_ids,
            before=after.bound_for(MESSAGE_ID_PREFIX) if after else None,
        )
        return await self._fetch(
            "query_messages",
            MESSAGE_ID_PREFIX,
            lambda n: self.store.query_messages(query, n),
            fetch_limit,
        )

    async def get_feed(
        self,
        user: User,
        limit: int | None = None,
        cursor: str | None = None,
        type_filter: Iterable[str | ActivityEventType] | None = None,
    ) -> FeedPage:
        """Return one page of the user's activity feed.

        Args:
            user: The viewer
            limit: Page size (default from config, clamped to the maximum)
            cursor: Id of the last event of the previous page
            type_filter: Only these event types

        Raises:
            ValidationError: Non-positive limit or unknown event type
            InfrastructureError: A source read failed after retries
        """
        page_size = self.resolve_limit(limit)
        wanted = parse_type_filter(type_filter)
        scope = await self.controller.visibility_scope(user)

        after: FeedCursor | None = None
        if cursor:
            after = await self.resolve_cursor(cursor)
            if after is None:
                logger.info(
                    "Feed cursor not found, returning empty page",
                    extra={"user_id": user.id, "cursor": cursor},
                )
                return FeedPage(events=[], next_cursor=None, has_more=False)

        multiplier = self.config.cursor_multiplier if cursor else self.config.first_page_multiplier
        fetch_limit = page_size * multiplier

        audit, tickets, regular, posted = await asyncio.gather(
            self._fetch_audit(scope, wanted, after, fetch_limit),
            self._fetch_rooms(
                ActivityEventType.TICKET_CREATED,
                TICKET_TYPES,
                scope.ticket_room_ids,
                wanted,
                after,
                fetch_limit,
            ),
            self._fetch_rooms(
                ActivityEventType.ROOM_CREATED,
                INTERNAL_ROOM_TYPES,
                scope.room_ids,
                wanted,
                after,
                fetch_limit,
            ),
            self._fetch_messages(scope, wanted, after, fetch_limit),
        )
        audit_records: list[AuditRecord] = list(audit.rows)
        ticket_rooms: list[Room] = list(tickets.rows)
        regular_rooms: list[Room] = list(regular.rows)
        messages: list[Message] = list(posted.rows)

        user_ids = {r.actor_id for r in audit_records}
        user_ids.update(r.creator_id for r in ticket_rooms if r.creator_id)
        user_ids.update(r.creator_id for r in regular_rooms if r.creator_id)
        user_ids.update(m.author_id for m in messages)
        users = await self._read("get_users", lambda: self.store.get_users(user_ids))

        message_room_ids = {m.room_id for m in messages}
        rooms = (
            await self._read("get_rooms", lambda: self.store.get_rooms(message_room_ids))
            if message_room_ids
            else {}
        )

        events: list[ActivityEvent] = []
        for record in audit_records:
            event = normalize_audit_record(record, users.get(record.actor_id))
            if event is not None:
                events.append(event)
        for room in ticket_rooms:
            creator = users.get(room.creator_id) if room.creator_id else None
            events.append(normalize_room(room, ActivityEventType.TICKET_CREATED, creator))
        for room in regular_rooms:
            creator = users.get(room.creator_id) if room.creator_id else None
            events.append(normalize_room(room, ActivityEventType.ROOM_CREATED, creator))
        for message in messages:
            events.append(
                normalize_message(message, users.get(message.author_id), rooms.get(message.room_id))
            )

        events.sort(key=ActivityEvent.sort_key, reverse=True)

        horizons = [
            h for h in (s.horizon() for s in (audit, tickets, regular, posted)) if h is not None
        ]
        if horizons:
            horizon = max(horizons)
            events = [e for e in events if e.sort_key() >= horizon]

        page = events[:page_size]
        has_more = bool(horizons) or len(events) > page_size
        next_cursor = page[-1].id if has_more and page else None

        logger.debug(
            "Feed page built",
            extra={
                "user_id": user.id,
                "events": len(page),
                "has_more": has_more,
                "fetch_limit": fetch_limit,
                "truncated_sources": len(horizons),
            },
        )
        return FeedPage(events=page, next_cursor=next_cursor, has_more=has_more)
