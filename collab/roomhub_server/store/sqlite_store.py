"""
Per-tenant SQLite store for RoomHub.

This module manages the tenant SQLite database that stores:
- Users, rooms and room memberships
- Chat messages (soft deleted, never physically removed by users)
- The append-only audit log

Invariants:
    - One SQLite file per tenant
    - Membership mutations run inside BEGIN IMMEDIATE transactions
    - Room deletion cascades memberships and messages
    - Event source queries are ordered by created_at DESC, id DESC

How to change safely:
    - Schema migrations must be backward compatible
    - Use transactions for all multi-statement writes
    - Keep behaviour aligned with InMemoryStore

Table schema:
    users:
        - id TEXT PRIMARY KEY
        - name, email, image TEXT
        - role TEXT (USER | ADMIN)
        - department TEXT NULL
        - created_at INTEGER (Unix ms)

    rooms:
        - id TEXT PRIMARY KEY
        - name TEXT UNIQUE
        - title TEXT
        - type TEXT (PUBLIC | PRIVATE | DM | TICKET)
        - status TEXT NULL
        - department TEXT NULL
        - is_private INTEGER
        - creator_id TEXT NULL
        - created_at INTEGER

    room_members:
        - id TEXT
        - user_id TEXT
        - room_id TEXT REFERENCES rooms ON DELETE CASCADE
        - role TEXT (OWNER | MODERATOR | MEMBER)
        - created_at INTEGER
        - PRIMARY KEY (user_id, room_id)

    messages:
        - id TEXT PRIMARY KEY
        - room_id TEXT REFERENCES rooms ON DELETE CASCADE
        - author_id TEXT
        - content TEXT
        - parent_message_id TEXT NULL
        - created_at INTEGER
        - deleted_at INTEGER NULL

    audit_log:
        - id TEXT PRIMARY KEY
        - action TEXT
        - actor_id TEXT
        - target_type, target_id TEXT NULL
        - metadata_json TEXT
        - created_at INTEGER
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from collections.abc import AsyncIterator, Iterable, Iterator
from contextlib import asynccontextmanager, contextmanager
from pathlib import Path
from typing import Any, Callable, TypeVar

from ..errors import InfrastructureError
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
    new_id,
    now_ms,
)
from .base import AuditQuery, MessageQuery, OwnerLedger, RoomQuery, SortKey, Store

logger = logging.getLogger(__name__)

T = TypeVar("T")

ROLE_ORDER_SQL = "CASE role WHEN 'OWNER' THEN 0 WHEN 'MODERATOR' THEN 1 ELSE 2 END"


def _placeholders(values: Iterable[Any]) -> str:
    return ", ".join("?" for _ in values)


def _keyset(clauses: list[str], params: list[Any], before: SortKey | None) -> None:
    if before is not None:
        created_at, row_id = before
        clauses.append("(created_at < ? OR (created_at = ? AND id < ?))")
        params.extend([created_at, created_at, row_id])


def _row_to_user(row: sqlite3.Row) -> User:
    return User(
        id=row["id"],
        name=row["name"],
        email=row["email"],
        role=GlobalRole(row["role"]),
        department=row["department"],
        image=row["image"],
        created_at=row["created_at"],
    )


def _row_to_room(row: sqlite3.Row) -> Room:
    return Room(
        id=row["id"],
        name=row["name"],
        title=row["title"],
        type=RoomType(row["type"]),
        status=TicketStatus(row["status"]) if row["status"] else None,
        department=row["department"],
        is_private=bool(row["is_private"]),
        creator_id=row["creator_id"],
        created_at=row["created_at"],
    )


def _row_to_membership(row: sqlite3.Row) -> Membership:
    return Membership(
        id=row["id"],
        user_id=row["user_id"],
        room_id=row["room_id"],
        role=RoomRole(row["role"]),
        created_at=row["created_at"],
    )


def _row_to_message(row: sqlite3.Row) -> Message:
    return Message(
        id=row["id"],
        room_id=row["room_id"],
        author_id=row["author_id"],
        content=row["content"],
        parent_message_id=row["parent_message_id"],
        created_at=row["created_at"],
        deleted_at=row["deleted_at"],
    )


def _row_to_audit(row: sqlite3.Row) -> AuditRecord:
    return AuditRecord(
        id=row["id"],
        action=row["action"],
        actor_id=row["actor_id"],
        target_type=row["target_type"],
        target_id=row["target_id"],
        metadata=json.loads(row["metadata_json"] or "{}"),
        created_at=row["created_at"],
    )


class _SqliteMembershipOps:
    """Membership queries bound to one connection."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    async def find_membership(self, user_id: str, room_id: str) -> Membership | None:
        row = self._conn.execute(
            "SELECT * FROM room_members WHERE user_id = ? AND room_id = ?",
            (user_id, room_id),
        ).fetchone()
        return _row_to_membership(row) if row else None

    async def list_memberships(self, room_id: str) -> list[Membership]:
        cursor = self._conn.execute(
            f"SELECT * FROM room_members WHERE room_id = ? ORDER BY {ROLE_ORDER_SQL}, created_at, id",
            (room_id,),
        )
        return [_row_to_membership(row) for row in cursor.fetchall()]

    async def list_user_memberships(self, user_id: str) -> list[Membership]:
        cursor = self._conn.execute(
            "SELECT * FROM room_members WHERE user_id = ? ORDER BY created_at, id",
            (user_id,),
        )
        return [_row_to_membership(row) for row in cursor.fetchall()]

    async def count_owners(self, room_id: str) -> int:
        return self._conn.execute(
            "SELECT COUNT(*) FROM room_members WHERE room_id = ? AND role = 'OWNER'",
            (room_id,),
        ).fetchone()[0]

    async def count_members(self, room_id: str) -> int:
        return self._conn.execute(
            "SELECT COUNT(*) FROM room_members WHERE room_id = ?",
            (room_id,),
        ).fetchone()[0]


class SqliteTransaction(_SqliteMembershipOps):
    """Transactional view over one BEGIN IMMEDIATE connection."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        super().__init__(conn)
        self.ledger = OwnerLedger()

    async def _track(self, room_id: str) -> None:
        if not self.ledger.is_tracking(room_id):
            self.ledger.track(room_id, await self.count_owners(room_id))

    async def upsert_membership(self, user_id: str, room_id: str, role: RoomRole) -> Membership:
        await self._track(room_id)
        self._conn.execute(
            """
            INSERT INTO room_members (id, user_id, room_id, role, created_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (user_id, room_id) DO UPDATE SET role = excluded.role
            """,
            (new_id(), user_id, room_id, role.value, now_ms()),
        )
        membership = await self.find_membership(user_id, room_id)
        if membership is None:
            raise InfrastructureError(f"Membership write not visible: {user_id}@{room_id}")
        return membership

    async def delete_membership(self, user_id: str, room_id: str) -> bool:
        await self._track(room_id)
        cursor = self._conn.execute(
            "DELETE FROM room_members WHERE user_id = ? AND room_id = ?",
            (user_id, room_id),
        )
        return cursor.rowcount > 0

    async def get_room(self, room_id: str) -> Room | None:
        row = self._conn.execute("SELECT * FROM rooms WHERE id = ?", (room_id,)).fetchone()
        return _row_to_room(row) if row else None

    async def create_room(self, room: Room) -> Room:
        try:
            self._conn.execute(
                """
                INSERT INTO rooms (id, name, title, type, status, department,
                                   is_private, creator_id, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    room.id,
                    room.name,
                    room.title,
                    room.type.value,
                    room.status.value if room.status else None,
                    room.department,
                    int(room.is_private),
                    room.creator_id,
                    room.created_at,
                ),
            )
        except sqlite3.IntegrityError as e:
            raise ValueError(f"Room name already exists: {room.name}") from e
        return room

    async def delete_room(self, room_id: str) -> bool:
        cursor = self._conn.execute("DELETE FROM rooms WHERE id = ?", (room_id,))
        self.ledger.forget(room_id)
        return cursor.rowcount > 0

    async def verify(self) -> None:
        for room_id in self.ledger.room_ids:
            self.ledger.verify(
                room_id,
                owners_after=await self.count_owners(room_id),
                members_after=await self.count_members(room_id),
            )


class SqliteStore(Store):
    """Per-tenant SQLite implementation of Store.

    Thread safety:
        Each operation opens its own connection. Transactions are serialized
        in-process with an asyncio lock and across processes with
        BEGIN IMMEDIATE plus the busy timeout.

    Example:
        >>> store = SqliteStore("/var/lib/roomhub", tenant_id="acme")
        >>> await store.initialize()
        >>> async with store.transaction() as tx:
        ...     await tx.upsert_membership("u1", "r1", RoomRole.OWNER)
    """

    SCHEMA_VERSION = 1

    def __init__(
        self,
        data_dir: str,
        tenant_id: str = "default",
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> None:
        """Initialize the store.

        Args:
            data_dir: Directory for SQLite database files
            tenant_id: Tenant whose database this store serves
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
        """
        self.data_dir = Path(data_dir)
        self.tenant_id = tenant_id
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self._lock = asyncio.Lock()

    @property
    def db_path(self) -> Path:
        # Sanitize tenant_id to prevent path traversal
        safe_id = "".join(c for c in self.tenant_id if c.isalnum() or c in "-_")
        return self.data_dir / f"tenant_{safe_id}.db"

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Open a configured connection to the tenant database.

        Raises:
            InfrastructureError: If the database cannot be opened
        """
        self.data_dir.mkdir(parents=True, exist_ok=True)
        try:
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.busy_timeout_ms / 1000.0,
                isolation_level=None,  # Autocommit by default, explicit transactions
            )
        except sqlite3.Error as e:
            raise InfrastructureError(f"Cannot open tenant database: {e}") from e
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            conn.execute("PRAGMA foreign_keys = ON")
            yield conn
        except sqlite3.OperationalError as e:
            raise InfrastructureError(f"SQLite operation failed: {e}") from e
        finally:
            conn.close()

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                name TEXT,
                email TEXT,
                role TEXT NOT NULL DEFAULT 'USER',
                department TEXT,
                image TEXT,
                created_at INTEGER NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_users_role ON users(role, created_at);

            CREATE TABLE IF NOT EXISTS rooms (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL UNIQUE,
                title TEXT,
                type TEXT NOT NULL,
                status TEXT,
                department TEXT,
                is_private INTEGER NOT NULL DEFAULT 0,
                creator_id TEXT,
                created_at INTEGER NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_rooms_created ON rooms(created_at DESC, id DESC);
            CREATE INDEX IF NOT EXISTS idx_rooms_type ON rooms(type, created_at DESC);

            CREATE TABLE IF NOT EXISTS room_members (
                id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                room_id TEXT NOT NULL REFERENCES rooms(id) ON DELETE CASCADE,
                role TEXT NOT NULL,
                created_at INTEGER NOT NULL,
                PRIMARY KEY (user_id, room_id)
            );

            CREATE INDEX IF NOT EXISTS idx_members_room ON room_members(room_id, role);

            CREATE TABLE IF NOT EXISTS messages (
                id TEXT PRIMARY KEY,
                room_id TEXT NOT NULL REFERENCES rooms(id) ON DELETE CASCADE,
                author_id TEXT NOT NULL,
                content TEXT NOT NULL,
                parent_message_id TEXT,
                created_at INTEGER NOT NULL,
                deleted_at INTEGER
            );

            CREATE INDEX IF NOT EXISTS idx_messages_created ON messages(created_at DESC, id DESC);
            CREATE INDEX IF NOT EXISTS idx_messages_room ON messages(room_id, created_at DESC);

            CREATE TABLE IF NOT EXISTS audit_log (
                id TEXT PRIMARY KEY,
                action TEXT NOT NULL,
                actor_id TEXT NOT NULL,
                target_type TEXT,
                target_id TEXT,
                metadata_json TEXT NOT NULL DEFAULT '{}',
                created_at INTEGER NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_audit_created ON audit_log(created_at DESC, id DESC);
            CREATE INDEX IF NOT EXISTS idx_audit_action ON audit_log(action, created_at DESC);

            INSERT OR IGNORE INTO schema_version (version, applied_at)
            VALUES (1, strftime('%s', 'now') * 1000);
        """)

    async def initialize(self) -> None:
        """Create the tenant database and schema if they don't exist."""
        async with self._lock:
            with self._get_connection() as conn:
                self._create_schema(conn)
        logger.info(f"Initialized tenant database: {self.tenant_id}")

    # --- users ---

    async def create_user(self, user: User) -> User:
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO users (id, name, email, role, department, image, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (id) DO UPDATE SET
                    name = excluded.name, email = excluded.email, role = excluded.role,
                    department = excluded.department, image = excluded.image
                """,
                (
                    user.id,
                    user.name,
                    user.email,
                    user.role.value,
                    user.department,
                    user.image,
                    user.created_at,
                ),
            )
        return user

    async def get_user(self, user_id: str) -> User | None:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
            return _row_to_user(row) if row else None

    async def get_users(self, user_ids: set[str]) -> dict[str, User]:
        if not user_ids:
            return {}
        ids = sorted(user_ids)
        with self._get_connection() as conn:
            cursor = conn.execute(
                f"SELECT * FROM users WHERE id IN ({_placeholders(ids)})", ids
            )
            return {row["id"]: _row_to_user(row) for row in cursor.fetchall()}

    async def find_oldest_admin(self) -> User | None:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE role = 'ADMIN' ORDER BY created_at, id LIMIT 1"
            ).fetchone()
            return _row_to_user(row) if row else None

    # --- rooms ---

    async def get_room(self, room_id: str) -> Room | None:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM rooms WHERE id = ?", (room_id,)).fetchone()
            return _row_to_room(row) if row else None

    async def get_rooms(self, room_ids: set[str]) -> dict[str, Room]:
        if not room_ids:
            return {}
        ids = sorted(room_ids)
        with self._get_connection() as conn:
            cursor = conn.execute(
                f"SELECT * FROM rooms WHERE id IN ({_placeholders(ids)})", ids
            )
            return {row["id"]: _row_to_room(row) for row in cursor.fetchall()}

    async def get_room_by_name(self, name: str) -> Room | None:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM rooms WHERE name = ?", (name,)).fetchone()
            return _row_to_room(row) if row else None

    async def list_rooms(self, types: frozenset[RoomType] | None = None) -> list[Room]:
        sql = "SELECT * FROM rooms"
        params: list[Any] = []
        if types is not None:
            if not types:
                return []
            values = sorted(t.value for t in types)
            sql += f" WHERE type IN ({_placeholders(values)})"
            params.extend(values)
        with self._get_connection() as conn:
            cursor = conn.execute(sql + " ORDER BY created_at, id", params)
            return [_row_to_room(row) for row in cursor.fetchall()]

    async def update_room_status(self, room_id: str, status: TicketStatus) -> Room | None:
        with self._get_connection() as conn:
            conn.execute("UPDATE rooms SET status = ? WHERE id = ?", (status.value, room_id))
            row = conn.execute("SELECT * FROM rooms WHERE id = ?", (room_id,)).fetchone()
            return _row_to_room(row) if row else None

    # --- memberships ---

    async def find_membership(self, user_id: str, room_id: str) -> Membership | None:
        with self._get_connection() as conn:
            return await _SqliteMembershipOps(conn).find_membership(user_id, room_id)

    async def list_memberships(self, room_id: str) -> list[Membership]:
        with self._get_connection() as conn:
            return await _SqliteMembershipOps(conn).list_memberships(room_id)

    async def list_user_memberships(self, user_id: str) -> list[Membership]:
        with self._get_connection() as conn:
            return await _SqliteMembershipOps(conn).list_user_memberships(user_id)

    async def count_owners(self, room_id: str) -> int:
        with self._get_connection() as conn:
            return await _SqliteMembershipOps(conn).count_owners(room_id)

    async def count_members(self, room_id: str) -> int:
        with self._get_connection() as conn:
            return await _SqliteMembershipOps(conn).count_members(room_id)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[SqliteTransaction]:
        async with self._lock:
            with self._get_connection() as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    tx = SqliteTransaction(conn)
                    yield tx
                    await tx.verify()
                    conn.execute("COMMIT")
                except BaseException:
                    conn.execute("ROLLBACK")
                    raise

    # --- messages ---

    async def create_message(self, message: Message) -> Message:
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO messages (id, room_id, author_id, content,
                                      parent_message_id, created_at, deleted_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    message.id,
                    message.room_id,
                    message.author_id,
                    message.content,
                    message.parent_message_id,
                    message.created_at,
                    message.deleted_at,
                ),
            )
        return message

    async def get_message(self, message_id: str) -> Message | None:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM messages WHERE id = ?", (message_id,)).fetchone()
            return _row_to_message(row) if row else None

    async def soft_delete_message(
        self, message_id: str, deleted_at: int, replacement: str
    ) -> Message | None:
        with self._get_connection() as conn:
            conn.execute(
                "UPDATE messages SET deleted_at = ?, content = ? WHERE id = ?",
                (deleted_at, replacement, message_id),
            )
            row = conn.execute("SELECT * FROM messages WHERE id = ?", (message_id,)).fetchone()
            return _row_to_message(row) if row else None

    # --- event sources ---

    async def get_audit_record(self, record_id: str) -> AuditRecord | None:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM audit_log WHERE id = ?", (record_id,)).fetchone()
            return _row_to_audit(row) if row else None

    async def query_audit_records(self, query: AuditQuery, limit: int) -> list[AuditRecord]:
        clauses: list[str] = []
        params: list[Any] = []
        if query.actions is not None:
            if not query.actions:
                return []
            actions = sorted(query.actions)
            clauses.append(f"action IN ({_placeholders(actions)})")
            params.extend(actions)
        if query.target_ids is not None:
            if not query.target_ids:
                return []
            targets = sorted(query.target_ids)
            clauses.append(f"target_id IN ({_placeholders(targets)})")
            params.extend(targets)
        _keyset(clauses, params, query.before)
        return self._select("audit_log", clauses, params, limit, _row_to_audit)

    async def query_rooms(self, query: RoomQuery, limit: int) -> list[Room]:
        clauses: list[str] = []
        params: list[Any] = []
        if query.types is not None:
            if not query.types:
                return []
            types = sorted(t.value for t in query.types)
            clauses.append(f"type IN ({_placeholders(types)})")
            params.extend(types)
        if query.room_ids is not None:
            if not query.room_ids:
                return []
            ids = sorted(query.room_ids)
            clauses.append(f"id IN ({_placeholders(ids)})")
            params.extend(ids)
        if query.require_creator:
            clauses.append("creator_id IS NOT NULL")
        _keyset(clauses, params, query.before)
        return self._select("rooms", clauses, params, limit, _row_to_room)

    async def query_messages(self, query: MessageQuery, limit: int) -> list[Message]:
        clauses: list[str] = []
        params: list[Any] = []
        if query.room_ids is not None:
            if not query.room_ids:
                return []
            ids = sorted(query.room_ids)
            clauses.append(f"room_id IN ({_placeholders(ids)})")
            params.extend(ids)
        if not query.include_deleted:
            clauses.append("deleted_at IS NULL")
        _keyset(clauses, params, query.before)
        return self._select("messages", clauses, params, limit, _row_to_message)

    def _select(
        self,
        table: str,
        clauses: list[str],
        params: list[Any],
        limit: int,
        convert: Callable[[sqlite3.Row], T],
    ) -> list[T]:
        sql = f"SELECT * FROM {table}"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at DESC, id DESC LIMIT ?"
        with self._get_connection() as conn:
            cursor = conn.execute(sql, [*params, limit])
            return [convert(row) for row in cursor.fetchall()]

    # --- audit sink ---

    async def append(self, record: AuditRecord) -> None:
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO audit_log (id, action, actor_id, target_type, target_id,
                                       metadata_json, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.action,
                    record.actor_id,
                    record.target_type,
                    record.target_id,
                    json.dumps(record.metadata, sort_keys=True),
                    record.created_at,
                ),
            )
