"""
Component wiring for RoomHub.

RoomHub builds every service on top of one store:
- AccessController and MemberManager
- TicketWorkflow
- RoomService and MessageService (with the message rate limiter)
- ActivityAggregator
- AuditRecorder

Invariants:
    - All services share one store, recorder and controller
    - The store is initialized before the first request and closed last

How to change safely:
    - New services take their collaborators from here, never build their own
    - Keep from_config() the only place that picks a store backend
"""

from __future__ import annotations

import logging

from .access import AccessController, MemberManager
from .activity import ActivityAggregator
from .audit import AuditRecorder
from .config import ServerConfig, StoreBackend
from .models import User
from .ratelimit import InMemoryCounterStore, SlidingWindowRateLimiter
from .rooms import MessageService, RoomService
from .store import InMemoryStore, SqliteStore, Store
from .tickets import TicketWorkflow

logger = logging.getLogger(__name__)


class RoomHub:
    """All RoomHub services bound to one store.

    Attributes:
        config: Server configuration
        store: Storage backend
        recorder: Audit recorder
        controller: Access controller
        members: Member management
        tickets: Ticket workflow
        rooms: Room lifecycle
        messages: Message posting and deletion
        feed: Activity aggregator

    Example:
        >>> hub = RoomHub.from_config(ServerConfig())
        >>> await hub.start()
        >>> page = await hub.feed.get_feed(user)
        >>> await hub.close()
    """

    def __init__(self, store: Store, config: ServerConfig | None = None) -> None:
        self.config = config or ServerConfig()
        self.store = store
        self.recorder = AuditRecorder(store)
        self.controller = AccessController(store)
        self.members = MemberManager(store, self.controller, self.recorder)
        self.tickets = TicketWorkflow(store, self.controller, self.recorder)
        self.rooms = RoomService(store, self.controller, self.recorder)

        limiter = None
        if self.config.rate_limit.enabled:
            limiter = SlidingWindowRateLimiter(
                InMemoryCounterStore(),
                window_ms=self.config.rate_limit.message_window_ms,
                max_requests=self.config.rate_limit.message_max_requests,
                prefix="message",
                message="You're sending messages too fast",
            )
        self.messages = MessageService(store, self.controller, self.recorder, limiter)
        self.feed = ActivityAggregator(store, self.controller, self.config.feed)

    @classmethod
    def from_config(cls, config: ServerConfig) -> RoomHub:
        """Build a RoomHub with the store backend ``config`` selects."""
        store: Store
        if config.storage.backend == StoreBackend.MEMORY:
            store = InMemoryStore()
        else:
            store = SqliteStore(
                config.storage.data_dir,
                tenant_id=config.storage.tenant_id,
                wal_mode=config.storage.wal_mode,
                busy_timeout_ms=config.storage.busy_timeout_ms,
            )
        return cls(store, config)

    async def start(self) -> None:
        """Prepare the store for requests."""
        if isinstance(self.store, SqliteStore):
            await self.store.initialize()
        logger.info(
            "RoomHub started",
            extra={"store_backend": type(self.store).__name__},
        )

    async def close(self) -> None:
        await self.store.close()
        logger.info("RoomHub stopped")

    async def require_user(self, user_id: str) -> User:
        return await self.controller.require_user(user_id)
