"""
Configuration management for RoomHub Server.

Core settings come from environment variables, one frozen dataclass per
concern (storage, feed, rate limiting, logging), aggregated by ServerConfig.

Invariants:
    - Every setting has a default that works for local development
    - Production deployments MUST set an explicit data directory
    - Feed limits satisfy 1 <= default_limit <= max_limit

How to change safely:
    - New settings need a default so existing deployments keep starting
    - Renamed variables should keep reading the old name for a release
    - HTTP bind/CORS settings live in api/settings.py
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


class StoreBackend(Enum):
    """Supported storage backends."""

    MEMORY = "memory"
    SQLITE = "sqlite"


@dataclass(frozen=True)
class StorageConfig:
    """Tenant store configuration.

    Attributes:
        backend: Which store implementation to use
        data_dir: Directory holding the per-tenant SQLite files
        tenant_id: Tenant served by this process
        wal_mode: Enable SQLite WAL journal mode
        busy_timeout_ms: SQLite busy timeout in milliseconds
    """

    backend: StoreBackend = StoreBackend.SQLITE
    data_dir: str = "/var/lib/roomhub"
    tenant_id: str = "default"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        backend_str = os.getenv("STORE_BACKEND", "sqlite").lower()
        try:
            backend = StoreBackend(backend_str)
        except ValueError:
            raise ValueError(f"Invalid STORE_BACKEND '{backend_str}'. Must be one of: memory, sqlite")

        return cls(
            backend=backend,
            data_dir=os.getenv("ROOMHUB_DATA_DIR", "/var/lib/roomhub"),
            tenant_id=os.getenv("ROOMHUB_TENANT_ID", "default"),
            wal_mode=os.getenv("SQLITE_WAL_MODE", "true").lower() == "true",
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
        )


@dataclass(frozen=True)
class FeedConfig:
    """Activity feed configuration.

    Attributes:
        default_limit: Page size when the caller gives none
        max_limit: Largest page size accepted (larger values are clamped)
        first_page_multiplier: Over-fetch factor per source without a cursor
        cursor_multiplier: Over-fetch factor per source with a cursor
        source_timeout_seconds: Timeout for each source query
        read_retries: Extra attempts for a failed source query
        retry_delay_ms: Initial backoff between attempts (doubles each time)
    """

    default_limit: int = 50
    max_limit: int = 200
    first_page_multiplier: int = 2
    cursor_multiplier: int = 3
    source_timeout_seconds: float = 5.0
    read_retries: int = 2
    retry_delay_ms: int = 50

    @classmethod
    def from_env(cls) -> FeedConfig:
        """Load configuration from environment variables."""
        return cls(
            default_limit=int(os.getenv("FEED_DEFAULT_LIMIT", "50")),
            max_limit=int(os.getenv("FEED_MAX_LIMIT", "200")),
            first_page_multiplier=int(os.getenv("FEED_FIRST_PAGE_MULTIPLIER", "2")),
            cursor_multiplier=int(os.getenv("FEED_CURSOR_MULTIPLIER", "3")),
            source_timeout_seconds=float(os.getenv("FEED_SOURCE_TIMEOUT_SECONDS", "5.0")),
            read_retries=int(os.getenv("FEED_READ_RETRIES", "2")),
            retry_delay_ms=int(os.getenv("FEED_RETRY_DELAY_MS", "50")),
        )


@dataclass(frozen=True)
class RateLimitConfig:
    """Message rate limiting configuration.

    Attributes:
        enabled: Whether message posting is rate limited
        message_max_requests: Messages allowed per window and author
        message_window_ms: Window length in milliseconds
    """

    enabled: bool = True
    message_max_requests: int = 3
    message_window_ms: int = 5000

    @classmethod
    def from_env(cls) -> RateLimitConfig:
        """Load configuration from environment variables."""
        return cls(
            enabled=os.getenv("RATE_LIMIT_ENABLED", "true").lower() == "true",
            message_max_requests=int(os.getenv("RATE_LIMIT_MESSAGES", "3")),
            message_window_ms=int(os.getenv("RATE_LIMIT_WINDOW_MS", "5000")),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class ServerConfig:
    """All RoomHub configuration sections.

    Attributes:
        storage: Store backend configuration
        feed: Activity feed configuration
        rate_limit: Rate limiting configuration
        observability: Logging configuration
    """

    storage: StorageConfig = field(default_factory=StorageConfig)
    feed: FeedConfig = field(default_factory=FeedConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Returns:
            A validated ServerConfig.

        Raises:
            ValueError: A variable is malformed or out of range.
        """
        config = cls(
            storage=StorageConfig.from_env(),
            feed=FeedConfig.from_env(),
            rate_limit=RateLimitConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Check limits and cross-section consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.feed.max_limit < 1:
            raise ValueError("FEED_MAX_LIMIT must be at least 1")
        if not 1 <= self.feed.default_limit <= self.feed.max_limit:
            raise ValueError("FEED_DEFAULT_LIMIT must be between 1 and FEED_MAX_LIMIT")
        if self.feed.first_page_multiplier < 1 or self.feed.cursor_multiplier < 1:
            raise ValueError("Feed over-fetch multipliers must be at least 1")
        if self.feed.source_timeout_seconds <= 0:
            raise ValueError("FEED_SOURCE_TIMEOUT_SECONDS must be positive")
        if self.feed.read_retries < 0:
            raise ValueError("FEED_READ_RETRIES cannot be negative")

        if self.rate_limit.message_max_requests < 1 or self.rate_limit.message_window_ms < 1:
            raise ValueError("Rate limit window and request count must be positive")

        if self.observability.log_format not in ("json", "text"):
            raise ValueError(
                f"Invalid LOG_FORMAT '{self.observability.log_format}'. Must be one of: json, text"
            )

        if self.storage.backend == StoreBackend.SQLITE:
            if not self.storage.tenant_id:
                raise ValueError("ROOMHUB_TENANT_ID is required when STORE_BACKEND=sqlite")
            if not os.path.exists(self.storage.data_dir):
                logger.warning(
                    f"Data directory does not exist: {self.storage.data_dir}. "
                    "It will be created on startup."
                )

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "RoomHub configuration loaded",
            extra={
                "store_backend": self.storage.backend.value,
                "data_dir": self.storage.data_dir
                if self.storage.backend == StoreBackend.SQLITE
                else None,
                "tenant_id": self.storage.tenant_id,
                "feed_default_limit": self.feed.default_limit,
                "feed_max_limit": self.feed.max_limit,
                "rate_limit_enabled": self.rate_limit.enabled,
                "log_level": self.observability.log_level,
            },
        )
