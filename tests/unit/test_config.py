"""
Unit tests for server configuration.

Tests cover:
- Defaults
- Loading from environment variables
- Validation errors
"""

import pytest

from collab.roomhub_server.config import (
    FeedConfig,
    ObservabilityConfig,
    RateLimitConfig,
    ServerConfig,
    StorageConfig,
    StoreBackend,
)


class TestDefaults:
    """Tests for default configuration."""

    def test_feed_defaults(self):
        """Feed defaults match the documented values."""
        config = FeedConfig()

        assert config.default_limit == 50
        assert config.max_limit == 200
        assert config.first_page_multiplier == 2
        assert config.cursor_multiplier == 3

    def test_rate_limit_defaults(self):
        """Three messages per five seconds."""
        config = RateLimitConfig()

        assert config.enabled
        assert config.message_max_requests == 3
        assert config.message_window_ms == 5000

    def test_defaults_validate(self):
        """The default configuration is valid."""
        ServerConfig().validate()


class TestFromEnv:
    """Tests for environment loading."""

    def test_storage_from_env(self, monkeypatch):
        """Storage settings are read from the environment."""
        monkeypatch.setenv("STORE_BACKEND", "MEMORY")
        monkeypatch.setenv("ROOMHUB_TENANT_ID", "acme")
        monkeypatch.setenv("SQLITE_WAL_MODE", "false")

        config = StorageConfig.from_env()

        assert config.backend == StoreBackend.MEMORY
        assert config.tenant_id == "acme"
        assert not config.wal_mode

    def test_invalid_backend(self, monkeypatch):
        """Unknown backends are rejected."""
        monkeypatch.setenv("STORE_BACKEND", "postgres")

        with pytest.raises(ValueError, match="STORE_BACKEND"):
            StorageConfig.from_env()

    def test_feed_and_rate_limit_from_env(self, monkeypatch):
        """Feed and rate limit settings are read from the environment."""
        monkeypatch.setenv("FEED_DEFAULT_LIMIT", "20")
        monkeypatch.setenv("FEED_MAX_LIMIT", "80")
        monkeypatch.setenv("RATE_LIMIT_ENABLED", "false")
        monkeypatch.setenv("RATE_LIMIT_MESSAGES", "10")

        feed = FeedConfig.from_env()
        rate_limit = RateLimitConfig.from_env()

        assert feed.default_limit == 20
        assert feed.max_limit == 80
        assert not rate_limit.enabled
        assert rate_limit.message_max_requests == 10

    def test_server_config_from_env(self, monkeypatch, tmp_path):
        """ServerConfig.from_env loads and validates every section."""
        monkeypatch.setenv("STORE_BACKEND", "sqlite")
        monkeypatch.setenv("ROOMHUB_DATA_DIR", str(tmp_path))
        monkeypatch.setenv("LOG_FORMAT", "text")

        config = ServerConfig.from_env()

        assert config.storage.data_dir == str(tmp_path)
        assert config.observability.log_format == "text"

    def test_server_config_rejects_bad_env(self, monkeypatch):
        """Invalid values abort loading."""
        monkeypatch.setenv("STORE_BACKEND", "memory")
        monkeypatch.setenv("FEED_DEFAULT_LIMIT", "500")
        monkeypatch.setenv("FEED_MAX_LIMIT", "200")

        with pytest.raises(ValueError, match="FEED_DEFAULT_LIMIT"):
            ServerConfig.from_env()


class TestValidate:
    """Tests for ServerConfig.validate."""

    def test_zero_max_limit(self):
        """max_limit must be positive."""
        config = ServerConfig(feed=FeedConfig(default_limit=1, max_limit=0))

        with pytest.raises(ValueError):
            config.validate()

    def test_bad_multiplier(self):
        """Over-fetch multipliers must be at least 1."""
        config = ServerConfig(feed=FeedConfig(cursor_multiplier=0))

        with pytest.raises(ValueError):
            config.validate()

    def test_bad_timeout(self):
        """Source timeouts must be positive."""
        config = ServerConfig(feed=FeedConfig(source_timeout_seconds=0))

        with pytest.raises(ValueError):
            config.validate()

    def test_bad_rate_limit(self):
        """Rate limit window must be positive."""
        config = ServerConfig(rate_limit=RateLimitConfig(message_window_ms=0))

        with pytest.raises(ValueError):
            config.validate()

    def test_bad_log_format(self):
        """Only json and text log formats exist."""
        config = ServerConfig(observability=ObservabilityConfig(log_format="xml"))

        with pytest.raises(ValueError, match="LOG_FORMAT"):
            config.validate()

    def test_missing_tenant_for_sqlite(self):
        """SQLite needs a tenant id."""
        config = ServerConfig(storage=StorageConfig(tenant_id=""))

        with pytest.raises(ValueError, match="ROOMHUB_TENANT_ID"):
            config.validate()
