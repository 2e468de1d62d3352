"""Tests for TimelineConfig."""

from __future__ import annotations

import os
from unittest.mock import patch

import pytest
from timelinecore import LogLevel, TimelineConfig, load_config_from_env


class TestTimelineConfig:
    """Tests for TimelineConfig model."""

    def test_create_default_config(self) -> None:
        """Test creating a TimelineConfig with defaults."""
        config = TimelineConfig()
        assert config.log_level == LogLevel.INFO
        assert config.log_json is False
        assert config.database_url == "sqlite+pysqlite:///:memory:"
        assert config.redis_url is None
        assert config.permission_cache_enabled is False
        assert config.permission_cache_ttl_seconds == 300
        assert config.permission_cache_max_entries == 10_000
        assert config.enforce_kind_rules is False
        assert config.max_depth == 0

    def test_create_custom_config(self) -> None:
        """Test creating a TimelineConfig with custom values."""
        config = TimelineConfig(
            log_level=LogLevel.DEBUG,
            database_url="postgresql+psycopg://app@localhost/timeline",
            redis_url="redis://localhost:6379/0",
            permission_cache_enabled=True,
            slow_check_ms=50,
            enforce_kind_rules=True,
            max_depth=6,
            service_name="timeline-api",
        )
        assert config.log_level == LogLevel.DEBUG
        assert config.database_url.startswith("postgresql+psycopg://")
        assert config.redis_url == "redis://localhost:6379/0"
        assert config.permission_cache_enabled is True
        assert config.slow_check_ms == 50
        assert config.enforce_kind_rules is True
        assert config.max_depth == 6
        assert config.service_name == "timeline-api"

    def test_log_level_from_string(self) -> None:
        """Test creating config with log level as lowercase string."""
        config = TimelineConfig(log_level="debug")
        assert config.log_level == LogLevel.DEBUG

    def test_log_level_invalid(self) -> None:
        """Test creating config with invalid log level."""
        with pytest.raises(ValueError, match="Invalid log level"):
            TimelineConfig(log_level="INVALID")

    def test_redis_url_validation_valid(self) -> None:
        """Test valid Redis URL formats."""
        for url in ("redis://localhost:6379/0", "rediss://localhost:6379/0", "unix:///tmp/redis.sock"):
            config = TimelineConfig(redis_url=url)
            assert config.redis_url == url

    def test_redis_url_validation_invalid(self) -> None:
        """Test invalid Redis URL formats."""
        for url in ("http://localhost:6379", "localhost:6379"):
            with pytest.raises(ValueError, match="Redis URL must start with"):
                TimelineConfig(redis_url=url)

    def test_database_url_requires_scheme(self) -> None:
        """Test a bare path is not accepted as a database URL."""
        with pytest.raises(ValueError, match="SQLAlchemy URL"):
            TimelineConfig(database_url="timeline.db")

    def test_negative_max_depth_rejected(self) -> None:
        """Test max_depth must be >= 0."""
        with pytest.raises(ValueError):
            TimelineConfig(max_depth=-1)

    def test_extra_fields_forbidden(self) -> None:
        """Test that extra fields are forbidden."""
        with pytest.raises(Exception):  # Pydantic validation error
            TimelineConfig(extra_field="value")  # type: ignore[call-arg]


class TestLoadConfigFromEnv:
    """Tests for load_config_from_env function."""

    @patch.dict(os.environ, {}, clear=True)
    def test_load_defaults(self) -> None:
        """Test loading config with no environment variables."""
        config = load_config_from_env()
        assert config.log_level == LogLevel.INFO
        assert config.redis_url is None
        assert config.permission_cache_enabled is False
        assert config.max_depth == 0

    @patch.dict(
        os.environ,
        {
            "LOG_LEVEL": "WARNING",
            "LOG_JSON": "true",
            "DATABASE_URL": "sqlite+pysqlite:///timeline.db",
            "REDIS_URL": "redis://localhost:6379/0",
            "PERMISSION_CACHE_ENABLED": "yes",
            "PERMISSION_CACHE_TTL_SECONDS": "30",
            "PERMISSION_CACHE_MAX_ENTRIES": "500",
            "SLOW_CHECK_MS": "20",
            "SLOW_BATCH_MS": "200",
            "ENFORCE_KIND_RULES": "1",
            "MAX_HIERARCHY_DEPTH": "5",
            "SERVICE_NAME": "timeline-api",
        },
        clear=True,
    )
    def test_load_from_env(self) -> None:
        """Test loading config from environment variables."""
        config = load_config_from_env()
        assert config.log_level == LogLevel.WARNING
        assert config.log_json is True
        assert config.database_url == "sqlite+pysqlite:///timeline.db"
        assert config.redis_url == "redis://localhost:6379/0"
        assert config.permission_cache_enabled is True
        assert config.permission_cache_ttl_seconds == 30
        assert config.permission_cache_max_entries == 500
        assert config.slow_check_ms == 20
        assert config.slow_batch_ms == 200
        assert config.enforce_kind_rules is True
        assert config.max_depth == 5
        assert config.service_name == "timeline-api"

    def test_flag_variants(self) -> None:
        """Test boolean flags accept various true values."""
        for value in ("true", "1", "yes", "on"):
            with patch.dict(os.environ, {"ENFORCE_KIND_RULES": value}, clear=True):
                assert load_config_from_env().enforce_kind_rules is True
        with patch.dict(os.environ, {"ENFORCE_KIND_RULES": "off"}, clear=True):
            assert load_config_from_env().enforce_kind_rules is False
