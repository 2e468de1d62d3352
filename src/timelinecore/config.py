"""Configuration contract for timelinecore.

Pydantic-validated settings for the hierarchy store, policy store, resolver
and the optional permission cache. Callers construct a TimelineConfig directly
or load one from the environment with load_config_from_env(); nothing else in
the package reads os.environ.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator


class LogLevel(str, Enum):
    """Standard log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class TimelineConfig(BaseModel):
    """Settings for a timelinecore deployment.

    The defaults give a self-contained in-memory SQLite database with no
    cache, which is what the test-suite and local tooling use.
    """

    # Logging
    log_level: LogLevel = Field(
        default=LogLevel.INFO,
        description="Logging level",
    )
    log_json: bool = Field(
        default=False,
        description="Use JSON log format (default: plain text)",
    )

    # Storage
    database_url: str = Field(
        default="sqlite+pysqlite:///:memory:",
        description="SQLAlchemy database URL for nodes, closure, policies and organizations",
    )
    database_echo: bool = Field(
        default=False,
        description="Echo SQL statements (debugging only)",
    )

    # Permission cache
    redis_url: Optional[str] = Field(
        default=None,
        description="Redis URL for the shared permission cache (e.g., redis://localhost:6379/0)",
    )
    permission_cache_enabled: bool = Field(
        default=False,
        description="Cache resolver decisions. Writes invalidate synchronously.",
    )
    permission_cache_ttl_seconds: int = Field(
        default=300,
        ge=1,
        description="Upper bound on how long a cached decision may live",
    )
    permission_cache_max_entries: int = Field(
        default=10_000,
        ge=1,
        description="Maximum decisions held by the in-process cache",
    )

    # Latency budgets (logged as warnings when exceeded)
    slow_check_ms: int = Field(
        default=100,
        ge=0,
        description="Single permission check budget in milliseconds",
    )
    slow_batch_ms: int = Field(
        default=500,
        ge=0,
        description="Batch filter budget in milliseconds",
    )

    # Hierarchy rules
    enforce_kind_rules: bool = Field(
        default=False,
        description="Restrict which node kinds may be children of which",
    )
    max_depth: int = Field(
        default=0,
        ge=0,
        description="Maximum nesting depth below a root (0 = unlimited)",
    )

    service_name: Optional[str] = Field(
        default=None,
        description="Service name for log identification",
    )

    @field_validator("redis_url")
    @classmethod
    def validate_redis_url(cls, v: Optional[str]) -> Optional[str]:
        """Validate Redis URL format."""
        if v is None:
            return v
        if not v.startswith(("redis://", "rediss://", "unix://")):
            raise ValueError("Redis URL must start with redis://, rediss://, or unix://")
        return v

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: str) -> str:
        """Require a SQLAlchemy-style URL with a scheme."""
        if "://" not in v:
            raise ValueError("Database URL must be a SQLAlchemy URL (e.g. postgresql+psycopg://...)")
        return v

    @field_validator("log_level", mode="before")
    @classmethod
    def validate_log_level(cls, v: str | LogLevel) -> LogLevel:
        """Convert string to LogLevel enum."""
        if isinstance(v, LogLevel):
            return v
        if isinstance(v, str):
            try:
                return LogLevel[v.upper()]
            except KeyError:
                raise ValueError(f"Invalid log level: {v}. Must be one of {[e.value for e in LogLevel]}")
        raise ValueError(f"Log level must be string or LogLevel enum, got {type(v)}")

    model_config = {
        "use_enum_values": True,
        "extra": "forbid",
    }


def _env_flag(value: str) -> bool:
    return value.lower() in ("true", "1", "yes", "on")


def load_config_from_env() -> TimelineConfig:
    """Load configuration from environment variables.

    Environment variables:
    - LOG_LEVEL: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    - LOG_JSON: Use JSON log format (true/false, default: false)
    - DATABASE_URL: SQLAlchemy database URL
    - DATABASE_ECHO: Echo SQL (true/false)
    - REDIS_URL: Redis URL for the permission cache
    - PERMISSION_CACHE_ENABLED: Enable decision caching (true/false)
    - PERMISSION_CACHE_TTL_SECONDS: Cache entry lifetime
    - PERMISSION_CACHE_MAX_ENTRIES: In-process cache size bound
    - SLOW_CHECK_MS: Single check latency budget
    - SLOW_BATCH_MS: Batch filter latency budget
    - ENFORCE_KIND_RULES: Restrict parent/child node kinds (true/false)
    - MAX_HIERARCHY_DEPTH: Maximum nesting depth (0 = unlimited)
    - SERVICE_NAME: Service name for logging

    Returns:
        TimelineConfig instance with values from environment or defaults.
    """
    import os

    return TimelineConfig(
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        log_json=_env_flag(os.getenv("LOG_JSON", "false")),
        database_url=os.getenv("DATABASE_URL", "sqlite+pysqlite:///:memory:"),
        database_echo=_env_flag(os.getenv("DATABASE_ECHO", "false")),
        redis_url=os.getenv("REDIS_URL"),
        permission_cache_enabled=_env_flag(os.getenv("PERMISSION_CACHE_ENABLED", "false")),
        permission_cache_ttl_seconds=int(os.getenv("PERMISSION_CACHE_TTL_SECONDS", "300")),
        permission_cache_max_entries=int(os.getenv("PERMISSION_CACHE_MAX_ENTRIES", "10000")),
        slow_check_ms=int(os.getenv("SLOW_CHECK_MS", "100")),
        slow_batch_ms=int(os.getenv("SLOW_BATCH_MS", "500")),
        enforce_kind_rules=_env_flag(os.getenv("ENFORCE_KIND_RULES", "false")),
        max_depth=int(os.getenv("MAX_HIERARCHY_DEPTH", "0")),
        service_name=os.getenv("SERVICE_NAME"),
    )


__all__ = [
    "LogLevel",
    "TimelineConfig",
    "load_config_from_env",
]
