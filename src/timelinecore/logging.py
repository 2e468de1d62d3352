"""Logging for timelinecore.

This module provides:
- Logging configuration from TimelineConfig
- Bounded, single-line previews of node metadata for log lines
- Redaction of credentials and contact details before anything is emitted
- Structured logging with request/node/subject context
"""

from __future__ import annotations

import json
import logging
import re
from enum import Enum
from typing import Any, Mapping, Optional

from pydantic import BaseModel

from .config import LogLevel, TimelineConfig


# Metadata keys whose values never reach a log line
SENSITIVE_KEYS = frozenset({"password", "secret", "token", "api_key", "apikey", "email", "phone", "address"})

SECRET_PATTERNS = (
    re.compile(r'(?i)\b(?:password|secret|token|api[_-]?key)\b\s*[:=]\s*["\']?[^"\'\s,;]+'),
    re.compile(r'(?i)\bbearer\s+[\w\-.~+/]+=*'),
)

# Record attributes lifted to the top level of formatted output.
CONTEXT_FIELDS = ("request_id", "node_id", "subject_id")

_STANDARD_RECORD_FIELDS = {
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "message", "pathname", "process", "processName", "relativeCreated",
    "thread", "threadName", "exc_info", "exc_text", "stack_info",
    "taskName", *CONTEXT_FIELDS,
}


def _plain(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", exclude_none=True)
    if isinstance(value, Enum):
        return value.value
    return value


def safe_preview(value: Any, limit: int = 240) -> str:
    """One-line preview of ``value`` of at most ``limit`` characters.

    Pydantic models (node metadata, policies) are dumped without empty
    fields; mappings and lists are rendered as JSON with sorted keys.
    """
    value = _plain(value)
    if value is None:
        return ""
    if isinstance(value, (Mapping, list, tuple)):
        text = json.dumps(value, default=str, ensure_ascii=False, sort_keys=True)
    else:
        text = str(value)
    text = " ".join(text.split())
    return text if len(text) <= limit else text[: limit - 1] + "…"


def mask_metadata(value: Any, replacement: str = "[REDACTED]") -> Any:
    """Copy of ``value`` with every ``SENSITIVE_KEYS`` entry replaced, at any depth."""
    value = _plain(value)
    if isinstance(value, Mapping):
        return {
            k: replacement if str(k).lower() in SENSITIVE_KEYS else mask_metadata(v, replacement)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [mask_metadata(v, replacement) for v in value]
    return value


def redact_secrets(text: str, replacement: str = "[REDACTED]") -> str:
    """Replace ``key: value`` credentials and bearer tokens found in free text."""
    if not isinstance(text, str):
        return text
    for pattern in SECRET_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def safe_log_value(value: Any, limit: int = 240, redact: bool = True) -> str:
    """Preview for log lines. All node metadata is logged through this."""
    if not redact:
        return safe_preview(value, limit=limit)
    return redact_secrets(safe_preview(mask_metadata(value), limit=limit))


class TimelineFormatter(logging.Formatter):
    """Formatter that surfaces request/node/subject ids.

    Emits one JSON object per record, or a plain-text line with the ids
    appended as ``key=value`` pairs. Extra record fields are passed through
    ``safe_log_value`` so metadata never lands in logs unbounded.
    """

    def __init__(
        self,
        json_format: bool = True,
        redact_secrets: bool = True,
        *args: Any,
        **kwargs: Any,
    ):
        super().__init__(*args, **kwargs)
        self.json_format = json_format
        self.redact_secrets = redact_secrets

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = {}
        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                context[field] = str(value)
        log_data.update(context)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _STANDARD_RECORD_FIELDS:
                log_data[key] = safe_log_value(value, redact=self.redact_secrets)

        if self.redact_secrets:
            log_data["message"] = redact_secrets(log_data["message"])

        if self.json_format:
            return json.dumps(log_data, default=str, ensure_ascii=False)

        parts = [
            f"[{log_data['timestamp']}]",
            f"{log_data['level']}",
            f"{log_data['logger']}",
        ]
        parts.extend(f"{k}={v}" for k, v in context.items())
        parts.append(f": {log_data['message']}")
        if "exception" in log_data:
            parts.append("\n" + log_data["exception"])
        return " ".join(parts)


class TimelineLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that binds request, node and subject ids.

    Usage:
        logger = get_logger(__name__, request_id=req_id)
        logger.info("Filtering timeline", subject_id=viewer_id)
    """

    def __init__(
        self,
        logger: logging.Logger,
        request_id: Optional[str] = None,
        node_id: Optional[str] = None,
        subject_id: Optional[str] = None,
    ):
        super().__init__(logger, {})
        self.request_id = request_id
        self.node_id = node_id
        self.subject_id = subject_id

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        extra = kwargs.get("extra", {})
        for field in CONTEXT_FIELDS:
            value = kwargs.pop(field, getattr(self, field))
            if value is not None:
                extra[field] = value
        kwargs["extra"] = extra
        return msg, kwargs

    def bind(self, **ids: Optional[str]) -> "TimelineLoggerAdapter":
        """Return a copy of this adapter with additional ids bound."""
        current = {field: getattr(self, field) for field in CONTEXT_FIELDS}
        current.update({k: v for k, v in ids.items() if k in CONTEXT_FIELDS})
        return TimelineLoggerAdapter(self.logger, **current)


def setup_logging(
    config: Optional[TimelineConfig] = None,
    json_format: Optional[bool] = None,
    redact_secrets: bool = True,
) -> None:
    """Configure the root logger for a timelinecore process.

    Args:
        config: TimelineConfig instance (if None, loads from environment)
        json_format: Override ``config.log_json``
        redact_secrets: Whether to redact secrets (default: True)
    """
    if config is None:
        from .config import load_config_from_env
        config = load_config_from_env()

    level_map = {
        LogLevel.DEBUG: logging.DEBUG,
        LogLevel.INFO: logging.INFO,
        LogLevel.WARNING: logging.WARNING,
        LogLevel.ERROR: logging.ERROR,
        LogLevel.CRITICAL: logging.CRITICAL,
    }
    log_level = level_map.get(LogLevel(config.log_level), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(
        TimelineFormatter(
            json_format=config.log_json if json_format is None else json_format,
            redact_secrets=redact_secrets,
        )
    )
    root_logger.addHandler(console_handler)

    # SQLAlchemy engine logging is controlled by database_echo, not LOG_LEVEL
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if config.database_echo else logging.WARNING
    )

    if config.service_name:
        logging.getLogger(config.service_name).setLevel(log_level)


def get_logger(
    name: str,
    request_id: Optional[str] = None,
    node_id: Optional[str] = None,
    subject_id: Optional[str] = None,
) -> TimelineLoggerAdapter:
    """Get a logger adapter with request/node/subject context.

    Example:
        logger = get_logger(__name__, request_id="req-42")
        logger.info("Checking access", node_id=node.id, subject_id=viewer)
    """
    return TimelineLoggerAdapter(
        logging.getLogger(name),
        request_id=request_id,
        node_id=node_id,
        subject_id=subject_id,
    )


__all__ = [
    "safe_preview",
    "redact_secrets",
    "safe_log_value",
    "mask_metadata",
    "TimelineFormatter",
    "TimelineLoggerAdapter",
    "setup_logging",
    "get_logger",
]
