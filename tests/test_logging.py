"""Tests for timelinecore.logging module."""

from __future__ import annotations

import json
import logging

import pytest

from timelinecore import (
    LogLevel,
    TimelineConfig,
    get_logger,
    mask_metadata,
    redact_secrets,
    safe_log_value,
    safe_preview,
    setup_logging,
)
from timelinecore.models import JobMeta


class TestSafePreview:
    """Tests for safe_preview function."""

    def test_none_value(self) -> None:
        """Test that None returns empty string."""
        assert safe_preview(None) == ""

    def test_string_with_whitespace(self) -> None:
        """Test that whitespace is normalized."""
        assert safe_preview("Led\n\tthe   migration") == "Led the migration"

    def test_string_truncation(self) -> None:
        """Test that long strings are truncated."""
        result = safe_preview("a" * 300, limit=100)
        assert len(result) == 100
        assert result.endswith("…")

    def test_dict_value(self) -> None:
        """Test that metadata dicts are rendered as JSON."""
        result = safe_preview({"title": "Engineer", "skills": ["python"]})
        assert '"title": "Engineer"' in result

    def test_pydantic_model(self) -> None:
        """Test that metadata models are dumped without empty fields."""
        result = safe_preview(JobMeta(title="Engineer"))
        assert '"title": "Engineer"' in result
        assert "null" not in result


class TestMaskMetadata:
    """Tests for mask_metadata function."""

    def test_sensitive_keys_masked_at_any_depth(self) -> None:
        """Test that contact details inside nested metadata are masked."""
        masked = mask_metadata({"title": "Mentor", "contact": {"Email": "a@b.c", "phones": [{"phone": "123"}]}})
        assert masked == {"title": "Mentor", "contact": {"Email": "[REDACTED]", "phones": [{"phone": "[REDACTED]"}]}}

    def test_scalars_unchanged(self) -> None:
        """Test that non-container values pass through."""
        assert mask_metadata("plain") == "plain"


class TestRedactSecrets:
    """Tests for redact_secrets function."""

    def test_password_pattern(self) -> None:
        """Test password redaction."""
        result = redact_secrets('password: "secret123"')
        assert "[REDACTED]" in result
        assert "secret123" not in result

    def test_bearer_token(self) -> None:
        """Test bearer token redaction."""
        assert "[REDACTED]" in redact_secrets("Authorization: Bearer abc123def456")

    def test_no_secrets(self) -> None:
        """Test that normal text is not modified."""
        text = "Node moved: J1 from None to T1"
        assert redact_secrets(text) == text

    def test_custom_replacement(self) -> None:
        """Test custom replacement string."""
        assert "[HIDDEN]" in redact_secrets("password: secret123", replacement="[HIDDEN]")


class TestSafeLogValue:
    """Tests for safe_log_value function."""

    def test_masks_sensitive_keys(self) -> None:
        """Test that sensitive metadata keys never reach the preview."""
        result = safe_log_value({"title": "Engineer", "email": "me@example.com"})
        assert "me@example.com" not in result
        assert "Engineer" in result

    def test_with_redaction(self) -> None:
        """Test that secrets inside metadata are redacted."""
        result = safe_log_value({"description": "api_key: sk-1234567890"}, redact=True)
        assert "[REDACTED]" in result

    def test_truncation(self) -> None:
        """Test that long values are truncated."""
        assert len(safe_log_value("a" * 500, limit=100)) <= 100


class TestSetupLogging:
    """Tests for setup_logging function."""

    def test_setup_with_config(self) -> None:
        """Test logging setup with TimelineConfig."""
        setup_logging(config=TimelineConfig(log_level=LogLevel.DEBUG), json_format=False)
        assert logging.getLogger().level == logging.DEBUG

    def test_sqlalchemy_follows_database_echo(self) -> None:
        """Test SQL echo is controlled by database_echo, not the log level."""
        setup_logging(config=TimelineConfig(log_level=LogLevel.DEBUG, database_echo=False))
        assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING
        setup_logging(config=TimelineConfig(database_echo=True))
        assert logging.getLogger("sqlalchemy.engine").level == logging.INFO

    def test_json_format(self, capsys: pytest.CaptureFixture) -> None:
        """Test JSON output includes bound context ids."""
        setup_logging(config=TimelineConfig(log_level=LogLevel.INFO), json_format=True)

        logger = get_logger("test", request_id="req-1")
        logger.info("Checking access", node_id="J1", subject_id="user-2")

        data = json.loads(capsys.readouterr().err.strip())
        assert data["level"] == "INFO"
        assert data["message"] == "Checking access"
        assert data["logger"] == "test"
        assert data["request_id"] == "req-1"
        assert data["node_id"] == "J1"
        assert data["subject_id"] == "user-2"

    def test_plain_format(self, capsys: pytest.CaptureFixture) -> None:
        """Test plain text format output."""
        setup_logging(config=TimelineConfig(log_level=LogLevel.INFO), json_format=False)

        get_logger("test").info("Test message", node_id="P1")

        output = capsys.readouterr().err.strip()
        assert "INFO" in output
        assert "node_id=P1" in output
        assert "Test message" in output
        assert not output.startswith("{")


class TestTimelineLogger:
    """Tests for the context logger adapter."""

    def test_context_lands_on_record(self, caplog: pytest.LogCaptureFixture) -> None:
        """Test bound ids become record attributes."""
        logger = get_logger("test", request_id="req-9")

        with caplog.at_level(logging.INFO):
            logger.info("Filtering timeline", subject_id="viewer")

        record = caplog.records[-1]
        assert record.request_id == "req-9"
        assert record.subject_id == "viewer"

    def test_bind_returns_new_adapter(self) -> None:
        """Test bind keeps existing ids and adds new ones."""
        base = get_logger("test", request_id="req-1")
        bound = base.bind(node_id="J1")
        assert bound.request_id == "req-1"
        assert bound.node_id == "J1"
        assert base.node_id is None
