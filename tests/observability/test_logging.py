"""
Tests for observability/logging.py - Structured Logging.

Covers:
- LoggingConfig environment defaults
- Trace, service and error processors
- Context binding through LogContext and bind_context
- setup_logging idempotence
"""
from unittest.mock import MagicMock, patch

import pytest
import structlog

from core.errors import ValidationError
from observability import logging as persona_logging
from observability.logging import (
    LogContext,
    LoggingConfig,
    add_service_context,
    add_trace_context,
    bind_context,
    clear_context,
    format_exception,
    setup_logging,
    shutdown_logging,
    unbind_context,
)


@pytest.fixture(autouse=True)
def clean_context():
    clear_context()
    yield
    clear_context()


class TestLoggingConfig:
    """Tests for LoggingConfig."""

    def test_defaults_from_environment(self, monkeypatch):
        """Test env variables are read when the config is built."""
        monkeypatch.setenv("LOG_LEVEL", "DEBUG")
        monkeypatch.setenv("LOG_FORMAT", "console")
        monkeypatch.setenv("ENVIRONMENT", "testing")

        config = LoggingConfig()

        assert config.level == "DEBUG"
        assert config.json_format is False
        assert config.environment == "testing"

    def test_json_is_default_format(self, monkeypatch):
        """Test JSON rendering unless told otherwise."""
        monkeypatch.delenv("LOG_FORMAT", raising=False)
        assert LoggingConfig().json_format is True


class TestProcessors:
    """Tests for the custom structlog processors."""

    def test_service_context(self):
        """Test service and environment are stamped on every event."""
        processor = add_service_context("persona", "testing")
        event = processor(None, "info", {"event": "hello"})
        assert event["service"] == "persona"
        assert event["environment"] == "testing"

    def test_trace_context_without_span(self):
        """Test no ids are added outside a recording span."""
        event = add_trace_context(None, "info", {"event": "hello"})
        assert "trace_id" not in event

    def test_trace_context_with_span(self):
        """Test ids of a recording span are formatted as hex."""
        span = MagicMock()
        span.is_recording.return_value = True
        span.get_span_context.return_value = MagicMock(
            is_valid=True, trace_id=0xABC, span_id=0x12
        )
        with patch("observability.logging.trace.get_current_span", return_value=span):
            event = add_trace_context(None, "info", {"event": "hello"})

        assert event["trace_id"] == format(0xABC, "032x")
        assert event["span_id"] == format(0x12, "016x")

    def test_persona_error_details(self):
        """Test Persona errors contribute their code and details."""
        error = ValidationError("legal_name_ref", "must not be empty")
        event = format_exception(None, "error", {"event": "x", "exc_info": error})

        assert event["error_code"] == "VALIDATION_ERROR"
        assert event["error_details"] == {
            "field": "legal_name_ref",
            "reason": "must not be empty",
        }

    def test_foreign_exception_untouched(self):
        """Test other exceptions pass through unchanged."""
        error = KeyError("x")
        event = format_exception(None, "error", {"event": "x", "exc_info": (KeyError, error, None)})
        assert "error_code" not in event


class TestContextBinding:
    """Tests for contextvar-based log context."""

    def test_bind_and_unbind(self):
        """Test bound keys appear and disappear."""
        bind_context(person_id="p-1", correlation_id="c-1")
        assert structlog.contextvars.get_contextvars() == {
            "person_id": "p-1",
            "correlation_id": "c-1",
        }

        unbind_context("correlation_id")
        assert structlog.contextvars.get_contextvars() == {"person_id": "p-1"}

    @pytest.mark.asyncio
    async def test_log_context_is_scoped(self):
        """Test LogContext only binds for the duration of the block."""
        bind_context(request="outer")
        async with LogContext(person_id="p-1"):
            assert structlog.contextvars.get_contextvars()["person_id"] == "p-1"
        assert structlog.contextvars.get_contextvars() == {"request": "outer"}


class TestSetup:
    """Tests for setup_logging."""

    def test_configures_once(self):
        """Test a second call leaves structlog alone until shutdown."""
        shutdown_logging()
        with patch("observability.logging.structlog.configure") as configure, \
                patch("observability.logging._configure_stdlib_logging"):
            setup_logging(LoggingConfig(level="WARNING", json_format=False))
            setup_logging(LoggingConfig(level="DEBUG"))
            assert configure.call_count == 1
            assert persona_logging._configured is True

            shutdown_logging()
            setup_logging(LoggingConfig(level="INFO"))
            assert configure.call_count == 2
        shutdown_logging()
