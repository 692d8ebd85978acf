"""
Persona - Structured Logging with Trace Context

Integrates structlog with OpenTelemetry trace context so that every log
line written while a command is being processed carries the trace and span
ids of that command, plus any correlation ids bound with ``bind_context``.

Features:
- Structured JSON logging for log aggregation, or coloured console output
- Automatic trace context injection (trace_id, span_id)
- Per-command context via contextvars (person_id, correlation_id, ...)

Usage:
    from observability.logging import setup_logging, get_logger, bind_context

    setup_logging(LoggingConfig(level="INFO", json_format=True))

    logger = get_logger(__name__)
    bind_context(person_id="p-1", correlation_id="c-9")
    logger.info("Command accepted", command_type="RecordAttribute")
"""
from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, List, Optional

import structlog
from opentelemetry import trace
from structlog.types import EventDict, WrappedLogger

_configured: bool = False


@dataclass
class LoggingConfig:
    """Configuration for structured logging."""

    service_name: str = field(
        default_factory=lambda: os.getenv("SERVICE_NAME", "persona")
    )
    level: str = field(
        default_factory=lambda: os.getenv("LOG_LEVEL", "INFO")
    )
    json_format: bool = field(
        default_factory=lambda: os.getenv("LOG_FORMAT", "json").lower() == "json"
    )
    enable_trace_context: bool = True
    environment: str = field(
        default_factory=lambda: os.getenv("ENVIRONMENT", "development")
    )


def add_trace_context(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Add trace_id and span_id of the current OpenTelemetry span."""
    span = trace.get_current_span()
    if span.is_recording():
        ctx = span.get_span_context()
        if ctx.is_valid:
            event_dict["trace_id"] = format(ctx.trace_id, "032x")
            event_dict["span_id"] = format(ctx.span_id, "016x")
    return event_dict


def add_service_context(
    service_name: str,
    environment: str,
) -> structlog.types.Processor:
    """Create a processor that adds service context to all log events."""

    def processor(
        logger: WrappedLogger,
        method_name: str,
        event_dict: EventDict,
    ) -> EventDict:
        event_dict["service"] = service_name
        event_dict["environment"] = environment
        return event_dict

    return processor


def add_timestamp(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Add ISO8601 timestamp."""
    event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()
    return event_dict


def format_exception(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Render Persona errors with their code and details."""
    exc_info = event_dict.get("exc_info")
    error = exc_info if isinstance(exc_info, BaseException) else None
    if isinstance(exc_info, tuple):
        error = exc_info[1]
    if error is not None and hasattr(error, "error_code"):
        event_dict["error_code"] = error.error_code
        event_dict["error_details"] = error.details()
    return event_dict


def setup_logging(config: Optional[LoggingConfig] = None) -> None:
    """
    Configure structlog and the standard library root logger.

    Safe to call more than once; only the first call has an effect.
    """
    global _configured

    if _configured:
        return

    config = config or LoggingConfig()

    processors: List[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_service_context(config.service_name, config.environment),
        add_timestamp,
    ]

    if config.enable_trace_context:
        processors.append(add_trace_context)

    processors.extend([
        format_exception,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ])

    if config.json_format:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    _configure_stdlib_logging(config)

    _configured = True


def _configure_stdlib_logging(config: LoggingConfig) -> None:
    """Route stdlib ``logging`` records to stdout at the configured level."""
    level = getattr(logging, config.level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(message)s"))

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for existing in root_logger.handlers[:]:
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)

    # Set levels for noisy libraries
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("opentelemetry").setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structlog logger instance, configuring logging on first use.

    Example:
        >>> logger = get_logger(__name__)
        >>> logger.info("Events committed", person_id="p-1", count=1)
    """
    if not _configured:
        setup_logging()

    return structlog.get_logger(name)


def shutdown_logging() -> None:
    """Flush handlers and allow ``setup_logging`` to run again."""
    global _configured

    for handler in logging.getLogger().handlers:
        handler.flush()

    _configured = False


class LogContext:
    """
    Context manager binding contextual information to all logs inside it.

    Example:
        >>> async with LogContext(person_id="p-1", command_type="UpdateName"):
        ...     logger.info("Handling command")
    """

    def __init__(self, **kwargs: Any):
        self.context = kwargs

    def __enter__(self) -> "LogContext":
        structlog.contextvars.bind_contextvars(**self.context)
        return self

    def __exit__(self, *args: Any) -> None:
        structlog.contextvars.unbind_contextvars(*self.context.keys())

    async def __aenter__(self) -> "LogContext":
        return self.__enter__()

    async def __aexit__(self, *args: Any) -> None:
        self.__exit__(*args)


def bind_context(**kwargs: Any) -> None:
    """Bind contextual variables to all subsequent log messages."""
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    """Remove contextual variables from log context."""
    structlog.contextvars.unbind_contextvars(*keys)


def clear_context() -> None:
    """Clear all bound contextual variables."""
    structlog.contextvars.clear_contextvars()


class CommandLogger:
    """Logger specialized for the write path."""

    def __init__(self) -> None:
        self._logger = get_logger("persona.commands")

    def received(self, command_type: str, person_id: str) -> None:
        self._logger.debug(
            "Command received",
            command_type=command_type,
            person_id=person_id,
            component="commands",
        )

    def committed(self, command_type: str, person_id: str, version: int, event_count: int) -> None:
        self._logger.info(
            "Command committed",
            command_type=command_type,
            person_id=person_id,
            version=version,
            event_count=event_count,
            component="commands",
        )

    def rejected(self, command_type: str, person_id: str, error: Exception) -> None:
        self._logger.warning(
            "Command rejected",
            command_type=command_type,
            person_id=person_id,
            error_code=getattr(error, "error_code", type(error).__name__),
            error=str(error),
            component="commands",
        )


class ProjectionLogger:
    """Logger specialized for the read side."""

    def __init__(self, projection_name: str) -> None:
        self._logger = get_logger(f"persona.projections.{projection_name}")
        self.projection_name = projection_name

    def skipped(self, event_type: str, event_id: str, error: Exception) -> None:
        self._logger.error(
            "Projection skipped event",
            projection=self.projection_name,
            event_type=event_type,
            event_id=event_id,
            error=str(error),
            error_type=type(error).__name__,
            component="projection",
        )

    def rebuilt(self, event_count: int, skipped: int) -> None:
        self._logger.info(
            "Projection rebuilt",
            projection=self.projection_name,
            event_count=event_count,
            skipped=skipped,
            component="projection",
        )
