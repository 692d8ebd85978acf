"""
Persona - Observability Package

Structured logging with OpenTelemetry trace context. Spans themselves are
created where the work happens (``services``, ``core.resilience``) through
``opentelemetry.trace.get_tracer(__name__)``.

Usage:
    from observability import setup_logging, get_logger

    setup_logging()
    logger = get_logger(__name__)
"""
from observability.logging import (
    CommandLogger,
    LogContext,
    LoggingConfig,
    ProjectionLogger,
    bind_context,
    clear_context,
    get_logger,
    setup_logging,
    shutdown_logging,
    unbind_context,
)

__all__ = [
    "CommandLogger",
    "LogContext",
    "LoggingConfig",
    "ProjectionLogger",
    "bind_context",
    "clear_context",
    "get_logger",
    "setup_logging",
    "shutdown_logging",
    "unbind_context",
]
