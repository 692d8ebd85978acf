"""
Persona - Unified Error Handling

Error hierarchy shared by the pure domain core and the infrastructure
wrappers around it.

Features:
- Hierarchical exception classes with context preservation
- Error severity levels for prioritized handling
- Structured error context for debugging
- OpenTelemetry integration for error tracing

Validation, lookup and lifecycle errors are raised synchronously by the
pure command handler before any event exists. Concurrency conflicts are
raised at the event store boundary and are always surfaced to the caller.
"""

from __future__ import annotations

import traceback
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode


class ErrorSeverity(Enum):
    """Error severity levels for prioritized handling."""

    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


@dataclass
class ErrorContext:
    """Structured context for error debugging and tracing."""

    operation: str
    component: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    trace_id: Optional[str] = None
    span_id: Optional[str] = None
    person_id: Optional[str] = None
    command_type: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    stack_trace: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert context to dictionary for serialization."""
        return {
            "operation": self.operation,
            "component": self.component,
            "timestamp": self.timestamp.isoformat(),
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "person_id": self.person_id,
            "command_type": self.command_type,
            "metadata": self.metadata,
            "stack_trace": self.stack_trace,
        }

    @classmethod
    def from_current_span(
        cls,
        operation: str,
        component: str,
        **kwargs: Any
    ) -> "ErrorContext":
        """Create context from current OpenTelemetry span."""
        span = trace.get_current_span()
        trace_id = None
        span_id = None

        if span and span.is_recording():
            ctx = span.get_span_context()
            if ctx.is_valid:
                trace_id = format(ctx.trace_id, "032x")
                span_id = format(ctx.span_id, "016x")

        return cls(
            operation=operation,
            component=component,
            trace_id=trace_id,
            span_id=span_id,
            stack_trace=traceback.format_exc(),
            **kwargs
        )


class PersonaError(Exception):
    """
    Base exception for all Persona errors.

    Provides:
    - Structured error context
    - Severity level
    - Chained exception support
    - OpenTelemetry span recording
    """

    default_severity: ErrorSeverity = ErrorSeverity.ERROR
    error_code: str = "PERSONA_ERROR"

    def __init__(
        self,
        message: str,
        context: Optional[ErrorContext] = None,
        severity: Optional[ErrorSeverity] = None,
        cause: Optional[Exception] = None,
        recoverable: bool = False,
    ):
        super().__init__(message)
        self.message = message
        self.context = context
        self.severity = severity or self.default_severity
        self.cause = cause
        self.recoverable = recoverable
        self.timestamp = datetime.now(timezone.utc)

        self._record_to_span()

    def _record_to_span(self) -> None:
        """Record exception to current OpenTelemetry span."""
        span = trace.get_current_span()
        if span and span.is_recording():
            span.set_status(Status(StatusCode.ERROR, self.message))
            span.record_exception(self)
            span.set_attribute("error.code", self.error_code)
            span.set_attribute("error.severity", self.severity.value)
            span.set_attribute("error.recoverable", self.recoverable)
            if self.context:
                span.set_attribute("error.component", self.context.component)
                span.set_attribute("error.operation", self.context.operation)

    def details(self) -> Dict[str, Any]:
        """Error-specific fields, overridden by subclasses."""
        return {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "severity": self.severity.value,
            "recoverable": self.recoverable,
            "details": self.details(),
            "timestamp": self.timestamp.isoformat(),
            "context": self.context.to_dict() if self.context else None,
            "cause": str(self.cause) if self.cause else None,
        }

    def __str__(self) -> str:
        parts = [f"[{self.error_code}] {self.message}"]
        if self.context:
            parts.append(f" (component: {self.context.component})")
        if self.cause:
            parts.append(f" [caused by: {self.cause}]")
        return "".join(parts)

    def with_context(self, **kwargs: Any) -> "PersonaError":
        """Add additional context to the error."""
        if self.context:
            self.context.metadata.update(kwargs)
        else:
            self.context = ErrorContext(
                operation="unknown",
                component="unknown",
                metadata=kwargs
            )
        return self


# =============================================================================
# DOMAIN ERRORS
# =============================================================================


class ValidationError(PersonaError):
    """Malformed or out-of-range command input."""

    error_code = "VALIDATION_ERROR"
    default_severity = ErrorSeverity.WARNING

    def __init__(self, field: str, reason: str, **kwargs: Any):
        super().__init__(f"Invalid {field}: {reason}", **kwargs)
        self.field = field
        self.reason = reason

    def details(self) -> Dict[str, Any]:
        return {"field": self.field, "reason": self.reason}


class NotFound(PersonaError):
    """A command or query targets an unknown person."""

    error_code = "NOT_FOUND"
    default_severity = ErrorSeverity.WARNING

    def __init__(self, person_id: str, **kwargs: Any):
        super().__init__(f"Person {person_id} not found", **kwargs)
        self.person_id = person_id

    def details(self) -> Dict[str, Any]:
        return {"id": self.person_id}


class InvalidStateTransition(PersonaError):
    """Lifecycle guard failure."""

    error_code = "INVALID_STATE_TRANSITION"
    default_severity = ErrorSeverity.WARNING

    def __init__(self, from_state: str, attempted: str, **kwargs: Any):
        super().__init__(
            f"Cannot {attempted} a person in state {from_state}", **kwargs
        )
        self.from_state = from_state
        self.attempted = attempted

    def details(self) -> Dict[str, Any]:
        return {"from": self.from_state, "attempted": self.attempted}


class ConcurrencyConflict(PersonaError):
    """A write carried a stale expected version."""

    error_code = "CONCURRENCY_CONFLICT"
    default_severity = ErrorSeverity.WARNING

    def __init__(
        self,
        expected_version: int,
        actual_version: int,
        person_id: Optional[str] = None,
        **kwargs: Any,
    ):
        target = f" for person {person_id}" if person_id else ""
        super().__init__(
            f"Concurrency conflict{target}: "
            f"expected version {expected_version}, found {actual_version}",
            recoverable=True,
            **kwargs,
        )
        self.expected_version = expected_version
        self.actual_version = actual_version
        self.person_id = person_id

    def details(self) -> Dict[str, Any]:
        return {
            "expected_version": self.expected_version,
            "actual_version": self.actual_version,
        }


class IdentityMismatch(PersonaError):
    """A merge target failed the disambiguation or validation check."""

    error_code = "IDENTITY_MISMATCH"
    default_severity = ErrorSeverity.WARNING

    def __init__(
        self,
        person_id: str,
        target_id: str,
        reason: str,
        score: Optional[float] = None,
        **kwargs: Any,
    ):
        super().__init__(
            f"Cannot merge {person_id} into {target_id}: {reason}", **kwargs
        )
        self.person_id = person_id
        self.target_id = target_id
        self.reason = reason
        self.score = score

    def details(self) -> Dict[str, Any]:
        return {
            "id": self.person_id,
            "target_id": self.target_id,
            "reason": self.reason,
            "score": self.score,
        }


# =============================================================================
# INFRASTRUCTURE ERRORS
# =============================================================================


class EventStoreError(PersonaError):
    """Event log operation errors."""

    error_code = "EVENT_STORE_ERROR"


class UpcastingError(EventStoreError):
    """A stored event could not be brought to the current schema."""

    error_code = "UPCASTING_ERROR"


class ReadModelError(PersonaError):
    """Read-model storage errors."""

    error_code = "READ_MODEL_ERROR"


class PublishError(PersonaError):
    """Publishing an event to the message bus failed."""

    error_code = "PUBLISH_ERROR"

    def __init__(self, message: str, event_id: Optional[str] = None, **kwargs: Any):
        kwargs.setdefault("recoverable", True)
        super().__init__(message, **kwargs)
        self.event_id = event_id
