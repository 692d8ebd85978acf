"""
Persona - Core Module

Foundational components shared by every layer:
- Unified error handling (domain and infrastructure error taxonomy)
- Resilience patterns (retry with backoff for infrastructure calls)

Usage:
    from core import ValidationError, ConcurrencyConflict, RetryPolicy
"""

from core.errors import (
    PersonaError,
    ErrorContext,
    ErrorSeverity,
    ValidationError,
    NotFound,
    InvalidStateTransition,
    ConcurrencyConflict,
    IdentityMismatch,
    EventStoreError,
    UpcastingError,
    ReadModelError,
    PublishError,
)
from core.resilience import RetryConfig, RetryPolicy

__all__ = [
    "PersonaError",
    "ErrorContext",
    "ErrorSeverity",
    "ValidationError",
    "NotFound",
    "InvalidStateTransition",
    "ConcurrencyConflict",
    "IdentityMismatch",
    "EventStoreError",
    "UpcastingError",
    "ReadModelError",
    "PublishError",
    "RetryConfig",
    "RetryPolicy",
]
