"""
Persona - Resilience Patterns

Retry with exponential backoff for infrastructure calls (event publication,
read-model writes). The wrapped call is re-invoked with the same arguments,
so a retried publish always carries the same event.

All attempts are traced with OpenTelemetry.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Set, Type, TypeVar, ParamSpec

from opentelemetry import trace

from core.errors import ConcurrencyConflict, InvalidStateTransition, NotFound, ValidationError

T = TypeVar("T")
P = ParamSpec("P")

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass
class RetryConfig:
    """Configuration for retry policy."""

    max_attempts: int = 3
    base_delay: float = 0.1
    max_delay: float = 10.0
    exponential_base: float = 2.0
    jitter: bool = True
    retryable_exceptions: Set[Type[Exception]] = field(
        default_factory=lambda: {Exception}
    )
    # Deterministic domain failures never succeed on retry.
    non_retryable_exceptions: Set[Type[Exception]] = field(
        default_factory=lambda: {
            ValidationError,
            NotFound,
            InvalidStateTransition,
            ConcurrencyConflict,
        }
    )

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must be >= 0")


class RetryPolicy:
    """
    Configurable retry policy with exponential backoff.

    Features:
    - Exponential backoff with optional jitter
    - Configurable retryable exceptions
    - Maximum delay cap
    - OpenTelemetry tracing

    Usage:
        policy = RetryPolicy(RetryConfig(max_attempts=5))

        @policy.wrap
        async def publish(event):
            ...

        await policy.call(bus.publish, event)
    """

    def __init__(self, config: Optional[RetryConfig] = None):
        self.config = config or RetryConfig()

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay for given attempt number."""
        delay = min(
            self.config.base_delay * (self.config.exponential_base ** attempt),
            self.config.max_delay
        )

        if self.config.jitter:
            delay *= (0.5 + random.random())

        return delay

    def is_retryable(self, exception: Exception) -> bool:
        """Check if exception should trigger retry."""
        exc_type = type(exception)

        if any(issubclass(exc_type, t) for t in self.config.non_retryable_exceptions):
            return False

        return any(issubclass(exc_type, t) for t in self.config.retryable_exceptions)

    async def call(
        self,
        func: Callable[..., Awaitable[T]],
        *args: Any,
        **kwargs: Any,
    ) -> T:
        """Invoke ``func`` until it succeeds or attempts are exhausted."""
        last_exception: Optional[Exception] = None

        for attempt in range(self.config.max_attempts):
            with tracer.start_as_current_span(
                f"retry.attempt_{attempt}",
            ) as span:
                span.set_attribute("retry.attempt", attempt)
                span.set_attribute("retry.max_attempts", self.config.max_attempts)

                try:
                    return await func(*args, **kwargs)
                except Exception as e:
                    last_exception = e
                    span.set_attribute("retry.exception", type(e).__name__)

                    if not self.is_retryable(e):
                        raise

                    if attempt < self.config.max_attempts - 1:
                        delay = self.calculate_delay(attempt)
                        span.set_attribute("retry.delay_seconds", delay)
                        logger.warning(
                            f"Retry {attempt + 1}/{self.config.max_attempts - 1} "
                            f"for {getattr(func, '__name__', func)} after {delay:.2f}s: {e}"
                        )
                        await asyncio.sleep(delay)

        raise last_exception  # type: ignore

    def wrap(self, func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        """Wrap an async function with retry logic."""

        @functools.wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            return await self.call(func, *args, **kwargs)

        return wrapper
