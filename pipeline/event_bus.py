"""
Persona - Event Bus

Hands committed person events to other interested subsystems. The write
path only needs ``publish(event)``; read-side projections and external
integrations register handlers with ``subscribe``.

Delivery is at-least-once: a publish that times out is retried with the
same event, so consumers must be idempotent by event id. Both buses here
drop events whose id they have already delivered.

Implementations:
    - InMemoryEventBus: in-process fan-out, used in tests and single-node runs
    - RedisEventBus: Redis Streams (XADD / XREADGROUP) with consumer groups
"""
from __future__ import annotations

import asyncio
import inspect
import json
import logging
import uuid
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import redis.asyncio as aioredis
from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError

from config import get_config
from core.errors import PublishError
from core.resilience import RetryConfig, RetryPolicy
from domain.events import EventType, PersonEvent, deserialize_event

logger = logging.getLogger(__name__)

EventHandler = Callable[[PersonEvent], Union[None, Awaitable[None]]]
Unsubscribe = Callable[[], None]


# =============================================================================
# STREAM TOPICS
# =============================================================================


class StreamTopic(str, Enum):
    """Redis streams person events are published to."""
    LIFECYCLE = "stream:person:lifecycle"
    ATTRIBUTES = "stream:person:attributes"


_ATTRIBUTE_EVENTS = frozenset({
    EventType.ATTRIBUTE_RECORDED.value,
    EventType.ATTRIBUTE_UPDATED.value,
    EventType.ATTRIBUTE_INVALIDATED.value,
})


def topic_for(event: PersonEvent) -> StreamTopic:
    """Attribute events go to their own stream; everything else is lifecycle."""
    if event.event_type in _ATTRIBUTE_EVENTS:
        return StreamTopic.ATTRIBUTES
    return StreamTopic.LIFECYCLE


# =============================================================================
# INTERFACE
# =============================================================================


class IEventPublisher(ABC):
    """Publication contract of the write path."""

    @abstractmethod
    async def publish(self, event: PersonEvent) -> None:
        """
        Deliver one committed event.

        Raises:
            PublishError: Transient delivery failure; retry with the same event
        """

    @abstractmethod
    def subscribe(self, handler: EventHandler) -> Unsubscribe:
        """Register a handler for every delivered event."""


async def _call_handler(handler: EventHandler, event: PersonEvent) -> None:
    result = handler(event)
    if inspect.isawaitable(result):
        await result


class _SeenEvents:
    """Bounded memory of delivered event ids."""

    def __init__(self, capacity: int = 10000) -> None:
        self._capacity = capacity
        self._ids: "OrderedDict[str, None]" = OrderedDict()

    def add(self, event_id: str) -> bool:
        """Record ``event_id``; False if it was already there."""
        if event_id in self._ids:
            return False
        self._ids[event_id] = None
        if len(self._ids) > self._capacity:
            self._ids.popitem(last=False)
        return True


# =============================================================================
# IN-MEMORY BUS
# =============================================================================


class InMemoryEventBus(IEventPublisher):
    """
    In-process fan-out.

    Handlers run in registration order, each event in publish order. A
    failing handler is logged and does not stop the others.
    """

    def __init__(self, dedupe_capacity: int = 10000) -> None:
        self._handlers: List[EventHandler] = []
        self._seen = _SeenEvents(dedupe_capacity)
        self.published: List[PersonEvent] = []

    async def publish(self, event: PersonEvent) -> None:
        if not self._seen.add(str(event.event_id)):
            logger.debug(f"Dropping duplicate event {event.event_id}")
            return

        self.published.append(event)
        for handler in list(self._handlers):
            try:
                await _call_handler(handler, event)
            except Exception as e:
                logger.error(
                    f"Handler {getattr(handler, '__name__', handler)} failed on "
                    f"{event.event_type} {event.event_id}: {e}"
                )

    def subscribe(self, handler: EventHandler) -> Unsubscribe:
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe


# =============================================================================
# REDIS STREAMS BUS
# =============================================================================


@dataclass
class EventBusConfig:
    """Configuration for the Redis event bus."""
    redis_url: str = field(default_factory=lambda: get_config().database.redis_url)
    max_connections: int = 20

    # Stream settings
    max_stream_length: int = 100000
    block_timeout_ms: int = 5000
    batch_size: int = 10

    # Consumer group settings
    group_name: str = "persona-projections"
    consumer_prefix: str = "persona"


def encode_message(event: PersonEvent) -> Dict[str, str]:
    """Flat string fields for XADD; ``event_id`` is kept at top level for consumers."""
    return {
        "event_id": str(event.event_id),
        "event_type": event.event_type,
        "person_id": event.person_id,
        "version": str(event.version),
        "data": json.dumps(event.to_dict()),
    }


def decode_message(fields: Dict[str, Any]) -> PersonEvent:
    return deserialize_event(json.loads(fields["data"]))


class RedisEventBus(IEventPublisher):
    """
    Redis Streams-based event bus.

    ``publish`` appends to the event's topic stream. Handlers registered
    with ``subscribe`` are fed by ``consume``, which reads every topic as a
    member of a consumer group and acknowledges each message once all
    handlers have seen it.
    """

    def __init__(self, config: Optional[EventBusConfig] = None, redis: Optional[Redis] = None):
        self.config = config or EventBusConfig()
        self._redis: Optional[Redis] = redis
        self._initialized = redis is not None
        self._consumer_id = f"{self.config.consumer_prefix}-{uuid.uuid4().hex[:8]}"
        self._handlers: List[EventHandler] = []
        self._seen = _SeenEvents()
        self._shutdown_event = asyncio.Event()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def initialize(self) -> None:
        """Open the Redis connection."""
        if self._initialized:
            return

        logger.info(f"Initializing event bus with consumer ID: {self._consumer_id}")

        try:
            self._redis = aioredis.from_url(
                self.config.redis_url,
                max_connections=self.config.max_connections,
                decode_responses=True,
            )
            await self._redis.ping()
            self._initialized = True
        except RedisConnectionError as e:
            raise PublishError(f"Failed to connect to Redis: {e}", cause=e) from e

    async def shutdown(self) -> None:
        """Stop consuming and close the connection."""
        self._shutdown_event.set()
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
        self._initialized = False
        logger.info("Event bus shutdown complete")

    def _ensure_initialized(self) -> Redis:
        if not self._initialized or self._redis is None:
            raise RuntimeError("Event bus not initialized. Call initialize() first.")
        return self._redis

    # -------------------------------------------------------------------------
    # Publishing
    # -------------------------------------------------------------------------

    async def publish(self, event: PersonEvent) -> None:
        redis = self._ensure_initialized()
        stream_name = topic_for(event).value

        try:
            message_id = await redis.xadd(
                stream_name,
                encode_message(event),
                maxlen=self.config.max_stream_length,
                approximate=True,
            )
        except RedisConnectionError as e:
            raise PublishError(
                f"Redis connection error publishing to {stream_name}: {e}",
                event_id=str(event.event_id),
                cause=e,
            ) from e
        except ResponseError as e:
            raise PublishError(
                f"Redis error publishing to {stream_name}: {e}",
                event_id=str(event.event_id),
                cause=e,
            ) from e
        except asyncio.TimeoutError as e:
            raise PublishError(
                f"Timeout publishing to {stream_name}", event_id=str(event.event_id), cause=e
            ) from e

        logger.debug(
            f"Published {event.event_type} {event.event_id} to {stream_name} as {message_id}"
        )

    def subscribe(self, handler: EventHandler) -> Unsubscribe:
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    # -------------------------------------------------------------------------
    # Consuming
    # -------------------------------------------------------------------------

    async def ensure_consumer_groups(self) -> None:
        redis = self._ensure_initialized()
        for topic in StreamTopic:
            try:
                await redis.xgroup_create(topic.value, self.config.group_name, id="0", mkstream=True)
            except ResponseError as e:
                if "BUSYGROUP" not in str(e):
                    raise

    async def consume_once(self) -> int:
        """Read and dispatch one batch; returns the number of messages handled."""
        redis = self._ensure_initialized()
        messages = await redis.xreadgroup(
            groupname=self.config.group_name,
            consumername=self._consumer_id,
            streams={topic.value: ">" for topic in StreamTopic},
            count=self.config.batch_size,
            block=self.config.block_timeout_ms,
        )

        handled = 0
        for stream, entries in messages or []:
            for message_id, fields in entries:
                await self._dispatch(fields)
                await redis.xack(stream, self.config.group_name, message_id)
                handled += 1
        return handled

    async def consume(self) -> None:
        """Dispatch messages to subscribers until ``shutdown``."""
        await self.ensure_consumer_groups()
        while not self._shutdown_event.is_set():
            try:
                await self.consume_once()
            except asyncio.CancelledError:
                break
            except RedisConnectionError as e:
                logger.error(f"Redis connection lost while consuming: {e}")
                await asyncio.sleep(1)

    async def _dispatch(self, fields: Dict[str, Any]) -> None:
        try:
            event = decode_message(fields)
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f"Skipping undecodable message {fields.get('event_id')}: {e}")
            return

        if not self._seen.add(str(event.event_id)):
            return

        for handler in list(self._handlers):
            try:
                await _call_handler(handler, event)
            except Exception as e:
                logger.error(f"Handler failed on {event.event_type} {event.event_id}: {e}")


# =============================================================================
# RETRY
# =============================================================================


async def publish_with_retry(
    publisher: IEventPublisher,
    event: PersonEvent,
    attempts: int = 3,
    base_delay: float = 0.1,
) -> None:
    """
    Publish ``event``, retrying transient failures with exponential backoff.

    Every attempt publishes the very same event object.

    Raises:
        PublishError: All attempts failed
    """
    policy = RetryPolicy(
        RetryConfig(
            max_attempts=attempts,
            base_delay=base_delay,
            retryable_exceptions={PublishError, ConnectionError, asyncio.TimeoutError},
        )
    )
    try:
        await policy.call(publisher.publish, event)
    except PublishError:
        raise
    except (ConnectionError, asyncio.TimeoutError) as e:
        raise PublishError(
            f"Failed to publish {event.event_type} {event.event_id} after {attempts} attempts: {e}",
            event_id=str(event.event_id),
            cause=e,
        ) from e
