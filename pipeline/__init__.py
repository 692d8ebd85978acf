"""
Persona - Messaging Pipeline

Outbound publication of committed person events and inbound translation of
external events into commands.
"""
from pipeline.event_bus import (
    EventBusConfig,
    IEventPublisher,
    InMemoryEventBus,
    RedisEventBus,
    StreamTopic,
    publish_with_retry,
    topic_for,
)
from pipeline.translation import ExternalEvent, ExternalEventTranslator

__all__ = [
    "EventBusConfig",
    "IEventPublisher",
    "InMemoryEventBus",
    "RedisEventBus",
    "StreamTopic",
    "publish_with_retry",
    "topic_for",
    "ExternalEvent",
    "ExternalEventTranslator",
]
