"""
Persona - Database Layer

Persistence for the write side (event log and snapshots) and the read side
(materialized projections). Every store has an in-memory implementation
for tests and single-process use, and a PostgreSQL one built on asyncpg.
"""
from db.event_store import (
    EventMetadata,
    IEventStore,
    IEventUpcaster,
    InMemoryEventStore,
    PersonCreatedNameUpcaster,
    PostgresEventStore,
    Snapshot,
    StoredEvent,
    UpcasterRegistry,
    default_upcasters,
)
from db.factory import create_event_store, create_pool
from db.read_models import (
    IReadModelStore,
    InMemoryReadModelStore,
    PostgresReadModelStore,
)

__all__ = [
    "EventMetadata",
    "IEventStore",
    "IEventUpcaster",
    "InMemoryEventStore",
    "PersonCreatedNameUpcaster",
    "PostgresEventStore",
    "Snapshot",
    "StoredEvent",
    "UpcasterRegistry",
    "default_upcasters",
    "IReadModelStore",
    "InMemoryReadModelStore",
    "PostgresReadModelStore",
    "create_event_store",
    "create_pool",
]
