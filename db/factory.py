"""
Persona - Store Factory

Builds the event store selected by ``EventStoreConfig.backend``.

Usage:
    store = await create_event_store()          # from the environment
    store = await create_event_store(config, pool=existing_pool)
"""
from __future__ import annotations

import logging
from typing import Optional

import asyncpg

from config import Config, StoreBackend, get_config
from core.errors import EventStoreError
from db.event_store import (
    IEventStore,
    InMemoryEventStore,
    PostgresEventStore,
    UpcasterRegistry,
)

logger = logging.getLogger(__name__)


async def create_pool(config: Optional[Config] = None) -> asyncpg.Pool:
    """Open an asyncpg pool with the configured connection settings."""
    config = config or get_config()
    database = config.database
    try:
        return await asyncpg.create_pool(
            host=database.postgres_host,
            port=database.postgres_port,
            user=database.postgres_user,
            password=database.postgres_password,
            database=database.postgres_database,
            min_size=database.pool_min_size,
            max_size=database.pool_max_size,
        )
    except (OSError, asyncpg.PostgresError) as e:
        raise EventStoreError(
            f"Could not connect to PostgreSQL at {database.postgres_host}:{database.postgres_port}",
            cause=e,
        ) from e


async def create_event_store(
    config: Optional[Config] = None,
    pool: Optional[asyncpg.Pool] = None,
    upcasters: Optional[UpcasterRegistry] = None,
) -> IEventStore:
    """
    Event store for the configured backend, ready for use.

    A PostgreSQL store gets its tables created; pass ``pool`` to share an
    existing connection pool instead of opening a new one.
    """
    config = config or get_config()
    backend = config.event_store.backend

    if backend is StoreBackend.MEMORY:
        logger.info("Using in-memory event store")
        return InMemoryEventStore(upcasters=upcasters)

    pool = pool or await create_pool(config)
    store = PostgresEventStore(pool, upcasters=upcasters)
    await store.initialize()
    logger.info(
        f"Using PostgreSQL event store ({config.database.postgres_host}/"
        f"{config.database.postgres_database})"
    )
    return store
