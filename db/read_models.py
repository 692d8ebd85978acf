"""
Persona - Read-Model Storage

Keyed storage for materialized projections. Projections never talk to a
store directly; ``services.query_service.ProjectionRunner`` loads the
current model, runs the pure projection and upserts or deletes the result.

Every stored model exposes ``person_id`` plus ``to_dict`` / ``from_dict``
so the PostgreSQL store can keep it as JSONB.
"""
from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar

import asyncpg

from core.errors import ReadModelError

logger = logging.getLogger(__name__)

TModel = TypeVar("TModel")


class IReadModelStore(ABC, Generic[TModel]):
    """Upsert/delete store for one kind of read model."""

    name: str

    @abstractmethod
    async def get(self, key: str) -> Optional[TModel]:
        """Model stored under ``key``, if any."""

    @abstractmethod
    async def upsert(self, key: str, model: TModel) -> None:
        """Insert or replace the model stored under ``key``."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove the model stored under ``key``; missing keys are ignored."""

    @abstractmethod
    async def list(self, person_id: Optional[str] = None) -> List[TModel]:
        """All models, optionally restricted to one person, in key order."""

    @abstractmethod
    async def clear(self) -> None:
        """Drop every model (used before a rebuild)."""


class InMemoryReadModelStore(IReadModelStore[TModel]):
    """Dictionary-backed store."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._models: Dict[str, TModel] = {}

    async def get(self, key: str) -> Optional[TModel]:
        return self._models.get(key)

    async def upsert(self, key: str, model: TModel) -> None:
        self._models[key] = model

    async def delete(self, key: str) -> None:
        self._models.pop(key, None)

    async def list(self, person_id: Optional[str] = None) -> List[TModel]:
        return [
            model
            for key, model in sorted(self._models.items())
            if person_id is None or getattr(model, "person_id", None) == person_id
        ]

    async def clear(self) -> None:
        self._models.clear()

    def __len__(self) -> int:
        return len(self._models)


class PostgresReadModelStore(IReadModelStore[TModel]):
    """
    PostgreSQL-backed store. All read models share one table, partitioned
    by the ``projection`` column.
    """

    def __init__(
        self,
        connection_pool: asyncpg.Pool,
        name: str,
        decoder: Callable[[Dict[str, Any]], TModel],
        table: str = "person_read_models",
    ) -> None:
        self.pool = connection_pool
        self.name = name
        self._decoder = decoder
        self._table = table

    async def initialize(self) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(f"""
                CREATE TABLE IF NOT EXISTS {self._table} (
                    projection VARCHAR(100) NOT NULL,
                    key VARCHAR(300) NOT NULL,
                    person_id VARCHAR(200) NOT NULL,
                    data JSONB NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                    PRIMARY KEY(projection, key)
                )
            """)
            await conn.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{self._table}_person
                ON {self._table}(projection, person_id)
            """)
        logger.info(f"Read-model table {self._table} initialized for {self.name}")

    async def get(self, key: str) -> Optional[TModel]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(f"""
                SELECT data FROM {self._table}
                WHERE projection = $1 AND key = $2
            """, self.name, key)
        return self._decode(row["data"]) if row else None

    async def upsert(self, key: str, model: TModel) -> None:
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(f"""
                    INSERT INTO {self._table} (projection, key, person_id, data, updated_at)
                    VALUES ($1, $2, $3, $4, NOW())
                    ON CONFLICT (projection, key)
                    DO UPDATE SET data = $4, person_id = $3, updated_at = NOW()
                """,
                    self.name,
                    key,
                    getattr(model, "person_id"),
                    json.dumps(model.to_dict()),
                )
        except asyncpg.PostgresError as e:
            raise ReadModelError(f"Failed to upsert {self.name}/{key}: {e}", cause=e) from e

    async def delete(self, key: str) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(f"""
                DELETE FROM {self._table}
                WHERE projection = $1 AND key = $2
            """, self.name, key)

    async def list(self, person_id: Optional[str] = None) -> List[TModel]:
        query = f"SELECT data FROM {self._table} WHERE projection = $1"
        params: List[Any] = [self.name]
        if person_id is not None:
            query += " AND person_id = $2"
            params.append(person_id)
        query += " ORDER BY key ASC"

        async with self.pool.acquire() as conn:
            rows = await conn.fetch(query, *params)
        return [self._decode(row["data"]) for row in rows]

    async def clear(self) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(f"DELETE FROM {self._table} WHERE projection = $1", self.name)

    def _decode(self, data: Any) -> TModel:
        if isinstance(data, (str, bytes)):
            data = json.loads(data)
        return self._decoder(data)
