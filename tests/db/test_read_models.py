"""
Tests for db/read_models.py.
"""
import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import asyncpg
import pytest

from core.errors import ReadModelError
from db.read_models import InMemoryReadModelStore, PostgresReadModelStore
from domain.identity import LifecycleStatus
from domain.projections import PersonSummary

AT = datetime(2024, 1, 10, 12, tzinfo=timezone.utc)


def summary(person_id="p-1", name="Alice Smith"):
    return PersonSummary(
        person_id=person_id,
        legal_name_ref=name,
        status=LifecycleStatus.ACTIVE,
        attribute_count=0,
        attribute_keys=(),
        created_at=AT,
        updated_at=AT,
        version=1,
    )


@pytest.fixture
def pool_and_conn():
    conn = MagicMock()
    conn.execute = AsyncMock()
    conn.fetch = AsyncMock(return_value=[])
    conn.fetchrow = AsyncMock(return_value=None)
    pool = MagicMock()
    pool.acquire.return_value.__aenter__ = AsyncMock(return_value=conn)
    pool.acquire.return_value.__aexit__ = AsyncMock(return_value=False)
    return pool, conn


class TestInMemoryReadModelStore:
    """Tests for the dictionary-backed store."""

    @pytest.mark.asyncio
    async def test_upsert_get_delete(self):
        """Test the basic lifecycle of a key."""
        store = InMemoryReadModelStore("person_summary")
        await store.upsert("p-1", summary())

        assert (await store.get("p-1")).legal_name_ref == "Alice Smith"

        await store.upsert("p-1", summary(name="Alice Jones"))
        assert (await store.get("p-1")).legal_name_ref == "Alice Jones"
        assert len(store) == 1

        await store.delete("p-1")
        await store.delete("p-1")
        assert await store.get("p-1") is None

    @pytest.mark.asyncio
    async def test_list_in_key_order(self):
        """Test listing and per-person filtering."""
        store = InMemoryReadModelStore("person_summary")
        await store.upsert("p-2", summary("p-2", "Bob"))
        await store.upsert("p-1", summary("p-1", "Alice"))

        assert [s.person_id for s in await store.list()] == ["p-1", "p-2"]
        assert [s.person_id for s in await store.list(person_id="p-2")] == ["p-2"]

    @pytest.mark.asyncio
    async def test_clear(self):
        """Test clear drops everything."""
        store = InMemoryReadModelStore("person_summary")
        await store.upsert("p-1", summary())
        await store.clear()
        assert await store.list() == []


class TestPostgresReadModelStore:
    """Tests for the JSONB-backed store."""

    @pytest.mark.asyncio
    async def test_upsert_serializes_model(self, pool_and_conn):
        """Test models are stored as JSON under projection and key."""
        pool, conn = pool_and_conn
        store = PostgresReadModelStore(pool, "person_summary", PersonSummary.from_dict)

        await store.upsert("p-1", summary())

        query, name, key, person_id, data = conn.execute.call_args.args
        assert "ON CONFLICT (projection, key)" in query
        assert (name, key, person_id) == ("person_summary", "p-1", "p-1")
        assert json.loads(data)["legal_name_ref"] == "Alice Smith"

    @pytest.mark.asyncio
    async def test_get_decodes(self, pool_and_conn):
        """Test JSON text is decoded through the model decoder."""
        pool, conn = pool_and_conn
        conn.fetchrow.return_value = {"data": json.dumps(summary().to_dict())}
        store = PostgresReadModelStore(pool, "person_summary", PersonSummary.from_dict)

        assert await store.get("p-1") == summary()

    @pytest.mark.asyncio
    async def test_get_missing(self, pool_and_conn):
        """Test a missing row is None."""
        pool, _ = pool_and_conn
        store = PostgresReadModelStore(pool, "person_summary", PersonSummary.from_dict)
        assert await store.get("p-1") is None

    @pytest.mark.asyncio
    async def test_list_by_person(self, pool_and_conn):
        """Test the person filter is pushed into SQL."""
        pool, conn = pool_and_conn
        conn.fetch.return_value = [{"data": summary().to_dict()}]
        store = PostgresReadModelStore(pool, "person_summary", PersonSummary.from_dict)

        models = await store.list(person_id="p-1")

        assert models == [summary()]
        query, *params = conn.fetch.call_args.args
        assert "person_id = $2" in query
        assert params == ["person_summary", "p-1"]

    @pytest.mark.asyncio
    async def test_upsert_error_wrapped(self, pool_and_conn):
        """Test database errors become ReadModelError."""
        pool, conn = pool_and_conn
        conn.execute.side_effect = asyncpg.PostgresError("boom")
        store = PostgresReadModelStore(pool, "person_summary", PersonSummary.from_dict)

        with pytest.raises(ReadModelError):
            await store.upsert("p-1", summary())

    @pytest.mark.asyncio
    async def test_clear_scoped_to_projection(self, pool_and_conn):
        """Test clear only deletes this projection's rows."""
        pool, conn = pool_and_conn
        store = PostgresReadModelStore(pool, "timeline", PersonSummary.from_dict)

        await store.clear()

        assert conn.execute.call_args.args[1] == "timeline"
