"""
Persona - Event Store

The append-only log of person events. Every person has its own stream,
strictly ordered by version; the store also keeps a global position so
that projections can be rebuilt from the whole log.

Features:
    - Optimistic concurrency control via person versions
    - Event schema versioning with automatic upcasting on read
    - Person snapshots for fast rehydration
    - In-memory and PostgreSQL (asyncpg) implementations

Event Sourcing Principles:
    - Events are immutable facts about what happened
    - Current state is derived by replaying events
    - Schema changes are handled through upcasting, never mutation

Usage:
    store = PostgresEventStore(pool, upcasters=default_upcasters())
    await store.initialize()

    await store.append_batch(events, expected_version=person.version)
    history = await store.get_events("p-1")
"""
from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import (
    Any,
    AsyncIterator,
    Dict,
    List,
    Optional,
    Sequence,
    Tuple,
)
from uuid import UUID

import asyncpg

from core.errors import ConcurrencyConflict, EventStoreError, UpcastingError
from domain.events import (
    ENVELOPE_FIELDS,
    EventType,
    PersonEvent,
    current_schema_version,
    deserialize_event,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# STORED RECORDS
# =============================================================================


@dataclass(frozen=True, slots=True)
class EventMetadata:
    """Envelope of a stored event, kept apart from its payload."""
    event_id: UUID
    event_type: str
    person_id: str
    version: int
    occurred_at: datetime
    correlation_id: Optional[str] = None
    causation_id: Optional[str] = None
    schema_version: int = 1
    global_position: Optional[int] = None
    custom: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class StoredEvent:
    """
    An event as held by the store.

    ``payload`` is in the schema version recorded in ``metadata`` until the
    store upcasts it on read.
    """
    metadata: EventMetadata
    payload: Dict[str, Any]
    stored_at: datetime

    @classmethod
    def from_domain_event(cls, event: PersonEvent, global_position: Optional[int] = None) -> "StoredEvent":
        data = event.to_dict()
        payload = {k: v for k, v in data.items() if k not in ENVELOPE_FIELDS}
        return cls(
            metadata=EventMetadata(
                event_id=event.event_id,
                event_type=event.event_type,
                person_id=event.person_id,
                version=event.version,
                occurred_at=event.occurred_at,
                correlation_id=event.correlation_id,
                causation_id=event.causation_id,
                schema_version=current_schema_version(event.event_type),
                global_position=global_position,
                custom=dict(event.metadata),
            ),
            payload=payload,
            stored_at=_utcnow(),
        )

    def to_domain_event(self) -> PersonEvent:
        """
        Convert to a domain event.

        Raises:
            ValueError / KeyError: If the payload does not match its event type
        """
        data = {
            "event_id": self.metadata.event_id,
            "event_type": self.metadata.event_type,
            "person_id": self.metadata.person_id,
            "version": self.metadata.version,
            "occurred_at": self.metadata.occurred_at,
            "correlation_id": self.metadata.correlation_id,
            "causation_id": self.metadata.causation_id,
            "metadata": self.metadata.custom,
            **self.payload,
        }
        return deserialize_event(data)


@dataclass(frozen=True, slots=True)
class Snapshot:
    """
    Serialized person state at a given version.

    Snapshots let a load skip replaying the events up to ``version``.
    """
    person_id: str
    version: int
    state: Dict[str, Any]
    created_at: datetime = field(default_factory=_utcnow)


# =============================================================================
# UPCASTING
# =============================================================================


class IEventUpcaster(ABC):
    """
    Interface for event schema migration (upcasting).

    The upcasting chain transforms a payload through each version:
    v1 -> v2 -> ... -> current
    """

    @property
    @abstractmethod
    def event_type(self) -> str:
        """Event type this upcaster handles."""

    @property
    @abstractmethod
    def from_version(self) -> int:
        """Source schema version."""

    @property
    @abstractmethod
    def to_version(self) -> int:
        """Target schema version."""

    @abstractmethod
    def upcast(self, payload: Dict[str, Any], metadata: EventMetadata) -> Dict[str, Any]:
        """Transform the payload from ``from_version`` to ``to_version``."""


class PersonCreatedNameUpcaster(IEventUpcaster):
    """PersonCreated v1 stored the name as ``name``; v2 calls it ``legal_name_ref``."""

    @property
    def event_type(self) -> str:
        return EventType.PERSON_CREATED.value

    @property
    def from_version(self) -> int:
        return 1

    @property
    def to_version(self) -> int:
        return 2

    def upcast(self, payload: Dict[str, Any], metadata: EventMetadata) -> Dict[str, Any]:
        payload = dict(payload)
        if "legal_name_ref" not in payload:
            payload["legal_name_ref"] = payload.pop("name")
        payload.setdefault("birth_date", None)
        return payload


class UpcasterRegistry:
    """
    Registry for event upcasters.

    Maintains a chain of upcasters for each event type, allowing events
    to be transformed through multiple schema versions.
    """

    def __init__(self) -> None:
        self._upcasters: Dict[str, Dict[int, IEventUpcaster]] = {}
        self._current_versions: Dict[str, int] = {}

    def register(self, upcaster: IEventUpcaster) -> None:
        event_type = upcaster.event_type
        self._upcasters.setdefault(event_type, {})[upcaster.from_version] = upcaster

        current = self._current_versions.get(event_type, 1)
        self._current_versions[event_type] = max(current, upcaster.to_version)

        logger.debug(
            f"Registered upcaster for {event_type} v{upcaster.from_version} -> v{upcaster.to_version}"
        )

    def target_version(self, event_type: str) -> int:
        return self._current_versions.get(event_type, 1)

    def upcast(
        self,
        event_type: str,
        payload: Dict[str, Any],
        metadata: EventMetadata,
    ) -> Tuple[Dict[str, Any], int]:
        """
        Upcast an event payload to the current schema version.

        Returns:
            Tuple of (upcast payload, final version)

        Raises:
            UpcastingError: If a step of the chain is missing or fails
        """
        current_version = metadata.schema_version
        target_version = self.target_version(event_type)

        if current_version >= target_version:
            return payload, current_version

        upcasters = self._upcasters.get(event_type, {})

        while current_version < target_version:
            upcaster = upcasters.get(current_version)
            if upcaster is None:
                raise UpcastingError(
                    f"No upcaster found for {event_type} v{current_version} -> v{current_version + 1}"
                )

            try:
                payload = upcaster.upcast(payload, metadata)
            except Exception as e:
                raise UpcastingError(
                    f"Failed to upcast {event_type} from v{current_version}: {e}", cause=e
                ) from e
            current_version = upcaster.to_version

        return payload, current_version


def default_upcasters() -> UpcasterRegistry:
    """Registry holding every upcaster the person events need."""
    registry = UpcasterRegistry()
    registry.register(PersonCreatedNameUpcaster())
    return registry


# =============================================================================
# INTERFACE
# =============================================================================


class IEventStore(ABC):
    """Append-only, per-person ordered event log."""

    @abstractmethod
    async def append_batch(
        self,
        events: Sequence[PersonEvent],
        expected_version: Optional[int] = None,
    ) -> List[int]:
        """
        Append events of one person atomically.

        Appending a batch whose events are all already stored at the same
        versions is a no-op that returns their positions, so a write that
        timed out after committing can be retried with the same events.

        Args:
            events: Events in version order, all for the same person
            expected_version: Version the person must currently be at

        Returns:
            Global positions of the appended events

        Raises:
            ConcurrencyConflict: The person is not at ``expected_version``,
                or another writer took the same versions
            EventStoreError: The batch is malformed or the write failed
        """

    async def append(self, event: PersonEvent, expected_version: Optional[int] = None) -> int:
        positions = await self.append_batch([event], expected_version=expected_version)
        return positions[0]

    @abstractmethod
    async def get_stored_events(
        self,
        person_id: str,
        from_version: int = 1,
        to_version: Optional[int] = None,
    ) -> List[StoredEvent]:
        """Stored events of one person, upcast, in version order."""

    async def get_events(
        self,
        person_id: str,
        from_version: int = 1,
        to_version: Optional[int] = None,
    ) -> List[PersonEvent]:
        """
        Domain events of one person in version order.

        Raises:
            EventStoreError: A stored event cannot be decoded
        """
        stored = await self.get_stored_events(person_id, from_version, to_version)
        return [_decode(s) for s in stored]

    @abstractmethod
    async def get_version(self, person_id: str) -> int:
        """Current version of a person; 0 if it has no events."""

    @abstractmethod
    def stream_all(self, from_position: int = 0, batch_size: int = 100) -> AsyncIterator[StoredEvent]:
        """Every stored event after ``from_position`` in global order."""

    @abstractmethod
    async def save_snapshot(self, snapshot: Snapshot) -> None:
        """Persist a person snapshot."""

    @abstractmethod
    async def get_latest_snapshot(self, person_id: str) -> Optional[Snapshot]:
        """The most recent snapshot of a person, if any."""


def _decode(stored: StoredEvent) -> PersonEvent:
    try:
        return stored.to_domain_event()
    except (KeyError, TypeError, ValueError) as e:
        raise EventStoreError(
            f"Cannot decode {stored.metadata.event_type} "
            f"{stored.metadata.person_id} v{stored.metadata.version}: {e}",
            cause=e,
        ) from e


def _check_batch(events: Sequence[PersonEvent]) -> str:
    person_ids = {e.person_id for e in events}
    if len(person_ids) > 1:
        raise EventStoreError("Batch append requires all events for the same person")
    first = events[0].version
    for offset, event in enumerate(events):
        if event.version != first + offset:
            raise EventStoreError(
                f"Batch versions must be contiguous, got {[e.version for e in events]}"
            )
    return events[0].person_id


# =============================================================================
# IN-MEMORY IMPLEMENTATION
# =============================================================================


class InMemoryEventStore(IEventStore):
    """
    Process-local event store.

    Payloads are copied through JSON on write so stored history can never
    alias live objects.
    """

    def __init__(self, upcasters: Optional[UpcasterRegistry] = None) -> None:
        self._upcasters = upcasters or default_upcasters()
        self._streams: Dict[str, List[StoredEvent]] = {}
        self._log: List[StoredEvent] = []
        self._event_ids: set = set()
        self._snapshots: Dict[str, Snapshot] = {}
        self._lock = asyncio.Lock()

    async def append_batch(
        self,
        events: Sequence[PersonEvent],
        expected_version: Optional[int] = None,
    ) -> List[int]:
        if not events:
            return []
        person_id = _check_batch(events)

        async with self._lock:
            stream = self._streams.get(person_id, [])
            current_version = len(stream)

            stored_before = [e for e in events if e.event_id in self._event_ids]
            if stored_before:
                if len(stored_before) == len(events) and all(
                    e.version <= current_version
                    and stream[e.version - 1].metadata.event_id == e.event_id
                    for e in events
                ):
                    logger.debug(
                        f"Events for {person_id} up to v{events[-1].version} already stored"
                    )
                    return [stream[e.version - 1].metadata.global_position for e in events]
                raise EventStoreError(
                    f"Events already stored: {[e.event_id for e in stored_before]}"
                )

            if expected_version is not None and current_version != expected_version:
                raise ConcurrencyConflict(expected_version, current_version, person_id=person_id)
            if events[0].version != current_version + 1:
                raise ConcurrencyConflict(events[0].version - 1, current_version, person_id=person_id)

            positions: List[int] = []
            for event in events:
                position = len(self._log) + 1
                stored = StoredEvent.from_domain_event(event, global_position=position)
                stored = StoredEvent(
                    metadata=stored.metadata,
                    payload=json.loads(json.dumps(stored.payload)),
                    stored_at=stored.stored_at,
                )
                self._log.append(stored)
                self._streams.setdefault(person_id, []).append(stored)
                self._event_ids.add(event.event_id)
                positions.append(position)

        logger.debug(f"Appended {len(events)} events for {person_id} up to v{events[-1].version}")
        return positions

    async def import_stored(self, stored: StoredEvent) -> int:
        """
        Append an already-serialized record as is, e.g. history exported
        from another system in an older schema version.
        """
        async with self._lock:
            stream = self._streams.setdefault(stored.metadata.person_id, [])
            if stored.metadata.version != len(stream) + 1:
                raise ConcurrencyConflict(
                    stored.metadata.version - 1, len(stream), person_id=stored.metadata.person_id
                )
            position = len(self._log) + 1
            record = StoredEvent(
                metadata=replace(stored.metadata, global_position=position),
                payload=dict(stored.payload),
                stored_at=stored.stored_at,
            )
            self._log.append(record)
            stream.append(record)
            self._event_ids.add(stored.metadata.event_id)
            return position

    def _upcast(self, stored: StoredEvent) -> StoredEvent:
        payload, version = self._upcasters.upcast(
            stored.metadata.event_type, stored.payload, stored.metadata
        )
        if version == stored.metadata.schema_version:
            return stored
        return StoredEvent(
            metadata=replace(stored.metadata, schema_version=version),
            payload=payload,
            stored_at=stored.stored_at,
        )

    async def get_stored_events(
        self,
        person_id: str,
        from_version: int = 1,
        to_version: Optional[int] = None,
    ) -> List[StoredEvent]:
        stream = list(self._streams.get(person_id, []))
        return [
            self._upcast(s)
            for s in stream
            if s.metadata.version >= from_version
            and (to_version is None or s.metadata.version <= to_version)
        ]

    async def get_version(self, person_id: str) -> int:
        return len(self._streams.get(person_id, []))

    async def stream_all(self, from_position: int = 0, batch_size: int = 100) -> AsyncIterator[StoredEvent]:
        position = from_position
        while True:
            batch = self._log[position:position + batch_size]
            if not batch:
                break
            for stored in batch:
                yield self._upcast(stored)
            position += len(batch)

    async def save_snapshot(self, snapshot: Snapshot) -> None:
        current = self._snapshots.get(snapshot.person_id)
        if current is None or snapshot.version >= current.version:
            self._snapshots[snapshot.person_id] = snapshot
        logger.debug(f"Saved snapshot for {snapshot.person_id} at version {snapshot.version}")

    async def get_latest_snapshot(self, person_id: str) -> Optional[Snapshot]:
        return self._snapshots.get(person_id)


# =============================================================================
# POSTGRESQL IMPLEMENTATION
# =============================================================================


class PostgresEventStore(IEventStore):
    """
    PostgreSQL-backed event store.

    ``UNIQUE(person_id, version)`` backs up the in-transaction version check
    so concurrent writers on different connections cannot interleave.
    """

    def __init__(
        self,
        connection_pool: asyncpg.Pool,
        upcasters: Optional[UpcasterRegistry] = None,
        events_table: str = "person_events",
        snapshots_table: str = "person_snapshots",
    ) -> None:
        self.pool = connection_pool
        self._upcasters = upcasters or default_upcasters()
        self._events_table = events_table
        self._snapshots_table = snapshots_table

    async def initialize(self) -> None:
        """Create tables and indexes if they do not exist."""
        async with self.pool.acquire() as conn:
            await conn.execute(f"""
                CREATE TABLE IF NOT EXISTS {self._events_table} (
                    global_position BIGSERIAL,
                    event_id UUID PRIMARY KEY,
                    event_type VARCHAR(100) NOT NULL,
                    person_id VARCHAR(200) NOT NULL,
                    version INTEGER NOT NULL,
                    schema_version INTEGER NOT NULL DEFAULT 1,
                    occurred_at TIMESTAMPTZ NOT NULL,
                    correlation_id VARCHAR(100),
                    causation_id VARCHAR(100),
                    payload JSONB NOT NULL,
                    metadata JSONB,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                    UNIQUE(person_id, version)
                )
            """)
            await conn.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{self._events_table}_global_position
                ON {self._events_table}(global_position)
            """)
            await conn.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{self._events_table}_correlation
                ON {self._events_table}(correlation_id)
                WHERE correlation_id IS NOT NULL
            """)
            await conn.execute(f"""
                CREATE TABLE IF NOT EXISTS {self._snapshots_table} (
                    person_id VARCHAR(200) NOT NULL,
                    version INTEGER NOT NULL,
                    state JSONB NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                    PRIMARY KEY(person_id, version)
                )
            """)

        logger.info("Event store schema initialized")

    async def append_batch(
        self,
        events: Sequence[PersonEvent],
        expected_version: Optional[int] = None,
    ) -> List[int]:
        if not events:
            return []
        person_id = _check_batch(events)
        positions: List[int] = []

        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    already = await self._already_stored(conn, events)
                    if already is not None:
                        return already

                    current_version = await conn.fetchval(f"""
                        SELECT MAX(version)
                        FROM {self._events_table}
                        WHERE person_id = $1
                    """, person_id)
                    current_version = current_version or 0

                    if expected_version is not None and current_version != expected_version:
                        raise ConcurrencyConflict(
                            expected_version, current_version, person_id=person_id
                        )
                    if events[0].version != current_version + 1:
                        raise ConcurrencyConflict(
                            events[0].version - 1, current_version, person_id=person_id
                        )

                    for event in events:
                        stored = StoredEvent.from_domain_event(event)
                        position = await conn.fetchval(f"""
                            INSERT INTO {self._events_table} (
                                event_id, event_type, person_id, version,
                                schema_version, occurred_at, correlation_id,
                                causation_id, payload, metadata
                            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                            RETURNING global_position
                        """,
                            stored.metadata.event_id,
                            stored.metadata.event_type,
                            stored.metadata.person_id,
                            stored.metadata.version,
                            stored.metadata.schema_version,
                            stored.metadata.occurred_at,
                            stored.metadata.correlation_id,
                            stored.metadata.causation_id,
                            json.dumps(stored.payload),
                            json.dumps(stored.metadata.custom) if stored.metadata.custom else None,
                        )
                        positions.append(position)
        except asyncpg.UniqueViolationError as e:
            # A concurrent retry of this very batch may have won the race.
            async with self.pool.acquire() as conn:
                already = await self._already_stored(conn, events)
            if already is not None:
                return already
            actual = await self.get_version(person_id)
            raise ConcurrencyConflict(
                events[0].version - 1, actual, person_id=person_id, cause=e
            ) from e
        except asyncpg.PostgresError as e:
            raise EventStoreError(f"Failed to append events for {person_id}: {e}", cause=e) from e

        logger.debug(f"Appended {len(events)} events for {person_id} up to v{events[-1].version}")
        return positions

    async def _already_stored(
        self, conn: asyncpg.Connection, events: Sequence[PersonEvent]
    ) -> Optional[List[int]]:
        """
        Positions of ``events`` if this exact batch is already in the log.

        Raises:
            EventStoreError: Some of the event ids are stored elsewhere
        """
        rows = await conn.fetch(f"""
            SELECT event_id, person_id, version, global_position
            FROM {self._events_table}
            WHERE event_id = ANY($1::uuid[])
        """, [e.event_id for e in events])
        if not rows:
            return None

        by_id = {row["event_id"]: row for row in rows}
        if all(
            e.event_id in by_id
            and by_id[e.event_id]["person_id"] == e.person_id
            and by_id[e.event_id]["version"] == e.version
            for e in events
        ):
            return [by_id[e.event_id]["global_position"] for e in events]
        raise EventStoreError(f"Events already stored: {sorted(str(i) for i in by_id)}")

    async def get_stored_events(
        self,
        person_id: str,
        from_version: int = 1,
        to_version: Optional[int] = None,
    ) -> List[StoredEvent]:
        query = f"""
            SELECT global_position, event_id, event_type, person_id, version,
                   schema_version, occurred_at, correlation_id, causation_id,
                   payload, metadata, created_at
            FROM {self._events_table}
            WHERE person_id = $1 AND version >= $2
        """
        params: List[Any] = [person_id, from_version]

        if to_version is not None:
            query += " AND version <= $3"
            params.append(to_version)

        query += " ORDER BY version ASC"

        async with self.pool.acquire() as conn:
            rows = await conn.fetch(query, *params)

        return [self._row_to_stored_event(row) for row in rows]

    async def get_version(self, person_id: str) -> int:
        async with self.pool.acquire() as conn:
            version = await conn.fetchval(f"""
                SELECT MAX(version)
                FROM {self._events_table}
                WHERE person_id = $1
            """, person_id)

        return version if version is not None else 0

    async def stream_all(self, from_position: int = 0, batch_size: int = 100) -> AsyncIterator[StoredEvent]:
        current_position = from_position

        while True:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(f"""
                    SELECT global_position, event_id, event_type, person_id, version,
                           schema_version, occurred_at, correlation_id, causation_id,
                           payload, metadata, created_at
                    FROM {self._events_table}
                    WHERE global_position > $1
                    ORDER BY global_position ASC
                    LIMIT $2
                """, current_position, batch_size)

            if not rows:
                break

            for row in rows:
                yield self._row_to_stored_event(row)
                current_position = row["global_position"]

    async def save_snapshot(self, snapshot: Snapshot) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(f"""
                INSERT INTO {self._snapshots_table} (person_id, version, state, created_at)
                VALUES ($1, $2, $3, $4)
                ON CONFLICT (person_id, version)
                DO UPDATE SET state = $3, created_at = $4
            """,
                snapshot.person_id,
                snapshot.version,
                json.dumps(snapshot.state),
                snapshot.created_at,
            )

        logger.debug(f"Saved snapshot for {snapshot.person_id} at version {snapshot.version}")

    async def get_latest_snapshot(self, person_id: str) -> Optional[Snapshot]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(f"""
                SELECT version, state, created_at
                FROM {self._snapshots_table}
                WHERE person_id = $1
                ORDER BY version DESC
                LIMIT 1
            """, person_id)

        if row is None:
            return None

        return Snapshot(
            person_id=person_id,
            version=row["version"],
            state=_json(row["state"]),
            created_at=row["created_at"],
        )

    def _row_to_stored_event(self, row: Any) -> StoredEvent:
        """Convert a database row to an upcast stored event."""
        payload = _json(row["payload"]) or {}
        schema_version = row.get("schema_version", 1) or 1

        metadata = EventMetadata(
            event_id=row["event_id"],
            event_type=row["event_type"],
            person_id=row["person_id"],
            version=row["version"],
            occurred_at=row["occurred_at"],
            correlation_id=row["correlation_id"],
            causation_id=row["causation_id"],
            schema_version=schema_version,
            global_position=row["global_position"],
            custom=_json(row["metadata"]) or {},
        )

        payload, version = self._upcasters.upcast(row["event_type"], payload, metadata)
        if version != schema_version:
            metadata = replace(metadata, schema_version=version)

        return StoredEvent(metadata=metadata, payload=payload, stored_at=row["created_at"])


def _json(value: Any) -> Any:
    """asyncpg returns JSONB as text unless a codec is registered."""
    if isinstance(value, (str, bytes)):
        return json.loads(value)
    return value
