"""
Tests for services/command_service.py.

Covers:
- The full write path from command to projections
- Temporal updates and history queries
- Optimistic concurrency through expected versions
- Snapshots, publication failures and merges
- Append retries and per-person publication order
"""
import asyncio
from datetime import date
from unittest.mock import AsyncMock

import pytest

from core.errors import (
    ConcurrencyConflict,
    EventStoreError,
    IdentityMismatch,
    InvalidStateTransition,
    NotFound,
    PublishError,
    ValidationError,
)
from db.event_store import InMemoryEventStore
from domain.attribute_types import BIOLOGICAL_SEX, BIRTH_DATE, BIRTH_PLACE, AttributeCategory
from domain.commands import (
    CreatePerson,
    DeactivatePerson,
    MergePerson,
    ReactivatePerson,
    RecordAttribute,
    RecordDeath,
    UpdateAttribute,
    UpdateName,
)
from domain.identity import LifecycleStatus
from domain.provenance import AttributeSource, ConfidenceLevel
from domain.queries import CategoryViewQuery, SummaryQuery, TimelineQuery
from domain.values import BiologicalSex, BiologicalSexValue, DateValue, TextValue
from pipeline.event_bus import InMemoryEventBus
from services.command_service import CommandService
from services.query_service import ProjectionSubscriber, QueryService, default_runners
from tests.conftest import event_types


class OutageBus(InMemoryEventBus):
    """Bus whose publish fails while ``down`` is set."""

    def __init__(self):
        super().__init__()
        self.down = False

    async def publish(self, event):
        if self.down:
            raise PublishError("bus unavailable", event_id=str(event.event_id))
        await super().publish(event)


class FlakyBus(InMemoryEventBus):
    """Bus that fails chosen deliveries a set number of times."""

    def __init__(self, fail_version=None, fail_person=None, failures=1):
        super().__init__()
        self.fail_version = fail_version
        self.fail_person = fail_person
        self.failures = failures

    async def publish(self, event):
        matches = (
            (self.fail_version is None or event.version == self.fail_version)
            and (self.fail_person is None or event.person_id == self.fail_person)
        )
        if matches and self.failures:
            self.failures -= 1
            await asyncio.sleep(0)
            raise PublishError("bus unavailable", event_id=str(event.event_id))
        await super().publish(event)


class TimeoutAfterCommitStore(InMemoryEventStore):
    """Store whose append commits and then reports a timeout."""

    def __init__(self, timeouts=1, commit=True):
        super().__init__()
        self.timeouts = timeouts
        self.commit = commit
        self.attempts = []

    async def append_batch(self, events, expected_version=None):
        self.attempts.append([e.event_id for e in events])
        if not self.commit and self.timeouts:
            self.timeouts -= 1
            raise asyncio.TimeoutError()
        positions = await super().append_batch(events, expected_version=expected_version)
        if self.timeouts:
            self.timeouts -= 1
            raise asyncio.TimeoutError()
        return positions


async def create(service, person_id="p-alice", name="Alice Smith"):
    return await service.submit(CreatePerson(person_id=person_id, legal_name_ref=name))


class TestWritePath:
    """Tests for submit end to end."""

    @pytest.mark.asyncio
    async def test_alice_birth_date_correction(self, command_service, query_service):
        """Test a same-day correction keeps the original value readable as recorded."""
        await create(command_service)
        recorded = await command_service.submit(RecordAttribute(
            person_id="p-alice",
            attribute_type=BIRTH_DATE,
            value=DateValue(date(1990, 5, 15)),
            source=AttributeSource.DOCUMENT_VERIFIED,
            confidence=ConfidenceLevel.CERTAIN,
        ))
        updated = await command_service.submit(UpdateAttribute(
            person_id="p-alice",
            attribute_type=BIRTH_DATE,
            value=DateValue(date(1990, 5, 16)),
            source=AttributeSource.DOCUMENT_VERIFIED,
            confidence=ConfidenceLevel.CERTAIN,
        ))

        assert [e.version for e in recorded + updated] == [2, 3]
        assert updated[0].superseded_on == date(2024, 1, 10)

        alice = await command_service.get("p-alice")
        current = alice.attributes.find_valid_by_type(BIRTH_DATE, date(2024, 1, 10))
        assert current.value == DateValue(date(1990, 5, 16))
        assert [a.value for a in alice.attributes.history(BIRTH_DATE)] == [
            DateValue(date(1990, 5, 15)),
            DateValue(date(1990, 5, 16)),
        ]

        recorded_on = recorded[0].occurred_at.date()
        as_recorded = await command_service.load_as_of("p-alice", recorded[0].version)
        assert as_recorded.attributes.find_valid_by_type(BIRTH_DATE, recorded_on).value == DateValue(
            date(1990, 5, 15)
        )

        [view] = await query_service.execute(
            CategoryViewQuery(person_id="p-alice", category=AttributeCategory.IDENTIFYING)
        )
        assert len(view.attributes.history(BIRTH_DATE)) == 2
        assert view.attributes.find_valid_by_type(BIRTH_DATE, recorded_on).value == DateValue(
            date(1990, 5, 16)
        )

        timeline = await query_service.execute(TimelineQuery(person_id="p-alice"))
        assert [entry.event_type for entry in timeline] == [
            "PersonCreated", "AttributeRecorded", "AttributeUpdated",
        ]

    @pytest.mark.asyncio
    async def test_load_as_of_bounds(self, command_service):
        """Test historical loads need an existing person and a committed version."""
        with pytest.raises(NotFound):
            await command_service.load_as_of("ghost", 1)

        await create(command_service)
        await command_service.submit(UpdateName(person_id="p-alice", legal_name_ref="Alice Jones"))

        assert (await command_service.load_as_of("p-alice", 1)).legal_name_ref == "Alice Smith"
        for version in (0, 3):
            with pytest.raises(ValidationError):
                await command_service.load_as_of("p-alice", version)

    @pytest.mark.asyncio
    async def test_events_carry_command_envelope(self, command_service):
        """Test causation, correlation and actor are stamped on events."""
        command = CreatePerson(
            person_id="p-1", legal_name_ref="Alice", correlation_id="corr-9", actor="clerk"
        )

        [event] = await command_service.submit(command)

        assert event.causation_id == str(command.command_id)
        assert event.correlation_id == "corr-9"
        assert event.metadata["actor"] == "clerk"
        assert event.metadata["command_type"] == "CreatePerson"

    @pytest.mark.asyncio
    async def test_projections_follow_commits(self, command_service, query_service, event_bus):
        """Test committed events reach the bus and the read side."""
        await create(command_service)
        await command_service.submit(UpdateName(person_id="p-alice", legal_name_ref="Alice Jones"))

        [summary] = await query_service.execute(SummaryQuery.for_person("p-alice"))

        assert summary.legal_name_ref == "Alice Jones"
        assert summary.version == 2
        assert event_types(event_bus.published) == ["PersonCreated", "NameUpdated"]

    @pytest.mark.asyncio
    async def test_rejection_writes_nothing(self, command_service, event_store, event_bus):
        """Test a rejected command leaves store and bus untouched."""
        with pytest.raises(NotFound):
            await command_service.submit(UpdateName(person_id="ghost", legal_name_ref="Nobody"))

        await create(command_service)
        with pytest.raises(ValidationError):
            await command_service.submit(UpdateName(person_id="p-alice", legal_name_ref="  "))

        assert await event_store.get_version("p-alice") == 1
        assert await event_store.get_version("ghost") == 0
        assert len(event_bus.published) == 1

    @pytest.mark.asyncio
    async def test_get_unknown_person(self, command_service):
        """Test get requires an existing person; load does not."""
        with pytest.raises(NotFound):
            await command_service.get("ghost")
        assert (await command_service.load("ghost")).version == 0

    @pytest.mark.asyncio
    async def test_lifecycle(self, command_service, clock):
        """Test deactivate, reactivate and terminal death."""
        await create(command_service)
        await command_service.submit(DeactivatePerson(person_id="p-alice", reason="moved abroad"))

        with pytest.raises(InvalidStateTransition):
            await command_service.submit(
                DeactivatePerson(person_id="p-alice", reason="again")
            )

        await command_service.submit(ReactivatePerson(person_id="p-alice"))
        await command_service.submit(RecordDeath(person_id="p-alice", death_date=date(2024, 1, 1)))

        with pytest.raises(InvalidStateTransition) as exc_info:
            await command_service.submit(
                UpdateName(person_id="p-alice", legal_name_ref="Alice Jones")
            )
        assert exc_info.value.from_state == LifecycleStatus.DECEASED.value

        alice = await command_service.get("p-alice")
        assert alice.status is LifecycleStatus.DECEASED
        assert alice.version == 4


class TestConcurrency:
    """Tests for expected versions and per-person serialization."""

    @pytest.mark.asyncio
    async def test_stale_expected_version(self, command_service):
        """Test a command built against version N fails once the person is at N+1."""
        await create(command_service)
        await command_service.submit(UpdateName(person_id="p-alice", legal_name_ref="Alice Jones"))

        with pytest.raises(ConcurrencyConflict) as exc_info:
            await command_service.submit(UpdateName(
                person_id="p-alice", legal_name_ref="Alice Brown", expected_version=1
            ))

        assert exc_info.value.expected_version == 1
        assert exc_info.value.actual_version == 2

    @pytest.mark.asyncio
    async def test_matching_expected_version(self, command_service):
        """Test the current version is accepted."""
        await create(command_service)
        [event] = await command_service.submit(UpdateName(
            person_id="p-alice", legal_name_ref="Alice Jones", expected_version=1
        ))
        assert event.version == 2

    @pytest.mark.asyncio
    async def test_concurrent_commands_serialized(self, command_service, event_store):
        """Test parallel commands on one person get consecutive versions."""
        await create(command_service)

        await asyncio.gather(*(
            command_service.submit(RecordAttribute(
                person_id="p-alice",
                attribute_type=BIRTH_PLACE,
                value=TextValue(f"City {i}"),
            ))
            for i in range(5)
        ))

        events = await event_store.get_events("p-alice")
        assert [e.version for e in events] == [1, 2, 3, 4, 5, 6]

    @pytest.mark.asyncio
    async def test_store_conflict_surfaces(self, event_bus, clock):
        """Test a writer racing past the lock still gets ConcurrencyConflict."""
        store = InMemoryEventStore()
        service = CommandService(store, event_bus, clock=clock, publish_retry_delay=0.0)
        await create(service)

        other = CommandService(store, event_bus, clock=clock, publish_retry_delay=0.0)
        original_load = service.load

        async def stale_load(person_id):
            state = await original_load(person_id)
            await other.submit(UpdateName(person_id=person_id, legal_name_ref="Alice Jones"))
            return state

        service.load = stale_load

        with pytest.raises(ConcurrencyConflict):
            await service.submit(UpdateName(person_id="p-alice", legal_name_ref="Alice Brown"))
        assert await store.get_version("p-alice") == 2

    @pytest.mark.asyncio
    async def test_publication_follows_commit_order(self, event_store, stores, clock):
        """Test a retried delivery is not overtaken by the next command on the person."""
        bus = FlakyBus(fail_version=2)
        ProjectionSubscriber(default_runners(stores)).attach(bus)
        service = CommandService(event_store, bus, publish_retries=3, publish_retry_delay=0.0, clock=clock)
        await create(service)

        await asyncio.gather(
            service.submit(UpdateName(person_id="p-alice", legal_name_ref="Alice Jones")),
            service.submit(UpdateName(person_id="p-alice", legal_name_ref="Alice Brown")),
        )

        assert [e.version for e in bus.published] == [1, 2, 3]
        assert service.unpublished == []
        [summary] = await QueryService(stores).execute(SummaryQuery.for_person("p-alice"))
        assert summary.legal_name_ref == "Alice Brown"
        assert summary.version == 3


class TestSnapshots:
    """Tests for snapshot-assisted loading."""

    @pytest.mark.asyncio
    async def test_snapshot_taken_at_interval(self, command_service, event_store):
        """Test a snapshot is saved when the version crosses the interval."""
        await create(command_service)
        for i in range(4):
            await command_service.submit(RecordAttribute(
                person_id="p-alice", attribute_type=BIRTH_PLACE, value=TextValue(f"City {i}")
            ))

        snapshot = await event_store.get_latest_snapshot("p-alice")

        assert snapshot.version == 5
        assert snapshot.state["id"] == "p-alice"

    @pytest.mark.asyncio
    async def test_load_from_snapshot_matches_replay(self, command_service, event_store):
        """Test snapshot plus tail gives the same state as a full replay."""
        await create(command_service)
        for i in range(6):
            await command_service.submit(RecordAttribute(
                person_id="p-alice", attribute_type=BIRTH_PLACE, value=TextValue(f"City {i}")
            ))

        from_snapshot = await command_service.load("p-alice")
        replayed = await CommandService(event_store, InMemoryEventBus(), snapshot_interval=0).load("p-alice")

        assert from_snapshot == replayed
        assert from_snapshot.version == 7

    @pytest.mark.asyncio
    async def test_snapshot_failure_does_not_fail_command(self, event_bus, clock):
        """Test the command still succeeds when saving the snapshot fails."""
        store = InMemoryEventStore()
        store.save_snapshot = AsyncMock(side_effect=EventStoreError("disk full"))
        service = CommandService(store, event_bus, snapshot_interval=1, clock=clock)

        events = await create(service)

        assert len(events) == 1
        assert await store.get_version("p-alice") == 1

    def test_negative_interval_rejected(self, event_store, event_bus):
        """Test configuration validation."""
        with pytest.raises(ValueError):
            CommandService(event_store, event_bus, snapshot_interval=-1)


class TestPublication:
    """Tests for publication after commit."""

    @pytest.mark.asyncio
    async def test_publish_failure_keeps_commit(self, event_store, clock):
        """Test events stay committed and are parked when the bus is down."""
        bus = OutageBus()
        service = CommandService(event_store, bus, publish_retries=2, publish_retry_delay=0.0, clock=clock)
        bus.down = True

        events = await create(service)

        assert await event_store.get_version("p-alice") == 1
        assert service.unpublished == events
        assert bus.published == []

    @pytest.mark.asyncio
    async def test_flush_delivers_in_order(self, event_store, clock):
        """Test parked events are delivered in commit order once the bus recovers."""
        bus = OutageBus()
        service = CommandService(event_store, bus, publish_retries=1, publish_retry_delay=0.0, clock=clock)
        bus.down = True
        await create(service)
        await service.submit(UpdateName(person_id="p-alice", legal_name_ref="Alice Jones"))

        assert await service.flush_unpublished() == 0
        bus.down = False
        assert await service.flush_unpublished() == 2

        assert [e.version for e in bus.published] == [1, 2]
        assert service.unpublished == []

    @pytest.mark.asyncio
    async def test_backlog_is_per_person(self, event_store, clock):
        """Test one person's undelivered events do not hold back another's."""
        bus = FlakyBus(fail_person="p-ann", failures=100)
        service = CommandService(event_store, bus, publish_retries=1, publish_retry_delay=0.0, clock=clock)
        await create(service, "p-ann", "Ann Smith")
        await create(service, "p-bea", "Bea Smith")
        await service.submit(UpdateName(person_id="p-bea", legal_name_ref="Bea Jones"))

        assert [(e.person_id, e.version) for e in bus.published] == [("p-bea", 1), ("p-bea", 2)]
        assert service.unpublished_for("p-bea") == []
        assert [e.version for e in service.unpublished_for("p-ann")] == [1]

        await service.submit(UpdateName(person_id="p-ann", legal_name_ref="Ann Jones"))
        assert [e.version for e in service.unpublished_for("p-ann")] == [1, 2]

        bus.failures = 0
        assert await service.flush_unpublished(person_id="p-bea") == 0
        assert await service.flush_unpublished(person_id="p-ann") == 2
        assert [e.version for e in bus.published if e.person_id == "p-ann"] == [1, 2]
        assert service.unpublished == []


class TestPersistRetries:
    """Tests for retrying the append of decided events."""

    @pytest.mark.asyncio
    async def test_timeout_after_commit_not_duplicated(self, event_bus, clock):
        """Test an append that committed before timing out is not written twice."""
        store = TimeoutAfterCommitStore()
        service = CommandService(
            store, event_bus, persist_retry_delay=0.0, publish_retry_delay=0.0, clock=clock
        )

        [event] = await create(service)

        assert store.attempts == [[event.event_id], [event.event_id]]
        assert await store.get_version("p-alice") == 1
        assert len([stored async for stored in store.stream_all()]) == 1
        assert event_bus.published == [event]

    @pytest.mark.asyncio
    async def test_persistent_timeouts_surface(self, event_bus, clock):
        """Test exhausted append attempts fail the command with nothing written."""
        store = TimeoutAfterCommitStore(timeouts=5, commit=False)
        service = CommandService(
            store, event_bus, persist_retries=2, persist_retry_delay=0.0, clock=clock
        )

        with pytest.raises(EventStoreError) as exc_info:
            await create(service)

        assert isinstance(exc_info.value.cause, asyncio.TimeoutError)
        assert len(store.attempts) == 2
        assert await store.get_version("p-alice") == 0
        assert event_bus.published == []

    @pytest.mark.asyncio
    async def test_conflict_not_retried(self, event_bus, clock):
        """Test a version conflict from the store is raised on the first attempt."""
        store = InMemoryEventStore()
        store.append_batch = AsyncMock(side_effect=ConcurrencyConflict(0, 1, person_id="p-alice"))
        service = CommandService(store, event_bus, persist_retry_delay=0.0, clock=clock)

        with pytest.raises(ConcurrencyConflict):
            await create(service)

        store.append_batch.assert_awaited_once()


class TestMerge:
    """Tests for merging duplicate records through the service."""

    async def twin(self, service, person_id, sex=BiologicalSex.FEMALE, name="Alice Smith"):
        await create(service, person_id, name)
        for attribute_type, value in [
            (BIRTH_DATE, DateValue(date(1990, 5, 15))),
            (BIRTH_PLACE, TextValue("Boston")),
            (BIOLOGICAL_SEX, BiologicalSexValue(sex)),
        ]:
            await service.submit(RecordAttribute(
                person_id=person_id, attribute_type=attribute_type, value=value
            ))

    @pytest.mark.asyncio
    async def test_merge_duplicate(self, command_service, query_service):
        """Test a matching duplicate is merged into the target."""
        await self.twin(command_service, "p-1")
        await self.twin(command_service, "p-2")

        [event] = await command_service.submit(MergePerson(person_id="p-2", target_id="p-1"))

        assert event.target_id == "p-1"
        assert event.similarity == pytest.approx(1.0)
        merged = await command_service.get("p-2")
        assert merged.status is LifecycleStatus.MERGED_INTO

        [summary] = await query_service.execute(SummaryQuery.for_person("p-2"))
        assert summary.status is LifecycleStatus.MERGED_INTO

    @pytest.mark.asyncio
    async def test_merge_rejects_different_person(self, command_service):
        """Test a biological sex mismatch blocks the merge."""
        await self.twin(command_service, "p-1", BiologicalSex.FEMALE)
        await self.twin(command_service, "p-2", BiologicalSex.MALE)

        with pytest.raises(IdentityMismatch) as exc_info:
            await command_service.submit(MergePerson(person_id="p-2", target_id="p-1"))

        assert exc_info.value.score == 0.0
        assert (await command_service.get("p-2")).status is LifecycleStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_merge_unknown_target(self, command_service):
        """Test the target must exist."""
        await create(command_service)
        with pytest.raises(NotFound):
            await command_service.submit(MergePerson(person_id="p-alice", target_id="ghost"))
