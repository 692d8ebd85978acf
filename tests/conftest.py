"""
Persona - Test Configuration

Pytest fixtures and configuration for all tests.
"""
from datetime import date, datetime, timezone
from typing import List

import pytest

from db.event_store import InMemoryEventStore
from domain.attribute_types import AttributeSchema
from domain.command_handlers import CommandContext
from domain.commands import CreatePerson
from domain.entity import Person
from domain.events import PersonEvent
from pipeline.event_bus import InMemoryEventBus
from services.command_service import CommandService
from services.query_service import ProjectionSubscriber, QueryService, ReadModelStores, default_runners


class FrozenClock:
    """Settable clock for services under test."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, year: int, month: int, day: int, hour: int = 12) -> None:
        self.now = datetime(year, month, day, hour, tzinfo=timezone.utc)


@pytest.fixture
def clock() -> FrozenClock:
    """Clock starting on 2024-01-10 at noon UTC."""
    return FrozenClock(datetime(2024, 1, 10, 12, tzinfo=timezone.utc))


@pytest.fixture
def now(clock) -> datetime:
    return clock.now


@pytest.fixture
def context(now) -> CommandContext:
    return CommandContext(schema=AttributeSchema.default(), now=now)


@pytest.fixture
def created_person(context) -> Person:
    """Alice Smith, created and nothing else."""
    from domain.command_handlers import execute

    person, _ = execute(
        Person.initial("p-alice"),
        CreatePerson(person_id="p-alice", legal_name_ref="Alice Smith"),
        context,
    )
    return person


@pytest.fixture
def event_store() -> InMemoryEventStore:
    return InMemoryEventStore()


@pytest.fixture
def event_bus() -> InMemoryEventBus:
    return InMemoryEventBus()


@pytest.fixture
def stores() -> ReadModelStores:
    return ReadModelStores.in_memory()


@pytest.fixture
def projections(stores, event_bus) -> ProjectionSubscriber:
    subscriber = ProjectionSubscriber(default_runners(stores))
    subscriber.attach(event_bus)
    return subscriber


@pytest.fixture
def command_service(event_store, event_bus, clock) -> CommandService:
    return CommandService(
        event_store,
        event_bus,
        snapshot_interval=5,
        publish_retry_delay=0.0,
        clock=clock,
    )


@pytest.fixture
def query_service(stores, projections) -> QueryService:
    return QueryService(stores)


def event_types(events: List[PersonEvent]) -> List[str]:
    return [e.event_type for e in events]


def on(year: int, month: int, day: int) -> date:
    return date(year, month, day)


# =============================================================================
# PYTEST CONFIGURATION
# =============================================================================


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "slow: marks tests as slow")
    config.addinivalue_line("markers", "integration: marks tests crossing service boundaries")
    config.addinivalue_line("markers", "db: marks database adapter tests")
    config.addinivalue_line("markers", "property: marks property-based tests using Hypothesis")
    config.addinivalue_line("markers", "e2e: End-to-end tests covering complete workflows")
