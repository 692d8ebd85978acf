"""
Persona - Command Service (write side)

The impure shell around ``domain.command_handlers.handle``:

    load -> check expected version -> handle -> append -> snapshot -> publish

Commands for one person are processed strictly one at a time under a
per-person ``asyncio.Lock``; commands for different people never share a
lock and run concurrently.

Appends that fail transiently are retried with the very same events. Once
they are appended the command has succeeded. Publication follows the
commit, still under the person's lock, and is retried with the very same
events; events that still could not be published are parked per person
until ``flush_unpublished`` delivers them. A person's later events queue
behind their parked ones, other people are not affected.

Usage:
    service = CommandService(InMemoryEventStore(), InMemoryEventBus())
    events = await service.submit(CreatePerson(person_id="p-1", legal_name_ref="Alice Smith"))
    person = await service.get("p-1")
"""
from __future__ import annotations

import asyncio
import weakref
from datetime import datetime
from typing import Callable, Dict, List, Optional

from opentelemetry import trace

from config import Config, get_config
from core.errors import (
    ConcurrencyConflict,
    EventStoreError,
    NotFound,
    PersonaError,
    PublishError,
    UpcastingError,
    ValidationError,
)
from core.resilience import RetryConfig, RetryPolicy
from db.event_store import IEventStore, Snapshot
from domain.attribute_types import AttributeSchema
from domain.command_handlers import CommandContext, handle
from domain.commands import BaseCommand, MergePerson
from domain.disambiguation import DEFAULT_MATCH_THRESHOLD
from domain.entity import Person
from domain.events import PersonEvent
from domain.temporal import utcnow
from observability.logging import CommandLogger, LogContext, get_logger
from pipeline.event_bus import IEventPublisher, publish_with_retry

tracer = trace.get_tracer(__name__)
logger = get_logger(__name__)


class CommandService:
    """
    Processes person commands against an event store.

    Args:
        event_store: Where person histories are appended
        publisher: Receives every committed event
        schema: Attribute taxonomy used to validate values
        snapshot_interval: Save a snapshot each time the version crosses a
            multiple of this; 0 disables snapshots
        publish_retries: Attempts per event before it is parked
        publish_retry_delay: Base delay of the publish backoff, in seconds
        persist_retries: Attempts per append before the command fails
        persist_retry_delay: Base delay of the append backoff, in seconds
        merge_threshold: Default minimum similarity for MergePerson
        clock: Source of the decision time stamped on events
    """

    def __init__(
        self,
        event_store: IEventStore,
        publisher: IEventPublisher,
        *,
        schema: Optional[AttributeSchema] = None,
        snapshot_interval: int = 50,
        publish_retries: int = 3,
        publish_retry_delay: float = 0.1,
        persist_retries: int = 3,
        persist_retry_delay: float = 0.05,
        merge_threshold: float = DEFAULT_MATCH_THRESHOLD,
        clock: Callable[[], datetime] = utcnow,
    ):
        if snapshot_interval < 0:
            raise ValueError("snapshot_interval must be >= 0")
        self.event_store = event_store
        self.publisher = publisher
        self.schema = schema or AttributeSchema.default()
        self.snapshot_interval = snapshot_interval
        self.publish_retries = publish_retries
        self.publish_retry_delay = publish_retry_delay
        self.persist_retries = persist_retries
        self.persist_retry_delay = persist_retry_delay
        self.merge_threshold = merge_threshold
        self.clock = clock

        self._outbox: Dict[str, List[PersonEvent]] = {}
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._command_logger = CommandLogger()

    @classmethod
    def from_config(
        cls,
        event_store: IEventStore,
        publisher: IEventPublisher,
        config: Optional[Config] = None,
        **kwargs,
    ) -> "CommandService":
        """Build a service with settings from ``config`` (default: environment)."""
        config = config or get_config()
        return cls(
            event_store,
            publisher,
            snapshot_interval=config.event_store.snapshot_interval,
            publish_retries=config.commands.publish_retries,
            publish_retry_delay=config.commands.publish_retry_delay,
            persist_retries=config.commands.persist_retries,
            persist_retry_delay=config.commands.persist_retry_delay,
            merge_threshold=config.commands.merge_threshold,
            **kwargs,
        )

    def _lock_for(self, person_id: str) -> asyncio.Lock:
        lock = self._locks.get(person_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[person_id] = lock
        return lock

    # -------------------------------------------------------------------------
    # Loading
    # -------------------------------------------------------------------------

    async def load(self, person_id: str) -> Person:
        """
        Current state of a person; ``Person.initial`` if it has no history.

        Starts from the latest snapshot when there is one and replays only
        the events recorded after it.
        """
        snapshot = await self.event_store.get_latest_snapshot(person_id)
        if snapshot is not None:
            state = Person.from_dict(snapshot.state)
            events = await self.event_store.get_events(person_id, from_version=snapshot.version + 1)
            return Person.replay_from_snapshot(state, events)

        events = await self.event_store.get_events(person_id)
        try:
            return Person.replay(person_id, events)
        except ValueError as e:
            raise EventStoreError(str(e), cause=e) from e

    async def get(self, person_id: str) -> Person:
        """
        Like ``load`` but for people that must exist.

        Raises:
            NotFound: The person has never been created
        """
        person = await self.load(person_id)
        if not person.exists:
            raise NotFound(person_id)
        return person

    async def load_as_of(self, person_id: str, version: int) -> Person:
        """
        The person exactly as it stood once ``version`` was committed.

        Later corrections, supersessions and invalidations are not applied,
        so attribute windows read as they were recorded at that version.
        Commands decided in the same instant are still told apart.

        Raises:
            NotFound: The person has never been created
            ValidationError: ``version`` is outside 1..current version
        """
        current = await self.event_store.get_version(person_id)
        if current == 0:
            raise NotFound(person_id)
        if not 1 <= version <= current:
            raise ValidationError("version", f"must be between 1 and {current}, got {version}")

        events = await self.event_store.get_events(person_id, to_version=version)
        try:
            return Person.replay(person_id, events)
        except ValueError as e:
            raise EventStoreError(str(e), cause=e) from e

    # -------------------------------------------------------------------------
    # Submitting
    # -------------------------------------------------------------------------

    async def submit(self, command: BaseCommand) -> List[PersonEvent]:
        """
        Decide, persist and publish one command.

        Returns:
            The committed events

        Raises:
            ValidationError, NotFound, InvalidStateTransition, IdentityMismatch:
                The command was rejected; nothing was written
            ConcurrencyConflict: The person moved past ``expected_version``
                or another writer appended first; reload and retry
            EventStoreError: The store kept failing after retries
        """
        command_type = command.command_type
        person_id = command.person_id

        with tracer.start_as_current_span("command.submit") as span:
            span.set_attribute("command.type", command_type)
            span.set_attribute("person.id", person_id)

            async with LogContext(
                person_id=person_id,
                command_type=command_type,
                correlation_id=command.correlation_id,
            ):
                self._command_logger.received(command_type, person_id)
                async with self._lock_for(person_id):
                    try:
                        events = await self._decide_and_commit(command)
                    except PersonaError as e:
                        self._command_logger.rejected(command_type, person_id, e)
                        span.set_attribute("command.rejected", e.error_code)
                        raise

                    version = events[-1].version if events else 0
                    span.set_attribute("person.version", version)
                    self._command_logger.committed(command_type, person_id, version, len(events))

                    # Still under the person's lock: a later command cannot
                    # publish before these events are delivered or parked.
                    await self._publish(person_id, events)
                return events

    async def _decide_and_commit(self, command: BaseCommand) -> List[PersonEvent]:
        state = await self.load(command.person_id)

        if command.expected_version is not None and command.expected_version != state.version:
            raise ConcurrencyConflict(
                command.expected_version, state.version, person_id=command.person_id
            )

        merge_target = None
        if isinstance(command, MergePerson) and command.target_id != command.person_id:
            merge_target = await self.load(command.target_id)

        context = CommandContext(
            schema=self.schema,
            now=self.clock(),
            merge_target=merge_target,
            merge_threshold=self.merge_threshold,
        )
        events = handle(state, command, context)
        if not events:
            return events

        await self._persist(events, expected_version=state.version)
        await self._maybe_snapshot(state, events)
        return events

    async def _persist(self, events: List[PersonEvent], expected_version: int) -> None:
        """
        Append the decided events, retrying transient store failures.

        Every attempt appends the very same events; the store accepts a
        batch it already holds, so an attempt that timed out after
        committing is not written twice.
        """
        policy = RetryPolicy(
            RetryConfig(
                max_attempts=self.persist_retries,
                base_delay=self.persist_retry_delay,
                retryable_exceptions={EventStoreError, ConnectionError, asyncio.TimeoutError},
                non_retryable_exceptions={ConcurrencyConflict, UpcastingError},
            )
        )
        try:
            await policy.call(self.event_store.append_batch, events, expected_version=expected_version)
        except (ConnectionError, asyncio.TimeoutError) as e:
            raise EventStoreError(
                f"Failed to append {len(events)} events for {events[0].person_id} "
                f"after {self.persist_retries} attempts: {e}",
                cause=e,
            ) from e

    async def _maybe_snapshot(self, before: Person, events: List[PersonEvent]) -> None:
        if not self.snapshot_interval:
            return
        after_version = events[-1].version
        if after_version // self.snapshot_interval == before.version // self.snapshot_interval:
            return

        after = before.apply_all(events)
        try:
            await self.event_store.save_snapshot(
                Snapshot(person_id=after.id, version=after.version, state=after.to_dict())
            )
        except EventStoreError as e:
            # Committed history stays authoritative; loads fall back to replay.
            logger.warning(
                "Snapshot failed",
                person_id=after.id,
                version=after.version,
                error=str(e),
            )

    # -------------------------------------------------------------------------
    # Publishing
    # -------------------------------------------------------------------------

    @property
    def unpublished(self) -> List[PersonEvent]:
        """Parked events of every person, each person's in commit order."""
        return [event for parked in self._outbox.values() for event in parked]

    def unpublished_for(self, person_id: str) -> List[PersonEvent]:
        return list(self._outbox.get(person_id, []))

    async def _publish(self, person_id: str, events: List[PersonEvent]) -> None:
        """Deliver ``events`` after any backlog of the same person. Caller holds its lock."""
        if person_id in self._outbox:
            await self._flush_person(person_id)
            if person_id in self._outbox:
                self._outbox[person_id].extend(events)
                return

        for index, event in enumerate(events):
            try:
                await self._publish_one(event)
            except PublishError as e:
                # Later events of the same person must not overtake this one.
                parked = events[index:]
                self._outbox[person_id] = list(parked)
                logger.error(
                    "Publish failed after commit",
                    event_id=str(event.event_id),
                    event_type=event.event_type,
                    parked=len(parked),
                    error=str(e),
                )
                return

    async def _publish_one(self, event: PersonEvent) -> None:
        await publish_with_retry(
            self.publisher,
            event,
            attempts=self.publish_retries,
            base_delay=self.publish_retry_delay,
        )

    async def _flush_person(self, person_id: str) -> int:
        parked = self._outbox[person_id]
        delivered = 0
        while parked:
            try:
                await self._publish_one(parked[0])
            except PublishError as e:
                logger.warning(
                    "Unpublished events remain",
                    person_id=person_id,
                    remaining=len(parked),
                    error=str(e),
                )
                return delivered
            parked.pop(0)
            delivered += 1
        del self._outbox[person_id]
        return delivered

    async def flush_unpublished(self, person_id: Optional[str] = None) -> int:
        """
        Retry parked events in commit order.

        Each person's backlog stops at its first event that still fails;
        other people's backlogs are flushed independently.

        Args:
            person_id: Flush only this person's backlog

        Returns:
            Number of events delivered
        """
        person_ids = [person_id] if person_id is not None else list(self._outbox)
        delivered = 0
        for pid in person_ids:
            async with self._lock_for(pid):
                if pid in self._outbox:
                    delivered += await self._flush_person(pid)
        return delivered
