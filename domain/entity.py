"""
Persona - Person Aggregate

The consistency boundary for one person: identity, lifecycle, attribute
history and a version counter. The aggregate is a frozen value; applying an
event returns a new Person and never mutates the old one.

Design Principles:
    - ``apply`` is total over well-formed events and bumps version by one
    - Rejection happens only in command handling, never here
    - ``unfold`` observes structure without changing it
    - A merge target is held as an opaque id, never an object reference

Usage:
    person = Person.replay("p-1", events)
    observation = person.unfold()
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from functools import reduce
from typing import Any, Dict, Iterable, Optional, Tuple

from domain.attribute_types import AttributeType
from domain.attributes import AttributeSet
from domain.events import (
    AttributeInvalidated,
    AttributeRecorded,
    AttributeUpdated,
    NameUpdated,
    PersonCreated,
    PersonDeactivated,
    PersonDeceased,
    PersonEvent,
    PersonMergedInto,
    PersonReactivated,
)
from domain.identity import (
    Active,
    CoreIdentity,
    Deactivated,
    Deceased,
    Lifecycle,
    LifecycleStatus,
    MergedInto,
    accepts_mutation,
    lifecycle_from_dict,
)


@dataclass(frozen=True, slots=True)
class PersonObservation:
    """What ``Person.unfold`` exposes about a person at one point."""
    person_id: str
    legal_name_ref: Optional[str]
    status: LifecycleStatus
    version: int
    attribute_types: Tuple[AttributeType, ...]
    identifying: AttributeSet
    current: AttributeSet


@dataclass(frozen=True, slots=True)
class Person:
    """
    Event-sourced person aggregate.

    ``core_identity`` is None until PersonCreated has been applied.
    """
    id: str
    core_identity: Optional[CoreIdentity] = None
    attributes: AttributeSet = field(default_factory=AttributeSet.empty)
    lifecycle: Lifecycle = field(default_factory=Active)
    version: int = 0

    @classmethod
    def initial(cls, person_id: str) -> "Person":
        """State before any event: not yet created, version 0."""
        return cls(id=person_id)

    @property
    def exists(self) -> bool:
        return self.core_identity is not None

    @property
    def status(self) -> LifecycleStatus:
        return self.lifecycle.status

    @property
    def is_active(self) -> bool:
        return self.exists and self.lifecycle.status is LifecycleStatus.ACTIVE

    @property
    def accepts_mutation(self) -> bool:
        return self.exists and accepts_mutation(self.lifecycle)

    @property
    def legal_name_ref(self) -> Optional[str]:
        return self.core_identity.legal_name_ref if self.core_identity else None

    # -------------------------------------------------------------------------
    # Coalgebra
    # -------------------------------------------------------------------------

    def unfold(self, today: Optional[date] = None) -> PersonObservation:
        current = self.attributes.currently_valid(today)
        return PersonObservation(
            person_id=self.id,
            legal_name_ref=self.legal_name_ref,
            status=self.status,
            version=self.version,
            attribute_types=tuple(current.types()),
            identifying=current.identifying(),
            current=current,
        )

    # -------------------------------------------------------------------------
    # Event application
    # -------------------------------------------------------------------------

    def apply(self, event: PersonEvent) -> "Person":
        """Return the state after ``event``. Version increases by exactly one."""
        return replace(_evolve(self, event), version=self.version + 1)

    def apply_all(self, events: Iterable[PersonEvent]) -> "Person":
        return reduce(apply, events, self)

    @classmethod
    def replay(cls, person_id: str, events: Iterable[PersonEvent]) -> "Person":
        """
        Rebuild a person from its full history.

        Raises:
            ValueError: If the history does not start with PersonCreated
        """
        events = list(events)
        if events and not isinstance(events[0], PersonCreated):
            raise ValueError(
                f"History of {person_id} must start with PersonCreated, "
                f"got {events[0].event_type}"
            )
        return cls.initial(person_id).apply_all(events)

    @classmethod
    def replay_from_snapshot(
        cls, snapshot: "Person", events: Iterable[PersonEvent]
    ) -> "Person":
        """Continue from a snapshot with the events recorded after it."""
        return snapshot.apply_all(events)

    # -------------------------------------------------------------------------
    # Serialization (snapshots)
    # -------------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "core_identity": self.core_identity.to_dict() if self.core_identity else None,
            "attributes": self.attributes.to_list(),
            "lifecycle": self.lifecycle.to_dict(),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Person":
        identity = data.get("core_identity")
        return cls(
            id=data["id"],
            core_identity=CoreIdentity.from_dict(identity) if identity else None,
            attributes=AttributeSet.from_list(data.get("attributes", [])),
            lifecycle=lifecycle_from_dict(data["lifecycle"]),
            version=int(data["version"]),
        )


def apply(state: Person, event: PersonEvent) -> Person:
    """Module-level form of ``Person.apply`` for folds."""
    return state.apply(event)


def _touch(state: Person, at: datetime) -> Optional[CoreIdentity]:
    return state.core_identity.touched(at) if state.core_identity else None


def _evolve(state: Person, event: PersonEvent) -> Person:
    at = event.occurred_at

    if isinstance(event, PersonCreated):
        return replace(
            state,
            core_identity=CoreIdentity(
                legal_name_ref=event.legal_name_ref,
                created_at=at,
                updated_at=at,
                birth_date=event.birth_date,
            ),
            lifecycle=Active(),
        )

    if isinstance(event, NameUpdated):
        identity = state.core_identity.with_name(event.legal_name_ref, at) if state.core_identity else None
        return replace(state, core_identity=identity)

    if isinstance(event, AttributeRecorded):
        return replace(
            state,
            attributes=state.attributes.append(event.attribute),
            core_identity=_touch(state, at),
        )

    if isinstance(event, AttributeUpdated):
        closed = state.attributes.close_open(event.attribute.attribute_type, event.superseded_on)
        return replace(
            state,
            attributes=closed.append(event.attribute),
            core_identity=_touch(state, at),
        )

    if isinstance(event, AttributeInvalidated):
        return replace(
            state,
            attributes=state.attributes.close_open(event.attribute_type, event.effective_on),
            core_identity=_touch(state, at),
        )

    if isinstance(event, PersonDeactivated):
        return replace(
            state,
            lifecycle=Deactivated(reason=event.reason, since=at),
            core_identity=_touch(state, at),
        )

    if isinstance(event, PersonReactivated):
        return replace(state, lifecycle=Active(), core_identity=_touch(state, at))

    if isinstance(event, PersonDeceased):
        identity = state.core_identity.with_death_date(event.death_date, at) if state.core_identity else None
        return replace(state, lifecycle=Deceased(death_date=event.death_date), core_identity=identity)

    if isinstance(event, PersonMergedInto):
        return replace(
            state,
            lifecycle=MergedInto(target_id=event.target_id, merged_at=at),
            core_identity=_touch(state, at),
        )

    # Unknown event kinds still advance the version.
    return state
