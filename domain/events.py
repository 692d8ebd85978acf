"""
Event Sourcing: Person Event Definitions

All domain events a person can undergo. Events are immutable records of
facts that have happened; the current state of a person is the left fold
of ``apply`` over its events.

Every event carries the envelope (id, type, person id, version,
correlation/causation ids) and a type-specific payload. ``version`` is the
person's version *after* the event is applied, so the first event of a
stream has version 1.

Usage:
    event = AttributeRecorded(person_id="p-1", version=2, attribute=attr)
    data = event.to_dict()
    assert deserialize_event(data) == event
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, Optional, Type
from uuid import UUID, uuid4

from domain.attribute_types import AttributeType
from domain.attributes import PersonAttribute


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _date_or_none(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


class EventType(str, Enum):
    """Types of person events."""
    PERSON_CREATED = "PersonCreated"
    NAME_UPDATED = "NameUpdated"
    ATTRIBUTE_RECORDED = "AttributeRecorded"
    ATTRIBUTE_UPDATED = "AttributeUpdated"
    ATTRIBUTE_INVALIDATED = "AttributeInvalidated"
    PERSON_DEACTIVATED = "PersonDeactivated"
    PERSON_REACTIVATED = "PersonReactivated"
    PERSON_DECEASED = "PersonDeceased"
    PERSON_MERGED_INTO = "PersonMergedInto"


ENVELOPE_FIELDS = frozenset({
    "event_id",
    "event_type",
    "person_id",
    "version",
    "occurred_at",
    "correlation_id",
    "causation_id",
    "metadata",
    "schema_version",
})


@dataclass(frozen=True, kw_only=True)
class PersonEvent:
    """
    Base class for all person events.

    Subclasses declare ``event_type`` and implement ``payload`` /
    ``_from_payload`` for their own fields.
    """
    schema_version: ClassVar[int] = 1

    event_id: UUID = field(default_factory=uuid4)
    event_type: str = field(default="", init=False)
    person_id: str
    version: int
    occurred_at: datetime = field(default_factory=_utcnow)
    correlation_id: Optional[str] = None
    causation_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict, compare=False)

    def payload(self) -> Dict[str, Any]:
        """Type-specific fields in JSON-compatible form."""
        return {}

    @classmethod
    def _from_payload(cls, data: Dict[str, Any]) -> Dict[str, Any]:
        """Constructor keyword arguments decoded from ``payload`` form."""
        return {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert event to dictionary for serialization."""
        return {
            "event_id": str(self.event_id),
            "event_type": self.event_type,
            "person_id": self.person_id,
            "version": self.version,
            "occurred_at": self.occurred_at.isoformat(),
            "correlation_id": self.correlation_id,
            "causation_id": self.causation_id,
            "metadata": dict(self.metadata),
            "schema_version": self.schema_version,
            **self.payload(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PersonEvent":
        """Reconstruct event from dictionary."""
        event_id = data.get("event_id")
        occurred_at = data.get("occurred_at")
        envelope: Dict[str, Any] = {
            "person_id": data["person_id"],
            "version": int(data["version"]),
            "correlation_id": data.get("correlation_id"),
            "causation_id": data.get("causation_id"),
            "metadata": dict(data.get("metadata") or {}),
        }
        if event_id is not None:
            envelope["event_id"] = UUID(event_id) if isinstance(event_id, str) else event_id
        if occurred_at is not None:
            envelope["occurred_at"] = (
                datetime.fromisoformat(occurred_at) if isinstance(occurred_at, str) else occurred_at
            )
        payload = {k: v for k, v in data.items() if k not in ENVELOPE_FIELDS}
        return cls(**envelope, **cls._from_payload(payload))


# ==================== Lifecycle Events ====================


@dataclass(frozen=True, kw_only=True)
class PersonCreated(PersonEvent):
    """A new person record was opened.

    Schema v2 renamed the v1 ``name`` field to ``legal_name_ref``.
    """
    schema_version: ClassVar[int] = 2

    event_type: str = field(default=EventType.PERSON_CREATED.value, init=False)
    legal_name_ref: str
    birth_date: Optional[date] = None

    def payload(self) -> Dict[str, Any]:
        return {
            "legal_name_ref": self.legal_name_ref,
            "birth_date": self.birth_date.isoformat() if self.birth_date else None,
        }

    @classmethod
    def _from_payload(cls, data: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "legal_name_ref": data["legal_name_ref"],
            "birth_date": _date_or_none(data.get("birth_date")),
        }


@dataclass(frozen=True, kw_only=True)
class NameUpdated(PersonEvent):
    event_type: str = field(default=EventType.NAME_UPDATED.value, init=False)
    legal_name_ref: str
    previous_name_ref: str = ""

    def payload(self) -> Dict[str, Any]:
        return {"legal_name_ref": self.legal_name_ref, "previous_name_ref": self.previous_name_ref}

    @classmethod
    def _from_payload(cls, data: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "legal_name_ref": data["legal_name_ref"],
            "previous_name_ref": data.get("previous_name_ref", ""),
        }


@dataclass(frozen=True, kw_only=True)
class PersonDeactivated(PersonEvent):
    event_type: str = field(default=EventType.PERSON_DEACTIVATED.value, init=False)
    reason: str

    def payload(self) -> Dict[str, Any]:
        return {"reason": self.reason}

    @classmethod
    def _from_payload(cls, data: Dict[str, Any]) -> Dict[str, Any]:
        return {"reason": data["reason"]}


@dataclass(frozen=True, kw_only=True)
class PersonReactivated(PersonEvent):
    event_type: str = field(default=EventType.PERSON_REACTIVATED.value, init=False)


@dataclass(frozen=True, kw_only=True)
class PersonDeceased(PersonEvent):
    event_type: str = field(default=EventType.PERSON_DECEASED.value, init=False)
    death_date: date

    def payload(self) -> Dict[str, Any]:
        return {"death_date": self.death_date.isoformat()}

    @classmethod
    def _from_payload(cls, data: Dict[str, Any]) -> Dict[str, Any]:
        return {"death_date": date.fromisoformat(data["death_date"])}


@dataclass(frozen=True, kw_only=True)
class PersonMergedInto(PersonEvent):
    """This person was found to be the same as ``target_id``."""
    event_type: str = field(default=EventType.PERSON_MERGED_INTO.value, init=False)
    target_id: str
    similarity: Optional[float] = None

    def payload(self) -> Dict[str, Any]:
        return {"target_id": self.target_id, "similarity": self.similarity}

    @classmethod
    def _from_payload(cls, data: Dict[str, Any]) -> Dict[str, Any]:
        return {"target_id": data["target_id"], "similarity": data.get("similarity")}


# ==================== Attribute Events ====================


@dataclass(frozen=True, kw_only=True)
class AttributeRecorded(PersonEvent):
    event_type: str = field(default=EventType.ATTRIBUTE_RECORDED.value, init=False)
    attribute: PersonAttribute

    def payload(self) -> Dict[str, Any]:
        return {"attribute": self.attribute.to_dict()}

    @classmethod
    def _from_payload(cls, data: Dict[str, Any]) -> Dict[str, Any]:
        return {"attribute": PersonAttribute.from_dict(data["attribute"])}


@dataclass(frozen=True, kw_only=True)
class AttributeUpdated(PersonEvent):
    """
    A new value supersedes the current value(s) of the same type.

    Superseded attributes are closed at ``superseded_on``; they stay in the
    history.
    """
    event_type: str = field(default=EventType.ATTRIBUTE_UPDATED.value, init=False)
    attribute: PersonAttribute
    superseded_on: date

    def payload(self) -> Dict[str, Any]:
        return {
            "attribute": self.attribute.to_dict(),
            "superseded_on": self.superseded_on.isoformat(),
        }

    @classmethod
    def _from_payload(cls, data: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "attribute": PersonAttribute.from_dict(data["attribute"]),
            "superseded_on": date.fromisoformat(data["superseded_on"]),
        }


@dataclass(frozen=True, kw_only=True)
class AttributeInvalidated(PersonEvent):
    event_type: str = field(default=EventType.ATTRIBUTE_INVALIDATED.value, init=False)
    attribute_type: AttributeType
    effective_on: date
    reason: str = ""

    def payload(self) -> Dict[str, Any]:
        return {
            "attribute_type": self.attribute_type.key,
            "effective_on": self.effective_on.isoformat(),
            "reason": self.reason,
        }

    @classmethod
    def _from_payload(cls, data: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "attribute_type": AttributeType.parse(data["attribute_type"]),
            "effective_on": date.fromisoformat(data["effective_on"]),
            "reason": data.get("reason", ""),
        }


# =============================================================================
# REGISTRY
# =============================================================================


EVENT_REGISTRY: Dict[str, Type[PersonEvent]] = {
    EventType.PERSON_CREATED.value: PersonCreated,
    EventType.NAME_UPDATED.value: NameUpdated,
    EventType.ATTRIBUTE_RECORDED.value: AttributeRecorded,
    EventType.ATTRIBUTE_UPDATED.value: AttributeUpdated,
    EventType.ATTRIBUTE_INVALIDATED.value: AttributeInvalidated,
    EventType.PERSON_DEACTIVATED.value: PersonDeactivated,
    EventType.PERSON_REACTIVATED.value: PersonReactivated,
    EventType.PERSON_DECEASED.value: PersonDeceased,
    EventType.PERSON_MERGED_INTO.value: PersonMergedInto,
}


def current_schema_version(event_type: str) -> int:
    event_class = EVENT_REGISTRY.get(event_type)
    return event_class.schema_version if event_class else 1


def deserialize_event(data: Dict[str, Any]) -> PersonEvent:
    """
    Deserialize event from dictionary.

    Args:
        data: Event data dictionary, already upcast to the current schema

    Returns:
        Reconstructed event object

    Raises:
        ValueError: If event type is unknown
    """
    event_type = data.get("event_type")
    if not event_type:
        raise ValueError("Event data missing event_type")

    event_class = EVENT_REGISTRY.get(event_type)
    if not event_class:
        raise ValueError(f"Unknown event type: {event_type}")

    return event_class.from_dict(data)
