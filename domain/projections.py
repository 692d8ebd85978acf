"""
CQRS: Person Read-Model Projections

The read side of the person domain. Every projection is a pure function

    project(current_read_model_or_None, event) -> new_read_model_or_None

that performs no I/O. Events a projection does not care about return the
input unchanged. Loading and saving around these functions lives in
``services.query_service.ProjectionRunner``.

Read models:
    - PersonSummary: name, status, active flag, attribute count, timestamps
    - SearchDocument: denormalised text and filter keys for search
    - TimelineEntry: one append-only entry per event
    - CategoryView: the person's attributes restricted to one category

Usage:
    summary = None
    for event in events:
        summary = project_summary(summary, event)

    healthcare = project_category_view(AttributeCategory.HEALTHCARE)
    view = healthcare(None, created_event)
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

from domain.attribute_types import AttributeCategory, AttributeType
from domain.attributes import AttributeSet, PersonAttribute
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
from domain.identity import LifecycleStatus
from domain.values import (
    LocationValue,
    TextListValue,
    TextValue,
)

_TOKEN = re.compile(r"\w+", re.UNICODE)

_STATUS_EVENTS: Dict[type, LifecycleStatus] = {
    PersonDeactivated: LifecycleStatus.DEACTIVATED,
    PersonReactivated: LifecycleStatus.ACTIVE,
    PersonDeceased: LifecycleStatus.DECEASED,
    PersonMergedInto: LifecycleStatus.MERGED_INTO,
}


def tokenize(text: str) -> Tuple[str, ...]:
    """Lower-cased word tokens."""
    return tuple(token.casefold() for token in _TOKEN.findall(text or ""))


# =============================================================================
# READ MODELS
# =============================================================================


@dataclass(frozen=True, slots=True)
class PersonSummary:
    """Compact per-person record for listings."""
    person_id: str
    legal_name_ref: str
    status: LifecycleStatus
    attribute_count: int
    attribute_keys: Tuple[str, ...]
    created_at: datetime
    updated_at: datetime
    version: int

    @property
    def active(self) -> bool:
        return self.status is LifecycleStatus.ACTIVE

    @property
    def categories(self) -> Tuple[AttributeCategory, ...]:
        found: Dict[AttributeCategory, None] = {}
        for key in self.attribute_keys:
            found.setdefault(AttributeType.parse(key).category, None)
        return tuple(found)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "person_id": self.person_id,
            "legal_name_ref": self.legal_name_ref,
            "status": self.status.value,
            "active": self.active,
            "attribute_count": self.attribute_count,
            "attribute_keys": list(self.attribute_keys),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PersonSummary":
        return cls(
            person_id=data["person_id"],
            legal_name_ref=data["legal_name_ref"],
            status=LifecycleStatus(data["status"]),
            attribute_count=int(data["attribute_count"]),
            attribute_keys=tuple(data.get("attribute_keys", ())),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            version=int(data["version"]),
        )


@dataclass(frozen=True, slots=True)
class SearchDocument:
    """
    Denormalised search entry.

    ``values`` holds ``(attribute key, text)`` pairs for the textual
    attributes currently asserted; ``filters`` holds every asserted
    attribute key.
    """
    person_id: str
    name: str
    status: LifecycleStatus
    values: Tuple[Tuple[str, str], ...] = ()
    filters: Tuple[str, ...] = ()
    version: int = 0

    @property
    def active(self) -> bool:
        return self.status is LifecycleStatus.ACTIVE

    @property
    def text(self) -> str:
        return " ".join([self.name, *(text for _, text in self.values)])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "person_id": self.person_id,
            "name": self.name,
            "status": self.status.value,
            "values": [list(pair) for pair in self.values],
            "filters": list(self.filters),
            "text": self.text,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SearchDocument":
        return cls(
            person_id=data["person_id"],
            name=data["name"],
            status=LifecycleStatus(data["status"]),
            values=tuple((key, text) for key, text in data.get("values", ())),
            filters=tuple(data.get("filters", ())),
            version=int(data.get("version", 0)),
        )


@dataclass(frozen=True, slots=True)
class TimelineEntry:
    """One immutable line in a person's history."""
    person_id: str
    version: int
    event_id: str
    event_type: str
    occurred_at: datetime
    description: str
    actor: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "person_id": self.person_id,
            "version": self.version,
            "event_id": self.event_id,
            "event_type": self.event_type,
            "occurred_at": self.occurred_at.isoformat(),
            "description": self.description,
            "actor": self.actor,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TimelineEntry":
        return cls(
            person_id=data["person_id"],
            version=int(data["version"]),
            event_id=data["event_id"],
            event_type=data["event_type"],
            occurred_at=datetime.fromisoformat(data["occurred_at"]),
            description=data.get("description", ""),
            actor=data.get("actor"),
        )


@dataclass(frozen=True, slots=True)
class CategoryView:
    """The attribute history of one person, restricted to one category."""
    person_id: str
    category: AttributeCategory
    attributes: AttributeSet = field(default_factory=AttributeSet.empty)
    version: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "person_id": self.person_id,
            "category": self.category.value,
            "attributes": self.attributes.to_list(),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CategoryView":
        return cls(
            person_id=data["person_id"],
            category=AttributeCategory(data["category"]),
            attributes=AttributeSet.from_list(data.get("attributes", [])),
            version=int(data.get("version", 0)),
        )


# =============================================================================
# PROJECTIONS
# =============================================================================


def _with_key(keys: Tuple[str, ...], key: str) -> Tuple[str, ...]:
    return keys if key in keys else tuple(sorted(keys + (key,)))


def _without_key(keys: Tuple[str, ...], key: str) -> Tuple[str, ...]:
    return tuple(k for k in keys if k != key)


def project_summary(
    current: Optional[PersonSummary], event: PersonEvent
) -> Optional[PersonSummary]:
    """Summary projection. Terminal and deactivated persons stay listed."""
    if isinstance(event, PersonCreated):
        return PersonSummary(
            person_id=event.person_id,
            legal_name_ref=event.legal_name_ref,
            status=LifecycleStatus.ACTIVE,
            attribute_count=0,
            attribute_keys=(),
            created_at=event.occurred_at,
            updated_at=event.occurred_at,
            version=event.version,
        )

    if current is None:
        return None

    touched = {"updated_at": event.occurred_at, "version": event.version}

    if isinstance(event, NameUpdated):
        return replace(current, legal_name_ref=event.legal_name_ref, **touched)

    if isinstance(event, (AttributeRecorded, AttributeUpdated)):
        return replace(
            current,
            attribute_count=current.attribute_count + 1,
            attribute_keys=_with_key(current.attribute_keys, event.attribute.attribute_type.key),
            **touched,
        )

    if isinstance(event, AttributeInvalidated):
        return replace(
            current,
            attribute_keys=_without_key(current.attribute_keys, event.attribute_type.key),
            **touched,
        )

    status = _STATUS_EVENTS.get(type(event))
    if status is not None:
        return replace(current, status=status, **touched)

    return current


def _searchable_text(attribute: PersonAttribute) -> Optional[str]:
    value = attribute.value
    if isinstance(value, (TextValue, TextListValue, LocationValue)):
        return value.display()
    return None


def project_search(
    current: Optional[SearchDocument], event: PersonEvent
) -> Optional[SearchDocument]:
    """Search-index projection."""
    if isinstance(event, PersonCreated):
        return SearchDocument(
            person_id=event.person_id,
            name=event.legal_name_ref,
            status=LifecycleStatus.ACTIVE,
            version=event.version,
        )

    if current is None:
        return None

    if isinstance(event, NameUpdated):
        return replace(current, name=event.legal_name_ref, version=event.version)

    if isinstance(event, (AttributeRecorded, AttributeUpdated)):
        key = event.attribute.attribute_type.key
        values = current.values
        if isinstance(event, AttributeUpdated):
            values = tuple(pair for pair in values if pair[0] != key)
        text = _searchable_text(event.attribute)
        if text:
            values = values + ((key, text),)
        return replace(
            current,
            values=values,
            filters=_with_key(current.filters, key),
            version=event.version,
        )

    if isinstance(event, AttributeInvalidated):
        key = event.attribute_type.key
        return replace(
            current,
            values=tuple(pair for pair in current.values if pair[0] != key),
            filters=_without_key(current.filters, key),
            version=event.version,
        )

    status = _STATUS_EVENTS.get(type(event))
    if status is not None:
        return replace(current, status=status, version=event.version)

    return current


def relevance(document: SearchDocument, text: Optional[str]) -> float:
    """
    Score in [0, 1] of how well ``document`` matches ``text``.

    Each query token found in the name counts double; tokens found only in
    attribute text count once. An empty query matches everything fully.
    """
    query = tokenize(text or "")
    if not query:
        return 1.0
    name_tokens = set(tokenize(document.name))
    value_tokens = set(tokenize(" ".join(t for _, t in document.values)))
    credit = 0
    for token in query:
        if token in name_tokens:
            credit += 2
        elif token in value_tokens:
            credit += 1
    return min(1.0, credit / (2 * len(query)))


def describe(event: PersonEvent) -> str:
    """Short human-readable description of an event."""
    if isinstance(event, PersonCreated):
        return f"Created as {event.legal_name_ref}"
    if isinstance(event, NameUpdated):
        return f"Name changed to {event.legal_name_ref}"
    if isinstance(event, AttributeRecorded):
        return f"Recorded {event.attribute.attribute_type.key} = {event.attribute.value.display()}"
    if isinstance(event, AttributeUpdated):
        return (
            f"Updated {event.attribute.attribute_type.key} to "
            f"{event.attribute.value.display()} from {event.superseded_on.isoformat()}"
        )
    if isinstance(event, AttributeInvalidated):
        return f"Invalidated {event.attribute_type.key} from {event.effective_on.isoformat()}"
    if isinstance(event, PersonDeactivated):
        return f"Deactivated: {event.reason}"
    if isinstance(event, PersonReactivated):
        return "Reactivated"
    if isinstance(event, PersonDeceased):
        return f"Died on {event.death_date.isoformat()}"
    if isinstance(event, PersonMergedInto):
        return f"Merged into {event.target_id}"
    return event.event_type


def project_timeline_entry(
    current: Optional[TimelineEntry], event: PersonEvent
) -> TimelineEntry:
    """
    Timeline projection. Entries are append-only: an existing entry for the
    same event is returned as is.
    """
    if current is not None and current.event_id == str(event.event_id):
        return current
    return TimelineEntry(
        person_id=event.person_id,
        version=event.version,
        event_id=str(event.event_id),
        event_type=event.event_type,
        occurred_at=event.occurred_at,
        description=describe(event),
        actor=event.metadata.get("actor"),
    )


CategoryProjection = Callable[[Optional[CategoryView], PersonEvent], Optional[CategoryView]]


def project_category_view(category: AttributeCategory) -> CategoryProjection:
    """Build a projection keeping only the attributes of ``category``."""

    def project(current: Optional[CategoryView], event: PersonEvent) -> Optional[CategoryView]:
        if isinstance(event, PersonCreated):
            return CategoryView(person_id=event.person_id, category=category, version=event.version)

        if current is None:
            return None

        if isinstance(event, AttributeRecorded):
            if event.attribute.category is not category:
                return current
            return replace(
                current,
                attributes=current.attributes.append(event.attribute),
                version=event.version,
            )

        if isinstance(event, AttributeUpdated):
            if event.attribute.category is not category:
                return current
            closed = current.attributes.close_open(
                event.attribute.attribute_type, event.superseded_on
            )
            return replace(
                current, attributes=closed.append(event.attribute), version=event.version
            )

        if isinstance(event, AttributeInvalidated):
            if event.attribute_type.category is not category:
                return current
            return replace(
                current,
                attributes=current.attributes.close_open(event.attribute_type, event.effective_on),
                version=event.version,
            )

        return current

    project.__name__ = f"project_{category.value}_view"
    return project
