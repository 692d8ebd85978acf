"""
Persona - Read-Model Specifications

Composable predicates over person read models (``PersonSummary`` and
``SearchDocument``), combinable with ``&``, ``|`` and ``~``. Each
specification also renders itself as query parameters so that a
database-backed read-model store can push the filter down.

Usage:
    spec = ActivePersons() & NameContains("smith")
    spec = StatusIs(LifecycleStatus.DECEASED) | ~HasAttributeCategory(
        AttributeCategory.HEALTHCARE
    )
    matching = [s for s in summaries if spec.is_satisfied_by(s)]
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Generic, Iterable, TypeVar

from domain.attribute_types import AttributeCategory, AttributeType
from domain.identity import LifecycleStatus
from domain.disambiguation import normalize_name

T = TypeVar("T")


# =============================================================================
# SPECIFICATION PATTERN
# =============================================================================


class ISpecification(ABC, Generic[T]):
    """
    Specification pattern for composable queries.

    Specifications encapsulate query logic that can be combined
    using logical operators (and, or, not).
    """

    @abstractmethod
    def is_satisfied_by(self, entity: T) -> bool:
        """Check if an entity satisfies this specification (in-memory filtering)."""

    @abstractmethod
    def to_query_params(self) -> Dict[str, Any]:
        """Convert the specification to store-neutral query parameters."""

    def and_(self, other: "ISpecification[T]") -> "ISpecification[T]":
        return AndSpecification(self, other)

    def or_(self, other: "ISpecification[T]") -> "ISpecification[T]":
        return OrSpecification(self, other)

    def not_(self) -> "ISpecification[T]":
        return NotSpecification(self)

    def __and__(self, other: "ISpecification[T]") -> "ISpecification[T]":
        return self.and_(other)

    def __or__(self, other: "ISpecification[T]") -> "ISpecification[T]":
        return self.or_(other)

    def __invert__(self) -> "ISpecification[T]":
        return self.not_()


class AndSpecification(ISpecification[T]):
    """Both specifications must hold."""

    def __init__(self, left: ISpecification[T], right: ISpecification[T]) -> None:
        self._left = left
        self._right = right

    def is_satisfied_by(self, entity: T) -> bool:
        return self._left.is_satisfied_by(entity) and self._right.is_satisfied_by(entity)

    def to_query_params(self) -> Dict[str, Any]:
        return {"$and": [self._left.to_query_params(), self._right.to_query_params()]}


class OrSpecification(ISpecification[T]):
    """Either specification must hold."""

    def __init__(self, left: ISpecification[T], right: ISpecification[T]) -> None:
        self._left = left
        self._right = right

    def is_satisfied_by(self, entity: T) -> bool:
        return self._left.is_satisfied_by(entity) or self._right.is_satisfied_by(entity)

    def to_query_params(self) -> Dict[str, Any]:
        return {"$or": [self._left.to_query_params(), self._right.to_query_params()]}


class NotSpecification(ISpecification[T]):
    """Negation of another specification."""

    def __init__(self, spec: ISpecification[T]) -> None:
        self._spec = spec

    def is_satisfied_by(self, entity: T) -> bool:
        return not self._spec.is_satisfied_by(entity)

    def to_query_params(self) -> Dict[str, Any]:
        return {"$not": self._spec.to_query_params()}


class TrueSpecification(ISpecification[Any]):
    """Matches everything; the default filter."""

    def is_satisfied_by(self, entity: Any) -> bool:
        return True

    def to_query_params(self) -> Dict[str, Any]:
        return {}

    def __eq__(self, other: object) -> bool:
        return isinstance(other, TrueSpecification)

    def __hash__(self) -> int:
        return hash(TrueSpecification)


# =============================================================================
# PERSON SPECIFICATIONS
# =============================================================================


def _attribute_keys(entity: Any) -> Iterable[str]:
    keys = getattr(entity, "attribute_keys", None)
    if keys is None:
        keys = getattr(entity, "filters", ())
    return keys


def _name(entity: Any) -> str:
    name = getattr(entity, "legal_name_ref", None)
    if name is None:
        name = getattr(entity, "name", "")
    return name or ""


@dataclass(frozen=True, eq=True)
class ActivePersons(ISpecification[Any]):
    """Persons whose lifecycle is Active."""

    def is_satisfied_by(self, entity: Any) -> bool:
        return entity.status is LifecycleStatus.ACTIVE

    def to_query_params(self) -> Dict[str, Any]:
        return {"status": LifecycleStatus.ACTIVE.value}


@dataclass(frozen=True, eq=True)
class StatusIs(ISpecification[Any]):
    status: LifecycleStatus

    def is_satisfied_by(self, entity: Any) -> bool:
        return entity.status is LifecycleStatus(self.status)

    def to_query_params(self) -> Dict[str, Any]:
        return {"status": LifecycleStatus(self.status).value}


@dataclass(frozen=True, eq=True)
class NameContains(ISpecification[Any]):
    """Case-insensitive substring match on the person's name."""
    fragment: str

    def is_satisfied_by(self, entity: Any) -> bool:
        return normalize_name(self.fragment) in normalize_name(_name(entity))

    def to_query_params(self) -> Dict[str, Any]:
        return {"name_contains": normalize_name(self.fragment)}


@dataclass(frozen=True, eq=True)
class HasAttributeCategory(ISpecification[Any]):
    """At least one asserted attribute falls in ``category``."""
    category: AttributeCategory

    def is_satisfied_by(self, entity: Any) -> bool:
        category = AttributeCategory(self.category)
        return any(
            AttributeType.parse(key).category is category for key in _attribute_keys(entity)
        )

    def to_query_params(self) -> Dict[str, Any]:
        return {"attribute_category": AttributeCategory(self.category).value}


@dataclass(frozen=True, eq=True)
class HasAttributeType(ISpecification[Any]):
    attribute_type: AttributeType

    def is_satisfied_by(self, entity: Any) -> bool:
        return self.attribute_type.key in set(_attribute_keys(entity))

    def to_query_params(self) -> Dict[str, Any]:
        return {"attribute_key": self.attribute_type.key}


@dataclass(frozen=True, eq=True)
class PersonIdIn(ISpecification[Any]):
    person_ids: FrozenSet[str]

    def __post_init__(self) -> None:
        object.__setattr__(self, "person_ids", frozenset(self.person_ids))

    def is_satisfied_by(self, entity: Any) -> bool:
        return entity.person_id in self.person_ids

    def to_query_params(self) -> Dict[str, Any]:
        return {"person_ids": sorted(self.person_ids)}
