"""
Persona - Person Attributes

A PersonAttribute binds a typed value to its temporal validity and
provenance. An AttributeSet is the ordered history of attributes held by
one person.

Algebra:
    PersonAttribute is a functor over its value:
        a.map(identity) == a
        a.map(f).map(g) == a.map(lambda v: g(f(v)))

    AttributeSet is a monoid under concatenation (``empty`` is the unit)
    and a monad with ``of`` as unit and ``bind`` as flat-map:
        AttributeSet.of(a).bind(f) == f(a)
        s.bind(AttributeSet.of) == s
        s.bind(f).bind(g) == s.bind(lambda a: f(a).bind(g))

Transformation records appended by ``map`` are audit data and do not take
part in equality, which is what lets the laws hold.

Usage:
    height = PersonAttribute.create(
        HEIGHT, LengthValue.from_centimeters(180), Provenance.self_reported()
    )
    attributes = AttributeSet.of(height) + AttributeSet.of(weight)
    today_view = attributes.currently_valid()
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, datetime
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    Iterator,
    List,
    Optional,
    Tuple,
)

from domain.attribute_types import (
    AttributeCategory,
    AttributeType,
)
from domain.provenance import Provenance
from domain.temporal import TemporalValidity, utcnow
from domain.values import AttributeValue, value_from_dict


ValueTransform = Callable[[AttributeValue], AttributeValue]


@dataclass(frozen=True, slots=True)
class PersonAttribute:
    """A single typed, time-bounded, provenance-tracked fact."""
    attribute_type: AttributeType
    value: AttributeValue
    temporal: TemporalValidity
    provenance: Provenance

    @classmethod
    def create(
        cls,
        attribute_type: AttributeType,
        value: AttributeValue,
        provenance: Provenance,
        valid_from: Optional[date] = None,
        valid_until: Optional[date] = None,
        recorded_at: Optional[datetime] = None,
    ) -> "PersonAttribute":
        return cls(
            attribute_type=attribute_type,
            value=value,
            temporal=TemporalValidity.between(valid_from, valid_until, recorded_at),
            provenance=provenance,
        )

    def map(
        self,
        f: ValueTransform,
        operation: Optional[str] = None,
        actor: str = "system",
    ) -> "PersonAttribute":
        """
        Apply ``f`` to the value.

        Type and temporal validity are preserved and one transformation
        record is appended to the provenance trace. No semantic validation
        is performed on the result.
        """
        name = operation or getattr(f, "__name__", "transform")
        return replace(
            self,
            value=f(self.value),
            provenance=self.provenance.with_transformation(name, actor),
        )

    def with_temporal(self, temporal: TemporalValidity) -> "PersonAttribute":
        return replace(self, temporal=temporal)

    def is_valid_at(self, on: date) -> bool:
        return self.temporal.is_valid_at(on)

    @property
    def category(self) -> AttributeCategory:
        return self.attribute_type.category

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attribute_type": self.attribute_type.key,
            "value": self.value.to_dict(),
            "temporal": self.temporal.to_dict(),
            "provenance": self.provenance.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PersonAttribute":
        return cls(
            attribute_type=AttributeType.parse(data["attribute_type"]),
            value=value_from_dict(data["value"]),
            temporal=TemporalValidity.from_dict(data["temporal"]),
            provenance=Provenance.from_dict(data["provenance"]),
        )


@dataclass(frozen=True, slots=True)
class AttributeSet:
    """
    Ordered, immutable collection of PersonAttribute.

    Insertion order is kept for audit purposes only.
    """
    attributes: Tuple[PersonAttribute, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "attributes", tuple(self.attributes))

    # -------------------------------------------------------------------------
    # Monoid
    # -------------------------------------------------------------------------

    @classmethod
    def empty(cls) -> "AttributeSet":
        return cls(())

    @classmethod
    def of(cls, attribute: PersonAttribute) -> "AttributeSet":
        return cls((attribute,))

    @classmethod
    def from_iterable(cls, attributes: Iterable[PersonAttribute]) -> "AttributeSet":
        return cls(tuple(attributes))

    @staticmethod
    def compose(left: "AttributeSet", right: "AttributeSet") -> "AttributeSet":
        return AttributeSet(left.attributes + right.attributes)

    def __add__(self, other: "AttributeSet") -> "AttributeSet":
        if not isinstance(other, AttributeSet):
            return NotImplemented
        return AttributeSet.compose(self, other)

    def append(self, attribute: PersonAttribute) -> "AttributeSet":
        return AttributeSet(self.attributes + (attribute,))

    # -------------------------------------------------------------------------
    # Functor / Monad
    # -------------------------------------------------------------------------

    def map(self, f: Callable[[PersonAttribute], PersonAttribute]) -> "AttributeSet":
        return AttributeSet(tuple(f(a) for a in self.attributes))

    def filter(self, predicate: Callable[[PersonAttribute], bool]) -> "AttributeSet":
        return AttributeSet(tuple(a for a in self.attributes if predicate(a)))

    def bind(self, f: Callable[[PersonAttribute], "AttributeSet"]) -> "AttributeSet":
        """Flat-map: concatenate ``f(a)`` for every attribute in order."""
        result: List[PersonAttribute] = []
        for attribute in self.attributes:
            result.extend(f(attribute).attributes)
        return AttributeSet(tuple(result))

    flat_map = bind

    # -------------------------------------------------------------------------
    # Views
    # -------------------------------------------------------------------------

    def valid_at(self, on: date) -> "AttributeSet":
        return self.filter(lambda a: a.temporal.is_valid_at(on))

    def currently_valid(self, today: Optional[date] = None) -> "AttributeSet":
        return self.valid_at(today or utcnow().date())

    def by_type(self, attribute_type: AttributeType) -> "AttributeSet":
        return self.filter(lambda a: a.attribute_type == attribute_type)

    def by_category(self, category: AttributeCategory) -> "AttributeSet":
        return self.filter(lambda a: a.attribute_type.category is category)

    def identifying(self) -> "AttributeSet":
        return self.by_category(AttributeCategory.IDENTIFYING)

    def healthcare(self) -> "AttributeSet":
        return self.by_category(AttributeCategory.HEALTHCARE)

    def find_by_type(self, attribute_type: AttributeType) -> Optional[PersonAttribute]:
        """Most recently recorded attribute of the type; later insertion wins ties."""
        found: Optional[PersonAttribute] = None
        for attribute in self.attributes:
            if attribute.attribute_type != attribute_type:
                continue
            if found is None or attribute.temporal.recorded_at >= found.temporal.recorded_at:
                found = attribute
        return found

    def find_valid_by_type(
        self, attribute_type: AttributeType, on: Optional[date] = None
    ) -> Optional[PersonAttribute]:
        """Most recently recorded attribute of the type valid on ``on`` (default today)."""
        return self.currently_valid(on).find_by_type(attribute_type)

    def history(self, attribute_type: AttributeType) -> List[PersonAttribute]:
        return list(self.by_type(attribute_type).attributes)

    def types(self) -> List[AttributeType]:
        """Distinct attribute types in first-seen order."""
        seen: Dict[AttributeType, None] = {}
        for attribute in self.attributes:
            seen.setdefault(attribute.attribute_type, None)
        return list(seen)

    def replace_where(
        self,
        predicate: Callable[[PersonAttribute], bool],
        f: Callable[[PersonAttribute], PersonAttribute],
    ) -> "AttributeSet":
        """Rewrite the attributes matching ``predicate`` in place, keeping order."""
        return self.map(lambda a: f(a) if predicate(a) else a)

    def close_open(self, attribute_type: AttributeType, on: date) -> "AttributeSet":
        """
        End every attribute of the type that is still open at ``on``.

        Attributes starting on or after ``on`` and attributes already ended
        by ``on`` are left untouched; nothing is removed.
        """

        def is_open(attribute: PersonAttribute) -> bool:
            temporal = attribute.temporal
            return (
                attribute.attribute_type == attribute_type
                and temporal.can_end_at(on)
                and (temporal.valid_until is None or temporal.valid_until > on)
            )

        return self.replace_where(is_open, lambda a: a.with_temporal(a.temporal.ending(on)))

    def __len__(self) -> int:
        return len(self.attributes)

    def __iter__(self) -> Iterator[PersonAttribute]:
        return iter(self.attributes)

    def __bool__(self) -> bool:
        return bool(self.attributes)

    def to_list(self) -> List[Dict[str, Any]]:
        return [a.to_dict() for a in self.attributes]

    @classmethod
    def from_list(cls, data: Iterable[Dict[str, Any]]) -> "AttributeSet":
        return cls(tuple(PersonAttribute.from_dict(d) for d in data))
