"""
Persona - Attribute Values

The closed set of typed values an attribute can carry. Each variant is an
immutable, self-validating value object; adding a variant is a data
definition change in this module, never a subclass elsewhere.

Equality and ordering are variant-specific: values of the same variant
compare by payload, measurements compare in their normalized unit (meters,
kilograms), and ordering across variants is undefined (TypeError).

Usage:
    height = LengthValue.from_centimeters(180)
    assert height == LengthValue(1.8)

    data = height.to_dict()          # {"kind": "length", "meters": 1.8}
    assert value_from_dict(data) == height
"""
from __future__ import annotations

import json
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, ClassVar, Dict, Mapping, Tuple, Type


# =============================================================================
# ENUMERATED CATEGORIES
# =============================================================================


class DatePrecision(str, Enum):
    """How much of an approximate date is meaningful."""
    EXACT = "exact"
    MONTH = "month"
    YEAR = "year"
    DECADE = "decade"
    CENTURY = "century"


class BloodType(str, Enum):
    """ABO/Rh blood groups."""
    A_POSITIVE = "A+"
    A_NEGATIVE = "A-"
    B_POSITIVE = "B+"
    B_NEGATIVE = "B-"
    AB_POSITIVE = "AB+"
    AB_NEGATIVE = "AB-"
    O_POSITIVE = "O+"
    O_NEGATIVE = "O-"


class EyeColor(str, Enum):
    BROWN = "brown"
    BLUE = "blue"
    GREEN = "green"
    HAZEL = "hazel"
    GRAY = "gray"
    AMBER = "amber"
    HETEROCHROMIA = "heterochromia"


class HairColor(str, Enum):
    BLACK = "black"
    BROWN = "brown"
    BLONDE = "blonde"
    RED = "red"
    GRAY = "gray"
    WHITE = "white"
    DYED = "dyed"


class BiologicalSex(str, Enum):
    MALE = "male"
    FEMALE = "female"
    INTERSEX = "intersex"


class Handedness(str, Enum):
    RIGHT = "right"
    LEFT = "left"
    AMBIDEXTROUS = "ambidextrous"


# =============================================================================
# VALUE VARIANTS
# =============================================================================


class AttributeValue(ABC):
    """
    Base of the attribute value sum type.

    Subclasses are frozen dataclasses carrying a ``kind`` tag used for
    serialization and schema checks.
    """

    __slots__ = ()

    kind: ClassVar[str] = ""

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a JSON-compatible dictionary tagged with ``kind``."""
        return {"kind": self.kind, **self._payload()}

    @abstractmethod
    def _payload(self) -> Dict[str, Any]:
        ...

    @classmethod
    @abstractmethod
    def _from_payload(cls, data: Mapping[str, Any]) -> "AttributeValue":
        ...

    @abstractmethod
    def display(self) -> str:
        """Human-readable rendering used by search indexing."""


def _check_finite(name: str, number: float) -> None:
    if not math.isfinite(number):
        raise ValueError(f"{name} must be finite: {number}")


@dataclass(frozen=True, slots=True, order=True)
class TextValue(AttributeValue):
    kind: ClassVar[str] = "text"

    text: str

    def _payload(self) -> Dict[str, Any]:
        return {"text": self.text}

    @classmethod
    def _from_payload(cls, data: Mapping[str, Any]) -> "TextValue":
        return cls(data["text"])

    def display(self) -> str:
        return self.text


@dataclass(frozen=True, slots=True, order=True)
class NumberValue(AttributeValue):
    kind: ClassVar[str] = "number"

    number: float

    def __post_init__(self) -> None:
        _check_finite("number", self.number)

    def _payload(self) -> Dict[str, Any]:
        return {"number": self.number}

    @classmethod
    def _from_payload(cls, data: Mapping[str, Any]) -> "NumberValue":
        return cls(float(data["number"]))

    def display(self) -> str:
        return f"{self.number:g}"


@dataclass(frozen=True, slots=True, order=True)
class IntegerValue(AttributeValue):
    kind: ClassVar[str] = "integer"

    integer: int

    def _payload(self) -> Dict[str, Any]:
        return {"integer": self.integer}

    @classmethod
    def _from_payload(cls, data: Mapping[str, Any]) -> "IntegerValue":
        return cls(int(data["integer"]))

    def display(self) -> str:
        return str(self.integer)


@dataclass(frozen=True, slots=True, order=True)
class BooleanValue(AttributeValue):
    kind: ClassVar[str] = "boolean"

    flag: bool

    def _payload(self) -> Dict[str, Any]:
        return {"flag": self.flag}

    @classmethod
    def _from_payload(cls, data: Mapping[str, Any]) -> "BooleanValue":
        return cls(bool(data["flag"]))

    def display(self) -> str:
        return "yes" if self.flag else "no"


@dataclass(frozen=True, slots=True, order=True)
class DateTimeValue(AttributeValue):
    """An instant. Must be timezone-aware so instants compare safely."""
    kind: ClassVar[str] = "date_time"

    at: datetime

    def __post_init__(self) -> None:
        if self.at.tzinfo is None:
            raise ValueError(f"date_time must be timezone-aware: {self.at}")

    @property
    def date(self) -> date:
        return self.at.date()

    def _payload(self) -> Dict[str, Any]:
        return {"at": self.at.isoformat()}

    @classmethod
    def _from_payload(cls, data: Mapping[str, Any]) -> "DateTimeValue":
        return cls(datetime.fromisoformat(data["at"]))

    def display(self) -> str:
        return self.at.isoformat()


@dataclass(frozen=True, slots=True, order=True)
class DateValue(AttributeValue):
    kind: ClassVar[str] = "date"

    on: date

    def _payload(self) -> Dict[str, Any]:
        return {"on": self.on.isoformat()}

    @classmethod
    def _from_payload(cls, data: Mapping[str, Any]) -> "DateValue":
        return cls(date.fromisoformat(data["on"]))

    def display(self) -> str:
        return self.on.isoformat()


@dataclass(frozen=True, slots=True, order=True)
class YearMonthValue(AttributeValue):
    kind: ClassVar[str] = "year_month"

    year: int
    month: int

    def __post_init__(self) -> None:
        if not 1 <= self.month <= 12:
            raise ValueError(f"month must be 1-12: {self.month}")

    def _payload(self) -> Dict[str, Any]:
        return {"year": self.year, "month": self.month}

    @classmethod
    def _from_payload(cls, data: Mapping[str, Any]) -> "YearMonthValue":
        return cls(int(data["year"]), int(data["month"]))

    def display(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"


@dataclass(frozen=True, slots=True, order=True)
class YearValue(AttributeValue):
    kind: ClassVar[str] = "year"

    year: int

    def _payload(self) -> Dict[str, Any]:
        return {"year": self.year}

    @classmethod
    def _from_payload(cls, data: Mapping[str, Any]) -> "YearValue":
        return cls(int(data["year"]))

    def display(self) -> str:
        return str(self.year)


@dataclass(frozen=True, slots=True, order=True)
class ApproximateDateValue(AttributeValue):
    """A date known only to the given precision."""
    kind: ClassVar[str] = "approximate_date"

    on: date
    precision: DatePrecision = DatePrecision.EXACT

    def _payload(self) -> Dict[str, Any]:
        return {"on": self.on.isoformat(), "precision": self.precision.value}

    @classmethod
    def _from_payload(cls, data: Mapping[str, Any]) -> "ApproximateDateValue":
        return cls(date.fromisoformat(data["on"]), DatePrecision(data["precision"]))

    def display(self) -> str:
        if self.precision is DatePrecision.EXACT:
            return self.on.isoformat()
        if self.precision is DatePrecision.MONTH:
            return f"~{self.on.year:04d}-{self.on.month:02d}"
        if self.precision is DatePrecision.YEAR:
            return f"~{self.on.year}"
        if self.precision is DatePrecision.DECADE:
            return f"~{self.on.year // 10 * 10}s"
        return f"~{self.on.year // 100 + 1}th century"


@dataclass(frozen=True, slots=True, order=True)
class LengthValue(AttributeValue):
    """A length, normalized to meters."""
    kind: ClassVar[str] = "length"

    meters: float

    CENTIMETERS_PER_METER: ClassVar[float] = 100.0
    METERS_PER_INCH: ClassVar[float] = 0.0254

    def __post_init__(self) -> None:
        _check_finite("meters", self.meters)

    @classmethod
    def from_centimeters(cls, centimeters: float) -> "LengthValue":
        return cls(centimeters / cls.CENTIMETERS_PER_METER)

    @classmethod
    def from_inches(cls, inches: float) -> "LengthValue":
        return cls(inches * cls.METERS_PER_INCH)

    @property
    def centimeters(self) -> float:
        return self.meters * self.CENTIMETERS_PER_METER

    def _payload(self) -> Dict[str, Any]:
        return {"meters": self.meters}

    @classmethod
    def _from_payload(cls, data: Mapping[str, Any]) -> "LengthValue":
        return cls(float(data["meters"]))

    def display(self) -> str:
        return f"{self.meters:g} m"


@dataclass(frozen=True, slots=True, order=True)
class MassValue(AttributeValue):
    """A mass, normalized to kilograms."""
    kind: ClassVar[str] = "mass"

    kilograms: float

    GRAMS_PER_KILOGRAM: ClassVar[float] = 1000.0
    KILOGRAMS_PER_POUND: ClassVar[float] = 0.45359237

    def __post_init__(self) -> None:
        _check_finite("kilograms", self.kilograms)

    @classmethod
    def from_grams(cls, grams: float) -> "MassValue":
        return cls(grams / cls.GRAMS_PER_KILOGRAM)

    @classmethod
    def from_pounds(cls, pounds: float) -> "MassValue":
        return cls(pounds * cls.KILOGRAMS_PER_POUND)

    def _payload(self) -> Dict[str, Any]:
        return {"kilograms": self.kilograms}

    @classmethod
    def _from_payload(cls, data: Mapping[str, Any]) -> "MassValue":
        return cls(float(data["kilograms"]))

    def display(self) -> str:
        return f"{self.kilograms:g} kg"


@dataclass(frozen=True, slots=True, order=True)
class BloodTypeValue(AttributeValue):
    kind: ClassVar[str] = "blood_type"

    blood_type: BloodType

    def _payload(self) -> Dict[str, Any]:
        return {"blood_type": self.blood_type.value}

    @classmethod
    def _from_payload(cls, data: Mapping[str, Any]) -> "BloodTypeValue":
        return cls(BloodType(data["blood_type"]))

    def display(self) -> str:
        return self.blood_type.value


@dataclass(frozen=True, slots=True, order=True)
class EyeColorValue(AttributeValue):
    kind: ClassVar[str] = "eye_color"

    color: EyeColor

    def _payload(self) -> Dict[str, Any]:
        return {"color": self.color.value}

    @classmethod
    def _from_payload(cls, data: Mapping[str, Any]) -> "EyeColorValue":
        return cls(EyeColor(data["color"]))

    def display(self) -> str:
        return self.color.value


@dataclass(frozen=True, slots=True, order=True)
class HairColorValue(AttributeValue):
    kind: ClassVar[str] = "hair_color"

    color: HairColor

    def _payload(self) -> Dict[str, Any]:
        return {"color": self.color.value}

    @classmethod
    def _from_payload(cls, data: Mapping[str, Any]) -> "HairColorValue":
        return cls(HairColor(data["color"]))

    def display(self) -> str:
        return self.color.value


@dataclass(frozen=True, slots=True, order=True)
class BiologicalSexValue(AttributeValue):
    kind: ClassVar[str] = "biological_sex"

    sex: BiologicalSex

    def _payload(self) -> Dict[str, Any]:
        return {"sex": self.sex.value}

    @classmethod
    def _from_payload(cls, data: Mapping[str, Any]) -> "BiologicalSexValue":
        return cls(BiologicalSex(data["sex"]))

    def display(self) -> str:
        return self.sex.value


@dataclass(frozen=True, slots=True, order=True)
class HandednessValue(AttributeValue):
    kind: ClassVar[str] = "handedness"

    handedness: Handedness

    def _payload(self) -> Dict[str, Any]:
        return {"handedness": self.handedness.value}

    @classmethod
    def _from_payload(cls, data: Mapping[str, Any]) -> "HandednessValue":
        return cls(Handedness(data["handedness"]))

    def display(self) -> str:
        return self.handedness.value


@dataclass(frozen=True, slots=True, order=True)
class LocationValue(AttributeValue):
    """Opaque reference to a location record owned elsewhere."""
    kind: ClassVar[str] = "location"

    location_id: str

    def _payload(self) -> Dict[str, Any]:
        return {"location_id": self.location_id}

    @classmethod
    def _from_payload(cls, data: Mapping[str, Any]) -> "LocationValue":
        return cls(data["location_id"])

    def display(self) -> str:
        return self.location_id


@dataclass(frozen=True, slots=True, order=True)
class PersonReferenceValue(AttributeValue):
    """Opaque id of another person; never an owning reference."""
    kind: ClassVar[str] = "person_reference"

    person_id: str

    def _payload(self) -> Dict[str, Any]:
        return {"person_id": self.person_id}

    @classmethod
    def _from_payload(cls, data: Mapping[str, Any]) -> "PersonReferenceValue":
        return cls(data["person_id"])

    def display(self) -> str:
        return self.person_id


@dataclass(frozen=True, slots=True, order=True)
class TextListValue(AttributeValue):
    kind: ClassVar[str] = "text_list"

    items: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        # Accept any iterable of strings but store an immutable tuple.
        object.__setattr__(self, "items", tuple(self.items))

    def _payload(self) -> Dict[str, Any]:
        return {"items": list(self.items)}

    @classmethod
    def _from_payload(cls, data: Mapping[str, Any]) -> "TextListValue":
        return cls(tuple(data["items"]))

    def display(self) -> str:
        return ", ".join(self.items)


@dataclass(frozen=True, slots=True)
class JsonValue(AttributeValue):
    """Opaque structured payload. Equality is structural; no ordering."""
    kind: ClassVar[str] = "json"

    payload: Dict[str, Any] = field(default_factory=dict)

    def __hash__(self) -> int:
        return hash(json.dumps(self.payload, sort_keys=True, default=str))

    def _payload(self) -> Dict[str, Any]:
        return {"payload": self.payload}

    @classmethod
    def _from_payload(cls, data: Mapping[str, Any]) -> "JsonValue":
        return cls(dict(data["payload"]))

    def display(self) -> str:
        return json.dumps(self.payload, sort_keys=True, default=str)


VALUE_VARIANTS: Dict[str, Type[AttributeValue]] = {
    variant.kind: variant
    for variant in (
        TextValue,
        NumberValue,
        IntegerValue,
        BooleanValue,
        DateTimeValue,
        DateValue,
        YearMonthValue,
        YearValue,
        ApproximateDateValue,
        LengthValue,
        MassValue,
        BloodTypeValue,
        EyeColorValue,
        HairColorValue,
        BiologicalSexValue,
        HandednessValue,
        LocationValue,
        PersonReferenceValue,
        TextListValue,
        JsonValue,
    )
}


def value_from_dict(data: Mapping[str, Any]) -> AttributeValue:
    """
    Reconstruct a value from its ``to_dict`` form.

    Raises:
        ValueError: If the kind tag is missing or unknown
    """
    kind = data.get("kind")
    variant = VALUE_VARIANTS.get(kind) if kind else None
    if variant is None:
        raise ValueError(f"Unknown attribute value kind: {kind}")
    return variant._from_payload(data)
