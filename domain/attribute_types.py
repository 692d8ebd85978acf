"""
Persona - Attribute Type Taxonomy

Closed taxonomy of attribute types. An attribute type is the pair
``(category, kind)``; it is the identity under which history accumulates
for one person. Categories and their kinds are plain enums, and
organization-specific attributes live in the CUSTOM category under an
``organization.attribute_name`` kind.

Which value variants a type accepts is not a property of the type itself
but of an ``AttributeSchema`` handed to command validation. Callers build
the schema they need and pass it in; there is no process-wide registry.

Usage:
    schema = AttributeSchema.default().with_custom(
        AttributeType.custom("acme", "badge_number"), [TextValue]
    )
    schema.validate(HEIGHT, LengthValue.from_centimeters(180))
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, Iterable, Mapping, Optional, Type, Union

from core.errors import ValidationError
from domain.values import (
    AttributeValue,
    ApproximateDateValue,
    BiologicalSexValue,
    BloodTypeValue,
    BooleanValue,
    DateTimeValue,
    DateValue,
    EyeColorValue,
    HairColorValue,
    HandednessValue,
    LengthValue,
    LocationValue,
    MassValue,
    PersonReferenceValue,
    TextListValue,
    TextValue,
    YearMonthValue,
    YearValue,
)


class AttributeCategory(str, Enum):
    """Top-level attribute categories."""
    IDENTIFYING = "identifying"
    PHYSICAL = "physical"
    HEALTHCARE = "healthcare"
    DEMOGRAPHIC = "demographic"
    CUSTOM = "custom"


class IdentifyingKind(str, Enum):
    BIRTH_DATE_TIME = "birth_date_time"
    BIRTH_DATE = "birth_date"
    BIRTH_YEAR = "birth_year"
    APPROXIMATE_BIRTH_DATE = "approximate_birth_date"
    BIRTH_PLACE = "birth_place"
    EYE_COLOR = "eye_color"
    BIOLOGICAL_SEX = "biological_sex"
    BLOOD_TYPE = "blood_type"
    MOTHER_ID = "mother_id"
    FATHER_ID = "father_id"
    NATIONAL_ID = "national_id"


class PhysicalKind(str, Enum):
    HEIGHT = "height"
    WEIGHT = "weight"
    HAIR_COLOR = "hair_color"
    HAIR_STYLE = "hair_style"
    FACIAL_HAIR = "facial_hair"
    SCARS = "scars"
    BIRTHMARKS = "birthmarks"
    TATTOOS = "tattoos"
    PIERCINGS = "piercings"
    HANDEDNESS = "handedness"


class HealthcareKind(str, Enum):
    BLOOD_TYPE = "blood_type"
    ALLERGIES = "allergies"
    CHRONIC_CONDITIONS = "chronic_conditions"
    MEDICATIONS = "medications"
    DISABILITIES = "disabilities"
    VISION_CORRECTION = "vision_correction"
    HEARING_AIDS = "hearing_aids"
    MEDICAL_RECORD_NUMBER = "medical_record_number"
    INSURANCE_ID = "insurance_id"
    ORGAN_DONOR = "organ_donor"


class DemographicKind(str, Enum):
    PREFERRED_LANGUAGE = "preferred_language"
    PRIMARY_LANGUAGE = "primary_language"
    SPOKEN_LANGUAGES = "spoken_languages"
    CITIZENSHIP = "citizenship"
    NATIONALITY = "nationality"
    ETHNICITY = "ethnicity"
    RELIGION = "religion"


KindEnum = Union[IdentifyingKind, PhysicalKind, HealthcareKind, DemographicKind]

CATEGORY_KINDS: Dict[AttributeCategory, Type[Enum]] = {
    AttributeCategory.IDENTIFYING: IdentifyingKind,
    AttributeCategory.PHYSICAL: PhysicalKind,
    AttributeCategory.HEALTHCARE: HealthcareKind,
    AttributeCategory.DEMOGRAPHIC: DemographicKind,
}


@dataclass(frozen=True, slots=True, order=True)
class AttributeType:
    """
    Value object identifying an attribute: ``(category, kind)``.

    ``kind`` is stored as its string value; for CUSTOM it is
    ``"<organization>.<attribute_name>"``.
    """
    category: AttributeCategory
    kind: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "category", AttributeCategory(self.category))
        kind = self.kind.value if isinstance(self.kind, Enum) else str(self.kind)
        object.__setattr__(self, "kind", kind)

        if self.category is AttributeCategory.CUSTOM:
            organization, _, name = kind.partition(".")
            if not organization or not name:
                raise ValueError(
                    f"Custom kind must be 'organization.attribute_name': {kind}"
                )
            return

        kinds = CATEGORY_KINDS[self.category]
        if kind not in {member.value for member in kinds}:
            raise ValueError(f"Invalid {self.category.value} kind: {kind}")

    def __str__(self) -> str:
        return self.key

    @property
    def key(self) -> str:
        """Stable string form, e.g. ``identifying.birth_date``."""
        return f"{self.category.value}.{self.kind}"

    @property
    def is_custom(self) -> bool:
        return self.category is AttributeCategory.CUSTOM

    @property
    def organization(self) -> Optional[str]:
        if not self.is_custom:
            return None
        return self.kind.partition(".")[0]

    @classmethod
    def parse(cls, key: str) -> "AttributeType":
        """Parse the ``key`` form back into a type."""
        category, _, kind = key.partition(".")
        if not kind:
            raise ValueError(f"Invalid attribute type key: {key}")
        try:
            return cls(AttributeCategory(category), kind)
        except ValueError as e:
            raise ValueError(f"Invalid attribute type key: {key}") from e

    @classmethod
    def identifying(cls, kind: IdentifyingKind) -> "AttributeType":
        return cls(AttributeCategory.IDENTIFYING, kind)

    @classmethod
    def physical(cls, kind: PhysicalKind) -> "AttributeType":
        return cls(AttributeCategory.PHYSICAL, kind)

    @classmethod
    def healthcare(cls, kind: HealthcareKind) -> "AttributeType":
        return cls(AttributeCategory.HEALTHCARE, kind)

    @classmethod
    def demographic(cls, kind: DemographicKind) -> "AttributeType":
        return cls(AttributeCategory.DEMOGRAPHIC, kind)

    @classmethod
    def custom(cls, organization: str, attribute_name: str) -> "AttributeType":
        return cls(AttributeCategory.CUSTOM, f"{organization}.{attribute_name}")


# Frequently used types
BIRTH_DATE_TIME = AttributeType.identifying(IdentifyingKind.BIRTH_DATE_TIME)
BIRTH_DATE = AttributeType.identifying(IdentifyingKind.BIRTH_DATE)
BIRTH_PLACE = AttributeType.identifying(IdentifyingKind.BIRTH_PLACE)
BIOLOGICAL_SEX = AttributeType.identifying(IdentifyingKind.BIOLOGICAL_SEX)
NATIONAL_ID = AttributeType.identifying(IdentifyingKind.NATIONAL_ID)
HEIGHT = AttributeType.physical(PhysicalKind.HEIGHT)
WEIGHT = AttributeType.physical(PhysicalKind.WEIGHT)
BLOOD_TYPE = AttributeType.healthcare(HealthcareKind.BLOOD_TYPE)
ALLERGIES = AttributeType.healthcare(HealthcareKind.ALLERGIES)
PREFERRED_LANGUAGE = AttributeType.demographic(DemographicKind.PREFERRED_LANGUAGE)


# =============================================================================
# SCHEMA
# =============================================================================


ValueVariants = FrozenSet[Type[AttributeValue]]

_TEXTUAL: ValueVariants = frozenset({TextValue, TextListValue})

_DEFAULT_RULES: Dict[AttributeType, ValueVariants] = {
    AttributeType.identifying(IdentifyingKind.BIRTH_DATE_TIME): frozenset({DateTimeValue}),
    AttributeType.identifying(IdentifyingKind.BIRTH_DATE): frozenset({DateValue}),
    AttributeType.identifying(IdentifyingKind.BIRTH_YEAR): frozenset({YearValue}),
    AttributeType.identifying(IdentifyingKind.APPROXIMATE_BIRTH_DATE): frozenset(
        {ApproximateDateValue, YearMonthValue, YearValue}
    ),
    AttributeType.identifying(IdentifyingKind.BIRTH_PLACE): frozenset({LocationValue, TextValue}),
    AttributeType.identifying(IdentifyingKind.EYE_COLOR): frozenset({EyeColorValue}),
    AttributeType.identifying(IdentifyingKind.BIOLOGICAL_SEX): frozenset({BiologicalSexValue}),
    AttributeType.identifying(IdentifyingKind.BLOOD_TYPE): frozenset({BloodTypeValue}),
    AttributeType.identifying(IdentifyingKind.MOTHER_ID): frozenset({PersonReferenceValue}),
    AttributeType.identifying(IdentifyingKind.FATHER_ID): frozenset({PersonReferenceValue}),
    AttributeType.identifying(IdentifyingKind.NATIONAL_ID): frozenset({TextValue}),
    AttributeType.physical(PhysicalKind.HEIGHT): frozenset({LengthValue}),
    AttributeType.physical(PhysicalKind.WEIGHT): frozenset({MassValue}),
    AttributeType.physical(PhysicalKind.HAIR_COLOR): frozenset({HairColorValue}),
    AttributeType.physical(PhysicalKind.HAIR_STYLE): frozenset({TextValue}),
    AttributeType.physical(PhysicalKind.FACIAL_HAIR): frozenset({TextValue}),
    AttributeType.physical(PhysicalKind.SCARS): _TEXTUAL,
    AttributeType.physical(PhysicalKind.BIRTHMARKS): _TEXTUAL,
    AttributeType.physical(PhysicalKind.TATTOOS): _TEXTUAL,
    AttributeType.physical(PhysicalKind.PIERCINGS): _TEXTUAL,
    AttributeType.physical(PhysicalKind.HANDEDNESS): frozenset({HandednessValue}),
    AttributeType.healthcare(HealthcareKind.BLOOD_TYPE): frozenset({BloodTypeValue}),
    AttributeType.healthcare(HealthcareKind.ALLERGIES): _TEXTUAL,
    AttributeType.healthcare(HealthcareKind.CHRONIC_CONDITIONS): _TEXTUAL,
    AttributeType.healthcare(HealthcareKind.MEDICATIONS): _TEXTUAL,
    AttributeType.healthcare(HealthcareKind.DISABILITIES): _TEXTUAL,
    AttributeType.healthcare(HealthcareKind.VISION_CORRECTION): frozenset({TextValue, BooleanValue}),
    AttributeType.healthcare(HealthcareKind.HEARING_AIDS): frozenset({BooleanValue}),
    AttributeType.healthcare(HealthcareKind.MEDICAL_RECORD_NUMBER): frozenset({TextValue}),
    AttributeType.healthcare(HealthcareKind.INSURANCE_ID): frozenset({TextValue}),
    AttributeType.healthcare(HealthcareKind.ORGAN_DONOR): frozenset({BooleanValue}),
    AttributeType.demographic(DemographicKind.PREFERRED_LANGUAGE): frozenset({TextValue}),
    AttributeType.demographic(DemographicKind.PRIMARY_LANGUAGE): frozenset({TextValue}),
    AttributeType.demographic(DemographicKind.SPOKEN_LANGUAGES): _TEXTUAL,
    AttributeType.demographic(DemographicKind.CITIZENSHIP): _TEXTUAL,
    AttributeType.demographic(DemographicKind.NATIONALITY): _TEXTUAL,
    AttributeType.demographic(DemographicKind.ETHNICITY): frozenset({TextValue}),
    AttributeType.demographic(DemographicKind.RELIGION): frozenset({TextValue}),
}


@dataclass(frozen=True)
class AttributeSchema:
    """
    Which value variants each attribute type accepts.

    Immutable; ``with_custom`` returns an extended copy. A type missing from
    the schema is rejected by ``validate``.
    """
    rules: Mapping[AttributeType, ValueVariants] = field(default_factory=dict)

    @classmethod
    def default(cls) -> "AttributeSchema":
        """Schema covering every built-in kind."""
        return cls(dict(_DEFAULT_RULES))

    def with_custom(
        self,
        attribute_type: AttributeType,
        accepted: Iterable[Type[AttributeValue]],
    ) -> "AttributeSchema":
        """Return a copy that also accepts ``attribute_type``."""
        if not attribute_type.is_custom:
            raise ValueError(f"Only custom types can be added: {attribute_type}")
        rules = dict(self.rules)
        rules[attribute_type] = frozenset(accepted)
        return AttributeSchema(rules)

    def knows(self, attribute_type: AttributeType) -> bool:
        return attribute_type in self.rules

    def accepted_variants(self, attribute_type: AttributeType) -> ValueVariants:
        return self.rules.get(attribute_type, frozenset())

    def accepts(self, attribute_type: AttributeType, value: AttributeValue) -> bool:
        return type(value) in self.accepted_variants(attribute_type)

    def validate(self, attribute_type: AttributeType, value: AttributeValue) -> None:
        """
        Check a value against the schema.

        Raises:
            ValidationError: Unknown type, wrong variant, or a measurement
                that is not strictly positive
        """
        if not self.knows(attribute_type):
            raise ValidationError("attribute_type", f"unknown attribute type {attribute_type}")

        if not self.accepts(attribute_type, value):
            accepted = sorted(variant.kind for variant in self.accepted_variants(attribute_type))
            raise ValidationError(
                "value",
                f"{value.kind} is not valid for {attribute_type} (expected one of {accepted})",
            )

        if isinstance(value, LengthValue) and value.meters <= 0:
            raise ValidationError("value", f"length must be positive: {value.meters}")
        if isinstance(value, MassValue) and value.kilograms <= 0:
            raise ValidationError("value", f"mass must be positive: {value.kilograms}")
