"""
Tests for domain/values.py and domain/attribute_types.py.

Covers:
- Value variant construction and validation
- Measurement normalization and equality
- Serialization by kind tag
- Attribute type keys and schema validation
"""
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import ClassVar

import pytest

from core.errors import ValidationError
from domain.attribute_types import (
    ALLERGIES,
    BIRTH_DATE,
    HEIGHT,
    AttributeCategory,
    AttributeSchema,
    AttributeType,
    IdentifyingKind,
)
from domain.values import (
    ApproximateDateValue,
    AttributeValue,
    BloodType,
    BloodTypeValue,
    DatePrecision,
    DateTimeValue,
    DateValue,
    JsonValue,
    LengthValue,
    MassValue,
    TextListValue,
    TextValue,
    YearMonthValue,
    value_from_dict,
)


# =============================================================================
# Value Variant Tests
# =============================================================================

class TestValueVariants:
    """Tests for the attribute value sum type."""

    def test_length_normalizes_to_meters(self):
        """Test centimeters and inches normalize to the same unit."""
        assert LengthValue.from_centimeters(180) == LengthValue(1.8)
        assert LengthValue.from_inches(10).meters == pytest.approx(0.254)
        assert LengthValue(1.8).centimeters == pytest.approx(180)

    def test_mass_normalizes_to_kilograms(self):
        """Test grams and pounds normalize to kilograms."""
        assert MassValue.from_grams(70500) == MassValue(70.5)
        assert MassValue.from_pounds(1).kilograms == pytest.approx(0.45359237)

    def test_non_finite_measurements_rejected(self):
        """Test NaN and infinity are rejected."""
        with pytest.raises(ValueError):
            LengthValue(float("nan"))
        with pytest.raises(ValueError):
            MassValue(float("inf"))

    def test_date_time_requires_timezone(self):
        """Test naive instants are rejected."""
        with pytest.raises(ValueError):
            DateTimeValue(datetime(1990, 5, 15, 8, 30))

        aware = DateTimeValue(datetime(1990, 5, 15, 8, 30, tzinfo=timezone.utc))
        assert aware.date == date(1990, 5, 15)

    def test_year_month_range(self):
        """Test month must lie in 1-12."""
        with pytest.raises(ValueError):
            YearMonthValue(1990, 13)
        assert YearMonthValue(1990, 5).display() == "1990-05"

    def test_same_variant_ordering(self):
        """Test values of the same variant are ordered by payload."""
        assert DateValue(date(1990, 1, 1)) < DateValue(date(1991, 1, 1))
        assert LengthValue(1.5) < LengthValue(1.8)

    def test_cross_variant_ordering_undefined(self):
        """Test ordering across variants raises TypeError."""
        with pytest.raises(TypeError):
            TextValue("a") < LengthValue(1.0)

    def test_text_list_is_immutable_tuple(self):
        """Test list input is stored as a tuple."""
        value = TextListValue(["peanuts", "penicillin"])
        assert value.items == ("peanuts", "penicillin")
        assert value.display() == "peanuts, penicillin"

    def test_json_value_hashable(self):
        """Test structurally equal JSON payloads hash equally."""
        left = JsonValue({"a": 1, "b": [1, 2]})
        right = JsonValue({"b": [1, 2], "a": 1})
        assert left == right
        assert hash(left) == hash(right)

    def test_approximate_date_display(self):
        """Test display reflects precision."""
        on = date(1987, 6, 1)
        assert ApproximateDateValue(on, DatePrecision.YEAR).display() == "~1987"
        assert ApproximateDateValue(on, DatePrecision.DECADE).display() == "~1980s"

    def test_variant_missing_methods_cannot_be_built(self):
        """Test a variant lacking payload or display is rejected on construction."""

        @dataclass(frozen=True)
        class HalfDone(AttributeValue):
            kind: ClassVar[str] = "half_done"

            text: str

            def _payload(self):
                return {"text": self.text}

        with pytest.raises(TypeError):
            HalfDone("x")

        with pytest.raises(TypeError):
            AttributeValue()


class TestValueSerialization:
    """Tests for kind-tagged serialization."""

    @pytest.mark.parametrize("value", [
        TextValue("Alice"),
        DateValue(date(1990, 5, 15)),
        LengthValue.from_centimeters(165),
        BloodTypeValue(BloodType.O_NEGATIVE),
        ApproximateDateValue(date(1950, 1, 1), DatePrecision.DECADE),
        TextListValue(("en", "fr")),
    ])
    def test_to_dict_from_dict(self, value):
        """Test every variant reconstructs from its tagged dictionary."""
        data = value.to_dict()
        assert data["kind"] == value.kind
        assert value_from_dict(data) == value

    def test_unknown_kind_rejected(self):
        """Test unknown kinds raise ValueError."""
        with pytest.raises(ValueError, match="Unknown attribute value kind"):
            value_from_dict({"kind": "colour", "value": "teal"})


# =============================================================================
# Attribute Type Tests
# =============================================================================

class TestAttributeType:
    """Tests for the (category, kind) taxonomy."""

    def test_key_round_trip(self):
        """Test key form parses back to the same type."""
        assert BIRTH_DATE.key == "identifying.birth_date"
        assert AttributeType.parse("identifying.birth_date") == BIRTH_DATE

    def test_kind_must_belong_to_category(self):
        """Test a physical kind cannot be used as identifying."""
        with pytest.raises(ValueError):
            AttributeType(AttributeCategory.IDENTIFYING, "height")

    def test_custom_requires_organization(self):
        """Test custom kinds need 'organization.attribute_name'."""
        badge = AttributeType.custom("acme", "badge_number")
        assert badge.is_custom
        assert badge.organization == "acme"
        assert AttributeType.parse(badge.key) == badge

        with pytest.raises(ValueError):
            AttributeType(AttributeCategory.CUSTOM, "badge_number")

    def test_enum_kind_accepted(self):
        """Test enum members are stored as their string value."""
        attribute_type = AttributeType.identifying(IdentifyingKind.BIRTH_PLACE)
        assert attribute_type.kind == "birth_place"


class TestAttributeSchema:
    """Tests for schema-driven value validation."""

    def test_accepts_matching_variant(self):
        """Test a valid pair passes silently."""
        AttributeSchema.default().validate(HEIGHT, LengthValue.from_centimeters(170))

    def test_rejects_wrong_variant(self):
        """Test a date cannot be a height."""
        with pytest.raises(ValidationError) as exc_info:
            AttributeSchema.default().validate(HEIGHT, DateValue(date(2000, 1, 1)))
        assert exc_info.value.field == "value"

    def test_rejects_non_positive_measurement(self):
        """Test zero-length heights are rejected."""
        with pytest.raises(ValidationError):
            AttributeSchema.default().validate(HEIGHT, LengthValue(0.0))

    def test_textual_types_accept_lists(self):
        """Test allergy lists are accepted."""
        AttributeSchema.default().validate(ALLERGIES, TextListValue(("peanuts",)))

    def test_custom_types_need_registration(self):
        """Test custom types are unknown until added to a schema copy."""
        badge = AttributeType.custom("acme", "badge_number")
        schema = AttributeSchema.default()

        with pytest.raises(ValidationError):
            schema.validate(badge, TextValue("B-42"))

        extended = schema.with_custom(badge, [TextValue])
        extended.validate(badge, TextValue("B-42"))
        assert not schema.knows(badge)

    def test_with_custom_rejects_builtin(self):
        """Test built-in types cannot be redefined."""
        with pytest.raises(ValueError):
            AttributeSchema.default().with_custom(HEIGHT, [TextValue])
