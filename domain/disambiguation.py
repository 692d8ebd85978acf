"""
Persona - Identity Disambiguation

Weighted similarity between two person records, used when two records
present colliding names and before a merge is accepted.

Criteria and weights:
    name            0.30  always evaluated, fuzzy ratio of normalized names
    birth instant   0.40  when both carry a birth date-time; exact match
    birth date      0.35  otherwise, when both carry a birth date; exact match
    birth place     0.20  when both carry one; exact match
    biological sex  0.05  when both carry one; a mismatch forces 0.0

The score is the credited weight divided by the weight actually evaluated,
so criteria missing on either side count neither for nor against.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from difflib import SequenceMatcher
from typing import Dict, Optional

from domain.attribute_types import (
    BIOLOGICAL_SEX,
    BIRTH_DATE,
    BIRTH_DATE_TIME,
    BIRTH_PLACE,
)
from domain.entity import Person
from domain.values import AttributeValue, DateTimeValue, DateValue

logger = logging.getLogger(__name__)

NAME_WEIGHT = 0.30
BIRTH_DATE_TIME_WEIGHT = 0.40
BIRTH_DATE_WEIGHT = 0.35
BIRTH_PLACE_WEIGHT = 0.20
BIOLOGICAL_SEX_WEIGHT = 0.05

DEFAULT_MATCH_THRESHOLD = 0.8


@dataclass(frozen=True)
class DisambiguationResult:
    """Score plus the per-criterion credit that produced it."""
    score: float
    evaluated_weight: float
    breakdown: Dict[str, float] = field(default_factory=dict)
    definitive_mismatch: bool = False
    threshold: float = DEFAULT_MATCH_THRESHOLD

    @property
    def is_match(self) -> bool:
        return not self.definitive_mismatch and self.score >= self.threshold


def normalize_name(name: str) -> str:
    return " ".join(name.casefold().split())


def name_similarity(left: str, right: str) -> float:
    left, right = normalize_name(left), normalize_name(right)
    if not left and not right:
        return 1.0
    return SequenceMatcher(None, left, right).ratio()


def _current_value(person: Person, attribute_type, today: Optional[date]) -> Optional[AttributeValue]:
    attribute = person.attributes.find_valid_by_type(attribute_type, today)
    return attribute.value if attribute else None


def _birth_date(person: Person, today: Optional[date]) -> Optional[date]:
    value = _current_value(person, BIRTH_DATE, today)
    if isinstance(value, DateValue):
        return value.on
    instant = _current_value(person, BIRTH_DATE_TIME, today)
    if isinstance(instant, DateTimeValue):
        return instant.date
    if person.core_identity is not None:
        return person.core_identity.birth_date
    return None


def disambiguate(
    left: Person,
    right: Person,
    threshold: float = DEFAULT_MATCH_THRESHOLD,
    today: Optional[date] = None,
) -> DisambiguationResult:
    """
    Score how likely two records describe the same person.

    Only currently valid attributes (as of ``today``) take part.
    """
    left_sex = _current_value(left, BIOLOGICAL_SEX, today)
    right_sex = _current_value(right, BIOLOGICAL_SEX, today)
    if left_sex is not None and right_sex is not None and left_sex != right_sex:
        logger.debug(f"Biological sex differs between {left.id} and {right.id}")
        return DisambiguationResult(
            score=0.0,
            evaluated_weight=BIOLOGICAL_SEX_WEIGHT,
            breakdown={"biological_sex": 0.0},
            definitive_mismatch=True,
            threshold=threshold,
        )

    breakdown: Dict[str, float] = {}
    evaluated = 0.0

    breakdown["name"] = NAME_WEIGHT * name_similarity(
        left.legal_name_ref or "", right.legal_name_ref or ""
    )
    evaluated += NAME_WEIGHT

    left_instant = _current_value(left, BIRTH_DATE_TIME, today)
    right_instant = _current_value(right, BIRTH_DATE_TIME, today)
    if isinstance(left_instant, DateTimeValue) and isinstance(right_instant, DateTimeValue):
        evaluated += BIRTH_DATE_TIME_WEIGHT
        breakdown["birth_date_time"] = (
            BIRTH_DATE_TIME_WEIGHT if left_instant.at == right_instant.at else 0.0
        )
    else:
        left_date = _birth_date(left, today)
        right_date = _birth_date(right, today)
        if left_date is not None and right_date is not None:
            evaluated += BIRTH_DATE_WEIGHT
            breakdown["birth_date"] = BIRTH_DATE_WEIGHT if left_date == right_date else 0.0

    left_place = _current_value(left, BIRTH_PLACE, today)
    right_place = _current_value(right, BIRTH_PLACE, today)
    if left_place is not None and right_place is not None:
        evaluated += BIRTH_PLACE_WEIGHT
        breakdown["birth_place"] = BIRTH_PLACE_WEIGHT if left_place == right_place else 0.0

    if left_sex is not None and right_sex is not None:
        evaluated += BIOLOGICAL_SEX_WEIGHT
        breakdown["biological_sex"] = BIOLOGICAL_SEX_WEIGHT

    score = min(1.0, sum(breakdown.values()) / evaluated) if evaluated else 0.0
    return DisambiguationResult(
        score=score,
        evaluated_weight=evaluated,
        breakdown=breakdown,
        threshold=threshold,
    )


def similarity(left: Person, right: Person, today: Optional[date] = None) -> float:
    """Similarity score in [0, 1]."""
    return disambiguate(left, right, today=today).score
