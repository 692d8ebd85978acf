"""
Persona - Temporal Validity

When a fact was recorded, and the half-open date interval
``[valid_from, valid_until)`` during which it is asserted to hold.
A missing bound is open on that side.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, datetime, timezone
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class TemporalValidity:
    """
    Value object for the validity window of an attribute.

    Invariant: ``valid_from < valid_until`` whenever both are present.
    """
    recorded_at: datetime
    valid_from: Optional[date] = None
    valid_until: Optional[date] = None

    def __post_init__(self) -> None:
        if (
            self.valid_from is not None
            and self.valid_until is not None
            and not self.valid_from < self.valid_until
        ):
            raise ValueError(
                f"valid_from ({self.valid_from}) must be before valid_until ({self.valid_until})"
            )

    @classmethod
    def of(cls, recorded_at: Optional[datetime] = None) -> "TemporalValidity":
        """Open-ended validity recorded now (or at ``recorded_at``)."""
        return cls(recorded_at=recorded_at or utcnow())

    @classmethod
    def starting(
        cls, valid_from: date, recorded_at: Optional[datetime] = None
    ) -> "TemporalValidity":
        return cls(recorded_at=recorded_at or utcnow(), valid_from=valid_from)

    @classmethod
    def between(
        cls,
        valid_from: Optional[date],
        valid_until: Optional[date],
        recorded_at: Optional[datetime] = None,
    ) -> "TemporalValidity":
        return cls(
            recorded_at=recorded_at or utcnow(),
            valid_from=valid_from,
            valid_until=valid_until,
        )

    def is_valid_at(self, on: date) -> bool:
        """Half-open membership test: ``valid_from <= on < valid_until``."""
        if self.valid_from is not None and on < self.valid_from:
            return False
        if self.valid_until is not None and on >= self.valid_until:
            return False
        return True

    def is_currently_valid(self, today: Optional[date] = None) -> bool:
        return self.is_valid_at(today or utcnow().date())

    @property
    def is_closed(self) -> bool:
        return self.valid_until is not None

    def can_end_at(self, on: date) -> bool:
        return self.valid_from is None or self.valid_from < on

    def ending(self, on: date) -> "TemporalValidity":
        """
        Close the interval at ``on``. An earlier existing end is kept.

        Raises:
            ValueError: If ``on`` is not after ``valid_from``
        """
        if self.valid_until is not None and self.valid_until <= on:
            return self
        return replace(self, valid_until=on)

    def compose(self, other: "TemporalValidity") -> "TemporalValidity":
        """
        Intersect two validities.

        Keeps the later ``recorded_at``, the later ``valid_from`` and the
        earlier ``valid_until``.

        Raises:
            ValueError: If the intervals do not overlap
        """
        starts = [d for d in (self.valid_from, other.valid_from) if d is not None]
        ends = [d for d in (self.valid_until, other.valid_until) if d is not None]
        return TemporalValidity(
            recorded_at=max(self.recorded_at, other.recorded_at),
            valid_from=max(starts) if starts else None,
            valid_until=min(ends) if ends else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recorded_at": self.recorded_at.isoformat(),
            "valid_from": self.valid_from.isoformat() if self.valid_from else None,
            "valid_until": self.valid_until.isoformat() if self.valid_until else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TemporalValidity":
        return cls(
            recorded_at=datetime.fromisoformat(data["recorded_at"]),
            valid_from=date.fromisoformat(data["valid_from"]) if data.get("valid_from") else None,
            valid_until=date.fromisoformat(data["valid_until"]) if data.get("valid_until") else None,
        )
