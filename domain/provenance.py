"""
Persona - Provenance

Where a value came from, how much it is trusted, and every transformation
applied to it since. The transformation trace is an append-only audit log:
appending returns a new Provenance sharing the old records.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from domain.temporal import utcnow


class AttributeSource(str, Enum):
    """How a value entered the system."""
    SELF_REPORTED = "self_reported"
    MEASURED = "measured"
    DOCUMENT_VERIFIED = "document_verified"
    COMPUTED = "computed"
    IMPORTED = "imported"


class ConfidenceLevel(str, Enum):
    """Qualitative trust in a value, strongest first."""
    CERTAIN = "certain"
    LIKELY = "likely"
    POSSIBLE = "possible"
    UNCERTAIN = "uncertain"

    @property
    def rank(self) -> int:
        return _CONFIDENCE_RANK[self]

    def is_at_least(self, other: "ConfidenceLevel") -> bool:
        return self.rank >= other.rank


_CONFIDENCE_RANK = {
    ConfidenceLevel.CERTAIN: 3,
    ConfidenceLevel.LIKELY: 2,
    ConfidenceLevel.POSSIBLE: 1,
    ConfidenceLevel.UNCERTAIN: 0,
}


@dataclass(frozen=True, slots=True)
class TransformationRecord:
    """One entry of the audit trace."""
    operation: str
    timestamp: datetime
    actor: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation,
            "timestamp": self.timestamp.isoformat(),
            "actor": self.actor,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TransformationRecord":
        return cls(
            operation=data["operation"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            actor=data["actor"],
        )


@dataclass(frozen=True, slots=True)
class Provenance:
    """
    Value object describing origin and trust of an attribute value.

    ``trace`` does not take part in equality: two provenances describing
    the same origin are equal regardless of how many transformations have
    been audited on either.
    """
    source: AttributeSource
    confidence: ConfidenceLevel
    recorded_by: str = "system"
    recorded_at: datetime = field(default_factory=utcnow)
    source_system: Optional[str] = None
    trace: Tuple[TransformationRecord, ...] = field(default=(), compare=False)

    def __post_init__(self) -> None:
        if self.source is AttributeSource.IMPORTED and not self.source_system:
            raise ValueError("Imported provenance requires source_system")

    @classmethod
    def self_reported(cls, recorded_by: str = "system") -> "Provenance":
        return cls(AttributeSource.SELF_REPORTED, ConfidenceLevel.LIKELY, recorded_by)

    @classmethod
    def document_verified(cls, recorded_by: str = "system") -> "Provenance":
        return cls(AttributeSource.DOCUMENT_VERIFIED, ConfidenceLevel.CERTAIN, recorded_by)

    @classmethod
    def imported(cls, system: str, recorded_by: str = "system") -> "Provenance":
        return cls(
            AttributeSource.IMPORTED,
            ConfidenceLevel.POSSIBLE,
            recorded_by,
            source_system=system,
        )

    def with_transformation(
        self,
        operation: str,
        actor: str = "system",
        at: Optional[datetime] = None,
    ) -> "Provenance":
        """Return a copy with one more record appended to the trace."""
        record = TransformationRecord(operation=operation, timestamp=at or utcnow(), actor=actor)
        return replace(self, trace=self.trace + (record,))

    def compose(self, other: "Provenance") -> "Provenance":
        """
        Combine with a later provenance.

        Traces are concatenated in order and the later ``recorded_at`` is
        kept together with the origin that recorded it.
        """
        latest = other if other.recorded_at >= self.recorded_at else self
        return replace(latest, trace=self.trace + other.trace)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source.value,
            "confidence": self.confidence.value,
            "recorded_by": self.recorded_by,
            "recorded_at": self.recorded_at.isoformat(),
            "source_system": self.source_system,
            "trace": [record.to_dict() for record in self.trace],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Provenance":
        return cls(
            source=AttributeSource(data["source"]),
            confidence=ConfidenceLevel(data["confidence"]),
            recorded_by=data.get("recorded_by", "system"),
            recorded_at=datetime.fromisoformat(data["recorded_at"]),
            source_system=data.get("source_system"),
            trace=tuple(TransformationRecord.from_dict(r) for r in data.get("trace", [])),
        )
