"""
CQRS: Person Command Definitions

Commands represent intentions to change a person record. They are
validated by ``domain.command_handlers.handle`` and either rejected with an
error or turned into events.

Every command targets exactly one person. ``expected_version``, when set,
asks the write path to reject the command unless the person is still at
that version.
"""
from dataclasses import dataclass, field
from datetime import date
from typing import Optional
from uuid import UUID, uuid4

from domain.attribute_types import AttributeType
from domain.provenance import AttributeSource, ConfidenceLevel
from domain.values import AttributeValue


@dataclass(frozen=True, kw_only=True)
class BaseCommand:
    """Base class for all person commands."""
    person_id: str
    command_id: UUID = field(default_factory=uuid4)
    correlation_id: Optional[str] = None
    actor: str = "system"
    expected_version: Optional[int] = None

    @property
    def command_type(self) -> str:
        return type(self).__name__


# ==================== Lifecycle Commands ====================

@dataclass(frozen=True, kw_only=True)
class CreatePerson(BaseCommand):
    """
    Open a new person record.

    Args:
        legal_name_ref: Reference to the legal name
        birth_date: Optional birth date held on the core identity
    """
    legal_name_ref: str
    birth_date: Optional[date] = None


@dataclass(frozen=True, kw_only=True)
class UpdateName(BaseCommand):
    legal_name_ref: str


@dataclass(frozen=True, kw_only=True)
class DeactivatePerson(BaseCommand):
    reason: str


@dataclass(frozen=True, kw_only=True)
class ReactivatePerson(BaseCommand):
    pass


@dataclass(frozen=True, kw_only=True)
class RecordDeath(BaseCommand):
    death_date: date


@dataclass(frozen=True, kw_only=True)
class MergePerson(BaseCommand):
    """
    Declare this person to be a duplicate of ``target_id``.

    Args:
        target_id: Surviving person record
        similarity_threshold: Minimum disambiguation score required; None
            uses the configured default
    """
    target_id: str
    similarity_threshold: Optional[float] = None


# ==================== Attribute Commands ====================

@dataclass(frozen=True, kw_only=True)
class RecordAttribute(BaseCommand):
    """
    Record a new fact about the person.

    Args:
        attribute_type: Taxonomy entry the value belongs to
        value: The typed value
        valid_from: First day the fact holds (inclusive), open if None
        valid_until: First day the fact no longer holds, open if None
        source: How the value entered the system
        confidence: How much the value is trusted
        source_system: Name of the importing system for IMPORTED values
    """
    attribute_type: AttributeType
    value: AttributeValue
    valid_from: Optional[date] = None
    valid_until: Optional[date] = None
    source: AttributeSource = AttributeSource.SELF_REPORTED
    confidence: ConfidenceLevel = ConfidenceLevel.LIKELY
    source_system: Optional[str] = None


@dataclass(frozen=True, kw_only=True)
class UpdateAttribute(RecordAttribute):
    """
    Supersede the current value of ``attribute_type``.

    The previous value is closed on ``valid_from`` (today when omitted) and
    kept in the history.
    """


@dataclass(frozen=True, kw_only=True)
class InvalidateAttribute(BaseCommand):
    """
    Stop asserting the current value of ``attribute_type``.

    Args:
        effective_on: First day the value no longer holds; today when None
    """
    attribute_type: AttributeType
    reason: str = ""
    effective_on: Optional[date] = None
