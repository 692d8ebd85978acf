"""
CQRS: Person Command Handling

``handle(state, command, context)`` is the pure decision function of the
write side: it validates a command against the current state and returns
the events that record the decision, or raises one of the domain errors
from ``core.errors``. It performs no I/O and never mutates ``state``; on
failure no event is produced at all.

``execute`` combines ``handle`` with ``apply`` and returns the new state
together with the events, all or nothing.

Usage:
    context = CommandContext(schema=AttributeSchema.default(), now=clock())
    events = handle(person, RecordAttribute(...), context)
    person, events = execute(person, command, context)
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Callable, Dict, List, Optional, Tuple, Type

from core.errors import (
    IdentityMismatch,
    InvalidStateTransition,
    NotFound,
    ValidationError,
)
from domain.attribute_types import BIRTH_DATE, AttributeSchema, AttributeType
from domain.attributes import PersonAttribute
from domain.commands import (
    BaseCommand,
    CreatePerson,
    DeactivatePerson,
    InvalidateAttribute,
    MergePerson,
    ReactivatePerson,
    RecordAttribute,
    RecordDeath,
    UpdateAttribute,
    UpdateName,
)
from domain.disambiguation import DEFAULT_MATCH_THRESHOLD, disambiguate
from domain.entity import Person
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
from domain.provenance import AttributeSource, Provenance
from domain.temporal import TemporalValidity, utcnow
from domain.values import DateValue


@dataclass(frozen=True)
class CommandContext:
    """
    Everything ``handle`` needs besides state and command.

    Args:
        schema: Attribute taxonomy used to validate values
        now: Decision time stamped on the produced events
        merge_target: Loaded state of a MergePerson target
        merge_threshold: Default minimum similarity for merges
    """
    schema: AttributeSchema = field(default_factory=AttributeSchema.default)
    now: datetime = field(default_factory=utcnow)
    merge_target: Optional[Person] = None
    merge_threshold: float = DEFAULT_MATCH_THRESHOLD

    @property
    def today(self) -> date:
        return self.now.date()


Handler = Callable[[Person, BaseCommand, CommandContext], PersonEvent]


# =============================================================================
# GUARDS
# =============================================================================


def _require_text(field_name: str, value: str) -> str:
    if not value or not value.strip():
        raise ValidationError(field_name, "must not be empty")
    return value.strip()


def _require_mutable(state: Person, command: BaseCommand) -> None:
    if not state.exists:
        raise NotFound(command.person_id)
    if not state.accepts_mutation:
        raise InvalidStateTransition(state.status.value, command.command_type)


def _require_status(state: Person, command: BaseCommand, status: LifecycleStatus) -> None:
    _require_mutable(state, command)
    if state.status is not status:
        raise InvalidStateTransition(state.status.value, command.command_type)


def _envelope(state: Person, command: BaseCommand, context: CommandContext) -> Dict:
    return {
        "person_id": state.id,
        "version": state.version + 1,
        "occurred_at": context.now,
        "correlation_id": command.correlation_id,
        "causation_id": str(command.command_id),
        "metadata": {"actor": command.actor, "command_type": command.command_type},
    }


def _known_birth_date(state: Person) -> Optional[date]:
    attribute = state.attributes.find_by_type(BIRTH_DATE)
    if attribute is not None and isinstance(attribute.value, DateValue):
        return attribute.value.on
    return state.core_identity.birth_date if state.core_identity else None


def _build_attribute(
    command: RecordAttribute,
    context: CommandContext,
    valid_from: Optional[date],
) -> PersonAttribute:
    context.schema.validate(command.attribute_type, command.value)

    if valid_from is not None and command.valid_until is not None and not valid_from < command.valid_until:
        raise ValidationError("valid_from", "must be before valid_until")

    if command.source is AttributeSource.IMPORTED and not command.source_system:
        raise ValidationError("source_system", "required for imported values")

    return PersonAttribute(
        attribute_type=command.attribute_type,
        value=command.value,
        temporal=TemporalValidity(
            recorded_at=context.now,
            valid_from=valid_from,
            valid_until=command.valid_until,
        ),
        provenance=Provenance(
            source=command.source,
            confidence=command.confidence,
            recorded_by=command.actor,
            recorded_at=context.now,
            source_system=command.source_system,
        ),
    )


def _closable_current(state: Person, attribute_type: AttributeType, on: date) -> List[PersonAttribute]:
    """Current values of the type on ``on``, or a ValidationError if none can be closed."""
    current = [a for a in state.attributes.valid_at(on) if a.attribute_type == attribute_type]
    if not current:
        raise ValidationError("attribute_type", f"no current value of {attribute_type} on {on}")
    if not all(a.temporal.can_end_at(on) for a in current):
        raise ValidationError(
            "valid_from", f"must be after the start of the current {attribute_type} value"
        )
    return current


# =============================================================================
# HANDLERS
# =============================================================================


def _create(state: Person, command: CreatePerson, context: CommandContext) -> PersonEvent:
    if state.exists:
        raise ValidationError("person_id", f"person {state.id} already exists")
    name = _require_text("legal_name_ref", command.legal_name_ref)
    if command.birth_date is not None and command.birth_date > context.today:
        raise ValidationError("birth_date", "must not be in the future")
    return PersonCreated(
        **_envelope(state, command, context),
        legal_name_ref=name,
        birth_date=command.birth_date,
    )


def _update_name(state: Person, command: UpdateName, context: CommandContext) -> PersonEvent:
    _require_mutable(state, command)
    name = _require_text("legal_name_ref", command.legal_name_ref)
    if name == state.legal_name_ref:
        raise ValidationError("legal_name_ref", "unchanged")
    return NameUpdated(
        **_envelope(state, command, context),
        legal_name_ref=name,
        previous_name_ref=state.legal_name_ref or "",
    )


def _record_attribute(state: Person, command: RecordAttribute, context: CommandContext) -> PersonEvent:
    _require_mutable(state, command)
    attribute = _build_attribute(command, context, command.valid_from)
    return AttributeRecorded(**_envelope(state, command, context), attribute=attribute)


def _update_attribute(state: Person, command: UpdateAttribute, context: CommandContext) -> PersonEvent:
    _require_mutable(state, command)
    on = command.valid_from or context.today
    attribute = _build_attribute(command, context, on)
    _closable_current(state, command.attribute_type, on)
    return AttributeUpdated(
        **_envelope(state, command, context),
        attribute=attribute,
        superseded_on=on,
    )


def _invalidate_attribute(
    state: Person, command: InvalidateAttribute, context: CommandContext
) -> PersonEvent:
    _require_mutable(state, command)
    on = command.effective_on or context.today
    _closable_current(state, command.attribute_type, on)
    return AttributeInvalidated(
        **_envelope(state, command, context),
        attribute_type=command.attribute_type,
        effective_on=on,
        reason=command.reason,
    )


def _deactivate(state: Person, command: DeactivatePerson, context: CommandContext) -> PersonEvent:
    _require_status(state, command, LifecycleStatus.ACTIVE)
    reason = _require_text("reason", command.reason)
    return PersonDeactivated(**_envelope(state, command, context), reason=reason)


def _reactivate(state: Person, command: ReactivatePerson, context: CommandContext) -> PersonEvent:
    _require_status(state, command, LifecycleStatus.DEACTIVATED)
    return PersonReactivated(**_envelope(state, command, context))


def _record_death(state: Person, command: RecordDeath, context: CommandContext) -> PersonEvent:
    _require_mutable(state, command)
    if command.death_date is None:
        raise ValidationError("death_date", "required")
    if command.death_date > context.today:
        raise ValidationError("death_date", "must not be in the future")
    birth_date = _known_birth_date(state)
    if birth_date is not None and command.death_date < birth_date:
        raise ValidationError("death_date", f"must not be before birth date {birth_date}")
    return PersonDeceased(**_envelope(state, command, context), death_date=command.death_date)


def _merge(state: Person, command: MergePerson, context: CommandContext) -> PersonEvent:
    _require_mutable(state, command)
    if command.target_id == state.id:
        raise IdentityMismatch(state.id, command.target_id, "cannot merge a person into itself")

    target = context.merge_target
    if target is None or target.id != command.target_id or not target.exists:
        raise NotFound(command.target_id)
    if target.status is LifecycleStatus.MERGED_INTO:
        raise IdentityMismatch(
            state.id,
            target.id,
            f"target has itself been merged into {target.lifecycle.target_id}",
        )

    threshold = (
        command.similarity_threshold
        if command.similarity_threshold is not None
        else context.merge_threshold
    )
    result = disambiguate(state, target, threshold=threshold, today=context.today)
    if result.definitive_mismatch or result.score < threshold:
        raise IdentityMismatch(
            state.id,
            target.id,
            f"similarity {result.score:.2f} below threshold {threshold:.2f}",
            score=result.score,
        )

    return PersonMergedInto(
        **_envelope(state, command, context),
        target_id=target.id,
        similarity=result.score,
    )


HANDLERS: Dict[Type[BaseCommand], Handler] = {
    CreatePerson: _create,
    UpdateName: _update_name,
    RecordAttribute: _record_attribute,
    UpdateAttribute: _update_attribute,
    InvalidateAttribute: _invalidate_attribute,
    DeactivatePerson: _deactivate,
    ReactivatePerson: _reactivate,
    RecordDeath: _record_death,
    MergePerson: _merge,
}


# =============================================================================
# ENTRY POINTS
# =============================================================================


def handle(
    state: Person,
    command: BaseCommand,
    context: Optional[CommandContext] = None,
) -> List[PersonEvent]:
    """
    Decide which events a command produces.

    Args:
        state: Current state of the targeted person (``Person.initial`` if new)
        command: Command to decide on
        context: Schema, decision time and merge target

    Returns:
        The produced events (exactly one for every built-in command)

    Raises:
        ValidationError: Malformed or out-of-range input
        NotFound: The person (or merge target) does not exist
        InvalidStateTransition: Lifecycle guard failed
        IdentityMismatch: Merge target rejected
    """
    context = context or CommandContext()

    if command.person_id != state.id:
        raise ValidationError(
            "person_id", f"command targets {command.person_id} but state is {state.id}"
        )

    handler = HANDLERS.get(type(command))
    if handler is None:
        raise ValidationError("command", f"unsupported command {command.command_type}")

    return [handler(state, command, context)]


def execute(
    state: Person,
    command: BaseCommand,
    context: Optional[CommandContext] = None,
) -> Tuple[Person, List[PersonEvent]]:
    """Handle a command and apply its events; nothing is applied on failure."""
    events = handle(state, command, context)
    return state.apply_all(events), events
