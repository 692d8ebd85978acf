"""
Persona - Domain Layer

The pure core of the person registry: typed attribute values with temporal
validity and provenance, the event-sourced Person aggregate, command
handling, identity disambiguation and read-model projections. Nothing in
this package performs I/O.

Usage:
    from domain import (
        Person, CreatePerson, RecordAttribute, handle, execute,
        BIRTH_DATE, DateValue, AttributeSource,
    )

    person = Person.initial("p-1")
    person, events = execute(person, CreatePerson(person_id="p-1", legal_name_ref="Alice Smith"))
"""

from domain.values import (
    AttributeValue,
    ApproximateDateValue,
    BiologicalSex,
    BiologicalSexValue,
    BloodType,
    BloodTypeValue,
    BooleanValue,
    DatePrecision,
    DateTimeValue,
    DateValue,
    EyeColor,
    EyeColorValue,
    HairColor,
    HairColorValue,
    Handedness,
    HandednessValue,
    IntegerValue,
    JsonValue,
    LengthValue,
    LocationValue,
    MassValue,
    NumberValue,
    PersonReferenceValue,
    TextListValue,
    TextValue,
    YearMonthValue,
    YearValue,
    value_from_dict,
)
from domain.attribute_types import (
    ALLERGIES,
    BIOLOGICAL_SEX,
    BIRTH_DATE,
    BIRTH_DATE_TIME,
    BIRTH_PLACE,
    BLOOD_TYPE,
    HEIGHT,
    NATIONAL_ID,
    PREFERRED_LANGUAGE,
    WEIGHT,
    AttributeCategory,
    AttributeSchema,
    AttributeType,
    DemographicKind,
    HealthcareKind,
    IdentifyingKind,
    PhysicalKind,
)
from domain.temporal import TemporalValidity, utcnow
from domain.provenance import (
    AttributeSource,
    ConfidenceLevel,
    Provenance,
    TransformationRecord,
)
from domain.attributes import AttributeSet, PersonAttribute
from domain.identity import (
    Active,
    CoreIdentity,
    Deactivated,
    Deceased,
    Lifecycle,
    LifecycleStatus,
    MergedInto,
)
from domain.events import (
    EVENT_REGISTRY,
    AttributeInvalidated,
    AttributeRecorded,
    AttributeUpdated,
    EventType,
    NameUpdated,
    PersonCreated,
    PersonDeactivated,
    PersonDeceased,
    PersonEvent,
    PersonMergedInto,
    PersonReactivated,
    deserialize_event,
)
from domain.entity import Person, PersonObservation, apply
from domain.disambiguation import (
    DEFAULT_MATCH_THRESHOLD,
    DisambiguationResult,
    disambiguate,
    similarity,
)
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
from domain.command_handlers import CommandContext, execute, handle
from domain.specifications import (
    ActivePersons,
    HasAttributeCategory,
    HasAttributeType,
    ISpecification,
    NameContains,
    PersonIdIn,
    StatusIs,
    TrueSpecification,
)
from domain.queries import (
    BaseQuery,
    CategoryViewQuery,
    Order,
    SearchQuery,
    SummaryQuery,
    TimelineQuery,
)
from domain.projections import (
    CategoryView,
    PersonSummary,
    SearchDocument,
    TimelineEntry,
    project_category_view,
    project_search,
    project_summary,
    project_timeline_entry,
    relevance,
)

__all__ = [
    # Values
    "AttributeValue", "ApproximateDateValue", "BiologicalSex", "BiologicalSexValue",
    "BloodType", "BloodTypeValue", "BooleanValue", "DatePrecision", "DateTimeValue",
    "DateValue", "EyeColor", "EyeColorValue", "HairColor", "HairColorValue",
    "Handedness", "HandednessValue", "IntegerValue", "JsonValue", "LengthValue",
    "LocationValue", "MassValue", "NumberValue", "PersonReferenceValue",
    "TextListValue", "TextValue", "YearMonthValue", "YearValue", "value_from_dict",
    # Attribute taxonomy
    "ALLERGIES", "BIOLOGICAL_SEX", "BIRTH_DATE", "BIRTH_DATE_TIME", "BIRTH_PLACE",
    "BLOOD_TYPE", "HEIGHT", "NATIONAL_ID", "PREFERRED_LANGUAGE", "WEIGHT",
    "AttributeCategory", "AttributeSchema", "AttributeType", "DemographicKind",
    "HealthcareKind", "IdentifyingKind", "PhysicalKind",
    # Temporal and provenance
    "TemporalValidity", "utcnow", "AttributeSource", "ConfidenceLevel",
    "Provenance", "TransformationRecord",
    # Attributes
    "AttributeSet", "PersonAttribute",
    # Identity and lifecycle
    "Active", "CoreIdentity", "Deactivated", "Deceased", "Lifecycle",
    "LifecycleStatus", "MergedInto",
    # Events
    "EVENT_REGISTRY", "AttributeInvalidated", "AttributeRecorded", "AttributeUpdated",
    "EventType", "NameUpdated", "PersonCreated", "PersonDeactivated", "PersonDeceased",
    "PersonEvent", "PersonMergedInto", "PersonReactivated", "deserialize_event",
    # Aggregate
    "Person", "PersonObservation", "apply",
    # Disambiguation
    "DEFAULT_MATCH_THRESHOLD", "DisambiguationResult", "disambiguate", "similarity",
    # Commands
    "BaseCommand", "CreatePerson", "DeactivatePerson", "InvalidateAttribute",
    "MergePerson", "ReactivatePerson", "RecordAttribute", "RecordDeath",
    "UpdateAttribute", "UpdateName", "CommandContext", "execute", "handle",
    # Queries
    "ActivePersons", "HasAttributeCategory", "HasAttributeType", "ISpecification",
    "NameContains", "PersonIdIn", "StatusIs", "TrueSpecification", "BaseQuery",
    "CategoryViewQuery", "Order", "SearchQuery", "SummaryQuery", "TimelineQuery",
    # Projections
    "CategoryView", "PersonSummary", "SearchDocument", "TimelineEntry",
    "project_category_view", "project_search", "project_summary",
    "project_timeline_entry", "relevance",
]
