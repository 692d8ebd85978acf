"""
Tests for domain/projections.py.

Covers:
- Summary, search, timeline and category view projections
- Relevance scoring
- Untouched read models for events a projection ignores
"""
from datetime import date, datetime, timezone

import pytest

from domain.attribute_types import ALLERGIES, BIRTH_DATE, HEIGHT, PREFERRED_LANGUAGE, AttributeCategory
from domain.attributes import PersonAttribute
from domain.events import (
    AttributeInvalidated,
    AttributeRecorded,
    AttributeUpdated,
    NameUpdated,
    PersonCreated,
    PersonDeceased,
    PersonReactivated,
)
from domain.identity import LifecycleStatus
from domain.projections import (
    CategoryView,
    PersonSummary,
    SearchDocument,
    TimelineEntry,
    describe,
    project_category_view,
    project_search,
    project_summary,
    project_timeline_entry,
    relevance,
    tokenize,
)
from domain.provenance import Provenance
from domain.values import DateValue, LengthValue, TextListValue, TextValue

AT = datetime(2024, 1, 10, 12, tzinfo=timezone.utc)
LATER = datetime(2024, 2, 1, 9, tzinfo=timezone.utc)


def attribute(attribute_type, value, valid_from=None):
    return PersonAttribute.create(
        attribute_type, value, Provenance.self_reported(), valid_from=valid_from, recorded_at=AT
    )


def created(person_id="p-1", name="Alice Smith"):
    return PersonCreated(
        person_id=person_id, version=1, occurred_at=AT, legal_name_ref=name,
        metadata={"actor": "clerk", "command_type": "CreatePerson"},
    )


def fold(projection, events, current=None):
    for event in events:
        current = projection(current, event)
    return current


class TestSummaryProjection:
    """Tests for project_summary."""

    def test_created(self):
        """Test PersonCreated opens an active summary."""
        summary = project_summary(None, created())
        assert summary.person_id == "p-1"
        assert summary.legal_name_ref == "Alice Smith"
        assert summary.active
        assert summary.attribute_count == 0
        assert summary.created_at == AT

    def test_attribute_events(self):
        """Test counts and keys follow attribute events."""
        summary = fold(project_summary, [
            created(),
            AttributeRecorded(person_id="p-1", version=2, occurred_at=AT,
                              attribute=attribute(HEIGHT, LengthValue(1.7))),
            AttributeRecorded(person_id="p-1", version=3, occurred_at=AT,
                              attribute=attribute(ALLERGIES, TextListValue(("peanuts",)))),
            AttributeInvalidated(person_id="p-1", version=4, occurred_at=LATER,
                                 attribute_type=ALLERGIES, effective_on=date(2024, 2, 1)),
        ])

        assert summary.attribute_count == 2
        assert summary.attribute_keys == (HEIGHT.key,)
        assert summary.updated_at == LATER
        assert summary.version == 4
        assert summary.categories == (AttributeCategory.PHYSICAL,)

    def test_rename_and_status(self):
        """Test name and lifecycle changes."""
        summary = fold(project_summary, [
            created(),
            NameUpdated(person_id="p-1", version=2, occurred_at=AT,
                        legal_name_ref="Alice Jones", previous_name_ref="Alice Smith"),
            PersonDeceased(person_id="p-1", version=3, occurred_at=AT, death_date=date(2024, 1, 1)),
        ])
        assert summary.legal_name_ref == "Alice Jones"
        assert summary.status is LifecycleStatus.DECEASED
        assert not summary.active

    def test_events_before_creation_ignored(self):
        """Test a missing summary stays missing."""
        assert project_summary(None, PersonReactivated(person_id="p-1", version=2, occurred_at=AT)) is None

    def test_dict_round_trip(self):
        """Test serialization."""
        summary = project_summary(None, created())
        assert PersonSummary.from_dict(summary.to_dict()) == summary


class TestSearchProjection:
    """Tests for project_search and relevance."""

    def test_textual_values_are_indexed(self):
        """Test text values become searchable, others only filters."""
        document = fold(project_search, [
            created(),
            AttributeRecorded(person_id="p-1", version=2, occurred_at=AT,
                              attribute=attribute(PREFERRED_LANGUAGE, TextValue("Portuguese"))),
            AttributeRecorded(person_id="p-1", version=3, occurred_at=AT,
                              attribute=attribute(BIRTH_DATE, DateValue(date(1990, 5, 15)))),
        ])

        assert document.values == ((PREFERRED_LANGUAGE.key, "Portuguese"),)
        assert set(document.filters) == {PREFERRED_LANGUAGE.key, BIRTH_DATE.key}
        assert "Portuguese" in document.text

    def test_update_replaces_text(self):
        """Test an update drops the previous text for the key."""
        document = fold(project_search, [
            created(),
            AttributeRecorded(person_id="p-1", version=2, occurred_at=AT,
                              attribute=attribute(PREFERRED_LANGUAGE, TextValue("Portuguese"))),
            AttributeUpdated(person_id="p-1", version=3, occurred_at=AT,
                             attribute=attribute(PREFERRED_LANGUAGE, TextValue("Spanish"), date(2024, 3, 1)),
                             superseded_on=date(2024, 3, 1)),
        ])
        assert document.values == ((PREFERRED_LANGUAGE.key, "Spanish"),)

    def test_invalidation_removes_key(self):
        """Test invalidated attributes leave the index."""
        document = fold(project_search, [
            created(),
            AttributeRecorded(person_id="p-1", version=2, occurred_at=AT,
                              attribute=attribute(PREFERRED_LANGUAGE, TextValue("Portuguese"))),
            AttributeInvalidated(person_id="p-1", version=3, occurred_at=AT,
                                 attribute_type=PREFERRED_LANGUAGE, effective_on=date(2024, 2, 1)),
        ])
        assert document.values == ()
        assert document.filters == ()

    def test_relevance(self):
        """Test name tokens weigh double attribute tokens."""
        document = SearchDocument(
            person_id="p-1", name="Alice Smith", status=LifecycleStatus.ACTIVE,
            values=((PREFERRED_LANGUAGE.key, "Portuguese"),),
        )
        assert relevance(document, None) == 1.0
        assert relevance(document, "alice smith") == 1.0
        assert relevance(document, "portuguese") == pytest.approx(0.5)
        assert relevance(document, "bob") == 0.0
        assert relevance(document, "alice bob") == pytest.approx(0.5)

    def test_tokenize(self):
        """Test tokens are lower-cased words."""
        assert tokenize("Alice-Marie  SMITH!") == ("alice", "marie", "smith")

    def test_dict_round_trip(self):
        """Test serialization."""
        document = SearchDocument(
            person_id="p-1", name="Alice", status=LifecycleStatus.ACTIVE,
            values=(("a", "b"),), filters=("a",), version=2,
        )
        assert SearchDocument.from_dict(document.to_dict()) == document


class TestTimelineProjection:
    """Tests for timeline entries."""

    def test_entry_per_event(self):
        """Test each event yields its own entry."""
        event = created()
        entry = project_timeline_entry(None, event)

        assert entry.version == 1
        assert entry.event_id == str(event.event_id)
        assert entry.description == "Created as Alice Smith"
        assert entry.actor == "clerk"

    def test_existing_entry_kept(self):
        """Test replaying the same event leaves the entry as is."""
        event = created()
        entry = project_timeline_entry(None, event)
        assert project_timeline_entry(entry, event) is entry

    def test_describe(self):
        """Test descriptions of attribute changes."""
        event = AttributeInvalidated(
            person_id="p-1", version=2, occurred_at=AT,
            attribute_type=ALLERGIES, effective_on=date(2024, 2, 1),
        )
        assert describe(event) == f"Invalidated {ALLERGIES.key} from 2024-02-01"

    def test_dict_round_trip(self):
        """Test serialization."""
        entry = project_timeline_entry(None, created())
        assert TimelineEntry.from_dict(entry.to_dict()) == entry


class TestCategoryViewProjection:
    """Tests for per-category views."""

    def test_only_matching_category_kept(self):
        """Test attributes of other categories leave the view unchanged."""
        healthcare = project_category_view(AttributeCategory.HEALTHCARE)
        view = healthcare(None, created())
        height = AttributeRecorded(person_id="p-1", version=2, occurred_at=AT,
                                   attribute=attribute(HEIGHT, LengthValue(1.7)))

        assert healthcare(view, height) is view

        allergies = AttributeRecorded(person_id="p-1", version=3, occurred_at=AT,
                                      attribute=attribute(ALLERGIES, TextListValue(("peanuts",))))
        updated = healthcare(view, allergies)
        assert len(updated.attributes) == 1
        assert updated.version == 3

    def test_update_closes_previous(self):
        """Test the superseded value stays in history, closed."""
        physical = project_category_view(AttributeCategory.PHYSICAL)
        view = fold(physical, [
            created(),
            AttributeRecorded(person_id="p-1", version=2, occurred_at=AT,
                              attribute=attribute(HEIGHT, LengthValue(1.7))),
            AttributeUpdated(person_id="p-1", version=3, occurred_at=AT,
                             attribute=attribute(HEIGHT, LengthValue(1.72), date(2024, 3, 1)),
                             superseded_on=date(2024, 3, 1)),
        ])

        assert len(view.attributes) == 2
        assert view.attributes.attributes[0].temporal.valid_until == date(2024, 3, 1)
        assert view.attributes.find_valid_by_type(HEIGHT, date(2024, 3, 2)).value == LengthValue(1.72)

    def test_invalidation_closes_value(self):
        """Test invalidation ends the value on the effective date."""
        physical = project_category_view(AttributeCategory.PHYSICAL)
        view = fold(physical, [
            created(),
            AttributeRecorded(person_id="p-1", version=2, occurred_at=AT,
                              attribute=attribute(HEIGHT, LengthValue(1.7))),
            AttributeInvalidated(person_id="p-1", version=3, occurred_at=AT,
                                 attribute_type=HEIGHT, effective_on=date(2024, 2, 1)),
        ])
        assert view.attributes.find_valid_by_type(HEIGHT, date(2024, 2, 1)) is None
        assert view.attributes.find_valid_by_type(HEIGHT, date(2024, 1, 31)) is not None

    def test_name_changes_ignored(self):
        """Test non-attribute events return the view unchanged."""
        physical = project_category_view(AttributeCategory.PHYSICAL)
        view = physical(None, created())
        renamed = NameUpdated(person_id="p-1", version=2, occurred_at=AT,
                              legal_name_ref="Alice Jones", previous_name_ref="Alice Smith")
        assert physical(view, renamed) is view

    def test_dict_round_trip(self):
        """Test serialization."""
        physical = project_category_view(AttributeCategory.PHYSICAL)
        view = fold(physical, [
            created(),
            AttributeRecorded(person_id="p-1", version=2, occurred_at=AT,
                              attribute=attribute(HEIGHT, LengthValue(1.7))),
        ])
        assert CategoryView.from_dict(view.to_dict()) == view
