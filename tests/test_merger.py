"""
Tests for merge resolution, field selection and conflict auditing.
"""

from datetime import datetime

import pytest

from dupmerge.core.errors import EmptyGroupError, InvalidMasterError, InvalidOverrideError
from dupmerge.core.record import CandidateRecord
from dupmerge.core.strategies import FieldSelection
from dupmerge.matching import DuplicateGroup
from dupmerge.merge import (
    FieldStatus,
    MergePlan,
    MergeResolver,
    build_conflict_report,
    build_field_selections,
    render_audit_note,
)


def make_record(record_id, created=datetime(2020, 1, 1), modified=None, **fields):
    return CandidateRecord(
        record_id=record_id,
        created_at=created,
        fields=fields,
        last_modified=modified,
    )


@pytest.fixture
def master():
    return make_record('a', Name='Acme Corp', BillingCity='NYC', Phone=None)


@pytest.fixture
def duplicate():
    return make_record(
        'b', datetime(2021, 1, 1), datetime(2023, 5, 1),
        Name='Acme Corp', BillingCity='New York', Phone='555-0100', Website='acme.com',
    )


class TestMergeResolver:
    """Tests for MergeResolver."""

    def test_master_value_kept_on_conflict(self, master, duplicate):
        """A differing duplicate value is kept as a conflict, not merged."""
        plan = MergeResolver().resolve(master, [duplicate])

        assert plan.resolved_fields['BillingCity'] == 'NYC'
        assert plan.field_statuses['BillingCity'] == FieldStatus.CONFLICT
        assert len(plan.conflicts) == 1

        conflict = plan.conflicts[0]
        assert conflict.field == 'BillingCity'
        assert conflict.master_value == 'NYC'
        assert conflict.duplicate_value == 'New York'
        assert conflict.duplicate_record_id == 'b'

    def test_blank_master_fields_are_filled(self, master, duplicate):
        """Gaps in the master are filled from the duplicate."""
        plan = MergeResolver().resolve(master, [duplicate])

        assert plan.resolved_fields['Phone'] == '555-0100'
        assert plan.field_sources['Phone'] == 'b'
        assert plan.field_statuses['Phone'] == FieldStatus.FILLED
        assert plan.resolved_fields['Website'] == 'acme.com'
        assert plan.changed_fields() == {'Phone': '555-0100', 'Website': 'acme.com'}

    def test_every_field_resolved_once(self, master, duplicate):
        """The plan covers the union of all fields, master fields first."""
        plan = MergeResolver().resolve(master, [duplicate])
        assert list(plan.resolved_fields) == ['Name', 'BillingCity', 'Phone', 'Website']
        assert plan.field_statuses['Name'] == FieldStatus.UNCHANGED

    def test_fill_from_several_duplicates(self):
        """The first duplicate fills the gap; other values become conflicts."""
        master = make_record('a', Email='')
        first = make_record('b', Email='one@example.com')
        second = make_record('c', Email='two@example.com')
        plan = MergeResolver().resolve(master, [first, second])

        assert plan.resolved_fields['Email'] == 'one@example.com'
        assert len(plan.conflicts) == 1
        assert plan.conflicts[0].master_value == 'one@example.com'
        assert plan.conflicts[0].duplicate_record_id == 'c'

    def test_blank_everywhere_keeps_master_value(self):
        """A field blank on every record keeps the master's raw value."""
        plan = MergeResolver().resolve(make_record('a', Fax=''), [make_record('b', Fax=None)])
        assert plan.resolved_fields['Fax'] == ''
        assert plan.field_sources['Fax'] == 'a'

    def test_whitespace_is_not_a_conflict(self):
        """Values equal up to surrounding whitespace do not conflict."""
        plan = MergeResolver().resolve(make_record('a', City='NYC'), [make_record('b', City='NYC ')])
        assert not plan.has_conflicts

    def test_override(self, master, duplicate):
        """An override picks the value and suppresses the conflict."""
        plan = MergeResolver().resolve(master, [duplicate], overrides={'BillingCity': 'b'})

        assert plan.resolved_fields['BillingCity'] == 'New York'
        assert plan.field_statuses['BillingCity'] == FieldStatus.OVERRIDDEN
        assert not plan.has_conflicts
        assert plan.field_selections == {'BillingCity': 'b'}

    def test_override_outside_group(self, master, duplicate):
        """Test InvalidOverrideError."""
        with pytest.raises(InvalidOverrideError):
            MergeResolver().resolve(master, [duplicate], overrides={'BillingCity': 'zzz'})

    def test_no_duplicates(self, master):
        """Test EmptyGroupError."""
        with pytest.raises(EmptyGroupError):
            MergeResolver().resolve(master, [])

    def test_master_listed_as_duplicate(self, master, duplicate):
        """Test InvalidMasterError."""
        with pytest.raises(InvalidMasterError):
            MergeResolver().resolve(master, [duplicate, master])

    def test_resolve_is_deterministic(self, master, duplicate):
        """Resolving twice gives the same plan and the same JSON."""
        resolver = MergeResolver()
        first = resolver.resolve(master, [duplicate])
        second = resolver.resolve(master, [duplicate])

        assert first == second
        assert first.to_json() == second.to_json()

    def test_plan_from_dict(self, master, duplicate):
        """A plan rebuilt from its dictionary equals the original."""
        plan = MergeResolver().resolve(master, [duplicate], object_type='Account')
        assert plan.object_type == 'Account'
        assert MergePlan.from_dict(plan.to_dict()) == plan


class TestResolveGroup:
    """Tests for MergeResolver.resolve_group."""

    def test_resolve_group(self, master, duplicate):
        """The plan carries the group's id."""
        group = DuplicateGroup.from_members(['a', 'b']).with_master('a')
        plan = MergeResolver().resolve_group(group, [master, duplicate])

        assert plan.group_id == group.group_id
        assert plan.master_id == 'a'
        assert plan.duplicate_ids == ('b',)

    def test_master_not_selected(self, master, duplicate):
        """Test InvalidMasterError when no master was selected."""
        group = DuplicateGroup.from_members(['a', 'b'])
        with pytest.raises(InvalidMasterError):
            MergeResolver().resolve_group(group, [master, duplicate])

    def test_missing_records(self, master):
        """Test EmptyGroupError when records are unavailable."""
        group = DuplicateGroup.from_members(['a', 'b']).with_master('a')
        with pytest.raises(EmptyGroupError):
            MergeResolver().resolve_group(group, [master])


class TestFieldSelection:
    """Tests for the bulk field selection strategies."""

    def test_manual_selects_nothing(self, master, duplicate):
        """Test Manual."""
        assert build_field_selections(master, [duplicate], FieldSelection.MANUAL) == {}

    def test_master_wins(self, master, duplicate):
        """The master keeps every value it has; the values it drops are preserved."""
        plan = MergeResolver(FieldSelection.MASTER_WINS).resolve(master, [duplicate])

        assert plan.resolved_fields['BillingCity'] == 'NYC'
        assert plan.field_statuses['BillingCity'] == FieldStatus.OVERRIDDEN
        assert [
            (c.field, c.master_value, c.duplicate_value, c.duplicate_record_id)
            for c in plan.conflicts
        ] == [('BillingCity', 'NYC', 'New York', 'b')]
        assert 'BillingCity: New York' in render_audit_note(plan)

    def test_non_blank(self):
        """The first non-blank value wins, master first."""
        master = make_record('a', City='', Zip='10001')
        duplicate = make_record('b', City='Boston', Zip='02101')
        other = make_record('c', City='Salem')
        selections = build_field_selections(master, [duplicate, other], FieldSelection.NON_BLANK)

        assert selections == {'City': 'b', 'Zip': 'a'}

    def test_most_recent(self, master, duplicate):
        """The most recently modified record wins; the master's value is preserved."""
        plan = MergeResolver(FieldSelection.MOST_RECENT).resolve(master, [duplicate])

        assert plan.resolved_fields['BillingCity'] == 'New York'
        assert plan.field_sources['BillingCity'] == 'b'
        assert len(plan.conflicts) == 1
        assert plan.conflicts[0].master_value == 'New York'
        assert plan.conflicts[0].duplicate_value == 'NYC'
        assert plan.conflicts[0].duplicate_record_id == 'a'

    def test_non_blank_keeps_other_values(self):
        """Values a NonBlank selection passes over become conflicts."""
        master = make_record('a', City='')
        first = make_record('b', City='Boston')
        second = make_record('c', City='Salem')
        plan = MergeResolver(FieldSelection.NON_BLANK).resolve(master, [first, second])

        assert plan.resolved_fields['City'] == 'Boston'
        assert [(c.duplicate_value, c.duplicate_record_id) for c in plan.conflicts] == [('Salem', 'c')]

    def test_explicit_override_wins_over_strategy(self, master, duplicate):
        """An explicit override replaces the strategy's choice and records no conflict."""
        plan = MergeResolver(FieldSelection.MASTER_WINS).resolve(
            master, [duplicate], overrides={'BillingCity': 'b'}
        )

        assert plan.resolved_fields['BillingCity'] == 'New York'
        assert not plan.has_conflicts


class TestAuditArtifacts:
    """Tests for the conflict report and the audit note."""

    def test_conflict_report(self, master, duplicate):
        """Conflicts are grouped by field."""
        plan = MergeResolver().resolve(master, [duplicate])
        assert build_conflict_report(plan) == [{
            'field': 'BillingCity',
            'masterValue': 'NYC',
            'alternativeValues': [{'value': 'New York', 'sourceRecordId': 'b'}],
        }]

    def test_audit_note(self, master, duplicate):
        """The note lists every value that was not kept."""
        plan = MergeResolver().resolve(master, [duplicate])

        assert render_audit_note(plan) == (
            "Data preserved from merge operation:\n"
            "\n"
            "== CONFLICTING VALUES ==\n"
            "BillingCity: New York\n"
        )
        assert "Billing City: New York" in render_audit_note(plan, {'BillingCity': 'Billing City'})

    def test_audit_note_without_conflicts(self):
        """Test the note of a merge that dropped nothing."""
        plan = MergeResolver().resolve(make_record('a', City='NYC'), [make_record('b')])
        assert render_audit_note(plan) == "No conflicts to preserve"
        assert build_conflict_report(plan) == []
