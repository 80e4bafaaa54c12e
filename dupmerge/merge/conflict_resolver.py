"""
Conflict handling for merging duplicate records.

Holds the conflict types shared by the merge resolver, the bulk field
selection strategies that pre-fill merge overrides, and the audit artifacts
(conflict report and note text) that preserve every value a merge drops.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Sequence

from ..core.record import CandidateRecord, is_blank, json_value
from ..core.strategies import FieldSelection

if TYPE_CHECKING:
    from .merger import MergePlan

NOTE_TITLE = "Data preserved from merge operation"
NO_CONFLICTS_NOTE = "No conflicts to preserve"


class FieldStatus(Enum):
    """How a resolved field got its value."""
    UNCHANGED = "unchanged"  # Master value kept, nothing disagreed
    FILLED = "filled"  # Master was blank, value taken from a duplicate
    CONFLICT = "conflict"  # Master value kept over differing duplicate values
    OVERRIDDEN = "overridden"  # Value chosen by a field selection


@dataclass(frozen=True)
class FieldConflict:
    """A non-blank value of a group record that differs from the resolved value.

    `master_value` is the value the master ends up with; `duplicate_record_id`
    names the record holding the value that was not kept (the master itself
    when a field selection chose a duplicate's value).
    """
    field: str
    master_value: Any
    duplicate_value: Any
    duplicate_record_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'field': self.field,
            'master_value': json_value(self.master_value),
            'duplicate_value': json_value(self.duplicate_value),
            'duplicate_record_id': self.duplicate_record_id,
        }

    def __str__(self) -> str:
        return (
            f"Field: {self.field}\n"
            f"  Master: {self.master_value}\n"
            f"  Duplicate ({self.duplicate_record_id}): {self.duplicate_value}"
        )


def values_equal(value_a: Any, value_b: Any) -> bool:
    """Equality that ignores surrounding whitespace on strings."""
    if isinstance(value_a, str) and isinstance(value_b, str):
        return value_a.strip() == value_b.strip()
    return value_a == value_b


def disputed_fields(
    master: CandidateRecord,
    duplicates: Sequence[CandidateRecord]
) -> List[str]:
    """Fields where the group holds more than one distinct non-blank value."""
    names = list(master.fields)
    for duplicate in duplicates:
        names.extend(name for name in duplicate.fields if name not in names)

    disputed = []
    for name in names:
        distinct: List[Any] = []
        for record in [master, *duplicates]:
            value = record.get(name)
            if is_blank(value) or any(values_equal(value, seen) for seen in distinct):
                continue
            distinct.append(value)
        if len(distinct) > 1:
            disputed.append(name)
    return disputed


def _recency(record: CandidateRecord) -> datetime:
    value = record.last_modified or record.created_at
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def build_field_selections(
    master: CandidateRecord,
    duplicates: Sequence[CandidateRecord],
    strategy: FieldSelection
) -> Dict[str, str]:
    """
    Pre-fill merge overrides for every disputed field.

    Strategies:
    - MasterWins: the master's value wherever the master has one
    - NonBlank: the master when non-blank, else the first non-blank duplicate
    - MostRecent: the most recently modified record holding a value
      (last_modified, falling back to created_at; ties go to the master,
      then to duplicate order)
    - Manual: no selections; every disagreement stays a conflict

    Args:
        master: Master record
        duplicates: Duplicate records in merge order
        strategy: Field selection strategy

    Returns:
        Field name -> record id whose value is kept
    """
    strategy = FieldSelection(strategy)
    if strategy == FieldSelection.MANUAL:
        return {}

    selections: Dict[str, str] = {}
    for name in disputed_fields(master, duplicates):
        holders = [r for r in [master, *duplicates] if not r.is_blank(name)]

        if strategy == FieldSelection.MASTER_WINS:
            if not master.is_blank(name):
                selections[name] = master.record_id
        elif strategy == FieldSelection.NON_BLANK:
            selections[name] = holders[0].record_id
        elif strategy == FieldSelection.MOST_RECENT:
            latest = max(_recency(r) for r in holders)
            selections[name] = next(r for r in holders if _recency(r) == latest).record_id

    return selections


def build_conflict_report(plan: 'MergePlan') -> List[Dict[str, Any]]:
    """
    Group a plan's conflicts by field for review and audit.

    Args:
        plan: Merge plan

    Returns:
        One entry per conflicted field:
        {field, masterValue, alternativeValues: [{value, sourceRecordId}]}
    """
    report: Dict[str, Dict[str, Any]] = {}
    for conflict in plan.conflicts:
        entry = report.setdefault(conflict.field, {
            'field': conflict.field,
            'masterValue': json_value(conflict.master_value),
            'alternativeValues': [],
        })
        entry['alternativeValues'].append({
            'value': json_value(conflict.duplicate_value),
            'sourceRecordId': conflict.duplicate_record_id,
        })
    return list(report.values())


def render_audit_note(plan: 'MergePlan', labels: Optional[Mapping[str, str]] = None) -> str:
    """
    Render the note attached to the master record after a merge.

    Args:
        plan: Merge plan
        labels: Optional field name -> display label

    Returns:
        Note text listing every value the merge did not keep
    """
    report = build_conflict_report(plan)
    if not report:
        return NO_CONFLICTS_NOTE

    labels = labels or {}
    lines = [f"{NOTE_TITLE}:", "", "== CONFLICTING VALUES =="]
    for entry in report:
        label = labels.get(entry['field'], entry['field'])
        values = ', '.join(str(alt['value']) for alt in entry['alternativeValues'])
        lines.append(f"{label}: {values}")
    return '\n'.join(lines) + '\n'

