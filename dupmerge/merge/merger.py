"""
Merge resolution: turns a duplicate group into a merge plan.

The resolver never touches storage. It decides, field by field, which value
the surviving master record ends up with, and records every non-blank value
it does not keep as a FieldConflict so nothing is lost silently.
"""

import json
import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from ..core.errors import EmptyGroupError, InvalidMasterError, InvalidOverrideError
from ..core.record import CandidateRecord, is_blank, json_value
from ..core.strategies import FieldSelection
from ..matching.grouping import DuplicateGroup, make_group_id
from .conflict_resolver import FieldConflict, FieldStatus, build_field_selections, values_equal
from .master_selection import RecordSource, index_records

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MergePlan:
    """
    Everything needed to merge one group, decided up front.

    Attributes:
        group_id: Id of the merged group
        master_id: Surviving record
        duplicate_ids: Records merged into the master, in merge order
        resolved_fields: Final field values of the master
        field_sources: Field -> record id the resolved value came from
        field_statuses: Field -> how the value was resolved
        conflicts: Values that were not kept
        field_selections: Overrides that were applied (field -> record id)
        object_type: Object type of every record in the plan
    """
    group_id: str
    master_id: str
    duplicate_ids: Tuple[str, ...]
    resolved_fields: Mapping[str, Any]
    field_sources: Mapping[str, str]
    field_statuses: Mapping[str, FieldStatus]
    conflicts: Tuple[FieldConflict, ...] = ()
    field_selections: Optional[Mapping[str, str]] = None
    object_type: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, 'duplicate_ids', tuple(self.duplicate_ids))
        object.__setattr__(self, 'conflicts', tuple(self.conflicts))
        for name in ('resolved_fields', 'field_sources', 'field_statuses', 'field_selections'):
            object.__setattr__(self, name, MappingProxyType(dict(getattr(self, name) or {})))

    @property
    def has_conflicts(self) -> bool:
        return bool(self.conflicts)

    @property
    def record_ids(self) -> Tuple[str, ...]:
        return (self.master_id, *self.duplicate_ids)

    def changed_fields(self) -> Dict[str, Any]:
        """Fields whose value does not come from the master."""
        return {
            name: self.resolved_fields[name]
            for name, source in self.field_sources.items()
            if source != self.master_id
        }

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-friendly dictionary."""
        return {
            'group_id': self.group_id,
            'master_id': self.master_id,
            'duplicate_ids': list(self.duplicate_ids),
            'resolved_fields': {k: json_value(v) for k, v in self.resolved_fields.items()},
            'field_sources': dict(self.field_sources),
            'field_statuses': {k: v.value for k, v in self.field_statuses.items()},
            'conflicts': [conflict.to_dict() for conflict in self.conflicts],
            'field_selections': dict(self.field_selections),
            'object_type': self.object_type,
        }

    def to_json(self) -> str:
        """Deterministic JSON: identical plans always give identical strings."""
        return json.dumps(self.to_dict(), sort_keys=True, default=str, ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'MergePlan':
        """Create from a dictionary produced by to_dict."""
        return cls(
            group_id=data['group_id'],
            master_id=data['master_id'],
            duplicate_ids=tuple(data['duplicate_ids']),
            resolved_fields=data['resolved_fields'],
            field_sources=data['field_sources'],
            field_statuses={k: FieldStatus(v) for k, v in data['field_statuses'].items()},
            conflicts=tuple(FieldConflict(**c) for c in data.get('conflicts', [])),
            field_selections=data.get('field_selections') or {},
            object_type=data.get('object_type'),
        )

    def __str__(self) -> str:
        return (
            f"Merge {', '.join(self.duplicate_ids)} into {self.master_id}\n"
            f"  Fields: {len(self.resolved_fields)}\n"
            f"  Conflicts: {len(self.conflicts)}"
        )


class MergeResolver:
    """
    Resolves field values for a master and its duplicates.

    Resolution rules, per field (master fields first, then fields only the
    duplicates have, in duplicate order):
    1. A field selection names the record whose value is kept. Selections
       made by the field selection strategy record every other differing
       value as a conflict; explicit overrides do not
    2. A non-blank master value is kept; differing duplicates become conflicts
    3. A blank master value is filled from the first duplicate that has one;
       other differing duplicate values become conflicts
    4. Blank everywhere: the master's raw value is kept
    """

    def __init__(self, field_selection: FieldSelection = FieldSelection.MANUAL):
        """
        Args:
            field_selection: Strategy that pre-fills selections for disputed fields
        """
        self.field_selection = FieldSelection(field_selection)

    def resolve(
        self,
        master: CandidateRecord,
        duplicates: Sequence[CandidateRecord],
        overrides: Optional[Mapping[str, str]] = None,
        group_id: Optional[str] = None,
        object_type: Optional[str] = None
    ) -> MergePlan:
        """
        Build the merge plan for a master and its duplicates.

        Args:
            master: Surviving record
            duplicates: Records merged into the master, in merge order
            overrides: Field -> record id whose value to keep
            group_id: Id of the group (derived from the member ids if None)
            object_type: Object type of the records, carried on the plan

        Returns:
            MergePlan

        Raises:
            EmptyGroupError: If there are no duplicates
            InvalidMasterError: If the master is among the duplicates or a
                duplicate appears twice
            InvalidOverrideError: If an override names a record outside the group
        """
        duplicates = list(duplicates)
        duplicate_ids = [d.record_id for d in duplicates]
        group_id = group_id or make_group_id([master.record_id, *duplicate_ids])

        if not duplicates:
            raise EmptyGroupError("A merge needs at least one duplicate", group_id=group_id)
        if master.record_id in duplicate_ids:
            raise InvalidMasterError(
                f"Master {master.record_id} is also listed as a duplicate", group_id=group_id
            )
        if len(set(duplicate_ids)) != len(duplicate_ids):
            raise InvalidMasterError("Duplicate record listed more than once", group_id=group_id)

        by_id = {master.record_id: master, **{d.record_id: d for d in duplicates}}

        overrides = dict(overrides or {})
        strategy_selections = build_field_selections(master, duplicates, self.field_selection)
        selections = {**strategy_selections, **overrides}
        for name, record_id in selections.items():
            if record_id not in by_id:
                raise InvalidOverrideError(
                    f"Selection for '{name}' points at {record_id}, which is not in the group",
                    group_id=group_id,
                )

        resolved: Dict[str, Any] = {}
        sources: Dict[str, str] = {}
        statuses: Dict[str, FieldStatus] = {}
        conflicts: List[FieldConflict] = []

        for name in self._field_names(master, duplicates):
            if name in selections:
                source = selections[name]
                kept = by_id[source].get(name)
                resolved[name] = kept
                sources[name] = source
                statuses[name] = FieldStatus.OVERRIDDEN
                if name not in overrides:
                    others = [r for r in (master, *duplicates) if r.record_id != source]
                    conflicts.extend(
                        FieldConflict(name, kept, r.get(name), r.record_id)
                        for r in self._differing(name, kept, others)
                    )
                continue

            master_value = master.get(name)
            if not is_blank(master_value):
                resolved[name] = master_value
                sources[name] = master.record_id
                differing = self._differing(name, master_value, duplicates)
                statuses[name] = FieldStatus.CONFLICT if differing else FieldStatus.UNCHANGED
                conflicts.extend(
                    FieldConflict(name, master_value, d.get(name), d.record_id) for d in differing
                )
                continue

            providers = [d for d in duplicates if not d.is_blank(name)]
            if not providers:
                resolved[name] = master_value
                sources[name] = master.record_id
                statuses[name] = FieldStatus.UNCHANGED
                continue

            adopted = providers[0].get(name)
            resolved[name] = adopted
            sources[name] = providers[0].record_id
            statuses[name] = FieldStatus.FILLED
            conflicts.extend(
                FieldConflict(name, adopted, d.get(name), d.record_id)
                for d in self._differing(name, adopted, providers[1:])
            )

        return MergePlan(
            group_id=group_id,
            master_id=master.record_id,
            duplicate_ids=tuple(duplicate_ids),
            resolved_fields=resolved,
            field_sources=sources,
            field_statuses=statuses,
            conflicts=tuple(conflicts),
            field_selections=selections,
            object_type=object_type,
        )

    def resolve_group(
        self,
        group: DuplicateGroup,
        records: RecordSource,
        overrides: Optional[Mapping[str, str]] = None,
        object_type: Optional[str] = None
    ) -> MergePlan:
        """
        Build the merge plan for a group whose master has been selected.

        Args:
            group: Duplicate group with master_record_id set
            records: The group's records (mapping by id or iterable)
            overrides: Field -> record id whose value to keep
            object_type: Object type of the records, carried on the plan

        Returns:
            MergePlan

        Raises:
            InvalidMasterError: If the master is unset or not available
            EmptyGroupError: If fewer than two of the group's records are available
        """
        by_id = index_records(records)
        available = [rid for rid in group.record_ids if rid in by_id]
        if len(available) < 2:
            raise EmptyGroupError(
                f"Group has {len(available)} available record(s), need at least 2",
                group_id=group.group_id,
            )

        master_id = group.master_record_id
        if master_id is None or master_id not in group.record_ids or master_id not in by_id:
            raise InvalidMasterError(
                f"Master {master_id} is not an available member of the group",
                group_id=group.group_id,
            )

        duplicates = [by_id[rid] for rid in available if rid != master_id]
        return self.resolve(
            by_id[master_id], duplicates, overrides,
            group_id=group.group_id, object_type=object_type,
        )

    @staticmethod
    def _field_names(master: CandidateRecord, duplicates: Sequence[CandidateRecord]) -> List[str]:
        names = list(master.fields)
        seen = set(names)
        for duplicate in duplicates:
            for name in duplicate.fields:
                if name not in seen:
                    seen.add(name)
                    names.append(name)
        return names

    @staticmethod
    def _differing(
        name: str,
        kept_value: Any,
        duplicates: Sequence[CandidateRecord]
    ) -> List[CandidateRecord]:
        return [
            d for d in duplicates
            if not d.is_blank(name) and not values_equal(d.get(name), kept_value)
        ]
