"""
Master record selection.

Picks the record that survives a merge. Every strategy is deterministic:
ties always fall back to the oldest record, then to the smallest id.
"""

from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Union

from ..core.errors import EmptyGroupError
from ..core.record import CandidateRecord
from ..core.strategies import MasterStrategy
from ..matching.grouping import DuplicateGroup

RecordSource = Union[Mapping[str, CandidateRecord], Iterable[CandidateRecord]]


def _created(record: CandidateRecord) -> datetime:
    value = record.created_at
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _oldest(candidates: List[CandidateRecord]) -> CandidateRecord:
    return min(candidates, key=lambda r: (_created(r), r.record_id))


def _newest(candidates: List[CandidateRecord]) -> CandidateRecord:
    latest = max(_created(r) for r in candidates)
    return min(
        (r for r in candidates if _created(r) == latest),
        key=lambda r: r.record_id
    )


def _most_complete(
    candidates: List[CandidateRecord],
    fields: Optional[Iterable[str]] = None
) -> CandidateRecord:
    field_names = list(fields) if fields is not None else None
    counts = {r.record_id: r.non_blank_count(field_names) for r in candidates}
    best = max(counts.values())
    return _oldest([r for r in candidates if counts[r.record_id] == best])


STRATEGIES: Dict[MasterStrategy, Callable[..., CandidateRecord]] = {
    MasterStrategy.OLDEST_CREATED: lambda candidates, fields: _oldest(candidates),
    MasterStrategy.NEWEST_CREATED: lambda candidates, fields: _newest(candidates),
    MasterStrategy.MOST_COMPLETE: _most_complete,
}


def index_records(records: RecordSource) -> Dict[str, CandidateRecord]:
    """Record id -> record for either a mapping or a plain iterable."""
    if isinstance(records, Mapping):
        return dict(records)
    return {record.record_id: record for record in records}


def select_master(
    group: DuplicateGroup,
    records: RecordSource,
    strategy: MasterStrategy = MasterStrategy.OLDEST_CREATED,
    fields: Optional[Iterable[str]] = None
) -> str:
    """
    Select the master record of a group.

    Selection criteria:
    - OldestCreated: earliest created_at, ties by smallest id
    - NewestCreated: latest created_at, ties by smallest id
    - MostComplete: most non-blank values among `fields` (all fields if None),
      ties by OldestCreated

    Args:
        group: Duplicate group
        records: The group's records (mapping by id or iterable)
        strategy: Selection strategy
        fields: Fields counted by MostComplete

    Returns:
        Record id of the master

    Raises:
        EmptyGroupError: If fewer than two of the group's records are available
    """
    by_id = index_records(records)
    candidates = [by_id[rid] for rid in group.record_ids if rid in by_id]
    if len(candidates) < 2:
        raise EmptyGroupError(
            f"Group has {len(candidates)} available record(s), need at least 2",
            group_id=group.group_id,
        )

    return STRATEGIES[MasterStrategy(strategy)](candidates, fields).record_id
