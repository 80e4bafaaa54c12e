"""In-memory record repository for tests, dry runs and embedding."""

import logging
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from ..batch.job_state import JobRunState
from ..config.schema import DedupeConfig
from ..core.errors import ConfigurationError
from ..core.record import CandidateRecord
from ..merge.conflict_resolver import build_conflict_report, render_audit_note
from ..merge.merger import MergePlan
from .base import MergeResult, Page, RecordRepository

logger = logging.getLogger(__name__)


class InMemoryRepository(RecordRepository):
    """
    Keeps records, configurations and job states in dictionaries.

    Pages are keyset-paginated on record id, so records deleted by a merge
    never shift later records out of a page.
    """

    def __init__(
        self,
        configs: Iterable[DedupeConfig] = (),
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.clock = clock or datetime.now
        self.records: Dict[str, Dict[str, CandidateRecord]] = {}
        self.configs: Dict[str, DedupeConfig] = {c.config_id: c for c in configs}
        self.job_states: Dict[str, JobRunState] = {}
        self.state_history: List[JobRunState] = []
        self.applied_plans: List[MergePlan] = []
        self.notes: Dict[str, List[str]] = {}
        self.conflict_reports: Dict[str, list] = {}

    def add_records(self, object_type: str, records: Iterable[CandidateRecord]) -> int:
        """Add (or replace) records of an object type. Returns the count added."""
        store = self.records.setdefault(object_type, {})
        count = 0
        for record in records:
            store[record.record_id] = record
            count += 1
        return count

    def add_config(self, config: DedupeConfig) -> None:
        self.configs[config.config_id] = config

    def get_record(self, object_type: str, record_id: str) -> Optional[CandidateRecord]:
        return self.records.get(object_type, {}).get(record_id)

    def count_records(self, object_type: str) -> int:
        return len(self.records.get(object_type, {}))

    def fetch_page(self, object_type: str, cursor: Optional[str], page_size: int) -> Page:
        store = self.records.get(object_type, {})
        ids = sorted(rid for rid in store if cursor is None or rid > cursor)
        selected = ids[:page_size]
        return Page(
            records=tuple(store[rid] for rid in selected),
            next_cursor=selected[-1] if selected else cursor,
            has_more=len(ids) > page_size,
        )

    def apply_merge_plan(self, plan: MergePlan) -> MergeResult:
        store = self.records.get(plan.object_type or '', {})
        if plan.master_id not in store:
            return MergeResult(
                success=False,
                errors=(f"{plan.object_type} master record {plan.master_id} not found",),
                group_id=plan.group_id,
            )

        missing = [rid for rid in plan.duplicate_ids if rid not in store]
        if missing:
            return MergeResult(
                success=False,
                errors=(f"Duplicate record(s) not found: {', '.join(missing)}",),
                group_id=plan.group_id,
            )

        master = store[plan.master_id]
        store[plan.master_id] = CandidateRecord(
            record_id=master.record_id,
            created_at=master.created_at,
            fields=dict(plan.resolved_fields),
            last_modified=self.clock(),
        )
        for rid in plan.duplicate_ids:
            del store[rid]

        self.applied_plans.append(plan)
        self.conflict_reports[plan.group_id] = build_conflict_report(plan)
        if plan.has_conflicts:
            self.notes.setdefault(plan.master_id, []).append(render_audit_note(plan))

        logger.debug(f"Merged {', '.join(plan.duplicate_ids)} into {plan.master_id}")
        return MergeResult(success=True, group_id=plan.group_id)

    def persist_job_state(self, state: JobRunState) -> None:
        self.job_states[state.job_id] = state.copy()
        self.state_history.append(state.copy())

    def load_config(self, config_id: str) -> DedupeConfig:
        try:
            return self.configs[config_id]
        except KeyError:
            raise ConfigurationError(f"Configuration not found: {config_id}") from None

    def load_job_state(self, job_id: str) -> Optional[JobRunState]:
        state = self.job_states.get(job_id)
        return state.copy() if state is not None else None

    def list_job_states(self) -> List[JobRunState]:
        return [state.copy() for state in self.job_states.values()]

    def statuses(self, job_id: str) -> List[str]:
        """Status values persisted for a job, in order (repeats collapsed)."""
        values: List[str] = []
        for state in self.state_history:
            if state.job_id == job_id and (not values or values[-1] != state.status.value):
                values.append(state.status.value)
        return values
