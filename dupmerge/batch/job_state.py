"""
Job run state and its lifecycle.

    QUEUED -> PREPARING -> PROCESSING -> COMPLETED
                               |  ^
                               v  |
                             HOLDING

Any non-terminal state may also go to FAILED or ABORTED. A FAILED job can be
resumed, which re-enters PREPARING and continues from its last checkpoint.
"""

from dataclasses import dataclass, field, fields, replace
from datetime import datetime
from typing import Any, Dict, FrozenSet, List, Mapping, Optional

from ..core.errors import JobStateError
from ..core.strategies import LenientEnum


class JobStatus(LenientEnum):
    """Status of a deduplication job."""
    QUEUED = "Queued"
    PREPARING = "Preparing"
    PROCESSING = "Processing"
    HOLDING = "Holding"
    COMPLETED = "Completed"
    FAILED = "Failed"
    ABORTED = "Aborted"


TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.PREPARING, JobStatus.FAILED, JobStatus.ABORTED}),
    JobStatus.PREPARING: frozenset({JobStatus.PROCESSING, JobStatus.FAILED, JobStatus.ABORTED}),
    JobStatus.PROCESSING: frozenset({
        JobStatus.HOLDING, JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.ABORTED,
    }),
    JobStatus.HOLDING: frozenset({JobStatus.PROCESSING, JobStatus.FAILED, JobStatus.ABORTED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset({JobStatus.PREPARING}),
    JobStatus.ABORTED: frozenset(),
}

TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.ABORTED})
RESUMABLE_STATUSES = frozenset({JobStatus.FAILED, JobStatus.HOLDING, JobStatus.PROCESSING})


@dataclass
class JobRunState:
    """
    Progress of one deduplication job.

    Counters only move forward after a page is fully flushed, so a persisted
    state is always a consistent checkpoint to resume from.
    """
    job_id: str
    config_id: str
    object_type: str = ''
    status: JobStatus = JobStatus.QUEUED
    cursor: Optional[str] = None
    records_processed: int = 0
    duplicates_found: int = 0
    records_merged: int = 0
    groups_found: int = 0
    pages_processed: int = 0
    resume_attempts: int = 0
    start_time: Optional[datetime] = None
    last_update: Optional[datetime] = None
    end_time: Optional[datetime] = None
    is_dry_run: bool = False
    batch_size: int = 0  # 0 = use the configured batch size
    errors: List[str] = field(default_factory=list)
    failed_group_ids: List[str] = field(default_factory=list)

    def can_transition(self, status: JobStatus) -> bool:
        return JobStatus(status) in TRANSITIONS[self.status]

    def transition(self, status: JobStatus, now: Optional[datetime] = None) -> None:
        """
        Move to a new status.

        Args:
            status: Target status
            now: Current time (recorded as last_update)

        Raises:
            JobStateError: If the transition is not allowed
        """
        status = JobStatus(status)
        if not self.can_transition(status):
            raise JobStateError(
                f"Job {self.job_id}: cannot go from {self.status.value} to {status.value}"
            )

        now = now or datetime.now()
        self.status = status
        self.last_update = now
        if status == JobStatus.PREPARING:
            self.start_time = self.start_time or now
            self.end_time = None
        if status in TERMINAL_STATUSES:
            self.end_time = now

    def record_error(self, message: str) -> None:
        # A retried page reports the same errors again
        if message not in self.errors:
            self.errors.append(message)

    def record_failed_group(self, group_id: str) -> None:
        if group_id not in self.failed_group_ids:
            self.failed_group_ids.append(group_id)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def duplicate_rate(self) -> float:
        """Share of processed records that are duplicates (0-1)."""
        if not self.records_processed:
            return 0.0
        return self.duplicates_found / self.records_processed

    @property
    def merge_rate(self) -> float:
        """Share of found duplicates that were merged (0-1)."""
        if not self.duplicates_found:
            return 0.0
        return self.records_merged / self.duplicates_found

    @property
    def records_per_minute(self) -> float:
        if not self.start_time:
            return 0.0
        until = self.end_time or self.last_update
        if not until:
            return 0.0
        minutes = (until - self.start_time).total_seconds() / 60.0
        if minutes <= 0:
            return 0.0
        return self.records_processed / minutes

    def copy(self) -> 'JobRunState':
        """Independent copy (lists included)."""
        return replace(
            self,
            errors=list(self.errors),
            failed_group_ids=list(self.failed_group_ids),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-friendly dictionary, derived metrics included."""
        data: Dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, datetime):
                value = value.isoformat()
            elif isinstance(value, JobStatus):
                value = value.value
            elif isinstance(value, list):
                value = list(value)
            data[f.name] = value

        data['duplicate_rate'] = self.duplicate_rate
        data['merge_rate'] = self.merge_rate
        data['records_per_minute'] = self.records_per_minute
        data['is_terminal'] = self.is_terminal
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'JobRunState':
        """Create from a dictionary produced by to_dict (derived keys are ignored)."""
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}

        values['status'] = JobStatus(values.get('status', JobStatus.QUEUED))
        for name in ('start_time', 'last_update', 'end_time'):
            if isinstance(values.get(name), str):
                values[name] = datetime.fromisoformat(values[name])
        values['errors'] = list(values.get('errors') or [])
        values['failed_group_ids'] = list(values.get('failed_group_ids') or [])
        return cls(**values)

    def __str__(self) -> str:
        mode = ' (dry run)' if self.is_dry_run else ''
        return (
            f"Job {self.job_id}{mode}: {self.status.value}\n"
            f"  Records processed: {self.records_processed}\n"
            f"  Duplicate groups: {self.groups_found}\n"
            f"  Duplicates found: {self.duplicates_found} ({self.duplicate_rate:.1%})\n"
            f"  Records merged: {self.records_merged} ({self.merge_rate:.1%})"
        )
