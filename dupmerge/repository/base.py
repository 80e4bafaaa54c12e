"""
Repository interface: the engine's only door to stored records.

The orchestrator reads pages of records, hands over merge plans and
checkpoints job state through this interface. Transient failures are
reported by raising RepositoryError (or RateLimitedError).
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Optional, Tuple

from ..config.schema import DedupeConfig
from ..core.record import CandidateRecord
from ..merge.merger import MergePlan

if TYPE_CHECKING:
    from ..batch.job_state import JobRunState


@dataclass(frozen=True)
class Page:
    """One page of records.

    Attributes:
        records: Records of the page, in cursor order
        next_cursor: Cursor that fetches the following page
        has_more: True if another page follows
    """
    records: Tuple[CandidateRecord, ...]
    next_cursor: Optional[str] = None
    has_more: bool = False

    def __post_init__(self):
        object.__setattr__(self, 'records', tuple(self.records))

    def __len__(self) -> int:
        return len(self.records)


@dataclass(frozen=True)
class MergeResult:
    """Outcome of applying one merge plan."""
    success: bool
    errors: Tuple[str, ...] = ()
    group_id: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, 'errors', tuple(self.errors))

    def __str__(self) -> str:
        if self.success:
            return f"✓ Applied merge plan {self.group_id}"
        return f"✗ Merge plan {self.group_id} failed\n  Errors: {', '.join(self.errors)}"


class RecordRepository(ABC):
    """Storage collaborator of the batch orchestrator."""

    @abstractmethod
    def fetch_page(self, object_type: str, cursor: Optional[str], page_size: int) -> Page:
        """Fetch up to page_size records after cursor (None = from the start)."""

    @abstractmethod
    def apply_merge_plan(self, plan: MergePlan) -> MergeResult:
        """Write the master's resolved fields and remove the duplicates.

        Only records of plan.object_type are touched. A rejected plan (e.g.
        missing records) is a failed MergeResult.

        Raises:
            RepositoryError: On transient storage failures
        """

    @abstractmethod
    def persist_job_state(self, state: 'JobRunState') -> None:
        """Checkpoint a job's state."""

    @abstractmethod
    def load_config(self, config_id: str) -> DedupeConfig:
        """Load a job configuration.

        Raises:
            ConfigurationError: If the configuration does not exist
        """

    @abstractmethod
    def load_job_state(self, job_id: str) -> Optional['JobRunState']:
        """Load the last checkpoint of a job, or None if it is unknown."""

    def list_job_states(self) -> List['JobRunState']:
        """All persisted job states (newest last)."""
        return []

