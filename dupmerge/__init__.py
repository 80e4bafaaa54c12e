"""DupMerge - A record deduplication and merge engine."""

__version__ = "0.1.0"

from .core.record import CandidateRecord, FieldType
from .config.schema import DedupeConfig
from .config.loader import load_config
from .matching.scorer import MatchScorer, score_pair
from .matching.grouping import DuplicateGroup, DuplicateGrouper
from .merge.master_selection import select_master
from .merge.merger import MergePlan, MergeResolver
from .batch.job_state import JobRunState, JobStatus
from .batch.orchestrator import BatchOrchestrator
from .repository.memory import InMemoryRepository
from .repository.sqlite_adapter import SqliteRepository

__all__ = [
    'CandidateRecord',
    'FieldType',
    'DedupeConfig',
    'load_config',
    'MatchScorer',
    'score_pair',
    'DuplicateGroup',
    'DuplicateGrouper',
    'select_master',
    'MergePlan',
    'MergeResolver',
    'JobRunState',
    'JobStatus',
    'BatchOrchestrator',
    'InMemoryRepository',
    'SqliteRepository',
]
