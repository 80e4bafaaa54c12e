"""Batch job orchestration."""

from .job_state import JobRunState, JobStatus, TERMINAL_STATUSES, TRANSITIONS
from .appliers import DryRunApplier, MergeApplier, RepositoryApplier
from .orchestrator import BatchOrchestrator

__all__ = [
    'JobRunState',
    'JobStatus',
    'TERMINAL_STATUSES',
    'TRANSITIONS',
    'DryRunApplier',
    'MergeApplier',
    'RepositoryApplier',
    'BatchOrchestrator',
]
