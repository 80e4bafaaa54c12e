"""
Batch orchestrator: drives deduplication jobs over pages of records.

One tick processes one page:

1. Abort check
2. Fetch the page (transient repository errors put the job in HOLDING and
   are retried with backoff)
3. Group the page's records into duplicate groups
4. Select a master and resolve a merge plan per group
5. Apply the plans (or keep them, in a dry run)
6. Checkpoint the cursor and counters

Pauses and cancellation only take effect between pages.
"""

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set, TypeVar

from ..config.schema import MAX_BATCH_SIZE, DedupeConfig
from ..core.errors import (
    ConfigurationError,
    DupMergeError,
    GroupError,
    JobStateError,
    PartialApplyError,
    RateLimitedError,
    RepositoryError,
)
from ..core.record import RecordSchema
from ..matching.grouping import DuplicateGrouper
from ..matching.registry import MatcherRegistry
from ..merge.master_selection import select_master
from ..merge.merger import MergePlan, MergeResolver
from ..repository.base import Page, RecordRepository
from .appliers import DryRunApplier, MergeApplier, RepositoryApplier
from .job_state import RESUMABLE_STATUSES, JobRunState, JobStatus

logger = logging.getLogger(__name__)

T = TypeVar('T')


@dataclass
class _JobContext:
    """Per-job collaborators built once while preparing the job."""
    config: DedupeConfig
    grouper: DuplicateGrouper
    resolver: MergeResolver
    applier: MergeApplier


@dataclass
class _PageOutcome:
    groups_found: int = 0
    duplicates_found: int = 0
    records_merged: int = 0
    failed_group_ids: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


class BatchOrchestrator:
    """
    Runs deduplication jobs against a record repository.

    The job table is guarded by a lock so status reads and cancellation can
    come from another thread (e.g. the HTTP API) while a job runs.
    """

    def __init__(
        self,
        repository: RecordRepository,
        registry: Optional[MatcherRegistry] = None,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Optional[Callable[[float], None]] = None,
        id_factory: Optional[Callable[[], str]] = None
    ):
        """
        Args:
            repository: Record store
            registry: Matcher registry (custom matchers are registered here);
                each orchestrator gets its own by default
            clock: Returns the current time
            sleep: Waits between retries
            id_factory: Generates job ids
        """
        self.repository = repository
        self.registry = registry or MatcherRegistry()
        self.clock = clock or datetime.now
        self.sleep = sleep or time.sleep
        self.id_factory = id_factory or (lambda: str(uuid.uuid4()))

        self._lock = threading.RLock()
        self._jobs: Dict[str, JobRunState] = {}
        self._contexts: Dict[str, _JobContext] = {}
        self._abort_requested: Set[str] = set()

    # ========== Public API ==========

    def start_job(
        self,
        config_id: str,
        is_dry_run: bool = False,
        batch_size: Optional[int] = None
    ) -> str:
        """
        Queue a new job.

        Args:
            config_id: Configuration to run with
            is_dry_run: Resolve plans without applying them
            batch_size: Records per page (defaults to the configured size)

        Returns:
            The new job id

        Raises:
            ConfigurationError: If batch_size is out of range
        """
        if batch_size is not None and not 1 <= batch_size <= MAX_BATCH_SIZE:
            raise ConfigurationError(f"batch_size must be between 1 and {MAX_BATCH_SIZE}")

        job_id = self.id_factory()
        state = JobRunState(
            job_id=job_id,
            config_id=config_id,
            is_dry_run=is_dry_run,
            batch_size=batch_size or 0,
            last_update=self.clock(),
        )

        with self._lock:
            if job_id in self._jobs:
                raise JobStateError(f"Job {job_id} already exists")
            self._jobs[job_id] = state

        self._persist(state)
        mode = 'dry run' if is_dry_run else 'merge'
        logger.info(f"Queued {mode} job {job_id} for config {config_id}")
        return job_id

    def run_job(self, job_id: str) -> JobRunState:
        """
        Run a job until it completes, fails or is aborted.

        Args:
            job_id: Job to run

        Returns:
            Copy of the final job state
        """
        state = self._get(job_id)
        while not state.is_terminal:
            self.process_next_page(job_id)
        return self.get_job_status(job_id)

    def process_next_page(self, job_id: str) -> JobRunState:
        """
        Process one page of a job (preparing the job first if needed).

        Args:
            job_id: Job to advance

        Returns:
            Copy of the job state after the page
        """
        state = self._get(job_id)
        if state.is_terminal:
            return self.get_job_status(job_id)

        if self._abort_if_requested(state):
            return self.get_job_status(job_id)

        if state.status == JobStatus.QUEUED:
            self._transition(state, JobStatus.PREPARING)
        if state.status == JobStatus.PREPARING or job_id not in self._contexts:
            if not self._prepare(state):
                return self.get_job_status(job_id)
        if state.status == JobStatus.PREPARING:
            self._transition(state, JobStatus.PROCESSING)

        context = self._contexts[job_id]
        try:
            page = self._with_retry(
                state,
                context.config,
                lambda: self.repository.fetch_page(state.object_type, state.cursor, state.batch_size),
                'fetch page',
            )
            if page is None:
                return self.get_job_status(job_id)

            outcome = self._process_page(state, context, page)
        except Exception as e:
            self._fail(state, e)
            return self.get_job_status(job_id)

        if outcome is None:
            return self.get_job_status(job_id)
        self._checkpoint(state, context, page, outcome)
        return self.get_job_status(job_id)

    def get_job_status(self, job_id: str) -> JobRunState:
        """
        Get a snapshot of a job's state.

        Raises:
            JobStateError: If the job is unknown
        """
        with self._lock:
            state = self._jobs.get(job_id)
            if state is not None:
                return state.copy()

        state = self.repository.load_job_state(job_id)
        if state is None:
            raise JobStateError(f"Unknown job: {job_id}")
        return state

    def list_jobs(self) -> List[JobRunState]:
        """Snapshots of every job this orchestrator knows, oldest first."""
        with self._lock:
            known = {job_id: state.copy() for job_id, state in self._jobs.items()}
        for state in self.repository.list_job_states():
            known.setdefault(state.job_id, state)
        return sorted(known.values(), key=lambda s: (s.last_update or datetime.min, s.job_id))

    def cancel_job(self, job_id: str) -> bool:
        """
        Request that a job stop.

        Queued jobs are aborted immediately; running jobs stop at the next
        page boundary.

        Returns:
            False if the job had already finished

        Raises:
            JobStateError: If the job is unknown
        """
        state = self._get(job_id)
        with self._lock:
            if state.is_terminal:
                return False
            self._abort_requested.add(job_id)

        if state.status == JobStatus.QUEUED:
            self._abort_if_requested(state)
        logger.info(f"Cancellation requested for job {job_id}")
        return True

    def resume_job(self, job_id: str) -> JobRunState:
        """
        Continue a job from its last persisted checkpoint.

        Args:
            job_id: A FAILED, HOLDING or interrupted PROCESSING job

        Returns:
            Copy of the final job state

        Raises:
            JobStateError: If the job is unknown or not resumable
        """
        state = self.repository.load_job_state(job_id)
        if state is None:
            with self._lock:
                state = self._jobs.get(job_id)
        if state is None:
            raise JobStateError(f"Unknown job: {job_id}")
        if state.status not in RESUMABLE_STATUSES:
            raise JobStateError(f"Job {job_id} is {state.status.value} and cannot be resumed")

        with self._lock:
            self._jobs[job_id] = state
            self._contexts.pop(job_id, None)
            self._abort_requested.discard(job_id)

        state.resume_attempts = 0
        logger.info(f"Resuming job {job_id} from cursor {state.cursor!r}")

        if state.status == JobStatus.FAILED:
            self._transition(state, JobStatus.PREPARING)
        if not self._prepare(state):
            return self.get_job_status(job_id)
        if state.status in (JobStatus.PREPARING, JobStatus.HOLDING):
            self._transition(state, JobStatus.PROCESSING)

        return self.run_job(job_id)

    def get_dry_run_plans(self, job_id: str) -> List[MergePlan]:
        """
        Merge plans collected by a dry run.

        Raises:
            JobStateError: If the job is unknown or is not a dry run
        """
        state = self._get(job_id)
        if not state.is_dry_run:
            raise JobStateError(f"Job {job_id} is not a dry run")

        with self._lock:
            context = self._contexts.get(job_id)
            if context is None or not isinstance(context.applier, DryRunApplier):
                return []
            return list(context.applier.plans)

    # ========== Job lifecycle ==========

    def _get(self, job_id: str) -> JobRunState:
        with self._lock:
            state = self._jobs.get(job_id)
        if state is None:
            raise JobStateError(f"Unknown job: {job_id}")
        return state

    def _transition(self, state: JobRunState, status: JobStatus) -> None:
        with self._lock:
            previous = state.status
            state.transition(status, now=self.clock())
        logger.debug(f"Job {state.job_id}: {previous.value} -> {status.value}")
        self._persist(state)

    def _prepare(self, state: JobRunState) -> bool:
        """Load the configuration and build the job's collaborators.

        Any error here fails the job; nothing has been read or merged yet.
        """
        try:
            config = self.repository.load_config(state.config_id)
            grouper = DuplicateGrouper.from_config(config, self.registry)
            # Catches unregistered custom matchers before any page is read
            grouper.scorer.bind(RecordSchema(config.declared_types))
        except Exception as e:
            self._fail(state, e)
            return False

        applier = DryRunApplier() if state.is_dry_run else RepositoryApplier(self.repository)
        context = _JobContext(
            config=config,
            grouper=grouper,
            resolver=MergeResolver(config.field_selection),
            applier=applier,
        )

        with self._lock:
            self._contexts[state.job_id] = context
            state.object_type = config.object_type
            if not state.batch_size:
                state.batch_size = config.batch_size

        logger.info(
            f"Prepared job {state.job_id}: object {config.object_type}, "
            f"batch size {state.batch_size}, threshold {config.threshold}"
        )
        return True

    def _abort_if_requested(self, state: JobRunState) -> bool:
        with self._lock:
            if state.job_id not in self._abort_requested:
                return False
            self._abort_requested.discard(state.job_id)

        self._transition(state, JobStatus.ABORTED)
        logger.info(f"Job {state.job_id} aborted after {state.records_processed} records")
        return True

    def _fail(self, state: JobRunState, error: Exception) -> None:
        with self._lock:
            state.record_error(str(error))
            if isinstance(error, PartialApplyError):
                for group_id in error.failed_group_ids:
                    state.record_failed_group(group_id)
        logger.error(f"Job {state.job_id} failed: {error}")
        self._transition(state, JobStatus.FAILED)

    def _persist(self, state: JobRunState) -> None:
        try:
            self.repository.persist_job_state(state.copy())
        except RepositoryError as e:
            logger.warning(f"Could not persist state of job {state.job_id}: {e}")

    # ========== Page processing ==========

    def _with_retry(
        self,
        state: JobRunState,
        config: DedupeConfig,
        operation: Callable[[], T],
        description: str
    ) -> Optional[T]:
        """
        Run a repository call, holding the job and retrying on transient errors.

        Returns:
            The call's result, or None if the job was aborted while holding

        Raises:
            RepositoryError: When max_resume_attempts is exhausted
        """
        while True:
            try:
                result = operation()
            except RepositoryError as e:
                if state.resume_attempts >= config.max_resume_attempts:
                    raise

                with self._lock:
                    state.resume_attempts += 1
                    attempt = state.resume_attempts
                if state.status == JobStatus.PROCESSING:
                    self._transition(state, JobStatus.HOLDING)

                if isinstance(e, RateLimitedError) and e.retry_after is not None:
                    delay = e.retry_after
                else:
                    delay = config.backoff_seconds * (2 ** (attempt - 1))
                logger.warning(
                    f"Job {state.job_id} holding: {description} failed ({e}), "
                    f"retry {attempt}/{config.max_resume_attempts} in {delay:.1f}s"
                )
                self.sleep(delay)

                if self._abort_if_requested(state):
                    return None
                continue

            if state.status == JobStatus.HOLDING:
                with self._lock:
                    state.resume_attempts = 0
                self._transition(state, JobStatus.PROCESSING)
            return result

    def _process_page(
        self,
        state: JobRunState,
        context: _JobContext,
        page: Page
    ) -> Optional[_PageOutcome]:
        """
        Group, resolve and apply one page.

        Returns:
            The page's counters, or None if the job was aborted while holding

        Raises:
            PartialApplyError: If the repository rejected some plans
            RepositoryError: If applying a plan kept failing after retries
        """
        outcome = _PageOutcome()
        records = list(page.records)
        if not records:
            return outcome

        by_id = {record.record_id: record for record in records}
        groups = context.grouper.group(records)
        outcome.groups_found = len(groups)
        master_fields = list(context.config.field_weights)

        plans: List[MergePlan] = []
        for group in groups:
            if group.oversized:
                logger.warning(f"Not merging oversized group {group.group_id} ({group.size} records)")
                continue

            try:
                master_id = select_master(
                    group, by_id, context.config.master_strategy, fields=master_fields
                )
                plan = context.resolver.resolve_group(
                    group.with_master(master_id), by_id, object_type=state.object_type
                )
            except GroupError as e:
                logger.warning(f"Skipping group {group.group_id}: {e}")
                outcome.failed_group_ids.append(group.group_id)
                outcome.errors.append(f"Group {group.group_id}: {e}")
                continue
            plans.append(plan)

        outcome.duplicates_found = sum(len(plan.duplicate_ids) for plan in plans)

        applied: List[MergePlan] = []
        failed_ids: List[str] = []
        apply_errors: List[str] = []
        page_done = False
        try:
            for plan in plans:
                result = self._with_retry(
                    state,
                    context.config,
                    lambda: context.applier.apply(plan),
                    f'apply plan {plan.group_id}',
                )
                if result is None:
                    return None
                if result.success:
                    applied.append(plan)
                else:
                    failed_ids.append(plan.group_id)
                    apply_errors.extend(result.errors)

            if failed_ids:
                raise PartialApplyError(failed_ids, apply_errors)
            page_done = True
        finally:
            if not page_done:
                self._count_unfinished_page(state, context, applied, outcome)

        if not context.applier.dry_run:
            outcome.records_merged = sum(len(plan.duplicate_ids) for plan in applied)

        logger.debug(
            f"Job {state.job_id}: page of {len(records)} records, "
            f"{len(groups)} groups, {len(plans)} plans"
        )
        return outcome

    def _count_unfinished_page(
        self,
        state: JobRunState,
        context: _JobContext,
        applied: List[MergePlan],
        outcome: _PageOutcome
    ) -> None:
        """
        Count the plans of a page that stopped part way.

        The cursor does not move, so the page is read again on resume. Merged
        duplicates are gone by then and would never be counted otherwise.
        """
        merged = sum(len(plan.duplicate_ids) for plan in applied)
        with self._lock:
            state.groups_found += len(applied)
            state.duplicates_found += merged
            if not context.applier.dry_run:
                state.records_merged += merged
            for group_id in outcome.failed_group_ids:
                state.record_failed_group(group_id)
            for error in outcome.errors:
                state.record_error(error)

    def _checkpoint(
        self,
        state: JobRunState,
        context: _JobContext,
        page: Page,
        outcome: _PageOutcome
    ) -> None:
        with self._lock:
            state.cursor = page.next_cursor
            state.records_processed += len(page)
            state.groups_found += outcome.groups_found
            state.duplicates_found += outcome.duplicates_found
            state.records_merged += outcome.records_merged
            state.pages_processed += 1
            for group_id in outcome.failed_group_ids:
                state.record_failed_group(group_id)
            for error in outcome.errors:
                state.record_error(error)
            state.last_update = self.clock()

        logger.info(
            f"Job {state.job_id}: page {state.pages_processed} done, "
            f"{state.records_processed} records, {state.duplicates_found} duplicates"
        )

        if not page.has_more:
            self._transition(state, JobStatus.COMPLETED)
            logger.info(f"Job {state.job_id} completed\n{state}")
            return

        try:
            self._with_retry(
                state,
                context.config,
                lambda: self.repository.persist_job_state(state.copy()),
                'checkpoint',
            )
        except DupMergeError as e:
            self._fail(state, e)
