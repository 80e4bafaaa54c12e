"""
Tests for the batch orchestrator and the job state machine.
"""

from datetime import datetime

import pytest

from dupmerge.batch import BatchOrchestrator, JobRunState, JobStatus
from dupmerge.batch import orchestrator as orchestrator_module
from dupmerge.config.schema import DedupeConfig
from dupmerge.core.errors import (
    ConfigurationError,
    InvalidMasterError,
    JobStateError,
    RateLimitedError,
    RepositoryError,
)
from dupmerge.core.record import CandidateRecord
from dupmerge.matching import make_group_id
from dupmerge.repository import InMemoryRepository, MergeResult


def make_record(record_id, name, email, created):
    return CandidateRecord(
        record_id=record_id,
        created_at=created,
        fields={'Name': name, 'Email': email},
    )


def make_config(**overrides):
    data = {
        'config_id': 'contacts',
        'object_type': 'Contact',
        'threshold': 0.8,
        'max_resume_attempts': 3,
        'backoff_seconds': 1.0,
        'fields': {
            'Name': {'weight': 1.0},
            'Email': {'weight': 1.0, 'type': 'email'},
        },
    }
    data.update(overrides)
    return DedupeConfig.model_validate(data)


CONTACTS = [
    make_record('c1', 'John Smith', 'john@example.com', datetime(2020, 1, 1)),
    make_record('c2', 'Jon Smith', 'john@example.com', datetime(2021, 1, 1)),
    make_record('c3', 'Mary Jones', 'mary@example.com', datetime(2020, 6, 1)),
]


class FlakyRepository(InMemoryRepository):
    """Fails the first `fetch_failures` page fetches."""

    def __init__(self, *args, fetch_failures=0, error=None, **kwargs):
        super().__init__(*args, **kwargs)
        self.fetch_failures = fetch_failures
        self.error = error or RepositoryError("connection reset")
        self.fetch_calls = 0

    def fetch_page(self, object_type, cursor, page_size):
        self.fetch_calls += 1
        if self.fetch_failures > 0:
            self.fetch_failures -= 1
            raise self.error
        return super().fetch_page(object_type, cursor, page_size)


class SpyRepository(InMemoryRepository):
    """Counts apply calls and optionally fails them."""

    def __init__(self, *args, fail_apply=False, apply_failures=0, error=None,
                 reject_masters=(), **kwargs):
        super().__init__(*args, **kwargs)
        self.fail_apply = fail_apply
        self.apply_failures = apply_failures
        self.error = error or RepositoryError("write timed out")
        self.reject_masters = set(reject_masters)
        self.apply_calls = 0

    def apply_merge_plan(self, plan):
        self.apply_calls += 1
        if self.apply_failures > 0:
            self.apply_failures -= 1
            raise self.error
        if self.fail_apply or plan.master_id in self.reject_masters:
            return MergeResult(success=False, errors=("write rejected",))
        return super().apply_merge_plan(plan)


class BrokenConfigRepository(InMemoryRepository):
    """Stores a configuration that cannot be read back."""

    def load_config(self, config_id):
        raise ValueError(f"corrupt configuration {config_id}")


def build(repository_class=InMemoryRepository, config=None, records=CONTACTS, **kwargs):
    repository = repository_class(configs=[config or make_config()], **kwargs)
    repository.add_records('Contact', records)
    sleeps = []
    orchestrator = BatchOrchestrator(repository, sleep=sleeps.append)
    return repository, orchestrator, sleeps


class TestJobRunState:
    """Tests for JobRunState transitions and serialization."""

    def test_legal_transitions(self):
        """Test the normal lifecycle."""
        state = JobRunState(job_id='j', config_id='c')
        for status in (JobStatus.PREPARING, JobStatus.PROCESSING, JobStatus.HOLDING,
                       JobStatus.PROCESSING, JobStatus.COMPLETED):
            state.transition(status, now=datetime(2024, 1, 1))

        assert state.status == JobStatus.COMPLETED
        assert state.is_terminal
        assert state.start_time == state.end_time == datetime(2024, 1, 1)

    def test_illegal_transition(self):
        """Test that skipping states raises JobStateError."""
        state = JobRunState(job_id='j', config_id='c')
        with pytest.raises(JobStateError):
            state.transition(JobStatus.COMPLETED)

    def test_terminal_states_are_final(self):
        """Completed and aborted jobs never change again."""
        state = JobRunState(job_id='j', config_id='c', status=JobStatus.ABORTED)
        assert not state.can_transition(JobStatus.PREPARING)

    def test_round_trip(self):
        """Test to_dict / from_dict."""
        state = JobRunState(
            job_id='j', config_id='c', status=JobStatus.HOLDING, cursor='c9',
            records_processed=10, duplicates_found=2, start_time=datetime(2024, 1, 1),
            errors=['boom'],
        )
        data = state.to_dict()

        assert data['status'] == 'Holding'
        assert data['duplicate_rate'] == pytest.approx(0.2)
        assert JobRunState.from_dict(data) == state


class TestBatchOrchestrator:
    """Tests for running jobs end to end."""

    def test_run_to_completion(self):
        """Duplicates are merged into the oldest record."""
        repository, orchestrator, _ = build()
        job_id = orchestrator.start_job('contacts')
        state = orchestrator.run_job(job_id)

        assert state.status == JobStatus.COMPLETED
        assert state.records_processed == 3
        assert state.groups_found == 1
        assert state.duplicates_found == 1
        assert state.records_merged == 1
        assert repository.statuses(job_id) == ['Queued', 'Preparing', 'Processing', 'Completed']

        assert repository.count_records('Contact') == 2
        assert repository.get_record('Contact', 'c2') is None
        assert repository.get_record('Contact', 'c1').get('Name') == 'John Smith'
        # 'Jon Smith' differs from the kept name, so it is preserved in a note
        assert 'Jon Smith' in repository.notes['c1'][0]

    def test_keyset_pages_do_not_skip_records(self):
        """Deleting merged records never shifts later records out of a page."""
        repository, orchestrator, _ = build()
        job_id = orchestrator.start_job('contacts', batch_size=2)
        state = orchestrator.run_job(job_id)

        assert state.status == JobStatus.COMPLETED
        assert state.pages_processed == 2
        assert state.records_processed == 3
        assert state.cursor == 'c3'

    def test_batch_size_from_config(self):
        """Jobs without a batch size use the configured one."""
        repository, orchestrator, _ = build(config=make_config(batch_size=1))
        state = orchestrator.run_job(orchestrator.start_job('contacts'))

        assert state.batch_size == 1
        assert state.pages_processed == 3
        assert state.object_type == 'Contact'

    def test_invalid_batch_size(self):
        """Test that out-of-range batch sizes are rejected up front."""
        _, orchestrator, _ = build()
        with pytest.raises(ConfigurationError):
            orchestrator.start_job('contacts', batch_size=0)
        with pytest.raises(ConfigurationError):
            orchestrator.start_job('contacts', batch_size=10001)

    def test_dry_run_never_applies(self):
        """A dry run finds duplicates without touching stored records."""
        repository, orchestrator, _ = build(SpyRepository)
        job_id = orchestrator.start_job('contacts', is_dry_run=True)
        state = orchestrator.run_job(job_id)

        assert state.status == JobStatus.COMPLETED
        assert state.duplicates_found == 1
        assert state.records_merged == 0
        assert repository.apply_calls == 0
        assert repository.count_records('Contact') == 3

        plans = orchestrator.get_dry_run_plans(job_id)
        assert len(plans) == 1
        assert plans[0].master_id == 'c1'
        assert plans[0].duplicate_ids == ('c2',)

    def test_dry_run_plans_only_for_dry_runs(self):
        """Test that asking a real job for dry-run plans fails."""
        _, orchestrator, _ = build()
        job_id = orchestrator.start_job('contacts')
        with pytest.raises(JobStateError):
            orchestrator.get_dry_run_plans(job_id)

    def test_master_strategy_from_config(self):
        """The configured master strategy picks the survivor."""
        repository, orchestrator, _ = build(config=make_config(master_strategy='NewestCreated'))
        orchestrator.run_job(orchestrator.start_job('contacts'))

        assert repository.get_record('Contact', 'c1') is None
        assert repository.get_record('Contact', 'c2') is not None

    def test_oversized_groups_are_not_merged(self):
        """Groups above max_group_size are counted but left alone."""
        records = [
            make_record(f'c{i}', 'John Smith', 'john@example.com', datetime(2020, 1, i))
            for i in range(1, 4)
        ]
        repository, orchestrator, _ = build(config=make_config(max_group_size=2), records=records)
        state = orchestrator.run_job(orchestrator.start_job('contacts'))

        assert state.status == JobStatus.COMPLETED
        assert state.groups_found == 1
        assert state.duplicates_found == 0
        assert state.records_merged == 0
        assert repository.count_records('Contact') == 3

    def test_unknown_config_fails_job(self):
        """A missing configuration fails the job while preparing."""
        _, orchestrator, _ = build()
        state = orchestrator.run_job(orchestrator.start_job('nope'))

        assert state.status == JobStatus.FAILED
        assert 'Configuration not found' in state.errors[0]

    def test_unregistered_custom_matcher_fails_job(self):
        """Custom matchers are checked before any page is read."""
        config = make_config(fields={'Name': {'strategy': 'Custom', 'custom': 'missing'}})
        repository, orchestrator, _ = build(FlakyRepository, config=config)
        state = orchestrator.run_job(orchestrator.start_job('contacts'))

        assert state.status == JobStatus.FAILED
        assert repository.fetch_calls == 0

    def test_group_errors_skip_the_group(self, monkeypatch):
        """A failing group is recorded and the rest of the page continues."""
        records = CONTACTS + [
            make_record('c4', 'Mary Jones', 'mary@example.com', datetime(2021, 6, 1)),
        ]
        repository, orchestrator, _ = build(records=records)
        real_select_master = orchestrator_module.select_master

        def select_master(group, by_id, strategy, fields=None):
            if 'c1' in group.record_ids:
                raise InvalidMasterError("no usable master", group_id=group.group_id)
            return real_select_master(group, by_id, strategy, fields=fields)

        monkeypatch.setattr(orchestrator_module, 'select_master', select_master)
        state = orchestrator.run_job(orchestrator.start_job('contacts'))

        assert state.status == JobStatus.COMPLETED
        assert state.groups_found == 2
        assert state.records_merged == 1
        assert len(state.failed_group_ids) == 1
        assert repository.get_record('Contact', 'c2') is not None
        assert repository.get_record('Contact', 'c4') is None

    def test_partial_apply_fails_job(self):
        """Plans that were not applied fail the job without advancing the cursor."""
        repository, orchestrator, _ = build(SpyRepository, fail_apply=True)
        state = orchestrator.run_job(orchestrator.start_job('contacts'))

        assert state.status == JobStatus.FAILED
        assert len(state.failed_group_ids) == 1
        assert state.cursor is None
        assert state.records_processed == 0
        assert state.records_merged == 0
        assert repository.count_records('Contact') == 3

    def test_most_complete_counts_configured_fields(self):
        """Only configured fields decide which record is most complete."""
        records = [
            CandidateRecord(
                record_id='x',
                created_at=datetime(2020, 1, 1),
                fields={
                    'Name': 'John Smith', 'Email': '', 'Phone': '555-0100',
                    'City': 'Boston', 'Title': 'CEO', 'Company': 'Acme',
                },
            ),
            make_record('y', 'John Smith', 'john@example.com', datetime(2021, 1, 1)),
        ]
        config = make_config(master_strategy='MostComplete', one_sided_blank='ignore')
        repository, orchestrator, _ = build(config=config, records=records)
        state = orchestrator.run_job(orchestrator.start_job('contacts'))

        assert state.records_merged == 1
        assert repository.get_record('Contact', 'x') is None
        survivor = repository.get_record('Contact', 'y')
        assert survivor.get('Email') == 'john@example.com'
        assert survivor.get('Company') == 'Acme'

    def test_blank_score_field_option(self):
        """A field's blank_score option is accepted and the job runs."""
        config = make_config(fields={
            'Name': {'weight': 1.0, 'options': {'blank_score': 0.5}},
            'Email': {'weight': 1.0, 'type': 'email'},
        })
        _, orchestrator, _ = build(config=config)
        state = orchestrator.run_job(orchestrator.start_job('contacts'))

        assert state.status == JobStatus.COMPLETED
        assert state.records_merged == 1

    def test_unexpected_preparation_error_fails_job(self):
        """Any error while preparing fails the job instead of leaving it in Preparing."""
        repository, orchestrator, _ = build(BrokenConfigRepository)
        job_id = orchestrator.start_job('contacts')
        state = orchestrator.run_job(job_id)

        assert state.status == JobStatus.FAILED
        assert 'corrupt configuration contacts' in state.errors[0]
        assert repository.statuses(job_id) == ['Queued', 'Preparing', 'Failed']

    def test_partial_apply_counts_applied_plans(self):
        """Merges that succeeded on a failed page are counted once, across a resume."""
        records = CONTACTS + [
            make_record('c4', 'Mary Jones', 'mary@example.com', datetime(2021, 6, 1)),
        ]
        repository, orchestrator, _ = build(SpyRepository, records=records, reject_masters={'c3'})
        job_id = orchestrator.start_job('contacts')
        state = orchestrator.run_job(job_id)

        rejected_group = make_group_id(['c3', 'c4'])
        assert state.status == JobStatus.FAILED
        assert state.groups_found == 1
        assert state.duplicates_found == 1
        assert state.records_merged == 1
        assert state.failed_group_ids == [rejected_group]
        assert state.cursor is None

        repository.reject_masters.clear()
        state = orchestrator.resume_job(job_id)

        assert state.status == JobStatus.COMPLETED
        assert state.groups_found == 2
        assert state.duplicates_found == 2
        assert state.records_merged == 2
        assert state.merge_rate == 1.0
        assert state.failed_group_ids == [rejected_group]
        assert len(state.errors) == len(set(state.errors))
        assert repository.count_records('Contact') == 2

    def test_orchestrators_do_not_share_matchers(self):
        """Custom matchers registered on one orchestrator stay there."""
        repository, first, _ = build()
        second = BatchOrchestrator(repository)
        first.registry.register_custom('initials', lambda a, b, options: float(a[0] == b[0]))

        assert first.registry is not second.registry
        assert 'initials' not in second.registry.custom_names()


class TestHoldingAndRetry:
    """Tests for transient repository failures."""

    def test_holding_then_recovering(self):
        """Transient failures hold the job, then processing resumes."""
        repository, orchestrator, sleeps = build(FlakyRepository, fetch_failures=2)
        job_id = orchestrator.start_job('contacts')
        state = orchestrator.run_job(job_id)

        assert state.status == JobStatus.COMPLETED
        assert state.resume_attempts == 0
        assert sleeps == [1.0, 2.0]
        assert repository.statuses(job_id) == [
            'Queued', 'Preparing', 'Processing', 'Holding', 'Processing', 'Completed',
        ]

    def test_retries_exhausted(self):
        """The job fails once max_resume_attempts is used up."""
        repository, orchestrator, sleeps = build(FlakyRepository, fetch_failures=10)
        job_id = orchestrator.start_job('contacts')
        state = orchestrator.run_job(job_id)

        assert state.status == JobStatus.FAILED
        assert sleeps == [1.0, 2.0, 4.0]
        assert repository.fetch_calls == 4
        assert 'connection reset' in state.errors[-1]
        assert repository.statuses(job_id)[-2:] == ['Holding', 'Failed']

    def test_rate_limit_uses_retry_after(self):
        """A rate-limited repository sets the wait time."""
        _, orchestrator, sleeps = build(
            FlakyRepository, fetch_failures=1, error=RateLimitedError("slow down", retry_after=7.0)
        )
        state = orchestrator.run_job(orchestrator.start_job('contacts'))

        assert state.status == JobStatus.COMPLETED
        assert sleeps == [7.0]

    def test_apply_errors_are_retried(self):
        """A transient error while applying a plan holds the job, then the plan is applied."""
        repository, orchestrator, sleeps = build(
            SpyRepository, apply_failures=1, error=RateLimitedError("slow down", retry_after=0)
        )
        job_id = orchestrator.start_job('contacts')
        state = orchestrator.run_job(job_id)

        assert state.status == JobStatus.COMPLETED
        assert state.records_merged == 1
        assert repository.apply_calls == 2
        assert sleeps == [0]
        assert repository.statuses(job_id) == [
            'Queued', 'Preparing', 'Processing', 'Holding', 'Processing', 'Completed',
        ]

    def test_apply_retries_exhausted(self):
        """A plan that keeps failing to apply fails the job without moving the cursor."""
        repository, orchestrator, sleeps = build(SpyRepository, apply_failures=10)
        state = orchestrator.run_job(orchestrator.start_job('contacts'))

        assert state.status == JobStatus.FAILED
        assert sleeps == [1.0, 2.0, 4.0]
        assert state.cursor is None
        assert state.records_merged == 0
        assert 'write timed out' in state.errors[-1]
        assert repository.count_records('Contact') == 3

    def test_cancel_while_holding(self):
        """A cancellation requested during a hold aborts the job."""
        repository, orchestrator, _ = build(FlakyRepository, fetch_failures=10)
        job_id = orchestrator.start_job('contacts')
        orchestrator.sleep = lambda seconds: orchestrator.cancel_job(job_id)
        state = orchestrator.run_job(job_id)

        assert state.status == JobStatus.ABORTED
        assert repository.fetch_calls == 1


class TestCancelAndResume:
    """Tests for cancellation and resume."""

    def test_cancel_queued_job(self):
        """A queued job is aborted immediately."""
        repository, orchestrator, _ = build()
        job_id = orchestrator.start_job('contacts')

        assert orchestrator.cancel_job(job_id)
        assert orchestrator.get_job_status(job_id).status == JobStatus.ABORTED
        assert orchestrator.run_job(job_id).status == JobStatus.ABORTED
        assert repository.count_records('Contact') == 3
        assert not orchestrator.cancel_job(job_id)

    def test_cancel_between_pages(self):
        """A running job stops at the next page boundary."""
        _, orchestrator, _ = build()
        job_id = orchestrator.start_job('contacts', batch_size=1)

        orchestrator.process_next_page(job_id)
        orchestrator.cancel_job(job_id)
        state = orchestrator.process_next_page(job_id)

        assert state.status == JobStatus.ABORTED
        assert state.records_processed == 1
        assert state.end_time is not None

    def test_resume_failed_job(self):
        """A failed job resumes from its last checkpoint."""
        repository, orchestrator, _ = build(
            FlakyRepository, config=make_config(max_resume_attempts=0)
        )
        job_id = orchestrator.start_job('contacts', batch_size=2)
        orchestrator.process_next_page(job_id)

        repository.fetch_failures = 1
        state = orchestrator.run_job(job_id)
        assert state.status == JobStatus.FAILED
        assert state.cursor == 'c2'

        state = orchestrator.resume_job(job_id)
        assert state.status == JobStatus.COMPLETED
        assert state.records_processed == 3
        assert state.records_merged == 1
        assert repository.statuses(job_id)[-4:] == ['Failed', 'Preparing', 'Processing', 'Completed']

    def test_resume_with_new_orchestrator(self):
        """Resume works from persisted state alone."""
        repository, orchestrator, _ = build(
            FlakyRepository, config=make_config(max_resume_attempts=0)
        )
        job_id = orchestrator.start_job('contacts', batch_size=2)
        repository.fetch_failures = 1
        assert orchestrator.run_job(job_id).status == JobStatus.FAILED

        fresh = BatchOrchestrator(repository, sleep=lambda seconds: None)
        state = fresh.resume_job(job_id)

        assert state.status == JobStatus.COMPLETED
        assert state.records_processed == 3

    def test_resume_completed_job(self):
        """Test that finished jobs cannot be resumed."""
        _, orchestrator, _ = build()
        job_id = orchestrator.start_job('contacts')
        orchestrator.run_job(job_id)

        with pytest.raises(JobStateError):
            orchestrator.resume_job(job_id)

    def test_unknown_job(self):
        """Test JobStateError for unknown job ids."""
        _, orchestrator, _ = build()
        with pytest.raises(JobStateError):
            orchestrator.get_job_status('missing')
        with pytest.raises(JobStateError):
            orchestrator.cancel_job('missing')

    def test_list_jobs(self):
        """Test listing jobs."""
        _, orchestrator, _ = build()
        first = orchestrator.start_job('contacts')
        second = orchestrator.start_job('contacts', is_dry_run=True)

        assert {state.job_id for state in orchestrator.list_jobs()} == {first, second}
