"""
Exception hierarchy for the deduplication engine.

Errors are split by blast radius:
- ConfigurationError stops a job before any page is read
- GroupError subclasses stop one duplicate group; the rest of the page continues
- RepositoryError is retried at the page level before the job fails
- PartialApplyError fails the job and names the groups that did not complete
"""

from typing import Iterable, List, Optional


class DupMergeError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(DupMergeError):
    """Missing or invalid matching configuration."""


class GroupError(DupMergeError):
    """A duplicate group could not be processed."""

    def __init__(self, message: str, group_id: Optional[str] = None):
        super().__init__(message)
        self.group_id = group_id


class InvalidMasterError(GroupError):
    """The master record is not a valid member of its group."""


class EmptyGroupError(GroupError):
    """A group has fewer than two records."""


class InvalidOverrideError(GroupError):
    """A field selection points at a record outside the group."""


class RepositoryError(DupMergeError):
    """Transient failure reported by the record repository."""


class RateLimitedError(RepositoryError):
    """The repository asked the caller to back off."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class PartialApplyError(DupMergeError):
    """Some merge plans of a page were not applied."""

    def __init__(self, failed_group_ids: Iterable[str], errors: Optional[List[str]] = None):
        self.failed_group_ids = list(failed_group_ids)
        self.errors = list(errors or [])
        super().__init__(
            f"{len(self.failed_group_ids)} merge plan(s) not applied: "
            f"{', '.join(self.failed_group_ids)}"
        )


class JobStateError(DupMergeError):
    """Illegal job state transition or unknown job."""
