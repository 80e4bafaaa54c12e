"""
Merge appliers: where a page's merge plans go.

The orchestrator picks one applier per job while preparing it. A dry run
collects plans in memory and never touches the repository.
"""

import logging
from abc import ABC, abstractmethod
from typing import List

from ..merge.merger import MergePlan
from ..repository.base import MergeResult, RecordRepository

logger = logging.getLogger(__name__)


class MergeApplier(ABC):
    """Takes merge plans to their destination."""

    dry_run = False

    @abstractmethod
    def apply(self, plan: MergePlan) -> MergeResult:
        """Apply one plan.

        Raises:
            RepositoryError: On transient storage failures (retried by the
                orchestrator)
        """


class DryRunApplier(MergeApplier):
    """Keeps plans for review instead of applying them."""

    dry_run = True

    def __init__(self):
        self.plans: List[MergePlan] = []

    def apply(self, plan: MergePlan) -> MergeResult:
        self.plans.append(plan)
        logger.debug(f"Dry run: kept plan {plan.group_id} ({len(plan.conflicts)} conflicts)")
        return MergeResult(success=True, group_id=plan.group_id)


class RepositoryApplier(MergeApplier):
    """Hands plans to the record repository."""

    def __init__(self, repository: RecordRepository):
        self.repository = repository

    def apply(self, plan: MergePlan) -> MergeResult:
        result = self.repository.apply_merge_plan(plan)
        if not result.success:
            logger.warning(f"Merge plan {plan.group_id} rejected: {'; '.join(result.errors)}")
        if result.group_id is None:
            result = MergeResult(success=result.success, errors=result.errors, group_id=plan.group_id)
        return result
