"""
Duplicate grouping with union-find.

Every pair scoring at or above the threshold is unioned, so matching is
transitive: A~B and B~C put A, B and C in one group even when A~C falls
below the threshold. Each record lands in at most one group.
"""

import logging
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Hashable, Iterable, List, Optional, Tuple

from ..config.schema import DedupeConfig
from ..core.record import CandidateRecord
from .blocking import BlockingKeyBuilder
from .registry import MatcherRegistry
from .scorer import MatchScorer, PairScore

logger = logging.getLogger(__name__)

BlockingHook = Callable[[CandidateRecord], Optional[Hashable]]

GROUP_NAMESPACE = uuid.UUID('6f1c0a52-4d43-5b8e-9a57-3c2e1f0d7b91')


def make_group_id(record_ids: Iterable[str]) -> str:
    """Deterministic group id derived from the sorted member ids."""
    return str(uuid.uuid5(GROUP_NAMESPACE, '\x1f'.join(sorted(record_ids))))


class UnionFind:
    """Disjoint sets with path compression and union by rank."""

    def __init__(self, items: Iterable[Hashable] = ()):
        self._parent: Dict[Hashable, Hashable] = {}
        self._rank: Dict[Hashable, int] = {}
        for item in items:
            self.add(item)

    def add(self, item: Hashable) -> None:
        if item not in self._parent:
            self._parent[item] = item
            self._rank[item] = 0

    def find(self, item: Hashable) -> Hashable:
        root = item
        while self._parent[root] != root:
            root = self._parent[root]

        # Point every node on the path straight at the root
        while self._parent[item] != root:
            self._parent[item], item = root, self._parent[item]

        return root

    def union(self, item_a: Hashable, item_b: Hashable) -> bool:
        """Merge the sets of two items. Returns False if already joined."""
        root_a = self.find(item_a)
        root_b = self.find(item_b)
        if root_a == root_b:
            return False

        if self._rank[root_a] < self._rank[root_b]:
            root_a, root_b = root_b, root_a
        self._parent[root_b] = root_a
        if self._rank[root_a] == self._rank[root_b]:
            self._rank[root_a] += 1
        return True

    def sets(self) -> List[List[Hashable]]:
        """All sets, each in insertion order of its members."""
        members: Dict[Hashable, List[Hashable]] = {}
        for item in self._parent:
            members.setdefault(self.find(item), []).append(item)
        return list(members.values())

    def __len__(self) -> int:
        return len(self._parent)


@dataclass(frozen=True)
class DuplicateGroup:
    """
    A cluster of records believed to be the same entity.

    Attributes:
        group_id: Deterministic id derived from the member ids
        record_ids: Sorted member ids (at least two)
        master_record_id: Surviving record, None until selected
        links: Pair scores at or above threshold that joined the group
        oversized: True when the group exceeds the configured maximum size
    """
    group_id: str
    record_ids: Tuple[str, ...]
    master_record_id: Optional[str] = None
    links: Tuple[PairScore, ...] = field(default=(), compare=False)
    oversized: bool = False

    @classmethod
    def from_members(
        cls,
        record_ids: Iterable[str],
        links: Iterable[PairScore] = (),
        oversized: bool = False
    ) -> 'DuplicateGroup':
        ids = tuple(sorted(str(record_id) for record_id in record_ids))
        if len(ids) < 2:
            raise ValueError("A duplicate group needs at least two records")
        return cls(
            group_id=make_group_id(ids),
            record_ids=ids,
            links=tuple(sorted(links, key=lambda pair: pair.key)),
            oversized=oversized,
        )

    @property
    def size(self) -> int:
        return len(self.record_ids)

    @property
    def duplicate_ids(self) -> Tuple[str, ...]:
        """Member ids other than the master (all members if no master yet)."""
        return tuple(rid for rid in self.record_ids if rid != self.master_record_id)

    def with_master(self, record_id: str) -> 'DuplicateGroup':
        """Copy of the group with the master selected."""
        if record_id not in self.record_ids:
            raise ValueError(f"{record_id} is not a member of group {self.group_id}")
        return replace(self, master_record_id=record_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'group_id': self.group_id,
            'record_ids': list(self.record_ids),
            'master_record_id': self.master_record_id,
            'oversized': self.oversized,
            'links': [pair.to_dict() for pair in self.links],
        }

    def __len__(self) -> int:
        return len(self.record_ids)


class DuplicateGrouper:
    """
    Clusters a batch of records into duplicate groups.

    Pairs are compared within blocks when a blocking hook is set, otherwise
    across the whole batch.
    """

    def __init__(
        self,
        scorer: MatchScorer,
        blocker: Optional[BlockingHook] = None,
        max_group_size: Optional[int] = None
    ):
        """
        Args:
            scorer: Scorer bound to the job configuration
            blocker: Optional record -> key function
            max_group_size: Groups larger than this are flagged as oversized
        """
        self.scorer = scorer
        self.blocker = blocker
        self.max_group_size = max_group_size

    @classmethod
    def from_config(
        cls,
        config: DedupeConfig,
        registry: Optional[MatcherRegistry] = None
    ) -> 'DuplicateGrouper':
        return cls(
            MatchScorer(config, registry),
            blocker=BlockingKeyBuilder.from_config(config.blocking),
            max_group_size=config.max_group_size,
        )

    def group(
        self,
        records: List[CandidateRecord],
        threshold: Optional[float] = None
    ) -> List[DuplicateGroup]:
        """
        Group records whose pairwise scores reach the threshold.

        Args:
            records: Records of one batch
            threshold: Override of the configured threshold

        Returns:
            Groups of two or more records, sorted by smallest member id

        Raises:
            ValueError: If a record id appears twice in records
        """
        seen = set()
        for record in records:
            if record.record_id in seen:
                raise ValueError(f"Duplicate record id in batch: {record.record_id}")
            seen.add(record.record_id)

        limit = self.scorer.threshold if threshold is None else threshold
        self.scorer.prepare(records)

        components = UnionFind(record.record_id for record in records)
        links: List[PairScore] = []
        comparisons = 0

        for block in self._blocks(records):
            for i, record_a in enumerate(block):
                for record_b in block[i + 1:]:
                    pair = self.scorer.score_pair(record_a, record_b)
                    comparisons += 1
                    if self.scorer.is_match(pair, limit):
                        components.union(record_a.record_id, record_b.record_id)
                        links.append(pair)

        links_by_root: Dict[Hashable, List[PairScore]] = {}
        for pair in links:
            links_by_root.setdefault(components.find(pair.record_id_a), []).append(pair)

        groups = []
        for members in components.sets():
            if len(members) < 2:
                continue

            oversized = bool(self.max_group_size) and len(members) > self.max_group_size
            group = DuplicateGroup.from_members(
                members,
                links=links_by_root.get(components.find(members[0]), ()),
                oversized=oversized,
            )
            if oversized:
                logger.warning(
                    f"Group {group.group_id} has {group.size} records "
                    f"(max {self.max_group_size}), it will not be merged"
                )
            groups.append(group)

        groups.sort(key=lambda g: g.record_ids[0])
        logger.debug(
            f"Grouped {len(records)} records: {comparisons} comparisons, "
            f"{len(links)} matching pairs, {len(groups)} groups"
        )
        return groups

    def _blocks(self, records: List[CandidateRecord]) -> List[List[CandidateRecord]]:
        if self.blocker is None:
            return [records]

        blocks: Dict[Hashable, List[CandidateRecord]] = {}
        for record in records:
            key = self.blocker(record)
            if key is None:
                continue
            blocks.setdefault(key, []).append(record)
        return [block for block in blocks.values() if len(block) > 1]


def group(
    records: List[CandidateRecord],
    config: DedupeConfig,
    threshold: Optional[float] = None,
    registry: Optional[MatcherRegistry] = None
) -> List[DuplicateGroup]:
    """Group records with a grouper built from config."""
    return DuplicateGrouper.from_config(config, registry).group(records, threshold)
