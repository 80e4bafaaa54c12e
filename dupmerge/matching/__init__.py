"""Record matching: field matchers, pair scoring and duplicate grouping."""

from .matchers import (
    AddressMatcher,
    CallableMatcher,
    DistanceMatcher,
    ExactMatcher,
    FieldMatcher,
    FuzzyMatcher,
    PhoneticMatcher,
    edit_similarity,
)
from .registry import MatcherRegistry
from .scorer import MatchScorer, PairScore, score_pair
from .blocking import BlockingKeyBuilder
from .grouping import DuplicateGroup, DuplicateGrouper, UnionFind, group, make_group_id

__all__ = [
    'AddressMatcher',
    'CallableMatcher',
    'DistanceMatcher',
    'ExactMatcher',
    'FieldMatcher',
    'FuzzyMatcher',
    'PhoneticMatcher',
    'edit_similarity',
    'MatcherRegistry',
    'MatchScorer',
    'PairScore',
    'score_pair',
    'BlockingKeyBuilder',
    'DuplicateGroup',
    'DuplicateGrouper',
    'UnionFind',
    'group',
    'make_group_id',
]
