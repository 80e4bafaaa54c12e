"""
Weighted match scoring of record pairs.

Combines per-field matcher scores into one aggregate score in [0, 1]:

    aggregate = sum(weight * field_score) / sum(weight)

over the fields that actually apply to the pair. A field blank on both
records is left out of both sums. A field blank on one record either scores 0
and counts in the denominator ('penalize', the default) or is left out like a
both-blank field ('ignore').
"""

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

from ..config.schema import DedupeConfig
from ..core.errors import ConfigurationError
from ..core.record import CandidateRecord, RecordSchema, is_blank
from ..core.strategies import BlankPolicy
from .matchers import FieldMatcher
from .registry import MatcherRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PairScore:
    """Similarity of two records."""

    record_id_a: str
    record_id_b: str
    per_field_scores: Mapping[str, float] = field(default_factory=dict)
    aggregate_score: float = 0.0

    def __post_init__(self):
        object.__setattr__(self, 'per_field_scores', MappingProxyType(dict(self.per_field_scores)))

    @property
    def key(self) -> Tuple[str, str]:
        """Order-independent identity of the pair."""
        return tuple(sorted((self.record_id_a, self.record_id_b)))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'record_id_a': self.record_id_a,
            'record_id_b': self.record_id_b,
            'per_field_scores': dict(self.per_field_scores),
            'aggregate_score': self.aggregate_score,
        }

    def __str__(self) -> str:
        lines = [f"Match Score {self.record_id_a} ~ {self.record_id_b}: {self.aggregate_score:.1%}"]
        for name, score in self.per_field_scores.items():
            lines.append(f"  {name}: {score:.1%}")
        return '\n'.join(lines)


class MatchScorer:
    """
    Scores record pairs with the weights and strategies of one configuration.

    Matchers are resolved against a RecordSchema once (per page, via
    `prepare`) and reused for every comparison.
    """

    def __init__(self, config: DedupeConfig, registry: Optional[MatcherRegistry] = None):
        """
        Args:
            config: Job configuration (fields, weights, strategies, threshold)
            registry: Matcher registry (defaults to a new one with no custom matchers)

        Raises:
            ConfigurationError: If no field has a positive weight
        """
        self.config = config
        self.registry = registry or MatcherRegistry()

        weights = config.field_weights
        total = sum(weights.values())
        if not weights or total <= 0:
            raise ConfigurationError(
                f"Configuration '{config.config_id}' has no field with a positive weight"
            )

        # Normalized weights, in configuration order
        self.weights: Dict[str, float] = {name: weight / total for name, weight in weights.items()}
        self.schema: Optional[RecordSchema] = None
        self._matchers: Dict[str, FieldMatcher] = {}

    @property
    def threshold(self) -> float:
        return self.config.threshold

    def prepare(self, records: Iterable[CandidateRecord]) -> RecordSchema:
        """
        Resolve field types from a batch of records and bind matchers to them.

        Args:
            records: Records of the current page

        Returns:
            The resolved schema
        """
        schema = RecordSchema.resolve(list(records), self.weights, self.config.declared_types)
        self.bind(schema)
        return schema

    def bind(self, schema: RecordSchema) -> None:
        """Resolve one matcher per scored field for the given schema."""
        matchers = {}
        for name in self.weights:
            field_config = self.config.fields[name]
            matchers[name] = self.registry.resolve(
                name,
                schema.type_of(name),
                strategy=field_config.strategy,
                options=field_config.options,
                custom_name=field_config.custom,
                blank_score=self.config.blank_score,
            )
        self.schema = schema
        self._matchers = matchers
        logger.debug(f"Bound matchers: {matchers}")

    def matcher_for(self, field_name: str) -> FieldMatcher:
        return self._matchers[field_name]

    def score_pair(self, record_a: CandidateRecord, record_b: CandidateRecord) -> PairScore:
        """
        Score two records.

        Args:
            record_a: First record
            record_b: Second record

        Returns:
            PairScore with the per-field scores that applied and the aggregate
        """
        if self.schema is None:
            self.prepare([record_a, record_b])

        ignore_one_sided = self.config.one_sided_blank == BlankPolicy.IGNORE
        per_field: Dict[str, float] = {}
        weighted_sum = 0.0
        applied_weight = 0.0

        for name, weight in self.weights.items():
            value_a = record_a.get(name)
            value_b = record_b.get(name)
            blank_a = is_blank(value_a)
            blank_b = is_blank(value_b)

            if blank_a and blank_b:
                continue
            if blank_a or blank_b:
                if ignore_one_sided:
                    continue
                score = 0.0
            else:
                score = self._matchers[name].score(value_a, value_b)

            per_field[name] = score
            weighted_sum += weight * score
            applied_weight += weight

        aggregate = weighted_sum / applied_weight if applied_weight > 0 else 0.0
        aggregate = max(0.0, min(1.0, aggregate))

        return PairScore(
            record_id_a=record_a.record_id,
            record_id_b=record_b.record_id,
            per_field_scores=per_field,
            aggregate_score=aggregate,
        )

    def is_match(self, pair: PairScore, threshold: Optional[float] = None) -> bool:
        """True if the pair's aggregate score reaches the threshold."""
        limit = self.config.threshold if threshold is None else threshold
        return pair.aggregate_score >= limit


def score_pair(
    record_a: CandidateRecord,
    record_b: CandidateRecord,
    config: DedupeConfig,
    registry: Optional[MatcherRegistry] = None
) -> PairScore:
    """Score one pair with a throwaway scorer bound to config."""
    scorer = MatchScorer(config, registry)
    scorer.prepare([record_a, record_b])
    return scorer.score_pair(record_a, record_b)
