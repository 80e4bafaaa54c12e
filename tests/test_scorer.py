"""
Tests for weighted pair scoring.
"""

from datetime import datetime

import pytest

from dupmerge.config.schema import DedupeConfig, FieldConfig
from dupmerge.core.errors import ConfigurationError
from dupmerge.core.record import CandidateRecord
from dupmerge.matching import MatcherRegistry, MatchScorer, score_pair


def make_config(**overrides):
    data = {
        'config_id': 'contacts',
        'threshold': 0.75,
        'fields': {
            'Name': {'weight': 0.5},
            'Email': {'weight': 0.8, 'strategy': 'Exact', 'type': 'email'},
            'Phone': {'weight': 0.6, 'type': 'phone'},
        },
    }
    data.update(overrides)
    return DedupeConfig.model_validate(data)


@pytest.fixture
def jon():
    return CandidateRecord(
        record_id='c1',
        created_at=datetime(2020, 1, 1),
        fields={'Name': 'Jon Smith', 'Email': 'jon@example.com', 'Phone': '555-1234'},
    )


@pytest.fixture
def john():
    return CandidateRecord(
        record_id='c2',
        created_at=datetime(2021, 1, 1),
        fields={'Name': 'John Smith', 'Email': 'jon@example.com', 'Phone': None},
    )


class TestMatchScorer:
    """Tests for MatchScorer."""

    def test_one_sided_blank_ignored(self, jon, john):
        """With 'ignore', a field blank on one side drops out of the score."""
        config = make_config(one_sided_blank='ignore')
        pair = score_pair(jon, john, config)

        assert pair.aggregate_score == pytest.approx((0.5 * 0.9 + 0.8) / 1.3)
        assert pair.per_field_scores['Name'] == pytest.approx(0.9)
        assert pair.per_field_scores['Email'] == 1.0
        assert 'Phone' not in pair.per_field_scores

        scorer = MatchScorer(config)
        assert scorer.is_match(pair)

    def test_one_sided_blank_penalized(self, jon, john):
        """By default a one-sided blank scores 0 and keeps its weight."""
        config = make_config()
        pair = score_pair(jon, john, config)

        assert pair.aggregate_score == pytest.approx((0.5 * 0.9 + 0.8) / 1.9)
        assert pair.per_field_scores['Phone'] == 0.0
        assert not MatchScorer(config).is_match(pair)

    def test_both_blank_field_excluded(self, john):
        """A field blank on both records does not affect the score."""
        other = CandidateRecord(
            record_id='c3',
            created_at=datetime(2022, 1, 1),
            fields={'Name': 'John Smith', 'Email': 'jon@example.com'},
        )
        pair = score_pair(john, other, make_config())

        assert 'Phone' not in pair.per_field_scores
        assert pair.aggregate_score == 1.0

    def test_symmetric(self, jon, john):
        """Test score(a, b) == score(b, a)."""
        config = make_config()
        assert score_pair(jon, john, config).aggregate_score == \
            score_pair(john, jon, config).aggregate_score

    def test_reflexive(self, jon):
        """A complete record scores 1.0 against itself."""
        assert score_pair(jon, jon, make_config()).aggregate_score == 1.0

    def test_threshold_is_inclusive(self, jon):
        """A score equal to the threshold is a match."""
        scorer = MatchScorer(make_config(threshold=1.0))
        assert scorer.is_match(scorer.score_pair(jon, jon))

    def test_threshold_override(self, jon, john):
        """is_match accepts a threshold override."""
        scorer = MatchScorer(make_config())
        pair = scorer.score_pair(jon, john)
        assert scorer.is_match(pair, threshold=0.5)

    def test_zero_weight_fields_are_not_scored(self, jon, john):
        """Fields with weight 0 never appear in the per-field scores."""
        config = make_config(fields={'Name': 0.0, 'Email': 1.0})
        pair = score_pair(jon, john, config)

        assert list(pair.per_field_scores) == ['Email']
        assert pair.aggregate_score == 1.0

    def test_weights_are_normalized(self):
        """Weights are normalized to sum to 1."""
        scorer = MatchScorer(make_config())
        assert sum(scorer.weights.values()) == pytest.approx(1.0)
        assert scorer.weights['Email'] == pytest.approx(0.8 / 1.9)

    def test_no_positive_weight(self):
        """A configuration without a positive weight cannot score."""
        config = DedupeConfig.model_construct(fields={'Name': FieldConfig(weight=0.0)})
        with pytest.raises(ConfigurationError):
            MatchScorer(config)

    def test_custom_matcher_from_registry(self, jon, john):
        """Custom strategies use the scorer's registry."""
        registry = MatcherRegistry()
        registry.register_custom('same_initial', lambda a, b, options: float(a[0] == b[0]))
        config = make_config(fields={
            'Name': {'weight': 1.0, 'strategy': 'Custom', 'custom': 'same_initial'},
        })

        pair = score_pair(jon, john, config, registry=registry)
        assert pair.aggregate_score == 1.0

    def test_pair_key_is_order_independent(self, jon, john):
        """Test PairScore.key."""
        config = make_config()
        assert score_pair(jon, john, config).key == score_pair(john, jon, config).key
