"""
Matcher registry: resolves a field to a matcher instance.

Resolution order:
1. The field's configured strategy, through the (field type, strategy)
   capability table
2. The default matcher for the field type
3. Exact matching on stringified values for unknown types
"""

import copy
import logging
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, Type, Union

from ..core.errors import ConfigurationError
from ..core.record import FieldType
from ..core.strategies import MatchStrategy
from .matchers import (
    AddressMatcher,
    CallableMatcher,
    DistanceMatcher,
    ExactMatcher,
    FieldMatcher,
    FuzzyMatcher,
    PhoneticMatcher,
)

logger = logging.getLogger(__name__)

MatcherSpec = Tuple[Type[FieldMatcher], Dict[str, Any]]


class MatcherRegistry:
    """Factory for field matchers keyed by field type and strategy."""

    STRATEGY_MATCHERS: Dict[MatchStrategy, Type[FieldMatcher]] = {
        MatchStrategy.EXACT: ExactMatcher,
        MatchStrategy.FUZZY: FuzzyMatcher,
        MatchStrategy.PHONETIC: PhoneticMatcher,
        MatchStrategy.DISTANCE: DistanceMatcher,
    }

    # Strategy choices that mean something more specific for a given type
    CAPABILITIES: Dict[Tuple[FieldType, MatchStrategy], MatcherSpec] = {
        (FieldType.ADDRESS, MatchStrategy.FUZZY): (AddressMatcher, {}),
        (FieldType.PHONE, MatchStrategy.EXACT): (ExactMatcher, {'digits_only': True}),
    }

    TYPE_DEFAULTS: Dict[FieldType, MatcherSpec] = {
        FieldType.STRING: (FuzzyMatcher, {}),
        FieldType.EMAIL: (ExactMatcher, {}),
        FieldType.PHONE: (ExactMatcher, {'digits_only': True}),
        FieldType.NUMBER: (DistanceMatcher, {}),
        FieldType.DATE: (DistanceMatcher, {}),
        FieldType.DATETIME: (DistanceMatcher, {}),
        FieldType.BOOLEAN: (ExactMatcher, {}),
        FieldType.ADDRESS: (AddressMatcher, {}),
    }

    FALLBACK: MatcherSpec = (ExactMatcher, {})

    def __init__(self):
        self._custom: Dict[str, FieldMatcher] = {}

    def register_custom(
        self,
        name: str,
        matcher: Union[FieldMatcher, Callable[[Any, Any, Dict[str, Any]], float]]
    ) -> None:
        """Register a matcher for the CUSTOM strategy.

        Args:
            name: Name fields refer to with their `custom` setting
            matcher: FieldMatcher instance or plain (a, b, options) -> float function
        """
        if not isinstance(matcher, FieldMatcher):
            matcher = CallableMatcher(matcher)
        self._custom[name] = matcher

    def custom_names(self):
        return sorted(self._custom)

    def resolve(
        self,
        field_name: str,
        field_type: FieldType,
        strategy: Optional[MatchStrategy] = None,
        options: Optional[Mapping[str, Any]] = None,
        custom_name: Optional[str] = None,
        blank_score: float = 0.0
    ) -> FieldMatcher:
        """Resolve the matcher for one field.

        Args:
            field_name: Field being resolved (used in messages)
            field_type: Declared or inferred type of the field
            strategy: Configured strategy, or None for the type default
            options: Matcher options from configuration
            custom_name: Registered matcher name for the CUSTOM strategy
            blank_score: Neutral score when both values are blank

        Returns:
            Configured FieldMatcher

        Raises:
            ConfigurationError: CUSTOM strategy without a registered matcher
            ConfigurationError: Options the matcher does not accept
        """
        options = dict(options or {})

        if strategy == MatchStrategy.CUSTOM:
            if not custom_name or custom_name not in self._custom:
                raise ConfigurationError(
                    f"Field '{field_name}' uses a custom matcher '{custom_name}' that is not registered"
                )
            # Per-field copy so field options never leak into other fields
            matcher = copy.copy(self._custom[custom_name])
            matcher.blank_score = options.pop('blank_score', blank_score)
            matcher.options = {**matcher.options, **options}
            return matcher

        if strategy is not None:
            spec = self.CAPABILITIES.get((field_type, strategy))
            if spec is None:
                spec = (self.STRATEGY_MATCHERS[strategy], {})
            matcher = self._build(field_name, spec, options, blank_score)
            if matcher.can_handle(field_type) or field_type == FieldType.UNKNOWN:
                return matcher
            logger.warning(
                f"Strategy {strategy.value} cannot handle {field_type.value} field "
                f"'{field_name}', using the type default"
            )

        spec = self.TYPE_DEFAULTS.get(field_type, self.FALLBACK)
        return self._build(field_name, spec, options, blank_score)

    @staticmethod
    def _build(
        field_name: str,
        spec: MatcherSpec,
        options: Dict[str, Any],
        blank_score: float
    ) -> FieldMatcher:
        matcher_class, defaults = spec
        options = {**defaults, **options}
        # A field's own blank_score option wins over the configured default
        blank_score = options.pop('blank_score', blank_score)
        try:
            return matcher_class(blank_score=blank_score, **options)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid matcher options for field '{field_name}': {e}") from e
