"""
Field matchers: pure similarity functions for one field's values.

Every matcher returns a score in [0, 1] and never raises on bad input:
- one blank side scores 0.0 (no evidence of a match)
- both sides blank score the configurable neutral `blank_score` (default 0.0)
- values that cannot be compared (unparseable dates, etc.) score 0.0

All built-in matchers are symmetric: score(a, b) == score(b, a).
"""

from abc import ABC, abstractmethod
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, FrozenSet, Mapping, Optional, Tuple

import phonetics
from rapidfuzz import fuzz
from rapidfuzz.distance import Levenshtein

from ..core.record import FieldType, is_blank
from ..utils.address_parser import AddressParser
from ..utils.normalize import (
    alpha_tokens,
    collapse_whitespace,
    digits_only,
    normalize_name,
    normalize_text,
)

ALL_TYPES: FrozenSet[FieldType] = frozenset(FieldType)


def _clamp(score: float) -> float:
    return max(0.0, min(1.0, float(score)))


class FieldMatcher(ABC):
    """Base class for field matchers.

    Subclasses implement `_compare` for two non-blank values. Options given at
    construction are defaults; options passed to `score` override them for
    that call only.
    """

    name = 'base'
    supported_types: FrozenSet[FieldType] = ALL_TYPES
    DEFAULT_OPTIONS: Dict[str, Any] = {}

    def __init__(self, blank_score: float = 0.0, **options: Any):
        self.blank_score = _clamp(blank_score)
        self.options = {**self.DEFAULT_OPTIONS, **options}

    def can_handle(self, field_type: FieldType) -> bool:
        """True if this matcher knows how to compare values of field_type."""
        return field_type in self.supported_types

    def score(self, value_a: Any, value_b: Any, options: Optional[Mapping[str, Any]] = None) -> float:
        """Score the similarity of two field values.

        Args:
            value_a: First value
            value_b: Second value
            options: Per-call option overrides

        Returns:
            Similarity in [0, 1]
        """
        opts = {**self.options, **(options or {})}
        blank_a = is_blank(value_a)
        blank_b = is_blank(value_b)

        if blank_a and blank_b:
            return _clamp(opts.get('blank_score', self.blank_score))
        if blank_a or blank_b:
            return 0.0

        try:
            return _clamp(self._compare(value_a, value_b, opts))
        except (TypeError, ValueError, IndexError, OverflowError):
            return 0.0

    @abstractmethod
    def _compare(self, value_a: Any, value_b: Any, options: Dict[str, Any]) -> float:
        """Compare two non-blank values."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.options})"


class ExactMatcher(FieldMatcher):
    """Case- and whitespace-insensitive equality.

    Options:
        digits_only: Compare only the digits (phone numbers)
    """

    name = 'exact'
    DEFAULT_OPTIONS = {'digits_only': False}

    def _compare(self, value_a: Any, value_b: Any, options: Dict[str, Any]) -> float:
        if _is_number(value_a) and _is_number(value_b):
            return 1.0 if value_a == value_b else 0.0

        if options.get('digits_only'):
            digits_a = digits_only(value_a)
            digits_b = digits_only(value_b)
            if digits_a or digits_b:
                return 1.0 if digits_a == digits_b else 0.0

        return 1.0 if collapse_whitespace(value_a) == collapse_whitespace(value_b) else 0.0


class FuzzyMatcher(FieldMatcher):
    """Normalized edit-distance similarity: 1 - distance / max_length.

    Options:
        normalize: 'text' (default; drops case, accents, punctuation),
                   'name' (also drops honorifics) or 'whitespace'
    """

    name = 'fuzzy'
    supported_types = frozenset({
        FieldType.STRING, FieldType.EMAIL, FieldType.PHONE,
        FieldType.ADDRESS, FieldType.UNKNOWN,
    })
    DEFAULT_OPTIONS = {'normalize': 'text'}

    NORMALIZERS: Dict[str, Callable[[Any], str]] = {
        'text': normalize_text,
        'name': normalize_name,
        'whitespace': collapse_whitespace,
    }

    def _compare(self, value_a: Any, value_b: Any, options: Dict[str, Any]) -> float:
        normalizer = self.NORMALIZERS.get(options.get('normalize'), normalize_text)
        text_a = normalizer(value_a)
        text_b = normalizer(value_b)

        # Values made only of punctuation normalize to ''
        if not text_a and not text_b:
            text_a = collapse_whitespace(value_a)
            text_b = collapse_whitespace(value_b)

        return edit_similarity(text_a, text_b)


class PhoneticMatcher(FieldMatcher):
    """Phonetic code comparison, word by word.

    Options:
        algorithm: 'soundex' (default), 'metaphone' or 'nysiis'
        blend: Mix the binary phonetic score with edit-distance similarity
        phonetic_weight: Weight of the phonetic part when blending (0-1)
    """

    name = 'phonetic'
    supported_types = frozenset({FieldType.STRING, FieldType.UNKNOWN})
    DEFAULT_OPTIONS = {'algorithm': 'soundex', 'blend': False, 'phonetic_weight': 0.5}

    ENCODERS: Dict[str, Callable[[str], str]] = {
        'soundex': phonetics.soundex,
        'metaphone': phonetics.metaphone,
        'nysiis': phonetics.nysiis,
    }

    def encode(self, value: Any, algorithm: Optional[str] = None) -> Tuple[str, ...]:
        """Encode every word of value.

        Args:
            value: Value to encode
            algorithm: Encoder name (defaults to the configured one)

        Returns:
            Tuple of phonetic codes, one per word
        """
        encoder = self.ENCODERS.get(algorithm or self.options['algorithm'], phonetics.soundex)
        return tuple(encoder(token) for token in alpha_tokens(value))

    def _compare(self, value_a: Any, value_b: Any, options: Dict[str, Any]) -> float:
        algorithm = options.get('algorithm')
        codes_a = self.encode(value_a, algorithm)
        codes_b = self.encode(value_b, algorithm)

        if not codes_a or not codes_b:
            # Nothing to encode (e.g. '1234'), fall back to plain equality
            phonetic_score = 1.0 if normalize_text(value_a) == normalize_text(value_b) else 0.0
        else:
            phonetic_score = 1.0 if codes_a == codes_b else 0.0

        if not options.get('blend'):
            return phonetic_score

        weight = _clamp(options.get('phonetic_weight', 0.5))
        distance_score = edit_similarity(normalize_text(value_a), normalize_text(value_b))
        return weight * phonetic_score + (1.0 - weight) * distance_score


class DistanceMatcher(FieldMatcher):
    """Numeric and date proximity.

    Numbers score 1 - |a - b| / max_difference when `max_difference` is set,
    otherwise the relative 1 - |a - b| / max(|a|, |b|). Dates score
    1 - days_apart / max_days.

    Options:
        max_difference: Absolute numeric tolerance (None = relative)
        max_days: Date tolerance in days (default 365)
    """

    name = 'distance'
    supported_types = frozenset({FieldType.NUMBER, FieldType.DATE, FieldType.DATETIME})
    DEFAULT_OPTIONS = {'max_difference': None, 'max_days': 365}

    def _compare(self, value_a: Any, value_b: Any, options: Dict[str, Any]) -> float:
        dates = (_to_datetime(value_a), _to_datetime(value_b))
        if dates[0] is not None and dates[1] is not None:
            max_days = float(options.get('max_days') or 0)
            days_apart = abs((dates[0] - dates[1]).total_seconds()) / 86400.0
            if max_days <= 0:
                return 1.0 if days_apart == 0 else 0.0
            return 1.0 - days_apart / max_days

        number_a = _to_number(value_a)
        number_b = _to_number(value_b)
        if number_a is None or number_b is None:
            return 0.0

        difference = abs(number_a - number_b)
        max_difference = options.get('max_difference')
        if max_difference is not None:
            if float(max_difference) <= 0:
                return 1.0 if difference == 0 else 0.0
            return 1.0 - difference / float(max_difference)

        scale = max(abs(number_a), abs(number_b))
        if scale == 0:
            return 1.0
        return 1.0 - difference / scale


class AddressMatcher(FieldMatcher):
    """Address-aware comparison of street, city and postal code.

    Street lines are compared with a token-sorted fuzzy ratio after
    abbreviation expansion, cities with edit similarity, postal codes exactly.
    A component blank on both sides is left out; blank on one side scores 0.

    Options:
        street_weight, city_weight, postal_weight: Intra-field weights
    """

    name = 'address'
    supported_types = frozenset({FieldType.ADDRESS, FieldType.STRING, FieldType.UNKNOWN})
    DEFAULT_OPTIONS = {'street_weight': 0.5, 'city_weight': 0.3, 'postal_weight': 0.2}

    def _compare(self, value_a: Any, value_b: Any, options: Dict[str, Any]) -> float:
        address_a = AddressParser.parse(value_a)
        address_b = AddressParser.parse(value_b)

        components = [
            (address_a.street, address_b.street, float(options.get('street_weight', 0)),
             lambda a, b: fuzz.token_sort_ratio(a, b) / 100.0),
            (address_a.city, address_b.city, float(options.get('city_weight', 0)),
             edit_similarity),
            (address_a.postal_code, address_b.postal_code, float(options.get('postal_weight', 0)),
             lambda a, b: 1.0 if a == b else 0.0),
        ]

        weighted = 0.0
        applied = 0.0
        for part_a, part_b, weight, compare in components:
            if weight <= 0 or (not part_a and not part_b):
                continue
            applied += weight
            if part_a and part_b:
                weighted += weight * compare(part_a, part_b)

        if applied == 0:
            return 0.0
        return weighted / applied


class CallableMatcher(FieldMatcher):
    """Adapts a plain function (a, b, options) -> float to the matcher contract."""

    name = 'custom'

    def __init__(
        self,
        func: Callable[[Any, Any, Dict[str, Any]], float],
        supported_types: Optional[FrozenSet[FieldType]] = None,
        blank_score: float = 0.0,
        **options: Any
    ):
        super().__init__(blank_score=blank_score, **options)
        self.func = func
        if supported_types is not None:
            self.supported_types = frozenset(supported_types)

    def _compare(self, value_a: Any, value_b: Any, options: Dict[str, Any]) -> float:
        return self.func(value_a, value_b, options)


def edit_similarity(text_a: str, text_b: str) -> float:
    """Normalized Levenshtein similarity of two strings (1.0 for two empties)."""
    if not text_a and not text_b:
        return 1.0
    return _clamp(Levenshtein.normalized_similarity(text_a, text_b))


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _to_number(value: Any) -> Optional[float]:
    if _is_number(value):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.replace(',', '').strip())
        except ValueError:
            return None
    return None


def _to_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return _naive_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, str) and not _looks_numeric(value):
        try:
            parsed = datetime.fromisoformat(value.strip())
        except ValueError:
            return None
        return _naive_utc(parsed)
    return None


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _looks_numeric(text: str) -> bool:
    return _to_number(text) is not None
