"""
Text normalization helpers shared by the field matchers.

All helpers accept any value and stringify non-string input, so matchers can
call them without type checks.
"""

import re
import unicodedata
from datetime import date, datetime
from typing import Any, List

_PUNCTUATION = re.compile(r"[.,/\\()\[\]{}'\"`!?;:_\-]+")
_WHITESPACE = re.compile(r'\s+')
_NON_DIGITS = re.compile(r'\D+')

# Titles and suffixes dropped by normalize_name
HONORIFIC_PREFIXES = {
    'mr', 'mrs', 'ms', 'miss', 'mx', 'dr', 'rev', 'sir', 'lady', 'lord', 'dame', 'prof',
    'm', 'mme', 'mlle',
    'herr', 'frau',
    'sr', 'sra', 'srta', 'don', 'dona',
}

HONORIFIC_SUFFIXES = {
    'jr', 'ii', 'iii', 'iv', 'esq', 'md', 'phd', 'cpa',
}


def to_text(value: Any) -> str:
    """Stringify a field value (None -> '')."""
    if value is None:
        return ''
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def strip_accents(text: str) -> str:
    """Remove diacritics (e.g. 'Müller' -> 'Muller')."""
    decomposed = unicodedata.normalize('NFKD', text)
    return ''.join(c for c in decomposed if not unicodedata.combining(c))


def collapse_whitespace(value: Any) -> str:
    """Lowercase and collapse runs of whitespace."""
    return _WHITESPACE.sub(' ', to_text(value)).strip().lower()


def normalize_text(value: Any) -> str:
    """Lowercase, drop accents and punctuation, collapse whitespace."""
    text = strip_accents(to_text(value)).lower()
    text = _PUNCTUATION.sub(' ', text)
    return _WHITESPACE.sub(' ', text).strip()


def normalize_name(value: Any) -> str:
    """Normalize a personal or company name, dropping honorifics.

    Args:
        value: Name to normalize

    Returns:
        Normalized name (e.g. 'Mr. John Smith Jr.' -> 'john smith')
    """
    parts = normalize_text(value).split()
    kept = [
        part for part in parts
        if part not in HONORIFIC_PREFIXES and part not in HONORIFIC_SUFFIXES
    ]
    # A name made only of titles keeps its original tokens
    return ' '.join(kept) if kept else ' '.join(parts)


def digits_only(value: Any) -> str:
    """Keep only the digits of a value (phone numbers, postal codes)."""
    return _NON_DIGITS.sub('', to_text(value))


def alpha_tokens(value: Any) -> List[str]:
    """Split a value into ASCII letter-only tokens, for phonetic encoders."""
    text = strip_accents(to_text(value)).upper()
    tokens = re.split(r'[^A-Z]+', text)
    return [t for t in tokens if t]
