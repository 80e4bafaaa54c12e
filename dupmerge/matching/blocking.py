"""
Blocking keys: cheap per-record keys that limit pairwise comparison.

Only records sharing a key are compared. A record whose key is None is not
compared with anything.
"""

from typing import Hashable, Iterable, Optional, Tuple

import phonetics

from ..config.schema import BlockingConfig
from ..core.record import CandidateRecord, is_blank
from ..utils.normalize import alpha_tokens, normalize_text


class BlockingKeyBuilder:
    """
    Builds a blocking key from one or more record fields.

    Each field contributes its normalized value, optionally cut to a prefix
    and optionally replaced by its Soundex code. Records blank in every key
    field get no key.
    """

    def __init__(
        self,
        fields: Iterable[str],
        prefix_length: Optional[int] = None,
        phonetic: bool = False
    ):
        self.fields = tuple(fields)
        if not self.fields:
            raise ValueError("Blocking needs at least one field")
        self.prefix_length = prefix_length
        self.phonetic = phonetic

    @classmethod
    def from_config(cls, config: Optional[BlockingConfig]) -> Optional['BlockingKeyBuilder']:
        if config is None:
            return None
        return cls(config.fields, config.prefix_length, config.phonetic)

    def __call__(self, record: CandidateRecord) -> Optional[Hashable]:
        return self.key(record)

    def key(self, record: CandidateRecord) -> Optional[Tuple[str, ...]]:
        """
        Compute the blocking key of a record.

        Args:
            record: Record to key

        Returns:
            Tuple of per-field key parts, or None if every key field is blank
        """
        parts = tuple(self._part(record.get(name)) for name in self.fields)
        if not any(parts):
            return None
        return parts

    def _part(self, value) -> str:
        if is_blank(value):
            return ''

        if self.phonetic:
            tokens = alpha_tokens(value)
            if tokens:
                return ' '.join(phonetics.soundex(token) for token in tokens)

        text = normalize_text(value)
        if self.prefix_length:
            text = text[:self.prefix_length]
        return text

    def __repr__(self) -> str:
        return (
            f"BlockingKeyBuilder(fields={list(self.fields)}, "
            f"prefix_length={self.prefix_length}, phonetic={self.phonetic})"
        )
