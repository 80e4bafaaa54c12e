"""Strategy enums shared by configuration, matching and merging."""

from enum import Enum


class LenientEnum(Enum):
    """Enum that also accepts names and values in any case or separator style."""

    @classmethod
    def _missing_(cls, value):
        if not isinstance(value, str):
            return None
        key = value.replace('_', '').replace('-', '').replace(' ', '').lower()
        for member in cls:
            if key in (member.value.lower(), member.name.replace('_', '').lower()):
                return member
        return None


class MatchStrategy(LenientEnum):
    """How a field is compared."""
    EXACT = "Exact"
    FUZZY = "Fuzzy"
    PHONETIC = "Phonetic"
    DISTANCE = "Distance"
    CUSTOM = "Custom"


class MasterStrategy(LenientEnum):
    """How the surviving record of a group is chosen."""
    OLDEST_CREATED = "OldestCreated"
    NEWEST_CREATED = "NewestCreated"
    MOST_COMPLETE = "MostComplete"


class FieldSelection(LenientEnum):
    """Bulk field-selection strategy used to pre-fill merge overrides."""
    MANUAL = "Manual"  # No overrides, every disagreement is reported
    MASTER_WINS = "MasterWins"
    NON_BLANK = "NonBlank"
    MOST_RECENT = "MostRecent"


class BlankPolicy(LenientEnum):
    """Scoring of fields that are blank on exactly one side."""
    PENALIZE = "penalize"  # Score 0, counted in the denominator
    IGNORE = "ignore"  # Excluded like fields blank on both sides
