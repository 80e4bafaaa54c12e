"""Core data model shared by every stage of the engine."""

from .strategies import MatchStrategy, MasterStrategy, FieldSelection, BlankPolicy
from .record import CandidateRecord, FieldType, RecordSchema, infer_field_type, is_blank
from .errors import (
    DupMergeError,
    ConfigurationError,
    GroupError,
    InvalidMasterError,
    EmptyGroupError,
    InvalidOverrideError,
    RepositoryError,
    RateLimitedError,
    PartialApplyError,
    JobStateError,
)

__all__ = [
    'CandidateRecord',
    'FieldType',
    'RecordSchema',
    'infer_field_type',
    'is_blank',
    'MatchStrategy',
    'MasterStrategy',
    'FieldSelection',
    'BlankPolicy',
    'DupMergeError',
    'ConfigurationError',
    'GroupError',
    'InvalidMasterError',
    'EmptyGroupError',
    'InvalidOverrideError',
    'RepositoryError',
    'RateLimitedError',
    'PartialApplyError',
    'JobStateError',
]
