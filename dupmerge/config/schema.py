"""
Pydantic schema for deduplication job configuration.

A DedupeConfig carries everything one job needs: which fields are compared
and how much each one counts, the match threshold, how the master record is
chosen, and the batch and retry settings of the orchestrator.

Unknown keys are rejected (`extra='forbid'`) so misspelled settings fail
loudly instead of silently falling back to defaults.
"""

from typing import Any, Dict, List, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

from ..core.record import FieldType
from ..core.strategies import BlankPolicy, FieldSelection, MasterStrategy, MatchStrategy

MAX_BATCH_SIZE = 10000


def _to_enum(enum_class, value: Any) -> Any:
    """Accept enum names and values in any case or separator style."""
    if value is None or isinstance(value, enum_class):
        return value
    try:
        return enum_class(value)
    except ValueError:
        allowed = ', '.join(member.value for member in enum_class)
        raise ValueError(f"'{value}' is not one of: {allowed}")


class FieldConfig(BaseModel):
    """Matching settings for one record field."""

    model_config = ConfigDict(extra='forbid', populate_by_name=True)

    weight: float = Field(
        default=1.0,
        ge=0.0,
        description="Relative importance of the field. Zero excludes it from scoring."
    )
    strategy: Optional[MatchStrategy] = Field(
        default=None,
        description="Match strategy. None uses the default matcher of the field type."
    )
    field_type: Optional[FieldType] = Field(
        default=None,
        alias='type',
        description="Declared field type. None infers the type from record values."
    )
    options: Dict[str, Any] = Field(
        default_factory=dict,
        description="Matcher options (e.g. max_days, algorithm, street_weight)."
    )
    custom: Optional[str] = Field(
        default=None,
        description="Registered matcher name, required with the Custom strategy."
    )

    @field_validator('strategy', mode='before')
    @classmethod
    def _parse_strategy(cls, value: Any) -> Any:
        return _to_enum(MatchStrategy, value)

    @field_validator('field_type', mode='before')
    @classmethod
    def _parse_field_type(cls, value: Any) -> Any:
        return _to_enum(FieldType, value)

    @model_validator(mode='after')
    def _check_custom(self) -> 'FieldConfig':
        if self.strategy == MatchStrategy.CUSTOM and not self.custom:
            raise ValueError("strategy 'Custom' requires the name of a registered matcher in 'custom'")
        return self


class BlockingConfig(BaseModel):
    """Cheap per-record key; only records sharing a key are compared."""

    model_config = ConfigDict(extra='forbid')

    fields: List[str] = Field(
        ...,
        min_length=1,
        description="Fields whose normalized values make up the key."
    )
    prefix_length: Optional[int] = Field(
        default=None,
        ge=1,
        description="Keep only the first N characters of each value."
    )
    phonetic: bool = Field(
        default=False,
        description="Encode each value phonetically (Soundex) before keying."
    )


class DedupeConfig(BaseModel):
    """Complete configuration of a deduplication job."""

    model_config = ConfigDict(extra='forbid')

    config_id: str = Field(default='default', min_length=1)
    object_type: str = Field(default='Record', min_length=1)
    threshold: float = Field(
        default=0.75,
        ge=0.0,
        le=1.0,
        description="Aggregate score at or above which two records are duplicates."
    )
    batch_size: int = Field(default=200, ge=1, le=MAX_BATCH_SIZE)
    master_strategy: MasterStrategy = MasterStrategy.OLDEST_CREATED
    field_selection: FieldSelection = FieldSelection.MANUAL
    one_sided_blank: BlankPolicy = Field(
        default=BlankPolicy.PENALIZE,
        description="'penalize' scores a field blank on one side as 0, 'ignore' skips it."
    )
    blank_score: float = Field(
        default=0.0,
        ge=0.0,
        le=1.0,
        description="Score matchers return when both values are blank."
    )
    max_group_size: Optional[int] = Field(
        default=None,
        ge=2,
        description="Groups larger than this are reported but never merged."
    )
    max_resume_attempts: int = Field(default=3, ge=0)
    backoff_seconds: float = Field(default=1.0, ge=0.0)
    blocking: Optional[BlockingConfig] = None
    fields: Dict[str, FieldConfig] = Field(..., min_length=1)

    @field_validator('master_strategy', mode='before')
    @classmethod
    def _parse_master_strategy(cls, value: Any) -> Any:
        return _to_enum(MasterStrategy, value)

    @field_validator('field_selection', mode='before')
    @classmethod
    def _parse_field_selection(cls, value: Any) -> Any:
        return _to_enum(FieldSelection, value)

    @field_validator('one_sided_blank', mode='before')
    @classmethod
    def _parse_blank_policy(cls, value: Any) -> Any:
        return _to_enum(BlankPolicy, value)

    @field_validator('fields', mode='before')
    @classmethod
    def _expand_shorthand(cls, value: Any) -> Any:
        # `Name: 0.5` is shorthand for `Name: {weight: 0.5}`
        if isinstance(value, dict):
            return {
                name: {'weight': entry} if isinstance(entry, (int, float)) else entry
                for name, entry in value.items()
            }
        return value

    @model_validator(mode='after')
    def _check_weights(self) -> 'DedupeConfig':
        if not any(entry.weight > 0 for entry in self.fields.values()):
            raise ValueError("at least one field needs a positive weight")
        return self

    @property
    def field_weights(self) -> Dict[str, float]:
        """Field name -> weight for every field that takes part in scoring."""
        return {name: entry.weight for name, entry in self.fields.items() if entry.weight > 0}

    @property
    def declared_types(self) -> Dict[str, FieldType]:
        """Field name -> explicitly declared type."""
        return {
            name: entry.field_type
            for name, entry in self.fields.items()
            if entry.field_type is not None
        }

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a plain dictionary with enum values, as written to YAML."""
        return self.model_dump(mode='json', by_alias=True, exclude_none=True)
