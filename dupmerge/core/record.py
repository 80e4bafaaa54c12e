"""Data model for candidate records and their field schema."""

from dataclasses import dataclass, field
from datetime import date, datetime
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .strategies import LenientEnum


class FieldType(LenientEnum):
    """Declared or inferred type of a record field."""
    STRING = "string"
    EMAIL = "email"
    PHONE = "phone"
    NUMBER = "number"
    DATE = "date"
    DATETIME = "datetime"
    BOOLEAN = "boolean"
    ADDRESS = "address"
    UNKNOWN = "unknown"


def is_blank(value: Any) -> bool:
    """True for None, empty/whitespace strings and empty mappings."""
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ''
    if isinstance(value, Mapping):
        return all(is_blank(v) for v in value.values())
    return False


@dataclass(frozen=True)
class CandidateRecord:
    """A read-only record from the external repository.

    Attributes:
        record_id: Stable unique identifier
        created_at: Creation timestamp
        fields: Field name -> value (str, number, bool, date, mapping or None)
        last_modified: Last modification timestamp, if the store tracks it
    """
    record_id: str
    created_at: datetime
    fields: Mapping[str, Any] = field(default_factory=dict)
    last_modified: Optional[datetime] = None

    def __post_init__(self):
        object.__setattr__(self, 'record_id', str(self.record_id))
        object.__setattr__(self, 'fields', MappingProxyType(dict(self.fields)))

    def get(self, field_name: str, default: Any = None) -> Any:
        """Get a field value."""
        return self.fields.get(field_name, default)

    def is_blank(self, field_name: str) -> bool:
        """True if the field is absent or blank."""
        return is_blank(self.fields.get(field_name))

    def non_blank_count(self, field_names: Optional[Iterable[str]] = None) -> int:
        """Count non-blank values among field_names (all fields if None)."""
        names = self.fields.keys() if field_names is None else field_names
        return sum(1 for name in names if not self.is_blank(name))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-friendly dictionary."""
        return {
            'record_id': self.record_id,
            'created_at': self.created_at.isoformat(),
            'last_modified': self.last_modified.isoformat() if self.last_modified else None,
            'fields': {k: json_value(v) for k, v in self.fields.items()},
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'CandidateRecord':
        """Create from a dictionary produced by to_dict (or hand-written JSON)."""
        created = data['created_at']
        modified = data.get('last_modified')
        return cls(
            record_id=str(data['record_id']),
            created_at=created if isinstance(created, datetime) else datetime.fromisoformat(created),
            fields=dict(data.get('fields') or {}),
            last_modified=(
                modified if isinstance(modified, datetime) or modified is None
                else datetime.fromisoformat(modified)
            ),
        )

    def __str__(self) -> str:
        return f"{self.record_id} ({self.non_blank_count()} fields)"


def json_value(value: Any) -> Any:
    """Convert dates to ISO strings, recursing into mappings."""
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Mapping):
        return {k: json_value(v) for k, v in value.items()}
    return value


def infer_field_type(value: Any) -> FieldType:
    """Guess a FieldType from a single non-blank value."""
    # bool before int: bool is an int subclass
    if isinstance(value, bool):
        return FieldType.BOOLEAN
    if isinstance(value, (int, float)):
        return FieldType.NUMBER
    if isinstance(value, datetime):
        return FieldType.DATETIME
    if isinstance(value, date):
        return FieldType.DATE
    if isinstance(value, Mapping):
        return FieldType.ADDRESS
    if isinstance(value, str):
        return FieldType.STRING
    return FieldType.UNKNOWN


class RecordSchema:
    """Field name -> FieldType mapping, resolved once per batch.

    Declared types always win. Fields without a declaration are inferred from
    the first non-blank value found in the batch.
    """

    def __init__(self, types: Optional[Mapping[str, FieldType]] = None):
        self._types: Dict[str, FieldType] = dict(types or {})

    @classmethod
    def resolve(
        cls,
        records: List[CandidateRecord],
        field_names: Iterable[str],
        declared: Optional[Mapping[str, FieldType]] = None
    ) -> 'RecordSchema':
        """Build a schema for field_names from declarations and sample values.

        Args:
            records: Records of the current batch
            field_names: Fields the schema must cover
            declared: Explicit types from configuration

        Returns:
            RecordSchema covering every requested field
        """
        declared = dict(declared or {})
        types: Dict[str, FieldType] = {}

        for name in field_names:
            if name in declared and declared[name] is not None:
                types[name] = declared[name]
                continue

            types[name] = FieldType.UNKNOWN
            for record in records:
                value = record.get(name)
                if not is_blank(value):
                    types[name] = infer_field_type(value)
                    break

        return cls(types)

    def type_of(self, field_name: str) -> FieldType:
        return self._types.get(field_name, FieldType.UNKNOWN)

    def fields(self) -> List[str]:
        return list(self._types)

    def as_dict(self) -> Dict[str, FieldType]:
        return dict(self._types)

    def __contains__(self, field_name: str) -> bool:
        return field_name in self._types

    def __eq__(self, other: object) -> bool:
        return isinstance(other, RecordSchema) and self._types == other._types

    def __repr__(self) -> str:
        body = ', '.join(f"{k}={v.value}" for k, v in self._types.items())
        return f"RecordSchema({body})"
