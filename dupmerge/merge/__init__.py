"""Master selection, merge resolution and conflict auditing."""

from .conflict_resolver import (
    FieldConflict,
    FieldStatus,
    build_conflict_report,
    build_field_selections,
    render_audit_note,
    values_equal,
)
from .master_selection import select_master
from .merger import MergePlan, MergeResolver

__all__ = [
    'FieldConflict',
    'FieldStatus',
    'build_conflict_report',
    'build_field_selections',
    'render_audit_note',
    'values_equal',
    'select_master',
    'MergePlan',
    'MergeResolver',
]
