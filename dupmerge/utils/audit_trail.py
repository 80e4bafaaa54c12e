"""
Audit trail for merge operations.

Every applied merge plan leaves a trace: one entry per field the master
changed, one per conflicting value the merge did not keep, one per deleted
duplicate, and the note text preserving the dropped values. Entries are
grouped into sessions, one session per job.
"""

import json
import sqlite3
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from ..core.record import json_value
from ..merge.conflict_resolver import build_conflict_report, render_audit_note
from ..merge.merger import MergePlan


class AuditOperation(Enum):
    """Types of audited merge operations."""
    FIELD_UPDATE = "field_update"
    FIELD_CONFLICT = "field_conflict"
    RECORD_DELETE = "record_delete"
    MERGE_NOTE = "merge_note"


@dataclass
class AuditEntry:
    """Single audit log entry."""
    id: Optional[int] = None
    timestamp: Optional[str] = None
    job_id: Optional[str] = None
    group_id: str = ""
    operation_type: str = ""
    object_type: str = ""
    record_id: str = ""
    field_name: Optional[str] = None
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        result = asdict(self)
        if self.metadata:
            result['metadata'] = json.dumps(self.metadata)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEntry':
        """Create from dictionary."""
        data = dict(data)
        if isinstance(data.get('metadata'), str):
            data['metadata'] = json.loads(data['metadata'])
        return cls(**data)


def _to_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return json.dumps(json_value(value), sort_keys=True)


class AuditTrail:
    """Merge audit log stored in a SQLite database beside the record store.

    The audit database lives next to the main database (same name with an
    `.audit.db` suffix) so the record schema stays untouched.
    """

    def __init__(self, database_path: str | Path):
        """Initialize the audit trail for a database.

        Args:
            database_path: Path to the main record database (':memory:' keeps
                the audit log in memory too)
        """
        self.main_db_path = Path(database_path)
        if str(database_path) == ':memory:':
            self.audit_db_path = None
            self.conn = sqlite3.connect(':memory:', check_same_thread=False)
        else:
            self.audit_db_path = self.main_db_path.parent / f"{self.main_db_path.stem}.audit.db"
            self.conn = sqlite3.connect(str(self.audit_db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._create_schema()

    def _create_schema(self):
        """Create audit trail database schema."""
        cursor = self.conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS audit_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL DEFAULT (datetime('now')),
                job_id TEXT,
                group_id TEXT NOT NULL,
                operation_type TEXT NOT NULL,
                object_type TEXT NOT NULL,
                record_id TEXT NOT NULL,
                field_name TEXT,
                old_value TEXT,
                new_value TEXT,
                metadata TEXT
            )
        """)

        # One session per job
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS job_session (
                job_id TEXT PRIMARY KEY,
                config_id TEXT NOT NULL,
                is_dry_run INTEGER NOT NULL DEFAULT 0,
                start_time TEXT NOT NULL DEFAULT (datetime('now')),
                end_time TEXT,
                status TEXT NOT NULL,
                records_processed INTEGER DEFAULT 0,
                records_merged INTEGER DEFAULT 0
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_audit_group
            ON audit_log(group_id)
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_audit_record
            ON audit_log(object_type, record_id)
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_audit_job
            ON audit_log(job_id)
        """)

        self.conn.commit()

    def start_session(self, job_id: str, config_id: str, is_dry_run: bool = False) -> None:
        """Open the session of a job (kept as is if the job is resumed).

        Args:
            job_id: Job id
            config_id: Configuration the job runs with
            is_dry_run: True for dry runs
        """
        self.conn.execute("""
            INSERT OR IGNORE INTO job_session (job_id, config_id, is_dry_run, status)
            VALUES (?, ?, ?, 'running')
        """, (job_id, config_id, int(is_dry_run)))
        self.conn.commit()

    def end_session(
        self,
        job_id: str,
        status: str = "completed",
        records_processed: int = 0,
        records_merged: int = 0
    ):
        """Close the session of a job.

        Args:
            job_id: Job id
            status: Final status (completed, failed, aborted)
            records_processed: Total records processed
            records_merged: Total duplicate records merged
        """
        self.conn.execute("""
            UPDATE job_session
            SET end_time = datetime('now'),
                status = ?,
                records_processed = ?,
                records_merged = ?
            WHERE job_id = ?
        """, (status, records_processed, records_merged, job_id))
        self.conn.commit()

    def log_change(
        self,
        operation_type: AuditOperation | str,
        group_id: str,
        object_type: str,
        record_id: str,
        field_name: Optional[str] = None,
        old_value: Any = None,
        new_value: Any = None,
        metadata: Optional[Dict[str, Any]] = None,
        job_id: Optional[str] = None,
        commit: bool = True
    ) -> int:
        """Log a single change to the audit trail.

        Args:
            operation_type: Type of operation performed
            group_id: Merge group the change belongs to
            object_type: Object type of the record
            record_id: Record changed
            field_name: Field changed, if any
            old_value: Original value
            new_value: New value
            metadata: Optional additional metadata
            job_id: Job the change was made by
            commit: Commit immediately

        Returns:
            Audit entry ID
        """
        if isinstance(operation_type, AuditOperation):
            operation_type = operation_type.value

        cursor = self.conn.cursor()
        cursor.execute("""
            INSERT INTO audit_log (
                job_id, group_id, operation_type, object_type, record_id,
                field_name, old_value, new_value, metadata
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (job_id, group_id, operation_type, object_type, record_id,
              field_name, _to_text(old_value), _to_text(new_value),
              json.dumps(metadata) if metadata else None))

        if commit:
            self.conn.commit()
        return cursor.lastrowid

    def record_merge(
        self,
        plan: MergePlan,
        object_type: str,
        previous_master_fields: Mapping[str, Any],
        job_id: Optional[str] = None,
        commit: bool = True
    ) -> int:
        """Log everything an applied merge plan changed.

        Args:
            plan: The applied plan
            object_type: Object type of the merged records
            previous_master_fields: Master field values before the merge
            job_id: Job that applied the plan
            commit: Commit immediately (False leaves the entries pending
                until commit() or rollback())

        Returns:
            Number of entries written
        """
        count = 0
        for name, value in plan.resolved_fields.items():
            old_value = previous_master_fields.get(name)
            if old_value == value:
                continue
            self.log_change(
                AuditOperation.FIELD_UPDATE, plan.group_id, object_type, plan.master_id,
                field_name=name, old_value=old_value, new_value=value,
                metadata={'source_record_id': plan.field_sources.get(name),
                          'status': plan.field_statuses[name].value},
                job_id=job_id, commit=False,
            )
            count += 1

        for conflict in plan.conflicts:
            self.log_change(
                AuditOperation.FIELD_CONFLICT, plan.group_id, object_type,
                conflict.duplicate_record_id, field_name=conflict.field,
                old_value=conflict.duplicate_value, new_value=conflict.master_value,
                job_id=job_id, commit=False,
            )
            count += 1

        for record_id in plan.duplicate_ids:
            self.log_change(
                AuditOperation.RECORD_DELETE, plan.group_id, object_type, record_id,
                metadata={'merged_into': plan.master_id},
                job_id=job_id, commit=False,
            )
            count += 1

        if plan.has_conflicts:
            self.log_change(
                AuditOperation.MERGE_NOTE, plan.group_id, object_type, plan.master_id,
                new_value=render_audit_note(plan),
                metadata={'conflicts': build_conflict_report(plan)},
                job_id=job_id, commit=False,
            )
            count += 1

        if commit:
            self.conn.commit()
        return count

    def commit(self):
        """Commit pending entries."""
        self.conn.commit()

    def rollback(self):
        """Discard pending entries."""
        self.conn.rollback()

    def get_group_history(self, group_id: str) -> List[AuditEntry]:
        """Get all entries written for one merge group."""
        cursor = self.conn.cursor()
        cursor.execute("""
            SELECT *
            FROM audit_log
            WHERE group_id = ?
            ORDER BY id
        """, (group_id,))
        return [self._row_to_entry(row) for row in cursor.fetchall()]

    def get_notes(self, record_id: str) -> List[str]:
        """Merge notes attached to a master record, oldest first."""
        cursor = self.conn.cursor()
        cursor.execute("""
            SELECT new_value
            FROM audit_log
            WHERE record_id = ? AND operation_type = ?
            ORDER BY id
        """, (record_id, AuditOperation.MERGE_NOTE.value))
        return [row['new_value'] for row in cursor.fetchall()]

    def get_session_changes(self, job_id: str) -> List[AuditEntry]:
        """Get all changes made by a job."""
        cursor = self.conn.cursor()
        cursor.execute("""
            SELECT *
            FROM audit_log
            WHERE job_id = ?
            ORDER BY id
        """, (job_id,))
        return [self._row_to_entry(row) for row in cursor.fetchall()]

    def get_sessions(self, limit: int = 50) -> List[Dict[str, Any]]:
        """Get recent job sessions with their change counts."""
        cursor = self.conn.cursor()
        cursor.execute("""
            SELECT
                s.*,
                COUNT(a.id) as change_count
            FROM job_session s
            LEFT JOIN audit_log a ON s.job_id = a.job_id
            GROUP BY s.job_id
            ORDER BY s.start_time DESC
            LIMIT ?
        """, (limit,))
        return [dict(row) for row in cursor.fetchall()]

    def export_session_report(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Export a detailed report of a job's changes.

        Returns:
            Dictionary with the session and its changes grouped by merge
            group and by operation, or None if the job has no session
        """
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM job_session WHERE job_id = ?", (job_id,))
        session_row = cursor.fetchone()
        if not session_row:
            return None

        changes = self.get_session_changes(job_id)
        changes_by_group: Dict[str, List[Dict[str, Any]]] = {}
        changes_by_operation: Dict[str, List[Dict[str, Any]]] = {}
        for change in changes:
            changes_by_group.setdefault(change.group_id, []).append(change.to_dict())
            changes_by_operation.setdefault(change.operation_type, []).append(change.to_dict())

        return {
            'session': dict(session_row),
            'total_changes': len(changes),
            'changes_by_group': changes_by_group,
            'changes_by_operation': changes_by_operation,
        }

    def _row_to_entry(self, row: sqlite3.Row) -> AuditEntry:
        return AuditEntry.from_dict(dict(row))

    def close(self):
        """Close the audit database connection."""
        if self.conn:
            self.conn.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
