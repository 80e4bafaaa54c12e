"""Record repository backed by a SQLite database."""

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from ..batch.job_state import JobRunState, JobStatus
from ..config.loader import config_from_dict
from ..config.schema import DedupeConfig
from ..core.errors import ConfigurationError, RepositoryError
from ..core.record import CandidateRecord, json_value
from ..merge.merger import MergePlan
from ..utils.audit_trail import AuditTrail
from .base import MergeResult, Page, RecordRepository

logger = logging.getLogger(__name__)


@contextmanager
def database_errors(action: str):
    """Report SQLite failures (locked database, I/O errors) as RepositoryError."""
    try:
        yield
    except sqlite3.Error as e:
        raise RepositoryError(f"Could not {action}: {e}") from e


class SqliteRepository(RecordRepository):
    """Repository for records stored in a SQLite database.

    This class handles:
    - SQLite connection management
    - Record import and keyset pagination
    - Applying merge plans inside a transaction, with an audit trail
    - Storage of configurations and job checkpoints

    Every SQLite error surfaces as RepositoryError, which the orchestrator
    retries.
    """

    def __init__(self, db_path: str | Path, audit: bool = True):
        """Open (and create if needed) a record database.

        Args:
            db_path: Path to the database file, or ':memory:'
            audit: Keep an audit trail of applied merges
        """
        self.db_path = Path(db_path) if str(db_path) != ':memory:' else None
        self.conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row  # Access columns by name
        self._create_schema()

        self.audit = AuditTrail(db_path) if audit else None
        self._active_job_id: Optional[str] = None

    def _create_schema(self):
        cursor = self.conn.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS records (
                object_type TEXT NOT NULL,
                record_id TEXT NOT NULL,
                created_at TEXT NOT NULL,
                last_modified TEXT,
                fields TEXT NOT NULL,
                PRIMARY KEY (object_type, record_id)
            )
        """)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS configs (
                config_id TEXT PRIMARY KEY,
                body TEXT NOT NULL
            )
        """)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS job_states (
                job_id TEXT PRIMARY KEY,
                status TEXT NOT NULL,
                body TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self.conn.commit()

    def close(self):
        """Close the database connections."""
        if self.audit:
            self.audit.close()
        if self.conn:
            self.conn.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    @contextmanager
    def transaction(self):
        """Context manager for database transactions."""
        try:
            yield self.conn
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise

    # ========== Records ==========

    def import_records(self, object_type: str, records: Iterable[CandidateRecord]) -> int:
        """Insert or replace records.

        Args:
            object_type: Object type to file the records under
            records: Records to store

        Returns:
            Number of records written
        """
        rows = [
            (
                object_type,
                record.record_id,
                record.created_at.isoformat(),
                record.last_modified.isoformat() if record.last_modified else None,
                json.dumps(json_value(dict(record.fields))),
            )
            for record in records
        ]
        with database_errors(f"import {object_type} records"), self.transaction() as conn:
            conn.executemany("""
                INSERT OR REPLACE INTO records
                    (object_type, record_id, created_at, last_modified, fields)
                VALUES (?, ?, ?, ?, ?)
            """, rows)
        logger.info(f"Imported {len(rows)} {object_type} records")
        return len(rows)

    def get_record(self, object_type: str, record_id: str) -> Optional[CandidateRecord]:
        with database_errors(f"read {object_type} record {record_id}"):
            row = self.conn.execute(
                "SELECT * FROM records WHERE object_type = ? AND record_id = ?",
                (object_type, record_id)
            ).fetchone()
        return self._row_to_record(row) if row else None

    def count_records(self, object_type: str) -> int:
        with database_errors(f"count {object_type} records"):
            row = self.conn.execute(
                "SELECT COUNT(*) FROM records WHERE object_type = ?", (object_type,)
            ).fetchone()
        return row[0]

    def fetch_page(self, object_type: str, cursor: Optional[str], page_size: int) -> Page:
        with database_errors(f"read {object_type} records"):
            rows = self.conn.execute("""
                SELECT * FROM records
                WHERE object_type = ? AND record_id > ?
                ORDER BY record_id
                LIMIT ?
            """, (object_type, cursor or '', page_size + 1)).fetchall()

        has_more = len(rows) > page_size
        records = tuple(self._row_to_record(row) for row in rows[:page_size])
        return Page(
            records=records,
            next_cursor=records[-1].record_id if records else cursor,
            has_more=has_more,
        )

    def apply_merge_plan(self, plan: MergePlan) -> MergeResult:
        """Write the master's resolved fields and delete the duplicates.

        Only records of the plan's object type are touched. The record
        changes and their audit entries are committed together.
        """
        if not plan.object_type:
            return MergeResult(
                success=False,
                errors=(f"Merge plan {plan.group_id} has no object type",),
                group_id=plan.group_id,
            )

        object_type = plan.object_type
        ids = list(plan.record_ids)
        placeholders = ', '.join('?' for _ in ids)
        with database_errors(f"read records of merge plan {plan.group_id}"):
            rows = self.conn.execute(
                f"SELECT * FROM records WHERE object_type = ? AND record_id IN ({placeholders})",
                [object_type, *ids]
            ).fetchall()
        found = {row['record_id']: row for row in rows}

        missing = [rid for rid in ids if rid not in found]
        if missing:
            return MergeResult(
                success=False,
                errors=(f"{object_type} record(s) not found: {', '.join(missing)}",),
                group_id=plan.group_id,
            )

        previous_fields = json.loads(found[plan.master_id]['fields'])

        with database_errors(f"apply merge plan {plan.group_id}"):
            try:
                if self.audit:
                    self.audit.record_merge(
                        plan, object_type, previous_fields, job_id=self._active_job_id, commit=False
                    )
                with self.transaction() as conn:
                    conn.execute("""
                        UPDATE records
                        SET fields = ?, last_modified = ?
                        WHERE object_type = ? AND record_id = ?
                    """, (
                        json.dumps(json_value(dict(plan.resolved_fields))),
                        datetime.now().isoformat(),
                        object_type,
                        plan.master_id,
                    ))
                    conn.executemany(
                        "DELETE FROM records WHERE object_type = ? AND record_id = ?",
                        [(object_type, rid) for rid in plan.duplicate_ids]
                    )
            except Exception:
                if self.audit:
                    self.audit.rollback()
                raise
            if self.audit:
                self.audit.commit()

        return MergeResult(success=True, group_id=plan.group_id)

    def _row_to_record(self, row: sqlite3.Row) -> CandidateRecord:
        return CandidateRecord(
            record_id=row['record_id'],
            created_at=datetime.fromisoformat(row['created_at']),
            fields=json.loads(row['fields']),
            last_modified=(
                datetime.fromisoformat(row['last_modified']) if row['last_modified'] else None
            ),
        )

    # ========== Configurations ==========

    def save_config(self, config: DedupeConfig) -> None:
        with database_errors(f"save configuration {config.config_id}"), self.transaction() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO configs (config_id, body) VALUES (?, ?)",
                (config.config_id, json.dumps(config.to_dict()))
            )

    def load_config(self, config_id: str) -> DedupeConfig:
        with database_errors(f"load configuration {config_id}"):
            row = self.conn.execute(
                "SELECT body FROM configs WHERE config_id = ?", (config_id,)
            ).fetchone()
        if row is None:
            raise ConfigurationError(f"Configuration not found: {config_id}")
        return config_from_dict(json.loads(row['body']))

    # ========== Job states ==========

    def persist_job_state(self, state: JobRunState) -> None:
        with database_errors(f"save state of job {state.job_id}"):
            with self.transaction() as conn:
                conn.execute("""
                    INSERT OR REPLACE INTO job_states (job_id, status, body, updated_at)
                    VALUES (?, ?, ?, ?)
                """, (
                    state.job_id,
                    state.status.value,
                    json.dumps(state.to_dict()),
                    (state.last_update or datetime.now()).isoformat(),
                ))

            self._track_session(state)

    def load_job_state(self, job_id: str) -> Optional[JobRunState]:
        with database_errors(f"load state of job {job_id}"):
            row = self.conn.execute(
                "SELECT body FROM job_states WHERE job_id = ?", (job_id,)
            ).fetchone()
        return JobRunState.from_dict(json.loads(row['body'])) if row else None

    def list_job_states(self) -> List[JobRunState]:
        with database_errors("list job states"):
            rows = self.conn.execute("SELECT body FROM job_states ORDER BY updated_at").fetchall()
        return [JobRunState.from_dict(json.loads(row['body'])) for row in rows]

    def _track_session(self, state: JobRunState) -> None:
        """Mirror the job lifecycle into audit sessions."""
        if not self.audit:
            return

        if state.status == JobStatus.PREPARING:
            self.audit.start_session(state.job_id, state.config_id, state.is_dry_run)
            self._active_job_id = state.job_id
        elif state.is_terminal:
            self.audit.end_session(
                state.job_id,
                status=state.status.value.lower(),
                records_processed=state.records_processed,
                records_merged=state.records_merged,
            )
            if self._active_job_id == state.job_id:
                self._active_job_id = None

    def get_stats(self) -> Dict[str, Any]:
        """Record counts per object type and job counts per status."""
        with database_errors("read statistics"):
            records = {
                row['object_type']: row['n']
                for row in self.conn.execute(
                    "SELECT object_type, COUNT(*) AS n FROM records GROUP BY object_type"
                )
            }
            jobs = {
                row['status']: row['n']
                for row in self.conn.execute(
                    "SELECT status, COUNT(*) AS n FROM job_states GROUP BY status"
                )
            }
        return {'records': records, 'jobs': jobs}
