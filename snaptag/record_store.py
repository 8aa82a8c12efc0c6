"""
Record store using SQLite.

The record store is the single source of truth for:
- Tagged photo records (photo reference, tags, comment, timestamps)
- Alarms and their status

The search index and any timers held by the platform are derived from
what is stored here and can be rebuilt from it after a restart.

Every mutation runs inside a BEGIN IMMEDIATE transaction and is committed
before the call returns. WAL mode with synchronous=FULL makes a commit
durable across process crashes. Any sqlite error rolls the transaction
back and surfaces as StorageError, so a failed operation never leaves a
partial write behind.
"""

import json
import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, Optional

from .errors import NotFound, StorageError, ValidationError
from .tags import normalize_tag, normalize_tags
from .types import (
    Alarm,
    AlarmStatus,
    TaggedRecord,
    format_utc,
    parse_utc_timestamp,
    utc_now,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

_RECORD_COLUMNS = "id, photo_ref, tags_json, comment, created_at, updated_at"
_ALARM_COLUMNS = "id, record_id, fire_at, status, created_at, resolved_at, last_error"


def new_id() -> str:
    """Fresh opaque identifier for records and alarms."""
    return uuid.uuid4().hex


class RecordStore:
    """
    SQLite-backed store for tagged records and their alarms.

    One connection is shared between threads (timer callbacks arrive on
    their own threads) and guarded by a lock.
    """

    def __init__(self, db_path: Path):
        """
        Args:
            db_path: Path to SQLite database file
        """
        self._db_path = Path(db_path)
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        try:
            self._init_db()
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open record store {self._db_path}: {e}") from e

    def _init_db(self) -> None:
        """Initialize the SQLite database."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        # isolation_level=None gives us manual transaction control
        # so every mutation can use BEGIN IMMEDIATE
        self._conn = sqlite3.connect(
            str(self._db_path), check_same_thread=False,
            isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row

        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=FULL")
        self._conn.execute("PRAGMA busy_timeout=5000")
        self._conn.execute("PRAGMA foreign_keys=ON")

        version = self._conn.execute("PRAGMA user_version").fetchone()[0]
        if version > SCHEMA_VERSION:
            raise StorageError(
                f"Record store schema {version} is newer than supported ({SCHEMA_VERSION})"
            )

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS records (
                id TEXT PRIMARY KEY,
                photo_ref TEXT NOT NULL,
                tags_json TEXT NOT NULL DEFAULT '[]',
                comment TEXT NOT NULL DEFAULT '',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS alarms (
                id TEXT PRIMARY KEY,
                record_id TEXT NOT NULL REFERENCES records(id),
                fire_at TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                created_at TEXT NOT NULL,
                resolved_at TEXT,
                last_error TEXT
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_alarms_record
            ON alarms(record_id)
        """)
        # At most one pending alarm per record
        self._conn.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS idx_alarms_one_pending
            ON alarms(record_id) WHERE status = 'pending'
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_records_created
            ON records(created_at)
        """)

        if version < SCHEMA_VERSION:
            self._conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")

    # -------------------------------------------------------------------------
    # Transaction helpers
    # -------------------------------------------------------------------------

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StorageError("Record store is closed")
        return self._conn

    def _rollback(self) -> None:
        conn = self._conn
        if conn is not None and conn.in_transaction:
            try:
                conn.rollback()
            except sqlite3.Error as e:
                logger.warning("Rollback failed: %s", e)

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block as one write transaction; sqlite errors become StorageError."""
        with self._lock:
            conn = self._connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                yield conn
                conn.execute("COMMIT")
            except sqlite3.Error as e:
                self._rollback()
                raise StorageError(str(e)) from e
            except BaseException:
                self._rollback()
                raise

    @contextmanager
    def _reading(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn = self._connection()
            try:
                yield conn
            except sqlite3.Error as e:
                raise StorageError(str(e)) from e

    # -------------------------------------------------------------------------
    # Row conversion
    # -------------------------------------------------------------------------

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> TaggedRecord:
        return TaggedRecord(
            id=row["id"],
            photo_ref=row["photo_ref"],
            tags=json.loads(row["tags_json"]),
            comment=row["comment"],
            created_at=parse_utc_timestamp(row["created_at"]),
            updated_at=parse_utc_timestamp(row["updated_at"]),
        )

    @staticmethod
    def _row_to_alarm(row: sqlite3.Row) -> Alarm:
        return Alarm(
            id=row["id"],
            record_id=row["record_id"],
            fire_at=parse_utc_timestamp(row["fire_at"]),
            status=AlarmStatus(row["status"]),
            created_at=parse_utc_timestamp(row["created_at"]),
            resolved_at=parse_utc_timestamp(row["resolved_at"]) if row["resolved_at"] else None,
            last_error=row["last_error"],
        )

    # -------------------------------------------------------------------------
    # Records
    # -------------------------------------------------------------------------

    def create(
        self,
        photo_ref: Optional[str],
        tags: list[str],
        comment: str = "",
    ) -> TaggedRecord:
        """
        Create and persist a new tagged record.

        Args:
            photo_ref: Opaque handle to the stored photo (required)
            tags: Tags; re-normalized so the stored list is canonical
            comment: Free text, may be empty

        Returns:
            The stored TaggedRecord

        Raises:
            ValidationError: photo_ref is missing or blank
            StorageError: the write failed
        """
        if photo_ref is None or not str(photo_ref).strip():
            raise ValidationError("photo_ref is required")

        now = utc_now()
        record = TaggedRecord(
            id=new_id(),
            photo_ref=str(photo_ref),
            tags=normalize_tags(tags),
            comment=comment or "",
            created_at=now,
            updated_at=now,
        )
        with self._transaction() as conn:
            conn.execute(f"""
                INSERT INTO records ({_RECORD_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?)
            """, (
                record.id,
                record.photo_ref,
                json.dumps(record.tags, ensure_ascii=False),
                record.comment,
                format_utc(record.created_at),
                format_utc(record.updated_at),
            ))
        logger.info("Created record %s (%d tags)", record.id, len(record.tags))
        return record

    def find(self, id: str) -> Optional[TaggedRecord]:
        """Get a record by ID, or None if absent."""
        with self._reading() as conn:
            row = conn.execute(
                f"SELECT {_RECORD_COLUMNS} FROM records WHERE id = ?", (id,)
            ).fetchone()
        return self._row_to_record(row) if row is not None else None

    def get(self, id: str) -> TaggedRecord:
        """Get a record by ID. Raises NotFound if absent."""
        record = self.find(id)
        if record is None:
            raise NotFound("Record", id)
        return record

    def exists(self, id: str) -> bool:
        """Check if a record exists."""
        with self._reading() as conn:
            row = conn.execute("SELECT 1 FROM records WHERE id = ?", (id,)).fetchone()
        return row is not None

    def list_records(self) -> list[TaggedRecord]:
        """All records, oldest first."""
        with self._reading() as conn:
            rows = conn.execute(
                f"SELECT {_RECORD_COLUMNS} FROM records ORDER BY created_at, rowid"
            ).fetchall()
        return [self._row_to_record(row) for row in rows]

    def list_by_tag(self, tag: str) -> list[TaggedRecord]:
        """
        Records carrying exactly this tag (after normalization), oldest first.
        """
        tag = normalize_tag(tag)
        if not tag:
            return []
        with self._reading() as conn:
            rows = conn.execute(f"""
                SELECT {_RECORD_COLUMNS} FROM records
                WHERE EXISTS (
                    SELECT 1 FROM json_each(records.tags_json)
                    WHERE json_each.value = ?
                )
                ORDER BY created_at, rowid
            """, (tag,)).fetchall()
        return [self._row_to_record(row) for row in rows]

    def count(self) -> int:
        """Count records."""
        with self._reading() as conn:
            return conn.execute("SELECT COUNT(*) FROM records").fetchone()[0]

    def update(
        self,
        id: str,
        *,
        tags: Optional[list[str]] = None,
        comment: Optional[str] = None,
    ) -> TaggedRecord:
        """
        Replace the tags and/or comment of an existing record.

        Fields left as None are unchanged. created_at is preserved.

        Raises:
            NotFound: no record with this id
        """
        with self._transaction() as conn:
            row = conn.execute(
                f"SELECT {_RECORD_COLUMNS} FROM records WHERE id = ?", (id,)
            ).fetchone()
            if row is None:
                raise NotFound("Record", id)
            record = self._row_to_record(row)
            if tags is not None:
                record.tags = normalize_tags(tags)
            if comment is not None:
                record.comment = comment
            record.updated_at = utc_now()
            conn.execute("""
                UPDATE records
                SET tags_json = ?, comment = ?, updated_at = ?
                WHERE id = ?
            """, (
                json.dumps(record.tags, ensure_ascii=False),
                record.comment,
                format_utc(record.updated_at),
                id,
            ))
        logger.info("Updated record %s", id)
        return record

    def delete(self, id: str) -> list[Alarm]:
        """
        Delete a record and all of its alarms in one transaction.

        Returns:
            The alarms that were still pending, so their platform timers
            can be cancelled by the caller.

        Raises:
            NotFound: no record with this id
        """
        with self._transaction() as conn:
            if conn.execute("SELECT 1 FROM records WHERE id = ?", (id,)).fetchone() is None:
                raise NotFound("Record", id)
            rows = conn.execute(f"""
                SELECT {_ALARM_COLUMNS} FROM alarms
                WHERE record_id = ? AND status = 'pending'
            """, (id,)).fetchall()
            pending = [self._row_to_alarm(row) for row in rows]
            removed = conn.execute(
                "DELETE FROM alarms WHERE record_id = ?", (id,)
            ).rowcount
            conn.execute("DELETE FROM records WHERE id = ?", (id,))
        logger.info("Deleted record %s (%d alarms, %d pending)", id, removed, len(pending))
        return pending

    # -------------------------------------------------------------------------
    # Alarms
    # -------------------------------------------------------------------------

    def _insert_alarm(self, conn: sqlite3.Connection, alarm: Alarm) -> None:
        conn.execute(f"""
            INSERT INTO alarms ({_ALARM_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, (
            alarm.id,
            alarm.record_id,
            format_utc(alarm.fire_at),
            alarm.status.value,
            format_utc(alarm.created_at),
            format_utc(alarm.resolved_at) if alarm.resolved_at else None,
            alarm.last_error,
        ))

    def insert_alarm(self, alarm: Alarm) -> Alarm:
        """Persist a new alarm. Raises NotFound if its record is missing."""
        with self._transaction() as conn:
            if conn.execute(
                "SELECT 1 FROM records WHERE id = ?", (alarm.record_id,)
            ).fetchone() is None:
                raise NotFound("Record", alarm.record_id)
            self._insert_alarm(conn, alarm)
        return alarm

    def supersede_alarm(self, old_id: str, alarm: Alarm) -> bool:
        """
        Cancel a pending alarm and insert its replacement atomically.

        Returns:
            True if the old alarm was still pending and got cancelled.
        """
        with self._transaction() as conn:
            if conn.execute(
                "SELECT 1 FROM records WHERE id = ?", (alarm.record_id,)
            ).fetchone() is None:
                raise NotFound("Record", alarm.record_id)
            cancelled = conn.execute("""
                UPDATE alarms
                SET status = 'cancelled', resolved_at = ?
                WHERE id = ? AND status = 'pending'
            """, (format_utc(utc_now()), old_id)).rowcount
            self._insert_alarm(conn, alarm)
        return cancelled > 0

    def find_alarm(self, alarm_id: str) -> Optional[Alarm]:
        """Get an alarm by ID, or None if absent."""
        with self._reading() as conn:
            row = conn.execute(
                f"SELECT {_ALARM_COLUMNS} FROM alarms WHERE id = ?", (alarm_id,)
            ).fetchone()
        return self._row_to_alarm(row) if row is not None else None

    def get_alarm(self, alarm_id: str) -> Alarm:
        """Get an alarm by ID. Raises NotFound if absent."""
        alarm = self.find_alarm(alarm_id)
        if alarm is None:
            raise NotFound("Alarm", alarm_id)
        return alarm

    def pending_alarm_for(self, record_id: str) -> Optional[Alarm]:
        """The pending alarm for a record, if any."""
        with self._reading() as conn:
            row = conn.execute(f"""
                SELECT {_ALARM_COLUMNS} FROM alarms
                WHERE record_id = ? AND status = 'pending'
            """, (record_id,)).fetchone()
        return self._row_to_alarm(row) if row is not None else None

    def list_alarms(
        self,
        record_id: Optional[str] = None,
        status: Optional[AlarmStatus] = None,
    ) -> list[Alarm]:
        """
        List alarms ordered by fire time.

        Args:
            record_id: Only alarms for this record
            status: Only alarms in this status
        """
        clauses = []
        params: list[str] = []
        if record_id is not None:
            clauses.append("record_id = ?")
            params.append(record_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(AlarmStatus(status).value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._reading() as conn:
            rows = conn.execute(f"""
                SELECT {_ALARM_COLUMNS} FROM alarms
                {where}
                ORDER BY fire_at, created_at
            """, params).fetchall()
        return [self._row_to_alarm(row) for row in rows]

    def transition_alarm(
        self,
        alarm_id: str,
        from_status: AlarmStatus,
        to_status: AlarmStatus,
        resolved_at: Optional[datetime] = None,
    ) -> Optional[Alarm]:
        """
        Move an alarm from one status to another if it is still in from_status.

        The update is conditional, so of two racing writers only the first
        succeeds; the second gets None and observes the new status.

        Returns:
            The updated Alarm, or None if the alarm was missing or no longer
            in from_status.
        """
        resolved = resolved_at or utc_now()
        with self._transaction() as conn:
            changed = conn.execute("""
                UPDATE alarms
                SET status = ?, resolved_at = ?
                WHERE id = ? AND status = ?
            """, (
                AlarmStatus(to_status).value,
                format_utc(resolved) if to_status is not AlarmStatus.PENDING else None,
                alarm_id,
                AlarmStatus(from_status).value,
            )).rowcount
            if not changed:
                return None
            row = conn.execute(
                f"SELECT {_ALARM_COLUMNS} FROM alarms WHERE id = ?", (alarm_id,)
            ).fetchone()
        return self._row_to_alarm(row)

    def set_alarm_error(self, alarm_id: str, error: Optional[str]) -> bool:
        """Record (or clear, with None) the last scheduling error of an alarm."""
        with self._transaction() as conn:
            changed = conn.execute("""
                UPDATE alarms SET last_error = ? WHERE id = ?
            """, (error, alarm_id)).rowcount
        return changed > 0

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __del__(self):
        if getattr(self, "_conn", None) is not None:
            self.close()
