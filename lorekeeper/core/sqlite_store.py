"""
SQLite-backed record store.
One generic table holds every collection; record bodies are JSON documents.
"""

import json
import logging
import sqlite3
from contextlib import contextmanager
from typing import Any, Dict, Generator, List, Optional

from .records import (
    DuplicateRecordError,
    IRecordStore,
    RevisionConflictError,
    StoredRecord,
)

logger = logging.getLogger(__name__)


class SQLiteRecordStore(IRecordStore):
    """Durable IRecordStore on a single SQLite file."""

    def __init__(self, db_path: str, timeout: float = 5.0):
        self.db_path = db_path
        self.timeout = timeout
        self.init_db()

    @contextmanager
    def get_db(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a SQLite database connection."""
        conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        try:
            yield conn
        finally:
            conn.close()

    def init_db(self):
        """Initialize the database with required tables."""
        with self.get_db() as conn:
            cursor = conn.cursor()

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS records (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    collection TEXT NOT NULL,
                    id TEXT NOT NULL,
                    revision INTEGER NOT NULL DEFAULT 1,
                    data TEXT NOT NULL,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    UNIQUE (collection, id)
                )
            ''')

            cursor.execute('CREATE INDEX IF NOT EXISTS idx_records_collection ON records(collection, seq)')

            conn.commit()

    def get(self, collection: str, record_id: str) -> Optional[StoredRecord]:
        with self.get_db() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT id, revision, data FROM records WHERE collection = ? AND id = ?",
                (collection, record_id)
            )
            row = cursor.fetchone()
            return self._to_record(row) if row else None

    def find(self, collection: str, **match: Any) -> List[StoredRecord]:
        clauses = ["collection = ?"]
        params: List[Any] = [collection]
        for field, value in match.items():
            if value is None:
                clauses.append("json_extract(data, ?) IS NULL")
                params.append(f"$.{field}")
            else:
                clauses.append("json_extract(data, ?) = ?")
                params.extend([f"$.{field}", value])

        with self.get_db() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"SELECT id, revision, data FROM records WHERE {' AND '.join(clauses)} ORDER BY seq",
                params
            )
            return [self._to_record(row) for row in cursor.fetchall()]

    def insert(self, collection: str, record_id: str, data: Dict[str, Any]) -> StoredRecord:
        try:
            with self.get_db() as conn:
                cursor = conn.cursor()
                cursor.execute(
                    "INSERT INTO records (collection, id, revision, data) VALUES (?, ?, 1, ?)",
                    (collection, record_id, json.dumps(data))
                )
                conn.commit()
        except sqlite3.IntegrityError as e:
            raise DuplicateRecordError(f"{collection}/{record_id} already exists") from e

        return StoredRecord(id=record_id, revision=1, data=json.loads(json.dumps(data)))

    def compare_and_set(self, collection: str, record_id: str, data: Dict[str, Any],
                        expected_revision: int) -> StoredRecord:
        with self.get_db() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "UPDATE records SET data = ?, revision = revision + 1, updated_at = CURRENT_TIMESTAMP "
                "WHERE collection = ? AND id = ? AND revision = ?",
                (json.dumps(data), collection, record_id, expected_revision)
            )
            conn.commit()

            if cursor.rowcount == 0:
                raise RevisionConflictError(
                    f"{collection}/{record_id} changed since revision {expected_revision}"
                )

        return StoredRecord(id=record_id, revision=expected_revision + 1, data=json.loads(json.dumps(data)))

    def count(self, collection: str, **match: Any) -> int:
        if match:
            return len(self.find(collection, **match))

        with self.get_db() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT COUNT(*) FROM records WHERE collection = ?", (collection,))
            result = cursor.fetchone()
            return result[0] if result else 0

    def health_check(self) -> bool:
        """Check database health."""
        try:
            with self.get_db() as conn:
                cursor = conn.cursor()
                cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='records'")
                return cursor.fetchone() is not None
        except sqlite3.Error as e:
            logger.error(f"SQLite health check failed for {self.db_path}: {e}")
            return False

    @staticmethod
    def _to_record(row) -> StoredRecord:
        record_id, revision, data = row
        return StoredRecord(id=record_id, revision=revision, data=json.loads(data))
