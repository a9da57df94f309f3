"""
Persistence collaborator interface for the annotation core.
Keyed records with point lookups, appends and compare-and-set writes.
"""

import copy
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional


class RecordStoreError(Exception):
    """Base class for persistence failures."""


class DuplicateRecordError(RecordStoreError):
    """A record with this id already exists in the collection."""


class RevisionConflictError(RecordStoreError):
    """The record changed since it was read."""


@dataclass
class StoredRecord:
    """One persisted record and its optimistic-concurrency revision."""

    id: str
    """Record identifier, unique within its collection"""

    revision: int
    """Incremented on every successful write, starting at 1"""

    data: Dict[str, Any]
    """Record body; plain JSON-compatible values only"""


class IRecordStore(ABC):
    """Abstract interface for keyed record storage."""

    @abstractmethod
    def get(self, collection: str, record_id: str) -> Optional[StoredRecord]:
        """Fetch one record by id, or None."""
        pass

    @abstractmethod
    def find(self, collection: str, **match: Any) -> List[StoredRecord]:
        """Fetch records whose fields equal every given value, in insertion order."""
        pass

    @abstractmethod
    def insert(self, collection: str, record_id: str, data: Dict[str, Any]) -> StoredRecord:
        """Append a new record; raises DuplicateRecordError if the id is taken."""
        pass

    @abstractmethod
    def compare_and_set(self, collection: str, record_id: str, data: Dict[str, Any],
                        expected_revision: int) -> StoredRecord:
        """Replace a record only if its revision still matches."""
        pass

    def count(self, collection: str, **match: Any) -> int:
        """Count records matching the given fields."""
        return len(self.find(collection, **match))


class InMemoryRecordStore(IRecordStore):
    """Thread-safe in-memory implementation of IRecordStore."""

    def __init__(self):
        self._collections: Dict[str, Dict[str, StoredRecord]] = {}
        self._lock = threading.Lock()

    def get(self, collection: str, record_id: str) -> Optional[StoredRecord]:
        with self._lock:
            record = self._collections.get(collection, {}).get(record_id)
            return copy.deepcopy(record) if record else None

    def find(self, collection: str, **match: Any) -> List[StoredRecord]:
        with self._lock:
            records = list(self._collections.get(collection, {}).values())
            return [
                copy.deepcopy(r) for r in records
                if all(r.data.get(field) == value for field, value in match.items())
            ]

    def insert(self, collection: str, record_id: str, data: Dict[str, Any]) -> StoredRecord:
        with self._lock:
            records = self._collections.setdefault(collection, {})
            if record_id in records:
                raise DuplicateRecordError(f"{collection}/{record_id} already exists")

            record = StoredRecord(id=record_id, revision=1, data=copy.deepcopy(data))
            records[record_id] = record
            return copy.deepcopy(record)

    def compare_and_set(self, collection: str, record_id: str, data: Dict[str, Any],
                        expected_revision: int) -> StoredRecord:
        with self._lock:
            current = self._collections.get(collection, {}).get(record_id)
            if current is None:
                raise RevisionConflictError(f"{collection}/{record_id} does not exist")
            if current.revision != expected_revision:
                raise RevisionConflictError(
                    f"{collection}/{record_id} is at revision {current.revision}, expected {expected_revision}"
                )

            record = StoredRecord(id=record_id, revision=current.revision + 1, data=copy.deepcopy(data))
            self._collections[collection][record_id] = record
            return copy.deepcopy(record)
