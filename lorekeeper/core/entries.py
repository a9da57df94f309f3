"""
Reference entries (glossary terms, character profiles) with chapter-scoped
version overlays.

An entry has a base payload and any number of append-only overlays. Resolving
an entry at narrative position P picks the overlay with the greatest
effective_from <= P (ties: latest created_at, then latest sequence) and merges
its fields over the base. Positions >= POSITION_LATEST mean "most current".
"""

import hashlib
import json
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from util.logging import logger

from ..api.schemas import EntryBaseRequest, EntryVersionRequest, PositionRequest, validate_request
from .config import POSITION_LATEST
from .errors import DuplicateVersionError, NotFoundError
from .events import EventLog
from .locks import KeyedLocks, retry_on_conflict
from .records import DuplicateRecordError, IRecordStore, RevisionConflictError
from .schema import Entry, EntryVersion, ResolvedEntry
from .scopes import ScopeRegistry

ENTRIES = "entries"
VERSIONS = "entry_versions"


def normalize_key(key: str) -> str:
    """Canonical form used for case-insensitive key matching."""
    return key.strip().casefold()


def make_entry_id(scope: str, key: str) -> str:
    return f"{scope}:{normalize_key(key)}"


def make_version_id(entry_id: str, effective_from: int, payload: Dict[str, Any]) -> str:
    """Deterministic id, so an identical overlay can only be stored once."""
    canonical = json.dumps([entry_id, effective_from, payload], sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:32]


def merge_payload(base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
    """Shallow merge: overlay fields win, absent or None fields fall back to base."""
    merged = dict(base)
    for name, value in overlay.items():
        if value is not None:
            merged[name] = value
    return merged


def select_version(versions: Iterable[EntryVersion], position: int) -> Optional[EntryVersion]:
    """Pick the overlay in effect at position, or None for base only."""
    latest = position >= POSITION_LATEST
    in_effect = [v for v in versions if v.covers(position, ignore_until=latest)]
    if not in_effect:
        return None
    return max(in_effect, key=lambda v: (v.effective_from, v.created_at, v.sequence))


class VersionedEntryStore:
    """Owns entries and their overlays; resolves values as of a reader's position."""

    def __init__(self, store: IRecordStore, scopes: ScopeRegistry,
                 clock: Callable[[], datetime] = datetime.now,
                 events: Optional[EventLog] = None, locks: Optional[KeyedLocks] = None,
                 max_retries: Optional[int] = None):
        self._store = store
        self._scopes = scopes
        self._clock = clock
        self._events = events or EventLog(store, clock)
        self._locks = locks or KeyedLocks()
        self._max_retries = max_retries

    def upsert_base(self, scope: str, key: str, payload: Dict[str, Any], *, author_id: str) -> Entry:
        """Create the entry or replace its base payload. Identical payloads are a no-op."""
        request = validate_request(EntryBaseRequest, scope=scope, key=key, payload=payload, author_id=author_id)
        self._scopes.require_owner(request.scope, request.author_id)
        entry_id = make_entry_id(request.scope, request.key)

        def write():
            existing = self._store.get(ENTRIES, entry_id)
            now = self._clock()

            if existing is None:
                entry = Entry(
                    id=entry_id,
                    scope=request.scope,
                    key=request.key,
                    payload=request.payload,
                    created_at=now,
                    updated_at=now
                )
                try:
                    self._store.insert(ENTRIES, entry_id, entry.to_dict())
                except DuplicateRecordError as e:
                    raise RevisionConflictError(f"{entry_id} was created concurrently") from e
                return entry, "created"

            entry = Entry.from_dict(existing.data)
            if entry.payload == request.payload:
                return entry, None

            entry.payload = request.payload
            entry.updated_at = now
            self._store.compare_and_set(ENTRIES, entry_id, entry.to_dict(), existing.revision)
            return entry, "updated"

        with self._locks.hold(entry_id):
            entry, change = retry_on_conflict(write, self._max_retries, label=f"upsert_base {entry_id}")

        if change:
            logger.log_entry_operation(f"base_{change}", entry.scope, entry.key)
            self._events.record(entry.scope, request.author_id, f"entry_base_{change}",
                                {"entry_id": entry_id, "key": entry.key})
        return entry

    def add_version(self, scope: str, key: str, payload: Dict[str, Any], effective_from: int,
                    note: str = "", *, author_id: str, effective_until: Optional[int] = None) -> EntryVersion:
        """Append an overlay that takes effect at effective_from."""
        request = validate_request(
            EntryVersionRequest,
            scope=scope,
            key=key,
            payload=payload,
            author_id=author_id,
            effective_from=effective_from,
            effective_until=effective_until,
            note=note
        )
        self._scopes.require_owner(request.scope, request.author_id)
        entry_id = make_entry_id(request.scope, request.key)
        version_id = make_version_id(entry_id, request.effective_from, request.payload)

        def write():
            existing = self._store.get(ENTRIES, entry_id)
            if existing is None:
                raise NotFoundError(f"Entry '{request.key}' not found in scope '{request.scope}'")
            if self._store.get(VERSIONS, version_id) is not None:
                raise DuplicateVersionError(
                    f"Identical version of '{request.key}' already exists at position {request.effective_from}"
                )

            # Claim the next sequence number before appending the overlay
            entry = Entry.from_dict(existing.data)
            now = self._clock()
            entry.version_count += 1
            entry.updated_at = now
            self._store.compare_and_set(ENTRIES, entry_id, entry.to_dict(), existing.revision)

            version = EntryVersion(
                id=version_id,
                entry_id=entry_id,
                scope=entry.scope,
                key=entry.key,
                payload=request.payload,
                effective_from=request.effective_from,
                effective_until=request.effective_until,
                sequence=entry.version_count,
                created_at=now,
                note=request.note
            )
            try:
                self._store.insert(VERSIONS, version_id, version.to_dict())
            except DuplicateRecordError as e:
                raise DuplicateVersionError(
                    f"Identical version of '{request.key}' already exists at position {request.effective_from}"
                ) from e
            return version

        try:
            with self._locks.hold(entry_id):
                version = retry_on_conflict(write, self._max_retries, label=f"add_version {entry_id}")
        except DuplicateVersionError as e:
            logger.log_rejection("entry.add_version", str(e), {"entry_id": entry_id})
            raise

        logger.log_entry_operation("version_added", version.scope, version.key, {
            "version_id": version.id,
            "effective_from": version.effective_from,
            "sequence": version.sequence
        })
        self._events.record(version.scope, request.author_id, "entry_version_added", {
            "entry_id": entry_id,
            "version_id": version.id,
            "effective_from": version.effective_from,
            "note": version.note
        })
        return version

    def get_entry(self, scope: str, key: str) -> Entry:
        stored = self._store.get(ENTRIES, make_entry_id(scope, key))
        if stored is None:
            raise NotFoundError(f"Entry '{key}' not found in scope '{scope}'")
        return Entry.from_dict(stored.data)

    def list_entries(self, scope: str) -> List[Entry]:
        entries = [Entry.from_dict(r.data) for r in self._store.find(ENTRIES, scope=scope)]
        return sorted(entries, key=lambda e: normalize_key(e.key))

    def list_versions(self, scope: str, key: str) -> List[EntryVersion]:
        """Full overlay history of an entry, oldest first."""
        entry = self.get_entry(scope, key)
        versions = [EntryVersion.from_dict(r.data) for r in self._store.find(VERSIONS, entry_id=entry.id)]
        return sorted(versions, key=lambda v: v.sequence)

    def resolve(self, scope: str, key: str, position: int) -> ResolvedEntry:
        """The entry's value as a reader at position sees it."""
        request = validate_request(PositionRequest, position=position)
        entry = self.get_entry(scope, key)
        versions = [EntryVersion.from_dict(r.data) for r in self._store.find(VERSIONS, entry_id=entry.id)]
        return self._resolve_one(entry, versions, request.position)

    def resolve_all(self, scope: str, position: int) -> List[ResolvedEntry]:
        """Every entry of scope resolved at one position, ordered by key."""
        request = validate_request(PositionRequest, position=position)

        by_entry: Dict[str, List[EntryVersion]] = {}
        for record in self._store.find(VERSIONS, scope=scope):
            version = EntryVersion.from_dict(record.data)
            by_entry.setdefault(version.entry_id, []).append(version)

        return [
            self._resolve_one(entry, by_entry.get(entry.id, []), request.position)
            for entry in self.list_entries(scope)
        ]

    @staticmethod
    def _resolve_one(entry: Entry, versions: List[EntryVersion], position: int) -> ResolvedEntry:
        chosen = select_version(versions, position)
        if chosen is None:
            return ResolvedEntry(scope=entry.scope, key=entry.key, position=position, payload=dict(entry.payload))

        return ResolvedEntry(
            scope=entry.scope,
            key=entry.key,
            position=position,
            payload=merge_payload(entry.payload, chosen.payload),
            version_id=chosen.id,
            effective_from=chosen.effective_from
        )
