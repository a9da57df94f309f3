"""
Ownership of scopes (published works). The core never authenticates; it only
compares caller ids against the owner recorded here.
"""

from datetime import datetime
from typing import Callable, Optional

from util.logging import logger

from .errors import AuthorizationError, InvalidInputError, NotFoundError
from .events import EventLog
from .records import DuplicateRecordError, IRecordStore
from .schema import ScopeOwner

SCOPES = "scopes"


class ScopeRegistry:
    """Maps each scope to the content owner allowed to author and moderate it."""

    def __init__(self, store: IRecordStore, clock: Callable[[], datetime] = datetime.now,
                 events: Optional[EventLog] = None):
        self._store = store
        self._clock = clock
        self._events = events or EventLog(store, clock)

    def claim(self, scope: str, owner_id: str) -> ScopeOwner:
        """Register owner_id as the owner of scope; idempotent for the same owner."""
        if not scope or not scope.strip():
            raise InvalidInputError("scope cannot be empty")
        if not owner_id or not owner_id.strip():
            raise InvalidInputError("owner_id cannot be empty")

        record = ScopeOwner(scope=scope, owner_id=owner_id, created_at=self._clock())
        try:
            self._store.insert(SCOPES, scope, record.to_dict())
        except DuplicateRecordError:
            existing = self.get(scope)
            if existing.owner_id != owner_id:
                raise AuthorizationError(f"Scope '{scope}' is owned by another account")
            return existing

        logger.info(f"Scope '{scope}' claimed by {owner_id}")
        self._events.record(scope, owner_id, "scope_claimed", {"scope": scope})
        return record

    def get(self, scope: str) -> ScopeOwner:
        stored = self._store.get(SCOPES, scope)
        if stored is None:
            raise NotFoundError(f"Scope '{scope}' not found")
        return ScopeOwner.from_dict(stored.data)

    def owner_of(self, scope: str) -> str:
        """Get the owner id of scope."""
        return self.get(scope).owner_id

    def is_owner(self, scope: Optional[str], caller_id: Optional[str]) -> bool:
        """Check ownership without raising; unknown scopes have no owner."""
        if not scope or not caller_id:
            return False
        stored = self._store.get(SCOPES, scope)
        return stored is not None and stored.data["owner_id"] == caller_id

    def require_owner(self, scope: str, caller_id: str) -> ScopeOwner:
        """Raise unless caller_id owns scope."""
        owner = self.get(scope)
        if owner.owner_id != caller_id:
            raise AuthorizationError(f"Only the owner of '{scope}' may do this")
        return owner
