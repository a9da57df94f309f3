"""
Append-only audit trail of core mutations.
"""

import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from util.logging import audit_event, logger

from .config import is_audit_enabled
from .records import IRecordStore
from .schema import AuditEvent

EVENTS = "events"


class EventLog:
    """Records who changed what; history is never rewritten."""

    def __init__(self, store: IRecordStore, clock: Callable[[], datetime] = datetime.now,
                 enabled: Optional[bool] = None):
        self._store = store
        self._clock = clock
        self._enabled = enabled if enabled is not None else is_audit_enabled()

    def record(self, scope: Optional[str], actor: str, action: str,
               payload: Optional[Dict[str, Any]] = None) -> Optional[AuditEvent]:
        """Add an audit event for a completed mutation."""
        if not self._enabled:
            return None

        event = AuditEvent(
            id=str(uuid.uuid4()),
            scope=scope,
            actor=actor,
            action=action,
            payload=payload or {},
            ts=self._clock()
        )

        try:
            self._store.insert(EVENTS, event.id, event.to_dict())
        except Exception as e:
            # Audit failures never fail the mutation they describe
            logger.error(f"Failed to record audit event {action} for scope '{scope}': {e}")
            return None

        audit_event(action, {"scope": scope, "actor": actor}, payload)
        return event

    def list_events(self, scope: Optional[str] = None, limit: int = 100) -> List[AuditEvent]:
        """List recent events, newest first."""
        if limit <= 0:
            return []

        match = {"scope": scope} if scope is not None else {}
        records = self._store.find(EVENTS, **match)
        events = [AuditEvent.from_dict(r.data) for r in records]
        events.reverse()
        return events[:limit]
