"""
Improvement proposals against an accepted value.

A suggestion targets either a Candidate (translation refinement) or one field
of an Entry (edit suggestion). It starts pending and is approved or rejected
exactly once by the authority over its target.
"""

import uuid
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from util.logging import logger

from ..api.schemas import DecisionRequest, SuggestionRequest, validate_request
from .config import POSITION_LATEST
from .consensus import ConsensusPool
from .entries import ENTRIES, VersionedEntryStore
from .errors import (
    AlreadyResolvedError,
    AuthorizationError,
    DuplicateSuggestionError,
    IdenticalValueError,
    InvalidInputError,
    NotFoundError,
    SelfSuggestionError,
)
from .events import EventLog
from .locks import KeyedLocks, retry_on_conflict
from .records import IRecordStore
from .schema import (
    DECISION_APPROVE,
    STATUS_APPROVED,
    STATUS_PENDING,
    STATUS_REJECTED,
    SUGGESTION_STATUSES,
    TARGET_CANDIDATE,
    TARGET_ENTRY,
    Entry,
    Suggestion,
)
from .scopes import ScopeRegistry

SUGGESTIONS = "suggestions"


class SuggestionWorkflow:
    """Pending -> approved/rejected lifecycle with a single authorized resolver."""

    def __init__(self, store: IRecordStore, scopes: ScopeRegistry, entries: VersionedEntryStore,
                 pool: ConsensusPool, clock: Callable[[], datetime] = datetime.now,
                 events: Optional[EventLog] = None, locks: Optional[KeyedLocks] = None,
                 max_retries: Optional[int] = None):
        self._store = store
        self._scopes = scopes
        self._entries = entries
        self._pool = pool
        self._clock = clock
        self._events = events or EventLog(store, clock)
        self._locks = locks or KeyedLocks()
        self._max_retries = max_retries

    def propose(self, target_id: str, proposed_text: str, proposer_id: str,
                reason: Optional[str] = None, field: Optional[str] = None) -> Suggestion:
        """
        Create a pending suggestion.

        Everything is checked before the record is written: the proposed text
        must differ from the target's current value, the proposer must not be
        the target's authority, and the same proposer may not have the same
        text pending against the target already.
        """
        request = validate_request(
            SuggestionRequest,
            target_id=target_id,
            proposed_text=proposed_text,
            proposer_id=proposer_id,
            reason=reason,
            field=field
        )
        text = request.proposed_text.strip()
        kind, scope, authority, current = self._describe_target(request.target_id, request.field)

        try:
            if authority is not None and authority == request.proposer_id:
                raise SelfSuggestionError("The authority over a value cannot suggest changes to it")
            if text == current.strip():
                raise IdenticalValueError("Proposed text is identical to the current value")

            with self._locks.hold(f"suggestions:{request.target_id}"):
                pending = self._store.find(
                    SUGGESTIONS,
                    target_id=request.target_id,
                    proposer_id=request.proposer_id,
                    status=STATUS_PENDING
                )
                if any(r.data["proposed_text"] == text and r.data["field"] == request.field for r in pending):
                    raise DuplicateSuggestionError("An identical suggestion is already pending")

                suggestion = Suggestion(
                    id=str(uuid.uuid4()),
                    target_id=request.target_id,
                    target_kind=kind,
                    scope=scope,
                    proposed_text=text,
                    original_text=current,
                    proposer_id=request.proposer_id,
                    status=STATUS_PENDING,
                    created_at=self._clock(),
                    reason=request.reason,
                    field=request.field
                )
                self._store.insert(SUGGESTIONS, suggestion.id, suggestion.to_dict())
        except (SelfSuggestionError, IdenticalValueError, DuplicateSuggestionError) as e:
            logger.log_rejection("suggestion.propose", str(e), {"target_id": request.target_id})
            raise

        logger.log_suggestion_created(suggestion.id, suggestion.target_id, suggestion.proposer_id)
        self._events.record(scope, request.proposer_id, "suggestion_created", {
            "suggestion_id": suggestion.id,
            "target_id": suggestion.target_id,
            "target_kind": kind
        })
        return suggestion

    def resolve(self, suggestion_id: str, resolver_id: str, decision: str) -> Suggestion:
        """Approve or reject a pending suggestion."""
        request = validate_request(
            DecisionRequest, suggestion_id=suggestion_id, resolver_id=resolver_id, decision=decision
        )
        suggestion = self.get_suggestion(request.suggestion_id)

        if self._authority_for(suggestion) != request.resolver_id:
            raise AuthorizationError("Only the owner of the target may resolve this suggestion")

        def write_status():
            stored = self._store.get(SUGGESTIONS, suggestion.id)
            current = Suggestion.from_dict(stored.data)
            if current.status != STATUS_PENDING:
                raise AlreadyResolvedError(f"Suggestion {current.id} is already {current.status}")

            current.status = STATUS_APPROVED if request.decision == DECISION_APPROVE else STATUS_REJECTED
            current.reviewed_by = request.resolver_id
            current.reviewed_at = self._clock()
            self._store.compare_and_set(SUGGESTIONS, current.id, current.to_dict(), stored.revision)
            return current

        def link_result(candidate_id: str):
            stored = self._store.get(SUGGESTIONS, suggestion.id)
            current = Suggestion.from_dict(stored.data)
            if current.result_candidate_id == candidate_id:
                return current
            current.result_candidate_id = candidate_id
            self._store.compare_and_set(SUGGESTIONS, current.id, current.to_dict(), stored.revision)
            return current

        with self._locks.hold(f"suggestion:{suggestion.id}"):
            # The decision is committed before any candidate exists, so a lost race writes nothing else
            resolved = retry_on_conflict(write_status, self._max_retries, label=f"resolve_suggestion {suggestion.id}")

            if resolved.status == STATUS_APPROVED and resolved.target_kind == TARGET_CANDIDATE:
                # Seed a new candidate; the original keeps its votes
                derived = self._pool.derive_candidate(
                    resolved.target_id, resolved.proposed_text, resolved.proposer_id,
                    source_suggestion_id=resolved.id
                )
                resolved = retry_on_conflict(
                    lambda: link_result(derived.id), self._max_retries, label=f"link_suggestion {suggestion.id}"
                )

        logger.log_suggestion_decision(resolved.id, request.decision, request.resolver_id, resolved.reason or "")
        self._events.record(resolved.scope, request.resolver_id, f"suggestion_{resolved.status}", {
            "suggestion_id": resolved.id,
            "target_id": resolved.target_id,
            "result_candidate_id": resolved.result_candidate_id
        })
        return resolved

    def get_suggestion(self, suggestion_id: str) -> Suggestion:
        stored = self._store.get(SUGGESTIONS, suggestion_id)
        if stored is None:
            raise NotFoundError(f"Suggestion '{suggestion_id}' not found")
        return Suggestion.from_dict(stored.data)

    def list_suggestions(self, target_id: str, status: Optional[str] = None) -> List[Suggestion]:
        """Suggestions against target, oldest first, optionally filtered by status."""
        if status is not None and status not in SUGGESTION_STATUSES:
            raise InvalidInputError(f"status must be one of: {list(SUGGESTION_STATUSES)}")

        match = {"target_id": target_id}
        if status is not None:
            match["status"] = status
        return [Suggestion.from_dict(r.data) for r in self._store.find(SUGGESTIONS, **match)]

    def pending_for_scope(self, scope: str, resolver_id: str) -> List[Suggestion]:
        """The owner's review queue for one scope."""
        self._scopes.require_owner(scope, resolver_id)
        records = self._store.find(SUGGESTIONS, scope=scope, status=STATUS_PENDING)
        return [Suggestion.from_dict(r.data) for r in records]

    # Target lookup

    def _describe_target(self, target_id: str,
                         field: Optional[str]) -> Tuple[str, Optional[str], Optional[str], str]:
        """Return (kind, scope, authority, current text) for a suggestion target."""
        stored = self._store.get(ENTRIES, target_id)
        if stored is not None:
            if not field:
                raise InvalidInputError("field is required when suggesting an entry edit")
            entry = Entry.from_dict(stored.data)
            resolved = self._entries.resolve(entry.scope, entry.key, POSITION_LATEST)
            value = resolved.payload.get(field)
            current = "" if value is None else str(value)
            return TARGET_ENTRY, entry.scope, self._owner_or_none(entry.scope), current

        if field:
            raise InvalidInputError("field only applies to entry targets")
        candidate = self._pool.get_candidate(target_id)
        scope = self._pool.get_slot(candidate.slot_id).scope
        authority = self._owner_or_none(scope) or candidate.contributor_id
        return TARGET_CANDIDATE, scope, authority, candidate.text

    def _authority_for(self, suggestion: Suggestion) -> Optional[str]:
        if suggestion.target_kind == TARGET_ENTRY:
            return self._owner_or_none(suggestion.scope)

        owner = self._owner_or_none(suggestion.scope)
        if owner is not None:
            return owner
        return self._pool.get_candidate(suggestion.target_id).contributor_id

    def _owner_or_none(self, scope: Optional[str]) -> Optional[str]:
        if not scope:
            return None
        try:
            return self._scopes.owner_of(scope)
        except NotFoundError:
            return None
