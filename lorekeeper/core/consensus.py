"""
Competing candidate values for contested slots, and the votes that rank them.

A slot is one source sentence paired with one target language. Candidates
accumulate; none replaces another. Each voter holds exactly one unit of
influence per candidate, and a candidate's tally is recomputed from the vote
records after every vote write.
"""

import uuid
from datetime import datetime
from typing import Callable, List, Optional

from util.logging import logger

from ..api.schemas import CandidateRequest, ResolveModeRequest, VoteRequest, validate_request
from .config import is_self_vote_allowed
from .errors import InvalidInputError, NotFoundError, SelfVoteError
from .events import EventLog
from .locks import KeyedLocks, retry_on_conflict
from .records import DuplicateRecordError, IRecordStore, RevisionConflictError
from .schema import (
    MODE_COMMUNITY,
    MODE_OFFICIAL,
    TIER_COMMUNITY,
    TIER_OFFICIAL,
    Candidate,
    Slot,
    Vote,
)

SLOTS = "slots"
CANDIDATES = "candidates"
VOTES = "votes"


def make_slot_id(source_id: str, language: str) -> str:
    """Slot id for one source sentence in one target language."""
    return f"{source_id}/{language}"


def make_vote_id(candidate_id: str, voter_id: str) -> str:
    return f"{candidate_id}:{voter_id}"


def filter_by_mode(candidates: List[Candidate], mode: str) -> List[Candidate]:
    if mode == MODE_OFFICIAL:
        return [c for c in candidates if c.trust_tier == TIER_OFFICIAL]
    if mode == MODE_COMMUNITY:
        return [c for c in candidates if c.trust_tier != TIER_OFFICIAL]
    return list(candidates)


def rank_candidates(candidates: List[Candidate]) -> List[Candidate]:
    """Highest net score first; ties go to the earliest submission."""
    return sorted(candidates, key=lambda c: (-c.score, c.created_at, c.sequence))


class ConsensusPool:
    """Owns candidates per slot, tallies votes, and picks the best candidate."""

    def __init__(self, store: IRecordStore, clock: Callable[[], datetime] = datetime.now,
                 events: Optional[EventLog] = None, locks: Optional[KeyedLocks] = None,
                 max_retries: Optional[int] = None, allow_self_vote: Optional[bool] = None):
        self._store = store
        self._clock = clock
        self._events = events or EventLog(store, clock)
        self._locks = locks or KeyedLocks()
        self._max_retries = max_retries
        self._allow_self_vote = allow_self_vote if allow_self_vote is not None else is_self_vote_allowed()

    def submit_candidate(self, slot_id: str, text: str, contributor_id: str, trust_tier: str,
                         scope: Optional[str] = None) -> Candidate:
        """Add a candidate to slot; the same text from the same contributor is not duplicated."""
        request = validate_request(
            CandidateRequest,
            slot_id=slot_id,
            text=text,
            contributor_id=contributor_id,
            trust_tier=trust_tier,
            scope=scope
        )

        with self._locks.hold(self._slot_lock(request.slot_id)):
            existing = self._find_duplicate(request.slot_id, request.contributor_id, request.text)
            if existing is not None:
                logger.debug(f"Candidate resubmitted unchanged in slot {request.slot_id}: {existing.id}")
                return existing

            candidate = retry_on_conflict(
                lambda: self._append_candidate(
                    request.slot_id, request.text, request.contributor_id, request.trust_tier, request.scope
                ),
                self._max_retries,
                label=f"submit_candidate {request.slot_id}"
            )

        logger.log_operation("consensus.candidate_submitted", "success", {
            "candidate_id": candidate.id,
            "slot_id": candidate.slot_id,
            "trust_tier": candidate.trust_tier
        })
        self._events.record(self._slot_scope(candidate.slot_id), candidate.contributor_id, "consensus_candidate_submitted", {
            "candidate_id": candidate.id,
            "slot_id": candidate.slot_id,
            "trust_tier": candidate.trust_tier
        })
        return candidate

    def derive_candidate(self, original_id: str, text: str, contributor_id: str,
                         source_suggestion_id: Optional[str] = None) -> Candidate:
        """Seed a new community candidate from an accepted improvement of original_id.

        The original candidate and its votes are left untouched.
        """
        original = self.get_candidate(original_id)

        with self._locks.hold(self._slot_lock(original.slot_id)):
            existing = self._find_duplicate(original.slot_id, contributor_id, text)
            if existing is not None:
                return existing

            candidate = retry_on_conflict(
                lambda: self._append_candidate(
                    original.slot_id, text, contributor_id, TIER_COMMUNITY, None,
                    derived_from=original.id, source_suggestion_id=source_suggestion_id
                ),
                self._max_retries,
                label=f"derive_candidate {original.slot_id}"
            )

        logger.log_operation("consensus.candidate_derived", "success", {
            "candidate_id": candidate.id,
            "derived_from": original.id,
            "suggestion_id": source_suggestion_id
        })
        self._events.record(self._slot_scope(candidate.slot_id), contributor_id, "consensus_candidate_derived", {
            "candidate_id": candidate.id,
            "derived_from": original.id,
            "suggestion_id": source_suggestion_id
        })
        return candidate

    def vote(self, candidate_id: str, voter_id: str, direction: int) -> Candidate:
        """Cast or change a vote; returns the candidate with its recomputed tally."""
        request = validate_request(VoteRequest, candidate_id=candidate_id, voter_id=voter_id, direction=direction)
        candidate = self.get_candidate(request.candidate_id)

        if candidate.contributor_id == request.voter_id and not self._allow_self_vote:
            raise SelfVoteError("Contributors cannot vote on their own candidates")

        with self._locks.hold(self._slot_lock(candidate.slot_id)):
            changed = retry_on_conflict(
                lambda: self._write_vote(candidate.id, request.voter_id, request.direction),
                self._max_retries,
                label=f"vote {candidate.id}"
            )
            # Always re-tally so a retried request repairs a tally left stale by an earlier failure
            candidate = retry_on_conflict(
                lambda: self._retally(candidate.id), self._max_retries, label=f"tally {candidate.id}"
            )

        if changed:
            logger.log_vote(candidate.id, request.voter_id, request.direction, candidate.score)
            self._events.record(self._slot_scope(candidate.slot_id), request.voter_id, "consensus_vote_cast", {
                "candidate_id": candidate.id,
                "direction": request.direction,
                "score": candidate.score
            })
        return candidate

    def retract_vote(self, candidate_id: str, voter_id: str) -> Candidate:
        """Withdraw a voter's influence on a candidate; no-op if there is none."""
        if not voter_id or not voter_id.strip():
            raise InvalidInputError("voter_id cannot be empty")
        candidate = self.get_candidate(candidate_id)
        vote_id = make_vote_id(candidate.id, voter_id)

        def write():
            stored = self._store.get(VOTES, vote_id)
            if stored is None or not stored.data["active"]:
                return False
            vote = Vote.from_dict(stored.data)
            vote.active = False
            vote.updated_at = self._clock()
            self._store.compare_and_set(VOTES, vote_id, vote.to_dict(), stored.revision)
            return True

        with self._locks.hold(self._slot_lock(candidate.slot_id)):
            changed = retry_on_conflict(write, self._max_retries, label=f"retract_vote {candidate.id}")
            candidate = retry_on_conflict(
                lambda: self._retally(candidate.id), self._max_retries, label=f"tally {candidate.id}"
            )

        if changed:
            logger.log_vote(candidate.id, voter_id, 0, candidate.score)
            self._events.record(self._slot_scope(candidate.slot_id), voter_id, "consensus_vote_retracted", {
                "candidate_id": candidate.id,
                "score": candidate.score
            })
        return candidate

    def resolve_best(self, slot_id: str, mode: str) -> Optional[Candidate]:
        """Best candidate of slot under mode, or None when nothing qualifies."""
        request = validate_request(ResolveModeRequest, slot_id=slot_id, mode=mode)
        ranked = self.list_candidates(request.slot_id, request.mode)
        return ranked[0] if ranked else None

    def list_candidates(self, slot_id: str, mode: str = "auto") -> List[Candidate]:
        """Candidates of slot under mode, best first."""
        request = validate_request(ResolveModeRequest, slot_id=slot_id, mode=mode)
        candidates = [Candidate.from_dict(r.data) for r in self._store.find(CANDIDATES, slot_id=request.slot_id)]
        return rank_candidates(filter_by_mode(candidates, request.mode))

    def get_candidate(self, candidate_id: str) -> Candidate:
        stored = self._store.get(CANDIDATES, candidate_id)
        if stored is None:
            raise NotFoundError(f"Candidate '{candidate_id}' not found")
        return Candidate.from_dict(stored.data)

    def get_slot(self, slot_id: str) -> Slot:
        stored = self._store.get(SLOTS, slot_id)
        if stored is None:
            raise NotFoundError(f"Slot '{slot_id}' not found")
        return Slot.from_dict(stored.data)

    def get_vote(self, candidate_id: str, voter_id: str) -> Optional[Vote]:
        """The voter's current vote on candidate, or None."""
        stored = self._store.get(VOTES, make_vote_id(candidate_id, voter_id))
        if stored is None or not stored.data["active"]:
            return None
        return Vote.from_dict(stored.data)

    # Internal helpers

    @staticmethod
    def _slot_lock(slot_id: str) -> str:
        return f"slot:{slot_id}"

    def _slot_scope(self, slot_id: str) -> Optional[str]:
        stored = self._store.get(SLOTS, slot_id)
        return stored.data.get("scope") if stored else None

    def _find_duplicate(self, slot_id: str, contributor_id: str, text: str) -> Optional[Candidate]:
        for record in self._store.find(CANDIDATES, slot_id=slot_id, contributor_id=contributor_id):
            if record.data["text"] == text:
                return Candidate.from_dict(record.data)
        return None

    def _append_candidate(self, slot_id: str, text: str, contributor_id: str, trust_tier: str,
                          scope: Optional[str], derived_from: Optional[str] = None,
                          source_suggestion_id: Optional[str] = None) -> Candidate:
        now = self._clock()
        stored = self._store.get(SLOTS, slot_id)

        if stored is None:
            slot = Slot(id=slot_id, created_at=now, scope=scope, candidate_count=1)
            try:
                self._store.insert(SLOTS, slot_id, slot.to_dict())
            except DuplicateRecordError as e:
                raise RevisionConflictError(f"Slot {slot_id} was created concurrently") from e
        else:
            slot = Slot.from_dict(stored.data)
            if scope and slot.scope and scope != slot.scope:
                raise InvalidInputError(f"Slot '{slot_id}' belongs to scope '{slot.scope}', not '{scope}'")
            if scope and not slot.scope:
                slot.scope = scope
            slot.candidate_count += 1
            self._store.compare_and_set(SLOTS, slot_id, slot.to_dict(), stored.revision)

        candidate = Candidate(
            id=str(uuid.uuid4()),
            slot_id=slot_id,
            text=text,
            contributor_id=contributor_id,
            trust_tier=trust_tier,
            created_at=now,
            sequence=slot.candidate_count,
            derived_from=derived_from,
            source_suggestion_id=source_suggestion_id
        )
        self._store.insert(CANDIDATES, candidate.id, candidate.to_dict())
        return candidate

    def _write_vote(self, candidate_id: str, voter_id: str, direction: int) -> bool:
        vote_id = make_vote_id(candidate_id, voter_id)
        stored = self._store.get(VOTES, vote_id)
        now = self._clock()

        if stored is None:
            vote = Vote(
                id=vote_id,
                candidate_id=candidate_id,
                voter_id=voter_id,
                direction=direction,
                created_at=now,
                updated_at=now
            )
            try:
                self._store.insert(VOTES, vote_id, vote.to_dict())
            except DuplicateRecordError as e:
                raise RevisionConflictError(f"Vote {vote_id} was cast concurrently") from e
            return True

        vote = Vote.from_dict(stored.data)
        if vote.active and vote.direction == direction:
            return False

        vote.direction = direction
        vote.active = True
        vote.updated_at = now
        self._store.compare_and_set(VOTES, vote_id, vote.to_dict(), stored.revision)
        return True

    def _retally(self, candidate_id: str) -> Candidate:
        stored = self._store.get(CANDIDATES, candidate_id)
        candidate = Candidate.from_dict(stored.data)

        votes = self._store.find(VOTES, candidate_id=candidate_id, active=True)
        upvotes = sum(1 for v in votes if v.data["direction"] == 1)
        downvotes = sum(1 for v in votes if v.data["direction"] == -1)

        if (candidate.upvotes, candidate.downvotes) == (upvotes, downvotes):
            return candidate

        candidate.upvotes = upvotes
        candidate.downvotes = downvotes
        candidate.score = upvotes - downvotes
        self._store.compare_and_set(CANDIDATES, candidate_id, candidate.to_dict(), stored.revision)
        return candidate
