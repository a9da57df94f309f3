"""
Record types shared by the entry store, consensus pool, suggestion workflow
and moderation gate. Payloads are opaque JSON-compatible dicts.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, ClassVar, Dict, List, Optional, Tuple

# Trust tiers of contributors
TIER_COMMUNITY = "community"
TIER_TRUSTED = "trusted"
TIER_OFFICIAL = "official"
TRUST_TIERS = (TIER_COMMUNITY, TIER_TRUSTED, TIER_OFFICIAL)

# Consensus selection modes
MODE_AUTO = "auto"
MODE_COMMUNITY = "community"
MODE_OFFICIAL = "official"
RESOLUTION_MODES = (MODE_AUTO, MODE_COMMUNITY, MODE_OFFICIAL)

# Suggestion lifecycle
STATUS_PENDING = "pending"
STATUS_APPROVED = "approved"
STATUS_REJECTED = "rejected"
SUGGESTION_STATUSES = (STATUS_PENDING, STATUS_APPROVED, STATUS_REJECTED)

DECISION_APPROVE = "approve"
DECISION_REJECT = "reject"
DECISIONS = (DECISION_APPROVE, DECISION_REJECT)

TARGET_CANDIDATE = "candidate"
TARGET_ENTRY = "entry"


class RecordMixin:
    """to_dict/from_dict with ISO datetimes, for storage round trips."""

    _datetime_fields: ClassVar[Tuple[str, ...]] = ()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage."""
        data = asdict(self)
        for name in self._datetime_fields:
            if data.get(name) is not None:
                data[name] = data[name].isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        """Create from dictionary (for loading from storage)."""
        data = dict(data)
        for name in cls._datetime_fields:
            if data.get(name) is not None:
                data[name] = datetime.fromisoformat(data[name])
        return cls(**data)


@dataclass
class ScopeOwner(RecordMixin):
    scope: str
    owner_id: str
    created_at: datetime

    _datetime_fields: ClassVar[Tuple[str, ...]] = ("created_at",)


@dataclass
class Entry(RecordMixin):
    """Base record of a glossary term or character profile."""

    id: str
    scope: str
    key: str  # display casing from first creation
    payload: Dict[str, Any]
    created_at: datetime
    updated_at: datetime
    version_count: int = 0

    _datetime_fields: ClassVar[Tuple[str, ...]] = ("created_at", "updated_at")


@dataclass
class EntryVersion(RecordMixin):
    """Append-only partial overlay that takes effect at a narrative position."""

    id: str
    entry_id: str
    scope: str
    key: str
    payload: Dict[str, Any]
    effective_from: int
    sequence: int
    created_at: datetime
    note: str = ""
    effective_until: Optional[int] = None

    _datetime_fields: ClassVar[Tuple[str, ...]] = ("created_at",)

    def covers(self, position: int, ignore_until: bool = False) -> bool:
        """Check whether this version is in effect at position."""
        if self.effective_from > position:
            return False
        if ignore_until or self.effective_until is None:
            return True
        return position <= self.effective_until


@dataclass
class ResolvedEntry:
    """An entry's value as seen from one narrative position."""

    scope: str
    key: str
    position: int
    payload: Dict[str, Any]
    version_id: Optional[str] = None
    effective_from: Optional[int] = None


@dataclass
class Slot(RecordMixin):
    """A contested unit: one source sentence in one target language."""

    id: str
    created_at: datetime
    scope: Optional[str] = None
    candidate_count: int = 0

    _datetime_fields: ClassVar[Tuple[str, ...]] = ("created_at",)


@dataclass
class Candidate(RecordMixin):
    id: str
    slot_id: str
    text: str
    contributor_id: str
    trust_tier: str
    created_at: datetime
    sequence: int
    upvotes: int = 0
    downvotes: int = 0
    score: int = 0
    derived_from: Optional[str] = None
    source_suggestion_id: Optional[str] = None

    _datetime_fields: ClassVar[Tuple[str, ...]] = ("created_at",)


@dataclass
class Vote(RecordMixin):
    id: str
    candidate_id: str
    voter_id: str
    direction: int
    created_at: datetime
    updated_at: datetime
    active: bool = True

    _datetime_fields: ClassVar[Tuple[str, ...]] = ("created_at", "updated_at")


@dataclass
class Suggestion(RecordMixin):
    id: str
    target_id: str
    target_kind: str  # candidate|entry
    scope: Optional[str]
    proposed_text: str
    original_text: str
    proposer_id: str
    status: str
    created_at: datetime
    reason: Optional[str] = None
    field: Optional[str] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    result_candidate_id: Optional[str] = None

    _datetime_fields: ClassVar[Tuple[str, ...]] = ("created_at", "reviewed_at")


@dataclass
class Comment(RecordMixin):
    id: str
    scope: str
    author_id: str
    text: str
    created_at: datetime
    depth: int
    root_id: str
    parent_id: Optional[str] = None
    section_id: Optional[str] = None
    reply_to_id: Optional[str] = None
    edited: bool = False
    edited_at: Optional[datetime] = None
    pinned: bool = False
    hidden: bool = False
    resolved: bool = False
    resolved_by: Optional[str] = None
    like_count: int = 0

    _datetime_fields: ClassVar[Tuple[str, ...]] = ("created_at", "edited_at")

    @property
    def is_top_level(self) -> bool:
        return self.parent_id is None


@dataclass
class CommentThread:
    """A top-level comment with its visible replies."""

    comment: Comment
    replies: List[Comment] = field(default_factory=list)
    reply_count: int = 0


@dataclass
class AuditEvent(RecordMixin):
    id: str
    scope: Optional[str]
    actor: str
    action: str
    payload: Dict[str, Any]
    ts: datetime

    _datetime_fields: ClassVar[Tuple[str, ...]] = ("ts",)


@dataclass
class CommentLike(RecordMixin):
    id: str
    comment_id: str
    user_id: str
    created_at: datetime
    updated_at: datetime
    active: bool = True

    _datetime_fields: ClassVar[Tuple[str, ...]] = ("created_at", "updated_at")
