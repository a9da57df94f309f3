"""
Request models for the core's write operations.
Every write is validated here before anything touches the record store.
"""

import json
from typing import Any, Dict, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError, field_validator, model_validator

from ..core.config import POSITION_LATEST
from ..core.errors import InvalidInputError, InvalidRangeError
from ..core.schema import DECISIONS, RESOLUTION_MODES, TRUST_TIERS

RANGE_FIELDS = {"effective_from", "effective_until", "position"}

M = TypeVar("M", bound=BaseModel)


def _require_text(value: str, name: str) -> str:
    if not value or not value.strip():
        raise ValueError(f'{name} cannot be empty')
    return value


class EntryBaseRequest(BaseModel):
    scope: str
    key: str
    payload: Dict[str, Any]
    author_id: str

    @field_validator('scope')
    @classmethod
    def scope_must_not_be_empty(cls, v):
        return _require_text(v, 'scope')

    @field_validator('key')
    @classmethod
    def key_must_not_be_empty(cls, v):
        _require_text(v, 'key')
        return v.strip()

    @field_validator('author_id')
    @classmethod
    def author_must_not_be_empty(cls, v):
        return _require_text(v, 'author_id')

    @field_validator('payload')
    @classmethod
    def payload_must_be_json(cls, v):
        try:
            json.dumps(v)
        except (TypeError, ValueError) as e:
            raise ValueError(f'payload must be JSON-serializable: {e}')
        return v


class EntryVersionRequest(EntryBaseRequest):
    effective_from: int
    effective_until: Optional[int] = None
    note: str = ""

    @field_validator('payload')
    @classmethod
    def payload_must_not_be_empty(cls, v):
        if not v:
            raise ValueError('payload cannot be empty')
        return v

    @field_validator('effective_from')
    @classmethod
    def effective_from_in_range(cls, v):
        if v < 1:
            raise ValueError('effective_from must be >= 1')
        if v >= POSITION_LATEST:
            raise ValueError(f'effective_from must be < {POSITION_LATEST}')
        return v

    @field_validator('effective_until')
    @classmethod
    def effective_until_below_latest(cls, v):
        if v is not None and v >= POSITION_LATEST:
            raise ValueError(f'effective_until must be < {POSITION_LATEST}')
        return v

    @model_validator(mode='after')
    def until_must_not_precede_from(self):
        if self.effective_until is not None and self.effective_until < self.effective_from:
            raise ValueError('effective_until must be >= effective_from')
        return self


class PositionRequest(BaseModel):
    position: int

    @field_validator('position')
    @classmethod
    def position_must_not_be_negative(cls, v):
        if v < 0:
            raise ValueError('position must be >= 0')
        return v


class CandidateRequest(BaseModel):
    slot_id: str
    text: str
    contributor_id: str
    trust_tier: str
    scope: Optional[str] = None

    @field_validator('slot_id')
    @classmethod
    def slot_must_not_be_empty(cls, v):
        return _require_text(v, 'slot_id')

    @field_validator('text')
    @classmethod
    def text_must_not_be_empty(cls, v):
        return _require_text(v, 'text')

    @field_validator('contributor_id')
    @classmethod
    def contributor_must_not_be_empty(cls, v):
        return _require_text(v, 'contributor_id')

    @field_validator('trust_tier')
    @classmethod
    def trust_tier_must_be_valid(cls, v):
        if v not in TRUST_TIERS:
            raise ValueError(f'trust_tier must be one of: {list(TRUST_TIERS)}')
        return v


class VoteRequest(BaseModel):
    candidate_id: str
    voter_id: str
    direction: int

    @field_validator('voter_id')
    @classmethod
    def voter_must_not_be_empty(cls, v):
        return _require_text(v, 'voter_id')

    @field_validator('direction')
    @classmethod
    def direction_must_be_unit(cls, v):
        if v not in (1, -1):
            raise ValueError('direction must be +1 or -1')
        return v


class ResolveModeRequest(BaseModel):
    slot_id: str
    mode: str

    @field_validator('mode')
    @classmethod
    def mode_must_be_valid(cls, v):
        if v not in RESOLUTION_MODES:
            raise ValueError(f'mode must be one of: {list(RESOLUTION_MODES)}')
        return v


class SuggestionRequest(BaseModel):
    target_id: str
    proposed_text: str
    proposer_id: str
    reason: Optional[str] = None
    field: Optional[str] = None

    @field_validator('target_id')
    @classmethod
    def target_must_not_be_empty(cls, v):
        return _require_text(v, 'target_id')

    @field_validator('proposed_text')
    @classmethod
    def proposed_text_must_not_be_empty(cls, v):
        return _require_text(v, 'proposed_text')

    @field_validator('proposer_id')
    @classmethod
    def proposer_must_not_be_empty(cls, v):
        return _require_text(v, 'proposer_id')


class DecisionRequest(BaseModel):
    suggestion_id: str
    resolver_id: str
    decision: str

    @field_validator('resolver_id')
    @classmethod
    def resolver_must_not_be_empty(cls, v):
        return _require_text(v, 'resolver_id')

    @field_validator('decision')
    @classmethod
    def decision_must_be_valid(cls, v):
        if v not in DECISIONS:
            raise ValueError(f'decision must be one of: {list(DECISIONS)}')
        return v


class CommentRequest(BaseModel):
    author_id: str
    text: str
    parent_id: Optional[str] = None
    scope: Optional[str] = None
    section_id: Optional[str] = None

    @field_validator('author_id')
    @classmethod
    def author_must_not_be_empty(cls, v):
        return _require_text(v, 'author_id')

    @field_validator('text')
    @classmethod
    def text_must_not_be_empty(cls, v):
        _require_text(v, 'text')
        return v.strip()

    @model_validator(mode='after')
    def top_level_needs_scope(self):
        if self.parent_id is None and not self.scope:
            raise ValueError('scope is required for a top-level comment')
        return self


class ModerationFlagsRequest(BaseModel):
    comment_id: str
    moderator_id: str
    pinned: Optional[bool] = None
    hidden: Optional[bool] = None

    @field_validator('moderator_id')
    @classmethod
    def moderator_must_not_be_empty(cls, v):
        return _require_text(v, 'moderator_id')

    @model_validator(mode='after')
    def at_least_one_flag(self):
        if self.pinned is None and self.hidden is None:
            raise ValueError('pinned or hidden must be provided')
        return self


def validate_request(model: Type[M], **fields: Any) -> M:
    """Build a request model, translating validation failures into core errors."""
    try:
        return model(**fields)
    except ValidationError as e:
        errors = e.errors()
        message = "; ".join(
            f"{'.'.join(str(part) for part in err['loc']) or 'request'}: {err['msg']}" for err in errors
        )
        if any(err['loc'] and err['loc'][0] in RANGE_FIELDS for err in errors):
            raise InvalidRangeError(message) from e
        if any(not err['loc'] and 'effective_until' in err['msg'] for err in errors):
            raise InvalidRangeError(message) from e
        raise InvalidInputError(message) from e
