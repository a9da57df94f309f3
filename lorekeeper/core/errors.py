"""
Error types raised by the annotation core.
Every failure is per-request and recoverable; nothing here is process-fatal.
"""


class LorekeeperError(Exception):
    """Base class for all core errors."""


# Validation - rejected before any mutation

class InvalidInputError(LorekeeperError, ValueError):
    """Malformed or missing input."""


class InvalidRangeError(InvalidInputError):
    """A narrative position or effective range is out of bounds."""


class IdenticalValueError(InvalidInputError):
    """A suggestion repeats the value it is meant to improve."""


class DuplicateVersionError(InvalidInputError):
    """An identical version overlay already exists for this entry."""


class DuplicateSuggestionError(InvalidInputError):
    """The same proposer already has this text pending against the target."""


class SelfSuggestionError(InvalidInputError):
    """The target's own authority cannot propose changes to it."""


class DepthExceededError(InvalidInputError):
    """A reply would nest deeper than the thread allows."""


# Lookup / authorization

class NotFoundError(LorekeeperError, LookupError):
    """The record does not exist or is not visible to the caller."""


class AuthorizationError(LorekeeperError, PermissionError):
    """The caller is not allowed to perform this write."""


class SelfVoteError(AuthorizationError):
    """Contributors may not vote on their own candidates."""


# State machine

class StateError(LorekeeperError):
    """The record is in a state that forbids the operation."""


class AlreadyResolvedError(StateError):
    """The suggestion has already been approved or rejected."""


class EditWindowExpiredError(StateError):
    """The one-shot edit right was used or has lapsed."""


# Concurrency

class RetryableConflictError(LorekeeperError):
    """Concurrent writers kept colliding; the caller may retry the request."""
