"""
Threaded discussion with owner-controlled pin/hide state and a one-shot,
time-boxed self-edit right.
"""

import uuid
from datetime import datetime
from typing import Callable, List, Optional

from util.logging import logger

from ..api.schemas import CommentRequest, ModerationFlagsRequest, validate_request
from .config import get_comment_max_length, get_edit_window, get_max_reply_depth, get_reply_depth_policy
from .errors import (
    AuthorizationError,
    DepthExceededError,
    EditWindowExpiredError,
    InvalidInputError,
    NotFoundError,
)
from .events import EventLog
from .locks import KeyedLocks, retry_on_conflict
from .records import DuplicateRecordError, IRecordStore, RevisionConflictError
from .schema import Comment, CommentLike, CommentThread
from .scopes import ScopeRegistry

COMMENTS = "comments"
LIKES = "comment_likes"

POLICY_FLATTEN = "flatten"
POLICY_REJECT = "reject"

SORT_NEWEST = "newest"
SORT_OLDEST = "oldest"


class ModerationGate:
    """Owns comments, their moderation flags, and the author's single edit."""

    def __init__(self, store: IRecordStore, scopes: ScopeRegistry,
                 clock: Callable[[], datetime] = datetime.now,
                 events: Optional[EventLog] = None, locks: Optional[KeyedLocks] = None,
                 max_retries: Optional[int] = None, edit_window_sec: Optional[int] = None,
                 max_depth: Optional[int] = None, depth_policy: Optional[str] = None,
                 max_length: Optional[int] = None):
        self._store = store
        self._scopes = scopes
        self._clock = clock
        self._events = events or EventLog(store, clock)
        self._locks = locks or KeyedLocks()
        self._max_retries = max_retries
        self.edit_window_sec = edit_window_sec if edit_window_sec is not None else get_edit_window()
        self.max_depth = max_depth if max_depth is not None else get_max_reply_depth()
        self.depth_policy = depth_policy or get_reply_depth_policy()
        self.max_length = max_length if max_length is not None else get_comment_max_length()

        if self.max_depth < 2:
            raise InvalidInputError("max_depth must be >= 2")
        if self.depth_policy not in (POLICY_FLATTEN, POLICY_REJECT):
            raise InvalidInputError(f"Unknown reply depth policy: {self.depth_policy}")

    def add_comment(self, author_id: str, text: str, parent_id: Optional[str] = None,
                    scope: Optional[str] = None, section_id: Optional[str] = None) -> Comment:
        """
        Post a top-level comment (scope required) or a reply to parent_id.

        A reply that would nest deeper than max_depth is either attached to
        the thread root with reply_to_id pointing at the requested parent
        (flatten) or refused with DepthExceededError (reject).
        """
        request = validate_request(
            CommentRequest,
            author_id=author_id,
            text=text,
            parent_id=parent_id,
            scope=scope,
            section_id=section_id
        )
        self._check_length(request.text)
        comment_id = str(uuid.uuid4())

        if request.parent_id is None:
            self._scopes.get(request.scope)
            comment = Comment(
                id=comment_id,
                scope=request.scope,
                author_id=request.author_id,
                text=request.text,
                created_at=self._clock(),
                depth=1,
                root_id=comment_id,
                section_id=request.section_id
            )
        else:
            parent = self._visible_comment(request.parent_id, request.author_id)
            if request.scope and request.scope != parent.scope:
                raise InvalidInputError("A reply must stay in its parent's scope")

            attach_to, depth, reply_to_id = parent.id, parent.depth + 1, None
            if depth > self.max_depth:
                if self.depth_policy == POLICY_REJECT:
                    logger.log_rejection("moderation.add_comment", "reply depth exceeded",
                                         {"parent_id": parent.id})
                    raise DepthExceededError(f"Replies cannot nest deeper than {self.max_depth} levels")
                attach_to, depth, reply_to_id = parent.root_id, 2, parent.id

            comment = Comment(
                id=comment_id,
                scope=parent.scope,
                author_id=request.author_id,
                text=request.text,
                created_at=self._clock(),
                depth=depth,
                root_id=parent.root_id,
                parent_id=attach_to,
                section_id=parent.section_id,
                reply_to_id=reply_to_id
            )

        self._store.insert(COMMENTS, comment.id, comment.to_dict())

        logger.log_moderation_action("comment_added", comment.id, comment.author_id, {
            "scope": comment.scope,
            "depth": comment.depth
        })
        self._events.record(comment.scope, comment.author_id, "moderation_comment_added", {
            "comment_id": comment.id,
            "parent_id": comment.parent_id
        })
        return comment

    def edit(self, comment_id: str, editor_id: str, new_text: str) -> Comment:
        """Use the author's one edit, allowed only within the edit window."""
        if not new_text or not new_text.strip():
            raise InvalidInputError("text cannot be empty")
        text = new_text.strip()
        self._check_length(text)

        comment = self._visible_comment(comment_id, editor_id)
        if comment.author_id != editor_id:
            raise AuthorizationError("Only the author can edit a comment")

        def write():
            stored = self._store.get(COMMENTS, comment_id)
            current = Comment.from_dict(stored.data)
            now = self._clock()

            if current.edited:
                raise EditWindowExpiredError("Comment was already edited")
            if (now - current.created_at).total_seconds() > self.edit_window_sec:
                raise EditWindowExpiredError(f"Comments can only be edited within {self.edit_window_sec} seconds")

            current.text = text
            current.edited = True
            current.edited_at = now
            self._store.compare_and_set(COMMENTS, comment_id, current.to_dict(), stored.revision)
            return current

        try:
            with self._locks.hold(f"comment:{comment_id}"):
                comment = retry_on_conflict(write, self._max_retries, label=f"edit_comment {comment_id}")
        except EditWindowExpiredError as e:
            logger.log_rejection("moderation.edit", str(e), {"comment_id": comment_id})
            raise

        logger.log_moderation_action("comment_edited", comment.id, editor_id)
        self._events.record(comment.scope, editor_id, "moderation_comment_edited", {"comment_id": comment.id})
        return comment

    def set_moderation_flags(self, comment_id: str, moderator_id: str,
                             pinned: Optional[bool] = None, hidden: Optional[bool] = None) -> Comment:
        """Pin or hide a comment; only the scope owner may do this."""
        request = validate_request(
            ModerationFlagsRequest, comment_id=comment_id, moderator_id=moderator_id, pinned=pinned, hidden=hidden
        )
        comment = self._load(request.comment_id)

        if not self._scopes.is_owner(comment.scope, request.moderator_id):
            self._visible_comment(comment.id, request.moderator_id)
            raise AuthorizationError("Only the owner of the work can moderate comments")

        def write():
            stored = self._store.get(COMMENTS, comment.id)
            current = Comment.from_dict(stored.data)
            changes = {}
            if request.pinned is not None and request.pinned != current.pinned:
                changes["pinned"] = current.pinned = request.pinned
            if request.hidden is not None and request.hidden != current.hidden:
                changes["hidden"] = current.hidden = request.hidden
            if changes:
                self._store.compare_and_set(COMMENTS, current.id, current.to_dict(), stored.revision)
            return current, changes

        with self._locks.hold(f"comment:{comment.id}"):
            comment, changes = retry_on_conflict(write, self._max_retries, label=f"moderate {comment.id}")

        if changes:
            logger.log_moderation_action("flags_set", comment.id, request.moderator_id, changes)
            self._events.record(comment.scope, request.moderator_id, "moderation_flags_set", {
                "comment_id": comment.id,
                **changes
            })
        return comment

    def resolve_thread(self, root_comment_id: str, resolver_id: str) -> Comment:
        """Mark a top-level comment's conversation resolved."""
        root = self._visible_comment(root_comment_id, resolver_id)
        if not root.is_top_level:
            raise InvalidInputError("Only top-level comments can be resolved")
        if resolver_id != root.author_id and not self._scopes.is_owner(root.scope, resolver_id):
            raise AuthorizationError("Only the thread author or the work's owner can resolve a thread")

        def write():
            stored = self._store.get(COMMENTS, root.id)
            current = Comment.from_dict(stored.data)
            if current.resolved:
                return current, False
            current.resolved = True
            current.resolved_by = resolver_id
            self._store.compare_and_set(COMMENTS, current.id, current.to_dict(), stored.revision)
            return current, True

        with self._locks.hold(f"comment:{root.id}"):
            root, changed = retry_on_conflict(write, self._max_retries, label=f"resolve_thread {root.id}")

        if changed:
            logger.log_moderation_action("thread_resolved", root.id, resolver_id)
            self._events.record(root.scope, resolver_id, "moderation_thread_resolved", {"comment_id": root.id})
        return root

    def set_like(self, comment_id: str, user_id: str, liked: bool = True) -> Comment:
        """Like or unlike a comment; one like per user."""
        if not user_id or not user_id.strip():
            raise InvalidInputError("user_id cannot be empty")
        comment = self._visible_comment(comment_id, user_id)
        like_id = f"{comment.id}:{user_id}"

        def write_like():
            stored = self._store.get(LIKES, like_id)
            now = self._clock()
            if stored is None:
                if not liked:
                    return False
                like = CommentLike(id=like_id, comment_id=comment.id, user_id=user_id, created_at=now, updated_at=now)
                try:
                    self._store.insert(LIKES, like_id, like.to_dict())
                except DuplicateRecordError as e:
                    raise RevisionConflictError(f"Like {like_id} was written concurrently") from e
                return True

            like = CommentLike.from_dict(stored.data)
            if like.active == liked:
                return False
            like.active = liked
            like.updated_at = now
            self._store.compare_and_set(LIKES, like_id, like.to_dict(), stored.revision)
            return True

        def recount():
            stored = self._store.get(COMMENTS, comment.id)
            current = Comment.from_dict(stored.data)
            like_count = self._store.count(LIKES, comment_id=comment.id, active=True)
            if current.like_count != like_count:
                current.like_count = like_count
                self._store.compare_and_set(COMMENTS, current.id, current.to_dict(), stored.revision)
            return current

        with self._locks.hold(f"comment:{comment.id}"):
            changed = retry_on_conflict(write_like, self._max_retries, label=f"like {comment.id}")
            comment = retry_on_conflict(recount, self._max_retries, label=f"like_count {comment.id}")

        if changed:
            logger.log_moderation_action("liked" if liked else "unliked", comment.id, user_id,
                                         {"like_count": comment.like_count})
        return comment

    def get_comment(self, comment_id: str, viewer_id: Optional[str] = None) -> Comment:
        """Get a comment; hidden comments are only visible to the scope owner."""
        return self._visible_comment(comment_id, viewer_id)

    def list_threads(self, scope: str, viewer_id: Optional[str] = None, section_id: Optional[str] = None,
                     sort: str = SORT_NEWEST, limit: int = 20) -> List[CommentThread]:
        """Top-level comments of scope (pinned first) with their visible replies, oldest reply first."""
        if sort not in (SORT_NEWEST, SORT_OLDEST):
            raise InvalidInputError(f"sort must be '{SORT_NEWEST}' or '{SORT_OLDEST}'")
        if limit <= 0:
            return []

        moderator = self._scopes.is_owner(scope, viewer_id)
        match = {"scope": scope}
        if section_id is not None:
            match["section_id"] = section_id
        comments = [Comment.from_dict(r.data) for r in self._store.find(COMMENTS, **match)]
        if not moderator:
            comments = [c for c in comments if not c.hidden]

        roots = sorted((c for c in comments if c.is_top_level), key=lambda c: c.created_at,
                       reverse=(sort == SORT_NEWEST))
        roots.sort(key=lambda c: not c.pinned)

        replies_by_root = {}
        for reply in sorted((c for c in comments if not c.is_top_level), key=lambda c: c.created_at):
            replies_by_root.setdefault(reply.root_id, []).append(reply)

        threads = []
        for root in roots[:limit]:
            # Replies under a hidden comment disappear with it
            visible_ids = {root.id}
            replies = []
            for reply in replies_by_root.get(root.id, []):
                if reply.parent_id in visible_ids:
                    visible_ids.add(reply.id)
                    replies.append(reply)
            threads.append(CommentThread(comment=root, replies=replies, reply_count=len(replies)))
        return threads

    # Internal helpers

    def _check_length(self, text: str):
        if len(text) > self.max_length:
            raise InvalidInputError(f"Comment is too long (max {self.max_length} characters)")

    def _load(self, comment_id: str) -> Comment:
        stored = self._store.get(COMMENTS, comment_id)
        if stored is None:
            raise NotFoundError(f"Comment '{comment_id}' not found")
        return Comment.from_dict(stored.data)

    def _visible_comment(self, comment_id: str, viewer_id: Optional[str]) -> Comment:
        """Load a comment as viewer_id sees it; hiding a comment also hides its replies."""
        comment = self._load(comment_id)
        if self._scopes.is_owner(comment.scope, viewer_id):
            return comment

        current = comment
        while True:
            if current.hidden:
                raise NotFoundError(f"Comment '{comment_id}' not found")
            if current.parent_id is None:
                return comment
            current = self._load(current.parent_id)
