"""
Runtime configuration for the annotation core.
Values come from the environment (a local .env file is honoured) and are
exposed as module constants plus small getter functions.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# Storage
DB_PATH = os.getenv("DB_PATH", "./data/lorekeeper.db")
STORE_BACKEND = os.getenv("STORE_BACKEND", "memory")  # memory|sqlite

DEBUG = os.getenv("DEBUG", "false").lower() == "true"

# Concurrency
CAS_MAX_RETRIES = int(os.getenv("CAS_MAX_RETRIES", "3"))
LOCK_TIMEOUT_SEC = float(os.getenv("LOCK_TIMEOUT_SEC", "5"))

# Narrative position sentinel: "most current, spoilers included"
POSITION_LATEST = 999999

# Discussion threads
EDIT_WINDOW_SEC = int(os.getenv("EDIT_WINDOW_SEC", "300"))
MAX_REPLY_DEPTH = int(os.getenv("MAX_REPLY_DEPTH", "3"))
REPLY_DEPTH_POLICY = os.getenv("REPLY_DEPTH_POLICY", "flatten")  # flatten|reject
COMMENT_MAX_LENGTH = int(os.getenv("COMMENT_MAX_LENGTH", "5000"))

# Voting
ALLOW_SELF_VOTE = os.getenv("ALLOW_SELF_VOTE", "false").lower() == "true"

# Audit trail
AUDIT_ENABLED = os.getenv("AUDIT_ENABLED", "true").lower() == "true"

VERSION = "1.0.0"


def get_record_store():
    """Get the configured record store implementation."""
    if STORE_BACKEND == "sqlite":
        from .sqlite_store import SQLiteRecordStore
        ensure_db_directory()
        return SQLiteRecordStore(DB_PATH)

    from .records import InMemoryRecordStore
    return InMemoryRecordStore()


def debug_enabled():
    """Check if debug mode is enabled."""
    return DEBUG


def ensure_db_directory():
    """Ensure the database directory exists."""
    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)


def get_cas_max_retries():
    """Get the bounded retry count for optimistic-lock conflicts."""
    return CAS_MAX_RETRIES


def get_lock_timeout():
    """Get the per-key lock acquisition timeout in seconds."""
    return LOCK_TIMEOUT_SEC


def get_edit_window():
    """Get the one-shot comment edit window in seconds."""
    return EDIT_WINDOW_SEC


def get_max_reply_depth():
    """Get the deepest nesting level a reply may occupy (root comments are depth 1)."""
    return MAX_REPLY_DEPTH


def get_comment_max_length():
    return COMMENT_MAX_LENGTH


def get_reply_depth_policy():
    """Get the reply depth policy (flatten|reject)."""
    return REPLY_DEPTH_POLICY


def is_self_vote_allowed():
    """Check whether contributors may vote on their own candidates."""
    return ALLOW_SELF_VOTE


def is_audit_enabled():
    """Check whether mutations are written to the audit trail."""
    return AUDIT_ENABLED


def validate_config():
    """Validate configuration and return any issues."""
    issues = []

    if STORE_BACKEND not in ["memory", "sqlite"]:
        issues.append(f"Invalid STORE_BACKEND: {STORE_BACKEND}")

    if REPLY_DEPTH_POLICY not in ["flatten", "reject"]:
        issues.append(f"Invalid REPLY_DEPTH_POLICY: {REPLY_DEPTH_POLICY}")

    if CAS_MAX_RETRIES < 1:
        issues.append("CAS_MAX_RETRIES must be >= 1")

    if LOCK_TIMEOUT_SEC <= 0:
        issues.append("LOCK_TIMEOUT_SEC must be > 0")

    if EDIT_WINDOW_SEC < 0:
        issues.append("EDIT_WINDOW_SEC must be >= 0")

    if MAX_REPLY_DEPTH < 2:
        issues.append("MAX_REPLY_DEPTH must be >= 2")

    if COMMENT_MAX_LENGTH < 1:
        issues.append("COMMENT_MAX_LENGTH must be >= 1")

    return issues
