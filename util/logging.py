"""
Structured operation logging and audit helpers for the annotation core.
"""

import logging
from typing import Any, Dict, List, Optional

DEFAULT_SENSITIVE_FIELDS = ['secret', 'password', 'token']

# Contributed text (comments, candidates) is cut to this length in log lines
MAX_LOGGED_TEXT = 100

# Audit event type prefixes and the component they belong to
COMPONENT_PREFIXES = ("entry", "consensus", "suggestion", "moderation")


class StructuredLogger:
    """Structured logger for entry, consensus, suggestion and moderation operations."""

    def __init__(self, name: str = "lorekeeper"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.INFO)

        # One stream handler per named logger
        if not self.logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            ))
            self.logger.addHandler(handler)

    def log_operation(self, operation: str, status: str, details: Dict[str, Any] = None,
                      level: int = logging.INFO):
        """Log one operation as `Operation: x, Status: y, Details: {...}`."""
        parts = [f"Operation: {operation}", f"Status: {status}"]
        if details:
            parts.append(f"Details: {details}")

        self.logger.log(level, ", ".join(parts))

    def log_entry_operation(self, operation: str, scope: str, key: str, details: Dict[str, Any] = None,
                            status: str = "success"):
        """Log an entry or version write."""
        self.log_operation(f"entry.{operation}", status, {"scope": scope, "key": key, **(details or {})})

    def log_vote(self, candidate_id: str, voter_id: str, direction: int, score: int, status: str = "success"):
        """Log a vote (direction 0 for a retraction) and the resulting tally."""
        self.log_operation("consensus.vote", status, {
            "candidate_id": candidate_id,
            "voter_id": voter_id,
            "direction": direction,
            "score": score
        })

    def log_suggestion_created(self, suggestion_id: str, target_id: str, proposer_id: str):
        self.log_operation("suggestion.created", "pending", {
            "suggestion_id": suggestion_id,
            "target_id": target_id,
            "proposer_id": proposer_id
        })

    def log_suggestion_decision(self, suggestion_id: str, decision: str, resolver_id: str, reason: str = ""):
        """Log a suggestion approval or rejection."""
        status = "approved" if decision == "approve" else "rejected"
        self.log_operation("suggestion.decision", status, {
            "suggestion_id": suggestion_id,
            "decision": decision,
            "resolver_id": resolver_id,
            "reason": _truncate(reason or "")
        })

    def log_moderation_action(self, action: str, comment_id: str, actor_id: str, details: Dict[str, Any] = None):
        """Log a comment write or moderation flag change."""
        self.log_operation(f"moderation.{action}", "success",
                           {"comment_id": comment_id, "actor_id": actor_id, **(details or {})})

    def log_rejection(self, operation: str, reason: str, identifiers: Dict[str, Any] = None):
        """Log a request refused before any mutation."""
        details = dict(identifiers or {})
        details["reason"] = _truncate(reason, suffix="")
        self.log_operation(operation, "rejected", details, level=logging.WARNING)

    def info(self, message: str) -> None:
        self.logger.info(message)

    def warning(self, message: str) -> None:
        self.logger.warning(message)

    def error(self, message: str) -> None:
        self.logger.error(message)

    def debug(self, message: str) -> None:
        self.logger.debug(message)


logger = StructuredLogger()


def _truncate(text: str, suffix: str = "...") -> str:
    if len(text) <= MAX_LOGGED_TEXT:
        return text
    return text[:MAX_LOGGED_TEXT] + suffix


def audit_event(event_type: str, identifiers: Dict[str, Any], payload: Dict[str, Any] = None,
                sensitive_fields: Optional[List[str]] = None):
    """Log an audit event, redacting sensitive payload fields."""
    details = dict(identifiers or {})
    if payload:
        details["payload"] = sanitize_payload(payload, sensitive_fields=sensitive_fields)

    # Component events are grouped under their component name
    operation = next((p for p in COMPONENT_PREFIXES if event_type.startswith(p)), None)
    if operation is None:
        operation = event_type.replace(".", "_")

    logger.log_operation(operation, "audit", details)


def sanitize_payload(payload: Any, reveal_sensitive: bool = False, sensitive_fields: List[str] = None) -> Any:
    """Redact sensitive fields and shorten long strings, recursively."""
    hidden = DEFAULT_SENSITIVE_FIELDS if sensitive_fields is None else sensitive_fields

    if isinstance(payload, dict):
        return {
            k: "[REDACTED]" if (k in hidden and not reveal_sensitive)
            else sanitize_payload(v, reveal_sensitive, hidden)
            for k, v in payload.items()
        }
    if isinstance(payload, list):
        return [sanitize_payload(item, reveal_sensitive, hidden) for item in payload]
    if isinstance(payload, str):
        return _truncate(payload)
    return payload
