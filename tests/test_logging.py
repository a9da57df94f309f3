"""
Structured logging and audit helper tests.
"""

import logging
from unittest.mock import patch

from util.logging import StructuredLogger, audit_event, logger, sanitize_payload


class TestSanitizePayload:
    """Test payload redaction for audit logs."""

    def test_redacts_sensitive_fields(self):
        payload = {"key": "k", "token": "abc", "nested": {"password": "pw", "ok": 1}}

        assert sanitize_payload(payload) == {
            "key": "k",
            "token": "[REDACTED]",
            "nested": {"password": "[REDACTED]", "ok": 1}
        }

    def test_reveal_sensitive(self):
        assert sanitize_payload({"secret": "s"}, reveal_sensitive=True) == {"secret": "s"}

    def test_truncates_long_strings(self):
        """Long comment or candidate text is cut to 100 characters."""
        result = sanitize_payload({"text": "x" * 150, "items": ["y" * 120]})

        assert result["text"] == "x" * 100 + "..."
        assert result["items"] == ["y" * 100 + "..."]

    def test_custom_sensitive_fields(self):
        assert sanitize_payload({"reason": "r"}, sensitive_fields=["reason"]) == {"reason": "[REDACTED]"}


class TestAuditEvent:
    """Test audit event routing."""

    def test_operation_derived_from_event_type(self):
        """Event types are grouped by component."""
        with patch.object(logger, "log_operation") as log_operation:
            audit_event("consensus_vote_cast", {"scope": "w"}, {"score": 2})
            audit_event("moderation_flags_set", {"scope": "w"})
            audit_event("scope.claimed", {"scope": "w"})

        operations = [c.args[0] for c in log_operation.call_args_list]
        assert operations == ["consensus", "moderation", "scope_claimed"]
        assert log_operation.call_args_list[0].args[2] == {"scope": "w", "payload": {"score": 2}}

    def test_payload_is_sanitized(self):
        with patch.object(logger, "log_operation") as log_operation:
            audit_event("entry_base_created", {"scope": "w"}, {"token": "t"})

        details = log_operation.call_args.args[2]
        assert details["payload"] == {"token": "[REDACTED]"}


class TestStructuredLogger:
    """Test the domain logging helpers."""

    def test_log_vote(self, caplog):
        structured = StructuredLogger("lorekeeper.test")
        with caplog.at_level(logging.INFO, logger="lorekeeper.test"):
            structured.log_vote("cand-1", "reader-1", -1, 4)

        assert "Operation: consensus.vote, Status: success" in caplog.text
        assert "'score': 4" in caplog.text

    def test_log_rejection_truncates_reason(self, caplog):
        structured = StructuredLogger("lorekeeper.test")
        with caplog.at_level(logging.INFO, logger="lorekeeper.test"):
            structured.log_rejection("suggestion.propose", "r" * 300, {"target_id": "t"})

        assert "Status: rejected" in caplog.text
        assert "r" * 101 not in caplog.text

    def test_suggestion_decision_status(self, caplog):
        structured = StructuredLogger("lorekeeper.test")
        with caplog.at_level(logging.INFO, logger="lorekeeper.test"):
            structured.log_suggestion_decision("s-1", "reject", "author-1")

        assert "suggestion.decision, Status: rejected" in caplog.text

    def test_handler_added_once(self):
        """Re-creating a logger does not duplicate output."""
        StructuredLogger("lorekeeper.once")
        StructuredLogger("lorekeeper.once")

        assert len(logging.getLogger("lorekeeper.once").handlers) == 1
