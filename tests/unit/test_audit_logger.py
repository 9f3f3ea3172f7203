"""
Unit tests for security audit logging
"""

import json
import logging

import pytest

from mcp_oauth.security.audit_logger import (
    AuditEventType, AuditOutcome, AuditEvent, SecurityAuditLogger,
    InMemoryAuditLogger, NullAuditLogger
)


class TestSecurityAuditLogger:

    def test_success_logged_at_info_as_json(self, caplog):
        audit = SecurityAuditLogger(logger_name="test_audit")
        with caplog.at_level(logging.INFO, logger="test_audit"):
            audit.log_event(AuditEventType.TOKEN_ISSUED, AuditOutcome.SUCCESS,
                            {"client_id": "c1", "scope": "read"})

        record = caplog.records[-1]
        assert record.levelno == logging.INFO
        entry = json.loads(record.getMessage())
        assert entry["event_type"] == "oauth.token.issued"
        assert entry["outcome"] == "success"
        assert entry["metadata"]["client_id"] == "c1"

    @pytest.mark.parametrize("outcome,level", [
        (AuditOutcome.DENIED, logging.WARNING),
        (AuditOutcome.ERROR, logging.ERROR),
    ])
    def test_level_by_outcome(self, caplog, outcome, level):
        audit = SecurityAuditLogger(logger_name="test_audit")
        with caplog.at_level(logging.INFO, logger="test_audit"):
            audit.log_event(AuditEventType.AUTHORIZATION_DENIED, outcome, {})
        assert caplog.records[-1].levelno == level

    def test_tokens_truncated_and_subject_hashed(self, caplog):
        audit = SecurityAuditLogger(logger_name="test_audit", hash_salt="salt")
        token = "abcdefghijklmnopqrstuvwxyz"
        with caplog.at_level(logging.INFO, logger="test_audit"):
            audit.log_event(AuditEventType.TOKEN_VALIDATION_FAILED, "denied",
                            {"token": token, "subject": "alice@example.com"})

        message = caplog.records[-1].getMessage()
        assert token not in message
        assert "alice@example.com" not in message
        entry = json.loads(message)
        assert entry["metadata"]["token"] == "abcdefgh..."
        assert entry["metadata"]["subject"] == audit._hash_value("alice@example.com")

    def test_invalid_outcome_rejected(self):
        audit = SecurityAuditLogger(logger_name="test_audit")
        with pytest.raises(ValueError):
            audit.log_event(AuditEventType.TOKEN_ISSUED, "maybe", {})


class TestAuditEvent:

    def test_event_type_normalized(self):
        event = AuditEvent(event_type=AuditEventType.TOKEN_REVOKED, outcome="success")
        assert event.event_type == "oauth.token.revoked"
        assert event.outcome is AuditOutcome.SUCCESS
        assert event.timestamp.tzinfo is not None


class TestSimpleLoggers:

    def test_in_memory_logger_records(self):
        audit = InMemoryAuditLogger()
        audit.log_event(AuditEventType.CLIENT_REGISTERED, AuditOutcome.SUCCESS, {"client_id": "c1"})
        audit.log_event(AuditEventType.TOKEN_ISSUED, AuditOutcome.SUCCESS)

        assert len(audit.events) == 2
        assert audit.of_type(AuditEventType.CLIENT_REGISTERED)[0].metadata == {"client_id": "c1"}

    def test_null_logger(self):
        assert NullAuditLogger().log_event(AuditEventType.TOKEN_ISSUED, AuditOutcome.SUCCESS, {}) is None
