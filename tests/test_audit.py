# tests/test_audit.py
"""
Unit tests for v402 audit logging.
"""
import json
from unittest.mock import patch

from v402.core.config import settings
from v402.gateway.audit import (
    AuditEventType,
    create_audit_event,
    generate_request_id,
    get_audit_log_path,
    get_audit_stats,
    log_audit_event,
    log_error,
    log_intent_created,
    log_payment_failed,
    log_payment_verified,
    log_policy_denied,
    log_rate_limited,
    log_receipt_issued,
    log_replay_served,
    log_request_forwarded,
    log_request_received,
    read_audit_log,
)


def read_lines():
    with open(get_audit_log_path()) as f:
        return [json.loads(line) for line in f if line.strip()]


class TestAuditEventType:
    """Test audit event type enumeration."""

    def test_event_types_exist(self):
        """All gateway events have stable names."""
        assert {e.value for e in AuditEventType} == {
            "request_received",
            "intent_created",
            "payment_verified",
            "payment_failed",
            "policy_denied",
            "replay_served",
            "request_forwarded",
            "receipt_issued",
            "rate_limited",
            "error",
        }


class TestGenerateRequestId:
    """Test request ID generation."""

    def test_correct_length(self):
        """Request ID has expected length."""
        assert len(generate_request_id()) == 8

    def test_unique_ids(self):
        """Generated IDs are unique."""
        assert len({generate_request_id() for _ in range(100)}) == 100


class TestCreateAuditEvent:
    """Test audit event creation."""

    def test_creates_event_structure(self):
        """Creates event with all required fields."""
        event = create_audit_event(
            event_type=AuditEventType.PAYMENT_VERIFIED,
            data={"tx_sig": "sig"},
            client_ip="192.168.1.1",
            payer="payer-1",
            intent_id="intent-1",
            request_id="abc12345",
        )

        assert event["event_type"] == "payment_verified"
        assert event["request_id"] == "abc12345"
        assert event["client_ip"] == "192.168.1.1"
        assert event["payer"] == "payer-1"
        assert event["intent_id"] == "intent-1"
        assert event["data"] == {"tx_sig": "sig"}
        assert event["timestamp"].endswith("+00:00")


class TestLogAuditEvent:
    """Test writing events to the JSON lines file."""

    def test_writes_json_line(self):
        """Events are appended one per line."""
        request_id = log_request_received("10.0.0.1", "GET", "/search", has_proof=False)
        log_request_received("10.0.0.1", "GET", "/search", has_proof=True)

        events = read_lines()
        assert len(events) == 2
        assert events[0]["request_id"] == request_id
        assert events[1]["data"]["has_proof"] is True

    def test_creates_directory(self):
        """The log directory is created on first write."""
        assert not get_audit_log_path().parent.exists()
        log_error("10.0.0.1", "Boom", "failure")
        assert get_audit_log_path().exists()

    def test_disabled(self, monkeypatch):
        """Nothing is written when auditing is disabled."""
        monkeypatch.setattr(settings, "V402_AUDIT_ENABLED", False)
        assert log_error("10.0.0.1", "Boom", "failure") is None
        assert not get_audit_log_path().exists()

    def test_write_failure_swallowed(self):
        """An unwritable log never raises."""
        with patch("builtins.open", side_effect=OSError("disk full")):
            assert log_audit_event(AuditEventType.ERROR, {}) is None

    def test_convenience_functions(self):
        """Each helper records its event type and keys."""
        log_intent_created("ip", "i-1", "tool", "0.01", "USDC", "merchant", "h" * 64)
        log_payment_verified("ip", "i-1", "payer", "sig")
        log_payment_failed("ip", "i-1", "sig", "PAYMENT_VERIFICATION_FAILED", "AMOUNT_MISMATCH", "short")
        log_policy_denied("ip", "i-1", "tool not allowlisted", payer="payer")
        log_replay_served("ip", "i-1", "rcpt-1")
        log_request_forwarded("ip", "i-1", 200)
        log_receipt_issued("ip", "i-1", "rcpt-1", "r" * 64)
        log_rate_limited("ip", 60, 60)

        events = read_lines()
        assert [e["event_type"] for e in events] == [
            "intent_created",
            "payment_verified",
            "payment_failed",
            "policy_denied",
            "replay_served",
            "request_forwarded",
            "receipt_issued",
            "rate_limited",
        ]
        assert events[0]["data"]["request_hash"] == "h" * 64
        assert events[1]["payer"] == "payer"
        assert events[2]["data"]["reason"] == "AMOUNT_MISMATCH"
        assert events[7]["data"] == {"requests_made": 60, "limit": 60}


class TestReadAuditLog:
    """Test reading the audit log back."""

    def test_missing_file(self):
        """A missing log reads as empty."""
        assert read_audit_log() == []

    def test_most_recent_first_and_filters(self):
        """Entries come back newest first and filter by type, intent and IP."""
        log_replay_served("10.0.0.1", "i-1", "r-1")
        log_replay_served("10.0.0.2", "i-2", "r-2")
        log_error("10.0.0.1", "Boom", "x", intent_id="i-1")

        events = read_audit_log()
        assert [e["event_type"] for e in events] == ["error", "replay_served", "replay_served"]
        assert len(read_audit_log(event_type=AuditEventType.REPLAY_SERVED)) == 2
        assert len(read_audit_log(intent_id="i-2")) == 1
        assert len(read_audit_log(client_ip="10.0.0.1")) == 2
        assert len(read_audit_log(max_entries=1)) == 1

    def test_skips_corrupt_lines(self):
        """Malformed lines are ignored."""
        log_error("ip", "Boom", "x")
        with open(get_audit_log_path(), "a") as f:
            f.write("not json\n\n")
        assert len(read_audit_log()) == 1


class TestAuditStats:
    """Test audit statistics."""

    def test_no_log(self):
        """Stats for a missing log."""
        stats = get_audit_stats()
        assert stats["total_events"] == 0
        assert stats["log_exists"] is False

    def test_counts(self):
        """Events are counted by type."""
        log_replay_served("ip", "i-1", "r-1")
        log_replay_served("ip", "i-1", "r-1")
        log_error("ip", "Boom", "x")

        stats = get_audit_stats()
        assert stats["total_events"] == 3
        assert stats["events_by_type"] == {"replay_served": 2, "error": 1}
        assert stats["first_event"] <= stats["last_event"]
