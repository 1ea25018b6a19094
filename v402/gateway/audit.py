# v402/gateway/audit.py
"""
Audit logging for v402 payments.

This module logs every payment-relevant gateway event for:
- Dispute resolution (which proof unlocked which response)
- Reconciliation against on-chain transfers
- Debugging verification and policy failures

Log format: JSON lines (one event per line)
Log location: Configured via V402_AUDIT_LOG_PATH
Disabled entirely when V402_AUDIT_ENABLED is false.
"""
import json
import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from v402.core.config import settings

logger = logging.getLogger(__name__)


class AuditEventType(Enum):
    """Types of audit events that can be logged."""
    REQUEST_RECEIVED = "request_received"
    INTENT_CREATED = "intent_created"
    PAYMENT_VERIFIED = "payment_verified"
    PAYMENT_FAILED = "payment_failed"
    POLICY_DENIED = "policy_denied"
    REPLAY_SERVED = "replay_served"
    REQUEST_FORWARDED = "request_forwarded"
    RECEIPT_ISSUED = "receipt_issued"
    RATE_LIMITED = "rate_limited"
    ERROR = "error"


def generate_request_id() -> str:
    """Generate a unique request ID for tracking."""
    return str(uuid.uuid4())[:8]


def get_audit_log_path() -> Path:
    return Path(settings.V402_AUDIT_LOG_PATH)


def ensure_audit_log_directory() -> bool:
    """
    Ensure the audit log directory exists.

    Returns:
        True if directory exists or was created, False on error
    """
    try:
        log_dir = get_audit_log_path().parent
        if not log_dir.exists():
            log_dir.mkdir(parents=True, exist_ok=True)
            logger.info(f"Created audit log directory: {log_dir}")
        return True
    except OSError as e:
        logger.error(f"Failed to create audit log directory: {e}")
        return False


def create_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    client_ip: Optional[str] = None,
    payer: Optional[str] = None,
    intent_id: Optional[str] = None,
    request_id: Optional[str] = None
) -> Dict[str, Any]:
    """Create an audit event dictionary."""
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event_type": event_type.value,
        "request_id": request_id or generate_request_id(),
        "client_ip": client_ip,
        "payer": payer,
        "intent_id": intent_id,
        "data": data
    }


def log_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    client_ip: Optional[str] = None,
    payer: Optional[str] = None,
    intent_id: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """
    Append an audit event to the v402 audit log.

    A failed write is logged and otherwise ignored; auditing never fails a
    payment flow.

    Returns:
        The request_id used for this event, or None when disabled or on error
    """
    if not settings.V402_AUDIT_ENABLED:
        return None

    event = create_audit_event(
        event_type=event_type,
        data=data,
        client_ip=client_ip,
        payer=payer,
        intent_id=intent_id,
        request_id=request_id
    )

    try:
        ensure_audit_log_directory()
        with open(get_audit_log_path(), "a") as f:
            f.write(json.dumps(event, default=str) + "\n")

        logger.debug(f"Audit event logged: {event_type.value} [{event['request_id']}]")
        return event["request_id"]

    except OSError as e:
        logger.error(f"Failed to write audit event: {e}")
        return None


# Convenience functions for specific event types

def log_request_received(
    client_ip: str,
    method: str,
    path: str,
    has_proof: bool,
    request_id: Optional[str] = None
) -> Optional[str]:
    return log_audit_event(
        event_type=AuditEventType.REQUEST_RECEIVED,
        data={"method": method, "path": path, "has_proof": has_proof},
        client_ip=client_ip,
        request_id=request_id
    )


def log_intent_created(
    client_ip: str,
    intent_id: str,
    tool_id: str,
    amount: str,
    currency: str,
    recipient: str,
    request_hash: str,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a 402 with a fresh payment intent."""
    return log_audit_event(
        event_type=AuditEventType.INTENT_CREATED,
        data={
            "tool_id": tool_id,
            "amount": amount,
            "currency": currency,
            "recipient": recipient,
            "request_hash": request_hash,
        },
        client_ip=client_ip,
        intent_id=intent_id,
        request_id=request_id
    )


def log_payment_verified(
    client_ip: str,
    intent_id: str,
    payer: str,
    tx_sig: str,
    request_id: Optional[str] = None
) -> Optional[str]:
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_VERIFIED,
        data={"tx_sig": tx_sig},
        client_ip=client_ip,
        payer=payer,
        intent_id=intent_id,
        request_id=request_id
    )


def log_payment_failed(
    client_ip: str,
    intent_id: str,
    tx_sig: str,
    error_code: str,
    reason: Optional[str],
    message: str,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a proof that did not verify (or could not be checked)."""
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_FAILED,
        data={
            "tx_sig": tx_sig,
            "error_code": error_code,
            "reason": reason,
            "message": message,
        },
        client_ip=client_ip,
        intent_id=intent_id,
        request_id=request_id
    )


def log_policy_denied(
    client_ip: str,
    intent_id: str,
    reason: str,
    payer: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    return log_audit_event(
        event_type=AuditEventType.POLICY_DENIED,
        data={"reason": reason},
        client_ip=client_ip,
        payer=payer,
        intent_id=intent_id,
        request_id=request_id
    )


def log_replay_served(
    client_ip: str,
    intent_id: str,
    receipt_id: str,
    request_id: Optional[str] = None
) -> Optional[str]:
    return log_audit_event(
        event_type=AuditEventType.REPLAY_SERVED,
        data={"receipt_id": receipt_id},
        client_ip=client_ip,
        intent_id=intent_id,
        request_id=request_id
    )


def log_request_forwarded(
    client_ip: str,
    intent_id: str,
    upstream_status: int,
    payer: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    return log_audit_event(
        event_type=AuditEventType.REQUEST_FORWARDED,
        data={"upstream_status": upstream_status},
        client_ip=client_ip,
        payer=payer,
        intent_id=intent_id,
        request_id=request_id
    )


def log_receipt_issued(
    client_ip: str,
    intent_id: str,
    receipt_id: str,
    response_hash: str,
    payer: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    return log_audit_event(
        event_type=AuditEventType.RECEIPT_ISSUED,
        data={"receipt_id": receipt_id, "response_hash": response_hash},
        client_ip=client_ip,
        payer=payer,
        intent_id=intent_id,
        request_id=request_id
    )


def log_rate_limited(
    client_ip: str,
    requests_made: int,
    limit: int,
    request_id: Optional[str] = None
) -> Optional[str]:
    return log_audit_event(
        event_type=AuditEventType.RATE_LIMITED,
        data={"requests_made": requests_made, "limit": limit},
        client_ip=client_ip,
        request_id=request_id
    )


def log_error(
    client_ip: str,
    error_type: str,
    error_message: str,
    context: Optional[Dict[str, Any]] = None,
    intent_id: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log an error event."""
    return log_audit_event(
        event_type=AuditEventType.ERROR,
        data={
            "error_type": error_type,
            "error_message": error_message,
            "context": context or {},
        },
        client_ip=client_ip,
        intent_id=intent_id,
        request_id=request_id
    )


def _iter_events():
    log_path = get_audit_log_path()
    if not log_path.exists():
        return
    with open(log_path, "r") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                yield json.loads(line)
            except json.JSONDecodeError:
                continue


def read_audit_log(
    max_entries: int = 100,
    event_type: Optional[AuditEventType] = None,
    intent_id: Optional[str] = None,
    client_ip: Optional[str] = None
) -> List[Dict[str, Any]]:
    """
    Read entries from the audit log.

    Returns:
        List of audit events (most recent first)
    """
    try:
        events = [
            event for event in _iter_events()
            if (not event_type or event.get("event_type") == event_type.value)
            and (not intent_id or event.get("intent_id") == intent_id)
            and (not client_ip or event.get("client_ip") == client_ip)
        ]
    except OSError as e:
        logger.error(f"Failed to read audit log: {e}")
        return []

    return list(reversed(events))[:max_entries]


def get_audit_stats() -> Dict[str, Any]:
    """
    Get statistics from the audit log.

    Returns:
        Dict with event counts and first/last timestamps
    """
    log_path = get_audit_log_path()
    if not log_path.exists():
        return {
            "total_events": 0,
            "events_by_type": {},
            "log_path": str(log_path),
            "log_exists": False,
        }

    events_by_type: Dict[str, int] = {}
    total = 0
    first_timestamp = None
    last_timestamp = None

    try:
        for event in _iter_events():
            total += 1
            event_type = event.get("event_type", "unknown")
            events_by_type[event_type] = events_by_type.get(event_type, 0) + 1
            timestamp = event.get("timestamp")
            if timestamp:
                if first_timestamp is None:
                    first_timestamp = timestamp
                last_timestamp = timestamp
    except OSError as e:
        logger.error(f"Failed to get audit stats: {e}")
        return {
            "total_events": 0,
            "events_by_type": {},
            "log_path": str(log_path),
            "log_exists": False,
            "error": str(e),
        }

    return {
        "total_events": total,
        "events_by_type": events_by_type,
        "first_event": first_timestamp,
        "last_event": last_timestamp,
        "log_path": str(log_path),
        "log_exists": True,
    }
