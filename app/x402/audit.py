# app/x402/audit.py
"""
Audit logging for x402 transactions.

This module logs all x402 payment events for:
- Dispute resolution
- Financial reconciliation
- Debugging failures

Log format: JSON lines (one event per line)
Log location: Configured via X402_AUDIT_LOG_PATH (disable with X402_AUDIT_ENABLED=false)

Events logged:
- Request received (timestamp, client IP, endpoint, method)
- Rate limited (retry-after)
- 402 returned (price, currency, network, recipient)
- Payment verified (payer, amount, transaction hash)
- Payment failed (reason, verification status)
- Prediction served (block number, cache hit)
- Error (type, context)
"""
import json
import logging
import threading
import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

from pydantic import BaseModel, Field

from app.core.config import settings

logger = logging.getLogger(__name__)

# Concurrent requests append to the same file
_write_lock = threading.Lock()


class AuditEventType(Enum):
    """Types of audit events that can be logged."""
    REQUEST_RECEIVED = "request_received"
    RATE_LIMITED = "rate_limited"
    PAYMENT_REQUIRED_SENT = "payment_required_sent"
    PAYMENT_VERIFIED = "payment_verified"
    PAYMENT_FAILED = "payment_failed"
    PREDICTION_SERVED = "prediction_served"
    ERROR = "error"


def generate_request_id() -> str:
    """Generate a unique request ID for tracking."""
    return str(uuid.uuid4())


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class AuditEvent(BaseModel):
    """One line of the audit log."""
    timestamp: str = Field(default_factory=_utc_now_iso)
    event_type: str
    request_id: str = Field(default_factory=generate_request_id)
    client_ip: Optional[str] = None
    wallet_address: Optional[str] = None
    data: Dict[str, Any] = {}


def get_audit_log_path() -> Path:
    """Get the path to the audit log file."""
    return Path(settings.X402_AUDIT_LOG_PATH)


def create_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    client_ip: Optional[str] = None,
    wallet_address: Optional[str] = None,
    request_id: Optional[str] = None
) -> AuditEvent:
    fields: Dict[str, Any] = {
        "event_type": event_type.value,
        "client_ip": client_ip,
        "wallet_address": wallet_address,
        "data": data,
    }
    if request_id:
        fields["request_id"] = request_id
    return AuditEvent(**fields)


def log_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    client_ip: Optional[str] = None,
    wallet_address: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """
    Append an event to the audit log.

    Write failures are logged and never fail the request being audited.

    Returns:
        The event's request_id, or None if auditing is disabled or the write failed
    """
    if not settings.X402_AUDIT_ENABLED:
        return None

    event = create_audit_event(event_type, data, client_ip, wallet_address, request_id)
    log_path = get_audit_log_path()

    try:
        with _write_lock:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(log_path, "a") as f:
                f.write(event.model_dump_json() + "\n")
    except OSError as e:
        logger.error(f"Failed to write audit event {event_type.value}: {e}")
        return None

    logger.debug(f"Audit event logged: {event_type.value} [{event.request_id}]")
    return event.request_id


# One helper per event type the gateway emits

def log_request_received(client_ip: str, method: str, path: str, request_id: Optional[str] = None) -> Optional[str]:
    return log_audit_event(
        AuditEventType.REQUEST_RECEIVED, {"method": method, "path": path}, client_ip, request_id=request_id
    )


def log_rate_limited(client_ip: str, retry_after: float, request_id: Optional[str] = None) -> Optional[str]:
    return log_audit_event(
        AuditEventType.RATE_LIMITED,
        {"retry_after_seconds": round(retry_after, 3)},
        client_ip,
        request_id=request_id,
    )


def log_payment_required_sent(
    client_ip: str,
    price_usd: str,
    currency: str,
    network: str,
    pay_to: str,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Record the terms quoted in a 402 response."""
    terms = {"price_usd": price_usd, "currency": currency, "network": network, "pay_to": pay_to}
    return log_audit_event(AuditEventType.PAYMENT_REQUIRED_SENT, terms, client_ip, request_id=request_id)


def log_payment_verified(
    client_ip: str,
    payer: str,
    tx_hash: str,
    amount: int,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Record an accepted payment. amount is in token base units."""
    return log_audit_event(
        AuditEventType.PAYMENT_VERIFIED,
        {"transaction_hash": tx_hash, "amount": str(amount)},
        client_ip,
        wallet_address=payer,
        request_id=request_id,
    )


def log_payment_failed(
    client_ip: str,
    status: str,
    reason: str,
    tx_hash: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    return log_audit_event(
        AuditEventType.PAYMENT_FAILED,
        {"status": status, "reason": reason, "transaction_hash": tx_hash},
        client_ip,
        request_id=request_id,
    )


def log_prediction_served(
    client_ip: str,
    block_number: int,
    cache_hit: bool,
    request_id: Optional[str] = None
) -> Optional[str]:
    return log_audit_event(
        AuditEventType.PREDICTION_SERVED,
        {"block_number": block_number, "cache_hit": cache_hit},
        client_ip,
        request_id=request_id,
    )


def log_error(
    client_ip: str,
    error_type: str,
    error_message: str,
    context: Optional[Dict[str, Any]] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    details = {"error_type": error_type, "error_message": error_message, "context": context or {}}
    return log_audit_event(AuditEventType.ERROR, details, client_ip, request_id=request_id)


def _iter_audit_events(log_path: Path) -> Iterator[Dict[str, Any]]:
    """Yield decoded events oldest first, skipping blank or truncated lines."""
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
    client_ip: Optional[str] = None
) -> list:
    """
    Read entries from the audit log, most recent first.

    Args:
        max_entries: Maximum number of entries to return
        event_type: Only return events of this type
        client_ip: Only return events from this client
    """
    log_path = get_audit_log_path()
    if not log_path.exists():
        return []

    try:
        events = [
            event for event in _iter_audit_events(log_path)
            if (event_type is None or event.get("event_type") == event_type.value)
            and (client_ip is None or event.get("client_ip") == client_ip)
        ]
    except OSError as e:
        logger.error(f"Failed to read audit log: {e}")
        return []

    events.reverse()
    return events[:max_entries]


def get_audit_stats() -> Dict[str, Any]:
    """Event counts by type and the time range covered by the audit log."""
    log_path = get_audit_log_path()
    stats: Dict[str, Any] = {
        "total_events": 0,
        "events_by_type": {},
        "log_path": str(log_path),
        "log_exists": log_path.exists(),
    }
    if not stats["log_exists"]:
        return stats

    try:
        for event in _iter_audit_events(log_path):
            name = event.get("event_type", "unknown")
            stats["events_by_type"][name] = stats["events_by_type"].get(name, 0) + 1
            stats["total_events"] += 1
            stats.setdefault("first_event", event.get("timestamp"))
            stats["last_event"] = event.get("timestamp")
    except OSError as e:
        logger.error(f"Failed to read audit log: {e}")

    return stats
