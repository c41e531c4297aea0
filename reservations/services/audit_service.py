"""
Audit Service for reservation lifecycle events.

Every state-changing reservation operation emits an AuditEvent. Writing it is
best-effort: a failing sink is logged and never fails the operation that
produced the event.

Metadata must not carry patient identity or verification codes; keys that
look like either are dropped before any sink sees the event.
"""

import json
import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from supabase import Client

from reservations.utils.logging_config import AUDIT_LOGGER_NAME

logger = logging.getLogger(__name__)

# Metadata keys that would carry PHI or secrets
SCRUBBED_KEYS = frozenset({
    'name', 'patient_name', 'phone', 'email', 'contact', 'contact_identifier',
    'patient', 'patient_identity', 'code', 'otp',
})


class AuditAction(str, Enum):
    BOOKING_CREATED = "BOOKING_CREATED"
    CODE_REQUESTED = "CODE_REQUESTED"
    CODE_ATTEMPTS_EXCEEDED = "CODE_ATTEMPTS_EXCEEDED"
    BOOKING_STATE_CHANGED = "BOOKING_STATE_CHANGED"
    BOOKING_CONFIRMED = "BOOKING_CONFIRMED"
    BOOKING_CANCELLED = "BOOKING_CANCELLED"
    BOOKING_LOCK_EXPIRED = "BOOKING_LOCK_EXPIRED"
    BOOKING_ROLLED_BACK = "BOOKING_ROLLED_BACK"
    APPOINTMENT_CANCELLED = "APPOINTMENT_CANCELLED"


@dataclass
class AuditEvent:
    """One audit record"""
    action: AuditAction
    tenant_id: Optional[str]
    resource_type: str
    resource_id: Optional[str]
    outcome: str = "success"
    session_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict:
        """Convert to dictionary"""
        result = asdict(self)
        result['action'] = self.action.value
        return result


def scrub_metadata(metadata: Dict[str, Any]) -> Dict[str, Any]:
    return {
        key: value for key, value in metadata.items()
        if key.lower() not in SCRUBBED_KEYS
    }


class AuditSink:
    """Abstract destination for audit events"""

    async def write(self, event: AuditEvent) -> None:
        raise NotImplementedError


class LoggingAuditSink(AuditSink):
    """JSON lines on the reservations.audit logger"""

    def __init__(self):
        self.audit_logger = logging.getLogger(AUDIT_LOGGER_NAME)

    async def write(self, event: AuditEvent) -> None:
        self.audit_logger.info(json.dumps(event.to_dict(), sort_keys=True, default=str))


class DatabaseAuditSink(AuditSink):
    """Supabase audit_logs table"""

    def __init__(self, supabase_client: Client, table_name: str = "audit_logs"):
        self.client = supabase_client
        self.table_name = table_name

    async def write(self, event: AuditEvent) -> None:
        self.client.table(self.table_name).insert(event.to_dict()).execute()


class AuditService:
    """
    Fan an event out to every configured sink.

    Usage:
        audit = AuditService([LoggingAuditSink(), DatabaseAuditSink(supabase)])
        await audit.record(AuditEvent(AuditAction.BOOKING_CREATED, tenant_id, "booking", booking_id))
    """

    def __init__(self, sinks: Optional[Sequence[AuditSink]] = None):
        self.sinks: List[AuditSink] = list(sinks) if sinks is not None else [LoggingAuditSink()]

    async def record(self, event: AuditEvent) -> None:
        event.metadata = scrub_metadata(event.metadata)

        for sink in self.sinks:
            try:
                await sink.write(event)
            except Exception as e:
                logger.error(
                    f"Failed to write audit event {event.action.value} for "
                    f"{event.resource_type}:{event.resource_id} to {type(sink).__name__}: {e}"
                )
