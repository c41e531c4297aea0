"""
Notification dispatch for reservations.

Verification codes and booking confirmations are handed to a dispatcher. The
outbox dispatcher writes rows to healthcare.outbound_messages; delivery
workers pick them up from there. Dispatch is best-effort from the engine's
point of view: callers log failures and carry on.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime

from supabase import Client

from reservations.models.booking import PatientIdentity

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConfirmationNotice:
    """Everything a delivery worker needs to tell a patient their booking is confirmed"""
    appointment_id: str
    booking_id: str
    tenant_id: str
    doctor_id: str
    start: datetime
    duration_minutes: int
    contact: PatientIdentity


class NotificationDispatcher:
    """Abstract dispatcher"""

    async def send_verification_code(
        self,
        booking_id: str,
        tenant_id: str,
        contact: PatientIdentity,
        code: str
    ) -> bool:
        raise NotImplementedError

    async def send_booking_confirmation(self, notice: ConfirmationNotice) -> bool:
        raise NotImplementedError


class OutboxNotificationDispatcher(NotificationDispatcher):
    """Writes outbound messages to the healthcare.outbound_messages outbox"""

    def __init__(self, supabase_client: Client):
        self.supabase = supabase_client

    def _write(
        self,
        tenant_id: str,
        booking_id: str,
        contact: PatientIdentity,
        message_text: str,
        message_type: str
    ) -> bool:
        message_id = str(uuid.uuid4())

        result = self.supabase.schema('healthcare').table('outbound_messages').insert({
            'message_id': message_id,
            'conversation_id': booking_id,
            'clinic_id': tenant_id,
            'channel': contact.contact_channel,
            'to_number': contact.contact_identifier,
            'message_text': message_text,
            'message_type': message_type,
            'delivery_status': 'pending',
            'retry_count': 0
        }).execute()

        if result.data:
            # Recipient intentionally omitted from the log line
            logger.info(f"✅ {message_type} written to outbox: {message_id} (booking={booking_id})")
            return True

        logger.error(f"❌ Failed to write {message_type} to outbox: no data returned")
        return False

    async def send_verification_code(
        self,
        booking_id: str,
        tenant_id: str,
        contact: PatientIdentity,
        code: str
    ) -> bool:
        return self._write(
            tenant_id,
            booking_id,
            contact,
            f"Your verification code is {code}. It expires in a few minutes.",
            'verification_code'
        )

    async def send_booking_confirmation(self, notice: ConfirmationNotice) -> bool:
        when = notice.start.strftime("%A %d %B %Y at %H:%M")
        return self._write(
            notice.tenant_id,
            notice.booking_id,
            notice.contact,
            f"Hi {notice.contact.name}, your appointment on {when} is confirmed. "
            f"Reference: {notice.booking_id}",
            'booking_confirmation'
        )


class LoggingNotificationDispatcher(NotificationDispatcher):
    """Local development dispatcher: records that a message would be sent, without content"""

    async def send_verification_code(
        self,
        booking_id: str,
        tenant_id: str,
        contact: PatientIdentity,
        code: str
    ) -> bool:
        logger.info(f"📨 Verification code ready for booking {booking_id} via {contact.contact_channel}")
        return True

    async def send_booking_confirmation(self, notice: ConfirmationNotice) -> bool:
        logger.info(f"📨 Confirmation ready for booking {notice.booking_id} (appointment {notice.appointment_id})")
        return True
