"""
Reservation Orchestrator

Public entry point of the reservation engine. Composes availability, slot
locks, one-time codes and the booking state machine into the booking flow:

    get_available_slots -> initiate_booking -> request_code -> confirm_with_code
                                      \\-> cancel_booking

Every operation returns a ReservationResult. Caller mistakes (taken slot,
wrong code, wrong state, wrong session) come back as typed failures with a
user-safe message; only PERSISTENCE_FAILURE indicates an operational problem.

Commit ordering in confirm_with_code:
1. verify the code (consumes it)
2. re-verify slot lock ownership - the lock may have expired while the
   caller was typing the code
3. transition the draft to CONFIRMED
4. write the durable appointment; on failure roll the draft back to
   CANCELLED so it is never left CONFIRMED without an appointment
5. release the lock and delete the draft
6. audit and notify (best-effort, never blocks the confirmation)
"""

import asyncio
import logging
from datetime import date, datetime, timezone
from typing import Callable, List, Optional, Sequence, Set, Union

from reservations.exceptions import (
    BookingNotFoundError,
    ConcurrentModificationError,
    InvalidTransitionError,
    SlotAlreadyBookedError,
)
from reservations.models.booking import (
    Appointment,
    AppointmentStatus,
    BookingDetails,
    BookingState,
    Doctor,
    ReservationDraft,
    Slot,
)
from reservations.models.results import ReservationError, ReservationResult
from reservations.security.phi_encryption import PatientIdentityCipher
from reservations.services.appointment_store import AppointmentStore
from reservations.services.audit_service import AuditAction, AuditEvent, AuditService
from reservations.services.availability_service import AvailabilityService
from reservations.services.booking_state_machine import BookingStateMachine, is_terminal_state
from reservations.services.notification_service import ConfirmationNotice, NotificationDispatcher
from reservations.services.otp_service import OtpService, OtpStatus
from reservations.services.slot_lock_service import SlotKey, SlotLockService

logger = logging.getLogger(__name__)

# Appointment statuses that can still be cancelled by the patient
CANCELLABLE_APPOINTMENT_STATUSES = frozenset({AppointmentStatus.CONFIRMED, AppointmentStatus.CHECKED_IN})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _slot_key(draft: ReservationDraft) -> SlotKey:
    return SlotKey(draft.tenant_id, draft.doctor_id, draft.slot_start)


class ReservationOrchestrator:
    """
    Coordinates the booking flow across the reservation services.

    Usage:
        orchestrator = ReservationOrchestrator(
            availability=availability,
            slot_locks=slot_locks,
            otp=otp,
            state_machine=state_machine,
            appointment_store=appointment_store,
            cipher=cipher,
            audit=audit,
            notifier=notifier,
        )
        result = await orchestrator.initiate_booking(details, session_id)
    """

    def __init__(
        self,
        availability: AvailabilityService,
        slot_locks: SlotLockService,
        otp: OtpService,
        state_machine: BookingStateMachine,
        appointment_store: AppointmentStore,
        cipher: PatientIdentityCipher,
        audit: AuditService,
        notifier: Optional[NotificationDispatcher] = None,
        now: Callable[[], datetime] = _utcnow
    ):
        self.availability = availability
        self.slot_locks = slot_locks
        self.otp = otp
        self.state_machine = state_machine
        self.appointment_store = appointment_store
        self.cipher = cipher
        self.audit = audit
        self.notifier = notifier
        self._now = now
        self._pending_notifications: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Availability
    # ------------------------------------------------------------------

    async def get_available_slots(
        self,
        tenant_id: str,
        doctors: Sequence[Doctor],
        target_date: Union[date, str],
        duration_minutes: Optional[int] = None,
        timezone_name: Optional[str] = None
    ) -> List[Slot]:
        return await self.availability.get_available_slots(
            tenant_id, doctors, target_date, duration_minutes, timezone_name
        )

    async def get_department_slots(
        self,
        tenant_id: str,
        department: str,
        target_date: Union[date, str],
        duration_minutes: Optional[int] = None,
        timezone_name: Optional[str] = None
    ) -> List[Slot]:
        return await self.availability.get_department_slots(
            tenant_id, department, target_date, duration_minutes, timezone_name
        )

    # ------------------------------------------------------------------
    # Booking flow
    # ------------------------------------------------------------------

    async def initiate_booking(self, details: BookingDetails, session_id: str) -> ReservationResult:
        """
        Lock the slot for this session and open a draft.

        The start and duration must be a slot the doctor's weekly windows
        produce; anything else is SLOT_UNAVAILABLE before any lock is taken.

        Returns:
            ok(booking=draft) or SLOT_UNAVAILABLE / PERSISTENCE_FAILURE
        """
        key = SlotKey(details.tenant_id, details.doctor_id, details.slot_start)

        if details.slot_start <= self._now():
            return ReservationResult.fail(ReservationError.SLOT_UNAVAILABLE)

        try:
            on_schedule = await self.availability.is_scheduled_slot(
                details.doctor_id,
                details.slot_start,
                details.duration_minutes,
                details.timezone_name
            )
        except Exception as e:
            return self._persistence_failure(f"Schedule lookup failed for {key}", e)

        if not on_schedule:
            logger.info(f"Slot {key} ({details.duration_minutes} min) is not on the doctor's schedule")
            return ReservationResult.fail(ReservationError.SLOT_UNAVAILABLE)

        try:
            acquired = await self.slot_locks.acquire(key, session_id)
        except Exception as e:
            return self._persistence_failure(f"Slot lock acquisition failed for {key}", e)

        if not acquired:
            return ReservationResult.fail(ReservationError.SLOT_UNAVAILABLE)

        try:
            # The durable record wins over a fresh lock
            slot_utc = details.slot_start.astimezone(timezone.utc)
            occupied = await self.appointment_store.query_appointments(
                details.tenant_id, details.doctor_id, slot_utc.date(), "UTC"
            )
            if any(start.astimezone(timezone.utc) == slot_utc for start in occupied):
                logger.info(f"Slot {key} already has an active appointment")
                await self.slot_locks.release(key, session_id)
                return ReservationResult.fail(ReservationError.SLOT_UNAVAILABLE)

            draft = await self.state_machine.create_booking(
                tenant_id=details.tenant_id,
                doctor_id=details.doctor_id,
                slot_start=details.slot_start,
                duration_minutes=details.duration_minutes,
                encrypted_patient_identity=self.cipher.encrypt(details.patient),
                session_id=session_id
            )
        except Exception as e:
            await self._release_quietly(key, session_id)
            return self._persistence_failure(f"Failed to create booking draft for {key}", e)

        await self.audit.record(AuditEvent(
            action=AuditAction.BOOKING_CREATED,
            tenant_id=draft.tenant_id,
            resource_type="booking",
            resource_id=draft.booking_id,
            session_id=session_id,
            metadata={
                'doctor_id': draft.doctor_id,
                'slot_start': draft.slot_start.isoformat(),
                'duration_minutes': draft.duration_minutes,
            }
        ))

        return ReservationResult.ok(
            booking=draft,
            state=draft.state,
            expires_in_seconds=self.slot_locks.ttl_seconds
        )

    async def request_code(self, booking_id: str, session_id: Optional[str] = None) -> ReservationResult:
        """
        Issue a one-time code for a draft and move it to AWAITING_CODE.

        When session_id is given it must own the draft; a mismatch is
        UNAUTHORIZED and spends none of the contact's rate limit.

        The plaintext code and the decrypted contact are returned for
        out-of-band delivery only; they must never be rendered to the caller.
        """
        try:
            draft = await self.state_machine.get_booking(booking_id)
            if draft is None:
                return ReservationResult.fail(ReservationError.BOOKING_NOT_FOUND)
            if session_id is not None and draft.session_id != session_id:
                logger.warning(f"Session mismatch requesting code for booking {booking_id}")
                return ReservationResult.fail(ReservationError.UNAUTHORIZED)
            if is_terminal_state(draft.state):
                return ReservationResult.fail(ReservationError.BOOKING_NOT_IN_EXPECTED_STATE, state=draft.state)

            contact = self.cipher.decrypt(draft.encrypted_patient_identity)
            generation = await self.otp.generate(booking_id, contact.contact_identifier)

            if generation.rate_limited:
                return ReservationResult.fail(
                    ReservationError.CODE_RATE_LIMITED,
                    retry_after_seconds=generation.retry_after_seconds,
                    state=draft.state
                )

            try:
                updated = await self.state_machine.request_code(booking_id)
            except BookingNotFoundError:
                await self.otp.invalidate(booking_id)
                return ReservationResult.fail(ReservationError.BOOKING_NOT_FOUND)
            except (InvalidTransitionError, ConcurrentModificationError):
                await self.otp.invalidate(booking_id)
                return ReservationResult.fail(ReservationError.BOOKING_NOT_IN_EXPECTED_STATE)
        except Exception as e:
            return self._persistence_failure(f"Code request failed for booking {booking_id}", e)

        await self._audit_transition(updated)
        await self.audit.record(AuditEvent(
            action=AuditAction.CODE_REQUESTED,
            tenant_id=updated.tenant_id,
            resource_type="booking",
            resource_id=booking_id,
            session_id=updated.session_id,
            metadata={
                'channel': contact.contact_channel,
                'contact_hash': self.otp.hash_contact(contact.contact_identifier),
                'resend': draft.state is BookingState.AWAITING_CODE,
            }
        ))

        return ReservationResult.ok(
            booking=updated,
            state=updated.state,
            code=generation.code,
            contact=contact,
            expires_in_seconds=generation.expires_in_seconds
        )

    async def confirm_with_code(
        self,
        booking_id: str,
        code: str,
        session_id: Optional[str] = None
    ) -> ReservationResult:
        """
        Verify the code and commit the durable appointment.

        A session_id that does not own the draft is UNAUTHORIZED and is
        rejected before the code is checked, so it costs no attempt.
        """
        try:
            draft = await self.state_machine.get_booking(booking_id)
            if draft is None:
                return ReservationResult.fail(ReservationError.BOOKING_NOT_FOUND)
            if session_id is not None and draft.session_id != session_id:
                logger.warning(f"Session mismatch confirming booking {booking_id}")
                return ReservationResult.fail(ReservationError.UNAUTHORIZED)
            if draft.state is not BookingState.AWAITING_CODE:
                return ReservationResult.fail(ReservationError.BOOKING_NOT_IN_EXPECTED_STATE, state=draft.state)

            verification = await self.otp.verify(booking_id, code)
        except Exception as e:
            return self._persistence_failure(f"Code verification failed for booking {booking_id}", e)

        if verification.status is OtpStatus.INVALID:
            return ReservationResult.fail(
                ReservationError.CODE_INVALID,
                remaining_attempts=verification.remaining_attempts,
                state=draft.state
            )
        if verification.status is OtpStatus.EXPIRED:
            return ReservationResult.fail(ReservationError.CODE_EXPIRED, state=draft.state)
        if verification.status is OtpStatus.ATTEMPTS_EXCEEDED:
            await self.audit.record(AuditEvent(
                action=AuditAction.CODE_ATTEMPTS_EXCEEDED,
                tenant_id=draft.tenant_id,
                resource_type="booking",
                resource_id=booking_id,
                outcome="failure",
                session_id=draft.session_id
            ))
            return ReservationResult.fail(ReservationError.CODE_ATTEMPTS_EXCEEDED, state=draft.state)

        key = _slot_key(draft)

        try:
            still_owned = await self.slot_locks.verify_ownership(key, draft.session_id)
        except Exception as e:
            return self._persistence_failure(f"Lock verification failed for booking {booking_id}", e)

        if not still_owned:
            return await self._expire_lost_lock(draft)

        try:
            draft = await self.state_machine.confirm(booking_id)
        except BookingNotFoundError:
            return ReservationResult.fail(ReservationError.BOOKING_NOT_FOUND)
        except (InvalidTransitionError, ConcurrentModificationError):
            return ReservationResult.fail(ReservationError.BOOKING_NOT_IN_EXPECTED_STATE)
        except Exception as e:
            return self._persistence_failure(f"Failed to confirm booking {booking_id}", e)

        appointment = Appointment(
            tenant_id=draft.tenant_id,
            doctor_id=draft.doctor_id,
            start_timestamp=draft.slot_start,
            duration_minutes=draft.duration_minutes,
            encrypted_patient_identity=draft.encrypted_patient_identity,
            status=AppointmentStatus.CONFIRMED,
            booking_id=booking_id,
            created_at=self._now()
        )

        try:
            appointment_id = await self.appointment_store.insert_appointment(appointment)
        except SlotAlreadyBookedError:
            logger.warning(f"Booking {booking_id} lost the slot to an existing appointment at commit")
            await self._rollback(draft, "slot_already_booked")
            await self._release_quietly(key, draft.session_id)
            return ReservationResult.fail(ReservationError.SLOT_UNAVAILABLE)
        except Exception as e:
            await self._rollback(draft, "persistence_failure")
            await self._release_quietly(key, draft.session_id)
            return self._persistence_failure(f"Failed to write appointment for booking {booking_id}", e)

        appointment = appointment.model_copy(update={'id': appointment_id})

        # Committed; cleanup failures only leave TTL-bound leftovers behind
        try:
            await self.slot_locks.release(key, draft.session_id)
            await self.state_machine.delete_draft(booking_id)
        except Exception as e:
            logger.error(f"Post-commit cleanup failed for booking {booking_id}: {e}", exc_info=True)

        await self._audit_transition(draft)
        await self.audit.record(AuditEvent(
            action=AuditAction.BOOKING_CONFIRMED,
            tenant_id=draft.tenant_id,
            resource_type="appointment",
            resource_id=appointment_id,
            session_id=draft.session_id,
            metadata={
                'booking_id': booking_id,
                'doctor_id': draft.doctor_id,
                'slot_start': draft.slot_start.isoformat(),
            }
        ))

        logger.info(f"✅ Booking {booking_id} confirmed as appointment {appointment_id}")
        self._schedule_confirmation(appointment, draft)

        return ReservationResult.ok(booking=draft, appointment=appointment, state=BookingState.CONFIRMED)

    async def cancel_booking(
        self,
        booking_id: str,
        session_id: str,
        reason: Optional[str] = None
    ) -> ReservationResult:
        """Cancel an in-flight draft owned by session_id and free its slot."""
        try:
            draft = await self.state_machine.get_booking(booking_id)
        except Exception as e:
            return self._persistence_failure(f"Failed to load booking {booking_id}", e)

        if draft is None:
            return ReservationResult.fail(ReservationError.BOOKING_NOT_FOUND)
        if draft.session_id != session_id:
            logger.warning(f"Session mismatch cancelling booking {booking_id}")
            return ReservationResult.fail(ReservationError.UNAUTHORIZED)
        if is_terminal_state(draft.state):
            return ReservationResult.fail(ReservationError.BOOKING_NOT_IN_EXPECTED_STATE, state=draft.state)

        try:
            cancelled = await self.state_machine.cancel(booking_id, reason)
        except BookingNotFoundError:
            return ReservationResult.fail(ReservationError.BOOKING_NOT_FOUND)
        except (InvalidTransitionError, ConcurrentModificationError):
            return ReservationResult.fail(ReservationError.BOOKING_NOT_IN_EXPECTED_STATE)
        except Exception as e:
            return self._persistence_failure(f"Failed to cancel booking {booking_id}", e)

        try:
            await self.slot_locks.release(_slot_key(cancelled), session_id)
            await self.otp.invalidate(booking_id)
            await self.state_machine.delete_draft(booking_id)
        except Exception as e:
            logger.error(f"Cleanup after cancelling booking {booking_id} failed: {e}", exc_info=True)

        await self._audit_transition(cancelled)
        await self.audit.record(AuditEvent(
            action=AuditAction.BOOKING_CANCELLED,
            tenant_id=cancelled.tenant_id,
            resource_type="booking",
            resource_id=booking_id,
            session_id=session_id,
            metadata={'reason': reason, 'previous_state': draft.state.value}
        ))

        return ReservationResult.ok(booking=cancelled, state=BookingState.CANCELLED)

    # ------------------------------------------------------------------
    # Lookups and post-commit management
    # ------------------------------------------------------------------

    async def get_booking_status(self, booking_id: str) -> ReservationResult:
        """Current draft state. A draft that no longer exists reports EXPIRED."""
        try:
            draft = await self.state_machine.get_booking(booking_id)
        except Exception as e:
            return self._persistence_failure(f"Failed to load booking {booking_id}", e)

        if draft is None:
            return ReservationResult.ok(state=BookingState.EXPIRED)
        return ReservationResult.ok(booking=draft, state=draft.state)

    async def get_appointment(self, appointment_id: str, tenant_id: str) -> ReservationResult:
        try:
            appointment = await self.appointment_store.get_appointment(appointment_id, tenant_id)
        except Exception as e:
            return self._persistence_failure(f"Failed to load appointment {appointment_id}", e)

        if appointment is None:
            return ReservationResult.fail(ReservationError.BOOKING_NOT_FOUND)
        return ReservationResult.ok(appointment=appointment)

    async def cancel_appointment(
        self,
        appointment_id: str,
        tenant_id: str,
        reason: Optional[str] = None
    ) -> ReservationResult:
        """Cancel a committed appointment; the slot becomes available again."""
        try:
            appointment = await self.appointment_store.get_appointment(appointment_id, tenant_id)
            if appointment is None:
                return ReservationResult.fail(ReservationError.BOOKING_NOT_FOUND)
            if appointment.status not in CANCELLABLE_APPOINTMENT_STATUSES:
                return ReservationResult.fail(ReservationError.BOOKING_NOT_IN_EXPECTED_STATE)

            updated = await self.appointment_store.update_status(
                appointment_id, tenant_id, AppointmentStatus.CANCELLED
            )
        except Exception as e:
            return self._persistence_failure(f"Failed to cancel appointment {appointment_id}", e)

        if not updated:
            return ReservationResult.fail(ReservationError.BOOKING_NOT_FOUND)

        await self.audit.record(AuditEvent(
            action=AuditAction.APPOINTMENT_CANCELLED,
            tenant_id=tenant_id,
            resource_type="appointment",
            resource_id=appointment_id,
            metadata={'reason': reason, 'previous_status': appointment.status.value}
        ))

        return ReservationResult.ok(
            appointment=appointment.model_copy(update={'status': AppointmentStatus.CANCELLED})
        )

    async def drain_notifications(self) -> None:
        """Wait for scheduled notifications (shutdown and tests)."""
        if self._pending_notifications:
            await asyncio.gather(*self._pending_notifications, return_exceptions=True)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _persistence_failure(self, message: str, error: Exception) -> ReservationResult:
        logger.error(f"❌ {message}: {error}", exc_info=True)
        return ReservationResult.fail(ReservationError.PERSISTENCE_FAILURE)

    async def _release_quietly(self, key: SlotKey, owner_id: str) -> None:
        try:
            await self.slot_locks.release(key, owner_id)
        except Exception as e:
            logger.error(f"Failed to release slot lock {key}: {e}")

    async def _expire_lost_lock(self, draft: ReservationDraft) -> ReservationResult:
        try:
            expired = await self.state_machine.expire(draft.booking_id)
            await self._audit_transition(expired)
        except (BookingNotFoundError, InvalidTransitionError, ConcurrentModificationError) as e:
            logger.info(f"Booking {draft.booking_id} not expired after lock loss: {e}")
        except Exception as e:
            logger.error(f"Failed to expire booking {draft.booking_id}: {e}", exc_info=True)

        await self.audit.record(AuditEvent(
            action=AuditAction.BOOKING_LOCK_EXPIRED,
            tenant_id=draft.tenant_id,
            resource_type="booking",
            resource_id=draft.booking_id,
            outcome="failure",
            session_id=draft.session_id,
            metadata={'doctor_id': draft.doctor_id, 'slot_start': draft.slot_start.isoformat()}
        ))

        logger.warning(f"⚠️ Slot lock for booking {draft.booking_id} expired before commit")
        return ReservationResult.fail(ReservationError.SLOT_EXPIRED)

    async def _rollback(self, draft: ReservationDraft, reason: str) -> None:
        try:
            rolled_back = await self.state_machine.rollback(draft.booking_id, reason)
        except Exception as e:
            logger.error(f"Rollback of booking {draft.booking_id} failed: {e}", exc_info=True)
            return

        await self.audit.record(AuditEvent(
            action=AuditAction.BOOKING_ROLLED_BACK,
            tenant_id=rolled_back.tenant_id,
            resource_type="booking",
            resource_id=rolled_back.booking_id,
            outcome="failure",
            session_id=rolled_back.session_id,
            metadata={'reason': reason}
        ))

    async def _audit_transition(self, draft: ReservationDraft) -> None:
        await self.audit.record(AuditEvent(
            action=AuditAction.BOOKING_STATE_CHANGED,
            tenant_id=draft.tenant_id,
            resource_type="booking",
            resource_id=draft.booking_id,
            session_id=draft.session_id,
            metadata={
                'from_state': draft.previous_state.value if draft.previous_state else None,
                'to_state': draft.state.value,
                'version': draft.version,
            }
        ))

    def _schedule_confirmation(self, appointment: Appointment, draft: ReservationDraft) -> None:
        if self.notifier is None:
            return

        task = asyncio.create_task(self._send_confirmation(appointment, draft))
        self._pending_notifications.add(task)
        task.add_done_callback(self._pending_notifications.discard)

    async def _send_confirmation(self, appointment: Appointment, draft: ReservationDraft) -> None:
        try:
            notice = ConfirmationNotice(
                appointment_id=appointment.id,
                booking_id=draft.booking_id,
                tenant_id=draft.tenant_id,
                doctor_id=draft.doctor_id,
                start=draft.slot_start,
                duration_minutes=draft.duration_minutes,
                contact=self.cipher.decrypt(draft.encrypted_patient_identity)
            )
            sent = await self.notifier.send_booking_confirmation(notice)
            if not sent:
                logger.warning(f"Confirmation for booking {draft.booking_id} was not queued")
        except Exception as e:
            logger.error(f"Failed to send confirmation for booking {draft.booking_id}: {e}", exc_info=True)
