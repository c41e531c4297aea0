"""
Typed outcomes returned by the reservation orchestrator.

Caller-facing rejections are values, not exceptions, and their messages are
safe to render directly to an end user.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from reservations.models.booking import (
    Appointment,
    BookingState,
    PatientIdentity,
    ReservationDraft,
)


class ReservationError(str, Enum):
    """Reasons a reservation operation did not succeed."""
    SLOT_UNAVAILABLE = "slot_unavailable"
    SLOT_EXPIRED = "slot_expired"
    CODE_RATE_LIMITED = "code_rate_limited"
    CODE_INVALID = "code_invalid"
    CODE_EXPIRED = "code_expired"
    CODE_ATTEMPTS_EXCEEDED = "code_attempts_exceeded"
    BOOKING_NOT_FOUND = "booking_not_found"
    BOOKING_NOT_IN_EXPECTED_STATE = "booking_not_in_expected_state"
    UNAUTHORIZED = "unauthorized"
    PERSISTENCE_FAILURE = "persistence_failure"


USER_MESSAGES = {
    ReservationError.SLOT_UNAVAILABLE: "This slot is no longer available. Please choose another time.",
    ReservationError.SLOT_EXPIRED: "Your hold on this slot has expired. Please start the booking again.",
    ReservationError.CODE_RATE_LIMITED: "Too many codes requested. Please try again later.",
    ReservationError.CODE_INVALID: "Invalid code.",
    ReservationError.CODE_EXPIRED: "Code expired. Please request a new one.",
    ReservationError.CODE_ATTEMPTS_EXCEEDED: "Too many failed attempts. Please request a new code.",
    ReservationError.BOOKING_NOT_FOUND: "Booking not found or expired.",
    ReservationError.BOOKING_NOT_IN_EXPECTED_STATE: "This booking cannot be changed in its current state.",
    ReservationError.UNAUTHORIZED: "Unauthorized.",
    ReservationError.PERSISTENCE_FAILURE: "We could not save your booking. Please try again.",
}


@dataclass(frozen=True)
class ReservationResult:
    """Outcome of an orchestrator operation."""
    success: bool
    error: Optional[ReservationError] = None
    message: Optional[str] = None
    booking: Optional[ReservationDraft] = None
    appointment: Optional[Appointment] = None
    state: Optional[BookingState] = None
    # Populated by request_code for out-of-band delivery; never rendered
    code: Optional[str] = None
    contact: Optional[PatientIdentity] = None
    expires_in_seconds: Optional[int] = None
    retry_after_seconds: Optional[int] = None
    remaining_attempts: Optional[int] = None

    @classmethod
    def ok(cls, **kwargs) -> 'ReservationResult':
        return cls(success=True, **kwargs)

    @classmethod
    def fail(cls, error: ReservationError, message: Optional[str] = None, **kwargs) -> 'ReservationResult':
        return cls(success=False, error=error, message=message or USER_MESSAGES[error], **kwargs)

    @property
    def is_operational_failure(self) -> bool:
        """True only for infrastructure failures (retryable, not the caller's fault)."""
        return self.error is ReservationError.PERSISTENCE_FAILURE
