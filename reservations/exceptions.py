"""
Custom exceptions for the reservation engine.

These are internal signals between services. Caller-facing outcomes are
returned as ReservationResult values by the orchestrator, never raised.
"""


class BookingNotFoundError(Exception):
    """Raised when a reservation draft does not exist (never created or expired)."""

    def __init__(self, booking_id: str):
        self.booking_id = booking_id
        super().__init__(f"Booking {booking_id} not found or expired")


class InvalidTransitionError(Exception):
    """Raised when a draft is asked to move along an edge the transition table forbids."""

    def __init__(self, booking_id: str, from_state: str, to_state: str):
        self.booking_id = booking_id
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Invalid state transition for {booking_id}: {from_state} → {to_state}"
        )


class ConcurrentModificationError(Exception):
    """Raised when a draft changed between read and compare-and-swap write."""

    def __init__(self, booking_id: str):
        self.booking_id = booking_id
        super().__init__(f"Booking {booking_id} was modified concurrently")


class SlotAlreadyBookedError(Exception):
    """Raised by the durable store when the unique active-slot constraint rejects an insert."""

    def __init__(self, doctor_id: str = None, message: str = None):
        self.doctor_id = doctor_id
        self.message = message or f"Slot for doctor {doctor_id} is already booked"
        super().__init__(self.message)


class PersistenceError(Exception):
    """Raised when a durable store operation fails for infrastructure reasons."""

    def __init__(self, message: str, cause: Exception = None):
        self.cause = cause
        super().__init__(message)
