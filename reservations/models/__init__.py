from reservations.models.booking import (
    NON_OCCUPYING_STATUSES,
    Appointment,
    AppointmentStatus,
    AvailabilityWindow,
    BookingDetails,
    BookingState,
    Doctor,
    PatientIdentity,
    ReservationDraft,
    Slot,
)
from reservations.models.results import ReservationError, ReservationResult

__all__ = [
    'NON_OCCUPYING_STATUSES',
    'Appointment',
    'AppointmentStatus',
    'AvailabilityWindow',
    'BookingDetails',
    'BookingState',
    'Doctor',
    'PatientIdentity',
    'ReservationDraft',
    'ReservationError',
    'ReservationResult',
    'Slot',
]
