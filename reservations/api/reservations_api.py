"""
Reservation API

HTTP surface over the ReservationOrchestrator:

    GET  /api/v1/reservations/slots
    POST /api/v1/reservations/bookings
    GET  /api/v1/reservations/bookings/{booking_id}
    POST /api/v1/reservations/bookings/{booking_id}/code
    POST /api/v1/reservations/bookings/{booking_id}/confirm
    POST /api/v1/reservations/bookings/{booking_id}/cancel
    GET  /api/v1/reservations/appointments/{appointment_id}
    POST /api/v1/reservations/appointments/{appointment_id}/cancel

The caller's session arrives in the X-Session-Id header. Verification codes
are handed to the notification dispatcher and never appear in a response;
neither does patient identity.
"""

import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from pydantic import BaseModel, Field, ValidationError, field_validator

from reservations.models.booking import Appointment, BookingDetails, PatientIdentity, Slot
from reservations.models.results import ReservationError, ReservationResult
from reservations.services.notification_service import NotificationDispatcher
from reservations.services.reservation_orchestrator import ReservationOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/reservations", tags=["Reservations"])

ERROR_STATUS_CODES = {
    ReservationError.SLOT_UNAVAILABLE: status.HTTP_409_CONFLICT,
    ReservationError.BOOKING_NOT_IN_EXPECTED_STATE: status.HTTP_409_CONFLICT,
    ReservationError.SLOT_EXPIRED: status.HTTP_410_GONE,
    ReservationError.CODE_EXPIRED: status.HTTP_410_GONE,
    ReservationError.CODE_ATTEMPTS_EXCEEDED: status.HTTP_410_GONE,
    ReservationError.CODE_RATE_LIMITED: status.HTTP_429_TOO_MANY_REQUESTS,
    ReservationError.CODE_INVALID: status.HTTP_400_BAD_REQUEST,
    ReservationError.BOOKING_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ReservationError.UNAUTHORIZED: status.HTTP_403_FORBIDDEN,
    ReservationError.PERSISTENCE_FAILURE: status.HTTP_503_SERVICE_UNAVAILABLE,
}


# Pydantic models for request/response

class InitiateBookingRequest(BaseModel):
    tenant_id: str = Field(..., min_length=1)
    doctor_id: str = Field(..., min_length=1)
    slot_start: datetime
    duration_minutes: int = Field(15, gt=0, le=240)
    patient_name: str = Field(..., min_length=1)
    patient_phone: Optional[str] = None
    patient_email: Optional[str] = None
    timezone: Optional[str] = Field(None, description="Tenant timezone, defaults to the service timezone")

    @field_validator('slot_start')
    @classmethod
    def validate_timezone(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            raise ValueError('slot_start must include a timezone offset')
        return v


class ConfirmRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=16)


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class SlotResponse(BaseModel):
    doctor_id: str
    doctor_name: str
    department: Optional[str] = None
    date: str
    time: str
    start: datetime
    duration_minutes: int


class BookingResponse(BaseModel):
    booking_id: Optional[str] = None
    state: str
    doctor_id: Optional[str] = None
    slot_start: Optional[datetime] = None
    expires_in_seconds: Optional[int] = None


class CodeRequestResponse(BaseModel):
    booking_id: str
    state: str
    channel: str
    delivered: bool
    expires_in_seconds: int


class AppointmentResponse(BaseModel):
    appointment_id: str
    booking_id: Optional[str] = None
    tenant_id: str
    doctor_id: str
    start_timestamp: datetime
    duration_minutes: int
    status: str


def get_orchestrator(request: Request) -> ReservationOrchestrator:
    return request.app.state.orchestrator


def get_notifier(request: Request) -> NotificationDispatcher:
    return request.app.state.notifier


def raise_for_result(result: ReservationResult) -> None:
    """Translate a failed ReservationResult into an HTTPException."""
    if result.success:
        return

    detail: Dict[str, Any] = {"error": result.error.value, "message": result.message}
    headers = None

    if result.retry_after_seconds is not None:
        detail["retry_after_seconds"] = result.retry_after_seconds
        headers = {"Retry-After": str(result.retry_after_seconds)}
    if result.remaining_attempts is not None:
        detail["remaining_attempts"] = result.remaining_attempts

    raise HTTPException(
        status_code=ERROR_STATUS_CODES[result.error],
        detail=detail,
        headers=headers
    )


def _slot_response(slot: Slot) -> SlotResponse:
    return SlotResponse(**slot.model_dump())


def _appointment_response(appointment: Appointment) -> AppointmentResponse:
    return AppointmentResponse(
        appointment_id=appointment.id,
        booking_id=appointment.booking_id,
        tenant_id=appointment.tenant_id,
        doctor_id=appointment.doctor_id,
        start_timestamp=appointment.start_timestamp,
        duration_minutes=appointment.duration_minutes,
        status=appointment.status.value
    )


@router.get("/slots", response_model=List[SlotResponse])
async def list_available_slots(
    tenant_id: str = Query(..., min_length=1),
    target_date: date = Query(..., alias="date"),
    doctor_id: Optional[List[str]] = Query(None),
    department: Optional[str] = Query(None),
    duration_minutes: Optional[int] = Query(None, gt=0, le=240),
    timezone: Optional[str] = Query(None),
    orchestrator: ReservationOrchestrator = Depends(get_orchestrator)
):
    """Available slots for the given doctors and/or department on one date."""
    if not doctor_id and not department:
        raise HTTPException(status_code=422, detail="Provide doctor_id or department")

    if department and not doctor_id:
        slots = await orchestrator.get_department_slots(
            tenant_id, department, target_date, duration_minutes, timezone
        )
    else:
        doctors = await orchestrator.availability.resolve_doctors(tenant_id, doctor_id, department)
        slots = await orchestrator.get_available_slots(
            tenant_id, doctors, target_date, duration_minutes, timezone
        )

    return [_slot_response(slot) for slot in slots]


@router.post("/bookings", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def initiate_booking(
    body: InitiateBookingRequest,
    x_session_id: str = Header(..., min_length=1),
    orchestrator: ReservationOrchestrator = Depends(get_orchestrator)
):
    try:
        details = BookingDetails(
            tenant_id=body.tenant_id,
            doctor_id=body.doctor_id,
            slot_start=body.slot_start,
            duration_minutes=body.duration_minutes,
            patient=PatientIdentity(
                name=body.patient_name,
                phone=body.patient_phone,
                email=body.patient_email
            ),
            timezone_name=body.timezone
        )
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False, include_input=False, include_context=False))

    result = await orchestrator.initiate_booking(details, x_session_id)
    raise_for_result(result)

    return BookingResponse(
        booking_id=result.booking.booking_id,
        state=result.state.value,
        doctor_id=result.booking.doctor_id,
        slot_start=result.booking.slot_start,
        expires_in_seconds=result.expires_in_seconds
    )


@router.get("/bookings/{booking_id}", response_model=BookingResponse)
async def get_booking_status(
    booking_id: str,
    orchestrator: ReservationOrchestrator = Depends(get_orchestrator)
):
    result = await orchestrator.get_booking_status(booking_id)
    raise_for_result(result)

    if result.booking is None:
        return BookingResponse(booking_id=booking_id, state=result.state.value)

    return BookingResponse(
        booking_id=booking_id,
        state=result.state.value,
        doctor_id=result.booking.doctor_id,
        slot_start=result.booking.slot_start
    )


@router.post("/bookings/{booking_id}/code", response_model=CodeRequestResponse)
async def request_code(
    booking_id: str,
    x_session_id: str = Header(..., min_length=1),
    orchestrator: ReservationOrchestrator = Depends(get_orchestrator),
    notifier: NotificationDispatcher = Depends(get_notifier)
):
    """Issue a verification code and hand it to the dispatcher."""
    result = await orchestrator.request_code(booking_id, x_session_id)
    raise_for_result(result)

    delivered = False
    try:
        delivered = await notifier.send_verification_code(
            booking_id,
            result.booking.tenant_id,
            result.contact,
            result.code
        )
    except Exception as e:
        # The caller can ask for a resend; the code stays valid until it expires
        logger.error(f"Failed to dispatch verification code for booking {booking_id}: {e}", exc_info=True)

    return CodeRequestResponse(
        booking_id=booking_id,
        state=result.state.value,
        channel=result.contact.contact_channel,
        delivered=delivered,
        expires_in_seconds=result.expires_in_seconds
    )


@router.post("/bookings/{booking_id}/confirm", response_model=AppointmentResponse)
async def confirm_booking(
    booking_id: str,
    body: ConfirmRequest,
    x_session_id: str = Header(..., min_length=1),
    orchestrator: ReservationOrchestrator = Depends(get_orchestrator)
):
    result = await orchestrator.confirm_with_code(booking_id, body.code, x_session_id)
    raise_for_result(result)
    return _appointment_response(result.appointment)


@router.post("/bookings/{booking_id}/cancel", response_model=BookingResponse)
async def cancel_booking(
    booking_id: str,
    body: CancelRequest = CancelRequest(),
    x_session_id: str = Header(..., min_length=1),
    orchestrator: ReservationOrchestrator = Depends(get_orchestrator)
):
    result = await orchestrator.cancel_booking(booking_id, x_session_id, body.reason)
    raise_for_result(result)
    return BookingResponse(booking_id=booking_id, state=result.state.value)


@router.get("/appointments/{appointment_id}", response_model=AppointmentResponse)
async def get_appointment(
    appointment_id: str,
    tenant_id: str = Query(..., min_length=1),
    orchestrator: ReservationOrchestrator = Depends(get_orchestrator)
):
    result = await orchestrator.get_appointment(appointment_id, tenant_id)
    raise_for_result(result)
    return _appointment_response(result.appointment)


@router.post("/appointments/{appointment_id}/cancel", response_model=AppointmentResponse)
async def cancel_appointment(
    appointment_id: str,
    body: CancelRequest = CancelRequest(),
    tenant_id: str = Query(..., min_length=1),
    orchestrator: ReservationOrchestrator = Depends(get_orchestrator)
):
    result = await orchestrator.cancel_appointment(appointment_id, tenant_id, body.reason)
    raise_for_result(result)
    return _appointment_response(result.appointment)
