"""
Pydantic models for the reservation engine.
"""

from datetime import datetime, time, timedelta, timezone
from enum import Enum
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator, model_validator


class BookingState(str, Enum):
    """Lifecycle states of a reservation draft."""
    INITIATED = "INITIATED"
    AWAITING_CODE = "AWAITING_CODE"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


class AppointmentStatus(str, Enum):
    """Status of a durable appointment record."""
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    COMPLETED = "completed"
    NO_SHOW = "no_show"
    CHECKED_IN = "checked_in"
    ARCHIVED = "archived"


# Statuses that free the slot for a new booking
NON_OCCUPYING_STATUSES = frozenset({AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW})


class Doctor(BaseModel):
    """Doctor as listed by the tenant directory."""
    id: str = Field(..., description="Doctor identifier")
    name: str = Field(..., description="Display name")
    department: Optional[str] = Field(None, description="Department name")


class AvailabilityWindow(BaseModel):
    """Weekly recurring availability window (0=Sunday ... 6=Saturday)."""
    doctor_id: str = Field(..., description="Doctor identifier")
    day_of_week: int = Field(..., ge=0, le=6, description="Day of week, 0=Sunday")
    start_time: time = Field(..., description="Window start (local time)")
    end_time: time = Field(..., description="Window end (local time)")

    @model_validator(mode='after')
    def validate_window(self) -> 'AvailabilityWindow':
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


class Slot(BaseModel):
    """A bookable candidate, computed on demand and never persisted."""
    doctor_id: str = Field(..., description="Doctor identifier")
    doctor_name: str = Field(..., description="Doctor display name")
    department: Optional[str] = Field(None, description="Department name")
    date: str = Field(..., description="Slot date, YYYY-MM-DD (tenant local)")
    time: str = Field(..., description="Slot start, HH:MM (tenant local)")
    start: datetime = Field(..., description="Timezone-aware slot start")
    duration_minutes: int = Field(..., gt=0, description="Slot length")

    @property
    def end(self) -> datetime:
        return self.start + timedelta(minutes=self.duration_minutes)


class PatientIdentity(BaseModel):
    """Contact identity of the patient. Treated as PHI everywhere."""
    name: str = Field(..., min_length=1)
    phone: Optional[str] = None
    email: Optional[str] = None

    @model_validator(mode='after')
    def require_contact(self) -> 'PatientIdentity':
        if not (self.phone or self.email):
            raise ValueError("Either phone or email is required")
        return self

    @property
    def contact_identifier(self) -> str:
        """Identifier used for code delivery and rate limiting (phone preferred)."""
        return (self.phone or self.email).strip().lower()

    @property
    def contact_channel(self) -> str:
        return "sms" if self.phone else "email"


def _require_aware(value: datetime) -> datetime:
    if value.tzinfo is None or value.utcoffset() is None:
        raise ValueError("datetime must be timezone-aware")
    return value


class BookingDetails(BaseModel):
    """Input for initiating a reservation."""
    tenant_id: str = Field(..., min_length=1)
    doctor_id: str = Field(..., min_length=1)
    slot_start: datetime = Field(..., description="Timezone-aware slot start")
    duration_minutes: int = Field(15, gt=0)
    patient: PatientIdentity
    timezone_name: Optional[str] = Field(None, description="Tenant timezone the weekly windows are in")

    @field_validator('slot_start')
    @classmethod
    def validate_slot_start(cls, v: datetime) -> datetime:
        return _require_aware(v)

    @field_validator('timezone_name')
    @classmethod
    def validate_timezone_name(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone: {v}") from exc
        return v


class ReservationDraft(BaseModel):
    """In-flight reservation attempt held in the ephemeral store."""
    booking_id: str
    tenant_id: str
    doctor_id: str
    slot_start: datetime
    duration_minutes: int
    encrypted_patient_identity: str
    state: BookingState
    session_id: str
    previous_state: Optional[BookingState] = None
    created_at: datetime
    updated_at: datetime
    code_requested_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    version: int = 0


class Appointment(BaseModel):
    """Durable appointment record."""
    id: Optional[str] = None
    tenant_id: str
    doctor_id: str
    start_timestamp: datetime
    duration_minutes: int = 15
    encrypted_patient_identity: str
    status: AppointmentStatus = AppointmentStatus.CONFIRMED
    booking_id: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator('start_timestamp')
    @classmethod
    def validate_start(cls, v: datetime) -> datetime:
        return _require_aware(v)
