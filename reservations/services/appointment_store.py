"""
Durable appointment store.

The only write path is the orchestrator's commit step. The database carries a
unique partial index on (tenant_id, doctor_id, start_timestamp) for active
statuses, so even a caller that somehow bypassed the slot lock cannot double
book; that violation surfaces here as SlotAlreadyBookedError.
"""

import logging
import uuid
from datetime import datetime, time, timedelta, timezone
from datetime import date as date_type
from typing import Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

from supabase import Client

from reservations.exceptions import PersistenceError, SlotAlreadyBookedError
from reservations.models.booking import NON_OCCUPYING_STATUSES, Appointment, AppointmentStatus

logger = logging.getLogger(__name__)


def _is_unique_violation(error: Exception) -> bool:
    return '23505' in str(error) or 'duplicate key' in str(error).lower()


def local_day_bounds(day: date_type, timezone_name: str = "UTC") -> Tuple[datetime, datetime]:
    """UTC [start, end) covering one calendar day in the given timezone."""
    tz = ZoneInfo(timezone_name)
    start = datetime.combine(day, time.min, tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


class AppointmentStore:
    """Abstract durable store"""

    async def insert_appointment(self, appointment: Appointment) -> str:
        """
        Persist an appointment and return its id.

        Raises:
            SlotAlreadyBookedError: Active appointment already occupies the slot
            PersistenceError: Any other failure
        """
        raise NotImplementedError

    async def query_appointments(
        self,
        tenant_id: str,
        doctor_id: str,
        day: date_type,
        timezone_name: str = "UTC"
    ) -> List[datetime]:
        """Start times of slot-occupying appointments for a doctor on a local day."""
        raise NotImplementedError

    async def get_appointment(self, appointment_id: str, tenant_id: str) -> Optional[Appointment]:
        raise NotImplementedError

    async def update_status(self, appointment_id: str, tenant_id: str, status: AppointmentStatus) -> bool:
        """Returns False when no appointment with that id exists for the tenant."""
        raise NotImplementedError


class SupabaseAppointmentStore(AppointmentStore):
    """healthcare.appointments via the Supabase client"""

    def __init__(self, supabase_client: Client):
        self.supabase = supabase_client

    def _table(self):
        return self.supabase.schema('healthcare').table('appointments')

    async def insert_appointment(self, appointment: Appointment) -> str:
        row = {
            'id': appointment.id or str(uuid.uuid4()),
            'tenant_id': appointment.tenant_id,
            'doctor_id': appointment.doctor_id,
            'start_timestamp': appointment.start_timestamp.astimezone(timezone.utc).isoformat(),
            'duration_minutes': appointment.duration_minutes,
            'encrypted_patient_identity': appointment.encrypted_patient_identity,
            'status': appointment.status.value,
            'booking_id': appointment.booking_id,
            'created_at': appointment.created_at.isoformat(),
        }

        try:
            result = self._table().insert(row).execute()
        except Exception as e:
            if _is_unique_violation(e):
                logger.warning(
                    f"Unique slot constraint rejected booking {appointment.booking_id} "
                    f"for doctor {appointment.doctor_id}"
                )
                raise SlotAlreadyBookedError(doctor_id=appointment.doctor_id) from e
            raise PersistenceError(f"Failed to insert appointment: {e}", cause=e) from e

        if not result.data:
            raise PersistenceError("Appointment insert returned no data")

        return str(result.data[0]['id'])

    async def query_appointments(
        self,
        tenant_id: str,
        doctor_id: str,
        day: date_type,
        timezone_name: str = "UTC"
    ) -> List[datetime]:
        day_start, day_end = local_day_bounds(day, timezone_name)

        query = self._table().select(
            'start_timestamp'
        ).eq(
            'tenant_id', tenant_id
        ).eq(
            'doctor_id', doctor_id
        ).gte(
            'start_timestamp', day_start.isoformat()
        ).lt(
            'start_timestamp', day_end.isoformat()
        )
        for status in NON_OCCUPYING_STATUSES:
            query = query.neq('status', status.value)

        try:
            result = query.execute()
        except Exception as e:
            raise PersistenceError(f"Failed to query appointments: {e}", cause=e) from e

        return [
            datetime.fromisoformat(row['start_timestamp'].replace('Z', '+00:00'))
            for row in (result.data or [])
        ]

    async def get_appointment(self, appointment_id: str, tenant_id: str) -> Optional[Appointment]:
        try:
            result = self._table().select('*').eq(
                'id', appointment_id
            ).eq(
                'tenant_id', tenant_id
            ).limit(1).execute()
        except Exception as e:
            raise PersistenceError(f"Failed to load appointment: {e}", cause=e) from e

        if not result.data:
            return None

        row = result.data[0]
        return Appointment(
            id=str(row['id']),
            tenant_id=row['tenant_id'],
            doctor_id=str(row['doctor_id']),
            start_timestamp=datetime.fromisoformat(row['start_timestamp'].replace('Z', '+00:00')),
            duration_minutes=row.get('duration_minutes') or 15,
            encrypted_patient_identity=row['encrypted_patient_identity'],
            status=AppointmentStatus(row['status']),
            booking_id=row.get('booking_id'),
            created_at=datetime.fromisoformat(row['created_at'].replace('Z', '+00:00')),
        )

    async def update_status(self, appointment_id: str, tenant_id: str, status: AppointmentStatus) -> bool:
        try:
            result = self._table().update({
                'status': status.value,
                'updated_at': datetime.now(timezone.utc).isoformat()
            }).eq(
                'id', appointment_id
            ).eq(
                'tenant_id', tenant_id
            ).execute()
        except Exception as e:
            raise PersistenceError(f"Failed to update appointment status: {e}", cause=e) from e

        return bool(result.data)


class InMemoryAppointmentStore(AppointmentStore):
    """
    Process-local store enforcing the same unique active-slot rule as the
    database index. Used in tests and local development.
    """

    def __init__(self):
        self._appointments: Dict[str, Appointment] = {}

    def _occupies(self, appointment: Appointment) -> bool:
        return appointment.status not in NON_OCCUPYING_STATUSES

    async def insert_appointment(self, appointment: Appointment) -> str:
        start = appointment.start_timestamp.astimezone(timezone.utc)
        for existing in self._appointments.values():
            if (
                existing.tenant_id == appointment.tenant_id
                and existing.doctor_id == appointment.doctor_id
                and existing.start_timestamp.astimezone(timezone.utc) == start
                and self._occupies(existing)
            ):
                raise SlotAlreadyBookedError(doctor_id=appointment.doctor_id)

        appointment_id = appointment.id or str(uuid.uuid4())
        self._appointments[appointment_id] = appointment.model_copy(update={'id': appointment_id})
        return appointment_id

    async def query_appointments(
        self,
        tenant_id: str,
        doctor_id: str,
        day: date_type,
        timezone_name: str = "UTC"
    ) -> List[datetime]:
        day_start, day_end = local_day_bounds(day, timezone_name)
        return [
            appointment.start_timestamp
            for appointment in self._appointments.values()
            if appointment.tenant_id == tenant_id
            and appointment.doctor_id == doctor_id
            and self._occupies(appointment)
            and day_start <= appointment.start_timestamp < day_end
        ]

    async def get_appointment(self, appointment_id: str, tenant_id: str) -> Optional[Appointment]:
        appointment = self._appointments.get(appointment_id)
        if appointment is None or appointment.tenant_id != tenant_id:
            return None
        return appointment

    async def update_status(self, appointment_id: str, tenant_id: str, status: AppointmentStatus) -> bool:
        appointment = await self.get_appointment(appointment_id, tenant_id)
        if appointment is None:
            return False
        self._appointments[appointment_id] = appointment.model_copy(update={'status': status})
        return True
