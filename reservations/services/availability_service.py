"""
Availability Service

Turns weekly doctor availability windows into bookable slots for one date.

- Timezone handling with ZoneInfo: windows are tenant-local wall-clock times
- Slots already occupied by an active appointment are removed
- Slots held by a live slot lock are removed (one batched lookup per doctor)
- Slots at or before "now" are removed

Pure read: nothing here writes to any store.
"""

import asyncio
import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable, Iterable, List, Optional, Sequence, Union
from zoneinfo import ZoneInfo

from reservations.models.booking import Doctor, Slot
from reservations.services.appointment_store import AppointmentStore
from reservations.services.doctor_directory import DoctorDirectory
from reservations.services.slot_lock_service import SlotKey, SlotLockService

logger = logging.getLogger(__name__)

DEFAULT_SLOT_DURATION_MINUTES = 15


def day_of_week(day: date) -> int:
    """0=Sunday ... 6=Saturday (Python's weekday() is 0=Monday)."""
    return (day.weekday() + 1) % 7


def _as_date(value: Union[date, str]) -> date:
    if isinstance(value, str):
        return date.fromisoformat(value)
    return value


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_time_slots(
    start_time: time,
    end_time: time,
    slot_duration_minutes: int
) -> List[time]:
    """
    Generate list of time slots between start and end

    Args:
        start_time: Window start time
        end_time: Window end time
        slot_duration_minutes: Duration of each slot

    Returns:
        List of time objects; a slot is included only if it ends by end_time
    """
    slots = []
    current = datetime.combine(date.min, start_time)
    end_dt = datetime.combine(date.min, end_time)

    while current + timedelta(minutes=slot_duration_minutes) <= end_dt:
        slots.append(current.time())
        current += timedelta(minutes=slot_duration_minutes)

    return slots


class AvailabilityService:
    """
    Compute available slots for doctors on a date.

    Usage:
        service = AvailabilityService(directory, appointment_store, slot_locks)
        slots = await service.get_available_slots(tenant_id, doctors, date(2026, 1, 4))
    """

    def __init__(
        self,
        directory: DoctorDirectory,
        appointment_store: AppointmentStore,
        slot_locks: SlotLockService,
        slot_duration_minutes: int = DEFAULT_SLOT_DURATION_MINUTES,
        default_timezone: str = "UTC",
        now: Callable[[], datetime] = _utcnow
    ):
        self.directory = directory
        self.appointment_store = appointment_store
        self.slot_locks = slot_locks
        self.slot_duration_minutes = slot_duration_minutes
        self.default_timezone = default_timezone
        self._now = now

    async def get_doctor_slots(
        self,
        tenant_id: str,
        doctor: Doctor,
        target_date: Union[date, str],
        duration_minutes: Optional[int] = None,
        timezone_name: Optional[str] = None
    ) -> List[Slot]:
        """
        Available slots for one doctor. Any lookup failure yields an empty
        list (logged) rather than an error.
        """
        day = _as_date(target_date)
        duration = duration_minutes or self.slot_duration_minutes
        tz_name = timezone_name or self.default_timezone

        try:
            tenant_tz = ZoneInfo(tz_name)
            windows = await self.directory.list_availability(doctor.id, day_of_week(day))
            if not windows:
                return []

            now = self._now()
            candidates = []
            for window in windows:
                for slot_time in generate_time_slots(window.start_time, window.end_time, duration):
                    start = datetime.combine(day, slot_time, tzinfo=tenant_tz)
                    # Skip past slots
                    if start <= now:
                        continue
                    candidates.append(Slot(
                        doctor_id=doctor.id,
                        doctor_name=doctor.name,
                        department=doctor.department,
                        date=day.isoformat(),
                        time=slot_time.strftime("%H:%M"),
                        start=start,
                        duration_minutes=duration
                    ))

            if not candidates:
                return []

            occupied = {
                start.astimezone(timezone.utc)
                for start in await self.appointment_store.query_appointments(tenant_id, doctor.id, day, tz_name)
            }
            candidates = [slot for slot in candidates if slot.start.astimezone(timezone.utc) not in occupied]

            locked = await self.slot_locks.locked_keys([
                SlotKey(tenant_id, doctor.id, slot.start) for slot in candidates
            ])
            return [slot for slot, is_locked in zip(candidates, locked) if not is_locked]

        except Exception as e:
            logger.error(f"Availability lookup failed for doctor {doctor.id} on {day}: {e}", exc_info=True)
            return []

    async def is_scheduled_slot(
        self,
        doctor_id: str,
        slot_start: datetime,
        duration_minutes: Optional[int] = None,
        timezone_name: Optional[str] = None
    ) -> bool:
        """
        True when (slot_start, duration) is a slot the doctor's weekly windows
        produce, using the same grid as get_doctor_slots.

        Directory errors propagate; the caller decides how to report them.
        """
        duration = duration_minutes or self.slot_duration_minutes
        local_start = slot_start.astimezone(ZoneInfo(timezone_name or self.default_timezone))
        slot_time = local_start.time()

        windows = await self.directory.list_availability(doctor_id, day_of_week(local_start.date()))
        return any(
            slot_time in generate_time_slots(window.start_time, window.end_time, duration)
            for window in windows
        )

    async def get_available_slots(
        self,
        tenant_id: str,
        doctors: Sequence[Doctor],
        target_date: Union[date, str],
        duration_minutes: Optional[int] = None,
        timezone_name: Optional[str] = None
    ) -> List[Slot]:
        """Merged slots for several doctors, sorted by start time then doctor name."""
        per_doctor = await asyncio.gather(*[
            self.get_doctor_slots(tenant_id, doctor, target_date, duration_minutes, timezone_name)
            for doctor in doctors
        ])

        slots = [slot for doctor_slots in per_doctor for slot in doctor_slots]
        slots.sort(key=lambda slot: (slot.start, slot.doctor_name))

        logger.info(f"Found {len(slots)} available slots for {len(doctors)} doctors on {target_date}")
        return slots

    async def resolve_doctors(
        self,
        tenant_id: str,
        doctor_ids: Optional[Iterable[str]] = None,
        department: Optional[str] = None
    ) -> List[Doctor]:
        """Directory doctors for a tenant, narrowed by department and/or id."""
        try:
            doctors = await self.directory.list_doctors(tenant_id, department)
        except Exception as e:
            logger.error(f"Doctor lookup failed for tenant {tenant_id}: {e}", exc_info=True)
            return []

        if doctor_ids is not None:
            wanted = set(doctor_ids)
            doctors = [doctor for doctor in doctors if doctor.id in wanted]
        return doctors

    async def get_department_slots(
        self,
        tenant_id: str,
        department: str,
        target_date: Union[date, str],
        duration_minutes: Optional[int] = None,
        timezone_name: Optional[str] = None
    ) -> List[Slot]:
        doctors = await self.resolve_doctors(tenant_id, department=department)
        if not doctors:
            logger.info(f"No doctors found for department {department} (tenant={tenant_id})")
            return []
        return await self.get_available_slots(tenant_id, doctors, target_date, duration_minutes, timezone_name)
