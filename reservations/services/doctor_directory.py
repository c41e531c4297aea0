"""
Doctor directory - read-only access to doctors and their weekly availability.

The directory is administered by the hospital; the reservation engine never
writes to it.
"""

import logging
from collections import defaultdict
from datetime import time
from typing import Dict, List, Optional, Tuple

from supabase import Client

from reservations.models.booking import AvailabilityWindow, Doctor

logger = logging.getLogger(__name__)


class DoctorDirectory:
    """Abstract directory backend"""

    async def list_doctors(self, tenant_id: str, department: Optional[str] = None) -> List[Doctor]:
        """Active doctors for a tenant, optionally restricted to one department"""
        raise NotImplementedError

    async def list_availability(self, doctor_id: str, day_of_week: int) -> List[AvailabilityWindow]:
        """Availability windows for a doctor on a day of week (0=Sunday)"""
        raise NotImplementedError


class SupabaseDoctorDirectory(DoctorDirectory):
    """Directory backed by healthcare.doctors / healthcare.doctor_availability"""

    def __init__(self, supabase_client: Client):
        self.supabase = supabase_client

    async def list_doctors(self, tenant_id: str, department: Optional[str] = None) -> List[Doctor]:
        query = self.supabase.schema('healthcare').table('doctors').select(
            'id, name, department'
        ).eq(
            'tenant_id', tenant_id
        ).eq(
            'is_active', True
        )
        if department:
            query = query.eq('department', department)

        result = query.execute()
        return [
            Doctor(id=str(row['id']), name=row['name'], department=row.get('department'))
            for row in (result.data or [])
        ]

    async def list_availability(self, doctor_id: str, day_of_week: int) -> List[AvailabilityWindow]:
        result = self.supabase.schema('healthcare').table('doctor_availability').select(
            'doctor_id, day_of_week, start_time, end_time'
        ).eq(
            'doctor_id', doctor_id
        ).eq(
            'day_of_week', day_of_week
        ).execute()

        windows = []
        for row in result.data or []:
            # Parse time strings if needed
            start_time = row['start_time']
            end_time = row['end_time']
            if isinstance(start_time, str):
                start_time = time.fromisoformat(start_time)
            if isinstance(end_time, str):
                end_time = time.fromisoformat(end_time)

            windows.append(AvailabilityWindow(
                doctor_id=str(row['doctor_id']),
                day_of_week=row['day_of_week'],
                start_time=start_time,
                end_time=end_time
            ))
        return windows


class InMemoryDoctorDirectory(DoctorDirectory):
    """Directory held in process memory (local development and tests)"""

    def __init__(self):
        self._doctors: Dict[str, List[Doctor]] = defaultdict(list)
        self._windows: Dict[Tuple[str, int], List[AvailabilityWindow]] = defaultdict(list)

    def add_doctor(self, tenant_id: str, doctor: Doctor) -> None:
        self._doctors[tenant_id].append(doctor)

    def add_window(self, window: AvailabilityWindow) -> None:
        self._windows[(window.doctor_id, window.day_of_week)].append(window)

    async def list_doctors(self, tenant_id: str, department: Optional[str] = None) -> List[Doctor]:
        return [
            doctor for doctor in self._doctors.get(tenant_id, [])
            if department is None or doctor.department == department
        ]

    async def list_availability(self, doctor_id: str, day_of_week: int) -> List[AvailabilityWindow]:
        return list(self._windows.get((doctor_id, day_of_week), []))
