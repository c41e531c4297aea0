"""
Tests for slot availability
"""

from datetime import date, datetime, time, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from reservations.models.booking import Appointment, AppointmentStatus
from reservations.services.availability_service import (
    AvailabilityService,
    day_of_week,
    generate_time_slots,
)
from reservations.services.slot_lock_service import SlotKey

from tests.conftest import DOCTOR_ID, SECOND_DOCTOR_ID, SUNDAY, SUNDAY_9AM, TENANT_ID


class TestHelpers:

    def test_day_of_week_is_sunday_based(self):
        assert day_of_week(date(2026, 1, 4)) == 0  # Sunday
        assert day_of_week(date(2026, 1, 5)) == 1  # Monday
        assert day_of_week(date(2026, 1, 10)) == 6  # Saturday

    def test_generate_time_slots_fits_inside_window(self):
        slots = generate_time_slots(time(9, 0), time(10, 0), 15)
        assert slots == [time(9, 0), time(9, 15), time(9, 30), time(9, 45)]

    def test_partial_trailing_slot_is_dropped(self):
        assert generate_time_slots(time(9, 0), time(9, 40), 15) == [time(9, 0), time(9, 15)]

    def test_window_shorter_than_duration(self):
        assert generate_time_slots(time(9, 0), time(9, 10), 15) == []


class TestGetAvailableSlots:

    @pytest.mark.asyncio
    async def test_sunday_starts_at_nine(self, availability, doctor):
        slots = await availability.get_available_slots(TENANT_ID, [doctor], SUNDAY)

        assert slots[0].time == "09:00"
        assert slots[-1].time == "16:45"
        assert len(slots) == 32
        assert all(slot.date == "2026-01-04" for slot in slots)

    @pytest.mark.asyncio
    async def test_no_window_no_slots(self, availability, doctor):
        saturday = date(2026, 1, 10)
        assert await availability.get_available_slots(TENANT_ID, [doctor], saturday) == []

    @pytest.mark.asyncio
    async def test_sorted_by_time_then_doctor_name(self, availability, doctor, second_doctor):
        slots = await availability.get_available_slots(TENANT_ID, [doctor, second_doctor], SUNDAY)

        assert [(s.time, s.doctor_name) for s in slots[:4]] == [
            ("09:00", "Dr. Ana Silva"),
            ("09:00", "Dr. Bruno Costa"),
            ("09:15", "Dr. Ana Silva"),
            ("09:15", "Dr. Bruno Costa"),
        ]

    @pytest.mark.asyncio
    async def test_accepts_iso_date_string(self, availability, doctor):
        slots = await availability.get_available_slots(TENANT_ID, [doctor], "2026-01-04")
        assert slots[0].time == "09:00"

    @pytest.mark.asyncio
    async def test_booked_slot_is_excluded(self, availability, appointment_store, doctor):
        await appointment_store.insert_appointment(Appointment(
            tenant_id=TENANT_ID,
            doctor_id=DOCTOR_ID,
            start_timestamp=SUNDAY_9AM,
            encrypted_patient_identity="ciphertext"
        ))

        slots = await availability.get_available_slots(TENANT_ID, [doctor], SUNDAY)
        assert "09:00" not in [slot.time for slot in slots]
        assert slots[0].time == "09:15"

    @pytest.mark.asyncio
    async def test_cancelled_appointment_does_not_occupy(self, availability, appointment_store, doctor):
        await appointment_store.insert_appointment(Appointment(
            tenant_id=TENANT_ID,
            doctor_id=DOCTOR_ID,
            start_timestamp=SUNDAY_9AM,
            encrypted_patient_identity="ciphertext",
            status=AppointmentStatus.CANCELLED
        ))

        slots = await availability.get_available_slots(TENANT_ID, [doctor], SUNDAY)
        assert slots[0].time == "09:00"

    @pytest.mark.asyncio
    async def test_other_tenants_appointments_are_ignored(self, availability, appointment_store, doctor):
        await appointment_store.insert_appointment(Appointment(
            tenant_id="tenant-b",
            doctor_id=DOCTOR_ID,
            start_timestamp=SUNDAY_9AM,
            encrypted_patient_identity="ciphertext"
        ))

        slots = await availability.get_available_slots(TENANT_ID, [doctor], SUNDAY)
        assert slots[0].time == "09:00"

    @pytest.mark.asyncio
    async def test_locked_slot_is_excluded(self, availability, slot_locks, doctor):
        await slot_locks.acquire(SlotKey(TENANT_ID, DOCTOR_ID, SUNDAY_9AM + timedelta(minutes=15)), "session-1")

        times = [slot.time for slot in await availability.get_available_slots(TENANT_ID, [doctor], SUNDAY)]
        assert "09:00" in times
        assert "09:15" not in times

    @pytest.mark.asyncio
    async def test_past_slots_today_are_excluded(self, directory, appointment_store, slot_locks, doctor):
        # Sunday 10:20 UTC
        now = datetime(2026, 1, 4, 10, 20, tzinfo=timezone.utc)
        service = AvailabilityService(directory, appointment_store, slot_locks, now=lambda: now)

        slots = await service.get_available_slots(TENANT_ID, [doctor], SUNDAY)
        assert slots[0].time == "10:30"

    @pytest.mark.asyncio
    async def test_slot_starting_exactly_now_is_excluded(self, directory, appointment_store, slot_locks, doctor):
        now = datetime(2026, 1, 4, 10, 30, tzinfo=timezone.utc)
        service = AvailabilityService(directory, appointment_store, slot_locks, now=lambda: now)

        slots = await service.get_available_slots(TENANT_ID, [doctor], SUNDAY)
        assert slots[0].time == "10:45"

    @pytest.mark.asyncio
    async def test_tenant_timezone(self, availability, doctor):
        slots = await availability.get_available_slots(
            TENANT_ID, [doctor], SUNDAY, timezone_name="America/Mexico_City"
        )

        # 09:00 in Mexico City (UTC-6) is 15:00 UTC
        assert slots[0].time == "09:00"
        assert slots[0].start.astimezone(timezone.utc) == datetime(2026, 1, 4, 15, 0, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_custom_duration(self, availability, second_doctor):
        slots = await availability.get_available_slots(TENANT_ID, [second_doctor], SUNDAY, duration_minutes=30)
        assert [slot.time for slot in slots] == ["09:00", "09:30"]
        assert all(slot.duration_minutes == 30 for slot in slots)



class TestIsScheduledSlot:

    @pytest.mark.asyncio
    async def test_generated_slot_is_scheduled(self, availability):
        assert await availability.is_scheduled_slot(DOCTOR_ID, SUNDAY_9AM + timedelta(minutes=45))

    @pytest.mark.asyncio
    async def test_off_grid_start_is_not_scheduled(self, availability):
        assert not await availability.is_scheduled_slot(DOCTOR_ID, SUNDAY_9AM + timedelta(minutes=7))

    @pytest.mark.asyncio
    async def test_day_without_window_is_not_scheduled(self, availability):
        saturday = datetime(2026, 1, 3, 9, 0, tzinfo=timezone.utc)
        assert not await availability.is_scheduled_slot(DOCTOR_ID, saturday)

    @pytest.mark.asyncio
    async def test_grid_uses_the_given_duration(self, availability):
        assert await availability.is_scheduled_slot(SECOND_DOCTOR_ID, SUNDAY_9AM + timedelta(minutes=30), 30)
        assert not await availability.is_scheduled_slot(SECOND_DOCTOR_ID, SUNDAY_9AM + timedelta(minutes=45), 30)

    @pytest.mark.asyncio
    async def test_start_is_read_in_tenant_timezone(self, availability):
        mexico_nine = datetime(2026, 1, 4, 15, 0, tzinfo=timezone.utc)

        assert await availability.is_scheduled_slot(DOCTOR_ID, mexico_nine, timezone_name="America/Mexico_City")
        assert not await availability.is_scheduled_slot(DOCTOR_ID, SUNDAY_9AM, timezone_name="America/Mexico_City")

    @pytest.mark.asyncio
    async def test_directory_errors_propagate(self, availability, directory):
        directory.list_availability = AsyncMock(side_effect=ConnectionError("directory unavailable"))

        with pytest.raises(ConnectionError):
            await availability.is_scheduled_slot(DOCTOR_ID, SUNDAY_9AM)


class TestLookupFailures:

    @pytest.mark.asyncio
    async def test_directory_failure_yields_no_slots(self, availability, directory, doctor, second_doctor):
        original = directory.list_availability

        async def failing_for_first_doctor(doctor_id, day):
            if doctor_id == DOCTOR_ID:
                raise ConnectionError("directory unavailable")
            return await original(doctor_id, day)

        directory.list_availability = failing_for_first_doctor

        slots = await availability.get_available_slots(TENANT_ID, [doctor, second_doctor], SUNDAY)
        assert {slot.doctor_id for slot in slots} == {SECOND_DOCTOR_ID}

    @pytest.mark.asyncio
    async def test_occupancy_failure_yields_no_slots(self, availability, appointment_store, doctor):
        appointment_store.query_appointments = AsyncMock(side_effect=RuntimeError("db down"))

        assert await availability.get_available_slots(TENANT_ID, [doctor], SUNDAY) == []

    @pytest.mark.asyncio
    async def test_unknown_timezone_yields_no_slots(self, availability, doctor):
        assert await availability.get_available_slots(TENANT_ID, [doctor], SUNDAY, timezone_name="Not/AZone") == []


class TestDepartmentSlots:

    @pytest.mark.asyncio
    async def test_department_resolves_doctors(self, availability):
        slots = await availability.get_department_slots(TENANT_ID, "cardiology", SUNDAY)
        assert {slot.doctor_id for slot in slots} == {DOCTOR_ID, SECOND_DOCTOR_ID}

    @pytest.mark.asyncio
    async def test_unknown_department(self, availability):
        assert await availability.get_department_slots(TENANT_ID, "dermatology", SUNDAY) == []

    @pytest.mark.asyncio
    async def test_resolve_doctors_by_id(self, availability):
        doctors = await availability.resolve_doctors(TENANT_ID, [SECOND_DOCTOR_ID])
        assert [d.id for d in doctors] == [SECOND_DOCTOR_ID]

    @pytest.mark.asyncio
    async def test_directory_failure_resolves_to_nobody(self, availability, directory):
        directory.list_doctors = AsyncMock(side_effect=ConnectionError("down"))
        assert await availability.resolve_doctors(TENANT_ID) == []
