"""
Shared fixtures for the reservation engine tests.

Everything runs against the in-memory backends with a fake clock, so TTL
expiry is tested by moving time forward instead of sleeping.
"""

from datetime import date, datetime, time, timedelta, timezone
from typing import Dict, List

import pytest
from cryptography.fernet import Fernet

from reservations.config import ReservationSettings
from reservations.models.booking import AvailabilityWindow, BookingDetails, Doctor, PatientIdentity
from reservations.security.phi_encryption import PatientIdentityCipher
from reservations.services.appointment_store import InMemoryAppointmentStore
from reservations.services.audit_service import AuditEvent, AuditService, AuditSink
from reservations.services.availability_service import AvailabilityService
from reservations.services.booking_state_machine import BookingStateMachine
from reservations.services.doctor_directory import InMemoryDoctorDirectory
from reservations.services.kv_store import InMemoryKeyValueStore
from reservations.services.notification_service import ConfirmationNotice, NotificationDispatcher
from reservations.services.otp_service import OtpService
from reservations.services.reservation_orchestrator import ReservationOrchestrator
from reservations.services.slot_lock_service import SlotLockService

TENANT_ID = "tenant-a"
OTHER_TENANT_ID = "tenant-b"
DOCTOR_ID = "doc-1"
SECOND_DOCTOR_ID = "doc-2"
# Thursday 2026-01-01 08:00 UTC
START_OF_TESTS = datetime(2026, 1, 1, 8, 0, tzinfo=timezone.utc)
SUNDAY = date(2026, 1, 4)
SUNDAY_9AM = datetime(2026, 1, 4, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Controllable wall clock shared by every service under test"""

    def __init__(self, start: datetime = START_OF_TESTS):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def time(self) -> float:
        return self.current.timestamp()

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


class RecordingAuditSink(AuditSink):
    def __init__(self):
        self.events: List[AuditEvent] = []

    async def write(self, event: AuditEvent) -> None:
        self.events.append(event)

    def actions(self) -> List[str]:
        return [event.action.value for event in self.events]


class RecordingNotifier(NotificationDispatcher):
    def __init__(self):
        self.codes: Dict[str, str] = {}
        self.confirmations: List[ConfirmationNotice] = []

    async def send_verification_code(self, booking_id, tenant_id, contact, code) -> bool:
        self.codes[booking_id] = code
        return True

    async def send_booking_confirmation(self, notice: ConfirmationNotice) -> bool:
        self.confirmations.append(notice)
        return True


def make_settings(**overrides) -> ReservationSettings:
    values = {
        'OTP_HASH_SECRET': "s" * 32,
        'PHI_ENCRYPTION_KEY': Fernet.generate_key().decode(),
        'ENVIRONMENT': "test",
    }
    values.update(overrides)
    return ReservationSettings(_env_file=None, **values)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def kv_store(clock):
    return InMemoryKeyValueStore(clock=clock.time)


@pytest.fixture
def slot_locks(kv_store, settings):
    return SlotLockService(kv_store, ttl_seconds=settings.SLOT_LOCK_TTL_SECONDS)


@pytest.fixture
def otp_service(kv_store, settings):
    return OtpService(kv_store, settings)


@pytest.fixture
def state_machine(kv_store, settings, clock):
    return BookingStateMachine(
        kv_store,
        draft_ttl_seconds=settings.BOOKING_DRAFT_TTL_SECONDS,
        code_ttl_seconds=settings.OTP_TTL_SECONDS,
        now=clock.now
    )


@pytest.fixture
def doctor():
    return Doctor(id=DOCTOR_ID, name="Dr. Ana Silva", department="cardiology")


@pytest.fixture
def second_doctor():
    return Doctor(id=SECOND_DOCTOR_ID, name="Dr. Bruno Costa", department="cardiology")


@pytest.fixture
def directory(doctor, second_doctor):
    """doc-1 works Sun-Thu 09:00-17:00; doc-2 works Sunday 09:00-10:00"""
    directory = InMemoryDoctorDirectory()
    directory.add_doctor(TENANT_ID, doctor)
    directory.add_doctor(TENANT_ID, second_doctor)
    for day in range(0, 5):
        directory.add_window(AvailabilityWindow(
            doctor_id=DOCTOR_ID, day_of_week=day, start_time=time(9, 0), end_time=time(17, 0)
        ))
    directory.add_window(AvailabilityWindow(
        doctor_id=SECOND_DOCTOR_ID, day_of_week=0, start_time=time(9, 0), end_time=time(10, 0)
    ))
    return directory


@pytest.fixture
def appointment_store():
    return InMemoryAppointmentStore()


@pytest.fixture
def availability(directory, appointment_store, slot_locks, clock):
    return AvailabilityService(directory, appointment_store, slot_locks, now=clock.now)


@pytest.fixture
def cipher(settings):
    return PatientIdentityCipher(settings.PHI_ENCRYPTION_KEY)


@pytest.fixture
def audit_sink():
    return RecordingAuditSink()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def orchestrator(availability, slot_locks, otp_service, state_machine, appointment_store, cipher, audit_sink, notifier, clock):
    return ReservationOrchestrator(
        availability=availability,
        slot_locks=slot_locks,
        otp=otp_service,
        state_machine=state_machine,
        appointment_store=appointment_store,
        cipher=cipher,
        audit=AuditService([audit_sink]),
        notifier=notifier,
        now=clock.now
    )


@pytest.fixture
def patient():
    return PatientIdentity(name="Maria Lopez", phone="+15551234567")


@pytest.fixture
def booking_details(patient):
    return BookingDetails(
        tenant_id=TENANT_ID,
        doctor_id=DOCTOR_ID,
        slot_start=SUNDAY_9AM,
        duration_minutes=15,
        patient=patient
    )
