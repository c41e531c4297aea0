"""
Reservation engine application entry point.

Run with (needs the `server` extra):
    pip install .[server]
    uvicorn reservations.main:app
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional, Tuple

from dotenv import load_dotenv
from fastapi import FastAPI
from supabase import create_client

from reservations import __version__
from reservations.api import reservations_router
from reservations.config import ReservationSettings, get_redis_client, get_settings
from reservations.security.phi_encryption import PatientIdentityCipher
from reservations.services.appointment_store import InMemoryAppointmentStore, SupabaseAppointmentStore
from reservations.services.audit_service import AuditService, DatabaseAuditSink, LoggingAuditSink
from reservations.services.availability_service import AvailabilityService
from reservations.services.booking_state_machine import BookingStateMachine
from reservations.services.doctor_directory import InMemoryDoctorDirectory, SupabaseDoctorDirectory
from reservations.services.kv_store import KeyValueStore, RedisKeyValueStore
from reservations.services.notification_service import (
    LoggingNotificationDispatcher,
    NotificationDispatcher,
    OutboxNotificationDispatcher,
)
from reservations.services.otp_service import OtpService
from reservations.services.reservation_orchestrator import ReservationOrchestrator
from reservations.services.slot_lock_service import SlotLockService
from reservations.utils.logging_config import configure_logging

load_dotenv()
configure_logging()

logger = logging.getLogger(__name__)


def build_orchestrator(
    settings: ReservationSettings,
    store: KeyValueStore,
    supabase_client=None
) -> Tuple[ReservationOrchestrator, NotificationDispatcher]:
    """
    Wire every reservation service around one ephemeral store.

    Without a Supabase client the durable side runs in process memory, which
    is only suitable for local development.
    """
    if supabase_client is not None:
        directory = SupabaseDoctorDirectory(supabase_client)
        appointment_store = SupabaseAppointmentStore(supabase_client)
        audit = AuditService([LoggingAuditSink(), DatabaseAuditSink(supabase_client)])
        notifier = OutboxNotificationDispatcher(supabase_client)
    else:
        logger.warning("⚠️ No Supabase configured - using in-memory directory and appointment store")
        directory = InMemoryDoctorDirectory()
        appointment_store = InMemoryAppointmentStore()
        audit = AuditService([LoggingAuditSink()])
        notifier = LoggingNotificationDispatcher()

    slot_locks = SlotLockService(store, ttl_seconds=settings.SLOT_LOCK_TTL_SECONDS)

    orchestrator = ReservationOrchestrator(
        availability=AvailabilityService(
            directory,
            appointment_store,
            slot_locks,
            slot_duration_minutes=settings.SLOT_DURATION_MINUTES,
            default_timezone=settings.DEFAULT_TIMEZONE
        ),
        slot_locks=slot_locks,
        otp=OtpService(store, settings),
        state_machine=BookingStateMachine(
            store,
            draft_ttl_seconds=settings.BOOKING_DRAFT_TTL_SECONDS,
            code_ttl_seconds=settings.OTP_TTL_SECONDS
        ),
        appointment_store=appointment_store,
        cipher=PatientIdentityCipher(settings.PHI_ENCRYPTION_KEY),
        audit=audit,
        notifier=notifier
    )
    return orchestrator, notifier


def create_app(
    settings: Optional[ReservationSettings] = None,
    orchestrator: Optional[ReservationOrchestrator] = None,
    notifier: Optional[NotificationDispatcher] = None
) -> FastAPI:
    """
    Create the FastAPI application.

    Passing a prebuilt orchestrator (and notifier) skips Redis/Supabase setup;
    tests use this with in-memory backends.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        redis_client = None

        if orchestrator is not None:
            app.state.orchestrator = orchestrator
            app.state.notifier = notifier or LoggingNotificationDispatcher()
        else:
            app_settings = settings or get_settings()
            redis_client = get_redis_client(app_settings)
            supabase_client = None
            if app_settings.SUPABASE_URL and app_settings.SUPABASE_SERVICE_ROLE_KEY:
                supabase_client = create_client(
                    app_settings.SUPABASE_URL,
                    app_settings.SUPABASE_SERVICE_ROLE_KEY
                )
            app.state.orchestrator, app.state.notifier = build_orchestrator(
                app_settings,
                RedisKeyValueStore(redis_client),
                supabase_client
            )

        logger.info("🚀 Reservation engine ready")
        yield

        await app.state.orchestrator.drain_notifications()
        if redis_client is not None:
            await redis_client.aclose()
        logger.info("Reservation engine stopped")

    app = FastAPI(
        title="Appointment Reservation Engine",
        description="Slot availability, slot locking, code verification and appointment commit.",
        version=__version__,
        lifespan=lifespan,
        redirect_slashes=False,
    )
    app.include_router(reservations_router)

    @app.get("/health", tags=["health"])
    async def health():
        return {"status": "healthy", "version": __version__}

    return app


app = create_app()
