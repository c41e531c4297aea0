"""
One-Time Code Service

Issues and verifies short numeric codes that gate a reservation.

Security properties:
- codes come from `secrets`, never `random`
- only an HMAC of the code is stored, salted with OTP_HASH_SECRET and bound to
  the booking id, so a leaked store snapshot cannot be replayed elsewhere
- verification compares in constant time and a match is consumed atomically,
  so a code can confirm at most once
- generation is rate limited per contact with a sliding window keyed by a
  salted hash of the contact (the contact itself never reaches the store)
"""

import hashlib
import hmac
import logging
import secrets
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from reservations.config import ReservationSettings
from reservations.services.kv_store import KeyValueStore

logger = logging.getLogger(__name__)

OTP_PREFIX = "otp"
OTP_ATTEMPTS_PREFIX = "otp:attempts"
OTP_RATE_LIMIT_PREFIX = "otp:ratelimit"


class OtpStatus(str, Enum):
    VALID = "valid"
    INVALID = "invalid"
    EXPIRED = "expired"
    ATTEMPTS_EXCEEDED = "attempts_exceeded"


@dataclass(frozen=True)
class OtpGeneration:
    """Result of a generate call. `code` is plaintext and must only be delivered out-of-band."""
    success: bool
    code: Optional[str] = None
    expires_in_seconds: int = 0
    rate_limited: bool = False
    retry_after_seconds: int = 0


@dataclass(frozen=True)
class OtpVerification:
    status: OtpStatus
    remaining_attempts: int = 0

    @property
    def is_valid(self) -> bool:
        return self.status is OtpStatus.VALID


class OtpService:
    """
    Generate and verify one-time codes.

    Usage:
        otp = OtpService(store, settings)
        generation = await otp.generate(booking_id, "+15551234567")
        if generation.success:
            deliver(generation.code)
        verification = await otp.verify(booking_id, submitted_code)
    """

    def __init__(self, store: KeyValueStore, settings: ReservationSettings):
        self.store = store
        self.code_length = settings.OTP_LENGTH
        self.ttl_seconds = settings.OTP_TTL_SECONDS
        self.max_attempts = settings.OTP_MAX_VERIFY_ATTEMPTS
        self.rate_limit_max = settings.OTP_RATE_LIMIT_MAX
        self.rate_limit_window = settings.OTP_RATE_LIMIT_WINDOW_SECONDS
        self._secret = settings.OTP_HASH_SECRET.encode()

    @staticmethod
    def _code_key(booking_id: str) -> str:
        return f"{OTP_PREFIX}:{booking_id}"

    @staticmethod
    def _attempts_key(booking_id: str) -> str:
        return f"{OTP_ATTEMPTS_PREFIX}:{booking_id}"

    def _rate_limit_key(self, contact: str) -> str:
        return f"{OTP_RATE_LIMIT_PREFIX}:{self.hash_contact(contact)}"

    def hash_contact(self, contact: str) -> str:
        """Salted, truncated contact hash used as a rate-limit key and in audit metadata."""
        normalized = contact.strip().lower()
        return hmac.new(self._secret, normalized.encode(), hashlib.sha256).hexdigest()[:16]

    def _hash_code(self, booking_id: str, code: str) -> str:
        message = f"{booking_id}:{code}".encode()
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()

    def _new_code(self) -> str:
        return str(secrets.randbelow(10 ** self.code_length)).zfill(self.code_length)

    async def generate(self, booking_id: str, contact: str) -> OtpGeneration:
        """
        Issue a fresh code for a booking, replacing any previous one.

        Args:
            booking_id: Booking the code is bound to
            contact: Phone or email the code will be delivered to

        Returns:
            OtpGeneration with the plaintext code, or rate_limited=True with a
            positive retry_after_seconds
        """
        rate_key = self._rate_limit_key(contact)
        member = f"{booking_id}:{uuid.uuid4().hex}"

        reservation = await self.store.reserve_in_window(
            rate_key,
            member,
            self.rate_limit_window,
            self.rate_limit_max
        )

        if not reservation.allowed:
            logger.warning(
                f"⚠️ Code generation rate limited for booking {booking_id} "
                f"(retry after {reservation.retry_after_seconds}s)"
            )
            return OtpGeneration(
                success=False,
                rate_limited=True,
                retry_after_seconds=reservation.retry_after_seconds
            )

        code = self._new_code()

        try:
            await self.store.set(self._code_key(booking_id), self._hash_code(booking_id, code), self.ttl_seconds)
            await self.store.delete(self._attempts_key(booking_id))
        except Exception:
            # The code was never stored, so it must not count against the contact
            await self.store.release_from_window(rate_key, member)
            raise

        logger.info(f"Code issued for booking {booking_id} ({reservation.count}/{self.rate_limit_max} in window)")

        return OtpGeneration(success=True, code=code, expires_in_seconds=self.ttl_seconds)

    async def verify(self, booking_id: str, code: str) -> OtpVerification:
        """
        Check a submitted code. A valid code is consumed; it cannot verify twice.

        Every submission claims an attempt with one atomic increment before
        anything is compared, so concurrent guesses can never get more than
        max_attempts comparisons between them.
        """
        code_key = self._code_key(booking_id)
        attempts_key = self._attempts_key(booking_id)

        stored_hash = await self.store.get(code_key)
        if stored_hash is None:
            return OtpVerification(status=OtpStatus.EXPIRED)

        attempt = await self.store.increment(attempts_key, self.ttl_seconds)
        if attempt > self.max_attempts:
            await self.store.delete(code_key)
            logger.warning(f"Code attempts exhausted for booking {booking_id}")
            return OtpVerification(status=OtpStatus.ATTEMPTS_EXCEEDED)

        submitted_hash = self._hash_code(booking_id, str(code).strip())

        if hmac.compare_digest(submitted_hash, stored_hash):
            # Consume atomically; a concurrent verify may have taken it first
            if not await self.store.compare_and_delete(code_key, stored_hash):
                return OtpVerification(status=OtpStatus.EXPIRED)
            await self.store.delete(attempts_key)
            logger.info(f"✅ Code verified for booking {booking_id}")
            return OtpVerification(status=OtpStatus.VALID)

        remaining = self.max_attempts - attempt
        logger.info(f"Invalid code for booking {booking_id} ({remaining} attempts remaining)")

        return OtpVerification(status=OtpStatus.INVALID, remaining_attempts=remaining)

    async def invalidate(self, booking_id: str) -> None:
        await self.store.delete(self._code_key(booking_id), self._attempts_key(booking_id))

    async def has_active_code(self, booking_id: str) -> bool:
        return await self.store.get(self._code_key(booking_id)) is not None

    async def code_ttl(self, booking_id: str) -> Optional[int]:
        """Seconds until the current code expires, None if there is no code."""
        return await self.store.ttl(self._code_key(booking_id))
