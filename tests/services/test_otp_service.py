"""
Tests for one-time code generation and verification
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from reservations.services.kv_store import InMemoryKeyValueStore
from reservations.services.otp_service import OtpService, OtpStatus

from tests.conftest import make_settings

BOOKING_ID = "BKTEST00001"
CONTACT = "+15551234567"


class RoundTripStore(InMemoryKeyValueStore):
    """Yields to the loop on every read and increment, like a network hop to Redis"""

    async def get(self, key):
        await asyncio.sleep(0)
        return await super().get(key)

    async def increment(self, key, ttl_seconds):
        await asyncio.sleep(0)
        return await super().increment(key, ttl_seconds)


class TestGenerate:

    @pytest.mark.asyncio
    async def test_generates_fixed_length_numeric_code(self, otp_service):
        generation = await otp_service.generate(BOOKING_ID, CONTACT)

        assert generation.success
        assert len(generation.code) == 6
        assert generation.code.isdigit()
        assert generation.expires_in_seconds == 300

    @pytest.mark.asyncio
    async def test_plaintext_never_reaches_the_store(self, otp_service, kv_store):
        generation = await otp_service.generate(BOOKING_ID, CONTACT)

        stored = await kv_store.get(f"otp:{BOOKING_ID}")
        assert stored is not None
        assert stored != generation.code
        assert generation.code not in stored

    @pytest.mark.asyncio
    async def test_rate_limit_key_does_not_contain_contact(self, otp_service, kv_store):
        await otp_service.generate(BOOKING_ID, CONTACT)

        key = f"otp:ratelimit:{otp_service.hash_contact(CONTACT)}"
        assert CONTACT not in key
        assert (await kv_store.reserve_in_window(key, "extra", 900, 100)).count == 2

    @pytest.mark.asyncio
    async def test_rate_limited_after_ceiling_and_recovers(self, otp_service, clock):
        for i in range(3):
            assert (await otp_service.generate(f"BK{i}", CONTACT)).success

        limited = await otp_service.generate("BK3", CONTACT)
        assert not limited.success
        assert limited.rate_limited
        assert limited.retry_after_seconds > 0

        clock.advance(limited.retry_after_seconds)
        assert (await otp_service.generate("BK3", CONTACT)).success

    @pytest.mark.asyncio
    async def test_contact_normalization_shares_rate_limit(self, otp_service):
        for i in range(3):
            await otp_service.generate(f"BK{i}", "Patient@Example.com")

        assert (await otp_service.generate("BK3", " patient@example.com ")).rate_limited

    @pytest.mark.asyncio
    async def test_regenerate_replaces_previous_code(self, otp_service):
        first = await otp_service.generate(BOOKING_ID, CONTACT)
        second = await otp_service.generate(BOOKING_ID, CONTACT)

        if first.code != second.code:
            assert (await otp_service.verify(BOOKING_ID, first.code)).status is OtpStatus.INVALID
        assert (await otp_service.verify(BOOKING_ID, second.code)).status is OtpStatus.VALID

    @pytest.mark.asyncio
    async def test_failed_store_write_releases_rate_limit_slot(self, kv_store, clock):
        settings = make_settings(OTP_RATE_LIMIT_MAX=1)
        otp = OtpService(kv_store, settings)
        original_set = kv_store.set
        kv_store.set = AsyncMock(side_effect=ConnectionError("store down"))

        with pytest.raises(ConnectionError):
            await otp.generate(BOOKING_ID, CONTACT)

        kv_store.set = original_set
        assert (await otp.generate(BOOKING_ID, CONTACT)).success

    @pytest.mark.asyncio
    async def test_custom_length(self, kv_store):
        otp = OtpService(kv_store, make_settings(OTP_LENGTH=8))
        generation = await otp.generate(BOOKING_ID, CONTACT)

        assert len(generation.code) == 8


class TestVerify:

    @pytest.mark.asyncio
    async def test_valid_code_is_single_use(self, otp_service):
        generation = await otp_service.generate(BOOKING_ID, CONTACT)

        assert (await otp_service.verify(BOOKING_ID, generation.code)).is_valid
        assert (await otp_service.verify(BOOKING_ID, generation.code)).status is OtpStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_missing_code_is_expired(self, otp_service):
        assert (await otp_service.verify(BOOKING_ID, "123456")).status is OtpStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_code_expires_after_ttl(self, otp_service, clock):
        generation = await otp_service.generate(BOOKING_ID, CONTACT)
        clock.advance(300)

        assert (await otp_service.verify(BOOKING_ID, generation.code)).status is OtpStatus.EXPIRED
        assert await otp_service.has_active_code(BOOKING_ID) is False

    @pytest.mark.asyncio
    async def test_stored_hash_is_bound_to_booking(self, otp_service, kv_store):
        generation = await otp_service.generate(BOOKING_ID, CONTACT)

        # Replaying the stored hash under another booking must not verify
        stored = await kv_store.get(f"otp:{BOOKING_ID}")
        await kv_store.set("otp:BKOTHER", stored, 300)

        assert (await otp_service.verify("BKOTHER", generation.code)).status is OtpStatus.INVALID
        assert (await otp_service.verify(BOOKING_ID, generation.code)).is_valid

    @pytest.mark.asyncio
    async def test_invalid_attempts_count_down(self, otp_service):
        generation = await otp_service.generate(BOOKING_ID, CONTACT)
        wrong = "000000" if generation.code != "000000" else "111111"

        first = await otp_service.verify(BOOKING_ID, wrong)
        second = await otp_service.verify(BOOKING_ID, wrong)
        third = await otp_service.verify(BOOKING_ID, wrong)

        assert [first.status, second.status, third.status] == [OtpStatus.INVALID] * 3
        assert [first.remaining_attempts, second.remaining_attempts, third.remaining_attempts] == [2, 1, 0]

    @pytest.mark.asyncio
    async def test_attempts_exceeded_then_expired(self, otp_service):
        generation = await otp_service.generate(BOOKING_ID, CONTACT)
        wrong = "000000" if generation.code != "000000" else "111111"
        for _ in range(3):
            await otp_service.verify(BOOKING_ID, wrong)

        assert (await otp_service.verify(BOOKING_ID, generation.code)).status is OtpStatus.ATTEMPTS_EXCEEDED
        # Never INVALID again, even for the correct code
        assert (await otp_service.verify(BOOKING_ID, wrong)).status is OtpStatus.EXPIRED
        assert (await otp_service.verify(BOOKING_ID, generation.code)).status is OtpStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_concurrent_guesses_share_the_attempt_limit(self, clock):
        store = RoundTripStore(clock=clock.time)
        otp = OtpService(store, make_settings())
        generation = await otp.generate(BOOKING_ID, CONTACT)
        wrong = [str(n).zfill(6) for n in range(20) if str(n).zfill(6) != generation.code][:19]

        results = await asyncio.gather(*[otp.verify(BOOKING_ID, guess) for guess in wrong])

        statuses = [result.status for result in results]
        assert statuses.count(OtpStatus.INVALID) == 3
        assert OtpStatus.ATTEMPTS_EXCEEDED in statuses
        assert set(statuses) <= {OtpStatus.INVALID, OtpStatus.ATTEMPTS_EXCEEDED, OtpStatus.EXPIRED}
        # The real code is gone once the limit was hit
        assert (await otp.verify(BOOKING_ID, generation.code)).status is OtpStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_correct_code_within_limit_under_contention(self, clock):
        store = RoundTripStore(clock=clock.time)
        otp = OtpService(store, make_settings())
        generation = await otp.generate(BOOKING_ID, CONTACT)
        wrong = "000000" if generation.code != "000000" else "111111"

        results = await asyncio.gather(
            otp.verify(BOOKING_ID, wrong),
            otp.verify(BOOKING_ID, generation.code),
        )

        assert [r.status for r in results] == [OtpStatus.INVALID, OtpStatus.VALID]

    @pytest.mark.asyncio
    async def test_new_code_resets_attempts(self, otp_service):
        generation = await otp_service.generate(BOOKING_ID, CONTACT)
        wrong = "000000" if generation.code != "000000" else "111111"
        await otp_service.verify(BOOKING_ID, wrong)
        await otp_service.verify(BOOKING_ID, wrong)

        fresh = await otp_service.generate(BOOKING_ID, CONTACT)
        wrong = "000000" if fresh.code != "000000" else "111111"

        assert (await otp_service.verify(BOOKING_ID, wrong)).remaining_attempts == 2

    @pytest.mark.asyncio
    async def test_invalidate_removes_code(self, otp_service):
        generation = await otp_service.generate(BOOKING_ID, CONTACT)
        await otp_service.invalidate(BOOKING_ID)

        assert (await otp_service.verify(BOOKING_ID, generation.code)).status is OtpStatus.EXPIRED
        assert await otp_service.code_ttl(BOOKING_ID) is None

    @pytest.mark.asyncio
    async def test_code_ttl(self, otp_service, clock):
        await otp_service.generate(BOOKING_ID, CONTACT)
        clock.advance(100)

        assert await otp_service.code_ttl(BOOKING_ID) == 200
