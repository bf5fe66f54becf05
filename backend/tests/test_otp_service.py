import asyncio
import time
from unittest.mock import AsyncMock

import pytest

from app.config import Settings
from app.services.otp_service import (
    ADMIN_BYPASS_CODE,
    OTP_RETENTION_SECONDS,
    OTP_TTL_SECONDS,
    InMemoryOtpStore,
    OtpRecord,
    OtpService,
    RedisOtpStore,
)
from app.utils.errors import (
    CodeExpiredError,
    CodeFormatError,
    CodeMismatchError,
    SessionNotFoundError,
)

SECRET = "test-session-secret-0123456789abcdef"
ADMIN_PHONE = "+966500000001"
USER_PHONE = "+966512345678"


def make_service(**overrides) -> tuple[OtpService, InMemoryOtpStore]:
    store = InMemoryOtpStore()
    settings = Settings(session_secret=SECRET, admin_phone_number=ADMIN_PHONE, **overrides)
    return OtpService(store, settings), store


def wrong_code(code: str) -> str:
    return "000000" if code != "000000" else "111111"


class TestCreateSession:
    """Tests for issuing one-time codes."""

    @pytest.mark.asyncio
    async def test_regular_phone_gets_random_code(self):
        service, store = make_service()
        challenge = await service.create_session(USER_PHONE)

        assert challenge.session_id.startswith("otp_")
        assert len(challenge.code) == 6 and challenge.code.isdigit()
        assert challenge.admin_bypass is False
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_session_ids_are_unique(self):
        service, _ = make_service()
        first = await service.create_session(USER_PHONE)
        second = await service.create_session(USER_PHONE)
        assert first.session_id != second.session_id

    @pytest.mark.asyncio
    async def test_admin_phone_gets_fixed_code(self):
        service, _ = make_service()
        challenge = await service.create_session("0500000001")
        assert challenge.admin_bypass is True
        assert challenge.code == ADMIN_BYPASS_CODE

    @pytest.mark.asyncio
    async def test_admin_bypass_can_be_disabled(self):
        service, _ = make_service(admin_otp_bypass_enabled=False)
        challenge = await service.create_session(ADMIN_PHONE)
        assert challenge.admin_bypass is False


class TestVerifySession:
    """Tests for redeeming one-time codes."""

    @pytest.mark.asyncio
    async def test_valid_code_returns_phone(self):
        service, _ = make_service()
        challenge = await service.create_session(USER_PHONE)
        assert await service.verify_session(challenge.session_id, challenge.code) == USER_PHONE

    @pytest.mark.asyncio
    async def test_code_is_single_use(self):
        service, _ = make_service()
        challenge = await service.create_session(USER_PHONE)
        await service.verify_session(challenge.session_id, challenge.code)

        with pytest.raises(SessionNotFoundError):
            await service.verify_session(challenge.session_id, challenge.code)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("code", ["12345", "1234567", "abcdef", "12 456", "123456\n", ""])
    async def test_bad_format(self, code):
        service, _ = make_service()
        challenge = await service.create_session(USER_PHONE)
        with pytest.raises(CodeFormatError):
            await service.verify_session(challenge.session_id, code)

    @pytest.mark.asyncio
    async def test_format_checked_before_session(self):
        service, _ = make_service()
        with pytest.raises(CodeFormatError):
            await service.verify_session("otp_missing", "12")

    @pytest.mark.asyncio
    async def test_unknown_session(self):
        service, _ = make_service()
        with pytest.raises(SessionNotFoundError):
            await service.verify_session("otp_missing", "123456")

    @pytest.mark.asyncio
    async def test_wrong_code(self):
        service, _ = make_service()
        challenge = await service.create_session(USER_PHONE)
        with pytest.raises(CodeMismatchError):
            await service.verify_session(challenge.session_id, wrong_code(challenge.code))

    @pytest.mark.asyncio
    async def test_wrong_code_does_not_consume_session(self):
        service, _ = make_service()
        challenge = await service.create_session(USER_PHONE)
        with pytest.raises(CodeMismatchError):
            await service.verify_session(challenge.session_id, wrong_code(challenge.code))
        assert await service.verify_session(challenge.session_id, challenge.code) == USER_PHONE

    @pytest.mark.asyncio
    async def test_expired_code(self):
        service, store = make_service()
        challenge = await service.create_session(USER_PHONE)
        record = await store.get(challenge.session_id)

        with pytest.raises(CodeExpiredError):
            await service.verify_session(
                challenge.session_id,
                challenge.code,
                now=record.created_at + OTP_TTL_SECONDS + 1,
            )

    @pytest.mark.asyncio
    async def test_code_valid_until_end_of_window(self):
        service, store = make_service()
        challenge = await service.create_session(USER_PHONE)
        record = await store.get(challenge.session_id)

        phone = await service.verify_session(
            challenge.session_id, challenge.code, now=record.created_at + OTP_TTL_SECONDS
        )
        assert phone == USER_PHONE

    @pytest.mark.asyncio
    async def test_mismatch_reported_before_expiry(self):
        service, store = make_service()
        challenge = await service.create_session(USER_PHONE)
        record = await store.get(challenge.session_id)

        with pytest.raises(CodeMismatchError):
            await service.verify_session(
                challenge.session_id,
                wrong_code(challenge.code),
                now=record.created_at + OTP_TTL_SECONDS + 1,
            )

    @pytest.mark.asyncio
    async def test_admin_bypass_code_verifies(self):
        service, _ = make_service()
        challenge = await service.create_session(ADMIN_PHONE)
        assert await service.verify_session(challenge.session_id, "123456") == ADMIN_PHONE

    @pytest.mark.asyncio
    async def test_concurrent_redemption_succeeds_once(self):
        class SlowReadStore(InMemoryOtpStore):
            async def get(self, session_id):
                record = await super().get(session_id)
                await asyncio.sleep(0)
                return record

        store = SlowReadStore()
        service = OtpService(store, Settings(session_secret=SECRET))
        challenge = await service.create_session(USER_PHONE)

        results = await asyncio.gather(
            service.verify_session(challenge.session_id, challenge.code),
            service.verify_session(challenge.session_id, challenge.code),
            return_exceptions=True,
        )

        assert results.count(USER_PHONE) == 1
        failures = [r for r in results if r != USER_PHONE]
        assert len(failures) == 1
        assert isinstance(failures[0], SessionNotFoundError)

    @pytest.mark.asyncio
    async def test_released_session_can_be_redeemed_again(self):
        service, _ = make_service()
        challenge = await service.create_session(USER_PHONE)
        await service.verify_session(challenge.session_id, challenge.code)

        await service.release(challenge.session_id)
        assert await service.verify_session(challenge.session_id, challenge.code) == USER_PHONE


class TestOtpStores:
    @pytest.mark.asyncio
    async def test_memory_store_purges_old_records(self):
        store = InMemoryOtpStore()
        stale = OtpRecord(
            session_id="otp_stale",
            phone_number=USER_PHONE,
            code="123456",
            created_at=time.time() - OTP_RETENTION_SECONDS - 1,
        )
        await store.create(stale)
        await store.create(
            OtpRecord(session_id="otp_fresh", phone_number=USER_PHONE, code="654321", created_at=time.time())
        )

        assert await store.get("otp_stale") is None
        assert await store.get("otp_fresh") is not None
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_redis_store_round_trip(self):
        redis = AsyncMock()
        store = RedisOtpStore(redis)
        record = OtpRecord(session_id="otp_1", phone_number=USER_PHONE, code="123456", created_at=10.0)

        await store.create(record)
        key, payload = redis.set.await_args.args
        assert key == "cyclecare:otp:otp_1"
        assert redis.set.await_args.kwargs == {"ex": OTP_RETENTION_SECONDS}

        redis.mget.return_value = [payload, None]
        loaded = await store.get("otp_1")
        assert loaded == record
        redis.mget.assert_awaited_with("cyclecare:otp:otp_1", "cyclecare:otp:otp_1:used")

        redis.mget.return_value = [payload, "1"]
        assert (await store.get("otp_1")).verified is True

    @pytest.mark.asyncio
    async def test_redis_claim_is_set_if_absent(self):
        redis = AsyncMock()
        store = RedisOtpStore(redis)

        redis.set.return_value = True
        assert await store.claim("otp_1") is True
        redis.set.assert_awaited_with(
            "cyclecare:otp:otp_1:used", "1", nx=True, ex=OTP_RETENTION_SECONDS
        )

        # SET NX answers None when the marker already exists
        redis.set.return_value = None
        assert await store.claim("otp_1") is False

    @pytest.mark.asyncio
    async def test_redis_release_and_delete(self):
        redis = AsyncMock()
        store = RedisOtpStore(redis)

        await store.release("otp_1")
        redis.delete.assert_awaited_with("cyclecare:otp:otp_1:used")

        await store.delete("otp_1")
        redis.delete.assert_awaited_with("cyclecare:otp:otp_1", "cyclecare:otp:otp_1:used")

    @pytest.mark.asyncio
    async def test_redis_store_missing_record(self):
        redis = AsyncMock()
        redis.mget.return_value = [None, None]
        assert await RedisOtpStore(redis).get("otp_missing") is None

    @pytest.mark.asyncio
    async def test_memory_store_hands_out_copies(self):
        store = InMemoryOtpStore()
        await store.create(
            OtpRecord(session_id="otp_1", phone_number=USER_PHONE, code="123456", created_at=time.time())
        )
        loaded = await store.get("otp_1")
        loaded.verified = True
        assert (await store.get("otp_1")).verified is False

        assert await store.claim("otp_1") is True
        assert await store.claim("otp_1") is False
        await store.release("otp_1")
        assert await store.claim("otp_1") is True
        assert await store.claim("otp_missing") is False
