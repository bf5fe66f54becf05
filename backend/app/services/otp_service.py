"""
One-time-code sessions for phone verification.

Records live in an injected OtpStore: InMemoryOtpStore for a single
instance and tests, RedisOtpStore when several workers must share them.
A code is valid for five minutes and can be redeemed once. Records are
kept for a further retention window so a late attempt still reports
CODE_EXPIRED rather than SESSION_NOT_FOUND, then purged.
"""

import json
import logging
import re
import secrets
import time
from dataclasses import asdict, dataclass, replace
from functools import lru_cache
from typing import Optional, Protocol

from redis.asyncio import Redis

from app.config import Settings, get_settings
from app.utils.errors import (
    CodeExpiredError,
    CodeFormatError,
    CodeMismatchError,
    SessionNotFoundError,
)

logger = logging.getLogger(__name__)

OTP_TTL_SECONDS = 5 * 60
OTP_RETENTION_SECONDS = 10 * 60
ADMIN_BYPASS_CODE = "123456"
OTP_SESSION_PREFIX = "otp_"

_CODE_PATTERN = re.compile(r"[0-9]{6}")


@dataclass
class OtpRecord:
    session_id: str
    phone_number: str
    code: str
    created_at: float
    verified: bool = False


@dataclass
class OtpChallenge:
    session_id: str
    code: str
    admin_bypass: bool = False


class OtpStore(Protocol):
    async def create(self, record: OtpRecord) -> None: ...

    async def get(self, session_id: str) -> Optional[OtpRecord]: ...

    async def claim(self, session_id: str) -> bool:
        """Mark the session verified. False when it was already claimed or is gone."""
        ...

    async def release(self, session_id: str) -> None:
        """Undo a claim whose login could not be completed."""
        ...

    async def delete(self, session_id: str) -> None: ...


class InMemoryOtpStore:
    def __init__(self, retention_seconds: int = OTP_RETENTION_SECONDS):
        self.retention_seconds = retention_seconds
        self._records: dict[str, OtpRecord] = {}

    def _purge(self, now: float) -> None:
        stale = [
            sid
            for sid, record in self._records.items()
            if now - record.created_at > self.retention_seconds
        ]
        for sid in stale:
            del self._records[sid]

    async def create(self, record: OtpRecord) -> None:
        self._purge(time.time())
        self._records[record.session_id] = record

    async def get(self, session_id: str) -> Optional[OtpRecord]:
        record = self._records.get(session_id)
        return replace(record) if record else None

    async def claim(self, session_id: str) -> bool:
        # No await between the check and the write
        record = self._records.get(session_id)
        if record is None or record.verified:
            return False
        record.verified = True
        return True

    async def release(self, session_id: str) -> None:
        record = self._records.get(session_id)
        if record is not None:
            record.verified = False

    async def delete(self, session_id: str) -> None:
        self._records.pop(session_id, None)

    def __len__(self) -> int:
        return len(self._records)


class RedisOtpStore:
    """
    Shared store for multi-worker deployments.

    The record is written once. Redemption is a separate marker key set
    with SET NX, so exactly one worker can claim a session.
    """

    def __init__(
        self,
        redis: Redis,
        retention_seconds: int = OTP_RETENTION_SECONDS,
        key_prefix: str = "cyclecare:otp:",
    ):
        self.redis = redis
        self.retention_seconds = retention_seconds
        self.key_prefix = key_prefix

    def _key(self, session_id: str) -> str:
        return f"{self.key_prefix}{session_id}"

    def _claim_key(self, session_id: str) -> str:
        return f"{self._key(session_id)}:used"

    async def create(self, record: OtpRecord) -> None:
        await self.redis.set(
            self._key(record.session_id),
            json.dumps(asdict(record)),
            ex=self.retention_seconds,
        )

    async def get(self, session_id: str) -> Optional[OtpRecord]:
        raw, used = await self.redis.mget(self._key(session_id), self._claim_key(session_id))
        if raw is None:
            return None
        record = OtpRecord(**json.loads(raw))
        record.verified = used is not None
        return record

    async def claim(self, session_id: str) -> bool:
        claimed = await self.redis.set(
            self._claim_key(session_id), "1", nx=True, ex=self.retention_seconds
        )
        return bool(claimed)

    async def release(self, session_id: str) -> None:
        await self.redis.delete(self._claim_key(session_id))

    async def delete(self, session_id: str) -> None:
        await self.redis.delete(self._key(session_id), self._claim_key(session_id))


def generate_code() -> str:
    return f"{secrets.randbelow(1_000_000):06d}"


def new_session_id() -> str:
    return f"{OTP_SESSION_PREFIX}{int(time.time() * 1000)}_{secrets.token_urlsafe(9)}"


class OtpService:
    def __init__(self, store: OtpStore, settings: Settings):
        self.store = store
        self.settings = settings

    def uses_admin_bypass(self, phone_number: str) -> bool:
        return self.settings.admin_otp_bypass_enabled and self.settings.is_admin_phone(phone_number)

    async def create_session(self, phone_number: str) -> OtpChallenge:
        admin_bypass = self.uses_admin_bypass(phone_number)
        code = ADMIN_BYPASS_CODE if admin_bypass else generate_code()
        record = OtpRecord(
            session_id=new_session_id(),
            phone_number=phone_number,
            code=code,
            created_at=time.time(),
        )
        await self.store.create(record)
        logger.info(
            "OTP session %s created%s", record.session_id, " (admin bypass)" if admin_bypass else ""
        )
        return OtpChallenge(session_id=record.session_id, code=code, admin_bypass=admin_bypass)

    async def verify_session(
        self, session_id: str, code: str, now: Optional[float] = None
    ) -> str:
        """Check a submitted code and return the verified phone number."""
        if not isinstance(code, str) or not _CODE_PATTERN.fullmatch(code):
            raise CodeFormatError()

        record = await self.store.get(session_id)
        if record is None:
            raise SessionNotFoundError()

        if not secrets.compare_digest(record.code, code):
            logger.info("OTP mismatch for session %s", session_id)
            raise CodeMismatchError()

        current = time.time() if now is None else now
        if current - record.created_at > OTP_TTL_SECONDS:
            raise CodeExpiredError()

        # Concurrent submissions can both pass the read above; only one claim wins
        if record.verified or not await self.store.claim(session_id):
            raise SessionNotFoundError()

        logger.info("OTP session %s verified", session_id)
        return record.phone_number

    async def release(self, session_id: str) -> None:
        """Make a verified session redeemable again after a failed sign-in."""
        await self.store.release(session_id)
        logger.warning("OTP session %s released after failed sign-in", session_id)


@lru_cache
def get_otp_store() -> OtpStore:
    settings = get_settings()
    if settings.otp_store_backend == "redis":
        return RedisOtpStore(Redis.from_url(str(settings.redis_url), decode_responses=True))
    return InMemoryOtpStore()


def get_otp_service() -> OtpService:
    return OtpService(get_otp_store(), get_settings())
