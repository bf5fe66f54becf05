import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.phone_session import PhoneSession

logger = logging.getLogger(__name__)

PHONE_SESSION_PREFIX = "session_"
PHONE_SESSION_LIFETIME = timedelta(days=30)


def _as_utc(value: datetime) -> datetime:
    # Some backends (SQLite) hand back naive datetimes; all stored values are UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def new_phone_session_token() -> str:
    return f"{PHONE_SESSION_PREFIX}{secrets.token_urlsafe(24)}"


class PhoneSessionService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(
        self,
        user_id: str,
        phone_number: str,
        lifetime: timedelta = PHONE_SESSION_LIFETIME,
    ) -> PhoneSession:
        now = datetime.now(timezone.utc)
        session = PhoneSession(
            token=new_phone_session_token(),
            user_id=user_id,
            phone_number=phone_number,
            created_at=now,
            expires_at=now + lifetime,
        )
        self.db.add(session)
        await self.db.flush()
        return session

    async def get(self, token: str) -> Optional[PhoneSession]:
        """
        Look up a live session.

        An expired row is deleted as soon as it is read, so callers never
        see it and it does not wait for the next sweep.
        """
        result = await self.db.execute(select(PhoneSession).where(PhoneSession.token == token))
        session = result.scalar_one_or_none()
        if session is None:
            return None

        if _as_utc(session.expires_at) <= datetime.now(timezone.utc):
            logger.info("Evicting expired phone session for %s", session.user_id)
            await self.delete(token)
            await self.db.commit()
            return None

        return session

    async def delete(self, token: str) -> None:
        await self.db.execute(delete(PhoneSession).where(PhoneSession.token == token))
        await self.db.flush()

    async def delete_expired(self) -> int:
        result = await self.db.execute(
            delete(PhoneSession).where(PhoneSession.expires_at < datetime.now(timezone.utc))
        )
        await self.db.flush()
        return result.rowcount or 0
