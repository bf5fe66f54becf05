"""Periodic housekeeping for the auth store."""

import logging

from arq import cron

from app.database import async_session_maker
from app.services.phone_session_service import PhoneSessionService
from app.workers.settings import get_redis_settings

logger = logging.getLogger(__name__)


async def sweep_expired_phone_sessions(ctx: dict) -> dict:
    """
    Delete phone sessions past their expiry.

    Reads already evict expired rows one at a time; this catches sessions
    that are never presented again.
    """
    async with async_session_maker() as db:
        try:
            deleted = await PhoneSessionService(db).delete_expired()
            await db.commit()
        except Exception:
            await db.rollback()
            logger.exception("Error sweeping expired phone sessions")
            raise

    logger.info("Swept %d expired phone sessions", deleted)
    return {"deleted": deleted}


class WorkerSettings:
    """ARQ worker settings for maintenance jobs."""

    functions = [sweep_expired_phone_sessions]

    cron_jobs = [
        # Hourly at :15
        cron(sweep_expired_phone_sessions, minute=15, hour=None),
    ]

    redis_settings = get_redis_settings()
