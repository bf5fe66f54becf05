from arq.connections import RedisSettings

from app.config import get_settings


def get_redis_settings() -> RedisSettings:
    """arq connection settings derived from REDIS_URL (host, port, db and password)."""
    return RedisSettings.from_dsn(str(get_settings().redis_url))
