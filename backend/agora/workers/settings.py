from arq.connections import RedisSettings

from agora.config import get_settings


def get_redis_settings() -> RedisSettings:
    return RedisSettings.from_dsn(str(get_settings().redis_url))
