from urllib.parse import urlparse

from arq.connections import RedisSettings

from app.config import Settings, get_settings


def get_redis_settings(settings: Settings | None = None) -> RedisSettings:
    url = urlparse(str((settings or get_settings()).redis_url))
    path = url.path.lstrip("/")
    database = int(path) if path else 0

    return RedisSettings(
        host=url.hostname or "localhost",
        port=url.port or 6379,
        database=database,
        password=url.password,
        ssl=url.scheme == "rediss",
    )


def sweep_minutes(interval: int) -> set[int]:
    """Cron minute set for running every ``interval`` minutes."""
    return set(range(0, 60, interval))
