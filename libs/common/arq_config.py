"""arq settings for the payments worker."""

from urllib.parse import unquote, urlparse

from arq.connections import RedisSettings
from libs.common.config import get_settings

# Cleanup and reconciliation sweeps both finish well inside this
JOB_TIMEOUT_SECONDS = 300


def redis_settings_from_url(url: str) -> RedisSettings:
    """Translate ``redis://`` / ``rediss://`` URLs into arq RedisSettings."""
    parsed = urlparse(url)
    if parsed.scheme not in ("redis", "rediss"):
        raise ValueError(f"Unsupported Redis URL scheme: {parsed.scheme!r}")

    return RedisSettings(
        host=parsed.hostname or "localhost",
        port=parsed.port or 6379,
        database=int(parsed.path.lstrip("/") or "0"),
        username=unquote(parsed.username) if parsed.username else None,
        password=unquote(parsed.password) if parsed.password else None,
        ssl=parsed.scheme == "rediss",
    )


def get_redis_settings() -> RedisSettings:
    return redis_settings_from_url(get_settings().REDIS_URL)
