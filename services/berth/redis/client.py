"""
Shared Redis client.

Redis only holds login state (access sessions, refresh tokens and the
per-user session index); losing it logs everyone out but loses no
operation data. Every key lives under KEY_PREFIX so one Redis can serve
several deployments.
"""

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from berth.config import settings
from berth.logging_config import get_logger

logger = get_logger(__name__)

KEY_PREFIX = "berth:"

# Keep readiness probes and login requests from hanging on a stuck server
SOCKET_TIMEOUT_SECONDS = 5.0

_redis: aioredis.Redis | None = None


def namespaced(*parts: str | int) -> str:
    """Build a prefixed key: namespaced("session", token) -> 'berth:session:<token>'."""
    return KEY_PREFIX + ":".join(str(p) for p in parts)


async def init_redis() -> None:
    global _redis  # noqa: PLW0603
    client = aioredis.from_url(
        str(settings.redis_url),
        decode_responses=True,
        socket_timeout=SOCKET_TIMEOUT_SECONDS,
        socket_connect_timeout=SOCKET_TIMEOUT_SECONDS,
        health_check_interval=30,
    )
    await client.ping()
    _redis = client
    logger.info("Redis connection established", key_prefix=KEY_PREFIX)


async def close_redis() -> None:
    global _redis  # noqa: PLW0603
    if _redis is not None:
        await _redis.aclose()
        _redis = None
        logger.info("Redis connection closed")


def get_redis_client() -> aioredis.Redis:
    if _redis is None:
        raise RuntimeError("Redis client not initialized: call init_redis() first")
    return _redis


async def get_redis_health() -> bool:
    """Readiness: True when the session store answers a PING."""
    if _redis is None:
        return False
    try:
        return bool(await _redis.ping())
    except (RedisError, OSError) as e:
        logger.error("Redis health check failed", error=str(e))
        return False
