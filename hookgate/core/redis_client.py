"""
Redis Client - async singleton for the shared rate limit and circuit state.

Uses REDIS_URL from settings (default redis://localhost:6379/0).
"""
import asyncio
from urllib.parse import urlparse

import redis.asyncio as aioredis

from hookgate.core.config import settings
from hookgate.core.logging import get_logger

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None
_init_lock = asyncio.Lock()


def mask_redis_url(url: str) -> str:
    """Hide the password for logging (redis://:****@host:6379)"""
    parsed = urlparse(url)
    if parsed.password:
        return url.replace(f":{parsed.password}@", ":****@")
    return url


async def get_redis() -> aioredis.Redis:
    """Shared client with a connection pool; created on first use"""
    global _redis_client
    if _redis_client is not None:
        return _redis_client

    async with _init_lock:
        # request מקבילי אולי כבר אתחל
        if _redis_client is not None:
            return _redis_client

        client = aioredis.from_url(settings.REDIS_URL, decode_responses=True)
        await client.ping()
        _redis_client = client
        logger.info("Redis client initialized", extra_data={
            "url": mask_redis_url(settings.REDIS_URL),
        })
    return _redis_client


async def close_redis() -> None:
    """Close the shared client; called on app shutdown"""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis connection closed")
