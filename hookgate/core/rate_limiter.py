"""
Per-provider rate limiting for inbound webhooks.

Two backends:
- MemoryRateLimitBackend: sliding window, single process (tests, dev)
- RedisRateLimitBackend: fixed window shared across processes
  (INCR + EXPIRE in one MULTI transaction)
"""
import asyncio
import time
from collections import defaultdict
from typing import Callable

import redis.asyncio as aioredis

from hookgate.core.logging import get_logger

logger = get_logger(__name__)

KEY_PREFIX = "ratelimit"


class RateLimitBackend:
    """Base class for rate limit counter storage"""

    async def hit(self, key: str, limit: int, period_seconds: int) -> bool:
        """Count one request; False if it exceeds the limit"""
        raise NotImplementedError

    async def count(self, key: str, period_seconds: int) -> int:
        raise NotImplementedError

    async def reset(self, key: str) -> None:
        raise NotImplementedError


class MemoryRateLimitBackend(RateLimitBackend):
    """Sliding window over request timestamps; rejected requests are not recorded"""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._requests: dict[str, list[float]] = defaultdict(list)
        self._lock = asyncio.Lock()
        self._clock = clock

    def _prune(self, key: str, period_seconds: int, now: float) -> list[float]:
        window_start = now - period_seconds
        kept = [t for t in self._requests.get(key, []) if t > window_start]
        if kept:
            self._requests[key] = kept
        else:
            self._requests.pop(key, None)
        return kept

    async def hit(self, key: str, limit: int, period_seconds: int) -> bool:
        now = self._clock()
        async with self._lock:
            timestamps = self._prune(key, period_seconds, now)
            if len(timestamps) >= limit:
                return False
            self._requests[key].append(now)
            return True

    async def count(self, key: str, period_seconds: int) -> int:
        async with self._lock:
            return len(self._prune(key, period_seconds, self._clock()))

    async def reset(self, key: str) -> None:
        async with self._lock:
            self._requests.pop(key, None)

    async def clear(self) -> None:
        async with self._lock:
            self._requests.clear()


class RedisRateLimitBackend(RateLimitBackend):
    """Fixed window counters in Redis, keyed per window index"""

    def __init__(self, redis: aioredis.Redis, clock: Callable[[], float] = time.time):
        self._redis = redis
        self._clock = clock

    def _window_key(self, key: str, period_seconds: int) -> str:
        window = int(self._clock()) // period_seconds
        return f"{key}:{window}"

    async def hit(self, key: str, limit: int, period_seconds: int) -> bool:
        window_key = self._window_key(key, period_seconds)
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.incr(window_key)
            pipe.expire(window_key, period_seconds)
            count, _ = await pipe.execute()
        return int(count) <= limit

    async def count(self, key: str, period_seconds: int) -> int:
        value = await self._redis.get(self._window_key(key, period_seconds))
        return int(value) if value else 0

    async def reset(self, key: str) -> None:
        # כל חלונות הזמן של המפתח
        keys = [k async for k in self._redis.scan_iter(match=f"{key}:*")]
        if keys:
            await self._redis.delete(*keys)


class RateLimiter:
    """
    Rate limiter keyed by provider name.

    Checked right after the provider is resolved and before payload size or
    signature; a False from ``allow`` becomes a 429 without touching storage.
    """

    def __init__(self, backend: RateLimitBackend):
        self.backend = backend

    @staticmethod
    def _key(provider: str) -> str:
        return f"{KEY_PREFIX}:{provider}"

    async def allow(self, provider: str, limit: int, period_seconds: int) -> bool:
        allowed = await self.backend.hit(self._key(provider), limit, period_seconds)
        if not allowed:
            logger.warning(
                "Rate limit exceeded",
                extra_data={
                    "provider": provider,
                    "limit": limit,
                    "period_seconds": period_seconds,
                }
            )
        return allowed

    async def current_count(self, provider: str, period_seconds: int) -> int:
        return await self.backend.count(self._key(provider), period_seconds)

    async def remaining(self, provider: str, limit: int, period_seconds: int) -> int:
        return max(0, limit - await self.current_count(provider, period_seconds))

    async def reset(self, provider: str) -> None:
        await self.backend.reset(self._key(provider))
