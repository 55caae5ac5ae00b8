"""Redis connection configuration and Redis-backed rate limiting."""

from typing import Protocol

import redis.asyncio as redis

from app.core.config import settings

redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)


async def get_redis() -> redis.Redis:
    """Get Redis client instance."""
    return redis_client


class RateLimiter(Protocol):
    """Decides whether a caller identified by ``key`` may proceed."""

    async def allow(self, key: str) -> bool:
        ...


class RedisRateLimiter:
    """Fixed-window rate limiter shared by every worker through Redis.

    The first hit in a window creates the counter with a TTL equal to the
    window, so counters expire on their own.
    """

    def __init__(
        self,
        client: redis.Redis,
        limit: int,
        window_seconds: int,
        prefix: str = "ratelimit",
    ):
        self.client = client
        self.limit = limit
        self.window_seconds = window_seconds
        self.prefix = prefix

    async def allow(self, key: str) -> bool:
        counter_key = f"{self.prefix}:{key}"
        count = await self.client.incr(counter_key)
        if count == 1:
            await self.client.expire(counter_key, self.window_seconds)
        return count <= self.limit


async def get_webhook_rate_limiter() -> RateLimiter:
    """FastAPI dependency for the payment webhook rate limiter."""
    return RedisRateLimiter(
        redis_client,
        limit=settings.WEBHOOK_RATE_LIMIT,
        window_seconds=settings.WEBHOOK_RATE_LIMIT_WINDOW_SECONDS,
        prefix="ratelimit:webhook",
    )
