"""Property-based tests for webhook rate limiting.

Tests that:
- At most ``limit`` calls per key are allowed inside one window
- Keys are counted independently
- The window TTL is set once, on the first hit
"""

import asyncio

from hypothesis import given, settings, strategies as st
import pytest

from app.core.redis import RedisRateLimiter


class FakeRedis:
    """Minimal async Redis counter store."""

    def __init__(self):
        self.counters: dict[str, int] = {}
        self.expirations: dict[str, int] = {}

    async def incr(self, key: str) -> int:
        self.counters[key] = self.counters.get(key, 0) + 1
        return self.counters[key]

    async def expire(self, key: str, seconds: int) -> bool:
        self.expirations[key] = seconds
        return True

    def reset_window(self) -> None:
        self.counters.clear()
        self.expirations.clear()


class TestRedisRateLimiter:
    """Tests for the fixed-window limiter."""

    @given(limit=st.integers(min_value=1, max_value=50), calls=st.integers(min_value=0, max_value=120))
    @settings(max_examples=100)
    def test_allows_exactly_limit_calls(self, limit: int, calls: int) -> None:
        """*For any* limit and call count, allowed calls SHALL equal min(calls, limit)."""
        limiter = RedisRateLimiter(FakeRedis(), limit=limit, window_seconds=60)

        async def run():
            return [await limiter.allow("203.0.113.7") for _ in range(calls)]

        results = asyncio.run(run())

        assert sum(results) == min(calls, limit)
        assert results == sorted(results, reverse=True)

    @pytest.mark.asyncio
    async def test_keys_are_independent(self) -> None:
        limiter = RedisRateLimiter(FakeRedis(), limit=1, window_seconds=60)

        assert await limiter.allow("a") is True
        assert await limiter.allow("a") is False
        assert await limiter.allow("b") is True

    @pytest.mark.asyncio
    async def test_ttl_set_on_first_hit(self) -> None:
        client = FakeRedis()
        limiter = RedisRateLimiter(client, limit=5, window_seconds=30, prefix="ratelimit:webhook")

        await limiter.allow("ip")
        client.expirations.clear()
        await limiter.allow("ip")

        assert client.counters == {"ratelimit:webhook:ip": 2}
        assert client.expirations == {}

    @pytest.mark.asyncio
    async def test_new_window_allows_again(self) -> None:
        client = FakeRedis()
        limiter = RedisRateLimiter(client, limit=1, window_seconds=60)

        assert await limiter.allow("ip") is True
        assert await limiter.allow("ip") is False
        client.reset_window()
        assert await limiter.allow("ip") is True
