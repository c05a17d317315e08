"""
Unit tests for SlidingWindowRateLimiter module.

Run with: pytest tests/unit/test_rate_limiter.py -v
"""

import asyncio
from datetime import datetime, timezone

import pytest

from leakguard.core.config import Settings
from leakguard.core.rate_limiter import (
    RateLimitConfig,
    SlidingWindowRateLimiter,
    build_rate_limiters,
)
from leakguard.errors import RateLimiterBackendError


class FakeClock:
    """Settable millisecond clock"""

    def __init__(self, now: int = 1_700_000_000_000):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int):
        self.now += ms


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return RateLimitConfig(window_ms=60_000, max_requests=3)


class TestSlidingWindowRateLimiter:
    """Test suite for SlidingWindowRateLimiter class"""

    @pytest.mark.asyncio
    async def test_initialization_with_defaults(self, redis):
        """Test initialization with defaults"""
        limiter = SlidingWindowRateLimiter(redis)

        assert limiter.config.window_ms == 15 * 60 * 1000
        assert limiter.config.max_requests == 100
        assert limiter.key_for("203.0.113.7") == "rate_limit:203.0.113.7"

    @pytest.mark.asyncio
    async def test_three_per_minute_scenario(self, redis, config, clock):
        """Allow x3, deny the 4th, allow again once the oldest leaves the window"""
        limiter = SlidingWindowRateLimiter(redis, config, clock=clock)

        decisions = []
        for _ in range(3):
            decisions.append(await limiter.admit("client-a"))
            clock.advance(1)

        assert [d.allowed for d in decisions] == [True, True, True]
        assert [d.remaining for d in decisions] == [2, 1, 0]

        denied = await limiter.admit("client-a")
        assert denied.allowed is False
        assert denied.remaining == 0

        clock.advance(60_000)
        again = await limiter.admit("client-a")
        assert again.allowed is True
        assert limiter.allowed_count == 4
        assert limiter.denied_count == 1

    @pytest.mark.asyncio
    async def test_denied_requests_are_not_recorded(self, redis, config, clock):
        """Test denied requests are not recorded"""
        limiter = SlidingWindowRateLimiter(redis, config, clock=clock)
        for _ in range(3):
            await limiter.admit("client-a")

        for _ in range(5):
            assert (await limiter.admit("client-a")).allowed is False

        assert await redis.zcard(limiter.key_for("client-a")) == 3

    @pytest.mark.asyncio
    async def test_reset_at_is_when_oldest_entry_leaves(self, redis, config, clock):
        """Test reset at is when oldest entry leaves"""
        limiter = SlidingWindowRateLimiter(redis, config, clock=clock)
        first_at = clock.now

        await limiter.admit("client-a")
        clock.advance(5_000)
        decision = await limiter.admit("client-a")

        expected = datetime.fromtimestamp((first_at + 60_000) / 1000, tz=timezone.utc)
        assert decision.reset_at == expected

    @pytest.mark.asyncio
    async def test_clients_have_separate_windows(self, redis, config, clock):
        """Test clients have separate windows"""
        limiter = SlidingWindowRateLimiter(redis, config, clock=clock)
        for _ in range(3):
            await limiter.admit("client-a")

        assert (await limiter.admit("client-a")).allowed is False
        assert (await limiter.admit("client-b")).allowed is True

    @pytest.mark.asyncio
    async def test_concurrent_admissions_never_exceed_limit(self, redis, config, clock):
        """Test concurrent admissions never exceed limit"""
        limiter = SlidingWindowRateLimiter(redis, config, clock=clock)

        decisions = await asyncio.gather(*(limiter.admit("client-a") for _ in range(10)))

        assert sum(1 for d in decisions if d.allowed) == 3
        assert await redis.zcard(limiter.key_for("client-a")) == 3

    @pytest.mark.asyncio
    async def test_window_key_expires(self, redis, config, clock):
        """Test window key expires"""
        limiter = SlidingWindowRateLimiter(redis, config, clock=clock)

        await limiter.admit("client-a")

        ttl = await redis.pttl(limiter.key_for("client-a"))
        assert 0 < ttl <= 60_000

    @pytest.mark.asyncio
    async def test_reset(self, redis, config, clock):
        """Test reset"""
        limiter = SlidingWindowRateLimiter(redis, config, clock=clock)
        for _ in range(3):
            await limiter.admit("client-a")

        assert await limiter.reset("client-a") is True
        assert (await limiter.admit("client-a")).allowed is True

    @pytest.mark.asyncio
    async def test_decision_headers(self, redis, config, clock):
        """Test decision headers"""
        limiter = SlidingWindowRateLimiter(redis, config, clock=clock)

        headers = (await limiter.admit("client-a")).headers()

        assert headers["X-RateLimit-Limit"] == "3"
        assert headers["X-RateLimit-Remaining"] == "2"
        assert "X-RateLimit-Reset" in headers


class TestRateLimiterBackendDown:
    """The limiter fails open when Redis is unreachable"""

    @pytest.mark.asyncio
    async def test_admit_fails_open(self, broken_redis, config, clock):
        """Test admit fails open"""
        limiter = SlidingWindowRateLimiter(broken_redis, config, clock=clock)

        decisions = [await limiter.admit("client-a") for _ in range(5)]

        assert all(d.allowed for d in decisions)
        assert all(d.degraded for d in decisions)
        assert limiter.backend_errors == 5

    @pytest.mark.asyncio
    async def test_check_raises(self, broken_redis, config, clock):
        """Test check raises"""
        limiter = SlidingWindowRateLimiter(broken_redis, config, clock=clock)

        with pytest.raises(RateLimiterBackendError):
            await limiter.check("client-a")

    @pytest.mark.asyncio
    async def test_reset_reports_failure(self, broken_redis, config, clock):
        """Test reset reports failure"""
        limiter = SlidingWindowRateLimiter(broken_redis, config, clock=clock)

        assert await limiter.reset("client-a") is False


class TestBuildRateLimiters:
    """Test suite for the general / scan limiter pair"""

    @pytest.mark.asyncio
    async def test_limiters_use_separate_keys(self, redis, clock):
        """Test limiters use separate keys"""
        settings = Settings.model_validate(
            {
                "rate_limit": {
                    "general": {"window_ms": 60_000, "max_requests": 5},
                    "scan": {"window_ms": 60_000, "max_requests": 1},
                }
            }
        )
        general, scan = build_rate_limiters(redis, settings, clock=clock)

        assert general.key_for("1.2.3.4") == "rate_limit:1.2.3.4"
        assert scan.key_for("1.2.3.4") == "rate_limit:scan:1.2.3.4"

        assert (await scan.admit("1.2.3.4")).allowed is True
        assert (await scan.admit("1.2.3.4")).allowed is False
        assert (await general.admit("1.2.3.4")).allowed is True

    @pytest.mark.asyncio
    async def test_default_limits(self, redis):
        """Test default limits"""
        general, scan = build_rate_limiters(redis, Settings())

        assert (general.config.window_ms, general.config.max_requests) == (900_000, 100)
        assert (scan.config.window_ms, scan.config.max_requests) == (300_000, 10)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
