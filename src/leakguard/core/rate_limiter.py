"""
Sliding Window Rate Limiter - Distributed admission control per client key.

Each client key owns a Redis sorted set ``rate_limit:{client_key}`` whose
members are admitted requests scored by their timestamp in milliseconds.
An admission check runs one Lua script, so trimming the window, counting it
and recording the new request happen as one atomic step on the server; two
concurrent requests can never both see "one slot left" and both get in.

Failure policy: if Redis is unavailable the limiter fails OPEN and admits the
request (logged as ``rate_limit_backend_error``). Availability of the service
is preferred over strict limiting; do not change this without also changing
the callers' expectations.

Design Pattern: Sliding log
"""

import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError

from .config import Settings
from ..errors import RateLimiterBackendError


# KEYS[1]: window key
# ARGV: now_ms, window_ms, max_requests, member
# Returns {allowed (0/1), count after the call, oldest score in the window}
SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)
local allowed = 0
if count < limit then
    redis.call('ZADD', key, now, ARGV[4])
    count = count + 1
    allowed = 1
end
redis.call('PEXPIRE', key, window)

local oldest = now
local first = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
if first[2] then
    oldest = tonumber(first[2])
end
return {allowed, count, oldest}
"""


@dataclass
class RateLimitConfig:
    """Configuration for one sliding window"""
    window_ms: int = 15 * 60 * 1000  # Trailing window length
    max_requests: int = 100          # Admissions allowed inside one window
    key_prefix: str = "rate_limit"


@dataclass
class RateLimitDecision:
    """Outcome of one admission check"""
    allowed: bool
    remaining: int
    reset_at: datetime  # When the oldest admission leaves the window
    limit: int
    degraded: bool = False  # True when admitted because the backend failed

    @property
    def retry_after(self) -> int:
        """Whole seconds until a slot frees up (at least 1)"""
        delta = (self.reset_at - datetime.now(timezone.utc)).total_seconds()
        return max(1, int(delta + 0.999))

    def headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": self.reset_at.isoformat(),
        }


def _now_ms() -> int:
    return int(time.time() * 1000)


class SlidingWindowRateLimiter:
    """
    Sliding-window limiter backed by a shared Redis.

    Example:
        >>> limiter = SlidingWindowRateLimiter(redis, RateLimitConfig(window_ms=60000, max_requests=3))
        >>> decision = await limiter.admit("203.0.113.7")
        >>> decision.allowed, decision.remaining
        (True, 2)
    """

    def __init__(
        self,
        redis: Redis,
        config: Optional[RateLimitConfig] = None,
        clock: Callable[[], int] = _now_ms,
        name: str = "general",
    ):
        """
        Initialize the rate limiter.

        Args:
            redis: Shared Redis client
            config: Window configuration (uses defaults if None)
            clock: Returns the current time in epoch milliseconds
            name: Label used in logs to tell limiter instances apart
        """
        self.redis = redis
        self.config = config or RateLimitConfig()
        self.clock = clock
        self.name = name
        self._script = redis.register_script(SLIDING_WINDOW_SCRIPT)

        # Statistics
        self.allowed_count = 0
        self.denied_count = 0
        self.backend_errors = 0

        self.logger = structlog.get_logger(__name__, limiter=name)

        self.logger.info(
            "rate_limiter_initialized",
            window_ms=self.config.window_ms,
            max_requests=self.config.max_requests,
        )

    def key_for(self, client_key: str) -> str:
        return f"{self.config.key_prefix}:{client_key}"

    async def check(self, client_key: str) -> RateLimitDecision:
        """
        Atomically trim, count and (if below the limit) record.

        Raises:
            RateLimiterBackendError: If the script could not run
        """
        now = self.clock()
        member = f"{now}-{uuid.uuid4().hex}"
        try:
            allowed, count, oldest = await self._script(
                keys=[self.key_for(client_key)],
                args=[now, self.config.window_ms, self.config.max_requests, member],
            )
        except RedisError as e:
            raise RateLimiterBackendError(detail={"reason": str(e)}) from e

        allowed, count, oldest = int(allowed), int(count), int(oldest)
        return RateLimitDecision(
            allowed=bool(allowed),
            remaining=max(0, self.config.max_requests - count),
            reset_at=self._to_datetime(oldest + self.config.window_ms),
            limit=self.config.max_requests,
        )

    async def admit(self, client_key: str) -> RateLimitDecision:
        """
        Decide whether ``client_key`` may make another request.

        Never raises for backend failures: the request is admitted with
        ``degraded=True`` instead.
        """
        try:
            decision = await self.check(client_key)
        except RateLimiterBackendError as e:
            self.backend_errors += 1
            self.logger.warning(
                "rate_limit_backend_error",
                client_key=client_key,
                reason=e.detail.get("reason"),
                policy="fail_open",
            )
            now = self.clock()
            return RateLimitDecision(
                allowed=True,
                remaining=self.config.max_requests,
                reset_at=self._to_datetime(now + self.config.window_ms),
                limit=self.config.max_requests,
                degraded=True,
            )

        if decision.allowed:
            self.allowed_count += 1
            self.logger.debug(
                "rate_limit_admitted",
                client_key=client_key,
                remaining=decision.remaining,
            )
        else:
            self.denied_count += 1
            self.logger.warning(
                "rate_limit_hit",
                client_key=client_key,
                max_requests=self.config.max_requests,
                reset_at=decision.reset_at.isoformat(),
            )
        return decision

    async def reset(self, client_key: str) -> bool:
        """Forget every admission recorded for ``client_key``"""
        try:
            deleted = await self.redis.delete(self.key_for(client_key))
        except RedisError as e:
            self.logger.error("rate_limiter_reset_failed", client_key=client_key, error=str(e))
            return False

        self.logger.info("rate_limiter_reset", client_key=client_key)
        return deleted > 0

    def get_stats(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "allowed": self.allowed_count,
            "denied": self.denied_count,
            "backend_errors": self.backend_errors,
            "config": {
                "window_ms": self.config.window_ms,
                "max_requests": self.config.max_requests,
            },
        }

    @staticmethod
    def _to_datetime(epoch_ms: int) -> datetime:
        return datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc)


def build_rate_limiters(
    redis: Redis,
    settings: Settings,
    clock: Callable[[], int] = _now_ms,
) -> Tuple[SlidingWindowRateLimiter, SlidingWindowRateLimiter]:
    """
    Create the general endpoint limiter and the stricter scan limiter.

    Scan windows live under ``rate_limit:scan:{client_key}`` so the two
    limiters never share a window.

    Returns:
        (general_limiter, scan_limiter)
    """
    general = SlidingWindowRateLimiter(
        redis,
        RateLimitConfig(
            window_ms=settings.rate_limit.general.window_ms,
            max_requests=settings.rate_limit.general.max_requests,
        ),
        clock=clock,
        name="general",
    )
    scan = SlidingWindowRateLimiter(
        redis,
        RateLimitConfig(
            window_ms=settings.rate_limit.scan.window_ms,
            max_requests=settings.rate_limit.scan.max_requests,
            key_prefix="rate_limit:scan",
        ),
        clock=clock,
        name="scan",
    )
    return general, scan
