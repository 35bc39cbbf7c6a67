"""
Rate Limiter - fixed-window request counting per principal

Each key gets a counter that starts on its first request and resets when
the window elapses. Bursts of up to ~2x the nominal rate are possible
across a window boundary.

Two backends with the same contract:
- FixedWindowRateLimiter: in-process counters. Not shared between
  instances, so N instances each allow max_requests (an N-fold limit).
- RedisRateLimiter: counters in Redis, shared by every instance.
"""

import asyncio
import logging
import math
import os
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from redis.exceptions import RedisError

from .config import RATE_LIMIT_TIERS
from .errors import RateLimited, StorageUnavailable
from .models import RateDecision
from utils.environment import is_production

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


def _decide(count: int, max_requests: int, reset_at_ms: int, now_ms: int) -> RateDecision:
    allowed = count <= max_requests
    retry_after = 0 if allowed else max(1, math.ceil((reset_at_ms - now_ms) / 1000))
    return RateDecision(
        allowed=allowed,
        limit=max_requests,
        remaining=max(0, max_requests - count),
        reset_at_ms=reset_at_ms,
        retry_after_seconds=retry_after,
    )


class RateLimiter:
    """Common contract for both backends."""

    async def allow(self, key: str, max_requests: int, window_ms: int) -> RateDecision:
        raise NotImplementedError

    async def sweep(self) -> int:
        raise NotImplementedError

    async def check(self, key: str, max_requests: int, window_ms: int) -> RateDecision:
        """Like allow(), but raises RateLimited when denied."""
        decision = await self.allow(key, max_requests, window_ms)
        if not decision.allowed:
            logger.info(f"Rate limit exceeded for {key}, retry in {decision.retry_after_seconds}s")
            raise RateLimited(decision.retry_after_seconds)
        return decision

    async def check_tier(self, tier: str, principal: str) -> RateDecision:
        """Check a configured tier. Counters are namespaced per tier."""
        limits = RATE_LIMIT_TIERS[tier]
        return await self.check(f"{tier}:{principal}", limits["max_requests"], limits["window_ms"])


@dataclass
class _Window:
    count: int
    reset_at_ms: int


class FixedWindowRateLimiter(RateLimiter):
    """In-memory fixed-window limiter (single process only)."""

    def __init__(self, clock: Callable[[], int] = _now_ms):
        self.clock = clock
        # Format: {key: _Window}
        self._windows: Dict[str, _Window] = {}
        self._lock = asyncio.Lock()

        if is_production():
            logger.warning(
                "In-memory rate limiter active in production: counters are per instance, "
                "set REDIS_URL to share them"
            )

    async def allow(self, key: str, max_requests: int, window_ms: int) -> RateDecision:
        async with self._lock:
            now = self.clock()
            window = self._windows.get(key)

            # New window if none exists or the current one has elapsed
            if window is None or window.reset_at_ms <= now:
                window = _Window(count=0, reset_at_ms=now + window_ms)
                self._windows[key] = window

            window.count += 1
            return _decide(window.count, max_requests, window.reset_at_ms, now)

    async def sweep(self) -> int:
        """Drop counters whose window has elapsed."""
        async with self._lock:
            now = self.clock()
            stale = [key for key, window in self._windows.items() if window.reset_at_ms <= now]
            for key in stale:
                del self._windows[key]

        if stale:
            logger.debug(f"Rate limiter sweep removed {len(stale)} counters")
        return len(stale)

    def __len__(self) -> int:
        return len(self._windows)


class RedisRateLimiter(RateLimiter):
    """
    Fixed-window limiter on Redis.

    SET NX PX starts the window with its expiry, INCR counts the request and
    PTTL reports the time left, all in one MULTI/EXEC.
    """

    def __init__(self, redis_client, prefix: str = "ratelimit:", clock: Callable[[], int] = _now_ms):
        self.redis = redis_client
        self.prefix = prefix
        self.clock = clock

    async def allow(self, key: str, max_requests: int, window_ms: int) -> RateDecision:
        redis_key = f"{self.prefix}{key}"
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.set(redis_key, 0, px=window_ms, nx=True)
                pipe.incr(redis_key)
                pipe.pttl(redis_key)
                _, count, ttl_ms = await pipe.execute()

            if ttl_ms < 0:
                # Counter lost its expiry; bound it again
                await self.redis.pexpire(redis_key, window_ms)
                ttl_ms = window_ms
        except RedisError as e:
            logger.error(f"Redis rate limiter error for {key}: {e}")
            raise StorageUnavailable(e) from e

        now = self.clock()
        return _decide(int(count), max_requests, now + int(ttl_ms), now)

    async def sweep(self) -> int:
        # Redis expires counters itself
        return 0


def build_rate_limiter(redis_url: Optional[str] = None) -> RateLimiter:
    """Shared Redis limiter when REDIS_URL is set, in-memory otherwise."""
    redis_url = redis_url or os.environ.get("REDIS_URL")
    if redis_url:
        import redis.asyncio as redis

        logger.info("Rate limiter: Redis (shared across instances)")
        return RedisRateLimiter(redis.from_url(redis_url))

    logger.info("Rate limiter: in-memory (per instance)")
    return FixedWindowRateLimiter()
