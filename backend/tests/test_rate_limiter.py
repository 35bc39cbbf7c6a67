"""
Unit Tests for Rate Limiter
===========================

Tests:
1. Fixed-window counting, denial and retry-after
2. Window reset
3. Key and tier isolation
4. Sweep of elapsed windows
5. Redis backend (mocked pipeline) and its failure mode
"""

import asyncio
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from credit_gate.errors import RateLimited, StorageUnavailable
from credit_gate.rate_limiter import FixedWindowRateLimiter, RedisRateLimiter, build_rate_limiter


class _Clock:
    def __init__(self, start_ms=1_000_000):
        self.now_ms = start_ms

    def __call__(self):
        return self.now_ms


class _FakePipeline:
    def __init__(self, results=None, error=None):
        self.results = results
        self.error = error
        self.commands = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def set(self, key, value, px=None, nx=False):
        self.commands.append(("set", key, value, px, nx))
        return self

    def incr(self, key):
        self.commands.append(("incr", key))
        return self

    def pttl(self, key):
        self.commands.append(("pttl", key))
        return self

    async def execute(self):
        if self.error:
            raise self.error
        return self.results


def _redis_with(pipeline):
    client = MagicMock()
    client.pipeline.return_value = pipeline
    client.pexpire = AsyncMock()
    return client


class TestFixedWindow:
    @pytest.mark.asyncio
    async def test_allows_up_to_max_then_denies(self):
        """Max 3 per 60s: the 4th call is denied with 0 < retry <= 60."""
        clock = _Clock()
        limiter = FixedWindowRateLimiter(clock=clock)

        decisions = [await limiter.allow("user:1", 3, 60_000) for _ in range(4)]

        assert [d.allowed for d in decisions] == [True, True, True, False]
        assert [d.remaining for d in decisions] == [2, 1, 0, 0]
        assert decisions[0].retry_after_seconds == 0
        assert 0 < decisions[3].retry_after_seconds <= 60

    @pytest.mark.asyncio
    async def test_retry_after_counts_down(self):
        clock = _Clock()
        limiter = FixedWindowRateLimiter(clock=clock)
        await limiter.allow("k", 1, 60_000)

        clock.now_ms += 45_500
        decision = await limiter.allow("k", 1, 60_000)

        assert decision.allowed is False
        assert decision.retry_after_seconds == 15

        clock.now_ms += 14_000
        decision = await limiter.allow("k", 1, 60_000)
        assert decision.retry_after_seconds == 1

    @pytest.mark.asyncio
    async def test_window_resets(self):
        clock = _Clock()
        limiter = FixedWindowRateLimiter(clock=clock)
        for _ in range(4):
            await limiter.allow("k", 3, 60_000)

        clock.now_ms += 60_000
        decision = await limiter.allow("k", 3, 60_000)

        assert decision.allowed is True
        assert decision.remaining == 2
        assert decision.reset_at_ms == clock.now_ms + 60_000

    @pytest.mark.asyncio
    async def test_keys_are_independent(self):
        limiter = FixedWindowRateLimiter(clock=_Clock())
        await limiter.allow("a", 1, 60_000)

        assert (await limiter.allow("a", 1, 60_000)).allowed is False
        assert (await limiter.allow("b", 1, 60_000)).allowed is True

    @pytest.mark.asyncio
    async def test_concurrent_calls_never_exceed_max(self):
        limiter = FixedWindowRateLimiter(clock=_Clock())

        decisions = await asyncio.gather(*[limiter.allow("k", 10, 60_000) for _ in range(25)])

        assert sum(1 for d in decisions if d.allowed) == 10

    @pytest.mark.asyncio
    async def test_check_raises_rate_limited(self):
        limiter = FixedWindowRateLimiter(clock=_Clock())
        await limiter.check("k", 1, 60_000)

        with pytest.raises(RateLimited) as exc_info:
            await limiter.check("k", 1, 60_000)

        assert exc_info.value.status_code == 429
        assert exc_info.value.details == {"retry_after": 60}

    @pytest.mark.asyncio
    async def test_tiers_do_not_share_counters(self):
        """Exhausting the auth tier leaves the general tier untouched."""
        limiter = FixedWindowRateLimiter(clock=_Clock())
        for _ in range(10):
            await limiter.check_tier("auth", "user:1")

        with pytest.raises(RateLimited):
            await limiter.check_tier("auth", "user:1")

        decision = await limiter.check_tier("general", "user:1")
        assert decision.remaining == 99

    @pytest.mark.asyncio
    async def test_sweep_drops_elapsed_windows(self):
        clock = _Clock()
        limiter = FixedWindowRateLimiter(clock=clock)
        await limiter.allow("old", 5, 10_000)
        clock.now_ms += 5_000
        await limiter.allow("new", 5, 10_000)

        clock.now_ms += 5_000
        assert await limiter.sweep() == 1
        assert len(limiter) == 1

        clock.now_ms += 5_000
        assert await limiter.sweep() == 1
        assert len(limiter) == 0


class TestRedisRateLimiter:
    @pytest.mark.asyncio
    async def test_counts_in_one_transaction(self):
        pipeline = _FakePipeline(results=[True, 1, 60_000])
        client = _redis_with(pipeline)
        limiter = RedisRateLimiter(client, clock=_Clock())

        decision = await limiter.allow("ai:user:1", 30, 60_000)

        client.pipeline.assert_called_once_with(transaction=True)
        assert pipeline.commands == [
            ("set", "ratelimit:ai:user:1", 0, 60_000, True),
            ("incr", "ratelimit:ai:user:1"),
            ("pttl", "ratelimit:ai:user:1"),
        ]
        assert decision.allowed is True
        assert decision.remaining == 29
        assert decision.reset_at_ms == 1_000_000 + 60_000

    @pytest.mark.asyncio
    async def test_denies_over_limit(self):
        limiter = RedisRateLimiter(_redis_with(_FakePipeline(results=[None, 31, 12_300])), clock=_Clock())

        decision = await limiter.allow("ai:user:1", 30, 60_000)

        assert decision.allowed is False
        assert decision.retry_after_seconds == 13

    @pytest.mark.asyncio
    async def test_restores_missing_expiry(self):
        client = _redis_with(_FakePipeline(results=[None, 2, -1]))
        limiter = RedisRateLimiter(client, clock=_Clock())

        decision = await limiter.allow("k", 5, 60_000)

        client.pexpire.assert_awaited_once_with("ratelimit:k", 60_000)
        assert decision.reset_at_ms == 1_000_000 + 60_000

    @pytest.mark.asyncio
    async def test_redis_failure_is_storage_unavailable(self):
        pipeline = _FakePipeline(error=RedisConnectionError("connection refused"))
        limiter = RedisRateLimiter(_redis_with(pipeline), clock=_Clock())

        with pytest.raises(StorageUnavailable):
            await limiter.allow("k", 5, 60_000)


class TestBuildRateLimiter:
    def test_in_memory_without_redis_url(self, monkeypatch):
        monkeypatch.delenv("REDIS_URL", raising=False)

        assert isinstance(build_rate_limiter(), FixedWindowRateLimiter)

    def test_redis_with_url(self):
        limiter = build_rate_limiter("redis://localhost:6379/0")

        assert isinstance(limiter, RedisRateLimiter)

    def test_in_memory_warns_in_production(self, monkeypatch, caplog):
        monkeypatch.setattr("utils.environment.ENVIRONMENT", "production")

        FixedWindowRateLimiter()

        assert "In-memory rate limiter active in production" in caplog.text

    def test_in_memory_quiet_in_development(self, monkeypatch, caplog):
        monkeypatch.setattr("utils.environment.ENVIRONMENT", "development")

        FixedWindowRateLimiter()

        assert "In-memory rate limiter" not in caplog.text
