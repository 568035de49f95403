"""Tests for the multi-scope rate limiter (driven by a fake clock)."""

from __future__ import annotations

import math

import pytest

from llmgate.core.config import Settings
from llmgate.gateway.errors import RateLimitExceeded
from llmgate.gateway.rate_limiter import RateLimiter, RateLimitRule, SlidingWindowRule


# ==========================================================================
# Test: Token buckets
# ==========================================================================


class TestTokenBucket:
    @pytest.mark.asyncio
    async def test_capacity_three_refill_one(self, clock):
        limiter = RateLimiter({"caller": RateLimitRule(capacity=3, refill_rate=1)}, clock=clock)

        for _ in range(3):
            assert (await limiter.check(caller="alice")).admitted

        denied = await limiter.check(caller="alice")
        assert not denied.admitted
        assert denied.scope == "caller:alice"
        assert denied.retry_after == pytest.approx(1.0)
        assert denied.limit == 3

        clock.advance(1.0)
        assert (await limiter.check(caller="alice")).admitted

    @pytest.mark.asyncio
    async def test_scopes_are_independent(self, clock):
        limiter = RateLimiter({"caller": RateLimitRule(capacity=1, refill_rate=0.1)}, clock=clock)

        assert (await limiter.check(caller="alice")).admitted
        assert (await limiter.check(caller="bob")).admitted
        assert not (await limiter.check(caller="alice")).admitted

    @pytest.mark.asyncio
    async def test_retry_after_is_sufficient(self, clock):
        limiter = RateLimiter({"provider": RateLimitRule(capacity=1, refill_rate=0.3)}, clock=clock)
        await limiter.check(provider="openai")

        denied = await limiter.check(provider="openai")
        clock.advance(denied.retry_after)

        assert (await limiter.check(provider="openai")).admitted

    @pytest.mark.asyncio
    async def test_tokens_stay_within_bounds(self, clock):
        limiter = RateLimiter({"caller": RateLimitRule(capacity=2, refill_rate=5)}, clock=clock)
        for _ in range(5):
            await limiter.check(caller="c")
            stats = limiter.get_stats("caller:c")
            assert 0 <= stats["tokens"] <= 2

        clock.advance(3600)
        assert limiter.get_stats("caller:c")["tokens"] == 2

    @pytest.mark.asyncio
    async def test_cost_above_capacity_without_refill(self, clock):
        limiter = RateLimiter({"feature": RateLimitRule(capacity=2, refill_rate=0)}, clock=clock)
        denied = await limiter.check(feature="vision", cost=5)
        assert not denied.admitted
        assert math.isinf(denied.retry_after)

    @pytest.mark.asyncio
    async def test_override_for_specific_key(self, clock):
        limiter = RateLimiter(
            {"caller": RateLimitRule(capacity=1, refill_rate=0)},
            overrides={"caller:vip": RateLimitRule(capacity=5, refill_rate=0)},
            clock=clock,
        )
        results = [await limiter.check(caller="vip") for _ in range(5)]
        assert all(r.admitted for r in results)
        assert (await limiter.check(caller="normal")).admitted
        assert not (await limiter.check(caller="normal")).admitted

    def test_unknown_scope_kind(self):
        with pytest.raises(ValueError):
            RateLimiter({"tenant": RateLimitRule(capacity=1, refill_rate=1)})


# ==========================================================================
# Test: Cascade
# ==========================================================================


class TestCascade:
    @pytest.mark.asyncio
    async def test_denial_refunds_earlier_scopes(self, clock):
        limiter = RateLimiter(
            {
                "global": RateLimitRule(capacity=10, refill_rate=0),
                "caller": RateLimitRule(capacity=1, refill_rate=0),
            },
            clock=clock,
        )
        assert (await limiter.check(caller="alice")).admitted
        denied = await limiter.check(caller="alice")

        assert denied.scope == "caller:alice"
        assert limiter.get_stats("global")["tokens"] == 9

    @pytest.mark.asyncio
    async def test_global_denies_first(self, clock):
        limiter = RateLimiter(
            {
                "global": RateLimitRule(capacity=1, refill_rate=0),
                "caller": RateLimitRule(capacity=5, refill_rate=0),
            },
            clock=clock,
        )
        await limiter.check(caller="a")
        denied = await limiter.check(caller="b")

        assert denied.scope == "global"
        assert limiter.get_stats("caller:b") is None

    @pytest.mark.asyncio
    async def test_to_error(self, clock):
        limiter = RateLimiter({"caller": RateLimitRule(capacity=1, refill_rate=2)}, clock=clock)
        await limiter.check(caller="x")
        err = (await limiter.check(caller="x")).to_error()

        assert isinstance(err, RateLimitExceeded)
        assert err.scope == "caller:x"
        assert err.retry_after == pytest.approx(0.5)


# ==========================================================================
# Test: Sliding window
# ==========================================================================


class TestSlidingWindow:
    @pytest.mark.asyncio
    async def test_window_counts_requests(self, clock):
        limiter = RateLimiter(window=SlidingWindowRule(max_requests=2, window_seconds=10), clock=clock)

        assert (await limiter.check()).admitted
        clock.advance(4)
        assert (await limiter.check()).admitted
        denied = await limiter.check()

        assert denied.scope == "global:window"
        assert denied.retry_after == pytest.approx(6)

        clock.advance(6)
        assert (await limiter.check()).admitted

    @pytest.mark.asyncio
    async def test_later_denial_removes_window_entry(self, clock):
        limiter = RateLimiter(
            {"caller": RateLimitRule(capacity=1, refill_rate=0)},
            window=SlidingWindowRule(max_requests=5, window_seconds=60),
            clock=clock,
        )
        await limiter.check(caller="a")
        await limiter.check(caller="a")

        assert limiter.get_all_stats()["window"]["count"] == 1


# ==========================================================================
# Test: Housekeeping
# ==========================================================================


class TestHousekeeping:
    @pytest.mark.asyncio
    async def test_evict_idle(self, clock):
        limiter = RateLimiter({"caller": RateLimitRule(capacity=3, refill_rate=1)}, clock=clock)
        await limiter.check(caller="old")
        clock.advance(120)
        await limiter.check(caller="fresh")

        assert limiter.evict_idle(60) == 1
        assert limiter.get_stats("caller:old") is None
        assert limiter.get_stats("caller:fresh") is not None

    def test_from_settings(self, clock):
        cfg = Settings(
            rate_limit_caller_capacity=3,
            rate_limit_caller_refill=1,
            rate_limit_window_seconds=60,
            rate_limit_window_max=100,
        )
        limiter = RateLimiter.from_settings(cfg, clock=clock)
        stats = limiter.get_all_stats()

        assert stats["window"]["max_requests"] == 100
        assert stats["buckets"] == []
