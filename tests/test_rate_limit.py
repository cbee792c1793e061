"""Tests for fixed-window rate limiting and escalation blocks.

Counters are compared after the increment, so the (N+1)th hit inside a
window is denied and stays counted.
"""
from unittest.mock import AsyncMock, patch

import pytest

from roomgate.service.rate_limit import RateLimiter, RateLimitRule


@pytest.fixture
def limiter(store):
    return RateLimiter(store)


class TestCheckAndIncrement:
    """Tests for RateLimiter.check_and_increment."""

    async def test_six_rapid_calls_against_limit_five(self, limiter):
        results = [await limiter.check_and_increment("ratelimit:t:burst:ip", 60, 5) for _ in range(6)]

        assert [r.allowed for r in results] == [True, True, True, True, True, False]
        assert [r.remaining for r in results[:5]] == [4, 3, 2, 1, 0]
        assert results[5].count == 6
        assert results[5].remaining == 0
        assert all(r.limit == 5 for r in results)

    async def test_fresh_window_after_expiry(self, limiter, clock):
        for _ in range(6):
            await limiter.check_and_increment("key", 60, 5)
        clock.advance(60)

        result = await limiter.check_and_increment("key", 60, 5)
        assert result.allowed is True
        assert result.count == 1
        assert result.remaining == 4

    async def test_reset_seconds_counts_down(self, limiter, clock):
        first = await limiter.check_and_increment("key", 60, 5)
        assert first.reset_seconds == 60
        clock.advance(15)
        second = await limiter.check_and_increment("key", 60, 5)
        assert second.reset_seconds == 45

    async def test_denied_hit_stays_counted(self, limiter, store):
        for _ in range(3):
            await limiter.check_and_increment("key", 60, 2)
        assert await store.get("key") == "3"

    async def test_zero_limit_always_passes(self, limiter, store):
        result = await limiter.check_and_increment("key", 60, 0)
        assert result.allowed is True
        assert await store.exists("key") == 0

    async def test_invalid_window_logs_warning(self, limiter, store):
        """Invalid window_seconds logs warning and defaults to 60."""
        with patch("roomgate.service.rate_limit.logger") as mock_logger:
            result = await limiter.check_and_increment("key", 0, 10)

            mock_logger.warning.assert_called_once()
            call_args = mock_logger.warning.call_args
            assert call_args[0][0] == "rate_limit_invalid_window"
            assert call_args[1]["window_seconds"] == 0
        assert result.reset_seconds == 60
        assert await store.ttl("key") == 60

    async def test_valid_window_no_warning(self, limiter):
        with patch("roomgate.service.rate_limit.logger") as mock_logger:
            await limiter.check_and_increment("key", 60, 10)
            mock_logger.warning.assert_not_called()

    async def test_missing_ttl_falls_back_to_window(self):
        """A counter observed without expiry reports the window and is re-armed."""
        store = AsyncMock()
        store.incr.return_value = 2
        store.ttl.return_value = -1
        limiter = RateLimiter(store)

        result = await limiter.check_and_increment("key", 30, 5)

        assert result.reset_seconds == 30
        assert result.allowed is True
        store.expire.assert_awaited_once_with("key", 30)

    async def test_first_hit_sets_expiry(self):
        store = AsyncMock()
        store.incr.return_value = 1
        store.ttl.return_value = 60
        limiter = RateLimiter(store)

        await limiter.check_and_increment("key", 60, 5)

        store.expire.assert_awaited_once_with("key", 60)


class TestRules:
    def test_presets(self):
        assert RateLimitRule.burst() == RateLimitRule(60, 10, "burst")
        assert RateLimitRule.daily() == RateLimitRule(86400, 100, "day")
        assert RateLimitRule.hourly() == RateLimitRule(3600, 60, "hour")
        assert RateLimitRule.budget_5h() == RateLimitRule(18000, 15, "5h")

    async def test_check_rule_uses_namespaced_key(self, limiter, store):
        await limiter.check_rule("createUser", "10.0.0.1", RateLimitRule.burst(limit=3))
        assert await store.get("ratelimit:createUser:burst:10.0.0.1") == "1"


class TestBlocks:
    async def test_block_lifecycle(self, limiter, clock):
        assert await limiter.is_blocked("createUser", "1.2.3.4") is False
        await limiter.set_block("createUser", "1.2.3.4", 86400)
        assert await limiter.is_blocked("createUser", "1.2.3.4") is True
        assert await limiter.block_remaining("createUser", "1.2.3.4") == 86400

        clock.advance(86400)
        assert await limiter.is_blocked("createUser", "1.2.3.4") is False
        assert await limiter.block_remaining("createUser", "1.2.3.4") == 0

    async def test_block_is_scoped_to_action(self, limiter):
        await limiter.set_block("createUser", "1.2.3.4", 60)
        assert await limiter.is_blocked("generateToken", "1.2.3.4") is False


class TestPeek:
    async def test_peek_does_not_count(self, limiter, clock):
        rule = RateLimitRule.burst(limit=3)
        assert await limiter.peek("createUser", "1.2.3.4", rule) is None

        await limiter.check_rule("createUser", "1.2.3.4", rule)
        clock.advance(20)
        counter = await limiter.peek("createUser", "1.2.3.4", rule)

        assert counter.count == 1
        assert counter.reset_seconds == 40
        assert counter.key == "ratelimit:createUser:burst:1.2.3.4"
        assert (await limiter.peek("createUser", "1.2.3.4", rule)).count == 1

    async def test_corrupt_counter_reads_as_absent(self, limiter, store):
        rule = RateLimitRule.burst()
        await store.set("ratelimit:createUser:burst:1.2.3.4", "lots", ex=60)
        assert await limiter.peek("createUser", "1.2.3.4", rule) is None
