"""Fixed-window counters and escalation blocks.

Counters are incremented first and the post-increment value decides, so
concurrent callers can never both slip under the limit.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from roomgate.logging import get_logger
from roomgate.storage import keys
from roomgate.storage.records import RateCounter
from roomgate.storage.shared_store import SharedStore

logger = get_logger(__name__)

DEFAULT_WINDOW_SECONDS = 60


@dataclass(frozen=True)
class RateLimitRule:
    window_seconds: int
    limit: int
    scope: str = "window"

    @classmethod
    def burst(cls, limit: int = 10, window_seconds: int = 60) -> "RateLimitRule":
        return cls(window_seconds, limit, "burst")

    @classmethod
    def hourly(cls, limit: int = 60) -> "RateLimitRule":
        return cls(60 * 60, limit, "hour")

    @classmethod
    def daily(cls, limit: int = 100) -> "RateLimitRule":
        return cls(24 * 60 * 60, limit, "day")

    @classmethod
    def budget_5h(cls, limit: int = 15) -> "RateLimitRule":
        return cls(5 * 60 * 60, limit, "5h")


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    count: int
    limit: int
    remaining: int
    reset_seconds: int


class RateLimiter:
    def __init__(self, store: SharedStore) -> None:
        self.store = store

    async def check_and_increment(
        self, key: str, window_seconds: int, limit: int
    ) -> RateLimitResult:
        """Count one hit against ``key`` and report whether it is allowed.

        A non-positive limit disables the counter. A non-positive window is a
        configuration error; it is logged and replaced with 60 seconds.
        """
        if limit <= 0:
            return RateLimitResult(True, 0, limit, 0, 0)
        if window_seconds <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                key=key,
                window_seconds=window_seconds,
                message="Invalid rate limit window_seconds; defaulting to 60 seconds",
            )
            window_seconds = DEFAULT_WINDOW_SECONDS

        count = await self.store.incr(key)
        if count == 1:
            await self.store.expire(key, window_seconds)
        reset_seconds = await self._reset_seconds(key, window_seconds)

        if count > limit:
            logger.info("rate_limit_denied", key=key, count=count, limit=limit)
            return RateLimitResult(False, count, limit, 0, reset_seconds)
        return RateLimitResult(True, count, limit, limit - count, reset_seconds)

    async def check_rule(self, action: str, identifier: str, rule: RateLimitRule) -> RateLimitResult:
        return await self.check_and_increment(
            keys.rate_counter(action, rule.scope, identifier), rule.window_seconds, rule.limit
        )

    async def peek(self, action: str, identifier: str, rule: RateLimitRule) -> Optional[RateCounter]:
        """Read a counter without counting a hit."""
        key = keys.rate_counter(action, rule.scope, identifier)
        return RateCounter.decode(key, await self.store.get(key), await self.store.ttl(key))

    async def _reset_seconds(self, key: str, window_seconds: int) -> int:
        remaining = await self.store.ttl(key)
        if remaining > 0:
            return remaining
        if remaining == -1:
            # counter without an expiry never resets
            logger.warning("rate_limit_missing_expiry", key=key, window_seconds=window_seconds)
            await self.store.expire(key, window_seconds)
        return window_seconds

    async def is_blocked(self, action: str, identifier: str) -> bool:
        return bool(await self.store.exists(keys.block(action, identifier)))

    async def set_block(self, action: str, identifier: str, ttl_seconds: int) -> None:
        await self.store.set(keys.block(action, identifier), "1", ex=ttl_seconds)
        logger.warning(
            "rate_limit_block_set",
            action=action,
            identifier=identifier,
            ttl_seconds=ttl_seconds,
        )

    async def block_remaining(self, action: str, identifier: str) -> int:
        return max(0, await self.store.ttl(keys.block(action, identifier)))
