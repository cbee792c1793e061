from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Dict, List, Optional, Sequence, Tuple, TypeVar

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from roomgate.logging import get_logger
from roomgate.storage.errors import StoreUnavailableError
from roomgate.storage.shared_store import Score

logger = get_logger(__name__)

T = TypeVar("T")


class RedisSharedStore:
    """Shared store backed by Redis.

    Every command runs under a deadline. Connection failures and deadline
    overruns surface as ``StoreUnavailableError`` and are never retried here.
    """

    DEFAULT_OPERATION_TIMEOUT = 2.0

    def __init__(self, redis_url: str, *, timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.timeout = timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=timeout,
            socket_connect_timeout=timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving traffic."""
        # runs before any event loop exists, so it uses a sync client
        sync_client = Redis.from_url(
            self.redis_url, decode_responses=True, socket_connect_timeout=self.timeout
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def _call(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except (asyncio.TimeoutError, RedisTimeoutError) as exc:
            logger.warning("store_timeout", operation=operation, timeout=self.timeout)
            raise StoreUnavailableError(
                "shared store timed out", {"operation": operation}
            ) from exc
        except RedisConnectionError as exc:
            logger.error("store_connection_failed", operation=operation, error=str(exc))
            raise StoreUnavailableError(
                "shared store unreachable", {"operation": operation}
            ) from exc

    async def get(self, key: str) -> Optional[str]:
        return await self._call("get", self.client.get(key))

    async def mget(self, keys: Sequence[str]) -> List[Optional[str]]:
        if not keys:
            return []
        return await self._call("mget", self.client.mget(list(keys)))

    async def set(
        self, key: str, value: str, *, ex: Optional[int] = None, nx: bool = False
    ) -> bool:
        result = await self._call("set", self.client.set(key, value, ex=ex, nx=nx))
        return bool(result)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self._call("delete", self.client.delete(*keys)))

    async def exists(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self._call("exists", self.client.exists(*keys)))

    async def incr(self, key: str) -> int:
        return int(await self._call("incr", self.client.incr(key)))

    async def expire(self, key: str, seconds: int) -> bool:
        return bool(await self._call("expire", self.client.expire(key, seconds)))

    async def ttl(self, key: str) -> int:
        return int(await self._call("ttl", self.client.ttl(key)))

    async def zadd(self, key: str, mapping: Dict[str, float], *, gt: bool = False) -> int:
        return int(await self._call("zadd", self.client.zadd(key, mapping, gt=gt)))

    async def zrem(self, key: str, *members: str) -> int:
        if not members:
            return 0
        return int(await self._call("zrem", self.client.zrem(key, *members)))

    async def zrangebyscore(
        self, key: str, min_score: Score, max_score: Score
    ) -> List[Tuple[str, float]]:
        rows: List[Any] = await self._call(
            "zrangebyscore",
            self.client.zrangebyscore(key, min_score, max_score, withscores=True),
        )
        return [(member, float(score)) for member, score in rows]

    async def zremrangebyscore(self, key: str, min_score: Score, max_score: Score) -> int:
        return int(
            await self._call(
                "zremrangebyscore", self.client.zremrangebyscore(key, min_score, max_score)
            )
        )

    async def zcard(self, key: str) -> int:
        return int(await self._call("zcard", self.client.zcard(key)))

    async def scan(
        self, cursor: int, *, match: str, count: int = 100
    ) -> Tuple[int, List[str]]:
        next_cursor, keys = await self._call(
            "scan", self.client.scan(cursor=cursor, match=match, count=count)
        )
        return int(next_cursor), list(keys)

    async def ping(self) -> bool:
        return bool(await self._call("ping", self.client.ping()))

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
