from __future__ import annotations

from typing import Callable, Dict, List, Optional, Protocol, Sequence, Tuple, Union

Clock = Callable[[], float]
Score = Union[float, str]


class SharedStore(Protocol):
    """Async key-value operations every component is written against.

    Scores and timestamps are epoch seconds. ``ttl`` follows Redis: ``-2`` for
    a missing key and ``-1`` for a key without expiry.
    """

    async def get(self, key: str) -> Optional[str]: ...

    async def mget(self, keys: Sequence[str]) -> List[Optional[str]]: ...

    async def set(
        self, key: str, value: str, *, ex: Optional[int] = None, nx: bool = False
    ) -> bool: ...

    async def delete(self, *keys: str) -> int: ...

    async def exists(self, *keys: str) -> int: ...

    async def incr(self, key: str) -> int: ...

    async def expire(self, key: str, seconds: int) -> bool: ...

    async def ttl(self, key: str) -> int: ...

    async def zadd(self, key: str, mapping: Dict[str, float], *, gt: bool = False) -> int: ...

    async def zrem(self, key: str, *members: str) -> int: ...

    async def zrangebyscore(
        self, key: str, min_score: Score, max_score: Score
    ) -> List[Tuple[str, float]]: ...

    async def zremrangebyscore(self, key: str, min_score: Score, max_score: Score) -> int: ...

    async def zcard(self, key: str) -> int: ...

    async def scan(
        self, cursor: int, *, match: str, count: int = 100
    ) -> Tuple[int, List[str]]: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...
