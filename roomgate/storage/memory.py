from __future__ import annotations

import fnmatch
import math
import threading
import time
import zlib
from typing import Dict, List, Optional, Sequence, Tuple

from roomgate.storage.shared_store import Clock, Score

SCAN_BUCKETS = 1024


def _parse_bound(bound: Score) -> Tuple[float, bool]:
    """Return ``(value, exclusive)`` for a Redis-style score bound."""
    if isinstance(bound, str):
        text = bound.strip()
        exclusive = text.startswith("(")
        if exclusive:
            text = text[1:]
        if text in ("-inf", "+inf", "inf"):
            return (-math.inf if text == "-inf" else math.inf), exclusive
        return float(text), exclusive
    return float(bound), False


def _scan_bucket(key: str) -> int:
    return zlib.crc32(key.encode("utf-8")) % SCAN_BUCKETS


def _within(score: float, low: Tuple[float, bool], high: Tuple[float, bool]) -> bool:
    low_value, low_exclusive = low
    high_value, high_exclusive = high
    if score < low_value or (low_exclusive and score == low_value):
        return False
    if score > high_value or (high_exclusive and score == high_value):
        return False
    return True


class MemorySharedStore:
    """In-process shared store for tests and single-instance development.

    Expiry is lazy: a key past its deadline is dropped the next time any
    operation touches it. The clock is injectable so windows and TTLs can be
    advanced deterministically.
    """

    def __init__(self, clock: Optional[Clock] = None) -> None:
        self._clock: Clock = clock or time.time
        self._values: Dict[str, str] = {}
        self._zsets: Dict[str, Dict[str, float]] = {}
        self._expiry: Dict[str, float] = {}
        self._lock = threading.RLock()

    # -- internal helpers -------------------------------------------------

    def _purge(self, key: str) -> None:
        deadline = self._expiry.get(key)
        if deadline is not None and deadline <= self._clock():
            self._drop(key)

    def _drop(self, key: str) -> bool:
        existed = key in self._values or key in self._zsets
        self._values.pop(key, None)
        self._zsets.pop(key, None)
        self._expiry.pop(key, None)
        return existed

    def _live(self, key: str) -> bool:
        self._purge(key)
        return key in self._values or key in self._zsets

    def _live_keys(self) -> List[str]:
        for key in list(self._expiry):
            self._purge(key)
        return sorted(set(self._values) | set(self._zsets))

    # -- strings ------------------------------------------------------------

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            self._purge(key)
            return self._values.get(key)

    async def mget(self, keys: Sequence[str]) -> List[Optional[str]]:
        with self._lock:
            result = []
            for key in keys:
                self._purge(key)
                result.append(self._values.get(key))
            return result

    async def set(
        self, key: str, value: str, *, ex: Optional[int] = None, nx: bool = False
    ) -> bool:
        with self._lock:
            if nx and self._live(key):
                return False
            self._drop(key)
            self._values[key] = str(value)
            if ex is not None:
                self._expiry[key] = self._clock() + ex
            return True

    async def delete(self, *keys: str) -> int:
        with self._lock:
            removed = 0
            for key in keys:
                self._purge(key)
                if self._drop(key):
                    removed += 1
            return removed

    async def exists(self, *keys: str) -> int:
        with self._lock:
            return sum(1 for key in keys if self._live(key))

    async def incr(self, key: str) -> int:
        with self._lock:
            self._purge(key)
            current = int(self._values.get(key, "0"))
            current += 1
            self._values[key] = str(current)
            return current

    async def expire(self, key: str, seconds: int) -> bool:
        with self._lock:
            if not self._live(key):
                return False
            if seconds <= 0:
                self._drop(key)
                return True
            self._expiry[key] = self._clock() + seconds
            return True

    async def ttl(self, key: str) -> int:
        with self._lock:
            if not self._live(key):
                return -2
            deadline = self._expiry.get(key)
            if deadline is None:
                return -1
            return max(0, math.ceil(deadline - self._clock()))

    # -- sorted sets --------------------------------------------------------

    async def zadd(self, key: str, mapping: Dict[str, float], *, gt: bool = False) -> int:
        with self._lock:
            self._purge(key)
            members = self._zsets.setdefault(key, {})
            added = 0
            for member, score in mapping.items():
                previous = members.get(member)
                if previous is None:
                    members[member] = float(score)
                    added += 1
                elif not gt or float(score) > previous:
                    members[member] = float(score)
            return added

    async def zrem(self, key: str, *members: str) -> int:
        with self._lock:
            self._purge(key)
            entries = self._zsets.get(key)
            if not entries:
                return 0
            removed = sum(1 for member in members if entries.pop(member, None) is not None)
            if not entries:
                self._drop(key)
            return removed

    async def zrangebyscore(
        self, key: str, min_score: Score, max_score: Score
    ) -> List[Tuple[str, float]]:
        with self._lock:
            self._purge(key)
            low, high = _parse_bound(min_score), _parse_bound(max_score)
            entries = self._zsets.get(key, {})
            matched = [(m, s) for m, s in entries.items() if _within(s, low, high)]
            return sorted(matched, key=lambda item: (item[1], item[0]))

    async def zremrangebyscore(self, key: str, min_score: Score, max_score: Score) -> int:
        with self._lock:
            self._purge(key)
            entries = self._zsets.get(key)
            if not entries:
                return 0
            low, high = _parse_bound(min_score), _parse_bound(max_score)
            doomed = [m for m, s in entries.items() if _within(s, low, high)]
            for member in doomed:
                del entries[member]
            if not entries:
                self._drop(key)
            return len(doomed)

    async def zcard(self, key: str) -> int:
        with self._lock:
            self._purge(key)
            return len(self._zsets.get(key, {}))

    # -- keyspace -----------------------------------------------------------

    async def scan(
        self, cursor: int, *, match: str, count: int = 100
    ) -> Tuple[int, List[str]]:
        """Walk keys bucket by bucket; the cursor is the next bucket to visit.

        Buckets come from a stable hash of the key, so the cursor carries all
        walk state. A key present for the whole walk is returned exactly once
        and deleting other keys never shifts it.
        """
        with self._lock:
            buckets: Dict[int, List[str]] = {}
            for key in self._live_keys():
                buckets.setdefault(_scan_bucket(key), []).append(key)
            bucket = max(0, cursor)
            examined = 0
            batch: List[str] = []
            while bucket < SCAN_BUCKETS and examined < max(1, count):
                members = buckets.get(bucket, [])
                examined += len(members)
                batch.extend(key for key in members if fnmatch.fnmatchcase(key, match))
                bucket += 1
            return (0 if bucket >= SCAN_BUCKETS else bucket), batch

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        with self._lock:
            self._values.clear()
            self._zsets.clear()
            self._expiry.clear()
