"""Room presence with TTL expiry and periodic reconciliation.

Each room keeps a sorted set of usernames scored by last-seen time, plus one
companion key per member that expires after the presence TTL. A member is
active only while both agree, so lazily expired entries are never counted.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass
from typing import List, Optional, Set

from roomgate.logging import get_logger
from roomgate.storage import keys
from roomgate.storage.cursors import iter_key_batches
from roomgate.storage.records import PresenceEntry
from roomgate.storage.shared_store import Clock, SharedStore

logger = get_logger(__name__)

DEFAULT_RECONCILE_INTERVAL_SECONDS = 300
MAX_BACKOFF_SECONDS = 3600


@dataclass(frozen=True)
class ReconcileReport:
    scanned: int
    removed: int
    rooms: int


class PresenceTracker:
    def __init__(
        self, store: SharedStore, *, ttl_seconds: int, clock: Optional[Clock] = None
    ) -> None:
        self.store = store
        self.ttl_seconds = ttl_seconds
        self._clock: Clock = clock or time.time

    def _cutoff(self) -> float:
        return self._clock() - self.ttl_seconds

    async def mark_present(self, room_id: str, username: str) -> None:
        now = self._clock()
        # gt keeps last_seen_at monotonic when instance clocks disagree
        await self.store.zadd(keys.presence(room_id), {username: now}, gt=True)
        await self.store.set(
            keys.presence_ttl(room_id, username), repr(now), ex=self.ttl_seconds
        )
        await self.refresh_count(room_id)

    async def mark_absent(self, room_id: str, username: str) -> None:
        await self.store.zrem(keys.presence(room_id), username)
        await self.store.delete(keys.presence_ttl(room_id, username))
        await self.refresh_count(room_id)
        logger.info("presence_left", room_id=room_id, username=username)

    async def entries(self, room_id: str) -> List[PresenceEntry]:
        """Live entries ordered by last-seen time."""
        rows = await self.store.zrangebyscore(keys.presence(room_id), self._cutoff(), "+inf")
        if not rows:
            return []
        markers = await self.store.mget(
            [keys.presence_ttl(room_id, member) for member, _ in rows]
        )
        return [
            PresenceEntry(room_id=room_id, username=member, last_seen_at=score)
            for (member, score), marker in zip(rows, markers)
            if marker is not None
        ]

    async def active_users(self, room_id: str) -> Set[str]:
        return {entry.username for entry in await self.entries(room_id)}

    async def room_count(self, room_id: str) -> int:
        """Cached user count; recomputed from the live set when missing or corrupt."""
        cached = await self.store.get(keys.room_count(room_id))
        if cached is not None:
            try:
                return int(cached)
            except ValueError:
                logger.warning("presence_count_corrupt", room_id=room_id)
        return await self.refresh_count(room_id)

    async def refresh_count(self, room_id: str) -> int:
        """Recompute the cached count from the live set."""
        count = len(await self.active_users(room_id))
        if count:
            await self.store.set(keys.room_count(room_id), str(count), ex=self.ttl_seconds)
        else:
            await self.store.delete(keys.room_count(room_id))
        return count

    async def reconcile(self) -> ReconcileReport:
        """Purge stale entries room by room and resync cached counts.

        The staleness cutoff is taken per room at the moment that room is
        processed, so a heartbeat that lands mid-scan is never removed.
        """
        scanned = removed = rooms = 0
        seen: Set[str] = set()
        async for batch in iter_key_batches(self.store, keys.all_presence()):
            for key in batch:
                room_id = keys.room_from_presence_key(key)
                if room_id is None or room_id in seen:
                    continue
                seen.add(room_id)
                scanned += await self.store.zcard(key)
                removed += await self.store.zremrangebyscore(key, "-inf", f"({self._cutoff()}")
                await self.refresh_count(room_id)
                rooms += 1
        logger.info(
            "presence_reconcile_completed", scanned=scanned, removed=removed, rooms=rooms
        )
        return ReconcileReport(scanned=scanned, removed=removed, rooms=rooms)


class PresenceReconciler:
    """Scheduled reconciliation with its own task and cancellation.

    A lease key taken with ``SET NX EX`` lets one instance in a fleet run the
    pass per interval; the others skip.
    """

    def __init__(
        self,
        tracker: PresenceTracker,
        *,
        interval_seconds: int = DEFAULT_RECONCILE_INTERVAL_SECONDS,
    ) -> None:
        self.tracker = tracker
        self.store = tracker.store
        self.interval_seconds = interval_seconds
        self.instance_id = uuid.uuid4().hex
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.warning("presence_reconciler_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("presence_reconciler_started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("presence_reconciler_stopped")

    async def run_once(self) -> Optional[ReconcileReport]:
        """Reconcile if this instance wins the lease for the current interval."""
        acquired = await self.store.set(
            keys.RECONCILE_LEASE_KEY, self.instance_id, ex=self.interval_seconds, nx=True
        )
        if not acquired:
            logger.debug("presence_reconcile_skipped", reason="lease_held")
            return None
        return await self.tracker.reconcile()

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        while self._running:
            try:
                await self.run_once()
                consecutive_errors = 0
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "presence_reconciler_loop_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
                if consecutive_errors > 3:
                    backoff = min(
                        MAX_BACKOFF_SECONDS,
                        self.interval_seconds * (2 ** (consecutive_errors - 3)),
                    )
                    logger.warning(
                        "presence_reconciler_backoff",
                        backoff_seconds=backoff,
                        consecutive_errors=consecutive_errors,
                    )
                    await asyncio.sleep(backoff)
                    continue
            await asyncio.sleep(self.interval_seconds)
