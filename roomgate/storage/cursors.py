from __future__ import annotations

from typing import AsyncIterator, List

from roomgate.storage.shared_store import SharedStore

DEFAULT_SCAN_BATCH = 100


async def iter_key_batches(
    store: SharedStore, match: str, *, count: int = DEFAULT_SCAN_BATCH, cursor: int = 0
) -> AsyncIterator[List[str]]:
    """Walk the keyspace with the store's cursor, one batch at a time.

    A walk can be resumed by passing the cursor reported by ``scan``. Keys may
    repeat across batches, so callers must tolerate duplicates.
    """

    while True:
        cursor, keys = await store.scan(cursor, match=match, count=count)
        if keys:
            yield keys
        if cursor == 0:
            return


async def collect_keys(store: SharedStore, match: str, *, count: int = DEFAULT_SCAN_BATCH) -> List[str]:
    """Return the distinct keys matching a pattern, for small per-user prefixes."""

    seen: dict[str, None] = {}
    async for batch in iter_key_batches(store, match, count=count):
        for key in batch:
            seen.setdefault(key, None)
    return list(seen)
