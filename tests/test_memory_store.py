"""Tests for the in-memory shared store used by tests and local fallback."""

import pytest

from roomgate.storage.cursors import collect_keys, iter_key_batches


class TestExpiry:
    async def test_set_with_ex_expires_lazily(self, store, clock):
        await store.set("k", "v", ex=10)
        assert await store.get("k") == "v"
        clock.advance(10)
        assert await store.get("k") is None
        assert await store.exists("k") == 0

    async def test_ttl_reports_redis_codes(self, store, clock):
        assert await store.ttl("missing") == -2
        await store.set("plain", "1")
        assert await store.ttl("plain") == -1
        await store.set("timed", "1", ex=30)
        clock.advance(10)
        assert await store.ttl("timed") == 20

    async def test_incr_preserves_expiry(self, store, clock):
        assert await store.incr("c") == 1
        await store.expire("c", 60)
        assert await store.incr("c") == 2
        assert await store.ttl("c") == 60
        clock.advance(60)
        assert await store.incr("c") == 1

    async def test_set_nx_only_when_absent(self, store, clock):
        assert await store.set("lease", "a", ex=5, nx=True) is True
        assert await store.set("lease", "b", ex=5, nx=True) is False
        assert await store.get("lease") == "a"
        clock.advance(5)
        assert await store.set("lease", "b", ex=5, nx=True) is True

    async def test_expire_on_missing_key(self, store):
        assert await store.expire("nothing", 10) is False


class TestSortedSets:
    async def test_zadd_gt_keeps_highest_score(self, store):
        assert await store.zadd("z", {"alice": 100.0}) == 1
        assert await store.zadd("z", {"alice": 50.0}, gt=True) == 0
        assert await store.zrangebyscore("z", "-inf", "+inf") == [("alice", 100.0)]
        await store.zadd("z", {"alice": 150.0}, gt=True)
        assert await store.zrangebyscore("z", "-inf", "+inf") == [("alice", 150.0)]

    async def test_exclusive_bounds(self, store):
        await store.zadd("z", {"a": 1.0, "b": 2.0, "c": 3.0})
        assert [m for m, _ in await store.zrangebyscore("z", "(1", "+inf")] == ["b", "c"]
        assert await store.zremrangebyscore("z", "-inf", "(3") == 2
        assert await store.zcard("z") == 1

    async def test_empty_set_is_removed(self, store):
        await store.zadd("z", {"a": 1.0})
        assert await store.zrem("z", "a") == 1
        assert await store.exists("z") == 0


class TestScan:
    async def test_scan_pages_through_matching_keys(self, store):
        for i in range(25):
            await store.set(f"token:active:alice:{i:02d}", "{}")
        await store.set("other:key", "1")

        batches = [batch async for batch in iter_key_batches(store, "token:active:alice:*", count=10)]
        flattened = [key for batch in batches for key in batch]
        assert sorted(flattened) == [f"token:active:alice:{i:02d}" for i in range(25)]
        assert len(batches) >= 2
        assert "other:key" not in flattened

    async def test_scan_skips_keys_deleted_mid_walk(self, store):
        names = [f"k:{i}" for i in range(40)]
        for name in names:
            await store.set(name, "1")
        cursor, first = await store.scan(0, match="k:*", count=5)
        assert cursor != 0
        doomed = next(name for name in names if name not in first)
        await store.delete(doomed)

        rest = []
        while cursor:
            cursor, batch = await store.scan(cursor, match="k:*", count=5)
            rest.extend(batch)

        seen = first + rest
        assert doomed not in seen
        assert sorted(seen) == sorted(name for name in names if name != doomed)

    async def test_abandoned_walk_can_be_resumed(self, store):
        """The cursor carries the whole walk, so an unfinished walk leaves nothing behind."""
        for i in range(250):
            await store.set(f"k:{i}", "1")
        cursor, _ = await store.scan(0, match="k:*", count=10)
        for _ in range(20):
            await store.scan(0, match="k:*", count=10)

        first_resume = await store.scan(cursor, match="k:*", count=10)
        second_resume = await store.scan(cursor, match="k:*", count=10)
        assert first_resume == second_resume
        assert set(vars(store)) == {"_clock", "_values", "_zsets", "_expiry", "_lock"}

    async def test_collect_keys_deduplicates(self, store):
        await store.set("a:1", "1")
        await store.set("a:2", "1")
        assert sorted(await collect_keys(store, "a:*")) == ["a:1", "a:2"]

    async def test_mget_returns_none_for_missing(self, store):
        await store.set("x", "1")
        assert await store.mget(["x", "y"]) == ["1", None]


@pytest.mark.parametrize("bound,expected", [("-inf", float("-inf")), ("(5", 5.0), (7, 7.0)])
def test_parse_bound(bound, expected):
    from roomgate.storage.memory import _parse_bound

    value, _ = _parse_bound(bound)
    assert value == expected
