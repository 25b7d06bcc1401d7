"""Tests for the content-addressed cache and project roots."""

import asyncio

import pytest

from merkle_sync.cache import PRESENT, ContentCache, ProjectRoots
from merkle_sync.errors import StorageUnavailableError
from merkle_sync.kv import MemoryKVStore

DAY = 24 * 60 * 60


class FlakyStore(MemoryKVStore):
    """Memory store that fails lookups for some keys and the first few puts."""

    def __init__(self, clock, failing_keys=(), put_failures=0, slow_keys=(), slow_put_keys=()):
        super().__init__(clock=clock)
        self.failing_keys = set(failing_keys)
        self.slow_keys = set(slow_keys)
        self.slow_put_keys = set(slow_put_keys)
        self.put_failures = put_failures
        self.put_calls = 0
        self.batches: list[int] = []

    async def get(self, key):
        if key in self.failing_keys:
            raise StorageUnavailableError("backend down")
        if key in self.slow_keys:
            await asyncio.sleep(1)
        return await super().get(key)

    async def put(self, key, value, ttl_seconds=None):
        self.put_calls += 1
        if key in self.slow_put_keys:
            await asyncio.sleep(1)
        if self.put_failures > 0:
            self.put_failures -= 1
            raise StorageUnavailableError("write failed")
        await super().put(key, value, ttl_seconds)

    async def put_many(self, entries, ttl_seconds=None):
        self.batches.append(len(entries))
        await super().put_many(entries, ttl_seconds)


@pytest.fixture
def cache(kv_store) -> ContentCache:
    return ContentCache(kv_store, namespace="chunkHash", ttl_seconds=30 * DAY)


class TestPartition:
    """Tests for exists_many."""

    @pytest.mark.asyncio
    async def test_empty_input(self, cache: ContentCache):
        partition = await cache.exists_many([])
        assert partition.needed == []
        assert partition.cached == []

    @pytest.mark.asyncio
    async def test_partition_is_disjoint_and_exhaustive(self, cache: ContentCache):
        hashes = [f"h{i:03d}" for i in range(500)]
        await cache.put_many(hashes[::2])

        partition = await cache.exists_many(hashes)

        assert set(partition.needed).isdisjoint(partition.cached)
        assert set(partition.needed) | set(partition.cached) == set(hashes)
        assert partition.cached == hashes[::2]
        assert partition.needed == hashes[1::2]

    @pytest.mark.asyncio
    async def test_duplicates_reported_once(self, cache: ContentCache):
        await cache.put("b")
        partition = await cache.exists_many(["a", "b", "a", "b", "c"])
        assert partition.needed == ["a", "c"]
        assert partition.cached == ["b"]

    @pytest.mark.asyncio
    async def test_failed_lookup_counts_as_needed(self, clock):
        store = FlakyStore(clock, failing_keys={"chunkHash:bad"})
        cache = ContentCache(store, namespace="chunkHash", ttl_seconds=DAY)
        await cache.put_many(["good", "bad"])

        partition = await cache.exists_many(["good", "bad"])
        assert partition.cached == ["good"]
        assert partition.needed == ["bad"]

    @pytest.mark.asyncio
    async def test_slow_lookup_counts_as_needed(self, clock):
        store = FlakyStore(clock, slow_keys={"chunkHash:slow"})
        cache = ContentCache(store, namespace="chunkHash", ttl_seconds=DAY, lookup_timeout=0.05)
        await cache.put("slow")

        partition = await cache.exists_many(["slow"])
        assert partition.needed == ["slow"]


class TestWrites:
    """Tests for put, retries and payloads."""

    @pytest.mark.asyncio
    async def test_put_is_idempotent(self, cache: ContentCache, kv_store: MemoryKVStore):
        assert await cache.put("abc")
        assert await cache.put("abc")
        assert len(kv_store) == 1
        assert await kv_store.get("chunkHash:abc") == PRESENT

    @pytest.mark.asyncio
    async def test_payload_roundtrip(self, kv_store: MemoryKVStore):
        cache = ContentCache(kv_store, namespace="embedding", ttl_seconds=90 * DAY)
        payload = {"summary": "python function add", "embedding": [0.1, 0.2]}
        await cache.put("abc", payload)
        assert await cache.get("abc") == payload
        assert await cache.get_many(["abc", "missing"]) == {"abc": payload}

    @pytest.mark.asyncio
    async def test_put_retries_then_succeeds(self, clock):
        store = FlakyStore(clock, put_failures=2)
        cache = ContentCache(store, namespace="chunkHash", ttl_seconds=DAY, put_attempts=3)
        assert await cache.put("abc")
        assert store.put_calls == 3
        assert await cache.exists("abc")

    @pytest.mark.asyncio
    async def test_put_dropped_after_attempts(self, clock):
        store = FlakyStore(clock, put_failures=10)
        cache = ContentCache(store, namespace="chunkHash", ttl_seconds=DAY, put_attempts=2)
        assert not await cache.put("abc")
        assert store.put_calls == 2
        assert await cache.put_many(["x", "y"]) == 0

    @pytest.mark.asyncio
    async def test_get_raises_when_backend_down(self, clock):
        store = FlakyStore(clock, failing_keys={"chunkHash:abc"})
        cache = ContentCache(store, namespace="chunkHash", ttl_seconds=DAY)
        with pytest.raises(StorageUnavailableError):
            await cache.get("abc")

    @pytest.mark.asyncio
    async def test_put_many_is_one_batch(self, clock):
        store = FlakyStore(clock)
        cache = ContentCache(store, namespace="chunkHash", ttl_seconds=DAY)
        assert await cache.put_many([f"h{i}" for i in range(50)] + ["h0"]) == 50
        assert store.batches == [50]
        assert await cache.put_many([]) == 0
        assert store.batches == [50]


class TestExpiry:
    """Tests for TTL expiry and refresh on hit."""

    @pytest.mark.asyncio
    async def test_entry_expires(self, cache: ContentCache, clock):
        await cache.put("abc")
        clock.advance(31 * DAY)
        assert not await cache.exists("abc")

    @pytest.mark.asyncio
    async def test_hit_refreshes_ttl(self, cache: ContentCache, kv_store: MemoryKVStore, clock):
        await cache.put("abc")
        clock.advance(20 * DAY)
        assert await cache.exists("abc")
        assert kv_store.expires_at("chunkHash:abc") == clock.now + 30 * DAY

        clock.advance(20 * DAY)
        assert await cache.exists("abc")

    @pytest.mark.asyncio
    async def test_hits_refreshed_in_one_batch(self, clock):
        store = FlakyStore(clock)
        cache = ContentCache(store, namespace="chunkHash", ttl_seconds=DAY)
        hashes = [f"h{i}" for i in range(20)]
        await cache.put_many(hashes[:10])
        clock.advance(DAY // 2)

        partition = await cache.exists_many(hashes)

        assert partition.cached == hashes[:10]
        assert store.batches == [10, 10]
        assert store.expires_at("chunkHash:h0") == clock.now + DAY


class TestProjectRoots:
    """Tests for per-caller root records."""

    @pytest.mark.asyncio
    async def test_roots_scoped_by_caller(self, kv_store: MemoryKVStore):
        roots = ProjectRoots(kv_store)
        await roots.set("alice", "p1", "root-a")
        assert await roots.get("alice", "p1") == "root-a"
        assert await roots.get("bob", "p1") is None
        assert kv_store.expires_at("merkleRoot:alice:p1") is None

    @pytest.mark.asyncio
    async def test_roots_do_not_expire(self, kv_store: MemoryKVStore, clock):
        roots = ProjectRoots(kv_store)
        await roots.set("alice", "p1", "root-a")
        clock.advance(365 * DAY)
        assert await roots.get("alice", "p1") == "root-a"

    @pytest.mark.asyncio
    async def test_lookup_failure_reads_as_unknown(self, clock):
        store = FlakyStore(clock, failing_keys={"merkleRoot:alice:p1"})
        assert await ProjectRoots(store).get("alice", "p1") is None

    @pytest.mark.asyncio
    async def test_slow_lookup_reads_as_unknown(self, clock):
        store = FlakyStore(clock, slow_keys={"merkleRoot:alice:p1"})
        roots = ProjectRoots(store, lookup_timeout=0.05)
        await roots.set("alice", "p1", "root-a")
        assert await roots.get("alice", "p1") is None

    @pytest.mark.asyncio
    async def test_set_retries_then_succeeds(self, clock):
        store = FlakyStore(clock, put_failures=2)
        roots = ProjectRoots(store, put_attempts=3)
        assert await roots.set("alice", "p1", "root-a")
        assert store.put_calls == 3
        assert await roots.get("alice", "p1") == "root-a"

    @pytest.mark.asyncio
    async def test_set_gives_up_after_attempts(self, clock):
        store = FlakyStore(clock, put_failures=5)
        assert not await ProjectRoots(store, put_attempts=3).set("alice", "p1", "root")
        assert store.put_calls == 3

    @pytest.mark.asyncio
    async def test_slow_set_times_out_and_retries(self, clock):
        store = FlakyStore(clock, slow_put_keys={"merkleRoot:alice:p1"})
        roots = ProjectRoots(store, lookup_timeout=0.05, put_attempts=2)
        assert not await roots.set("alice", "p1", "root")
        assert store.put_calls == 2
