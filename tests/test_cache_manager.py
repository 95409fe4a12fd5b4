"""Tests for the TTL cache and its backends."""

import asyncio

import pytest

from chainsight.cache_manager import CacheManager, DiskCache, MemoryCache, make_cache_key


class CountingFetch:
    def __init__(self, value="payload", delay=0.0, error=None):
        self.value = value
        self.delay = delay
        self.error = error
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.value


@pytest.fixture
def manager(clock):
    return CacheManager(clock=clock)


def test_cache_key_includes_every_request_dimension():
    assert make_cache_key("glassnode", "mvrv", "BTC", 30) == "glassnode:mvrv:BTC:30"
    assert make_cache_key("glassnode", "mvrv", "BTC", 30) != make_cache_key("glassnode", "mvrv", "BTC", 7)


@pytest.mark.asyncio
async def test_second_request_inside_ttl_is_served_from_cache(manager):
    fetch = CountingFetch({"mvrv": 1.8})

    first = await manager.get_or_fetch("k", 60, fetch)
    second = await manager.get_or_fetch("k", 60, fetch)

    assert first == ({"mvrv": 1.8}, False)
    assert second == ({"mvrv": 1.8}, True)
    assert fetch.calls == 1
    assert manager.get_metrics()["hits"] == 1


@pytest.mark.asyncio
async def test_empty_value_is_still_a_cache_hit(manager):
    fetch = CountingFetch(None)

    await manager.get_or_fetch("k", 60, fetch)
    value, cached = await manager.get_or_fetch("k", 60, fetch)

    assert (value, cached) == (None, True)
    assert fetch.calls == 1


@pytest.mark.asyncio
async def test_entry_expires_after_its_ttl(manager, clock):
    fetch = CountingFetch()
    await manager.get_or_fetch("k", 60, fetch)

    clock.advance(59)
    assert (await manager.get_or_fetch("k", 60, fetch))[1] is True

    clock.advance(1)
    value, cached = await manager.get_or_fetch("k", 60, fetch)
    assert cached is False
    assert fetch.calls == 2


@pytest.mark.asyncio
async def test_concurrent_misses_share_one_fetch(manager):
    fetch = CountingFetch(delay=0.05)

    results = await asyncio.gather(*(manager.get_or_fetch("k", 60, fetch) for _ in range(5)))

    assert fetch.calls == 1
    assert [cached for _, cached in results].count(False) == 1
    assert all(value == "payload" for value, _ in results)
    assert manager.get_metrics()["coalesced"] == 4


@pytest.mark.asyncio
async def test_failed_fetch_is_not_cached(manager):
    failing = CountingFetch(error=RuntimeError("upstream down"))
    with pytest.raises(RuntimeError):
        await manager.get_or_fetch("k", 60, failing)

    fetch = CountingFetch("fresh")
    assert await manager.get_or_fetch("k", 60, fetch) == ("fresh", False)


@pytest.mark.asyncio
async def test_waiters_see_the_shared_failure(manager):
    failing = CountingFetch(delay=0.05, error=RuntimeError("boom"))

    results = await asyncio.gather(
        manager.get_or_fetch("k", 60, failing),
        manager.get_or_fetch("k", 60, failing),
        return_exceptions=True
    )

    assert failing.calls == 1
    assert all(isinstance(result, RuntimeError) for result in results)


@pytest.mark.asyncio
async def test_refresh_replaces_the_whole_entry(manager, clock):
    await manager.set("k", {"a": 1, "b": 2}, 10)
    clock.advance(5)
    await manager.set("k", {"a": 3}, 10)

    assert await manager.get("k") == {"a": 3}
    entry = await manager.backend.get("k")
    assert entry.stored_at == clock.now


@pytest.mark.asyncio
async def test_cleanup_removes_only_expired_entries(manager, clock):
    await manager.set("short", 1, 10)
    await manager.set("long", 2, 1000)
    clock.advance(20)

    removed = await manager.cleanup_expired()

    assert removed == 1
    assert await manager.backend.keys() == ["long"]


@pytest.mark.asyncio
async def test_memory_cache_evicts_least_recently_used():
    backend = MemoryCache(max_size=2)
    manager = CacheManager(backend=backend)
    await manager.set("a", 1, 60)
    await manager.set("b", 2, 60)
    await manager.get("a")
    await manager.set("c", 3, 60)

    assert sorted(await backend.keys()) == ["a", "c"]
    assert backend.evictions == 1


@pytest.mark.asyncio
async def test_disk_cache_survives_a_new_instance(tmp_path, clock):
    first = CacheManager(backend=DiskCache(str(tmp_path)), clock=clock)
    await first.set("glassnode:mvrv:BTC:30", {"mvrv": 1.8}, 600)

    second = CacheManager(backend=DiskCache(str(tmp_path)), clock=clock)
    assert await second.get("glassnode:mvrv:BTC:30") == {"mvrv": 1.8}

    await second.delete("glassnode:mvrv:BTC:30")
    assert await second.get("glassnode:mvrv:BTC:30") is None
