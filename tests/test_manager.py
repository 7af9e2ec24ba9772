"""Tests for CacheManager: coverage, merge, failure handling and single-flight."""

from __future__ import annotations

import asyncio
import logging

import pytest

from poicache.config import Settings
from poicache.exceptions import DataSourceError, FetchFailed, StoreWriteError
from poicache.models import Location, RecordBundle
from poicache.services.manager import CacheManager
from poicache.services.store import FileStore, MemoryStore

HOUR_MS = 60 * 60 * 1000
DAY_MS = 24 * HOUR_MS


@pytest.fixture
def manager(store, source, clock, metrics) -> CacheManager:
    return CacheManager(store, source, ttl_millis=DAY_MS, clock=clock, metrics=metrics)


async def _stored(manager: CacheManager, location: Location) -> RecordBundle | None:
    raw = await manager.store.get(manager.location_key(location))
    return RecordBundle.loads(raw) if raw is not None else None


async def _settle() -> None:
    for _ in range(10):
        await asyncio.sleep(0)


# --- scenarios ---


@pytest.mark.asyncio
async def test_empty_store_fetches_everything_once(manager, source, clock, location):
    """Scenario A: cold cache, two collections, one fetch."""
    result = await manager.get_or_fetch(location, {"schools", "transit"})

    assert result.ok
    assert result.bundle.collections == {"schools", "transit"}
    assert source.requested == [{"schools", "transit"}]

    stored = await _stored(manager, location)
    assert stored.collections == {"schools", "transit"}
    assert {r.timestamp for r in stored.records.values()} == {clock.now}


@pytest.mark.asyncio
async def test_partial_hit_fetches_only_gap(manager, source, clock, location):
    """Scenario B: schools cached, transit fetched alone."""
    await manager.get_or_fetch(location, {"schools"})
    schools_ts = (await _stored(manager, location)).get("schools").timestamp
    clock.advance(HOUR_MS)

    result = await manager.get_or_fetch(location, {"schools", "transit"})

    assert result.bundle.collections == {"schools", "transit"}
    assert source.requested == [{"schools"}, {"transit"}]
    stored = await _stored(manager, location)
    assert stored.get("schools").timestamp == schools_ts
    assert stored.get("transit").timestamp == schools_ts + HOUR_MS


@pytest.mark.asyncio
async def test_expired_record_is_refetched(manager, source, clock, location):
    """Scenario C: expired schools count as missing."""
    await manager.get_or_fetch(location, {"schools"})
    old_ts = (await _stored(manager, location)).get("schools").timestamp
    clock.advance(DAY_MS)

    result = await manager.get_or_fetch(location, {"schools"})

    assert len(source.calls) == 2
    assert result.bundle.get("schools").timestamp > old_ts


@pytest.mark.asyncio
async def test_total_failure_on_empty_store(make_source, store, clock, metrics, location):
    """Scenario D: nothing cached, fetch fails, nothing written."""
    source = make_source(error=DataSourceError(503, "down"))
    manager = CacheManager(store, source, clock=clock, metrics=metrics)

    result = await manager.get_or_fetch(location, {"parks"})

    assert len(result.bundle) == 0
    assert isinstance(result.error, FetchFailed)
    assert result.missing == {"parks"}
    assert store.size == 0


# --- properties ---


@pytest.mark.asyncio
async def test_second_identical_call_is_a_pure_hit(manager, source, metrics, location):
    first = await manager.get_or_fetch(location, {"schools", "transit"})
    second = await manager.get_or_fetch(location, {"schools", "transit"})

    assert len(source.calls) == 1
    assert second.bundle == first.bundle
    assert metrics.collection_hits == 2
    assert metrics.collection_misses == 2


@pytest.mark.asyncio
async def test_merge_keeps_stale_collections(manager, source, clock, location):
    await manager.get_or_fetch(location, {"schools"})
    clock.advance(DAY_MS * 3)

    result = await manager.get_or_fetch(location, {"transit"})

    assert result.bundle.collections == {"transit"}
    stored = await _stored(manager, location)
    assert stored.collections == {"schools", "transit"}


@pytest.mark.asyncio
async def test_failure_keeps_existing_cache(make_source, school_item, store, clock, metrics, location):
    source = make_source(results={"schools": [school_item()]})
    manager = CacheManager(store, source, clock=clock, metrics=metrics)
    await manager.get_or_fetch(location, {"schools"})
    before = await store.get(manager.location_key(location))

    source.error = DataSourceError(500, "boom")
    result = await manager.get_or_fetch(location, {"schools", "parks"})

    assert result.bundle.collections == {"schools"}
    assert isinstance(result.error, FetchFailed)
    assert result.error.collections == {"parks"}
    assert await store.get(manager.location_key(location)) == before


@pytest.mark.asyncio
async def test_empty_request_is_noop(manager, source, location):
    result = await manager.get_or_fetch(location, [])
    assert result.ok
    assert len(result.bundle) == 0
    assert source.calls == []


@pytest.mark.asyncio
async def test_ttl_override_per_call(manager, source, clock, location):
    await manager.get_or_fetch(location, {"schools"})
    clock.advance(2 * HOUR_MS)

    await manager.get_or_fetch(location, {"schools"}, ttl_millis=HOUR_MS)

    assert len(source.calls) == 2


@pytest.mark.asyncio
async def test_nearby_coordinates_share_partition(manager, source):
    await manager.get_or_fetch(Location.at(44.97780001, -93.26500001), {"schools"})
    await manager.get_or_fetch(Location.at(44.97780009, -93.26500009), {"schools"})
    assert len(source.calls) == 1


@pytest.mark.asyncio
async def test_stable_id_separates_partitions(manager, source):
    await manager.get_or_fetch(Location.at(44.9778, -93.265, stable_id="p1"), {"schools"})
    await manager.get_or_fetch(Location.at(44.9778, -93.265, stable_id="p2"), {"schools"})
    assert len(source.calls) == 2


# --- store failures ---


@pytest.mark.asyncio
async def test_corrupt_entry_is_discarded_and_refetched(manager, store, source, metrics, location):
    key = manager.location_key(location)
    await store.set(key, "{not json")

    result = await manager.get_or_fetch(location, {"schools"})

    assert result.ok
    assert result.bundle.collections == {"schools"}
    assert len(source.calls) == 1
    assert metrics.store_read_errors >= 1
    assert (await _stored(manager, location)).collections == {"schools"}


@pytest.mark.asyncio
async def test_failing_store_read_counts_as_miss(source, clock, location):
    class BrokenReads(MemoryStore):
        async def get(self, key):
            raise OSError("disk gone")

    manager = CacheManager(BrokenReads(), source, clock=clock)
    result = await manager.get_or_fetch(location, {"schools"})

    assert result.ok
    assert result.bundle.collections == {"schools"}


@pytest.mark.asyncio
async def test_write_failure_still_returns_union(source, clock, metrics, location):
    class BrokenWrites(MemoryStore):
        async def set(self, key, value):
            raise OSError("read-only filesystem")

    store = BrokenWrites()
    manager = CacheManager(store, source, clock=clock, metrics=metrics)

    result = await manager.get_or_fetch(location, {"schools", "transit"})

    assert result.bundle.collections == {"schools", "transit"}
    assert isinstance(result.error, StoreWriteError)
    assert metrics.store_write_errors == 1
    assert store.size == 0


@pytest.mark.asyncio
async def test_file_store_round_trip(tmp_path, source, clock, location):
    manager = CacheManager(FileStore(tmp_path), source, clock=clock)
    await manager.get_or_fetch(location, {"schools"})

    # A fresh manager over the same directory sees the persisted bundle
    reopened = CacheManager(FileStore(tmp_path), source, clock=clock)
    result = await reopened.get_or_fetch(location, {"schools"})

    assert result.ok
    assert len(source.calls) == 1


# --- concurrency ---


@pytest.mark.asyncio
async def test_concurrent_identical_lookups_share_one_fetch(
    make_source, store, clock, metrics, location,
):
    gate = asyncio.Event()
    source = make_source(gate=gate)
    manager = CacheManager(store, source, clock=clock, metrics=metrics)

    tasks = [
        asyncio.create_task(manager.get_or_fetch(location, {"schools", "transit"}))
        for _ in range(5)
    ]
    await _settle()
    assert len(source.calls) == 1
    assert manager.in_flight == 1

    gate.set()
    results = await asyncio.gather(*tasks)

    assert len(source.calls) == 1
    assert all(r.ok and r.bundle.collections == {"schools", "transit"} for r in results)
    assert metrics.coalesced == 4
    assert manager.in_flight == 0
    assert manager._locks == {}


@pytest.mark.asyncio
async def test_concurrent_subset_lookup_waits_for_running_fetch(make_source, store, clock, location):
    gate = asyncio.Event()
    source = make_source(gate=gate)
    manager = CacheManager(store, source, clock=clock)

    wide = asyncio.create_task(manager.get_or_fetch(location, {"schools", "transit"}))
    await _settle()
    narrow = asyncio.create_task(manager.get_or_fetch(location, {"schools"}))
    await _settle()

    gate.set()
    wide_result, narrow_result = await asyncio.gather(wide, narrow)

    assert len(source.calls) == 1
    assert narrow_result.bundle.collections == {"schools"}
    assert wide_result.bundle.collections == {"schools", "transit"}


@pytest.mark.asyncio
async def test_concurrent_disjoint_lookups_merge_without_loss(make_source, store, clock, location):
    gate = asyncio.Event()
    source = make_source(gate=gate)
    manager = CacheManager(store, source, clock=clock)

    a = asyncio.create_task(manager.get_or_fetch(location, {"schools"}))
    b = asyncio.create_task(manager.get_or_fetch(location, {"parks"}))
    await _settle()
    gate.set()
    await asyncio.gather(a, b)

    assert sorted(sorted(c) for c in source.requested) == [["parks"], ["schools"]]
    assert (await _stored(manager, location)).collections == {"schools", "parks"}


@pytest.mark.asyncio
async def test_concurrent_failure_is_shared(make_source, store, clock, location):
    gate = asyncio.Event()
    source = make_source(error=DataSourceError(502, "bad gateway"), gate=gate)
    manager = CacheManager(store, source, clock=clock)

    tasks = [asyncio.create_task(manager.get_or_fetch(location, {"parks"})) for _ in range(3)]
    await _settle()
    gate.set()
    results = await asyncio.gather(*tasks)

    assert len(source.calls) == 1
    assert all(isinstance(r.error, FetchFailed) for r in results)
    assert store.size == 0


@pytest.mark.asyncio
async def test_abandoned_lookup_still_populates_cache(store, source, clock, location):
    gate = asyncio.Event()
    source.gate = gate
    manager = CacheManager(store, source, clock=clock)

    caller = asyncio.create_task(manager.get_or_fetch(location, {"schools"}))
    await _settle()
    caller.cancel()
    with pytest.raises(asyncio.CancelledError):
        await caller

    gate.set()
    await _settle()

    assert manager.in_flight == 0
    assert (await _stored(manager, location)).collections == {"schools"}


# --- other operations ---


@pytest.mark.asyncio
async def test_get_cached_never_fetches(manager, source, location):
    assert len(await manager.get_cached(location, {"schools"})) == 0
    await manager.get_or_fetch(location, {"schools"})
    cached = await manager.get_cached(location, {"schools", "transit"})
    assert cached.collections == {"schools"}
    assert len(source.calls) == 1


@pytest.mark.asyncio
async def test_evict_and_clear(manager, store, source, location):
    other = Location.at(40.7128, -74.0060)
    await manager.get_or_fetch(location, {"schools"})
    await manager.get_or_fetch(other, {"schools"})

    await manager.evict(location)
    assert await _stored(manager, location) is None
    assert await _stored(manager, other) is not None

    await manager.clear()
    assert store.size == 0


@pytest.mark.asyncio
async def test_clear_during_fetch_does_not_resurrect_cleared_collections(
    store, source, clock, location,
):
    manager = CacheManager(store, source, clock=clock)
    await manager.get_or_fetch(location, {"schools"})

    gate = asyncio.Event()
    source.gate = gate
    pending = asyncio.create_task(manager.get_or_fetch(location, {"transit"}))
    await _settle()

    await manager.clear()
    gate.set()
    result = await pending

    assert result.bundle.collections == {"transit"}
    assert (await _stored(manager, location)).collections == {"transit"}


@pytest.mark.asyncio
async def test_partial_result_is_logged(make_source, store, clock, location, caplog):
    manager = CacheManager(store, make_source(error=RuntimeError("x")), clock=clock)
    with caplog.at_level(logging.WARNING, logger="poicache"):
        await manager.get_or_fetch(location, {"parks"})
    outcomes = [getattr(r, "outcome", None) for r in caplog.records]
    assert "partial" in outcomes


def test_requires_source_or_orchestrator(store):
    with pytest.raises(ValueError):
        CacheManager(store)


def test_from_settings(source, tmp_path):
    settings = Settings(
        store_backend="file", store_path=str(tmp_path), cache_ttl_millis=5, key_precision=2,
    )
    manager = CacheManager.from_settings(source, settings)
    assert isinstance(manager.store, FileStore)
    assert manager.location_key(Location.at(44.97781234, -93.26501234)) == "44.98,-93.27"
