import asyncio

import pytest

from cardstats.infrastructure.cache.caching_service import HOUR, CountCache, SaveState

def test_ttl_tiers(make_storage):
    cache = CountCache(make_storage())
    assert cache.ttl(0) == 2 * HOUR
    assert cache.ttl(60) == 2 * HOUR
    assert cache.ttl(61) == 6 * HOUR
    assert cache.ttl(110) == 6 * HOUR
    assert cache.ttl(240) == 24 * HOUR
    assert cache.ttl(600) == 96 * HOUR
    assert cache.ttl(1200) == 192 * HOUR
    assert cache.ttl(50_000) == 336 * HOUR

def test_ttl_is_monotonic_in_owner_count(make_storage):
    cache = CountCache(make_storage())
    ttls = [cache.ttl(owners) for owners in range(0, 3000)]
    assert ttls == sorted(ttls)

def test_rejects_open_ended_tiers(make_storage):
    with pytest.raises(ValueError):
        CountCache(make_storage(), ttl_tiers=((10, 60.0),))

def test_entry_expires_after_its_tier(cache: CountCache, clock):
    cache.set("1", owners=50, wants=4)
    clock.advance(2 * HOUR - 1)
    assert cache.is_valid(cache.get("1"))
    clock.advance(1)
    assert cache.is_expired(cache.get("1"))

def test_error_entry_is_never_valid(cache: CountCache):
    cache.set("1", owners=-1, wants=-1)
    entry = cache.get("1")
    assert cache.has_error(entry)
    assert not cache.is_valid(entry)
    assert cache.ttl(-1) == 0

def test_missing_entry_is_neither_valid_nor_error(cache: CountCache):
    assert not cache.is_valid(None)
    assert cache.is_expired(None)
    assert not cache.has_error(None)
    assert cache.view("missing") is None

def test_manual_flag_survives_automatic_update(cache: CountCache, clock):
    cache.set("1", owners=5, wants=1, is_manual=True)
    manual_at = cache.get("1").manual_override_at
    clock.advance(60)
    cache.set("1", owners=6, wants=1)
    entry = cache.get("1")
    assert entry.owners == 6
    assert entry.manual_override_at == manual_at
    assert cache.view("1").is_manually_updated

def test_manual_cooldown(cache: CountCache, clock):
    cache.set("1", owners=5, wants=1, is_manual=True)
    clock.advance(HOUR - 1)
    assert cache.is_recently_manual(cache.get("1"))
    clock.advance(1)
    assert not cache.is_recently_manual(cache.get("1"))

def test_error_cooldown(cache: CountCache, clock):
    cache.set("1", owners=-1, wants=-1)
    assert cache.is_in_error_cooldown(cache.get("1"))
    clock.advance(300)
    assert not cache.is_in_error_cooldown(cache.get("1"))
    cache.set("2", owners=3, wants=3)
    assert not cache.is_in_error_cooldown(cache.get("2"))

@pytest.mark.asyncio
async def test_flush_persists_and_load_restores(cache: CountCache, storage, clock):
    cache.set("1", owners=10, wants=2)
    cache.set("2", owners=-1, wants=-1)
    await cache.flush()
    assert not cache.is_dirty
    assert set(storage.data[cache.cache_key]) == {"1", "2"}

    reloaded = CountCache(storage, clock=clock)
    assert await reloaded.load() == 2
    assert reloaded.export_entries() == cache.export_entries()

@pytest.mark.asyncio
async def test_load_skips_malformed_entries(storage, clock):
    await storage.set("cardstats_cache_v1", {
        "1": {"owners": 3, "wants": 1, "captured_at": clock()},
        "2": {"owners": "three"},
        "3": "garbage",
    })
    cache = CountCache(storage, clock=clock)
    assert await cache.load() == 1
    assert cache.get("1").owners == 3

@pytest.mark.asyncio
async def test_load_survives_storage_failure(mocker, clock, make_storage):
    storage = make_storage()
    mocker.patch.object(storage, "get", side_effect=OSError("disk gone"))
    cache = CountCache(storage, clock=clock)
    assert await cache.load() == 0
    assert cache.data == {}

@pytest.mark.asyncio
async def test_quota_failure_falls_back_to_chunks(clock, make_storage):
    storage = make_storage(max_value_bytes=400)
    cache = CountCache(storage, clock=clock, chunk_size=3)
    for index in range(10):
        cache.set(str(index), owners=index, wants=index + 1)
    await cache.flush()

    assert cache.cache_key not in storage.data
    meta = storage.data[cache.meta_key]
    assert meta["chunks"] == 4
    assert meta["total_entries"] == 10
    assert meta["version"] == 1

    reloaded = CountCache(storage, clock=clock, chunk_size=3)
    assert await reloaded.load() == 10
    assert reloaded.export_entries() == cache.export_entries()

@pytest.mark.asyncio
async def test_single_save_removes_stale_chunks(clock, make_storage):
    storage = make_storage(max_value_bytes=400)
    cache = CountCache(storage, clock=clock, chunk_size=3)
    for index in range(10):
        cache.set(str(index), owners=index, wants=0)
    await cache.flush()

    storage.max_value_bytes = None
    cache.set("10", owners=1, wants=1)
    await cache.flush()

    assert cache.meta_key not in storage.data
    assert not [key for key in storage.data if "_chunk_" in key]
    reloaded = CountCache(storage, clock=clock)
    assert await reloaded.load() == 11

@pytest.mark.asyncio
async def test_concurrent_persist_calls_share_one_save(cache: CountCache, storage):
    cache.set("1", owners=1, wants=1)
    await asyncio.gather(cache.persist(), cache.persist(), cache.persist())
    assert storage.writes.count(cache.cache_key) == 1
    await cache.flush()
    assert storage.writes.count(cache.cache_key) == 1

@pytest.mark.asyncio
async def test_debounce_coalesces_bursts(storage, clock):
    cache = CountCache(storage, clock=clock, save_debounce_s=0.01)
    for index in range(5):
        cache.set(str(index), owners=index, wants=0)
    assert cache.state is SaveState.SCHEDULED
    await asyncio.sleep(0.1)
    assert storage.writes.count(cache.cache_key) == 1
    assert len(storage.data[cache.cache_key]) == 5
    assert cache.state is SaveState.IDLE
    assert not cache.is_dirty

@pytest.mark.asyncio
async def test_failed_save_keeps_table_dirty(mocker, clock, make_storage):
    storage = make_storage()
    cache = CountCache(storage, clock=clock)
    cache.set("1", owners=1, wants=1)
    mocker.patch.object(storage, "set", side_effect=OSError("read-only"))
    with pytest.raises(OSError):
        await cache.flush()
    assert cache.is_dirty
    assert cache.state is SaveState.IDLE

@pytest.mark.asyncio
async def test_export_import_round_trip(cache: CountCache, clock, make_storage):
    cache.set("1", owners=10, wants=2, is_manual=True)
    cache.set("2", owners=-1, wants=-1)
    exported = cache.export_entries()

    other = CountCache(make_storage(), clock=clock)
    assert await other.import_entries(exported) == 2
    assert other.export_entries() == exported

@pytest.mark.asyncio
async def test_import_keeps_newer_local_entries(cache: CountCache, clock):
    cache.set("1", owners=10, wants=2)
    older = {"1": {"owners": 99, "wants": 99, "captured_at": clock() - 100}}
    assert await cache.import_entries(older) == 0
    assert cache.get("1").owners == 10

    newer = {"1": {"owners": 42, "wants": 7, "captured_at": clock() + 100}}
    assert await cache.import_entries(newer) == 1
    assert cache.get("1").owners == 42

@pytest.mark.asyncio
async def test_import_rejects_bad_payloads(cache: CountCache):
    assert await cache.import_entries(["not", "a", "mapping"]) == 0
    assert await cache.import_entries({"": {"owners": 1, "wants": 1, "captured_at": 1}}) == 0
    assert await cache.import_entries({"1": {"owners": "many"}}) == 0
    assert cache.data == {}

@pytest.mark.asyncio
async def test_prune_errors_keeps_stale_entries(cache: CountCache, clock):
    cache.set("ok", owners=1, wants=1)
    cache.set("bad", owners=-1, wants=-1)
    clock.advance(30 * 24 * HOUR)
    assert await cache.prune_errors() == 1
    assert set(cache.data) == {"ok"}
    assert await cache.prune_errors() == 0

@pytest.mark.asyncio
async def test_prune_by_age(cache: CountCache, clock):
    cache.set("old", owners=1, wants=1)
    clock.advance(10 * 24 * HOUR)
    cache.set("new", owners=1, wants=1)
    assert await cache.prune_by_age(7 * 24 * HOUR) == 1
    assert set(cache.data) == {"new"}
    with pytest.raises(ValueError):
        await cache.prune_by_age(-1)

@pytest.mark.asyncio
async def test_clear_empties_memory_and_storage(cache: CountCache, storage, clock):
    cache.set("1", owners=1, wants=1)
    await cache.flush()
    await cache.clear()
    assert cache.data == {}
    reloaded = CountCache(storage, clock=clock)
    assert await reloaded.load() == 0

def test_stats_and_grouping(cache: CountCache, clock):
    cache.set("stale", owners=1, wants=1)
    clock.advance(3 * HOUR)
    cache.set("fresh", owners=1, wants=1)
    cache.set("bad", owners=-1, wants=-1)
    clock.advance(120)

    stats = cache.stats()
    assert stats == {
        "total": 3,
        "valid": 1,
        "expired": 2,
        "errors": 1,
        "oldest_entry_hours": 3,
        "newest_entry_minutes": 2,
    }
    assert cache.entries_by_status() == {"valid": ["fresh"], "expired": ["stale"], "errors": ["bad"]}

def test_memory_estimate(cache: CountCache):
    cache.set("1", owners=1, wants=1)
    estimate = cache.memory_estimate(max_entries=100)
    assert estimate["entries"] == 1
    assert estimate["percent_full"] == 1.0
