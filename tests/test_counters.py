import asyncio

from gatekeeper.storage.counters import MemoryCounterStore


async def test_hit_keeps_only_stamps_inside_window(counters, clock):
    await counters.hit("k", 60)
    clock.advance(30)
    await counters.hit("k", 60)
    clock.advance(40)

    stamps = await counters.window("k", 60)
    assert len(stamps) == 1


async def test_window_drops_key_once_empty(counters, clock):
    await counters.hit("k", 10)
    clock.advance(11)
    assert await counters.window("k", 10) == []
    assert "k" not in counters._windows


async def test_add_member_counts_distinct_values(counters, clock):
    assert await counters.add_member("ip", "a@example.com", 60) == 1
    assert await counters.add_member("ip", "a@example.com", 60) == 1
    assert await counters.add_member("ip", "b@example.com", 60) == 2
    clock.advance(61)
    assert await counters.add_member("ip", "c@example.com", 60) == 1


async def test_incr_resets_after_ttl(counters, clock):
    assert await counters.incr("day", 100) == 1
    assert await counters.incr("day", 100) == 2
    assert await counters.get_int("day") == 2
    clock.advance(101)
    assert await counters.get_int("day") == 0
    assert await counters.incr("day", 100) == 1


async def test_clear_removes_every_kind(counters):
    await counters.hit("k", 60)
    await counters.add_member("k", "x", 60)
    await counters.incr("k", 60)
    await counters.clear("k")
    assert await counters.window("k", 60) == []
    assert await counters.get_int("k") == 0


async def test_cache_expiry_and_prefix_clear(counters, clock):
    await counters.cache_set("perm:1:a", True, 10)
    await counters.cache_set("perm:2:a", False, 10)
    await counters.cache_set("other", 1, 10)
    assert await counters.cache_get("perm:2:a") is False

    assert await counters.cache_clear("perm:1:") == 1
    assert await counters.cache_get("perm:1:a") is None
    assert await counters.cache_get("perm:2:a") is False

    clock.advance(11)
    assert await counters.cache_get("other") is None


async def test_sweep_removes_dead_keys(counters, clock):
    await counters.hit("w", 10)
    await counters.add_member("m", "x", 10)
    await counters.incr("c", 10)
    await counters.cache_set("cache", 1, 10)
    await counters.hit("live", 1000)
    clock.advance(20)

    assert await counters.sweep() == 4
    assert await counters.window("live", 1000)


async def test_init_and_teardown_manage_sweep_task():
    store = MemoryCounterStore(sweep_interval_seconds=3600)
    await store.init()
    task = store._sweep_task
    assert task is not None and not task.done()
    await store.teardown()
    await asyncio.sleep(0)
    assert task.cancelled() or task.done()
    assert store._sweep_task is None
