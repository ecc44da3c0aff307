import asyncio
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[2] / "apps" / "backend"))

from analysis_history.cache.manager import CacheConfig, HistoryCacheManager  # noqa: E402
from analysis_history.cache.persistent import CACHE_KEY, cache_key_for  # noqa: E402
from analysis_history.store.kv import MemoryKeyValueStore  # noqa: E402
from analysis_history.store.remote import RemoteStoreError  # noqa: E402
from tests.history_fakes import (  # noqa: E402
    BlockingScheduler,
    InMemoryRemoteStore,
    ManualClock,
    make_item,
)

OWNER = "owner-1"


def _manager(remote=None, storage=None, clock=None, **config) -> HistoryCacheManager:
    return HistoryCacheManager(
        remote or InMemoryRemoteStore(),
        storage or MemoryKeyValueStore(),
        config=CacheConfig(**config),
        clock=clock or ManualClock(),
        scheduler=BlockingScheduler(),
    )


def test_add_item_writes_through_all_tiers() -> None:
    remote = InMemoryRemoteStore()
    manager = _manager(remote)

    asyncio.run(manager.add_item(make_item("a"), OWNER))

    assert manager.get_from_memory("a") is not None
    assert [item.id for item in manager.get_from_local_storage()] == ["a"]
    assert [item.id for item in remote.items_for(OWNER)] == ["a"]


def test_add_item_twice_keeps_single_entry_per_tier() -> None:
    manager = _manager()

    async def _run() -> None:
        await manager.add_item(make_item("a"), OWNER)
        await manager.add_item(make_item("a"), OWNER)

    asyncio.run(_run())

    assert list(manager.get_memory_cache()) == ["a"]
    assert [item.id for item in manager.get_from_local_storage()] == ["a"]


def test_add_item_propagates_remote_failure_after_caching_locally() -> None:
    remote = InMemoryRemoteStore()
    remote.fail_writes = RemoteStoreError("boom", status_code=503)
    manager = _manager(remote)

    with pytest.raises(RemoteStoreError):
        asyncio.run(manager.add_item(make_item("a"), OWNER))

    assert manager.get_from_memory("a") is not None
    assert [item.id for item in manager.get_from_local_storage()] == ["a"]


def test_remove_item_deletes_from_all_tiers() -> None:
    remote = InMemoryRemoteStore()
    manager = _manager(remote)

    async def _run() -> None:
        await manager.add_item(make_item("a"), OWNER)
        await manager.add_item(make_item("b"), OWNER)
        await manager.remove_item("a", OWNER)

    asyncio.run(_run())

    assert manager.get_from_memory("a") is None
    assert [item.id for item in manager.get_from_local_storage()] == ["b"]
    assert [item.id for item in remote.items_for(OWNER)] == ["b"]


def test_get_from_remote_degrades_to_empty_list() -> None:
    remote = InMemoryRemoteStore()
    remote.fail_reads = RemoteStoreError("offline")
    manager = _manager(remote)

    assert asyncio.run(manager.get_from_remote(owner_id=OWNER, limit=5)) == []


def test_preload_skips_remote_when_local_cache_is_sufficient() -> None:
    remote = InMemoryRemoteStore()
    manager = _manager(remote)
    manager.update_local_storage([make_item(str(i)) for i in range(10)])

    asyncio.run(manager.preload_cache(OWNER, limit=10))

    assert remote.calls == []


def test_preload_warms_cache_from_remote_and_keeps_local_only_items() -> None:
    clock = ManualClock()
    remote = InMemoryRemoteStore()
    remote.seed(OWNER, make_item("r1", timestamp=clock.now_ms() - 10), make_item("r2", timestamp=clock.now_ms() - 20))
    manager = _manager(remote, clock=clock)
    manager.save_to_local_storage(make_item("local", timestamp=clock.now_ms()))

    asyncio.run(manager.preload_cache(OWNER, limit=10))

    assert [item.id for item in manager.get_from_local_storage()] == ["local", "r1", "r2"]
    assert manager.get_from_memory("r1") is not None


def test_preload_keeps_local_cache_when_remote_fails() -> None:
    remote = InMemoryRemoteStore()
    remote.fail_reads = RemoteStoreError("offline")
    manager = _manager(remote)
    manager.save_to_local_storage(make_item("local"))

    asyncio.run(manager.preload_cache(OWNER, limit=10))

    assert [item.id for item in manager.get_from_local_storage()] == ["local"]


def test_get_promotes_local_hits_into_memory() -> None:
    manager = _manager()
    manager.update_local_storage([make_item("a")])
    assert "a" not in manager.get_memory_cache()

    found = asyncio.run(manager.get("a"))

    assert found is not None and found.id == "a"
    assert manager.get_from_memory("a") is not None


def test_initialises_memory_from_local_storage() -> None:
    storage = MemoryKeyValueStore()
    clock = ManualClock()
    _manager(storage=storage, clock=clock).update_local_storage([make_item("a"), make_item("b")])

    manager = _manager(storage=storage, clock=clock)

    assert set(manager.get_memory_cache()) == {"a", "b"}


def test_list_recent_returns_newest_items() -> None:
    clock = ManualClock()
    remote = InMemoryRemoteStore()
    remote.seed(OWNER, *(make_item(f"r{i}", timestamp=clock.now_ms() - i) for i in range(5)))
    manager = _manager(remote, clock=clock)

    items = asyncio.run(manager.list_recent(OWNER, limit=3))

    assert [item.id for item in items] == ["r0", "r1", "r2"]


def test_clear_all_without_owner_keeps_remote() -> None:
    remote = InMemoryRemoteStore()
    storage = MemoryKeyValueStore()
    manager = _manager(remote, storage)
    asyncio.run(manager.add_item(make_item("a"), OWNER))

    assert asyncio.run(manager.clear_all()) is True

    assert manager.get_memory_cache() == {}
    assert storage.get_item(CACHE_KEY) is None
    assert [item.id for item in remote.items_for(OWNER)] == ["a"]


def test_clear_all_with_owner_clears_remote_and_reports_failures() -> None:
    remote = InMemoryRemoteStore()
    manager = _manager(remote)
    asyncio.run(manager.add_item(make_item("a"), OWNER))

    assert asyncio.run(manager.clear_all(OWNER)) is True
    assert remote.items_for(OWNER) == []

    remote.fail_writes = RemoteStoreError("boom")
    assert asyncio.run(manager.clear_all(OWNER)) is False


def test_cleanup_purges_stale_memory_entries_and_updates_stats() -> None:
    clock = ManualClock()
    manager = _manager(clock=clock, memory_entry_max_age_ms=1000)
    manager.set_in_memory("a", make_item("a"))
    manager.get_from_memory("a")
    manager.get_from_memory("missing")
    clock.advance(1001)

    asyncio.run(manager.cleanup())

    stats = manager.get_stats()
    assert stats.memory_size == 0
    assert stats.hits == 1
    assert stats.misses == 1
    assert stats.hit_rate == pytest.approx(0.5)
    assert stats.last_cleanup == clock.now_ms()


def test_start_schedules_periodic_cleanup_and_stop_cancels_it() -> None:
    scheduler = BlockingScheduler()
    manager = HistoryCacheManager(
        InMemoryRemoteStore(),
        MemoryKeyValueStore(),
        config=CacheConfig(cleanup_interval_ms=3_600_000),
        clock=ManualClock(),
        scheduler=scheduler,
    )

    async def _run() -> None:
        manager.start()
        await asyncio.sleep(0)
        await manager.stop()

    asyncio.run(_run())

    assert scheduler.delays == [3_600_000]


def test_memory_capacity_is_respected_through_manager() -> None:
    manager = _manager(memory_max_size=2)

    for item_id in ("a", "b", "c"):
        manager.cache_item(make_item(item_id))

    assert len(manager.get_memory_cache()) == 2
    assert len(manager.get_from_local_storage()) == 3


def test_get_promotes_remote_hits_into_memory_and_local_storage() -> None:
    remote = InMemoryRemoteStore()
    remote.seed(OWNER, make_item("remote-only"))
    manager = _manager(remote)

    async def _run():
        return await manager.get("remote-only"), await manager.get("remote-only", OWNER)

    without_owner, found = asyncio.run(_run())

    assert without_owner is None
    assert found is not None and found.id == "remote-only"
    assert manager.get_from_memory("remote-only") is not None
    assert [item.id for item in manager.get_from_local_storage()] == ["remote-only"]
    assert asyncio.run(manager.get("missing", OWNER)) is None


def test_collect_from_remote_pages_past_the_request_cap() -> None:
    remote = InMemoryRemoteStore()
    remote.seed(OWNER, *(make_item(f"r{index}", timestamp=index) for index in range(1_200)))
    manager = _manager(remote)

    collected = asyncio.run(manager.collect_from_remote(owner_id=OWNER, limit=1_100))
    everything = asyncio.run(manager.collect_from_remote(owner_id=OWNER))

    assert len(collected) == 1_100
    assert collected[0].id == "r1199"
    assert len(everything) == 1_200


def test_owner_scoped_managers_keep_separate_local_snapshots() -> None:
    storage = MemoryKeyValueStore()
    first = HistoryCacheManager(
        InMemoryRemoteStore(), storage, clock=ManualClock(), scheduler=BlockingScheduler(), owner_id="owner-a"
    )
    first.cache_item(make_item("a"))

    second = HistoryCacheManager(
        InMemoryRemoteStore(), storage, clock=ManualClock(), scheduler=BlockingScheduler(), owner_id="owner-b"
    )

    assert second.get_from_local_storage() == []
    assert storage.get_item(cache_key_for("owner-a")) is not None
    assert storage.get_item(CACHE_KEY) is None
