import asyncio
import random
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[2] / "apps" / "backend"))

from analysis_history.cache.manager import HistoryCacheManager  # noqa: E402
from analysis_history.history import HistoryService  # noqa: E402
from analysis_history.models.common import AnalysisType  # noqa: E402
from analysis_history.models.history import HistoryFilters  # noqa: E402
from analysis_history.offline import OfflineConfig, OfflineHistoryManager  # noqa: E402
from analysis_history.runtime import ManualConnectivity  # noqa: E402
from analysis_history.store.kv import MemoryKeyValueStore  # noqa: E402
from analysis_history.store.remote import RemoteStoreError  # noqa: E402
from tests.history_fakes import (  # noqa: E402
    BlockingScheduler,
    InMemoryRemoteStore,
    ManualClock,
    RecordingScheduler,
    make_item,
)

OWNER = "owner-1"


def _service(
    remote: InMemoryRemoteStore, *, online: bool = True
) -> tuple[HistoryService, ManualConnectivity, ManualClock]:
    clock = ManualClock()
    storage = MemoryKeyValueStore()
    connectivity = ManualConnectivity(online=online)
    cache = HistoryCacheManager(
        remote, storage, clock=clock, scheduler=BlockingScheduler(), owner_id=OWNER
    )
    offline = OfflineHistoryManager(
        remote,
        storage,
        owner_id=OWNER,
        config=OfflineConfig(enable_background_sync=False),
        clock=clock,
        scheduler=RecordingScheduler(),
        connectivity=connectivity,
        rng=random.Random(0),
    )
    return HistoryService(cache, offline, clock=clock), connectivity, clock


def test_record_creates_item_and_writes_everywhere() -> None:
    remote = InMemoryRemoteStore()
    service, _, clock = _service(remote)

    item = asyncio.run(service.record(AnalysisType.word, "converge", {"meta": {"word": "converge"}}))

    assert item.timestamp == clock.now_ms()
    assert item.id
    assert service.cache.get_from_memory(item.id) is not None
    assert [stored.id for stored in remote.items_for(OWNER)] == [item.id]


def test_offline_add_is_visible_locally_and_synced_later() -> None:
    remote = InMemoryRemoteStore()
    service, connectivity, _ = _service(remote, online=False)

    async def _run():
        await service.add(make_item("a"))
        visible = await service.list_history()
        connectivity.set_online(True)
        status = await service.sync()
        return visible, status

    visible, status = asyncio.run(_run())

    assert [item.id for item in visible] == ["a"]
    assert [item.id for item in remote.items_for(OWNER)] == ["a"]
    assert status.pending_operations == 0


def test_remote_failure_does_not_surface_to_caller() -> None:
    remote = InMemoryRemoteStore()
    remote.fail_writes = RemoteStoreError("down", status_code=503)
    service, _, _ = _service(remote)

    asyncio.run(service.add(make_item("a")))

    assert service.get_status().pending_operations == 1
    assert asyncio.run(service.get("a")) is not None


def test_list_history_merges_tiers_filters_and_paginates() -> None:
    remote = InMemoryRemoteStore()
    remote.seed(
        OWNER,
        make_item("r1", timestamp=300, input="remote sentence", type=AnalysisType.sentence),
        make_item("shared", timestamp=100, input="old"),
    )
    service, _, _ = _service(remote, online=False)

    async def _run():
        await service.add(make_item("shared", timestamp=400, input="newer"))
        await service.add(make_item("local", timestamp=200, input="local word"))
        everything = await service.list_history()
        words = await service.list_history(HistoryFilters(type=AnalysisType.word))
        searched = await service.list_history(HistoryFilters(search="SENTENCE"))
        page = await service.list_history(limit=1, offset=1)
        return everything, words, searched, page

    everything, words, searched, page = asyncio.run(_run())

    assert [item.id for item in everything] == ["shared", "r1", "local"]
    assert everything[0].input == "newer"
    assert [item.id for item in words] == ["shared", "local"]
    assert [item.id for item in searched] == ["r1"]
    assert [item.id for item in page] == ["r1"]


def test_pending_deletes_hide_remote_items() -> None:
    remote = InMemoryRemoteStore()
    remote.seed(OWNER, make_item("gone"), make_item("kept", timestamp=1))
    service, _, _ = _service(remote, online=False)

    async def _run():
        await service.remove("gone")
        return await service.list_history()

    assert [item.id for item in asyncio.run(_run())] == ["kept"]


def test_clear_drops_queue_and_caches() -> None:
    remote = InMemoryRemoteStore()
    service, _, _ = _service(remote, online=False)

    async def _run() -> bool:
        await service.add(make_item("a"))
        return await service.clear(include_remote=False)

    assert asyncio.run(_run()) is True
    assert service.get_status().pending_operations == 0
    assert service.get_stats().memory_size == 0
    assert service.cache.get_from_local_storage() == []


def test_start_and_stop_manage_background_tasks() -> None:
    service, _, _ = _service(InMemoryRemoteStore())

    async def _run() -> None:
        service.start()
        await asyncio.sleep(0)
        await service.stop()

    asyncio.run(_run())


def test_sync_while_offline_leaves_queue_untouched() -> None:
    remote = InMemoryRemoteStore()
    remote.fail_writes = RemoteStoreError("unreachable", status_code=503)
    service, _, _ = _service(remote, online=False)

    async def _run() -> None:
        await service.add(make_item("a"))
        for _ in range(3):
            await service.sync()

    asyncio.run(_run())

    assert remote.calls == []
    pending = service.offline.get_pending_operations()
    assert [op.item_id for op in pending] == ["a"]
    assert pending[0].retry_count == 0
    assert service.offline.get_failed_operations() == []


def test_search_finds_remote_matches_older_than_the_requested_page() -> None:
    remote = InMemoryRemoteStore()
    remote.seed(OWNER, make_item("needle", timestamp=1, input="needle phrase"))
    remote.seed(OWNER, *(make_item(f"r{index}", timestamp=100 + index) for index in range(29)))
    service, _, _ = _service(remote)

    found = asyncio.run(service.list_history(HistoryFilters(search="needle"), limit=20))

    assert [item.id for item in found] == ["needle"]


def test_date_range_scans_past_the_newest_remote_rows() -> None:
    remote = InMemoryRemoteStore()
    remote.seed(OWNER, *(make_item(f"r{index}", timestamp=1_000 + index) for index in range(30)))
    service, _, _ = _service(remote)

    found = asyncio.run(
        service.list_history(HistoryFilters(start_ms=1_000, end_ms=1_001), limit=5)
    )

    assert [item.id for item in found] == ["r1", "r0"]


def test_pages_beyond_the_remote_request_cap_are_returned() -> None:
    remote = InMemoryRemoteStore()
    remote.seed(OWNER, *(make_item(f"r{index}", timestamp=index) for index in range(1_005)))
    service, _, _ = _service(remote)

    page = asyncio.run(service.list_history(limit=5, offset=1_000))

    assert [item.id for item in page] == ["r4", "r3", "r2", "r1", "r0"]
    assert len([call for call in remote.calls if call[0] == "list"]) == 2


def test_get_falls_back_to_remote_and_hides_pending_deletes() -> None:
    remote = InMemoryRemoteStore()
    remote.seed(OWNER, make_item("remote-only"), make_item("doomed"))
    service, _, _ = _service(remote, online=False)

    async def _run():
        fetched = await service.get("remote-only")
        await service.remove("doomed")
        return fetched, await service.get("doomed")

    fetched, doomed = asyncio.run(_run())

    assert fetched is not None and fetched.id == "remote-only"
    assert service.cache.get_from_memory("remote-only") is not None
    assert doomed is None
