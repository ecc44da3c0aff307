import json
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[2] / "apps" / "backend"))

from analysis_history.cache.codec import ZlibCodec  # noqa: E402
from analysis_history.cache.persistent import CACHE_KEY, CACHE_VERSION, PersistentCache  # noqa: E402
from analysis_history.store.kv import MemoryKeyValueStore, SQLiteKeyValueStore  # noqa: E402
from tests.history_fakes import ManualClock, make_item  # noqa: E402

TTL_MS = 24 * 60 * 60 * 1000


def _cache(storage, clock, **kwargs) -> PersistentCache:
    return PersistentCache(storage, ttl_ms=TTL_MS, clock=clock, **kwargs)


def test_missing_key_returns_empty_list() -> None:
    cache = _cache(MemoryKeyValueStore(), ManualClock())

    assert cache.get_all() == []


def test_blob_is_returned_just_before_ttl() -> None:
    storage = MemoryKeyValueStore()
    clock = ManualClock()
    cache = _cache(storage, clock)
    cache.replace_all([make_item("a"), make_item("b")])

    clock.advance(TTL_MS - 1)

    assert [item.id for item in cache.get_all()] == ["a", "b"]
    assert storage.get_item(CACHE_KEY) is not None


def test_blob_expires_and_is_deleted_after_ttl() -> None:
    storage = MemoryKeyValueStore()
    clock = ManualClock()
    cache = _cache(storage, clock)
    cache.replace_all([make_item("a")])

    clock.advance(TTL_MS + 1)

    assert cache.get_all() == []
    assert storage.get_item(CACHE_KEY) is None


def test_corrupt_blob_is_treated_as_miss_and_removed() -> None:
    storage = MemoryKeyValueStore({CACHE_KEY: "{not json"})
    cache = _cache(storage, ManualClock())

    assert cache.get_all() == []
    assert storage.get_item(CACHE_KEY) is None


def test_blob_with_invalid_items_is_discarded() -> None:
    clock = ManualClock()
    envelope = {"data": [{"id": "x"}], "timestamp": clock.now_ms(), "version": CACHE_VERSION}
    storage = MemoryKeyValueStore({CACHE_KEY: json.dumps(envelope)})
    cache = _cache(storage, clock)

    assert cache.get_all() == []
    assert storage.get_item(CACHE_KEY) is None


def test_envelope_carries_version_and_timestamp() -> None:
    storage = MemoryKeyValueStore()
    clock = ManualClock()
    _cache(storage, clock).replace_all([make_item("a")])

    envelope = json.loads(storage.get_item(CACHE_KEY))

    assert envelope["version"] == CACHE_VERSION
    assert envelope["timestamp"] == clock.now_ms()
    assert envelope["compressed"] is False
    assert envelope["data"][0]["id"] == "a"


def test_save_one_replaces_same_id_and_puts_it_first() -> None:
    cache = _cache(MemoryKeyValueStore(), ManualClock())
    cache.replace_all([make_item("a"), make_item("b")])

    cache.save_one(make_item("b", input="changed"))
    cache.save_one(make_item("b", input="changed again"))

    items = cache.get_all()
    assert [item.id for item in items] == ["b", "a"]
    assert items[0].input == "changed again"


def test_limit_and_remove() -> None:
    cache = _cache(MemoryKeyValueStore(), ManualClock())
    cache.replace_all([make_item("a"), make_item("b"), make_item("c")])

    assert [item.id for item in cache.get_all(2)] == ["a", "b"]

    cache.remove("b")

    assert [item.id for item in cache.get_all()] == ["a", "c"]
    assert cache.size == 2


def test_compressed_blob_round_trips_with_zlib_codec() -> None:
    storage = MemoryKeyValueStore()
    clock = ManualClock()
    cache = _cache(storage, clock, enable_compression=True, codec=ZlibCodec())
    item = make_item("a", result={"definitions": {"root_meaning": "集まる"}})
    cache.replace_all([item])

    envelope = json.loads(storage.get_item(CACHE_KEY))

    assert envelope["compressed"] is True
    assert envelope["codec"] == "zlib"
    assert isinstance(envelope["data"], str)
    assert cache.get_all() == [item]


def test_sqlite_store_survives_new_instances(tmp_path: Path) -> None:
    db_path = str(tmp_path / "kv.sqlite3")
    clock = ManualClock()
    _cache(SQLiteKeyValueStore(db_path), clock).replace_all([make_item("a")])

    reopened = _cache(SQLiteKeyValueStore(db_path), clock)

    assert [item.id for item in reopened.get_all()] == ["a"]


def test_write_failure_is_swallowed() -> None:
    class _FullStorage(MemoryKeyValueStore):
        def set_item(self, key: str, value: str) -> None:
            raise OSError("quota exceeded")

    cache = _cache(_FullStorage(), ManualClock())

    cache.replace_all([make_item("a")])

    assert cache.get_all() == []
