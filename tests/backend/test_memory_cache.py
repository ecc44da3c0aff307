import random
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[2] / "apps" / "backend"))

from analysis_history.cache.memory import MemoryCache  # noqa: E402
from tests.history_fakes import ManualClock, make_item  # noqa: E402


def test_size_never_exceeds_capacity_for_random_sequences() -> None:
    rng = random.Random(1234)
    cache = MemoryCache(capacity=5, clock=ManualClock())

    for _ in range(500):
        item_id = f"id-{rng.randint(0, 20)}"
        if rng.random() < 0.5:
            cache.get(item_id)
        else:
            cache.set(item_id, make_item(item_id))
        assert cache.size <= cache.capacity


def test_evicts_entry_with_lowest_hit_count() -> None:
    cache = MemoryCache(capacity=3, clock=ManualClock())
    for item_id in ("a", "b", "c"):
        cache.set(item_id, make_item(item_id))
    for _ in range(3):
        cache.get("a")
    cache.get("c")

    cache.set("d", make_item("d"))

    assert "b" not in cache
    assert {"a", "c", "d"} == {item.id for item in cache.items()}


def test_ties_evict_first_inserted_entry() -> None:
    cache = MemoryCache(capacity=2, clock=ManualClock())
    cache.set("first", make_item("first"))
    cache.set("second", make_item("second"))

    cache.set("third", make_item("third"))

    assert "first" not in cache
    assert "second" in cache


def test_replacing_existing_id_does_not_evict() -> None:
    cache = MemoryCache(capacity=2, clock=ManualClock())
    cache.set("a", make_item("a"))
    cache.set("b", make_item("b"))

    cache.set("a", make_item("a", input="updated"))

    assert cache.size == 2
    assert cache.get("a").input == "updated"


def test_get_tracks_hits_and_misses() -> None:
    cache = MemoryCache(capacity=2, clock=ManualClock())
    cache.set("a", make_item("a"))

    assert cache.get("a") is not None
    assert cache.get("missing") is None

    assert cache.hits == 1
    assert cache.misses == 1
    assert cache.peek("a").hit_count == 1


def test_purge_removes_entries_older_than_max_age_regardless_of_hits() -> None:
    clock = ManualClock()
    cache = MemoryCache(capacity=5, clock=clock)
    cache.set("old", make_item("old"))
    for _ in range(10):
        cache.get("old")
    clock.advance(30 * 60 * 1000)
    cache.set("fresh", make_item("fresh"))
    clock.advance(31 * 60 * 1000)

    purged = cache.purge_older_than(60 * 60 * 1000)

    assert purged == 1
    assert "old" not in cache
    assert "fresh" in cache


def test_capacity_must_be_positive() -> None:
    with pytest.raises(ValueError):
        MemoryCache(capacity=0)
