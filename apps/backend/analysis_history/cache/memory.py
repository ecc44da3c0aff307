from __future__ import annotations

from dataclasses import dataclass

from ..logging import logger
from ..models.history import AnalysisHistoryItem
from ..runtime import Clock, SystemClock


@dataclass
class CacheEntry:
    """L1 entry: the cached item plus its insertion time and read count."""

    data: AnalysisHistoryItem
    inserted_at: int
    hit_count: int = 0


class MemoryCache:
    """Bounded in-process cache (L1) with least-hit-count eviction.

    容量に達した状態で新しい ID を挿入すると、ヒット数が最小のエントリを 1 件
    追い出してから挿入する。同数の場合は挿入順で先に見つかったものを優先して
    追い出す（dict は挿入順を保持する）。既存 ID の置き換えでは追い出さない。
    """

    def __init__(self, capacity: int = 50, *, clock: Clock | None = None) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._capacity = capacity
        self._clock = clock or SystemClock()
        self._entries: dict[str, CacheEntry] = {}
        self.hits = 0
        self.misses = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def size(self) -> int:
        return len(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, item_id: object) -> bool:
        return item_id in self._entries

    def get(self, item_id: str) -> AnalysisHistoryItem | None:
        entry = self._entries.get(item_id)
        if entry is None:
            self.misses += 1
            return None
        entry.hit_count += 1
        self.hits += 1
        return entry.data

    def peek(self, item_id: str) -> CacheEntry | None:
        """Return the raw entry without touching counters."""

        return self._entries.get(item_id)

    def set(self, item_id: str, item: AnalysisHistoryItem) -> None:
        if item_id not in self._entries and len(self._entries) >= self._capacity:
            self._evict_least_used()
        self._entries[item_id] = CacheEntry(data=item, inserted_at=self._clock.now_ms())

    def delete(self, item_id: str) -> bool:
        return self._entries.pop(item_id, None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def items(self) -> list[AnalysisHistoryItem]:
        return [entry.data for entry in self._entries.values()]

    def _evict_least_used(self) -> None:
        victim_id: str | None = None
        min_hits: int | None = None
        for item_id, entry in self._entries.items():
            if min_hits is None or entry.hit_count < min_hits:
                min_hits = entry.hit_count
                victim_id = item_id
        if victim_id is not None:
            del self._entries[victim_id]
            logger.debug("history_cache_evicted", item_id=victim_id, hit_count=min_hits)

    def purge_older_than(self, max_age_ms: int) -> int:
        """Drop entries inserted more than `max_age_ms` ago regardless of hits."""

        now = self._clock.now_ms()
        stale = [
            item_id
            for item_id, entry in self._entries.items()
            if now - entry.inserted_at > max_age_ms
        ]
        for item_id in stale:
            del self._entries[item_id]
        return len(stale)
