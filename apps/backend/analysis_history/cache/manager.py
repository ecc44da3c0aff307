"""Multi-level history cache.

- L1: メモリ（最速・プロセス/セッション寿命・容量上限あり）
- L2: キー・バリューストア上のスナップショット（TTL 付き・再起動をまたいで残る）
- L3: リモートストア（正本・低速・ページング/フィルタ対応）

書き込みは write-through（L1 → L2 → L3）。L3 の失敗は呼び出し元へ送出し、
再試行やキューイングはオフライン対応層（`OfflineHistoryManager`）が担う。
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

from ..config import Settings
from ..logging import logger
from ..models.api import MAX_RECENT_LIMIT
from ..models.common import AnalysisType
from ..models.history import AnalysisHistoryItem, CacheStats
from ..runtime import AsyncioScheduler, Clock, Scheduler, SystemClock, run_periodic
from ..store.kv import KeyValueStore
from ..store.remote import RemoteStore
from .codec import Codec
from .memory import MemoryCache
from .persistent import CACHE_KEY, PersistentCache, cache_key_for

_HOUR_MS = 60 * 60 * 1000


@dataclass(frozen=True)
class CacheConfig:
    memory_max_size: int = 50
    memory_entry_max_age_ms: int = _HOUR_MS
    cleanup_interval_ms: int = _HOUR_MS
    local_storage_ttl_ms: int = 24 * _HOUR_MS
    enable_compression: bool = False

    @classmethod
    def from_settings(cls, source: Settings) -> "CacheConfig":
        return cls(
            memory_max_size=source.memory_cache_max_size,
            memory_entry_max_age_ms=source.memory_entry_max_age_ms,
            cleanup_interval_ms=source.cache_cleanup_interval_ms,
            local_storage_ttl_ms=source.local_cache_ttl_ms,
            enable_compression=source.enable_compression,
        )


def merge_by_latest(*groups: list[AnalysisHistoryItem]) -> list[AnalysisHistoryItem]:
    """Dedupe by id keeping the highest timestamp, newest first."""

    merged: dict[str, AnalysisHistoryItem] = {}
    for group in groups:
        for item in group:
            existing = merged.get(item.id)
            if existing is None or item.timestamp > existing.timestamp:
                merged[item.id] = item
    return sorted(merged.values(), key=lambda entry: entry.timestamp, reverse=True)


class HistoryCacheManager:
    """Orchestrates the L1/L2/L3 tiers of the analysis history."""

    def __init__(
        self,
        remote: RemoteStore,
        storage: KeyValueStore,
        *,
        config: CacheConfig | None = None,
        clock: Clock | None = None,
        scheduler: Scheduler | None = None,
        codec: Codec | None = None,
        owner_id: str | None = None,
    ) -> None:
        self._remote = remote
        self._config = config or CacheConfig()
        self._clock = clock or SystemClock()
        self._scheduler = scheduler or AsyncioScheduler()
        self._memory = MemoryCache(self._config.memory_max_size, clock=self._clock)
        self._local = PersistentCache(
            storage,
            key=cache_key_for(owner_id) if owner_id else CACHE_KEY,
            ttl_ms=self._config.local_storage_ttl_ms,
            enable_compression=self._config.enable_compression,
            codec=codec,
            clock=self._clock,
        )
        self._last_cleanup = self._clock.now_ms()
        self._cleanup_task: asyncio.Task[None] | None = None
        self._initialize_from_local_storage()

    @property
    def config(self) -> CacheConfig:
        return self._config

    def _initialize_from_local_storage(self) -> None:
        for item in self._local.get_all():
            self._memory.set(item.id, item)

    # --- L1 ---
    def get_from_memory(self, item_id: str) -> AnalysisHistoryItem | None:
        return self._memory.get(item_id)

    def set_in_memory(self, item_id: str, item: AnalysisHistoryItem) -> None:
        self._memory.set(item_id, item)

    def get_memory_cache(self) -> dict[str, AnalysisHistoryItem]:
        return {item.id: item for item in self._memory.items()}

    # --- L2 ---
    def get_from_local_storage(self, limit: int | None = None) -> list[AnalysisHistoryItem]:
        return self._local.get_all(limit)

    def save_to_local_storage(self, item: AnalysisHistoryItem) -> None:
        self._local.save_one(item)

    def update_local_storage(self, items: list[AnalysisHistoryItem]) -> None:
        self._local.replace_all(items)

    def clear_local_storage(self) -> None:
        self._local.clear()

    # --- L3 ---
    async def get_from_remote(
        self,
        *,
        owner_id: str,
        limit: int = 20,
        offset: int = 0,
        type: AnalysisType | None = None,
        search: str | None = None,
    ) -> list[AnalysisHistoryItem]:
        """Paginated remote read; failures are logged and degrade to an empty list."""

        try:
            return await self._remote.list(
                owner_id=owner_id,
                type=type,
                search=search,
                limit=limit,
                offset=offset,
                sort_by="created_at",
                sort_order="desc",
            )
        except Exception as exc:
            logger.error(
                "history_remote_fetch_failed",
                owner_id=owner_id,
                limit=limit,
                offset=offset,
                error=repr(exc),
            )
            return []

    async def collect_from_remote(
        self,
        *,
        owner_id: str,
        limit: int | None = None,
        type: AnalysisType | None = None,
        search: str | None = None,
    ) -> list[AnalysisHistoryItem]:
        """Read remote pages until `limit` items are collected (all items when None).

        1 ページは API の上限（`MAX_RECENT_LIMIT`）まで。短いページが返った時点で終了する。
        """

        collected: list[AnalysisHistoryItem] = []
        offset = 0
        while limit is None or len(collected) < limit:
            page_size = MAX_RECENT_LIMIT
            if limit is not None:
                page_size = min(page_size, limit - len(collected))
            page = await self.get_from_remote(
                owner_id=owner_id, limit=page_size, offset=offset, type=type, search=search
            )
            collected.extend(page)
            if len(page) < page_size:
                break
            offset += len(page)
        return collected

    # --- write-through ---
    def cache_item(self, item: AnalysisHistoryItem) -> None:
        """Write an item to L1 and L2 only."""

        self._memory.set(item.id, item)
        self._local.save_one(item)

    def evict_item(self, item_id: str) -> None:
        """Drop an item from L1 and L2 only."""

        self._memory.delete(item_id)
        self._local.remove(item_id)

    async def add_item(self, item: AnalysisHistoryItem, owner_id: str) -> None:
        self.cache_item(item)
        await self._remote.insert(item, owner_id)
        logger.info("history_item_added", item_id=item.id, owner_id=owner_id)

    async def remove_item(self, item_id: str, owner_id: str) -> None:
        self.evict_item(item_id)
        await self._remote.delete(item_id, owner_id)
        logger.info("history_item_removed", item_id=item_id, owner_id=owner_id)

    async def update_cache(self, items: list[AnalysisHistoryItem]) -> None:
        for item in items:
            self._memory.set(item.id, item)
        self._local.replace_all(items)

    async def preload_cache(self, owner_id: str, limit: int = 10) -> None:
        """Warm L1/L2 from the remote store unless L2 already holds `limit` fresh items.

        リモートの結果はローカルの既存アイテムとマージしてから書き戻す。取得結果が空の
        場合は L1/L2 を変更しない。
        """

        local_items = self._local.get_all()
        if len(local_items) >= limit:
            return
        remote_items = await self.get_from_remote(owner_id=owner_id, limit=limit)
        if not remote_items:
            return
        await self.update_cache(merge_by_latest(remote_items, local_items))
        logger.info(
            "history_cache_preloaded",
            owner_id=owner_id,
            remote_count=len(remote_items),
            local_count=len(local_items),
        )

    # --- read-through ---
    async def get(self, item_id: str, owner_id: str | None = None) -> AnalysisHistoryItem | None:
        """Look up an item in L1, then L2, then L3, promoting hits into warmer tiers.

        L2 のヒットは L1 へ、L3 のヒットは L1/L2 へ書き戻す。`owner_id` を省略した場合は
        リモートを参照しない。
        """

        cached = self._memory.get(item_id)
        if cached is not None:
            return cached
        for item in self._local.get_all():
            if item.id == item_id:
                self._memory.set(item.id, item)
                return item
        if owner_id is None:
            return None
        offset = 0
        while True:
            page = await self.get_from_remote(
                owner_id=owner_id, limit=MAX_RECENT_LIMIT, offset=offset
            )
            for item in page:
                if item.id == item_id:
                    self.cache_item(item)
                    logger.debug("history_item_promoted", item_id=item_id, owner_id=owner_id)
                    return item
            if len(page) < MAX_RECENT_LIMIT:
                return None
            offset += len(page)

    async def list_recent(self, owner_id: str, limit: int = 20) -> list[AnalysisHistoryItem]:
        """Return the newest `limit` items, warming colder tiers into warmer ones."""

        await self.preload_cache(owner_id, limit)
        items = self._local.get_all(limit)
        for item in items:
            if item.id not in self._memory:
                self._memory.set(item.id, item)
        return items

    async def clear_all(self, owner_id: str | None = None) -> bool:
        """Clear L1 and L2; also the owner's remote records when `owner_id` is given.

        リモートの削除に失敗した場合はログに残して False を返す（取り消し不可の操作の
        確認は UI 側の責務）。
        """

        self._memory.clear()
        self._local.clear()
        if owner_id is None:
            return True
        try:
            await self._remote.delete_all(owner_id)
        except Exception as exc:
            logger.error("history_remote_clear_failed", owner_id=owner_id, error=repr(exc))
            return False
        logger.info("history_cleared", owner_id=owner_id)
        return True

    # --- maintenance ---
    async def cleanup(self) -> None:
        purged = self._memory.purge_older_than(self._config.memory_entry_max_age_ms)
        # 期限切れの L2 ブロブは読み出し時に削除される。
        self._local.get_all()
        self._last_cleanup = self._clock.now_ms()
        if purged:
            logger.info("history_cache_cleanup", purged=purged, remaining=self._memory.size)

    def start(self) -> None:
        """Start the periodic cleanup task on the running event loop."""

        if self._cleanup_task is not None and not self._cleanup_task.done():
            return
        self._cleanup_task = asyncio.get_running_loop().create_task(
            run_periodic(
                self._scheduler,
                self._config.cleanup_interval_ms,
                self.cleanup,
                name="history_cache_cleanup",
            )
        )

    async def stop(self) -> None:
        task, self._cleanup_task = self._cleanup_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def get_stats(self) -> CacheStats:
        hits, misses = self._memory.hits, self._memory.misses
        total = hits + misses
        return CacheStats(
            memory_size=self._memory.size,
            local_storage_size=self._local.size,
            hits=hits,
            misses=misses,
            hit_rate=(hits / total) if total else 0.0,
            miss_rate=(misses / total) if total else 0.0,
            last_cleanup=self._last_cleanup,
        )
