"""Offline-aware history facade used by the presentation layer.

キャッシュ（L1/L2）への反映は常に同期的に行い、リモートへの反映は
`OfflineHistoryManager` に委ねる。リモートに届かなかった変更はキューに残るため、
呼び出し元は認証エラー以外の失敗を意識しなくてよい。
"""

from __future__ import annotations

from typing import Any

from .cache.manager import HistoryCacheManager, merge_by_latest
from .id_factory import generate_history_item_id
from .logging import logger
from .models.common import AnalysisType, OperationType
from .models.history import AnalysisHistoryItem, CacheStats, HistoryFilters
from .models.operations import SyncStatus
from .offline import OfflineHistoryManager
from .runtime import Clock, SystemClock


class HistoryService:
    def __init__(
        self,
        cache: HistoryCacheManager,
        offline: OfflineHistoryManager,
        *,
        clock: Clock | None = None,
    ) -> None:
        self._cache = cache
        self._offline = offline
        self._clock = clock or SystemClock()

    @property
    def owner_id(self) -> str:
        return self._offline.owner_id

    @property
    def cache(self) -> HistoryCacheManager:
        return self._cache

    @property
    def offline(self) -> OfflineHistoryManager:
        return self._offline

    def start(self) -> None:
        self._cache.start()
        self._offline.start()

    async def stop(self) -> None:
        await self._offline.stop()
        await self._cache.stop()

    async def record(
        self,
        type: AnalysisType,
        input: str,
        result: Any,
        *,
        session_id: str | None = None,
        session_title: str | None = None,
        analysis_id: str | None = None,
    ) -> AnalysisHistoryItem:
        """Create a new history item for a finished analysis and store it."""

        item = AnalysisHistoryItem(
            id=generate_history_item_id(),
            type=type,
            input=input,
            result=result,
            timestamp=self._clock.now_ms(),
            session_id=session_id,
            session_title=session_title,
            analysis_id=analysis_id,
        )
        return await self.add(item)

    async def add(self, item: AnalysisHistoryItem) -> AnalysisHistoryItem:
        self._cache.cache_item(item)
        await self._offline.add_to_history(item)
        return item

    async def update(self, item: AnalysisHistoryItem) -> AnalysisHistoryItem:
        self._cache.cache_item(item)
        await self._offline.update_history(item)
        return item

    async def remove(self, item_id: str) -> None:
        self._cache.evict_item(item_id)
        await self._offline.remove_from_history(item_id)

    async def get(self, item_id: str) -> AnalysisHistoryItem | None:
        if item_id in self._pending_deletes():
            return None
        return await self._cache.get(item_id, self.owner_id)

    def _pending_deletes(self) -> set[str | None]:
        return {
            operation.item_id
            for operation in self._offline.get_pending_operations()
            if operation.type == OperationType.delete
        }

    async def list_history(
        self,
        filters: HistoryFilters | None = None,
        *,
        limit: int = 20,
        offset: int = 0,
    ) -> list[AnalysisHistoryItem]:
        """Merge cached and remote history, then filter and paginate it.

        同じ ID は timestamp が最大のものを採用し、新しい順に並べる。キューに
        削除待ちがあるアイテムはリモートに残っていても表示しない。
        """

        filters = filters or HistoryFilters()
        local_items = merge_by_latest(
            list(self._cache.get_memory_cache().values()),
            self._cache.get_from_local_storage(),
        )
        deleted = self._pending_deletes()
        # 期間指定はリモート側で絞り込めないため全件を走査する。
        date_filtered = filters.start_ms is not None or filters.end_ms is not None
        remote_items = await self._cache.collect_from_remote(
            owner_id=self.owner_id,
            limit=None if date_filtered else offset + limit + len(deleted),
            type=filters.type,
            search=filters.search.strip() if filters.search else None,
        )
        merged = [
            item
            for item in merge_by_latest(remote_items, local_items)
            if item.id not in deleted and filters.matches(item)
        ]
        logger.debug(
            "history_listed",
            owner_id=self.owner_id,
            local_count=len(local_items),
            remote_count=len(remote_items),
            result_count=len(merged),
        )
        return merged[offset : offset + limit]

    async def sync(self) -> SyncStatus:
        """Flush the offline queue and refresh the cache from the remote store.

        オフライン中はキューにもキャッシュにも触れず、現在の状態だけを返す。
        """

        if not self._offline.is_online:
            logger.info("history_sync_skipped", owner_id=self.owner_id, reason="offline")
            return self._offline.get_status()
        await self._offline.force_sync()
        remote_items = await self._cache.get_from_remote(
            owner_id=self.owner_id, limit=self._cache.config.memory_max_size
        )
        if remote_items:
            await self._cache.update_cache(
                merge_by_latest(remote_items, self._cache.get_from_local_storage())
            )
        return self._offline.get_status()

    async def clear(self, *, include_remote: bool = True) -> bool:
        self._offline.clear_all_operations()
        return await self._cache.clear_all(self.owner_id if include_remote else None)

    def get_status(self) -> SyncStatus:
        return self._offline.get_status()

    def get_stats(self) -> CacheStats:
        return self._cache.get_stats()
