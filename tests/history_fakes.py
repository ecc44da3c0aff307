"""履歴エンジンのテスト用フェイク（仮想時計・記録スケジューラ・インメモリのリモートストア）。"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Any

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "apps" / "backend"))

from analysis_history.models.common import AnalysisType  # noqa: E402
from analysis_history.models.history import AnalysisHistoryItem  # noqa: E402
from analysis_history.store.remote import RemoteStoreError  # noqa: E402

BASE_TIME_MS = 1_700_000_000_000


def make_item(
    item_id: str,
    *,
    timestamp: int = BASE_TIME_MS,
    type: AnalysisType = AnalysisType.word,
    input: str | None = None,
    result: Any = None,
    **extra: Any,
) -> AnalysisHistoryItem:
    return AnalysisHistoryItem(
        id=item_id,
        type=type,
        input=input if input is not None else f"input-{item_id}",
        result=result if result is not None else {"meta": {"word": item_id}},
        timestamp=timestamp,
        **extra,
    )


class ManualClock:
    def __init__(self, now_ms: int = BASE_TIME_MS) -> None:
        self.now = now_ms

    def now_ms(self) -> int:
        return self.now

    def advance(self, delta_ms: int) -> None:
        self.now += delta_ms


class RecordingScheduler:
    """Scheduler that records requested delays and only yields to the event loop.

    `clock` を渡すと待機時間ぶん仮想時計を進める。
    """

    def __init__(self, clock: ManualClock | None = None) -> None:
        self.delays: list[int] = []
        self._clock = clock

    async def sleep(self, delay_ms: int) -> None:
        self.delays.append(delay_ms)
        if self._clock is not None:
            self._clock.advance(delay_ms)
        await asyncio.sleep(0)


class BlockingScheduler:
    """Scheduler whose sleeps never finish on their own (for periodic tasks)."""

    def __init__(self) -> None:
        self.delays: list[int] = []

    async def sleep(self, delay_ms: int) -> None:
        self.delays.append(delay_ms)
        await asyncio.Event().wait()


class InMemoryRemoteStore:
    """`RemoteStore` fake keeping records per owner, with failure injection.

    - `fail_writes`: insert/update/delete/delete_all が送出する例外
    - `fail_reads`: list が送出する例外
    - `fail_ids`: 特定 ID への書き込みだけを失敗させる
    """

    def __init__(self) -> None:
        self.records: dict[str, dict[str, AnalysisHistoryItem]] = {}
        self.calls: list[tuple[str, str | None]] = []
        self.fail_writes: BaseException | None = None
        self.fail_reads: BaseException | None = None
        self.fail_ids: set[str] = set()

    def seed(self, owner_id: str, *items: AnalysisHistoryItem) -> None:
        bucket = self.records.setdefault(owner_id, {})
        for item in items:
            bucket[item.id] = item

    def items_for(self, owner_id: str) -> list[AnalysisHistoryItem]:
        return sorted(
            self.records.get(owner_id, {}).values(), key=lambda item: item.timestamp, reverse=True
        )

    @property
    def write_calls(self) -> list[tuple[str, str | None]]:
        return [call for call in self.calls if call[0] != "list"]

    def _check_write(self, item_id: str | None) -> None:
        if self.fail_writes is not None:
            raise self.fail_writes
        if item_id is not None and item_id in self.fail_ids:
            raise RemoteStoreError(f"write rejected for {item_id}", status_code=503)

    async def list(
        self,
        *,
        owner_id: str,
        type: AnalysisType | None = None,
        search: str | None = None,
        limit: int = 20,
        offset: int = 0,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> list[AnalysisHistoryItem]:
        self.calls.append(("list", None))
        if self.fail_reads is not None:
            raise self.fail_reads
        items = [
            item
            for item in self.items_for(owner_id)
            if (type is None or item.type == type)
            and (not search or search.strip().lower() in item.input.lower())
        ]
        if sort_order == "asc":
            items.reverse()
        return items[offset : offset + limit]

    async def insert(self, item: AnalysisHistoryItem, owner_id: str) -> None:
        self.calls.append(("insert", item.id))
        self._check_write(item.id)
        self.records.setdefault(owner_id, {})[item.id] = item

    async def update(self, item_id: str, item: AnalysisHistoryItem) -> None:
        self.calls.append(("update", item_id))
        self._check_write(item_id)
        for bucket in self.records.values():
            if item_id in bucket:
                bucket[item_id] = item
                return
        raise RemoteStoreError("Analysis not found", status_code=404)

    async def delete(self, item_id: str, owner_id: str) -> None:
        self.calls.append(("delete", item_id))
        self._check_write(item_id)
        self.records.get(owner_id, {}).pop(item_id, None)

    async def delete_all(self, owner_id: str) -> None:
        self.calls.append(("delete_all", None))
        self._check_write(None)
        self.records.pop(owner_id, None)
