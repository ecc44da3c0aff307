from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .common import AnalysisType


class AnalysisHistoryItem(BaseModel):
    """One analysis history record shared by every cache tier.

    `id` は L1/L2/L3 を通じた同一性キー。`timestamp`（エポックミリ秒）は並び順・
    重複排除・競合解決に使う。`result` は解析種別ごとに形が異なるため、このレイヤー
    では中身を解釈せず JSON 互換の値としてそのまま保持する。
    """

    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    type: AnalysisType
    input: str
    result: Any = None
    timestamp: int = Field(ge=0, description="作成時刻（エポックミリ秒）")
    session_id: str | None = None
    session_title: str | None = None
    analysis_id: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    def to_payload(self) -> dict[str, Any]:
        """JSON 直列化可能な dict へ変換する（None のメタデータは省略）。"""

        payload = self.model_dump(mode="json", exclude_none=True)
        payload.setdefault("result", None)
        return payload


class HistoryFilters(BaseModel):
    """Filters applied when listing merged history."""

    type: AnalysisType | None = None
    search: str | None = None
    start_ms: int | None = None
    end_ms: int | None = None

    def matches(self, item: AnalysisHistoryItem) -> bool:
        if self.type is not None and item.type != self.type:
            return False
        if self.search:
            if self.search.strip().lower() not in item.input.lower():
                return False
        if self.start_ms is not None and item.timestamp < self.start_ms:
            return False
        if self.end_ms is not None and item.timestamp > self.end_ms:
            return False
        return True


class CacheStats(BaseModel):
    """Snapshot of cache counters exposed for monitoring."""

    memory_size: int = 0
    local_storage_size: int = 0
    hits: int = 0
    misses: int = 0
    hit_rate: float = 0.0
    miss_rate: float = 0.0
    last_cleanup: int = 0
