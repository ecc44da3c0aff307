from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from .common import AnalysisType
from .history import AnalysisHistoryItem


class AnalysisAddRequest(BaseModel):
    """Request body for `POST /api/analyses/add` and `PUT /api/analyses/{id}`.

    クライアントの履歴アイテムを API 形式（`input` → `input_text`）へ写したもの。
    """

    model_config = ConfigDict(
        extra="ignore",
        json_schema_extra={
            "examples": [
                {
                    "id": "0f7e3c2a-4b1d-4c55-9a7e-6d2b8f1e9c10",
                    "type": "word",
                    "input_text": "converge",
                    "result": {"meta": {"word": "converge"}},
                    "timestamp": 1717000000000,
                }
            ]
        },
    )

    id: str = Field(min_length=1)
    type: AnalysisType
    input_text: str = Field(min_length=1)
    result: Any = None
    timestamp: int | None = Field(default=None, ge=0)
    session_id: str | None = None
    session_title: str | None = None
    analysis_id: str | None = None
    title: str | None = None
    summary: str | None = None

    @classmethod
    def from_item(cls, item: AnalysisHistoryItem) -> "AnalysisAddRequest":
        return cls(
            id=item.id,
            type=item.type,
            input_text=item.input,
            result=item.result,
            timestamp=item.timestamp,
            session_id=item.session_id,
            session_title=item.session_title,
            analysis_id=item.analysis_id,
        )


MAX_RECENT_LIMIT = 1000


class RecentAnalysesRequest(BaseModel):
    """Request body for `POST /api/analyses/recent`."""

    limit: int = Field(default=20, ge=1, le=MAX_RECENT_LIMIT, description="取得件数上限")
    offset: int = Field(default=0, ge=0, description="オフセット")
    type: AnalysisType | Literal["all"] = "all"
    search: str | None = None
    sort_by: Literal["created_at", "timestamp"] = "created_at"
    sort_order: Literal["asc", "desc"] = "desc"


class Pagination(BaseModel):
    total: int
    limit: int
    offset: int
    has_more: bool


class RecentAnalysesData(BaseModel):
    analyses: list[AnalysisHistoryItem]
    pagination: Pagination


class RecentAnalysesResponse(BaseModel):
    success: bool = True
    data: RecentAnalysesData


class AnalysisMutationData(BaseModel):
    analysis: AnalysisHistoryItem | None = None
    deleted: int = 0


class AnalysisMutationResponse(BaseModel):
    success: bool = True
    data: AnalysisMutationData


class SyncRequest(BaseModel):
    """Request body for `POST /api/analyses/sync`."""

    local_history: list[AnalysisHistoryItem] = Field(default_factory=list)
    last_sync_timestamp: int | None = Field(default=None, ge=0)


class SyncConflict(BaseModel):
    local: AnalysisHistoryItem
    remote: AnalysisHistoryItem


class SyncData(BaseModel):
    uploaded: int
    downloaded: int
    conflicts: list[SyncConflict]
    merged_history: list[AnalysisHistoryItem]


class SyncResponse(BaseModel):
    success: bool = True
    data: SyncData
