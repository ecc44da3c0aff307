from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from .common import MigrationStage


class MigrationProgress(BaseModel):
    """Progress report emitted at each stage boundary."""

    stage: MigrationStage
    total: int
    processed: int
    current: str
    error: str | None = None


class MigrationError(BaseModel):
    """A stage failure reported through `on_error`.

    recoverable=False はバックアップ失敗のみ。その他の段階の失敗は結果へ記録して処理を続行する。
    """

    stage: str
    error: str
    item_id: str | None = None
    recoverable: bool = True


class MigrationResult(BaseModel):
    success: bool
    uploaded: int = 0
    downloaded: int = 0
    merged: int = 0
    conflicts: int = 0
    errors: list[str] = Field(default_factory=list)
    duration: int = Field(default=0, description="所要時間（ms）")
    timestamp: int = 0
    dry_run: bool = False


class MigrationLogEntry(BaseModel):
    level: str
    message: str
    data: Any = None
    timestamp: int
