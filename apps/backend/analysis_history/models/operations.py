from __future__ import annotations

from typing import Any

from pydantic import BaseModel

from .common import OperationType


class PendingOperation(BaseModel):
    """A mutation waiting to be applied to the remote store.

    add/update は `data` に履歴アイテム全体、delete は `{"id": ...}` のみを持つ。
    `next_attempt_at` はバックオフ中の操作を自動同期から外すための時刻（ms）。
    """

    id: str
    type: OperationType
    data: dict[str, Any]
    timestamp: int
    retry_count: int = 0
    owner_id: str | None = None
    next_attempt_at: int = 0
    last_error: str | None = None

    @property
    def item_id(self) -> str | None:
        value = self.data.get("id")
        return str(value) if value is not None else None


class SyncStatus(BaseModel):
    is_online: bool = True
    pending_operations: int = 0
    failed_operations: int = 0
    last_sync_attempt: int = 0
    last_successful_sync: int = 0
    sync_in_progress: bool = False
    auth_required: bool = False
