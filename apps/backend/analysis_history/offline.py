"""Offline operation queue for history mutations.

オンライン時は変更を即座にリモートへ適用し、失敗またはオフライン時は保留キューへ
積む。キューは変更のたびにキー・バリューストアへ保存され、再接続時・定期同期時・
手動同期時にバッチ単位で再送される。

- 一時的な失敗: `retry_count` を増やし指数バックオフ後に再送。`max_retries` に
  達した操作は failed リストへ移し、自動同期の対象から外す（破棄はしない）。
- 認証エラー: 操作はキューへ残したうえで呼び出し元へ送出する。認証が回復するまで
  （`force_sync()` / `retry_failed_operations()` が呼ばれるまで）自動同期を止める。
- オフライン中は同期処理そのものを行わず、試行回数も増やさない。
- キューは利用者ごとに別キー（`offline_history_operations_v2:<owner_id>`）へ保存する。
"""

from __future__ import annotations

import asyncio
import json
import random
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from .config import Settings
from .id_factory import generate_operation_id
from .logging import logger
from .models.common import OperationType
from .models.history import AnalysisHistoryItem
from .models.operations import PendingOperation, SyncStatus
from .runtime import (
    AsyncioScheduler,
    Clock,
    ConnectivityObserver,
    ManualConnectivity,
    Scheduler,
    SystemClock,
    run_periodic,
)
from .store.kv import KeyValueStore
from .store.remote import AuthenticationRequiredError, RemoteStore

OPERATIONS_KEY = "offline_history_operations_v2"
STATUS_KEY = "offline_sync_status_v2"
QUEUE_VERSION = "2.0"

_DAY_MS = 24 * 60 * 60 * 1000


def operations_key_for(owner_id: str) -> str:
    return f"{OPERATIONS_KEY}:{owner_id}"


def status_key_for(owner_id: str) -> str:
    return f"{STATUS_KEY}:{owner_id}"


@dataclass(frozen=True)
class OfflineConfig:
    max_retries: int = 3
    retry_delay_ms: int = 5000
    retry_jitter: float = 0.1
    batch_size: int = 10
    batch_pause_ms: int = 100
    sync_interval_ms: int = 30000
    reconnect_delay_ms: int = 1000
    enable_background_sync: bool = True
    max_age_ms: int = 7 * _DAY_MS

    @classmethod
    def from_settings(cls, source: Settings) -> "OfflineConfig":
        return cls(
            max_retries=source.offline_max_retries,
            retry_delay_ms=source.offline_retry_delay_ms,
            retry_jitter=source.offline_retry_jitter,
            batch_size=source.offline_batch_size,
            batch_pause_ms=source.offline_batch_pause_ms,
            sync_interval_ms=source.offline_sync_interval_ms,
            reconnect_delay_ms=source.offline_reconnect_delay_ms,
            enable_background_sync=source.offline_enable_background_sync,
            max_age_ms=source.offline_max_age_ms,
        )


def _chunk(operations: list[PendingOperation], size: int) -> list[list[PendingOperation]]:
    return [operations[i : i + size] for i in range(0, len(operations), size)]


class OfflineHistoryManager:
    """Durable queue of add/update/delete operations against the remote store."""

    def __init__(
        self,
        remote: RemoteStore,
        storage: KeyValueStore,
        *,
        owner_id: str,
        config: OfflineConfig | None = None,
        clock: Clock | None = None,
        scheduler: Scheduler | None = None,
        connectivity: ConnectivityObserver | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._remote = remote
        self._storage = storage
        self._owner_id = owner_id
        self._operations_key = operations_key_for(owner_id)
        self._status_key = status_key_for(owner_id)
        self._config = config or OfflineConfig()
        self._clock = clock or SystemClock()
        self._scheduler = scheduler or AsyncioScheduler()
        self._connectivity = connectivity or ManualConnectivity()
        self._rng = rng or random.Random()

        self._pending: list[PendingOperation] = []
        self._failed: list[PendingOperation] = []
        self._status = SyncStatus(is_online=self._connectivity.is_online)
        self._sync_in_progress = False

        self._loop: asyncio.AbstractEventLoop | None = None
        self._unsubscribe: Callable[[], None] | None = None
        self._background_task: asyncio.Task[None] | None = None
        self._tasks: set[asyncio.Task[None]] = set()

        self._load_operations()
        self._load_status()

    @property
    def owner_id(self) -> str:
        return self._owner_id

    @property
    def is_online(self) -> bool:
        return self._connectivity.is_online

    @property
    def auth_required(self) -> bool:
        return self._status.auth_required

    # --- lifecycle ---
    def start(self) -> None:
        """Subscribe to connectivity changes and start the background sync loop.

        実行中のイベントループ上で呼び出すこと。
        """

        self._loop = asyncio.get_running_loop()
        if self._unsubscribe is None:
            self._unsubscribe = self._connectivity.subscribe(self._on_connectivity_change)
        if self._config.enable_background_sync and self._background_task is None:
            self._background_task = self._loop.create_task(
                run_periodic(
                    self._scheduler,
                    self._config.sync_interval_ms,
                    self._background_sync,
                    name="offline_background_sync",
                )
            )

    async def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        tasks = list(self._tasks)
        if self._background_task is not None:
            tasks.append(self._background_task)
            self._background_task = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()

    async def wait_idle(self) -> None:
        """Wait until every reconnect-triggered drain scheduled so far has settled."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _on_connectivity_change(self, online: bool) -> None:
        self._status.is_online = online
        self._save_status()
        if not online:
            logger.info("offline_mode_entered", pending=len(self._pending))
            return
        logger.info("offline_mode_left", pending=len(self._pending))
        if self._loop is None:
            return
        task = self._loop.create_task(self._drain_after_reconnect())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _drain_after_reconnect(self) -> None:
        # 回線が安定するまで少し待ってから送る。
        await self._scheduler.sleep(self._config.reconnect_delay_ms)
        if self.is_online and not self._status.auth_required:
            await self.process_pending_operations()

    async def _background_sync(self) -> None:
        if self.is_online and self._pending and not self._status.auth_required:
            await self.process_pending_operations()

    # --- public mutations ---
    async def add_to_history(self, item: AnalysisHistoryItem) -> None:
        await self._submit(OperationType.add, item.to_payload())

    async def update_history(self, item: AnalysisHistoryItem) -> None:
        await self._submit(OperationType.update, item.to_payload())

    async def remove_from_history(self, item_id: str) -> None:
        await self._submit(OperationType.delete, {"id": item_id})

    async def _submit(self, kind: OperationType, data: dict[str, Any]) -> None:
        operation = PendingOperation(
            id=generate_operation_id(kind.value),
            type=kind,
            data=data,
            timestamp=self._clock.now_ms(),
            owner_id=self._owner_id,
        )
        if not self.is_online:
            self._enqueue(operation, reason="offline")
            return
        try:
            await self._apply(operation)
        except AuthenticationRequiredError as exc:
            operation.last_error = str(exc)
            self._enqueue(operation, reason="auth_required")
            self._mark_auth_required()
            raise
        except Exception as exc:
            # 即時適用も 1 回の試行として数える。
            self._record_failure(operation, exc)
            if operation.retry_count >= self._config.max_retries:
                self._quarantine(operation)
                self._save_operations()
                return
            self._enqueue(operation, reason="remote_error")
            return
        self._mark_authenticated()
        logger.info(
            "offline_operation_applied",
            operation_id=operation.id,
            operation_type=kind.value,
            item_id=operation.item_id,
        )

    def _enqueue(self, operation: PendingOperation, *, reason: str) -> None:
        self._pending.append(operation)
        self._save_operations()
        logger.info(
            "offline_operation_queued",
            operation_id=operation.id,
            operation_type=operation.type.value,
            item_id=operation.item_id,
            reason=reason,
            pending=len(self._pending),
        )

    async def _apply(self, operation: PendingOperation) -> None:
        owner_id = operation.owner_id or self._owner_id
        if operation.type == OperationType.delete:
            item_id = operation.item_id
            if not item_id:
                raise ValueError(f"delete operation {operation.id} has no item id")
            await self._remote.delete(item_id, owner_id)
            return
        item = AnalysisHistoryItem.model_validate(operation.data)
        if operation.type == OperationType.add:
            await self._remote.insert(item, owner_id)
        else:
            await self._remote.update(item.id, item)

    def _record_failure(self, operation: PendingOperation, exc: Exception) -> None:
        operation.retry_count += 1
        operation.last_error = str(exc) or exc.__class__.__name__
        backoff = self._config.retry_delay_ms * (2 ** (operation.retry_count - 1))
        jitter = 1 + self._config.retry_jitter * self._rng.random()
        operation.next_attempt_at = self._clock.now_ms() + int(backoff * jitter)

    def _mark_auth_required(self) -> None:
        if not self._status.auth_required:
            logger.warning("offline_auth_required", pending=len(self._pending))
        self._status.auth_required = True
        self._save_status()

    def _mark_authenticated(self) -> None:
        if self._status.auth_required:
            self._status.auth_required = False
            self._save_status()

    # --- draining ---
    async def process_pending_operations(self) -> None:
        """Drain due pending operations in batches.

        バックオフ待ちの操作は対象外。認証待ちの間は何もしない。
        """

        if self._status.auth_required:
            return
        await self._drain(ignore_backoff=False)

    async def force_sync(self) -> None:
        """Drain every pending operation now, ignoring backoff and the auth pause."""

        self._status.auth_required = False
        await self._drain(ignore_backoff=True)

    async def retry_failed_operations(self) -> None:
        if not self._failed:
            return
        logger.info("offline_retry_failed_operations", count=len(self._failed))
        for operation in self._failed:
            operation.retry_count = 0
            operation.next_attempt_at = 0
        self._pending.extend(self._failed)
        self._failed = []
        self._status.auth_required = False
        self._save_operations()
        await self._drain(ignore_backoff=True)

    async def _drain(self, *, ignore_backoff: bool) -> None:
        if self._sync_in_progress or not self._pending:
            return
        if not self.is_online:
            # オフライン中は送信しない。試行回数も消費しない。
            logger.info("offline_sync_skipped", reason="offline", pending=len(self._pending))
            return
        self._sync_in_progress = True
        now = self._clock.now_ms()
        self._status.last_sync_attempt = now
        self._status.sync_in_progress = True
        self._save_status()

        due = [
            operation
            for operation in self._pending
            if ignore_backoff or operation.next_attempt_at <= now
        ]
        logger.info("offline_sync_started", due=len(due), pending=len(self._pending))
        failures = 0
        try:
            batches = _chunk(due, self._config.batch_size)
            for index, batch in enumerate(batches):
                if index:
                    await self._scheduler.sleep(self._config.batch_pause_ms)
                if not self.is_online:
                    logger.info("offline_sync_interrupted", remaining=len(self._pending))
                    break
                failures += await self._process_batch(batch)
                if self._status.auth_required:
                    break
            if failures == 0 and not self._status.auth_required and self.is_online:
                self._status.last_successful_sync = self._clock.now_ms()
            logger.info(
                "offline_sync_completed",
                attempted=len(due),
                failures=failures,
                pending=len(self._pending),
                failed=len(self._failed),
            )
        finally:
            self._sync_in_progress = False
            self._status.sync_in_progress = False
            self._save_operations()

    async def _process_batch(self, batch: list[PendingOperation]) -> int:
        """Apply one batch concurrently and return the number of failed operations."""

        outcomes = await asyncio.gather(
            *(self._apply(operation) for operation in batch), return_exceptions=True
        )
        failures = 0
        auth_failed = False
        for operation, outcome in zip(batch, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if outcome is None:
                self._remove_pending(operation.id)
                continue
            failures += 1
            if isinstance(outcome, AuthenticationRequiredError):
                # 認証エラーは試行回数に数えない。
                operation.last_error = str(outcome)
                auth_failed = True
                continue
            self._record_failure(operation, outcome)
            if operation.retry_count >= self._config.max_retries:
                self._remove_pending(operation.id)
                self._quarantine(operation)
            else:
                logger.info(
                    "offline_operation_retry_scheduled",
                    operation_id=operation.id,
                    attempts=operation.retry_count,
                    next_attempt_at=operation.next_attempt_at,
                    error=operation.last_error,
                )
        if auth_failed:
            self._mark_auth_required()
        elif failures < len(batch):
            self._mark_authenticated()
        self._save_operations()
        return failures

    def _quarantine(self, operation: PendingOperation) -> None:
        self._failed.append(operation)
        logger.warning(
            "offline_operation_failed",
            operation_id=operation.id,
            operation_type=operation.type.value,
            item_id=operation.item_id,
            attempts=operation.retry_count,
            error=operation.last_error,
        )

    def _remove_pending(self, operation_id: str) -> None:
        self._pending = [op for op in self._pending if op.id != operation_id]

    # --- inspection ---
    def get_status(self) -> SyncStatus:
        return self._status.model_copy(
            update={
                "is_online": self.is_online,
                "pending_operations": len(self._pending),
                "failed_operations": len(self._failed),
            }
        )

    def get_pending_operations(self) -> list[PendingOperation]:
        return [operation.model_copy() for operation in self._pending]

    def get_failed_operations(self) -> list[PendingOperation]:
        return [operation.model_copy() for operation in self._failed]

    def clear_all_operations(self) -> None:
        self._pending = []
        self._failed = []
        self._storage.remove_item(self._operations_key)
        self._save_status()
        logger.info("offline_operations_cleared")

    # --- persistence ---
    def _save_operations(self) -> None:
        envelope = {
            "operations": [op.model_dump(mode="json") for op in self._pending],
            "failed": [op.model_dump(mode="json") for op in self._failed],
            "timestamp": self._clock.now_ms(),
            "version": QUEUE_VERSION,
        }
        try:
            self._storage.set_item(self._operations_key, json.dumps(envelope, ensure_ascii=False))
        except Exception as exc:
            logger.warning("offline_queue_save_failed", error=repr(exc))
        self._save_status()

    def _save_status(self) -> None:
        self._status.pending_operations = len(self._pending)
        self._status.failed_operations = len(self._failed)
        try:
            self._storage.set_item(self._status_key, self._status.model_dump_json())
        except Exception as exc:
            logger.warning("offline_status_save_failed", error=repr(exc))

    def _load_operations(self) -> None:
        raw = self._storage.get_item(self._operations_key)
        if not raw:
            return
        try:
            envelope = json.loads(raw)
            pending = [PendingOperation.model_validate(op) for op in envelope.get("operations") or []]
            failed = [PendingOperation.model_validate(op) for op in envelope.get("failed") or []]
        except (ValueError, TypeError, AttributeError, ValidationError) as exc:
            logger.warning("offline_queue_corrupt", storage_key=self._operations_key, error=repr(exc))
            self._storage.remove_item(self._operations_key)
            return
        foreign = [op for op in (*pending, *failed) if op.owner_id not in (None, self._owner_id)]
        if foreign:
            logger.warning("offline_foreign_operations_dropped", count=len(foreign))
            pending = [op for op in pending if op.owner_id in (None, self._owner_id)]
            failed = [op for op in failed if op.owner_id in (None, self._owner_id)]
        cutoff = self._clock.now_ms() - self._config.max_age_ms
        self._pending = [op for op in pending if op.timestamp > cutoff]
        self._failed = [op for op in failed if op.timestamp > cutoff]
        dropped = len(pending) + len(failed) - len(self._pending) - len(self._failed)
        if dropped:
            logger.warning("offline_operations_expired", dropped=dropped)
        if dropped or foreign:
            self._save_operations()
        logger.info(
            "offline_queue_loaded", pending=len(self._pending), failed=len(self._failed)
        )

    def _load_status(self) -> None:
        raw = self._storage.get_item(self._status_key)
        if raw:
            try:
                stored = SyncStatus.model_validate_json(raw)
            except ValidationError as exc:
                logger.warning("offline_status_corrupt", storage_key=self._status_key, error=repr(exc))
            else:
                self._status.last_sync_attempt = stored.last_sync_attempt
                self._status.last_successful_sync = stored.last_successful_sync
        self._status.is_online = self.is_online
        self._status.sync_in_progress = False
        self._save_status()
