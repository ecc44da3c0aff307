"""One-shot migration of legacy local-only history into the remote store.

5 段階で実行する:

1. backup: 旧ストア (`analysis-store`) の履歴を別キーへ退避する。失敗したら中断。
2. download: リモートの全履歴を取得する（失敗時は空として続行）。
3. upload: ローカルにしか無いアイテムをバッチでアップロードする。
4. merge: 両方に存在するアイテムを競合解決ポリシーで統合し、差分をリモートへ反映する。
5. cleanup: バックアップを削除し、7 日より古い移行ログを削除する。

dry_run ではリモートへの書き込みとバックアップの保存を行わず、件数のみを報告する。
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from .config import Settings
from .logging import logger
from .models.common import ConflictResolution, MigrationStage
from .models.history import AnalysisHistoryItem
from .models.migration import (
    MigrationError,
    MigrationLogEntry,
    MigrationProgress,
    MigrationResult,
)
from .runtime import Clock, SystemClock
from .store.kv import KeyValueStore
from .store.remote import RemoteStore

LEGACY_STORE_KEY = "analysis-store"
BACKUP_KEY = "analysis_history_migration_backup"
LOG_KEY = "history_migration_log"
BACKUP_VERSION = "1.0"
LOG_LIMIT = 100
LOG_RETENTION_MS = 7 * 24 * 60 * 60 * 1000


@dataclass
class MigrationOptions:
    dry_run: bool = False
    batch_size: int = 10
    download_limit: int = 1000
    conflict_resolution: ConflictResolution = ConflictResolution.latest
    on_progress: Callable[[MigrationProgress], None] | None = None
    on_error: Callable[[MigrationError], None] | None = None
    on_complete: Callable[[MigrationResult], None] | None = None

    @classmethod
    def from_settings(cls, source: Settings, **overrides: Any) -> "MigrationOptions":
        values: dict[str, Any] = {
            "batch_size": source.migration_batch_size,
            "download_limit": source.migration_download_limit,
            "conflict_resolution": ConflictResolution(source.migration_conflict_resolution),
        }
        values.update(overrides)
        return cls(**values)


class BackupError(Exception):
    """The legacy history could not be read or backed up."""


def _fill_missing(base: Any, other: Any) -> Any:
    """Fill None values in `base` from `other`, recursing into nested dicts."""

    if base is None:
        return other
    if not isinstance(base, dict) or not isinstance(other, dict):
        return base
    merged = dict(base)
    for key, value in other.items():
        if key not in merged or merged[key] is None:
            merged[key] = value
        elif isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _fill_missing(merged[key], value)
    return merged


def merge_items(local: AnalysisHistoryItem, remote: AnalysisHistoryItem) -> AnalysisHistoryItem:
    """Field-level merge: newer item as base, gaps filled from the other side."""

    newer, older = (local, remote) if local.timestamp > remote.timestamp else (remote, local)
    payload = _fill_missing(newer.model_dump(mode="json"), older.model_dump(mode="json"))
    return AnalysisHistoryItem.model_validate(payload)


def resolve_conflict(
    local: AnalysisHistoryItem,
    remote: AnalysisHistoryItem,
    policy: ConflictResolution = ConflictResolution.latest,
) -> AnalysisHistoryItem:
    if policy == ConflictResolution.local:
        return local
    if policy == ConflictResolution.remote:
        return remote
    if policy == ConflictResolution.merge:
        return merge_items(local, remote)
    return local if local.timestamp > remote.timestamp else remote


def _chunk(items: list[AnalysisHistoryItem], size: int) -> list[list[AnalysisHistoryItem]]:
    return [items[i : i + size] for i in range(0, len(items), size)]


class HistoryMigration:
    """Reconciles the legacy local-only history with the remote store."""

    def __init__(
        self,
        storage: KeyValueStore,
        remote: RemoteStore,
        options: MigrationOptions | None = None,
        *,
        clock: Clock | None = None,
    ) -> None:
        self._storage = storage
        self._remote = remote
        self._options = options or MigrationOptions()
        self._clock = clock or SystemClock()

    @property
    def options(self) -> MigrationOptions:
        return self._options

    async def execute(self, owner_id: str) -> MigrationResult:
        started = self._clock.now_ms()
        dry_run = self._options.dry_run
        errors: list[str] = []
        self._log("info", "migration_started", {"owner_id": owner_id, "dry_run": dry_run})

        try:
            local_items = self._backup()
        except BackupError as exc:
            failure = MigrationError(stage=MigrationStage.backup.value, error=str(exc), recoverable=False)
            self._report_error(failure)
            finished = self._clock.now_ms()
            result = MigrationResult(
                success=False,
                errors=[f"backup: {exc}"],
                duration=finished - started,
                timestamp=finished,
                dry_run=dry_run,
            )
            self._log("error", "migration_failed", result.model_dump(mode="json"))
            return result
        self._progress(MigrationStage.backup, len(local_items), len(local_items), "Local history backed up")

        remote_items = await self._download(owner_id, errors)
        self._progress(
            MigrationStage.download, len(remote_items), len(remote_items), "Remote history downloaded"
        )

        uploaded, to_upload = await self._upload(local_items, remote_items, owner_id, errors)
        self._progress(MigrationStage.upload, to_upload, uploaded, f"Uploaded {uploaded} items")

        merged, conflicts = await self._merge(local_items, remote_items, errors)
        self._progress(
            MigrationStage.merge,
            len(local_items) + len(remote_items),
            merged,
            f"Merged {merged} items with {conflicts} conflicts resolved",
        )

        self._cleanup(errors)
        self._progress(MigrationStage.cleanup, merged, merged, "Migration cleanup completed")

        finished = self._clock.now_ms()
        result = MigrationResult(
            success=True,
            uploaded=uploaded,
            downloaded=len(remote_items),
            merged=merged,
            conflicts=conflicts,
            errors=errors,
            duration=finished - started,
            timestamp=finished,
            dry_run=dry_run,
        )
        self._log("info", "migration_completed", result.model_dump(mode="json"))
        self._progress(MigrationStage.complete, merged, merged, "Migration completed")
        if self._options.on_complete is not None:
            self._options.on_complete(result)
        return result

    # --- stages ---
    def _backup(self) -> list[AnalysisHistoryItem]:
        try:
            raw = self._storage.get_item(LEGACY_STORE_KEY)
            if not raw:
                self._log("info", "migration_backup_skipped", {"reason": "no legacy history"})
                return []
            parsed = json.loads(raw)
            state = parsed.get("state") if isinstance(parsed, dict) else None
            entries = (state or {}).get("analysisHistory") or []
            if not isinstance(entries, list):
                raise ValueError("analysisHistory is not a list")
        except Exception as exc:
            raise BackupError(f"failed to read legacy history: {exc}") from exc

        items: list[AnalysisHistoryItem] = []
        for entry in entries:
            try:
                items.append(AnalysisHistoryItem.model_validate(entry))
            except ValidationError as exc:
                self._log(
                    "warning",
                    "migration_backup_item_skipped",
                    {"item_id": entry.get("id") if isinstance(entry, dict) else None, "error": str(exc)},
                )

        if not self._options.dry_run:
            backup = {"data": entries, "timestamp": self._clock.now_ms(), "version": BACKUP_VERSION}
            try:
                self._storage.set_item(BACKUP_KEY, json.dumps(backup, ensure_ascii=False))
            except Exception as exc:
                raise BackupError(f"failed to write backup: {exc}") from exc
        self._log("info", "migration_backup_completed", {"count": len(items)})
        return items

    async def _download(self, owner_id: str, errors: list[str]) -> list[AnalysisHistoryItem]:
        limit = max(1, self._options.download_limit)
        items: list[AnalysisHistoryItem] = []
        try:
            while True:
                page = await self._remote.list(
                    owner_id=owner_id,
                    limit=limit,
                    offset=len(items),
                    sort_by="created_at",
                    sort_order="desc",
                )
                items.extend(page)
                if len(page) < limit:
                    break
        except Exception as exc:
            self._stage_failed(MigrationStage.download, exc, errors)
            return []
        self._log("info", "migration_download_completed", {"count": len(items)})
        return items

    async def _upload(
        self,
        local_items: list[AnalysisHistoryItem],
        remote_items: list[AnalysisHistoryItem],
        owner_id: str,
        errors: list[str],
    ) -> tuple[int, int]:
        remote_ids = {item.id for item in remote_items}
        local_only = [item for item in local_items if item.id not in remote_ids]
        if not local_only:
            return 0, 0

        uploaded = 0
        for index, batch in enumerate(_chunk(local_only, self._options.batch_size), start=1):
            if self._options.dry_run:
                self._log("info", "migration_upload_dry_run", {"batch": index, "count": len(batch)})
                uploaded += len(batch)
                continue
            outcomes = await asyncio.gather(
                *(self._remote.insert(item, owner_id) for item in batch), return_exceptions=True
            )
            for item, outcome in zip(batch, outcomes):
                if isinstance(outcome, BaseException):
                    self._stage_failed(MigrationStage.upload, outcome, errors, item_id=item.id)
                else:
                    uploaded += 1
            self._log("info", "migration_upload_batch", {"batch": index, "count": len(batch)})
        return uploaded, len(local_only)

    async def _merge(
        self,
        local_items: list[AnalysisHistoryItem],
        remote_items: list[AnalysisHistoryItem],
        errors: list[str],
    ) -> tuple[int, int]:
        policy = self._options.conflict_resolution
        merged: dict[str, AnalysisHistoryItem] = {item.id: item for item in remote_items}
        remote_by_id = dict(merged)
        changed: list[AnalysisHistoryItem] = []
        conflicts = 0

        for local in local_items:
            remote = remote_by_id.get(local.id)
            if remote is None:
                merged[local.id] = local
                continue
            if local.to_payload() == remote.to_payload():
                continue
            conflicts += 1
            resolved = resolve_conflict(local, remote, policy)
            merged[local.id] = resolved
            if resolved.to_payload() != remote.to_payload():
                changed.append(resolved)

        if changed and not self._options.dry_run:
            for batch in _chunk(changed, self._options.batch_size):
                outcomes = await asyncio.gather(
                    *(self._remote.update(item.id, item) for item in batch), return_exceptions=True
                )
                for item, outcome in zip(batch, outcomes):
                    if isinstance(outcome, BaseException):
                        self._stage_failed(MigrationStage.merge, outcome, errors, item_id=item.id)

        self._log(
            "info",
            "migration_merge_completed",
            {
                "merged": len(merged),
                "conflicts": conflicts,
                "updated": len(changed),
                "policy": policy.value,
            },
        )
        return len(merged), conflicts

    def _cleanup(self, errors: list[str]) -> None:
        try:
            if not self._options.dry_run:
                self._storage.remove_item(BACKUP_KEY)
            cutoff = self._clock.now_ms() - LOG_RETENTION_MS
            recent = [entry for entry in self.get_logs() if entry.timestamp > cutoff]
            self._write_logs(recent)
        except Exception as exc:
            self._stage_failed(MigrationStage.cleanup, exc, errors)

    # --- reporting ---
    def _stage_failed(
        self,
        stage: MigrationStage,
        exc: BaseException,
        errors: list[str],
        *,
        item_id: str | None = None,
    ) -> None:
        message = str(exc) or exc.__class__.__name__
        errors.append(f"{stage.value}: {message}" if item_id is None else f"{stage.value} {item_id}: {message}")
        self._report_error(
            MigrationError(stage=stage.value, error=message, item_id=item_id, recoverable=True)
        )

    def _report_error(self, failure: MigrationError) -> None:
        self._log("error", "migration_stage_failed", failure.model_dump(mode="json"))
        if self._options.on_error is not None:
            self._options.on_error(failure)

    def _progress(self, stage: MigrationStage, total: int, processed: int, current: str) -> None:
        progress = MigrationProgress(stage=stage, total=total, processed=processed, current=current)
        self._log(
            "info",
            "migration_stage_completed",
            {"stage": stage.value, "processed": processed, "total": total},
        )
        if self._options.on_progress is not None:
            self._options.on_progress(progress)

    # --- rolling log ---
    def _log(self, level: str, message: str, data: Any = None) -> None:
        getattr(logger, level)(message, data=data)
        entry = MigrationLogEntry(level=level, message=message, data=data, timestamp=self._clock.now_ms())
        try:
            self._write_logs([*self.get_logs(), entry][-LOG_LIMIT:])
        except Exception as exc:
            logger.warning("migration_log_write_failed", error=repr(exc))

    def _write_logs(self, entries: list[MigrationLogEntry]) -> None:
        payload = [entry.model_dump(mode="json") for entry in entries]
        self._storage.set_item(LOG_KEY, json.dumps(payload, ensure_ascii=False))

    def get_logs(self) -> list[MigrationLogEntry]:
        return _read_logs(self._storage)

    @staticmethod
    def needs_migration(storage: KeyValueStore) -> bool:
        """True when no backup exists and no non-dry-run migration has succeeded."""

        if storage.get_item(BACKUP_KEY):
            return False
        for entry in _read_logs(storage):
            data = entry.data if isinstance(entry.data, dict) else {}
            if data.get("success") is True and not data.get("dry_run"):
                return False
        return True


def _read_logs(storage: KeyValueStore) -> list[MigrationLogEntry]:
    raw = storage.get_item(LOG_KEY)
    if not raw:
        return []
    try:
        entries = json.loads(raw)
        return [MigrationLogEntry.model_validate(entry) for entry in entries]
    except (ValueError, TypeError, ValidationError) as exc:
        logger.warning("migration_log_corrupt", storage_key=LOG_KEY, error=repr(exc))
        return []
