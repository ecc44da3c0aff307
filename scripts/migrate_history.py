#!/usr/bin/env python
"""ローカル専用の解析履歴を履歴 API へ移行するワンショットツール。"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--owner-id", required=True, help="移行先の利用者 ID。")
    parser.add_argument(
        "--local-store",
        default=None,
        type=Path,
        help="旧履歴 (`analysis-store`) を保持するローカル KV ストアのパス（既定: LOCAL_STORE_PATH）。",
    )
    parser.add_argument(
        "--api-base-url",
        default=None,
        help="履歴 API のベース URL（既定: API_BASE_URL）。",
    )
    parser.add_argument(
        "--token",
        default=os.environ.get("HISTORY_ACCESS_TOKEN"),
        help="ベアラートークン。未指定時は ACCESS_TOKEN_SECRET から発行する。",
    )
    parser.add_argument(
        "--conflict-resolution",
        choices=["local", "remote", "latest", "merge"],
        default=None,
        help="競合解決ポリシー（既定: MIGRATION_CONFLICT_RESOLUTION）。",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="書き込みを行わずに件数だけを確認する場合に指定。",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="移行済みと判定されても実行する場合に指定。",
    )
    return parser


async def _run(args: argparse.Namespace) -> int:
    from analysis_history.auth import issue_access_token
    from analysis_history.config import settings
    from analysis_history.logging import bind_log_context, configure_logging, logger
    from analysis_history.migration import HistoryMigration, MigrationOptions
    from analysis_history.models.common import ConflictResolution
    from analysis_history.store.kv import SQLiteKeyValueStore
    from analysis_history.store.remote import HttpRemoteStore

    configure_logging()
    bind_log_context(owner_id=args.owner_id, dry_run=args.dry_run)
    storage = SQLiteKeyValueStore(str(args.local_store or settings.local_store_path))
    if not args.force and not HistoryMigration.needs_migration(storage):
        logger.info("migration_not_needed", owner_id=args.owner_id)
        return 0

    token = args.token or issue_access_token(args.owner_id)
    remote = HttpRemoteStore(
        args.api_base_url or settings.api_base_url,
        lambda: token,
        timeout_ms=settings.api_timeout_ms,
    )
    overrides: dict[str, object] = {
        "dry_run": args.dry_run,
        "on_progress": lambda progress: logger.info(
            "migration_progress",
            stage=progress.stage.value,
            processed=progress.processed,
            total=progress.total,
        ),
    }
    if args.conflict_resolution:
        overrides["conflict_resolution"] = ConflictResolution(args.conflict_resolution)
    migration = HistoryMigration(storage, remote, MigrationOptions.from_settings(settings, **overrides))
    try:
        result = await migration.execute(args.owner_id)
    finally:
        await remote.aclose()
    print(json.dumps(result.model_dump(mode="json"), ensure_ascii=False, indent=2))
    return 0 if result.success else 1


def main() -> None:
    parser = _build_parser()
    args = parser.parse_args()

    repo_root = Path(__file__).resolve().parents[1]
    sys.path.insert(0, str(repo_root / "apps" / "backend"))

    sys.exit(asyncio.run(_run(args)))


if __name__ == "__main__":
    main()
