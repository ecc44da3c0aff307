from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Iterator

from ..models.common import AnalysisType
from ..models.history import AnalysisHistoryItem


class DuplicateAnalysisError(Exception):
    """Raised when inserting an id that already exists."""


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _ms_to_iso(timestamp_ms: int) -> str:
    return datetime.fromtimestamp(timestamp_ms / 1000, UTC).isoformat()


def _dig(payload: Any, *path: str) -> Any:
    current = payload
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def build_summary(item: AnalysisHistoryItem) -> str:
    """一覧表示用の短い要約を解析結果から組み立てる。

    result の形は解析種別ごとに異なるため、既知のキーが見つかった場合のみ利用し、
    それ以外は入力文の先頭 50 文字を使った汎用の要約へフォールバックする。
    """

    kind = item.type.value
    if item.type == AnalysisType.word:
        meaning = _dig(item.result, "definitions", "root_meaning")
        if meaning:
            return f"Word: {item.input} - {meaning}"
    elif item.type == AnalysisType.sentence:
        main_idea = _dig(item.result, "semantics", "main_idea")
        if main_idea:
            return f"Sentence analysis: {main_idea}"
    elif item.type == AnalysisType.paragraph:
        topic = _dig(item.result, "content_analysis", "main_topic")
        if topic:
            return f"Paragraph: {topic}"
    return f"{kind} analysis of: {item.input[:50]}"


class AnalysisSQLiteStore:
    """SQLite-backed persistence for the history API (L3 on the server side)."""

    _SORT_COLUMNS = {"created_at": "timestamp_ms", "timestamp": "timestamp_ms"}

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self._ensure_dirs()
        self._init_db()

    # --- low-level helpers ---
    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.db_path, timeout=10.0, isolation_level=None, check_same_thread=False
        )
        conn.row_factory = sqlite3.Row
        with conn:  # autocommit on pragma
            conn.execute("pragma journal_mode=WAL;")
        return conn

    @contextmanager
    def _conn(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
        finally:
            conn.close()

    def _ensure_dirs(self) -> None:
        p = Path(self.db_path)
        if p.parent and not p.parent.exists():
            p.parent.mkdir(parents=True, exist_ok=True)

    def _init_db(self) -> None:
        with self._conn() as conn:
            with conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS analyses (
                        id TEXT PRIMARY KEY,
                        owner_id TEXT NOT NULL,
                        analysis_type TEXT NOT NULL,
                        input_text TEXT NOT NULL,
                        analysis_data TEXT,
                        timestamp_ms INTEGER NOT NULL,
                        session_id TEXT,
                        session_title TEXT,
                        analysis_id TEXT,
                        title TEXT NOT NULL,
                        summary TEXT NOT NULL,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    );
                    """
                )
                conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_analyses_owner_ts ON analyses(owner_id, timestamp_ms);"
                )

    @staticmethod
    def _row_to_item(row: sqlite3.Row) -> AnalysisHistoryItem:
        raw_data = row["analysis_data"]
        return AnalysisHistoryItem(
            id=row["id"],
            type=AnalysisType(row["analysis_type"]),
            input=row["input_text"],
            result=json.loads(raw_data) if raw_data else None,
            timestamp=int(row["timestamp_ms"]),
            session_id=row["session_id"],
            session_title=row["session_title"],
            analysis_id=row["analysis_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    # --- public API ---
    def ping(self) -> None:
        with self._conn() as conn:
            conn.execute("SELECT 1").fetchone()

    def insert(
        self,
        owner_id: str,
        item: AnalysisHistoryItem,
        *,
        title: str | None = None,
        summary: str | None = None,
    ) -> AnalysisHistoryItem:
        now = _now_iso()
        try:
            with self._conn() as conn:
                conn.execute(
                    """
                    INSERT INTO analyses (
                        id, owner_id, analysis_type, input_text, analysis_data, timestamp_ms,
                        session_id, session_title, analysis_id, title, summary, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        item.id,
                        owner_id,
                        item.type.value,
                        item.input,
                        json.dumps(item.result, ensure_ascii=False),
                        item.timestamp,
                        item.session_id,
                        item.session_title,
                        item.analysis_id,
                        (title or item.input)[:100],
                        summary or build_summary(item),
                        _ms_to_iso(item.timestamp),
                        now,
                    ),
                )
        except sqlite3.IntegrityError as exc:
            raise DuplicateAnalysisError(item.id) from exc
        stored = self.get(owner_id, item.id)
        if stored is None:  # pragma: no cover
            raise RuntimeError("failed to persist analysis")
        return stored

    def get(self, owner_id: str, item_id: str) -> AnalysisHistoryItem | None:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT * FROM analyses WHERE id = ? AND owner_id = ?",
                (item_id, owner_id),
            ).fetchone()
        return None if row is None else self._row_to_item(row)

    def update(self, owner_id: str, item: AnalysisHistoryItem) -> AnalysisHistoryItem | None:
        """既存レコードを更新する。存在しない場合は None を返す。"""

        with self._conn() as conn:
            cur = conn.execute(
                """
                UPDATE analyses
                SET analysis_type = ?, input_text = ?, analysis_data = ?, timestamp_ms = ?,
                    session_id = ?, session_title = ?, analysis_id = ?, summary = ?,
                    created_at = ?, updated_at = ?
                WHERE id = ? AND owner_id = ?
                """,
                (
                    item.type.value,
                    item.input,
                    json.dumps(item.result, ensure_ascii=False),
                    item.timestamp,
                    item.session_id,
                    item.session_title,
                    item.analysis_id,
                    build_summary(item),
                    _ms_to_iso(item.timestamp),
                    _now_iso(),
                    item.id,
                    owner_id,
                ),
            )
            if cur.rowcount == 0:
                return None
        return self.get(owner_id, item.id)

    def delete(self, owner_id: str, item_id: str) -> bool:
        with self._conn() as conn:
            cur = conn.execute(
                "DELETE FROM analyses WHERE id = ? AND owner_id = ?", (item_id, owner_id)
            )
            return cur.rowcount > 0

    def delete_all(self, owner_id: str) -> int:
        with self._conn() as conn:
            cur = conn.execute("DELETE FROM analyses WHERE owner_id = ?", (owner_id,))
            return int(cur.rowcount)

    def list(
        self,
        owner_id: str,
        *,
        type: AnalysisType | None = None,
        search: str | None = None,
        limit: int = 20,
        offset: int = 0,
        sort_by: str = "created_at",
        sort_order: str = "desc",
        created_after_ms: int | None = None,
    ) -> tuple[list[AnalysisHistoryItem], int]:
        """Return one page of the owner's records together with the total count."""

        clauses = ["owner_id = ?"]
        params: list[Any] = [owner_id]
        if type is not None:
            clauses.append("analysis_type = ?")
            params.append(type.value)
        if search:
            clauses.append("lower(input_text) LIKE ?")
            params.append(f"%{search.strip().lower()}%")
        if created_after_ms is not None:
            clauses.append("timestamp_ms > ?")
            params.append(created_after_ms)
        where = " AND ".join(clauses)
        column = self._SORT_COLUMNS.get(sort_by, "timestamp_ms")
        direction = "ASC" if sort_order == "asc" else "DESC"
        normalized_limit = max(0, int(limit))
        normalized_offset = max(0, int(offset))
        with self._conn() as conn:
            total = conn.execute(
                f"SELECT COUNT(*) FROM analyses WHERE {where}", params
            ).fetchone()[0]
            rows = conn.execute(
                f"SELECT * FROM analyses WHERE {where} ORDER BY {column} {direction}, id {direction} "
                "LIMIT ? OFFSET ?",
                [*params, normalized_limit, normalized_offset],
            ).fetchall()
        return [self._row_to_item(row) for row in rows], int(total)
