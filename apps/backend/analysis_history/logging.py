"""Structured logging for the history engine and API.

履歴エンジン（キャッシュ・オフラインキュー・移行処理）と履歴 API は同じ
structlog 設定でログを出す。リモートストアの例外メッセージやキュー内の操作には
ベアラートークンや署名鍵が紛れ込み得るため、レンダリング前に必ずマスクする。
"""

import logging
import re
from typing import Any

import structlog
from structlog import contextvars as structlog_contextvars

from .config import settings

_SENSITIVE_KEYWORDS = ("token", "secret", "authorization", "password", "key")
# 識別子やストレージキー名はトラブルシュートに必要なのでマスクしない。
_ALLOWED_KEYS = frozenset({"key", "storage_key", "idempotency_key"})
_MASK = "***"
_BEARER_RE = re.compile(r"(?i)\b(bearer)\s+[A-Za-z0-9._~+/=-]+")


def _mask(raw: object) -> str:
    """Mask a secret-like value, keeping 4 leading and trailing chars of long values."""

    text = "" if raw is None else str(raw).strip()
    if len(text) <= 8:
        return _MASK
    return f"{text[:4]}…{text[-4:]}"


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    if lowered.endswith("_id") or lowered in _ALLOWED_KEYS:
        return False
    return any(keyword in lowered for keyword in _SENSITIVE_KEYWORDS)


def _scrub_text(text: str, known_secrets: tuple[str, ...]) -> str:
    """Remove bearer credentials and known secret literals from free text."""

    scrubbed = _BEARER_RE.sub(lambda match: f"{match.group(1)} {_MASK}", text)
    for secret in known_secrets:
        scrubbed = scrubbed.replace(secret, _mask(secret))
    return scrubbed


def _sanitize(value: Any, key_hint: str | None, known_secrets: tuple[str, ...]) -> Any:
    sensitive = key_hint is not None and _is_sensitive_key(key_hint)
    if isinstance(value, dict):
        return {k: _sanitize(v, str(k), known_secrets) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item, key_hint, known_secrets) for item in value]
    if isinstance(value, str):
        cleaned = _scrub_text(value, known_secrets)
        return _mask(cleaned) if sensitive else cleaned
    return _mask(value) if sensitive else value


def _sanitize_event_dict(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """structlog processor masking secrets in every field except the event name.

    キー名に `token`/`authorization` 等を含む値はマスクし、文字列中のベアラー
    トークンと署名鍵は置換する。dict と list は再帰的に処理する。
    """

    secret = (settings.access_token_secret or "").strip()
    known_secrets = (secret,) if secret else ()
    for key, value in list(event_dict.items()):
        if key == "event":
            continue
        event_dict[key] = _sanitize(value, str(key), known_secrets)
    return event_dict


def bind_log_context(**values: Any) -> None:
    """Attach fields (request_id, owner_id, ...) to every log line of the current context."""

    structlog_contextvars.bind_contextvars(**values)


def clear_log_context() -> None:
    structlog_contextvars.clear_contextvars()


def configure_logging(level: str | None = None) -> None:
    """Configure stdlib logging and structlog JSON output.

    API サーバー・移行 CLI のどちらから呼ばれても同じ形式になる。`level` 未指定時は
    `LOG_LEVEL` を使う。
    """

    resolved = getattr(logging, str(level or settings.log_level or "INFO").upper(), logging.INFO)
    # uvicorn 等のハンドラを置き換え、出力はメッセージ（JSON）のみにする。
    logging.basicConfig(
        level=resolved,
        format="%(message)s",
        handlers=[logging.StreamHandler()],
        force=True,
    )
    structlog.configure(
        processors=[
            structlog_contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            _sanitize_event_dict,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(ensure_ascii=False),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
    )


logger = structlog.get_logger()
