from __future__ import annotations

import base64
import binascii
import json
import zlib
from typing import Any

from pydantic import ValidationError

from ..logging import logger
from ..models.history import AnalysisHistoryItem
from ..runtime import Clock, SystemClock
from ..store.kv import KeyValueStore
from .codec import Codec, PassthroughCodec

CACHE_KEY = "analysis_history_cache_v2"
CACHE_VERSION = "2.0"


def cache_key_for(owner_id: str) -> str:
    return f"{CACHE_KEY}:{owner_id}"


class PersistentCache:
    """TTL-bound snapshot of recent history kept in a key-value store (L2).

    1 キーに `{data, timestamp, version, compressed, codec}` のエンベロープを JSON で
    保存する。キー欠落・パース失敗・期限切れはいずれもエラーではなく空リストとして
    扱い、壊れた/古いブロブはその場で削除する。単一ライター前提の read-modify-write。
    """

    def __init__(
        self,
        storage: KeyValueStore,
        *,
        key: str = CACHE_KEY,
        ttl_ms: int = 24 * 60 * 60 * 1000,
        enable_compression: bool = False,
        codec: Codec | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._storage = storage
        self._key = key
        self._ttl_ms = ttl_ms
        self._enable_compression = enable_compression
        self._codec = codec or PassthroughCodec()
        self._clock = clock or SystemClock()
        self.size = 0

    @property
    def key(self) -> str:
        return self._key

    def _encode(self, items: list[AnalysisHistoryItem]) -> dict[str, Any]:
        payload = [item.to_payload() for item in items]
        if not self._enable_compression:
            return {"data": payload, "compressed": False, "codec": None}
        raw = json.dumps(payload, ensure_ascii=False).encode("utf-8")
        packed = base64.b64encode(self._codec.compress(raw)).decode("ascii")
        return {"data": packed, "compressed": True, "codec": self._codec.name}

    def _decode(self, envelope: dict[str, Any]) -> list[AnalysisHistoryItem]:
        data = envelope.get("data")
        if envelope.get("compressed"):
            if envelope.get("codec") not in (None, self._codec.name):
                raise ValueError(f"unsupported codec: {envelope.get('codec')}")
            raw = self._codec.decompress(base64.b64decode(str(data)))
            data = json.loads(raw.decode("utf-8"))
        if not isinstance(data, list):
            raise ValueError("cache payload is not a list")
        return [AnalysisHistoryItem.model_validate(entry) for entry in data]

    def get_all(self, limit: int | None = None) -> list[AnalysisHistoryItem]:
        raw = self._storage.get_item(self._key)
        if not raw:
            return []
        try:
            envelope = json.loads(raw)
            if not isinstance(envelope, dict):
                raise ValueError("cache envelope is not an object")
            written_at = int(envelope.get("timestamp") or 0)
            if self._clock.now_ms() - written_at > self._ttl_ms:
                logger.info("history_local_cache_expired", storage_key=self._key)
                self.clear()
                return []
            items = self._decode(envelope)
        except (ValueError, TypeError, binascii.Error, zlib.error, ValidationError) as exc:
            logger.warning(
                "history_local_cache_corrupt", storage_key=self._key, error=repr(exc)
            )
            self.clear()
            return []
        self.size = len(items)
        return items[:limit] if limit else items

    def replace_all(self, items: list[AnalysisHistoryItem]) -> None:
        envelope = {
            **self._encode(items),
            "timestamp": self._clock.now_ms(),
            "version": CACHE_VERSION,
        }
        try:
            self._storage.set_item(self._key, json.dumps(envelope, ensure_ascii=False))
        except Exception as exc:
            # 容量超過などで書けなくても L1/L3 は有効なので、キャッシュ層の劣化として扱う。
            logger.warning(
                "history_local_cache_write_failed", storage_key=self._key, error=repr(exc)
            )
            return
        self.size = len(items)

    def save_one(self, item: AnalysisHistoryItem) -> None:
        existing = self.get_all()
        self.replace_all([item, *(entry for entry in existing if entry.id != item.id)])

    def remove(self, item_id: str) -> None:
        existing = self.get_all()
        remaining = [entry for entry in existing if entry.id != item_id]
        if len(remaining) != len(existing):
            self.replace_all(remaining)

    def clear(self) -> None:
        self._storage.remove_item(self._key)
        self.size = 0
