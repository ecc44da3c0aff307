from __future__ import annotations

from .codec import Codec, PassthroughCodec, ZlibCodec
from .manager import CacheConfig, HistoryCacheManager, merge_by_latest
from .memory import CacheEntry, MemoryCache
from .persistent import CACHE_KEY, CACHE_VERSION, PersistentCache, cache_key_for

__all__ = [
    "CACHE_KEY",
    "CACHE_VERSION",
    "CacheConfig",
    "CacheEntry",
    "Codec",
    "HistoryCacheManager",
    "MemoryCache",
    "PassthroughCodec",
    "PersistentCache",
    "ZlibCodec",
    "cache_key_for",
    "merge_by_latest",
]
