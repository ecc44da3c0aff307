from __future__ import annotations

from .analyses import AnalysisSQLiteStore, DuplicateAnalysisError
from .kv import KeyValueStore, MemoryKeyValueStore, SQLiteKeyValueStore
from .remote import (
    AuthenticationRequiredError,
    DuplicateItemError,
    HttpRemoteStore,
    RemoteStore,
    RemoteStoreError,
)

__all__ = [
    "AnalysisSQLiteStore",
    "AuthenticationRequiredError",
    "DuplicateAnalysisError",
    "DuplicateItemError",
    "HttpRemoteStore",
    "KeyValueStore",
    "MemoryKeyValueStore",
    "RemoteStore",
    "RemoteStoreError",
    "SQLiteKeyValueStore",
]
