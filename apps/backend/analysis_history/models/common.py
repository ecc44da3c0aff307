from __future__ import annotations

from enum import Enum


class AnalysisType(str, Enum):
    """Kind of linguistic analysis stored in a history record."""

    word = "word"
    sentence = "sentence"
    paragraph = "paragraph"


class ConflictResolution(str, Enum):
    """Policy used when the same record exists locally and remotely.

    - local: ローカル側を採用
    - remote: リモート側を採用
    - latest: timestamp が新しい方を採用（既定）
    - merge: 新しい方を基準に欠損フィールドを補完し、result を深くマージ
    """

    local = "local"
    remote = "remote"
    latest = "latest"
    merge = "merge"


class OperationType(str, Enum):
    add = "add"
    update = "update"
    delete = "delete"


class MigrationStage(str, Enum):
    backup = "backup"
    download = "download"
    upload = "upload"
    merge = "merge"
    cleanup = "cleanup"
    complete = "complete"
