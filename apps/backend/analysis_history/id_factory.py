"""ID 生成ユーティリティ。

履歴アイテムの ID はローカル/リモートのどちらで生成されても衝突しないよう
UUID を用いる。キュー操作の ID には操作種別の prefix を付け、ログから
add/update/delete を判別しやすくしている。
"""

from __future__ import annotations

import uuid


def generate_history_item_id() -> str:
    """履歴アイテムの新規 ID（UUID4 文字列）を生成する。"""

    return str(uuid.uuid4())


def generate_operation_id(kind: str) -> str:
    """保留操作の ID を `{kind}-{uuid}` 形式で生成する。"""

    return f"{kind}-{uuid.uuid4()}"
