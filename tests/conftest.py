"""Pytest configuration shared by the history engine and API tests."""

import os

# 署名鍵の起動時バリデーションを満たす決定的な値。実運用では `.env` で個別に乱数値を設定すること。
os.environ.setdefault("ACCESS_TOKEN_SECRET", "S9kD2fH5jL8pQ1tV4yX7zB0cN3mR6wA9")
