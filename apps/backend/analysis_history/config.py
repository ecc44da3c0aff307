from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_DB_PATH = ".data/analysis_history.sqlite3"
DEFAULT_LOCAL_STORE_PATH = ".data/local_store.sqlite3"
_MIN_TOKEN_SECRET_LENGTH = 32
_PLACEHOLDER_TOKEN_SECRETS = frozenset({
    "change-me",
    "changeme",
    "change-me-to-random-value",
    "please-change-me",
})
_CONFLICT_RESOLUTIONS = frozenset({"local", "remote", "latest", "merge"})

_HOUR_MS = 60 * 60 * 1000
_DAY_MS = 24 * _HOUR_MS


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    環境変数から読み込まれる設定クラス。
    - サーバー側: 履歴 API の永続化先やアクセストークン署名鍵
    - クライアント側: L1/L2 キャッシュ、オフラインキュー、移行処理の各種しきい値
    """

    environment: str = Field(
        default="development",
        description="Runtime environment / 実行環境",
    )
    strict_mode: bool = Field(
        default=True,
        description="Fail fast on missing/invalid configuration (disable only for tests)",
    )
    log_level: str = Field(
        default="INFO",
        description="Root log level / ルートロガーのログレベル",
    )

    # --- サーバー側（履歴 API） ---
    history_db_path: str = Field(
        default=DEFAULT_DB_PATH,
        description="Path to SQLite database for remote history / リモート履歴用SQLite DBパス",
    )
    access_token_secret: str = Field(
        default="",
        description="Secret key for signing bearer tokens / ベアラートークン署名用シークレット",
    )
    access_token_max_age_seconds: int = Field(
        default=60 * 60 * 24 * 14,
        description="Bearer token lifetime in seconds / アクセストークンの寿命（秒）",
    )

    # --- クライアント側（リモートストア接続） ---
    api_base_url: str = Field(
        default="http://127.0.0.1:8000",
        description="Base URL of the history API / 履歴 API のベースURL",
    )
    api_timeout_ms: int = Field(
        default=15000,
        description="Per-request timeout for history API calls (ms) / 履歴API呼出しのタイムアウト(ms)",
    )
    local_store_path: str = Field(
        default=DEFAULT_LOCAL_STORE_PATH,
        description="Path to the local key-value store / ローカルKVストアのパス",
    )

    # --- キャッシュ（L1/L2） ---
    memory_cache_max_size: int = Field(
        default=50,
        description="Max entries kept in the memory cache / メモリキャッシュの最大件数",
    )
    memory_entry_max_age_ms: int = Field(
        default=_HOUR_MS,
        description="Age after which memory entries are purged (ms) / メモリエントリの最大保持時間(ms)",
    )
    cache_cleanup_interval_ms: int = Field(
        default=_HOUR_MS,
        description="Interval of the periodic cache cleanup (ms) / 定期クリーンアップ間隔(ms)",
    )
    local_cache_ttl_ms: int = Field(
        default=_DAY_MS,
        description="TTL of the persistent cache blob (ms) / 永続キャッシュの有効期限(ms)",
    )
    enable_compression: bool = Field(
        default=False,
        description="Compress the persistent cache blob / 永続キャッシュを圧縮して保存するか",
    )

    # --- オフラインキュー ---
    offline_max_retries: int = Field(default=3, description="Max attempts per queued operation")
    offline_retry_delay_ms: int = Field(
        default=5000,
        description="Base delay of the exponential retry backoff (ms) / リトライ待機の基準値(ms)",
    )
    offline_retry_jitter: float = Field(
        default=0.1,
        ge=0.0,
        le=1.0,
        description="Relative jitter applied to retry delays / リトライ待機に加えるゆらぎ",
    )
    offline_batch_size: int = Field(default=10, description="Operations sent concurrently per batch")
    offline_batch_pause_ms: int = Field(
        default=100,
        description="Pause between batches while draining (ms) / バッチ間の待機(ms)",
    )
    offline_sync_interval_ms: int = Field(
        default=30000,
        description="Background sync interval (ms) / バックグラウンド同期間隔(ms)",
    )
    offline_reconnect_delay_ms: int = Field(
        default=1000,
        description="Debounce before syncing after reconnect (ms) / 再接続後の同期開始待機(ms)",
    )
    offline_enable_background_sync: bool = Field(
        default=True,
        description="Run the periodic background sync / 定期同期を有効化するか",
    )
    offline_max_age_ms: int = Field(
        default=7 * _DAY_MS,
        description="Queued operations older than this are dropped on load (ms)",
    )

    # --- 移行処理 ---
    migration_batch_size: int = Field(default=10, description="Items uploaded concurrently per batch")
    migration_download_limit: int = Field(
        default=1000,
        description="Page size used to download the full remote history / リモート履歴取得件数",
    )
    migration_conflict_resolution: str = Field(
        default="latest",
        description="Conflict policy: local/remote/latest/merge / 競合解決ポリシー",
    )

    # Pydantic v2 settings config
    # - env_file: .env を読み込む
    # - extra: .env に存在する未使用キーを無視
    # - case_sensitive: 環境変数キーの大小文字を区別しない
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        case_sensitive=False,
    )

    @field_validator("access_token_secret", mode="after")
    @classmethod
    def _validate_token_secret(
        cls, value: str
    ) -> str:
        """Ensure token secrets are safely randomised before accepting them.

        既知のプレースホルダーや 32 文字未満の署名鍵は読み込み段階で拒否する。
        未設定（空文字）はクライアント専用の利用形態として許容し、サーバー起動時に検出する。
        """

        secret = (value or "").strip()
        if not secret:
            return ""

        if secret.casefold() in _PLACEHOLDER_TOKEN_SECRETS:
            raise ValueError(
                "ACCESS_TOKEN_SECRET must not use placeholder values like 'change-me'",
            )

        if len(secret) < _MIN_TOKEN_SECRET_LENGTH:
            raise ValueError(
                "ACCESS_TOKEN_SECRET must be at least 32 characters long",
            )

        return secret

    @field_validator("migration_conflict_resolution", mode="before")
    @classmethod
    def _normalise_conflict_resolution(cls, raw: object) -> str:
        """Lower-case and validate the configured conflict policy."""

        value = str(raw or "").strip().lower() or "latest"
        if value not in _CONFLICT_RESOLUTIONS:
            raise ValueError(
                f"MIGRATION_CONFLICT_RESOLUTION must be one of {sorted(_CONFLICT_RESOLUTIONS)}",
            )
        return value

    @field_validator(
        "memory_cache_max_size",
        "offline_max_retries",
        "offline_batch_size",
        "migration_batch_size",
        mode="after",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("value must be >= 1")
        return value


settings = Settings()
