from typing import Annotated

from pydantic import AliasChoices, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic_settings.sources.types import NoDecode


DEFAULT_DB_PATH = ".data/review.sqlite3"
_SUPPORTED_STORE_BACKENDS = frozenset({"sqlite", "firestore"})


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    環境変数から読み込まれる復習スケジューラの設定クラス。
    - environment: 実行環境（development/staging/production など）
    - store_backend: 復習レコードの永続化先（sqlite / firestore）
    - review_*: スケジューリングとリトライの調整値
    """

    environment: str = Field(
        default="development",
        description="Runtime environment / 実行環境",
    )

    # --- 永続化設定 ---
    store_backend: str = Field(
        default="sqlite",
        description="Review record store backend (sqlite|firestore) / 復習レコードの保存先",
    )
    review_db_path: str = Field(
        default=DEFAULT_DB_PATH,
        description="Path to SQLite database for review records / 復習用SQLite DBパス",
        validation_alias=AliasChoices("review_db_path", "srs_db_path"),
    )
    firestore_project_id: str | None = Field(
        default=None,
        description="GCP project that owns the Firestore database / FirestoreのプロジェクトID",
        validation_alias=AliasChoices("firestore_project_id", "google_cloud_project"),
    )
    firestore_emulator_host: str | None = Field(
        default=None,
        description="Firestore emulator host:port / Firestoreエミュレータの接続先",
    )
    store_timeout_ms: int = Field(
        default=5000,
        description="Per-call timeout for store operations (ms) / ストア呼出しの試行毎タイムアウト(ms)",
    )

    # --- 復習スケジュール ---
    review_conflict_max_attempts: int = Field(
        default=3,
        description="Attempts for a review submission on conflict/transient errors / 競合時の最大試行回数",
    )
    review_retry_backoff_ms: int = Field(
        default=50,
        description="Base backoff between submission attempts (ms) / 再試行の初期待機時間(ms)",
    )
    review_queue_limit: int = Field(
        default=50,
        description="Max items returned by the due queue / 復習キューの最大件数",
    )
    review_lapse_interval_days: int = Field(
        default=1,
        description="Interval applied after a lapse (quality < 3) / 失念時にリセットする間隔(日)",
    )

    # --- HTTP ---
    allowed_cors_origins: Annotated[tuple[str, ...], NoDecode] = Field(
        default=(),
        description="Comma separated CORS origins / CORS で許可するオリジンのカンマ区切り一覧",
        validation_alias=AliasChoices("allowed_cors_origins", "cors_allowed_origins"),
    )

    # --- Observability ---
    sentry_dsn: str | None = Field(default=None, description="Sentry DSN (enable if set)")

    # --- Strict mode ---
    strict_mode: bool = Field(
        default=True,
        description="Fail fast on missing/invalid configuration (disable only for tests)",
    )

    # Pydantic v2 settings config
    # - env_file: .env を読み込む
    # - extra: 未使用キーを無視
    # - case_sensitive: 環境変数キーの大小文字を区別しない
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        case_sensitive=False,
    )

    @field_validator("store_backend", mode="before")
    @classmethod
    def _normalise_store_backend(cls, value: object) -> str:
        backend = str(value or "").strip().lower() or "sqlite"
        if backend not in _SUPPORTED_STORE_BACKENDS:
            raise ValueError(
                f"STORE_BACKEND must be one of {sorted(_SUPPORTED_STORE_BACKENDS)}, got {backend!r}",
            )
        return backend

    @field_validator("allowed_cors_origins", mode="before")
    @classmethod
    def _normalise_allowed_cors_origins(
        cls, raw_origins: object
    ) -> tuple[str, ...] | object:  # pragma: no cover - pydantic handles typing
        """Convert environment input into a deduplicated tuple of origins.

        カンマ区切り文字列/シーケンスのどちらでも受け取り、空白除去と重複排除を行う。
        """

        if raw_origins is None:
            candidates: list[str] = []
        elif isinstance(raw_origins, str):
            candidates = raw_origins.split(",")
        else:
            try:
                candidates = list(raw_origins)
            except TypeError:
                return raw_origins

        normalised: list[str] = []
        seen: set[str] = set()
        for candidate in candidates:
            if not isinstance(candidate, str):
                continue
            trimmed = candidate.strip()
            if not trimmed or trimmed in seen:
                continue
            seen.add(trimmed)
            normalised.append(trimmed)
        return tuple(normalised)

    @field_validator(
        "store_timeout_ms",
        "review_conflict_max_attempts",
        "review_queue_limit",
        "review_lapse_interval_days",
        mode="after",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("value must be a positive integer")
        return value

    @field_validator("review_retry_backoff_ms", mode="after")
    @classmethod
    def _require_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("REVIEW_RETRY_BACKOFF_MS must not be negative")
        return value

    @model_validator(mode="after")
    def _validate_strict_requirements(self) -> "Settings":
        """strict_mode 時は Firestore 利用にプロジェクトIDを必須とする。"""

        if not self.strict_mode:
            return self
        if self.store_backend == "firestore" and not (self.firestore_project_id or "").strip():
            raise ValueError(
                "FIRESTORE_PROJECT_ID must be set when STORE_BACKEND=firestore and STRICT_MODE=true",
            )
        return self

    @property
    def store_timeout_seconds(self) -> float:
        return self.store_timeout_ms / 1000.0


settings = Settings()
