from functools import lru_cache
from typing import Any, List, Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEFAULT_CORS = ["http://localhost:3000", "http://localhost:5173"]


def _parse_cors_origins(v: Any) -> List[str]:
    try:
        if v is None or v == "":
            return _DEFAULT_CORS.copy()
        if isinstance(v, list):
            return [x for x in v if isinstance(x, str) and x.strip()]
        s = str(v).strip()
        if not s:
            return _DEFAULT_CORS.copy()
        if s.startswith("["):
            import json
            out = json.loads(s)
            return [x for x in out if isinstance(x, str) and x.strip()] or _DEFAULT_CORS.copy()
        return [x.strip() for x in s.split(",") if x.strip()] or _DEFAULT_CORS.copy()
    except Exception:
        return _DEFAULT_CORS.copy()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # App
    env: str = Field(default="development", description="ENV")
    debug: bool = Field(default=False, description="DEBUG")
    admin_api_key: str = Field(default="", alias="ADMIN_API_KEY")

    # MongoDB (local store)
    mongodb_uri: str = Field(default="mongodb://localhost:27017", alias="MONGODB_URI")
    mongodb_db_name: str = Field(default="fulfillment", alias="MONGODB_DB_NAME")

    # Redis (arq worker)
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")

    # Payment gateway
    payment_gateway: Literal["lipana", "fake"] = Field(default="fake", alias="PAYMENT_GATEWAY")
    lipana_secret_key: str = Field(default="", alias="LIPANA_SECRET_KEY")
    lipana_base_url: str = Field(default="https://api.lipana.dev/v1", alias="LIPANA_BASE_URL")
    gateway_timeout_seconds: float = Field(default=15.0, alias="GATEWAY_TIMEOUT_SECONDS")
    fake_gateway_callback_delay_seconds: float | None = Field(
        default=3.0, alias="FAKE_GATEWAY_CALLBACK_DELAY_SECONDS"
    )
    webhook_secret: str = Field(default="", alias="WEBHOOK_SECRET")

    # Manual payment details shown to payers
    mpesa_payment_type: str = Field(default="Buy Goods (Till)", alias="MPESA_PAYMENT_TYPE")
    mpesa_payment_number: str = Field(default="", alias="MPESA_PAYMENT_NUMBER")
    mpesa_payment_name: str = Field(default="", alias="MPESA_PAYMENT_NAME")

    # Remote durable store
    remote_store: Literal["firestore", "memory", "none"] = Field(default="none", alias="REMOTE_STORE")
    firestore_project: str | None = Field(default=None, alias="FIRESTORE_PROJECT")
    remote_users_collection: str = "users"
    remote_transactions_collection: str = "transactions"

    # Background execution
    background_mode: Literal["inline", "arq", "off"] = Field(default="inline", alias="BACKGROUND_MODE")

    # Outbox sync
    sync_interval_seconds: float = Field(default=5.0, alias="SYNC_INTERVAL_SECONDS")
    sync_batch_size: int = Field(default=20, alias="SYNC_BATCH_SIZE")
    sync_max_attempts: int = Field(default=5, alias="SYNC_MAX_ATTEMPTS")
    sync_backoff_base_seconds: float = Field(default=5.0, alias="SYNC_BACKOFF_BASE_SECONDS")
    sync_backoff_max_seconds: float = Field(default=600.0, alias="SYNC_BACKOFF_MAX_SECONDS")

    # Sweepers
    manual_verification_timeout_ms: int = Field(default=60_000, alias="MANUAL_VERIFICATION_TIMEOUT_MS")
    pending_timeout_ms: int = Field(default=600_000, alias="PENDING_TIMEOUT_MS")
    stale_sweep_interval_seconds: float = Field(default=10.0, alias="STALE_SWEEP_INTERVAL_SECONDS")
    retention_days: int = Field(default=7, alias="RETENTION_DAYS")
    retention_policy: Literal["archive", "delete"] = Field(default="archive", alias="RETENTION_POLICY")
    retention_interval_seconds: float = Field(default=24 * 3600, alias="RETENTION_INTERVAL_SECONDS")

    # Verification device heartbeat
    verifier_heartbeat_threshold_seconds: float = Field(
        default=30.0, alias="VERIFIER_HEARTBEAT_THRESHOLD_SECONDS"
    )
    heartbeat_check_interval_seconds: float = Field(default=5.0, alias="HEARTBEAT_CHECK_INTERVAL_SECONDS")

    # Dashboard
    log_buffer_size: int = Field(default=100, alias="LOG_BUFFER_SIZE")

    # Sentry
    sentry_dsn: str | None = Field(default=None, alias="SENTRY_DSN")

    # CORS: env as string, exposed as list
    cors_origins_raw: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        alias="CORS_ORIGINS",
        description="Comma-separated or JSON list",
    )

    @property
    def cors_origins(self) -> List[str]:
        return _parse_cors_origins(getattr(self, "cors_origins_raw", None))

    # Credit rules
    daily_free_credits: int = 3
    first_time_bonus_credits: int = 3
    admin_unlimited_days: int = 30


@lru_cache
def get_settings() -> Settings:
    return Settings()
