from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ALLOWED_RATE_LIMIT_BACKENDS = {"memory", "redis"}


class Settings(BaseSettings):
    app_name: str = "Storefront Order Admin Service"

    database_url: str = Field(
        default="sqlite+pysqlite:///./test.db",
        validation_alias="ORDERS_DATABASE_URL",
    )
    cors_allowed_origins: str = "http://localhost:3000"
    testing: bool = Field(default=False, validation_alias="ORDERS_TESTING")

    redis_url: str = ""
    cache_enabled: bool = True
    analytics_cache_ttl_s: int = 300
    cache_scan_count: int = 100
    cache_delete_batch_size: int = 100

    export_batch_size: int = 100
    export_string_max_rows: int = 1000

    payment_api_base_url: str = ""
    payment_api_key: str = ""
    payment_api_timeout_s: float = 10.0
    payment_api_max_retries: int = 1
    payment_api_backoff_s: float = 0.5

    email_api_base_url: str = ""
    email_api_timeout_s: float = 5.0
    email_from: str = "orders@storefront.local"

    rate_limit_backend: str = "memory"
    refund_rate_limit_requests: int = 20
    refund_rate_limit_window_s: int = 60
    export_rate_limit_requests: int = 5
    export_rate_limit_window_s: int = 60

    idempotency_ttl_s: int = 24 * 60 * 60
    refund_reconcile_grace_s: int = 60

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    @field_validator("rate_limit_backend")
    @classmethod
    def validate_rate_limit_backend(cls, value: str) -> str:
        backend = value.lower().strip()
        if backend not in ALLOWED_RATE_LIMIT_BACKENDS:
            allowed = ", ".join(sorted(ALLOWED_RATE_LIMIT_BACKENDS))
            raise ValueError(f"RATE_LIMIT_BACKEND must be one of: {allowed}")
        return backend

    @field_validator(
        "export_batch_size", "export_string_max_rows", "cache_scan_count", "cache_delete_batch_size"
    )
    @classmethod
    def validate_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("batch and page sizes must be >= 1")
        return value


settings = Settings()


def allowed_origins() -> list[str]:
    return [origin.strip() for origin in settings.cors_allowed_origins.split(",") if origin.strip()]


def cache_configured() -> bool:
    return settings.cache_enabled and bool(settings.redis_url.strip())


def ensure_secure_runtime_settings() -> None:
    """Fail fast when a production-like runtime is missing required collaborators."""
    if settings.testing:
        return
    if _is_sqlite_url(settings.database_url):
        raise RuntimeError("ORDERS_DATABASE_URL must use postgres when ORDERS_TESTING is false")
    if settings.payment_api_base_url and not settings.payment_api_key:
        raise RuntimeError("PAYMENT_API_KEY must be set when PAYMENT_API_BASE_URL is configured")


def _is_sqlite_url(database_url: str) -> bool:
    value = database_url.strip().lower()
    return value.startswith("sqlite")
