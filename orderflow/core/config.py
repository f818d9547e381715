"""
Orderflow - Configuration
All settings are read from environment variables (or .env file).
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # ── Service ──────────────────────────────────────────────
    SERVICE_NAME: str = "orderflow"
    SERVICE_VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # ── Database ──────────────────────────────────────────────
    # DATABASE_URL wins when set; otherwise built from the POSTGRES_* parts.
    DATABASE_URL: str = ""
    POSTGRES_HOST: str = "orders-db"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "orders_db"
    POSTGRES_USER: str = "orders_user"
    POSTGRES_PASSWORD: str = "orders_pass"

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    # ── Redis (idempotency cache, broadcast relay, Celery broker) ─
    REDIS_HOST: str = "redis"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: str = ""

    @property
    def redis_url(self) -> str:
        if self.REDIS_PASSWORD:
            return f"redis://:{self.REDIS_PASSWORD}@{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    @property
    def celery_broker_url(self) -> str:
        return self.redis_url

    @property
    def celery_result_backend(self) -> str:
        return self.redis_url

    # ── Kitchen broadcast / SSE ───────────────────────────────
    BROADCAST_BACKEND: str = "memory"          # memory | redis
    BROADCAST_REDIS_CHANNEL: str = "kitchen:orders"
    BROADCAST_RELAY_RETRY_SECONDS: float = 1.0
    BROADCAST_RELAY_RETRY_MAX_SECONDS: float = 30.0
    SSE_HEARTBEAT_INTERVAL_SECONDS: float = 30.0
    SSE_RETRY_MILLISECONDS: int = 3000
    SSE_SUBSCRIBER_QUEUE_SIZE: int = 256

    # ── Optimistic Locking Retry ──────────────────────────────
    OPT_LOCK_MAX_RETRIES: int = 5
    OPT_LOCK_BASE_DELAY_MS: int = 50
    OPT_LOCK_MAX_DELAY_MS: int = 1000
    OPT_LOCK_JITTER_MS: int = 50

    # ── Side-effect outbox ────────────────────────────────────
    OUTBOX_MAX_ATTEMPTS: int = 8
    OUTBOX_RETRY_BASE_SECONDS: int = 5
    OUTBOX_RETRY_MAX_SECONDS: int = 900
    OUTBOX_BATCH_SIZE: int = 100
    OUTBOX_POLL_INTERVAL_SECONDS: float = 30.0

    # ── Orders ────────────────────────────────────────────────
    ORDER_NUMBER_MAX_ATTEMPTS: int = 10
    ORDERS_PAGE_SIZE_DEFAULT: int = 10
    IDEMPOTENCY_KEY_TTL_SECONDS: int = 86400

    # ── Observability ─────────────────────────────────────────
    METRICS_ENABLED: bool = True
    HEALTH_CHECK_TIMEOUT: float = 5.0


@lru_cache()
def get_settings() -> Settings:
    return Settings()
