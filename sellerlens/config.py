from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=BASE_DIR / ".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── App ──────────────────────────────────────────────
    app_name: str = "SellerLens"
    app_version: str = "0.1.0"
    debug: bool = False
    api_key: str = "changeme"

    # ── PostgreSQL ───────────────────────────────────────
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_user: str = "sellerlens"
    postgres_password: str = "sellerlens"
    postgres_db: str = "sellerlens"

    @property
    def postgres_dsn(self) -> str:
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # ── Redis ────────────────────────────────────────────
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: int = 0
    redis_password: str = ""

    @property
    def redis_url(self) -> str:
        if self.redis_password:
            return f"redis://:{self.redis_password}@{self.redis_host}:{self.redis_port}/{self.redis_db}"
        return f"redis://{self.redis_host}:{self.redis_port}/{self.redis_db}"

    # ── Query engine ─────────────────────────────────────
    plan_version: str = "1.0"
    config_version: str = "1.0.0"
    ring_buffer_capacity: int = Field(default=512, ge=1)
    output_result_limit: int = Field(default=100, ge=1)
    executor_max_parallel_nodes: int = Field(default=8, ge=1)
    adapter_timeout_seconds: float = Field(default=10.0, gt=0)
    preempt_on_timeout: bool = False
    strict_operator_validation: bool = False

    # ── Result cache ─────────────────────────────────────
    cache_ttl_seconds: int = 30
    cache_ttl_small_seconds: int = 60
    cache_ttl_large_seconds: int = 10
    cache_small_dataset_records: int = 100
    cache_large_dataset_records: int = 5000

    # ── Data sufficiency thresholds (record counts) ──────
    data_insufficient_threshold: int = 50
    data_minimal_threshold: int = 100
    data_adequate_threshold: int = 300

    # ── External webhook source ──────────────────────
    webhook_source_url: str = ""
    webhook_request_timeout: float = 5.0

    # ── Health worker ────────────────────────────────────
    health_check_interval_seconds: float = 60.0

    # ── Server ───────────────────────────────────────────
    host: str = "0.0.0.0"
    port: int = 8000


settings = Settings()
