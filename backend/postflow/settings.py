from functools import lru_cache

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="ignore",
        populate_by_name=True,
    )

    app_name: str = "postflow"
    environment: str = Field(default="local", validation_alias=AliasChoices("ENVIRONMENT", "POSTFLOW_ENVIRONMENT"))
    database_url: str = Field(
        default="postgresql+asyncpg://postgres:postgres@db:5432/postflow",
        validation_alias=AliasChoices("DATABASE_URL", "POSTFLOW_DATABASE_URL"),
    )
    db_pool_size: int = Field(default=10, validation_alias=AliasChoices("DB_POOL_SIZE", "POSTFLOW_DB_POOL_SIZE"))
    db_max_overflow: int = Field(default=10, validation_alias=AliasChoices("DB_MAX_OVERFLOW", "POSTFLOW_DB_MAX_OVERFLOW"))
    db_echo: bool = Field(default=False, validation_alias=AliasChoices("DB_ECHO", "POSTFLOW_DB_ECHO"))
    redis_url: str = Field(default="redis://redis:6379/0", validation_alias=AliasChoices("REDIS_URL", "POSTFLOW_REDIS_URL"))
    storage_backend: str = Field(default="postgres", validation_alias=AliasChoices("STORAGE_BACKEND", "POSTFLOW_STORAGE_BACKEND"))
    celery_enabled: bool = Field(default=False, validation_alias=AliasChoices("CELERY_ENABLED", "POSTFLOW_CELERY_ENABLED"))
    job_workers: int = Field(default=2, validation_alias=AliasChoices("JOB_WORKERS", "POSTFLOW_JOB_WORKERS"))
    job_max_retries: int = Field(default=3, validation_alias=AliasChoices("JOB_MAX_RETRIES", "POSTFLOW_JOB_MAX_RETRIES"))
    job_retry_delays_sec: list[int] = Field(
        default=[60, 300, 900],
        validation_alias=AliasChoices("JOB_RETRY_DELAYS_SEC", "POSTFLOW_JOB_RETRY_DELAYS_SEC"),
    )
    max_insights: int = Field(default=10, validation_alias=AliasChoices("MAX_INSIGHTS", "POSTFLOW_MAX_INSIGHTS"))
    post_style: str = Field(default="professional", validation_alias=AliasChoices("POST_STYLE", "POSTFLOW_POST_STYLE"))

    scheduler_enabled: bool = Field(default=True, validation_alias=AliasChoices("SCHEDULER_ENABLED", "POSTFLOW_SCHEDULER_ENABLED"))
    dispatch_interval_minutes: int = Field(default=2, validation_alias=AliasChoices("DISPATCH_INTERVAL_MINUTES", "POSTFLOW_DISPATCH_INTERVAL_MINUTES"))
    dispatch_window_minutes: int = Field(default=5, validation_alias=AliasChoices("DISPATCH_WINDOW_MINUTES", "POSTFLOW_DISPATCH_WINDOW_MINUTES"))
    dispatch_bucket_minutes: int = Field(default=5, validation_alias=AliasChoices("DISPATCH_BUCKET_MINUTES", "POSTFLOW_DISPATCH_BUCKET_MINUTES"))
    dispatch_batch_size: int = Field(default=20, validation_alias=AliasChoices("DISPATCH_BATCH_SIZE", "POSTFLOW_DISPATCH_BATCH_SIZE"))
    publish_concurrency: int = Field(default=5, validation_alias=AliasChoices("PUBLISH_CONCURRENCY", "POSTFLOW_PUBLISH_CONCURRENCY"))
    publish_timeout_sec: int = Field(default=60, validation_alias=AliasChoices("PUBLISH_TIMEOUT_SEC", "POSTFLOW_PUBLISH_TIMEOUT_SEC"))
    publish_max_attempts: int = Field(default=3, validation_alias=AliasChoices("PUBLISH_MAX_ATTEMPTS", "POSTFLOW_PUBLISH_MAX_ATTEMPTS"))
    publish_backoff_base_minutes: int = Field(default=5, validation_alias=AliasChoices("PUBLISH_BACKOFF_BASE_MINUTES", "POSTFLOW_PUBLISH_BACKOFF_BASE_MINUTES"))
    retry_sweep_interval_minutes: int = Field(default=30, validation_alias=AliasChoices("RETRY_SWEEP_INTERVAL_MINUTES", "POSTFLOW_RETRY_SWEEP_INTERVAL_MINUTES"))
    retry_sweep_max_retries: int = Field(default=5, validation_alias=AliasChoices("RETRY_SWEEP_MAX_RETRIES", "POSTFLOW_RETRY_SWEEP_MAX_RETRIES"))
    retry_sweep_cooldown_minutes: int = Field(default=60, validation_alias=AliasChoices("RETRY_SWEEP_COOLDOWN_MINUTES", "POSTFLOW_RETRY_SWEEP_COOLDOWN_MINUTES"))
    retry_sweep_delay_minutes: int = Field(default=5, validation_alias=AliasChoices("RETRY_SWEEP_DELAY_MINUTES", "POSTFLOW_RETRY_SWEEP_DELAY_MINUTES"))
    retry_sweep_batch_size: int = Field(default=10, validation_alias=AliasChoices("RETRY_SWEEP_BATCH_SIZE", "POSTFLOW_RETRY_SWEEP_BATCH_SIZE"))
    watchdog_enabled: bool = Field(default=True, validation_alias=AliasChoices("WATCHDOG_ENABLED", "POSTFLOW_WATCHDOG_ENABLED"))
    watchdog_interval_minutes: int = Field(default=5, validation_alias=AliasChoices("WATCHDOG_INTERVAL_MINUTES", "POSTFLOW_WATCHDOG_INTERVAL_MINUTES"))
    stuck_publishing_minutes: int = Field(default=30, validation_alias=AliasChoices("STUCK_PUBLISHING_MINUTES", "POSTFLOW_STUCK_PUBLISHING_MINUTES"))

    llm_provider: str = Field(default="stub", validation_alias=AliasChoices("LLM_PROVIDER", "POSTFLOW_LLM_PROVIDER"))
    llm_base_url: str = Field(default="https://api.openai.com/v1", validation_alias=AliasChoices("LLM_BASE_URL", "POSTFLOW_LLM_BASE_URL"))
    llm_api_key: str | None = Field(default=None, validation_alias=AliasChoices("LLM_API_KEY", "OPENAI_API_KEY", "POSTFLOW_LLM_API_KEY"))
    llm_model: str = Field(default="gpt-4o-mini", validation_alias=AliasChoices("LLM_MODEL", "POSTFLOW_LLM_MODEL"))
    llm_timeout_sec: int = Field(default=120, validation_alias=AliasChoices("LLM_TIMEOUT_SEC", "POSTFLOW_LLM_TIMEOUT_SEC"))

    linkedin_access_token: str | None = Field(default=None, validation_alias=AliasChoices("LINKEDIN_ACCESS_TOKEN", "POSTFLOW_LINKEDIN_ACCESS_TOKEN"))
    linkedin_author_urn: str | None = Field(default=None, validation_alias=AliasChoices("LINKEDIN_AUTHOR_URN", "POSTFLOW_LINKEDIN_AUTHOR_URN"))
    x_bearer_token: str | None = Field(default=None, validation_alias=AliasChoices("X_BEARER_TOKEN", "POSTFLOW_X_BEARER_TOKEN"))
    publisher_stub: bool = Field(default=False, validation_alias=AliasChoices("PUBLISHER_STUB", "POSTFLOW_PUBLISHER_STUB"))

    @property
    def async_database_url(self) -> str:
        if self.database_url.startswith("postgresql+"):
            return self.database_url
        if self.database_url.startswith("postgresql://"):
            return self.database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return self.database_url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
