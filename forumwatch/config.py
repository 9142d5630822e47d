from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    # App
    app_env: str = Field(default="development")
    log_level: str = Field(default="info")

    # Durable store (SQLAlchemy URL)
    database_url: str = Field(default="sqlite:///./forumwatch.db")

    # Distributed cache; empty means memory-only caching
    redis_url: str = Field(default="")
    cache_prefix: str = Field(default="forumwatch")

    # Cache / refresh cycle
    cache_ttl_seconds: int = Field(default=900)
    refresh_lock_ttl_seconds: int = Field(default=300)
    refresh_tiers: list[int] = Field(default=[1, 2])

    # Fetching (polite crawling)
    fetch_batch_size: int = Field(default=3)
    fetch_batch_delay_seconds: float = Field(default=2.0)
    fetch_timeout_seconds: float = Field(default=15.0)
    user_agent: str = Field(default="forumwatch/1.0 (forum aggregator)")

    # Backfill
    backfill_pages_per_cycle: int = Field(default=3)
    backfill_page_delay_seconds: float = Field(default=5.0)
    backfill_interval_minutes: int = Field(default=0)

    # Retry policy
    retry_max_attempts: int = Field(default=3)
    retry_base_delay_seconds: float = Field(default=1.0)
    retry_max_delay_seconds: float = Field(default=10.0)
    retry_jitter_seconds: float = Field(default=1.0)

    # Optional JSON file overriding the built-in source presets
    sources_file: str = Field(default="")

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"


settings = Settings()
