from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    environment: str = "dev"
    base_url: str = "http://localhost:8000"
    secret_key: str = "change-me"

    database_url: str = "sqlite:///./receipt_ledger.db"
    redis_url: str = "redis://localhost:6379/0"

    openai_api_key: str | None = None
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "gpt-4o"
    extraction_timeout_seconds: float = 45.0
    extraction_max_tokens: int = 1000

    local_image_root: Path = Path(".local_images")

    default_currency: str = "USD"

    # Expected subscription payments are materialized this far ahead.
    payments_months_ahead: int = 12

    insights_cache_ttl_minutes: int = 60 * 6

    # A receipt stuck in processing longer than this may be reclaimed by reprocess.
    processing_stale_after_minutes: int = 10
    process_time_limit_seconds: int = 60

    access_token_exp_minutes: int = 60 * 24


settings = Settings()
