import os
from datetime import timedelta

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, model_validator

from twin_client.services.retry import RetryPolicy


class Settings(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # API Configuration
    api_base_url: str = Field(default="http://localhost:8000", alias="API_BASE_URL")
    api_token: str = Field(default="", alias="API_TOKEN")
    api_timeout: float = Field(default=30.0, alias="API_TIMEOUT")

    # Retry Configuration (empirical defaults, not an SLA)
    api_max_attempts: int = Field(default=3, ge=1, alias="API_MAX_ATTEMPTS")
    api_backoff_base: float = Field(default=2.0, ge=0, alias="API_BACKOFF_BASE")
    api_backoff_cap: float = Field(default=10.0, ge=0, alias="API_BACKOFF_CAP")
    api_backoff_jitter: float = Field(
        default=0.5, ge=0, le=1, alias="API_BACKOFF_JITTER"
    )
    api_max_retry_after: float = Field(default=120.0, alias="API_MAX_RETRY_AFTER")

    # Cache Configuration
    cache_max_entries: int = Field(default=200, ge=1, alias="CACHE_MAX_ENTRIES")
    cache_ttl_seconds: float = Field(default=300.0, gt=0, alias="CACHE_TTL_SECONDS")
    cache_stale_while_revalidate: bool = Field(
        default=True, alias="CACHE_STALE_WHILE_REVALIDATE"
    )
    cache_database_url: str | None = Field(default=None, alias="CACHE_DATABASE_URL")
    cache_database_echo: bool = Field(default=False, alias="CACHE_DATABASE_ECHO")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    debug: bool = Field(default=False, alias="DEBUG")

    @model_validator(mode="after")
    def _check_backoff_bounds(self) -> "Settings":
        if self.api_backoff_cap < self.api_backoff_base:
            raise ValueError("API_BACKOFF_CAP must not be below API_BACKOFF_BASE")
        return self

    @property
    def cache_ttl(self) -> timedelta:
        return timedelta(seconds=self.cache_ttl_seconds)

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.api_max_attempts,
            base_delay=self.api_backoff_base,
            max_delay=self.api_backoff_cap,
            jitter=self.api_backoff_jitter,
            max_retry_after=self.api_max_retry_after,
        )


def load_settings() -> Settings:
    """Read settings from the environment (and a .env file if present)."""
    load_dotenv()
    return Settings.model_validate(dict(os.environ))
