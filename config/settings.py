"""Configuration management using pydantic-settings."""
import logging
import sys
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Cache settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="INSTANT_CACHE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Freshness window (24 hours)
    cache_ttl_seconds: int = 86400

    # Background revalidation after a cache hit
    preload_next: bool = True

    # Predictive prefetching
    enable_predictive: bool = True
    prefetch_concurrency: int = 5
    prefetch_lookahead: int = 2

    # Advisory, only the codec looks at it
    compression: bool = False

    # Analytics polling
    analytics_poll_interval_seconds: float = 10.0

    # Storage
    database_url: str = "sqlite:///./instant_cache.db"

    # HTTP producers
    http_timeout_seconds: float = 30.0
    http_max_attempts: int = 3

    log_level: str = "INFO"


settings = Settings()


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging for applications embedding the cache."""
    logging.basicConfig(
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stdout,
        level=getattr(logging, (level or settings.log_level).upper(), logging.INFO),
    )
