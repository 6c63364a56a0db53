"""Runtime settings for the Cycloud market API."""

from enum import Enum
from functools import lru_cache
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class SettlementPolicy(str, Enum):
    """How much a renter is charged when a compute phase ends."""

    QUOTED = "quoted"
    ELAPSED = "elapsed"
    PER_MINUTE = "per_minute"


class Settings(BaseSettings):
    """Application settings, read from CYCLOUD_* environment variables or .env."""

    model_config = SettingsConfigDict(
        env_prefix="CYCLOUD_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    environment: str = "development"
    log_level: str = "INFO"

    database_url: str = "sqlite:///./cycloud.db"

    # In production, the secret must come from the environment
    jwt_secret: str = "change-me-cycloud-development-secret"
    jwt_algorithm: str = "HS256"
    token_expire_minutes: int = 60

    auction_window_seconds: float = Field(default=60.0, gt=0)
    # Length of one billed minute; shortened in tests
    minute_seconds: float = Field(default=60.0, gt=0)
    stream_keepalive_seconds: float = Field(default=15.0, gt=0)

    settlement_policy: SettlementPolicy = SettlementPolicy.QUOTED

    host: str = "0.0.0.0"
    port: int = 8000

    cors_allowed_origins: List[str] = ["http://localhost:3000"]
    page_size: int = 20


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide settings."""
    return Settings()
