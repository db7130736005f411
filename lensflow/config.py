from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=True, extra="ignore"
    )

    # App Settings
    APP_NAME: str = "LensFlow"
    APP_VERSION: str = "0.1.0"
    LOG_LEVEL: str = "INFO"
    SEED_DEMO_DATA: bool = False

    # Storage - empty path keeps everything in memory
    DATABASE_PATH: str = ""

    # Shared secret the partner presents on /api/external/*
    EXTERNAL_API_KEY: Optional[str] = None

    # Partner status mirror - disabled while the URL is empty
    PARTNER_API_URL: str = ""
    PARTNER_API_TOKEN: str = ""
    PARTNER_TIMEOUT_SECONDS: float = 5.0

    # Order policy
    EDIT_WINDOW_MINUTES: int = 120
    DEFAULT_DISCOUNT_PERCENT: float = 5.0
    URGENT_SURCHARGE_PERCENT: float = 25.0
    STRICT_TRANSITIONS: bool = False  # Enforce the status graph instead of enum membership only
    SERIALIZE_ORDER_MUTATIONS: bool = False  # Per-order lock instead of last-write-wins


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
