from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Primary persistence backend (SQLAlchemy URL)
    DATABASE_URL: str = "sqlite:///./optout.db"

    # Optional secondary backend: directory of JSON files
    DATA_DIR: Optional[str] = None

    LOG_LEVEL: str = "INFO"

    # Size of the in-memory log buffer served by /api/logs
    LOG_BUFFER_SIZE: int = 500

    # Environment credentials always win over persisted ones when both are set
    VONAGE_API_KEY: Optional[str] = None
    VONAGE_API_SECRET: Optional[str] = None

    # Outbound SMS API
    SMS_API_BASE_URL: str = "https://rest.nexmo.com"
    TRANSPORT_TIMEOUT_SECONDS: float = 10.0

    # Pause between recipients of a bulk send
    BULK_SEND_DELAY_MS: int = 100


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()
