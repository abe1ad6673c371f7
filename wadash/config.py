from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # Pydantic v2 settings config
    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Blocklist database
    DATABASE_URL: str = "sqlite:///./wadash.db"

    LOG_LEVEL: str = "INFO"

    # Twilio credentials - when either is missing the service runs in demo mode
    TWILIO_ACCOUNT_SID: Optional[str] = None
    TWILIO_AUTH_TOKEN: Optional[str] = None
    TWILIO_API_BASE_URL: str = "https://api.twilio.com"

    # Upstream paging
    PAGE_SIZE: int = 1000
    MAX_MESSAGES: int = 50000
    PAGE_DELAY_SECONDS: float = 0.1

    # Sync windows (days) and timers (seconds)
    FULL_SYNC_DAYS: int = 30
    RESYNC_DAYS: int = 7
    SYNC_INTERVAL_SECONDS: float = 30
    RESYNC_INTERVAL_SECONDS: float = 3600
    SCHEDULER_ENABLED: bool = True
    SYNC_ON_STARTUP: bool = True

    # Best-effort disk backup of the message cache
    BACKUP_DIR: str = "exported_messages"
    BACKUP_ENABLED: bool = True

    # Inbound webhook
    BLOCKED_AUTO_REPLY: str = "Your number has been blocked and your messages will not be received."
    WEBHOOK_VERIFY_SIGNATURE: bool = True


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
