from functools import lru_cache
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

    # Database Configuration - required from .env
    DATABASE_URL: str
    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10

    # Logging Configuration
    LOG_LEVEL: str = "INFO"

    # Anything other than "production" attaches error details to 500 responses
    ENVIRONMENT: str = "production"

    # Local calendar used for every date bucket (UTC+5:30)
    TIMEZONE_OFFSET_MINUTES: int = 330

    # System/test accounts hidden from the thread list
    EXCLUDED_PHONE_PATTERN: str = "whatsapp_%"

    # Reject approve/reject/complete unless the consultation is in the prior state
    ENFORCE_CONSULTATION_TRANSITIONS: bool = True

    # Polling interval handed to the dashboard page
    OVERVIEW_REFRESH_INTERVAL_MS: int = 30000

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
