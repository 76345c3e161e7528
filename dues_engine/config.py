"""Engine configuration from environment variables."""

import logging
from typing import Optional

from pydantic import ConfigDict, Field
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Engine settings loaded from environment variables.

    Pydantic automatically loads values from:
    1. OS environment variables (at instantiation time)
    2. .env file (if present in the working directory)
    """

    model_config = ConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",  # Allow unrelated keys in .env file
    )

    # Database
    database_url: str = Field(
        default="sqlite:///./dues_engine.db",
        description="SQLAlchemy connection string",
    )
    database_echo: bool = Field(default=False, description="Log SQL queries")

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_file: str = Field(default="logs/dues_engine.log", description="Log file path")

    # Billing
    default_reporting_currency: str = Field(
        default="TRY", description="Reporting currency for newly created sites"
    )
    due_day_offset: int = Field(
        default=15, description="Days after month_date before a due becomes overdue"
    )
    default_payment_category: str = Field(
        default="Monthly Dues", description="Income category used when a payment has none"
    )

    # Concurrency
    payment_retry_attempts: int = Field(
        default=3, description="Attempts for a payment that hits a concurrent write conflict"
    )

    def validate_values(self) -> None:
        """Validate value ranges that pydantic types alone do not cover."""
        if self.payment_retry_attempts < 1:
            raise ValueError("PAYMENT_RETRY_ATTEMPTS must be at least 1")
        if not 0 <= self.due_day_offset <= 28:
            raise ValueError("DUE_DAY_OFFSET must be between 0 and 28")
        if len(self.default_reporting_currency) != 3:
            raise ValueError("DEFAULT_REPORTING_CURRENCY must be a 3-letter ISO code")


# Lazy loader to ensure environment is loaded before instantiation
_settings_instance: Optional[Settings] = None


def get_settings() -> Settings:
    """Get or create the settings instance."""
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = Settings()
        _settings_instance.validate_values()
        logger.debug("Loaded settings for database %s", _settings_instance.database_url)
    return _settings_instance


def reset_settings() -> None:
    """Drop the cached settings so the next access re-reads the environment."""
    global _settings_instance
    _settings_instance = None


__all__ = ["Settings", "get_settings", "reset_settings"]
