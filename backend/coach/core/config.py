"""Configuration management using Pydantic Settings."""

import logging
from functools import lru_cache
from typing import Literal

from pydantic import SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Supabase Configuration
    SUPABASE_URL: str = ""
    SUPABASE_SERVICE_ROLE_KEY: SecretStr = SecretStr("")

    # Anthropic Claude API (optional: coach is reported unavailable without it)
    ANTHROPIC_API_KEY: SecretStr = SecretStr("")
    COACH_MODEL: str = "claude-sonnet-4-6"
    COACH_MAX_TOKENS: int = 1024
    LLM_TIMEOUT_SECONDS: float = 30.0
    LLM_MAX_RETRIES: int = 1

    # Free tier quota
    WEEKLY_FREE_MESSAGE_LIMIT: int = 20

    # Conversation continuity
    RESUME_WINDOW_HOURS: int = 24
    HISTORY_WINDOW: int = 20
    CONVERSATION_LIST_LIMIT: int = 20

    # Activity signals and check-in pattern analysis
    CONCERN_WINDOW_DAYS: int = 7
    LOW_HEALTH_THRESHOLD: int = 50
    MISSED_CHECKIN_DAYS: int = 3
    FLIRT_RECENT_DAYS: int = 2
    COMPLETED_DATE_LOOKBACK_DAYS: int = 7

    # Upper bound on the rendered context block in the system prompt
    MAX_CONTEXT_CHARS: int = 4000

    # Application Settings
    APP_ENV: Literal["development", "staging", "production"] = "development"

    # Logging
    LOG_FORMAT: Literal["text", "json"] = "text"
    LOG_LEVEL: str = "INFO"

    # CORS Configuration
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"

    @field_validator("SUPABASE_URL")
    @classmethod
    def validate_supabase_url(cls, v: str) -> str:
        """Validate that SUPABASE_URL is a valid URL."""
        if v and not v.startswith(("http://", "https://")):
            raise ValueError("SUPABASE_URL must start with http:// or https://")
        return v.rstrip("/") if v else v

    @property
    def cors_origins_list(self) -> list[str]:
        """Get CORS origins as a list."""
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.APP_ENV == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.APP_ENV == "production"

    @property
    def is_llm_configured(self) -> bool:
        """Check if the LLM credential is present."""
        return bool(self.ANTHROPIC_API_KEY.get_secret_value())

    def validate_startup(self) -> None:
        """Validate that the data store secrets are configured.

        The LLM key is not required here; requests are answered
        with a 503 while it is missing.

        Raises:
            ValueError: If any required secret is missing or empty.
        """
        required_secrets = {
            "SUPABASE_URL": self.SUPABASE_URL,
            "SUPABASE_SERVICE_ROLE_KEY": self.SUPABASE_SERVICE_ROLE_KEY.get_secret_value(),
        }
        missing = [name for name, value in required_secrets.items() if not value]
        if missing:
            raise ValueError(f"Required secrets are missing or empty: {', '.join(missing)}")
        if not self.is_llm_configured:
            logger.warning("ANTHROPIC_API_KEY not configured - coach replies DISABLED")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Returns:
        Settings instance with validated configuration.

    Raises:
        ValueError: If required secrets are missing.
    """
    settings = Settings()
    settings.validate_startup()
    return settings


# Global settings instance - import this for easy access
settings = get_settings()
