"""
Listen2Me - Configuration
=========================

All application settings loaded from environment variables.
Uses pydantic-settings for validation and type conversion.
"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import computed_field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # Application
    # ==========================================================================
    APP_NAME: str = "Listen2Me"
    APP_VERSION: str = "0.1.0"
    ENVIRONMENT: Literal["development", "staging", "production", "test"] = "development"
    DEBUG: bool = False

    # ==========================================================================
    # Server (gateway websocket + control API share one port)
    # ==========================================================================
    HOST: str = "0.0.0.0"
    PORT: int = 8081
    CORS_ORIGINS: list[str] = ["*"]

    # Shared secret the gateway must present as a bearer token
    WEBSOCKET_SECRET: Optional[str] = None

    # ==========================================================================
    # Database
    # ==========================================================================
    DATABASE_URL: str = "sqlite+aiosqlite:///./data/listen2me.db"
    DATABASE_ECHO: bool = False

    @computed_field  # type: ignore[misc]
    @property
    def is_sqlite(self) -> bool:
        return "sqlite" in self.DATABASE_URL

    # ==========================================================================
    # Listening
    # ==========================================================================
    # Comma separated group ids, e.g. "123456,654321"
    LISTEN_GROUP_IDS: str = ""
    ADMIN_ID: Optional[int] = None

    @field_validator("ADMIN_ID", mode="before")
    @classmethod
    def empty_admin_id(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    # ==========================================================================
    # LLM
    # ==========================================================================
    OPENAI_API_BASE: str = "https://api.openai.com/v1"
    OPENAI_API_KEY: Optional[str] = None
    OPENAI_MODEL: str = "gpt-3.5-turbo"
    LLM_TIMEOUT_SECONDS: float = 30.0
    LLM_TEMPERATURE: float = 0.3
    LLM_MAX_TOKENS: int = 2000

    # ==========================================================================
    # Analysis
    # ==========================================================================
    AI_ANALYSIS_INTERVAL_MINUTES: int = 30
    AI_MAX_MESSAGES_PER_ANALYSIS: int = 50
    AI_LONG_MESSAGE_THRESHOLD: int = 50
    AI_SHORT_MESSAGE_BATCH_SIZE: int = 10
    AI_HISTORY_LIMIT: int = 20
    AI_CONTEXT_WINDOW_HOURS: int = 2

    # ==========================================================================
    # Lifecycle
    # ==========================================================================
    EXPIRATION_CHECK_INTERVAL_MINUTES: int = 60
    TIMEZONE: str = "Asia/Shanghai"

    # ==========================================================================
    # Computed Properties
    # ==========================================================================
    @computed_field  # type: ignore[misc]
    @property
    def listen_group_ids(self) -> frozenset[int]:
        ids = set()
        for part in self.LISTEN_GROUP_IDS.split(","):
            part = part.strip()
            if part.isdigit():
                ids.add(int(part))
        return frozenset(ids)

    @computed_field  # type: ignore[misc]
    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"

    @computed_field  # type: ignore[misc]
    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience export
settings = get_settings()
