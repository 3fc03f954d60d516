"""Application settings using Pydantic BaseSettings."""

import os
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _get_default_db_path() -> str:
    """Get absolute path to default SQLite database."""
    config_dir = os.path.dirname(os.path.abspath(__file__))
    package_dir = os.path.dirname(config_dir)
    db_path = os.path.join(os.path.dirname(package_dir), "data", "lampchat.db")
    return f"sqlite:///{db_path}"


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Server
    environment: str = Field(default="development")
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")
    log_file: Optional[str] = Field(default=None)
    cors_origins: str = Field(default="http://localhost:5173")

    # Authentication
    session_cookie_name: str = Field(default="lampchat_session")

    # Rate limiting (fixed window, in-process only)
    rate_limit_window_seconds: int = Field(default=60)
    rate_limit_max_requests: int = Field(default=5)
    rate_limit_chat_max_requests: int = Field(default=600)
    rate_limit_data_max_requests: int = Field(default=300)
    rate_limit_sweep_interval_seconds: int = Field(default=300)

    # Database
    database_url: str = Field(default_factory=_get_default_db_path)

    # Streaming
    stream_idle_timeout_seconds: float = Field(default=60.0)
    system_prompt: str = Field(
        default=(
            "You are a helpful, knowledgeable, and friendly AI assistant. "
            "Format responses with markdown and wrap code in fenced blocks "
            "with the correct language identifier."
        )
    )

    # OpenRouter (OpenAI-compatible)
    openrouter_base_url: str = Field(default="https://openrouter.ai/api/v1")
    openrouter_api_key: str = Field(default="")
    openrouter_app_name: str = Field(default="LampChat")
    provider_timeout_seconds: int = Field(default=120)
    provider_max_retries: int = Field(default=3)
    provider_retry_base_delay_seconds: float = Field(default=1.0)
    openrouter_referer: str = Field(default="http://localhost:5173")
    default_model: str = Field(default="openai/gpt-5.1")

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins from comma-separated string."""
        if not self.cors_origins:
            return []
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment.lower() == "production"

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        upper = v.upper()
        if upper not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return upper

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: str) -> str:
        if not v.startswith("sqlite"):
            raise ValueError("DATABASE_URL must be a SQLite URL")
        return v

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        vv = (v or "").strip().lower()
        if vv not in {"development", "staging", "production"}:
            raise ValueError("ENVIRONMENT must be one of: development, staging, production")
        return vv

    @field_validator(
        "rate_limit_window_seconds",
        "rate_limit_sweep_interval_seconds",
    )
    @classmethod
    def validate_positive_interval(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("Rate limit intervals must be positive")
        return v

    @field_validator(
        "rate_limit_max_requests",
        "rate_limit_chat_max_requests",
        "rate_limit_data_max_requests",
    )
    @classmethod
    def validate_quota(cls, v: int) -> int:
        # 0 disables the limiter
        if v < 0:
            raise ValueError("Rate limit quotas must be >= 0")
        return v


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
