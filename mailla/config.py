# mailla/config.py
from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables (and `.env`)."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Application
    app_name: str = Field(default="mailla-triage", description="Application name")
    environment: str = Field(default="development")
    log_level: str = Field(default="INFO")
    log_json: bool = Field(default=True, description="Emit JSON log lines")

    # Database
    database_url: str = Field(default="sqlite+aiosqlite:///./mailla.db")
    sql_echo: bool = False

    # Language model (OpenAI-compatible chat completions)
    openai_base_url: str = Field(default="https://api.openai.com/v1")
    openai_api_key: Optional[str] = None
    openai_model: str = Field(default="gpt-4o")
    llm_temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    llm_timeout_seconds: float = Field(default=30.0, gt=0)
    llm_max_retries: int = Field(default=0, ge=0, description="HTTP-level retries on 429/5xx")

    # Triage behaviour
    history_window: int = Field(default=12, ge=0, description="Prior turns re-sent to the model")
    force_emergency_escalation: bool = True
    case_number_prefix: str = "MIT"

    # Notifications
    notification_webhook_url: Optional[str] = None
    notification_timeout_seconds: float = Field(default=5.0, gt=0)


@lru_cache()
def get_settings() -> Settings:
    return Settings()
