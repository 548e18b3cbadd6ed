"""Application settings."""

from functools import lru_cache
import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "taskflow-api"
    app_env: str = "dev"
    database_url: str = ""
    # Used to build links in outgoing emails.
    app_base_url: str = ""

    smtp_host: str = ""
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_sender: str = "no-reply@taskflow.local"
    smtp_use_tls: bool = True
    smtp_timeout_s: float = Field(default=10.0, ge=0.5)

    webhook_timeout_s: float = Field(default=10.0, ge=0.1)
    ai_assign_cap: int = Field(default=5, ge=1)
    reminder_lead_days: int = Field(default=7, ge=0)
    cron_secret: str = ""

    llm_provider: str = "openai"
    llm_model: str = "gpt-4o-mini"
    llm_base_url: str = "https://api.openai.com/v1"
    llm_timeout_s: float = Field(default=20.0, ge=0.5)
    llm_max_retries: int = Field(default=1, ge=0)
    llm_backoff_s: float = Field(default=0.2, ge=0.0)
    llm_trace: bool = False
    openai_api_key: str = ""

    model_config = SettingsConfigDict(
        env_prefix="TASKFLOW_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )

    def resolved_database_url(self) -> str:
        return self.database_url or os.getenv("DATABASE_URL", "")

    def resolved_openai_api_key(self) -> str:
        return self.openai_api_key or os.getenv("OPENAI_API_KEY", "")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
