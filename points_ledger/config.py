from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class LedgerSettings(BaseSettings):
    """Service configuration, read from ``POINTS_LEDGER_*`` environment variables."""

    # Storage; unset means the process-local in-memory backend
    database_url: Optional[str] = None
    sql_echo: bool = False

    # App
    app_name: str = "Points Ledger API"
    app_version: str = "1.0.0"
    cors_origins: list[str] = ["*"]
    log_level: str = "INFO"

    # Keep validating referrals against default settings when the settings
    # table cannot be read.
    settings_fallback_on_error: bool = True

    model_config = SettingsConfigDict(
        env_prefix="POINTS_LEDGER_",
        env_file=".env",
        extra="ignore",
    )


@lru_cache
def get_settings() -> LedgerSettings:
    return LedgerSettings()
