from __future__ import annotations

from functools import cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class AppSettings(BaseSettings):
    database_url: str = "sqlite:///gear_custody.db"
    storage_timeout_seconds: float = 5.0
    lock_timeout_seconds: float = 5.0
    max_conflict_retries: int = 3
    notify_webhook_url: str | None = None
    notify_timeout_seconds: float = 5.0
    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_prefix="GEAR_", env_file=".env", env_file_encoding="utf-8", extra="ignore")


@cache
def config() -> AppSettings:
    return AppSettings()
