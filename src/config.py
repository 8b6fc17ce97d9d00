from __future__ import annotations

from datetime import date, timedelta
from functools import cache

from pydantic_settings import BaseSettings, SettingsConfigDict

from domain.ticks import Frequency


class AppSettings(BaseSettings):
    snapshot_cache_duration: timedelta = timedelta(minutes=5)
    history_cache_duration: timedelta = timedelta(hours=1)
    # None means one year before the request
    history_start_date: date | None = None
    history_frequency: Frequency = Frequency.DAILY
    use_non_adjusted_close: bool = False
    http_timeout_seconds: float = 10.0
    http_retry_attempts: int = 3
    user_agent: str | None = None

    model_config = SettingsConfigDict(env_prefix="QUOTES_", env_file=".env", env_file_encoding="utf-8", extra="ignore")


@cache
def config() -> AppSettings:
    return AppSettings()
