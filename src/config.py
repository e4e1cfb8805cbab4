from __future__ import annotations

from functools import cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[1]
ARTIFACTS_DIR = PROJECT_ROOT / "artifacts"
RATE_CACHE_FILE = ARTIFACTS_DIR / "price-cache.json"
SUMMARY_DB_FILE = ARTIFACTS_DIR / "portfolio_summary.db"


class AppSettings(BaseSettings):
    main_currency: str = "USD"
    secondary_currency: str = "EUR"
    supported_currencies: tuple[str, ...] = ("EUR", "USD", "PLN", "GBP", "JPY", "CHF")
    primary_base_currency: str = "EUR"
    secondary_base_currency: str = "USD"

    coingecko_base_url: str = "https://api.coingecko.com/api/v3"
    exchange_rate_api_base_url: str = "https://api.exchangerate-api.com"
    request_timeout_seconds: float = 10.0
    min_request_delay_seconds: float = 0.2
    max_fetch_attempts: int = 5
    retry_backoff_seconds: float = 0.5
    rate_fetch_interval_seconds: float = 300.0

    summary_max_age_seconds: float = 300.0
    summary_refresh_interval_seconds: float = 300.0

    rate_cache_file: Path = RATE_CACHE_FILE
    summary_db_url: str = f"sqlite:///{SUMMARY_DB_FILE}"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@cache
def config() -> AppSettings:
    return AppSettings()
