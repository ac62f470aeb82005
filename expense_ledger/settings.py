"""Environment driven configuration for the expense ledger service."""
from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv

env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

FALLBACK_BASE_CURRENCY = "USD"
DEFAULT_SUPPORTED_CURRENCIES = (
    "USD",
    "EUR",
    "GBP",
    "JPY",
    "CAD",
    "AUD",
    "NZD",
    "CHF",
    "SEK",
    "INR",
    "BDT",
    "SGD",
    "AED",
)


def _flag(value: str) -> bool:
    return value.strip().lower() not in {"", "0", "false", "no"}


def _parse_currency(value: str, fallback: str) -> str:
    normalized = value.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        return fallback
    return normalized


@dataclass(slots=True)
class Settings:
    """Top-level application configuration container."""

    database_url: str = "sqlite:///./expense_ledger.db"
    base_currency: str = FALLBACK_BASE_CURRENCY
    supported_currencies: tuple[str, ...] = DEFAULT_SUPPORTED_CURRENCIES
    cron_secret: str = ""
    app_base_url: str = "http://localhost:3000"
    log_level: str = "INFO"
    rate_limit_max_requests: int = 10
    rate_limit_window_seconds: int = 3600
    sqlalchemy_echo: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        """Load configuration values from environment variables."""

        def _get_env(name: str, default: str) -> str:
            return os.getenv(name, default)

        base_currency = _parse_currency(
            _get_env("BASE_CURRENCY", FALLBACK_BASE_CURRENCY), FALLBACK_BASE_CURRENCY
        )
        raw_supported = _get_env("SUPPORTED_CURRENCIES", "")
        supported: list[str] = []
        for item in raw_supported.split(","):
            code = _parse_currency(item, "")
            if code and code not in supported:
                supported.append(code)
        if not supported:
            supported = list(DEFAULT_SUPPORTED_CURRENCIES)
        if base_currency not in supported:
            supported.insert(0, base_currency)

        return cls(
            database_url=_get_env("DATABASE_URL", "sqlite:///./expense_ledger.db"),
            base_currency=base_currency,
            supported_currencies=tuple(supported),
            cron_secret=_get_env("CRON_SECRET", ""),
            app_base_url=_get_env("APP_BASE_URL", "http://localhost:3000").rstrip("/"),
            log_level=_get_env("LOG_LEVEL", "INFO"),
            rate_limit_max_requests=int(_get_env("RATE_LIMIT_MAX_REQUESTS", "10")),
            rate_limit_window_seconds=int(_get_env("RATE_LIMIT_WINDOW_SECONDS", "3600")),
            sqlalchemy_echo=_flag(_get_env("SQLALCHEMY_ECHO", "0")),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached ``Settings`` instance."""

    return Settings.from_env()
