"""Configuration loading and validation."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import parse_qs, urlencode, urlsplit

from dotenv import load_dotenv

from ticketdesk.storage.connection import CLOUD_SCHEME

_DEFAULT_DATABASE_URL = "./data/ticketdesk.db"
_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}


@dataclass(frozen=True)
class Config:
    """Application configuration. All values sourced from environment variables."""

    # Optional: Database
    database_url: str = _DEFAULT_DATABASE_URL
    database_api_key: str | None = None
    db_max_retries: int = 2
    db_retry_backoff_seconds: float = 0.5
    allow_destructive_migrations: bool = False

    # Optional: Cache
    cache_default_ttl_seconds: int = 60
    cache_sweep_interval_minutes: int = 5

    # Optional: Web
    web_host: str = "0.0.0.0"
    web_port: int = 3001
    static_dir: str = "./static"
    cors_origins: tuple[str, ...] = ("*",)

    # Optional: Application
    log_level: str = "INFO"
    log_format: str = "json"
    app_env: str = "production"

    @property
    def connection_url(self) -> str:
        """The driver URL, with the API key merged in for hosted databases."""
        url = self.database_url
        if not self.database_api_key or not url.startswith(CLOUD_SCHEME):
            return url
        if "apikey" in parse_qs(urlsplit(url).query):
            return url
        separator = "&" if "?" in url else "?"
        return f"{url}{separator}{urlencode({'apikey': self.database_api_key})}"


def _get_int(name: str, default: int) -> int:
    raw = os.environ.get(name, str(default))
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _get_float(name: str, default: float) -> float:
    raw = os.environ.get(name, str(default))
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


def _get_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValueError(f"{name} must be a boolean, got {raw!r}")


def load_config(env_path: str | Path | None = None) -> Config:
    """Load configuration from environment variables.

    Loads a .env file if present (for local development). Every variable
    is optional; malformed or out-of-range values raise ValueError naming
    the variable.
    """
    load_dotenv(dotenv_path=env_path)

    origins = tuple(
        o.strip() for o in os.environ.get("CORS_ORIGINS", "*").split(",") if o.strip()
    )

    config = Config(
        # Optional: Database
        database_url=os.environ.get("DATABASE_URL") or _DEFAULT_DATABASE_URL,
        database_api_key=os.environ.get("DATABASE_API_KEY") or None,
        db_max_retries=_get_int("DB_MAX_RETRIES", 2),
        db_retry_backoff_seconds=_get_float("DB_RETRY_BACKOFF_SECONDS", 0.5),
        allow_destructive_migrations=_get_bool("ALLOW_DESTRUCTIVE_MIGRATIONS", False),
        # Optional: Cache
        cache_default_ttl_seconds=_get_int("CACHE_DEFAULT_TTL_SECONDS", 60),
        cache_sweep_interval_minutes=_get_int("CACHE_SWEEP_INTERVAL_MINUTES", 5),
        # Optional: Web
        web_host=os.environ.get("WEB_HOST", "0.0.0.0"),
        web_port=_get_int("WEB_PORT", 3001),
        static_dir=os.environ.get("STATIC_DIR", "./static"),
        cors_origins=origins or ("*",),
        # Optional: Application
        log_level=os.environ.get("LOG_LEVEL", "INFO"),
        log_format=os.environ.get("LOG_FORMAT", "json"),
        app_env=os.environ.get("APP_ENV", "production"),
    )

    if config.db_max_retries < 0:
        raise ValueError("DB_MAX_RETRIES must not be negative")
    if config.db_retry_backoff_seconds < 0:
        raise ValueError("DB_RETRY_BACKOFF_SECONDS must not be negative")
    if config.cache_default_ttl_seconds <= 0:
        raise ValueError("CACHE_DEFAULT_TTL_SECONDS must be positive")
    if config.cache_sweep_interval_minutes <= 0:
        raise ValueError("CACHE_SWEEP_INTERVAL_MINUTES must be positive")

    return config
