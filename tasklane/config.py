"""Environment-driven settings for the tasklane API."""

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional

DEFAULT_DB_PATH = Path(__file__).parent / "data.db"


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_list(name: str, default: str) -> list[str]:
    raw = os.getenv(name, default)
    return [part.strip() for part in raw.split(",") if part.strip()]


@dataclass(frozen=True)
class Settings:
    environment: str = "development"
    log_level: str = "INFO"
    database_url: str = f"sqlite:///{DEFAULT_DB_PATH}"
    cors_origins: tuple[str, ...] = ("http://localhost:3000", "http://localhost:5173")

    supabase_url: Optional[str] = None
    supabase_anon_key: Optional[str] = None
    identity_timeout_seconds: float = 10.0

    anthropic_api_key: Optional[str] = None
    enhance_model: str = "claude-haiku-4-5-20251001"
    enhancement_timeout_seconds: float = 60.0

    status_poll_interval_seconds: float = 2.0
    status_stream_timeout_seconds: float = 120.0

    rate_limit_enabled: bool = True
    rate_limit_window_seconds: int = 900
    rate_limit_max_requests: int = 100
    auth_rate_limit_max_requests: int = 5

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def identity_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_anon_key)

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            environment=os.getenv("ENVIRONMENT", "development"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            database_url=os.getenv("DATABASE_URL", f"sqlite:///{DEFAULT_DB_PATH}"),
            cors_origins=tuple(
                _env_list("CORS_ORIGINS", "http://localhost:3000,http://localhost:5173")
            ),
            supabase_url=os.getenv("SUPABASE_URL") or None,
            supabase_anon_key=os.getenv("SUPABASE_ANON_KEY") or None,
            identity_timeout_seconds=_env_float("IDENTITY_TIMEOUT_SECONDS", 10.0),
            anthropic_api_key=os.getenv("ANTHROPIC_API_KEY") or None,
            enhance_model=os.getenv("ANTHROPIC_ENHANCE_MODEL", "claude-haiku-4-5-20251001"),
            enhancement_timeout_seconds=_env_float("ENHANCEMENT_TIMEOUT_SECONDS", 60.0),
            status_poll_interval_seconds=_env_float("STATUS_POLL_INTERVAL_SECONDS", 2.0),
            status_stream_timeout_seconds=_env_float("STATUS_STREAM_TIMEOUT_SECONDS", 120.0),
            rate_limit_enabled=os.getenv("RATE_LIMIT_ENABLED", "true").lower()
            not in ("0", "false", "no"),
            rate_limit_window_seconds=max(1, _env_int("RATE_LIMIT_WINDOW_MS", 900_000) // 1000),
            rate_limit_max_requests=_env_int("RATE_LIMIT_MAX_REQUESTS", 100),
            auth_rate_limit_max_requests=_env_int("AUTH_RATE_LIMIT_MAX_REQUESTS", 5),
        )


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide settings, read once from the environment."""
    return Settings.from_env()
