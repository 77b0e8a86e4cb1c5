"""Centralised application settings loaded from environment / .env file."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent


class Settings(BaseSettings):
    """All runtime configuration for the sleep-sentinel service.

    Values are read from environment variables first, then from a *.env* file
    located at the project root.  Every variable lives in the flat
    ``SLEEP_SENTINEL_`` namespace (stripped automatically by
    *pydantic-settings*).
    """

    model_config = SettingsConfigDict(
        env_prefix="SLEEP_SENTINEL_",
        env_file=str(_PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Detection ─────────────────────────────────────────────
    min_candidate_probability: float = 0.7
    confirmation_window_minutes: float = 12.0
    lookback_window_minutes: float = 15.0
    inactivity_requirement_minutes: float = 10.0

    # ── Monitoring session ────────────────────────────────────
    monitoring_enabled: bool = True
    check_interval_minutes: float = 3.0  # clamped to 1–10 by the session
    background_observers_enabled: bool = True
    log_retention_minutes: int = 60
    log_max_entries: int = 240

    # ── Health data source ────────────────────────────────────
    health_source: Literal["memory", "fitbit"] = "memory"
    memory_retention_minutes: float = 60.0  # pushed samples kept behind the newest one

    # ── Fitbit Web API ────────────────────────────────────────
    fitbit_access_token: str = ""
    fitbit_api_base_url: str = "https://api.fitbit.com"
    fitbit_request_timeout: float = 30.0
    fitbit_rate_limit_per_hour: int = 150  # Fitbit default per-user limit
    fitbit_max_rate_limit_wait: float = 30.0  # longer back-offs yield no samples
    fitbit_subscriber_verification_code: str = ""
    fitbit_user_timezone: str = "UTC"  # intraday times are in the user's local time

    # ── Notifications ─────────────────────────────────────────
    webhook_url: str = ""
    webhook_alert_sources: str = "poll,background,test"  # comma-separated; blank means all

    # ── API server ────────────────────────────────────────────
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    cors_origins: str = "*"  # comma-separated origins, or "*" for all

    # ── Logging ───────────────────────────────────────────────
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"


@lru_cache
def get_settings() -> Settings:
    """Return a cached :class:`Settings` singleton."""
    return Settings()
