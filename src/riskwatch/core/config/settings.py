"""Application settings loaded from environment variables."""

from __future__ import annotations

from typing import Literal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """RiskWatch server configuration."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    # Server
    # Loopback by default: the server carries behavioral health data and has no
    # auth layer of its own.
    riskwatch_host: str = "127.0.0.1"
    riskwatch_port: int = 8001
    riskwatch_log_level: str = "info"
    riskwatch_allow_insecure_bind: bool = False

    # Storage (signal store, notification ledger, weight tables)
    db_path: str = "~/.riskwatch/recovery.db"
    encryption_key: str = ""

    # Clock
    # Quiet hours and day buckets are evaluated in this zone.
    timezone: str = "UTC"

    # Intervention catalog (empty = packaged catalog/interventions.yaml)
    catalog_path: str = ""

    # Scheduling loop (background ticker started with the server)
    scheduler_enabled: bool = True
    scheduling_interval_minutes: int = 60
    dispatch_interval_seconds: int = 30
    notifier_timeout_seconds: float = 5.0
    dispatch_retry_backoff_seconds: int = 60
    notifications_per_pass: int = 3
    # Local HH:MM slots for the daily check-in reminder (empty = off)
    daily_checkin_times: str = "08:30,14:00,20:30"
    # How far ahead of a recurring risk window the preventive nudge goes out
    preventive_lead_minutes: int = 30

    # Analysis / ranking
    history_lookback_days: int = 30
    default_available_minutes: int = 15
    max_recommendations: int = 5

    # Defaults applied until the user saves preferences
    default_quiet_start: str = "22:00"
    default_quiet_end: str = "08:00"
    default_frequency: Literal["minimal", "normal", "frequent"] = "normal"


def get_settings() -> Settings:
    """Create and return a Settings instance."""
    return Settings()
