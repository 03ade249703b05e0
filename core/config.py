"""
Warden Configuration

All tunables of the access-session engine are read from environment
variables (or a local `.env` file). Thresholds are policy, not code, so
every window, limit and escalation level lives here.
"""

from __future__ import annotations

from enum import Enum
from functools import lru_cache
from typing import Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConflictPolicy(str, Enum):
    """What happens when a second session heartbeats while the first is fresh."""
    EXISTING_WINS = "existing_wins"
    NEW_TAKES_OVER = "new_takes_over"


class StateBackend(str, Enum):
    """Where the session registry and rate limiter keep their maps."""
    MEMORY = "memory"
    REDIS = "redis"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Session registry ─────────────────────────────────────────
    session_stale_seconds:   float = 120.0
    session_reap_seconds:    float = 300.0
    sweep_interval_seconds:  float = 300.0
    session_conflict_policy: ConflictPolicy = ConflictPolicy.EXISTING_WINS

    # ── Signed URL rate limiting ─────────────────────────────────
    rate_limit_window_seconds: float = 60.0
    rate_limit_max:            int   = 30
    rate_limit_sweep_seconds:  float = 60.0

    # ── Anomaly rules ────────────────────────────────────────────
    anomaly_window_seconds:     float = 3600.0   # DEVTOOLS / VIEW_START lookback
    devtools_alert_threshold:   int   = 3
    view_start_alert_threshold: int   = 10
    screenshot_warn_threshold:  int   = 10
    screenshot_ban_threshold:   int   = 20
    warn_rearm:                 bool  = False    # warn again on every new count past the threshold

    # ── Shared state ─────────────────────────────────────────────
    state_backend:  StateBackend = StateBackend.MEMORY
    redis_host:     str = "localhost"
    redis_port:     int = 6379
    redis_password: Optional[str] = None

    # ── Record store ─────────────────────────────────────────────
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None

    # ── Notifications ────────────────────────────────────────────
    notify_webhook_url:     Optional[str] = None
    notify_timeout_seconds: float = 5.0
    notify_retries:         int   = 2
    notify_workers:         int   = 2
    admin_email:            str   = "admin@example.com"

    # ── Content delivery ─────────────────────────────────────────
    content_base_url:       str = "https://cdn.example.com/raw/authenticated"
    content_signing_secret: str = "change-me"
    signed_url_ttl_seconds: int = 300

    # ── HTTP server ──────────────────────────────────────────────
    port:      int = 8000
    log_level: str = "INFO"

    @model_validator(mode="after")
    def _check_thresholds(self) -> "Settings":
        if self.screenshot_warn_threshold > self.screenshot_ban_threshold:
            raise ValueError("screenshot_warn_threshold must not exceed screenshot_ban_threshold")
        if self.session_reap_seconds < self.session_stale_seconds:
            raise ValueError("session_reap_seconds must be >= session_stale_seconds")
        return self


@lru_cache
def get_settings() -> Settings:
    return Settings()
