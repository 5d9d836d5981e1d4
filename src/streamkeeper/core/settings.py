"""
Centralized settings for the stream manager.

Manifesto:
    Every interval, ceiling and grace window the manager uses lives here,
    validated once at startup. Operators tune a deployment through
    ``STREAMKEEPER_*`` environment variables or a ``.env`` file instead of
    editing constants scattered across modules.

Examples:
    >>> settings = ManagerSettings(max_retry_attempts=5)
    >>> settings.retry_max_delay_seconds
    60.0

Environment::

    STREAMKEEPER_POLL_INTERVAL_SECONDS=30
    STREAMKEEPER_DATABASE_PATH=/var/lib/streamkeeper/streams.db
    STREAMKEEPER_HEARTBEAT_MARKERS='["frame=", "speed="]'

Tags:
    streamkeeper, configuration, settings, pydantic, validation

Doc-Types:
    api-reference
"""

from __future__ import annotations

import os
import shutil
from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Largest delay (seconds) a single timer may hold: 2**31 - 1 milliseconds.
MAX_TIMER_DELAY_SECONDS = 2_147_483.647


def _detect_ffmpeg() -> str:
    """Prefer the system ffmpeg, then whatever is on ``$PATH``."""
    if os.path.isfile("/usr/bin/ffmpeg"):
        return "/usr/bin/ffmpeg"
    return shutil.which("ffmpeg") or "ffmpeg"


class ManagerSettings(BaseSettings):
    """Stream manager configuration.

    All fields can be set via ``STREAMKEEPER_*`` environment variables.
    """

    model_config = SettingsConfigDict(
        env_prefix="STREAMKEEPER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Trigger loop ─────────────────────────────────────────────
    poll_interval_seconds: float = Field(default=60.0)
    schedule_lookahead_seconds: float = Field(default=60.0)
    start_grace_seconds: float = Field(
        default=60.0,
        description="How far back the start sweep looks for scheduled starts missed between polls",
    )
    termination_tolerance_seconds: float = Field(default=30.0)

    # ── Termination timers ───────────────────────────────────────
    long_duration_check_seconds: float = Field(default=300.0)
    max_timer_delay_seconds: float = Field(default=MAX_TIMER_DELAY_SECONDS)

    # ── Retry ────────────────────────────────────────────────────
    max_retry_attempts: int = Field(default=10)
    retry_base_delay_seconds: float = Field(default=3.0)
    retry_max_delay_seconds: float = Field(default=60.0)
    retry_reset_interval_seconds: float = Field(default=1800.0)
    heartbeat_markers: list[str] = Field(default=["frame="])

    # ── Reconciliation ───────────────────────────────────────────
    recent_start_grace_seconds: float = Field(default=30.0)
    status_sync_interval_seconds: float = Field(default=300.0)
    health_check_interval_seconds: float = Field(default=60.0)
    log_cleanup_interval_seconds: float = Field(default=1800.0)

    # ── Process ──────────────────────────────────────────────────
    stop_timeout_seconds: float = Field(default=10.0)
    ffmpeg_path: str = Field(default_factory=_detect_ffmpeg)
    media_root: Path = Field(default_factory=lambda: Path("public"))
    temp_dir: Path = Field(default_factory=lambda: Path("temp"))

    # ── Per-job log buffer ───────────────────────────────────────
    log_capacity: int = Field(default=100)
    log_retention_seconds: float = Field(default=3600.0)

    # ── Storage ──────────────────────────────────────────────────
    database_path: Path = Field(default_factory=lambda: Path("data") / "streams.db")

    # ── Logging ──────────────────────────────────────────────────
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="auto", description="json | console | auto")
    service_name: str = Field(default="streamkeeper")

    @field_validator(
        "poll_interval_seconds",
        "long_duration_check_seconds",
        "max_timer_delay_seconds",
        "retry_base_delay_seconds",
        "retry_max_delay_seconds",
        "retry_reset_interval_seconds",
        "status_sync_interval_seconds",
        "health_check_interval_seconds",
        "log_cleanup_interval_seconds",
        "stop_timeout_seconds",
    )
    @classmethod
    def _positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be greater than zero")
        return value

    @field_validator("max_retry_attempts", "log_capacity")
    @classmethod
    def _non_negative_int(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("log_format")
    @classmethod
    def _known_format(cls, value: str) -> str:
        value = value.lower()
        if value not in {"json", "console", "auto"}:
            raise ValueError("log_format must be json, console or auto")
        return value

    @property
    def json_logs(self) -> bool | None:
        """Map ``log_format`` to the ``json_format`` flag of configure_logging."""
        return {"json": True, "console": False}.get(self.log_format)


@lru_cache(maxsize=1)
def get_settings() -> ManagerSettings:
    """Return the process-wide settings (cached)."""
    return ManagerSettings()


def clear_settings_cache() -> None:
    """Forget cached settings (tests, reload)."""
    get_settings.cache_clear()
