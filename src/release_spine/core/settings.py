"""
Process-wide settings for release-spine.

:class:`ReleaseSettings` holds everything that is about *where* the
orchestrator runs rather than *what* it deploys: log level and format,
state and report directories, and how long a run waits for a busy
deployment target. Pipeline-specific values live in
:class:`release_spine.pipeline.config.PipelineConfig`.

Values resolve from ``RELEASE_SPINE_*`` environment variables and an
optional ``.env`` file, with field defaults underneath.

Tags:
    configuration, settings, pydantic, release-spine
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ReleaseSettings(BaseSettings):
    """Settings shared by the CLI and the scheduler.

    Fields
    ──────
    log_level             : structlog log level
    log_json              : force JSON logs (None = auto-detect tty)
    state_dir             : where DeploymentTarget records are kept
    report_dir            : where per-run summaries are written
    lock_timeout_seconds  : how long a run waits for a busy target
    """

    model_config = SettingsConfigDict(
        env_prefix="RELEASE_SPINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    log_json: bool | None = None

    # ── Storage ──────────────────────────────────────────────────
    state_dir: Path = Field(
        default_factory=lambda: Path.home() / ".release-spine",
        description="Directory holding deployment target state",
    )
    report_dir: Path = Field(
        default=Path("release-results"),
        description="Directory for per-run summary reports",
    )

    # ── Concurrency ──────────────────────────────────────────────
    lock_timeout_seconds: float = Field(
        default=600.0,
        ge=0,
        description="Wait for a busy deployment target before rejecting the run",
    )


@lru_cache(maxsize=1)
def get_settings() -> ReleaseSettings:
    """Return the cached process settings."""
    return ReleaseSettings()


def reset_settings() -> None:
    """Drop the cached settings (tests and CLI overrides)."""
    get_settings.cache_clear()


__all__ = ["ReleaseSettings", "get_settings", "reset_settings"]
