"""
Centralized settings for tiller.

Manifesto:
    One validated, cached settings object holds every environment-driven
    knob: log format, sandbox and journal locations, secret backends and
    the operator defaults the reference blueprints fall back to.

All fields can be set via ``TILLER_*`` environment variables (for example
``TILLER_OPENBAO_ADDR=https://bao.internal:8200``) or a ``.env`` file.

Tags:
    tiller, configuration, settings, pydantic

Doc-Types:
    api-reference
"""

from __future__ import annotations

import tempfile
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class TillerSettings(BaseSettings):
    """Tiller configuration, read from ``TILLER_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="TILLER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Logging ──────────────────────────────────────────────────
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json", description="json or console")

    # ── Execution ────────────────────────────────────────────────
    sandbox_root: Path = Field(default_factory=lambda: Path(tempfile.gettempdir()) / "tiller-sandboxes")
    http_timeout_seconds: float = Field(default=30.0, gt=0)
    max_concurrent_runs: int = Field(default=8, ge=1)

    # ── Substrate ────────────────────────────────────────────────
    journal_dir: Path = Field(default=Path(".tiller/runs"))

    # ── Secrets ──────────────────────────────────────────────────
    secrets_file_dir: Path = Field(default=Path("/run/secrets"))
    openbao_addr: str = Field(default="", description="OpenBao base URL; empty disables the backend")
    openbao_mount: str = Field(default="secret")
    openbao_token_ref: str = Field(default="secret:env:BAO_TOKEN")

    # ── Progressive rollout defaults ─────────────────────────────
    rollout_stages: list[int] = Field(default=[10, 25, 50, 75, 100])
    rollout_analysis_window_seconds: int = Field(default=300, gt=0)
    rollout_error_rate_threshold: float = Field(default=0.05, ge=0, le=1)

    # ── Blue/green deploy defaults ───────────────────────────────
    deploy_namespace: str = Field(default="default")
    deploy_manifest_path: str = Field(default="deploy/k8s/workers")
    deploy_task_queue: str = Field(default="golden-tools")
    deploy_drain_timeout_seconds: int = Field(default=600, gt=0)

    @field_validator("log_format")
    @classmethod
    def _check_log_format(cls, value: str) -> str:
        value = value.lower()
        if value not in ("json", "console"):
            raise ValueError("log_format must be 'json' or 'console'")
        return value

    @field_validator("rollout_stages")
    @classmethod
    def _check_stages(cls, value: list[int]) -> list[int]:
        if not value or any(p < 0 or p > 100 for p in value):
            raise ValueError("rollout_stages must be non-empty percentages in 0..100")
        return value


# ── Settings factory with caching ────────────────────────────────────────

_settings_cache: dict[str, TillerSettings] = {}


def get_settings(*, _force_reload: bool = False) -> TillerSettings:
    """Load, validate, and cache a :class:`TillerSettings` instance."""
    if not _force_reload and "default" in _settings_cache:
        return _settings_cache["default"]
    settings = TillerSettings()
    _settings_cache["default"] = settings
    return settings


def clear_settings_cache() -> None:
    """Clear the settings cache (primarily for testing)."""
    _settings_cache.clear()
