"""
Centralized settings for supamanager.

Manifesto:
    One validated, cached settings object instead of per-module environment
    parsing. Every field can be set through a ``SUPAMANAGER_*`` environment
    variable (``SUPAMANAGER_BASE_POSTGRES_PORT=6543``) or a ``.env`` file.

Defaults mirror a single-host Docker deployment: projects live under
``./projects``, Postgres ports are allocated from 5433 and API gateway ports
from 54321.

Tags:
    configuration, settings, pydantic, caching, validation
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class SupaManagerSettings(BaseSettings):
    """Provisioner configuration."""

    model_config = SettingsConfigDict(
        env_prefix="SUPAMANAGER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Provisioning ─────────────────────────────────────────────
    projects_dir: Path = Field(default=Path("./projects"))
    docker_host: str = Field(default="unix:///var/run/docker.sock")
    docker_binary: str = Field(default="docker")
    base_postgres_port: int = Field(default=5433)
    base_kong_http_port: int = Field(default=54321)
    base_studio_port: int = Field(default=3000)
    public_host: str = Field(default="localhost")

    # ── Images ───────────────────────────────────────────────────
    postgres_image: str = Field(default="supabase/postgres")
    postgres_version: str = Field(default="14.2")
    rest_image: str = Field(default="postgrest/postgrest:v10.1.2")
    auth_image: str = Field(default="supabase/gotrue:v2.40.1")
    storage_image: str = Field(default="supabase/storage-api:v0.28.0")
    realtime_image: str = Field(default="supabase/realtime:v2.4.0")
    kong_image: str = Field(default="kong:2.8.1")
    studio_image: str = Field(default="supabase/studio:20230127-6bfd87b")

    # ── Health ───────────────────────────────────────────────────
    health_check_timeout_seconds: float = Field(default=120.0)
    health_poll_interval_seconds: float = Field(default=1.0)
    health_poll_max_interval_seconds: float = Field(default=5.0)
    health_sweep_interval_seconds: float = Field(default=30.0)

    # ── Runtime retry ────────────────────────────────────────────
    runtime_max_retries: int = Field(default=4)
    runtime_retry_base_delay: float = Field(default=0.5)
    runtime_retry_max_delay: float = Field(default=8.0)
    runtime_command_timeout_seconds: float = Field(default=120.0)

    # ── Quotas ───────────────────────────────────────────────────
    default_plan: str = Field(default="FREE")
    quota_warn_at_percent: float = Field(default=80.0)
    quota_block_at_percent: float = Field(default=100.0)
    quota_check_interval_seconds: float = Field(default=300.0)
    quota_pause_on_exceeded: bool = Field(default=False)

    # ── Backups ──────────────────────────────────────────────────
    backup_dir: Path = Field(default=Path("./backups"))
    backup_storage: Literal["local", "s3"] = Field(default="local")
    s3_bucket: str = Field(default="")
    s3_prefix: str = Field(default="backups/")
    s3_region: str = Field(default="us-east-1")
    s3_endpoint_url: str | None = Field(default=None)
    backup_encryption_key: str | None = Field(
        default=None,
        description="urlsafe base64 Fernet key used when a backup asks for encryption",
    )
    backup_retention: int = Field(default=7)
    schedule_tick_seconds: float = Field(default=60.0)

    # ── Worker pool ──────────────────────────────────────────────
    max_concurrent_operations: int = Field(default=8)

    # ── Logging ──────────────────────────────────────────────────
    log_level: str = Field(default="INFO")
    log_json: bool | None = Field(default=None)

    @field_validator("default_plan")
    @classmethod
    def _upper_plan(cls, value: str) -> str:
        return value.upper()

    @field_validator("quota_block_at_percent")
    @classmethod
    def _block_above_zero(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("quota_block_at_percent must be positive")
        return value

    @property
    def postgres_image_ref(self) -> str:
        return f"{self.postgres_image}:{self.postgres_version}"


# ── Settings factory with caching ────────────────────────────────────────

_settings_cache: dict[str, SupaManagerSettings] = {}


def get_settings(*, _force_reload: bool = False) -> SupaManagerSettings:
    """Load, validate, and cache a :class:`SupaManagerSettings` instance."""
    if not _force_reload and "default" in _settings_cache:
        return _settings_cache["default"]
    settings = SupaManagerSettings()
    _settings_cache["default"] = settings
    return settings


def clear_settings_cache() -> None:
    """Clear the settings cache (primarily for testing)."""
    _settings_cache.clear()
