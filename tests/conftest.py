"""
Shared pytest fixtures for supamanager tests.

This module provides:
- Settings pointing at temporary directories, with fast timeouts
- A stub runtime plus an orchestrator and backup engine wired to it
- ``make_config`` for building valid ``ProjectConfig`` objects

Usage:
    async def test_something(orchestrator, make_config):
        await orchestrator.create_project(make_config("p1"))
"""

from __future__ import annotations

import os
from collections.abc import Awaitable, Callable, Iterator
from pathlib import Path
from typing import Any

import pytest
from cryptography.fernet import Fernet

from supamanager.backup.codec import ArtifactCodec
from supamanager.backup.engine import BackupEngine
from supamanager.backup.storage import LocalBackupStorage
from supamanager.core.retry import ExponentialBackoff
from supamanager.core.settings import SupaManagerSettings, clear_settings_cache
from supamanager.provisioning.models import ProjectConfig, ProjectInfo
from supamanager.provisioning.orchestrator import ProjectOrchestrator
from supamanager.runtime._base import StubRuntimeAdapter


# =============================================================================
# Test Markers Configuration
# =============================================================================


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Mark everything without an explicit marker as a unit test."""
    for item in items:
        markers = {mark.name for mark in item.iter_markers()}
        if not markers.intersection({"unit", "integration", "slow"}):
            item.add_marker(pytest.mark.unit)


@pytest.fixture(autouse=True)
def _isolate_settings(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Keep SUPAMANAGER_* from the developer's shell out of tests."""
    for key in [k for k in os.environ if k.startswith("SUPAMANAGER_")]:
        monkeypatch.delenv(key, raising=False)
    clear_settings_cache()
    yield
    clear_settings_cache()


# =============================================================================
# Settings and collaborators
# =============================================================================


@pytest.fixture
def settings(tmp_path: Path) -> SupaManagerSettings:
    return SupaManagerSettings(
        _env_file=None,
        projects_dir=tmp_path / "projects",
        backup_dir=tmp_path / "backups",
        health_check_timeout_seconds=0.3,
        health_poll_interval_seconds=0.01,
        health_poll_max_interval_seconds=0.02,
        runtime_max_retries=4,
        runtime_retry_base_delay=0.0,
        runtime_retry_max_delay=0.0,
        runtime_command_timeout_seconds=5.0,
    )


@pytest.fixture
def fast_retry() -> ExponentialBackoff:
    return ExponentialBackoff(max_retries=4, base_delay=0.0, max_delay=0.0, jitter=False)


@pytest.fixture
def runtime() -> StubRuntimeAdapter:
    return StubRuntimeAdapter()


@pytest.fixture
def orchestrator(runtime, settings, fast_retry) -> ProjectOrchestrator:
    return ProjectOrchestrator(runtime, settings=settings, retry=fast_retry)


@pytest.fixture
def fernet_key() -> str:
    return Fernet.generate_key().decode()


@pytest.fixture
def backup_storage(tmp_path: Path) -> LocalBackupStorage:
    return LocalBackupStorage(tmp_path / "artifacts")


@pytest.fixture
def engine(orchestrator, backup_storage, fernet_key) -> BackupEngine:
    return BackupEngine(orchestrator, backup_storage, codec=ArtifactCodec(fernet_key))


# =============================================================================
# Config factory
# =============================================================================


@pytest.fixture
def make_config() -> Callable[..., ProjectConfig]:
    """Build a valid config; each new project id gets its own port pair."""
    offsets: dict[str, int] = {}

    def _make(project_id: str = "p1", **overrides: Any) -> ProjectConfig:
        offset = offsets.setdefault(project_id, len(offsets))
        fields: dict[str, Any] = {
            "project_id": project_id,
            "project_name": f"Project {project_id}",
            "organization_id": "org-1",
            "db_password": "s3cret",
            "db_port": 6000 + offset,
            "api_port": 7000 + offset,
            "jwt_secret": "jwt-secret-with-at-least-32-characters",
            "anon_key": "anon",
            "service_key": "service",
        }
        fields.update(overrides)
        return ProjectConfig(**fields)

    return _make


@pytest.fixture
def provision(orchestrator) -> Callable[[ProjectConfig], Awaitable[ProjectInfo]]:
    """Create a project and wait until provisioning settles."""

    async def _provision(config: ProjectConfig) -> ProjectInfo:
        await orchestrator.create_project(config)
        return await orchestrator.wait_for_project(config.project_id, timeout=5)

    return _provision
