"""In-memory project registry with an explicit locking discipline.

The registry is an owned map injected into the orchestrator, never a module
level singleton. Locking:

- ``membership`` (one ``asyncio.Lock``) guards insert and remove.
- ``locks`` (``KeyedLocks``) serializes every writer of one project.
- Reads are unrestricted and always return ``ProjectInfo.snapshot()`` copies.

Lock order is per-project lock first, membership lock second; the
membership lock is only ever held for the dict mutation itself.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from supamanager.core.errors import ConflictError, NotFoundError
from supamanager.core.locks import KeyedLocks
from supamanager.provisioning.models import ProjectConfig, ProjectInfo


class ProjectRegistry:
    """Owned ``project_id -> ProjectInfo`` map plus the running configs."""

    def __init__(self) -> None:
        self._projects: dict[str, ProjectInfo] = {}
        self._configs: dict[str, ProjectConfig] = {}
        self.membership = asyncio.Lock()
        self.locks = KeyedLocks()

    # --- reads (no locking) ---

    def __contains__(self, project_id: object) -> bool:
        return project_id in self._projects

    def __len__(self) -> int:
        return len(self._projects)

    def ids(self) -> list[str]:
        return sorted(self._projects)

    def get(self, project_id: str) -> ProjectInfo | None:
        info = self._projects.get(project_id)
        return info.snapshot() if info is not None else None

    def require(self, project_id: str) -> ProjectInfo:
        info = self.get(project_id)
        if info is None:
            raise NotFoundError(f"project {project_id} not found").with_context(project_id=project_id)
        return info

    def config(self, project_id: str) -> ProjectConfig | None:
        return self._configs.get(project_id)

    def snapshots(self) -> list[ProjectInfo]:
        return [self._projects[pid].snapshot() for pid in sorted(self._projects)]

    def used_ports(self, *, exclude: str | None = None) -> dict[int, str]:
        """Host port -> owning project, over every registered config."""
        ports: dict[int, str] = {}
        for project_id, config in self._configs.items():
            if project_id == exclude:
                continue
            for port in config.host_ports():
                ports[port] = project_id
        return ports

    # --- writes (caller holds ``locked(project_id)``) ---

    @asynccontextmanager
    async def locked(self, project_id: str) -> AsyncIterator[None]:
        async with self.locks.locked(project_id):
            yield

    def is_locked(self, project_id: str) -> bool:
        return self.locks.is_locked(project_id)

    async def insert(self, info: ProjectInfo, config: ProjectConfig) -> None:
        async with self.membership:
            if info.project_id in self._projects:
                raise ConflictError(f"project {info.project_id} already exists").with_context(
                    project_id=info.project_id
                )
            self._projects[info.project_id] = info
            self._configs[info.project_id] = config

    async def remove(self, project_id: str) -> None:
        async with self.membership:
            self._projects.pop(project_id, None)
            self._configs.pop(project_id, None)

    def live(self, project_id: str) -> ProjectInfo:
        """The registry-owned instance. Orchestrator use only, under the project lock."""
        info = self._projects.get(project_id)
        if info is None:
            raise NotFoundError(f"project {project_id} not found").with_context(project_id=project_id)
        return info

    def set_config(self, project_id: str, config: ProjectConfig) -> None:
        self._configs[project_id] = config
