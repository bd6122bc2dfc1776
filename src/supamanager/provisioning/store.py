"""Persistence collaborator for project records.

The orchestrator does not own a schema; it talks to whatever keeps tenant
metadata through the three calls of :class:`ProjectStore`. Every status
transition is mirrored into the store, and a deleted project is recorded
with status ``REMOVED`` rather than being erased.

``InMemoryProjectStore`` is the default for tests and single-process runs.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from supamanager.core.errors import ConflictError, NotFoundError
from supamanager.provisioning.models import ProjectStatus, utcnow

REMOVED = "REMOVED"


@dataclass(frozen=True)
class ProjectRecord:
    """One row of project metadata as the store sees it."""

    ref: str
    name: str
    organization_id: str
    region: str
    status: str
    plan: str = "FREE"
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def removed(self) -> bool:
        return self.status == REMOVED

    @property
    def live(self) -> bool:
        return self.status not in (REMOVED, ProjectStatus.FAILED.value)


@runtime_checkable
class ProjectStore(Protocol):
    """Narrow persistence interface consumed by the orchestrator."""

    async def get_project_by_reference(self, ref: str) -> ProjectRecord:
        """Record for ``ref``; raises ``NotFoundError`` when unknown."""
        ...

    async def create_project_record(self, fields: dict[str, Any]) -> ProjectRecord: ...

    async def update_project_status(self, ref: str, status: str) -> ProjectRecord: ...


class InMemoryProjectStore:
    """Dictionary-backed ``ProjectStore``."""

    def __init__(self) -> None:
        self._records: dict[str, ProjectRecord] = {}
        self._lock = asyncio.Lock()
        self.history: list[tuple[str, str]] = []

    async def get_project_by_reference(self, ref: str) -> ProjectRecord:
        record = self._records.get(ref)
        if record is None:
            raise NotFoundError(f"project record {ref} not found").with_context(project_id=ref)
        return record

    async def create_project_record(self, fields: dict[str, Any]) -> ProjectRecord:
        ref = fields["ref"]
        async with self._lock:
            existing = self._records.get(ref)
            if existing is not None and existing.live:
                raise ConflictError(f"project record {ref} already exists").with_context(project_id=ref)
            record = ProjectRecord(
                ref=ref,
                name=fields.get("name", ref),
                organization_id=fields.get("organization_id", ""),
                region=fields.get("region", "local"),
                status=str(fields.get("status", ProjectStatus.CREATING.value)),
                plan=str(fields.get("plan", "FREE")),
            )
            self._records[ref] = record
            self.history.append((ref, record.status))
            return record

    async def update_project_status(self, ref: str, status: str) -> ProjectRecord:
        async with self._lock:
            record = self._records.get(ref)
            if record is None:
                raise NotFoundError(f"project record {ref} not found").with_context(project_id=ref)
            record = replace(record, status=status, updated_at=utcnow())
            self._records[ref] = record
            self.history.append((ref, status))
            return record

    def records(self) -> list[ProjectRecord]:
        return [self._records[ref] for ref in sorted(self._records)]
