"""Project lifecycle data model.

``ProjectConfig`` is the validated provisioning input (frozen; an update
supplies a whole new config that is diffed against the running one).
``ProjectInfo`` is the orchestrator-owned runtime fact sheet; everybody else
only ever sees ``snapshot()`` copies of it.

Status graph (see :mod:`supamanager.provisioning.transitions`)::

    CREATING ──► ACTIVE_HEALTHY ◄──► ACTIVE_UNHEALTHY
       │              │   ▲                │
       ▼              ▼   │                ▼
     FAILED         PAUSED ──► CREATING (resume)
       │              │
       └──► DELETING ◄┘  (from every non-DELETING status) ──► removed
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from supamanager.core.errors import ValidationError
from supamanager.core.units import parse_cpus, parse_size
from supamanager.quotas.models import QuotaPlan


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


class ProjectStatus(str, Enum):
    """Lifecycle status of a project."""

    CREATING = "CREATING"
    ACTIVE_HEALTHY = "ACTIVE_HEALTHY"
    ACTIVE_UNHEALTHY = "ACTIVE_UNHEALTHY"
    PAUSED = "PAUSED"
    DELETING = "DELETING"
    FAILED = "FAILED"

    @property
    def is_active(self) -> bool:
        return self in (ProjectStatus.ACTIVE_HEALTHY, ProjectStatus.ACTIVE_UNHEALTHY)


class ProjectEvent(str, Enum):
    """Events that drive status transitions."""

    PROVISIONED = "PROVISIONED"            # every probe passed after create
    PROVISION_FAILED = "PROVISION_FAILED"
    PROBE_FAILED = "PROBE_FAILED"
    PROBE_RECOVERED = "PROBE_RECOVERED"
    PAUSE = "PAUSE"
    RESUME = "RESUME"
    RESUMED = "RESUMED"                    # every probe passed after resume
    DELETE = "DELETE"
    RESTORE_FAILED = "RESTORE_FAILED"


IDENTITY_FIELDS: tuple[str, ...] = ("project_id", "organization_id", "region")


class ProjectConfig(BaseModel):
    """Provisioning input for one project.

    Secrets arrive already minted; this model never generates them.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    project_id: str = Field(..., pattern=r"^[a-z0-9][a-z0-9-]{0,39}$", description="Unique project reference")
    project_name: str = Field(..., min_length=1)
    organization_id: str = Field(..., min_length=1)
    region: str = Field(default="local")

    db_password: str = Field(..., min_length=1)
    db_port: int = Field(..., gt=0, lt=65536)
    api_port: int = Field(..., gt=0, lt=65536)
    studio_port: int | None = Field(default=None, gt=0, lt=65536)

    jwt_secret: str = Field(default="")
    anon_key: str = Field(default="")
    service_key: str = Field(default="")

    dashboard_user: str = Field(default="supabase")
    dashboard_pass: str = Field(default="")

    cpu_limit: str | None = Field(default=None, description='CPU cores, e.g. "1.0"')
    memory_limit: str | None = Field(default=None, description='Memory, e.g. "2GB"')
    storage_limit: str | None = Field(default=None, description='Storage, e.g. "10GB"')

    plan: QuotaPlan = Field(default=QuotaPlan.FREE)

    @field_validator("plan", mode="before")
    @classmethod
    def _parse_plan(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @field_validator("cpu_limit")
    @classmethod
    def _check_cpu(cls, value: str | None) -> str | None:
        if value is not None:
            try:
                parse_cpus(value)
            except ValidationError as exc:
                raise ValueError(exc.message) from exc
        return value

    @field_validator("memory_limit", "storage_limit")
    @classmethod
    def _check_size(cls, value: str | None) -> str | None:
        if value is not None:
            try:
                parse_size(value)
            except ValidationError as exc:
                raise ValueError(exc.message) from exc
        return value

    @model_validator(mode="after")
    def _distinct_ports(self) -> ProjectConfig:
        ports = [p for p in (self.db_port, self.api_port, self.studio_port) if p is not None]
        if len(ports) != len(set(ports)):
            raise ValueError("db_port, api_port and studio_port must differ")
        return self

    def host_ports(self) -> set[int]:
        return {p for p in (self.db_port, self.api_port, self.studio_port) if p is not None}

    def identity_changes(self, other: ProjectConfig) -> list[str]:
        """Identity fields whose value differs in ``other``."""
        return [name for name in IDENTITY_FIELDS if getattr(self, name) != getattr(other, name)]

    @property
    def cpu_cores(self) -> float | None:
        return parse_cpus(self.cpu_limit)

    @property
    def memory_bytes(self) -> int | None:
        return parse_size(self.memory_limit)

    @property
    def storage_bytes(self) -> int | None:
        return parse_size(self.storage_limit)


@dataclass
class ProjectInfo:
    """Runtime fact sheet for one project. Owned by the orchestrator."""

    project_id: str
    project_name: str
    status: ProjectStatus
    endpoint: str = ""
    db_endpoint: str = ""
    containers: dict[str, str] = field(default_factory=dict)
    health_checks: dict[str, bool] = field(default_factory=dict)
    cpu_usage: float = 0.0
    memory_usage: int = 0
    storage_usage: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    error_message: str | None = None
    degraded_reason: str | None = None  # set by a failed restore

    def snapshot(self) -> ProjectInfo:
        """Independent copy handed to callers."""
        return copy.deepcopy(self)

    @property
    def healthy(self) -> bool:
        return bool(self.health_checks) and all(self.health_checks.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "project_id": self.project_id,
            "project_name": self.project_name,
            "status": self.status.value,
            "endpoint": self.endpoint,
            "db_endpoint": self.db_endpoint,
            "containers": dict(self.containers),
            "health_checks": dict(self.health_checks),
            "cpu_usage": self.cpu_usage,
            "memory_usage": self.memory_usage,
            "storage_usage": self.storage_usage,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "error_message": self.error_message,
            "degraded_reason": self.degraded_reason,
        }
