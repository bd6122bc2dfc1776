"""Quota data model.

``ResourceQuotas`` is the per-project ceiling (0 in any numeric field means
unlimited), ``QuotaUsage`` the latest recomputed consumption, and
``QuotaStatus`` the projection of one against the other. Status objects are
built on demand and never stored.

.. code-block:: text

    ResourceQuotas ─┐
                    ├──► QuotaStatus (fresh per call)
    QuotaUsage ─────┘         │
                              ├── QuotaCheck per dimension
                              └── warnings / errors
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

MB = 1024 * 1024
GB = 1024 * MB


class QuotaPlan(str, Enum):
    """Named tier that defines default ``ResourceQuotas``."""

    FREE = "FREE"
    STARTER = "STARTER"
    PRO = "PRO"
    ENTERPRISE = "ENTERPRISE"
    CUSTOM = "CUSTOM"

    @classmethod
    def parse(cls, raw: str | QuotaPlan) -> QuotaPlan:
        if isinstance(raw, QuotaPlan):
            return raw
        return cls(raw.strip().upper())


@dataclass(frozen=True)
class ResourceQuotas:
    """Per-project ceilings. Byte sizes for disk and memory; 0 = unlimited."""

    database_size: int = 0
    storage_size: int = 0
    backup_size: int = 0
    total_disk_size: int = 0
    cpu_limit: float = 0.0
    memory_limit: int = 0
    bandwidth_limit: int = 0
    requests_per_hour: int = 0
    connections_limit: int = 0
    max_backups: int = 0
    max_users: int = 0
    max_tables: int = 0
    max_file_size: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class QuotaUsage:
    """Observed consumption; written only by ``QuotaManager.update_quota_usage``."""

    project_id: str
    last_updated: datetime | None = None
    database_size: int = 0
    storage_size: int = 0
    backup_size: int = 0
    total_disk_size: int = 0
    cpu_usage: float = 0.0
    memory_usage: int = 0
    bandwidth_used: int = 0
    requests_this_hour: int = 0
    active_connections: int = 0
    backup_count: int = 0
    user_count: int = 0
    table_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["last_updated"] = self.last_updated.isoformat() if self.last_updated else None
        return data


@dataclass(frozen=True)
class QuotaCheck:
    """One dimension of a quota status."""

    current: float = 0
    limit: float = 0
    used: float = 0.0
    exceeded: bool = False
    warning: bool = False

    @property
    def unlimited(self) -> bool:
        return self.limit == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "current": self.current,
            "limit": self.limit,
            "used": round(self.used, 2),
            "exceeded": self.exceeded,
            "warning": self.warning,
        }


@dataclass
class QuotaStatus:
    """Derived view of usage against quotas."""

    exceeded: bool = False
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    database_quota: QuotaCheck = field(default_factory=QuotaCheck)
    storage_quota: QuotaCheck = field(default_factory=QuotaCheck)
    backup_quota: QuotaCheck = field(default_factory=QuotaCheck)
    total_disk_quota: QuotaCheck = field(default_factory=QuotaCheck)
    bandwidth_quota: QuotaCheck = field(default_factory=QuotaCheck)
    cpu_quota: QuotaCheck = field(default_factory=QuotaCheck)
    memory_quota: QuotaCheck = field(default_factory=QuotaCheck)
    user_quota: QuotaCheck = field(default_factory=QuotaCheck)
    table_quota: QuotaCheck = field(default_factory=QuotaCheck)
    connection_quota: QuotaCheck = field(default_factory=QuotaCheck)
    request_quota: QuotaCheck = field(default_factory=QuotaCheck)
    backup_count_quota: QuotaCheck = field(default_factory=QuotaCheck)

    def checks(self) -> dict[str, QuotaCheck]:
        return {
            "database": self.database_quota,
            "storage": self.storage_quota,
            "backup": self.backup_quota,
            "total_disk": self.total_disk_quota,
            "bandwidth": self.bandwidth_quota,
            "cpu": self.cpu_quota,
            "memory": self.memory_quota,
            "users": self.user_quota,
            "tables": self.table_quota,
            "connections": self.connection_quota,
            "requests": self.request_quota,
            "backups": self.backup_count_quota,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "exceeded": self.exceeded,
            "warnings": list(self.warnings),
            "errors": list(self.errors),
            "checks": {name: check.to_dict() for name, check in self.checks().items()},
        }


@dataclass(frozen=True)
class QuotaEnforcement:
    """How usage against quotas is acted upon."""

    warn_at_percent: float = 80.0
    block_at_percent: float = 100.0
    notify_admin: bool = True
    notify_user: bool = True
    pause_project: bool = False
    block_uploads: bool = True
    block_backups: bool = True
    block_new_users: bool = True


@dataclass(frozen=True)
class AdminQuotaSettings:
    """Instance-wide quota policy."""

    default_plan: QuotaPlan = QuotaPlan.FREE
    enforcement: QuotaEnforcement = field(default_factory=QuotaEnforcement)
    check_interval_seconds: float = 300.0
    grace_period_seconds: float = 0.0
    email_on_warning: bool = False
    email_on_exceeded: bool = True
    slack_webhook: str | None = None


@dataclass
class QuotaDecision:
    """Outcome of a passing ``enforce_quotas`` call."""

    project_id: str
    operation: str
    size: int
    warnings: list[str] = field(default_factory=list)

    @property
    def warned(self) -> bool:
        return bool(self.warnings)
