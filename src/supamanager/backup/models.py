"""Backup, restore and schedule records.

``BackupInfo`` and ``RestoreInfo`` are owned by the ``BackupEngine``: it
mutates them only while they are non-terminal and hands callers copies.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from supamanager.core.errors import ValidationError


def utcnow() -> datetime:
    return datetime.now(UTC)


class BackupContent(str, Enum):
    """Parts of a project a backup artifact can carry."""

    DATABASE = "DATABASE"
    STORAGE = "STORAGE"
    CONFIG = "CONFIG"


class BackupType(str, Enum):
    FULL = "FULL"
    DATABASE = "DATABASE"
    STORAGE = "STORAGE"
    INCREMENTAL = "INCREMENTAL"

    @property
    def contents(self) -> frozenset[BackupContent]:
        return _CONTENTS[self]

    @classmethod
    def parse(cls, value: BackupType | str) -> BackupType:
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).upper())
        except ValueError:
            raise ValidationError(f"unknown backup type: {value!r}") from None


_CONTENTS: dict[BackupType, frozenset[BackupContent]] = {
    BackupType.FULL: frozenset({BackupContent.DATABASE, BackupContent.STORAGE, BackupContent.CONFIG}),
    BackupType.DATABASE: frozenset({BackupContent.DATABASE}),
    BackupType.STORAGE: frozenset({BackupContent.STORAGE}),
    # full database dump plus storage files changed since the base backup
    BackupType.INCREMENTAL: frozenset({BackupContent.DATABASE, BackupContent.STORAGE}),
}


class BackupStatus(str, Enum):
    CREATING = "CREATING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def terminal(self) -> bool:
        return self != BackupStatus.CREATING


class RestoreStatus(str, Enum):
    RESTORING = "RESTORING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def terminal(self) -> bool:
        return self != RestoreStatus.RESTORING


class ScheduleFrequency(str, Enum):
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"


@dataclass(frozen=True)
class BackupConfig:
    """Request to capture one backup.

    ``retention`` counts backups kept by auto-cleanup (0 keeps all);
    ``retention_days`` sets ``expires_at`` (0 never expires).
    """

    project_id: str
    backup_type: BackupType = BackupType.FULL
    compression: bool = True
    encryption: bool = False
    retention: int = 0
    retention_days: int = 0
    auto_cleanup: bool = False
    s3_upload: bool = False
    s3_bucket: str = ""
    s3_prefix: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "backup_type", BackupType.parse(self.backup_type))
        if self.retention < 0 or self.retention_days < 0:
            raise ValidationError("retention and retention_days must not be negative")


@dataclass
class BackupInfo:
    backup_id: str
    project_id: str
    project_name: str
    backup_type: BackupType
    status: BackupStatus = BackupStatus.CREATING
    size: int = 0
    compressed: bool = False
    encrypted: bool = False
    file_path: str = ""
    s3_key: str = ""
    error_message: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None
    expires_at: datetime | None = None
    base_backup_id: str | None = None
    contents: frozenset[BackupContent] = frozenset()

    def snapshot(self) -> BackupInfo:
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "backup_id": self.backup_id,
            "project_id": self.project_id,
            "project_name": self.project_name,
            "backup_type": self.backup_type.value,
            "status": self.status.value,
            "size": self.size,
            "compressed": self.compressed,
            "encrypted": self.encrypted,
            "file_path": self.file_path,
            "s3_key": self.s3_key,
            "error_message": self.error_message,
            "created_at": self.created_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "base_backup_id": self.base_backup_id,
            "contents": sorted(c.value for c in self.contents),
        }


@dataclass(frozen=True)
class RestoreConfig:
    """Request to replay a backup into a project.

    ``point_in_time`` is accepted only when it is None or equals the
    backup's ``created_at``; snapshots are the only restore points.
    """

    project_id: str
    backup_id: str
    restore_type: BackupType = BackupType.FULL
    overwrite_data: bool = True
    point_in_time: datetime | None = None
    stop_project: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "restore_type", BackupType.parse(self.restore_type))


@dataclass
class RestoreInfo:
    restore_id: str
    project_id: str
    backup_id: str
    status: RestoreStatus = RestoreStatus.RESTORING
    progress: float = 0.0
    error_message: str | None = None
    started_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None

    def advance(self, progress: float) -> None:
        """Move progress forward; never backwards."""
        self.progress = max(self.progress, min(progress, 100.0))

    def snapshot(self) -> RestoreInfo:
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "restore_id": self.restore_id,
            "project_id": self.project_id,
            "backup_id": self.backup_id,
            "status": self.status.value,
            "progress": self.progress,
            "error_message": self.error_message,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


@dataclass
class BackupSchedule:
    """One automated backup policy per (project, backup type).

    ``time`` is "HH:MM" in UTC; hourly schedules use only the minute.
    ``weekday`` applies to weekly schedules (0 = Monday).
    """

    project_id: str
    enabled: bool = True
    frequency: ScheduleFrequency = ScheduleFrequency.DAILY
    time: str = "02:00"
    weekday: int = 0
    backup_type: BackupType = BackupType.FULL
    retention: int = 0
    last_run_at: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        try:
            self.frequency = ScheduleFrequency(str(getattr(self.frequency, "value", self.frequency)).lower())
        except ValueError:
            raise ValidationError(f"unknown schedule frequency: {self.frequency!r}") from None
        self.backup_type = BackupType.parse(self.backup_type)
        if not 0 <= self.weekday <= 6:
            raise ValidationError(f"weekday must be 0-6, got {self.weekday}")

    @property
    def key(self) -> tuple[str, BackupType]:
        return (self.project_id, self.backup_type)

    def snapshot(self) -> BackupSchedule:
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "project_id": self.project_id,
            "enabled": self.enabled,
            "frequency": self.frequency.value,
            "time": self.time,
            "weekday": self.weekday,
            "backup_type": self.backup_type.value,
            "retention": self.retention,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
        }
