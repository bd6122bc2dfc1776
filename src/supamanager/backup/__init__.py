"""Backup and restore: artifact storage, encoding, schedules and the engine."""

from supamanager.backup.codec import ArtifactCodec, build_bundle, read_bundle
from supamanager.backup.engine import BackupEngine
from supamanager.backup.models import (
    BackupConfig,
    BackupContent,
    BackupInfo,
    BackupSchedule,
    BackupStatus,
    BackupType,
    RestoreConfig,
    RestoreInfo,
    RestoreStatus,
    ScheduleFrequency,
)
from supamanager.backup.schedules import is_due, latest_slot, next_run, parse_time
from supamanager.backup.storage import BackupStorage, LocalBackupStorage, S3BackupStorage

__all__ = [
    "ArtifactCodec",
    "BackupConfig",
    "BackupContent",
    "BackupEngine",
    "BackupInfo",
    "BackupSchedule",
    "BackupStatus",
    "BackupStorage",
    "BackupType",
    "LocalBackupStorage",
    "RestoreConfig",
    "RestoreInfo",
    "RestoreStatus",
    "S3BackupStorage",
    "ScheduleFrequency",
    "build_bundle",
    "is_due",
    "latest_slot",
    "next_run",
    "parse_time",
    "read_bundle",
]
