"""Core primitives shared by every subsystem: errors, logging, settings,
retry, per-project locks, supervised tasks and periodic runners."""

from supamanager.core.errors import (
    BackupError,
    BackupStorageError,
    ConfigError,
    ConflictError,
    ErrorCategory,
    ErrorContext,
    ImmutableFieldError,
    InvalidTransitionError,
    NoBaseBackupError,
    NotFoundError,
    ProvisioningError,
    QuotaExceededError,
    RuntimeOperationError,
    RuntimeUnavailableError,
    ServiceNotFoundError,
    SupaManagerError,
    TypeMismatchError,
    ValidationError,
)
from supamanager.core.settings import SupaManagerSettings, clear_settings_cache, get_settings

__all__ = [
    "BackupError",
    "BackupStorageError",
    "ConfigError",
    "ConflictError",
    "ErrorCategory",
    "ErrorContext",
    "ImmutableFieldError",
    "InvalidTransitionError",
    "NoBaseBackupError",
    "NotFoundError",
    "ProvisioningError",
    "QuotaExceededError",
    "RuntimeOperationError",
    "RuntimeUnavailableError",
    "ServiceNotFoundError",
    "SupaManagerError",
    "SupaManagerSettings",
    "TypeMismatchError",
    "ValidationError",
    "clear_settings_cache",
    "get_settings",
]
