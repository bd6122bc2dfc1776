"""
Structured error types for supamanager.

Every failure that crosses a public boundary is a typed error carrying a
category, a retry flag and the minimal context needed to act on it (project,
backup or restore identifier plus the operation name). Callers never receive
a bare message string.

Manifesto:
    - **Typed hierarchy:** one class per failure kind the caller must handle
    - **Explicit retry semantics:** only runtime unavailability is retryable
    - **Rich context:** errors carry identifiers for logging and alerting
    - **Error chaining:** the underlying exception is kept as ``cause``

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────────┐
        │                      SupaManagerError                            │
        │  (category, retryable, retry_after, context, cause)             │
        ├─────────────────────────────────────────────────────────────────┤
        │                                                                  │
        │  ConflictError       NotFoundError        QuotaExceededError     │
        │  (CONFLICT)          (NOT_FOUND)          (QUOTA)                │
        │                           │                                      │
        │                      ServiceNotFoundError                        │
        │                                                                  │
        │  RuntimeUnavailableError   RuntimeOperationError                 │
        │  (RUNTIME, retryable)      (RUNTIME)                             │
        │                                                                  │
        │  ProvisioningError   ImmutableFieldError  InvalidTransitionError │
        │  (PROVISIONING)      (VALIDATION)         (VALIDATION)           │
        │                                                                  │
        │  BackupError ── TypeMismatchError, NoBaseBackupError             │
        │  BackupStorageError   ConfigError   ValidationError              │
        └─────────────────────────────────────────────────────────────────┘

Examples:
    >>> err = QuotaExceededError("storage_size", current=1_010_000, limit=1_000_000)
    >>> err.to_dict()["context"]["resource"]
    'storage_size'

    >>> try:
    ...     raise OSError("daemon gone")
    ... except OSError as e:
    ...     err = ProvisioningError("p1", "create_project", e)
    >>> str(err)
    'provisioning error for project p1 during create_project: daemon gone'

Tags:
    error-handling, exception-hierarchy, retry-logic, provisioning
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Error categories used for routing, alerting and retry decisions."""

    RUNTIME = "RUNTIME"              # Container backend unreachable or failing
    CONFLICT = "CONFLICT"            # Duplicate identity, port clash
    NOT_FOUND = "NOT_FOUND"          # Unknown project, backup, restore, service
    QUOTA = "QUOTA"                  # Resource quota denial
    VALIDATION = "VALIDATION"        # Bad input, illegal transition
    PROVISIONING = "PROVISIONING"    # Wrapped infrastructure failure
    BACKUP = "BACKUP"                # Backup/restore preconditions and failures
    STORAGE = "STORAGE"              # Backup artifact transport
    CONFIG = "CONFIG"                # Missing or invalid settings
    INTERNAL = "INTERNAL"            # Bugs, unexpected state


@dataclass
class ErrorContext:
    """Structured metadata attached to an error.

    Only fields that are set end up in ``to_dict()``; anything that does not
    have a dedicated field goes into ``metadata``.
    """

    project_id: str | None = None
    backup_id: str | None = None
    restore_id: str | None = None
    operation: str | None = None
    service: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {}
        for key in ("project_id", "backup_id", "restore_id", "operation", "service"):
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        result.update(self.metadata)
        return result


class SupaManagerError(Exception):
    """
    Base exception for all supamanager errors.

    Subclasses set ``default_category`` and ``default_retryable``; callers may
    override either per instance. ``with_context()`` adds identifiers after
    construction so the raising site does not need to know all of them.

    Examples:
        >>> err = NotFoundError("project not found").with_context(project_id="p1")
        >>> err.context.project_id
        'p1'
        >>> err.retryable
        False
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        retry_after: int | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.retry_after = retry_after
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> SupaManagerError:
        """Add context to this error (fluent API)."""
        for key, value in kwargs.items():
            if key != "metadata" and hasattr(self.context, key):
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# IDENTITY AND LOOKUP
# =============================================================================


class ConflictError(SupaManagerError):
    """A resource with the same identity (or port) is already registered."""

    default_category = ErrorCategory.CONFLICT


class NotFoundError(SupaManagerError):
    """Unknown project, backup, restore or schedule."""

    default_category = ErrorCategory.NOT_FOUND


class ServiceNotFoundError(NotFoundError):
    """The named service has no running container in the project."""

    def __init__(self, project_id: str, service: str, **kwargs: Any):
        super().__init__(
            f"service '{service}' has no running container in project {project_id}",
            **kwargs,
        )
        self.with_context(project_id=project_id, service=service)


# =============================================================================
# VALIDATION
# =============================================================================


class ValidationError(SupaManagerError):
    """Input that can never succeed as given."""

    default_category = ErrorCategory.VALIDATION


class ImmutableFieldError(ValidationError):
    """An update tried to change identity fields of a project."""

    def __init__(self, project_id: str, fields: list[str], **kwargs: Any):
        joined = ", ".join(sorted(fields))
        super().__init__(f"cannot change immutable field(s) {joined} of project {project_id}", **kwargs)
        self.fields = sorted(fields)
        self.with_context(project_id=project_id, fields=self.fields)


class InvalidTransitionError(ValidationError, ValueError):
    """Raised when a project status transition is not allowed."""

    def __init__(self, current: Any, event: Any, **kwargs: Any):
        current_value = getattr(current, "value", current)
        event_value = getattr(event, "value", event)
        super().__init__(f"event {event_value} is not allowed in status {current_value}", **kwargs)
        self.current = current
        self.event = event


class ConfigError(SupaManagerError):
    """Missing or invalid configuration."""

    default_category = ErrorCategory.CONFIG


# =============================================================================
# QUOTAS
# =============================================================================


class QuotaExceededError(SupaManagerError):
    """An operation would push a resource past its hard limit."""

    default_category = ErrorCategory.QUOTA

    def __init__(self, resource: str, *, current: float, limit: float, **kwargs: Any):
        super().__init__(
            f"quota exceeded for {resource}: {format_amount(current)} would exceed limit {format_amount(limit)}",
            **kwargs,
        )
        self.resource = resource
        self.current = current
        self.limit = limit
        self.with_context(resource=resource, current=current, limit=limit)


# =============================================================================
# RUNTIME
# =============================================================================


class RuntimeUnavailableError(SupaManagerError):
    """The container backend cannot be reached. Retryable with backoff."""

    default_category = ErrorCategory.RUNTIME
    default_retryable = True


class RuntimeOperationError(SupaManagerError):
    """The backend answered but the requested operation failed."""

    default_category = ErrorCategory.RUNTIME


class ProvisioningError(SupaManagerError):
    """Wraps an infrastructure failure with the project and operation."""

    default_category = ErrorCategory.PROVISIONING

    def __init__(self, project_id: str, operation: str, cause: Exception, **kwargs: Any):
        super().__init__(
            f"provisioning error for project {project_id} during {operation}: {cause}",
            cause=cause,
            **kwargs,
        )
        self.project_id = project_id
        self.operation = operation
        self.with_context(project_id=project_id, operation=operation)


# =============================================================================
# BACKUP / RESTORE
# =============================================================================


class BackupError(SupaManagerError):
    """Backup or restore failure."""

    default_category = ErrorCategory.BACKUP


class TypeMismatchError(BackupError):
    """Requested restore type is not contained in the backup."""


class NoBaseBackupError(BackupError):
    """An incremental backup was requested without a completed base."""


class BackupStorageError(SupaManagerError):
    """Backup artifact transport failure."""

    default_category = ErrorCategory.STORAGE


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def format_amount(value: float) -> str:
    """``1000000.0`` -> ``1000000``, ``0.5`` -> ``0.5``."""
    return str(int(value)) if float(value).is_integer() else f"{value:g}"


def is_retryable(error: BaseException) -> bool:
    """Check if an error is retryable."""
    if isinstance(error, SupaManagerError):
        return error.retryable
    return False


def error_payload(error: BaseException) -> dict[str, Any]:
    """Structured payload for any exception, typed or not."""
    if isinstance(error, SupaManagerError):
        return error.to_dict()
    return {
        "error_type": error.__class__.__name__,
        "message": str(error),
        "category": ErrorCategory.INTERNAL.value,
        "retryable": False,
    }


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "SupaManagerError",
    "ConflictError",
    "NotFoundError",
    "ServiceNotFoundError",
    "ValidationError",
    "ImmutableFieldError",
    "InvalidTransitionError",
    "ConfigError",
    "QuotaExceededError",
    "RuntimeUnavailableError",
    "RuntimeOperationError",
    "ProvisioningError",
    "BackupError",
    "TypeMismatchError",
    "NoBaseBackupError",
    "BackupStorageError",
    "format_amount",
    "is_retryable",
    "error_payload",
]
