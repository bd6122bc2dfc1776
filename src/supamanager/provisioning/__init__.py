"""Project lifecycle: status graph, registry, persistence store.

The orchestrator lives in :mod:`supamanager.provisioning.orchestrator` and is
imported from there directly. The package root must not import it: the
template renderer imports the models from here.
"""

from supamanager.provisioning.models import (
    IDENTITY_FIELDS,
    ProjectConfig,
    ProjectEvent,
    ProjectInfo,
    ProjectStatus,
)
from supamanager.provisioning.registry import ProjectRegistry
from supamanager.provisioning.store import REMOVED, InMemoryProjectStore, ProjectRecord, ProjectStore
from supamanager.provisioning.transitions import TRANSITIONS, allowed_events, can_apply, next_status

__all__ = [
    "IDENTITY_FIELDS",
    "REMOVED",
    "TRANSITIONS",
    "InMemoryProjectStore",
    "ProjectConfig",
    "ProjectEvent",
    "ProjectInfo",
    "ProjectRecord",
    "ProjectRegistry",
    "ProjectStatus",
    "ProjectStore",
    "allowed_events",
    "can_apply",
    "next_status",
]
