"""Project status transitions as one table-driven function.

Every status change in the orchestrator goes through :func:`next_status`;
an event that is not in the table for the current status raises
``InvalidTransitionError``. If a legitimate transition is blocked, add it to
``TRANSITIONS`` explicitly rather than branching around the guard.

Transition table::

    CREATING          PROVISIONED       → ACTIVE_HEALTHY
    CREATING          RESUMED           → ACTIVE_HEALTHY
    CREATING          PROVISION_FAILED  → FAILED
    CREATING          PROBE_FAILED      → ACTIVE_UNHEALTHY   (resume never got healthy)
    ACTIVE_HEALTHY    PROBE_FAILED      → ACTIVE_UNHEALTHY
    ACTIVE_UNHEALTHY  PROBE_RECOVERED   → ACTIVE_HEALTHY
    ACTIVE_*          PAUSE             → PAUSED
    ACTIVE_*          RESTORE_FAILED    → ACTIVE_UNHEALTHY
    PAUSED            RESUME            → CREATING
    PAUSED            RESTORE_FAILED    → ACTIVE_UNHEALTHY
    any but DELETING  DELETE            → DELETING

DELETING has no successor: the project record is removed.
"""

from __future__ import annotations

from supamanager.core.errors import InvalidTransitionError
from supamanager.provisioning.models import ProjectEvent, ProjectStatus

_S = ProjectStatus
_E = ProjectEvent

TRANSITIONS: dict[ProjectStatus, dict[ProjectEvent, ProjectStatus]] = {
    _S.CREATING: {
        _E.PROVISIONED: _S.ACTIVE_HEALTHY,
        _E.RESUMED: _S.ACTIVE_HEALTHY,
        _E.PROVISION_FAILED: _S.FAILED,
        _E.PROBE_FAILED: _S.ACTIVE_UNHEALTHY,
        _E.DELETE: _S.DELETING,
    },
    _S.ACTIVE_HEALTHY: {
        _E.PROBE_FAILED: _S.ACTIVE_UNHEALTHY,
        _E.PAUSE: _S.PAUSED,
        _E.RESTORE_FAILED: _S.ACTIVE_UNHEALTHY,
        _E.DELETE: _S.DELETING,
    },
    _S.ACTIVE_UNHEALTHY: {
        _E.PROBE_RECOVERED: _S.ACTIVE_HEALTHY,
        _E.PAUSE: _S.PAUSED,
        _E.RESTORE_FAILED: _S.ACTIVE_UNHEALTHY,
        _E.DELETE: _S.DELETING,
    },
    _S.PAUSED: {
        _E.RESUME: _S.CREATING,
        _E.RESTORE_FAILED: _S.ACTIVE_UNHEALTHY,
        _E.DELETE: _S.DELETING,
    },
    _S.FAILED: {
        _E.DELETE: _S.DELETING,
    },
    _S.DELETING: {},
}


def next_status(current: ProjectStatus, event: ProjectEvent) -> ProjectStatus:
    """Status reached from ``current`` on ``event``.

    Raises:
        InvalidTransitionError: the event is not allowed in ``current``.

    Example:
        >>> next_status(ProjectStatus.CREATING, ProjectEvent.PROVISIONED)
        <ProjectStatus.ACTIVE_HEALTHY: 'ACTIVE_HEALTHY'>
    """
    try:
        return TRANSITIONS[current][event]
    except KeyError:
        raise InvalidTransitionError(current, event) from None


def allowed_events(current: ProjectStatus) -> frozenset[ProjectEvent]:
    return frozenset(TRANSITIONS.get(current, {}))


def can_apply(current: ProjectStatus, event: ProjectEvent) -> bool:
    return event in TRANSITIONS.get(current, {})
