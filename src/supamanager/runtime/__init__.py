"""Runtime adapters for project containers.

Architecture:

    .. code-block:: text

        supamanager.runtime
        ├── __init__.py        ← Public API (this file)
        ├── _types.py          ← RuntimeAdapter protocol + ServiceSpec & friends
        ├── _base.py           ← BaseRuntimeAdapter + StubRuntimeAdapter
        ├── docker.py          ← DockerRuntimeAdapter (docker CLI)
        └── mock_adapters.py   ← failure-injection doubles for tests

    The orchestrator and backup engine only ever see ``RuntimeAdapter``;
    which backend sits behind it is decided by whoever wires the service.
"""

from supamanager.runtime._base import BaseRuntimeAdapter, StubRuntimeAdapter
from supamanager.runtime._types import (
    LABEL_PROJECT,
    LABEL_SERVICE,
    ContainerState,
    ContainerStats,
    ExecResult,
    HealthProbe,
    PortBinding,
    ProbeKind,
    ProjectResources,
    RuntimeAdapter,
    RuntimeHealth,
    ServiceSpec,
    VolumeMount,
    resource_name,
)
from supamanager.runtime.docker import DockerRuntimeAdapter

__all__ = [
    "LABEL_PROJECT",
    "LABEL_SERVICE",
    "BaseRuntimeAdapter",
    "ContainerState",
    "ContainerStats",
    "DockerRuntimeAdapter",
    "ExecResult",
    "HealthProbe",
    "PortBinding",
    "ProbeKind",
    "ProjectResources",
    "RuntimeAdapter",
    "RuntimeHealth",
    "ServiceSpec",
    "StubRuntimeAdapter",
    "VolumeMount",
    "resource_name",
]
