"""Runtime adapter protocol and the declarative types it consumes.

Everything the orchestrator and backup engine need from a container backend
goes through :class:`RuntimeAdapter`. The types here are plain frozen
dataclasses so a rendered manifest can be compared, hashed and logged.

Every resource an adapter creates is labelled with ``supamanager.project``
(and containers with ``supamanager.service``) so that removal can always be
bounded to "everything tagged with this project".

.. code-block:: text

    RuntimeAdapter Protocol
    ┌──────────────────────────────────────────────────────────────────┐
    │  create_network / remove_network      project network            │
    │  create_volume  / remove_volume       named data volumes         │
    │  run_container(spec) → container_id   create + start             │
    │  start / stop / remove_container      lifecycle                  │
    │  container_state(id) → ContainerState                            │
    │  logs(id, tail) → lines                                          │
    │  exec(id, cmd, stdin) → ExecResult    combined output bytes      │
    │  probe(id, HealthProbe) → bool        TCP / HTTP / command        │
    │  stats(id) → ContainerStats                                      │
    │  list_project_resources(project_id)                              │
    │  remove_project_resources(project_id) label-bounded teardown     │
    │  health() → RuntimeHealth             backend reachability       │
    └──────────────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol, runtime_checkable

LABEL_PROJECT = "supamanager.project"
LABEL_SERVICE = "supamanager.service"


def _utcnow() -> datetime:
    return datetime.now(UTC)


def resource_name(project_id: str, *parts: str) -> str:
    """Deterministic runtime name, e.g. ``supamanager-p1-db``."""
    return "-".join(("supamanager", project_id, *parts))


class ContainerState(str, Enum):
    """Observed container state."""

    CREATED = "created"
    RUNNING = "running"
    PAUSED = "paused"
    RESTARTING = "restarting"
    EXITED = "exited"
    DEAD = "dead"
    MISSING = "missing"

    @classmethod
    def parse(cls, raw: str) -> ContainerState:
        try:
            return cls(raw.strip().lower())
        except ValueError:
            return cls.MISSING


class ProbeKind(str, Enum):
    COMMAND = "command"
    TCP = "tcp"
    HTTP = "http"


@dataclass(frozen=True)
class PortBinding:
    """Host port -> container port."""

    host_port: int
    container_port: int
    protocol: str = "tcp"

    def to_flag(self) -> str:
        return f"{self.host_port}:{self.container_port}/{self.protocol}"


@dataclass(frozen=True)
class VolumeMount:
    """Named volume mounted into a container."""

    source: str
    target: str
    read_only: bool = False

    def to_flag(self) -> str:
        suffix = ":ro" if self.read_only else ""
        return f"{self.source}:{self.target}{suffix}"


@dataclass(frozen=True)
class HealthProbe:
    """How to decide whether a service is healthy.

    ``command`` probes run inside the container and pass on exit code 0.
    ``tcp`` and ``http`` probes target ``port`` inside the container (the
    Docker adapter runs them through the container's own network namespace).
    """

    kind: ProbeKind = ProbeKind.COMMAND
    command: tuple[str, ...] = ()
    port: int | None = None
    path: str = "/"
    interval_seconds: float = 5.0
    timeout_seconds: float = 5.0
    retries: int = 3


@dataclass(frozen=True)
class ServiceSpec:
    """Declarative description of one service container."""

    name: str
    image: str
    project_id: str
    container_name: str
    env: dict[str, str] = field(default_factory=dict)
    ports: tuple[PortBinding, ...] = ()
    volumes: tuple[VolumeMount, ...] = ()
    network: str | None = None
    command: tuple[str, ...] = ()
    depends_on: tuple[str, ...] = ()
    healthcheck: HealthProbe | None = None
    labels: dict[str, str] = field(default_factory=dict)
    cpu_limit: float | None = None
    memory_limit: int | None = None

    def all_labels(self) -> dict[str, str]:
        merged = dict(self.labels)
        merged[LABEL_PROJECT] = self.project_id
        merged[LABEL_SERVICE] = self.name
        return merged

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "image": self.image,
            "container_name": self.container_name,
            "env": dict(sorted(self.env.items())),
            "ports": [p.to_flag() for p in self.ports],
            "volumes": [v.to_flag() for v in self.volumes],
            "network": self.network,
            "command": list(self.command),
            "depends_on": list(self.depends_on),
            "healthcheck": None if self.healthcheck is None else {
                "kind": self.healthcheck.kind.value,
                "command": list(self.healthcheck.command),
                "port": self.healthcheck.port,
                "path": self.healthcheck.path,
            },
            "cpu_limit": self.cpu_limit,
            "memory_limit": self.memory_limit,
        }


@dataclass(frozen=True)
class ExecResult:
    """Result of running a command inside a container (combined output)."""

    exit_code: int
    output: bytes = b""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def text(self) -> str:
        return self.output.decode("utf-8", errors="replace")


@dataclass(frozen=True)
class ContainerStats:
    """Point-in-time resource usage of one container."""

    cpu_percent: float = 0.0
    memory_bytes: int = 0


@dataclass
class ProjectResources:
    """Everything the runtime holds for one project label."""

    containers: list[str] = field(default_factory=list)
    volumes: list[str] = field(default_factory=list)
    networks: list[str] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not (self.containers or self.volumes or self.networks)


@dataclass
class RuntimeHealth:
    """Result of a runtime adapter health check.

    Example:
        >>> health = RuntimeHealth(healthy=True, runtime="docker", version="24.0.7")
    """

    healthy: bool
    runtime: str
    version: str | None = None
    message: str | None = None
    latency_ms: float | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"healthy": self.healthy, "runtime": self.runtime}
        if self.version:
            d["version"] = self.version
        if self.message:
            d["message"] = self.message
        if self.latency_ms is not None:
            d["latency_ms"] = self.latency_ms
        return d


@runtime_checkable
class RuntimeAdapter(Protocol):
    """Protocol for container runtime backends.

    All methods are async. Any method may raise ``RuntimeUnavailableError``
    when the backend cannot be reached; callers treat that as retryable.
    Other failures surface as ``RuntimeOperationError``.
    """

    @property
    def runtime_name(self) -> str:
        """Unique name for this runtime (e.g. 'docker', 'stub')."""
        ...

    async def create_network(self, project_id: str, name: str) -> str: ...

    async def remove_network(self, name: str) -> None: ...

    async def create_volume(self, project_id: str, name: str) -> str: ...

    async def remove_volume(self, name: str) -> None: ...

    async def run_container(self, spec: ServiceSpec) -> str:
        """Create and start a container; returns its identifier."""
        ...

    async def start_container(self, container_id: str) -> None: ...

    async def stop_container(self, container_id: str, timeout: float = 10.0) -> None: ...

    async def remove_container(self, container_id: str, force: bool = True) -> None: ...

    async def container_state(self, container_id: str) -> ContainerState: ...

    async def logs(self, container_id: str, tail: int | None = None) -> list[str]: ...

    async def exec(
        self,
        container_id: str,
        cmd: list[str],
        *,
        stdin: bytes | None = None,
        timeout: float | None = None,
    ) -> ExecResult: ...

    async def probe(self, container_id: str, probe: HealthProbe) -> bool: ...

    async def stats(self, container_id: str) -> ContainerStats: ...

    async def list_project_resources(self, project_id: str) -> ProjectResources: ...

    async def list_labelled_projects(self) -> set[str]:
        """Project ids that own at least one labelled resource."""
        ...

    async def remove_project_resources(self, project_id: str) -> ProjectResources:
        """Remove every resource labelled with ``project_id``; returns what was removed."""
        ...

    async def health(self) -> RuntimeHealth: ...
