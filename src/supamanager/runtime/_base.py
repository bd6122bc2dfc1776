"""Base runtime adapter with shared lifecycle logic.

Provides ``BaseRuntimeAdapter`` with common patterns (logging, error
wrapping, timeouts, latency timing) and ``StubRuntimeAdapter``, an in-memory
simulation of containers, networks and volumes for unit tests.

Architecture:

    .. code-block:: text

        RuntimeAdapter (Protocol)
              │
              ▼
        BaseRuntimeAdapter
        ├── run_container() → logging + error wrapping → _do_run_container()
        ├── stop/start/remove_container()              → _do_*()
        ├── exec()          → timeout + error wrapping → _do_exec()
        ├── probe()         → False on operation error → _do_probe()
        ├── remove_project_resources() → label-bounded teardown
        └── health()        → latency timing, never raises → _do_health()
              │
        ┌─────┴───────────────────────┐
        ▼                             ▼
    DockerRuntimeAdapter         StubRuntimeAdapter
    (docker CLI)                 (in-memory for tests)

Error mapping:
    ``RuntimeUnavailableError`` raised by a subclass passes through untouched
    (callers retry it). Any other exception becomes ``RuntimeOperationError``
    carrying the operation name.
"""

from __future__ import annotations

import asyncio
import io
import logging
import tarfile
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from supamanager.core.errors import (
    RuntimeOperationError,
    RuntimeUnavailableError,
    SupaManagerError,
)
from supamanager.runtime._types import (
    LABEL_PROJECT,
    ContainerState,
    ContainerStats,
    ExecResult,
    HealthProbe,
    ProjectResources,
    RuntimeHealth,
    ServiceSpec,
    _utcnow,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Base adapter
# ---------------------------------------------------------------------------

class BaseRuntimeAdapter:
    """Base class for runtime adapters.

    Subclasses implement the ``_do_*`` methods. The public methods add
    logging, error conversion and timeouts so every backend behaves the same
    way towards the orchestrator.
    """

    @property
    def runtime_name(self) -> str:
        raise NotImplementedError

    async def _call(self, operation: str, func: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        try:
            return await func(*args)
        except SupaManagerError:
            raise
        except TimeoutError as exc:
            raise RuntimeOperationError(
                f"{operation} timed out on {self.runtime_name}", cause=exc
            ).with_context(operation=operation) from exc
        except Exception as exc:
            logger.error("%s failed on %s: %s", operation, self.runtime_name, exc)
            raise RuntimeOperationError(
                f"{operation} failed on {self.runtime_name}: {exc}", cause=exc
            ).with_context(operation=operation) from exc

    # --- networks / volumes ---

    async def create_network(self, project_id: str, name: str) -> str:
        logger.info("Creating network %s for project %s", name, project_id)
        return await self._call("create_network", self._do_create_network, project_id, name)

    async def remove_network(self, name: str) -> None:
        logger.info("Removing network %s", name)
        await self._call("remove_network", self._do_remove_network, name)

    async def create_volume(self, project_id: str, name: str) -> str:
        logger.info("Creating volume %s for project %s", name, project_id)
        return await self._call("create_volume", self._do_create_volume, project_id, name)

    async def remove_volume(self, name: str) -> None:
        logger.info("Removing volume %s", name)
        await self._call("remove_volume", self._do_remove_volume, name)

    # --- containers ---

    async def run_container(self, spec: ServiceSpec) -> str:
        logger.info(
            "Starting container %s (service=%s, image=%s) on %s",
            spec.container_name, spec.name, spec.image, self.runtime_name,
        )
        container_id = await self._call("run_container", self._do_run_container, spec)
        logger.info("Container %s started: id=%s", spec.container_name, container_id)
        return container_id

    async def start_container(self, container_id: str) -> None:
        logger.info("Starting container %s", container_id)
        await self._call("start_container", self._do_start_container, container_id)

    async def stop_container(self, container_id: str, timeout: float = 10.0) -> None:
        logger.info("Stopping container %s", container_id)
        await self._call("stop_container", self._do_stop_container, container_id, timeout)

    async def remove_container(self, container_id: str, force: bool = True) -> None:
        logger.info("Removing container %s", container_id)
        await self._call("remove_container", self._do_remove_container, container_id, force)

    async def container_state(self, container_id: str) -> ContainerState:
        return await self._call("container_state", self._do_container_state, container_id)

    async def logs(self, container_id: str, tail: int | None = None) -> list[str]:
        return await self._call("logs", self._do_logs, container_id, tail)

    async def exec(
        self,
        container_id: str,
        cmd: list[str],
        *,
        stdin: bytes | None = None,
        timeout: float | None = None,
    ) -> ExecResult:
        logger.debug("Exec in %s: %s", container_id, cmd[:1])

        async def _run() -> ExecResult:
            if timeout is None:
                return await self._do_exec(container_id, cmd, stdin, timeout)
            return await asyncio.wait_for(self._do_exec(container_id, cmd, stdin, timeout), timeout)

        return await self._call("exec", _run)

    async def probe(self, container_id: str, probe: HealthProbe) -> bool:
        """True when the service answers its probe; operation errors count as unhealthy."""
        try:
            return await self._call("probe", self._do_probe, container_id, probe)
        except RuntimeOperationError as exc:
            logger.debug("Probe failed for %s: %s", container_id, exc)
            return False

    async def stats(self, container_id: str) -> ContainerStats:
        return await self._call("stats", self._do_stats, container_id)

    # --- project scope ---

    async def list_project_resources(self, project_id: str) -> ProjectResources:
        return await self._call("list_project_resources", self._do_list_project_resources, project_id)

    async def list_labelled_projects(self) -> set[str]:
        return await self._call("list_labelled_projects", self._do_list_labelled_projects)

    async def remove_project_resources(self, project_id: str) -> ProjectResources:
        """Remove containers, then volumes, then networks labelled with the project."""
        resources = await self.list_project_resources(project_id)
        logger.info(
            "Removing resources for project %s: %d containers, %d volumes, %d networks",
            project_id, len(resources.containers), len(resources.volumes), len(resources.networks),
        )
        for container_id in resources.containers:
            await self.remove_container(container_id, force=True)
        for volume in resources.volumes:
            await self.remove_volume(volume)
        for network in resources.networks:
            await self.remove_network(network)
        return resources

    async def health(self) -> RuntimeHealth:
        """Health check with latency timing. Never raises."""
        start = _utcnow()
        try:
            result = await self._do_health()
            elapsed = (_utcnow() - start).total_seconds() * 1000
            return RuntimeHealth(
                healthy=result.healthy,
                runtime=self.runtime_name,
                version=result.version,
                message=result.message,
                latency_ms=elapsed,
            )
        except Exception as exc:
            elapsed = (_utcnow() - start).total_seconds() * 1000
            return RuntimeHealth(
                healthy=False,
                runtime=self.runtime_name,
                message=f"Health check failed: {exc}",
                latency_ms=elapsed,
            )

    # --- Abstract methods for subclasses ---

    async def _do_create_network(self, project_id: str, name: str) -> str:
        raise NotImplementedError

    async def _do_remove_network(self, name: str) -> None:
        raise NotImplementedError

    async def _do_create_volume(self, project_id: str, name: str) -> str:
        raise NotImplementedError

    async def _do_remove_volume(self, name: str) -> None:
        raise NotImplementedError

    async def _do_run_container(self, spec: ServiceSpec) -> str:
        raise NotImplementedError

    async def _do_start_container(self, container_id: str) -> None:
        raise NotImplementedError

    async def _do_stop_container(self, container_id: str, timeout: float) -> None:
        raise NotImplementedError

    async def _do_remove_container(self, container_id: str, force: bool) -> None:
        raise NotImplementedError

    async def _do_container_state(self, container_id: str) -> ContainerState:
        raise NotImplementedError

    async def _do_logs(self, container_id: str, tail: int | None) -> list[str]:
        raise NotImplementedError

    async def _do_exec(
        self, container_id: str, cmd: list[str], stdin: bytes | None, timeout: float | None
    ) -> ExecResult:
        raise NotImplementedError

    async def _do_probe(self, container_id: str, probe: HealthProbe) -> bool:
        raise NotImplementedError

    async def _do_stats(self, container_id: str) -> ContainerStats:
        return ContainerStats()

    async def _do_list_project_resources(self, project_id: str) -> ProjectResources:
        raise NotImplementedError

    async def _do_list_labelled_projects(self) -> set[str]:
        raise NotImplementedError

    async def _do_health(self) -> RuntimeHealth:
        raise NotImplementedError


# ---------------------------------------------------------------------------
# Stub adapter for testing
# ---------------------------------------------------------------------------

DATABASE_FILE = "database.sql"


@dataclass
class StubFile:
    data: bytes
    mtime: datetime


@dataclass
class StubVolume:
    name: str
    project_id: str
    files: dict[str, StubFile] = field(default_factory=dict)

    @property
    def size(self) -> int:
        return sum(len(f.data) for f in self.files.values())


@dataclass
class _StubContainer:
    container_id: str
    spec: ServiceSpec
    state: ContainerState = ContainerState.RUNNING
    logs: list[str] = field(default_factory=list)
    probes: int = 0
    created_at: datetime = field(default_factory=_utcnow)


ExecHandler = Callable[["StubRuntimeAdapter", _StubContainer, list[str], "bytes | None"], ExecResult]


class StubRuntimeAdapter(BaseRuntimeAdapter):
    """In-memory runtime adapter for unit tests.

    Containers, networks and volumes live in dictionaries. Volumes hold a
    tiny file tree (path -> bytes + mtime) so dump/restore and archive
    commands can be simulated deterministically:

    .. code-block:: text

        pg_dump ...            → contents of database.sql in the first mount
        psql (stdin)           → replaces database.sql
        psql -c QUERY          → query_results[QUERY] (default "0")
        tar -cf - [--newer-mtime=ISO] -C DIR .   → tar stream of DIR
        tar -xf - -C DIR       → extract stdin into DIR
        find DIR -mindepth 1 -delete → empty DIR
        du -sb DIR             → byte size of DIR
        pg_isready / echo / true / cat

    Inject failures:
        adapter.unavailable = True          → every call raises RuntimeUnavailableError
        adapter.fail_run_for = {"auth"}     → run_container fails for that service
        adapter.set_service_health(p, s, False) → probes for that service fail
        adapter.warmup_probes = 2           → each container fails its first 2 probes

    Track usage:
        adapter.calls            → list of (operation, *args) tuples
        adapter.call_count(op)   → number of calls for one operation
    """

    def __init__(self, *, warmup_probes: int = 0, clock: Callable[[], datetime] | None = None) -> None:
        self.networks: dict[str, str] = {}
        self.volumes: dict[str, StubVolume] = {}
        self.containers: dict[str, _StubContainer] = {}
        self.calls: list[tuple[Any, ...]] = []
        self.unhealthy: set[tuple[str, str]] = set()
        self.fail_run_for: set[str] = set()
        self.unavailable = False
        self.warmup_probes = warmup_probes
        self.query_results: dict[str, str] = {}
        self.container_stats: dict[str, ContainerStats] = {}
        self.clock = clock or _utcnow
        self.exec_handlers: dict[str, ExecHandler] = {
            "pg_dump": _exec_pg_dump,
            "pg_dumpall": _exec_pg_dump,
            "psql": _exec_psql,
            "tar": _exec_tar,
            "du": _exec_du,
            "find": _exec_find,
            "pg_isready": lambda a, c, cmd, stdin: ExecResult(0, b"accepting connections\n"),
            "echo": lambda a, c, cmd, stdin: ExecResult(0, (" ".join(cmd[1:]) + "\n").encode()),
            "true": lambda a, c, cmd, stdin: ExecResult(0),
            "cat": lambda a, c, cmd, stdin: ExecResult(0, stdin or b""),
        }

    @property
    def runtime_name(self) -> str:
        return "stub"

    # --- test helpers ---

    def call_count(self, operation: str) -> int:
        return sum(1 for call in self.calls if call[0] == operation)

    def set_service_health(self, project_id: str, service: str, healthy: bool) -> None:
        if healthy:
            self.unhealthy.discard((project_id, service))
        else:
            self.unhealthy.add((project_id, service))

    def write_file(self, volume: str, path: str, data: bytes, mtime: datetime | None = None) -> None:
        self.volumes[volume].files[path.lstrip("/")] = StubFile(data, mtime or self.clock())

    def read_file(self, volume: str, path: str) -> bytes:
        return self.volumes[volume].files[path.lstrip("/")].data

    def files(self, volume: str) -> dict[str, bytes]:
        return {path: f.data for path, f in sorted(self.volumes[volume].files.items())}

    def container_for(self, project_id: str, service: str) -> _StubContainer | None:
        for container in self.containers.values():
            if container.spec.project_id == project_id and container.spec.name == service:
                return container
        return None

    def _record(self, *call: Any) -> None:
        if self.unavailable:
            raise RuntimeUnavailableError("stub runtime unavailable")
        self.calls.append(call)

    def _container(self, container_id: str) -> _StubContainer:
        container = self.containers.get(container_id)
        if container is None:
            raise RuntimeOperationError(f"No such container: {container_id}")
        return container

    # --- BaseRuntimeAdapter hooks ---

    async def _do_create_network(self, project_id: str, name: str) -> str:
        self._record("create_network", project_id, name)
        self.networks[name] = project_id
        return name

    async def _do_remove_network(self, name: str) -> None:
        self._record("remove_network", name)
        self.networks.pop(name, None)

    async def _do_create_volume(self, project_id: str, name: str) -> str:
        self._record("create_volume", project_id, name)
        self.volumes.setdefault(name, StubVolume(name=name, project_id=project_id))
        return name

    async def _do_remove_volume(self, name: str) -> None:
        self._record("remove_volume", name)
        self.volumes.pop(name, None)

    async def _do_run_container(self, spec: ServiceSpec) -> str:
        self._record("run_container", spec.project_id, spec.name)
        if spec.name in self.fail_run_for:
            raise RuntimeOperationError(f"stub: run failure injected for {spec.name}")
        if spec.network and spec.network not in self.networks:
            raise RuntimeOperationError(f"network {spec.network} not found")
        for mount in spec.volumes:
            if mount.source not in self.volumes:
                raise RuntimeOperationError(f"volume {mount.source} not found")
        bound = {
            p.host_port
            for c in self.containers.values()
            if c.state == ContainerState.RUNNING
            for p in c.spec.ports
        }
        for port in spec.ports:
            if port.host_port in bound:
                raise RuntimeOperationError(f"port is already allocated: {port.host_port}")
        container_id = uuid.uuid4().hex[:12]
        self.containers[container_id] = _StubContainer(
            container_id=container_id,
            spec=spec,
            logs=[f"[{spec.name}] starting", f"[{spec.name}] ready"],
        )
        return container_id

    async def _do_start_container(self, container_id: str) -> None:
        self._record("start_container", container_id)
        container = self._container(container_id)
        container.state = ContainerState.RUNNING
        container.probes = 0
        container.logs.append(f"[{container.spec.name}] started")

    async def _do_stop_container(self, container_id: str, timeout: float) -> None:
        self._record("stop_container", container_id)
        container = self._container(container_id)
        container.state = ContainerState.EXITED
        container.logs.append(f"[{container.spec.name}] stopped")

    async def _do_remove_container(self, container_id: str, force: bool) -> None:
        self._record("remove_container", container_id)
        self.containers.pop(container_id, None)

    async def _do_container_state(self, container_id: str) -> ContainerState:
        self._record("container_state", container_id)
        container = self.containers.get(container_id)
        return container.state if container else ContainerState.MISSING

    async def _do_logs(self, container_id: str, tail: int | None) -> list[str]:
        self._record("logs", container_id)
        lines = list(self._container(container_id).logs)
        return lines[-tail:] if tail else lines

    async def _do_exec(
        self, container_id: str, cmd: list[str], stdin: bytes | None, timeout: float | None
    ) -> ExecResult:
        self._record("exec", container_id, tuple(cmd))
        container = self._container(container_id)
        if container.state != ContainerState.RUNNING:
            raise RuntimeOperationError(f"container {container_id} is not running")
        handler = self.exec_handlers.get(cmd[0]) if cmd else None
        if handler is None:
            return ExecResult(127, f"exec: {cmd[0] if cmd else ''}: not found\n".encode())
        return handler(self, container, cmd, stdin)

    async def _do_probe(self, container_id: str, probe: HealthProbe) -> bool:
        self._record("probe", container_id)
        container = self.containers.get(container_id)
        if container is None or container.state != ContainerState.RUNNING:
            return False
        container.probes += 1
        if container.probes <= self.warmup_probes:
            return False
        return (container.spec.project_id, container.spec.name) not in self.unhealthy

    async def _do_stats(self, container_id: str) -> ContainerStats:
        self._record("stats", container_id)
        container = self._container(container_id)
        if container.state != ContainerState.RUNNING:
            return ContainerStats()
        return self.container_stats.get(container.spec.name, ContainerStats(1.0, 64 * 1024 * 1024))

    async def _do_list_project_resources(self, project_id: str) -> ProjectResources:
        self._record("list_project_resources", project_id)
        return ProjectResources(
            containers=[
                cid for cid, c in self.containers.items()
                if c.spec.all_labels().get(LABEL_PROJECT) == project_id
            ],
            volumes=[name for name, v in self.volumes.items() if v.project_id == project_id],
            networks=[name for name, owner in self.networks.items() if owner == project_id],
        )

    async def _do_list_labelled_projects(self) -> set[str]:
        self._record("list_labelled_projects")
        projects = {c.spec.project_id for c in self.containers.values()}
        projects.update(v.project_id for v in self.volumes.values())
        projects.update(self.networks.values())
        return projects

    async def _do_health(self) -> RuntimeHealth:
        if self.unavailable:
            return RuntimeHealth(healthy=False, runtime="stub", message="Stub: unavailable")
        return RuntimeHealth(healthy=True, runtime="stub", version="0.0.0-stub")

    # --- filesystem helpers for exec handlers ---

    def resolve_path(self, container: _StubContainer, path: str) -> tuple[StubVolume, str]:
        """Map an absolute container path onto (volume, relative prefix)."""
        best = None
        for mount in container.spec.volumes:
            target = mount.target.rstrip("/")
            if path == target or path.startswith(target + "/"):
                if best is None or len(target) > len(best.target.rstrip("/")):
                    best = mount
        if best is None:
            raise RuntimeOperationError(f"{path} is not on a mounted volume")
        relative = path[len(best.target.rstrip("/")):].strip("/")
        return self.volumes[best.source], relative


def _primary_volume(adapter: StubRuntimeAdapter, container: _StubContainer) -> StubVolume:
    if not container.spec.volumes:
        raise RuntimeOperationError(f"{container.spec.name} has no data volume")
    return adapter.volumes[container.spec.volumes[0].source]


def _exec_pg_dump(adapter: StubRuntimeAdapter, container: _StubContainer, cmd: list[str], stdin: bytes | None) -> ExecResult:
    volume = _primary_volume(adapter, container)
    stored = volume.files.get(DATABASE_FILE)
    return ExecResult(0, stored.data if stored else b"")


def _exec_psql(adapter: StubRuntimeAdapter, container: _StubContainer, cmd: list[str], stdin: bytes | None) -> ExecResult:
    if "-c" in cmd:
        query = cmd[cmd.index("-c") + 1]
        return ExecResult(0, (adapter.query_results.get(query, "0") + "\n").encode())
    volume = _primary_volume(adapter, container)
    volume.files[DATABASE_FILE] = StubFile(stdin or b"", adapter.clock())
    return ExecResult(0, b"")


def _flag_value(cmd: list[str], flag: str) -> str | None:
    if flag in cmd:
        return cmd[cmd.index(flag) + 1]
    prefix = flag + "="
    for arg in cmd:
        if arg.startswith(prefix):
            return arg[len(prefix):]
    return None


def _exec_tar(adapter: StubRuntimeAdapter, container: _StubContainer, cmd: list[str], stdin: bytes | None) -> ExecResult:
    directory = _flag_value(cmd, "-C") or "/"
    volume, prefix = adapter.resolve_path(container, directory)
    base = f"{prefix}/" if prefix else ""
    if "-cf" in cmd:
        newer = _flag_value(cmd, "--newer-mtime")
        threshold = datetime.fromisoformat(newer) if newer else None
        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w") as archive:
            for path, stub_file in sorted(volume.files.items()):
                if not path.startswith(base):
                    continue
                if threshold is not None and stub_file.mtime <= threshold:
                    continue
                info = tarfile.TarInfo(name=path[len(base):])
                info.size = len(stub_file.data)
                info.mtime = int(stub_file.mtime.timestamp())
                archive.addfile(info, io.BytesIO(stub_file.data))
        return ExecResult(0, buffer.getvalue())
    if "-xf" in cmd:
        with tarfile.open(fileobj=io.BytesIO(stdin or b""), mode="r") as archive:
            for member in archive.getmembers():
                if not member.isfile():
                    continue
                extracted = archive.extractfile(member)
                data = extracted.read() if extracted else b""
                volume.files[base + member.name.removeprefix("./")] = StubFile(
                    data, datetime.fromtimestamp(member.mtime, UTC)
                )
        return ExecResult(0, b"")
    return ExecResult(2, b"tar: unsupported mode\n")


def _exec_du(adapter: StubRuntimeAdapter, container: _StubContainer, cmd: list[str], stdin: bytes | None) -> ExecResult:
    directory = cmd[-1]
    volume, prefix = adapter.resolve_path(container, directory)
    base = f"{prefix}/" if prefix else ""
    size = sum(len(f.data) for p, f in volume.files.items() if p.startswith(base))
    return ExecResult(0, f"{size}\t{directory}\n".encode())


def _exec_find(adapter: StubRuntimeAdapter, container: _StubContainer, cmd: list[str], stdin: bytes | None) -> ExecResult:
    if "-delete" not in cmd:
        return ExecResult(2, b"find: only -delete is simulated\n")
    volume, prefix = adapter.resolve_path(container, cmd[1])
    base = f"{prefix}/" if prefix else ""
    for path in [p for p in volume.files if p.startswith(base)]:
        del volume.files[path]
    return ExecResult(0, b"")
