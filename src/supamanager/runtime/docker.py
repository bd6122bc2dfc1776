"""Docker runtime adapter driven through the ``docker`` CLI.

Every call is one ``docker`` subprocess started with
``asyncio.create_subprocess_exec`` so the event loop never blocks. Resources
are labelled ``supamanager.project=<id>`` (containers also
``supamanager.service=<name>``) which lets teardown and orphan sweeps filter
by label instead of by name.

Error mapping:
    - docker binary missing, daemon unreachable → RuntimeUnavailableError
    - non-zero exit on a mutating command        → RuntimeOperationError
    - "No such ..." on remove                    → success (idempotent)

Example:
    >>> adapter = DockerRuntimeAdapter(docker_host="unix:///var/run/docker.sock")
    >>> health = await adapter.health()
    >>> health.healthy
    True
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import shutil

from supamanager.core.errors import RuntimeOperationError, RuntimeUnavailableError, ValidationError
from supamanager.core.units import parse_size
from supamanager.runtime._base import BaseRuntimeAdapter
from supamanager.runtime._types import (
    LABEL_PROJECT,
    ContainerState,
    ContainerStats,
    ExecResult,
    HealthProbe,
    ProbeKind,
    ProjectResources,
    RuntimeHealth,
    ServiceSpec,
)

logger = logging.getLogger(__name__)

_UNAVAILABLE_MARKERS = (
    "cannot connect to the docker daemon",
    "error during connect",
    "is the docker daemon running",
    "connection refused",
)
_MISSING_MARKERS = ("no such container", "no such volume", "no such network", "not found")


class DockerRuntimeAdapter(BaseRuntimeAdapter):
    """Runs project services as Docker containers on one host."""

    def __init__(
        self,
        *,
        docker_binary: str = "docker",
        docker_host: str | None = None,
        command_timeout: float = 120.0,
    ) -> None:
        self._docker = docker_binary
        self._docker_host = docker_host
        self._timeout = command_timeout

    @property
    def runtime_name(self) -> str:
        return "docker"

    @staticmethod
    def is_docker_available(binary: str = "docker") -> bool:
        return shutil.which(binary) is not None

    # ------------------------------------------------------------------
    # subprocess plumbing
    # ------------------------------------------------------------------

    def _env(self) -> dict[str, str]:
        env = dict(os.environ)
        if self._docker_host:
            env["DOCKER_HOST"] = self._docker_host
        return env

    async def _run_docker(
        self,
        args: list[str],
        *,
        check: bool = True,
        stdin: bytes | None = None,
        timeout: float | None = None,
        merge_stderr: bool = False,
    ) -> tuple[int, bytes, bytes]:
        """Run one docker CLI command; returns (exit_code, stdout, stderr)."""
        cmd = [self._docker, *args]
        logger.debug("docker %s", " ".join(args[:3]))
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT if merge_stderr else asyncio.subprocess.PIPE,
                env=self._env(),
            )
        except FileNotFoundError as exc:
            raise RuntimeUnavailableError(f"docker binary not found: {self._docker}", cause=exc) from exc

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(input=stdin), timeout=timeout or self._timeout,
            )
        except TimeoutError:
            try:
                process.kill()
                await process.wait()
            except ProcessLookupError:
                pass
            raise

        stderr = stderr or b""
        lowered = (stderr if not merge_stderr else stdout).decode(errors="replace").lower()
        if process.returncode != 0 and any(marker in lowered for marker in _UNAVAILABLE_MARKERS):
            raise RuntimeUnavailableError(f"docker daemon unreachable: {lowered.strip()[:200]}")
        if check and process.returncode != 0:
            raise RuntimeOperationError(
                f"docker command failed (exit {process.returncode}): "
                f"{' '.join(args[:2])}: {stderr.decode(errors='replace').strip()}"
            )
        return process.returncode, stdout, stderr

    async def _run_removal(self, args: list[str]) -> None:
        code, _, stderr = await self._run_docker(args, check=False)
        if code != 0 and not any(m in stderr.decode(errors="replace").lower() for m in _MISSING_MARKERS):
            raise RuntimeOperationError(f"docker {' '.join(args[:2])} failed: {stderr.decode(errors='replace').strip()}")

    @staticmethod
    def _lines(output: bytes) -> list[str]:
        return [line.strip() for line in output.decode(errors="replace").splitlines() if line.strip()]

    # ------------------------------------------------------------------
    # networks / volumes
    # ------------------------------------------------------------------

    async def _do_create_network(self, project_id: str, name: str) -> str:
        code, _, stderr = await self._run_docker(
            ["network", "create", "--driver", "bridge", "--label", f"{LABEL_PROJECT}={project_id}", name],
            check=False,
        )
        if code != 0 and "already exists" not in stderr.decode(errors="replace"):
            raise RuntimeOperationError(f"network create failed: {stderr.decode(errors='replace').strip()}")
        return name

    async def _do_remove_network(self, name: str) -> None:
        await self._run_removal(["network", "rm", name])

    async def _do_create_volume(self, project_id: str, name: str) -> str:
        await self._run_docker(["volume", "create", "--label", f"{LABEL_PROJECT}={project_id}", name])
        return name

    async def _do_remove_volume(self, name: str) -> None:
        await self._run_removal(["volume", "rm", "--force", name])

    # ------------------------------------------------------------------
    # containers
    # ------------------------------------------------------------------

    def _run_args(self, spec: ServiceSpec) -> list[str]:
        cmd = ["run", "--detach", "--name", spec.container_name, "--restart", "unless-stopped"]
        if spec.network:
            cmd.extend(["--network", spec.network, "--network-alias", spec.name])
        for key, value in sorted(spec.all_labels().items()):
            cmd.extend(["--label", f"{key}={value}"])
        for key, value in sorted(spec.env.items()):
            cmd.extend(["--env", f"{key}={value}"])
        for port in spec.ports:
            cmd.extend(["--publish", port.to_flag()])
        for mount in spec.volumes:
            cmd.extend(["--volume", mount.to_flag()])
        if spec.cpu_limit:
            cmd.extend(["--cpus", str(spec.cpu_limit)])
        if spec.memory_limit:
            cmd.extend(["--memory", str(spec.memory_limit)])
        probe = spec.healthcheck
        if probe is not None and probe.kind == ProbeKind.COMMAND and probe.command:
            cmd.extend([
                "--health-cmd", " ".join(probe.command),
                "--health-interval", f"{int(probe.interval_seconds)}s",
                "--health-timeout", f"{int(probe.timeout_seconds)}s",
                "--health-retries", str(probe.retries),
            ])
        cmd.append(spec.image)
        cmd.extend(spec.command)
        return cmd

    async def _do_run_container(self, spec: ServiceSpec) -> str:
        _, stdout, _ = await self._run_docker(self._run_args(spec))
        container_id = stdout.decode().strip()
        return container_id[:12]

    async def _do_start_container(self, container_id: str) -> None:
        await self._run_docker(["start", container_id])

    async def _do_stop_container(self, container_id: str, timeout: float) -> None:
        await self._run_docker(["stop", "--time", str(int(timeout)), container_id])

    async def _do_remove_container(self, container_id: str, force: bool) -> None:
        args = ["rm", "--volumes"]
        if force:
            args.append("--force")
        await self._run_removal([*args, container_id])

    async def _do_container_state(self, container_id: str) -> ContainerState:
        code, stdout, _ = await self._run_docker(
            ["inspect", "--format", "{{.State.Status}}", container_id], check=False,
        )
        if code != 0:
            return ContainerState.MISSING
        return ContainerState.parse(stdout.decode())

    async def _do_logs(self, container_id: str, tail: int | None) -> list[str]:
        args = ["logs", "--timestamps"]
        if tail:
            args.extend(["--tail", str(tail)])
        _, stdout, _ = await self._run_docker([*args, container_id], merge_stderr=True)
        return stdout.decode(errors="replace").splitlines()

    async def _do_exec(
        self, container_id: str, cmd: list[str], stdin: bytes | None, timeout: float | None
    ) -> ExecResult:
        args = ["exec"]
        if stdin is not None:
            args.append("--interactive")
        code, stdout, _ = await self._run_docker(
            [*args, container_id, *cmd],
            check=False,
            stdin=stdin,
            timeout=timeout,
            merge_stderr=True,
        )
        return ExecResult(code, stdout)

    async def _do_probe(self, container_id: str, probe: HealthProbe) -> bool:
        code, stdout, _ = await self._run_docker(
            ["inspect", "--format", "{{.State.Status}} {{if .State.Health}}{{.State.Health.Status}}{{end}}", container_id],
            check=False,
        )
        if code != 0:
            return False
        parts = stdout.decode().split()
        if not parts or parts[0] != ContainerState.RUNNING.value:
            return False
        if len(parts) > 1:
            return parts[1] == "healthy"

        if probe.kind == ProbeKind.COMMAND:
            result = await self._do_exec(container_id, list(probe.command), None, probe.timeout_seconds)
            return result.ok
        host_port = await self._mapped_port(container_id, probe.port)
        if host_port is None:
            return False
        return await _check_socket(probe, host_port)

    async def _mapped_port(self, container_id: str, port: int | None) -> int | None:
        if port is None:
            return None
        code, stdout, _ = await self._run_docker(["port", container_id, str(port)], check=False)
        lines = self._lines(stdout)
        if code != 0 or not lines:
            return None
        # "0.0.0.0:54321" or "[::]:54321"
        return int(lines[0].rsplit(":", 1)[-1])

    async def _do_stats(self, container_id: str) -> ContainerStats:
        code, stdout, _ = await self._run_docker(
            ["stats", "--no-stream", "--format", "{{json .}}", container_id], check=False,
        )
        if code != 0 or not stdout.strip():
            return ContainerStats()
        data = json.loads(self._lines(stdout)[0])
        cpu = float(data.get("CPUPerc", "0%").rstrip("%") or 0)
        used = data.get("MemUsage", "0B / 0B").split("/")[0].strip()
        try:
            memory = parse_size(used) or 0
        except ValidationError:
            memory = 0
        return ContainerStats(cpu_percent=cpu, memory_bytes=memory)

    # ------------------------------------------------------------------
    # project scope
    # ------------------------------------------------------------------

    async def _do_list_project_resources(self, project_id: str) -> ProjectResources:
        label = f"label={LABEL_PROJECT}={project_id}"
        _, containers, _ = await self._run_docker(["ps", "--all", "--filter", label, "--format", "{{.ID}}"])
        _, volumes, _ = await self._run_docker(["volume", "ls", "--filter", label, "--format", "{{.Name}}"])
        _, networks, _ = await self._run_docker(["network", "ls", "--filter", label, "--format", "{{.Name}}"])
        return ProjectResources(
            containers=self._lines(containers),
            volumes=self._lines(volumes),
            networks=self._lines(networks),
        )

    async def _do_list_labelled_projects(self) -> set[str]:
        label = f"label={LABEL_PROJECT}"
        fmt = f'{{{{.Label "{LABEL_PROJECT}"}}}}'
        projects: set[str] = set()
        for kind in (["ps", "--all"], ["volume", "ls"], ["network", "ls"]):
            _, stdout, _ = await self._run_docker([*kind, "--filter", label, "--format", fmt])
            projects.update(self._lines(stdout))
        return projects

    async def _do_health(self) -> RuntimeHealth:
        code, stdout, stderr = await self._run_docker(
            ["version", "--format", "{{.Server.Version}}"], check=False, timeout=10,
        )
        if code != 0:
            return RuntimeHealth(healthy=False, runtime="docker", message=stderr.decode(errors="replace").strip())
        return RuntimeHealth(healthy=True, runtime="docker", version=stdout.decode().strip())


async def _check_socket(probe: HealthProbe, port: int) -> bool:
    """TCP connect (and for HTTP, a GET expecting 2xx/3xx) against a published port."""
    try:
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection("127.0.0.1", port), timeout=probe.timeout_seconds,
        )
    except (OSError, TimeoutError):
        return False
    try:
        if probe.kind == ProbeKind.TCP:
            return True
        writer.write(f"GET {probe.path} HTTP/1.0\r\nHost: localhost\r\n\r\n".encode())
        await writer.drain()
        status_line = await asyncio.wait_for(reader.readline(), timeout=probe.timeout_seconds)
        match = re.match(rb"HTTP/\d\.\d (\d{3})", status_line)
        return bool(match) and int(match.group(1)) < 400
    except (OSError, TimeoutError):
        return False
    finally:
        writer.close()

