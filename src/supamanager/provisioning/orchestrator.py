"""Project lifecycle orchestrator.

Drives projects through the status graph in
:mod:`supamanager.provisioning.transitions` using a ``RuntimeAdapter`` and
the template renderer, and keeps the injected ``ProjectRegistry`` and the
persistence ``ProjectStore`` consistent.

Manifesto:
    - **One writer per project:** every mutation runs under the project's
      lock; operations on different projects never wait on each other.
    - **Answer fast, finish supervised:** ``create_project`` registers the
      project as CREATING, returns a snapshot, and hands provisioning to the
      ``TaskSupervisor``. Completion is observed by polling.
    - **Clean up on the failing path:** a provisioning failure removes every
      resource labelled with the project before the status becomes FAILED.
    - **Retry only unavailability:** ``RuntimeUnavailableError`` is retried
      with bounded exponential backoff; anything else is terminal.

Architecture::

    create_project ──► quotas.authorize_plan ──► render_project
         │                                            │
         ▼                                            ▼
    registry.insert(CREATING) ── supervisor.spawn ── _provision
                                                      ├── network, volumes
                                                      ├── containers (dependency order)
                                                      ├── _wait_for_healthy (backoff)
                                                      └── PROVISIONED | rollback + FAILED

    health_sweep (periodic) ──► probe every service ──► PROBE_FAILED / PROBE_RECOVERED
"""

from __future__ import annotations

import asyncio
import shutil
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from supamanager.core.errors import (
    ConflictError,
    ImmutableFieldError,
    InvalidTransitionError,
    NotFoundError,
    ProvisioningError,
    RuntimeOperationError,
    RuntimeUnavailableError,
    ServiceNotFoundError,
    error_payload,
)
from supamanager.core.logging import LogContext, get_logger
from supamanager.core.retry import ExponentialBackoff, RetryStrategy, retry_async
from supamanager.core.settings import SupaManagerSettings, get_settings
from supamanager.core.tasks import TaskSupervisor
from supamanager.provisioning.models import (
    ProjectConfig,
    ProjectEvent,
    ProjectInfo,
    ProjectStatus,
    utcnow,
)
from supamanager.provisioning.registry import ProjectRegistry
from supamanager.provisioning.store import REMOVED, InMemoryProjectStore, ProjectStore
from supamanager.provisioning.transitions import next_status
from supamanager.quotas.manager import QuotaManager
from supamanager.quotas.models import QuotaEnforcement
from supamanager.runtime._types import (
    ContainerState,
    ExecResult,
    HealthProbe,
    ProbeKind,
    RuntimeAdapter,
    ServiceSpec,
)
from supamanager.templates.renderer import (
    ProjectManifest,
    changed_services,
    render_project,
    write_manifest,
)

logger = get_logger(__name__)

_SWEEP_SKIP = frozenset({
    ProjectStatus.CREATING,
    ProjectStatus.DELETING,
    ProjectStatus.PAUSED,
    ProjectStatus.FAILED,
})


@dataclass
class SweepReport:
    """Outcome of one health sweep."""

    checked: int = 0
    healthy: list[str] = field(default_factory=list)
    unhealthy: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    errors: dict[str, dict[str, Any]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "checked": self.checked,
            "healthy": list(self.healthy),
            "unhealthy": list(self.unhealthy),
            "skipped": list(self.skipped),
            "errors": dict(self.errors),
        }


class ProjectHold:
    """Operations available while ``ProjectOrchestrator.hold()`` is active.

    The caller already owns the project lock, so these never re-acquire it.
    """

    def __init__(self, orchestrator: ProjectOrchestrator, project_id: str) -> None:
        self._orchestrator = orchestrator
        self.project_id = project_id

    def info(self) -> ProjectInfo:
        return self._orchestrator.registry.require(self.project_id)

    def config(self) -> ProjectConfig:
        config = self._orchestrator.registry.config(self.project_id)
        if config is None:
            raise NotFoundError(f"project {self.project_id} not found").with_context(project_id=self.project_id)
        return config

    def manifest(self) -> ProjectManifest:
        return self._orchestrator._manifest_for(self.project_id)

    async def pause(self) -> ProjectInfo:
        return await self._orchestrator._pause(self.project_id)

    async def resume(self) -> ProjectInfo:
        return await self._orchestrator._resume(self.project_id)

    async def start_stack(self) -> None:
        await self._orchestrator._start_stack(self.project_id, self.manifest())

    async def mark_restore_failed(self, message: str) -> ProjectInfo:
        return await self._orchestrator._mark_restore_failed(self.project_id, message)

    def clear_degraded(self) -> None:
        self._orchestrator.registry.live(self.project_id).degraded_reason = None


class ProjectOrchestrator:
    """Lifecycle state machine for tenant projects.

    Example:
        >>> orchestrator = ProjectOrchestrator(StubRuntimeAdapter())
        >>> info = await orchestrator.create_project(config)
        >>> info.status
        <ProjectStatus.CREATING: 'CREATING'>
        >>> await orchestrator.wait_for_project(config.project_id)
    """

    def __init__(
        self,
        runtime: RuntimeAdapter,
        *,
        registry: ProjectRegistry | None = None,
        store: ProjectStore | None = None,
        quotas: QuotaManager | None = None,
        settings: SupaManagerSettings | None = None,
        supervisor: TaskSupervisor | None = None,
        retry: RetryStrategy | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.runtime = runtime
        self.registry = registry if registry is not None else ProjectRegistry()
        self.store = store if store is not None else InMemoryProjectStore()
        self.quotas = quotas or QuotaManager(
            enforcement=QuotaEnforcement(
                warn_at_percent=self.settings.quota_warn_at_percent,
                block_at_percent=self.settings.quota_block_at_percent,
            ),
            default_plan=self.settings.default_plan,
        )
        self.supervisor = supervisor or TaskSupervisor(self.settings.max_concurrent_operations)
        self.retry = retry or ExponentialBackoff(
            max_retries=self.settings.runtime_max_retries,
            base_delay=self.settings.runtime_retry_base_delay,
            max_delay=self.settings.runtime_retry_max_delay,
            retryable_errors=(RuntimeUnavailableError,),
        )
        self._manifests: dict[str, ProjectManifest] = {}

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    async def _runtime_call(self, func: Any, *args: Any, **kwargs: Any) -> Any:
        """Run one adapter call, retrying ``RuntimeUnavailableError`` with backoff."""

        def _on_retry(attempt: int, error: BaseException, delay: float) -> None:
            logger.warning("runtime.retry", attempt=attempt, delay=round(delay, 3), error=str(error))

        return await retry_async(self.retry, func, *args, on_retry=_on_retry, **kwargs)

    async def _apply(
        self, project_id: str, event: ProjectEvent, *, error_message: str | None = None
    ) -> ProjectInfo:
        """Apply ``event`` to the live record and mirror the result into the store."""
        info = self.registry.live(project_id)
        previous = info.status
        info.status = next_status(previous, event)
        info.updated_at = utcnow()
        if error_message is not None:
            info.error_message = error_message
        await self.store.update_project_status(project_id, info.status.value)
        logger.info(
            "project.status_changed",
            project_id=project_id,
            transition=event.value,
            from_status=previous.value,
            to_status=info.status.value,
        )
        return info

    def _manifest_for(self, project_id: str) -> ProjectManifest:
        manifest = self._manifests.get(project_id)
        if manifest is None:
            config = self.registry.config(project_id)
            if config is None:
                raise NotFoundError(f"project {project_id} not found").with_context(project_id=project_id)
            manifest = render_project(config, self.settings)
            self._manifests[project_id] = manifest
        return manifest

    def _project_dir(self, project_id: str) -> Path:
        return self.settings.projects_dir / project_id

    def _check_ports(self, config: ProjectConfig) -> None:
        used = self.registry.used_ports(exclude=config.project_id)
        clashes = sorted(config.host_ports() & used.keys())
        if clashes:
            owners = sorted({used[port] for port in clashes})
            raise ConflictError(
                f"ports {', '.join(map(str, clashes))} already used by project(s) {', '.join(owners)}"
            ).with_context(project_id=config.project_id, ports=clashes)

    async def _probe_all(self, project_id: str, manifest: ProjectManifest) -> dict[str, bool]:
        info = self.registry.live(project_id)
        checks: dict[str, bool] = {}
        for spec in manifest.services:
            container_id = info.containers.get(spec.name)
            if container_id is None:
                checks[spec.name] = False
                continue
            probe = spec.healthcheck or HealthProbe(kind=ProbeKind.COMMAND, command=("true",))
            checks[spec.name] = await self._runtime_call(self.runtime.probe, container_id, probe)
        return checks

    async def _wait_for_healthy(self, project_id: str, manifest: ProjectManifest) -> bool:
        """Poll every probe with exponential backoff until healthy or timed out."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.health_check_timeout_seconds
        delay = self.settings.health_poll_interval_seconds
        info = self.registry.live(project_id)
        while True:
            info.health_checks = await self._probe_all(project_id, manifest)
            if all(info.health_checks.values()):
                return True
            remaining = deadline - loop.time()
            if remaining <= 0:
                unhealthy = sorted(name for name, ok in info.health_checks.items() if not ok)
                logger.warning("project.health.timeout", project_id=project_id, unhealthy=unhealthy)
                return False
            await asyncio.sleep(min(delay, remaining))
            delay = min(delay * 2, self.settings.health_poll_max_interval_seconds)

    async def _rollback(self, project_id: str) -> None:
        """Remove everything labelled with the project. Errors are logged."""
        try:
            removed = await self._runtime_call(self.runtime.remove_project_resources, project_id)
            logger.info(
                "project.rollback.completed",
                project_id=project_id,
                containers=len(removed.containers),
                volumes=len(removed.volumes),
                networks=len(removed.networks),
            )
        except Exception as exc:
            logger.error("project.rollback.failed", project_id=project_id, error=error_payload(exc))
        shutil.rmtree(self._project_dir(project_id), ignore_errors=True)

    # ------------------------------------------------------------------
    # create
    # ------------------------------------------------------------------

    async def create_project(self, config: ProjectConfig) -> ProjectInfo:
        """Register the project as CREATING and provision it in the background.

        Raises:
            QuotaExceededError: the config does not fit its plan.
            ConflictError: the id is live (registry or store) or a host port
                is used by another project.
        """
        project_id = config.project_id
        async with LogContext(project_id=project_id, operation="create_project"):
            self.quotas.authorize_plan(config)
            manifest = render_project(config, self.settings)

            existing = self.registry.get(project_id)
            if existing is not None:
                if existing.status != ProjectStatus.FAILED:
                    raise ConflictError(f"project {project_id} already exists").with_context(
                        project_id=project_id, status=existing.status.value,
                    )
                await self._discard_failed(project_id)

            try:
                record = await self.store.get_project_by_reference(project_id)
            except NotFoundError:
                record = None
            if record is not None and record.live:
                raise ConflictError(f"project {project_id} already exists in the store").with_context(
                    project_id=project_id, status=record.status,
                )

            self._check_ports(config)

            info = ProjectInfo(
                project_id=project_id,
                project_name=config.project_name,
                status=ProjectStatus.CREATING,
                endpoint=manifest.endpoint,
                db_endpoint=manifest.db_endpoint,
            )
            await self.registry.insert(info, config)
            try:
                await self.store.create_project_record({
                    "ref": project_id,
                    "name": config.project_name,
                    "organization_id": config.organization_id,
                    "region": config.region,
                    "status": ProjectStatus.CREATING.value,
                    "plan": config.plan.value,
                })
            except Exception:
                await self.registry.remove(project_id)
                raise
            self.quotas.assign_plan(project_id, config.plan)
            self._manifests[project_id] = manifest

            self.supervisor.spawn(f"provision:{project_id}", lambda: self._provision(project_id, manifest))
            logger.info("project.create.accepted", services=manifest.service_names())
            return info.snapshot()

    async def _discard_failed(self, project_id: str) -> None:
        """Clean a FAILED leftover so its id can be reused."""
        async with self.registry.locked(project_id):
            info = self.registry.get(project_id)
            if info is None:
                return
            if info.status != ProjectStatus.FAILED:
                raise ConflictError(f"project {project_id} already exists").with_context(project_id=project_id)
            removed = await self._runtime_call(self.runtime.remove_project_resources, project_id)
            if not removed.empty:
                logger.info("project.failed_leftover.cleaned", project_id=project_id)
            await self.registry.remove(project_id)
            self._manifests.pop(project_id, None)
            await self.store.update_project_status(project_id, REMOVED)

    async def _provision(self, project_id: str, manifest: ProjectManifest) -> None:
        async with LogContext(project_id=project_id, operation="provision"):
            async with self.registry.locked(project_id):
                info = self.registry.get(project_id)
                if info is None or info.status != ProjectStatus.CREATING:
                    return
                live = self.registry.live(project_id)
                step = "create_network"
                try:
                    await self._runtime_call(self.runtime.create_network, project_id, manifest.network)
                    step = "create_volume"
                    for volume in manifest.volumes:
                        await self._runtime_call(self.runtime.create_volume, project_id, volume)
                    for spec in manifest.services:
                        step = f"run_container:{spec.name}"
                        live.containers[spec.name] = await self._runtime_call(self.runtime.run_container, spec)
                    step = "wait_for_healthy"
                    if not await self._wait_for_healthy(project_id, manifest):
                        unhealthy = sorted(n for n, ok in live.health_checks.items() if not ok)
                        raise TimeoutError(
                            f"services not healthy after {self.settings.health_check_timeout_seconds:g}s: "
                            f"{', '.join(unhealthy)}"
                        )
                except asyncio.CancelledError:
                    await self._fail_provisioning(project_id, ProvisioningError(
                        project_id, step, RuntimeError("provisioning cancelled"),
                    ))
                    raise
                except Exception as exc:
                    error = exc if isinstance(exc, ProvisioningError) else ProvisioningError(project_id, step, exc)
                    await self._fail_provisioning(project_id, error)
                    return

                write_manifest(manifest, self._project_dir(project_id))
                await self._apply(project_id, ProjectEvent.PROVISIONED)
                logger.info("project.create.completed")

    async def _fail_provisioning(self, project_id: str, error: ProvisioningError) -> None:
        logger.error("project.create.failed", error=error.to_dict())
        await self._rollback(project_id)
        live = self.registry.live(project_id)
        live.containers.clear()
        live.health_checks.clear()
        await self._apply(project_id, ProjectEvent.PROVISION_FAILED, error_message=error.message)

    async def wait_for_project(self, project_id: str, timeout: float | None = None) -> ProjectInfo:
        """Wait for background provisioning of ``project_id`` to finish."""
        name = f"provision:{project_id}"
        if name in self.supervisor.running():
            await asyncio.wait_for(self.supervisor.wait(name), timeout)
        return self.registry.require(project_id)

    # ------------------------------------------------------------------
    # read
    # ------------------------------------------------------------------

    async def get_project_info(self, project_id: str) -> ProjectInfo:
        return self.registry.require(project_id)

    async def list_projects(self) -> list[ProjectInfo]:
        return self.registry.snapshots()

    def get_project_config(self, project_id: str) -> ProjectConfig:
        config = self.registry.config(project_id)
        if config is None:
            raise NotFoundError(f"project {project_id} not found").with_context(project_id=project_id)
        return config

    # ------------------------------------------------------------------
    # update
    # ------------------------------------------------------------------

    async def update_project(self, project_id: str, config: ProjectConfig) -> ProjectInfo:
        """Apply a new config, recreating only services whose rendering changed.

        Raises:
            NotFoundError: unknown project.
            ImmutableFieldError: an identity field differs.
            InvalidTransitionError: the project is CREATING, DELETING or FAILED.
            ProvisioningError: recreating a container failed (the project is
                left ACTIVE_UNHEALTHY).
        """
        async with LogContext(project_id=project_id, operation="update_project"):
            async with self.registry.locked(project_id):
                info = self.registry.live(project_id)
                current = self.get_project_config(project_id)
                changed_identity = current.identity_changes(config)
                if changed_identity:
                    raise ImmutableFieldError(project_id, changed_identity)
                if info.status in (ProjectStatus.CREATING, ProjectStatus.DELETING, ProjectStatus.FAILED):
                    raise InvalidTransitionError(info.status, "UPDATE").with_context(project_id=project_id)

                self.quotas.authorize_plan(config)
                self._check_ports(config)
                old_manifest = self._manifest_for(project_id)
                new_manifest = render_project(config, self.settings)
                changed = changed_services(old_manifest, new_manifest)
                logger.info("project.update.diff", changed=changed)

                if info.status == ProjectStatus.PAUSED:
                    # resume runs whatever is missing with the new specs
                    for name in changed:
                        container_id = info.containers.pop(name, None)
                        if container_id is not None:
                            await self._runtime_call(self.runtime.remove_container, container_id, True)
                else:
                    try:
                        for name in changed:
                            await self._recreate(project_id, new_manifest.service(name))
                    except Exception as exc:
                        error = ProvisioningError(project_id, "update_project", exc)
                        self._commit_config(project_id, config, new_manifest)
                        if info.status == ProjectStatus.ACTIVE_HEALTHY:
                            await self._apply(project_id, ProjectEvent.PROBE_FAILED, error_message=error.message)
                        raise error from exc

                self._commit_config(project_id, config, new_manifest)
                if changed and info.status.is_active:
                    healthy = await self._wait_for_healthy(project_id, new_manifest)
                    await self._reconcile_health(project_id, healthy)
                if config.plan != current.plan:
                    self.quotas.assign_plan(project_id, config.plan)
                write_manifest(new_manifest, self._project_dir(project_id))
                logger.info("project.update.completed", recreated=changed)
                return info.snapshot()

    def _commit_config(self, project_id: str, config: ProjectConfig, manifest: ProjectManifest) -> None:
        info = self.registry.live(project_id)
        self.registry.set_config(project_id, config)
        self._manifests[project_id] = manifest
        info.project_name = config.project_name
        info.endpoint = manifest.endpoint
        info.db_endpoint = manifest.db_endpoint
        info.updated_at = utcnow()

    async def _recreate(self, project_id: str, spec: ServiceSpec) -> None:
        info = self.registry.live(project_id)
        container_id = info.containers.pop(spec.name, None)
        if container_id is not None:
            await self._runtime_call(self.runtime.stop_container, container_id)
            await self._runtime_call(self.runtime.remove_container, container_id, True)
        info.containers[spec.name] = await self._runtime_call(self.runtime.run_container, spec)
        logger.info("project.service.recreated", service=spec.name)

    async def _reconcile_health(self, project_id: str, healthy: bool) -> None:
        info = self.registry.live(project_id)
        if healthy and info.status == ProjectStatus.ACTIVE_UNHEALTHY and info.degraded_reason is None:
            await self._apply(project_id, ProjectEvent.PROBE_RECOVERED)
        elif not healthy and info.status == ProjectStatus.ACTIVE_HEALTHY:
            await self._apply(project_id, ProjectEvent.PROBE_FAILED)

    # ------------------------------------------------------------------
    # pause / resume
    # ------------------------------------------------------------------

    async def pause_project(self, project_id: str) -> ProjectInfo:
        """Stop every container, keep volumes. No-op when already PAUSED."""
        async with LogContext(project_id=project_id, operation="pause_project"):
            async with self.registry.locked(project_id):
                return await self._pause(project_id)

    async def _pause(self, project_id: str) -> ProjectInfo:
        info = self.registry.live(project_id)
        if info.status == ProjectStatus.PAUSED:
            logger.info("project.pause.noop")
            return info.snapshot()
        next_status(info.status, ProjectEvent.PAUSE)
        manifest = self._manifest_for(project_id)
        for name in reversed(manifest.service_names()):
            container_id = info.containers.get(name)
            if container_id is not None:
                await self._runtime_call(self.runtime.stop_container, container_id)
        info.health_checks = {name: False for name in info.containers}
        await self._apply(project_id, ProjectEvent.PAUSE)
        return info.snapshot()

    async def resume_project(self, project_id: str) -> ProjectInfo:
        """Start the containers again and re-probe. No-op when already active."""
        async with LogContext(project_id=project_id, operation="resume_project"):
            async with self.registry.locked(project_id):
                return await self._resume(project_id)

    async def _start_stack(self, project_id: str, manifest: ProjectManifest) -> None:
        """Start every container of the stack, recreating any that were dropped."""
        info = self.registry.live(project_id)
        for spec in manifest.services:
            container_id = info.containers.get(spec.name)
            if container_id is None:
                info.containers[spec.name] = await self._runtime_call(self.runtime.run_container, spec)
            else:
                await self._runtime_call(self.runtime.start_container, container_id)

    async def _resume(self, project_id: str) -> ProjectInfo:
        info = self.registry.live(project_id)
        if info.status.is_active:
            logger.info("project.resume.noop")
            return info.snapshot()
        await self._apply(project_id, ProjectEvent.RESUME)
        manifest = self._manifest_for(project_id)
        try:
            await self._start_stack(project_id, manifest)
        except Exception as exc:
            error = ProvisioningError(project_id, "resume_project", exc)
            await self._apply(project_id, ProjectEvent.PROBE_FAILED, error_message=error.message)
            raise error from exc

        if await self._wait_for_healthy(project_id, manifest):
            info.degraded_reason = None
            await self._apply(project_id, ProjectEvent.RESUMED)
        else:
            await self._apply(project_id, ProjectEvent.PROBE_FAILED)
        return info.snapshot()

    # ------------------------------------------------------------------
    # delete
    # ------------------------------------------------------------------

    async def delete_project(self, project_id: str) -> None:
        """Remove the project and everything labelled with it. Unknown ids succeed."""
        async with LogContext(project_id=project_id, operation="delete_project"):
            if project_id not in self.registry:
                logger.info("project.delete.absent")
                return
            async with self.registry.locked(project_id):
                info = self.registry.get(project_id)
                if info is None:
                    return
                if info.status != ProjectStatus.DELETING:
                    await self._apply(project_id, ProjectEvent.DELETE)
                try:
                    await self._runtime_call(self.runtime.remove_project_resources, project_id)
                except Exception as exc:
                    error = ProvisioningError(project_id, "delete_project", exc)
                    self.registry.live(project_id).error_message = error.message
                    raise error from exc
                shutil.rmtree(self._project_dir(project_id), ignore_errors=True)
                await self.registry.remove(project_id)
                self._manifests.pop(project_id, None)
                self.quotas.drop_project(project_id)
                await self.store.update_project_status(project_id, REMOVED)
                logger.info("project.delete.completed")

    # ------------------------------------------------------------------
    # logs / exec
    # ------------------------------------------------------------------

    async def _running_container(self, project_id: str, service: str) -> str:
        info = self.registry.require(project_id)
        container_id = info.containers.get(service)
        if container_id is None:
            raise ServiceNotFoundError(project_id, service)
        state = await self.runtime.container_state(container_id)
        if state != ContainerState.RUNNING:
            raise ServiceNotFoundError(project_id, service).with_context(state=state.value)
        return container_id

    async def get_logs(
        self, project_id: str, service: str, tail: int = 100, *, timeout: float | None = None
    ) -> list[str]:
        """Last ``tail`` log lines of one running service."""
        container_id = await self._running_container(project_id, service)
        try:
            return await asyncio.wait_for(self.runtime.logs(container_id, tail), timeout)
        except TimeoutError as exc:
            raise RuntimeOperationError(f"get_logs timed out after {timeout}s", cause=exc).with_context(
                project_id=project_id, service=service, operation="get_logs",
            ) from exc

    async def execute_command(
        self,
        project_id: str,
        service: str,
        cmd: list[str],
        *,
        timeout: float | None = None,
        stdin: bytes | None = None,
    ) -> ExecResult:
        """Run ``cmd`` inside one running service; returns combined output."""
        container_id = await self._running_container(project_id, service)
        try:
            return await asyncio.wait_for(self.runtime.exec(container_id, cmd, stdin=stdin), timeout)
        except TimeoutError as exc:
            raise RuntimeOperationError(f"execute_command timed out after {timeout}s", cause=exc).with_context(
                project_id=project_id, service=service, operation="execute_command",
            ) from exc

    # ------------------------------------------------------------------
    # reconciliation
    # ------------------------------------------------------------------

    async def health_sweep(self) -> SweepReport:
        """Probe every settled project; failures stay isolated per project.

        Projects whose lock is held (provisioning, restore, update) are
        skipped for this round rather than waited on.
        """
        report = SweepReport()
        for project_id in self.registry.ids():
            info = self.registry.get(project_id)
            if info is None or info.status in _SWEEP_SKIP:
                continue
            if self.registry.is_locked(project_id):
                report.skipped.append(project_id)
                continue
            report.checked += 1
            try:
                healthy = await self._sweep_project(project_id)
            except Exception as exc:
                report.errors[project_id] = error_payload(exc)
                logger.error("project.sweep.failed", project_id=project_id, error=report.errors[project_id])
                continue
            if healthy is None:
                report.skipped.append(project_id)
            elif healthy:
                report.healthy.append(project_id)
            else:
                report.unhealthy.append(project_id)
        logger.debug("project.sweep.completed", **report.to_dict())
        return report

    async def _sweep_project(self, project_id: str) -> bool | None:
        async with self.registry.locked(project_id):
            info = self.registry.get(project_id)
            if info is None or info.status in _SWEEP_SKIP:
                return None
            live = self.registry.live(project_id)
            manifest = self._manifest_for(project_id)
            live.health_checks = await self._probe_all(project_id, manifest)
            healthy = all(live.health_checks.values())
            cpu = 0.0
            memory = 0
            for container_id in live.containers.values():
                stats = await self._runtime_call(self.runtime.stats, container_id)
                cpu += stats.cpu_percent
                memory += stats.memory_bytes
            live.cpu_usage = cpu
            live.memory_usage = memory
            await self._reconcile_health(project_id, healthy)
            return healthy

    async def cleanup_orphans(self) -> list[str]:
        """Remove runtime resources labelled with ids the registry does not know."""
        labelled = await self._runtime_call(self.runtime.list_labelled_projects)
        orphans = sorted(pid for pid in labelled if pid not in self.registry)
        for project_id in orphans:
            logger.warning("project.orphan.removing", project_id=project_id)
            await self._runtime_call(self.runtime.remove_project_resources, project_id)
        return orphans

    # ------------------------------------------------------------------
    # backup / restore collaboration
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def hold(self, project_id: str) -> AsyncIterator[ProjectHold]:
        """Exclusive hold on one project for backup and restore work."""
        async with self.registry.locked(project_id):
            self.registry.require(project_id)
            yield ProjectHold(self, project_id)

    async def mark_restore_failed(self, project_id: str, message: str) -> ProjectInfo:
        async with self.registry.locked(project_id):
            return await self._mark_restore_failed(project_id, message)

    async def _mark_restore_failed(self, project_id: str, message: str) -> ProjectInfo:
        info = self.registry.live(project_id)
        info.degraded_reason = message
        await self._apply(project_id, ProjectEvent.RESTORE_FAILED, error_message=message)
        return info.snapshot()

    async def shutdown(self) -> None:
        """Let in-flight provisioning finish, then refuse new work."""
        await self.supervisor.shutdown(cancel=False)


__all__ = [
    "ProjectHold",
    "ProjectOrchestrator",
    "SweepReport",
]
