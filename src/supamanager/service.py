"""Process wiring for a long-running supamanager instance.

``build_service`` assembles the collaborators from settings; ``ServiceHost``
owns them plus the three periodic loops:

.. code-block:: text

    health-sweep       orchestrator.health_sweep     health_sweep_interval_seconds
    quota-recompute    quotas.recompute_all          quota_check_interval_seconds
    backup-schedules   run_due_schedules + expiry    schedule_tick_seconds

Example:
    >>> async with build_service() as host:
    ...     info = await host.orchestrator.create_project(config)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from supamanager.backup.engine import BackupEngine
from supamanager.backup.storage import BackupStorage, LocalBackupStorage, S3BackupStorage
from supamanager.core.logging import get_logger
from supamanager.core.scheduling import PeriodicRunner
from supamanager.core.settings import SupaManagerSettings, get_settings
from supamanager.provisioning.orchestrator import ProjectOrchestrator
from supamanager.provisioning.registry import ProjectRegistry
from supamanager.provisioning.store import ProjectStore
from supamanager.quotas.manager import QuotaManager
from supamanager.quotas.models import QuotaEnforcement, QuotaStatus
from supamanager.quotas.usage import RuntimeUsageCollector
from supamanager.runtime._types import RuntimeAdapter
from supamanager.runtime.docker import DockerRuntimeAdapter

logger = get_logger(__name__)


@dataclass
class ServiceHost:
    settings: SupaManagerSettings
    runtime: RuntimeAdapter
    orchestrator: ProjectOrchestrator
    backups: BackupEngine
    quotas: QuotaManager
    runners: dict[str, PeriodicRunner] = field(default_factory=dict)

    async def _schedule_tick(self) -> None:
        await self.backups.run_due_schedules()
        await self.backups.expire_backups()

    async def start(self) -> None:
        """Start the periodic loops on the running event loop."""
        loops = (
            ("health-sweep", self.orchestrator.health_sweep, self.settings.health_sweep_interval_seconds),
            ("quota-recompute", self.quotas.recompute_all, self.settings.quota_check_interval_seconds),
            ("backup-schedules", self._schedule_tick, self.settings.schedule_tick_seconds),
        )
        for name, callback, interval in loops:
            runner = self.runners.get(name) or PeriodicRunner(name)
            self.runners[name] = runner
            runner.start(callback, interval)
        logger.info("service.started", runtime=self.runtime.runtime_name, loops=sorted(self.runners))

    async def stop(self) -> None:
        """Stop the loops, then let in-flight provisioning, backups and restores finish."""
        for runner in self.runners.values():
            await runner.stop()
        await self.orchestrator.shutdown()
        logger.info("service.stopped")

    def health(self) -> dict[str, Any]:
        return {
            "projects": len(self.orchestrator.registry),
            "supervisor": self.orchestrator.supervisor.stats().to_dict(),
            "loops": {name: runner.health() for name, runner in self.runners.items()},
        }

    async def __aenter__(self) -> ServiceHost:
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.stop()


def build_service(
    settings: SupaManagerSettings | None = None,
    *,
    runtime: RuntimeAdapter | None = None,
    store: ProjectStore | None = None,
    storage: BackupStorage | None = None,
    remote: BackupStorage | None = None,
) -> ServiceHost:
    """Assemble a ``ServiceHost``; any collaborator can be injected."""
    settings = settings or get_settings()
    if runtime is None:
        runtime = DockerRuntimeAdapter(
            docker_binary=settings.docker_binary,
            docker_host=settings.docker_host,
            command_timeout=settings.runtime_command_timeout_seconds,
        )

    registry = ProjectRegistry()
    quotas = QuotaManager(
        enforcement=QuotaEnforcement(
            warn_at_percent=settings.quota_warn_at_percent,
            block_at_percent=settings.quota_block_at_percent,
            pause_project=settings.quota_pause_on_exceeded,
        ),
        default_plan=settings.default_plan,
    )
    orchestrator = ProjectOrchestrator(
        runtime, registry=registry, store=store, quotas=quotas, settings=settings,
    )

    if storage is None:
        storage = LocalBackupStorage(settings.backup_dir)
    if remote is None and settings.s3_bucket:
        remote = S3BackupStorage(
            settings.s3_bucket,
            settings.s3_prefix,
            region=settings.s3_region,
            endpoint_url=settings.s3_endpoint_url,
        )
    backups = BackupEngine(orchestrator, storage, remote=remote)

    quotas.collector = RuntimeUsageCollector(
        runtime, registry, backups.completed_backups, timeout=settings.runtime_command_timeout_seconds,
    )

    async def _pause_over_quota(project_id: str, status: QuotaStatus) -> None:
        logger.warning("service.pausing_over_quota", project_id=project_id, errors=status.errors)
        await orchestrator.pause_project(project_id)

    quotas.on_exceeded = _pause_over_quota
    return ServiceHost(
        settings=settings,
        runtime=runtime,
        orchestrator=orchestrator,
        backups=backups,
        quotas=quotas,
    )
