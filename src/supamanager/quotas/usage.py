"""Usage collectors: where ``QuotaManager.update_quota_usage`` reads from.

``RuntimeUsageCollector`` asks the running project itself:

.. code-block:: text

    database_size       psql -c "SELECT pg_database_size('postgres')"   (db)
    user_count          psql -c "SELECT count(*) FROM auth.users"        (db)
    table_count         psql -c "... information_schema.tables ..."      (db)
    active_connections  psql -c "SELECT count(*) FROM pg_stat_activity"  (db)
    storage_size        du -sb /var/lib/storage                          (storage)
    backup_size/count   completed backup records
    cpu/memory          runtime stats, summed over the project's containers

Every query must succeed; a failed one raises ``RuntimeOperationError`` and
the project keeps its previous usage record (a paused project therefore keeps
its last sample until it runs again).
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from supamanager.core.errors import NotFoundError, RuntimeOperationError
from supamanager.quotas.models import QuotaUsage

if TYPE_CHECKING:
    from supamanager.provisioning.registry import ProjectRegistry
    from supamanager.runtime._types import RuntimeAdapter

DATABASE_SIZE_QUERY = "SELECT pg_database_size('postgres')"
USER_COUNT_QUERY = "SELECT count(*) FROM auth.users"
TABLE_COUNT_QUERY = "SELECT count(*) FROM information_schema.tables WHERE table_schema = 'public'"
CONNECTION_COUNT_QUERY = "SELECT count(*) FROM pg_stat_activity"
STORAGE_PATH = "/var/lib/storage"

BackupSource = Callable[[str], Iterable[Any]]


@runtime_checkable
class UsageCollector(Protocol):
    """Produces a full ``QuotaUsage`` sample for one project."""

    async def collect(self, project_id: str) -> QuotaUsage: ...


class StaticUsageCollector:
    """Returns preset samples; for tests and dry runs."""

    def __init__(self, samples: dict[str, QuotaUsage] | None = None) -> None:
        self.samples = dict(samples or {})
        self.calls: list[str] = []

    def set(self, usage: QuotaUsage) -> None:
        self.samples[usage.project_id] = usage

    async def collect(self, project_id: str) -> QuotaUsage:
        self.calls.append(project_id)
        sample = self.samples.get(project_id)
        if sample is None:
            raise NotFoundError(f"no usage sample for {project_id}").with_context(project_id=project_id)
        return sample


def _first_int(text: str) -> int:
    for token in text.split():
        try:
            return int(token)
        except ValueError:
            continue
    return 0


class RuntimeUsageCollector:
    """Collects usage by exec-ing into the project's containers."""

    def __init__(
        self,
        runtime: RuntimeAdapter,
        registry: ProjectRegistry,
        backups: BackupSource | None = None,
        *,
        timeout: float = 30.0,
    ) -> None:
        self.runtime = runtime
        self.registry = registry
        self.backups = backups
        self.timeout = timeout

    async def _measure(self, project_id: str, container_id: str, metric: str, cmd: list[str]) -> int:
        result = await self.runtime.exec(container_id, cmd, timeout=self.timeout)
        if not result.ok:
            raise RuntimeOperationError(
                f"{metric} query failed for {project_id} (exit {result.exit_code}): {result.text.strip()}"
            ).with_context(project_id=project_id, operation="collect_usage", metric=metric)
        return _first_int(result.text)

    async def _psql(self, project_id: str, container_id: str, metric: str, query: str) -> int:
        return await self._measure(
            project_id, container_id, metric,
            ["psql", "-U", "postgres", "-d", "postgres", "-t", "-A", "-c", query],
        )

    def _container(self, project_id: str, containers: dict[str, str], service: str) -> str:
        container_id = containers.get(service)
        if container_id is None:
            raise RuntimeOperationError(f"project {project_id} has no {service} container").with_context(
                project_id=project_id, operation="collect_usage",
            )
        return container_id

    async def collect(self, project_id: str) -> QuotaUsage:
        info = self.registry.require(project_id)
        usage = QuotaUsage(project_id=project_id)

        db = self._container(project_id, info.containers, "db")
        for attr, query in (
            ("database_size", DATABASE_SIZE_QUERY),
            ("user_count", USER_COUNT_QUERY),
            ("table_count", TABLE_COUNT_QUERY),
            ("active_connections", CONNECTION_COUNT_QUERY),
        ):
            setattr(usage, attr, await self._psql(project_id, db, attr, query))

        storage = self._container(project_id, info.containers, "storage")
        usage.storage_size = await self._measure(project_id, storage, "storage_size", ["du", "-sb", STORAGE_PATH])

        if self.backups is not None:
            records = list(self.backups(project_id))
            usage.backup_size = sum(r.size for r in records)
            usage.backup_count = len(records)

        for container_id in info.containers.values():
            stats = await self.runtime.stats(container_id)
            usage.cpu_usage += stats.cpu_percent / 100
            usage.memory_usage += stats.memory_bytes
        return usage
