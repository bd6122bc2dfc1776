"""Quota manager: plan assignment, the enforcement gate and usage recomputation.

Write discipline:
    ``update_quota_usage`` is the only writer of ``QuotaUsage``. It replaces
    the whole record from the collector on every call (never increments), so
    ``total_disk_size == database_size + storage_size + backup_size`` holds
    after each recomputation.

Read discipline:
    ``get_quota_status`` projects usage against quotas on every call; no
    status is cached or stored.

Enforcement (``enforce_quotas``)::

    post = current usage + size of the operation
    limit == 0                      → unlimited, passes
    post / limit > block_at_percent → QuotaExceededError(resource, post, limit)
    post / limit ≥ warn_at_percent  → passes with a warning
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any

from supamanager.core.errors import ConfigError, QuotaExceededError, ValidationError, format_amount
from supamanager.core.logging import get_logger
from supamanager.quotas.models import (
    QuotaCheck,
    QuotaDecision,
    QuotaEnforcement,
    QuotaPlan,
    QuotaStatus,
    QuotaUsage,
    ResourceQuotas,
)
from supamanager.quotas.plans import default_quotas
from supamanager.quotas.usage import UsageCollector

logger = get_logger(__name__)

ExceededCallback = Callable[[str, QuotaStatus], Awaitable[Any]]

OPERATIONS = ("upload", "backup", "database", "create_user", "create_table", "connection", "request")


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class RecomputeReport:
    """Result of one ``recompute_all`` pass."""

    updated: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    exceeded: list[str] = field(default_factory=list)


class QuotaManager:
    """Per-project quotas, usage and enforcement.

    Args:
        collector: source of authoritative usage (database, storage, backups).
        enforcement: warn/block thresholds and which operations block.
        default_plan: plan applied to projects that never had one assigned.
        on_exceeded: awaited for every project found over quota during
            ``recompute_all`` when ``enforcement.pause_project`` is set.
    """

    def __init__(
        self,
        collector: UsageCollector | None = None,
        *,
        enforcement: QuotaEnforcement | None = None,
        default_plan: QuotaPlan | str = QuotaPlan.FREE,
        clock: Callable[[], datetime] | None = None,
        on_exceeded: ExceededCallback | None = None,
    ) -> None:
        self.collector = collector
        self.enforcement = enforcement or QuotaEnforcement()
        self.default_plan = QuotaPlan.parse(default_plan)
        self.clock = clock or _utcnow
        self.on_exceeded = on_exceeded
        self._plans: dict[str, QuotaPlan] = {}
        self._quotas: dict[str, ResourceQuotas] = {}
        self._usage: dict[str, QuotaUsage] = {}

    # ------------------------------------------------------------------
    # plans and quotas
    # ------------------------------------------------------------------

    def tracked(self) -> list[str]:
        return sorted(set(self._plans) | set(self._quotas))

    def assign_plan(self, project_id: str, plan: QuotaPlan | str) -> ResourceQuotas:
        """Apply ``plan`` to a project. CUSTOM keeps quotas already set for it."""
        resolved = QuotaPlan.parse(plan)
        self._plans[project_id] = resolved
        if resolved == QuotaPlan.CUSTOM and project_id in self._quotas:
            return self._quotas[project_id]
        self._quotas[project_id] = default_quotas(resolved)
        logger.info("quota.plan_assigned", project_id=project_id, plan=resolved.value)
        return self._quotas[project_id]

    def set_project_quotas(self, project_id: str, quotas: ResourceQuotas) -> None:
        self._quotas[project_id] = quotas
        self._plans[project_id] = QuotaPlan.CUSTOM
        logger.info("quota.custom_set", project_id=project_id, quotas=quotas.to_dict())

    def get_project_quotas(self, project_id: str) -> ResourceQuotas:
        quotas = self._quotas.get(project_id)
        if quotas is None:
            return default_quotas(self.default_plan)
        return quotas

    def get_plan(self, project_id: str) -> QuotaPlan:
        return self._plans.get(project_id, self.default_plan)

    def get_quota_usage(self, project_id: str) -> QuotaUsage:
        usage = self._usage.get(project_id)
        return replace(usage) if usage is not None else QuotaUsage(project_id=project_id)

    def drop_project(self, project_id: str) -> None:
        self._plans.pop(project_id, None)
        self._quotas.pop(project_id, None)
        self._usage.pop(project_id, None)

    def authorize_plan(self, config: Any) -> ResourceQuotas:
        """Check a ``ProjectConfig``'s requested limits against its plan ceilings.

        Raises:
            QuotaExceededError: a requested cpu, memory or storage limit is
                above the plan's ceiling.
        """
        plan = QuotaPlan.parse(config.plan)
        if plan == QuotaPlan.CUSTOM:
            quotas = self.get_project_quotas(config.project_id)
        else:
            quotas = default_quotas(plan)

        requested = (
            ("storage_size", config.storage_bytes, quotas.storage_size),
            ("memory_limit", config.memory_bytes, quotas.memory_limit),
            ("cpu_limit", config.cpu_cores, quotas.cpu_limit),
        )
        for resource, value, limit in requested:
            if value is None or not limit:
                continue
            if value > limit:
                raise QuotaExceededError(resource, current=value, limit=limit).with_context(
                    project_id=config.project_id, operation="authorize_plan", plan=plan.value,
                )
        return quotas

    # ------------------------------------------------------------------
    # enforcement gate
    # ------------------------------------------------------------------

    def _planned(
        self, operation: str, size: int, quotas: ResourceQuotas, usage: QuotaUsage
    ) -> list[tuple[str, float, float, bool]]:
        enforce = self.enforcement
        units = max(size, 1)
        if operation == "upload":
            return [
                ("storage_size", usage.storage_size + size, quotas.storage_size, enforce.block_uploads),
                ("total_disk_size", usage.total_disk_size + size, quotas.total_disk_size, enforce.block_uploads),
            ]
        if operation == "backup":
            return [
                ("backup_size", usage.backup_size + size, quotas.backup_size, enforce.block_backups),
                ("total_disk_size", usage.total_disk_size + size, quotas.total_disk_size, enforce.block_backups),
                ("max_backups", usage.backup_count + 1, quotas.max_backups, enforce.block_backups),
            ]
        if operation == "database":
            return [
                ("database_size", usage.database_size + size, quotas.database_size, True),
                ("total_disk_size", usage.total_disk_size + size, quotas.total_disk_size, True),
            ]
        if operation == "create_user":
            return [("max_users", usage.user_count + units, quotas.max_users, enforce.block_new_users)]
        if operation == "create_table":
            return [("max_tables", usage.table_count + units, quotas.max_tables, True)]
        if operation == "connection":
            return [("connections_limit", usage.active_connections + units, quotas.connections_limit, True)]
        if operation == "request":
            return [("requests_per_hour", usage.requests_this_hour + units, quotas.requests_per_hour, True)]
        raise ValidationError(
            f"unknown quota operation {operation!r}; expected one of {', '.join(OPERATIONS)}"
        ).with_context(operation=operation)

    def enforce_quotas(self, project_id: str, operation: str, size: int = 0) -> QuotaDecision:
        """Gate a growth operation against the project's quotas.

        Returns a ``QuotaDecision`` carrying any warnings; raises
        ``QuotaExceededError`` when a blocking limit would be passed.

        Example:
            >>> manager.set_project_quotas("p1", ResourceQuotas(storage_size=1_000_000))
            >>> manager.enforce_quotas("p1", "upload", 40_000).warnings
            ['storage_size at 99% of limit (990000/1000000)']
        """
        if size < 0:
            raise ValidationError("size must not be negative").with_context(project_id=project_id, size=size)
        quotas = self.get_project_quotas(project_id)
        usage = self._usage.get(project_id) or QuotaUsage(project_id=project_id)
        decision = QuotaDecision(project_id=project_id, operation=operation, size=size)

        if operation == "upload" and quotas.max_file_size and size > quotas.max_file_size:
            if self.enforcement.block_uploads:
                raise QuotaExceededError("max_file_size", current=size, limit=quotas.max_file_size).with_context(
                    project_id=project_id, operation=operation,
                )
            decision.warnings.append(
                f"max_file_size exceeded ({format_amount(size)}/{format_amount(quotas.max_file_size)})"
            )

        for resource, post, limit, blocking in self._planned(operation, size, quotas, usage):
            if not limit:
                continue
            percent = post / limit * 100
            if percent > self.enforcement.block_at_percent:
                if blocking:
                    logger.warning(
                        "quota.exceeded", project_id=project_id, operation=operation,
                        resource=resource, current=post, limit=limit,
                    )
                    raise QuotaExceededError(resource, current=post, limit=limit).with_context(
                        project_id=project_id, operation=operation,
                    )
                decision.warnings.append(f"{resource} over limit ({format_amount(post)}/{format_amount(limit)})")
            elif percent >= self.enforcement.warn_at_percent:
                decision.warnings.append(f"{resource} at {percent:.0f}% of limit ({format_amount(post)}/{format_amount(limit)})")

        if decision.warnings:
            logger.warning("quota.warning", project_id=project_id, operation=operation, warnings=decision.warnings)
        return decision

    # ------------------------------------------------------------------
    # usage
    # ------------------------------------------------------------------

    async def update_quota_usage(self, project_id: str) -> QuotaUsage:
        """Recompute every usage field for one project from the collector."""
        if self.collector is None:
            raise ConfigError("no usage collector configured").with_context(project_id=project_id)
        sample = await self.collector.collect(project_id)
        usage = replace(
            sample,
            project_id=project_id,
            last_updated=self.clock(),
            total_disk_size=sample.database_size + sample.storage_size + sample.backup_size,
        )
        self._usage[project_id] = usage
        logger.debug(
            "quota.usage_updated",
            project_id=project_id,
            total_disk_size=usage.total_disk_size,
            backup_count=usage.backup_count,
        )
        return replace(usage)

    async def recompute_all(self) -> RecomputeReport:
        """Refresh usage for every tracked project; one failure never stops the rest."""
        report = RecomputeReport()
        for project_id in self.tracked():
            try:
                await self.update_quota_usage(project_id)
            except Exception as exc:
                report.failed[project_id] = str(exc)
                logger.error("quota.recompute_failed", project_id=project_id, error=str(exc))
                continue
            report.updated.append(project_id)
            status = self.get_quota_status(project_id)
            if not status.exceeded:
                continue
            report.exceeded.append(project_id)
            logger.warning("quota.project_exceeded", project_id=project_id, errors=status.errors)
            if self.enforcement.pause_project and self.on_exceeded is not None:
                try:
                    await self.on_exceeded(project_id, status)
                except Exception as exc:
                    logger.error("quota.on_exceeded_failed", project_id=project_id, error=str(exc))
        return report

    # ------------------------------------------------------------------
    # status
    # ------------------------------------------------------------------

    def _check(self, current: float, limit: float) -> QuotaCheck:
        if not limit:
            return QuotaCheck(current=current, limit=0)
        used = current / limit * 100
        return QuotaCheck(
            current=current,
            limit=limit,
            used=used,
            exceeded=used > self.enforcement.block_at_percent,
            warning=used >= self.enforcement.warn_at_percent,
        )

    def get_quota_status(self, project_id: str) -> QuotaStatus:
        """Fresh projection of the latest usage against the project's quotas."""
        quotas = self.get_project_quotas(project_id)
        usage = self._usage.get(project_id) or QuotaUsage(project_id=project_id)
        status = QuotaStatus(
            database_quota=self._check(usage.database_size, quotas.database_size),
            storage_quota=self._check(usage.storage_size, quotas.storage_size),
            backup_quota=self._check(usage.backup_size, quotas.backup_size),
            total_disk_quota=self._check(usage.total_disk_size, quotas.total_disk_size),
            bandwidth_quota=self._check(usage.bandwidth_used, quotas.bandwidth_limit),
            cpu_quota=self._check(usage.cpu_usage, quotas.cpu_limit),
            memory_quota=self._check(usage.memory_usage, quotas.memory_limit),
            user_quota=self._check(usage.user_count, quotas.max_users),
            table_quota=self._check(usage.table_count, quotas.max_tables),
            connection_quota=self._check(usage.active_connections, quotas.connections_limit),
            request_quota=self._check(usage.requests_this_hour, quotas.requests_per_hour),
            backup_count_quota=self._check(usage.backup_count, quotas.max_backups),
        )
        for name, check in status.checks().items():
            if check.exceeded:
                status.errors.append(f"{name} quota exceeded ({format_amount(check.current)}/{format_amount(check.limit)})")
            elif check.warning:
                status.warnings.append(f"{name} at {check.used:.0f}% of quota")
        status.exceeded = bool(status.errors)
        return status
