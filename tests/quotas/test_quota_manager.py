"""Tests for QuotaManager: plans, the enforcement gate, recomputation, status."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from supamanager.core.errors import ConfigError, QuotaExceededError, ValidationError
from supamanager.quotas import (
    QuotaEnforcement,
    QuotaManager,
    QuotaPlan,
    QuotaStatus,
    QuotaUsage,
    ResourceQuotas,
    StaticUsageCollector,
    default_quotas,
)
from supamanager.quotas.models import GB, MB

T0 = datetime(2026, 6, 1, 12, 0, tzinfo=UTC)


def _manager(samples: dict[str, QuotaUsage] | None = None, **kwargs) -> QuotaManager:
    return QuotaManager(StaticUsageCollector(samples), clock=lambda: T0, **kwargs)


class TestPlans:
    def test_default_plan_applies_to_unknown_projects(self):
        manager = QuotaManager()
        assert manager.get_plan("p1") == QuotaPlan.FREE
        assert manager.get_project_quotas("p1").max_backups == 3

    def test_plan_table(self):
        free = default_quotas("free")
        assert free.cpu_limit == 0.5
        assert free.memory_limit == 512 * MB
        assert free.storage_size == 1 * GB
        assert default_quotas(QuotaPlan.PRO).max_users == 0
        assert default_quotas(QuotaPlan.ENTERPRISE) == ResourceQuotas()

    def test_assign_plan(self):
        manager = QuotaManager()
        quotas = manager.assign_plan("p1", "starter")
        assert manager.get_plan("p1") == QuotaPlan.STARTER
        assert quotas.max_backups == 7
        assert manager.tracked() == ["p1"]

    def test_custom_keeps_explicit_quotas(self):
        manager = QuotaManager()
        custom = ResourceQuotas(storage_size=1_000_000)
        manager.set_project_quotas("p1", custom)
        assert manager.get_plan("p1") == QuotaPlan.CUSTOM
        assert manager.assign_plan("p1", QuotaPlan.CUSTOM) == custom

    def test_unknown_plan_name(self):
        with pytest.raises(ValueError):
            QuotaPlan.parse("platinum")

    def test_drop_project(self):
        manager = QuotaManager()
        manager.assign_plan("p1", "pro")
        manager.drop_project("p1")
        assert manager.tracked() == []
        assert manager.get_plan("p1") == QuotaPlan.FREE


class TestAuthorizePlan:
    def test_within_ceiling(self, make_config):
        assert QuotaManager().authorize_plan(make_config("p1", cpu_limit="0.5", memory_limit="512MB")).cpu_limit == 0.5

    def test_cpu_over_ceiling(self, make_config):
        with pytest.raises(QuotaExceededError) as exc_info:
            QuotaManager().authorize_plan(make_config("p1", cpu_limit="2"))
        assert exc_info.value.resource == "cpu_limit"
        assert exc_info.value.limit == 0.5

    def test_memory_over_ceiling(self, make_config):
        with pytest.raises(QuotaExceededError, match="memory_limit"):
            QuotaManager().authorize_plan(make_config("p1", memory_limit="2GB"))

    def test_enterprise_is_unlimited(self, make_config):
        QuotaManager().authorize_plan(make_config("p1", plan="enterprise", cpu_limit="64", memory_limit="256GB"))


class TestEnforceQuotas:
    @pytest.mark.asyncio
    async def test_warn_then_block(self):
        manager = _manager({"p1": QuotaUsage(project_id="p1", storage_size=950_000)})
        manager.set_project_quotas("p1", ResourceQuotas(storage_size=1_000_000))
        await manager.update_quota_usage("p1")

        decision = manager.enforce_quotas("p1", "upload", 40_000)
        assert decision.warned
        assert decision.warnings == ["storage_size at 99% of limit (990000/1000000)"]

        with pytest.raises(QuotaExceededError) as exc_info:
            manager.enforce_quotas("p1", "upload", 60_000)
        assert exc_info.value.resource == "storage_size"
        assert exc_info.value.current == 1_010_000
        assert exc_info.value.limit == 1_000_000

    def test_below_warning(self):
        manager = QuotaManager()
        manager.set_project_quotas("p1", ResourceQuotas(storage_size=1_000_000))
        assert not manager.enforce_quotas("p1", "upload", 100).warned

    def test_exactly_at_limit_passes(self):
        manager = QuotaManager()
        manager.set_project_quotas("p1", ResourceQuotas(storage_size=1_000_000))
        assert manager.enforce_quotas("p1", "upload", 1_000_000).warned

    @pytest.mark.asyncio
    async def test_zero_limit_is_unlimited(self):
        manager = _manager({"p1": QuotaUsage(project_id="p1", user_count=10_000)})
        manager.set_project_quotas("p1", ResourceQuotas(max_users=0))
        await manager.update_quota_usage("p1")
        assert not manager.enforce_quotas("p1", "create_user").warned
        assert not manager.get_quota_status("p1").user_quota.exceeded

    def test_non_blocking_operation_only_warns(self):
        manager = QuotaManager(enforcement=QuotaEnforcement(block_uploads=False))
        manager.set_project_quotas("p1", ResourceQuotas(storage_size=100))
        decision = manager.enforce_quotas("p1", "upload", 500)
        assert decision.warnings == ["storage_size over limit (500/100)"]

    def test_file_size_limit(self):
        manager = QuotaManager()
        manager.set_project_quotas("p1", ResourceQuotas(max_file_size=10))
        with pytest.raises(QuotaExceededError, match="max_file_size"):
            manager.enforce_quotas("p1", "upload", 11)

    @pytest.mark.asyncio
    async def test_backup_count(self):
        manager = _manager({"p1": QuotaUsage(project_id="p1", backup_count=3)})
        manager.assign_plan("p1", "free")
        await manager.update_quota_usage("p1")
        with pytest.raises(QuotaExceededError, match="max_backups"):
            manager.enforce_quotas("p1", "backup")

    def test_unknown_operation(self):
        with pytest.raises(ValidationError, match="unknown quota operation"):
            QuotaManager().enforce_quotas("p1", "teleport")

    def test_negative_size(self):
        with pytest.raises(ValidationError):
            QuotaManager().enforce_quotas("p1", "upload", -1)


class TestUsage:
    @pytest.mark.asyncio
    async def test_needs_collector(self):
        with pytest.raises(ConfigError):
            await QuotaManager().update_quota_usage("p1")

    @pytest.mark.asyncio
    async def test_replaces_whole_record(self):
        collector = StaticUsageCollector({
            "p1": QuotaUsage(project_id="p1", database_size=10, storage_size=20, backup_size=30, total_disk_size=999),
        })
        manager = QuotaManager(collector, clock=lambda: T0)
        usage = await manager.update_quota_usage("p1")
        assert usage.total_disk_size == 60
        assert usage.last_updated == T0

        collector.set(QuotaUsage(project_id="p1", database_size=5))
        usage = await manager.update_quota_usage("p1")
        assert usage.storage_size == 0
        assert usage.total_disk_size == 5

    @pytest.mark.asyncio
    async def test_usage_reads_are_copies(self):
        manager = _manager({"p1": QuotaUsage(project_id="p1", database_size=10)})
        await manager.update_quota_usage("p1")
        usage = manager.get_quota_usage("p1")
        usage.database_size = 99
        assert manager.get_quota_usage("p1").database_size == 10


class TestRecompute:
    @pytest.mark.asyncio
    async def test_isolates_failures_and_reports_exceeded(self):
        manager = _manager({
            "p1": QuotaUsage(project_id="p1", storage_size=2 * GB),
            "p2": QuotaUsage(project_id="p2", storage_size=1),
        })
        for project_id in ("p1", "p2", "p3"):
            manager.assign_plan(project_id, "free")

        report = await manager.recompute_all()
        assert report.updated == ["p1", "p2"]
        assert list(report.failed) == ["p3"]
        assert report.exceeded == ["p1"]

    @pytest.mark.asyncio
    async def test_pause_callback(self):
        paused: list[tuple[str, QuotaStatus]] = []

        async def _on_exceeded(project_id, status):
            paused.append((project_id, status))

        manager = _manager(
            {"p1": QuotaUsage(project_id="p1", storage_size=2 * GB)},
            enforcement=QuotaEnforcement(pause_project=True),
            on_exceeded=_on_exceeded,
        )
        manager.assign_plan("p1", "free")
        await manager.recompute_all()
        assert [pid for pid, _ in paused] == ["p1"]
        assert paused[0][1].storage_quota.exceeded

    @pytest.mark.asyncio
    async def test_callback_not_used_without_pause_policy(self):
        calls = []

        async def _on_exceeded(project_id, status):
            calls.append(project_id)

        manager = _manager({"p1": QuotaUsage(project_id="p1", storage_size=2 * GB)}, on_exceeded=_on_exceeded)
        manager.assign_plan("p1", "free")
        report = await manager.recompute_all()
        assert report.exceeded == ["p1"]
        assert calls == []


class TestStatus:
    @pytest.mark.asyncio
    async def test_status_projection(self):
        manager = _manager({"p1": QuotaUsage(project_id="p1", database_size=450 * MB, user_count=150)})
        manager.assign_plan("p1", "free")
        await manager.update_quota_usage("p1")

        status = manager.get_quota_status("p1")
        assert status.exceeded
        assert status.database_quota.warning and not status.database_quota.exceeded
        assert status.user_quota.exceeded
        assert status.errors == ["users quota exceeded (150/100)"]
        assert "database at 90% of quota" in status.warnings
        assert status.to_dict()["checks"]["users"]["used"] == 150.0

    def test_fresh_project_is_clean(self):
        status = QuotaManager().get_quota_status("p1")
        assert not status.exceeded
        assert status.warnings == [] and status.errors == []
