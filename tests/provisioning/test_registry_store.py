"""Tests for ProjectRegistry and InMemoryProjectStore."""

from __future__ import annotations

import pytest

from supamanager.core.errors import ConflictError, NotFoundError
from supamanager.provisioning import (
    REMOVED,
    InMemoryProjectStore,
    ProjectInfo,
    ProjectRegistry,
    ProjectStatus,
)


def _info(pid: str = "p1") -> ProjectInfo:
    return ProjectInfo(project_id=pid, project_name=pid, status=ProjectStatus.CREATING)


class TestRegistry:
    @pytest.mark.asyncio
    async def test_reads_return_copies(self, make_config):
        registry = ProjectRegistry()
        await registry.insert(_info(), make_config("p1"))
        copy = registry.require("p1")
        copy.containers["db"] = "tampered"
        assert registry.require("p1").containers == {}
        assert registry.live("p1") is not copy

    @pytest.mark.asyncio
    async def test_duplicate_insert(self, make_config):
        registry = ProjectRegistry()
        await registry.insert(_info(), make_config("p1"))
        with pytest.raises(ConflictError):
            await registry.insert(_info(), make_config("p1"))

    @pytest.mark.asyncio
    async def test_used_ports(self, make_config):
        registry = ProjectRegistry()
        await registry.insert(_info("p1"), make_config("p1", db_port=5433, api_port=54321))
        await registry.insert(_info("p2"), make_config("p2", db_port=5434, api_port=54322))
        assert registry.used_ports() == {5433: "p1", 54321: "p1", 5434: "p2", 54322: "p2"}
        assert set(registry.used_ports(exclude="p1")) == {5434, 54322}

    @pytest.mark.asyncio
    async def test_remove_and_require(self, make_config):
        registry = ProjectRegistry()
        await registry.insert(_info(), make_config("p1"))
        await registry.remove("p1")
        assert "p1" not in registry
        with pytest.raises(NotFoundError):
            registry.require("p1")


class TestStore:
    @pytest.mark.asyncio
    async def test_status_history(self):
        store = InMemoryProjectStore()
        await store.create_project_record({"ref": "p1", "name": "one", "status": "CREATING"})
        await store.update_project_status("p1", "ACTIVE_HEALTHY")
        await store.update_project_status("p1", REMOVED)
        record = await store.get_project_by_reference("p1")
        assert record.removed
        assert not record.live
        assert store.history == [("p1", "CREATING"), ("p1", "ACTIVE_HEALTHY"), ("p1", REMOVED)]

    @pytest.mark.asyncio
    async def test_live_record_conflicts(self):
        store = InMemoryProjectStore()
        await store.create_project_record({"ref": "p1"})
        with pytest.raises(ConflictError):
            await store.create_project_record({"ref": "p1"})

    @pytest.mark.asyncio
    async def test_removed_record_can_be_recreated(self):
        store = InMemoryProjectStore()
        await store.create_project_record({"ref": "p1"})
        await store.update_project_status("p1", REMOVED)
        record = await store.create_project_record({"ref": "p1"})
        assert record.status == "CREATING"

    @pytest.mark.asyncio
    async def test_unknown_ref(self):
        with pytest.raises(NotFoundError):
            await InMemoryProjectStore().update_project_status("nope", "FAILED")
