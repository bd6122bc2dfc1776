"""Tests for StubRuntimeAdapter: the in-memory runtime used across the suite."""

from __future__ import annotations

import io
import tarfile

import pytest

from supamanager.core.errors import RuntimeOperationError, RuntimeUnavailableError
from supamanager.runtime import (
    LABEL_PROJECT,
    ContainerState,
    HealthProbe,
    PortBinding,
    ServiceSpec,
    StubRuntimeAdapter,
    VolumeMount,
)


def _spec(name: str = "db", project_id: str = "p1", **kwargs) -> ServiceSpec:
    defaults = {
        "name": name,
        "image": "postgres:14",
        "project_id": project_id,
        "container_name": f"supamanager-{project_id}-{name}",
    }
    defaults.update(kwargs)
    return ServiceSpec(**defaults)


@pytest.fixture
async def adapter():
    stub = StubRuntimeAdapter()
    await stub.create_network("p1", "net")
    await stub.create_volume("p1", "data")
    return stub


class TestContainers:
    @pytest.mark.asyncio
    async def test_run_and_state(self, adapter):
        cid = await adapter.run_container(_spec(network="net", volumes=(VolumeMount("data", "/data"),)))
        assert await adapter.container_state(cid) == ContainerState.RUNNING
        await adapter.stop_container(cid)
        assert await adapter.container_state(cid) == ContainerState.EXITED
        await adapter.remove_container(cid)
        assert await adapter.container_state(cid) == ContainerState.MISSING

    @pytest.mark.asyncio
    async def test_missing_volume_fails(self, adapter):
        with pytest.raises(RuntimeOperationError):
            await adapter.run_container(_spec(volumes=(VolumeMount("nope", "/data"),)))

    @pytest.mark.asyncio
    async def test_port_clash_fails(self, adapter):
        await adapter.run_container(_spec("kong", ports=(PortBinding(7000, 8000),)))
        with pytest.raises(RuntimeOperationError, match="already allocated"):
            await adapter.run_container(_spec("kong", project_id="p2", ports=(PortBinding(7000, 8000),)))

    @pytest.mark.asyncio
    async def test_injected_run_failure(self, adapter):
        adapter.fail_run_for = {"auth"}
        with pytest.raises(RuntimeOperationError):
            await adapter.run_container(_spec("auth"))

    @pytest.mark.asyncio
    async def test_unavailable_passes_through(self, adapter):
        adapter.unavailable = True
        with pytest.raises(RuntimeUnavailableError):
            await adapter.create_volume("p1", "other")
        assert not (await adapter.health()).healthy


class TestProbes:
    @pytest.mark.asyncio
    async def test_warmup_then_healthy(self):
        stub = StubRuntimeAdapter(warmup_probes=2)
        cid = await stub.run_container(_spec())
        probe = HealthProbe(command=("true",))
        assert [await stub.probe(cid, probe) for _ in range(3)] == [False, False, True]

    @pytest.mark.asyncio
    async def test_service_health_toggle(self, adapter):
        cid = await adapter.run_container(_spec("auth"))
        adapter.set_service_health("p1", "auth", False)
        assert not await adapter.probe(cid, HealthProbe())
        adapter.set_service_health("p1", "auth", True)
        assert await adapter.probe(cid, HealthProbe())

    @pytest.mark.asyncio
    async def test_missing_container_is_unhealthy(self, adapter):
        assert not await adapter.probe("ghost", HealthProbe())


class TestExec:
    @pytest.mark.asyncio
    async def test_pg_dump_and_psql(self, adapter):
        cid = await adapter.run_container(_spec(volumes=(VolumeMount("data", "/var/lib/postgresql/data"),)))
        await adapter.exec(cid, ["psql", "-U", "postgres"], stdin=b"CREATE TABLE t();")
        dumped = await adapter.exec(cid, ["pg_dump", "-U", "postgres"])
        assert dumped.output == b"CREATE TABLE t();"

    @pytest.mark.asyncio
    async def test_tar_round_trip_and_find(self, adapter):
        cid = await adapter.run_container(_spec("storage", volumes=(VolumeMount("data", "/var/lib/storage"),)))
        adapter.write_file("data", "bucket/a.txt", b"hello")
        archive = await adapter.exec(cid, ["tar", "-cf", "-", "-C", "/var/lib/storage", "."])
        with tarfile.open(fileobj=io.BytesIO(archive.output)) as tar:
            assert tar.getnames() == ["bucket/a.txt"]

        await adapter.exec(cid, ["find", "/var/lib/storage", "-mindepth", "1", "-delete"])
        assert adapter.files("data") == {}
        await adapter.exec(cid, ["tar", "-xf", "-", "-C", "/var/lib/storage"], stdin=archive.output)
        assert adapter.files("data") == {"bucket/a.txt": b"hello"}

    @pytest.mark.asyncio
    async def test_unknown_command(self, adapter):
        cid = await adapter.run_container(_spec())
        result = await adapter.exec(cid, ["vacuumdb"])
        assert result.exit_code == 127

    @pytest.mark.asyncio
    async def test_exec_on_stopped_container_fails(self, adapter):
        cid = await adapter.run_container(_spec())
        await adapter.stop_container(cid)
        with pytest.raises(RuntimeOperationError):
            await adapter.exec(cid, ["true"])


class TestProjectScope:
    @pytest.mark.asyncio
    async def test_remove_project_resources_is_label_bounded(self, adapter):
        await adapter.create_volume("p2", "p2-data")
        mine = await adapter.run_container(_spec(network="net"))
        theirs = await adapter.run_container(_spec(project_id="p2"))

        removed = await adapter.remove_project_resources("p1")
        assert removed.containers == [mine]
        assert removed.volumes == ["data"]
        assert removed.networks == ["net"]
        assert theirs in adapter.containers
        assert "p2-data" in adapter.volumes
        assert adapter.containers[theirs].spec.all_labels()[LABEL_PROJECT] == "p2"

    @pytest.mark.asyncio
    async def test_labelled_projects(self, adapter):
        await adapter.create_volume("p9", "p9-data")
        assert await adapter.list_labelled_projects() == {"p1", "p9"}
