"""Tests for BackupEngine: capture, restore, retention, schedules, export/import."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from supamanager.backup.codec import ArtifactCodec
from supamanager.backup.engine import BackupEngine
from supamanager.backup.models import (
    BackupConfig,
    BackupContent,
    BackupSchedule,
    BackupStatus,
    BackupType,
    RestoreConfig,
    RestoreInfo,
    RestoreStatus,
)
from supamanager.backup.storage import LocalBackupStorage
from supamanager.core.errors import (
    BackupError,
    ConfigError,
    InvalidTransitionError,
    NoBaseBackupError,
    NotFoundError,
    QuotaExceededError,
    TypeMismatchError,
)
from supamanager.provisioning import ProjectStatus
from supamanager.quotas.models import QuotaUsage, ResourceQuotas
from supamanager.quotas.usage import StaticUsageCollector
from supamanager.runtime import ContainerState
from supamanager.runtime._types import ExecResult

DB_DUMP = b"CREATE TABLE notes (id int, body text);\nINSERT INTO notes VALUES (1, 'hello');\n"


def _db_volume(project_id: str) -> str:
    return f"supamanager-{project_id}-db-data"


def _storage_volume(project_id: str) -> str:
    return f"supamanager-{project_id}-storage-data"


def _seed(runtime, project_id: str, files: dict[str, bytes] | None = None, *, mtime=None) -> None:
    runtime.write_file(_db_volume(project_id), "database.sql", DB_DUMP)
    for path, data in (files or {"avatars/a.png": b"\x89PNG-a"}).items():
        runtime.write_file(_storage_volume(project_id), path, data, mtime)


async def _backup(engine, project_id: str = "p1", **kwargs):
    info = await engine.create_backup(BackupConfig(project_id=project_id, **kwargs))
    return await engine.wait_for_backup(info.backup_id, timeout=5)


async def _restore(engine, **kwargs):
    info = await engine.restore_backup(RestoreConfig(**kwargs))
    return await engine.wait_for_restore(info.restore_id, timeout=5)


# ── Capture ──────────────────────────────────────────────────────────────


class TestCreateBackup:
    @pytest.mark.asyncio
    async def test_full_backup_completes(self, engine, make_config, provision, runtime, backup_storage):
        await provision(make_config("p1"))
        _seed(runtime, "p1")

        pending = await engine.create_backup(BackupConfig(project_id="p1"))
        assert pending.status == BackupStatus.CREATING

        backup = await engine.wait_for_backup(pending.backup_id, timeout=5)
        assert backup.status == BackupStatus.COMPLETED
        assert backup.size > 0
        assert backup.compressed and not backup.encrypted
        assert backup.file_path == f"p1/{backup.backup_id}.tar.gz"
        assert backup.contents == {BackupContent.DATABASE, BackupContent.STORAGE, BackupContent.CONFIG}
        assert backup.completed_at is not None
        assert backup.expires_at is None
        assert await backup_storage.list("p1/") == [backup.file_path]

    @pytest.mark.asyncio
    async def test_encrypted_backup(self, engine, make_config, provision, runtime, backup_storage):
        await provision(make_config("p1"))
        _seed(runtime, "p1")
        backup = await _backup(engine, encryption=True)
        assert backup.encrypted
        assert backup.file_path.endswith(".tar.gz.enc")
        assert DB_DUMP not in backup_storage.path_for(backup.file_path).read_bytes()

    @pytest.mark.asyncio
    async def test_encryption_needs_key(self, orchestrator, backup_storage, make_config, provision):
        engine = BackupEngine(orchestrator, backup_storage, codec=ArtifactCodec())
        await provision(make_config("p1"))
        with pytest.raises(ConfigError):
            await engine.create_backup(BackupConfig(project_id="p1", encryption=True))

    @pytest.mark.asyncio
    async def test_remote_upload_needs_remote(self, engine, make_config, provision):
        await provision(make_config("p1"))
        with pytest.raises(ConfigError):
            await engine.create_backup(BackupConfig(project_id="p1", s3_upload=True))

    @pytest.mark.asyncio
    async def test_remote_copy_recorded(self, orchestrator, backup_storage, tmp_path, make_config, provision, runtime):
        remote = LocalBackupStorage(tmp_path / "remote")
        engine = BackupEngine(orchestrator, backup_storage, remote=remote, codec=ArtifactCodec())
        await provision(make_config("p1"))
        _seed(runtime, "p1")
        backup = await _backup(engine, s3_upload=True)
        assert backup.s3_key == backup.file_path
        assert await remote.list() == [backup.s3_key]

    @pytest.mark.asyncio
    async def test_unknown_project(self, engine):
        with pytest.raises(NotFoundError):
            await engine.create_backup(BackupConfig(project_id="ghost"))

    @pytest.mark.asyncio
    async def test_failed_project_rejected(self, engine, orchestrator, make_config, runtime):
        runtime.fail_run_for = {"db"}
        await orchestrator.create_project(make_config("p1"))
        await orchestrator.wait_for_project("p1", timeout=5)
        with pytest.raises(InvalidTransitionError):
            await engine.create_backup(BackupConfig(project_id="p1"))

    @pytest.mark.asyncio
    async def test_incremental_needs_base(self, engine, make_config, provision):
        await provision(make_config("p1"))
        with pytest.raises(NoBaseBackupError):
            await engine.create_backup(BackupConfig(project_id="p1", backup_type=BackupType.INCREMENTAL))

    @pytest.mark.asyncio
    async def test_database_only_base_does_not_count(self, engine, make_config, provision, runtime):
        await provision(make_config("p1"))
        _seed(runtime, "p1")
        await _backup(engine, backup_type="database")
        with pytest.raises(NoBaseBackupError):
            await engine.create_backup(BackupConfig(project_id="p1", backup_type="incremental"))

    @pytest.mark.asyncio
    async def test_backup_count_quota(self, engine, orchestrator, make_config, provision):
        await provision(make_config("p1"))
        orchestrator.quotas.set_project_quotas("p1", ResourceQuotas(max_backups=1))
        orchestrator.quotas.collector = StaticUsageCollector({"p1": QuotaUsage(project_id="p1", backup_count=1)})
        await orchestrator.quotas.update_quota_usage("p1")
        with pytest.raises(QuotaExceededError):
            await engine.create_backup(BackupConfig(project_id="p1"))
        assert await engine.list_backups("p1") == []

    @pytest.mark.asyncio
    async def test_paused_project_helpers_stopped_again(self, engine, orchestrator, make_config, provision, runtime):
        await provision(make_config("p1"))
        _seed(runtime, "p1")
        await orchestrator.pause_project("p1")

        backup = await _backup(engine)
        assert backup.status == BackupStatus.COMPLETED
        assert runtime.container_for("p1", "db").state == ContainerState.EXITED
        assert runtime.container_for("p1", "storage").state == ContainerState.EXITED
        assert (await orchestrator.get_project_info("p1")).status == ProjectStatus.PAUSED

    @pytest.mark.asyncio
    async def test_dump_failure_marks_backup_failed(self, engine, make_config, provision, runtime, backup_storage):
        await provision(make_config("p1"))
        runtime.exec_handlers["pg_dump"] = lambda a, c, cmd, stdin: ExecResult(1, b"pg_dump: connection refused")
        backup = await _backup(engine)
        assert backup.status == BackupStatus.FAILED
        assert "connection refused" in backup.error_message
        assert await backup_storage.list() == []

    @pytest.mark.asyncio
    async def test_records_are_copies(self, engine, make_config, provision, runtime):
        await provision(make_config("p1"))
        _seed(runtime, "p1")
        backup = await _backup(engine)
        backup.status = BackupStatus.FAILED
        assert (await engine.get_backup_info(backup.backup_id)).status == BackupStatus.COMPLETED


# ── Restore ──────────────────────────────────────────────────────────────


class TestRestore:
    @pytest.mark.asyncio
    async def test_round_trip_into_other_project(self, engine, make_config, provision, runtime):
        await provision(make_config("p1"))
        await provision(make_config("p2"))
        _seed(runtime, "p1", {"avatars/a.png": b"A", "docs/readme.txt": b"hi"})
        backup = await _backup(engine, encryption=True)

        restore = await _restore(engine, project_id="p2", backup_id=backup.backup_id)
        assert restore.status == RestoreStatus.COMPLETED
        assert restore.progress == 100.0
        assert runtime.read_file(_db_volume("p2"), "database.sql") == DB_DUMP
        assert runtime.files(_storage_volume("p2")) == {"avatars/a.png": b"A", "docs/readme.txt": b"hi"}

    @pytest.mark.asyncio
    async def test_overwrite_wipes_storage(self, engine, make_config, provision, runtime):
        await provision(make_config("p1"))
        _seed(runtime, "p1", {"keep.txt": b"1"})
        backup = await _backup(engine)
        runtime.write_file(_storage_volume("p1"), "stray.txt", b"2")

        await _restore(engine, project_id="p1", backup_id=backup.backup_id)
        assert runtime.files(_storage_volume("p1")) == {"keep.txt": b"1"}

    @pytest.mark.asyncio
    async def test_merge_keeps_existing_files(self, engine, make_config, provision, runtime):
        await provision(make_config("p1"))
        _seed(runtime, "p1", {"keep.txt": b"1"})
        backup = await _backup(engine)
        runtime.write_file(_storage_volume("p1"), "stray.txt", b"2")

        await _restore(engine, project_id="p1", backup_id=backup.backup_id, overwrite_data=False)
        assert set(runtime.files(_storage_volume("p1"))) == {"keep.txt", "stray.txt"}

    @pytest.mark.asyncio
    async def test_stop_project_pauses_and_resumes(self, engine, orchestrator, make_config, provision, runtime):
        await provision(make_config("p1"))
        _seed(runtime, "p1")
        backup = await _backup(engine)
        restore = await _restore(engine, project_id="p1", backup_id=backup.backup_id, stop_project=True)
        assert restore.status == RestoreStatus.COMPLETED
        assert runtime.call_count("stop_container") >= 6
        assert (await orchestrator.get_project_info("p1")).status == ProjectStatus.ACTIVE_HEALTHY

    @pytest.mark.asyncio
    async def test_type_mismatch(self, engine, make_config, provision, runtime):
        await provision(make_config("p1"))
        _seed(runtime, "p1")
        backup = await _backup(engine, backup_type="database")
        with pytest.raises(TypeMismatchError, match="STORAGE"):
            await engine.restore_backup(RestoreConfig(project_id="p1", backup_id=backup.backup_id, restore_type="storage"))
        restore = await _restore(engine, project_id="p1", backup_id=backup.backup_id, restore_type="database")
        assert restore.status == RestoreStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_point_in_time_must_match_snapshot(self, engine, make_config, provision, runtime):
        await provision(make_config("p1"))
        _seed(runtime, "p1")
        backup = await _backup(engine)
        with pytest.raises(TypeMismatchError):
            await engine.restore_backup(RestoreConfig(
                project_id="p1", backup_id=backup.backup_id, point_in_time=backup.created_at - timedelta(minutes=5),
            ))
        restore = await _restore(engine, project_id="p1", backup_id=backup.backup_id, point_in_time=backup.created_at)
        assert restore.status == RestoreStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_failed_backup_not_restorable(self, engine, make_config, provision, runtime):
        await provision(make_config("p1"))
        runtime.exec_handlers["pg_dump"] = lambda a, c, cmd, stdin: ExecResult(1, b"boom")
        backup = await _backup(engine)
        with pytest.raises(TypeMismatchError):
            await engine.restore_backup(RestoreConfig(project_id="p1", backup_id=backup.backup_id))

    @pytest.mark.asyncio
    async def test_unknown_backup(self, engine, make_config, provision):
        await provision(make_config("p1"))
        with pytest.raises(NotFoundError):
            await engine.restore_backup(RestoreConfig(project_id="p1", backup_id="bk-missing"))

    @pytest.mark.asyncio
    async def test_stop_project_requires_settled_status(self, engine, orchestrator, make_config, provision, runtime):
        await provision(make_config("p1"))
        _seed(runtime, "p1")
        backup = await _backup(engine)
        runtime.set_service_health("p1", "rest", False)
        await orchestrator.health_sweep()
        with pytest.raises(InvalidTransitionError):
            await engine.restore_backup(RestoreConfig(project_id="p1", backup_id=backup.backup_id, stop_project=True))

    @pytest.mark.asyncio
    async def test_failure_leaves_project_unhealthy(self, engine, orchestrator, make_config, provision, runtime):
        await provision(make_config("p1"))
        _seed(runtime, "p1")
        backup = await _backup(engine)
        runtime.exec_handlers["psql"] = lambda a, c, cmd, stdin: ExecResult(3, b"ERROR: syntax error")

        restore = await _restore(engine, project_id="p1", backup_id=backup.backup_id)
        assert restore.status == RestoreStatus.FAILED
        assert "syntax error" in restore.error_message
        assert restore.progress < 100.0

        info = await orchestrator.get_project_info("p1")
        assert info.status == ProjectStatus.ACTIVE_UNHEALTHY
        assert restore.restore_id in info.degraded_reason

    @pytest.mark.asyncio
    async def test_failed_stop_project_restore_restarts_stack(
        self, engine, orchestrator, make_config, provision, runtime,
    ):
        await provision(make_config("p1"))
        _seed(runtime, "p1")
        backup = await _backup(engine)
        runtime.exec_handlers["psql"] = lambda a, c, cmd, stdin: ExecResult(3, b"ERROR: syntax error")

        restore = await _restore(engine, project_id="p1", backup_id=backup.backup_id, stop_project=True)
        assert restore.status == RestoreStatus.FAILED

        info = await orchestrator.get_project_info("p1")
        assert info.status == ProjectStatus.ACTIVE_UNHEALTHY
        assert restore.restore_id in info.degraded_reason
        states = {name: runtime.containers[cid].state for name, cid in info.containers.items()}
        assert set(states.values()) == {ContainerState.RUNNING}

    @pytest.mark.asyncio
    async def test_failed_restore_into_paused_project_restarts_stack(
        self, engine, orchestrator, make_config, provision, runtime,
    ):
        await provision(make_config("p1"))
        _seed(runtime, "p1")
        backup = await _backup(engine)
        await orchestrator.pause_project("p1")
        runtime.exec_handlers["psql"] = lambda a, c, cmd, stdin: ExecResult(3, b"ERROR: syntax error")

        await _restore(engine, project_id="p1", backup_id=backup.backup_id)

        info = await orchestrator.get_project_info("p1")
        assert info.status == ProjectStatus.ACTIVE_UNHEALTHY
        for container_id in info.containers.values():
            assert runtime.containers[container_id].state == ContainerState.RUNNING

    @pytest.mark.asyncio
    async def test_successful_restore_clears_degraded(self, engine, orchestrator, make_config, provision, runtime):
        await provision(make_config("p1"))
        _seed(runtime, "p1")
        backup = await _backup(engine)
        await orchestrator.mark_restore_failed("p1", "earlier restore failed")
        await _restore(engine, project_id="p1", backup_id=backup.backup_id)
        await orchestrator.health_sweep()
        info = await orchestrator.get_project_info("p1")
        assert info.degraded_reason is None
        assert info.status == ProjectStatus.ACTIVE_HEALTHY

    def test_progress_never_moves_backwards(self):
        restore = RestoreInfo(restore_id="rs-1", project_id="p1", backup_id="bk-1")
        restore.advance(60.0)
        restore.advance(25.0)
        assert restore.progress == 60.0
        restore.advance(250.0)
        assert restore.progress == 100.0


class TestIncremental:
    @pytest.mark.asyncio
    async def test_chain_replayed(self, engine, make_config, provision, runtime):
        await provision(make_config("p1"))
        await provision(make_config("p2"))
        long_ago = datetime.now(UTC) - timedelta(days=1)
        _seed(runtime, "p1", {"old.txt": b"old"}, mtime=long_ago)
        base = await _backup(engine)

        runtime.write_file(_storage_volume("p1"), "new.txt", b"new", datetime.now(UTC) + timedelta(hours=1))
        incremental = await _backup(engine, backup_type=BackupType.INCREMENTAL)
        assert incremental.status == BackupStatus.COMPLETED
        assert incremental.base_backup_id == base.backup_id

        restore = await _restore(
            engine, project_id="p2", backup_id=incremental.backup_id, restore_type=BackupType.INCREMENTAL,
        )
        assert restore.status == RestoreStatus.COMPLETED
        assert runtime.files(_storage_volume("p2")) == {"new.txt": b"new", "old.txt": b"old"}

    @pytest.mark.asyncio
    async def test_missing_base_breaks_chain(self, engine, make_config, provision, runtime):
        await provision(make_config("p1"))
        _seed(runtime, "p1")
        base = await _backup(engine)
        incremental = await _backup(engine, backup_type=BackupType.INCREMENTAL)
        await engine.delete_backup(base.backup_id)
        with pytest.raises(NoBaseBackupError):
            await engine.restore_backup(RestoreConfig(
                project_id="p1", backup_id=incremental.backup_id, restore_type=BackupType.INCREMENTAL,
            ))


# ── Retention ────────────────────────────────────────────────────────────


class TestRetention:
    @pytest.mark.asyncio
    async def test_auto_cleanup_keeps_newest(self, engine, make_config, provision, runtime, backup_storage):
        await provision(make_config("p1"))
        _seed(runtime, "p1")
        ids = [(await _backup(engine, retention=2, auto_cleanup=True)).backup_id for _ in range(3)]

        remaining = [b.backup_id for b in engine.completed_backups("p1")]
        assert remaining == ids[1:]
        assert len(await backup_storage.list("p1/")) == 2

    @pytest.mark.asyncio
    async def test_auto_cleanup_keeps_live_base(self, engine, make_config, provision, runtime):
        await provision(make_config("p1"))
        _seed(runtime, "p1")
        base = await _backup(engine)
        incremental = await _backup(engine, backup_type=BackupType.INCREMENTAL, retention=1, auto_cleanup=True)
        remaining = {b.backup_id for b in engine.completed_backups("p1")}
        assert remaining == {base.backup_id, incremental.backup_id}

    @pytest.mark.asyncio
    async def test_expiry(self, engine, make_config, provision, runtime, backup_storage):
        await provision(make_config("p1"))
        _seed(runtime, "p1")
        backup = await _backup(engine, retention_days=7)
        assert backup.expires_at == backup.created_at + timedelta(days=7)

        assert await engine.expire_backups(now=backup.created_at + timedelta(days=6)) == []
        assert await engine.expire_backups(now=backup.created_at + timedelta(days=8)) == [backup.backup_id]
        assert await backup_storage.list() == []
        with pytest.raises(NotFoundError):
            await engine.get_backup_info(backup.backup_id)

    @pytest.mark.asyncio
    async def test_delete_and_download(self, engine, make_config, provision, runtime):
        await provision(make_config("p1"))
        _seed(runtime, "p1")
        backup = await _backup(engine)
        url = await engine.download_backup(backup.backup_id)
        assert backup.backup_id in url

        await engine.delete_backup(backup.backup_id)
        assert await engine.list_backups("p1") == []
        with pytest.raises(NotFoundError):
            await engine.delete_backup(backup.backup_id)


# ── Schedules ────────────────────────────────────────────────────────────


T0 = datetime(2026, 5, 1, 0, 0, tzinfo=UTC)


@pytest.fixture
def clocked_engine(orchestrator, backup_storage):
    return BackupEngine(orchestrator, backup_storage, codec=ArtifactCodec(), clock=lambda: T0)


async def _settle(engine, started):
    for backup in started:
        await engine.wait_for_backup(backup.backup_id, timeout=5)


class TestSchedules:
    @pytest.mark.asyncio
    async def test_daily_runs_once_per_day(self, clocked_engine, make_config, provision, runtime):
        await provision(make_config("p1"))
        _seed(runtime, "p1")
        await clocked_engine.set_backup_schedule(BackupSchedule(project_id="p1", frequency="daily", time="02:00"))

        created = []
        for hour in range(25):
            started = await clocked_engine.run_due_schedules(T0 + timedelta(hours=hour))
            await _settle(clocked_engine, started)
            created.extend(started)
        assert len(created) == 1
        schedule = await clocked_engine.get_backup_schedule("p1")
        assert schedule.last_run_at == T0 + timedelta(hours=2)

    @pytest.mark.asyncio
    async def test_missed_slots_collapse(self, clocked_engine, make_config, provision, runtime):
        await provision(make_config("p1"))
        _seed(runtime, "p1")
        await clocked_engine.set_backup_schedule(BackupSchedule(project_id="p1", frequency="hourly", time="00:30"))
        started = await clocked_engine.run_due_schedules(T0 + timedelta(days=3))
        await _settle(clocked_engine, started)
        assert len(started) == 1
        assert await clocked_engine.run_due_schedules(T0 + timedelta(days=3, minutes=10)) == []

    @pytest.mark.asyncio
    async def test_disabled_schedule(self, clocked_engine, make_config, provision):
        await provision(make_config("p1"))
        await clocked_engine.set_backup_schedule(BackupSchedule(project_id="p1", enabled=False))
        assert await clocked_engine.run_due_schedules(T0 + timedelta(days=2)) == []

    @pytest.mark.asyncio
    async def test_one_schedule_per_type(self, clocked_engine, make_config, provision):
        await provision(make_config("p1"))
        await clocked_engine.set_backup_schedule(BackupSchedule(project_id="p1", time="01:00"))
        await clocked_engine.set_backup_schedule(BackupSchedule(project_id="p1", time="04:00"))
        await clocked_engine.set_backup_schedule(BackupSchedule(project_id="p1", backup_type="database"))
        schedules = await clocked_engine.list_backup_schedules("p1")
        assert [(s.backup_type, s.time) for s in schedules] == [
            (BackupType.DATABASE, "02:00"),
            (BackupType.FULL, "04:00"),
        ]

    @pytest.mark.asyncio
    async def test_schedule_for_unknown_project(self, clocked_engine):
        with pytest.raises(NotFoundError):
            await clocked_engine.set_backup_schedule(BackupSchedule(project_id="ghost"))

    @pytest.mark.asyncio
    async def test_deleted_project_schedule_dropped(self, clocked_engine, orchestrator, make_config, provision):
        await provision(make_config("p1"))
        await clocked_engine.set_backup_schedule(BackupSchedule(project_id="p1"))
        await orchestrator.delete_project("p1")
        assert await clocked_engine.run_due_schedules(T0 + timedelta(days=1)) == []
        assert await clocked_engine.list_backup_schedules() == []

    @pytest.mark.asyncio
    async def test_delete_schedule(self, clocked_engine, make_config, provision):
        await provision(make_config("p1"))
        await clocked_engine.set_backup_schedule(BackupSchedule(project_id="p1"))
        await clocked_engine.delete_backup_schedule("p1", "full")
        with pytest.raises(NotFoundError):
            await clocked_engine.get_backup_schedule("p1")


# ── Export / import ──────────────────────────────────────────────────────


class TestExportImport:
    @pytest.mark.asyncio
    async def test_export_then_import(self, engine, orchestrator, make_config, provision, runtime, tmp_path):
        await provision(make_config("p1"))
        _seed(runtime, "p1", {"avatars/a.png": b"A"})

        archive = await engine.export_project("p1", tmp_path / "exports" / "p1.tar.gz")
        assert archive.is_file()

        info = await engine.import_project(archive, "p1-copy", timeout=5)
        assert info.status == ProjectStatus.ACTIVE_HEALTHY
        config = orchestrator.get_project_config("p1-copy")
        assert config.db_password == "s3cret"
        assert config.db_port not in {6000, 7000}
        assert runtime.read_file(_db_volume("p1-copy"), "database.sql") == DB_DUMP
        assert runtime.files(_storage_volume("p1-copy")) == {"avatars/a.png": b"A"}

    @pytest.mark.asyncio
    async def test_import_rejects_non_export(self, engine, tmp_path):
        bogus = tmp_path / "bogus.tar.gz"
        bogus.write_bytes(b"nope")
        with pytest.raises(BackupError):
            await engine.import_project(bogus, "p9")

    @pytest.mark.asyncio
    async def test_import_missing_file(self, engine, tmp_path):
        with pytest.raises(NotFoundError):
            await engine.import_project(tmp_path / "absent.tar.gz", "p9")
