"""Backup and restore engine.

Captures a project's durable state (database dump, storage files, config)
by exec-ing dump tooling inside its containers, encodes the result and hands
it to a ``BackupStorage``. Restores replay the inverse tooling.

Manifesto:
    - **Answer fast:** ``create_backup`` and ``restore_backup`` validate
      synchronously, return a CREATING / RESTORING record and finish on the
      orchestrator's ``TaskSupervisor``.
    - **Terminal records are final:** once COMPLETED or FAILED a record is
      never touched again, except for deletion.
    - **Fail loudly:** a failed restore moves the project to
      ACTIVE_UNHEALTHY instead of attempting a destructive rollback.
    - **No bursts:** a schedule that missed any number of slots runs once.

Capture pipeline::

    hold(project) ── pg_dump (db) ── tar -cf (storage) ── config snapshot
          │
          ▼
    build_bundle ── gzip ── Fernet ── storage.upload [── remote.upload]
          │
          ▼
    COMPLETED (size, file_path, s3_key, expires_at) ── auto-cleanup

Restore pipeline (progress milestones)::

    download 10 ── decode 25 ── psql 60 ── tar -xf 85 ── resume 95 ── 100
"""

from __future__ import annotations

import asyncio
import io
import json
import tarfile
import tempfile
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from supamanager.backup.codec import (
    CONFIG_NAME,
    DATABASE_NAME,
    MANIFEST_NAME,
    STORAGE_NAME,
    ArtifactCodec,
    build_bundle,
    bundle_manifest,
    read_bundle,
)
from supamanager.backup.models import (
    BackupConfig,
    BackupContent,
    BackupInfo,
    BackupSchedule,
    BackupStatus,
    BackupType,
    RestoreConfig,
    RestoreInfo,
    RestoreStatus,
    utcnow,
)
from supamanager.backup.schedules import is_due, parse_time
from supamanager.backup.storage import BackupStorage
from supamanager.core.errors import (
    BackupError,
    ConfigError,
    InvalidTransitionError,
    NoBaseBackupError,
    NotFoundError,
    ProvisioningError,
    ServiceNotFoundError,
    SupaManagerError,
    TypeMismatchError,
    error_payload,
)
from supamanager.core.logging import LogContext, get_logger
from supamanager.provisioning.models import ProjectConfig, ProjectInfo, ProjectStatus
from supamanager.provisioning.orchestrator import ProjectHold, ProjectOrchestrator
from supamanager.runtime._types import ContainerState
from supamanager.templates.renderer import STORAGE_DATA_DIR, dump_compose, render_project

logger = get_logger(__name__)

PG_DUMP_COMMAND = ["pg_dump", "-U", "postgres", "-d", "postgres", "--clean", "--if-exists"]
PSQL_RESTORE_COMMAND = ["psql", "-U", "postgres", "-d", "postgres", "-v", "ON_ERROR_STOP=1"]

EXPORT_FORMAT = 1
EXPORT_MANIFEST = "export.json"
EXPORT_BUNDLE = "bundle.tar"
EXPORT_COMPOSE = "docker-compose.yml"

PROGRESS_DOWNLOADED = 10.0
PROGRESS_DECODED = 25.0
PROGRESS_DATABASE = 60.0
PROGRESS_STORAGE = 85.0
PROGRESS_RESUMED = 95.0

_UNBACKUPABLE = frozenset({ProjectStatus.CREATING, ProjectStatus.DELETING, ProjectStatus.FAILED})
_STOPPABLE = frozenset({ProjectStatus.ACTIVE_HEALTHY, ProjectStatus.PAUSED})

_SERVICE_FOR = {
    BackupContent.DATABASE: "db",
    BackupContent.STORAGE: "storage",
}


def _new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def _as_error(exc: Exception, message: str) -> SupaManagerError:
    if isinstance(exc, SupaManagerError):
        return exc
    return BackupError(f"{message}: {exc}", cause=exc)


class BackupEngine:
    """Backups, restores, schedules and export/import for orchestrated projects.

    Args:
        orchestrator: owner of the projects; supplies the runtime, the quota
            manager and the task supervisor.
        storage: primary artifact store (``file_path`` on records).
        remote: optional second store (``s3_key`` on records) used when a
            backup asks for ``s3_upload`` or ``backup_storage`` is ``s3``.
    """

    def __init__(
        self,
        orchestrator: ProjectOrchestrator,
        storage: BackupStorage,
        *,
        remote: BackupStorage | None = None,
        codec: ArtifactCodec | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.settings = orchestrator.settings
        self.runtime = orchestrator.runtime
        self.quotas = orchestrator.quotas
        self.supervisor = orchestrator.supervisor
        self.storage = storage
        self.remote = remote
        self.codec = codec or ArtifactCodec(self.settings.backup_encryption_key)
        self.clock = clock or utcnow
        self._backups: dict[str, BackupInfo] = {}
        self._restores: dict[str, RestoreInfo] = {}
        self._schedules: dict[tuple[str, BackupType], BackupSchedule] = {}

    # ------------------------------------------------------------------
    # records
    # ------------------------------------------------------------------

    def _require_backup(self, backup_id: str) -> BackupInfo:
        backup = self._backups.get(backup_id)
        if backup is None:
            raise NotFoundError(f"backup {backup_id} not found").with_context(backup_id=backup_id)
        return backup

    async def get_backup_info(self, backup_id: str) -> BackupInfo:
        return self._require_backup(backup_id).snapshot()

    async def list_backups(self, project_id: str) -> list[BackupInfo]:
        """Every backup record of the project, newest first."""
        records = [b for b in self._backups.values() if b.project_id == project_id]
        records.sort(key=lambda b: b.created_at, reverse=True)
        return [b.snapshot() for b in records]

    def completed_backups(self, project_id: str) -> list[BackupInfo]:
        """COMPLETED backups of the project, oldest first."""
        records = [
            b for b in self._backups.values()
            if b.project_id == project_id and b.status == BackupStatus.COMPLETED
        ]
        return sorted(records, key=lambda b: b.created_at)

    async def get_restore_info(self, restore_id: str) -> RestoreInfo:
        restore = self._restores.get(restore_id)
        if restore is None:
            raise NotFoundError(f"restore {restore_id} not found").with_context(restore_id=restore_id)
        return restore.snapshot()

    async def wait_for_backup(self, backup_id: str, timeout: float | None = None) -> BackupInfo:
        name = f"backup:{backup_id}"
        if name in self.supervisor.running():
            await asyncio.wait_for(self.supervisor.wait(name), timeout)
        return await self.get_backup_info(backup_id)

    async def wait_for_restore(self, restore_id: str, timeout: float | None = None) -> RestoreInfo:
        name = f"restore:{restore_id}"
        if name in self.supervisor.running():
            await asyncio.wait_for(self.supervisor.wait(name), timeout)
        return await self.get_restore_info(restore_id)

    # ------------------------------------------------------------------
    # helpers shared by capture and restore
    # ------------------------------------------------------------------

    def _storage_for(self, backup: BackupInfo) -> tuple[BackupStorage, str]:
        if backup.file_path:
            return self.storage, backup.file_path
        if backup.s3_key and self.remote is not None:
            return self.remote, backup.s3_key
        raise BackupError(f"backup {backup.backup_id} has no reachable artifact").with_context(
            backup_id=backup.backup_id,
        )

    def _wants_remote(self, config: BackupConfig) -> bool:
        return config.s3_upload or self.settings.backup_storage == "s3"

    async def _exec_ok(
        self, project_id: str, service: str, cmd: list[str], stdin: bytes | None = None
    ) -> bytes:
        result = await self.orchestrator.execute_command(
            project_id,
            service,
            cmd,
            timeout=self.settings.runtime_command_timeout_seconds,
            stdin=stdin,
        )
        if not result.ok:
            raise BackupError(
                f"{cmd[0]} exited {result.exit_code} in {service}: {result.text.strip()[:500]}"
            ).with_context(project_id=project_id, service=service, operation=cmd[0])
        return result.output

    async def _ensure_running(self, hold: ProjectHold, services: list[str]) -> list[str]:
        """Start the named services if stopped; returns what was started."""
        info = hold.info()
        manifest = hold.manifest()
        started: list[str] = []
        for service in services:
            container_id = info.containers.get(service)
            if container_id is None:
                raise ServiceNotFoundError(hold.project_id, service)
            if await self.runtime.container_state(container_id) == ContainerState.RUNNING:
                continue
            await self.runtime.start_container(container_id)
            started.append(container_id)
            probe = manifest.service(service).healthcheck
            if probe is not None:
                await self._wait_ready(hold.project_id, service, container_id, probe)
        return started

    async def _wait_ready(self, project_id: str, service: str, container_id: str, probe: Any) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.health_check_timeout_seconds
        delay = self.settings.health_poll_interval_seconds
        while not await self.runtime.probe(container_id, probe):
            if loop.time() >= deadline:
                raise BackupError(f"{service} did not become ready").with_context(
                    project_id=project_id, service=service,
                )
            await asyncio.sleep(delay)
            delay = min(delay * 2, self.settings.health_poll_max_interval_seconds)

    async def _restart_stack(self, hold: ProjectHold) -> None:
        try:
            await hold.start_stack()
        except Exception as exc:
            logger.error("restore.restart_failed", error=error_payload(exc))

    async def _stop_started(self, started: list[str]) -> None:
        for container_id in started:
            try:
                await self.runtime.stop_container(container_id)
            except Exception as exc:
                logger.warning("backup.helper_stop_failed", container_id=container_id, error=error_payload(exc))

    # ------------------------------------------------------------------
    # capture
    # ------------------------------------------------------------------

    def _latest_storage_base(self, project_id: str) -> BackupInfo | None:
        candidates = [
            b for b in self.completed_backups(project_id) if BackupContent.STORAGE in b.contents
        ]
        return candidates[-1] if candidates else None

    async def create_backup(self, config: BackupConfig) -> BackupInfo:
        """Validate, register a CREATING record and capture in the background.

        Raises:
            NotFoundError: unknown project.
            InvalidTransitionError: the project is CREATING, DELETING or FAILED.
            NoBaseBackupError: INCREMENTAL without a completed storage-bearing backup.
            QuotaExceededError: backup count or size is over quota.
            ConfigError: encryption without a key, remote upload without a remote.
        """
        project_id = config.project_id
        async with LogContext(project_id=project_id, operation="create_backup"):
            info = self.orchestrator.registry.require(project_id)
            if info.status in _UNBACKUPABLE:
                raise InvalidTransitionError(info.status, "BACKUP").with_context(project_id=project_id)
            if config.encryption and not self.codec.can_encrypt:
                raise ConfigError("backup encryption requested but no encryption key is configured")
            if self._wants_remote(config) and self.remote is None:
                raise ConfigError("remote backup upload requested but no remote storage is configured")

            base = None
            if config.backup_type == BackupType.INCREMENTAL:
                base = self._latest_storage_base(project_id)
                if base is None:
                    raise NoBaseBackupError(
                        f"project {project_id} has no completed backup to base an incremental on"
                    ).with_context(project_id=project_id)

            decision = self.quotas.enforce_quotas(project_id, "backup", 0)

            backup = BackupInfo(
                backup_id=_new_id("bk"),
                project_id=project_id,
                project_name=info.project_name,
                backup_type=config.backup_type,
                compressed=config.compression,
                encrypted=config.encryption,
                created_at=self.clock(),
                base_backup_id=base.backup_id if base else None,
                contents=config.backup_type.contents,
            )
            self._backups[backup.backup_id] = backup
            self.supervisor.spawn(
                f"backup:{backup.backup_id}",
                lambda: self._run_backup(backup, config, base),
            )
            logger.info(
                "backup.accepted",
                backup_id=backup.backup_id,
                backup_type=backup.backup_type.value,
                quota_warnings=decision.warnings,
            )
            return backup.snapshot()

    def _artifact_key(self, backup: BackupInfo, config: BackupConfig) -> str:
        suffix = ".tar"
        if backup.compressed:
            suffix += ".gz"
        if backup.encrypted:
            suffix += ".enc"
        prefix = config.s3_prefix or ""
        return f"{prefix}{backup.project_id}/{backup.backup_id}{suffix}"

    async def _run_backup(self, backup: BackupInfo, config: BackupConfig, base: BackupInfo | None) -> None:
        async with LogContext(project_id=backup.project_id, backup_id=backup.backup_id, operation="backup"):
            uploaded: list[tuple[BackupStorage, str]] = []
            try:
                raw = await self._capture(
                    backup.project_id,
                    backup.backup_type,
                    backup_id=backup.backup_id,
                    since=base.created_at if base else None,
                    base_backup_id=backup.base_backup_id,
                )
                encoded = await asyncio.to_thread(
                    self.codec.encode, raw, compress=backup.compressed, encrypt=backup.encrypted,
                )
                key = self._artifact_key(backup, config)
                with tempfile.TemporaryDirectory(prefix="supamanager-backup-") as work:
                    staged = Path(work) / Path(key).name
                    staged.write_bytes(encoded)
                    await self.storage.upload(staged, key)
                    uploaded.append((self.storage, key))
                    if self._wants_remote(config) and self.remote is not None:
                        await self.remote.upload(staged, key)
                        uploaded.append((self.remote, key))
            except asyncio.CancelledError:
                await self._discard_artifacts(uploaded)
                self._fail_backup(backup, "backup cancelled")
                raise
            except Exception as exc:
                error = _as_error(exc, f"backup {backup.backup_id} failed")
                logger.error("backup.failed", error=error.to_dict())
                await self._discard_artifacts(uploaded)
                self._fail_backup(backup, error.message)
                return

            for storage, key in uploaded:
                if storage is self.storage:
                    backup.file_path = key
                else:
                    backup.s3_key = key
            backup.size = len(encoded)
            backup.completed_at = self.clock()
            if config.retention_days > 0:
                backup.expires_at = backup.created_at + timedelta(days=config.retention_days)
            backup.status = BackupStatus.COMPLETED
            logger.info("backup.completed", size=backup.size, key=key)

            if config.auto_cleanup and config.retention > 0:
                await self._auto_cleanup(backup.project_id, config.retention, keep=backup.backup_id)

    def _fail_backup(self, backup: BackupInfo, message: str) -> None:
        backup.error_message = message
        backup.completed_at = self.clock()
        backup.status = BackupStatus.FAILED

    async def _discard_artifacts(self, uploaded: list[tuple[BackupStorage, str]]) -> None:
        for storage, key in uploaded:
            try:
                await storage.delete(key)
            except Exception as exc:
                logger.warning("backup.partial_cleanup_failed", key=key, error=error_payload(exc))

    async def _capture(
        self,
        project_id: str,
        backup_type: BackupType,
        *,
        backup_id: str,
        since: datetime | None = None,
        base_backup_id: str | None = None,
    ) -> bytes:
        """Dump the project's contents into an uncompressed bundle."""
        contents = backup_type.contents
        members: dict[str, bytes] = {}
        async with self.orchestrator.hold(project_id) as hold:
            info = hold.info()
            if info.status in _UNBACKUPABLE:
                raise InvalidTransitionError(info.status, "BACKUP").with_context(project_id=project_id)
            services = [_SERVICE_FOR[c] for c in (BackupContent.DATABASE, BackupContent.STORAGE) if c in contents]
            started = await self._ensure_running(hold, services)
            try:
                if BackupContent.DATABASE in contents:
                    members[DATABASE_NAME] = await self._exec_ok(project_id, "db", PG_DUMP_COMMAND)
                if BackupContent.STORAGE in contents:
                    cmd = ["tar", "-cf", "-", "-C", STORAGE_DATA_DIR]
                    if since is not None:
                        cmd.append(f"--newer-mtime={since.isoformat()}")
                    cmd.append(".")
                    members[STORAGE_NAME] = await self._exec_ok(project_id, "storage", cmd)
                if BackupContent.CONFIG in contents:
                    members[CONFIG_NAME] = hold.config().model_dump_json(indent=2).encode("utf-8")
            finally:
                await self._stop_started(started)

        manifest = {
            "backup_id": backup_id,
            "project_id": project_id,
            "backup_type": backup_type.value,
            "contents": sorted(c.value for c in contents),
            "base_backup_id": base_backup_id,
            "since": since.isoformat() if since else None,
            "captured_at": self.clock().isoformat(),
        }
        members[MANIFEST_NAME] = json.dumps(manifest, indent=2).encode("utf-8")
        return build_bundle(members)

    async def _auto_cleanup(self, project_id: str, retention: int, *, keep: str) -> list[str]:
        """Delete the oldest completed backups beyond ``retention``.

        Never deletes ``keep`` or a backup some remaining INCREMENTAL is based on.
        """
        remaining = self.completed_backups(project_id)
        deleted: list[str] = []
        while len(remaining) > retention:
            bases = {b.base_backup_id for b in remaining if b.base_backup_id}
            victim = next(
                (b for b in remaining if b.backup_id != keep and b.backup_id not in bases),
                None,
            )
            if victim is None:
                break
            await self._delete_artifacts(victim)
            self._backups.pop(victim.backup_id, None)
            remaining.remove(victim)
            deleted.append(victim.backup_id)
        if deleted:
            logger.info("backup.auto_cleanup", project_id=project_id, deleted=deleted)
        return deleted

    async def _delete_artifacts(self, backup: BackupInfo) -> None:
        targets: list[tuple[BackupStorage, str]] = []
        if backup.file_path:
            targets.append((self.storage, backup.file_path))
        if backup.s3_key and self.remote is not None:
            targets.append((self.remote, backup.s3_key))
        for storage, key in targets:
            try:
                await storage.delete(key)
            except NotFoundError:
                logger.debug("backup.artifact_already_gone", key=key)

    async def delete_backup(self, backup_id: str) -> None:
        """Remove the artifact(s) and then the record."""
        async with LogContext(backup_id=backup_id, operation="delete_backup"):
            backup = self._require_backup(backup_id)
            if backup.status == BackupStatus.CREATING:
                raise BackupError(f"backup {backup_id} is still being created").with_context(backup_id=backup_id)
            await self._delete_artifacts(backup)
            self._backups.pop(backup_id, None)
            logger.info("backup.deleted", project_id=backup.project_id)

    async def expire_backups(self, now: datetime | None = None) -> list[str]:
        """Delete completed backups whose ``expires_at`` has passed."""
        now = now or self.clock()
        expired = [
            b for b in list(self._backups.values())
            if b.status == BackupStatus.COMPLETED and b.expires_at is not None and b.expires_at <= now
        ]
        for backup in expired:
            await self._delete_artifacts(backup)
            self._backups.pop(backup.backup_id, None)
            logger.info("backup.expired", backup_id=backup.backup_id, project_id=backup.project_id)
        return [b.backup_id for b in expired]

    async def download_backup(self, backup_id: str, expires_in: int = 3600) -> str:
        """Temporary URL for a completed artifact."""
        backup = self._require_backup(backup_id)
        if backup.status != BackupStatus.COMPLETED:
            raise BackupError(f"backup {backup_id} is {backup.status.value}").with_context(backup_id=backup_id)
        storage, key = self._storage_for(backup)
        return await storage.get_download_url(key, expires_in)

    # ------------------------------------------------------------------
    # restore
    # ------------------------------------------------------------------

    def _restore_chain(self, backup: BackupInfo) -> list[BackupInfo]:
        """The backup preceded by its base chain, oldest first."""
        chain = [backup]
        current = backup
        while current.base_backup_id is not None:
            base = self._backups.get(current.base_backup_id)
            if base is None or base.status != BackupStatus.COMPLETED:
                raise NoBaseBackupError(
                    f"base backup {current.base_backup_id} of {current.backup_id} is no longer available"
                ).with_context(backup_id=backup.backup_id)
            chain.append(base)
            current = base
        chain.reverse()
        return chain

    async def restore_backup(self, config: RestoreConfig) -> RestoreInfo:
        """Validate, register a RESTORING record and restore in the background.

        Raises:
            NotFoundError: unknown backup or project.
            TypeMismatchError: the restore type asks for content the backup
                does not carry, the backup is not COMPLETED, or a
                ``point_in_time`` other than the backup's own was requested.
            InvalidTransitionError: the project cannot be restored in its
                current status (``stop_project`` needs ACTIVE_HEALTHY or PAUSED).
            NoBaseBackupError: an incremental's base chain is incomplete.
        """
        async with LogContext(project_id=config.project_id, backup_id=config.backup_id, operation="restore_backup"):
            backup = self._require_backup(config.backup_id)
            target = self.orchestrator.registry.require(config.project_id)

            if backup.status != BackupStatus.COMPLETED:
                raise TypeMismatchError(
                    f"backup {backup.backup_id} is {backup.status.value}, not COMPLETED"
                ).with_context(backup_id=backup.backup_id)
            missing = config.restore_type.contents - backup.contents
            if missing:
                raise TypeMismatchError(
                    f"{backup.backup_type.value} backup {backup.backup_id} does not contain "
                    f"{', '.join(sorted(c.value for c in missing))}"
                ).with_context(backup_id=backup.backup_id, restore_type=config.restore_type.value)
            if config.point_in_time is not None and config.point_in_time != backup.created_at:
                raise TypeMismatchError(
                    f"backup {backup.backup_id} can only restore its own snapshot at {backup.created_at.isoformat()}"
                ).with_context(backup_id=backup.backup_id)
            if target.status in _UNBACKUPABLE:
                raise InvalidTransitionError(target.status, "RESTORE").with_context(project_id=config.project_id)
            if config.stop_project and target.status not in _STOPPABLE:
                raise InvalidTransitionError(target.status, "RESTORE").with_context(
                    project_id=config.project_id, stop_project=True,
                )
            if backup.encrypted and not self.codec.can_encrypt:
                raise ConfigError(f"backup {backup.backup_id} is encrypted but no encryption key is configured")
            chain = self._restore_chain(backup)

            restore = RestoreInfo(
                restore_id=_new_id("rs"),
                project_id=config.project_id,
                backup_id=backup.backup_id,
                started_at=self.clock(),
            )
            self._restores[restore.restore_id] = restore
            self.supervisor.spawn(
                f"restore:{restore.restore_id}",
                lambda: self._run_restore(restore, config, chain),
            )
            logger.info("restore.accepted", restore_id=restore.restore_id, chain=[b.backup_id for b in chain])
            return restore.snapshot()

    async def _fetch(self, chain: list[BackupInfo], restore: RestoreInfo) -> list[dict[str, bytes]]:
        """Download and decode every artifact in the chain."""
        payloads: list[tuple[BackupInfo, bytes]] = []
        with tempfile.TemporaryDirectory(prefix="supamanager-restore-") as work:
            for backup in chain:
                storage, key = self._storage_for(backup)
                local = Path(work) / f"{backup.backup_id}.artifact"
                await storage.download(key, local)
                payloads.append((backup, local.read_bytes()))
        restore.advance(PROGRESS_DOWNLOADED)

        bundles: list[dict[str, bytes]] = []
        for backup, data in payloads:
            raw = await asyncio.to_thread(
                self.codec.decode, data, compressed=backup.compressed, encrypted=backup.encrypted,
            )
            members = read_bundle(raw)
            recorded = bundle_manifest(members).get("backup_id")
            if recorded != backup.backup_id:
                raise BackupError(
                    f"artifact for {backup.backup_id} carries manifest of {recorded}"
                ).with_context(backup_id=backup.backup_id)
            bundles.append(members)
        restore.advance(PROGRESS_DECODED)
        return bundles

    async def _run_restore(self, restore: RestoreInfo, config: RestoreConfig, chain: list[BackupInfo]) -> None:
        async with LogContext(
            project_id=restore.project_id, backup_id=restore.backup_id,
            restore_id=restore.restore_id, operation="restore",
        ):
            try:
                if config.stop_project:
                    async with self.orchestrator.hold(config.project_id) as hold:
                        bundles = await self._fetch(chain, restore)
                        await self._apply(hold, config, bundles, restore)
                else:
                    bundles = await self._fetch(chain, restore)
                    async with self.orchestrator.hold(config.project_id) as hold:
                        await self._apply(hold, config, bundles, restore)
            except asyncio.CancelledError:
                await self._fail_restore(restore, "restore cancelled")
                raise
            except Exception as exc:
                error = _as_error(exc, f"restore {restore.restore_id} failed")
                logger.error("restore.failed", error=error.to_dict())
                await self._fail_restore(restore, error.message)
                return

            restore.advance(100.0)
            restore.completed_at = self.clock()
            restore.status = RestoreStatus.COMPLETED
            logger.info("restore.completed")

    async def _fail_restore(self, restore: RestoreInfo, message: str) -> None:
        restore.error_message = message
        restore.completed_at = self.clock()
        restore.status = RestoreStatus.FAILED
        try:
            await self.orchestrator.mark_restore_failed(restore.project_id, f"restore {restore.restore_id} failed: {message}")
        except Exception as exc:
            logger.error("restore.mark_unhealthy_failed", error=error_payload(exc))

    async def _apply(
        self,
        hold: ProjectHold,
        config: RestoreConfig,
        bundles: list[dict[str, bytes]],
        restore: RestoreInfo,
    ) -> None:
        """Replay bundles into the held project. The last bundle is the target backup."""
        project_id = hold.project_id
        was_paused = hold.info().status == ProjectStatus.PAUSED
        stopped_here = False
        if config.stop_project and not was_paused:
            await hold.pause()
            stopped_here = True

        contents = config.restore_type.contents
        services = [_SERVICE_FOR[c] for c in (BackupContent.DATABASE, BackupContent.STORAGE) if c in contents]
        started = await self._ensure_running(hold, services)
        try:
            if BackupContent.DATABASE in contents:
                await self._exec_ok(project_id, "db", PSQL_RESTORE_COMMAND, stdin=bundles[-1][DATABASE_NAME])
                restore.advance(PROGRESS_DATABASE)
            if BackupContent.STORAGE in contents:
                if config.overwrite_data:
                    await self._exec_ok(
                        project_id, "storage", ["find", STORAGE_DATA_DIR, "-mindepth", "1", "-delete"],
                    )
                for members in bundles:
                    if STORAGE_NAME in members:
                        await self._exec_ok(
                            project_id, "storage", ["tar", "-xf", "-", "-C", STORAGE_DATA_DIR],
                            stdin=members[STORAGE_NAME],
                        )
                restore.advance(PROGRESS_STORAGE)
        except BaseException:
            # ACTIVE_UNHEALTHY follows, with every container running
            if was_paused or stopped_here:
                await self._restart_stack(hold)
            raise

        if was_paused:
            await self._stop_started(started)
        hold.clear_degraded()
        if stopped_here:
            await hold.resume()
            restore.advance(PROGRESS_RESUMED)

    # ------------------------------------------------------------------
    # schedules
    # ------------------------------------------------------------------

    async def set_backup_schedule(self, schedule: BackupSchedule) -> BackupSchedule:
        """Install or replace the schedule for (project, backup type)."""
        parse_time(schedule.time)
        self.orchestrator.registry.require(schedule.project_id)
        stored = schedule.snapshot()
        previous = self._schedules.get(stored.key)
        if previous is None:
            stored.created_at = self.clock()
        elif stored.last_run_at is None:
            stored.last_run_at = previous.last_run_at
            stored.created_at = previous.created_at
        self._schedules[stored.key] = stored
        logger.info("backup.schedule.set", **stored.to_dict())
        return stored.snapshot()

    async def get_backup_schedule(self, project_id: str, backup_type: BackupType | str | None = None) -> BackupSchedule:
        if backup_type is not None:
            schedule = self._schedules.get((project_id, BackupType.parse(backup_type)))
        else:
            matches = [s for key, s in sorted(self._schedules.items(), key=lambda kv: kv[0][1].value) if key[0] == project_id]
            schedule = matches[0] if matches else None
        if schedule is None:
            raise NotFoundError(f"no backup schedule for project {project_id}").with_context(project_id=project_id)
        return schedule.snapshot()

    async def list_backup_schedules(self, project_id: str | None = None) -> list[BackupSchedule]:
        return [
            s.snapshot()
            for key, s in sorted(self._schedules.items(), key=lambda kv: (kv[0][0], kv[0][1].value))
            if project_id is None or key[0] == project_id
        ]

    async def delete_backup_schedule(self, project_id: str, backup_type: BackupType | str) -> None:
        key = (project_id, BackupType.parse(backup_type))
        if self._schedules.pop(key, None) is None:
            raise NotFoundError(f"no {key[1].value} backup schedule for project {project_id}").with_context(
                project_id=project_id,
            )

    async def run_due_schedules(self, now: datetime | None = None) -> list[BackupInfo]:
        """Start one backup for every schedule whose latest slot has not run yet."""
        now = now or self.clock()
        started: list[BackupInfo] = []
        for key in sorted(self._schedules, key=lambda k: (k[0], k[1].value)):
            schedule = self._schedules[key]
            if not is_due(schedule, now):
                continue
            schedule.last_run_at = now
            if schedule.project_id not in self.orchestrator.registry:
                logger.warning("backup.schedule.orphaned", project_id=schedule.project_id)
                self.remove_project(schedule.project_id)
                continue
            config = BackupConfig(
                project_id=schedule.project_id,
                backup_type=schedule.backup_type,
                encryption=self.codec.can_encrypt,
                retention=schedule.retention or self.settings.backup_retention,
                auto_cleanup=True,
            )
            try:
                started.append(await self.create_backup(config))
            except Exception as exc:
                logger.error(
                    "backup.schedule.failed",
                    project_id=schedule.project_id,
                    backup_type=schedule.backup_type.value,
                    error=error_payload(exc),
                )
        return started

    def remove_project(self, project_id: str) -> None:
        """Drop the schedules of a deleted project. Backups are kept."""
        for key in [k for k in self._schedules if k[0] == project_id]:
            del self._schedules[key]

    # ------------------------------------------------------------------
    # export / import
    # ------------------------------------------------------------------

    async def export_project(self, project_id: str, output_path: str | Path) -> Path:
        """Write a portable ``.tar.gz`` with a FULL bundle and the compose file."""
        output = Path(output_path)
        async with LogContext(project_id=project_id, operation="export_project"):
            config = self.orchestrator.get_project_config(project_id)
            bundle = await self._capture(project_id, BackupType.FULL, backup_id=f"export-{project_id}")
            compose = dump_compose(render_project(config, self.settings))
            meta = {
                "format": EXPORT_FORMAT,
                "project_id": project_id,
                "project_name": config.project_name,
                "exported_at": self.clock().isoformat(),
                "bundle": EXPORT_BUNDLE,
                "compose": EXPORT_COMPOSE,
            }
            members = {
                EXPORT_MANIFEST: json.dumps(meta, indent=2).encode("utf-8"),
                EXPORT_BUNDLE: bundle,
                EXPORT_COMPOSE: compose.encode("utf-8"),
            }
            await asyncio.to_thread(_write_archive, output, members)
            logger.info("project.exported", path=str(output), size=output.stat().st_size)
            return output

    def _allocate_port(self, base: int, taken: set[int]) -> int:
        port = base
        while port in taken:
            port += 1
        taken.add(port)
        return port

    async def import_project(
        self,
        export_path: str | Path,
        new_project_id: str,
        *,
        db_port: int | None = None,
        api_port: int | None = None,
        studio_port: int | None = None,
        timeout: float | None = None,
    ) -> ProjectInfo:
        """Create ``new_project_id`` from an export and restore its data into it.

        Ports not supplied are allocated upward from the configured bases.
        """
        async with LogContext(project_id=new_project_id, operation="import_project"):
            members = await asyncio.to_thread(_read_archive, Path(export_path))
            if EXPORT_MANIFEST not in members or EXPORT_BUNDLE not in members:
                raise BackupError(f"{export_path} is not a project export")
            bundle = read_bundle(members[EXPORT_BUNDLE])
            if CONFIG_NAME not in bundle:
                raise TypeMismatchError(f"{export_path} carries no project config")
            recorded = json.loads(bundle[CONFIG_NAME].decode("utf-8"))

            taken = set(self.orchestrator.registry.used_ports())
            recorded["project_id"] = new_project_id
            recorded["db_port"] = db_port or self._allocate_port(self.settings.base_postgres_port, taken)
            recorded["api_port"] = api_port or self._allocate_port(self.settings.base_kong_http_port, taken)
            if studio_port is not None or recorded.get("studio_port") is not None:
                recorded["studio_port"] = studio_port or self._allocate_port(self.settings.base_studio_port, taken)
            config = ProjectConfig.model_validate(recorded)

            await self.orchestrator.create_project(config)
            info = await self.orchestrator.wait_for_project(new_project_id, timeout)
            if info.status != ProjectStatus.ACTIVE_HEALTHY:
                raise ProvisioningError(
                    new_project_id,
                    "import_project",
                    RuntimeError(info.error_message or f"project is {info.status.value}"),
                )

            restore = RestoreInfo(
                restore_id=_new_id("rs"),
                project_id=new_project_id,
                backup_id=str(bundle_manifest(bundle).get("backup_id")),
                started_at=self.clock(),
            )
            self._restores[restore.restore_id] = restore
            restore.advance(PROGRESS_DECODED)
            restore_config = RestoreConfig(
                project_id=new_project_id,
                backup_id=restore.backup_id,
                restore_type=BackupType.FULL,
            )
            try:
                async with self.orchestrator.hold(new_project_id) as hold:
                    await self._apply(hold, restore_config, [bundle], restore)
            except Exception as exc:
                error = _as_error(exc, f"import into {new_project_id} failed")
                await self._fail_restore(restore, error.message)
                raise error from exc
            restore.advance(100.0)
            restore.completed_at = self.clock()
            restore.status = RestoreStatus.COMPLETED
            logger.info("project.imported", source=str(export_path), restore_id=restore.restore_id)
            return self.orchestrator.registry.require(new_project_id)


def _write_archive(output: Path, members: dict[str, bytes]) -> None:
    output.parent.mkdir(parents=True, exist_ok=True)
    with tarfile.open(output, "w:gz") as archive:
        for name, data in members.items():
            info = tarfile.TarInfo(name=name)
            info.size = len(data)
            archive.addfile(info, io.BytesIO(data))


def _read_archive(path: Path) -> dict[str, bytes]:
    if not path.is_file():
        raise NotFoundError(f"export {path} not found")
    members: dict[str, bytes] = {}
    try:
        with tarfile.open(path, "r:gz") as archive:
            for member in archive.getmembers():
                if member.isfile():
                    extracted = archive.extractfile(member)
                    members[member.name] = extracted.read() if extracted else b""
    except tarfile.TarError as exc:
        raise BackupError(f"{path} is not a readable export: {exc}", cause=exc) from exc
    return members
