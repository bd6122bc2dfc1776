"""Backup artifact storage backends.

``BackupStorage`` moves finished artifacts between a local path and a key.
Keys are relative, slash-separated (``<prefix><project_id>/<backup_id>.tar.gz``)
so the same key works on either backend.
"""

from __future__ import annotations

import asyncio
import shutil
import time
from pathlib import Path
from typing import Any, Protocol, runtime_checkable
from urllib.parse import urlencode

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from supamanager.core.errors import BackupStorageError, NotFoundError
from supamanager.core.logging import get_logger

logger = get_logger(__name__)


@runtime_checkable
class BackupStorage(Protocol):
    """Artifact transport used by the backup engine."""

    async def upload(self, path: Path, key: str) -> None: ...

    async def download(self, key: str, path: Path) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def list(self, prefix: str = "") -> list[str]: ...

    async def get_download_url(self, key: str, expires_in: int = 3600) -> str: ...


class LocalBackupStorage:
    """Stores artifacts as files below ``base_dir``."""

    def __init__(self, base_dir: str | Path) -> None:
        self.base_dir = Path(base_dir).resolve()
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, key: str) -> Path:
        """Absolute path of ``key``; keys may not leave ``base_dir``."""
        clean = Path(key).as_posix().lstrip("/")
        full_path = (self.base_dir / clean).resolve()
        try:
            full_path.relative_to(self.base_dir)
        except ValueError:
            raise BackupStorageError(f"invalid key {key!r} (outside {self.base_dir})") from None
        if full_path == self.base_dir:
            raise BackupStorageError(f"invalid key {key!r}")
        return full_path

    async def upload(self, path: Path, key: str) -> None:
        target = self.path_for(key)

        def _copy() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(path, target)

        try:
            await asyncio.to_thread(_copy)
        except OSError as exc:
            raise BackupStorageError(f"upload of {key} failed: {exc}", cause=exc) from exc
        logger.info("backup_storage.uploaded", backend="local", key=key)

    async def download(self, key: str, path: Path) -> None:
        source = self.path_for(key)
        if not source.is_file():
            raise NotFoundError(f"backup artifact {key} not found").with_context(operation="download")

        def _copy() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(source, path)

        try:
            await asyncio.to_thread(_copy)
        except OSError as exc:
            raise BackupStorageError(f"download of {key} failed: {exc}", cause=exc) from exc

    async def delete(self, key: str) -> None:
        target = self.path_for(key)
        target.unlink(missing_ok=True)
        logger.info("backup_storage.deleted", backend="local", key=key)

    async def list(self, prefix: str = "") -> list[str]:
        keys = []
        for path in self.base_dir.rglob("*"):
            if path.is_file():
                key = path.relative_to(self.base_dir).as_posix()
                if key.startswith(prefix):
                    keys.append(key)
        return sorted(keys)

    async def get_download_url(self, key: str, expires_in: int = 3600) -> str:
        target = self.path_for(key)
        if not target.is_file():
            raise NotFoundError(f"backup artifact {key} not found").with_context(operation="get_download_url")
        expires = int(time.time()) + int(expires_in)
        return f"{target.as_uri()}?{urlencode({'expires': expires})}"


class S3BackupStorage:
    """Stores artifacts in an S3-compatible bucket (AWS S3, MinIO, LocalStack).

    boto3 is blocking, so every call runs in a worker thread.
    """

    def __init__(
        self,
        bucket: str,
        prefix: str = "",
        *,
        client: Any | None = None,
        region: str = "us-east-1",
        endpoint_url: str | None = None,
    ) -> None:
        if not bucket:
            raise BackupStorageError("S3 bucket name is required")
        self.bucket = bucket
        self.prefix = prefix
        self.region = region

        if client is None:
            client_kwargs: dict[str, Any] = {
                "service_name": "s3",
                "region_name": region,
                "config": Config(signature_version="s3v4"),
            }
            if endpoint_url:
                client_kwargs["endpoint_url"] = endpoint_url
            client = boto3.client(**client_kwargs)
        self.client = client

        logger.info("backup_storage.s3_initialized", bucket=bucket, prefix=prefix, region=region)

    def _key(self, key: str) -> str:
        key = key.lstrip("/")
        if self.prefix and not key.startswith(self.prefix):
            return f"{self.prefix}{key}"
        return key

    async def _call(self, operation: str, key: str, func: Any, *args: Any, **kwargs: Any) -> Any:
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except ClientError as exc:
            code = str(exc.response.get("Error", {}).get("Code", ""))
            if code in ("404", "NoSuchKey", "NotFound"):
                raise NotFoundError(f"backup artifact {key} not found in s3://{self.bucket}").with_context(
                    operation=operation,
                ) from exc
            raise BackupStorageError(
                f"s3 {operation} of {key} failed: {code or exc}", cause=exc,
            ).with_context(operation=operation, bucket=self.bucket) from exc
        except BotoCoreError as exc:
            raise BackupStorageError(f"s3 {operation} of {key} failed: {exc}", cause=exc).with_context(
                operation=operation, bucket=self.bucket,
            ) from exc

    async def upload(self, path: Path, key: str) -> None:
        s3_key = self._key(key)
        await self._call("upload", s3_key, self.client.upload_file, str(path), self.bucket, s3_key)
        logger.info("backup_storage.uploaded", backend="s3", bucket=self.bucket, key=s3_key)

    async def download(self, key: str, path: Path) -> None:
        s3_key = self._key(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        await self._call("download", s3_key, self.client.download_file, self.bucket, s3_key, str(path))

    async def delete(self, key: str) -> None:
        s3_key = self._key(key)
        await self._call("delete", s3_key, self.client.delete_object, Bucket=self.bucket, Key=s3_key)
        logger.info("backup_storage.deleted", backend="s3", bucket=self.bucket, key=s3_key)

    async def list(self, prefix: str = "") -> list[str]:
        full_prefix = self._key(prefix)

        def _list() -> list[str]:
            paginator = self.client.get_paginator("list_objects_v2")
            keys: list[str] = []
            for page in paginator.paginate(Bucket=self.bucket, Prefix=full_prefix):
                keys.extend(obj["Key"] for obj in page.get("Contents", []))
            return keys

        return sorted(await self._call("list", full_prefix, _list))

    async def get_download_url(self, key: str, expires_in: int = 3600) -> str:
        s3_key = self._key(key)
        return await self._call(
            "get_download_url",
            s3_key,
            self.client.generate_presigned_url,
            "get_object",
            Params={"Bucket": self.bucket, "Key": s3_key},
            ExpiresIn=int(expires_in),
        )
