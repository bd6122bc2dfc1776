"""Backup artifact encoding.

A bundle is a plain tar archive::

    manifest.json     backup id, project, type, contents, base backup
    database.sql      pg_dump output            (DATABASE content)
    storage.tar       tar stream of the storage volume (STORAGE content)
    config.json       ProjectConfig, secrets included  (CONFIG content)

On capture the bundle is gzipped (optional) and then Fernet-encrypted
(optional); decoding reverses the order.
"""

from __future__ import annotations

import gzip
import io
import json
import tarfile
from typing import Any

from cryptography.fernet import Fernet, InvalidToken

from supamanager.core.errors import BackupError, ConfigError

MANIFEST_NAME = "manifest.json"
DATABASE_NAME = "database.sql"
STORAGE_NAME = "storage.tar"
CONFIG_NAME = "config.json"


def build_bundle(members: dict[str, bytes]) -> bytes:
    """Tar ``members`` (name -> bytes) into one uncompressed archive."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as archive:
        for name, data in sorted(members.items()):
            info = tarfile.TarInfo(name=name)
            info.size = len(data)
            archive.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


def read_bundle(raw: bytes) -> dict[str, bytes]:
    """Inverse of :func:`build_bundle`; requires a manifest."""
    members: dict[str, bytes] = {}
    try:
        with tarfile.open(fileobj=io.BytesIO(raw), mode="r") as archive:
            for member in archive.getmembers():
                if not member.isfile():
                    continue
                extracted = archive.extractfile(member)
                members[member.name] = extracted.read() if extracted else b""
    except tarfile.TarError as exc:
        raise BackupError(f"backup bundle is not a valid archive: {exc}", cause=exc) from exc
    if MANIFEST_NAME not in members:
        raise BackupError("backup bundle has no manifest")
    return members


def bundle_manifest(members: dict[str, bytes]) -> dict[str, Any]:
    return json.loads(members[MANIFEST_NAME].decode("utf-8"))


class ArtifactCodec:
    """gzip + Fernet transform for bundles.

    Args:
        key: urlsafe base64 Fernet key. Only required for encrypted artifacts.
    """

    def __init__(self, key: str | bytes | None = None) -> None:
        self._fernet: Fernet | None = None
        if key:
            try:
                self._fernet = Fernet(key.encode("utf-8") if isinstance(key, str) else key)
            except (ValueError, TypeError) as exc:
                raise ConfigError(f"invalid backup encryption key: {exc}", cause=exc) from exc

    @property
    def can_encrypt(self) -> bool:
        return self._fernet is not None

    def _require_fernet(self) -> Fernet:
        if self._fernet is None:
            raise ConfigError("backup encryption requested but SUPAMANAGER_BACKUP_ENCRYPTION_KEY is not set")
        return self._fernet

    def encode(self, raw: bytes, *, compress: bool, encrypt: bool) -> bytes:
        data = gzip.compress(raw) if compress else raw
        if encrypt:
            data = self._require_fernet().encrypt(data)
        return data

    def decode(self, data: bytes, *, compressed: bool, encrypted: bool) -> bytes:
        if encrypted:
            try:
                data = self._require_fernet().decrypt(data)
            except InvalidToken as exc:
                raise BackupError("backup artifact could not be decrypted with the configured key", cause=exc) from exc
        if compressed:
            try:
                data = gzip.decompress(data)
            except (OSError, EOFError) as exc:
                raise BackupError(f"backup artifact is not valid gzip: {exc}", cause=exc) from exc
        return data

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode("utf-8")
