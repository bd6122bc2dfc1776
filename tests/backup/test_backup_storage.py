"""Tests for local and S3 backup storage backends."""

from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from supamanager.backup.storage import BackupStorage, LocalBackupStorage, S3BackupStorage
from supamanager.core.errors import BackupStorageError, NotFoundError


def _client_error(code: str, operation: str = "GetObject") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class TestLocalBackupStorage:
    @pytest.mark.asyncio
    async def test_upload_download_delete(self, tmp_path):
        storage = LocalBackupStorage(tmp_path / "store")
        source = tmp_path / "artifact.tar.gz"
        source.write_bytes(b"payload")

        await storage.upload(source, "p1/bk-1.tar.gz")
        assert await storage.list() == ["p1/bk-1.tar.gz"]

        target = tmp_path / "restore" / "bk-1.tar.gz"
        await storage.download("p1/bk-1.tar.gz", target)
        assert target.read_bytes() == b"payload"

        await storage.delete("p1/bk-1.tar.gz")
        assert await storage.list() == []

    @pytest.mark.asyncio
    async def test_list_by_prefix(self, tmp_path):
        storage = LocalBackupStorage(tmp_path)
        source = tmp_path / "a"
        source.write_bytes(b"a")
        await storage.upload(source, "p1/one.tar")
        await storage.upload(source, "p2/two.tar")
        assert await storage.list("p1/") == ["p1/one.tar"]

    @pytest.mark.asyncio
    async def test_missing_download(self, tmp_path):
        storage = LocalBackupStorage(tmp_path)
        with pytest.raises(NotFoundError):
            await storage.download("p1/nope.tar", tmp_path / "out")

    @pytest.mark.asyncio
    async def test_delete_missing_is_quiet(self, tmp_path):
        await LocalBackupStorage(tmp_path).delete("p1/nope.tar")

    def test_keys_cannot_escape(self, tmp_path):
        storage = LocalBackupStorage(tmp_path / "store")
        with pytest.raises(BackupStorageError):
            storage.path_for("../outside.tar")
        with pytest.raises(BackupStorageError):
            storage.path_for("")

    @pytest.mark.asyncio
    async def test_download_url(self, tmp_path):
        storage = LocalBackupStorage(tmp_path)
        source = tmp_path / "a"
        source.write_bytes(b"a")
        await storage.upload(source, "p1/bk.tar")
        url = await storage.get_download_url("p1/bk.tar", expires_in=60)
        assert url.startswith("file://")
        assert "expires=" in url

    def test_satisfies_protocol(self, tmp_path):
        assert isinstance(LocalBackupStorage(tmp_path), BackupStorage)


class TestS3BackupStorage:
    @pytest.fixture
    def client(self):
        return MagicMock()

    @pytest.fixture
    def storage(self, client):
        return S3BackupStorage("backups", "supamanager/", client=client)

    def test_bucket_required(self, client):
        with pytest.raises(BackupStorageError):
            S3BackupStorage("", client=client)

    @pytest.mark.asyncio
    async def test_upload_uses_prefix(self, storage, client, tmp_path):
        path = tmp_path / "bk.tar"
        path.write_bytes(b"x")
        await storage.upload(path, "p1/bk.tar")
        client.upload_file.assert_called_once_with(str(path), "backups", "supamanager/p1/bk.tar")

    @pytest.mark.asyncio
    async def test_prefix_not_doubled(self, storage, client):
        await storage.delete("supamanager/p1/bk.tar")
        client.delete_object.assert_called_once_with(Bucket="backups", Key="supamanager/p1/bk.tar")

    @pytest.mark.asyncio
    async def test_missing_key_is_not_found(self, storage, client, tmp_path):
        client.download_file.side_effect = _client_error("NoSuchKey")
        with pytest.raises(NotFoundError):
            await storage.download("p1/bk.tar", tmp_path / "bk.tar")

    @pytest.mark.asyncio
    async def test_other_errors_are_storage_errors(self, storage, client, tmp_path):
        client.upload_file.side_effect = _client_error("AccessDenied", "PutObject")
        path = tmp_path / "bk.tar"
        path.write_bytes(b"x")
        with pytest.raises(BackupStorageError, match="AccessDenied"):
            await storage.upload(path, "p1/bk.tar")

    @pytest.mark.asyncio
    async def test_list_paginates(self, storage, client):
        paginator = MagicMock()
        paginator.paginate.return_value = [
            {"Contents": [{"Key": "supamanager/p1/b.tar"}]},
            {"Contents": [{"Key": "supamanager/p1/a.tar"}]},
            {},
        ]
        client.get_paginator.return_value = paginator
        assert await storage.list("p1/") == ["supamanager/p1/a.tar", "supamanager/p1/b.tar"]
        paginator.paginate.assert_called_once_with(Bucket="backups", Prefix="supamanager/p1/")

    @pytest.mark.asyncio
    async def test_presigned_url(self, storage, client):
        client.generate_presigned_url.return_value = "https://s3.example/backups/p1/bk.tar?sig"
        url = await storage.get_download_url("p1/bk.tar", expires_in=120)
        assert url.endswith("?sig")
        client.generate_presigned_url.assert_called_once_with(
            "get_object",
            Params={"Bucket": "backups", "Key": "supamanager/p1/bk.tar"},
            ExpiresIn=120,
        )
