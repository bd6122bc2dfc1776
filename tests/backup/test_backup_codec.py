"""Tests for backup bundles and the gzip/Fernet artifact codec."""

import json

import pytest
from cryptography.fernet import Fernet

from supamanager.backup.codec import (
    DATABASE_NAME,
    MANIFEST_NAME,
    ArtifactCodec,
    build_bundle,
    bundle_manifest,
    read_bundle,
)
from supamanager.core.errors import BackupError, ConfigError


def _bundle() -> bytes:
    return build_bundle({
        MANIFEST_NAME: json.dumps({"backup_id": "bk-1"}).encode(),
        DATABASE_NAME: b"CREATE TABLE notes (id int);\n",
    })


class TestBundle:
    def test_members_survive(self):
        members = read_bundle(_bundle())
        assert members[DATABASE_NAME] == b"CREATE TABLE notes (id int);\n"
        assert bundle_manifest(members) == {"backup_id": "bk-1"}

    def test_bundle_is_deterministic(self):
        assert _bundle() == _bundle()

    def test_manifest_required(self):
        with pytest.raises(BackupError, match="no manifest"):
            read_bundle(build_bundle({DATABASE_NAME: b"x"}))

    def test_garbage_rejected(self):
        with pytest.raises(BackupError):
            read_bundle(b"definitely not a tar archive" * 20)


class TestArtifactCodec:
    def test_plain_passthrough(self):
        codec = ArtifactCodec()
        raw = _bundle()
        assert codec.encode(raw, compress=False, encrypt=False) == raw

    def test_compressed_and_encrypted(self, fernet_key):
        codec = ArtifactCodec(fernet_key)
        raw = _bundle()
        encoded = codec.encode(raw, compress=True, encrypt=True)
        assert raw not in encoded
        assert codec.decode(encoded, compressed=True, encrypted=True) == raw

    def test_wrong_key(self, fernet_key):
        encoded = ArtifactCodec(fernet_key).encode(_bundle(), compress=True, encrypt=True)
        other = ArtifactCodec(Fernet.generate_key())
        with pytest.raises(BackupError, match="decrypted"):
            other.decode(encoded, compressed=True, encrypted=True)

    def test_encrypt_without_key(self):
        codec = ArtifactCodec()
        assert not codec.can_encrypt
        with pytest.raises(ConfigError):
            codec.encode(b"data", compress=False, encrypt=True)

    def test_invalid_key(self):
        with pytest.raises(ConfigError, match="invalid backup encryption key"):
            ArtifactCodec("not-a-fernet-key")

    def test_corrupt_gzip(self):
        with pytest.raises(BackupError, match="gzip"):
            ArtifactCodec().decode(b"plain bytes", compressed=True, encrypted=False)

    def test_generate_key_is_usable(self):
        assert ArtifactCodec(ArtifactCodec.generate_key()).can_encrypt
