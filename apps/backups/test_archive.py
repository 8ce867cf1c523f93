"""
Tests for dump archive packing and unpacking.
"""

import io
import tarfile

import pytest

from apps.backups.archive import ArchiveBuilder
from apps.backups.exceptions import ArchiveFailure


@pytest.fixture
def dump_dir(tmp_path):
    path = tmp_path / "dump"
    (path / "safekeep").mkdir(parents=True)
    (path / "safekeep" / "users.bson").write_bytes(b"user document " * 500)
    (path / "safekeep" / "records.bson").write_bytes(b"record document " * 500)
    return path


class TestArchiveBuilder:
    def test_pack_reports_sizes(self, dump_dir, tmp_path):
        info = ArchiveBuilder().pack(dump_dir, tmp_path / "out.tar.gz")

        assert info.path.exists()
        assert info.size == info.path.stat().st_size
        assert info.original_size == (14 + 16) * 500
        assert info.compression_ratio > 0.5

    def test_pack_uses_dump_root(self, dump_dir, tmp_path):
        info = ArchiveBuilder().pack(dump_dir, tmp_path / "out.tar.gz")

        with tarfile.open(info.path, "r:gz") as tar:
            names = tar.getnames()

        assert "dump/safekeep/users.bson" in names
        assert all(name.startswith("dump") for name in names)

    def test_pack_missing_directory(self, tmp_path):
        with pytest.raises(ArchiveFailure):
            ArchiveBuilder().pack(tmp_path / "nope", tmp_path / "out.tar.gz")

    def test_unpack_restores_tree(self, dump_dir, tmp_path):
        builder = ArchiveBuilder()
        info = builder.pack(dump_dir, tmp_path / "out.tar.gz")

        extracted = builder.unpack(info.path, tmp_path / "extracted")

        assert extracted.name == "dump"
        assert (extracted / "safekeep" / "users.bson").read_bytes() == b"user document " * 500

    def test_unpack_rejects_path_traversal(self, tmp_path):
        archive = tmp_path / "evil.tar.gz"
        with tarfile.open(archive, "w:gz") as tar:
            payload = b"owned"
            member = tarfile.TarInfo("../escape.txt")
            member.size = len(payload)
            tar.addfile(member, io.BytesIO(payload))

        with pytest.raises(ArchiveFailure):
            ArchiveBuilder().unpack(archive, tmp_path / "extracted")
        assert not (tmp_path / "escape.txt").exists()

    def test_unpack_rejects_links(self, tmp_path):
        archive = tmp_path / "link.tar.gz"
        with tarfile.open(archive, "w:gz") as tar:
            member = tarfile.TarInfo("dump/passwd")
            member.type = tarfile.SYMTYPE
            member.linkname = "/etc/passwd"
            tar.addfile(member)

        with pytest.raises(ArchiveFailure):
            ArchiveBuilder().unpack(archive, tmp_path / "extracted")

    def test_unpack_corrupt_archive(self, tmp_path):
        archive = tmp_path / "corrupt.tar.gz"
        archive.write_bytes(b"this is not gzip")

        with pytest.raises(ArchiveFailure):
            ArchiveBuilder().unpack(archive, tmp_path / "extracted")
