"""
Archive packing for dump directories.

A dump directory is packed into a single tar.gz artifact (gzip level 9)
before encryption, and unpacked again during restore testing.
"""

import logging
import tarfile
from dataclasses import dataclass
from pathlib import Path

from .exceptions import ArchiveFailure

logger = logging.getLogger(__name__)

ARCHIVE_ROOT = "dump"


@dataclass
class ArchiveInfo:
    path: Path
    size: int
    original_size: int

    @property
    def compression_ratio(self) -> float:
        """Fraction of the original size saved by compression (0.7 means 70% smaller)."""
        if self.original_size <= 0:
            return 0.0
        return 1 - (self.size / self.original_size)


def _directory_size(path: Path) -> int:
    return sum(f.stat().st_size for f in path.rglob("*") if f.is_file())


class ArchiveBuilder:
    """Pack a dump directory into a tar.gz file and reverse the operation."""

    def __init__(self, compresslevel: int = 9):
        self.compresslevel = compresslevel

    def pack(self, source_dir, output_path) -> ArchiveInfo:
        """
        Create a tar.gz archive from a directory.

        Args:
            source_dir: Directory to archive
            output_path: Path for the output tar.gz file

        Returns:
            ArchiveInfo with the archive path and sizes

        Raises:
            ArchiveFailure: If the directory is missing or the archive cannot be written
        """
        source_dir = Path(source_dir)
        output_path = Path(output_path)

        if not source_dir.is_dir():
            raise ArchiveFailure(f"Dump directory not found: {source_dir}")

        try:
            logger.info(f"Creating tar.gz archive: {output_path}")
            original_size = _directory_size(source_dir)

            with tarfile.open(output_path, "w:gz", compresslevel=self.compresslevel) as tar:
                tar.add(source_dir, arcname=ARCHIVE_ROOT)

            info = ArchiveInfo(
                path=output_path,
                size=output_path.stat().st_size,
                original_size=original_size,
            )
        except (OSError, tarfile.TarError) as e:
            logger.error(f"Failed to create tar.gz archive {output_path}: {e}")
            raise ArchiveFailure(f"Failed to create archive: {e}") from e

        logger.info(
            f"Created tar.gz archive: {info.original_size} bytes -> {info.size} bytes "
            f"({info.compression_ratio * 100:.1f}% reduction)"
        )
        return info

    def unpack(self, archive_path, dest_dir) -> Path:
        """
        Extract an archive created by ``pack``.

        Every member is checked before extraction: absolute paths, parent
        directory references and links are rejected.

        Returns:
            Path to the extracted dump directory

        Raises:
            ArchiveFailure: If the archive is unreadable or contains unsafe members
        """
        archive_path = Path(archive_path)
        dest_dir = Path(dest_dir).resolve()

        try:
            dest_dir.mkdir(parents=True, exist_ok=True)

            with tarfile.open(archive_path, "r:gz") as tar:
                members = tar.getmembers()
                for member in members:
                    target = (dest_dir / member.name).resolve()
                    if target != dest_dir and dest_dir not in target.parents:
                        raise ArchiveFailure(f"Unsafe path in archive: {member.name}")
                    if member.issym() or member.islnk():
                        raise ArchiveFailure(f"Links are not allowed in archive: {member.name}")
                if hasattr(tarfile, "data_filter"):
                    tar.extractall(dest_dir, members=members, filter="data")
                else:
                    tar.extractall(dest_dir, members=members)
        except ArchiveFailure:
            raise
        except (OSError, EOFError, tarfile.TarError) as e:
            logger.error(f"Failed to extract {archive_path}: {e}")
            raise ArchiveFailure(f"Failed to extract archive: {e}") from e

        dump_dir = dest_dir / ARCHIVE_ROOT
        if not dump_dir.is_dir():
            raise ArchiveFailure("Dump directory not found in archive")

        logger.info(f"Extracted {archive_path} -> {dump_dir}")
        return dump_dir
