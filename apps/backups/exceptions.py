"""
Error taxonomy for the backup pipeline.

Every stage of backup creation and restore testing raises one of these
exceptions. The orchestration layer records ``kind`` on the catalog row so
operators can tell a dump problem from a storage problem at a glance.
"""


class BackupError(Exception):
    """Base class for all backup pipeline failures."""

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message

    @property
    def kind(self) -> str:
        return type(self).__name__

    def __str__(self):
        return self.message or self.kind


class DumpFailure(BackupError):
    """Raised when the dump/restore tool exits non-zero or times out."""


class ArchiveFailure(BackupError):
    """Raised when packing or unpacking a dump archive fails."""


class EncryptionFailure(BackupError):
    """Raised for a bad encryption key or an encryption library error."""


class IntegrityFailure(BackupError):
    """Raised on checksum mismatch or authentication tag failure."""


class StorageFailure(BackupError):
    """Raised when a storage backend is unreachable or refuses an operation."""


class ArtifactNotFound(StorageFailure):
    """Raised when a key does not exist in the storage backend."""


class RestoreValidationFailure(BackupError):
    """Raised when restored data fails the sanity checks."""


class ChainIntegrityFailure(BackupError):
    """Raised when an incremental backup references a missing or unusable parent."""
