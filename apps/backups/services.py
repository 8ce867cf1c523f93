"""
Service layer for backup operations.

This module provides:
- BackupCreationService: dump, archive, encrypt, store and verify a backup
- IntegrityVerifier: independent re-read and re-hash of stored artifacts
- RetentionService: pruning of expired backups that nothing depends on
- Factories that build production instances from settings
"""

import logging
import shutil
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from django.conf import settings
from django.db.models import ProtectedError
from django.utils import timezone

from .archive import ArchiveBuilder
from .catalog import BackupCatalog
from .dump import DumpExecutor, get_dump_executor
from .encryption import Encryptor, calculate_checksum, get_configured_encryptor
from .exceptions import (
    ArchiveFailure,
    ArtifactNotFound,
    BackupError,
    DumpFailure,
    EncryptionFailure,
    IntegrityFailure,
    StorageFailure,
)
from .models import Backup, BackupAlert
from .monitoring import AlertNotifier, get_alert_notifier
from .storage import StorageBackend, get_storage_backend

logger = logging.getLogger(__name__)

ARTIFACT_SUFFIX = ".tar.gz"
ENCRYPTED_SUFFIX = ".enc"

# Exception used to wrap unexpected errors raised inside each stage
STAGE_ERRORS = {
    "dump": DumpFailure,
    "archive": ArchiveFailure,
    "encrypt": EncryptionFailure,
    "upload": StorageFailure,
    "verify": IntegrityFailure,
}


def artifact_key(backup: Backup, encrypted: bool) -> str:
    return f"{backup.id}{ARTIFACT_SUFFIX}{ENCRYPTED_SUFFIX if encrypted else ''}"


@dataclass
class VerificationResult:
    backup_id: str
    valid: bool
    expected_checksum: str
    actual_checksum: Optional[str] = None
    size_bytes: Optional[int] = None
    errors: List[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "backup_id": self.backup_id,
            "valid": self.valid,
            "expected_checksum": self.expected_checksum,
            "actual_checksum": self.actual_checksum,
            "size_bytes": self.size_bytes,
            "errors": self.errors,
        }


class IntegrityVerifier:
    """Re-read a stored artifact and compare its SHA-256 with the catalog."""

    def __init__(self, storage: StorageBackend, catalog: BackupCatalog):
        self.storage = storage
        self.catalog = catalog

    def verify(self, backup: Backup) -> VerificationResult:
        """
        Verify the stored artifact of ``backup`` without decrypting it.

        Returns:
            VerificationResult describing the outcome (never raises for a bad artifact)

        Raises:
            StorageFailure: If the backend cannot be reached
        """
        result = VerificationResult(backup_id=backup.id, valid=False, expected_checksum=backup.checksum)

        try:
            data = self.storage.get(backup.storage_location)
        except ArtifactNotFound:
            result.errors.append(f"Artifact not found: {backup.storage_location}")
            return result

        result.size_bytes = len(data)
        result.actual_checksum = calculate_checksum(data)

        if result.actual_checksum != backup.checksum:
            result.errors.append(
                f"Checksum mismatch: expected {backup.checksum}, got {result.actual_checksum}"
            )
        if backup.size_bytes and result.size_bytes != backup.size_bytes:
            result.errors.append(f"Size mismatch: expected {backup.size_bytes}, got {result.size_bytes}")

        result.valid = not result.errors
        return result

    def verify_and_mark(self, backup: Backup) -> VerificationResult:
        """
        Verify ``backup`` and move it to VERIFIED.

        Raises:
            IntegrityFailure: If the artifact is missing or does not match the catalog
        """
        result = self.verify(backup)

        if not result.valid:
            logger.error(f"Integrity verification failed for backup {backup.id}: {result.errors}")
            raise IntegrityFailure("; ".join(result.errors))

        self.catalog.mark_verified(backup)
        logger.info(f"Backup {backup.id} verified (checksum {result.actual_checksum})")
        return result


class BackupCreationService:
    """
    Create full and incremental backups.

    Pipeline: validate -> catalog row -> dump -> archive -> encrypt ->
    checksum -> upload -> mark completed -> verify. Any stage error marks
    the row failed, removes the uploaded artifact and raises one alert.
    """

    def __init__(
        self,
        catalog: BackupCatalog,
        dump_executor: DumpExecutor,
        storage: StorageBackend,
        archive_builder: ArchiveBuilder,
        notifier: AlertNotifier,
        encryptor: Optional[Encryptor] = None,
        verifier: Optional[IntegrityVerifier] = None,
        temp_dir: Optional[str] = None,
        notify_on_success: bool = True,
    ):
        self.catalog = catalog
        self.dump_executor = dump_executor
        self.storage = storage
        self.archive_builder = archive_builder
        self.notifier = notifier
        self.encryptor = encryptor
        self.verifier = verifier or IntegrityVerifier(storage, catalog)
        self.temp_dir = temp_dir
        self.notify_on_success = notify_on_success

    def create_backup(self, backup_type: str, parent_id: Optional[str] = None) -> Backup:
        """
        Create a backup of the source database.

        Args:
            backup_type: Backup.FULL or Backup.INCREMENTAL
            parent_id: Full backup to extend (incremental only; defaults to the latest full)

        Returns:
            The VERIFIED Backup row

        Raises:
            ChainIntegrityFailure: If an incremental has no usable parent (nothing is recorded)
            BackupError: The failure of the stage that broke, after it was recorded and alerted
        """
        if backup_type not in (Backup.FULL, Backup.INCREMENTAL):
            raise ValueError(f"Unknown backup type: {backup_type}")

        parent = None
        if backup_type == Backup.INCREMENTAL:
            parent = self.catalog.resolve_parent(parent_id)
        elif parent_id:
            raise ValueError("Full backups cannot have a parent")

        backup = self.catalog.create(backup_type, parent=parent, database=self.dump_executor.source_database)

        logger.info("=" * 80)
        logger.info(f"Starting {backup_type} backup {backup.id}")
        if parent:
            logger.info(f"Parent full backup: {parent.id} (completed {parent.completed_at.isoformat()})")
        logger.info("=" * 80)

        work_dir = Path(tempfile.mkdtemp(prefix=f"{backup.id}-", dir=self.temp_dir))
        uploaded_key = None
        stage = "dump"

        try:
            # Step 1: Dump
            dump_dir = work_dir / "dump"
            if parent:
                dump = self.dump_executor.dump_incremental(dump_dir, since=parent.completed_at)
            else:
                dump = self.dump_executor.dump_full(dump_dir)

            # Step 2: Archive
            stage = "archive"
            archive = self.archive_builder.pack(dump_dir, work_dir / f"{backup.id}{ARTIFACT_SUFFIX}")
            try:
                payload = archive.path.read_bytes()
            except OSError as e:
                raise ArchiveFailure(f"Cannot read archive {archive.path}: {e}") from e

            # Step 3: Encrypt
            stage = "encrypt"
            encrypted = self.encryptor is not None
            if encrypted:
                payload = self.encryptor.encrypt(payload)
            else:
                logger.warning(f"Backup {backup.id} is stored unencrypted (no encryption key configured)")

            checksum = calculate_checksum(payload)
            key = artifact_key(backup, encrypted)

            # Step 4: Upload
            stage = "upload"
            # A failed put may still leave an object behind
            uploaded_key = key
            self.storage.put(
                key,
                payload,
                metadata={
                    "backup_id": backup.id,
                    "backup_type": backup.backup_type,
                    "checksum": checksum,
                    "encrypted": str(encrypted).lower(),
                    "parent_id": parent.id if parent else "",
                },
            )
            logger.info(f"Uploaded {key} ({len(payload)} bytes) to {self.storage.name} storage")

            self.catalog.mark_completed(
                backup,
                storage_location=key,
                checksum=checksum,
                size_bytes=len(payload),
                original_size_bytes=archive.size,
                encrypted=encrypted,
                metadata={
                    "dump": dump.as_metadata(),
                    "compression_ratio": round(archive.compression_ratio, 4),
                    "uncompressed_size_bytes": archive.original_size,
                },
            )

            # Step 5: Verify
            stage = "verify"
            self.verifier.verify_and_mark(backup)

        except BackupError as e:
            self._handle_failure(backup, e, uploaded_key)
            raise
        except Exception as e:
            logger.exception(f"Unexpected error during {stage} stage of backup {backup.id}")
            error = STAGE_ERRORS[stage](f"Unexpected error during {stage}: {e}")
            self._handle_failure(backup, error, uploaded_key)
            raise error from e
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)

        logger.info("=" * 80)
        logger.info(f"{backup_type.capitalize()} backup completed: {backup.id} ({backup.size_bytes} bytes)")
        logger.info("=" * 80)

        if self.notify_on_success:
            self.notifier.notify(
                BackupAlert.INFO,
                f"{backup_type.capitalize()} backup {backup.id} completed",
                details={
                    "backup_id": backup.id,
                    "size_bytes": backup.size_bytes,
                    "duration_seconds": backup.duration_seconds,
                    "storage_location": backup.storage_location,
                },
                alert_type=BackupAlert.BACKUP_SUCCESS,
                backup=backup,
            )

        return backup

    def _handle_failure(self, backup: Backup, error: BackupError, uploaded_key: Optional[str]):
        logger.error(f"{backup.backup_type.capitalize()} backup {backup.id} failed ({error.kind}): {error}")

        self.catalog.mark_failed(backup, error.kind, str(error))

        if uploaded_key:
            try:
                self.storage.delete(uploaded_key)
                logger.info(f"Removed partial artifact {uploaded_key}")
            except StorageFailure as e:
                logger.error(f"Failed to remove partial artifact {uploaded_key}: {e}")

        self.notifier.notify(
            BackupAlert.CRITICAL if backup.is_full() else BackupAlert.ERROR,
            f"{backup.backup_type.capitalize()} backup {backup.id} failed: {error.kind}",
            details={
                "backup_id": backup.id,
                "error_kind": error.kind,
                "error": str(error),
                "parent_id": backup.parent_id,
            },
            alert_type=(
                BackupAlert.INTEGRITY_FAILURE
                if isinstance(error, IntegrityFailure)
                else BackupAlert.BACKUP_FAILURE
            ),
            backup=backup,
        )


@dataclass
class CleanupReport:
    started_at: str
    deleted: List[str] = field(default_factory=list)
    failed: List[dict] = field(default_factory=list)
    freed_bytes: int = 0

    def as_dict(self) -> dict:
        return {
            "started_at": self.started_at,
            "deleted_count": len(self.deleted),
            "deleted": self.deleted,
            "failed_count": len(self.failed),
            "failed": self.failed,
            "freed_bytes": self.freed_bytes,
        }


class RetentionService:
    """
    Delete backups past their retention date.

    The artifact is removed before the catalog row, so a failed delete
    leaves both in place for the next run.
    """

    def __init__(self, catalog: BackupCatalog, storage: StorageBackend, notifier: AlertNotifier):
        self.catalog = catalog
        self.storage = storage
        self.notifier = notifier

    def cleanup(self, now: Optional[datetime] = None) -> CleanupReport:
        now = now or timezone.now()
        report = CleanupReport(started_at=now.isoformat())

        candidates = self.catalog.prunable(now)
        logger.info(f"Retention cleanup: {len(candidates)} expired backup(s) eligible for deletion")

        for backup in candidates:
            if self.catalog.has_children(backup):
                # An incremental that could not be pruned still points at this backup
                logger.warning(f"Skipping expired backup {backup.id}: incremental backups still reference it")
                report.failed.append({"backup_id": backup.id, "error": "still referenced by incremental backups"})
                continue

            try:
                if backup.storage_location:
                    self.storage.delete(backup.storage_location)
                self.catalog.delete(backup)
            except (StorageFailure, ProtectedError) as e:
                logger.error(f"Failed to delete expired backup {backup.id}: {e}")
                report.failed.append({"backup_id": backup.id, "error": str(e)})
                continue

            report.deleted.append(backup.id)
            report.freed_bytes += backup.size_bytes
            logger.info(f"Deleted expired backup {backup.id} ({backup.get_size_mb()} MB)")

        logger.info(
            f"Retention cleanup completed: {len(report.deleted)} deleted, "
            f"{len(report.failed)} failed, {report.freed_bytes} bytes freed"
        )

        if report.failed:
            self.notifier.notify(
                BackupAlert.WARNING,
                f"Retention cleanup failed for {len(report.failed)} backup(s)",
                details=report.as_dict(),
                alert_type=BackupAlert.CLEANUP_FAILURE,
            )

        return report


def build_backup_service(storage: Optional[StorageBackend] = None) -> BackupCreationService:
    """Build a BackupCreationService wired from settings."""
    storage = storage or get_storage_backend()
    catalog = BackupCatalog()
    return BackupCreationService(
        catalog=catalog,
        dump_executor=get_dump_executor(),
        storage=storage,
        archive_builder=ArchiveBuilder(),
        notifier=get_alert_notifier(),
        encryptor=get_configured_encryptor(),
        verifier=IntegrityVerifier(storage, catalog),
        temp_dir=getattr(settings, "BACKUP_TEMP_DIR", None),
        notify_on_success=getattr(settings, "BACKUP_NOTIFY_ON_SUCCESS", True),
    )


def build_retention_service() -> RetentionService:
    return RetentionService(
        catalog=BackupCatalog(),
        storage=get_storage_backend(),
        notifier=get_alert_notifier(),
    )


def build_integrity_verifier() -> IntegrityVerifier:
    return IntegrityVerifier(get_storage_backend(), BackupCatalog())
