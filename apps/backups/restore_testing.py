"""
Automated restore testing.

Backups are only as good as the last successful restore. This module
downloads a backup, verifies and decrypts it, replays it into a freshly
named isolated database on the staging server, validates the result and
always drops the database afterwards.

An incremental backup is tested by restoring its parent full backup first
and then replaying the incremental oplog on top.
"""

import logging
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from django.conf import settings
from django.utils import timezone

from .archive import ArchiveBuilder
from .catalog import BackupCatalog
from .dump import DumpExecutor, get_dump_executor
from .encryption import Encryptor, get_configured_encryptor, verify_checksum
from .exceptions import (
    BackupError,
    ChainIntegrityFailure,
    DumpFailure,
    EncryptionFailure,
    IntegrityFailure,
    RestoreValidationFailure,
)
from .models import Backup, BackupAlert, RestoreTestRun
from .monitoring import AlertNotifier, get_alert_notifier
from .storage import StorageBackend, get_storage_backend

logger = logging.getLogger(__name__)


@dataclass
class RestoreTestReport:
    backup_id: str
    success: bool
    backup_type: Optional[str] = None
    target_database: Optional[str] = None
    duration_seconds: float = 0.0
    collections: List[str] = field(default_factory=list)
    document_counts: Dict[str, int] = field(default_factory=dict)
    error: Optional[str] = None
    error_kind: Optional[str] = None
    run_id: Optional[int] = None

    def as_dict(self) -> dict:
        return {
            "backup_id": self.backup_id,
            "backup_type": self.backup_type,
            "success": self.success,
            "target_database": self.target_database,
            "duration_seconds": round(self.duration_seconds, 2),
            "collections": self.collections,
            "document_counts": self.document_counts,
            "error": self.error,
            "error_kind": self.error_kind,
            "run_id": self.run_id,
        }


@dataclass
class ChainTestReport:
    full_backup_id: str
    full_test: Optional[RestoreTestReport] = None
    incremental_test: Optional[RestoreTestReport] = None
    error: Optional[str] = None

    @property
    def chain_test_success(self) -> bool:
        if self.error or self.full_test is None or not self.full_test.success:
            return False
        return self.incremental_test is None or self.incremental_test.success

    @property
    def tests(self) -> List[RestoreTestReport]:
        return [t for t in (self.full_test, self.incremental_test) if t is not None]

    def as_dict(self) -> dict:
        return {
            "full_backup_id": self.full_backup_id,
            "full_test": self.full_test.as_dict() if self.full_test else None,
            "incremental_test": self.incremental_test.as_dict() if self.incremental_test else None,
            "chain_test_success": self.chain_test_success,
            "error": self.error,
        }


@dataclass
class QuarterlyReport:
    started_at: str
    completed_at: Optional[str] = None
    chain: Optional[ChainTestReport] = None
    tests_passed: int = 0
    tests_failed: int = 0
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None and self.chain is not None and self.chain.chain_test_success

    def as_dict(self) -> dict:
        return {
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "success": self.success,
            "tests_passed": self.tests_passed,
            "tests_failed": self.tests_failed,
            "chain": self.chain.as_dict() if self.chain else None,
            "error": self.error,
        }


class RestoreTestingService:
    """
    Restore backups into isolated databases and validate them.

    Args:
        key_collections: Collections whose document counts are checked when present
    """

    def __init__(
        self,
        catalog: BackupCatalog,
        dump_executor: DumpExecutor,
        storage: StorageBackend,
        archive_builder: ArchiveBuilder,
        notifier: AlertNotifier,
        encryptor: Optional[Encryptor] = None,
        key_collections: Sequence[str] = (),
        temp_dir: Optional[str] = None,
    ):
        self.catalog = catalog
        self.dump_executor = dump_executor
        self.storage = storage
        self.archive_builder = archive_builder
        self.notifier = notifier
        self.encryptor = encryptor
        self.key_collections = list(key_collections)
        self.temp_dir = temp_dir

    def test_restore(self, backup_id: str, alert_on_failure: bool = True) -> RestoreTestReport:
        """
        Restore one backup into an isolated database and validate it.

        Never raises for a failed restore; the failure is in the report,
        recorded as a RestoreTestRun and alerted.
        """
        started = timezone.now()
        backup = self.catalog.get(backup_id)

        if backup is None or not backup.is_completed():
            reason = (
                f"Backup not found: {backup_id}"
                if backup is None
                else f"Backup {backup_id} is not restorable (status: {backup.status})"
            )
            logger.error(f"Restore test aborted: {reason}")
            report = RestoreTestReport(
                backup_id=backup_id,
                success=False,
                backup_type=backup.backup_type if backup else None,
                error=reason,
                error_kind=ChainIntegrityFailure.__name__,
            )
            if alert_on_failure:
                self._alert_failure(report, backup)
            return report

        target = self.dump_executor.isolated_database_name()
        run = RestoreTestRun.objects.create(backup=backup, target_database=target, started_at=started)
        report = RestoreTestReport(
            backup_id=backup.id,
            success=False,
            backup_type=backup.backup_type,
            target_database=target,
            run_id=run.id,
        )

        logger.info("=" * 80)
        logger.info(f"Starting restore test of {backup.backup_type} backup {backup.id} into {target}")
        logger.info("=" * 80)

        work_dir = Path(tempfile.mkdtemp(prefix=f"restore-test-{backup.id}-", dir=self.temp_dir))

        try:
            if backup.backup_type == Backup.INCREMENTAL:
                parent = backup.parent
                if parent is None or not parent.is_completed():
                    raise ChainIntegrityFailure(f"Incremental backup {backup.id} has no restorable parent")
                self._restore_artifact(parent, target, work_dir / "parent", oplog_replay=False)
                self._restore_artifact(backup, target, work_dir / "incremental", oplog_replay=True)
            else:
                self._restore_artifact(backup, target, work_dir / "full", oplog_replay=False)

            report.collections, report.document_counts = self._validate(target)
            report.success = True

        except BackupError as e:
            report.error = str(e)
            report.error_kind = e.kind
            logger.error(f"Restore test of backup {backup.id} failed ({e.kind}): {e}")
        except Exception as e:
            logger.exception(f"Unexpected error during restore test of backup {backup.id}")
            report.error = f"Unexpected error: {e}"
            report.error_kind = BackupError.__name__
        finally:
            self._drop_quietly(target)
            shutil.rmtree(work_dir, ignore_errors=True)

        completed = timezone.now()
        report.duration_seconds = (completed - started).total_seconds()

        run.status = RestoreTestRun.PASSED if report.success else RestoreTestRun.FAILED
        run.completed_at = completed
        run.duration_seconds = report.duration_seconds
        run.report = report.as_dict()
        run.error_message = report.error or ""
        run.save()

        if report.success:
            logger.info(
                f"Restore test of backup {backup.id} passed: {len(report.collections)} collections, "
                f"counts {report.document_counts}"
            )
        elif alert_on_failure:
            self._alert_failure(report, backup)

        return report

    def _restore_artifact(self, backup: Backup, target: str, work_dir: Path, oplog_replay: bool):
        work_dir.mkdir(parents=True, exist_ok=True)

        logger.info(f"Downloading artifact {backup.storage_location}")
        blob = self.storage.get(backup.storage_location)

        if not verify_checksum(blob, backup.checksum):
            raise IntegrityFailure(f"Checksum mismatch for backup {backup.id}")

        if backup.encrypted:
            if self.encryptor is None:
                raise EncryptionFailure(f"Backup {backup.id} is encrypted but no encryption key is configured")
            data = self.encryptor.decrypt(blob)
        else:
            data = blob

        archive_path = work_dir / "artifact.tar.gz"
        archive_path.write_bytes(data)

        dump_dir = self.archive_builder.unpack(archive_path, work_dir / "extracted")
        self.dump_executor.restore(dump_dir, target, oplog_replay=oplog_replay)

    def _validate(self, target: str):
        collections = self.dump_executor.list_collections(target)
        if not collections:
            raise RestoreValidationFailure(f"Restored database {target} has no collections")

        present = [name for name in self.key_collections if name in collections]
        counts = self.dump_executor.count_documents(target, present) if present else {}

        for name, count in counts.items():
            if isinstance(count, bool) or not isinstance(count, int) or count < 0:
                raise RestoreValidationFailure(f"Invalid document count for {name}: {count!r}")

        return sorted(collections), counts

    def _drop_quietly(self, target: str):
        try:
            self.dump_executor.drop_database(target)
        except DumpFailure as e:
            logger.warning(f"Failed to drop restore test database {target}: {e}")

    def _alert_failure(self, report: RestoreTestReport, backup: Optional[Backup]):
        self.notifier.notify(
            BackupAlert.ERROR,
            f"Restore test of backup {report.backup_id} failed: {report.error_kind}",
            details=report.as_dict(),
            alert_type=BackupAlert.RESTORE_TEST_FAILURE,
            backup=backup,
        )

    def test_chain(self, full_backup_id: str) -> ChainTestReport:
        """Test a full backup and its latest incremental."""
        report = ChainTestReport(full_backup_id=full_backup_id)

        try:
            chain = self.catalog.chain(full_backup_id)
        except ChainIntegrityFailure as e:
            logger.error(f"Chain test aborted: {e}")
            report.error = str(e)
            return report

        logger.info(
            f"Testing backup chain {full_backup_id}: "
            f"{len(chain.incrementals)} incremental backup(s) available"
        )

        report.full_test = self.test_restore(chain.full.id)

        latest = chain.latest_incremental
        if latest is not None:
            report.incremental_test = self.test_restore(latest.id)

        logger.info(f"Chain test of {full_backup_id} finished: chain_test_success={report.chain_test_success}")
        return report

    def run_quarterly_drill(self) -> QuarterlyReport:
        """
        Disaster recovery drill: test the chain of the latest full backup.

        Failure, or the absence of any full backup, raises a CRITICAL alert;
        success sends an INFO report.
        """
        report = QuarterlyReport(started_at=timezone.now().isoformat())

        logger.info("=" * 80)
        logger.info("Starting quarterly restore drill")
        logger.info("=" * 80)

        latest_full = self.catalog.latest_full()
        if latest_full is None:
            report.error = "No completed full backup available for the restore drill"
        else:
            report.chain = self.test_chain(latest_full.id)
            report.tests_passed = sum(1 for t in report.chain.tests if t.success)
            report.tests_failed = sum(1 for t in report.chain.tests if not t.success)
            if report.chain.error:
                report.error = report.chain.error

        report.completed_at = timezone.now().isoformat()

        if report.success:
            logger.info(f"Quarterly restore drill passed ({report.tests_passed} test(s))")
            self.notifier.notify(
                BackupAlert.INFO,
                "Quarterly restore drill passed",
                details=report.as_dict(),
                alert_type=BackupAlert.RESTORE_DRILL_REPORT,
                backup=latest_full,
            )
        else:
            logger.error(
                f"Quarterly restore drill failed: {report.tests_failed} failed test(s), error={report.error}"
            )
            self.notifier.notify(
                BackupAlert.CRITICAL,
                "Quarterly restore drill failed",
                details=report.as_dict(),
                alert_type=BackupAlert.RESTORE_DRILL_FAILURE,
                backup=latest_full,
            )

        return report


def build_restore_testing_service(storage: Optional[StorageBackend] = None) -> RestoreTestingService:
    """Build a RestoreTestingService wired from settings."""
    return RestoreTestingService(
        catalog=BackupCatalog(),
        dump_executor=get_dump_executor(),
        storage=storage or get_storage_backend(),
        archive_builder=ArchiveBuilder(),
        notifier=get_alert_notifier(),
        encryptor=get_configured_encryptor(),
        key_collections=getattr(settings, "BACKUP_KEY_COLLECTIONS", []),
        temp_dir=getattr(settings, "BACKUP_TEMP_DIR", None),
    )
