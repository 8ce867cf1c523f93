"""
Celery tasks for the backup system.

This module implements the scheduled and on-demand backup jobs:
- Full and incremental backups
- Retention cleanup
- Health checks
- Restore tests and the quarterly restore drill

Jobs are never retried automatically. Each job type runs at most once at a
time; a trigger that arrives while the same job is running is skipped.
"""

import logging
from typing import Callable, Optional

from celery import shared_task
from django.conf import settings

from .catalog import BackupCatalog
from .exceptions import BackupError, ChainIntegrityFailure
from .models import Backup, BackupAlert
from .monitoring import build_health_check_service, get_alert_notifier
from .restore_testing import build_restore_testing_service
from .scheduling import JobGuard, is_shutting_down
from .services import build_backup_service, build_retention_service

logger = logging.getLogger(__name__)

# Hard limits sit above the dump timeout so mongodump is always stopped first
TASK_SOFT_TIME_LIMIT = getattr(settings, "BACKUP_TASK_SOFT_TIME_LIMIT_SECONDS", 3 * 3600)
TASK_TIME_LIMIT = getattr(settings, "BACKUP_TASK_TIME_LIMIT_SECONDS", 3 * 3600 + 600)

# Every job that restores into the staging server takes this one lock
RESTORE_LOCK = "restore-test"


def run_exclusive(job_name: str, job: Callable[[], dict]) -> dict:
    """
    Run ``job`` unless the worker is shutting down or the job is already running.
    """
    if is_shutting_down():
        logger.warning(f"Skipping {job_name}: worker is shutting down")
        return {"status": "skipped", "reason": "shutdown"}

    with JobGuard(job_name) as guard:
        if not guard.acquired:
            logger.warning(f"Skipping {job_name}: a previous run is still in progress")
            return {"status": "skipped", "reason": "already_running"}
        return job()


def _backup_job(backup_type: str, parent_id: Optional[str] = None) -> dict:
    try:
        backup = build_backup_service().create_backup(backup_type, parent_id=parent_id)
    except ChainIntegrityFailure as e:
        # Rejected before any catalog row was written
        logger.error(f"{backup_type.capitalize()} backup rejected: {e}")
        return {"status": "rejected", "error_kind": e.kind, "error": str(e)}
    except BackupError as e:
        # Already recorded on the catalog row and alerted
        return {"status": "failed", "error_kind": e.kind, "error": str(e)}

    return {"status": "completed", "backup_id": backup.id, "size_bytes": backup.size_bytes}


@shared_task(
    bind=True,
    name="apps.backups.tasks.run_full_backup",
    max_retries=0,
    soft_time_limit=TASK_SOFT_TIME_LIMIT,
    time_limit=TASK_TIME_LIMIT,
)
def run_full_backup(self):
    """Create a full backup of the source database."""
    return run_exclusive("full-backup", lambda: _backup_job(Backup.FULL))


@shared_task(
    bind=True,
    name="apps.backups.tasks.run_incremental_backup",
    max_retries=0,
    soft_time_limit=TASK_SOFT_TIME_LIMIT,
    time_limit=TASK_TIME_LIMIT,
)
def run_incremental_backup(self, parent_id: Optional[str] = None):
    """
    Create an incremental backup on top of ``parent_id`` or the latest full backup.

    Skipped with a notice when no full backup exists yet.
    """

    def job():
        if parent_id is None and BackupCatalog().latest_full() is None:
            logger.info("Skipping incremental backup: no completed full backup exists yet")
            return {"status": "skipped", "reason": "no_full_backup"}
        return _backup_job(Backup.INCREMENTAL, parent_id=parent_id)

    return run_exclusive("incremental-backup", job)


@shared_task(bind=True, name="apps.backups.tasks.run_retention_cleanup", max_retries=0)
def run_retention_cleanup(self):
    """Delete expired backups. Failures are logged and alerted, never fatal."""

    def job():
        try:
            report = build_retention_service().cleanup()
        except Exception as e:
            logger.error(f"Retention cleanup failed: {e}", exc_info=True)
            get_alert_notifier().notify(
                BackupAlert.WARNING,
                "Retention cleanup failed",
                details={"error": str(e), "task_id": self.request.id},
                alert_type=BackupAlert.CLEANUP_FAILURE,
            )
            return {"status": "failed", "error": str(e)}
        return {"status": "completed", **report.as_dict()}

    return run_exclusive("retention-cleanup", job)


@shared_task(bind=True, name="apps.backups.tasks.run_health_check", max_retries=0)
def run_health_check(self):
    """Run the backup health check. Failures are logged and alerted, never fatal."""

    def job():
        try:
            report = build_health_check_service().run()
        except Exception as e:
            logger.error(f"Backup health check failed: {e}", exc_info=True)
            get_alert_notifier().notify(
                BackupAlert.WARNING,
                "Backup health check could not run",
                details={"error": str(e), "task_id": self.request.id},
                alert_type=BackupAlert.HEALTH_CHECK,
            )
            return {"status": "failed", "error": str(e)}
        return {"status": "completed", **report.as_dict()}

    return run_exclusive("health-check", job)


@shared_task(
    bind=True,
    name="apps.backups.tasks.run_quarterly_restore_drill",
    max_retries=0,
    soft_time_limit=TASK_SOFT_TIME_LIMIT,
    time_limit=TASK_TIME_LIMIT,
)
def run_quarterly_restore_drill(self):
    """Test the latest backup chain end to end and report the outcome."""
    return run_exclusive(
        RESTORE_LOCK,
        lambda: build_restore_testing_service().run_quarterly_drill().as_dict(),
    )


@shared_task(
    bind=True,
    name="apps.backups.tasks.run_restore_test",
    max_retries=0,
    soft_time_limit=TASK_SOFT_TIME_LIMIT,
    time_limit=TASK_TIME_LIMIT,
)
def run_restore_test(self, backup_id: str):
    """Restore one backup into an isolated database and validate it."""
    return run_exclusive(
        RESTORE_LOCK,
        lambda: build_restore_testing_service().test_restore(backup_id).as_dict(),
    )


@shared_task(
    bind=True,
    name="apps.backups.tasks.run_chain_restore_test",
    max_retries=0,
    soft_time_limit=TASK_SOFT_TIME_LIMIT,
    time_limit=TASK_TIME_LIMIT,
)
def run_chain_restore_test(self, full_backup_id: str):
    """Restore a full backup and its latest incremental."""
    return run_exclusive(
        RESTORE_LOCK,
        lambda: build_restore_testing_service().test_chain(full_backup_id).as_dict(),
    )
