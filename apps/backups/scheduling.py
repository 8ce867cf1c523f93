"""
Scheduling support for the backup jobs.

- Cron expressions from settings become Celery beat entries
- JobGuard keeps two runs of the same job type from overlapping
- A process-wide shutdown flag stops not-yet-started jobs once the worker
  begins a warm shutdown
- validate_backup_settings() rejects broken configuration at startup
"""

import logging
import secrets
import threading
from typing import Dict, List, Optional

from celery.schedules import ParseException, crontab
from celery.signals import worker_shutting_down
from django.conf import settings
from django.core.cache import cache
from django.core.exceptions import ImproperlyConfigured

from .dump import database_name_from_uri, hosts_from_uri
from .encryption import validate_encryption_key
from .exceptions import EncryptionFailure

logger = logging.getLogger(__name__)

# job name -> (setting name, default cron, task name)
JOB_SCHEDULES = {
    "full-backup": ("BACKUP_FULL_CRON", "0 2 * * *", "apps.backups.tasks.run_full_backup"),
    "incremental-backup": (
        "BACKUP_INCREMENTAL_CRON",
        "0 * * * *",
        "apps.backups.tasks.run_incremental_backup",
    ),
    "retention-cleanup": ("BACKUP_CLEANUP_CRON", "0 3 * * 0", "apps.backups.tasks.run_retention_cleanup"),
    "health-check": ("BACKUP_HEALTH_CHECK_CRON", "0 */6 * * *", "apps.backups.tasks.run_health_check"),
    "quarterly-restore-drill": (
        "BACKUP_QUARTERLY_DRILL_CRON",
        "0 4 1 1,4,7,10 *",
        "apps.backups.tasks.run_quarterly_restore_drill",
    ),
}


def parse_cron(expression: str) -> crontab:
    """
    Convert a five-field cron expression into a Celery crontab.

    Raises:
        ValueError: If the expression is malformed
    """
    fields = (expression or "").split()
    if len(fields) != 5:
        raise ValueError(f"Cron expression must have 5 fields: {expression!r}")

    minute, hour, day_of_month, month_of_year, day_of_week = fields
    try:
        return crontab(
            minute=minute,
            hour=hour,
            day_of_month=day_of_month,
            month_of_year=month_of_year,
            day_of_week=day_of_week,
        )
    except (ParseException, ValueError) as e:
        raise ValueError(f"Invalid cron expression {expression!r}: {e}") from e


def get_job_cron(job_name: str) -> str:
    setting_name, default, _task = JOB_SCHEDULES[job_name]
    return getattr(settings, setting_name, default) or default


def build_beat_schedule() -> Dict[str, dict]:
    """Celery beat entries for every backup job."""
    schedule = {}
    for job_name, (_setting, _default, task_name) in JOB_SCHEDULES.items():
        schedule[f"backup-{job_name}"] = {
            "task": task_name,
            "schedule": parse_cron(get_job_cron(job_name)),
            "options": {"queue": "backups"},
        }
    return schedule


class JobGuard:
    """
    Per-job-type mutual exclusion backed by the Django cache.

    ``cache.add`` is atomic on Redis, so only one worker can hold the lock
    for a job type. The TTL releases the lock if a worker dies mid-run.

    Usage:
        with JobGuard("full-backup") as guard:
            if not guard.acquired:
                return  # already running
            ...
    """

    def __init__(self, job_name: str, ttl: Optional[int] = None):
        self.job_name = job_name
        self.ttl = ttl or getattr(settings, "BACKUP_JOB_LOCK_TTL_SECONDS", 4 * 3600)
        self.token = secrets.token_hex(8)
        self.acquired = False

    @property
    def key(self) -> str:
        return f"backup:job-lock:{self.job_name}"

    def acquire(self) -> bool:
        self.acquired = cache.add(self.key, self.token, timeout=self.ttl)
        if self.acquired:
            logger.debug(f"Acquired job lock {self.key}")
        return self.acquired

    def release(self):
        if not self.acquired:
            return
        # Only the holder may release; an expired lock may belong to another run by now
        if cache.get(self.key) == self.token:
            cache.delete(self.key)
            logger.debug(f"Released job lock {self.key}")
        else:
            logger.warning(f"Job lock {self.key} expired before release")
        self.acquired = False

    def is_running(self) -> bool:
        return cache.get(self.key) is not None

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False


_shutdown_event = threading.Event()


def is_shutting_down() -> bool:
    return _shutdown_event.is_set()


def mark_shutting_down():
    _shutdown_event.set()


def reset_shutdown_flag():
    _shutdown_event.clear()


@worker_shutting_down.connect
def handle_worker_shutting_down(sig=None, how=None, exitcode=None, **kwargs):
    logger.warning(f"Worker shutting down ({how}); backup jobs not yet started will be skipped")
    mark_shutting_down()


def validate_backup_settings() -> List[str]:
    """
    Validate backup configuration.

    Returns:
        Warnings that do not prevent startup

    Raises:
        ImproperlyConfigured: For settings that would make backups unsafe or impossible
    """
    warnings = []

    key = getattr(settings, "BACKUP_ENCRYPTION_KEY", None)
    if key:
        try:
            validate_encryption_key(key)
        except EncryptionFailure as e:
            raise ImproperlyConfigured(f"BACKUP_ENCRYPTION_KEY is invalid: {e}") from e
    else:
        warnings.append("BACKUP_ENCRYPTION_KEY is not set; backup artifacts will be stored unencrypted")

    source_uri = getattr(settings, "BACKUP_SOURCE_URI", "")
    staging_uri = getattr(settings, "BACKUP_STAGING_URI", "")
    if not source_uri or not database_name_from_uri(source_uri):
        raise ImproperlyConfigured("BACKUP_SOURCE_URI must be a MongoDB URI that names a database")
    if staging_uri and staging_uri == source_uri:
        raise ImproperlyConfigured("BACKUP_STAGING_URI must differ from BACKUP_SOURCE_URI")
    if staging_uri and hosts_from_uri(staging_uri) == hosts_from_uri(source_uri):
        raise ImproperlyConfigured("BACKUP_STAGING_URI must point at a different server than BACKUP_SOURCE_URI")
    if not staging_uri:
        warnings.append("BACKUP_STAGING_URI is not set; restore tests cannot run")

    backend = (getattr(settings, "BACKUP_STORAGE_BACKEND", "local") or "").lower()
    if backend not in ("local", "s3"):
        raise ImproperlyConfigured(f"Unknown BACKUP_STORAGE_BACKEND: {backend!r}")
    if backend == "s3" and not getattr(settings, "BACKUP_S3_BUCKET", ""):
        raise ImproperlyConfigured("BACKUP_S3_BUCKET is required when BACKUP_STORAGE_BACKEND is 's3'")

    if getattr(settings, "BACKUP_RETENTION_DAYS", 30) < 1:
        raise ImproperlyConfigured("BACKUP_RETENTION_DAYS must be at least 1")

    for job_name, (setting_name, _default, _task) in JOB_SCHEDULES.items():
        try:
            parse_cron(get_job_cron(job_name))
        except ValueError as e:
            raise ImproperlyConfigured(f"{setting_name} is invalid: {e}") from e

    for warning in warnings:
        logger.warning(warning)

    return warnings
