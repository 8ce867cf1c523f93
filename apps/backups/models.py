"""
Backup catalog models.

This module implements the persistent metadata of the backup pipeline:
- Backup: every backup's identity, lineage, checksum, size, status and retention
- BackupAlert: audit trail of every alert the pipeline emitted
- RestoreTestRun: results of automated restore-and-validate tests
"""

import secrets

from django.db import models
from django.utils import timezone


def generate_backup_id(backup_type: str) -> str:
    """
    Generate a globally unique, time-sortable backup identifier.

    Format: ``20261019T020000123456Z-full-1a2b3c4d``
    """
    timestamp = timezone.now().strftime("%Y%m%dT%H%M%S%fZ")
    return f"{timestamp}-{backup_type}-{secrets.token_hex(4)}"


class Backup(models.Model):
    """
    Catalog record for one backup artifact.

    Full backups anchor a chain; incremental backups reference the full
    backup they extend through ``parent``.

    Lifecycle: IN_PROGRESS -> COMPLETED -> VERIFIED, or FAILED from any
    earlier state. VERIFIED and FAILED rows are never changed again; they
    only disappear through retention cleanup.
    """

    # Backup type choices
    FULL = "full"
    INCREMENTAL = "incremental"

    BACKUP_TYPE_CHOICES = [
        (FULL, "Full Backup"),
        (INCREMENTAL, "Incremental Backup"),
    ]

    # Status choices
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    VERIFIED = "verified"
    FAILED = "failed"

    STATUS_CHOICES = [
        (IN_PROGRESS, "In Progress"),
        (COMPLETED, "Completed"),
        (VERIFIED, "Verified"),
        (FAILED, "Failed"),
    ]

    USABLE_STATUSES = (COMPLETED, VERIFIED)

    id = models.CharField(
        primary_key=True,
        max_length=64,
        editable=False,
        help_text="Time-sortable unique identifier for the backup",
    )

    backup_type = models.CharField(
        max_length=20,
        choices=BACKUP_TYPE_CHOICES,
        help_text="Type of backup operation",
    )

    parent = models.ForeignKey(
        "self",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="incrementals",
        help_text="Full backup this incremental extends (null for full backups)",
    )

    status = models.CharField(
        max_length=20,
        choices=STATUS_CHOICES,
        default=IN_PROGRESS,
        help_text="Current status of the backup operation",
    )

    database = models.CharField(
        max_length=255,
        blank=True,
        help_text="Name of the database that was dumped",
    )

    storage_location = models.CharField(
        max_length=500,
        blank=True,
        help_text="Key of the artifact in the storage backend",
    )

    checksum = models.CharField(
        max_length=64,
        blank=True,
        help_text="SHA-256 checksum of the stored (post-encryption) artifact",
    )

    size_bytes = models.BigIntegerField(
        default=0,
        help_text="Size of the stored artifact in bytes",
    )

    original_size_bytes = models.BigIntegerField(
        default=0,
        help_text="Size of the archive before encryption in bytes",
    )

    encrypted = models.BooleanField(
        default=False,
        help_text="Whether the artifact is encrypted with AES-256-GCM",
    )

    # Timestamps
    created_at = models.DateTimeField(
        default=timezone.now,
        help_text="Timestamp when the backup was initiated",
    )

    completed_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Timestamp when the artifact was uploaded",
    )

    verified_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Timestamp when the stored artifact passed integrity verification",
    )

    retention_date = models.DateTimeField(
        help_text="Earliest time at which the backup may be deleted",
    )

    # Failure tracking
    failure_kind = models.CharField(
        max_length=50,
        blank=True,
        help_text="Error taxonomy kind (e.g. DumpFailure) if the backup failed",
    )

    failure_reason = models.TextField(
        blank=True,
        help_text="Human-readable reason if the backup failed",
    )

    duration_seconds = models.IntegerField(
        null=True,
        blank=True,
        help_text="Duration of the backup operation in seconds",
    )

    metadata = models.JSONField(
        default=dict,
        blank=True,
        help_text="Additional metadata (dump statistics, compression ratio)",
    )

    class Meta:
        db_table = "backups_backup"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["backup_type", "-created_at"], name="backup_type_created_idx"),
            models.Index(fields=["status"], name="backup_status_idx"),
            models.Index(fields=["retention_date"], name="backup_retention_idx"),
        ]
        verbose_name = "Backup"
        verbose_name_plural = "Backups"

    def __str__(self):
        return f"{self.get_backup_type_display()} {self.id} ({self.status})"

    def save(self, *args, **kwargs):
        if not self.id:
            self.id = generate_backup_id(self.backup_type or self.FULL)
        super().save(*args, **kwargs)

    def is_full(self):
        return self.backup_type == self.FULL

    def is_completed(self):
        """Check if backup completed successfully."""
        return self.status in self.USABLE_STATUSES

    def is_failed(self):
        """Check if backup failed."""
        return self.status == self.FAILED

    def is_expired(self, now=None):
        """Check if the retention date has passed."""
        return self.retention_date <= (now or timezone.now())

    def get_size_mb(self):
        """Get backup size in megabytes."""
        return round(self.size_bytes / (1024 * 1024), 2)

    @property
    def storage_key(self):
        return self.storage_location


class BackupAlert(models.Model):
    """
    Track every alert emitted by the backup pipeline.
    """

    # Alert type choices
    BACKUP_SUCCESS = "BACKUP_SUCCESS"
    BACKUP_FAILURE = "BACKUP_FAILURE"
    INTEGRITY_FAILURE = "INTEGRITY_FAILURE"
    CLEANUP_FAILURE = "CLEANUP_FAILURE"
    HEALTH_CHECK = "HEALTH_CHECK"
    RESTORE_TEST_FAILURE = "RESTORE_TEST_FAILURE"
    RESTORE_DRILL_FAILURE = "RESTORE_DRILL_FAILURE"
    RESTORE_DRILL_REPORT = "RESTORE_DRILL_REPORT"

    ALERT_TYPE_CHOICES = [
        (BACKUP_SUCCESS, "Backup Success"),
        (BACKUP_FAILURE, "Backup Failure"),
        (INTEGRITY_FAILURE, "Integrity Verification Failure"),
        (CLEANUP_FAILURE, "Retention Cleanup Failure"),
        (HEALTH_CHECK, "Health Check Finding"),
        (RESTORE_TEST_FAILURE, "Restore Test Failure"),
        (RESTORE_DRILL_FAILURE, "Restore Drill Failure"),
        (RESTORE_DRILL_REPORT, "Restore Drill Report"),
    ]

    # Severity choices
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"

    SEVERITY_CHOICES = [
        (INFO, "Info"),
        (WARNING, "Warning"),
        (ERROR, "Error"),
        (CRITICAL, "Critical"),
    ]

    alert_type = models.CharField(max_length=50, choices=ALERT_TYPE_CHOICES)
    severity = models.CharField(max_length=20, choices=SEVERITY_CHOICES)

    backup = models.ForeignKey(
        "Backup",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="alerts",
        help_text="Related backup (if applicable)",
    )

    subject = models.CharField(max_length=255)

    details = models.JSONField(
        default=dict,
        blank=True,
        help_text="Additional details about the alert",
    )

    notification_channels = models.JSONField(
        default=list,
        blank=True,
        help_text="Channels where the alert was delivered (email, webhook)",
    )

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "backups_alert"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["alert_type", "-created_at"], name="alert_type_created_idx"),
            models.Index(fields=["severity"], name="alert_severity_idx"),
        ]
        verbose_name = "Backup Alert"
        verbose_name_plural = "Backup Alerts"

    def __str__(self):
        return f"{self.severity} - {self.subject}"

    def is_critical(self):
        return self.severity == self.CRITICAL


class RestoreTestRun(models.Model):
    """
    One restore-and-validate test of a backup against an isolated database.
    """

    IN_PROGRESS = "in_progress"
    PASSED = "passed"
    FAILED = "failed"

    STATUS_CHOICES = [
        (IN_PROGRESS, "In Progress"),
        (PASSED, "Passed"),
        (FAILED, "Failed"),
    ]

    backup = models.ForeignKey(
        "Backup",
        on_delete=models.CASCADE,
        related_name="restore_tests",
    )

    target_database = models.CharField(max_length=255, blank=True)

    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=IN_PROGRESS)

    started_at = models.DateTimeField(default=timezone.now)
    completed_at = models.DateTimeField(null=True, blank=True)
    duration_seconds = models.FloatField(null=True, blank=True)

    report = models.JSONField(default=dict, blank=True)
    error_message = models.TextField(blank=True)

    class Meta:
        db_table = "backups_restore_test_run"
        ordering = ["-started_at"]
        verbose_name = "Restore Test Run"
        verbose_name_plural = "Restore Test Runs"

    def __str__(self):
        return f"Restore test of {self.backup_id} - {self.status}"
