import django.db.models.deletion
import django.utils.timezone
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Backup",
            fields=[
                (
                    "id",
                    models.CharField(
                        editable=False,
                        help_text="Time-sortable unique identifier for the backup",
                        max_length=64,
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                (
                    "backup_type",
                    models.CharField(
                        choices=[("full", "Full Backup"), ("incremental", "Incremental Backup")],
                        help_text="Type of backup operation",
                        max_length=20,
                    ),
                ),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("in_progress", "In Progress"),
                            ("completed", "Completed"),
                            ("verified", "Verified"),
                            ("failed", "Failed"),
                        ],
                        default="in_progress",
                        help_text="Current status of the backup operation",
                        max_length=20,
                    ),
                ),
                (
                    "database",
                    models.CharField(blank=True, help_text="Name of the database that was dumped", max_length=255),
                ),
                (
                    "storage_location",
                    models.CharField(
                        blank=True, help_text="Key of the artifact in the storage backend", max_length=500
                    ),
                ),
                (
                    "checksum",
                    models.CharField(
                        blank=True,
                        help_text="SHA-256 checksum of the stored (post-encryption) artifact",
                        max_length=64,
                    ),
                ),
                ("size_bytes", models.BigIntegerField(default=0, help_text="Size of the stored artifact in bytes")),
                (
                    "original_size_bytes",
                    models.BigIntegerField(default=0, help_text="Size of the archive before encryption in bytes"),
                ),
                (
                    "encrypted",
                    models.BooleanField(
                        default=False, help_text="Whether the artifact is encrypted with AES-256-GCM"
                    ),
                ),
                (
                    "created_at",
                    models.DateTimeField(
                        default=django.utils.timezone.now, help_text="Timestamp when the backup was initiated"
                    ),
                ),
                (
                    "completed_at",
                    models.DateTimeField(
                        blank=True, help_text="Timestamp when the artifact was uploaded", null=True
                    ),
                ),
                (
                    "verified_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="Timestamp when the stored artifact passed integrity verification",
                        null=True,
                    ),
                ),
                (
                    "retention_date",
                    models.DateTimeField(help_text="Earliest time at which the backup may be deleted"),
                ),
                (
                    "failure_kind",
                    models.CharField(
                        blank=True,
                        help_text="Error taxonomy kind (e.g. DumpFailure) if the backup failed",
                        max_length=50,
                    ),
                ),
                (
                    "failure_reason",
                    models.TextField(blank=True, help_text="Human-readable reason if the backup failed"),
                ),
                (
                    "duration_seconds",
                    models.IntegerField(
                        blank=True, help_text="Duration of the backup operation in seconds", null=True
                    ),
                ),
                (
                    "metadata",
                    models.JSONField(
                        blank=True,
                        default=dict,
                        help_text="Additional metadata (dump statistics, compression ratio)",
                    ),
                ),
                (
                    "parent",
                    models.ForeignKey(
                        blank=True,
                        help_text="Full backup this incremental extends (null for full backups)",
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="incrementals",
                        to="backups.backup",
                    ),
                ),
            ],
            options={
                "verbose_name": "Backup",
                "verbose_name_plural": "Backups",
                "db_table": "backups_backup",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["backup_type", "-created_at"], name="backup_type_created_idx"),
                    models.Index(fields=["status"], name="backup_status_idx"),
                    models.Index(fields=["retention_date"], name="backup_retention_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="BackupAlert",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "alert_type",
                    models.CharField(
                        choices=[
                            ("BACKUP_SUCCESS", "Backup Success"),
                            ("BACKUP_FAILURE", "Backup Failure"),
                            ("INTEGRITY_FAILURE", "Integrity Verification Failure"),
                            ("CLEANUP_FAILURE", "Retention Cleanup Failure"),
                            ("HEALTH_CHECK", "Health Check Finding"),
                            ("RESTORE_TEST_FAILURE", "Restore Test Failure"),
                            ("RESTORE_DRILL_FAILURE", "Restore Drill Failure"),
                            ("RESTORE_DRILL_REPORT", "Restore Drill Report"),
                        ],
                        max_length=50,
                    ),
                ),
                (
                    "severity",
                    models.CharField(
                        choices=[("INFO", "Info"), ("WARNING", "Warning"), ("ERROR", "Error"), ("CRITICAL", "Critical")],
                        max_length=20,
                    ),
                ),
                ("subject", models.CharField(max_length=255)),
                (
                    "details",
                    models.JSONField(blank=True, default=dict, help_text="Additional details about the alert"),
                ),
                (
                    "notification_channels",
                    models.JSONField(
                        blank=True,
                        default=list,
                        help_text="Channels where the alert was delivered (email, webhook)",
                    ),
                ),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "backup",
                    models.ForeignKey(
                        blank=True,
                        help_text="Related backup (if applicable)",
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="alerts",
                        to="backups.backup",
                    ),
                ),
            ],
            options={
                "verbose_name": "Backup Alert",
                "verbose_name_plural": "Backup Alerts",
                "db_table": "backups_alert",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["alert_type", "-created_at"], name="alert_type_created_idx"),
                    models.Index(fields=["severity"], name="alert_severity_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="RestoreTestRun",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("target_database", models.CharField(blank=True, max_length=255)),
                (
                    "status",
                    models.CharField(
                        choices=[("in_progress", "In Progress"), ("passed", "Passed"), ("failed", "Failed")],
                        default="in_progress",
                        max_length=20,
                    ),
                ),
                ("started_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("duration_seconds", models.FloatField(blank=True, null=True)),
                ("report", models.JSONField(blank=True, default=dict)),
                ("error_message", models.TextField(blank=True)),
                (
                    "backup",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="restore_tests",
                        to="backups.backup",
                    ),
                ),
            ],
            options={
                "verbose_name": "Restore Test Run",
                "verbose_name_plural": "Restore Test Runs",
                "db_table": "backups_restore_test_run",
                "ordering": ["-started_at"],
            },
        ),
    ]
