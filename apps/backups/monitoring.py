"""
Backup monitoring and alerting services.

This module implements:
- AlertNotifier: persists every alert and delivers it by email and webhook
- Cooldown for low-severity alerts so a flapping check does not spam operators
- HealthCheckService: periodic sanity pass over the catalog and stored artifacts
"""

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, List, Optional

import requests
from django.conf import settings
from django.core.cache import cache
from django.core.mail import send_mail
from django.utils import timezone

from .catalog import BackupCatalog
from .exceptions import StorageFailure
from .models import Backup, BackupAlert
from .storage import StorageBackend, get_storage_backend

logger = logging.getLogger(__name__)

SEVERITY_ORDER = [BackupAlert.INFO, BackupAlert.WARNING, BackupAlert.ERROR, BackupAlert.CRITICAL]
COOLDOWN_SEVERITIES = (BackupAlert.INFO, BackupAlert.WARNING)

LOG_LEVELS = {
    BackupAlert.INFO: logging.INFO,
    BackupAlert.WARNING: logging.WARNING,
    BackupAlert.ERROR: logging.ERROR,
    BackupAlert.CRITICAL: logging.CRITICAL,
}


class AlertNotifier:
    """
    Deliver backup alerts to operators.

    Every alert that passes the cooldown is stored as a BackupAlert row,
    logged, emailed to BACKUP_ALERT_EMAILS and posted to
    BACKUP_ALERT_WEBHOOK_URL. Delivery problems are logged and never raised.
    """

    def __init__(
        self,
        recipients: Optional[List[str]] = None,
        webhook_url: Optional[str] = None,
        cooldown_minutes: Optional[int] = None,
        from_email: Optional[str] = None,
    ):
        self.recipients = (
            recipients if recipients is not None else list(getattr(settings, "BACKUP_ALERT_EMAILS", []))
        )
        self.webhook_url = (
            webhook_url if webhook_url is not None else getattr(settings, "BACKUP_ALERT_WEBHOOK_URL", "")
        )
        self.cooldown_minutes = (
            cooldown_minutes
            if cooldown_minutes is not None
            else getattr(settings, "BACKUP_ALERT_COOLDOWN_MINUTES", 60)
        )
        self.from_email = from_email or getattr(settings, "DEFAULT_FROM_EMAIL", None)

    @staticmethod
    def _cooldown_key(alert_type: str, subject: str) -> str:
        digest = hashlib.sha1(f"{alert_type}:{subject}".encode("utf-8")).hexdigest()
        return f"backup:alert-cooldown:{digest}"

    def _in_cooldown(self, severity: str, alert_type: str, subject: str) -> bool:
        if severity not in COOLDOWN_SEVERITIES or self.cooldown_minutes <= 0:
            return False
        # cache.add is atomic: only the first alert in the window claims the key
        claimed = cache.add(self._cooldown_key(alert_type, subject), "1", timeout=self.cooldown_minutes * 60)
        return not claimed

    def notify(
        self,
        severity: str,
        subject: str,
        details: Optional[dict] = None,
        alert_type: str = BackupAlert.BACKUP_FAILURE,
        backup: Optional[Backup] = None,
    ) -> Optional[BackupAlert]:
        """
        Record and deliver an alert.

        Args:
            severity: INFO, WARNING, ERROR or CRITICAL
            subject: One-line summary
            details: JSON-serializable context for the alert
            alert_type: One of BackupAlert.ALERT_TYPE_CHOICES
            backup: Related backup (optional)

        Returns:
            The created BackupAlert, or None if suppressed by the cooldown
        """
        details = details or {}

        if self._in_cooldown(severity, alert_type, subject):
            logger.info(f"Alert suppressed by cooldown: {alert_type} - {subject}")
            return None

        alert = BackupAlert.objects.create(
            alert_type=alert_type,
            severity=severity,
            subject=subject[:255],
            details=details,
            backup=backup,
        )

        logger.log(LOG_LEVELS.get(severity, logging.WARNING), f"Backup alert [{severity}] {alert_type}: {subject}")

        channels = []
        if self._send_email(alert):
            channels.append("email")
        if self._send_webhook(alert):
            channels.append("webhook")

        if channels:
            alert.notification_channels = channels
            alert.save(update_fields=["notification_channels"])

        return alert

    def _send_email(self, alert: BackupAlert) -> bool:
        if not self.recipients:
            logger.debug("No backup alert email recipients configured")
            return False

        lines = [alert.subject, "", f"Severity: {alert.severity}", f"Type: {alert.alert_type}"]
        if alert.backup_id:
            lines.append(f"Backup: {alert.backup_id}")
        for name, value in alert.details.items():
            lines.append(f"{name}: {value}")

        try:
            send_mail(
                subject=f"[Backup {alert.severity}] {alert.subject}",
                message="\n".join(lines),
                from_email=self.from_email,
                recipient_list=self.recipients,
                fail_silently=False,
            )
            logger.info(f"Email notification sent for alert {alert.id}")
            return True
        except Exception as e:
            logger.error(f"Failed to send email notification for alert {alert.id}: {e}")
            return False

    def _send_webhook(self, alert: BackupAlert) -> bool:
        if not self.webhook_url:
            logger.debug("No backup alert webhook URL configured")
            return False

        payload = {
            "alert_id": alert.id,
            "alert_type": alert.alert_type,
            "severity": alert.severity,
            "subject": alert.subject,
            "details": alert.details,
            "created_at": alert.created_at.isoformat(),
            "backup_id": alert.backup_id,
        }

        try:
            response = requests.post(
                self.webhook_url,
                json=payload,
                timeout=10,
                headers={"Content-Type": "application/json"},
            )
        except requests.RequestException as e:
            logger.error(f"Failed to send webhook notification for alert {alert.id}: {e}")
            return False

        if response.status_code in [200, 201, 202, 204]:
            logger.info(f"Webhook notification sent successfully for alert {alert.id}")
            return True

        logger.warning(f"Webhook notification failed for alert {alert.id}: status={response.status_code}")
        return False


def get_alert_notifier() -> AlertNotifier:
    return AlertNotifier()


@dataclass
class HealthIssue:
    severity: str
    message: str
    backup_id: Optional[str] = None

    def as_dict(self) -> dict:
        return {"severity": self.severity, "message": self.message, "backup_id": self.backup_id}


@dataclass
class HealthReport:
    checked_at: str
    issues: List[HealthIssue] = field(default_factory=list)
    checked_backups: List[str] = field(default_factory=list)
    artifact_checks: Dict[str, dict] = field(default_factory=dict)
    failures_last_24h: Dict[str, int] = field(default_factory=dict)

    @property
    def healthy(self) -> bool:
        return not self.issues

    @property
    def severity(self) -> str:
        if not self.issues:
            return BackupAlert.INFO
        return max((issue.severity for issue in self.issues), key=SEVERITY_ORDER.index)

    def as_dict(self) -> dict:
        return {
            "checked_at": self.checked_at,
            "healthy": self.healthy,
            "issues": [issue.as_dict() for issue in self.issues],
            "checked_backups": self.checked_backups,
            "artifact_checks": self.artifact_checks,
            "failures_last_24h": self.failures_last_24h,
        }


class HealthCheckService:
    """
    Periodic sanity pass over the backup catalog.

    Checks recent failures, stuck in-progress backups, age of the newest
    verified full backup, and that recent artifacts still exist in storage
    with the size the catalog recorded. Findings are sent as one alert.
    """

    def __init__(
        self,
        catalog: BackupCatalog,
        storage: StorageBackend,
        notifier: AlertNotifier,
        max_full_age_hours: Optional[int] = None,
        incremental_failure_threshold: Optional[int] = None,
        stale_after_seconds: Optional[int] = None,
        artifact_sample_size: int = 5,
    ):
        self.catalog = catalog
        self.storage = storage
        self.notifier = notifier
        self.max_full_age_hours = (
            max_full_age_hours
            if max_full_age_hours is not None
            else getattr(settings, "BACKUP_MAX_FULL_AGE_HOURS", 26)
        )
        self.incremental_failure_threshold = (
            incremental_failure_threshold
            if incremental_failure_threshold is not None
            else getattr(settings, "BACKUP_HEALTH_INCREMENTAL_FAILURE_THRESHOLD", 5)
        )
        self.stale_after_seconds = (
            stale_after_seconds
            if stale_after_seconds is not None
            else getattr(settings, "BACKUP_DUMP_TIMEOUT_SECONDS", 3600)
        )
        self.artifact_sample_size = artifact_sample_size

    def run(self) -> HealthReport:
        now = timezone.now()
        report = HealthReport(checked_at=now.isoformat())

        logger.info("Running backup health check")

        self._check_recent_failures(report, now)
        self._check_stale_backups(report, now)
        self._check_full_backup_age(report, now)
        self._check_artifacts(report)

        if report.healthy:
            logger.info("Backup health check passed")
        else:
            logger.warning(f"Backup health check found {len(report.issues)} issue(s)")
            self.notifier.notify(
                report.severity,
                f"Backup health check found {len(report.issues)} issue(s)",
                details=report.as_dict(),
                alert_type=BackupAlert.HEALTH_CHECK,
            )

        return report

    def _check_recent_failures(self, report: HealthReport, now):
        failures = self.catalog.recent_failures(since=now - timedelta(hours=24))
        full_failures = [b for b in failures if b.backup_type == Backup.FULL]
        incremental_failures = [b for b in failures if b.backup_type == Backup.INCREMENTAL]

        report.failures_last_24h = {
            "full": len(full_failures),
            "incremental": len(incremental_failures),
        }

        if full_failures:
            report.issues.append(
                HealthIssue(
                    BackupAlert.CRITICAL,
                    f"{len(full_failures)} full backup(s) failed in the last 24 hours",
                    full_failures[0].id,
                )
            )
        if len(incremental_failures) > self.incremental_failure_threshold:
            report.issues.append(
                HealthIssue(
                    BackupAlert.WARNING,
                    f"{len(incremental_failures)} incremental backups failed in the last 24 hours",
                )
            )

    def _check_stale_backups(self, report: HealthReport, now):
        for backup in self.catalog.stale_in_progress(older_than=now - timedelta(seconds=self.stale_after_seconds)):
            report.issues.append(
                HealthIssue(
                    BackupAlert.WARNING,
                    f"Backup {backup.id} has been in progress since {backup.created_at.isoformat()}",
                    backup.id,
                )
            )

    def _check_full_backup_age(self, report: HealthReport, now):
        latest = self.catalog.latest_verified_full()
        if latest is None:
            report.issues.append(HealthIssue(BackupAlert.ERROR, "No verified full backup exists"))
            return

        age_hours = (now - latest.created_at).total_seconds() / 3600
        if age_hours > self.max_full_age_hours:
            report.issues.append(
                HealthIssue(
                    BackupAlert.ERROR,
                    f"Newest verified full backup is {age_hours:.1f} hours old "
                    f"(limit {self.max_full_age_hours} hours)",
                    latest.id,
                )
            )

    def _check_artifacts(self, report: HealthReport):
        for backup in self.catalog.recent_usable(limit=self.artifact_sample_size):
            report.checked_backups.append(backup.id)
            problem = None

            try:
                entries = self.storage.list(prefix=backup.storage_location)
                entry = next((e for e in entries if e.key == backup.storage_location), None)
                if entry is None:
                    problem = f"Artifact {backup.storage_location} is missing from storage"
                elif entry.size != backup.size_bytes:
                    problem = (
                        f"Artifact {backup.storage_location} size {entry.size} does not match "
                        f"catalog size {backup.size_bytes}"
                    )
            except StorageFailure as e:
                problem = f"Could not inspect artifact {backup.storage_location}: {e}"

            if problem:
                report.issues.append(HealthIssue(BackupAlert.ERROR, problem, backup.id))

            # Catalog rows are immutable once verified; results live on the report only
            report.artifact_checks[backup.id] = {"ok": problem is None, "problem": problem}


def build_health_check_service() -> HealthCheckService:
    return HealthCheckService(
        catalog=BackupCatalog(),
        storage=get_storage_backend(),
        notifier=get_alert_notifier(),
    )
