"""
Tests for backup monitoring and alerting functionality.
"""

from datetime import timedelta
from unittest.mock import MagicMock, patch

from django.core import mail
from django.core.cache import cache
from django.test import TestCase
from django.utils import timezone

import pytest
import requests

from .models import Backup, BackupAlert
from .monitoring import AlertNotifier, HealthCheckService, HealthIssue, HealthReport


@pytest.mark.django_db
class TestAlertNotifier(TestCase):
    """Test alert persistence and delivery."""

    def setUp(self):
        cache.clear()
        self.notifier = AlertNotifier(
            recipients=["ops@example.com"],
            webhook_url="https://hooks.example.com/backups",
            cooldown_minutes=60,
            from_email="backups@example.com",
        )

    @patch("apps.backups.monitoring.requests.post")
    def test_notify_persists_and_delivers(self, mock_post):
        mock_post.return_value = MagicMock(status_code=200)

        alert = self.notifier.notify(
            BackupAlert.CRITICAL,
            "Full backup failed",
            details={"error_kind": "DumpFailure"},
        )

        alert.refresh_from_db()
        self.assertEqual(alert.alert_type, BackupAlert.BACKUP_FAILURE)
        self.assertEqual(alert.details, {"error_kind": "DumpFailure"})
        self.assertEqual(alert.notification_channels, ["email", "webhook"])

        self.assertEqual(len(mail.outbox), 1)
        self.assertEqual(mail.outbox[0].subject, "[Backup CRITICAL] Full backup failed")
        self.assertEqual(mail.outbox[0].to, ["ops@example.com"])
        self.assertIn("error_kind: DumpFailure", mail.outbox[0].body)

        payload = mock_post.call_args.kwargs["json"]
        self.assertEqual(payload["alert_id"], alert.id)
        self.assertEqual(payload["severity"], BackupAlert.CRITICAL)
        self.assertEqual(mock_post.call_args.kwargs["timeout"], 10)

    @patch("apps.backups.monitoring.requests.post")
    def test_webhook_connection_error_does_not_raise(self, mock_post):
        mock_post.side_effect = requests.ConnectionError("refused")

        alert = self.notifier.notify(BackupAlert.ERROR, "Restore test failed")

        self.assertIsNotNone(alert)
        self.assertEqual(alert.notification_channels, ["email"])

    @patch("apps.backups.monitoring.requests.post")
    def test_webhook_error_status(self, mock_post):
        mock_post.return_value = MagicMock(status_code=500)

        alert = self.notifier.notify(BackupAlert.ERROR, "Restore test failed")

        self.assertEqual(alert.notification_channels, ["email"])

    @patch("apps.backups.monitoring.send_mail")
    @patch("apps.backups.monitoring.requests.post")
    def test_email_failure_does_not_raise(self, mock_post, mock_send_mail):
        mock_post.return_value = MagicMock(status_code=204)
        mock_send_mail.side_effect = ConnectionRefusedError("smtp down")

        alert = self.notifier.notify(BackupAlert.ERROR, "Health check")

        self.assertEqual(alert.notification_channels, ["webhook"])

    def test_no_channels_configured(self):
        notifier = AlertNotifier(recipients=[], webhook_url="", cooldown_minutes=60)

        alert = notifier.notify(BackupAlert.WARNING, "Cleanup failed", backup=None)

        self.assertEqual(alert.notification_channels, [])
        self.assertEqual(BackupAlert.objects.count(), 1)
        self.assertEqual(len(mail.outbox), 0)

    @patch("apps.backups.monitoring.requests.post")
    def test_cooldown_suppresses_low_severity(self, mock_post):
        mock_post.return_value = MagicMock(status_code=200)

        first = self.notifier.notify(BackupAlert.WARNING, "Cleanup failed", alert_type=BackupAlert.CLEANUP_FAILURE)
        second = self.notifier.notify(BackupAlert.WARNING, "Cleanup failed", alert_type=BackupAlert.CLEANUP_FAILURE)
        other = self.notifier.notify(BackupAlert.WARNING, "Cleanup failed twice", alert_type=BackupAlert.CLEANUP_FAILURE)

        self.assertIsNotNone(first)
        self.assertIsNone(second)
        self.assertIsNotNone(other)
        self.assertEqual(BackupAlert.objects.count(), 2)

    @patch("apps.backups.monitoring.requests.post")
    def test_cooldown_never_suppresses_errors(self, mock_post):
        mock_post.return_value = MagicMock(status_code=200)

        for severity in (BackupAlert.ERROR, BackupAlert.CRITICAL):
            self.assertIsNotNone(self.notifier.notify(severity, "Full backup failed"))
            self.assertIsNotNone(self.notifier.notify(severity, "Full backup failed"))

        self.assertEqual(BackupAlert.objects.count(), 4)

    def test_cooldown_disabled(self):
        notifier = AlertNotifier(recipients=[], webhook_url="", cooldown_minutes=0)

        self.assertIsNotNone(notifier.notify(BackupAlert.INFO, "Backup completed"))
        self.assertIsNotNone(notifier.notify(BackupAlert.INFO, "Backup completed"))

    def test_defaults_from_settings(self):
        notifier = AlertNotifier()

        self.assertEqual(notifier.recipients, ["ops@example.com"])
        self.assertEqual(notifier.cooldown_minutes, 60)


class TestHealthReport:
    def test_severity_is_highest_issue(self):
        report = HealthReport(checked_at="now")
        assert report.healthy
        assert report.severity == BackupAlert.INFO

        report.issues.append(HealthIssue(BackupAlert.WARNING, "stale"))
        report.issues.append(HealthIssue(BackupAlert.CRITICAL, "failed"))
        report.issues.append(HealthIssue(BackupAlert.ERROR, "old"))

        assert not report.healthy
        assert report.severity == BackupAlert.CRITICAL
        assert report.as_dict()["issues"][1] == {"severity": "CRITICAL", "message": "failed", "backup_id": None}


@pytest.fixture
def health_service(catalog, storage, notifier):
    return HealthCheckService(
        catalog=catalog,
        storage=storage,
        notifier=notifier,
        max_full_age_hours=26,
        incremental_failure_threshold=1,
        stale_after_seconds=3600,
    )


def age(backup, hours):
    Backup.objects.filter(pk=backup.pk).update(created_at=timezone.now() - timedelta(hours=hours))
    backup.refresh_from_db()
    return backup


@pytest.mark.django_db
class TestHealthCheck:
    def test_healthy_system(self, backup_service, health_service):
        backup = backup_service.create_backup(Backup.FULL)

        report = health_service.run()

        assert report.healthy, report.issues
        assert report.checked_backups == [backup.id]
        assert report.artifact_checks == {backup.id: {"ok": True, "problem": None}}
        assert BackupAlert.objects.count() == 0

    def test_verified_backup_is_not_modified(self, backup_service, health_service, storage):
        backup = backup_service.create_backup(Backup.FULL)
        other = backup_service.create_backup(Backup.FULL)
        storage.delete(other.storage_location)
        before = Backup.objects.filter(pk__in=[backup.pk, other.pk]).order_by("pk").values()
        before = [dict(row) for row in before]

        health_service.run()

        after = [dict(row) for row in Backup.objects.filter(pk__in=[backup.pk, other.pk]).order_by("pk").values()]
        assert after == before
        assert after[0]["status"] == Backup.VERIFIED

    def test_no_verified_full_backup(self, health_service):
        report = health_service.run()

        assert [issue.severity for issue in report.issues] == [BackupAlert.ERROR]

        alert = BackupAlert.objects.get()
        assert alert.alert_type == BackupAlert.HEALTH_CHECK
        assert alert.severity == BackupAlert.ERROR

    def test_failed_full_backup_is_critical(self, backup_service, health_service, fake_runner):
        backup_service.create_backup(Backup.FULL)
        fake_runner.timeouts.add("mongodump")
        with pytest.raises(Exception):
            backup_service.create_backup(Backup.FULL)

        report = health_service.run()

        assert report.failures_last_24h == {"full": 1, "incremental": 0}
        assert report.severity == BackupAlert.CRITICAL
        assert BackupAlert.objects.filter(alert_type=BackupAlert.HEALTH_CHECK).get().severity == BackupAlert.CRITICAL

    def test_incremental_failures_over_threshold(self, backup_service, health_service, fake_runner):
        backup_service.create_backup(Backup.FULL)
        fake_runner.timeouts.add("mongodump")
        for _ in range(2):
            with pytest.raises(Exception):
                backup_service.create_backup(Backup.INCREMENTAL)

        report = health_service.run()

        assert report.failures_last_24h["incremental"] == 2
        assert [issue.severity for issue in report.issues] == [BackupAlert.WARNING]

    def test_stale_in_progress_backup(self, backup_service, health_service, catalog):
        backup_service.create_backup(Backup.FULL)
        stuck = age(catalog.create(Backup.FULL), hours=2)

        report = health_service.run()

        assert [issue.backup_id for issue in report.issues] == [stuck.id]
        stuck.refresh_from_db()
        assert stuck.status == Backup.IN_PROGRESS

    def test_old_full_backup(self, backup_service, health_service):
        old = age(backup_service.create_backup(Backup.FULL), hours=30)

        report = health_service.run()

        assert len(report.issues) == 1
        assert report.issues[0].backup_id == old.id
        assert "30.0 hours old" in report.issues[0].message

    def test_missing_artifact(self, backup_service, health_service, storage):
        backup = backup_service.create_backup(Backup.FULL)
        storage.delete(backup.storage_location)

        report = health_service.run()

        assert report.issues[0].severity == BackupAlert.ERROR
        assert "missing" in report.issues[0].message
        assert report.artifact_checks[backup.id]["ok"] is False

        alert = BackupAlert.objects.get(alert_type=BackupAlert.HEALTH_CHECK)
        assert alert.details["artifact_checks"][backup.id]["ok"] is False

    def test_artifact_size_mismatch(self, backup_service, health_service, storage):
        backup = backup_service.create_backup(Backup.FULL)
        storage.put(backup.storage_location, b"short")

        report = health_service.run()

        assert "does not match" in report.issues[0].message
