"""
Management command to verify a stored backup on demand.

Re-reads the artifact from storage and compares its checksum and size
with the catalog. A completed backup that passes is marked verified;
already verified backups are checked without touching their record.
"""

from django.core.management.base import BaseCommand, CommandError

from apps.backups.exceptions import BackupError, IntegrityFailure
from apps.backups.models import Backup
from apps.backups.services import build_integrity_verifier


class Command(BaseCommand):
    help = "Verify the integrity of a stored backup"

    def add_arguments(self, parser):
        parser.add_argument("backup_id", type=str, help="ID of the backup to verify")

    def handle(self, *args, **options):
        backup_id = options["backup_id"]
        verifier = build_integrity_verifier()

        backup = verifier.catalog.get(backup_id)
        if backup is None:
            raise CommandError(f"Backup not found: {backup_id}")
        if not backup.is_completed():
            raise CommandError(f"Backup {backup_id} has no stored artifact (status: {backup.status})")

        self.stdout.write(f"Verifying {backup}...")

        try:
            if backup.status == Backup.VERIFIED:
                result = verifier.verify(backup)
                if not result.valid:
                    raise IntegrityFailure("; ".join(result.errors))
            else:
                result = verifier.verify_and_mark(backup)
        except BackupError as e:
            raise CommandError(f"Verification failed: {e.kind}: {e}")

        self.stdout.write(self.style.SUCCESS(f"✓ Backup {backup_id} verified (checksum {result.actual_checksum})"))
