"""
Management command to show the backup catalog.

Prints the most recent backups and the catalog totals.
"""

import json

from django.core.management.base import BaseCommand

from apps.backups.catalog import BackupCatalog
from apps.backups.models import Backup


class Command(BaseCommand):
    help = "List recent backups and backup statistics"

    def add_arguments(self, parser):
        parser.add_argument("--limit", type=int, default=10, help="Number of backups to list")
        parser.add_argument(
            "--status",
            type=str,
            choices=[choice for choice, _label in Backup.STATUS_CHOICES],
            help="Only list backups with this status",
        )
        parser.add_argument("--json", action="store_true", help="Print machine-readable JSON")

    def handle(self, *args, **options):
        catalog = BackupCatalog()
        backups = catalog.recent(limit=options["limit"], status=options.get("status"))
        stats = catalog.statistics()

        if options.get("json"):
            self.stdout.write(
                json.dumps(
                    {
                        "backups": [
                            {
                                "id": backup.id,
                                "type": backup.backup_type,
                                "status": backup.status,
                                "parent_id": backup.parent_id,
                                "size_bytes": backup.size_bytes,
                                "created_at": backup.created_at.isoformat(),
                                "retention_date": backup.retention_date.isoformat(),
                            }
                            for backup in backups
                        ],
                        "statistics": stats,
                    },
                    indent=2,
                )
            )
            return

        self.stdout.write("=" * 80)
        self.stdout.write("Recent backups")
        self.stdout.write("=" * 80)

        if not backups:
            self.stdout.write("No backups found")
        for backup in backups:
            line = (
                f"{backup.id}  {backup.backup_type:<11}  {backup.status:<11}  "
                f"{backup.get_size_mb():>10} MB  {backup.created_at:%Y-%m-%d %H:%M}"
            )
            if backup.status == Backup.FAILED:
                self.stdout.write(self.style.ERROR(f"{line}  {backup.failure_kind}"))
            else:
                self.stdout.write(line)

        self.stdout.write("")
        self.stdout.write(f"Total backups:     {stats['total_backups']}")
        self.stdout.write(f"Completed:         {stats['completed_backups']} ({stats['verified_backups']} verified)")
        self.stdout.write(f"Failed:            {stats['failed_backups']}")
        self.stdout.write(f"In progress:       {stats['in_progress_backups']}")
        self.stdout.write(f"Storage used:      {stats['total_storage_bytes']} bytes")
        latest = stats["latest_backup"]
        self.stdout.write(f"Latest backup:     {latest['id'] if latest else 'none'}")
