"""
Management command to trigger backups manually.

This command is used by:
- CI/CD pipeline before production deployments
- Manual backup operations
"""

from django.core.management.base import BaseCommand, CommandError

from apps.backups.tasks import run_full_backup, run_incremental_backup


class Command(BaseCommand):
    help = "Trigger a backup manually"

    def add_arguments(self, parser):
        parser.add_argument(
            "--type",
            type=str,
            choices=["full", "incremental"],
            default="full",
            help="Type of backup to perform (full or incremental)",
        )
        parser.add_argument(
            "--parent",
            type=str,
            help="Full backup ID an incremental backup extends (defaults to the latest full backup)",
        )
        parser.add_argument(
            "--async",
            action="store_true",
            help="Run backup asynchronously using Celery",
        )

    def handle(self, *args, **options):
        backup_type = options["type"]
        parent_id = options.get("parent")
        run_async = options.get("async", False)

        if parent_id and backup_type != "incremental":
            raise CommandError("--parent is only valid for incremental backups")

        self.stdout.write(f"Triggering {backup_type} backup...")

        if backup_type == "full":
            task, kwargs = run_full_backup, {}
        else:
            task, kwargs = run_incremental_backup, {"parent_id": parent_id}

        if run_async:
            result = task.delay(**kwargs)
            self.stdout.write(self.style.SUCCESS(f"{backup_type.capitalize()} backup task queued: {result.id}"))
            return

        result = task(**kwargs)
        status = result.get("status")

        if status == "completed":
            self.stdout.write(
                self.style.SUCCESS(f"{backup_type.capitalize()} backup completed: {result['backup_id']}")
            )
        elif status == "skipped":
            self.stdout.write(self.style.WARNING(f"Backup skipped: {result['reason']}"))
        else:
            raise CommandError(f"Backup failed: {result.get('error_kind')}: {result.get('error')}")
