"""
Backup catalog.

BackupCatalog is the only code that reads or writes Backup rows. State
transitions are conditional updates on the current status, so a row can
never move backwards and VERIFIED/FAILED rows are never rewritten.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from django.conf import settings
from django.db import transaction
from django.db.models import Count, Exists, OuterRef, Q, Sum
from django.utils import timezone

from .exceptions import ChainIntegrityFailure
from .models import Backup

logger = logging.getLogger(__name__)


@dataclass
class BackupChain:
    full: Backup
    incrementals: List[Backup] = field(default_factory=list)

    @property
    def latest_incremental(self) -> Optional[Backup]:
        return self.incrementals[-1] if self.incrementals else None


class BackupCatalog:
    """Persistent metadata store for backups."""

    def __init__(self, retention_days: Optional[int] = None):
        self.retention_days = (
            retention_days
            if retention_days is not None
            else getattr(settings, "BACKUP_RETENTION_DAYS", 30)
        )

    def create(self, backup_type: str, parent: Optional[Backup] = None, database: str = "") -> Backup:
        """Create an IN_PROGRESS row with its (immutable) retention date."""
        now = timezone.now()
        backup = Backup.objects.create(
            backup_type=backup_type,
            parent=parent,
            status=Backup.IN_PROGRESS,
            database=database,
            created_at=now,
            retention_date=now + timedelta(days=self.retention_days),
        )
        logger.info(f"Created backup record: {backup.id} (retention until {backup.retention_date.isoformat()})")
        return backup

    def get(self, backup_id: str) -> Optional[Backup]:
        return Backup.objects.filter(pk=backup_id).select_related("parent").first()

    def _transition(self, backup: Backup, from_statuses, **fields) -> bool:
        updated = Backup.objects.filter(pk=backup.pk, status__in=from_statuses).update(**fields)
        if updated:
            for name, value in fields.items():
                setattr(backup, name, value)
        else:
            logger.warning(
                f"Ignored transition of backup {backup.pk} to {fields.get('status')}: "
                f"not in {list(from_statuses)}"
            )
        return bool(updated)

    def mark_completed(
        self,
        backup: Backup,
        storage_location: str,
        checksum: str,
        size_bytes: int,
        original_size_bytes: int,
        encrypted: bool,
        metadata: Optional[dict] = None,
    ) -> bool:
        now = timezone.now()
        return self._transition(
            backup,
            [Backup.IN_PROGRESS],
            status=Backup.COMPLETED,
            storage_location=storage_location,
            checksum=checksum,
            size_bytes=size_bytes,
            original_size_bytes=original_size_bytes,
            encrypted=encrypted,
            completed_at=now,
            duration_seconds=int((now - backup.created_at).total_seconds()),
            metadata=metadata if metadata is not None else backup.metadata,
        )

    def mark_verified(self, backup: Backup) -> bool:
        return self._transition(
            backup,
            [Backup.COMPLETED],
            status=Backup.VERIFIED,
            verified_at=timezone.now(),
        )

    def mark_failed(self, backup: Backup, kind: str, reason: str) -> bool:
        now = timezone.now()
        return self._transition(
            backup,
            [Backup.IN_PROGRESS, Backup.COMPLETED],
            status=Backup.FAILED,
            failure_kind=kind,
            failure_reason=reason,
            duration_seconds=int((now - backup.created_at).total_seconds()),
        )

    def latest_full(self) -> Optional[Backup]:
        """Most recent non-expired full backup that completed (or verified)."""
        return (
            Backup.objects.filter(
                backup_type=Backup.FULL,
                status__in=Backup.USABLE_STATUSES,
                retention_date__gt=timezone.now(),
            )
            .order_by("-created_at")
            .first()
        )

    def resolve_parent(self, parent_id: Optional[str]) -> Backup:
        """
        Resolve the parent of a new incremental backup.

        Raises:
            ChainIntegrityFailure: If the parent is missing, not a full backup, or not usable
        """
        if parent_id is None:
            parent = self.latest_full()
            if parent is None:
                raise ChainIntegrityFailure("No completed full backup exists to anchor an incremental backup")
            return parent

        parent = self.get(parent_id)
        if parent is None:
            raise ChainIntegrityFailure(f"Parent backup not found: {parent_id}")
        if not parent.is_full():
            raise ChainIntegrityFailure(f"Parent backup {parent_id} is not a full backup")
        if not parent.is_completed():
            raise ChainIntegrityFailure(f"Parent backup {parent_id} is not completed (status: {parent.status})")
        if parent.completed_at is None:
            raise ChainIntegrityFailure(f"Parent backup {parent_id} has no completion time")
        if parent.is_expired():
            raise ChainIntegrityFailure(f"Parent backup {parent_id} is past its retention date")
        return parent

    def chain(self, full_backup_id: str) -> BackupChain:
        """
        Full backup plus its usable incrementals, oldest first.

        Raises:
            ChainIntegrityFailure: If the full backup does not exist
        """
        full = Backup.objects.filter(pk=full_backup_id, backup_type=Backup.FULL).first()
        if full is None:
            raise ChainIntegrityFailure(f"Full backup not found: {full_backup_id}")

        incrementals = list(
            full.incrementals.filter(
                backup_type=Backup.INCREMENTAL,
                status__in=Backup.USABLE_STATUSES,
            ).order_by("created_at")
        )
        return BackupChain(full=full, incrementals=incrementals)

    def prunable(self, now: Optional[datetime] = None) -> List[Backup]:
        """
        Backups whose retention date has passed and that no retained
        incremental depends on. Incrementals come first so a chain can be
        emptied and its full backup pruned in a later run.
        """
        now = now or timezone.now()
        retained_children = Backup.objects.filter(parent=OuterRef("pk"), retention_date__gt=now)

        candidates = (
            Backup.objects.filter(retention_date__lte=now)
            .exclude(status=Backup.IN_PROGRESS)
            .annotate(has_retained_child=Exists(retained_children))
            .filter(has_retained_child=False)
        )
        return sorted(candidates, key=lambda b: (b.backup_type != Backup.INCREMENTAL, b.created_at))

    def has_children(self, backup: Backup) -> bool:
        return Backup.objects.filter(parent=backup).exists()

    def delete(self, backup: Backup) -> None:
        with transaction.atomic():
            Backup.objects.filter(pk=backup.pk).delete()
        logger.info(f"Deleted backup record: {backup.pk}")

    def recent_failures(self, since: datetime) -> List[Backup]:
        return list(Backup.objects.filter(status=Backup.FAILED, created_at__gte=since))

    def stale_in_progress(self, older_than: datetime) -> List[Backup]:
        return list(Backup.objects.filter(status=Backup.IN_PROGRESS, created_at__lt=older_than))

    def recent(self, limit: int = 20, status: Optional[str] = None) -> List[Backup]:
        backups = Backup.objects.order_by("-created_at")
        if status:
            backups = backups.filter(status=status)
        return list(backups[:limit])

    def recent_usable(self, limit: int = 20) -> List[Backup]:
        return list(
            Backup.objects.filter(status__in=Backup.USABLE_STATUSES).order_by("-created_at")[:limit]
        )

    def latest_verified_full(self) -> Optional[Backup]:
        return (
            Backup.objects.filter(backup_type=Backup.FULL, status=Backup.VERIFIED)
            .order_by("-created_at")
            .first()
        )

    def statistics(self) -> dict:
        """Backup counts and storage totals for reporting."""
        totals = Backup.objects.aggregate(
            total=Count("id"),
            completed=Count("id", filter=Q(status__in=Backup.USABLE_STATUSES)),
            verified=Count("id", filter=Q(status=Backup.VERIFIED)),
            failed=Count("id", filter=Q(status=Backup.FAILED)),
            in_progress=Count("id", filter=Q(status=Backup.IN_PROGRESS)),
            storage_bytes=Sum("size_bytes", filter=Q(status__in=Backup.USABLE_STATUSES)),
        )
        latest = Backup.objects.filter(status__in=Backup.USABLE_STATUSES).first()

        return {
            "total_backups": totals["total"],
            "completed_backups": totals["completed"],
            "verified_backups": totals["verified"],
            "failed_backups": totals["failed"],
            "in_progress_backups": totals["in_progress"],
            "total_storage_bytes": totals["storage_bytes"] or 0,
            "latest_backup": (
                {
                    "id": latest.id,
                    "type": latest.backup_type,
                    "created_at": latest.created_at.isoformat(),
                }
                if latest
                else None
            ),
        }
