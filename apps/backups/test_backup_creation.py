"""
Tests for backup creation and integrity verification.

The pipeline runs end to end against FakeMongoRunner and local storage in
a temporary directory.
"""

import io
import tarfile

from django.core import mail

import pytest

from apps.backups.archive import ArchiveBuilder
from apps.backups.encryption import calculate_checksum
from apps.backups.exceptions import ChainIntegrityFailure, DumpFailure, IntegrityFailure, StorageFailure
from apps.backups.models import Backup, BackupAlert
from apps.backups.services import BackupCreationService, IntegrityVerifier


@pytest.mark.django_db
class TestFullBackup:
    def test_full_backup_is_verified(self, backup_service, storage, encryptor):
        backup = backup_service.create_backup(Backup.FULL)

        backup.refresh_from_db()
        assert backup.status == Backup.VERIFIED
        assert backup.encrypted is True
        assert backup.storage_location == f"{backup.id}.tar.gz.enc"
        assert backup.completed_at is not None
        assert backup.verified_at is not None
        assert backup.database == "safekeep"
        assert backup.metadata["dump"]["incremental"] is False

        stored = storage.get(backup.storage_location)
        assert calculate_checksum(stored) == backup.checksum
        assert backup.size_bytes == len(stored)

        # The stored artifact decrypts to a tar.gz holding the dump
        archive = encryptor.decrypt(stored)
        with tarfile.open(fileobj=io.BytesIO(archive), mode="r:gz") as tar:
            assert "dump/safekeep/users.bson" in tar.getnames()

    def test_storage_metadata(self, backup_service, storage):
        backup = backup_service.create_backup(Backup.FULL)

        metadata = storage.get_metadata(backup.storage_location)
        assert metadata["backup_id"] == backup.id
        assert metadata["checksum"] == backup.checksum
        assert metadata["encrypted"] == "true"

    def test_unencrypted_backup(self, catalog, dump_executor, storage, notifier, work_dir):
        service = BackupCreationService(
            catalog=catalog,
            dump_executor=dump_executor,
            storage=storage,
            archive_builder=ArchiveBuilder(),
            notifier=notifier,
            encryptor=None,
            temp_dir=str(work_dir),
            notify_on_success=False,
        )

        backup = service.create_backup(Backup.FULL)

        assert backup.encrypted is False
        assert backup.storage_location.endswith(".tar.gz")
        with tarfile.open(fileobj=io.BytesIO(storage.get(backup.storage_location)), mode="r:gz"):
            pass

    def test_temp_files_removed(self, backup_service, work_dir):
        backup_service.create_backup(Backup.FULL)
        assert list(work_dir.iterdir()) == []

    def test_success_alert_when_enabled(self, backup_service):
        backup_service.notify_on_success = True

        backup = backup_service.create_backup(Backup.FULL)

        alert = BackupAlert.objects.get()
        assert alert.alert_type == BackupAlert.BACKUP_SUCCESS
        assert alert.severity == BackupAlert.INFO
        assert alert.backup_id == backup.id

    def test_no_alert_on_success_by_default(self, backup_service):
        backup_service.create_backup(Backup.FULL)
        assert BackupAlert.objects.count() == 0

    def test_unknown_backup_type(self, backup_service):
        with pytest.raises(ValueError):
            backup_service.create_backup("differential")


@pytest.mark.django_db
class TestBackupFailures:
    def test_dump_timeout(self, backup_service, fake_runner, storage, work_dir):
        fake_runner.timeouts.add("mongodump")

        with pytest.raises(DumpFailure):
            backup_service.create_backup(Backup.FULL)

        backup = Backup.objects.get()
        assert backup.status == Backup.FAILED
        assert backup.failure_kind == "DumpFailure"
        assert "timed out" in backup.failure_reason
        assert storage.list() == []
        assert list(work_dir.iterdir()) == []

        alert = BackupAlert.objects.get()
        assert alert.alert_type == BackupAlert.BACKUP_FAILURE
        assert alert.severity == BackupAlert.CRITICAL
        assert alert.backup_id == backup.id
        assert len(mail.outbox) == 1

    def test_upload_failure_is_storage_failure(self, backup_service, storage, monkeypatch):
        def broken_put(key, data, metadata=None):
            raise StorageFailure("bucket quota exceeded")

        monkeypatch.setattr(storage, "put", broken_put)

        with pytest.raises(StorageFailure):
            backup_service.create_backup(Backup.FULL)

        backup = Backup.objects.get()
        assert backup.failure_kind == "StorageFailure"
        assert BackupAlert.objects.count() == 1

    def test_upload_failure_after_object_written_leaves_nothing(self, backup_service, storage, monkeypatch):
        real_put = storage.put

        def put_then_fail(key, data, metadata=None):
            real_put(key, data, metadata)
            raise StorageFailure("connection reset after upload")

        monkeypatch.setattr(storage, "put", put_then_fail)

        with pytest.raises(StorageFailure):
            backup_service.create_backup(Backup.FULL)

        assert Backup.objects.get().status == Backup.FAILED
        assert storage.list() == []

    def test_unexpected_error_wrapped_in_stage_kind(self, backup_service, monkeypatch):
        def exploding_pack(source_dir, output_path):
            raise RuntimeError("disk on fire")

        monkeypatch.setattr(backup_service.archive_builder, "pack", exploding_pack)

        with pytest.raises(Exception) as excinfo:
            backup_service.create_backup(Backup.FULL)

        assert excinfo.value.kind == "ArchiveFailure"
        assert Backup.objects.get().failure_kind == "ArchiveFailure"

    def test_verification_failure_removes_artifact(self, backup_service, storage, monkeypatch):
        real_put = storage.put

        def corrupting_put(key, data, metadata=None):
            return real_put(key, data + b"corruption", metadata)

        monkeypatch.setattr(storage, "put", corrupting_put)

        with pytest.raises(IntegrityFailure):
            backup_service.create_backup(Backup.FULL)

        backup = Backup.objects.get()
        assert backup.status == Backup.FAILED
        assert backup.failure_kind == "IntegrityFailure"
        assert storage.list() == []

        alert = BackupAlert.objects.get()
        assert alert.alert_type == BackupAlert.INTEGRITY_FAILURE


@pytest.mark.django_db
class TestIncrementalBackup:
    def test_incremental_extends_latest_full(self, backup_service, fake_runner):
        full = backup_service.create_backup(Backup.FULL)
        fake_runner.pending_changes = {"records": 5}

        incremental = backup_service.create_backup(Backup.INCREMENTAL)

        assert incremental.status == Backup.VERIFIED
        assert incremental.parent_id == full.id
        assert incremental.metadata["dump"]["incremental"] is True

        full.refresh_from_db()
        _, args, _ = fake_runner.commands("mongodump")[-1]
        assert "--collection=oplog.rs" in args
        assert f'"t": {int(full.completed_at.timestamp())}' in next(a for a in args if a.startswith("--query="))

    def test_incremental_with_explicit_parent(self, backup_service):
        first = backup_service.create_backup(Backup.FULL)
        backup_service.create_backup(Backup.FULL)

        incremental = backup_service.create_backup(Backup.INCREMENTAL, parent_id=first.id)

        assert incremental.parent_id == first.id

    def test_incremental_without_full_fails_before_dump(self, backup_service, fake_runner):
        with pytest.raises(ChainIntegrityFailure):
            backup_service.create_backup(Backup.INCREMENTAL)

        assert fake_runner.calls == []
        assert Backup.objects.count() == 0

    def test_incremental_with_missing_parent(self, backup_service, fake_runner):
        with pytest.raises(ChainIntegrityFailure):
            backup_service.create_backup(Backup.INCREMENTAL, parent_id="20260101T000000000000Z-full-deadbeef")

        assert fake_runner.calls == []
        assert Backup.objects.count() == 0

    def test_incremental_with_failed_parent(self, backup_service, fake_runner):
        fake_runner.timeouts.add("mongodump")
        with pytest.raises(DumpFailure):
            backup_service.create_backup(Backup.FULL)
        failed_full = Backup.objects.get()
        fake_runner.timeouts.clear()
        calls_before = len(fake_runner.calls)

        with pytest.raises(ChainIntegrityFailure):
            backup_service.create_backup(Backup.INCREMENTAL, parent_id=failed_full.id)

        assert len(fake_runner.calls) == calls_before
        assert Backup.objects.count() == 1

    def test_full_backup_cannot_have_parent(self, backup_service):
        with pytest.raises(ValueError):
            backup_service.create_backup(Backup.FULL, parent_id="x")


@pytest.mark.django_db
class TestIntegrityVerifier:
    def test_detects_external_alteration(self, backup_service, storage, catalog):
        backup = backup_service.create_backup(Backup.FULL)
        verifier = IntegrityVerifier(storage, catalog)
        assert verifier.verify(backup).valid

        # Overwrite the artifact behind the catalog's back
        storage.put(backup.storage_location, b"tampered")

        result = verifier.verify(backup)
        assert not result.valid
        assert result.actual_checksum == calculate_checksum(b"tampered")
        assert any("Checksum mismatch" in error for error in result.errors)

    def test_missing_artifact(self, backup_service, storage, catalog):
        backup = backup_service.create_backup(Backup.FULL)
        storage.delete(backup.storage_location)

        result = IntegrityVerifier(storage, catalog).verify(backup)

        assert not result.valid
        assert "not found" in result.errors[0]

    def test_verify_and_mark_raises(self, storage, catalog):
        backup = catalog.create(Backup.FULL)
        catalog.mark_completed(backup, "b.tar.gz", "0" * 64, 4, 4, False)
        storage.put("b.tar.gz", b"data")

        with pytest.raises(IntegrityFailure):
            IntegrityVerifier(storage, catalog).verify_and_mark(backup)

        backup.refresh_from_db()
        assert backup.status == Backup.COMPLETED
