"""
Pytest configuration and fixtures for backup tests.

FakeMongoRunner stands in for mongodump, mongorestore and mongosh so the
whole pipeline can run against temporary directories.
"""

import json
import re
from pathlib import Path

from django.core.cache import cache

import pytest

from apps.backups.archive import ArchiveBuilder
from apps.backups.catalog import BackupCatalog
from apps.backups.dump import DumpExecutor, database_name_from_uri
from apps.backups.encryption import Encryptor
from apps.backups.monitoring import AlertNotifier
from apps.backups.process import ProcessResult, ProcessRunner, ProcessTimeout
from apps.backups.restore_testing import RestoreTestingService
from apps.backups.scheduling import reset_shutdown_flag
from apps.backups.services import BackupCreationService, IntegrityVerifier, RetentionService
from apps.backups.storage import LocalStorage

SOURCE_URI = "mongodb://localhost:27017/safekeep"
STAGING_URI = "mongodb://localhost:27018/safekeep_staging"
TEST_KEY = b"k" * 32


def _option(args, name):
    prefix = f"--{name}="
    for arg in args:
        if arg.startswith(prefix):
            return arg[len(prefix):]
    return None


class FakeMongoRunner(ProcessRunner):
    """
    In-memory MongoDB server driven through the command line tools' arguments.

    Dumped collection files hold ``{"docs": <count>}`` and the oplog holds
    ``{<collection>: <added docs>}`` so restores can be checked by count.
    """

    def __init__(self, source_database="safekeep", collections=None):
        self.source_database = source_database
        self.collections = dict(collections or {"users": 3, "records": 10, "backups": 1})
        self.pending_changes = {}
        self.databases = {}
        self.dropped = []
        self.calls = []
        self.timeouts = set()
        self.failures = {}
        self.count_override = None
        # When set, oplog replay ignores --nsFrom/--nsTo and writes to the source namespace
        self.replay_ignores_remap = False

    def run(self, command, args, timeout, env=None):
        self.calls.append((command, list(args), timeout))

        if command in self.timeouts:
            raise ProcessTimeout(command, timeout)
        if command in self.failures:
            return ProcessResult(stdout="", stderr=self.failures[command], exit_code=1)

        handler = {
            "mongodump": self._mongodump,
            "mongorestore": self._mongorestore,
            "mongosh": self._mongosh,
        }[command]
        return handler(list(args))

    def commands(self, name):
        return [call for call in self.calls if call[0] == name]

    def _mongodump(self, args):
        out = Path(_option(args, "out"))

        if "--collection=oplog.rs" in args:
            if self.pending_changes:
                oplog = out / "local" / "oplog.rs.bson"
                oplog.parent.mkdir(parents=True, exist_ok=True)
                oplog.write_text(json.dumps(self.pending_changes))
            return ProcessResult(stdout="", stderr="", exit_code=0)

        db_dir = out / self.source_database
        db_dir.mkdir(parents=True, exist_ok=True)
        for name, count in self.collections.items():
            (db_dir / f"{name}.bson").write_text(json.dumps({"docs": count}) + " " * 512)
        return ProcessResult(stdout="", stderr=f"done dumping {self.source_database}", exit_code=0)

    def _mongorestore(self, args):
        target = database_name_from_uri(_option(args, "uri"))
        source_dir = Path(_option(args, "dir"))

        if "--oplogReplay" in args:
            if self.replay_ignores_remap:
                target = self.source_database
            database = self.databases.setdefault(target, {})
            raw = (source_dir / "oplog.bson").read_text()
            for name, added in (json.loads(raw) if raw else {}).items():
                database[name] = database.get(name, 0) + added
        else:
            database = {} if "--drop" in args else self.databases.get(target, {})
            for bson_file in source_dir.glob("*.bson"):
                database[bson_file.stem] = json.loads(bson_file.read_text())["docs"]
            self.databases[target] = database

        return ProcessResult(stdout="", stderr="", exit_code=0)

    def _mongosh(self, args):
        database = database_name_from_uri(args[0])
        script = args[-1]

        if "listDatabases" in script:
            return ProcessResult(stdout=json.dumps(sorted(self.databases)), stderr="", exit_code=0)

        if "getCollectionNames" in script:
            return ProcessResult(stdout=json.dumps(sorted(self.databases.get(database, {}))), stderr="", exit_code=0)

        if "countDocuments" in script:
            names = json.loads(re.search(r"const names = (\[.*?\]);", script).group(1))
            counts = {name: self.databases.get(database, {}).get(name, 0) for name in names}
            if self.count_override is not None:
                counts.update(self.count_override)
            return ProcessResult(stdout=json.dumps(counts), stderr="", exit_code=0)

        if "dropDatabase" in script:
            self.databases.pop(database, None)
            self.dropped.append(database)
            return ProcessResult(stdout="{ ok: 1 }", stderr="", exit_code=0)

        raise AssertionError(f"Unexpected mongosh script: {script}")


@pytest.fixture(autouse=True)
def clean_state():
    """Reset the cache (job locks, alert cooldowns) and the shutdown flag."""
    cache.clear()
    reset_shutdown_flag()
    yield
    cache.clear()
    reset_shutdown_flag()


@pytest.fixture
def fake_runner():
    return FakeMongoRunner()


@pytest.fixture
def dump_executor(fake_runner):
    return DumpExecutor(SOURCE_URI, STAGING_URI, runner=fake_runner)


@pytest.fixture
def storage(tmp_path):
    return LocalStorage(base_path=str(tmp_path / "store"))


@pytest.fixture
def encryptor():
    return Encryptor(TEST_KEY)


@pytest.fixture
def catalog():
    return BackupCatalog(retention_days=30)


@pytest.fixture
def notifier():
    return AlertNotifier(recipients=["ops@example.com"], webhook_url="", cooldown_minutes=60)


@pytest.fixture
def work_dir(tmp_path):
    path = tmp_path / "work"
    path.mkdir()
    return path


@pytest.fixture
def backup_service(catalog, dump_executor, storage, encryptor, notifier, work_dir):
    return BackupCreationService(
        catalog=catalog,
        dump_executor=dump_executor,
        storage=storage,
        archive_builder=ArchiveBuilder(),
        notifier=notifier,
        encryptor=encryptor,
        verifier=IntegrityVerifier(storage, catalog),
        temp_dir=str(work_dir),
        notify_on_success=False,
    )


@pytest.fixture
def restore_service(catalog, dump_executor, storage, encryptor, notifier, work_dir):
    return RestoreTestingService(
        catalog=catalog,
        dump_executor=dump_executor,
        storage=storage,
        archive_builder=ArchiveBuilder(),
        notifier=notifier,
        encryptor=encryptor,
        key_collections=["users", "records", "backups"],
        temp_dir=str(work_dir),
    )


@pytest.fixture
def retention_service(catalog, storage, notifier):
    return RetentionService(catalog=catalog, storage=storage, notifier=notifier)
