"""
Database dump and restore through the MongoDB command line tools.

The DumpExecutor is the boundary between the backup pipeline and the
database engine. Its contract with the rest of the app is only "given a
source or target description, produce or consume a directory tree":
- mongodump produces full dumps and oplog-bounded incremental dumps
- mongorestore replays a dump into a target database
- mongosh inspects and drops restore-test databases

All commands go through a ProcessRunner with an explicit timeout.
"""

import json
import logging
import secrets
import shutil
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from django.conf import settings
from django.utils import timezone

from .exceptions import DumpFailure
from .process import ProcessLaunchError, ProcessRunner, ProcessTimeout, SubprocessRunner

logger = logging.getLogger(__name__)

OPLOG_FILENAME = "oplog.bson"
DRILL_DATABASE_PREFIX = "restore_drill_"
DEFAULT_PORT = 27017
LIST_DATABASES_SCRIPT = (
    "JSON.stringify(db.adminCommand({listDatabases: 1, nameOnly: true}).databases.map(d => d.name))"
)


def database_name_from_uri(uri: str) -> str:
    """Extract the database name from a MongoDB connection URI."""
    path = urlsplit(uri).path.lstrip("/")
    return path.split("/")[0] if path else ""


def uri_for_database(uri: str, database: str) -> str:
    """
    Return ``uri`` pointed at ``database``.

    When the URI carries credentials but no explicit authSource, the
    original database is kept as the authentication source so switching
    databases does not break authentication.
    """
    parts = urlsplit(uri)
    query = dict(parse_qsl(parts.query))
    original_database = parts.path.lstrip("/")

    if "@" in parts.netloc and "authSource" not in query and original_database:
        query["authSource"] = original_database

    return urlunsplit((parts.scheme, parts.netloc, f"/{database}", urlencode(query), parts.fragment))


def hosts_from_uri(uri: str) -> frozenset:
    """Return the set of ``host:port`` pairs a MongoDB URI connects to."""
    netloc = urlsplit(uri).netloc.rpartition("@")[2]
    hosts = set()
    for host in netloc.lower().split(","):
        host = host.strip()
        if not host:
            continue
        if ":" not in host.rsplit("]", 1)[-1]:
            host = f"{host}:{DEFAULT_PORT}"
        hosts.add(host)
    return frozenset(hosts)


@dataclass
class DumpResult:
    path: Path
    database: str
    incremental: bool = False
    since: Optional[datetime] = None
    size_bytes: int = 0
    collections: List[Dict] = field(default_factory=list)

    def as_metadata(self) -> dict:
        return {
            "database": self.database,
            "incremental": self.incremental,
            "since": self.since.isoformat() if self.since else None,
            "dump_size_bytes": self.size_bytes,
            "collections": self.collections,
        }


class DumpExecutor:
    """
    Produce and replay database dumps with mongodump/mongorestore.

    Args:
        source_uri: Connection URI of the production database
        staging_uri: Connection URI of the staging server used for restore tests
        runner: ProcessRunner used for every external command
        dump_timeout: Timeout for mongodump, in seconds
        restore_timeout: Timeout for mongorestore, in seconds
        query_timeout: Timeout for mongosh inspection commands, in seconds
    """

    def __init__(
        self,
        source_uri: str,
        staging_uri: str,
        runner: Optional[ProcessRunner] = None,
        dump_timeout: float = 3600,
        restore_timeout: float = 3600,
        query_timeout: float = 120,
        mongodump_bin: str = "mongodump",
        mongorestore_bin: str = "mongorestore",
        mongosh_bin: str = "mongosh",
    ):
        self.source_uri = source_uri
        self.staging_uri = staging_uri
        self.runner = runner or SubprocessRunner()
        self.dump_timeout = dump_timeout
        self.restore_timeout = restore_timeout
        self.query_timeout = query_timeout
        self.mongodump_bin = mongodump_bin
        self.mongorestore_bin = mongorestore_bin
        self.mongosh_bin = mongosh_bin

        self.source_database = database_name_from_uri(source_uri)
        self.staging_database = database_name_from_uri(staging_uri)

        if not self.source_database:
            raise DumpFailure("Source URI does not name a database")

    def _run(self, command: str, args: List[str], timeout: float, action: str) -> str:
        try:
            result = self.runner.run(command, args, timeout=timeout)
        except ProcessTimeout as e:
            raise DumpFailure(f"{action} timed out after {e.timeout} seconds") from e
        except ProcessLaunchError as e:
            raise DumpFailure(f"{action} could not start: {e}") from e

        if result.exit_code != 0:
            stderr = (result.stderr or "").strip()[-2000:]
            raise DumpFailure(f"{action} failed with exit code {result.exit_code}: {stderr}")

        return result.stdout

    @staticmethod
    def _collect_stats(path: Path) -> tuple:
        collections = []
        total = 0
        for bson_file in sorted(path.rglob("*.bson")):
            size = bson_file.stat().st_size
            total += size
            collections.append({"name": bson_file.stem, "size": size})
        return total, collections

    def dump_full(self, output_dir) -> DumpResult:
        """
        Export the entire source database into ``output_dir``.

        Raises:
            DumpFailure: If mongodump fails or times out
        """
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)

        logger.info(f"Starting mongodump of database {self.source_database}")

        self._run(
            self.mongodump_bin,
            [f"--uri={self.source_uri}", f"--out={output_dir}"],
            timeout=self.dump_timeout,
            action="mongodump",
        )

        size, collections = self._collect_stats(output_dir)
        logger.info(f"mongodump completed: {len(collections)} collections, {size} bytes")

        return DumpResult(
            path=output_dir,
            database=self.source_database,
            size_bytes=size,
            collections=collections,
        )

    def dump_incremental(self, output_dir, since: datetime) -> DumpResult:
        """
        Export oplog entries for the source database newer than ``since``.

        The oplog file is placed at ``<output_dir>/oplog.bson`` so the dump
        can be replayed with ``mongorestore --oplogReplay``.

        Raises:
            DumpFailure: If mongodump fails or times out
        """
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)

        query = {
            "ts": {"$gt": {"$timestamp": {"t": int(since.timestamp()), "i": 0}}},
            "ns": {"$regex": f"^{self.source_database}\\."},
        }

        logger.info(f"Starting incremental mongodump of {self.source_database} since {since.isoformat()}")

        self._run(
            self.mongodump_bin,
            [
                f"--uri={uri_for_database(self.source_uri, 'local')}",
                "--collection=oplog.rs",
                f"--query={json.dumps(query)}",
                f"--out={output_dir}",
            ],
            timeout=self.dump_timeout,
            action="incremental mongodump",
        )

        dumped_oplog = output_dir / "local" / "oplog.rs.bson"
        oplog_path = output_dir / OPLOG_FILENAME
        if dumped_oplog.exists():
            dumped_oplog.replace(oplog_path)
            shutil.rmtree(output_dir / "local", ignore_errors=True)
        else:
            # No changes since the parent backup
            oplog_path.write_bytes(b"")

        size = oplog_path.stat().st_size
        logger.info(f"Incremental mongodump completed: {size} bytes of oplog")

        return DumpResult(
            path=output_dir,
            database=self.source_database,
            incremental=True,
            since=since,
            size_bytes=size,
            collections=[{"name": "oplog", "size": size}],
        )

    def isolated_database_name(self) -> str:
        """
        Generate a fresh database name for a restore test.

        Raises:
            DumpFailure: If the generated name collides with the production or staging database
        """
        name = f"{DRILL_DATABASE_PREFIX}{timezone.now().strftime('%Y%m%d_%H%M%S')}_{secrets.token_hex(3)}"
        self._assert_disposable(name)
        return name

    def _assert_disposable(self, database: str):
        if not database.startswith(DRILL_DATABASE_PREFIX):
            raise DumpFailure(f"Refusing to use non-drill database {database} as a restore target")
        if database in (self.source_database, self.staging_database):
            raise DumpFailure(f"Refusing to use {database} as an isolated restore target")

    def _target_uri(self, database: str) -> str:
        self._assert_disposable(database)
        return uri_for_database(self.staging_uri, database)

    def restore(self, dump_dir, target_database: str, oplog_replay: bool = False) -> None:
        """
        Replay a dump directory into ``target_database`` on the staging server.

        Args:
            dump_dir: Directory produced by dump_full or dump_incremental
            target_database: Isolated database to restore into
            oplog_replay: Replay ``oplog.bson`` instead of restoring collections

        Raises:
            DumpFailure: If mongorestore fails or times out, the dump layout is unexpected,
                or an oplog replay wrote anywhere but the target database
        """
        dump_dir = Path(dump_dir)
        target_uri = self._target_uri(target_database)

        if hosts_from_uri(self.staging_uri) == hosts_from_uri(self.source_uri):
            raise DumpFailure("Staging URI points at the production server; refusing to restore")

        if oplog_replay:
            if not (dump_dir / OPLOG_FILENAME).exists():
                raise DumpFailure("Incremental dump does not contain an oplog")
            if self.source_database in self.list_databases():
                raise DumpFailure(
                    f"Staging server already holds a database named {self.source_database}; refusing oplog replay"
                )
            args = [
                f"--uri={target_uri}",
                "--oplogReplay",
                f"--nsFrom={self.source_database}.*",
                f"--nsTo={target_database}.*",
                f"--dir={dump_dir}",
            ]
        else:
            database_dirs = [p for p in dump_dir.iterdir() if p.is_dir()]
            if not database_dirs:
                raise DumpFailure("No database directories found in dump")
            args = [f"--uri={target_uri}", "--drop", f"--dir={database_dirs[0]}"]

        logger.info(f"Starting mongorestore into {target_database} (oplog_replay={oplog_replay})")
        self._run(self.mongorestore_bin, args, timeout=self.restore_timeout, action="mongorestore")

        if oplog_replay:
            self._check_replay_stayed_isolated(target_database)
        logger.info(f"mongorestore into {target_database} completed")

    def _check_replay_stayed_isolated(self, target_database: str):
        # Oplog entries name the production namespace; anything that escaped
        # the nsFrom/nsTo remap shows up as a source-named database on staging
        if self.source_database not in self.list_databases():
            return

        logger.error(f"Oplog replay into {target_database} wrote to {self.source_database} on the staging server")
        self._run(
            self.mongosh_bin,
            [uri_for_database(self.staging_uri, self.source_database), "--quiet", "--eval", "db.dropDatabase()"],
            timeout=self.query_timeout,
            action="drop database",
        )
        raise DumpFailure(
            f"Oplog replay wrote outside {target_database}: stray database {self.source_database} "
            "was created on the staging server and has been dropped"
        )

    def _eval(self, database: str, script: str, action: str) -> str:
        return self._run(
            self.mongosh_bin,
            [self._target_uri(database), "--quiet", "--eval", script],
            timeout=self.query_timeout,
            action=action,
        )

    def list_databases(self) -> List[str]:
        """List the database names on the staging server."""
        output = self._run(
            self.mongosh_bin,
            [uri_for_database(self.staging_uri, "admin"), "--quiet", "--eval", LIST_DATABASES_SCRIPT],
            timeout=self.query_timeout,
            action="list databases",
        )
        try:
            return list(json.loads(output.strip().splitlines()[-1]))
        except (ValueError, IndexError) as e:
            raise DumpFailure(f"Unexpected database list output: {output!r}") from e

    def list_collections(self, database: str) -> List[str]:
        """List the collections of a restore-test database."""
        output = self._eval(database, "JSON.stringify(db.getCollectionNames())", "list collections")
        try:
            return list(json.loads(output.strip().splitlines()[-1]))
        except (ValueError, IndexError) as e:
            raise DumpFailure(f"Unexpected collection list output: {output!r}") from e

    def count_documents(self, database: str, collections: List[str]) -> Dict[str, object]:
        """Count documents in the given collections of a restore-test database."""
        script = (
            f"const names = {json.dumps(collections)};"
            "const counts = {};"
            "names.forEach(n => { counts[n] = db.getCollection(n).countDocuments(); });"
            "JSON.stringify(counts)"
        )
        output = self._eval(database, script, "count documents")
        try:
            return dict(json.loads(output.strip().splitlines()[-1]))
        except (ValueError, IndexError) as e:
            raise DumpFailure(f"Unexpected document count output: {output!r}") from e

    def drop_database(self, database: str) -> None:
        """Drop a restore-test database."""
        self._eval(database, "db.dropDatabase()", "drop database")
        logger.info(f"Dropped restore test database: {database}")


def get_dump_executor(runner: Optional[ProcessRunner] = None) -> DumpExecutor:
    """Build a DumpExecutor from settings."""
    return DumpExecutor(
        source_uri=settings.BACKUP_SOURCE_URI,
        staging_uri=settings.BACKUP_STAGING_URI,
        runner=runner,
        dump_timeout=getattr(settings, "BACKUP_DUMP_TIMEOUT_SECONDS", 3600),
        restore_timeout=getattr(settings, "BACKUP_RESTORE_TIMEOUT_SECONDS", 3600),
    )
