"""Once-only migration bookkeeping and packaged SQL migrations."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import hashlib
from pathlib import Path
import sqlite3
import threading
from typing import Callable, Iterator, Protocol, Sequence

from ceres.core.logging import Logger, get_logger
from ceres.sync.errors import MigrationApplyError

from .resources import MIGRATIONS_DIR, resource_path

__all__ = [
    "Migration",
    "MigrationGuard",
    "MigrationLedger",
    "MigrationLoadError",
    "SQLiteMigrationLedger",
    "apply_packaged_migrations",
    "load_migrations",
]


class MigrationLoadError(RuntimeError):
    """Raised when migration resources are malformed."""


@dataclass(frozen=True, slots=True)
class Migration:
    """A single forward-only SQL script identified by its file stem."""

    migration_id: str
    sql: str
    checksum: str


class MigrationLedger(Protocol):
    """Durable set of applied migration identifiers."""

    def is_applied(self, migration_id: str) -> bool: ...

    def record(self, migration_id: str, *, checksum: str | None) -> None: ...

    def applied(self) -> tuple[str, ...]: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SQLiteMigrationLedger:
    """Ledger stored in the ``schema_migrations`` table of the database."""

    def __init__(
        self,
        db_path: Path,
        *,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._db_path = db_path
        self._now = now

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        connection = sqlite3.connect(self._db_path)
        connection.row_factory = sqlite3.Row
        connection.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                migration_id TEXT UNIQUE NOT NULL,
                checksum TEXT,
                applied_at TEXT NOT NULL
            )
            """
        )
        return connection

    def is_applied(self, migration_id: str) -> bool:
        connection = self._connect()
        try:
            row = connection.execute(
                "SELECT 1 FROM schema_migrations WHERE migration_id = ?",
                (migration_id,),
            ).fetchone()
        finally:
            connection.close()
        return row is not None

    def record(self, migration_id: str, *, checksum: str | None) -> None:
        connection = self._connect()
        try:
            with connection:
                connection.execute(
                    """
                    INSERT INTO schema_migrations (migration_id, checksum, applied_at)
                    VALUES (?, ?, ?)
                    """,
                    (migration_id, checksum, self._now().isoformat()),
                )
        finally:
            connection.close()

    def applied(self) -> tuple[str, ...]:
        connection = self._connect()
        try:
            rows = connection.execute(
                "SELECT migration_id FROM schema_migrations ORDER BY id"
            ).fetchall()
        finally:
            connection.close()
        return tuple(row["migration_id"] for row in rows)


class MigrationGuard:
    """Apply each migration identifier at most once across restarts.

    A record is written only after ``apply_fn`` returns. When it raises, the
    error is wrapped in :class:`MigrationApplyError` and nothing is recorded,
    so the next invocation retries the migration. Calls are serialized so
    two threads sharing a guard never run the same migration twice.
    """

    def __init__(
        self,
        ledger: MigrationLedger,
        *,
        logger: Logger | None = None,
    ) -> None:
        self._ledger = ledger
        self._logger = logger or get_logger(__name__, component="migrations")
        self._lock = threading.Lock()

    @property
    def ledger(self) -> MigrationLedger:
        return self._ledger

    def apply_if_needed(
        self,
        migration_id: str,
        apply_fn: Callable[[], object],
        *,
        checksum: str | None = None,
    ) -> bool:
        """Run ``apply_fn`` unless ``migration_id`` was already recorded.

        Returns:
            ``True`` when the migration ran during this call.

        Raises:
            MigrationApplyError: If ``apply_fn`` raises.
        """

        with self._lock:
            if self._ledger.is_applied(migration_id):
                self._logger.debug("migration-skip", migration=migration_id)
                return False
            try:
                apply_fn()
            except Exception as exc:
                self._logger.error(
                    "migration-failed",
                    migration=migration_id,
                    error=str(exc),
                )
                raise MigrationApplyError(migration_id, exc) from exc
            self._ledger.record(migration_id, checksum=checksum)
            self._logger.info("migration-applied", migration=migration_id)
            return True


def _normalize_sql(sql: str) -> str:
    text = sql.replace("\r\n", "\n").replace("\r", "\n").strip()
    lines = [line.rstrip() for line in text.splitlines()]
    normalized = "\n".join(lines).strip()
    return normalized + "\n" if normalized else ""


def _checksum(sql: str) -> str:
    digest = hashlib.sha256(sql.encode("utf-8")).hexdigest()
    return f"sha256:{digest}"


def _iter_sql_files(path: Path) -> Iterator[Path]:
    if not path.is_dir():
        raise MigrationLoadError(f"Migration path not found: {path}")
    yield from sorted(entry for entry in path.iterdir() if entry.suffix == ".sql")


def load_migrations(path: Path | None = None) -> tuple[Migration, ...]:
    """Load ``*.sql`` migrations from ``path`` ordered by file name."""

    directory = path or resource_path(MIGRATIONS_DIR)
    migrations: list[Migration] = []
    for entry in _iter_sql_files(directory):
        sql = _normalize_sql(entry.read_text(encoding="utf-8"))
        if not sql:
            raise MigrationLoadError(f"Migration {entry} is empty")
        migrations.append(
            Migration(migration_id=entry.stem, sql=sql, checksum=_checksum(sql))
        )
    if not migrations:
        raise MigrationLoadError(f"No migrations discovered in {directory}")
    return tuple(migrations)


def _script_runner(db_path: Path, sql: str) -> Callable[[], None]:
    # executescript commits before running, so the script opens its own
    # transaction and a failure part way through is rolled back on exit.
    script = f"BEGIN;\n{sql}\nCOMMIT;\n"

    def _run() -> None:
        connection = sqlite3.connect(db_path)
        try:
            with connection:
                connection.executescript(script)
        finally:
            connection.close()

    return _run


def apply_packaged_migrations(
    db_path: Path,
    *,
    migrations: Sequence[Migration] | None = None,
    guard: MigrationGuard | None = None,
    logger: Logger | None = None,
) -> tuple[str, ...]:
    """Apply pending migrations to ``db_path`` and return the ones that ran.

    Raises:
        MigrationApplyError: When a migration fails. Later migrations are
            not attempted.
    """

    db_path.parent.mkdir(parents=True, exist_ok=True)
    active_guard = guard or MigrationGuard(
        SQLiteMigrationLedger(db_path),
        logger=logger,
    )
    applied: list[str] = []
    for migration in migrations or load_migrations():
        ran = active_guard.apply_if_needed(
            migration.migration_id,
            _script_runner(db_path, migration.sql),
            checksum=migration.checksum,
        )
        if ran:
            applied.append(migration.migration_id)
    return tuple(applied)
