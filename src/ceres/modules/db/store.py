"""SQLite implementation of the record store gateway."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import json
from pathlib import Path
import sqlite3
from typing import Any, Mapping

from ceres.core.logging import Logger, get_logger
from ceres.sync.errors import StorageWriteFailure
from ceres.sync.models import DatasetRecord, EmbeddingVector

from .migrations import apply_packaged_migrations

__all__ = [
    "DatabaseStats",
    "SQLiteRecordStore",
]

_COLUMNS = (
    "source_portal, original_id, url, title, description, "
    "content_fingerprint, embedding, metadata, first_seen_at, last_updated_at"
)


@dataclass(frozen=True, slots=True)
class DatabaseStats:
    """Aggregate counters over the stored records."""

    total_datasets: int
    datasets_with_embeddings: int
    total_portals: int
    last_update: datetime | None

    @property
    def datasets_without_embeddings(self) -> int:
        return self.total_datasets - self.datasets_with_embeddings


def _to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _encode_embedding(vector: EmbeddingVector | None) -> str | None:
    if vector is None:
        return None
    return json.dumps(list(vector), separators=(",", ":"))


def _decode_embedding(value: str | None) -> EmbeddingVector | None:
    if value is None:
        return None
    return tuple(float(item) for item in json.loads(value))


def _encode_metadata(metadata: Mapping[str, Any]) -> str:
    return json.dumps(dict(metadata), sort_keys=True, default=str)


class SQLiteRecordStore:
    """Persist :class:`DatasetRecord` rows in a single SQLite database.

    Every call opens its own connection, so the store is safe to share
    between the sync worker threads. SQLite serializes writers; ``timeout``
    bounds how long a writer waits for the lock.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        timeout: float = 30.0,
        logger: Logger | None = None,
    ) -> None:
        self._db_path = db_path
        self._timeout = timeout
        self._logger = logger or get_logger(__name__, component="db-store")

    @classmethod
    def open(
        cls,
        db_path: Path,
        *,
        timeout: float = 30.0,
        logger: Logger | None = None,
    ) -> "SQLiteRecordStore":
        """Apply pending migrations to ``db_path`` and return a store."""

        applied = apply_packaged_migrations(db_path, logger=logger)
        store = cls(db_path, timeout=timeout, logger=logger)
        if applied:
            store._logger.info(
                "db-migrations-applied",
                path=str(db_path),
                migrations=list(applied),
            )
        return store

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(self._db_path, timeout=self._timeout)
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA journal_mode = WAL")
        return connection

    # ------------------------------------------------------------------
    # RecordStore gateway

    def find_by_identity(
        self,
        source_portal: str,
        original_id: str,
    ) -> DatasetRecord | None:
        connection = self._connect()
        try:
            row = connection.execute(
                f"SELECT {_COLUMNS} FROM datasets "
                "WHERE source_portal = ? AND original_id = ?",
                (source_portal, original_id),
            ).fetchone()
        finally:
            connection.close()
        return None if row is None else self._to_record(row)

    def upsert(self, record: DatasetRecord) -> None:
        """Insert or update ``record``; ``first_seen_at`` is kept on update.

        Raises:
            StorageWriteFailure: If SQLite rejects the write.
        """

        params = (
            record.source_portal,
            record.original_id,
            record.url,
            record.title,
            record.description,
            record.content_fingerprint,
            _encode_embedding(record.embedding),
            _encode_metadata(record.raw_metadata),
            _to_iso(record.first_seen_at),
            _to_iso(record.last_updated_at),
        )
        try:
            connection = self._connect()
            try:
                with connection:
                    connection.execute(
                        f"""
                        INSERT INTO datasets ({_COLUMNS})
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        ON CONFLICT(source_portal, original_id) DO UPDATE SET
                            url = excluded.url,
                            title = excluded.title,
                            description = excluded.description,
                            content_fingerprint = excluded.content_fingerprint,
                            embedding = excluded.embedding,
                            metadata = excluded.metadata,
                            last_updated_at = excluded.last_updated_at
                        """,
                        params,
                    )
            finally:
                connection.close()
        except sqlite3.Error as exc:
            raise StorageWriteFailure(
                f"Failed to upsert {record.source_portal}/{record.original_id}: "
                f"{exc}"
            ) from exc

    # ------------------------------------------------------------------
    # Read helpers for presentation layers

    def list_records(
        self,
        *,
        portal: str | None = None,
        limit: int | None = None,
    ) -> list[DatasetRecord]:
        """Return records newest first, including ones without an embedding."""

        query = f"SELECT {_COLUMNS} FROM datasets"
        params: list[Any] = []
        if portal is not None:
            query += " WHERE source_portal = ?"
            params.append(portal)
        query += " ORDER BY last_updated_at DESC, original_id"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        connection = self._connect()
        try:
            rows = connection.execute(query, params).fetchall()
        finally:
            connection.close()
        return [self._to_record(row) for row in rows]

    def stats(self) -> DatabaseStats:
        connection = self._connect()
        try:
            row = connection.execute(
                """
                SELECT
                    COUNT(*) AS total,
                    COUNT(embedding) AS with_embeddings,
                    COUNT(DISTINCT source_portal) AS portals,
                    MAX(last_updated_at) AS last_update
                FROM datasets
                """
            ).fetchone()
        finally:
            connection.close()
        return DatabaseStats(
            total_datasets=row["total"],
            datasets_with_embeddings=row["with_embeddings"],
            total_portals=row["portals"],
            last_update=_from_iso(row["last_update"]),
        )

    def _to_record(self, row: sqlite3.Row) -> DatasetRecord:
        first_seen = _from_iso(row["first_seen_at"])
        last_updated = _from_iso(row["last_updated_at"])
        if first_seen is None or last_updated is None:
            raise ValueError(
                f"Record {row['source_portal']}/{row['original_id']} "
                "is missing timestamps"
            )
        return DatasetRecord(
            source_portal=row["source_portal"],
            original_id=row["original_id"],
            url=row["url"],
            title=row["title"],
            description=row["description"],
            content_fingerprint=row["content_fingerprint"],
            embedding=_decode_embedding(row["embedding"]),
            raw_metadata=json.loads(row["metadata"] or "{}"),
            first_seen_at=first_seen,
            last_updated_at=last_updated,
        )
