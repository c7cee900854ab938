"""SQLite persistence for dataset records and migrations."""

from __future__ import annotations

from .migrations import (
    Migration,
    MigrationGuard,
    MigrationLedger,
    MigrationLoadError,
    SQLiteMigrationLedger,
    apply_packaged_migrations,
    load_migrations,
)
from .store import DatabaseStats, SQLiteRecordStore

__all__ = [
    "DatabaseStats",
    "Migration",
    "MigrationGuard",
    "MigrationLedger",
    "MigrationLoadError",
    "SQLiteMigrationLedger",
    "SQLiteRecordStore",
    "apply_packaged_migrations",
    "load_migrations",
]
