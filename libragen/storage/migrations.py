"""
Schema migration runner.

Upgrades a library file one schema version at a time.  Each step runs in
its own transaction together with the bump of the version marker, and is
skipped when the marker shows it already ran, so an interrupted or
repeated migration is always safe to re-run.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import sqlite3
import time
from dataclasses import dataclass

from ..errors import CorruptionError, MigrationRequiredError, SchemaVersionError, StorageError
from .schema import (
    CURRENT_SCHEMA_VERSION,
    METADATA_KEY,
    MIGRATIONS,
    apply_step,
    connect,
    read_schema_version,
    transaction,
)

logger = logging.getLogger(__name__)


@dataclass
class MigrationResult:
    migrated: bool
    from_version: int
    to_version: int


class MigrationRunner:
    """
    Detect and upgrade the schema version of the library file at *path*.

    Parameters
    ----------
    path:
        Library file to inspect or migrate.
    backup:
        When true, copy the file to ``<path>.bak`` before the first step.
    """

    def __init__(self, path: str, backup: bool = False) -> None:
        if not os.path.isfile(path):
            raise StorageError(f"Library file not found: {path}")
        self.path = path
        self.backup = backup

    def read_version(self) -> int:
        conn = connect(self.path, read_only=True)
        try:
            return read_schema_version(conn)
        except sqlite3.DatabaseError as exc:
            raise CorruptionError(f"{self.path} is not a readable library: {exc}") from exc
        finally:
            conn.close()

    def needs_migration(self) -> bool:
        return self.read_version() < CURRENT_SCHEMA_VERSION

    def migrate_if_needed(self, force: bool = False) -> MigrationResult:
        """
        Bring the file up to :data:`CURRENT_SCHEMA_VERSION`.

        Raises
        ------
        SchemaVersionError
            The file is newer than this code; downgrades are never attempted.
        MigrationRequiredError
            The file is older and *force* is false.
        """
        version = self.read_version()
        if version > CURRENT_SCHEMA_VERSION:
            raise SchemaVersionError(self.path, version, CURRENT_SCHEMA_VERSION)
        if version == CURRENT_SCHEMA_VERSION:
            return MigrationResult(False, version, version)
        if not force:
            raise MigrationRequiredError(self.path, version, CURRENT_SCHEMA_VERSION)

        if self.backup:
            shutil.copy2(self.path, self.path + ".bak")

        t0 = time.perf_counter()
        conn = connect(self.path)
        try:
            for step in MIGRATIONS:
                if step.version <= version:
                    continue
                with transaction(conn):
                    if apply_step(conn, step):
                        self._stamp_metadata(conn, step.version)
        except sqlite3.Error as exc:
            raise StorageError(f"Migration of {self.path} failed: {exc}") from exc
        finally:
            conn.close()

        logger.info(
            "Migrated %s from schema v%d to v%d in %.1f ms",
            self.path, version, CURRENT_SCHEMA_VERSION,
            (time.perf_counter() - t0) * 1000,
        )
        return MigrationResult(True, version, CURRENT_SCHEMA_VERSION)

    @staticmethod
    def _stamp_metadata(conn: sqlite3.Connection, version: int) -> None:
        """Keep ``schemaVersion`` inside the metadata record in step with the marker."""
        row = conn.execute(
            "SELECT value FROM metadata WHERE key = ?", (METADATA_KEY,)
        ).fetchone()
        if row is None:
            return
        try:
            data = json.loads(row[0])
        except json.JSONDecodeError as exc:
            raise CorruptionError("Library metadata record is unreadable") from exc
        data["schemaVersion"] = version
        conn.execute(
            "UPDATE metadata SET value = ? WHERE key = ?",
            (json.dumps(data), METADATA_KEY),
        )


def migrate_if_needed(path: str, force: bool = False, backup: bool = False) -> MigrationResult:
    """Shortcut for ``MigrationRunner(path, backup).migrate_if_needed(force)``."""
    return MigrationRunner(path, backup=backup).migrate_if_needed(force=force)
