"""
On-disk schema of a library file and the ordered list of upgrade steps.

A library file is one SQLite database holding four structures:

``chunks``
    One row per chunk; ``id`` order is document order within a source file.
``vectors``
    One float32 embedding BLOB per chunk.
``chunks_fts``
    FTS5 lexical index over ``chunks.content`` (external content table).
``metadata``
    Key/value pairs: the ``schema_version`` marker and the library
    metadata record as JSON.

New files are created by applying :data:`BASE_SCHEMA` (version 1) and then
every entry of :data:`MIGRATIONS`, so a fresh file and a migrated file go
through exactly the same statements.
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from ..errors import CorruptionError

logger = logging.getLogger(__name__)

CURRENT_SCHEMA_VERSION = 3
BASE_SCHEMA_VERSION = 1

SCHEMA_VERSION_KEY = "schema_version"
METADATA_KEY = "library"

BASE_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS chunks (
        id              INTEGER PRIMARY KEY AUTOINCREMENT,
        content         TEXT    NOT NULL,
        source_file     TEXT    NOT NULL,
        start_line      INTEGER,
        end_line        INTEGER,
        language        TEXT,
        content_version TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS vectors (
        chunk_id   INTEGER PRIMARY KEY REFERENCES chunks(id),
        embedding  BLOB    NOT NULL
    )
    """,
    """
    CREATE VIRTUAL TABLE IF NOT EXISTS chunks_fts USING fts5(
        content,
        content='chunks',
        content_rowid='id',
        tokenize='porter unicode61'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS metadata (
        key    TEXT PRIMARY KEY,
        value  TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_chunks_content_version ON chunks(content_version)",
]


@dataclass(frozen=True)
class MigrationStep:
    """Upgrade from ``version - 1`` to ``version``."""
    version: int
    description: str
    statements: tuple[str, ...]


MIGRATIONS: list[MigrationStep] = [
    MigrationStep(
        version=2,
        description="store the embedding-optimized text of each chunk",
        statements=(
            "ALTER TABLE chunks ADD COLUMN embedding_content TEXT",
        ),
    ),
    MigrationStep(
        version=3,
        description="store code context and index chunks by source file",
        statements=(
            "ALTER TABLE chunks ADD COLUMN code_context TEXT",
            "CREATE INDEX IF NOT EXISTS idx_chunks_source_file ON chunks(source_file, id)",
        ),
    ),
]


# ---------------------------------------------------------------------------
# Connections and transactions
# ---------------------------------------------------------------------------

def connect(path: str, read_only: bool = False) -> sqlite3.Connection:
    """
    Open *path* in autocommit mode; transactions are explicit via :func:`transaction`.

    The default rollback journal is kept (no WAL) so a finished library
    stays one self-contained file.
    """
    if read_only:
        uri = Path(path).resolve().as_uri() + "?mode=ro"
        conn = sqlite3.connect(uri, uri=True, timeout=10, check_same_thread=False,
                               isolation_level=None)
    else:
        conn = sqlite3.connect(path, timeout=10, check_same_thread=False,
                               isolation_level=None)
        conn.execute("PRAGMA synchronous=NORMAL")
    conn.row_factory = sqlite3.Row
    return conn


@contextmanager
def transaction(conn: sqlite3.Connection):
    """Run the body inside ``BEGIN IMMEDIATE`` … ``COMMIT``; roll back on any error."""
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    else:
        conn.execute("COMMIT")


# ---------------------------------------------------------------------------
# Version marker
# ---------------------------------------------------------------------------

def _table_exists(conn: sqlite3.Connection, name: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type IN ('table', 'view') AND name = ?",
        (name,),
    ).fetchone()
    return row is not None


def read_schema_version(conn: sqlite3.Connection) -> int:
    """
    Return the schema version stored in *conn*.

    Raises
    ------
    CorruptionError
        The database does not look like a library file.
    """
    if not _table_exists(conn, "metadata") or not _table_exists(conn, "chunks"):
        raise CorruptionError("Not a libragen library file (missing tables)")
    row = conn.execute(
        "SELECT value FROM metadata WHERE key = ?", (SCHEMA_VERSION_KEY,)
    ).fetchone()
    if row is None:
        # Files written before the marker existed only ever had the base layout.
        return BASE_SCHEMA_VERSION
    try:
        return int(row[0])
    except (TypeError, ValueError) as exc:
        raise CorruptionError(f"Invalid schema version marker: {row[0]!r}") from exc


def write_schema_version(conn: sqlite3.Connection, version: int) -> None:
    conn.execute(
        "INSERT OR REPLACE INTO metadata (key, value) VALUES (?, ?)",
        (SCHEMA_VERSION_KEY, str(version)),
    )


# ---------------------------------------------------------------------------
# Schema application
# ---------------------------------------------------------------------------

def apply_step(conn: sqlite3.Connection, step: MigrationStep) -> bool:
    """
    Apply *step* if the marker says it has not been applied yet.

    Must run inside a transaction; the marker is bumped in the same one.
    Returns True when the step ran.
    """
    if read_schema_version(conn) >= step.version:
        return False
    for stmt in step.statements:
        conn.execute(stmt)
    write_schema_version(conn, step.version)
    logger.debug("Applied schema step v%d: %s", step.version, step.description)
    return True


def initialize_schema(conn: sqlite3.Connection, target_version: int = CURRENT_SCHEMA_VERSION) -> None:
    """Create a fresh schema at *target_version*; the caller owns the transaction."""
    for stmt in BASE_SCHEMA:
        conn.execute(stmt)
    write_schema_version(conn, BASE_SCHEMA_VERSION)
    for step in MIGRATIONS:
        if step.version > target_version:
            break
        apply_step(conn, step)
