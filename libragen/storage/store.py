"""
SQLite-backed library store.

Holds chunks, their embeddings and a full-text index in one file.  Vector
similarity is computed with numpy over the stored float32 BLOBs; lexical
relevance comes from SQLite's FTS5 ``bm25`` ranking.

Every :meth:`LibraryStore.add_chunks` call is one transaction, so the chunk
table, the vector table and the lexical index never disagree.
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Optional

import numpy as np

from ..errors import (
    AlreadyExists,
    CorruptionError,
    LexicalQueryError,
    MigrationRequiredError,
    SchemaVersionError,
    StorageError,
    StoreClosedError,
)
from ..models import CodeContext, LibraryMetadata, NewChunk, StoredChunk
from .schema import (
    CURRENT_SCHEMA_VERSION,
    METADATA_KEY,
    connect,
    initialize_schema,
    read_schema_version,
    transaction,
)

logger = logging.getLogger(__name__)

_CHUNK_COLUMNS = (
    "id, content, embedding_content, source_file, start_line, end_line, "
    "language, content_version, code_context"
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _vec_to_bytes(vec) -> bytes:
    """Serialise a float sequence to compact float32 bytes."""
    return np.asarray(vec, dtype=np.float32).tobytes()


def _bytes_to_vec(buf: bytes) -> np.ndarray:
    return np.frombuffer(buf, dtype=np.float32).copy()


def _cosine_similarity_batch(query: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """Compute cosine similarity between *query* (1-D) and each row of *matrix*."""
    query_norm = np.linalg.norm(query)
    if query_norm == 0:
        return np.zeros(matrix.shape[0])
    row_norms = np.linalg.norm(matrix, axis=1)
    row_norms[row_norms == 0] = 1.0
    return (matrix @ query) / (row_norms * query_norm)


def _row_to_chunk(row: sqlite3.Row, embedding: Optional[bytes] = None) -> StoredChunk:
    code_context = None
    if row["code_context"]:
        try:
            code_context = CodeContext.from_dict(json.loads(row["code_context"]))
        except (json.JSONDecodeError, TypeError, AttributeError) as exc:
            raise CorruptionError(f"Invalid code context for chunk {row['id']}") from exc
    return StoredChunk(
        id=row["id"],
        content=row["content"],
        # Rows written before embedding_content existed read back as content.
        embedding_content=row["embedding_content"] or row["content"],
        source_file=row["source_file"],
        start_line=row["start_line"],
        end_line=row["end_line"],
        language=row["language"],
        content_version=row["content_version"],
        code_context=code_context,
        embedding=_bytes_to_vec(embedding).tolist() if embedding is not None else None,
    )


def _top_k(ids: np.ndarray, scores: np.ndarray, k: int) -> list[tuple[int, float]]:
    """Order by score descending, ties by lower id, and keep *k*."""
    order = np.lexsort((ids, -scores))[:k]
    return [(int(ids[i]), float(scores[i])) for i in order]


@dataclass
class ScoredChunk:
    """A stored chunk with the raw score of one retrieval signal."""
    chunk: StoredChunk
    score: float


# ---------------------------------------------------------------------------
# LibraryStore
# ---------------------------------------------------------------------------

class LibraryStore:
    """
    Handle on one library file.

    Use :meth:`create` for a new file and :meth:`open` for an existing one;
    both return a ready store.  The handle is safe to share between
    threads: every database access goes through one lock.
    """

    def __init__(
        self,
        path: str,
        conn: sqlite3.Connection,
        metadata: LibraryMetadata,
        read_only: bool = False,
    ) -> None:
        self.path = path
        self.read_only = read_only
        self._conn: Optional[sqlite3.Connection] = conn
        self._metadata = metadata
        self._lock = threading.RLock()
        self._vector_cache: Optional[tuple[np.ndarray, list, np.ndarray]] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @classmethod
    def create(cls, path: str, metadata: LibraryMetadata, overwrite: bool = False) -> "LibraryStore":
        """
        Create a new library file at *path* with the current schema.

        Raises
        ------
        AlreadyExists
            *path* exists and *overwrite* is false.
        """
        if os.path.exists(path):
            if not overwrite:
                raise AlreadyExists(path)
            os.remove(path)
            for suffix in ("-journal", "-wal", "-shm"):
                if os.path.exists(path + suffix):
                    os.remove(path + suffix)
        os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)

        meta = replace(
            metadata,
            schema_version=CURRENT_SCHEMA_VERSION,
            created_at=metadata.created_at or datetime.now(timezone.utc).isoformat(),
        )
        meta.stats = replace(meta.stats, chunk_count=0, source_count=0)

        conn = connect(path)
        try:
            with transaction(conn):
                initialize_schema(conn, CURRENT_SCHEMA_VERSION)
                cls._write_metadata(conn, meta)
        except sqlite3.Error as exc:
            conn.close()
            raise StorageError(f"Cannot create library {path}: {exc}") from exc
        logger.debug("Created library %s (schema v%d)", path, CURRENT_SCHEMA_VERSION)
        return cls(path, conn, meta)

    @classmethod
    def open(cls, path: str, read_only: bool = False) -> "LibraryStore":
        """
        Open an existing library file.

        Raises
        ------
        SchemaVersionError
            The file is newer than this reader.
        MigrationRequiredError
            The file is older and has not been migrated.
        CorruptionError
            The tables disagree or the metadata record is unreadable.
        """
        if not os.path.isfile(path):
            raise StorageError(f"Library file not found: {path}")
        try:
            conn = connect(path, read_only=read_only)
        except sqlite3.Error as exc:
            raise StorageError(f"Cannot open library {path}: {exc}") from exc
        try:
            version = read_schema_version(conn)
            if version > CURRENT_SCHEMA_VERSION:
                raise SchemaVersionError(path, version, CURRENT_SCHEMA_VERSION)
            if version < CURRENT_SCHEMA_VERSION:
                raise MigrationRequiredError(path, version, CURRENT_SCHEMA_VERSION)
            metadata = cls._read_metadata(conn)
            metadata.schema_version = version
            cls._check_consistency(conn, path, metadata)
        except sqlite3.DatabaseError as exc:
            conn.close()
            raise CorruptionError(f"{path} is not a readable library: {exc}") from exc
        except Exception:
            conn.close()
            raise
        return cls(path, conn, metadata, read_only=read_only)

    def close(self) -> None:
        """Release the backing file; later calls raise :class:`StoreClosedError`."""
        with self._lock:
            if self._conn is not None:
                try:
                    self._conn.close()
                except sqlite3.Error:
                    logger.debug("Error closing %s", self.path, exc_info=True)
                self._conn = None
                self._vector_cache = None

    @property
    def closed(self) -> bool:
        return self._conn is None

    def __enter__(self) -> "LibraryStore":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StoreClosedError(self.path)
        return self._conn

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    @staticmethod
    def _write_metadata(conn: sqlite3.Connection, metadata: LibraryMetadata) -> None:
        conn.execute(
            "INSERT OR REPLACE INTO metadata (key, value) VALUES (?, ?)",
            (METADATA_KEY, json.dumps(metadata.to_dict())),
        )

    @staticmethod
    def _read_metadata(conn: sqlite3.Connection) -> LibraryMetadata:
        row = conn.execute(
            "SELECT value FROM metadata WHERE key = ?", (METADATA_KEY,)
        ).fetchone()
        if row is None:
            raise CorruptionError("Library metadata record is missing")
        try:
            return LibraryMetadata.from_dict(json.loads(row[0]))
        except (json.JSONDecodeError, TypeError, ValueError, AttributeError) as exc:
            raise CorruptionError(f"Library metadata record is unreadable: {exc}") from exc

    @staticmethod
    def _check_consistency(conn: sqlite3.Connection, path: str, metadata: LibraryMetadata) -> None:
        n_chunks = conn.execute("SELECT COUNT(*) FROM chunks").fetchone()[0]
        n_vectors = conn.execute("SELECT COUNT(*) FROM vectors").fetchone()[0]
        n_fts = conn.execute("SELECT COUNT(*) FROM chunks_fts_docsize").fetchone()[0]
        if not n_chunks == n_vectors == n_fts:
            raise CorruptionError(
                f"{path}: table sizes disagree (chunks={n_chunks}, "
                f"vectors={n_vectors}, lexical={n_fts}); rebuild the library"
            )
        row = conn.execute("SELECT length(embedding) FROM vectors LIMIT 1").fetchone()
        expected = metadata.embedding.dimensions * 4
        if row is not None and row[0] != expected:
            raise CorruptionError(
                f"{path}: stored embeddings have {row[0] // 4} dimensions, "
                f"metadata says {metadata.embedding.dimensions}"
            )

    def get_metadata(self) -> LibraryMetadata:
        with self._lock:
            self._get_conn()
            return replace(self._metadata, stats=replace(self._metadata.stats))

    def update_metadata(self, **changes) -> LibraryMetadata:
        """
        Update fields of the metadata record in place.

        ``schema_version`` cannot be changed here; only migrations rewrite it.
        """
        if "schema_version" in changes:
            raise StorageError("schema_version is only rewritten by migrations")
        self._ensure_writable()
        with self._lock:
            conn = self._get_conn()
            updated = replace(self._metadata, **changes)
            try:
                with transaction(conn):
                    self._write_metadata(conn, updated)
            except sqlite3.Error as exc:
                raise StorageError(f"Cannot update metadata of {self.path}: {exc}") from exc
            self._metadata = updated
            return self.get_metadata()

    def _ensure_writable(self) -> None:
        if self.read_only:
            raise StorageError(f"Library opened read-only: {self.path}")

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def add_chunks(self, chunks: list[NewChunk]) -> list[int]:
        """
        Append *chunks* atomically and return their ids (input order).

        Raises
        ------
        CorruptionError
            An embedding does not match the library's dimensions.  Nothing
            of the call is written in that case.
        """
        self._ensure_writable()
        dims = self._metadata.embedding.dimensions
        for nc in chunks:
            if len(nc.embedding) != dims:
                raise CorruptionError(
                    f"Embedding for {nc.chunk.metadata.source_file} has "
                    f"{len(nc.embedding)} dimensions, library expects {dims}"
                )
        if not chunks:
            return []

        ids: list[int] = []
        with self._lock:
            conn = self._get_conn()
            try:
                with transaction(conn):
                    for nc in chunks:
                        c = nc.chunk
                        m = c.metadata
                        ctx = json.dumps(m.code_context.to_dict()) if m.code_context else None
                        cur = conn.execute(
                            "INSERT INTO chunks (content, embedding_content, source_file, "
                            "start_line, end_line, language, content_version, code_context) "
                            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                            (
                                c.content, c.embedding_content, m.source_file,
                                m.start_line, m.end_line, m.language,
                                nc.content_version, ctx,
                            ),
                        )
                        chunk_id = cur.lastrowid
                        conn.execute(
                            "INSERT INTO vectors (chunk_id, embedding) VALUES (?, ?)",
                            (chunk_id, _vec_to_bytes(nc.embedding)),
                        )
                        conn.execute(
                            "INSERT INTO chunks_fts (rowid, content) VALUES (?, ?)",
                            (chunk_id, c.content),
                        )
                        ids.append(chunk_id)

                    stats = self._metadata.stats
                    sources = conn.execute(
                        "SELECT COUNT(DISTINCT source_file) FROM chunks"
                    ).fetchone()[0]
                    updated = replace(
                        self._metadata,
                        stats=replace(stats, chunk_count=stats.chunk_count + len(ids),
                                      source_count=sources),
                    )
                    self._write_metadata(conn, updated)
            except sqlite3.Error as exc:
                raise StorageError(f"Cannot add chunks to {self.path}: {exc}") from exc
            self._metadata = updated
            self._vector_cache = None

        logger.debug("Added %d chunks to %s (ids %d..%d)", len(ids), self.path, ids[0], ids[-1])
        return ids

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def count(self) -> int:
        with self._lock:
            return self._get_conn().execute("SELECT COUNT(*) FROM chunks").fetchone()[0]

    def _fetch_chunks(self, ids: list[int]) -> dict[int, StoredChunk]:
        if not ids:
            return {}
        placeholders = ",".join("?" for _ in ids)
        rows = self._get_conn().execute(
            f"SELECT {_CHUNK_COLUMNS} FROM chunks WHERE id IN ({placeholders})",
            ids,
        ).fetchall()
        return {row["id"]: _row_to_chunk(row) for row in rows}

    def get_chunk(self, chunk_id: int, include_embedding: bool = False) -> Optional[StoredChunk]:
        with self._lock:
            conn = self._get_conn()
            row = conn.execute(
                f"SELECT {_CHUNK_COLUMNS} FROM chunks WHERE id = ?", (chunk_id,)
            ).fetchone()
            if row is None:
                return None
            embedding = None
            if include_embedding:
                vec = conn.execute(
                    "SELECT embedding FROM vectors WHERE chunk_id = ?", (chunk_id,)
                ).fetchone()
                if vec is None:
                    raise CorruptionError(f"Chunk {chunk_id} has no embedding")
                embedding = vec[0]
            return _row_to_chunk(row, embedding)

    def get_by_id_range(self, source_file: str, id_low: int, id_high: int) -> list[StoredChunk]:
        """Chunks of *source_file* with ``id_low <= id <= id_high``, in id order."""
        if id_high < id_low:
            return []
        with self._lock:
            rows = self._get_conn().execute(
                f"SELECT {_CHUNK_COLUMNS} FROM chunks "
                "WHERE source_file = ? AND id BETWEEN ? AND ? ORDER BY id",
                (source_file, id_low, id_high),
            ).fetchall()
        return [_row_to_chunk(row) for row in rows]

    def neighbours(self, source_file: str, chunk_id: int, before: int,
                   after: int) -> tuple[list[StoredChunk], list[StoredChunk]]:
        """
        Up to *before* / *after* chunks adjacent to *chunk_id* within *source_file*.

        Ids within a file are contiguous (one writer, document order), so the
        window is a plain id range clipped to the same ``source_file``.
        """
        prev: list[StoredChunk] = []
        nxt: list[StoredChunk] = []
        if before > 0:
            prev = self.get_by_id_range(source_file, chunk_id - before, chunk_id - 1)
        if after > 0:
            nxt = self.get_by_id_range(source_file, chunk_id + 1, chunk_id + after)
        return prev[-before:] if before else [], nxt[:after]

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    def _vectors(self) -> tuple[np.ndarray, list, np.ndarray]:
        """Return ``(ids, content_versions, matrix)``, cached until the next write."""
        if self._vector_cache is None:
            rows = self._get_conn().execute(
                "SELECT v.chunk_id, c.content_version, v.embedding "
                "FROM vectors v JOIN chunks c ON c.id = v.chunk_id ORDER BY v.chunk_id"
            ).fetchall()
            dims = self._metadata.embedding.dimensions
            ids = np.array([r[0] for r in rows], dtype=np.int64)
            versions = [r[1] for r in rows]
            if rows:
                matrix = np.stack([_bytes_to_vec(r[2]) for r in rows])
                if matrix.shape[1] != dims:
                    raise CorruptionError(
                        f"{self.path}: stored embeddings have {matrix.shape[1]} "
                        f"dimensions, metadata says {dims}"
                    )
            else:
                matrix = np.zeros((0, dims), dtype=np.float32)
            self._vector_cache = (ids, versions, matrix)
        return self._vector_cache

    def vector_search(
        self,
        embedding,
        k: int,
        content_version: Optional[str] = None,
    ) -> list[ScoredChunk]:
        """
        Cosine-similarity search.

        Parameters
        ----------
        embedding:
            Query vector; must have the library's dimensions.
        k:
            Number of candidates to return.
        content_version:
            When set, only chunks with this tag are considered.

        Returns
        -------
        list[ScoredChunk]
            Similarity descending, ties broken by lower id.
        """
        dims = self._metadata.embedding.dimensions
        if len(embedding) != dims:
            raise CorruptionError(
                f"Query embedding has {len(embedding)} dimensions, library expects {dims}"
            )
        if k <= 0:
            return []
        with self._lock:
            ids, versions, matrix = self._vectors()
            if content_version is not None:
                mask = np.array([v == content_version for v in versions], dtype=bool)
                ids, matrix = ids[mask], matrix[mask]
            if len(ids) == 0:
                return []
            scores = _cosine_similarity_batch(np.asarray(embedding, dtype=np.float32), matrix)
            ranked = _top_k(ids, scores.astype(np.float64), k)
            chunks = self._fetch_chunks([i for i, _ in ranked])
        return [ScoredChunk(chunks[i], s) for i, s in ranked if i in chunks]

    def fts_search(
        self,
        query_text: str,
        k: int,
        content_version: Optional[str] = None,
    ) -> list[ScoredChunk]:
        """
        Full-text search with FTS5.  Score is ``-bm25`` (higher is better).

        Raises
        ------
        LexicalQueryError
            *query_text* is not valid FTS5 query syntax.
        """
        if k <= 0 or not query_text.strip():
            return []
        sql = (
            f"SELECT {', '.join('c.' + col.strip() for col in _CHUNK_COLUMNS.split(','))}, "
            "-bm25(chunks_fts) AS score "
            "FROM chunks_fts JOIN chunks c ON c.id = chunks_fts.rowid "
            "WHERE chunks_fts MATCH ?"
        )
        params: list = [query_text]
        if content_version is not None:
            sql += " AND c.content_version = ?"
            params.append(content_version)
        sql += " ORDER BY score DESC, c.id ASC LIMIT ?"
        params.append(k)
        with self._lock:
            try:
                rows = self._get_conn().execute(sql, params).fetchall()
            except sqlite3.OperationalError as exc:
                raise LexicalQueryError(f"Invalid lexical query {query_text!r}: {exc}") from exc
        return [ScoredChunk(_row_to_chunk(row), float(row["score"])) for row in rows]
