"""
Exception taxonomy for libragen.

Everything raised on purpose by the package derives from
:class:`LibragenError`, so callers can catch the whole family in one place.
"""

from __future__ import annotations

from typing import Optional


class LibragenError(Exception):
    """Base class for all libragen errors."""


class ConfigurationError(LibragenError):
    """Bad option values or combinations, detected before any I/O."""


# ---------------------------------------------------------------------------
# Chunking
# ---------------------------------------------------------------------------

class UnsupportedFileType(LibragenError):
    """The AST path does not know the extension of *file_path*."""

    def __init__(self, file_path: str) -> None:
        super().__init__(f"Unsupported file type for AST chunking: {file_path}")
        self.file_path = file_path


class ParseFailure(LibragenError):
    """The AST capability raised while chunking *file_path*."""

    def __init__(self, file_path: str, reason: str) -> None:
        super().__init__(f"AST chunking failed for {file_path}: {reason}")
        self.file_path = file_path
        self.reason = reason


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------

class StorageError(LibragenError):
    """Base class for library-file problems."""


class AlreadyExists(StorageError):
    def __init__(self, path: str) -> None:
        super().__init__(f"Library file already exists: {path}")
        self.path = path


class AlreadyLocked(StorageError):
    """Another build holds the write lock for *path*."""

    def __init__(self, path: str) -> None:
        super().__init__(f"A build is already in progress for: {path}")
        self.path = path


class SchemaVersionError(StorageError):
    """The file was written by a newer schema than this reader understands."""

    def __init__(self, path: str, found: int, supported: int) -> None:
        super().__init__(
            f"{path} has schema version {found}, but this version of libragen "
            f"only understands up to {supported}. Upgrade libragen to read it."
        )
        self.path = path
        self.found = found
        self.supported = supported


class MigrationRequiredError(StorageError):
    """The file uses an older schema and has not been migrated."""

    def __init__(self, path: str, found: int, current: int) -> None:
        super().__init__(
            f"{path} has schema version {found} (current is {current}). "
            f"Run a migration with force=True to upgrade it."
        )
        self.path = path
        self.found = found
        self.current = current


class CorruptionError(StorageError):
    """Dimension mismatch or disagreement between the chunk and index tables."""


class StoreClosedError(StorageError):
    def __init__(self, path: Optional[str] = None) -> None:
        super().__init__(f"Library store is closed: {path or '<unknown>'}")
        self.path = path


class LexicalQueryError(StorageError):
    """The full-text index rejected the query (usually bad FTS5 syntax)."""


# ---------------------------------------------------------------------------
# External capabilities
# ---------------------------------------------------------------------------

class EmbedderError(LibragenError):
    """The embedding capability failed or timed out."""


class RerankerError(LibragenError):
    """The reranking capability failed or timed out."""


class BuildCancelled(LibragenError):
    """A build was cancelled before its final commit."""
