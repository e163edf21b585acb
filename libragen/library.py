"""
Working with built library files: inspection, discovery and multi-library search.

:class:`LibraryManager` only looks in the paths handed to it; there is no
process-wide list of library locations.
"""

from __future__ import annotations

import glob
import logging
import os
from dataclasses import dataclass
from typing import Optional, Union

from .embedding import Embedder
from .errors import StorageError
from .models import LibraryMetadata, SearchResult
from .reranker import Reranker
from .searcher import SearchOptions, Searcher
from .storage.store import LibraryStore

logger = logging.getLogger(__name__)

LIBRARY_GLOB = "*.libragen"


class Library:
    """A library file opened for reading (or, with ``read_only=False``, writing)."""

    def __init__(self, path: str, store: LibraryStore) -> None:
        self.path = path
        self.store = store

    @classmethod
    def open(cls, path: str, read_only: bool = True) -> "Library":
        return cls(path, LibraryStore.open(path, read_only=read_only))

    def get_metadata(self) -> LibraryMetadata:
        return self.store.get_metadata()

    def searcher(self, embedder: Embedder, **kwargs) -> Searcher:
        return Searcher(embedder, self.store, **kwargs)

    def close(self) -> None:
        self.store.close()

    def __enter__(self) -> "Library":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


@dataclass
class LibraryInfo:
    path: str
    file_size: int
    metadata: LibraryMetadata

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def version(self) -> str:
        return self.metadata.version


def inspect_library(path: str) -> LibraryInfo:
    """Read a library's metadata (read-only) plus its size on disk."""
    with Library.open(path) as lib:
        metadata = lib.get_metadata()
    return LibraryInfo(os.path.abspath(path), os.path.getsize(path), metadata)


class LibraryManager:
    """
    Finds ``*.libragen`` files in an explicit list of directories.

    Parameters
    ----------
    paths:
        Directories searched in order; when two hold a library of the same
        name, the first one wins in :meth:`find`.
    """

    def __init__(self, paths: list[str]) -> None:
        self.paths = list(paths)

    def list_installed(self) -> list[LibraryInfo]:
        """Every readable library in :attr:`paths`; unreadable files are logged and skipped."""
        found: list[LibraryInfo] = []
        seen: set[str] = set()
        for directory in self.paths:
            if not os.path.isdir(directory):
                continue
            for path in sorted(glob.glob(os.path.join(directory, LIBRARY_GLOB))):
                real = os.path.realpath(path)
                if real in seen:
                    continue
                seen.add(real)
                try:
                    found.append(inspect_library(path))
                except StorageError as exc:
                    logger.warning("Skipping library %s: %s", path, exc)
        return found

    def find(self, name: str) -> Optional[LibraryInfo]:
        for info in self.list_installed():
            if info.name == name:
                return info
        return None


# ---------------------------------------------------------------------------
# Multi-library search
# ---------------------------------------------------------------------------

def search_libraries(
    libraries: list[Union[LibraryInfo, str]],
    embedder: Embedder,
    query: str,
    k: int = 10,
    hybrid_alpha: float = 0.5,
    content_version: Optional[str] = None,
    context_before: int = 1,
    context_after: int = 1,
    rerank: bool = False,
    reranker: Optional[Reranker] = None,
    timeout: Optional[float] = None,
) -> list[SearchResult]:
    """
    Search several libraries and merge the hits by score, keeping the top *k*.

    Each library is searched with the same options; every result carries
    the name of the library it came from.
    """
    options = SearchOptions(
        query=query,
        k=k,
        hybrid_alpha=hybrid_alpha,
        content_version=content_version,
        context_before=context_before,
        context_after=context_after,
        rerank=rerank,
    )
    options.validate()
    merged: list[SearchResult] = []
    for entry in libraries:
        path = entry.path if isinstance(entry, LibraryInfo) else entry
        with Library.open(path) as lib:
            name = lib.get_metadata().name
            searcher = lib.searcher(embedder, reranker=reranker, timeout=timeout)
            for result in searcher.search(options):
                result.library = name
                merged.append(result)
    merged.sort(key=lambda r: -r.score)
    return merged[:k]


def format_results(results: list[SearchResult]) -> str:
    """Plain-text rendering of search results with their context chunks."""
    if not results:
        return "No results found."
    lines = [f"Found {len(results)} result(s):\n"]
    for i, r in enumerate(results, 1):
        line_info = ""
        if r.start_line:
            line_info = f":{r.start_line}" + (f"-{r.end_line}" if r.end_line else "")
        library = f" [{r.library}]" if r.library else ""
        lines.append(f"--- Result {i}{library} {r.source_file}{line_info} (score: {r.score:.3f}) ---")
        if r.context_before:
            for c in r.context_before:
                lines.append(f"[context{':' + str(c.start_line) if c.start_line else ''}]")
                lines.append(c.content.strip())
                lines.append("")
            lines.append("--- match ---")
        lines.append(r.content)
        if r.context_after:
            lines.append("--- match ---")
            for c in r.context_after:
                lines.append("")
                lines.append(f"[context{':' + str(c.start_line) if c.start_line else ''}]")
                lines.append(c.content.strip())
        lines.append("")
    return "\n".join(lines)
