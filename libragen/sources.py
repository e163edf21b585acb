"""
Local source walk: collect the text files a library is built from.
"""

from __future__ import annotations

import fnmatch
import logging
import os
from dataclasses import dataclass
from typing import Iterable, Optional

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Directory / file exclusion rules
# ---------------------------------------------------------------------------

DEFAULT_EXCLUDE_DIRS: frozenset[str] = frozenset({
    "node_modules", "dist", "build", "__pycache__",
    ".git", ".hg", ".svn", "vendor",
    ".venv", "venv", "env",
    ".tox", ".mypy_cache", ".pytest_cache",
    "target",           # Rust/Java build output
    "coverage",
    ".next", ".nuxt",   # JS frameworks
    "out", ".output",
    "eggs", ".eggs",
    ".cache",
})

DEFAULT_EXCLUDE_FILES: tuple[str, ...] = (
    "*.libragen", "*.libragen.lock", "*.lock", "*.min.js", "*.map",
    "*.png", "*.jpg", "*.jpeg", "*.gif", "*.ico", "*.pdf", "*.zip",
    "*.gz", "*.tar", "*.woff", "*.woff2", "*.ttf", "*.so", "*.dll",
    "*.exe", "*.pyc", "*.class", "*.jar",
)

MAX_FILE_SIZE = 5 * 1024 * 1024
_BINARY_SNIFF = 8192


@dataclass
class SourceFile:
    """A text file to be chunked; *relative_path* uses forward slashes."""
    path: str
    relative_path: str
    content: str


def _matches(rel_path: str, patterns: Iterable[str]) -> bool:
    name = rel_path.rsplit("/", 1)[-1]
    for pattern in patterns:
        if fnmatch.fnmatch(name, pattern) or fnmatch.fnmatch(rel_path, pattern):
            return True
    return False


def _read_text(path: str) -> Optional[str]:
    """Return the file's text, or None for binary / undecodable / unreadable files."""
    try:
        with open(path, "rb") as fh:
            raw = fh.read()
    except OSError as exc:
        logger.warning("Cannot read %s: %s", path, exc)
        return None
    if b"\x00" in raw[:_BINARY_SNIFF]:
        return None
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        return None


def collect_source_files(
    root: str,
    include: Optional[list[str]] = None,
    exclude: Optional[list[str]] = None,
    default_excludes: bool = True,
    max_file_size: int = MAX_FILE_SIZE,
) -> list[SourceFile]:
    """
    Walk *root* (a directory or a single file) and return its text files.

    Parameters
    ----------
    root:
        Directory to walk, or one file.
    include:
        Glob patterns; when given, only matching files are kept.
    exclude:
        Glob patterns added to the default exclusions.
    default_excludes:
        Skip VCS, dependency and build-output directories plus known
        binary extensions.
    max_file_size:
        Larger files are skipped.

    Returns
    -------
    list[SourceFile]
        Sorted by relative path, so builds are deterministic.
    """
    root = os.path.abspath(root)
    if os.path.isfile(root):
        content = _read_text(root)
        name = os.path.basename(root)
        return [SourceFile(root, name, content)] if content is not None else []
    if not os.path.isdir(root):
        raise FileNotFoundError(f"Source not found: {root}")

    exclude_patterns = list(exclude or [])
    if default_excludes:
        exclude_patterns.extend(DEFAULT_EXCLUDE_FILES)

    results: list[SourceFile] = []
    for dirpath, dirnames, filenames in os.walk(root, topdown=True):
        # Prune excluded directories in-place (modifies the walk)
        dirnames[:] = sorted(
            d for d in dirnames
            if not (default_excludes and d in DEFAULT_EXCLUDE_DIRS)
            and not _matches(
                os.path.relpath(os.path.join(dirpath, d), root).replace(os.sep, "/"),
                exclude or [],
            )
        )
        for fname in filenames:
            abs_path = os.path.join(dirpath, fname)
            rel_path = os.path.relpath(abs_path, root).replace(os.sep, "/")
            if exclude_patterns and _matches(rel_path, exclude_patterns):
                continue
            if include and not _matches(rel_path, include):
                continue
            try:
                if os.path.getsize(abs_path) > max_file_size:
                    logger.debug("Skipping %s: larger than %d bytes", rel_path, max_file_size)
                    continue
            except OSError:
                continue
            content = _read_text(abs_path)
            if content is None:
                logger.debug("Skipping %s: binary or not UTF-8", rel_path)
                continue
            results.append(SourceFile(abs_path, rel_path, content))

    results.sort(key=lambda f: f.relative_path)
    return results
