"""
Interface of the AST chunking capability.

An :class:`AstChunker` turns the text of one source file into ordered
chunks, each carrying a contextualized rendering and semantic annotations.
Line ranges are 0-indexed here; :class:`~libragen.chunking.code_chunker.CodeChunker`
converts them to the 1-indexed convention used everywhere else.
"""

from __future__ import annotations

import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

from ..errors import ConfigurationError
from ..models import EntityInfo, ImportInfo, ScopeEntry, SiblingInfo

CONTEXT_MODES = ("none", "minimal", "full")

# ---------------------------------------------------------------------------
# Language mapping
# ---------------------------------------------------------------------------

EXTENSION_TO_LANGUAGE: dict[str, str] = {
    ".ts": "typescript",
    ".tsx": "typescript",
    ".mts": "typescript",
    ".cts": "typescript",
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".py": "python",
    ".pyi": "python",
    ".rs": "rust",
    ".go": "go",
    ".java": "java",
}


def detect_language(file_path: str) -> Optional[str]:
    """
    Return the language name for *file_path*, or None if unsupported.

    Parameters
    ----------
    file_path:
        Any file path; only the extension is examined (case-insensitive).
    """
    ext = os.path.splitext(file_path)[1].lower()
    return EXTENSION_TO_LANGUAGE.get(ext)


# ---------------------------------------------------------------------------
# Capability types
# ---------------------------------------------------------------------------


@dataclass
class AstChunkOptions:
    """Knobs forwarded verbatim to the AST capability."""
    max_chunk_size: int = 1500
    context_mode: str = "full"
    overlap_lines: int = 0

    def __post_init__(self) -> None:
        if self.context_mode not in CONTEXT_MODES:
            raise ConfigurationError(
                f"context_mode must be one of {CONTEXT_MODES}, got {self.context_mode!r}"
            )
        if self.max_chunk_size <= 0:
            raise ConfigurationError("max_chunk_size must be positive")
        if self.overlap_lines < 0:
            raise ConfigurationError("overlap_lines must be >= 0")


@dataclass
class AstContext:
    scope: list[ScopeEntry] = field(default_factory=list)
    entities: list[EntityInfo] = field(default_factory=list)
    siblings: list[SiblingInfo] = field(default_factory=list)
    imports: list[ImportInfo] = field(default_factory=list)


@dataclass
class AstChunk:
    """One chunk as produced by the capability (0-indexed, inclusive lines)."""
    text: str
    contextualized_text: str
    line_range: tuple[int, int]
    context: AstContext = field(default_factory=AstContext)


class AstChunker(ABC):
    """Pluggable source-code chunker."""

    @abstractmethod
    def chunk(self, file_path: str, content: str, options: AstChunkOptions) -> list[AstChunk]:
        """
        Chunk *content* (the text of *file_path*).

        Implementations raise freely on failure; the caller wraps any
        exception into :class:`~libragen.errors.ParseFailure`.
        """
