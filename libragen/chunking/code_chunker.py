"""
Semantic chunk adapter.

Wraps an :class:`~libragen.chunking.ast.AstChunker` and maps its output
into libragen :class:`~libragen.models.Chunk` records.  Failures are
reported three ways, for three kinds of caller:

* :meth:`CodeChunker.chunk_text` raises ``UnsupportedFileType`` / ``ParseFailure``;
* :meth:`CodeChunker.try_chunk_text` returns ``None``;
* :meth:`CodeChunker.chunk_outcome` returns a tagged :class:`ChunkOutcome`,
  which is what the record builder consumes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

from ..errors import ParseFailure, UnsupportedFileType
from ..models import Chunk, ChunkMetadata, CodeContext, EntityInfo, ImportInfo, ScopeEntry, SiblingInfo
from .ast import EXTENSION_TO_LANGUAGE, AstChunk, AstChunker, AstChunkOptions, detect_language

logger = logging.getLogger(__name__)

DEFAULT_MAX_CHUNK_SIZE = 1500
DEFAULT_CONTEXT_MODE = "full"
DEFAULT_OVERLAP_LINES = 0

OUTCOME_OK = "ok"
OUTCOME_UNSUPPORTED = "unsupported"
OUTCOME_PARSE_ERROR = "parse_error"


@dataclass
class ChunkOutcome:
    """Result of one AST chunking attempt: ``ok``, ``unsupported`` or ``parse_error``."""
    kind: str
    chunks: list[Chunk] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.kind == OUTCOME_OK


class CodeChunker:
    """
    AST-aware chunker for source-code files.

    Parameters
    ----------
    ast_chunker:
        The capability doing the parsing.  Defaults to
        :class:`~libragen.chunking.treesitter.TreeSitterAstChunker`.
    max_chunk_size:
        Upper bound, in characters, of one chunk's raw text.
    context_mode:
        ``"none"``, ``"minimal"`` or ``"full"``.  With ``"none"`` chunks
        carry no ``code_context`` at all.
    overlap_lines:
        Lines repeated between the pieces of a split oversized definition.
    """

    def __init__(
        self,
        ast_chunker: Optional[AstChunker] = None,
        max_chunk_size: int = DEFAULT_MAX_CHUNK_SIZE,
        context_mode: str = DEFAULT_CONTEXT_MODE,
        overlap_lines: int = DEFAULT_OVERLAP_LINES,
    ) -> None:
        self.options = AstChunkOptions(
            max_chunk_size=max_chunk_size,
            context_mode=context_mode,
            overlap_lines=overlap_lines,
        )
        if ast_chunker is None:
            from .treesitter import TreeSitterAstChunker
            ast_chunker = TreeSitterAstChunker()
        self.ast_chunker = ast_chunker

    @property
    def max_chunk_size(self) -> int:
        return self.options.max_chunk_size

    @property
    def context_mode(self) -> str:
        return self.options.context_mode

    @property
    def overlap_lines(self) -> int:
        return self.options.overlap_lines

    # ------------------------------------------------------------------
    # Language support
    # ------------------------------------------------------------------

    @staticmethod
    def is_supported(file_path: str) -> bool:
        return detect_language(file_path) is not None

    @staticmethod
    def detect_language(file_path: str) -> Optional[str]:
        return detect_language(file_path)

    @staticmethod
    def supported_extensions() -> list[str]:
        return list(EXTENSION_TO_LANGUAGE)

    # ------------------------------------------------------------------
    # Chunking
    # ------------------------------------------------------------------

    def chunk_text(self, content: str, file_path: str) -> list[Chunk]:
        """
        Chunk *content* of *file_path* through the AST capability.

        Raises
        ------
        UnsupportedFileType
            The extension is not in the language map.
        ParseFailure
            The AST capability raised; the original message is kept in
            ``reason`` and the exception is chained.
        """
        language = detect_language(file_path)
        if language is None:
            raise UnsupportedFileType(file_path)
        try:
            raw = self.ast_chunker.chunk(file_path, content, self.options)
        except Exception as exc:
            raise ParseFailure(file_path, str(exc)) from exc
        return [self._map_chunk(c, file_path, language) for c in raw]

    def try_chunk_text(self, content: str, file_path: str) -> Optional[list[Chunk]]:
        try:
            return self.chunk_text(content, file_path)
        except (UnsupportedFileType, ParseFailure):
            return None

    def chunk_outcome(self, content: str, file_path: str) -> ChunkOutcome:
        try:
            chunks = self.chunk_text(content, file_path)
        except UnsupportedFileType as exc:
            return ChunkOutcome(OUTCOME_UNSUPPORTED, error=str(exc))
        except ParseFailure as exc:
            return ChunkOutcome(OUTCOME_PARSE_ERROR, error=exc.reason)
        return ChunkOutcome(OUTCOME_OK, chunks=chunks)

    def chunk_source_files(self, files: Iterable) -> list[Chunk]:
        """
        Chunk every supported file of *files* (objects with ``relative_path``
        and ``content``).  Unsupported or failing files are skipped.
        """
        all_chunks: list[Chunk] = []
        for f in files:
            if not self.is_supported(f.relative_path):
                continue
            chunks = self.try_chunk_text(f.content, f.relative_path)
            if chunks is None:
                logger.debug("Skipping %s: AST chunking failed", f.relative_path)
                continue
            all_chunks.extend(chunks)
        return all_chunks

    # ------------------------------------------------------------------
    # Mapping
    # ------------------------------------------------------------------

    def _map_chunk(self, chunk: AstChunk, file_path: str, language: str) -> Chunk:
        code_context = None
        if self.context_mode != "none":
            ctx = chunk.context
            code_context = CodeContext(
                scope=[ScopeEntry(s.name, s.type, s.signature) for s in ctx.scope],
                entities=[
                    EntityInfo(
                        name=e.name,
                        type=e.type,
                        signature=e.signature,
                        docstring=e.docstring,
                        line_range=e.line_range,
                        is_partial=e.is_partial,
                    )
                    for e in ctx.entities
                ],
                siblings=[
                    SiblingInfo(s.name, s.type, s.position, s.distance)
                    for s in ctx.siblings
                ],
                imports=[
                    ImportInfo(i.name, i.source, i.is_default, i.is_namespace)
                    for i in ctx.imports
                ],
            )
        return Chunk(
            content=chunk.text,
            embedding_content=chunk.contextualized_text,
            metadata=ChunkMetadata(
                source_file=file_path,
                start_line=chunk.line_range[0] + 1,
                end_line=chunk.line_range[1] + 1,
                language=language,
                code_context=code_context,
            ),
        )
