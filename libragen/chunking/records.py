"""
Chunk record builder: the single place where the AST/text fallback is decided.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

from ..models import Chunk
from .code_chunker import OUTCOME_OK, OUTCOME_PARSE_ERROR, CodeChunker
from .splitter import TextSplitter

logger = logging.getLogger(__name__)

STRATEGY_TEXT = "text"
STRATEGY_AST = "ast"


@dataclass
class FileChunks:
    """Chunks of one file plus the path that produced them."""
    source_file: str
    chunks: list[Chunk] = field(default_factory=list)
    strategy: str = STRATEGY_TEXT
    warning: Optional[str] = None


class ChunkRecordBuilder:
    """
    Turn file contents into uniform chunk records.

    Parameters
    ----------
    splitter:
        Plain-text splitter used for non-code files and as the fallback.
    code_chunker:
        AST adapter.  Only constructed on first use when *use_ast* is true
        and none is given, so text-only builds never import tree-sitter.
    use_ast:
        ``False`` forces every file through *splitter*.
    context_mode:
        Forwarded to a lazily created :class:`CodeChunker`; ``"none"``
        also strips ``code_context`` from any chunk produced here.
    """

    def __init__(
        self,
        splitter: TextSplitter,
        code_chunker: Optional[CodeChunker] = None,
        use_ast: bool = True,
        context_mode: str = "full",
        max_ast_chunk_size: int = 1500,
    ) -> None:
        self.splitter = splitter
        self.use_ast = use_ast
        self.context_mode = context_mode
        self.max_ast_chunk_size = max_ast_chunk_size
        self._code_chunker = code_chunker

    @property
    def code_chunker(self) -> CodeChunker:
        if self._code_chunker is None:
            self._code_chunker = CodeChunker(
                max_chunk_size=self.max_ast_chunk_size,
                context_mode=self.context_mode,
            )
        return self._code_chunker

    def build(self, content: str, source_file: str) -> FileChunks:
        if self.use_ast and CodeChunker.is_supported(source_file):
            outcome = self.code_chunker.chunk_outcome(content, source_file)
            if outcome.kind == OUTCOME_OK:
                chunks = outcome.chunks
                if self.context_mode == "none":
                    for c in chunks:
                        c.metadata.code_context = None
                return FileChunks(source_file, chunks, STRATEGY_AST)
            if outcome.kind == OUTCOME_PARSE_ERROR:
                warning = f"{source_file}: AST chunking failed ({outcome.error}); used text chunking"
                logger.warning("%s", warning)
                return FileChunks(
                    source_file,
                    self._text_chunks(content, source_file),
                    STRATEGY_TEXT,
                    warning,
                )
        return FileChunks(source_file, self._text_chunks(content, source_file), STRATEGY_TEXT)

    def _text_chunks(self, content: str, source_file: str) -> list[Chunk]:
        chunks = self.splitter.chunk_text(content, source_file)
        language = CodeChunker.detect_language(source_file)
        if language:
            for c in chunks:
                c.metadata.language = language
        return chunks

    @staticmethod
    def library_strategy(strategies: Iterable[str]) -> str:
        """``"ast"`` when any file went through the AST path, else ``"text"``."""
        return STRATEGY_AST if STRATEGY_AST in set(strategies) else STRATEGY_TEXT
