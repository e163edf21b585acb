"""
libragen.chunking: turning file contents into chunk records.

Modules
-------
splitter      Paragraph/sentence aware plain-text splitter
ast           AST chunking capability interface and language map
treesitter    tree-sitter implementation of the capability
code_chunker  Adapter mapping AST chunks into libragen chunks
records       Fallback decision point (AST → text) and strategy tagging
"""

from .ast import AstChunk, AstChunker, AstChunkOptions, AstContext, detect_language
from .code_chunker import ChunkOutcome, CodeChunker
from .records import ChunkRecordBuilder, FileChunks
from .splitter import TextSpan, TextSplitter

__all__ = [
    "AstChunk",
    "AstChunker",
    "AstChunkOptions",
    "AstContext",
    "ChunkOutcome",
    "ChunkRecordBuilder",
    "CodeChunker",
    "FileChunks",
    "TextSpan",
    "TextSplitter",
    "detect_language",
]
