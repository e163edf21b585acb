"""
libragen: portable, hybrid-searchable retrieval libraries.

Public API for library usage::

    from libragen import Builder, BuildOptions, OllamaEmbedder, Library

    embedder = OllamaEmbedder()
    result = Builder(embedder).build("./docs", BuildOptions(name="my-docs"))

    with Library.open(result.output_path) as lib:
        for hit in lib.searcher(embedder).search(query="authentication", k=3):
            print(hit.source_file, hit.score)
"""

from .builder import Builder, BuildOptions, BuildProgress, BuildResult
from .config import Config, configure_logging
from .embedding import Embedder, OllamaEmbedder, OpenAIEmbedder, SentenceTransformerEmbedder
from .errors import (
    AlreadyExists,
    AlreadyLocked,
    BuildCancelled,
    ConfigurationError,
    CorruptionError,
    EmbedderError,
    LibragenError,
    MigrationRequiredError,
    ParseFailure,
    RerankerError,
    SchemaVersionError,
    StorageError,
    StoreClosedError,
    UnsupportedFileType,
)
from .library import Library, LibraryInfo, LibraryManager, format_results, inspect_library, search_libraries
from .models import Chunk, ChunkMetadata, CodeContext, LibraryMetadata, SearchResult, StoredChunk
from .reranker import CrossEncoderReranker, Reranker
from .searcher import SearchOptions, Searcher
from .storage import CURRENT_SCHEMA_VERSION, LibraryStore, MigrationRunner, migrate_if_needed
from .tasks import BuildTask, TaskManager

__version__ = "0.3.0"

__all__ = [
    "AlreadyExists",
    "AlreadyLocked",
    "BuildCancelled",
    "BuildOptions",
    "BuildProgress",
    "BuildResult",
    "BuildTask",
    "Builder",
    "CURRENT_SCHEMA_VERSION",
    "Chunk",
    "ChunkMetadata",
    "CodeContext",
    "Config",
    "ConfigurationError",
    "CorruptionError",
    "CrossEncoderReranker",
    "Embedder",
    "EmbedderError",
    "Library",
    "LibraryInfo",
    "LibraryManager",
    "LibraryMetadata",
    "LibraryStore",
    "LibragenError",
    "MigrationRequiredError",
    "MigrationRunner",
    "OllamaEmbedder",
    "OpenAIEmbedder",
    "ParseFailure",
    "Reranker",
    "RerankerError",
    "SchemaVersionError",
    "SearchOptions",
    "SearchResult",
    "Searcher",
    "SentenceTransformerEmbedder",
    "StorageError",
    "StoreClosedError",
    "StoredChunk",
    "TaskManager",
    "UnsupportedFileType",
    "configure_logging",
    "format_results",
    "inspect_library",
    "migrate_if_needed",
    "search_libraries",
]
