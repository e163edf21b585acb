"""
Data classes shared by the chunking, storage and search layers.

The ``to_dict`` / ``from_dict`` helpers produce the camelCase JSON shape
that is persisted inside library files, so files stay readable by every
implementation of the format.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional


# ---------------------------------------------------------------------------
# Code context
# ---------------------------------------------------------------------------

@dataclass
class ScopeEntry:
    """One enclosing scope of a chunk (outermost first)."""
    name: str
    type: str
    signature: str = ""


@dataclass
class EntityInfo:
    """An entity (function, class, method…) defined inside a chunk."""
    name: str
    type: str
    signature: str = ""
    docstring: Optional[str] = None
    line_range: Optional[tuple[int, int]] = None
    is_partial: bool = False


@dataclass
class SiblingInfo:
    """An entity next to the chunk's entity at the same nesting level."""
    name: str
    type: str
    position: str       # "before" | "after"
    distance: int


@dataclass
class ImportInfo:
    """A single imported name of the file the chunk belongs to."""
    name: str
    source: str
    is_default: bool = False
    is_namespace: bool = False


@dataclass
class CodeContext:
    """
    Semantic annotations of an AST-derived chunk.

    Purely descriptive: nothing in the storage layer keys on these values.
    """

    scope: list[ScopeEntry] = field(default_factory=list)
    entities: list[EntityInfo] = field(default_factory=list)
    siblings: list[SiblingInfo] = field(default_factory=list)
    imports: list[ImportInfo] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.scope or self.entities or self.siblings or self.imports)

    def to_dict(self) -> dict:
        entities = []
        for e in self.entities:
            item: dict[str, Any] = {
                "name": e.name,
                "type": e.type,
                "signature": e.signature,
                "isPartial": e.is_partial,
            }
            if e.docstring is not None:
                item["docstring"] = e.docstring
            if e.line_range is not None:
                item["lineRange"] = {"start": e.line_range[0], "end": e.line_range[1]}
            entities.append(item)
        return {
            "scope": [
                {"name": s.name, "type": s.type, "signature": s.signature}
                for s in self.scope
            ],
            "entities": entities,
            "siblings": [
                {
                    "name": s.name,
                    "type": s.type,
                    "position": s.position,
                    "distance": s.distance,
                }
                for s in self.siblings
            ],
            "imports": [
                {
                    "name": i.name,
                    "source": i.source,
                    "isDefault": i.is_default,
                    "isNamespace": i.is_namespace,
                }
                for i in self.imports
            ],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CodeContext":
        entities = []
        for e in data.get("entities", []):
            lr = e.get("lineRange")
            entities.append(EntityInfo(
                name=e.get("name", ""),
                type=e.get("type", ""),
                signature=e.get("signature", ""),
                docstring=e.get("docstring"),
                line_range=(lr["start"], lr["end"]) if lr else None,
                is_partial=bool(e.get("isPartial", False)),
            ))
        return cls(
            scope=[
                ScopeEntry(s.get("name", ""), s.get("type", ""), s.get("signature", ""))
                for s in data.get("scope", [])
            ],
            entities=entities,
            siblings=[
                SiblingInfo(
                    s.get("name", ""), s.get("type", ""),
                    s.get("position", ""), int(s.get("distance", 0)),
                )
                for s in data.get("siblings", [])
            ],
            imports=[
                ImportInfo(
                    i.get("name", ""), i.get("source", ""),
                    bool(i.get("isDefault", False)), bool(i.get("isNamespace", False)),
                )
                for i in data.get("imports", [])
            ],
        )


# ---------------------------------------------------------------------------
# Chunks
# ---------------------------------------------------------------------------

@dataclass
class ChunkMetadata:
    """Positional and semantic metadata of a chunk (lines are 1-indexed)."""
    source_file: str
    start_line: Optional[int] = None
    end_line: Optional[int] = None
    language: Optional[str] = None
    code_context: Optional[CodeContext] = None


@dataclass
class Chunk:
    """
    A retrievable unit produced by one of the chunkers.

    Attributes
    ----------
    content:
        Raw text as it appeared in the source, used for display.
    metadata:
        Where the chunk came from.
    embedding_content:
        Text fed to the embedder.  ``None`` means "use *content*", which is
        the case for every plain-text chunk.
    """

    content: str
    metadata: ChunkMetadata
    embedding_content: Optional[str] = None

    @property
    def text_for_embedding(self) -> str:
        return self.embedding_content or self.content


@dataclass
class NewChunk:
    """A chunk paired with its embedding, ready for :meth:`LibraryStore.add_chunks`."""
    chunk: Chunk
    embedding: list[float]
    content_version: Optional[str] = None


@dataclass
class StoredChunk:
    """A chunk as read back from a library file."""
    id: int
    content: str
    source_file: str
    embedding_content: Optional[str] = None
    start_line: Optional[int] = None
    end_line: Optional[int] = None
    language: Optional[str] = None
    content_version: Optional[str] = None
    code_context: Optional[CodeContext] = None
    embedding: Optional[list[float]] = None

    def to_dict(self) -> dict:
        data: dict[str, Any] = {
            "id": self.id,
            "content": self.content,
            "sourceFile": self.source_file,
        }
        if self.start_line is not None:
            data["startLine"] = self.start_line
        if self.end_line is not None:
            data["endLine"] = self.end_line
        if self.language:
            data["language"] = self.language
        if self.content_version:
            data["contentVersion"] = self.content_version
        return data


# ---------------------------------------------------------------------------
# Library metadata
# ---------------------------------------------------------------------------

@dataclass
class EmbeddingInfo:
    model: str
    dimensions: int


@dataclass
class ChunkingInfo:
    strategy: str           # "text" | "ast"
    chunk_size: int
    chunk_overlap: int


@dataclass
class LibraryStats:
    chunk_count: int = 0
    source_count: int = 0
    file_size: int = 0


@dataclass
class LibraryMetadata:
    """The single metadata record of a library file."""

    name: str
    version: str
    embedding: EmbeddingInfo
    chunking: ChunkingInfo
    schema_version: int = 0
    created_at: str = ""
    description: Optional[str] = None
    content_version: Optional[str] = None
    stats: LibraryStats = field(default_factory=LibraryStats)
    source: Optional[dict] = None
    license: Optional[list[str]] = None
    content_hash: Optional[str] = None
    agent_description: Optional[str] = None
    keywords: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        data: dict[str, Any] = {
            "name": self.name,
            "version": self.version,
            "schemaVersion": self.schema_version,
            "createdAt": self.created_at,
            "embedding": {
                "model": self.embedding.model,
                "dimensions": self.embedding.dimensions,
            },
            "chunking": {
                "strategy": self.chunking.strategy,
                "chunkSize": self.chunking.chunk_size,
                "chunkOverlap": self.chunking.chunk_overlap,
            },
            "stats": {
                "chunkCount": self.stats.chunk_count,
                "sourceCount": self.stats.source_count,
                "fileSize": self.stats.file_size,
            },
        }
        optional = {
            "description": self.description,
            "contentVersion": self.content_version,
            "source": self.source,
            "license": self.license,
            "contentHash": self.content_hash,
            "agentDescription": self.agent_description,
        }
        data.update({k: v for k, v in optional.items() if v is not None})
        if self.keywords:
            data["keywords"] = list(self.keywords)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "LibraryMetadata":
        emb = data.get("embedding") or {}
        chunking = data.get("chunking") or {}
        stats = data.get("stats") or {}
        return cls(
            name=data.get("name", ""),
            version=data.get("version", ""),
            schema_version=int(data.get("schemaVersion", 0)),
            created_at=data.get("createdAt", ""),
            embedding=EmbeddingInfo(
                model=emb.get("model", ""),
                dimensions=int(emb.get("dimensions", 0)),
            ),
            chunking=ChunkingInfo(
                strategy=chunking.get("strategy", "text"),
                chunk_size=int(chunking.get("chunkSize", 0)),
                chunk_overlap=int(chunking.get("chunkOverlap", 0)),
            ),
            stats=LibraryStats(
                chunk_count=int(stats.get("chunkCount", 0)),
                source_count=int(stats.get("sourceCount", 0)),
                file_size=int(stats.get("fileSize", 0)),
            ),
            description=data.get("description"),
            content_version=data.get("contentVersion"),
            source=data.get("source"),
            license=data.get("license"),
            content_hash=data.get("contentHash"),
            agent_description=data.get("agentDescription"),
            keywords=list(data.get("keywords") or []),
        )


# ---------------------------------------------------------------------------
# Search results
# ---------------------------------------------------------------------------

@dataclass
class SearchResult:
    """
    A single hybrid-search hit.

    Attributes
    ----------
    score:
        Fused score in ``[0, 1]``, or the reranker's score when reranking
        was requested.
    vector_score / lexical_score:
        The normalized per-signal scores that went into the fusion
        (``0.0`` when the chunk was missing from that candidate set).
    context_before / context_after:
        Neighbouring chunks of the same source file, in document order.
    """

    id: int
    content: str
    score: float
    source_file: str
    start_line: Optional[int] = None
    end_line: Optional[int] = None
    language: Optional[str] = None
    content_version: Optional[str] = None
    vector_score: float = 0.0
    lexical_score: float = 0.0
    context_before: list[StoredChunk] = field(default_factory=list)
    context_after: list[StoredChunk] = field(default_factory=list)
    library: Optional[str] = None

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "content": self.content,
            "score": self.score,
            "sourceFile": self.source_file,
            "startLine": self.start_line,
            "endLine": self.end_line,
            "language": self.language,
            "contentVersion": self.content_version,
        }
        if self.library:
            data["library"] = self.library
        if self.context_before:
            data["contextBefore"] = [c.to_dict() for c in self.context_before]
        if self.context_after:
            data["contextAfter"] = [c.to_dict() for c in self.context_after]
        return data
