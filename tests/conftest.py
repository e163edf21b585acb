"""
Shared fixtures: a deterministic embedder and small library builders.

The hashing embedder maps each lower-cased word to one of ``dims`` buckets
(bag of words), so texts sharing words get a high cosine similarity
without any model download.
"""

from __future__ import annotations

import hashlib
import re

import pytest

from libragen.embedding import Embedder


class HashingEmbedder(Embedder):
    """Bag-of-words embedder for tests; counts calls for assertions."""

    model_name = "test-hashing"

    def __init__(self, dims: int = 256) -> None:
        super().__init__()
        self._dims = dims
        self.batch_calls = 0
        self.load_calls = 0

    @property
    def dimensions(self) -> int:
        return self._dims

    def _load(self) -> None:
        self.load_calls += 1

    def _vector(self, text: str) -> list[float]:
        vec = [0.0] * self._dims
        for word in re.findall(r"\w+", text.lower()):
            bucket = int(hashlib.md5(word.encode("utf-8")).hexdigest(), 16) % self._dims
            vec[bucket] += 1.0
        if not any(vec):
            vec[0] = 1.0
        return vec

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        self.batch_calls += 1
        return [self._vector(t) for t in texts]


@pytest.fixture()
def embedder():
    return HashingEmbedder()


@pytest.fixture()
def make_store(tmp_path, embedder):
    """Return ``make(rows)`` that creates a library from ``(content, source_file[, version])`` rows."""
    from libragen.models import (
        Chunk, ChunkMetadata, ChunkingInfo, EmbeddingInfo, LibraryMetadata, NewChunk,
    )
    from libragen.storage.store import LibraryStore

    stores = []

    def make(rows, name="test-lib"):
        meta = LibraryMetadata(
            name=name,
            version="1.0.0",
            embedding=EmbeddingInfo(embedder.model_name, embedder.dimensions),
            chunking=ChunkingInfo("text", 1000, 100),
        )
        store = LibraryStore.create(str(tmp_path / f"{name}.libragen"), meta)
        new = []
        for row in rows:
            content, source = row[0], row[1]
            version = row[2] if len(row) > 2 else None
            chunk = Chunk(content=content, metadata=ChunkMetadata(source_file=source, start_line=1, end_line=1))
            new.append(NewChunk(chunk, embedder.embed(content), version))
        store.add_chunks(new)
        stores.append(store)
        return store

    yield make
    for s in stores:
        s.close()
