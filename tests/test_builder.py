"""
Tests for libragen.builder: the chunk → embed → commit pipeline.
"""

from __future__ import annotations

import os
import threading

import pytest

from conftest import HashingEmbedder


PY_SOURCE = '''import os


class Store:
    """Key/value store."""

    def get(self, key):
        return os.environ.get(key)

    def put(self, key, value):
        os.environ[key] = value


def helper():
    return 1
'''


def _docs(root):
    (root / "docs").mkdir()
    (root / "docs" / "paris.txt").write_text("Paris is the capital of France.", encoding="utf-8")
    (root / "docs" / "tokyo.txt").write_text("Tokyo is the capital of Japan.", encoding="utf-8")
    return str(root / "docs")


def _options(tmp_path, **kwargs):
    from libragen.builder import BuildOptions
    kwargs.setdefault("name", "test-lib")
    kwargs.setdefault("output", str(tmp_path / "out" / "test-lib.libragen"))
    return BuildOptions(**kwargs)


class FailingEmbedder(HashingEmbedder):
    def embed_batch(self, texts):
        raise RuntimeError("model exploded")


class ShortEmbedder(HashingEmbedder):
    def embed_batch(self, texts):
        return super().embed_batch(texts)[:-1]


class NoneEmbedder(HashingEmbedder):
    def embed_batch(self, texts):
        return None


# ---------------------------------------------------------------------------
# End to end
# ---------------------------------------------------------------------------

class TestBuild:

    def test_build_then_search(self, tmp_path, embedder):
        from libragen.builder import Builder
        from libragen.library import Library
        src = _docs(tmp_path)
        result = Builder(embedder).build(src, _options(tmp_path, description="capitals"))

        assert os.path.exists(result.output_path)
        assert not os.path.exists(result.output_path + ".building")
        assert result.chunk_count == 2
        assert result.source_count == 2
        assert result.file_size == os.path.getsize(result.output_path)
        assert result.warnings == []

        with Library.open(result.output_path) as lib:
            meta = lib.get_metadata()
            assert meta.name == "test-lib"
            assert meta.description == "capitals"
            assert meta.embedding.model == "test-hashing"
            assert meta.embedding.dimensions == 256
            assert meta.content_hash.startswith("sha256:")
            assert meta.source == {"type": "local", "path": src}
            assert meta.stats.chunk_count == 2
            hits = lib.searcher(embedder).search(query="What is the capital of Japan?", k=1)
            assert "Tokyo" in hits[0].content

    def test_single_file_source(self, tmp_path, embedder):
        from libragen.builder import Builder
        path = tmp_path / "notes.md"
        path.write_text("# Notes\n\nSome notes about retries.", encoding="utf-8")
        result = Builder(embedder).build(str(path), _options(tmp_path))
        assert result.chunk_count == 1

    def test_default_name_and_output(self, tmp_path, embedder, monkeypatch):
        from libragen.builder import Builder, BuildOptions
        src = _docs(tmp_path)
        monkeypatch.chdir(tmp_path)
        result = Builder(embedder).build(src, BuildOptions(version="2.0.0"))
        assert os.path.realpath(result.output_path) == os.path.realpath(tmp_path / "docs-2.0.0.libragen")
        assert result.metadata.name == "docs"

    def test_list_source_requires_name(self, tmp_path, embedder):
        from libragen.builder import Builder, BuildOptions
        from libragen.errors import ConfigurationError
        from libragen.sources import SourceFile
        files = [SourceFile("/x/a.txt", "a.txt", "hello")]
        with pytest.raises(ConfigurationError):
            Builder(embedder).build(files, BuildOptions(output=str(tmp_path / "x.libragen")))

    def test_ids_follow_document_order_across_batches(self, tmp_path, embedder):
        from libragen.builder import Builder
        from libragen.sources import SourceFile
        from libragen.storage.store import LibraryStore
        files = [
            SourceFile(f"/src/f{n}.txt", f"f{n}.txt",
                       " ".join(f"word{n}x{i}" for i in range(60)))
            for n in range(5)
        ]
        options = _options(tmp_path, chunk_size=80, chunk_overlap=10, batch_size=3, workers=4, queue_size=2)
        result = Builder(embedder).build(files, options)
        with LibraryStore.open(result.output_path, read_only=True) as store:
            assert store.count() == result.chunk_count
            rows = [store.get_chunk(i) for i in range(1, result.chunk_count + 1)]
        order = [r.source_file for r in rows]
        assert order == sorted(order)
        for name in {r.source_file for r in rows}:
            ids = [r.id for r in rows if r.source_file == name]
            assert ids == list(range(ids[0], ids[0] + len(ids)))
            lines = [r.start_line for r in rows if r.source_file == name]
            assert lines == sorted(lines)

    def test_content_version_tag(self, tmp_path, embedder):
        from libragen.builder import Builder
        from libragen.storage.store import LibraryStore
        result = Builder(embedder).build(_docs(tmp_path), _options(tmp_path, content_version="3.1"))
        with LibraryStore.open(result.output_path, read_only=True) as store:
            assert store.get_chunk(1).content_version == "3.1"
            assert result.metadata.content_version == "3.1"

    def test_progress_phases(self, tmp_path, embedder):
        from libragen.builder import (
            PHASE_CHUNKING, PHASE_COMPLETE, PHASE_CREATING_DATABASE, PHASE_EMBEDDING, Builder,
        )
        seen = []
        Builder(embedder).build(_docs(tmp_path), _options(tmp_path), progress=seen.append)
        phases = [p.phase for p in seen]
        assert phases[0] == PHASE_CHUNKING
        assert PHASE_EMBEDDING in phases
        assert PHASE_CREATING_DATABASE in phases
        assert phases[-1] == PHASE_COMPLETE

    def test_failing_progress_callback_does_not_break_build(self, tmp_path, embedder):
        from libragen.builder import Builder

        def callback(progress):
            raise ValueError("ui gone")

        result = Builder(embedder).build(_docs(tmp_path), _options(tmp_path), progress=callback)
        assert result.chunk_count == 2


# ---------------------------------------------------------------------------
# Code files
# ---------------------------------------------------------------------------

class TestCodeBuild:

    def test_method_chunk_records_class_scope(self, tmp_path, embedder):
        from libragen.builder import Builder
        from libragen.storage.store import LibraryStore
        (tmp_path / "src").mkdir()
        (tmp_path / "src" / "store.py").write_text(PY_SOURCE, encoding="utf-8")
        result = Builder(embedder).build(str(tmp_path / "src"), _options(tmp_path))
        assert result.metadata.chunking.strategy == "ast"
        with LibraryStore.open(result.output_path, read_only=True) as store:
            chunks = [store.get_chunk(i) for i in range(1, store.count() + 1)]
        get = next(c for c in chunks if "def get" in c.content)
        assert [s.name for s in get.code_context.scope] == ["Store"]
        assert get.language == "python"
        assert get.embedding_content.startswith("# store.py")

    def test_context_mode_none_keeps_code_context_out(self, tmp_path, embedder):
        from libragen.builder import Builder
        from libragen.storage.store import LibraryStore
        (tmp_path / "src").mkdir()
        (tmp_path / "src" / "store.py").write_text(PY_SOURCE, encoding="utf-8")
        result = Builder(embedder).build(str(tmp_path / "src"), _options(tmp_path, context_mode="none"))
        with LibraryStore.open(result.output_path, read_only=True) as store:
            for i in range(1, store.count() + 1):
                assert store.get_chunk(i).code_context is None

    def test_no_ast_chunking(self, tmp_path, embedder):
        from libragen.builder import Builder
        (tmp_path / "src").mkdir()
        (tmp_path / "src" / "store.py").write_text(PY_SOURCE, encoding="utf-8")
        result = Builder(embedder).build(str(tmp_path / "src"), _options(tmp_path, no_ast_chunking=True))
        assert result.metadata.chunking.strategy == "text"


# ---------------------------------------------------------------------------
# Failure modes
# ---------------------------------------------------------------------------

class TestBuildFailures:

    def test_invalid_options_touch_nothing(self, tmp_path, embedder):
        from libragen.builder import Builder
        from libragen.errors import ConfigurationError
        options = _options(tmp_path, chunk_size=100, chunk_overlap=100)
        with pytest.raises(ConfigurationError):
            Builder(embedder).build(_docs(tmp_path), options)
        assert not os.path.exists(tmp_path / "out")
        assert embedder.load_calls == 0

    @pytest.mark.parametrize("kwargs", [
        {"context_mode": "verbose"},
        {"workers": 0},
        {"batch_size": 0},
        {"embedder_timeout": 0},
        {"name": "  "},
    ])
    def test_option_validation(self, kwargs):
        from libragen.builder import BuildOptions
        from libragen.errors import ConfigurationError
        with pytest.raises(ConfigurationError):
            BuildOptions(**kwargs).validate()

    def test_existing_output_requires_overwrite(self, tmp_path, embedder):
        from libragen.builder import Builder
        from libragen.errors import AlreadyExists
        src = _docs(tmp_path)
        Builder(embedder).build(src, _options(tmp_path))
        with pytest.raises(AlreadyExists):
            Builder(embedder).build(src, _options(tmp_path))
        again = Builder(embedder).build(src, _options(tmp_path, overwrite=True))
        assert again.chunk_count == 2

    def test_concurrent_build_is_locked_out(self, tmp_path, embedder):
        from libragen.builder import Builder
        from libragen.errors import AlreadyLocked
        from libragen.locking import LibraryLock
        options = _options(tmp_path)
        with LibraryLock(options.output):
            with pytest.raises(AlreadyLocked):
                Builder(embedder).build(_docs(tmp_path), options)
        assert not os.path.exists(options.output)

    def test_cancelled_build_leaves_no_output(self, tmp_path, embedder):
        from libragen.builder import Builder
        from libragen.errors import BuildCancelled
        options = _options(tmp_path)
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(BuildCancelled):
            Builder(embedder).build(_docs(tmp_path), options, cancel_event=cancel)
        assert not os.path.exists(options.output)
        assert not os.path.exists(options.output + ".building")

    def test_cancel_keeps_previous_library(self, tmp_path, embedder):
        from libragen.builder import Builder
        from libragen.errors import BuildCancelled
        src = _docs(tmp_path)
        first = Builder(embedder).build(src, _options(tmp_path))
        before = os.path.getsize(first.output_path)
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(BuildCancelled):
            Builder(embedder).build(src, _options(tmp_path, overwrite=True), cancel_event=cancel)
        assert os.path.getsize(first.output_path) == before

    def test_embedder_failure_leaves_no_output(self, tmp_path):
        from libragen.builder import Builder
        from libragen.errors import EmbedderError
        options = _options(tmp_path)
        with pytest.raises(EmbedderError, match="model exploded"):
            Builder(FailingEmbedder()).build(_docs(tmp_path), options)
        assert not os.path.exists(options.output)
        assert not os.path.exists(options.output + ".building")

    def test_vector_count_mismatch(self, tmp_path):
        from libragen.builder import Builder
        from libragen.errors import EmbedderError
        with pytest.raises(EmbedderError):
            Builder(ShortEmbedder()).build(_docs(tmp_path), _options(tmp_path))

    def test_missing_vectors_fail_instead_of_hanging(self, tmp_path):
        from libragen.builder import Builder
        from libragen.errors import EmbedderError
        options = _options(tmp_path)
        outcome = {}

        def run():
            try:
                Builder(NoneEmbedder()).build(_docs(tmp_path), options)
            except EmbedderError as exc:
                outcome["error"] = exc

        t = threading.Thread(target=run, daemon=True)
        t.start()
        t.join(timeout=10)
        assert not t.is_alive(), "build did not finish"
        assert "no vectors" in str(outcome["error"])
        assert not os.path.exists(options.output + ".building")

    def test_writer_fails_when_workers_are_gone(self, make_store):
        import hashlib
        import queue

        from libragen.builder import Builder, BuildOptions, _ProducerState
        from libragen.errors import EmbedderError
        store = make_store([])
        dead = threading.Thread(target=lambda: None)
        dead.start()
        dead.join()
        stop = threading.Event()
        with pytest.raises(EmbedderError, match="workers exited"):
            Builder._write(
                store, queue.Queue(), _ProducerState(), stop, threading.Event(),
                hashlib.sha256(), lambda progress: None, BuildOptions(), [dead],
            )
        assert stop.is_set()

    def test_empty_source_directory(self, tmp_path, embedder):
        from libragen.builder import Builder
        from libragen.errors import LibragenError
        (tmp_path / "empty").mkdir()
        with pytest.raises(LibragenError):
            Builder(embedder).build(str(tmp_path / "empty"), _options(tmp_path))


# ---------------------------------------------------------------------------
# Estimates / config
# ---------------------------------------------------------------------------

def test_estimate_build():
    from libragen.builder import BuildOptions, estimate_build
    from libragen.sources import SourceFile
    files = [SourceFile("/a", "a.txt", "word " * 500), SourceFile("/b", "b.txt", "short")]
    est = estimate_build(files, BuildOptions(chunk_size=500, chunk_overlap=50))
    assert est["files"] == 2
    assert est["chunks"] >= 6
    assert est["estimated_seconds"] > 0
    assert est["formatted_time"]


def test_options_from_config(monkeypatch):
    from libragen.builder import BuildOptions
    from libragen.config import Config
    monkeypatch.setenv("LIBRAGEN_CHUNK_SIZE", "512")
    monkeypatch.setenv("LIBRAGEN_AST_CHUNKING", "false")
    options = BuildOptions.from_config(Config(), name="x", chunk_overlap=64)
    assert options.chunk_size == 512
    assert options.chunk_overlap == 64
    assert options.no_ast_chunking is True
    assert options.name == "x"
