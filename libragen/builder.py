"""
Build pipeline: source files -> chunks -> embeddings -> one library file.

Stages
------
1. A producer thread chunks the files (in path order) and cuts the chunk
   stream into numbered batches.
2. Batches travel through a bounded :class:`queue.Queue` to a fixed pool of
   embedding worker threads, so chunking never runs far ahead of embedding.
3. The calling thread is the single writer: it commits embedded batches in
   sequence order, which keeps chunk ids in document order per file.

The library is written to a temporary sibling file and moved over the
output path only after the last commit.  A :class:`~libragen.locking.LibraryLock`
on the output path is held for the whole build.
"""

from __future__ import annotations

import concurrent.futures
import hashlib
import logging
import os
import queue
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Callable, Optional, Union

from .chunking.records import ChunkRecordBuilder
from .chunking.splitter import TextSplitter
from .config import Config
from .embedding import Embedder, call_with_timeout
from .errors import (
    AlreadyExists,
    BuildCancelled,
    ConfigurationError,
    EmbedderError,
    LibragenError,
)
from .locking import LibraryLock
from .models import (
    Chunk,
    ChunkingInfo,
    EmbeddingInfo,
    LibraryMetadata,
    NewChunk,
)
from .sources import SourceFile, collect_source_files
from .storage.store import LibraryStore
from .time_estimate import estimate_embedding_time, format_bytes, format_duration

logger = logging.getLogger(__name__)

LIBRARY_EXTENSION = ".libragen"

PHASE_CHUNKING = "chunking"
PHASE_EMBEDDING = "embedding"
PHASE_CREATING_DATABASE = "creating-database"
PHASE_COMPLETE = "complete"

_POLL_INTERVAL = 0.1


# ---------------------------------------------------------------------------
# Options / results
# ---------------------------------------------------------------------------

@dataclass
class BuildOptions:
    """
    Options of one build.

    ``chunk_size``, ``chunk_overlap``, ``no_ast_chunking`` and
    ``context_mode`` control chunking; ``context_mode="none"`` also keeps
    ``code_context`` out of the file.  ``output`` defaults to
    ``<name>-<version>.libragen`` in the current directory.
    """

    name: Optional[str] = None
    version: str = "0.1.0"
    output: Optional[str] = None
    content_version: Optional[str] = None
    description: Optional[str] = None
    agent_description: Optional[str] = None
    keywords: list[str] = field(default_factory=list)
    license: Optional[list[str]] = None
    chunk_size: int = 1000
    chunk_overlap: int = 100
    no_ast_chunking: bool = False
    context_mode: str = "full"
    max_ast_chunk_size: int = 1500
    include: Optional[list[str]] = None
    exclude: Optional[list[str]] = None
    default_excludes: bool = True
    overwrite: bool = False
    batch_size: int = 32
    workers: int = 2
    queue_size: int = 4
    embedder_timeout: Optional[float] = None
    show_progress: bool = False

    @classmethod
    def from_config(cls, config: Config, **overrides) -> "BuildOptions":
        """Options seeded from *config*; keyword arguments win."""
        values = dict(
            chunk_size=config.CHUNK_SIZE,
            chunk_overlap=config.CHUNK_OVERLAP,
            no_ast_chunking=not config.AST_CHUNKING,
            context_mode=config.CONTEXT_MODE,
            max_ast_chunk_size=config.MAX_AST_CHUNK_SIZE,
            batch_size=config.EMBED_BATCH_SIZE,
            workers=config.BUILD_WORKERS,
            queue_size=config.QUEUE_SIZE,
            embedder_timeout=config.EMBEDDER_TIMEOUT,
        )
        values.update(overrides)
        return cls(**values)

    def validate(self) -> None:
        """Raise :class:`ConfigurationError` for bad combinations; touches no files."""
        if self.chunk_size <= 0:
            raise ConfigurationError(f"chunk_size must be positive, got {self.chunk_size}")
        if self.chunk_overlap < 0 or self.chunk_overlap >= self.chunk_size:
            raise ConfigurationError(
                f"chunk_overlap ({self.chunk_overlap}) must be >= 0 and smaller "
                f"than chunk_size ({self.chunk_size})"
            )
        if self.context_mode not in ("none", "minimal", "full"):
            raise ConfigurationError(
                f"context_mode must be none|minimal|full, got {self.context_mode!r}"
            )
        for name in ("max_ast_chunk_size", "batch_size", "workers", "queue_size"):
            if getattr(self, name) < 1:
                raise ConfigurationError(f"{name} must be >= 1")
        if self.embedder_timeout is not None and self.embedder_timeout <= 0:
            raise ConfigurationError("embedder_timeout must be positive")
        if self.name is not None and not self.name.strip():
            raise ConfigurationError("name must not be empty")
        if not self.version:
            raise ConfigurationError("version must not be empty")


@dataclass
class BuildProgress:
    """One progress report; ``total`` is 0 while still unknown."""
    phase: str
    message: str
    current: int = 0
    total: int = 0


@dataclass
class BuildResult:
    output_path: str
    metadata: LibraryMetadata
    chunk_count: int
    source_count: int
    file_size: int
    embed_duration: float
    chunks_per_second: float
    warnings: list[str] = field(default_factory=list)


ProgressCallback = Callable[[BuildProgress], None]


@dataclass
class _Batch:
    seq: int
    chunks: list[Chunk]
    vectors: Optional[list[list[float]]] = None


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------

class Builder:
    """
    Builds library files with one injected embedder.

    Parameters
    ----------
    embedder:
        Embedding capability; its model name and dimensions are recorded
        in the library metadata.
    config:
        Supplies default :class:`BuildOptions` when a build gets none.
    """

    def __init__(self, embedder: Embedder, config: Optional[Config] = None) -> None:
        self.embedder = embedder
        self.config = config

    def build(
        self,
        source: Union[str, list[SourceFile]],
        options: Optional[BuildOptions] = None,
        progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> BuildResult:
        """
        Build a library from *source* (a directory, a single file, or
        already collected :class:`SourceFile` objects).

        Raises
        ------
        ConfigurationError
            Invalid options; raised before anything is read or written.
        AlreadyExists
            The output exists and ``overwrite`` is false.
        AlreadyLocked
            Another build holds the output path.
        BuildCancelled
            *cancel_event* was set.  The output is left untouched.
        EmbedderError
            Embedding failed or timed out.
        """
        if options is None:
            options = BuildOptions.from_config(self.config) if self.config else BuildOptions()
        options.validate()
        name = self._library_name(source, options)
        output = os.path.abspath(options.output or f"{name}-{options.version}{LIBRARY_EXTENSION}")
        cancel_event = cancel_event or threading.Event()
        report = _Reporter(progress)

        with LibraryLock(output):
            if os.path.exists(output) and not options.overwrite:
                raise AlreadyExists(output)

            if isinstance(source, str):
                files = collect_source_files(
                    source,
                    include=options.include,
                    exclude=options.exclude,
                    default_excludes=options.default_excludes,
                )
                source_info = {"type": "local", "path": os.path.abspath(source)}
            else:
                files = list(source)
                source_info = None
            if not files:
                raise LibragenError(f"No source files to build from: {source}")

            self.embedder.initialize()
            metadata = LibraryMetadata(
                name=name,
                version=options.version,
                description=options.description,
                content_version=options.content_version,
                embedding=EmbeddingInfo(self.embedder.model_name, self.embedder.dimensions),
                chunking=ChunkingInfo("text", options.chunk_size, options.chunk_overlap),
                source=source_info,
                license=options.license,
                agent_description=options.agent_description,
                keywords=list(options.keywords),
            )

            tmp_path = output + ".building"
            store = LibraryStore.create(tmp_path, metadata, overwrite=True)
            try:
                result = self._run(store, files, options, output, report, cancel_event)
                os.replace(tmp_path, output)
            except BaseException:
                store.close()
                _remove_quietly(tmp_path)
                raise

        result.file_size = os.path.getsize(output)
        report(BuildProgress(PHASE_COMPLETE, f"Built {output}", result.chunk_count, result.chunk_count))
        logger.info(
            "Built %s: %d chunks from %d files, %s, embedded in %s (%.1f chunks/s)",
            output, result.chunk_count, result.source_count, format_bytes(result.file_size),
            format_duration(result.embed_duration), result.chunks_per_second,
        )
        return result

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _run(
        self,
        store: LibraryStore,
        files: list[SourceFile],
        options: BuildOptions,
        output: str,
        report: "_Reporter",
        cancel_event: threading.Event,
    ) -> BuildResult:
        records = ChunkRecordBuilder(
            TextSplitter(options.chunk_size, options.chunk_overlap),
            use_ast=not options.no_ast_chunking,
            context_mode=options.context_mode,
            max_ast_chunk_size=options.max_ast_chunk_size,
        )
        stop = threading.Event()
        work: queue.Queue = queue.Queue(maxsize=options.queue_size)
        done: queue.Queue = queue.Queue()
        state = _ProducerState()

        producer = threading.Thread(
            target=self._produce,
            args=(files, records, options.batch_size, work, state, stop, report),
            daemon=True,
            name="libragen-chunker",
        )
        workers = [
            threading.Thread(
                target=self._embed_worker,
                args=(work, done, stop, options.embedder_timeout),
                daemon=True,
                name=f"libragen-embed-{i}",
            )
            for i in range(options.workers)
        ]

        t0 = time.perf_counter()
        producer.start()
        for w in workers:
            w.start()

        hasher = hashlib.sha256()
        committed = 0
        try:
            committed = self._write(
                store, done, state, stop, cancel_event, hasher, report, options, workers,
            )
        finally:
            stop.set()
            _drain(work)
            producer.join()
            for w in workers:
                w.join(timeout=_POLL_INTERVAL if cancel_event.is_set() else None)
        if state.error is not None:
            raise state.error
        embed_duration = time.perf_counter() - t0

        report(BuildProgress(PHASE_CREATING_DATABASE, "Finalizing library file"))
        meta = store.get_metadata()
        store.update_metadata(
            chunking=replace(meta.chunking, strategy=ChunkRecordBuilder.library_strategy(state.strategies)),
            content_hash=f"sha256:{hasher.hexdigest()}",
            stats=replace(meta.stats, file_size=os.path.getsize(store.path)),
        )
        metadata = store.get_metadata()
        store.close()

        return BuildResult(
            output_path=output,
            metadata=metadata,
            chunk_count=committed,
            source_count=metadata.stats.source_count,
            file_size=metadata.stats.file_size,
            embed_duration=embed_duration,
            chunks_per_second=round(committed / embed_duration, 1) if embed_duration > 0 else 0.0,
            warnings=list(state.warnings),
        )

    @staticmethod
    def _produce(
        files: list[SourceFile],
        records: ChunkRecordBuilder,
        batch_size: int,
        work: queue.Queue,
        state: "_ProducerState",
        stop: threading.Event,
        report: "_Reporter",
    ) -> None:
        seq = 0
        pending: list[Chunk] = []

        def emit(chunks: list[Chunk]) -> bool:
            nonlocal seq
            batch = _Batch(seq, chunks)
            while not stop.is_set():
                try:
                    work.put(batch, timeout=_POLL_INTERVAL)
                    seq += 1
                    return True
                except queue.Full:
                    continue
            return False

        try:
            for n, f in enumerate(files, 1):
                if stop.is_set():
                    return
                report(BuildProgress(PHASE_CHUNKING, f"Chunking {f.relative_path}", n, len(files)))
                try:
                    file_chunks = records.build(f.content, f.relative_path)
                except Exception as exc:
                    message = f"{f.relative_path}: skipped ({exc})"
                    logger.warning("%s", message)
                    state.warnings.append(message)
                    continue
                if file_chunks.warning:
                    state.warnings.append(file_chunks.warning)
                state.strategies.add(file_chunks.strategy)
                state.chunk_total += len(file_chunks.chunks)
                pending.extend(file_chunks.chunks)
                while len(pending) >= batch_size:
                    if not emit(pending[:batch_size]):
                        return
                    pending = pending[batch_size:]
            if pending and not emit(pending):
                return
            state.batch_total = seq
            logger.debug("Chunked %d files into %d chunks (%d batches)",
                         len(files), state.chunk_total, seq)
        except BaseException as exc:
            state.error = exc
            stop.set()
        finally:
            state.finished.set()

    def _embed_worker(
        self,
        work: queue.Queue,
        done: queue.Queue,
        stop: threading.Event,
        timeout: Optional[float],
    ) -> None:
        try:
            while not stop.is_set():
                try:
                    batch = work.get(timeout=_POLL_INTERVAL)
                except queue.Empty:
                    continue
                texts = [c.text_for_embedding for c in batch.chunks]
                try:
                    vectors = call_with_timeout(self.embedder.embed_batch, timeout, texts)
                except concurrent.futures.TimeoutError:
                    done.put(EmbedderError(f"Embedding batch {batch.seq} timed out after {timeout}s"))
                    return
                except EmbedderError as exc:
                    done.put(exc)
                    return
                except Exception as exc:
                    done.put(EmbedderError(f"Embedding batch {batch.seq} failed: {exc}"))
                    return
                if vectors is None:
                    done.put(EmbedderError(f"Embedder returned no vectors for batch {batch.seq}"))
                    return
                batch.vectors = list(vectors)
                if len(batch.vectors) != len(texts):
                    done.put(EmbedderError(
                        f"Embedder returned {len(batch.vectors)} vectors for {len(texts)} texts"
                    ))
                    return
                done.put(batch)
        except BaseException as exc:
            done.put(EmbedderError(f"Embedding worker crashed: {exc!r}"))

    @staticmethod
    def _write(
        store: LibraryStore,
        done: queue.Queue,
        state: "_ProducerState",
        stop: threading.Event,
        cancel_event: threading.Event,
        hasher,
        report: "_Reporter",
        options: BuildOptions,
        workers: Optional[list[threading.Thread]] = None,
    ) -> int:
        """Commit embedded batches in sequence order; return the chunk count."""
        waiting: dict[int, _Batch] = {}
        next_seq = 0
        committed = 0
        bar = None
        if options.show_progress:
            from tqdm import tqdm
            bar = tqdm(total=None, unit="chunk", desc="Embedding")
        try:
            while True:
                if cancel_event.is_set():
                    stop.set()
                    raise BuildCancelled("Build cancelled")
                if state.error is not None:
                    return committed
                if state.finished.is_set() and state.batch_total is not None \
                        and next_seq >= state.batch_total:
                    return committed
                try:
                    item = done.get(timeout=_POLL_INTERVAL)
                except queue.Empty:
                    if workers and done.empty() and not any(w.is_alive() for w in workers):
                        stop.set()
                        raise EmbedderError("All embedding workers exited with batches outstanding")
                    continue
                if isinstance(item, BaseException):
                    stop.set()
                    raise item
                waiting[item.seq] = item
                while next_seq in waiting:
                    batch = waiting.pop(next_seq)
                    store.add_chunks([
                        NewChunk(c, v, options.content_version)
                        for c, v in zip(batch.chunks, batch.vectors)
                    ])
                    for c in batch.chunks:
                        hasher.update(c.content.encode("utf-8"))
                    committed += len(batch.chunks)
                    next_seq += 1
                    total = state.chunk_total if state.finished.is_set() else 0
                    logger.debug("Committed batch %d (%d chunks)", batch.seq, len(batch.chunks))
                    report(BuildProgress(
                        PHASE_EMBEDDING, f"Embedded {committed} chunks", committed, total,
                    ))
                    if bar is not None:
                        if total and bar.total != total:
                            bar.total = total
                        bar.update(len(batch.chunks))
        finally:
            if bar is not None:
                bar.close()

    @staticmethod
    def _library_name(source: Union[str, list[SourceFile]], options: BuildOptions) -> str:
        if options.name:
            return options.name.strip()
        if isinstance(source, str):
            base = os.path.basename(os.path.normpath(os.path.abspath(source)))
            return os.path.splitext(base)[0] if os.path.isfile(source) else base
        raise ConfigurationError("name is required when building from a list of files")


def estimate_build(files: list[SourceFile], options: Optional[BuildOptions] = None) -> dict:
    """
    Rough pre-build estimate: plain-text chunk count and embedding time.

    AST chunking usually yields a similar count, so the text splitter is
    used for every file.
    """
    options = options or BuildOptions()
    options.validate()
    splitter = TextSplitter(options.chunk_size, options.chunk_overlap)
    chunk_count = sum(len(splitter.split(f.content)) for f in files)
    estimate = estimate_embedding_time(chunk_count)
    return {
        "files": len(files),
        "chunks": chunk_count,
        "estimated_seconds": estimate.estimated_seconds,
        "formatted_time": estimate.formatted_time,
    }


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class _ProducerState:
    def __init__(self) -> None:
        self.finished = threading.Event()
        self.batch_total: Optional[int] = None
        self.chunk_total = 0
        self.strategies: set[str] = set()
        self.warnings: list[str] = []
        self.error: Optional[BaseException] = None


class _Reporter:
    """Serializes progress callbacks coming from several threads."""

    def __init__(self, callback: Optional[ProgressCallback]) -> None:
        self._callback = callback
        self._lock = threading.Lock()

    def __call__(self, progress: BuildProgress) -> None:
        if self._callback is None:
            return
        with self._lock:
            try:
                self._callback(progress)
            except Exception:
                logger.debug("Progress callback failed", exc_info=True)


def _drain(q: queue.Queue) -> None:
    while True:
        try:
            q.get_nowait()
        except queue.Empty:
            return


def _remove_quietly(path: str) -> None:
    for p in (path, path + "-journal"):
        try:
            os.remove(p)
        except FileNotFoundError:
            pass
        except OSError:
            logger.warning("Could not remove temporary file %s", p)
