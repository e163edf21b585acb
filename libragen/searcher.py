"""
Hybrid search over a library store.

Combines cosine similarity over the stored embeddings with FTS5 ``bm25``
relevance.  Each candidate set is min-max normalized on its own before the
weighted fusion; scores from the two signals are never mixed raw.

Search is read-only: any number of threads may call :meth:`Searcher.search`
on the same :class:`Searcher` (and the same store handle) concurrently.
"""

from __future__ import annotations

import concurrent.futures
import logging
import re
import time
from dataclasses import dataclass
from typing import Optional

from .config import Config
from .embedding import Embedder, call_with_timeout
from .errors import ConfigurationError, EmbedderError, LexicalQueryError, RerankerError
from .models import SearchResult
from .reranker import Reranker
from .storage.store import LibraryStore, ScoredChunk

logger = logging.getLogger(__name__)

DEFAULT_OVER_FETCH = 4

_WORD_RE = re.compile(r"\w+", re.UNICODE)


@dataclass
class SearchOptions:
    """
    Parameters of one search call.

    Attributes
    ----------
    hybrid_alpha:
        Weight of the vector signal; ``1.0`` is pure vector search and
        ``0.0`` pure lexical search.
    content_version:
        Only chunks with this tag are considered (applied before fusion).
    context_before / context_after:
        Number of neighbouring chunks of the same file to attach.
    """

    query: str
    k: int = 5
    hybrid_alpha: float = 0.5
    content_version: Optional[str] = None
    context_before: int = 0
    context_after: int = 0
    rerank: bool = False

    @classmethod
    def from_config(cls, config: Config, query: str, **overrides) -> "SearchOptions":
        """Options with ``top_k`` and ``hybrid_alpha`` from *config*; keyword arguments win."""
        values = dict(k=config.TOP_K, hybrid_alpha=config.HYBRID_ALPHA)
        values.update(overrides)
        return cls(query=query, **values)

    def validate(self) -> None:
        if self.k < 1:
            raise ConfigurationError(f"k must be >= 1, got {self.k}")
        if not 0.0 <= self.hybrid_alpha <= 1.0:
            raise ConfigurationError(f"hybrid_alpha must be within [0, 1], got {self.hybrid_alpha}")
        if self.context_before < 0 or self.context_after < 0:
            raise ConfigurationError("context_before / context_after must be >= 0")


def build_lexical_query(query: str) -> str:
    """
    Turn free text into a safe FTS5 query: every word quoted, OR-ed.

    Quoting keeps user punctuation (``-``, ``:``, ``*``…) from being read
    as FTS5 operators.
    """
    seen: set[str] = set()
    terms = []
    for token in _WORD_RE.findall(query):
        key = token.lower()
        if key not in seen:
            seen.add(key)
            terms.append(f'"{token}"')
    return " OR ".join(terms)


def normalize_scores(scores: dict[int, float]) -> dict[int, float]:
    """
    Min-max normalize *scores* into ``[0, 1]``.

    A set whose scores are all equal (including a single candidate) maps
    to ``1.0``: every member is the best match of its signal.
    """
    if not scores:
        return {}
    lo = min(scores.values())
    hi = max(scores.values())
    span = hi - lo
    if span <= 1e-12:
        return {cid: 1.0 for cid in scores}
    return {cid: (s - lo) / span for cid, s in scores.items()}


class Searcher:
    """
    Hybrid searcher over one library.

    Parameters
    ----------
    embedder:
        Same model the library was built with.
    store:
        Open library store.
    reranker:
        Optional; required only for ``rerank=True`` searches.
    over_fetch:
        Each signal retrieves ``k * over_fetch`` candidates before fusion.
    timeout:
        Seconds allowed for one embedder or reranker call (``None``: no limit).
    config:
        Supplies ``over_fetch`` and ``timeout`` when they are not given, and
        the default ``k`` and ``hybrid_alpha`` of keyword-argument searches.
    """

    def __init__(
        self,
        embedder: Embedder,
        store: LibraryStore,
        reranker: Optional[Reranker] = None,
        over_fetch: Optional[int] = None,
        timeout: Optional[float] = None,
        config: Optional[Config] = None,
    ) -> None:
        if over_fetch is None:
            over_fetch = config.OVER_FETCH if config is not None else DEFAULT_OVER_FETCH
        if timeout is None and config is not None:
            timeout = config.EMBEDDER_TIMEOUT
        if over_fetch < 1:
            raise ConfigurationError(f"over_fetch must be >= 1, got {over_fetch}")
        self.embedder = embedder
        self.store = store
        self.reranker = reranker
        self.over_fetch = over_fetch
        self.timeout = timeout
        self.config = config

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def search(self, options: Optional[SearchOptions] = None, **kwargs) -> list[SearchResult]:
        """
        Run one hybrid search.

        Accepts a :class:`SearchOptions` or the same fields as keyword
        arguments.

        Raises
        ------
        EmbedderError
            The query could not be embedded.  There is no automatic
            lexical-only fallback; search with ``hybrid_alpha=0`` for that.
        RerankerError
            ``rerank`` was requested and the reranker failed.
        """
        if options is not None:
            opts = options
        elif self.config is not None:
            opts = SearchOptions.from_config(self.config, **kwargs)
        else:
            opts = SearchOptions(**kwargs)
        opts.validate()
        if opts.rerank and self.reranker is None:
            raise ConfigurationError("rerank=True requires a reranker")

        t0 = time.perf_counter()
        alpha = opts.hybrid_alpha
        fetch = opts.k * self.over_fetch

        vector_hits: list[ScoredChunk] = []
        lexical_hits: list[ScoredChunk] = []
        if alpha > 0.0:
            vector_hits = self._vector_candidates(opts.query, fetch, opts.content_version)
        if alpha < 1.0:
            try:
                lexical_hits = self.store.fts_search(
                    build_lexical_query(opts.query), fetch, opts.content_version,
                )
            except LexicalQueryError as exc:
                logger.warning("Lexical search failed, using vector results only: %s", exc)
                if alpha == 0.0:
                    vector_hits = self._vector_candidates(opts.query, fetch, opts.content_version)
                alpha = 1.0

        results = self._fuse(vector_hits, lexical_hits, alpha)[: opts.k]

        if opts.rerank and results:
            results = self._rerank(opts.query, results)

        if opts.context_before or opts.context_after:
            for r in results:
                before, after = self.store.neighbours(
                    r.source_file, r.id, opts.context_before, opts.context_after,
                )
                r.context_before = before
                r.context_after = after

        logger.info(
            "Search %r: %d vector + %d lexical candidates -> %d results in %.1f ms",
            opts.query, len(vector_hits), len(lexical_hits), len(results),
            (time.perf_counter() - t0) * 1000,
        )
        return results

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _vector_candidates(self, query: str, k: int, content_version: Optional[str]) -> list[ScoredChunk]:
        embedding = self._embed_query(query)
        return self.store.vector_search(embedding, k, content_version)

    def _embed_query(self, query: str) -> list[float]:
        try:
            self.embedder.initialize()
            return call_with_timeout(self.embedder.embed, self.timeout, query)
        except EmbedderError:
            raise
        except concurrent.futures.TimeoutError as exc:
            raise EmbedderError(f"Query embedding timed out after {self.timeout}s") from exc
        except Exception as exc:
            raise EmbedderError(f"Query embedding failed: {exc}") from exc

    @staticmethod
    def _fuse(
        vector_hits: list[ScoredChunk],
        lexical_hits: list[ScoredChunk],
        alpha: float,
    ) -> list[SearchResult]:
        v_norm = normalize_scores({h.chunk.id: h.score for h in vector_hits})
        l_norm = normalize_scores({h.chunk.id: h.score for h in lexical_hits})

        # Single-signal searches keep the store's own ordering verbatim.
        if alpha == 1.0:
            ordered = [(h.chunk, v_norm[h.chunk.id]) for h in vector_hits]
        elif alpha == 0.0:
            ordered = [(h.chunk, l_norm[h.chunk.id]) for h in lexical_hits]
        else:
            chunks = {h.chunk.id: h.chunk for h in lexical_hits}
            chunks.update({h.chunk.id: h.chunk for h in vector_hits})
            fused = {
                cid: alpha * v_norm.get(cid, 0.0) + (1.0 - alpha) * l_norm.get(cid, 0.0)
                for cid in chunks
            }
            ordered = [
                (chunks[cid], score)
                for cid, score in sorted(fused.items(), key=lambda kv: (-kv[1], kv[0]))
            ]

        return [
            SearchResult(
                id=c.id,
                content=c.content,
                score=score,
                source_file=c.source_file,
                start_line=c.start_line,
                end_line=c.end_line,
                language=c.language,
                content_version=c.content_version,
                vector_score=v_norm.get(c.id, 0.0),
                lexical_score=l_norm.get(c.id, 0.0),
            )
            for c, score in ordered
        ]

    def _rerank(self, query: str, results: list[SearchResult]) -> list[SearchResult]:
        try:
            self.reranker.initialize()
            scores = call_with_timeout(
                self.reranker.rerank, self.timeout, query, [r.content for r in results],
            )
        except RerankerError:
            raise
        except concurrent.futures.TimeoutError as exc:
            raise RerankerError(f"Reranking timed out after {self.timeout}s") from exc
        except Exception as exc:
            raise RerankerError(f"Reranking failed: {exc}") from exc
        if len(scores) != len(results):
            raise RerankerError(
                f"Reranker returned {len(scores)} scores for {len(results)} candidates"
            )
        for r, s in zip(results, scores):
            r.score = float(s)
        # Stable: equal rerank scores keep the fused order.
        return sorted(results, key=lambda r: -r.score)
