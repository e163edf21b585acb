"""
Unit tests for libragen.searcher: hybrid fusion, filters and context.
"""

from __future__ import annotations

import logging
from unittest.mock import MagicMock, patch

import pytest


CAPITALS = [
    ("Paris is the capital of France.", "capitals.md"),
    ("Tokyo is the capital of Japan.", "capitals.md"),
]

MIXED = [
    ("Connection pooling keeps sockets open between requests.", "net.md"),
    ("The retry decorator backs off exponentially.", "net.md"),
    ("Caching stores computed values for later reuse.", "cache.md"),
    ("An LRU cache evicts the least recently used entry.", "cache.md"),
    ("Bananas are rich in potassium.", "food.md"),
]


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

class TestHelpers:

    def test_normalize_scores_range(self):
        from libragen.searcher import normalize_scores
        out = normalize_scores({1: 2.0, 2: 4.0, 3: 3.0})
        assert out == {1: 0.0, 2: 1.0, 3: 0.5}

    def test_normalize_equal_scores_map_to_one(self):
        from libragen.searcher import normalize_scores
        assert normalize_scores({7: 0.3}) == {7: 1.0}
        assert normalize_scores({1: 5.0, 2: 5.0}) == {1: 1.0, 2: 1.0}
        assert normalize_scores({}) == {}

    def test_lexical_query_quotes_and_dedupes(self):
        from libragen.searcher import build_lexical_query
        assert build_lexical_query('get-user: "id" id*') == '"get" OR "user" OR "id"'
        assert build_lexical_query("!!!") == ""

    @pytest.mark.parametrize("kwargs", [
        {"k": 0},
        {"hybrid_alpha": 1.5},
        {"hybrid_alpha": -0.1},
        {"context_before": -1},
    ])
    def test_invalid_options(self, kwargs):
        from libragen.errors import ConfigurationError
        from libragen.searcher import SearchOptions
        with pytest.raises(ConfigurationError):
            SearchOptions(query="x", **kwargs).validate()


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------

class TestSearch:

    def test_hybrid_finds_exact_answer(self, embedder, make_store):
        from libragen.searcher import Searcher
        store = make_store(CAPITALS)
        results = Searcher(embedder, store).search(query="What is the capital of Japan?", k=1)
        assert len(results) == 1
        assert "Tokyo" in results[0].content
        assert 0.0 <= results[0].score <= 1.0
        assert results[0].source_file == "capitals.md"

    def test_results_sorted_and_bounded(self, embedder, make_store):
        from libragen.searcher import Searcher
        store = make_store(MIXED)
        results = Searcher(embedder, store).search(query="cache entry eviction", k=3)
        assert 1 <= len(results) <= 3
        scores = [r.score for r in results]
        assert scores == sorted(scores, reverse=True)
        assert len({r.id for r in results}) == len(results)

    def test_pure_vector_matches_store_order(self, embedder, make_store):
        from libragen.searcher import Searcher
        store = make_store(MIXED)
        query = "sockets and requests"
        expected = [h.chunk.id for h in store.vector_search(embedder.embed(query), 3)]
        results = Searcher(embedder, store).search(query=query, k=3, hybrid_alpha=1.0)
        assert [r.id for r in results] == expected
        assert all(r.lexical_score == 0.0 for r in results)

    def test_pure_lexical_matches_store_order_without_embedding(self, embedder, make_store):
        from libragen.searcher import Searcher, build_lexical_query
        store = make_store(MIXED)
        query = "cache"
        expected = [h.chunk.id for h in store.fts_search(build_lexical_query(query), 3)]
        calls = embedder.batch_calls
        results = Searcher(embedder, store).search(query=query, k=3, hybrid_alpha=0.0)
        assert [r.id for r in results] == expected
        assert embedder.batch_calls == calls

    def test_content_version_filter(self, embedder, make_store):
        from libragen.searcher import Searcher
        store = make_store([
            ("Install with pip install libragen.", "install.md", "1.0"),
            ("Install with pip install libragen --pre.", "install.md", "2.0"),
        ])
        results = Searcher(embedder, store).search(query="install", k=5, content_version="2.0")
        assert [r.content_version for r in results] == ["2.0"]

    def test_context_is_clipped_to_source_file(self, embedder, make_store):
        from libragen.searcher import Searcher
        store = make_store([
            ("alpha one", "a.md"),
            ("alpha two", "a.md"),
            ("alpha three zebra", "a.md"),
            ("beta one", "b.md"),
        ])
        [hit] = Searcher(embedder, store).search(
            query="zebra", k=1, hybrid_alpha=0.0, context_before=1, context_after=2,
        )
        assert hit.content == "alpha three zebra"
        assert [c.content for c in hit.context_before] == ["alpha two"]
        assert hit.context_after == []

    def test_context_at_start_of_file(self, embedder, make_store):
        from libragen.searcher import Searcher
        store = make_store([
            ("first giraffe", "a.md"),
            ("second", "a.md"),
            ("third", "a.md"),
        ])
        [hit] = Searcher(embedder, store).search(
            query="giraffe", k=1, hybrid_alpha=0.0, context_before=3, context_after=1,
        )
        assert hit.context_before == []
        assert [c.content for c in hit.context_after] == ["second"]

    def test_empty_library(self, embedder, make_store):
        from libragen.searcher import Searcher
        store = make_store([])
        assert Searcher(embedder, store).search(query="anything") == []

    def test_lexical_failure_falls_back_to_vector(self, embedder, make_store, caplog):
        from libragen.errors import LexicalQueryError
        from libragen.searcher import Searcher
        store = make_store(CAPITALS)
        with patch.object(store, "fts_search", side_effect=LexicalQueryError("fts5: syntax error")):
            with caplog.at_level(logging.WARNING, logger="libragen.searcher"):
                results = Searcher(embedder, store).search(query="capital of Japan", k=2)
        assert results
        assert all(r.lexical_score == 0.0 for r in results)
        assert "Lexical search failed" in caplog.text

    def test_embedder_failure_is_fatal(self, make_store, embedder):
        from libragen.errors import EmbedderError
        from libragen.searcher import Searcher
        store = make_store(CAPITALS)
        broken = MagicMock()
        broken.embed.side_effect = RuntimeError("model crashed")
        with pytest.raises(EmbedderError):
            Searcher(broken, store).search(query="capital")

    def test_embedder_timeout(self, make_store):
        import time

        from libragen.errors import EmbedderError
        from libragen.searcher import Searcher
        store = make_store(CAPITALS)
        slow = MagicMock()
        slow.embed.side_effect = lambda text: time.sleep(0.5)
        with pytest.raises(EmbedderError, match="timed out"):
            Searcher(slow, store, timeout=0.05).search(query="capital")

    def test_rank_is_monotonic_in_alpha(self, embedder, make_store):
        from libragen.searcher import Searcher
        from libragen.storage.store import ScoredChunk
        store = make_store(MIXED)
        a, b, c, d = (store.get_chunk(i) for i in (1, 2, 3, 4))
        # a and b tie lexically; a has the higher vector score
        vector = [ScoredChunk(a, 0.9), ScoredChunk(b, 0.5), ScoredChunk(c, 0.2), ScoredChunk(d, 0.1)]
        lexical = [ScoredChunk(c, 5.0), ScoredChunk(a, 2.0), ScoredChunk(b, 2.0), ScoredChunk(d, 0.5)]
        searcher = Searcher(embedder, store)
        previous_rank = None
        with patch.object(store, "vector_search", return_value=vector), \
                patch.object(store, "fts_search", return_value=lexical):
            for step in range(11):
                ids = [r.id for r in searcher.search(query="pool cache", k=4, hybrid_alpha=step / 10)]
                assert ids.index(a.id) < ids.index(b.id)
                rank = ids.index(a.id)
                if previous_rank is not None:
                    assert rank <= previous_rank
                previous_rank = rank
        assert previous_rank == 0

    def test_single_chunk_self_retrieval(self, embedder, make_store):
        text = "Owls hunt at night using silent flight feathers."
        store = make_store([(text, "owls.md")])
        [hit] = store.vector_search(embedder.embed(text), 1)
        assert hit.chunk.content == text
        assert hit.score > 0.99

    def test_config_supplies_search_defaults(self, embedder, make_store):
        from libragen.config import Config
        from libragen.searcher import Searcher, SearchOptions
        store = make_store(CAPITALS)
        cfg = Config({"top_k": 1, "hybrid_alpha": 0.0, "over_fetch": 2, "embedder_timeout": 7})
        searcher = Searcher(embedder, store, config=cfg)
        assert searcher.over_fetch == 2
        assert searcher.timeout == 7.0
        calls = embedder.batch_calls
        results = searcher.search(query="capital")
        assert len(results) == 1
        assert embedder.batch_calls == calls
        assert Searcher(embedder, store, over_fetch=3, config=cfg).over_fetch == 3
        opts = SearchOptions.from_config(cfg, "capital", k=9)
        assert (opts.k, opts.hybrid_alpha) == (9, 0.0)


# ---------------------------------------------------------------------------
# Reranking
# ---------------------------------------------------------------------------

class TestRerank:

    def test_rerank_reorders_by_reranker_score(self, embedder, make_store):
        from libragen.searcher import Searcher
        store = make_store(MIXED)
        reranker = MagicMock()
        reranker.rerank.side_effect = lambda q, contents: [
            10.0 if "Bananas" in c else 0.0 for c in contents
        ]
        results = Searcher(embedder, store, reranker=reranker).search(
            query="cache bananas", k=5, rerank=True,
        )
        assert "Bananas" in results[0].content
        assert results[0].score == 10.0
        reranker.initialize.assert_called_once()

    def test_rerank_without_reranker(self, embedder, make_store):
        from libragen.errors import ConfigurationError
        from libragen.searcher import Searcher
        store = make_store(CAPITALS)
        with pytest.raises(ConfigurationError):
            Searcher(embedder, store).search(query="capital", rerank=True)

    def test_reranker_failure(self, embedder, make_store):
        from libragen.errors import RerankerError
        from libragen.searcher import Searcher
        store = make_store(CAPITALS)
        reranker = MagicMock()
        reranker.rerank.side_effect = ValueError("boom")
        with pytest.raises(RerankerError):
            Searcher(embedder, store, reranker=reranker).search(query="capital", rerank=True)

    def test_reranker_wrong_score_count(self, embedder, make_store):
        from libragen.errors import RerankerError
        from libragen.searcher import Searcher
        store = make_store(CAPITALS)
        reranker = MagicMock()
        reranker.rerank.return_value = [1.0]
        with pytest.raises(RerankerError):
            Searcher(embedder, store, reranker=reranker).search(query="capital", k=2, rerank=True)
