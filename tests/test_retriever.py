"""Tests for the relevance-scored hybrid memory retrieval."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from medmem.models import MemoryCandidate, SearchResult, details_from_dict
from medmem.retriever import MemoryRetriever
from medmem.vector_store import VectorMemoryStore

NOW = 1_700_000_000.0
DAY = 24 * 3600


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

def _result(
    memory_id: str,
    similarity: float = 0.0,
    memory_type: str = "symptom",
    importance: float = 0.0,
    confidence: float = 0.0,
    age_days: float = 0.0,
    summary: str | None = None,
) -> SearchResult:
    return SearchResult(
        memory_id=memory_id,
        memory_type=memory_type,
        summary=summary or f"memory {memory_id}",
        details={},
        confidence=confidence,
        importance=importance,
        extracted_at=NOW - age_days * DAY,
        similarity=similarity,
    )


def _mock_store(vector=(), keyword=(), by_id=None) -> MagicMock:
    store = MagicMock(spec=VectorMemoryStore)
    store.search_vector.return_value = list(vector)
    store.search_fts.return_value = list(keyword)
    store.get_memory.side_effect = lambda mem_id: (by_id or {}).get(mem_id)
    return store


@pytest.fixture()
def retriever():
    return MemoryRetriever(_mock_store(), clock=lambda: NOW)


# ---------------------------------------------------------------------------
# Relevance scoring
# ---------------------------------------------------------------------------

class TestRelevance:
    def test_fresh_memory(self, retriever):
        result = _result("a", importance=0.5, confidence=0.5)
        assert retriever.relevance(1.0, result) == pytest.approx(0.9)

    def test_recency_decays_over_thirty_days(self, retriever):
        fresh = retriever.relevance(0.5, _result("a", age_days=0))
        half = retriever.relevance(0.5, _result("a", age_days=15))
        stale = retriever.relevance(0.5, _result("a", age_days=60))
        assert fresh - stale == pytest.approx(0.05)
        assert half - stale == pytest.approx(0.025)

    def test_capped_at_one(self, retriever):
        result = _result("a", importance=1.0, confidence=1.0)
        assert retriever.relevance(1.3, result) == 1.0


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------

class TestHybridSearch:
    def test_merges_vector_and_keyword_hits(self):
        store = _mock_store(
            vector=[_result("a", similarity=0.9), _result("b", similarity=0.5)],
            keyword=[("b", 1.0), ("c", 0.5)],
            by_id={"b": _result("b"), "c": _result("c")},
        )
        results = MemoryRetriever(store, clock=lambda: NOW).hybrid_search("u1", "headache")
        assert [r.memory_id for r in results] == ["a", "b", "c"]
        assert [r.relevance for r in results] == [
            pytest.approx(0.68), pytest.approx(0.26), pytest.approx(0.155),
        ]

    def test_keyword_boost_adds_to_similarity(self):
        store = _mock_store(vector=[_result("a", similarity=0.9)], keyword=[("a", 1.0)])
        [hit] = MemoryRetriever(store, clock=lambda: NOW).hybrid_search("u1", "headache")
        assert hit.relevance == pytest.approx(1.2 * 0.7 + 0.05)
        store.get_memory.assert_not_called()

    def test_missing_keyword_hit_skipped(self):
        store = _mock_store(keyword=[("gone", 1.0)])
        assert MemoryRetriever(store).hybrid_search("u1", "headache") == []

    def test_limit(self):
        store = _mock_store(vector=[_result(str(i), similarity=0.9 - i / 100) for i in range(5)])
        results = MemoryRetriever(store, clock=lambda: NOW).hybrid_search("u1", "q", limit=2)
        assert [r.memory_id for r in results] == ["0", "1"]


class TestSemanticSearch:
    def test_threshold_and_type_filter(self):
        store = _mock_store(vector=[
            _result("a", similarity=0.9),
            _result("b", similarity=0.65),
            _result("c", similarity=0.8, memory_type="medication"),
        ])
        retriever = MemoryRetriever(store, clock=lambda: NOW)
        assert [r.memory_id for r in retriever.semantic_search("u1", "q")] == ["a", "c"]
        only_meds = retriever.semantic_search("u1", "q", memory_types=["medication"])
        assert [r.memory_id for r in only_meds] == ["c"]


# ---------------------------------------------------------------------------
# Contextual text
# ---------------------------------------------------------------------------

class TestContextualMemories:
    def test_format(self):
        store = _mock_store(vector=[
            _result("a", similarity=0.9, summary="Morning headaches"),
            _result("b", similarity=0.9, memory_type="follow_up", summary="Recheck blood pressure"),
        ])
        text = MemoryRetriever(store, clock=lambda: NOW).get_contextual_memories("u1", "headache")
        assert text == (
            "**Previous Session Context:**\n\n"
            "**SYMPTOM:**\n"
            "• Morning headaches (68% relevant)\n\n"
            "**FOLLOW UP:**\n"
            "• Recheck blood pressure (68% relevant)"
        )

    def test_at_most_three_per_type(self):
        store = _mock_store(vector=[_result(str(i), similarity=0.9) for i in range(5)])
        text = MemoryRetriever(store, clock=lambda: NOW).get_contextual_memories("u1", "q")
        assert text.count("•") == 3

    def test_related_symptoms_expand_query(self):
        store = _mock_store()
        MemoryRetriever(store).get_contextual_memories("u1", "head pain", related_symptoms=["nausea"])
        assert store.search_vector.call_args.args[1] == "head pain nausea"

    def test_nothing_found(self):
        assert MemoryRetriever(_mock_store()).get_contextual_memories("u1", "headache") == ""

    def test_empty_query(self):
        store = _mock_store()
        assert MemoryRetriever(store).get_contextual_memories("u1", "  ") == ""
        store.search_vector.assert_not_called()


class TestWithSemanticIndex:
    def test_keyword_hit_reaches_context(self, tmp_path, embedder):
        vstore = VectorMemoryStore(str(tmp_path / "semantic.db"), embedder=embedder)
        vstore.store_memory("u1", "s1", MemoryCandidate(
            memory_type="medication",
            summary="Takes ibuprofen for headaches",
            details=details_from_dict("medication", {"medication": "ibuprofen"}),
            confidence=0.9,
            importance=0.7,
        ))
        text = MemoryRetriever(vstore).get_contextual_memories("u1", "is ibuprofen safe")
        assert text.startswith("**Previous Session Context:**")
        assert "**MEDICATION:**" in text
        assert "Takes ibuprofen for headaches" in text
        assert MemoryRetriever(vstore).get_contextual_memories("u2", "is ibuprofen safe") == ""
        vstore.close()
