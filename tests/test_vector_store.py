"""Tests for the sqlite-vec / FTS5 semantic memory index."""

import time

import pytest

from medmem.errors import PersistenceError, SchemaInitError
from medmem.models import MemoryCandidate, details_from_dict
from medmem.vector_store import VectorMemoryStore, keyword_terms, memory_content


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _candidate(
    summary: str,
    memory_type: str = "symptom",
    details: dict | None = None,
    importance: float = 0.5,
    confidence: float = 0.8,
) -> MemoryCandidate:
    return MemoryCandidate(
        memory_type=memory_type,
        summary=summary,
        details=details_from_dict(memory_type, details or {}),
        confidence=confidence,
        importance=importance,
    )


HEADACHE = dict(summary="Recurring headaches", details={"symptom": "headache"})
IBUPROFEN = dict(summary="Takes ibuprofen", memory_type="medication", details={"medication": "ibuprofen"})


@pytest.fixture
def vstore(tmp_path, embedder):
    s = VectorMemoryStore(str(tmp_path / "semantic.db"), embedder=embedder)
    yield s
    s.close()


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------

class TestSchema:
    def test_idempotent(self, vstore):
        vstore.ensure_schema()
        vstore.ensure_schema()
        assert vstore.memory_count("u1") == 0

    def test_failure_raises(self, tmp_path, embedder):
        with pytest.raises(SchemaInitError):
            VectorMemoryStore(str(tmp_path), embedder=embedder).ensure_schema()


class TestStoreMemory:
    def test_store_returns_id(self, vstore):
        mem_id = vstore.store_memory("u1", "s1", _candidate(**HEADACHE))
        assert mem_id.startswith("sem_")
        assert vstore.memory_count("u1") == 1

    def test_near_duplicate_updated_in_place(self, vstore):
        first = vstore.store_memory("u1", "s1", _candidate(**HEADACHE, importance=0.3))
        second = vstore.store_memory("u1", "s2", _candidate(**HEADACHE, importance=0.9))
        assert first == second
        assert vstore.memory_count("u1") == 1
        assert vstore.get_memory(first).importance == pytest.approx(0.9)

    def test_distinct_memories_both_kept(self, vstore):
        vstore.store_memory("u1", "s1", _candidate(**HEADACHE))
        vstore.store_memory("u1", "s1", _candidate(**IBUPROFEN))
        assert vstore.memory_count("u1") == 2

    def test_duplicates_are_per_user(self, vstore):
        vstore.store_memory("u1", "s1", _candidate(**HEADACHE))
        vstore.store_memory("u2", "s1", _candidate(**HEADACHE))
        assert vstore.memory_count("u1") == 1
        assert vstore.memory_count("u2") == 1

    def test_content_is_summary_plus_details(self):
        assert memory_content("Takes ibuprofen", {"medication": "ibuprofen"}) == \
            'Takes ibuprofen {"medication": "ibuprofen"}'

    def test_batch_skips_failures(self, tmp_path, embedder):
        class PickyEmbedder:
            def encode(self, text):
                if "BROKEN" in text:
                    return [1.0, 0.0]  # wrong dimension
                return embedder.encode(text)

        s = VectorMemoryStore(str(tmp_path / "batch.db"), embedder=PickyEmbedder())
        stored = s.batch_store_memories("u1", "s1", [
            _candidate(**HEADACHE),
            _candidate("BROKEN memory"),
            _candidate(**IBUPROFEN),
        ])
        assert stored == 2
        assert s.memory_count("u1") == 2

    def test_embedder_error_becomes_persistence_error(self, tmp_path):
        class BrokenEmbedder:
            def encode(self, text):
                raise RuntimeError("CUDA out of memory")

        s = VectorMemoryStore(str(tmp_path / "broken.db"), embedder=BrokenEmbedder())
        with pytest.raises(PersistenceError, match="CUDA out of memory"):
            s.store_memory("u1", "s1", _candidate(**HEADACHE))
        assert s.batch_store_memories("u1", "s1", [_candidate(**IBUPROFEN)]) == 0
        assert s.memory_count("u1") == 0


class TestSearch:
    def test_vector_search_ranks_related_first(self, vstore):
        vstore.store_memory("u1", "s1", _candidate(**IBUPROFEN))
        vstore.store_memory("u1", "s1", _candidate(**HEADACHE))
        results = vstore.search_vector("u1", "recurring headaches headache", top_k=5)
        assert results[0].summary == "Recurring headaches"
        assert results[0].similarity > results[1].similarity

    def test_identical_text_has_full_similarity(self, vstore):
        vstore.store_memory("u1", "s1", _candidate(**HEADACHE))
        content = memory_content(HEADACHE["summary"], HEADACHE["details"])
        [hit] = vstore.search_vector("u1", content)
        assert hit.similarity == pytest.approx(1.0, abs=1e-5)

    def test_vector_search_scoped_to_user(self, vstore):
        vstore.store_memory("u2", "s1", _candidate(**HEADACHE))
        assert vstore.search_vector("u1", "headache") == []

    def test_keyword_search(self, vstore):
        ibu_id = vstore.store_memory("u1", "s1", _candidate(**IBUPROFEN))
        vstore.store_memory("u1", "s1", _candidate(**HEADACHE))
        hits = vstore.search_fts("u1", "does ibuprofen help?")
        assert hits == [(ibu_id, 1.0)]

    def test_keyword_search_ignores_stopwords_and_punctuation(self, vstore):
        vstore.store_memory("u1", "s1", _candidate(**IBUPROFEN))
        assert vstore.search_fts("u1", "what is the") == []
        assert vstore.search_fts("u1", '"ibuprofen" OR (') != []

    def test_keyword_index_follows_updates(self, tmp_path, embedder):
        s = VectorMemoryStore(str(tmp_path / "loose.db"), embedder=embedder, dedupe_threshold=0.8)
        mem_id = s.store_memory("u1", "s1", _candidate(**HEADACHE))
        updated = s.store_memory("u1", "s2", _candidate(
            "Recurring headaches", details={"symptom": "headache", "severity": "severe"},
        ))
        assert updated == mem_id
        assert s.memory_count("u1") == 1
        assert s.search_fts("u1", "severe") == [(mem_id, 1.0)]

    def test_keyword_terms(self):
        assert keyword_terms("Is my Headache worse? headache!") == ["headache", "worse"]


class TestStats:
    def test_memory_stats(self, vstore):
        vstore.store_memory("u1", "s1", _candidate(**HEADACHE, importance=0.2))
        vstore.store_memory("u1", "s1", _candidate(**IBUPROFEN, importance=0.6))
        vstore._db.execute(
            "UPDATE semantic_memory SET extracted_at = ? WHERE memory_type = 'medication'",
            (time.time() - 30 * 24 * 3600,),
        )
        vstore._db.commit()

        stats = vstore.get_memory_stats("u1")
        assert stats.total_memories == 2
        assert stats.memory_types == {"symptom": 1, "medication": 1}
        assert stats.average_importance == pytest.approx(0.4)
        assert stats.recent_memories == 1

    def test_stats_for_unknown_user(self, vstore):
        stats = vstore.get_memory_stats("nobody")
        assert stats.total_memories == 0
        assert stats.average_importance == 0.0
        assert stats.recent_memories == 0
