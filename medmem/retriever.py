"""Hybrid memory retrieval: cosine similarity + FTS5 keyword search with
relevance scoring, plus the "previous session" text block used in prompts."""

from __future__ import annotations

import logging
import time
from typing import Callable

from .models import SearchResult
from .prompts import SEMANTIC_CONTEXT_HEADER
from .vector_store import VectorMemoryStore

logger = logging.getLogger("medmem.retriever")

SECONDS_PER_DAY = 24 * 3600


class MemoryRetriever:
    """
    Retrieves relevant semantic memories for a query.

    Pipeline (hybrid_search):
    1. Vector similarity search, keeping hits above ``vector_threshold``
    2. FTS5 keyword search
    3. combined = similarity + KEYWORD_WEIGHT * keyword score
    4. relevance = weighted mix of combined, importance, confidence and a
       recency bonus that decays to zero over ``RECENCY_DAYS``
    5. Sort by relevance, cut to ``limit``
    """

    KEYWORD_WEIGHT = 0.3

    WEIGHT_COMBINED = 0.7
    WEIGHT_IMPORTANCE = 0.2
    WEIGHT_CONFIDENCE = 0.1
    WEIGHT_RECENCY = 0.05
    RECENCY_DAYS = 30

    MAX_PER_TYPE = 3

    def __init__(
        self,
        store: VectorMemoryStore,
        vector_threshold: float = 0.6,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.vector_threshold = vector_threshold
        self._clock = clock

    def relevance(self, combined: float, result: SearchResult) -> float:
        score = combined * self.WEIGHT_COMBINED
        score += result.importance * self.WEIGHT_IMPORTANCE
        score += result.confidence * self.WEIGHT_CONFIDENCE
        age_days = (self._clock() - result.extracted_at) / SECONDS_PER_DAY
        recency = max(0.0, (self.RECENCY_DAYS - age_days) / self.RECENCY_DAYS)
        score += min(1.0, recency) * self.WEIGHT_RECENCY
        return min(1.0, score)

    def semantic_search(
        self,
        user_id: str,
        query: str,
        limit: int = 10,
        threshold: float = 0.7,
        memory_types: list[str] | None = None,
    ) -> list[SearchResult]:
        """Vector-only search: hits at or above *threshold* similarity, by relevance."""
        fetch = limit * 3 if memory_types else limit
        hits = self.store.search_vector(user_id, query, top_k=fetch)
        results = []
        for hit in hits:
            if hit.similarity < threshold:
                continue
            if memory_types and hit.memory_type not in memory_types:
                continue
            hit.relevance = self.relevance(hit.similarity, hit)
            results.append(hit)
        results.sort(key=lambda r: r.relevance, reverse=True)
        logger.debug("semantic_search: query=%r | hits=%d | kept=%d", query, len(hits), len(results))
        return results[:limit]

    def hybrid_search(self, user_id: str, query: str, limit: int = 10) -> list[SearchResult]:
        """Combine vector and keyword hits; keyword-only hits count with zero similarity."""
        vec_hits = [
            h for h in self.store.search_vector(user_id, query, top_k=limit)
            if h.similarity > self.vector_threshold
        ]
        keyword_scores = dict(self.store.search_fts(user_id, query, top_k=limit))

        candidates: dict[str, SearchResult] = {h.memory_id: h for h in vec_hits}
        for mem_id in keyword_scores:
            if mem_id in candidates:
                continue
            memory = self.store.get_memory(mem_id)
            if memory is None:
                logger.debug("skipping missing memory %s", mem_id)
                continue
            candidates[mem_id] = memory

        results = []
        for mem_id, result in candidates.items():
            combined = result.similarity + keyword_scores.get(mem_id, 0.0) * self.KEYWORD_WEIGHT
            result.relevance = self.relevance(combined, result)
            results.append(result)

        results.sort(key=lambda r: r.relevance, reverse=True)
        logger.info(
            "hybrid_search: query=%r | vector=%d | keyword=%d | returned=%d",
            query, len(vec_hits), len(keyword_scores), min(limit, len(results)),
        )
        return results[:limit]

    def get_contextual_memories(
        self,
        user_id: str,
        query: str,
        related_symptoms: list[str] | None = None,
        limit: int = 5,
    ) -> str:
        """Render the best matches for *query* as a prompt-ready block, or ""."""
        expanded = " ".join([query, *(related_symptoms or [])]).strip()
        if not expanded:
            return ""
        memories = self.hybrid_search(user_id, expanded, limit=limit)
        if not memories:
            return ""

        grouped: dict[str, list[SearchResult]] = {}
        for memory in memories:
            grouped.setdefault(memory.memory_type, []).append(memory)

        lines = [SEMANTIC_CONTEXT_HEADER, ""]
        for memory_type, items in grouped.items():
            lines.append(f"**{memory_type.replace('_', ' ').upper()}:**")
            for item in items[: self.MAX_PER_TYPE]:
                lines.append(f"• {item.summary} ({round(item.relevance * 100)}% relevant)")
            lines.append("")
        return "\n".join(lines).strip()
