"""Context building: persist entries, fold them into per-user buckets, and read
the buckets back as a typed UserContext and a bounded text summary."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from .errors import PersistenceError
from .models import (
    VALID_MEMORY_TYPES,
    MemoryEntry,
    UserContext,
    details_from_dict,
)
from .prompts import SUMMARY_SECTIONS
from .retriever import MemoryRetriever
from .store import MemoryStore, unwrap_projections

logger = logging.getLogger("medmem.aggregator")

# UserContext list attribute fed by each memory type
_LIST_TARGETS = {
    "symptom": "previous_symptoms",
    "medication": "current_medications",
    "medical_history": "medical_history",
    "concern": "previous_concerns",
    "follow_up": "follow_up_needed",
}


def _as_projection(item: Any) -> dict[str, Any] | None:
    """Best-effort coercion of one stored bucket item into a projection dict."""
    if isinstance(item, str):
        text = item.strip()
        return {"summary": text, "details": {}, "importance": 0.0} if text else None
    if not isinstance(item, dict):
        return None
    out = dict(item)
    if "extracted_at" not in out and "extractedAt" in out:
        out["extracted_at"] = out.pop("extractedAt")
    return out


def _importance(projection: dict[str, Any]) -> float:
    try:
        return float(projection.get("importance") or 0.0)
    except (TypeError, ValueError):
        return 0.0


def _dedupe(names: list[str]) -> list[str]:
    seen = set()
    out = []
    for name in names:
        key = name.strip().lower()
        if key and key not in seen:
            seen.add(key)
            out.append(name.strip())
    return out


class ContextBuilder:
    """
    Turns extracted entries into durable per-user context.

    Store calls are synchronous SQLite work and run in a worker thread so the
    event loop stays free while the pipeline waits on them.
    """

    def __init__(
        self,
        store: MemoryStore,
        retriever: MemoryRetriever | None = None,
        bucket_cap: int = 50,
    ):
        self.store = store
        self.retriever = retriever
        self.bucket_cap = bucket_cap

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def store_memory_entries(self, entries: list[MemoryEntry]) -> list[MemoryEntry]:
        """Persist each entry; returns only those actually stored."""
        stored = []
        for entry in entries:
            try:
                await asyncio.to_thread(self.store.add_entry, entry)
            except PersistenceError as e:
                logger.warning("Skipping entry %s (%s): %s", entry.id, entry.memory_type, e)
                continue
            stored.append(entry)
        return stored

    async def update_user_context(self, user_id: str, entries: list[MemoryEntry]) -> None:
        """Fold *entries* into the user's buckets, one bucket write per memory type."""
        groups: dict[str, list[dict[str, Any]]] = {}
        for entry in entries:
            groups.setdefault(entry.memory_type, []).append(entry.projection().to_dict())

        for memory_type in VALID_MEMORY_TYPES:
            projections = groups.get(memory_type)
            if not projections:
                continue
            try:
                bucket = await asyncio.to_thread(
                    self.store.fold_into_context,
                    user_id, memory_type, projections, self.bucket_cap,
                )
            except PersistenceError as e:
                logger.warning("Skipping %s context update for %s: %s", memory_type, user_id, e)
                continue
            logger.debug(
                "Folded %d %s projections for %s (bucket now %d, session %d)",
                len(projections), memory_type, user_id, len(bucket.data), bucket.session_count,
            )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_user_context(self, user_id: str) -> UserContext:
        buckets = await asyncio.to_thread(self.store.get_context_buckets, user_id)
        context = UserContext()
        lists: dict[str, list[str]] = {attr: [] for attr in _LIST_TARGETS.values()}
        chronic: list[str] = []

        for bucket in buckets:
            if bucket.memory_type not in VALID_MEMORY_TYPES:
                logger.warning("Ignoring bucket with unknown type %r for %s", bucket.memory_type, user_id)
                continue
            projections = [p for p in map(_as_projection, unwrap_projections(bucket.data)) if p]
            # Stable sort keeps insertion order among equal importance
            projections.sort(key=_importance, reverse=True)

            for projection in projections:
                details = details_from_dict(bucket.memory_type, projection.get("details"))
                if bucket.memory_type == "lifestyle":
                    for key, value in details.to_dict().items():
                        context.lifestyle_factors.setdefault(key, value)
                    continue
                if bucket.memory_type == "preference":
                    for key, value in details.to_dict().items():
                        context.user_preferences.setdefault(key, value)
                    continue

                name = details.primary or str(projection.get("summary") or "").strip()
                if not name:
                    continue
                lists[_LIST_TARGETS[bucket.memory_type]].append(name)
                if bucket.memory_type == "medical_history":
                    status = (details.status or "").lower()
                    if "chronic" in status:
                        chronic.append(name)

        for attr, names in lists.items():
            setattr(context, attr, _dedupe(names))
        context.chronic_conditions = _dedupe(chronic)
        return context

    async def list_memories(self, user_id: str) -> list[MemoryEntry]:
        """Entries by importance, then newest first."""
        return await asyncio.to_thread(self.store.list_entries, user_id)

    # ------------------------------------------------------------------
    # Summaries
    # ------------------------------------------------------------------

    @staticmethod
    def format_summary(context: UserContext) -> str:
        """Bounded text rendering of *context*; "" when it holds nothing."""
        lines = []
        for label, attr, limit in SUMMARY_SECTIONS:
            value = getattr(context, attr)
            if isinstance(value, dict):
                items = [f"{k}: {v}" for k, v in list(value.items())[:limit]]
            else:
                items = list(value[:limit])
            if items:
                lines.append(f"**{label}:** {', '.join(items)}")
        return "\n".join(lines)

    async def generate_contextual_summary(self, user_id: str, current_query: str | None = None) -> str:
        if current_query and self.retriever is not None:
            return await asyncio.to_thread(
                self.retriever.get_contextual_memories, user_id, current_query,
            )
        context = await self.get_user_context(user_id)
        return self.format_summary(context)

    async def get_semantic_context(
        self,
        user_id: str,
        query: str,
        symptoms: list[str] | None = None,
    ) -> str:
        if self.retriever is None:
            return ""
        return await asyncio.to_thread(
            self.retriever.get_contextual_memories, user_id, query, symptoms,
        )
