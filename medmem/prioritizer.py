"""Processing order for chunks: health content first, then importance, then recency."""

from __future__ import annotations

import logging
from typing import Any, Iterable, TYPE_CHECKING

from .models import Chunk, ChunkingStrategy, Message

if TYPE_CHECKING:
    from .chunker import ConversationChunker

logger = logging.getLogger("medmem.prioritizer")


def prioritize_chunks(chunks: Iterable[Chunk]) -> list[Chunk]:
    """Return a new list with the most valuable chunks first.

    Sort keys, in order:
    1. chunks with health content before chunks without, regardless of importance
    2. higher importance
    3. later start index (more recent)

    The sort is stable, so fully tied chunks keep their input order.
    """
    def sort_key(chunk: Chunk) -> tuple:
        return (not chunk.has_health_content, -chunk.importance, -chunk.start_index)

    return sorted(chunks, key=sort_key)


def get_optimal_chunks(
    messages: Iterable[Message | dict[str, Any]],
    max_chunks: int = 3,
    strategy: ChunkingStrategy | None = None,
    chunker: ConversationChunker | None = None,
) -> list[Chunk]:
    """Chunk, prioritize, and keep the top *max_chunks*.

    Caps the number of oracle calls spent on a very long transcript.
    """
    if chunker is None:
        from .chunker import ConversationChunker
        chunker = ConversationChunker()
    config = strategy or chunker.strategy

    all_chunks = chunker.chunk_conversation(messages, strategy=config)
    ordered = prioritize_chunks(all_chunks)
    selected = ordered[:max_chunks]

    if len(selected) < len(all_chunks):
        logger.info(
            "Keeping %d of %d chunks (dropped %d lower-priority chunks)",
            len(selected), len(all_chunks), len(all_chunks) - len(selected),
        )
    return selected
