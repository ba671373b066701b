"""Conversation chunking: token-bounded, overlapping slices with importance scores."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable

from .models import (
    HEALTH_KEYWORDS,
    Chunk,
    ChunkingStrategy,
    Message,
    filter_conversation,
)
from .tokenizer import HeuristicTokenizer

logger = logging.getLogger("medmem.chunker")


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass
class ChunkingStats:
    """Summary of a chunking pass, for logs and the CLI."""
    total_chunks: int
    total_tokens: int
    avg_tokens_per_chunk: float
    health_content_chunks: int
    avg_importance: float


# ---------------------------------------------------------------------------
# ConversationChunker
# ---------------------------------------------------------------------------

class ConversationChunker:
    """
    Splits a conversation into overlapping chunks, each sized for a single
    extraction request, and scores every chunk.

    Chunk boundaries:
    1. Greedily add messages while the token budget and max size allow
       (a chunk always takes at least one message, however long).
    2. If the chunk is below ``min_chunk_size`` and messages remain, extend it
       to the floor even past the token budget.
    3. The next chunk starts ``overlap_messages`` before the end of this one,
       or right after it when that would not move forward.

    Scores are pure functions of the chunk's messages.
    """

    BASE_IMPORTANCE = 0.5
    WEIGHT_HEALTH = 0.3
    WEIGHT_USER = 0.2
    WEIGHT_RECENCY = 0.1

    SMALL_CONVERSATION = 10
    MEDIUM_CONVERSATION = 30

    def __init__(self, tokenizer: Any = None, strategy: ChunkingStrategy | None = None):
        self.tokenizer = tokenizer or HeuristicTokenizer()
        self.strategy = strategy or ChunkingStrategy()

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def estimate_tokens(self, message: Message) -> int:
        return self.tokenizer.count_tokens(message.content)

    def count_tokens(self, messages: Iterable[Message]) -> int:
        return sum(self.estimate_tokens(m) for m in messages)

    @staticmethod
    def has_health_content(message: Message) -> bool:
        content = message.content.lower()
        return any(keyword in content for keyword in HEALTH_KEYWORDS)

    def calculate_importance(self, messages: list[Message]) -> float:
        """Score a chunk in [0, 1].

        0.5 base, up to +0.3 for the share of health messages, up to +0.2 for
        the share of user messages, plus a small bonus that grows with position.
        """
        if not messages:
            return 0.0
        n = len(messages)
        score = self.BASE_IMPORTANCE

        health = sum(1 for m in messages if self.has_health_content(m))
        score += (health / n) * self.WEIGHT_HEALTH

        user = sum(1 for m in messages if m.role == "user")
        score += (user / n) * self.WEIGHT_USER

        for index in range(n):
            score += (index / n) * self.WEIGHT_RECENCY / n

        return max(0.0, min(1.0, score))

    # ------------------------------------------------------------------
    # Chunking
    # ------------------------------------------------------------------

    def chunk_conversation(
        self,
        messages: Iterable[Message | dict[str, Any]],
        strategy: ChunkingStrategy | None = None,
        **overrides: Any,
    ) -> list[Chunk]:
        """Split *messages* into chunks. System messages are dropped first.

        Every user/assistant message lands in at least one chunk, in order.
        """
        config = strategy or self.strategy
        if overrides:
            config = config.merged(**overrides)
        if config.max_chunk_size < 1:
            raise ValueError("max_chunk_size must be at least 1")
        if config.overlap_messages < 0:
            raise ValueError("overlap_messages cannot be negative")

        conversation = filter_conversation(messages)
        chunks: list[Chunk] = []
        cursor = 0

        while cursor < len(conversation):
            chunk = self._create_chunk(conversation, cursor, config)
            chunks.append(chunk)

            if chunk.end_index >= len(conversation) - 1:
                break

            next_cursor = chunk.end_index - config.overlap_messages + 1
            if next_cursor <= chunk.start_index:
                next_cursor = chunk.end_index + 1
            cursor = next_cursor

        logger.debug(
            "Chunked %d messages into %d chunks (budget=%d tokens, overlap=%d)",
            len(conversation), len(chunks),
            config.max_tokens_per_chunk, config.overlap_messages,
        )
        return chunks

    def _create_chunk(
        self,
        messages: list[Message],
        start_index: int,
        config: ChunkingStrategy,
    ) -> Chunk:
        """Build a single chunk starting at *start_index*."""
        end = start_index
        token_count = 0
        selected: list[Message] = []

        while end < len(messages) and len(selected) < config.max_chunk_size:
            message_tokens = self.estimate_tokens(messages[end])
            if token_count + message_tokens > config.max_tokens_per_chunk and selected:
                break
            selected.append(messages[end])
            token_count += message_tokens
            end += 1

        # Size floor wins over the token ceiling
        while len(selected) < config.min_chunk_size and end < len(messages):
            selected.append(messages[end])
            token_count += self.estimate_tokens(messages[end])
            end += 1

        end_index = end - 1
        return Chunk(
            messages=selected,
            start_index=start_index,
            end_index=end_index,
            token_count=token_count,
            importance=self.calculate_importance(selected),
            has_health_content=any(self.has_health_content(m) for m in selected),
            id=Chunk.generate_id(start_index, end_index),
        )

    def adaptive_chunk(self, messages: Iterable[Message | dict[str, Any]]) -> list[Chunk]:
        """Pick a chunking profile from the conversation length.

        Up to 10 messages: one chunk. Up to 30: at most 3 chunks. Longer: at
        most 4 chunks, health content first. Longer conversations trade
        completeness for a bounded number of oracle calls.
        """
        from .prioritizer import get_optimal_chunks

        conversation = filter_conversation(messages)
        count = len(conversation)
        if count == 0:
            return []

        if count <= self.SMALL_CONVERSATION:
            return self.chunk_conversation(
                conversation,
                max_tokens_per_chunk=3000,
                min_chunk_size=1,
                max_chunk_size=count,
            )

        if count <= self.MEDIUM_CONVERSATION:
            return get_optimal_chunks(
                conversation,
                max_chunks=3,
                strategy=self.strategy.merged(max_tokens_per_chunk=2500, overlap_messages=3),
                chunker=self,
            )

        return get_optimal_chunks(
            conversation,
            max_chunks=4,
            strategy=self.strategy.merged(
                max_tokens_per_chunk=2000,
                overlap_messages=2,
                prioritize_health_content=True,
            ),
            chunker=self,
        )

    @staticmethod
    def get_chunking_stats(chunks: list[Chunk]) -> ChunkingStats:
        if not chunks:
            return ChunkingStats(0, 0, 0.0, 0, 0.0)
        total_tokens = sum(c.token_count for c in chunks)
        return ChunkingStats(
            total_chunks=len(chunks),
            total_tokens=total_tokens,
            avg_tokens_per_chunk=total_tokens / len(chunks),
            health_content_chunks=sum(1 for c in chunks if c.has_health_content),
            avg_importance=sum(c.importance for c in chunks) / len(chunks),
        )
