"""Extraction run: transcript in, persisted memory and refreshed user context out."""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Iterable

import openai
from groq import AsyncGroq

from .aggregator import ContextBuilder
from .chunker import ConversationChunker
from .errors import OracleCallError
from .extractor import MemoryExtractor
from .models import (
    ExtractionResult,
    MemoryEntry,
    MemoryStats,
    Message,
    UserContext,
    filter_conversation,
)
from .pacing import TokenBucket
from .prioritizer import prioritize_chunks
from .retriever import MemoryRetriever
from .store import MemoryStore
from .vector_store import VectorMemoryStore

logger = logging.getLogger("medmem.pipeline")

PROVIDERS = ("groq", "openai", "ollama", "gemini")


def create_oracle_client(
    provider: str = "groq",
    api_key: str | None = None,
    base_url: str | None = None,
) -> Any:
    """Build an async chat-completions client for *provider*."""
    if provider not in PROVIDERS:
        raise ValueError(f"Unknown provider {provider!r}; choose from {PROVIDERS}")

    if provider == "groq" and not base_url:
        return AsyncGroq(api_key=api_key)

    # Normalize defaults for Ollama
    if provider == "ollama" and not base_url:
        base_url = "http://localhost:11434/v1"
        if not api_key:
            api_key = "ollama"

    # Normalize defaults for Gemini (OpenAI-compatible endpoint)
    if provider == "gemini" and not base_url:
        base_url = "https://generativelanguage.googleapis.com/v1beta/openai/"
        if not api_key:
            api_key = os.environ.get("GEMINI_API_KEY", "")

    # A custom base_url (like a local server) without a key gets a dummy key
    if base_url and not api_key:
        api_key = "dummy"

    return openai.AsyncOpenAI(api_key=api_key, base_url=base_url)


class MemoryPipeline:
    """
    Runs memory extraction over a chat transcript.

    Lifecycle per run:
    1. Filter the transcript to user/assistant turns (empty: return at once)
    2. Make sure both stores have their schema (failure is fatal)
    3. Chunk adaptively and order chunks by priority
    4. For each chunk: extract, persist entries, index them semantically;
       a failed oracle call skips only that chunk
    5. Fold everything stored into the user's context buckets
    6. Read the context back and summarize it

    Runs for the same user are serialized; different users run concurrently.
    """

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        provider: str = "groq",
        model: str = "llama-3.3-70b-versatile",
        db_path: str = "memory.db",
        client: Any = None,
        store: MemoryStore | None = None,
        vector_store: VectorMemoryStore | None = None,
        embedder: Any = None,
        tokenizer: Any = None,
        pacer: TokenBucket | None = None,
        oracle_timeout: float | None = 60.0,
        bucket_cap: int = 50,
        semantic_index: bool = True,
        verbose: bool = False,
    ):
        self.provider = provider
        self.model = model
        self.verbose = verbose
        self._api_key = api_key
        self._base_url = base_url
        self._client = client
        self._extractor: MemoryExtractor | None = None
        self._pacer = pacer or TokenBucket(rate=1.0, capacity=1.0)
        self._oracle_timeout = oracle_timeout

        # Components
        self.store = store or MemoryStore(db_path)
        if vector_store is None and semantic_index:
            vector_store = VectorMemoryStore(db_path, embedder=embedder)
        self.vector_store = vector_store
        self.retriever = MemoryRetriever(vector_store) if vector_store is not None else None
        self.chunker = ConversationChunker(tokenizer=tokenizer)
        self.context_builder = ContextBuilder(self.store, self.retriever, bucket_cap=bucket_cap)

        # A user's lock lives only while some run holds or awaits it
        self._user_locks: dict[str, asyncio.Lock] = {}
        self._lock_holders: dict[str, int] = {}

    @property
    def client(self) -> Any:
        # Built on first use so read-only commands need no API key
        if self._client is None:
            self._client = create_oracle_client(self.provider, self._api_key, self._base_url)
        return self._client

    @property
    def extractor(self) -> MemoryExtractor:
        if self._extractor is None:
            self._extractor = MemoryExtractor(
                self.client,
                model=self.model,
                provider=self.provider,
                pacer=self._pacer,
                timeout=self._oracle_timeout,
                verbose=self.verbose,
            )
        return self._extractor

    @asynccontextmanager
    async def _user_lock(self, user_id: str) -> AsyncIterator[None]:
        lock = self._user_locks.get(user_id)
        if lock is None:
            lock = self._user_locks[user_id] = asyncio.Lock()
        self._lock_holders[user_id] = self._lock_holders.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_holders[user_id] -= 1
            if not self._lock_holders[user_id]:
                del self._lock_holders[user_id]
                del self._user_locks[user_id]

    # ------------------------------------------------------------------
    # Extraction run
    # ------------------------------------------------------------------

    async def extract_from_chat_history(
        self,
        user_id: str,
        session_id: str,
        messages: Iterable[Message | dict[str, Any]],
        deadline: float | None = None,
    ) -> ExtractionResult:
        """
        Extract memory from *messages* for *user_id*.

        *deadline* is a budget in seconds for the whole run. Chunks not started
        when it runs out are skipped and the result is marked ``timed_out``;
        whatever was stored before that is kept and folded into the context.

        Raises SchemaInitError if a store cannot be initialised. Oracle and
        per-entry failures never escape; see ``chunks_failed``.
        """
        async with self._user_lock(user_id):
            return await self._run(user_id, session_id, messages, deadline)

    async def _run(
        self,
        user_id: str,
        session_id: str,
        messages: Iterable[Message | dict[str, Any]],
        deadline: float | None,
    ) -> ExtractionResult:
        loop = asyncio.get_running_loop()
        started = loop.time()

        conversation = filter_conversation(messages)
        if not conversation:
            logger.info("No user/assistant messages for %s; nothing to extract", user_id)
            return ExtractionResult(entries=[], context=UserContext(), summary="")

        await asyncio.to_thread(self.store.ensure_schema)
        if self.vector_store is not None:
            await asyncio.to_thread(self.vector_store.ensure_schema)

        chunks = prioritize_chunks(self.chunker.adaptive_chunk(conversation))
        logger.info(
            "Extracting for %s/%s: %d messages, %d chunks",
            user_id, session_id, len(conversation), len(chunks),
        )
        if self.verbose:
            stats = self.chunker.get_chunking_stats(chunks)
            print(f"\n[PIPELINE] {stats.total_chunks} chunks, {stats.total_tokens} tokens, "
                  f"{stats.health_content_chunks} with health content")

        stored: list[MemoryEntry] = []
        processed = 0
        failed = 0
        timed_out = False

        try:
            for position, chunk in enumerate(chunks):
                remaining = None
                if deadline is not None:
                    remaining = deadline - (loop.time() - started)
                    if remaining <= 0:
                        timed_out = True
                        logger.warning(
                            "Deadline reached for %s; skipping %d of %d chunks",
                            user_id, len(chunks) - position, len(chunks),
                        )
                        break

                try:
                    candidates = await self.extractor.extract(chunk, timeout=remaining)
                except OracleCallError as e:
                    failed += 1
                    logger.error("Chunk %s failed, skipping: %s", chunk.id, e)
                    continue
                processed += 1

                entries = [
                    MemoryEntry.from_candidate(c, user_id, session_id, chunk_id=chunk.id)
                    for c in candidates
                ]
                stored.extend(await self.context_builder.store_memory_entries(entries))

                if self.vector_store is not None and candidates:
                    try:
                        indexed = await asyncio.to_thread(
                            self.vector_store.batch_store_memories, user_id, session_id, candidates,
                        )
                    except Exception as e:
                        logger.error("Semantic indexing failed for %s, entries kept: %s", chunk.id, e)
                    else:
                        logger.debug("Indexed %d/%d candidates from %s", indexed, len(candidates), chunk.id)
        finally:
            if stored:
                await self.context_builder.update_user_context(user_id, stored)

        context = await self.context_builder.get_user_context(user_id)
        summary = self.context_builder.format_summary(context)

        logger.info(
            "Run for %s done: %d entries, %d/%d chunks processed, %d failed%s",
            user_id, len(stored), processed, len(chunks), failed,
            " (timed out)" if timed_out else "",
        )
        return ExtractionResult(
            entries=stored,
            context=context,
            summary=summary,
            chunks_total=len(chunks),
            chunks_processed=processed,
            chunks_failed=failed,
            timed_out=timed_out,
        )

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    async def get_user_context(self, user_id: str) -> UserContext:
        await asyncio.to_thread(self.store.ensure_schema)
        return await self.context_builder.get_user_context(user_id)

    async def generate_contextual_summary(self, user_id: str, current_query: str | None = None) -> str:
        await asyncio.to_thread(self.store.ensure_schema)
        return await self.context_builder.generate_contextual_summary(user_id, current_query)

    async def get_semantic_context(
        self,
        user_id: str,
        query: str,
        symptoms: list[str] | None = None,
    ) -> str:
        return await self.context_builder.get_semantic_context(user_id, query, symptoms)

    async def list_memories(self, user_id: str) -> list[MemoryEntry]:
        return await self.context_builder.list_memories(user_id)

    async def get_memory_stats(self, user_id: str) -> MemoryStats | None:
        if self.vector_store is None:
            return None
        return await asyncio.to_thread(self.vector_store.get_memory_stats, user_id)

    def close(self) -> None:
        self.store.close()
        if self.vector_store is not None:
            self.vector_store.close()
