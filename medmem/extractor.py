"""LLM-based memory extraction, one oracle request per conversation chunk.

The oracle gets the chunk text plus the fixed seven-category taxonomy and is
expected to answer with a JSON array of memory candidates. Anything it returns
is parsed leniently: broken JSON is salvaged where possible, unusable items
are dropped one by one, and a completely unreadable answer yields no
candidates rather than an error.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import re
from typing import Any, Iterable

from .errors import ExtractionParseError, OracleCallError
from .models import (
    VALID_MEMORY_TYPES,
    Chunk,
    MemoryCandidate,
    Message,
    details_from_dict,
)
from .pacing import TokenBucket
from .prompts import EXTRACTION_PROMPT, EXTRACTION_SYSTEM_PROMPT, TAXONOMY

logger = logging.getLogger("medmem.extractor")

# Spellings the oracle has been seen to use for the taxonomy names
_TYPE_ALIASES = {
    "symptoms": "symptom",
    "medications": "medication",
    "history": "medical_history",
    "medicalhistory": "medical_history",
    "lifestyle_factors": "lifestyle",
    "preferences": "preference",
    "concerns": "concern",
    "followup": "follow_up",
    "follow_ups": "follow_up",
    "followups": "follow_up",
}

# Keys under which an object-shaped answer may carry the array
_WRAPPER_KEYS = ("memories", "items", "extractions", "results")


def normalize_memory_type(raw: Any) -> str | None:
    """Map an oracle type label onto the taxonomy, or None if it is not one."""
    if not isinstance(raw, str):
        return None
    name = re.sub(r"[\s\-]+", "_", raw.strip().lower())
    name = _TYPE_ALIASES.get(name, name)
    return name if name in VALID_MEMORY_TYPES else None


def _score(value: Any) -> float:
    """Coerce a confidence/importance value into [0, 1]; missing means 0."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(number):
        return 0.0
    return max(0.0, min(1.0, number))


def _as_list(value: Any) -> list[str]:
    """Coerce to a de-duplicated list of strings, keeping first-seen order."""
    if value is None:
        return []
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple)):
        return []
    seen: dict[str, None] = {}
    for v in value:
        if v is None:
            continue
        text = str(v).strip()
        if text:
            seen.setdefault(text, None)
    return list(seen)


class MemoryExtractor:
    """
    Extracts structured memory candidates from conversation chunks using an
    OpenAI-compatible chat-completions client (``groq.AsyncGroq`` or
    ``openai.AsyncOpenAI``).

    Requests go through an optional ``TokenBucket`` so consecutive chunks are
    paced to the oracle's throughput limits.
    """

    def __init__(
        self,
        client: Any,
        model: str = "llama-3.3-70b-versatile",
        provider: str = "groq",
        pacer: TokenBucket | None = None,
        timeout: float | None = 60.0,
        max_tokens: int = 2000,
        verbose: bool = False,
    ):
        self.client = client
        self.model = model
        self.provider = provider
        self.pacer = pacer
        self.timeout = timeout
        self.max_tokens = max_tokens
        self.verbose = verbose

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def extract(self, chunk: Chunk, timeout: float | None = None) -> list[MemoryCandidate]:
        """Extract from *chunk* and weight every candidate by the chunk's importance."""
        candidates = await self.extract_from_chunk(chunk.messages, timeout=timeout)
        return [c.scaled(chunk.importance) for c in candidates]

    async def extract_from_chunk(
        self,
        messages: Iterable[Message],
        timeout: float | None = None,
    ) -> list[MemoryCandidate]:
        """
        Ask the oracle for candidates found in *messages*.

        Returns [] when the answer cannot be parsed. Raises OracleCallError
        when the oracle itself fails or does not answer in time.
        """
        conversation_text = self.render_conversation(messages)
        if not conversation_text.strip():
            return []

        logger.info("Extracting from chunk (%d chars)", len(conversation_text))
        raw = await self._call_oracle(conversation_text, timeout=timeout)

        try:
            candidates = self.parse_candidates(raw)
        except ExtractionParseError as e:
            logger.warning("Discarding unparseable oracle output: %s", e)
            return []

        logger.info("Oracle returned %d usable candidates", len(candidates))
        return candidates

    @staticmethod
    def render_conversation(messages: Iterable[Message]) -> str:
        """Render messages as 'USER: ...' / 'ASSISTANT: ...' blocks."""
        return "\n\n".join(f"{m.role.upper()}: {m.content}" for m in messages)

    # ------------------------------------------------------------------
    # Oracle call
    # ------------------------------------------------------------------

    def _effective_timeout(self, timeout: float | None) -> float | None:
        if timeout is None:
            return self.timeout
        if self.timeout is None:
            return timeout
        return min(timeout, self.timeout)

    async def _call_oracle(self, conversation_text: str, timeout: float | None = None) -> str:
        prompt = EXTRACTION_PROMPT.format(
            conversation=conversation_text,
            taxonomy="\n".join(
                f"{i}. {TAXONOMY[t]}" for i, t in enumerate(VALID_MEMORY_TYPES, start=1)
            ),
            type_names=" | ".join(VALID_MEMORY_TYPES),
        )
        timeout = self._effective_timeout(timeout)

        if self.pacer is not None:
            acquired = await self.pacer.acquire(timeout=timeout)
            if not acquired:
                raise OracleCallError("no oracle capacity before the deadline")

        if self.verbose:
            print(f"\n[EXTRACTOR] Calling {self.provider}/{self.model} ({len(conversation_text)} chars)")

        kwargs = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": EXTRACTION_SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "temperature": 0.1,
            "max_tokens": self.max_tokens,
        }

        try:
            response = await asyncio.wait_for(
                self.client.chat.completions.create(**kwargs),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise OracleCallError(f"oracle did not answer within {timeout}s") from e
        except Exception as e:
            raise OracleCallError(f"oracle call failed: {e}") from e

        if self.verbose and getattr(response, "usage", None):
            print(f"  Tokens: prompt={response.usage.prompt_tokens}, "
                  f"completion={response.usage.completion_tokens}")

        try:
            content = response.choices[0].message.content
        except (AttributeError, IndexError, TypeError) as e:
            raise OracleCallError("oracle response had no message content") from e
        return content or "[]"

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    def parse_candidates(self, raw: str) -> list[MemoryCandidate]:
        """Parse the oracle's answer into candidates.

        Raises ExtractionParseError if no JSON array can be recovered at all.
        Individual malformed items are skipped.
        """
        cleaned = (raw or "").strip()
        cleaned = re.sub(r"^```(?:json)?\s*", "", cleaned)
        cleaned = re.sub(r"\s*```$", "", cleaned)
        if not cleaned:
            return []

        try:
            data = json.loads(cleaned)
        except json.JSONDecodeError:
            data = self._recover_truncated_json(cleaned)

        if data is None:
            raise ExtractionParseError(f"not JSON: {cleaned[:120]!r}")

        items = self._unwrap_items(data)
        if items is None:
            raise ExtractionParseError(f"expected a JSON array, got {type(data).__name__}")

        results = []
        for item in items:
            candidate = self._parse_item(item)
            if candidate is not None:
                results.append(candidate)
        return results

    @staticmethod
    def _unwrap_items(data: Any) -> list | None:
        if isinstance(data, list):
            return data
        if isinstance(data, dict):
            for key in _WRAPPER_KEYS:
                if isinstance(data.get(key), list):
                    return data[key]
            if "type" in data:
                return [data]
        return None

    def _parse_item(self, item: Any) -> MemoryCandidate | None:
        if not isinstance(item, dict):
            logger.debug("Rejected (not an object): %r", item)
            return None

        memory_type = normalize_memory_type(item.get("type") or item.get("memoryType"))
        if memory_type is None:
            logger.debug("Rejected (bad type): %r", item.get("type"))
            return None

        summary = str(item.get("summary") or "").strip()
        if not summary:
            logger.debug("Rejected (empty summary) for type %s", memory_type)
            return None

        try:
            details = details_from_dict(memory_type, item.get("details"))
        except (TypeError, ValueError) as e:
            logger.warning("Skipping malformed memory item: %s", e)
            return None

        related = item.get("symptoms")
        if related is None:
            related = item.get("relatedSymptoms")
        excerpts = item.get("sourceMessages")
        if excerpts is None:
            excerpts = item.get("sourceExcerpts")

        return MemoryCandidate(
            memory_type=memory_type,
            summary=summary,
            details=details,
            confidence=_score(item.get("confidence")),
            importance=_score(item.get("importance")),
            related_symptoms=_as_list(related),
            tags=_as_list(item.get("tags")),
            source_excerpts=_as_list(excerpts),
        )

    def _recover_truncated_json(self, text: str) -> Any | None:
        """Attempt to recover valid JSON from a truncated oracle response."""
        # Strategy 1: keep every complete object of the top-level array
        start = text.find("[")
        if start != -1:
            decoder = json.JSONDecoder()
            items = []
            pos = start + 1
            while pos < len(text):
                while pos < len(text) and text[pos] in " \t\r\n,":
                    pos += 1
                if pos >= len(text) or text[pos] == "]":
                    break
                try:
                    obj, pos = decoder.raw_decode(text, pos)
                except json.JSONDecodeError:
                    break
                items.append(obj)
            if items:
                logger.warning("Recovered %d items from truncated JSON", len(items))
                return items

        # Strategy 2: close whatever brackets are still open
        attempt = text.rstrip()
        attempt = re.sub(r',\s*"[^"]*$', "", attempt)
        attempt = re.sub(r",\s*$", "", attempt)
        suffix = self._closing_suffix(attempt)
        for candidate in (attempt + suffix, attempt + '"' + suffix):
            try:
                data = json.loads(candidate)
                logger.warning("Recovered truncated JSON via bracket-closing")
                return data
            except json.JSONDecodeError:
                continue

        logger.error("Failed to parse JSON: %s...", text[:200])
        return None

    @staticmethod
    def _closing_suffix(text: str) -> str:
        """Brackets needed to close *text*, innermost first, ignoring string contents."""
        stack = []
        in_string = False
        escaped = False
        for ch in text:
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
            elif ch == '"':
                in_string = True
            elif ch in "[{":
                stack.append("]" if ch == "[" else "}")
            elif ch in "]}" and stack:
                stack.pop()
        return "".join(reversed(stack))
