"""Data models for the chat memory extraction system."""

from __future__ import annotations

import json
import time
import uuid
from dataclasses import dataclass, field, fields, replace
from typing import Any, ClassVar, Iterable, Literal, Union


# -- Constants --

MEMORY_TYPES = Literal[
    "symptom", "medication", "medical_history",
    "lifestyle", "preference", "concern", "follow_up",
]

# Taxonomy order, also used when rendering prompts
VALID_MEMORY_TYPES = (
    "symptom", "medication", "medical_history",
    "lifestyle", "preference", "concern", "follow_up",
)

CONVERSATION_ROLES = frozenset({"user", "assistant"})

# Substrings that mark a message as health-related (matched on lowercased text)
HEALTH_KEYWORDS = (
    "pain", "symptom", "medication", "doctor", "hospital", "diagnosis",
    "treatment", "surgery", "therapy", "prescription", "illness", "disease",
    "health", "medical", "condition", "chronic", "acute", "fever", "cough",
    "headache", "nausea", "fatigue", "injury", "allergy", "blood", "pressure",
    "diabetes", "heart", "lung", "kidney", "liver", "stomach", "brain",
    "migraine", "dizz", "rash", "vomit", "insomnia", "anxiety", "infection",
    "inflammation", "chest", "throat", "breath", "dose", "pill",
)

STOPWORDS = frozenset({
    "the", "a", "an", "is", "are", "was", "were", "i", "me", "my",
    "can", "you", "your", "we", "they", "it", "its", "this", "that",
    "in", "on", "at", "to", "for", "of", "with", "and", "or", "but",
    "not", "no", "do", "does", "did", "has", "have", "had", "be",
    "been", "being", "will", "would", "could", "should", "may",
    "might", "shall", "so", "if", "then", "than", "too", "very",
    "just", "about", "up", "out", "how", "what", "when", "where",
    "who", "which", "there", "here", "all", "each", "every", "both",
    "few", "more", "most", "other", "some", "such", "only", "own",
    "same", "also", "into", "over", "after", "before", "between",
})


# -- Helpers --

def _clean_str(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, (list, dict)):
        value = json.dumps(value)
    text = str(value).strip()
    return text or None


def _str_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple, set)):
        return []
    return [str(v).strip() for v in value if v is not None and str(v).strip()]


# -- Conversation --

@dataclass
class Message:
    """One chat turn."""
    role: str               # "user" or "assistant" after filtering
    content: str

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Message:
        content = raw.get("content")
        return cls(
            role=str(raw.get("role") or ""),
            content="" if content is None else str(content),
        )


def filter_conversation(messages: Iterable[Message | dict[str, Any]]) -> list[Message]:
    """Coerce raw messages and drop everything that is not user/assistant."""
    out = []
    for msg in messages:
        if not isinstance(msg, Message):
            msg = Message.from_dict(msg)
        if msg.role in CONVERSATION_ROLES:
            out.append(msg)
    return out


@dataclass(frozen=True)
class ChunkingStrategy:
    max_tokens_per_chunk: int = 2000
    overlap_messages: int = 2     # messages shared with the previous chunk
    min_chunk_size: int = 3
    max_chunk_size: int = 20
    prioritize_health_content: bool = True   # informational; chunk order is always health-first

    def merged(self, **overrides: Any) -> ChunkingStrategy:
        return replace(self, **overrides)


@dataclass
class Chunk:
    """A contiguous slice of the filtered conversation."""
    messages: list[Message]
    start_index: int
    end_index: int          # inclusive
    token_count: int
    importance: float       # 0.0 to 1.0
    has_health_content: bool
    id: str

    @staticmethod
    def generate_id(start_index: int, end_index: int) -> str:
        return f"chunk_{start_index}_{end_index}_{uuid.uuid4().hex[:8]}"


# -- Details: one variant per memory type --

@dataclass
class _StructuredDetails:
    """Shared parsing for variants with a fixed set of fields.

    Keys the variant does not know are preserved in ``extra`` so that nothing
    the oracle returned is lost on a round trip through the store.
    """

    memory_type: ClassVar[str] = ""
    primary_field: ClassVar[str] = ""
    list_fields: ClassVar[frozenset] = frozenset()
    aliases: ClassVar[dict] = {}

    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]):
        data = dict(raw)
        for alias, name in cls.aliases.items():
            if alias in data and name not in data:
                data[name] = data.pop(alias)
        kwargs: dict[str, Any] = {}
        for f in fields(cls):
            if f.name == "extra" or f.name not in data:
                continue
            value = data.pop(f.name)
            kwargs[f.name] = _str_list(value) if f.name in cls.list_fields else _clean_str(value)
        return cls(extra=data, **kwargs)

    def to_dict(self) -> dict[str, Any]:
        out = dict(self.extra)
        for f in fields(self):
            if f.name == "extra":
                continue
            value = getattr(self, f.name)
            if value:
                out[f.name] = value
        return out

    @property
    def primary(self) -> str | None:
        return getattr(self, self.primary_field)


@dataclass
class SymptomDetails(_StructuredDetails):
    memory_type: ClassVar[str] = "symptom"
    primary_field: ClassVar[str] = "symptom"
    list_fields: ClassVar[frozenset] = frozenset({"triggers"})
    aliases: ClassVar[dict] = {"name": "symptom"}

    symptom: str | None = None
    duration: str | None = None
    frequency: str | None = None
    severity: str | None = None
    triggers: list[str] = field(default_factory=list)


@dataclass
class MedicationDetails(_StructuredDetails):
    memory_type: ClassVar[str] = "medication"
    primary_field: ClassVar[str] = "medication"
    aliases: ClassVar[dict] = {"name": "medication", "drug": "medication", "dose": "dosage"}

    medication: str | None = None
    dosage: str | None = None
    frequency: str | None = None
    response: str | None = None


@dataclass
class MedicalHistoryDetails(_StructuredDetails):
    memory_type: ClassVar[str] = "medical_history"
    primary_field: ClassVar[str] = "condition"
    aliases: ClassVar[dict] = {"diagnosis": "condition"}

    condition: str | None = None
    date: str | None = None
    status: str | None = None


@dataclass
class ConcernDetails(_StructuredDetails):
    memory_type: ClassVar[str] = "concern"
    primary_field: ClassVar[str] = "concern"

    concern: str | None = None
    severity: str | None = None


@dataclass
class FollowUpDetails(_StructuredDetails):
    memory_type: ClassVar[str] = "follow_up"
    primary_field: ClassVar[str] = "follow_up"
    aliases: ClassVar[dict] = {"followUp": "follow_up", "item": "follow_up"}

    follow_up: str | None = None
    due: str | None = None


@dataclass
class LifestyleDetails:
    """Free-form factors such as sleep, diet, exercise, stress."""
    memory_type: ClassVar[str] = "lifestyle"

    factors: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> LifestyleDetails:
        factors = {}
        for key, value in raw.items():
            text = _clean_str(value)
            if text:
                factors[str(key)] = text
        return cls(factors=factors)

    def to_dict(self) -> dict[str, Any]:
        return dict(self.factors)

    @property
    def primary(self) -> str | None:
        return None


@dataclass
class PreferenceDetails:
    memory_type: ClassVar[str] = "preference"

    preferences: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> PreferenceDetails:
        return cls(preferences={str(k): v for k, v in raw.items() if v is not None})

    def to_dict(self) -> dict[str, Any]:
        return dict(self.preferences)

    @property
    def primary(self) -> str | None:
        return None


Details = Union[
    SymptomDetails, MedicationDetails, MedicalHistoryDetails,
    LifestyleDetails, PreferenceDetails, ConcernDetails, FollowUpDetails,
]

DETAILS_TYPES: dict[str, type] = {
    "symptom": SymptomDetails,
    "medication": MedicationDetails,
    "medical_history": MedicalHistoryDetails,
    "lifestyle": LifestyleDetails,
    "preference": PreferenceDetails,
    "concern": ConcernDetails,
    "follow_up": FollowUpDetails,
}


def details_from_dict(memory_type: str, raw: Any) -> Details:
    """Build the details variant for *memory_type* from whatever was stored.

    Accepts a dict, a JSON string, or a bare string (taken as the primary value).
    """
    cls = DETAILS_TYPES[memory_type]
    if isinstance(raw, str):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, dict):
            raw = parsed
        elif raw.strip():
            key = getattr(cls, "primary_field", "") or "note"
            raw = {key: raw.strip()}
        else:
            raw = {}
    if not isinstance(raw, dict):
        raw = {}
    return cls.from_dict(raw)


# -- Candidates and entries --

@dataclass
class MemoryCandidate:
    """Output from the extractor before being persisted."""
    memory_type: str        # one of MEMORY_TYPES
    summary: str
    details: Details
    confidence: float = 0.0
    importance: float = 0.0
    related_symptoms: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    source_excerpts: list[str] = field(default_factory=list)

    def scaled(self, factor: float) -> MemoryCandidate:
        """Copy with importance multiplied by *factor* (the chunk's importance)."""
        return replace(self, importance=self.importance * factor)


@dataclass
class ContextProjection:
    """The compact form of an entry kept in a user-context bucket."""
    summary: str
    details: dict[str, Any]
    confidence: float
    importance: float
    extracted_at: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "summary": self.summary,
            "details": self.details,
            "confidence": self.confidence,
            "importance": self.importance,
            "extracted_at": self.extracted_at,
        }


@dataclass
class MemoryEntry:
    """A persisted, immutable memory."""
    id: str
    user_id: str
    session_id: str
    extracted_at: float     # unix timestamp
    memory_type: str
    summary: str
    details: Details
    confidence: float
    importance: float       # already weighted by the chunk's importance
    related_symptoms: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    source_excerpts: list[str] = field(default_factory=list)

    @staticmethod
    def generate_id() -> str:
        return f"mem_{uuid.uuid4().hex[:12]}"

    @classmethod
    def from_candidate(
        cls,
        candidate: MemoryCandidate,
        user_id: str,
        session_id: str,
        chunk_id: str | None = None,
    ) -> MemoryEntry:
        tags = list(candidate.tags)
        if chunk_id:
            tags.append(chunk_id)
        return cls(
            id=cls.generate_id(),
            user_id=user_id,
            session_id=session_id,
            extracted_at=time.time(),
            memory_type=candidate.memory_type,
            summary=candidate.summary,
            details=candidate.details,
            confidence=candidate.confidence,
            importance=candidate.importance,
            related_symptoms=list(candidate.related_symptoms),
            tags=tags,
            source_excerpts=list(candidate.source_excerpts),
        )

    def projection(self) -> ContextProjection:
        return ContextProjection(
            summary=self.summary,
            details=self.details.to_dict(),
            confidence=self.confidence,
            importance=self.importance,
            extracted_at=self.extracted_at,
        )


# -- Aggregated context --

@dataclass
class ContextBucket:
    """Raw contents of one (user, memory type) row of the context table."""
    user_id: str
    memory_type: str
    data: list[Any]         # projections; older rows may hold nested lists
    last_updated: float
    session_count: int
    version: int = 0


@dataclass
class UserContext:
    previous_symptoms: list[str] = field(default_factory=list)
    current_medications: list[str] = field(default_factory=list)
    chronic_conditions: list[str] = field(default_factory=list)
    lifestyle_factors: dict[str, str] = field(default_factory=dict)
    user_preferences: dict[str, Any] = field(default_factory=dict)
    previous_concerns: list[str] = field(default_factory=list)
    follow_up_needed: list[str] = field(default_factory=list)
    medical_history: list[str] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not any((
            self.previous_symptoms, self.current_medications,
            self.chronic_conditions, self.lifestyle_factors,
            self.user_preferences, self.previous_concerns,
            self.follow_up_needed, self.medical_history,
        ))


@dataclass
class ExtractionResult:
    """Everything one extraction run produced."""
    entries: list[MemoryEntry]
    context: UserContext
    summary: str
    chunks_total: int = 0
    chunks_processed: int = 0
    chunks_failed: int = 0
    timed_out: bool = False

    @property
    def memory_count(self) -> int:
        return len(self.entries)


# -- Semantic store --

@dataclass
class SearchResult:
    """A semantic-store memory with its retrieval scores."""
    memory_id: str
    memory_type: str
    summary: str
    details: dict[str, Any]
    confidence: float
    importance: float
    extracted_at: float
    similarity: float
    relevance: float = 0.0


@dataclass
class MemoryStats:
    total_memories: int
    memory_types: dict[str, int]
    average_importance: float
    recent_memories: int    # extracted within the last 7 days
