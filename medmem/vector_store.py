"""Semantic memory index: SQLite + sqlite-vec cosine search + FTS5 keyword search."""

from __future__ import annotations

import json
import logging
import re
import sqlite3
import struct
import threading
import time
import uuid
from typing import Any

import sqlite_vec
from sentence_transformers import SentenceTransformer

from .errors import PersistenceError, SchemaInitError
from .models import STOPWORDS, MemoryCandidate, MemoryStats, SearchResult

logger = logging.getLogger("medmem.vector_store")

RECENT_WINDOW_SECONDS = 7 * 24 * 3600


def _serialize_f32(vector: list[float]) -> bytes:
    """Serialize a list of floats into bytes for sqlite-vec."""
    return struct.pack(f"{len(vector)}f", *vector)


def memory_content(summary: str, details: dict[str, Any]) -> str:
    """Text that is embedded and keyword-indexed for one memory."""
    return f"{summary} {json.dumps(details, sort_keys=True)}"


def keyword_terms(query: str, limit: int = 10) -> list[str]:
    words = re.findall(r"[a-z0-9]+", query.lower())
    seen: dict[str, None] = {}
    for w in words:
        if w not in STOPWORDS and len(w) > 2:
            seen.setdefault(w, None)
    return list(seen)[:limit]


class VectorMemoryStore:
    """
    Per-user semantic memory index.

    Each memory is stored once with its embedding (a float32 BLOB compared
    with ``vec_distance_cosine``) and mirrored into an FTS5 table sharing the
    same rowid. Storing a memory whose embedding is within
    ``dedupe_threshold`` cosine similarity of one the user already has
    updates that memory instead of adding a near-duplicate.
    """

    EMBEDDING_MODEL = "all-MiniLM-L6-v2"
    EMBEDDING_DIM = 384

    def __init__(
        self,
        db_path: str = "memory.db",
        embedder: Any = None,
        embedding_dim: int = EMBEDDING_DIM,
        dedupe_threshold: float = 0.95,
    ):
        self.db_path = db_path
        self.embedding_dim = embedding_dim
        self.dedupe_threshold = dedupe_threshold
        self._embedder = embedder  # lazy load when None
        self._db: sqlite3.Connection | None = None
        self._lock = threading.Lock()
        self._schema_ready = False

    @property
    def embedder(self) -> Any:
        if self._embedder is None:
            self._embedder = SentenceTransformer(self.EMBEDDING_MODEL)
            logger.info("Embedding model loaded on device: %s", self._embedder.device)
        return self._embedder

    def embed(self, text: str) -> list[float]:
        """Generate embedding for text. Returns list of floats."""
        vector = [float(x) for x in self.embedder.encode(text)]
        if len(vector) != self.embedding_dim:
            raise ValueError(f"embedding has {len(vector)} dims, expected {self.embedding_dim}")
        return vector

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def ensure_schema(self) -> None:
        """Load sqlite-vec and create tables if needed. Safe to call repeatedly."""
        with self._lock:
            if self._schema_ready:
                return
            try:
                if self._db is None:
                    db = sqlite3.connect(self.db_path, check_same_thread=False)
                    db.row_factory = sqlite3.Row
                    db.enable_load_extension(True)
                    sqlite_vec.load(db)
                    db.enable_load_extension(False)
                    self._db = db
                self._db.executescript("""
                    CREATE TABLE IF NOT EXISTS semantic_memory (
                        id           TEXT PRIMARY KEY,
                        user_id      TEXT NOT NULL,
                        session_id   TEXT NOT NULL,
                        memory_type  TEXT NOT NULL,
                        summary      TEXT NOT NULL,
                        details      TEXT NOT NULL DEFAULT '{}',
                        content      TEXT NOT NULL,
                        confidence   REAL NOT NULL DEFAULT 0,
                        importance   REAL NOT NULL DEFAULT 0,
                        extracted_at REAL NOT NULL,
                        updated_at   REAL NOT NULL,
                        embedding    BLOB NOT NULL
                    );

                    CREATE INDEX IF NOT EXISTS idx_semantic_memory_user
                        ON semantic_memory (user_id);

                    CREATE VIRTUAL TABLE IF NOT EXISTS semantic_memory_fts USING fts5(
                        content, memory_type
                    );
                """)
                self._db.commit()
            except (sqlite3.Error, AttributeError) as e:
                # AttributeError: interpreter built without extension loading
                raise SchemaInitError(f"could not initialise semantic index at {self.db_path}: {e}") from e
            self._schema_ready = True
            logger.debug("Semantic schema ready at %s", self.db_path)

    def _conn(self) -> sqlite3.Connection:
        # Caller holds self._lock
        if not self._schema_ready or self._db is None:
            raise SchemaInitError("ensure_schema() has not completed")
        return self._db

    def close(self) -> None:
        with self._lock:
            if self._db is not None:
                self._db.close()
                self._db = None
                self._schema_ready = False

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def store_memory(self, user_id: str, session_id: str, candidate: MemoryCandidate) -> str:
        """Index *candidate* for *user_id*. Returns the memory id (new or updated)."""
        self.ensure_schema()
        details = candidate.details.to_dict()
        content = memory_content(candidate.summary, details)
        try:
            blob = _serialize_f32(self.embed(content))
        except Exception as e:
            # Model load, device and dimension errors all skip this one memory
            raise PersistenceError(f"could not embed memory: {e}") from e

        now = time.time()
        with self._lock:
            db = self._conn()
            try:
                duplicate = db.execute("""
                    SELECT rowid, id, vec_distance_cosine(embedding, ?) AS distance
                      FROM semantic_memory
                     WHERE user_id = ?
                     ORDER BY distance
                     LIMIT 1
                """, (blob, user_id)).fetchone()

                if (duplicate is not None and duplicate["distance"] is not None
                        and 1.0 - duplicate["distance"] >= self.dedupe_threshold):
                    db.execute("""
                        UPDATE semantic_memory
                           SET session_id = ?, memory_type = ?, summary = ?, details = ?,
                               content = ?, confidence = ?, importance = ?,
                               updated_at = ?, embedding = ?
                         WHERE rowid = ?
                    """, (session_id, candidate.memory_type, candidate.summary,
                          json.dumps(details), content, candidate.confidence,
                          candidate.importance, now, blob, duplicate["rowid"]))
                    db.execute(
                        "UPDATE semantic_memory_fts SET content = ?, memory_type = ? WHERE rowid = ?",
                        (content, candidate.memory_type, duplicate["rowid"]),
                    )
                    db.commit()
                    logger.debug("Updated near-duplicate memory %s", duplicate["id"])
                    return duplicate["id"]

                mem_id = f"sem_{uuid.uuid4().hex[:12]}"
                cur = db.execute("""
                    INSERT INTO semantic_memory (id, user_id, session_id, memory_type, summary,
                                                 details, content, confidence, importance,
                                                 extracted_at, updated_at, embedding)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (mem_id, user_id, session_id, candidate.memory_type, candidate.summary,
                      json.dumps(details), content, candidate.confidence,
                      candidate.importance, now, now, blob))
                # FTS rowid is kept equal to the semantic_memory rowid
                db.execute(
                    "INSERT INTO semantic_memory_fts (rowid, content, memory_type) VALUES (?, ?, ?)",
                    (cur.lastrowid, content, candidate.memory_type),
                )
                db.commit()
                return mem_id
            except sqlite3.Error as e:
                db.rollback()
                raise PersistenceError(f"could not index memory for {user_id}: {e}") from e

    def batch_store_memories(
        self,
        user_id: str,
        session_id: str,
        candidates: list[MemoryCandidate],
    ) -> int:
        """Store each candidate; failures are logged and skipped. Returns the stored count."""
        stored = 0
        for candidate in candidates:
            try:
                self.store_memory(user_id, session_id, candidate)
                stored += 1
            except PersistenceError as e:
                logger.warning("Skipping semantic memory %r: %s", candidate.summary[:60], e)
        return stored

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def search_vector(self, user_id: str, query: str, top_k: int = 10) -> list[SearchResult]:
        """Cosine similarity search over one user's memories, best first."""
        self.ensure_schema()
        blob = _serialize_f32(self.embed(query))
        with self._lock:
            rows = self._conn().execute("""
                SELECT *, vec_distance_cosine(embedding, ?) AS distance
                  FROM semantic_memory
                 WHERE user_id = ?
                 ORDER BY distance
                 LIMIT ?
            """, (blob, user_id, top_k)).fetchall()
        results = []
        for r in rows:
            if r["distance"] is None:
                continue
            results.append(self._row_to_result(r, similarity=1.0 - r["distance"]))
        return results

    def search_fts(self, user_id: str, query: str, top_k: int = 10) -> list[tuple[str, float]]:
        """Keyword search. Returns (memory_id, keyword score) with score = 1 / (1 + rank)."""
        words = keyword_terms(query)
        if not words:
            return []
        self.ensure_schema()
        fts_query = " OR ".join(f'"{w}"' for w in words)
        with self._lock:
            try:
                rows = self._conn().execute("""
                    SELECT m.id
                      FROM semantic_memory_fts f
                      JOIN semantic_memory m ON m.rowid = f.rowid
                     WHERE semantic_memory_fts MATCH ? AND m.user_id = ?
                     ORDER BY f.rank
                     LIMIT ?
                """, (fts_query, user_id, top_k)).fetchall()
            except sqlite3.OperationalError as e:
                logger.warning("FTS query %r failed: %s", fts_query, e)
                return []
        return [(r["id"], 1.0 / (1 + rank)) for rank, r in enumerate(rows)]

    def get_memory(self, memory_id: str) -> SearchResult | None:
        self.ensure_schema()
        with self._lock:
            row = self._conn().execute(
                "SELECT * FROM semantic_memory WHERE id = ?", (memory_id,)
            ).fetchone()
        return self._row_to_result(row, similarity=0.0) if row else None

    def memory_count(self, user_id: str) -> int:
        self.ensure_schema()
        with self._lock:
            return self._conn().execute(
                "SELECT COUNT(*) FROM semantic_memory WHERE user_id = ?", (user_id,)
            ).fetchone()[0]

    def get_memory_stats(self, user_id: str) -> MemoryStats:
        self.ensure_schema()
        cutoff = time.time() - RECENT_WINDOW_SECONDS
        with self._lock:
            db = self._conn()
            type_rows = db.execute(
                "SELECT memory_type, COUNT(*) AS n FROM semantic_memory "
                "WHERE user_id = ? GROUP BY memory_type",
                (user_id,),
            ).fetchall()
            agg = db.execute(
                "SELECT COUNT(*) AS total, AVG(importance) AS avg_importance, "
                "SUM(CASE WHEN extracted_at >= ? THEN 1 ELSE 0 END) AS recent "
                "FROM semantic_memory WHERE user_id = ?",
                (cutoff, user_id),
            ).fetchone()
        return MemoryStats(
            total_memories=agg["total"],
            memory_types={r["memory_type"]: r["n"] for r in type_rows},
            average_importance=agg["avg_importance"] or 0.0,
            recent_memories=agg["recent"] or 0,
        )

    @staticmethod
    def _row_to_result(row: sqlite3.Row, similarity: float) -> SearchResult:
        try:
            details = json.loads(row["details"])
        except (TypeError, json.JSONDecodeError):
            details = {}
        return SearchResult(
            memory_id=row["id"],
            memory_type=row["memory_type"],
            summary=row["summary"],
            details=details if isinstance(details, dict) else {},
            confidence=row["confidence"],
            importance=row["importance"],
            extracted_at=row["extracted_at"],
            similarity=similarity,
        )
