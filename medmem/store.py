"""SQLite persistence: append-only memory entries and per-user context buckets."""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any

from .errors import PersistenceError, SchemaInitError
from .models import (
    VALID_MEMORY_TYPES,
    ContextBucket,
    MemoryEntry,
    details_from_dict,
)

logger = logging.getLogger("medmem.store")


def unwrap_projections(data: Any) -> list[Any]:
    """Flatten bucket contents written by older code that nested whole arrays.

    Lists are expanded recursively and JSON strings decoded; anything else is
    returned as-is, in order.
    """
    if isinstance(data, str):
        try:
            data = json.loads(data)
        except json.JSONDecodeError:
            return [data]
    if not isinstance(data, list):
        return [] if data is None else [data]
    out: list[Any] = []
    for item in data:
        if isinstance(item, list):
            out.extend(unwrap_projections(item))
        elif item is not None:
            out.append(item)
    return out


def _projection_importance(item: Any) -> float:
    if isinstance(item, dict):
        try:
            return float(item.get("importance") or 0.0)
        except (TypeError, ValueError):
            return 0.0
    return 0.0


def cap_projections(data: list[Any], cap: int) -> list[Any]:
    """Keep at most *cap* projections.

    Lowest importance goes first, the oldest (earliest position) on ties.
    Survivors keep their relative order.
    """
    if cap < 0:
        raise ValueError("bucket cap cannot be negative")
    excess = len(data) - cap
    if excess <= 0:
        return list(data)
    ranked = sorted(range(len(data)), key=lambda i: (_projection_importance(data[i]), i))
    evicted = set(ranked[:excess])
    return [item for i, item in enumerate(data) if i not in evicted]


class MemoryStore:
    """
    Persistent store for extracted memories, backed by SQLite.

    Two tables:
      chat_memory        append-only, one row per MemoryEntry
      user_chat_context  one row per (user_id, memory_type) bucket, with a
                         version column for optimistic concurrency

    The connection is shared across worker threads (``asyncio.to_thread``) and
    guarded by a lock.
    """

    def __init__(self, db_path: str = "memory.db", max_retries: int = 3):
        self.db_path = db_path
        self.max_retries = max_retries
        self._db: sqlite3.Connection | None = None
        self._lock = threading.Lock()
        self._schema_ready = False

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def ensure_schema(self) -> None:
        """Create tables if needed. Safe to call repeatedly."""
        with self._lock:
            if self._schema_ready:
                return
            try:
                if self._db is None:
                    self._db = sqlite3.connect(self.db_path, check_same_thread=False)
                    self._db.row_factory = sqlite3.Row
                self._db.executescript("""
                    CREATE TABLE IF NOT EXISTS chat_memory (
                        id               TEXT PRIMARY KEY,
                        user_id          TEXT NOT NULL,
                        session_id       TEXT NOT NULL,
                        extracted_at     REAL NOT NULL,
                        memory_type      TEXT NOT NULL,
                        summary          TEXT NOT NULL,
                        details          TEXT NOT NULL DEFAULT '{}',
                        confidence       REAL NOT NULL DEFAULT 0,
                        importance       REAL NOT NULL DEFAULT 0,
                        related_symptoms TEXT NOT NULL DEFAULT '[]',
                        tags             TEXT NOT NULL DEFAULT '[]',
                        source_excerpts  TEXT NOT NULL DEFAULT '[]'
                    );

                    CREATE INDEX IF NOT EXISTS idx_chat_memory_user
                        ON chat_memory (user_id, memory_type);

                    CREATE TABLE IF NOT EXISTS user_chat_context (
                        user_id       TEXT NOT NULL,
                        memory_type   TEXT NOT NULL,
                        data          TEXT NOT NULL DEFAULT '[]',
                        last_updated  REAL NOT NULL,
                        session_count INTEGER NOT NULL DEFAULT 0,
                        version       INTEGER NOT NULL DEFAULT 0,
                        PRIMARY KEY (user_id, memory_type)
                    );
                """)
                self._db.commit()
            except sqlite3.Error as e:
                raise SchemaInitError(f"could not initialise {self.db_path}: {e}") from e
            self._schema_ready = True
            logger.debug("Schema ready at %s", self.db_path)

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
    # Entries
    # ------------------------------------------------------------------

    def add_entry(self, entry: MemoryEntry) -> None:
        """Insert one immutable entry."""
        self.ensure_schema()
        with self._lock:
            db = self._conn()
            try:
                db.execute("""
                    INSERT INTO chat_memory (id, user_id, session_id, extracted_at,
                                             memory_type, summary, details, confidence,
                                             importance, related_symptoms, tags,
                                             source_excerpts)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    entry.id, entry.user_id, entry.session_id, entry.extracted_at,
                    entry.memory_type, entry.summary, json.dumps(entry.details.to_dict()),
                    entry.confidence, entry.importance,
                    json.dumps(entry.related_symptoms), json.dumps(entry.tags),
                    json.dumps(entry.source_excerpts),
                ))
                db.commit()
            except sqlite3.Error as e:
                db.rollback()
                raise PersistenceError(f"could not store entry {entry.id}: {e}") from e

    def list_entries(self, user_id: str, memory_type: str | None = None) -> list[MemoryEntry]:
        """Entries for *user_id*, most important first, then newest first."""
        self.ensure_schema()
        sql = "SELECT * FROM chat_memory WHERE user_id = ?"
        params: list[Any] = [user_id]
        if memory_type is not None:
            sql += " AND memory_type = ?"
            params.append(memory_type)
        sql += " ORDER BY importance DESC, extracted_at DESC"
        with self._lock:
            try:
                rows = self._conn().execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise PersistenceError(f"could not read entries for {user_id}: {e}") from e
        entries = []
        for row in rows:
            if row["memory_type"] not in VALID_MEMORY_TYPES:
                logger.warning("Skipping entry %s with unknown type %r", row["id"], row["memory_type"])
                continue
            entries.append(self._row_to_entry(row))
        return entries

    def entry_count(self, user_id: str | None = None) -> int:
        self.ensure_schema()
        with self._lock:
            if user_id is None:
                row = self._conn().execute("SELECT COUNT(*) FROM chat_memory").fetchone()
            else:
                row = self._conn().execute(
                    "SELECT COUNT(*) FROM chat_memory WHERE user_id = ?", (user_id,)
                ).fetchone()
        return row[0]

    # ------------------------------------------------------------------
    # Context buckets
    # ------------------------------------------------------------------

    def get_bucket(self, user_id: str, memory_type: str) -> ContextBucket | None:
        self.ensure_schema()
        with self._lock:
            row = self._conn().execute(
                "SELECT * FROM user_chat_context WHERE user_id = ? AND memory_type = ?",
                (user_id, memory_type),
            ).fetchone()
        return self._row_to_bucket(row) if row else None

    def get_context_buckets(self, user_id: str) -> list[ContextBucket]:
        """All buckets for *user_id*, in taxonomy order."""
        self.ensure_schema()
        with self._lock:
            try:
                rows = self._conn().execute(
                    "SELECT * FROM user_chat_context WHERE user_id = ?", (user_id,)
                ).fetchall()
            except sqlite3.Error as e:
                raise PersistenceError(f"could not read context for {user_id}: {e}") from e
        order = {t: i for i, t in enumerate(VALID_MEMORY_TYPES)}
        buckets = [self._row_to_bucket(r) for r in rows]
        buckets.sort(key=lambda b: order.get(b.memory_type, len(order)))
        return buckets

    def fold_into_context(
        self,
        user_id: str,
        memory_type: str,
        projections: list[dict[str, Any]],
        bucket_cap: int = 50,
    ) -> ContextBucket:
        """
        Append *projections* to the (user_id, memory_type) bucket.

        Creates the bucket on first use, otherwise increments its session
        count. The write is conditional on the version read; a concurrent
        writer causes a re-read and another attempt, up to ``max_retries``.
        """
        self.ensure_schema()
        for attempt in range(1, self.max_retries + 1):
            with self._lock:
                db = self._conn()
                try:
                    bucket = self._fold_once(db, user_id, memory_type, projections, bucket_cap)
                except sqlite3.Error as e:
                    db.rollback()
                    raise PersistenceError(
                        f"could not update {memory_type} context for {user_id}: {e}"
                    ) from e
            if bucket is not None:
                return bucket
            logger.debug(
                "Version conflict on %s/%s (attempt %d/%d)",
                user_id, memory_type, attempt, self.max_retries,
            )
        raise PersistenceError(
            f"gave up updating {memory_type} context for {user_id} after "
            f"{self.max_retries} conflicting writes"
        )

    def _fold_once(
        self,
        db: sqlite3.Connection,
        user_id: str,
        memory_type: str,
        projections: list[dict[str, Any]],
        bucket_cap: int,
    ) -> ContextBucket | None:
        """One read-modify-write attempt. Returns None on a version conflict."""
        now = time.time()
        row = db.execute(
            "SELECT data, session_count, version FROM user_chat_context "
            "WHERE user_id = ? AND memory_type = ?",
            (user_id, memory_type),
        ).fetchone()

        if row is None:
            data = cap_projections(list(projections), bucket_cap)
            cur = db.execute("""
                INSERT INTO user_chat_context (user_id, memory_type, data, last_updated,
                                               session_count, version)
                VALUES (?, ?, ?, ?, 1, 1)
                ON CONFLICT (user_id, memory_type) DO NOTHING
            """, (user_id, memory_type, json.dumps(data), now))
            db.commit()
            if cur.rowcount == 0:
                return None
            return ContextBucket(user_id, memory_type, data, now, 1, 1)

        existing = unwrap_projections(row["data"])
        data = cap_projections(existing + list(projections), bucket_cap)
        if len(existing) + len(projections) > len(data):
            logger.info(
                "Evicted %d low-importance %s projections for %s",
                len(existing) + len(projections) - len(data), memory_type, user_id,
            )
        session_count = row["session_count"] + 1
        version = row["version"] + 1
        cur = db.execute("""
            UPDATE user_chat_context
               SET data = ?, last_updated = ?, session_count = ?, version = ?
             WHERE user_id = ? AND memory_type = ? AND version = ?
        """, (json.dumps(data), now, session_count, version,
              user_id, memory_type, row["version"]))
        db.commit()
        if cur.rowcount == 0:
            return None
        return ContextBucket(user_id, memory_type, data, now, session_count, version)

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    def write_snapshot(self, user_id: str, snapshot_dir: str = "snapshots") -> Path:
        """Write a human-readable markdown snapshot of a user's memory."""
        os.makedirs(snapshot_dir, exist_ok=True)
        entries = self.list_entries(user_id)
        buckets = self.get_context_buckets(user_id)

        safe_user = "".join(c if c.isalnum() or c in "-_" else "_" for c in user_id)
        path = Path(snapshot_dir) / f"{safe_user}_{time.strftime('%Y%m%d_%H%M%S')}.md"
        with open(path, "w", encoding="utf-8") as f:
            f.write(f"# Memory Snapshot: {user_id}\n")
            f.write(f"Generated: {time.strftime('%Y-%m-%d %H:%M:%S')}\n\n")

            if buckets:
                f.write("## Context\n")
                for b in buckets:
                    f.write(
                        f"- **{b.memory_type}**: {len(unwrap_projections(b.data))} items, "
                        f"{b.session_count} sessions\n"
                    )
                f.write("\n")

            current_type = None
            for e in sorted(entries, key=lambda x: (VALID_MEMORY_TYPES.index(x.memory_type), -x.importance)):
                if e.memory_type != current_type:
                    current_type = e.memory_type
                    f.write(f"## {current_type.replace('_', ' ').title()}\n")
                f.write(
                    f"- {e.summary} "
                    f"(imp: {e.importance:.2f}, conf: {e.confidence:.2f}, session: {e.session_id})\n"
                )

            f.write(f"\nTotal entries: {len(entries)}\n")
        return path

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> MemoryEntry:
        return MemoryEntry(
            id=row["id"],
            user_id=row["user_id"],
            session_id=row["session_id"],
            extracted_at=row["extracted_at"],
            memory_type=row["memory_type"],
            summary=row["summary"],
            details=details_from_dict(row["memory_type"], row["details"]),
            confidence=row["confidence"],
            importance=row["importance"],
            related_symptoms=json.loads(row["related_symptoms"] or "[]"),
            tags=json.loads(row["tags"] or "[]"),
            source_excerpts=json.loads(row["source_excerpts"] or "[]"),
        )

    @staticmethod
    def _row_to_bucket(row: sqlite3.Row) -> ContextBucket:
        try:
            data = json.loads(row["data"])
        except (TypeError, json.JSONDecodeError):
            logger.warning("Unreadable context data for %s/%s", row["user_id"], row["memory_type"])
            data = []
        return ContextBucket(
            user_id=row["user_id"],
            memory_type=row["memory_type"],
            data=data if isinstance(data, list) else [data],
            last_updated=row["last_updated"],
            session_count=row["session_count"],
            version=row["version"],
        )
