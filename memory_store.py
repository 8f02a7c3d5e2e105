#!/usr/bin/env python3
"""
Memory Store - SQLite + sqlite-vec repository, one database per owner.

Storage layout (data_dir/<owner_id>/memory.db, WAL mode):
  memories              — id, content, category, valence, importance, confidence,
                          tags (JSON), phase, emotion_id, created_at, counters
  vec_memories          — memory_id TEXT, embedding float[dim] distance_metric=cosine
  emotional_data_points — one row per extracted turn
  themes                — theme PK, frequency, first/last mentioned, cached category
  theme_mentions        — theme ↔ emotional data point of the mentioning turn
  recall_events         — append-only recall audit (written by RecallLog)
  clusters              — current cluster set, replaced wholesale per run
  meta                  — key/value (embedding_dim, cluster hierarchy, ...)

Nothing crosses owners: each owner has its own file, its own per-thread
connection and its own write lock. Memories are never deleted here.
"""

import json
import re
import sqlite3
import threading
import time
from pathlib import Path
from typing import Iterable, Optional

import numpy as np
import sqlite_vec

from memory_errors import NotFound, ValidationError
from memory_models import (
    ClusterSet,
    EmotionalDataPoint,
    MemoryCluster,
    MemoryRecord,
    ThemeRecord,
)

OWNER_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.\-]{1,128}$")

_MEMORY_COLUMNS = (
    "id, conversation_ref, content, category, emotional_valence, importance, confidence, "
    "tags, phase, emotion_id, created_at, related_memory_ids, access_count, last_accessed_at"
)


def validate_owner_id(owner_id: str) -> str:
    if not isinstance(owner_id, str) or not OWNER_ID_PATTERN.match(owner_id) or owner_id in (".", ".."):
        raise ValidationError(f"invalid owner id: {owner_id!r}")
    return owner_id


def _to_blob(vector) -> bytes:
    return np.asarray(vector, dtype=np.float32).tobytes()


class MemoryStore:
    """Durable per-owner repository injected into every engine component."""

    def __init__(self, data_dir: Path, embedding_dim: int = 768):
        self.data_dir = Path(data_dir)
        self.embedding_dim = embedding_dim

        # Per-thread connections keyed by owner (WAL allows concurrent readers)
        self._local = threading.local()
        self._all_conns: list[sqlite3.Connection] = []
        self._conns_lock = threading.Lock()

        # One write lock per owner: theme increments are read-modify-write
        self._owner_locks: dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()
        self._initialized: set[str] = set()

        self.data_dir.mkdir(parents=True, exist_ok=True)

    # ── Owners ────────────────────────────────────────────────────────────────

    def owner_dir(self, owner_id: str) -> Path:
        return self.data_dir / validate_owner_id(owner_id)

    def db_file(self, owner_id: str) -> Path:
        return self.owner_dir(owner_id) / "memory.db"

    def owner_exists(self, owner_id: str) -> bool:
        return self.db_file(owner_id).exists()

    def list_owners(self) -> list[str]:
        if not self.data_dir.exists():
            return []
        return sorted(
            p.name for p in self.data_dir.iterdir()
            if p.is_dir() and OWNER_ID_PATTERN.match(p.name) and (p / "memory.db").exists()
        )

    def write_lock(self, owner_id: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._owner_locks.get(owner_id)
            if lock is None:
                lock = threading.RLock()
                self._owner_locks[owner_id] = lock
            return lock

    # ── DB connection ─────────────────────────────────────────────────────────

    def connection(self, owner_id: str) -> sqlite3.Connection:
        """Return this thread's connection for the owner, creating schema on first use."""
        validate_owner_id(owner_id)
        conns = getattr(self._local, "conns", None)
        if conns is None:
            conns = self._local.conns = {}
        conn = conns.get(owner_id)
        if conn is None:
            self.owner_dir(owner_id).mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self.db_file(owner_id)), check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.execute("PRAGMA busy_timeout=5000")
            conn.enable_load_extension(True)
            sqlite_vec.load(conn)
            conn.enable_load_extension(False)
            conns[owner_id] = conn
            with self._conns_lock:
                self._all_conns.append(conn)
        if owner_id not in self._initialized:
            self._init_db(owner_id, conn)
        return conn

    def close(self):
        with self._conns_lock:
            for conn in self._all_conns:
                try:
                    conn.close()
                except sqlite3.Error:
                    pass
            self._all_conns.clear()
        self._local = threading.local()

    # ── Schema ────────────────────────────────────────────────────────────────

    def _init_db(self, owner_id: str, conn: sqlite3.Connection):
        with self.write_lock(owner_id):
            if owner_id in self._initialized:
                return
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS memories (
                    id                  TEXT PRIMARY KEY,
                    conversation_ref    TEXT NOT NULL DEFAULT '',
                    content             TEXT NOT NULL,
                    category            TEXT NOT NULL,
                    emotional_valence   REAL NOT NULL DEFAULT 0.0,
                    importance          REAL NOT NULL DEFAULT 0.5,
                    confidence          REAL NOT NULL DEFAULT 0.5,
                    tags                TEXT NOT NULL DEFAULT '[]',
                    phase               TEXT,
                    emotion_id          TEXT,
                    created_at          REAL NOT NULL,
                    related_memory_ids  TEXT NOT NULL DEFAULT '[]',
                    access_count        INTEGER NOT NULL DEFAULT 0,
                    last_accessed_at    REAL
                );
                CREATE INDEX IF NOT EXISTS idx_memories_created ON memories(created_at);
                CREATE INDEX IF NOT EXISTS idx_memories_phase ON memories(phase);

                CREATE TABLE IF NOT EXISTS emotional_data_points (
                    id                  TEXT PRIMARY KEY,
                    conversation_ref    TEXT NOT NULL DEFAULT '',
                    valence             REAL NOT NULL,
                    arousal             REAL NOT NULL,
                    dominant_emotion    TEXT NOT NULL,
                    secondary_emotions  TEXT NOT NULL DEFAULT '[]',
                    intensity           REAL NOT NULL DEFAULT 0.5,
                    phase               TEXT,
                    timestamp           REAL NOT NULL,
                    context             TEXT NOT NULL DEFAULT ''
                );
                CREATE INDEX IF NOT EXISTS idx_emotions_ts ON emotional_data_points(timestamp);

                CREATE TABLE IF NOT EXISTS themes (
                    theme            TEXT PRIMARY KEY,
                    frequency        INTEGER NOT NULL DEFAULT 0,
                    first_mentioned  REAL NOT NULL,
                    last_mentioned   REAL NOT NULL,
                    category         TEXT
                );

                CREATE TABLE IF NOT EXISTS theme_mentions (
                    theme             TEXT NOT NULL,
                    emotion_id        TEXT,
                    conversation_ref  TEXT NOT NULL DEFAULT '',
                    mentioned_at      REAL NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_mentions_theme ON theme_mentions(theme);

                CREATE TABLE IF NOT EXISTS recall_events (
                    id               TEXT PRIMARY KEY,
                    memory_id        TEXT NOT NULL,
                    query_context    TEXT NOT NULL DEFAULT '',
                    signal_types     TEXT NOT NULL DEFAULT '[]',
                    relevance_score  REAL NOT NULL,
                    timestamp        REAL NOT NULL,
                    consumed         INTEGER NOT NULL DEFAULT 0
                );
                CREATE INDEX IF NOT EXISTS idx_recall_memory ON recall_events(memory_id);

                CREATE TABLE IF NOT EXISTS clusters (
                    id                  TEXT PRIMARY KEY,
                    theme_set           TEXT NOT NULL DEFAULT '[]',
                    emotional_centroid  REAL NOT NULL DEFAULT 0.0,
                    dominant_phase      TEXT NOT NULL,
                    strength_score      REAL NOT NULL DEFAULT 0.0,
                    member_ids          TEXT NOT NULL DEFAULT '[]',
                    last_activated      REAL NOT NULL,
                    activation_count    INTEGER NOT NULL DEFAULT 1
                );

                CREATE TABLE IF NOT EXISTS meta (
                    key   TEXT PRIMARY KEY,
                    value TEXT
                );
            """)

            row = conn.execute("SELECT value FROM meta WHERE key='embedding_dim'").fetchone()
            if row is None:
                conn.execute(
                    "INSERT INTO meta(key, value) VALUES ('embedding_dim', ?)",
                    (str(self.embedding_dim),),
                )
            elif int(row["value"]) != self.embedding_dim:
                raise ValidationError(
                    f"owner {owner_id} was created with embedding dimension {row['value']}, "
                    f"engine is configured for {self.embedding_dim}"
                )

            conn.execute(f"""
                CREATE VIRTUAL TABLE IF NOT EXISTS vec_memories USING vec0(
                    memory_id TEXT,
                    embedding float[{int(self.embedding_dim)}] distance_metric=cosine
                )
            """)
            conn.commit()
            self._initialized.add(owner_id)

    # ── Row mapping ───────────────────────────────────────────────────────────

    @staticmethod
    def _memory_from_row(owner_id: str, row: sqlite3.Row) -> MemoryRecord:
        return MemoryRecord(
            id=row["id"],
            owner_id=owner_id,
            conversation_ref=row["conversation_ref"],
            content=row["content"],
            category=row["category"],
            emotional_valence=row["emotional_valence"],
            importance=row["importance"],
            confidence=row["confidence"],
            tags=json.loads(row["tags"] or "[]"),
            phase=row["phase"],
            emotion_id=row["emotion_id"],
            created_at=row["created_at"],
            related_memory_ids=json.loads(row["related_memory_ids"] or "[]"),
            access_count=row["access_count"],
            last_accessed_at=row["last_accessed_at"],
        )

    @staticmethod
    def _emotion_from_row(owner_id: str, row: sqlite3.Row) -> EmotionalDataPoint:
        return EmotionalDataPoint(
            id=row["id"],
            owner_id=owner_id,
            conversation_ref=row["conversation_ref"],
            valence=row["valence"],
            arousal=row["arousal"],
            dominant_emotion=row["dominant_emotion"],
            secondary_emotions=json.loads(row["secondary_emotions"] or "[]"),
            intensity=row["intensity"],
            phase=row["phase"],
            timestamp=row["timestamp"],
            context_snippet=row["context"],
        )

    # ── Turn commit (extraction) ──────────────────────────────────────────────

    def _check_embedding(self, embedding) -> bytes:
        if embedding is None or len(embedding) != self.embedding_dim:
            got = None if embedding is None else len(embedding)
            raise ValidationError(f"embedding dimension {got} != {self.embedding_dim}")
        return _to_blob(embedding)

    def commit_turn(
        self,
        owner_id: str,
        emotion: Optional[EmotionalDataPoint],
        memories: list[MemoryRecord],
        themes: list[str],
        now: Optional[float] = None,
    ):
        """
        Persist everything one conversational turn produced in a single
        transaction: emotional data point, memories + embeddings, theme
        increments and theme mentions. All or nothing.
        """
        now = time.time() if now is None else now
        blobs = [self._check_embedding(m.embedding) for m in memories]

        with self.write_lock(owner_id):
            conn = self.connection(owner_id)
            try:
                if emotion is not None:
                    conn.execute("""
                        INSERT INTO emotional_data_points
                        (id, conversation_ref, valence, arousal, dominant_emotion,
                         secondary_emotions, intensity, phase, timestamp, context)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """, (
                        emotion.id, emotion.conversation_ref, emotion.valence, emotion.arousal,
                        emotion.dominant_emotion, json.dumps(emotion.secondary_emotions),
                        emotion.intensity, emotion.phase, emotion.timestamp, emotion.context_snippet,
                    ))

                for memory, blob in zip(memories, blobs):
                    conn.execute(f"""
                        INSERT INTO memories ({_MEMORY_COLUMNS})
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """, (
                        memory.id, memory.conversation_ref, memory.content, memory.category,
                        memory.emotional_valence, memory.importance, memory.confidence,
                        json.dumps(memory.tags), memory.phase, memory.emotion_id,
                        memory.created_at, json.dumps(memory.related_memory_ids),
                        memory.access_count, memory.last_accessed_at,
                    ))
                    conn.execute(
                        "INSERT INTO vec_memories(memory_id, embedding) VALUES (?, ?)",
                        (memory.id, blob),
                    )

                for theme in themes:
                    conn.execute("""
                        INSERT INTO themes (theme, frequency, first_mentioned, last_mentioned)
                        VALUES (?, 1, ?, ?)
                        ON CONFLICT(theme) DO UPDATE SET
                            frequency = frequency + 1,
                            last_mentioned = excluded.last_mentioned
                    """, (theme, now, now))
                    conn.execute(
                        "INSERT INTO theme_mentions (theme, emotion_id, conversation_ref, mentioned_at) "
                        "VALUES (?, ?, ?, ?)",
                        (theme, emotion.id if emotion else None,
                         emotion.conversation_ref if emotion else "", now),
                    )
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    # ── Memories ──────────────────────────────────────────────────────────────

    def get_memory(self, owner_id: str, memory_id: str) -> MemoryRecord:
        row = self.connection(owner_id).execute(
            f"SELECT {_MEMORY_COLUMNS} FROM memories WHERE id=?", (memory_id,)
        ).fetchone()
        if row is None:
            raise NotFound(f"memory {memory_id} not found for owner {owner_id}")
        return self._memory_from_row(owner_id, row)

    def get_memories(self, owner_id: str, memory_ids: Iterable[str]) -> dict[str, MemoryRecord]:
        ids = list(dict.fromkeys(memory_ids))
        if not ids:
            return {}
        placeholders = ",".join("?" * len(ids))
        rows = self.connection(owner_id).execute(
            f"SELECT {_MEMORY_COLUMNS} FROM memories WHERE id IN ({placeholders})", ids
        ).fetchall()
        return {row["id"]: self._memory_from_row(owner_id, row) for row in rows}

    def all_memories(self, owner_id: str) -> list[MemoryRecord]:
        rows = self.connection(owner_id).execute(
            f"SELECT {_MEMORY_COLUMNS} FROM memories ORDER BY created_at"
        ).fetchall()
        return [self._memory_from_row(owner_id, row) for row in rows]

    def count_memories(self, owner_id: str) -> int:
        return self.connection(owner_id).execute("SELECT COUNT(*) FROM memories").fetchone()[0]

    def count_memories_since(self, owner_id: str, since: float) -> int:
        return self.connection(owner_id).execute(
            "SELECT COUNT(*) FROM memories WHERE created_at > ?", (since,)
        ).fetchone()[0]

    def fetch_embedding(self, owner_id: str, memory_id: str) -> Optional[np.ndarray]:
        row = self.connection(owner_id).execute(
            "SELECT embedding FROM vec_memories WHERE memory_id=?", (memory_id,)
        ).fetchone()
        if row and row[0]:
            return np.frombuffer(row[0], dtype=np.float32)
        return None

    def nearest_memories(self, owner_id: str, vector, k: int) -> list[tuple[str, float]]:
        """
        Exact cosine KNN over the owner's embeddings.
        Returns [(memory_id, similarity)] ordered by similarity descending.
        """
        if k <= 0 or self.count_memories(owner_id) == 0:
            return []
        blob = self._check_embedding(vector)
        # k = ? rather than LIMIT: vec0 only sees LIMIT on SQLite 3.41+
        rows = self.connection(owner_id).execute("""
            SELECT memory_id, distance
            FROM vec_memories
            WHERE embedding MATCH ? AND k = ?
            ORDER BY distance
        """, (blob, int(k))).fetchall()
        return [(row[0], 1.0 - float(row[1])) for row in rows]

    def emotional_profile(self, owner_id: str) -> list[tuple[str, float, float]]:
        """(memory_id, memory valence, arousal of the turn's emotional data) for linked memories."""
        rows = self.connection(owner_id).execute("""
            SELECT m.id, m.emotional_valence, e.arousal
            FROM memories m
            JOIN emotional_data_points e ON e.id = m.emotion_id
        """).fetchall()
        return [(row[0], row[1], row[2]) for row in rows]

    def touch_memories(self, owner_id: str, memory_ids: list[str], now: Optional[float] = None):
        """Bump reference counters for recalled memories."""
        if not memory_ids:
            return
        now = time.time() if now is None else now
        with self.write_lock(owner_id):
            conn = self.connection(owner_id)
            conn.executemany(
                "UPDATE memories SET access_count = access_count + 1, last_accessed_at = ? WHERE id = ?",
                [(now, mid) for mid in memory_ids],
            )
            conn.commit()

    def link_related(self, owner_id: str, memory_id: str, related_ids: list[str]):
        """Append to a memory's related_memory_ids (the only mutable content field)."""
        with self.write_lock(owner_id):
            conn = self.connection(owner_id)
            row = conn.execute(
                "SELECT related_memory_ids FROM memories WHERE id=?", (memory_id,)
            ).fetchone()
            if row is None:
                raise NotFound(f"memory {memory_id} not found for owner {owner_id}")
            related = json.loads(row[0] or "[]")
            for rid in related_ids:
                if rid != memory_id and rid not in related:
                    related.append(rid)
            conn.execute(
                "UPDATE memories SET related_memory_ids=? WHERE id=?",
                (json.dumps(related), memory_id),
            )
            conn.commit()

    # ── Themes ────────────────────────────────────────────────────────────────

    def _theme_from_row(self, owner_id: str, row: sqlite3.Row) -> ThemeRecord:
        return ThemeRecord(
            owner_id=owner_id,
            theme=row["theme"],
            frequency=row["frequency"],
            first_mentioned=row["first_mentioned"],
            last_mentioned=row["last_mentioned"],
            category=row["category"],
        )

    def get_themes(self, owner_id: str, limit: Optional[int] = None) -> list[ThemeRecord]:
        """Themes by frequency descending, ties broken by recency then name."""
        sql = "SELECT * FROM themes ORDER BY frequency DESC, last_mentioned DESC, theme"
        params: tuple = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (int(limit),)
        rows = self.connection(owner_id).execute(sql, params).fetchall()
        return [self._theme_from_row(owner_id, row) for row in rows]

    def get_theme(self, owner_id: str, theme: str) -> ThemeRecord:
        row = self.connection(owner_id).execute(
            "SELECT * FROM themes WHERE theme=?", (theme,)
        ).fetchone()
        if row is None:
            raise NotFound(f"theme {theme!r} not found for owner {owner_id}")
        return self._theme_from_row(owner_id, row)

    def set_theme_category(self, owner_id: str, theme: str, category: str):
        with self.write_lock(owner_id):
            conn = self.connection(owner_id)
            conn.execute("UPDATE themes SET category=? WHERE theme=?", (category, theme))
            conn.commit()

    def reset_theme(self, owner_id: str, theme: str):
        """Administrative reset, the only way a theme frequency goes down."""
        with self.write_lock(owner_id):
            conn = self.connection(owner_id)
            cur = conn.execute("UPDATE themes SET frequency = 0 WHERE theme=?", (theme,))
            if cur.rowcount == 0:
                raise NotFound(f"theme {theme!r} not found for owner {owner_id}")
            conn.commit()

    def theme_emotions(self, owner_id: str, theme: str) -> list[EmotionalDataPoint]:
        """Emotional data of the turns that mentioned a theme, newest first."""
        rows = self.connection(owner_id).execute("""
            SELECT DISTINCT e.*
            FROM theme_mentions t
            JOIN emotional_data_points e ON e.id = t.emotion_id
            WHERE t.theme = ?
            ORDER BY e.timestamp DESC
        """, (theme,)).fetchall()
        return [self._emotion_from_row(owner_id, row) for row in rows]

    # ── Emotional data ────────────────────────────────────────────────────────

    def emotional_trajectory(self, owner_id: str, since: float) -> list[EmotionalDataPoint]:
        rows = self.connection(owner_id).execute(
            "SELECT * FROM emotional_data_points WHERE timestamp >= ? ORDER BY timestamp",
            (since,),
        ).fetchall()
        return [self._emotion_from_row(owner_id, row) for row in rows]

    # ── Clusters ──────────────────────────────────────────────────────────────

    def replace_clusters(self, owner_id: str, cluster_set: ClusterSet):
        """Swap the owner's whole cluster set in one transaction (last writer wins)."""
        with self.write_lock(owner_id):
            conn = self.connection(owner_id)
            try:
                conn.execute("DELETE FROM clusters")
                for c in cluster_set.clusters:
                    conn.execute("""
                        INSERT INTO clusters
                        (id, theme_set, emotional_centroid, dominant_phase, strength_score,
                         member_ids, last_activated, activation_count)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """, (
                        c.id, json.dumps(c.theme_set), c.emotional_centroid, c.dominant_phase,
                        c.strength_score, json.dumps(c.member_ids), c.last_activated,
                        c.activation_count,
                    ))
                conn.execute(
                    "INSERT OR REPLACE INTO meta(key, value) VALUES ('cluster_set', ?)",
                    (json.dumps({
                        "hierarchy": cluster_set.hierarchy,
                        "emergent_themes": cluster_set.emergent_themes,
                        "generated_at": cluster_set.generated_at,
                    }),),
                )
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    def load_clusters(self, owner_id: str) -> Optional[ClusterSet]:
        conn = self.connection(owner_id)
        meta = conn.execute("SELECT value FROM meta WHERE key='cluster_set'").fetchone()
        if meta is None:
            return None
        info = json.loads(meta["value"])
        clusters = [
            MemoryCluster(
                id=row["id"],
                owner_id=owner_id,
                theme_set=json.loads(row["theme_set"]),
                emotional_centroid=row["emotional_centroid"],
                dominant_phase=row["dominant_phase"],
                strength_score=row["strength_score"],
                member_ids=json.loads(row["member_ids"]),
                last_activated=row["last_activated"],
                activation_count=row["activation_count"],
            )
            for row in conn.execute(
                "SELECT * FROM clusters ORDER BY strength_score DESC, id"
            )
        ]
        return ClusterSet(
            owner_id=owner_id,
            clusters=clusters,
            hierarchy=info.get("hierarchy", {}),
            emergent_themes=info.get("emergent_themes", []),
            generated_at=info.get("generated_at", 0.0),
        )

    def activate_clusters(self, owner_id: str, themes: Iterable[str], now: Optional[float] = None) -> int:
        """Mark clusters touching any of the given themes as activated. Returns count."""
        wanted = set(themes)
        if not wanted:
            return 0
        now = time.time() if now is None else now
        with self.write_lock(owner_id):
            conn = self.connection(owner_id)
            hits = [
                row["id"] for row in conn.execute("SELECT id, theme_set FROM clusters")
                if wanted & set(json.loads(row["theme_set"]))
            ]
            conn.executemany(
                "UPDATE clusters SET activation_count = activation_count + 1, last_activated = ? WHERE id = ?",
                [(now, cid) for cid in hits],
            )
            conn.commit()
        return len(hits)

    # ── Stats ─────────────────────────────────────────────────────────────────

    def get_stats(self, owner_id: str) -> dict:
        conn = self.connection(owner_id)
        db_file = self.db_file(owner_id)
        return {
            "memories": conn.execute("SELECT COUNT(*) FROM memories").fetchone()[0],
            "emotional_data_points": conn.execute("SELECT COUNT(*) FROM emotional_data_points").fetchone()[0],
            "themes": conn.execute("SELECT COUNT(*) FROM themes").fetchone()[0],
            "clusters": conn.execute("SELECT COUNT(*) FROM clusters").fetchone()[0],
            "recall_events": conn.execute("SELECT COUNT(*) FROM recall_events").fetchone()[0],
            "file_size_kb": db_file.stat().st_size // 1024 if db_file.exists() else 0,
            "storage": "sqlite+sqlite-vec",
        }
