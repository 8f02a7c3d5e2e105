"""
Recall Log - append-only audit of every memory a recall surfaced.

One RecallEvent per returned memory: which signals hit, the boosted score,
and whether the conversation system actually used it (consumed). Events are
never edited except for the consumed flag flipping false → true.
"""

from __future__ import annotations

import json
import time
import uuid

from memory_models import SIGNAL_TYPES, RecallEvent
from memory_store import MemoryStore


class RecallLog:
    """
    Thin wrapper around the recall_events table in each owner's memory.db.
    The table is created by MemoryStore._init_db(), so this class only needs
    the store to borrow connections and the owner's write lock.
    """

    def __init__(self, store: MemoryStore):
        self.store = store

    # ── Write ─────────────────────────────────────────────────────────────────

    def record_many(self, owner_id: str, entries: list[tuple[str, list[str], float]],
                    query_context: str, now: float | None = None) -> list[str]:
        """
        Record one event per (memory_id, signal_types, relevance_score).
        Returns the event ids in input order.
        """
        now = time.time() if now is None else now
        ids = [f"rec_{uuid.uuid4().hex[:12]}" for _ in entries]
        with self.store.write_lock(owner_id):
            conn = self.store.connection(owner_id)
            conn.executemany(
                """
                INSERT INTO recall_events
                    (id, memory_id, query_context, signal_types, relevance_score, timestamp, consumed)
                VALUES (?, ?, ?, ?, ?, ?, 0)
                """,
                [
                    (event_id, memory_id, query_context[:500], json.dumps(signals), max(0.0, score), now)
                    for event_id, (memory_id, signals, score) in zip(ids, entries)
                ],
            )
            conn.commit()
        return ids

    def mark_consumed(self, owner_id: str, event_ids: list[str]) -> int:
        """
        Flip events to consumed. Already-consumed events are left untouched.
        Returns the number of events that changed.
        """
        if not event_ids:
            return 0
        with self.store.write_lock(owner_id):
            conn = self.store.connection(owner_id)
            cur = conn.executemany(
                "UPDATE recall_events SET consumed = 1 WHERE id = ? AND consumed = 0",
                [(eid,) for eid in event_ids],
            )
            changed = cur.rowcount
            conn.commit()
        return changed

    # ── Read ──────────────────────────────────────────────────────────────────

    def get_recent(self, owner_id: str, limit: int = 100) -> list[RecallEvent]:
        rows = self.store.connection(owner_id).execute(
            "SELECT * FROM recall_events ORDER BY timestamp DESC LIMIT ?", (limit,)
        ).fetchall()
        events = []
        for r in rows:
            try:
                signals = json.loads(r["signal_types"] or "[]")
            except (json.JSONDecodeError, TypeError):
                signals = []
            events.append(RecallEvent(
                id=r["id"],
                owner_id=owner_id,
                memory_id=r["memory_id"],
                query_context=r["query_context"],
                signal_types=signals,
                relevance_score=r["relevance_score"],
                timestamp=r["timestamp"],
                consumed=bool(r["consumed"]),
            ))
        return events

    def get_stats(self, owner_id: str) -> dict:
        """
        Aggregate recall stats.
        Returns:
            {
              "total": int,
              "consumed": int,
              "consumption_rate": float | None,
              "by_signal": {"semantic": int, ...},
              "corroborated": int,          # events with 2+ signal types
              "avg_relevance": float | None,
              "most_recalled": [[memory_id, count], ...],
            }
        """
        rows = self.store.connection(owner_id).execute(
            "SELECT memory_id, signal_types, relevance_score, consumed FROM recall_events"
        ).fetchall()

        total = len(rows)
        consumed = sum(1 for r in rows if r["consumed"])

        by_signal = {s: 0 for s in SIGNAL_TYPES}
        corroborated = 0
        per_memory: dict[str, int] = {}
        for r in rows:
            try:
                signals = json.loads(r["signal_types"] or "[]")
            except (json.JSONDecodeError, TypeError):
                signals = []
            for s in signals:
                by_signal[s] = by_signal.get(s, 0) + 1
            if len(set(signals)) >= 2:
                corroborated += 1
            per_memory[r["memory_id"]] = per_memory.get(r["memory_id"], 0) + 1

        scores = [r["relevance_score"] for r in rows]
        most_recalled = sorted(per_memory.items(), key=lambda x: (-x[1], x[0]))[:5]

        return {
            "total": total,
            "consumed": consumed,
            "consumption_rate": round(consumed / total, 3) if total else None,
            "by_signal": by_signal,
            "corroborated": corroborated,
            "avg_relevance": round(sum(scores) / len(scores), 4) if scores else None,
            "most_recalled": [list(x) for x in most_recalled],
        }
