#!/usr/bin/env python3
"""
Relevance Ranker - multi-signal associative recall.

Five independent signals each nominate a bounded candidate list:
  semantic   cosine(query, memory) > threshold, damped by age
  temporal   same weekday, within ±N hours of the query's hour-of-day
  emotional  nearest in (valence, arousal) space
  thematic   tag overlap with the query's themes
  phase      memory carries the current growth phase

Fusion per memory: strongest contribution + 0.5 × each additional one,
then ×1.5 when two or more distinct signal types agree (corroboration).
A signal that fails contributes nothing; the rest still rank.
"""

import asyncio
import math
import sqlite3
import time
from datetime import datetime
from typing import Callable, Optional
from zoneinfo import ZoneInfo

import numpy as np

from engine_config import EngineConfig
from memory_errors import MemoryEngineError
from memory_models import MemoryRecord, QueryContext, RankedMemory
from memory_store import MemoryStore
from oracle_schemas import normalize_labels, parse_theme_list
from oracles import ChatOracle, EmbeddingModel
from recall_log import RecallLog


QUERY_THEMES_PROMPT = """List up to 3 short themes (1-3 words each) this message is about.

Message: {message}

Respond with JSON: {{"themes": ["<theme>", ...]}}"""

SECONDS_PER_DAY = 86400.0


def cosine_similarity(vec1, vec2) -> float:
    """Cosine similarity in [-1, 1]; 0.0 when either vector is all zeros."""
    a = np.asarray(vec1, dtype=np.float64)
    b = np.asarray(vec2, dtype=np.float64)
    norm = np.linalg.norm(a) * np.linalg.norm(b)
    if norm == 0:
        return 0.0
    return float(np.clip(np.dot(a, b) / norm, -1.0, 1.0))


def recency_damping(days: float) -> float:
    """(1 / (1 + ln(d + 1)))^0.5: 1.0 for brand-new memory, slowly decays, never reaches 0."""
    d = max(0.0, float(days))
    return (1.0 / (1.0 + math.log(d + 1.0))) ** 0.5


def fuse_contributions(contributions: dict[str, float], secondary_weight: float = 0.5,
                       multiplier: float = 1.5, min_signals: int = 2) -> tuple[float, float]:
    """Return (raw_score, boosted_score) for one memory's per-signal contributions."""
    ordered = sorted(contributions.values(), reverse=True)
    if not ordered:
        return 0.0, 0.0
    raw = ordered[0] + secondary_weight * sum(ordered[1:])
    boost = multiplier if len(contributions) >= min_signals else 1.0
    return raw, raw * boost


class RelevanceRanker:
    """Scores an owner's memory against the present moment."""

    def __init__(
        self,
        store: MemoryStore,
        embedder: EmbeddingModel,
        chat: Optional[ChatOracle] = None,
        recall_log: Optional[RecallLog] = None,
        config: Optional[EngineConfig] = None,
        on_status: Optional[Callable[[str], None]] = None,
    ):
        self.store = store
        self.embedder = embedder
        self.chat = chat
        self.recall_log = recall_log or RecallLog(store)
        self.config = config or EngineConfig()
        self.on_status = on_status
        self._tz = ZoneInfo(self.config.timezone)

    def _status(self, msg: str):
        print(f"[Recall] {msg}")
        if self.on_status:
            self.on_status(msg)

    # ── Signals ───────────────────────────────────────────────────────────────

    async def _semantic(self, owner_id: str, query_text: str, now: float) -> list[tuple[str, float]]:
        if not query_text.strip():
            return []
        vector = await self.embedder.embed(query_text)
        neighbours = self.store.nearest_memories(owner_id, vector, self.config.semantic_candidate_limit)
        if not neighbours:
            return []
        records = self.store.get_memories(owner_id, [mid for mid, _ in neighbours])
        scored = []
        for mid, similarity in neighbours:
            record = records.get(mid)
            if record is None or similarity <= self.config.semantic_threshold:
                continue
            days = (now - record.created_at) / SECONDS_PER_DAY
            scored.append((mid, similarity * recency_damping(days)))
        scored.sort(key=lambda x: x[1], reverse=True)
        return scored

    def _temporal(self, records: list[MemoryRecord], when: float) -> list[tuple[str, float]]:
        query_dt = datetime.fromtimestamp(when, self._tz)
        window = self.config.temporal_window_hours
        hits = []
        for r in records:
            dt = datetime.fromtimestamp(r.created_at, self._tz)
            if dt.weekday() == query_dt.weekday() and abs(dt.hour - query_dt.hour) <= window:
                hits.append(r)
        hits.sort(key=lambda r: r.created_at, reverse=True)
        return [(r.id, self.config.temporal_score) for r in hits[: self.config.signal_candidate_limit]]

    def _emotional(self, owner_id: str, context: QueryContext) -> list[tuple[str, float]]:
        scored = []
        for mid, valence, arousal in self.store.emotional_profile(owner_id):
            distance = abs(valence - context.valence) + abs(arousal - context.arousal)
            scored.append((mid, 1.0 / (1.0 + distance)))
        scored.sort(key=lambda x: x[1], reverse=True)
        return scored[: self.config.signal_candidate_limit]

    def _thematic(self, records: list[MemoryRecord], themes: list[str]) -> list[tuple[str, float]]:
        if not themes:
            return []
        wanted = set(themes)
        scored = []
        for r in records:
            overlap = len(wanted & {t.lower() for t in r.tags})
            if overlap >= 1:
                scored.append((r, overlap / len(wanted)))
        scored.sort(key=lambda x: (x[1], x[0].created_at), reverse=True)
        return [(r.id, s) for r, s in scored[: self.config.signal_candidate_limit]]

    def _phase(self, records: list[MemoryRecord], phase: Optional[str]) -> list[tuple[str, float]]:
        if not phase:
            return []
        phase = phase.strip().lower()
        hits = [r for r in records if r.phase == phase or phase in r.tags]
        hits.sort(key=lambda r: r.created_at, reverse=True)
        return [(r.id, self.config.phase_score) for r in hits[: self.config.signal_candidate_limit]]

    async def _query_themes(self, query_text: str, context: QueryContext) -> list[str]:
        if context.themes is not None:
            return normalize_labels(context.themes)
        if self.chat is None or not query_text.strip():
            return []
        try:
            raw = await self.chat.complete_json(
                QUERY_THEMES_PROMPT.format(message=query_text[:1000]), max_tokens=60
            )
            return parse_theme_list(raw)
        except MemoryEngineError as e:
            self._status(f"Query theme extraction failed, thematic signal off: {e}")
            return []

    async def _run_signal(self, name: str, fn, *args) -> list[tuple[str, float]]:
        try:
            result = fn(*args)
            if asyncio.iscoroutine(result):
                result = await result
            return result
        except (MemoryEngineError, sqlite3.Error, ValueError, OverflowError, OSError) as e:
            self._status(f"{name} signal failed: {e}")
            return []

    # ── Recall ────────────────────────────────────────────────────────────────

    async def recall(
        self,
        owner_id: str,
        query_text: str,
        context: Optional[QueryContext] = None,
        k: Optional[int] = None,
    ) -> list[RankedMemory]:
        """
        Return up to k memories ranked by fused relevance. Every returned
        memory is logged as a RecallEvent and its clusters are activated.
        """
        context = context or QueryContext()
        k = self.config.recall_top_k if k is None else k
        now = context.timestamp
        if k <= 0:
            return []

        try:
            records = self.store.all_memories(owner_id)
        except (MemoryEngineError, sqlite3.Error) as e:
            self._status(f"Store unavailable for {owner_id}: {e}")
            return []
        if not records:
            return []
        by_id = {r.id: r for r in records}

        themes = await self._query_themes(query_text, context)
        signals = {
            "semantic": await self._run_signal("semantic", self._semantic, owner_id, query_text, now),
            "temporal": await self._run_signal("temporal", self._temporal, records, now),
            "emotional": await self._run_signal("emotional", self._emotional, owner_id, context),
            "thematic": await self._run_signal("thematic", self._thematic, records, themes),
            "phase": await self._run_signal("phase", self._phase, records, context.phase),
        }

        contributions: dict[str, dict[str, float]] = {}
        for signal, hits in signals.items():
            for mid, score in hits:
                if mid not in by_id:
                    continue
                per_memory = contributions.setdefault(mid, {})
                per_memory[signal] = max(score, per_memory.get(signal, 0.0))

        ranked = []
        for mid, contrib in contributions.items():
            raw, boosted = fuse_contributions(
                contrib,
                secondary_weight=self.config.secondary_signal_weight,
                multiplier=self.config.corroboration_multiplier,
                min_signals=self.config.corroboration_min_signals,
            )
            ranked.append(RankedMemory(
                memory=by_id[mid],
                score=boosted,
                raw_score=raw,
                signal_types=[s for s in signals if s in contrib],
                contributions=dict(contrib),
            ))

        ranked.sort(key=lambda r: (-r.score, -len(r.signal_types), -r.memory.created_at, r.memory.id))
        top = ranked[:k]
        if top:
            self._record(owner_id, query_text, top)
            self._status(
                f"{owner_id}: {len(top)}/{len(ranked)} candidates, "
                f"top {top[0].score:.3f} via {'+'.join(top[0].signal_types)}"
            )
        return top

    def _record(self, owner_id: str, query_text: str, top: list[RankedMemory]):
        """Audit log, access counters and cluster activation for surfaced memories."""
        try:
            event_ids = self.recall_log.record_many(
                owner_id,
                [(r.memory.id, r.signal_types, r.score) for r in top],
                query_text,
            )
            for r, event_id in zip(top, event_ids):
                r.recall_event_id = event_id
            now = time.time()
            self.store.touch_memories(owner_id, [r.memory.id for r in top], now=now)
            tags = {t for r in top for t in r.memory.tags}
            self.store.activate_clusters(owner_id, tags, now=now)
        except (MemoryEngineError, sqlite3.Error) as e:
            self._status(f"Recall bookkeeping failed for {owner_id}: {e}")
