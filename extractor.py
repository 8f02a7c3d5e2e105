#!/usr/bin/env python3
"""
Memory Extractor - turns one conversational turn into durable memory.

Flow per turn:
  1. NLU oracle (JSON mode) → {memories[], themes[], emotionalAnalysis}
  2. Validate at the boundary (oracle_schemas): bad entries dropped, numbers clamped
  3. Embed every retained memory in one batch call
  4. One transaction: emotional data point + memories + theme upserts/mentions
  5. Link each new memory to near-duplicates already in the store

Any oracle failure means nothing is written for the turn; extract() never
raises into the conversation.
"""

import sqlite3
import time
import uuid
from typing import Callable, Optional

from engine_config import EngineConfig
from memory_errors import MemoryEngineError
from memory_models import EmotionalDataPoint, ExtractionResult, MemoryRecord
from memory_store import MemoryStore
from oracle_schemas import EmotionalAnalysis, parse_extraction
from oracles import ChatOracle, EmbeddingModel


EXTRACTION_PROMPT = """Extract important memories and analyze emotions from this message.

Extract memories that are:
- Personal insights or realizations
- Goals or intentions mentioned
- Values expressed or referenced
- Behavioral patterns described
- Significant emotional states

Only extract truly meaningful content, not casual statements. Return an empty "memories" list if nothing qualifies.

Message:
{message}

Respond with JSON, up to {max_memories} memories, up to {max_themes} short themes:
{{"memories": [{{"content": "<brief summary>", "category": "<insight|goal|value|pattern|emotion>", "emotionalValence": <-1 to 1>, "importance": <0 to 1>, "confidence": <0 to 1>, "tags": ["<tag>"]}}],
"themes": ["<theme>"],
"emotionalAnalysis": {{"valence": <-1 to 1>, "arousal": <0 to 1>, "dominantEmotion": "<emotion>", "secondaryEmotions": ["<emotion>"], "intensity": <0 to 1>, "growthPhase": "<expansion|contraction|renewal|null>"}}}}"""

RELATED_LINK_LIMIT = 3


class MemoryExtractor:
    """Single writer of memories, themes and emotional data points."""

    def __init__(
        self,
        store: MemoryStore,
        chat: ChatOracle,
        embedder: EmbeddingModel,
        config: Optional[EngineConfig] = None,
        on_status: Optional[Callable[[str], None]] = None,
    ):
        self.store = store
        self.chat = chat
        self.embedder = embedder
        self.config = config or EngineConfig()
        self.on_status = on_status

    def _status(self, msg: str):
        print(f"[Extractor] {msg}")
        if self.on_status:
            self.on_status(msg)

    async def extract(
        self,
        owner_id: str,
        conversation_ref: str,
        text: str,
        phase: Optional[str] = None,
        now: Optional[float] = None,
    ) -> ExtractionResult:
        """Extract and persist memory for one turn. Returns an empty result on any failure."""
        now = time.time() if now is None else now
        if not text or not text.strip():
            return ExtractionResult()

        prompt = EXTRACTION_PROMPT.format(
            message=text[:4000],
            max_memories=self.config.max_memories_per_turn,
            max_themes=self.config.max_themes_per_turn,
        )
        try:
            raw = await self.chat.complete_json(prompt, max_tokens=800)
            payload = parse_extraction(
                raw,
                max_memories=self.config.max_memories_per_turn,
                max_themes=self.config.max_themes_per_turn,
            )
        except MemoryEngineError as e:
            self._status(f"NLU failed for {owner_id}/{conversation_ref}, nothing stored: {e}")
            return ExtractionResult()

        if payload.dropped:
            self._status(f"Dropped {payload.dropped} malformed memory candidate(s)")

        analysis = payload.emotional_analysis or EmotionalAnalysis()
        turn_phase = (phase or analysis.growth_phase or None)
        if turn_phase:
            turn_phase = turn_phase.strip().lower()

        emotion = EmotionalDataPoint(
            id=f"emo_{uuid.uuid4().hex[:16]}",
            owner_id=owner_id,
            conversation_ref=conversation_ref,
            valence=analysis.valence,
            arousal=analysis.arousal,
            dominant_emotion=analysis.dominant_emotion,
            secondary_emotions=list(analysis.secondary_emotions),
            intensity=analysis.intensity,
            timestamp=now,
            context_snippet=text.strip()[: self.config.context_snippet_chars],
            phase=turn_phase,
        )

        try:
            vectors = await self.embedder.embed_batch([c.content for c in payload.memories])
        except MemoryEngineError as e:
            self._status(f"Embedding failed for {owner_id}/{conversation_ref}, nothing stored: {e}")
            return ExtractionResult()

        memories = []
        for candidate, vector in zip(payload.memories, vectors):
            tags = list(candidate.tags)
            for theme in payload.themes:
                if theme not in tags:
                    tags.append(theme)
            memories.append(MemoryRecord(
                id=f"mem_{uuid.uuid4().hex[:16]}",
                owner_id=owner_id,
                conversation_ref=conversation_ref,
                content=candidate.content,
                category=candidate.category,
                emotional_valence=candidate.emotional_valence,
                importance=candidate.importance,
                confidence=candidate.confidence,
                tags=tags,
                created_at=now,
                phase=turn_phase,
                emotion_id=emotion.id,
                embedding=vector,
            ))

        try:
            existing = self.store.count_memories(owner_id)
            self.store.commit_turn(owner_id, emotion, memories, payload.themes, now=now)
        except (MemoryEngineError, sqlite3.Error) as e:
            self._status(f"Store rejected turn for {owner_id}: {e}")
            return ExtractionResult()

        if existing:
            self._link_related(owner_id, memories)

        self._status(
            f"{owner_id}: stored {len(memories)} memories, {len(payload.themes)} themes "
            f"({analysis.dominant_emotion}, valence {analysis.valence:+.2f})"
        )
        for m in memories:
            m.embedding = None
        return ExtractionResult(memories=memories, themes=list(payload.themes), emotion=emotion)

    def _link_related(self, owner_id: str, memories: list[MemoryRecord]):
        """Cross-link new memories with semantically near memories from earlier turns."""
        new_ids = {m.id for m in memories}
        for memory in memories:
            try:
                neighbours = self.store.nearest_memories(
                    owner_id, memory.embedding, len(new_ids) + RELATED_LINK_LIMIT
                )
                related = [
                    mid for mid, sim in neighbours
                    if mid not in new_ids and sim > self.config.semantic_threshold
                ][:RELATED_LINK_LIMIT]
                if not related:
                    continue
                self.store.link_related(owner_id, memory.id, related)
                for mid in related:
                    self.store.link_related(owner_id, mid, [memory.id])
                memory.related_memory_ids = related
            except (MemoryEngineError, sqlite3.Error) as e:
                self._status(f"Related-memory linking skipped for {memory.id}: {e}")
