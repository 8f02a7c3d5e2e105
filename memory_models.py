"""
Data classes for stored memory and for the engine's results.

Records are plain dataclasses; embeddings are kept out of MemoryRecord
instances unless explicitly fetched (they live in the sqlite-vec table).
"""

import time
from dataclasses import dataclass, field
from typing import Optional

SIGNAL_TYPES = ("semantic", "temporal", "emotional", "thematic", "phase")
DORMANT_CATEGORIES = ("value", "interest", "skill", "dream", "insight", "approach")


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, float(value)))


# ── Stored records ────────────────────────────────────────────────────────────

@dataclass
class MemoryRecord:
    """A single durable memory. embedding is None unless fetched explicitly."""
    id: str
    owner_id: str
    conversation_ref: str
    content: str
    category: str
    emotional_valence: float
    importance: float
    confidence: float
    tags: list[str]
    created_at: float
    phase: Optional[str] = None
    emotion_id: Optional[str] = None
    related_memory_ids: list[str] = field(default_factory=list)
    access_count: int = 0
    last_accessed_at: Optional[float] = None
    embedding: Optional[list[float]] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "conversation_ref": self.conversation_ref,
            "content": self.content,
            "category": self.category,
            "emotional_valence": self.emotional_valence,
            "importance": self.importance,
            "confidence": self.confidence,
            "tags": list(self.tags),
            "phase": self.phase,
            "created_at": self.created_at,
            "related_memory_ids": list(self.related_memory_ids),
            "access_count": self.access_count,
            "last_accessed_at": self.last_accessed_at,
        }


@dataclass
class EmotionalDataPoint:
    id: str
    owner_id: str
    valence: float
    arousal: float
    dominant_emotion: str
    secondary_emotions: list[str]
    intensity: float
    timestamp: float
    context_snippet: str = ""
    conversation_ref: str = ""
    phase: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "conversation_ref": self.conversation_ref,
            "valence": self.valence,
            "arousal": self.arousal,
            "dominant_emotion": self.dominant_emotion,
            "secondary_emotions": list(self.secondary_emotions),
            "intensity": self.intensity,
            "phase": self.phase,
            "timestamp": self.timestamp,
            "context_snippet": self.context_snippet,
        }


@dataclass
class ThemeRecord:
    owner_id: str
    theme: str
    frequency: int
    last_mentioned: float
    first_mentioned: float = 0.0
    category: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "theme": self.theme,
            "frequency": self.frequency,
            "first_mentioned": self.first_mentioned,
            "last_mentioned": self.last_mentioned,
            "category": self.category,
        }


@dataclass
class RecallEvent:
    """Audit entry: one memory surfaced by one recall. Append-only."""
    id: str
    owner_id: str
    memory_id: str
    query_context: str
    signal_types: list[str]
    relevance_score: float
    timestamp: float
    consumed: bool = False

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "memory_id": self.memory_id,
            "query_context": self.query_context,
            "signal_types": list(self.signal_types),
            "relevance_score": self.relevance_score,
            "timestamp": self.timestamp,
            "consumed": self.consumed,
        }


@dataclass
class MemoryCluster:
    """A theme cluster produced by a batch clustering run."""
    id: str
    owner_id: str
    theme_set: list[str]
    emotional_centroid: float
    dominant_phase: str
    strength_score: float
    member_ids: list[str]
    last_activated: float
    activation_count: int = 1

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "theme_set": list(self.theme_set),
            "emotional_centroid": round(self.emotional_centroid, 4),
            "dominant_phase": self.dominant_phase,
            "strength_score": round(self.strength_score, 4),
            "member_count": len(self.member_ids),
            "last_activated": self.last_activated,
            "activation_count": self.activation_count,
        }


@dataclass
class ClusterSet:
    owner_id: str
    clusters: list[MemoryCluster]
    hierarchy: dict
    emergent_themes: list[str]
    generated_at: float

    def to_dict(self) -> dict:
        return {
            "owner_id": self.owner_id,
            "clusters": [c.to_dict() for c in self.clusters],
            "hierarchy": self.hierarchy,
            "emergent_themes": list(self.emergent_themes),
            "generated_at": self.generated_at,
        }

    @classmethod
    def empty(cls, owner_id: str) -> "ClusterSet":
        return cls(
            owner_id=owner_id,
            clusters=[],
            hierarchy={"root": "owner_themes", "children": []},
            emergent_themes=[],
            generated_at=0.0,
        )


# ── Query / results ───────────────────────────────────────────────────────────

@dataclass
class QueryContext:
    """The present moment a recall is scored against."""
    valence: float = 0.0
    arousal: float = 0.5
    phase: Optional[str] = None
    themes: Optional[list[str]] = None
    timestamp: float = field(default_factory=time.time)


@dataclass
class RankedMemory:
    memory: MemoryRecord
    score: float
    raw_score: float
    signal_types: list[str]
    contributions: dict[str, float] = field(default_factory=dict)
    recall_event_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "memory": self.memory.to_dict(),
            "score": round(self.score, 6),
            "raw_score": round(self.raw_score, 6),
            "signal_types": list(self.signal_types),
            "contributions": {k: round(v, 6) for k, v in self.contributions.items()},
            "recall_event_id": self.recall_event_id,
        }


@dataclass
class ExtractionResult:
    memories: list[MemoryRecord] = field(default_factory=list)
    themes: list[str] = field(default_factory=list)
    emotion: Optional[EmotionalDataPoint] = None

    @property
    def is_empty(self) -> bool:
        return not self.memories and not self.themes and self.emotion is None

    def to_dict(self) -> dict:
        return {
            "memories": [m.to_dict() for m in self.memories],
            "themes": list(self.themes),
            "emotion": self.emotion.to_dict() if self.emotion else None,
        }


@dataclass
class DormantConcept:
    theme: str
    category: str
    last_mentioned: float
    mention_count: int
    emotional_valence: float
    days_dormant: float
    elapsed: str
    contexts: list[str] = field(default_factory=list)
    relevance: float = 0.0
    connection: Optional[str] = None
    reactivation_prompt: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "theme": self.theme,
            "category": self.category,
            "last_mentioned": self.last_mentioned,
            "mention_count": self.mention_count,
            "emotional_valence": round(self.emotional_valence, 4),
            "days_dormant": round(self.days_dormant, 1),
            "elapsed": self.elapsed,
            "contexts": list(self.contexts),
            "relevance": self.relevance,
            "connection": self.connection,
            "reactivation_prompt": self.reactivation_prompt,
        }


@dataclass
class ConceptBridge:
    concept1: str
    concept2: str
    distance: float
    potential_synergy: str
    novel_insight: str
    applicability: str

    def to_dict(self) -> dict:
        return {
            "concept1": self.concept1,
            "concept2": self.concept2,
            "distance": round(self.distance, 4),
            "potential_synergy": self.potential_synergy,
            "novel_insight": self.novel_insight,
            "applicability": self.applicability,
        }
