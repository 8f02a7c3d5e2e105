"""
Pytest fixtures and fakes for the recall engine tests.

Stores are real (SQLite + sqlite-vec in tmp_path); the two oracles are
replaced by deterministic fakes.
"""

import asyncio
import hashlib
import uuid
from typing import Any, Optional

import numpy as np
import pytest

from engine import MemoryEngine
from engine_config import EngineConfig
from memory_errors import OracleUnavailable
from memory_models import EmotionalDataPoint, MemoryRecord
from memory_store import MemoryStore

DIM = 8
DAY = 86400.0
# Wednesday 2024-05-15 12:00:00 UTC
NOW = 1715774400.0


def unit(index: int, dim: int = DIM) -> list[float]:
    v = [0.0] * dim
    v[index] = 1.0
    return v


def blend(similarity: float, dim: int = DIM) -> list[float]:
    """Unit vector whose cosine similarity with unit(0) is `similarity`."""
    v = [0.0] * dim
    v[0] = similarity
    v[1] = float(np.sqrt(max(0.0, 1.0 - similarity ** 2)))
    return v


class FakeEmbedder:
    """Explicit text → vector table; unknown text gets a stable pseudo-random vector."""

    def __init__(self, vectors: Optional[dict[str, list[float]]] = None, dim: int = DIM):
        self.vectors = dict(vectors or {})
        self.dim = dim
        self.fail = False
        self.fail_on: set[str] = set()
        self.calls: list[list[str]] = []

    def _vector(self, text: str) -> list[float]:
        if text in self.vectors:
            return list(self.vectors[text])
        seed = int(hashlib.sha256(text.encode()).hexdigest()[:8], 16)
        v = np.random.default_rng(seed).normal(size=self.dim)
        return (v / np.linalg.norm(v)).tolist()

    async def embed(self, text: str) -> list[float]:
        return (await self.embed_batch([text]))[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        if self.fail or any(t in self.fail_on for t in texts):
            raise OracleUnavailable("embedding service down")
        return [self._vector(t) for t in texts]


class FakeOracle:
    """
    Scripted chat oracle. Rules are (prompt substring, response); a response
    may be a value, an exception instance (raised) or a callable(prompt).
    """

    def __init__(self, rules: Optional[list[tuple[str, Any]]] = None, delay: float = 0.0):
        self.rules = list(rules or [])
        self.delay = delay
        self.prompts: list[str] = []

    def on(self, needle: str, response: Any):
        self.rules.insert(0, (needle, response))

    async def complete_json(self, prompt: str, max_tokens: int = 300, temperature: float = 0.1) -> Any:
        self.prompts.append(prompt)
        if self.delay:
            await asyncio.sleep(self.delay)
        for needle, response in self.rules:
            if needle in prompt:
                if isinstance(response, Exception):
                    raise response
                if callable(response):
                    return response(prompt)
                return response
        raise OracleUnavailable("no scripted response")

    def count(self, needle: str) -> int:
        return sum(1 for p in self.prompts if needle in p)

    async def close(self):
        pass


def make_memory(
    owner_id: str = "alice",
    content: str = "memory",
    created_at: float = NOW,
    tags: Optional[list[str]] = None,
    valence: float = 0.0,
    phase: Optional[str] = None,
    embedding: Optional[list[float]] = None,
    category: str = "insight",
) -> MemoryRecord:
    return MemoryRecord(
        id=f"mem_{uuid.uuid4().hex[:12]}",
        owner_id=owner_id,
        conversation_ref="conv-1",
        content=content,
        category=category,
        emotional_valence=valence,
        importance=0.5,
        confidence=0.5,
        tags=list(tags or []),
        created_at=created_at,
        phase=phase,
        embedding=embedding if embedding is not None else unit(DIM - 1),
    )


def make_emotion(
    owner_id: str = "alice",
    valence: float = 0.0,
    arousal: float = 0.5,
    timestamp: float = NOW,
    context: str = "",
) -> EmotionalDataPoint:
    return EmotionalDataPoint(
        id=f"emo_{uuid.uuid4().hex[:12]}",
        owner_id=owner_id,
        valence=valence,
        arousal=arousal,
        dominant_emotion="calm",
        secondary_emotions=[],
        intensity=0.5,
        timestamp=timestamp,
        context_snippet=context,
    )


def seed(
    store: MemoryStore,
    owner_id: str = "alice",
    *,
    emotion: Optional[tuple[float, float]] = None,
    themes: Optional[list[str]] = None,
    context: str = "",
    **memory_fields,
) -> MemoryRecord:
    """Insert one memory (optionally with the turn's emotional data) and return it."""
    created_at = memory_fields.get("created_at", NOW)
    memory = make_memory(owner_id=owner_id, **memory_fields)
    point = None
    if emotion is not None:
        point = make_emotion(owner_id, emotion[0], emotion[1], timestamp=created_at, context=context)
        memory.emotion_id = point.id
    store.commit_turn(owner_id, point, [memory], themes or [], now=created_at)
    memory.embedding = None
    return memory


def extraction_payload(**overrides) -> dict:
    payload = {
        "memories": [
            {
                "content": "Wants to move into product design",
                "memoryType": "goal",
                "emotionalValence": 0.6,
                "importance": 0.8,
                "confidence": 0.9,
                "tags": ["Career", "design"],
            },
            {
                "content": "Feels most alive when sketching",
                "category": "insight",
                "emotionalValence": 0.7,
                "importance": 0.6,
                "tags": ["creativity"],
            },
        ],
        "themes": ["career", "Creativity"],
        "emotionalAnalysis": {
            "valence": 0.5,
            "arousal": 0.7,
            "dominantEmotion": "Excited",
            "secondaryEmotions": ["hopeful"],
            "intensity": 0.6,
        },
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def config(tmp_path) -> EngineConfig:
    return EngineConfig(data_dir=str(tmp_path / "data"), embedding_dim=DIM, timezone="UTC")


@pytest.fixture
def store(config):
    s = MemoryStore(config.data_path, embedding_dim=DIM)
    yield s
    s.close()


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def oracle() -> FakeOracle:
    return FakeOracle()


@pytest.fixture
def engine(config, store, oracle, embedder) -> MemoryEngine:
    return MemoryEngine(config=config, store=store, chat=oracle, embedder=embedder)
