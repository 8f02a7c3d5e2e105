"""
Validated schemas for every oracle payload.

Memory candidates are a tagged union discriminated by `category`; each entry
is validated on its own so one malformed candidate is dropped without losing
the rest of the turn. Numeric fields are clamped into range instead of
rejected, since the oracle routinely overshoots (importance 1.2, valence -3).
"""

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator
from pydantic import ValidationError as PydanticValidationError

from memory_errors import OracleMalformedResponse
from memory_models import DORMANT_CATEGORIES, clamp


def _clamped(value: Any, low: float, high: float, default: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if number != number:  # NaN
        return default
    return clamp(number, low, high)


def normalize_labels(values: Any, limit: int = 10) -> list[str]:
    """Strip, lower-case and de-duplicate a list of theme/tag strings."""
    if not isinstance(values, (list, tuple)):
        return []
    out: list[str] = []
    for v in values:
        if not isinstance(v, str):
            continue
        label = " ".join(v.strip().lower().split())[:80]
        if label and label not in out:
            out.append(label)
        if len(out) >= limit:
            break
    return out


# ── Memory candidates (tagged union) ──────────────────────────────────────────

class _MemoryCandidate(BaseModel):
    content: str = Field(min_length=1, max_length=1000)
    emotional_valence: float = 0.0
    importance: float = 0.5
    confidence: float = 0.5
    tags: list[str] = Field(default_factory=list)

    @field_validator("content", mode="before")
    @classmethod
    def _strip_content(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("emotional_valence", mode="before")
    @classmethod
    def _clamp_valence(cls, v):
        return _clamped(v, -1.0, 1.0, 0.0)

    @field_validator("importance", "confidence", mode="before")
    @classmethod
    def _clamp_unit(cls, v):
        return _clamped(v, 0.0, 1.0, 0.5)

    @field_validator("tags", mode="before")
    @classmethod
    def _normalize_tags(cls, v):
        return normalize_labels(v)


class InsightMemory(_MemoryCandidate):
    category: Literal["insight"]


class GoalMemory(_MemoryCandidate):
    category: Literal["goal"]


class ValueMemory(_MemoryCandidate):
    category: Literal["value"]


class PatternMemory(_MemoryCandidate):
    category: Literal["pattern"]


class EmotionMemory(_MemoryCandidate):
    category: Literal["emotion"]


MemoryCandidate = Annotated[
    Union[InsightMemory, GoalMemory, ValueMemory, PatternMemory, EmotionMemory],
    Field(discriminator="category"),
]

_candidate_adapter = TypeAdapter(MemoryCandidate)

# Oracle key → schema field. The prompt asks for camelCase.
_CANDIDATE_KEYS = {
    "content": "content",
    "category": "category",
    "memoryType": "category",
    "emotionalValence": "emotional_valence",
    "emotional_valence": "emotional_valence",
    "importance": "importance",
    "confidence": "confidence",
    "tags": "tags",
}


def parse_memory_candidate(raw: Any) -> Optional[_MemoryCandidate]:
    """Validate one oracle memory entry. Returns None when it must be dropped."""
    if not isinstance(raw, dict):
        return None
    data = {}
    for key, value in raw.items():
        target = _CANDIDATE_KEYS.get(key)
        if target and target not in data:
            data[target] = value
    if isinstance(data.get("category"), str):
        data["category"] = data["category"].strip().lower()
    try:
        return _candidate_adapter.validate_python(data)
    except PydanticValidationError:
        return None


# ── Emotional analysis ────────────────────────────────────────────────────────

class EmotionalAnalysis(BaseModel):
    valence: float = 0.0
    arousal: float = 0.5
    dominant_emotion: str = "neutral"
    secondary_emotions: list[str] = Field(default_factory=list)
    intensity: float = 0.5
    growth_phase: Optional[str] = None

    @field_validator("valence", mode="before")
    @classmethod
    def _clamp_valence(cls, v):
        return _clamped(v, -1.0, 1.0, 0.0)

    @field_validator("arousal", "intensity", mode="before")
    @classmethod
    def _clamp_unit(cls, v):
        return _clamped(v, 0.0, 1.0, 0.5)

    @field_validator("dominant_emotion", mode="before")
    @classmethod
    def _emotion_name(cls, v):
        if not isinstance(v, str) or not v.strip():
            return "neutral"
        return v.strip().lower()[:50]

    @field_validator("secondary_emotions", mode="before")
    @classmethod
    def _secondary(cls, v):
        return normalize_labels(v, limit=5)

    @field_validator("growth_phase", mode="before")
    @classmethod
    def _phase(cls, v):
        if not isinstance(v, str) or not v.strip():
            return None
        return v.strip().lower()[:40]

    @classmethod
    def from_oracle(cls, raw: Any) -> "EmotionalAnalysis":
        if not isinstance(raw, dict):
            return cls()
        return cls.model_validate({
            "valence": raw.get("valence"),
            "arousal": raw.get("arousal"),
            "dominant_emotion": raw.get("dominantEmotion", raw.get("dominant_emotion")),
            "secondary_emotions": raw.get("secondaryEmotions", raw.get("secondary_emotions")),
            "intensity": raw.get("intensity"),
            "growth_phase": raw.get("growthPhase", raw.get("growth_phase")),
        })


class ExtractionPayload(BaseModel):
    """A fully validated NLU extraction: whatever survived the boundary."""
    memories: list[_MemoryCandidate] = Field(default_factory=list)
    themes: list[str] = Field(default_factory=list)
    emotional_analysis: Optional[EmotionalAnalysis] = None
    dropped: int = 0


def parse_extraction(raw: Any, max_memories: int = 8, max_themes: int = 10) -> ExtractionPayload:
    """
    Parse the NLU oracle's extraction payload.
    Raises OracleMalformedResponse only when the top-level shape is wrong;
    individual bad memory entries are counted in `dropped`.
    """
    if not isinstance(raw, dict):
        raise OracleMalformedResponse("extraction payload is not a JSON object")

    raw_memories = raw.get("memories", [])
    if raw_memories is None:
        raw_memories = []
    if not isinstance(raw_memories, list):
        raise OracleMalformedResponse("'memories' is not a list")

    memories = []
    dropped = 0
    for entry in raw_memories:
        candidate = parse_memory_candidate(entry)
        if candidate is None:
            dropped += 1
            continue
        if len(memories) < max_memories:
            memories.append(candidate)

    analysis = raw.get("emotionalAnalysis", raw.get("emotional_analysis"))
    return ExtractionPayload(
        memories=memories,
        themes=normalize_labels(raw.get("themes"), limit=max_themes),
        emotional_analysis=EmotionalAnalysis.from_oracle(analysis) if analysis is not None else None,
        dropped=dropped,
    )


# ── Dormant concepts ──────────────────────────────────────────────────────────

def parse_dormant_category(raw: Any, default: str = "interest") -> str:
    """Accepts {"category": "..."} or a bare word; anything else → default."""
    if isinstance(raw, dict):
        raw = raw.get("category")
    if not isinstance(raw, str):
        return default
    word = raw.strip().strip(".\"'").lower()
    return word if word in DORMANT_CATEGORIES else default


class RelevanceCheck(BaseModel):
    is_relevant: bool = False
    relevance_score: float = 0.0
    connection: str = ""
    reactivation_prompt: str = ""

    @field_validator("is_relevant", mode="before")
    @classmethod
    def _strict_bool(cls, v):
        if isinstance(v, bool):
            return v
        if isinstance(v, str):
            return v.strip().lower() == "true"
        return False

    @field_validator("relevance_score", mode="before")
    @classmethod
    def _clamp_score(cls, v):
        return _clamped(v, 0.0, 1.0, 0.0)

    @field_validator("connection", "reactivation_prompt", mode="before")
    @classmethod
    def _text(cls, v):
        return v.strip()[:600] if isinstance(v, str) else ""

    @classmethod
    def from_oracle(cls, raw: Any) -> "RelevanceCheck":
        if not isinstance(raw, dict):
            raise OracleMalformedResponse("relevance payload is not a JSON object")
        return cls.model_validate({
            "is_relevant": raw.get("isRelevant", raw.get("is_relevant")),
            "relevance_score": raw.get("relevanceScore", raw.get("relevance_score")),
            "connection": raw.get("connection"),
            "reactivation_prompt": raw.get("reactivationPrompt", raw.get("reactivation_prompt")),
        })


# ── Bridges ───────────────────────────────────────────────────────────────────

class BridgeInsight(BaseModel):
    potential_synergy: str = Field(min_length=1, max_length=1000)
    novel_insight: str = Field(min_length=1, max_length=1000)
    applicability: str = Field(min_length=1, max_length=1000)

    @classmethod
    def from_oracle(cls, raw: Any) -> "BridgeInsight":
        if not isinstance(raw, dict):
            raise OracleMalformedResponse("bridge payload is not a JSON object")

        def text(*keys):
            for k in keys:
                v = raw.get(k)
                if isinstance(v, str) and v.strip():
                    return v.strip()
            return ""

        try:
            return cls(
                potential_synergy=text("potentialSynergy", "potential_synergy"),
                novel_insight=text("novelInsight", "novel_insight"),
                applicability=text("applicability"),
            )
        except PydanticValidationError as e:
            raise OracleMalformedResponse(f"bridge payload incomplete: {e.error_count()} errors") from e


# ── Quick query themes ────────────────────────────────────────────────────────

def parse_theme_list(raw: Any, limit: int = 3) -> list[str]:
    """Accepts {"themes": [...]} or a bare list."""
    if isinstance(raw, dict):
        raw = raw.get("themes")
    if not isinstance(raw, list):
        raise OracleMalformedResponse("theme payload is not a list")
    return normalize_labels(raw, limit=limit)
