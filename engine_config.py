#!/usr/bin/env python3
"""
Engine configuration - every tunable constant of the recall engine.

Loaded from ~/.config/recall-engine/config.json (unknown keys ignored, a
broken file falls back to defaults), then overridden by environment
variables for the deployment-specific bits (LLM_URL, LLM_MODEL,
EMBED_MODEL, RECALL_DATA_DIR).
"""

import json
import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Optional

DEFAULT_DATA_DIR = Path.home() / ".local/share/recall-engine"
DEFAULT_CONFIG_DIR = Path.home() / ".config/recall-engine"
CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.json"


@dataclass
class EngineConfig:
    """Tunables for storage, oracles and every ranking heuristic."""

    # ── Deployment ────────────────────────────────────────────────────────────
    data_dir: str = str(DEFAULT_DATA_DIR)
    llm_url: str = "http://localhost:8080"
    llm_model: str = "qwen3-14b"
    embed_model: str = "nomic-ai/nomic-embed-text-v1.5"
    embedding_dim: int = 768
    timezone: str = "UTC"

    # ── Oracles ───────────────────────────────────────────────────────────────
    oracle_timeout: float = 30.0
    oracle_retries: int = 2
    oracle_backoff: float = 0.5

    # ── Relevance ranker ──────────────────────────────────────────────────────
    recall_top_k: int = 3
    semantic_threshold: float = 0.7
    semantic_candidate_limit: int = 10
    signal_candidate_limit: int = 5
    temporal_window_hours: int = 2
    temporal_score: float = 0.6
    phase_score: float = 0.7
    secondary_signal_weight: float = 0.5
    corroboration_multiplier: float = 1.5
    corroboration_min_signals: int = 2

    # ── Dormant concepts ──────────────────────────────────────────────────────
    dormant_min_frequency: int = 3
    dormant_after_days: float = 60.0
    dormant_relevance_threshold: float = 0.7
    dormant_default_valence: float = 0.5
    dormant_context_limit: int = 3

    # ── Clustering ────────────────────────────────────────────────────────────
    cluster_top_themes: int = 20
    cluster_saturation_size: int = 10
    established_strength: float = 0.7
    emotional_centroid_threshold: float = 0.6
    default_phase: str = "expansion"

    # ── Bridges ───────────────────────────────────────────────────────────────
    bridge_candidate_themes: int = 20
    bridge_distance_threshold: float = 0.7
    bridge_max_pairs: int = 3

    # ── Extraction ────────────────────────────────────────────────────────────
    max_themes_per_turn: int = 10
    max_memories_per_turn: int = 8
    context_snippet_chars: int = 200

    def to_dict(self) -> dict:
        return asdict(self)

    @property
    def data_path(self) -> Path:
        return Path(self.data_dir).expanduser()

    @classmethod
    def from_dict(cls, data: dict) -> "EngineConfig":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    @classmethod
    def load(cls, config_file: Optional[Path] = None, use_env: bool = True) -> "EngineConfig":
        path = config_file or CONFIG_FILE
        config = cls()
        try:
            if path.exists():
                with open(path) as f:
                    config = cls.from_dict(json.load(f))
        except Exception as e:
            print(f"[Config] Error loading {path}: {e}")
            config = cls()

        if use_env:
            config.llm_url = os.environ.get("LLM_URL", config.llm_url)
            config.llm_model = os.environ.get("LLM_MODEL", config.llm_model)
            config.embed_model = os.environ.get("EMBED_MODEL", config.embed_model)
            config.data_dir = os.environ.get("RECALL_DATA_DIR", config.data_dir)
        return config

    def save(self, config_file: Optional[Path] = None):
        path = config_file or CONFIG_FILE
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "w") as f:
                json.dump(self.to_dict(), f, indent=2)
        except OSError as e:
            print(f"[Config] Error saving {path}: {e}")
