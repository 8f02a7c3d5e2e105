"""
Cross-Domain Bridge Generator - analogies between the owner's most distant themes.

Top themes by frequency are embedded in one batch; pairs whose cosine
distance exceeds the threshold are the most "unrelated" parts of the
owner's life, and the farthest few are handed to the oracle for synthesis.
"""

import asyncio
import sqlite3
from typing import Callable, Optional

import numpy as np
from scipy.spatial.distance import cdist

from engine_config import EngineConfig
from memory_errors import MemoryEngineError
from memory_models import ConceptBridge
from memory_store import MemoryStore
from oracle_schemas import BridgeInsight
from oracles import ChatOracle, EmbeddingModel


BRIDGE_PROMPT = """Create a novel insight by bridging these two unrelated concepts from a person's life:
Concept 1: {concept1}
Concept 2: {concept2}
Current challenge: {challenge}

Generate a creative synthesis:
- What unexpected connection exists between these concepts?
- What novel insight emerges from combining them?
- How could this insight help with the current challenge?

Respond with JSON:
{{"potentialSynergy": "<connection>", "novelInsight": "<insight>", "applicability": "<how it helps>"}}"""


def distant_pairs(themes: list[str], vectors, threshold: float) -> list[tuple[str, str, float]]:
    """All theme pairs with cosine distance > threshold, farthest first."""
    if len(themes) < 2:
        return []
    matrix = np.asarray(vectors, dtype=np.float64)
    distances = np.nan_to_num(cdist(matrix, matrix, metric="cosine"), nan=0.0)
    pairs = []
    for i in range(len(themes)):
        for j in range(i + 1, len(themes)):
            d = float(distances[i, j])
            if d > threshold:
                pairs.append((themes[i], themes[j], d))
    pairs.sort(key=lambda p: (-p[2], p[0], p[1]))
    return pairs


class CrossDomainBridgeGenerator:

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
        print(f"[Bridge] {msg}")
        if self.on_status:
            self.on_status(msg)

    async def _synthesize(self, concept1: str, concept2: str, distance: float,
                          challenge: str) -> Optional[ConceptBridge]:
        prompt = BRIDGE_PROMPT.format(concept1=concept1, concept2=concept2, challenge=challenge or "(none given)")
        try:
            insight = BridgeInsight.from_oracle(
                await self.chat.complete_json(prompt, max_tokens=400, temperature=0.7)
            )
        except MemoryEngineError as e:
            self._status(f"Synthesis {concept1!r} × {concept2!r} failed: {e}")
            return None
        return ConceptBridge(
            concept1=concept1,
            concept2=concept2,
            distance=distance,
            potential_synergy=insight.potential_synergy,
            novel_insight=insight.novel_insight,
            applicability=insight.applicability,
        )

    async def bridge(self, owner_id: str, challenge: str) -> list[ConceptBridge]:
        """Up to bridge_max_pairs analogies, farthest pair first."""
        try:
            themes = [t.theme for t in self.store.get_themes(owner_id, limit=self.config.bridge_candidate_themes)]
        except (MemoryEngineError, sqlite3.Error) as e:
            self._status(f"Store unavailable for {owner_id}: {e}")
            return []
        if len(themes) < 2:
            return []

        try:
            vectors = await self.embedder.embed_batch(themes)
        except MemoryEngineError as e:
            self._status(f"Theme embedding failed for {owner_id}: {e}")
            return []

        pairs = distant_pairs(themes, vectors, self.config.bridge_distance_threshold)
        chosen = pairs[: self.config.bridge_max_pairs]
        if not chosen:
            self._status(f"{owner_id}: no theme pair beyond distance {self.config.bridge_distance_threshold}")
            return []

        results = await asyncio.gather(*(self._synthesize(a, b, d, challenge) for a, b, d in chosen))
        bridges = [b for b in results if b is not None]
        self._status(f"{owner_id}: {len(bridges)}/{len(chosen)} bridges from {len(pairs)} distant pairs")
        return bridges
