#!/usr/bin/env python3
"""
Semantic Clustering Engine - batch grouping of an owner's memory by theme.

Run:
  1. Theme table: how many memories carry each tag
  2. Keep the top N themes as a one-level hierarchy
  3. Each memory joins the cluster of its dominant theme (its highest-ranked tag)
  4. Per cluster: mean valence, majority phase, saturating strength
  5. Replace the owner's stored cluster set in one transaction

Pure CPU over store reads; run() pushes it to a worker thread.
"""

import asyncio
import sqlite3
import time
from collections import Counter
from typing import Callable, Optional

from engine_config import EngineConfig
from memory_errors import MemoryEngineError
from memory_models import ClusterSet, MemoryCluster, MemoryRecord
from memory_store import MemoryStore

ESTABLISHED_PATTERNS = "Established thought patterns detected"
STRONG_EMOTIONS = "Strong emotional associations identified"


def theme_frequencies(memories: list[MemoryRecord]) -> list[tuple[str, int]]:
    """(theme, memory count) by count descending; ties keep first-seen order."""
    counts: Counter = Counter()
    for m in memories:
        for tag in dict.fromkeys(t.lower() for t in m.tags):
            counts[tag] += 1
    return counts.most_common()


def dominant_phase(memories: list[MemoryRecord], default: str = "expansion") -> str:
    phases = Counter(m.phase for m in memories if m.phase)
    if not phases:
        return default
    return phases.most_common(1)[0][0]


class SemanticClusteringEngine:

    def __init__(
        self,
        store: MemoryStore,
        config: Optional[EngineConfig] = None,
        on_status: Optional[Callable[[str], None]] = None,
    ):
        self.store = store
        self.config = config or EngineConfig()
        self.on_status = on_status

    def _status(self, msg: str):
        print(f"[Cluster] {msg}")
        if self.on_status:
            self.on_status(msg)

    def build(self, owner_id: str, memories: list[MemoryRecord], now: Optional[float] = None) -> ClusterSet:
        """Compute a cluster set from memories. No I/O."""
        now = time.time() if now is None else now
        top = theme_frequencies(memories)[: self.config.cluster_top_themes]
        hierarchy = {
            "root": "owner_themes",
            "children": [{"name": t, "frequency": f, "children": []} for t, f in top],
        }
        rank = {t: i for i, (t, _) in enumerate(top)}

        groups: dict[str, list[MemoryRecord]] = {}
        for m in memories:
            ranked = [t.lower() for t in m.tags if t.lower() in rank]
            if not ranked:
                continue
            theme = min(ranked, key=lambda t: rank[t])
            groups.setdefault(theme, []).append(m)

        clusters = []
        for theme, _ in top:
            members = groups.get(theme)
            if not members:
                continue
            clusters.append(MemoryCluster(
                id=f"cluster_{rank[theme]}",
                owner_id=owner_id,
                theme_set=[theme],
                emotional_centroid=sum(m.emotional_valence for m in members) / len(members),
                dominant_phase=dominant_phase(members, self.config.default_phase),
                strength_score=min(1.0, len(members) / self.config.cluster_saturation_size),
                member_ids=[m.id for m in members],
                last_activated=now,
                activation_count=1,
            ))

        emergent = []
        if any(c.strength_score > self.config.established_strength for c in clusters):
            emergent.append(ESTABLISHED_PATTERNS)
        if any(abs(c.emotional_centroid) > self.config.emotional_centroid_threshold for c in clusters):
            emergent.append(STRONG_EMOTIONS)

        return ClusterSet(
            owner_id=owner_id,
            clusters=clusters,
            hierarchy=hierarchy,
            emergent_themes=emergent,
            generated_at=now,
        )

    def _clustering_cpu_work(self, owner_id: str, now: Optional[float] = None) -> ClusterSet:
        """Read, build and replace. Safe to run in a thread pool executor."""
        memories = self.store.all_memories(owner_id)
        cluster_set = self.build(owner_id, memories, now=now)
        self.store.replace_clusters(owner_id, cluster_set)
        return cluster_set

    async def run(self, owner_id: str, now: Optional[float] = None) -> ClusterSet:
        """Recompute and store the owner's clusters. Degrades to the stored (or empty) set."""
        start = time.time()
        loop = asyncio.get_running_loop()
        try:
            cluster_set = await loop.run_in_executor(None, self._clustering_cpu_work, owner_id, now)
        except (MemoryEngineError, sqlite3.Error) as e:
            self._status(f"Clustering failed for {owner_id}: {e}")
            return self.get(owner_id)
        self._status(
            f"{owner_id}: {len(cluster_set.clusters)} clusters, "
            f"{len(cluster_set.emergent_themes)} emergent theme(s) in {time.time() - start:.2f}s"
        )
        return cluster_set

    def get(self, owner_id: str) -> ClusterSet:
        """Stored cluster set without recomputing."""
        try:
            stored = self.store.load_clusters(owner_id)
        except (MemoryEngineError, sqlite3.Error) as e:
            self._status(f"Could not load clusters for {owner_id}: {e}")
            stored = None
        return stored or ClusterSet.empty(owner_id)
