#!/usr/bin/env python3
"""
Memory Engine - the facade the conversation system talks to.

Owns the store, the oracle clients and every component, and exposes:
  extract / submit_extraction / flush    memory formation (async, tracked per owner)
  recall                                 multi-signal associative recall
  dormant_concepts                       themes gone quiet, optionally relevance-filtered
  bridge                                 cross-domain analogies for a challenge
  clusters                               stored or freshly computed cluster set
plus read-side helpers (themes, emotional trajectory, recall stats).

Extraction tasks are shielded: cancelling the caller's turn never cancels
memory formation. recall(await_pending=True) waits for the owner's pending
extractions so turn N's memory is visible to turn N+1.
"""

import asyncio
import sqlite3
import time
from typing import Callable, Optional

from bridges import CrossDomainBridgeGenerator
from clustering import SemanticClusteringEngine
from dormant import DormantConceptDetector
from engine_config import EngineConfig
from extractor import MemoryExtractor
from memory_errors import MemoryEngineError, NotFound
from memory_models import (
    ClusterSet,
    ConceptBridge,
    DormantConcept,
    EmotionalDataPoint,
    ExtractionResult,
    QueryContext,
    RankedMemory,
    ThemeRecord,
)
from memory_store import MemoryStore, validate_owner_id
from oracles import ChatOracle, EmbeddingModel
from ranker import RelevanceRanker
from recall_log import RecallLog

SECONDS_PER_DAY = 86400.0


class MemoryEngine:

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        store: Optional[MemoryStore] = None,
        chat: Optional[ChatOracle] = None,
        embedder: Optional[EmbeddingModel] = None,
        on_status: Optional[Callable[[str], None]] = None,
    ):
        self.config = config or EngineConfig.load()
        self.store = store or MemoryStore(self.config.data_path, embedding_dim=self.config.embedding_dim)
        self.chat = chat or ChatOracle(
            llm_url=self.config.llm_url,
            model=self.config.llm_model,
            timeout=self.config.oracle_timeout,
            retries=self.config.oracle_retries,
            backoff=self.config.oracle_backoff,
        )
        self.embedder = embedder or EmbeddingModel(self.config.embed_model, dim=self.config.embedding_dim)

        self.recall_log = RecallLog(self.store)
        self.extractor = MemoryExtractor(self.store, self.chat, self.embedder, self.config, on_status)
        self.ranker = RelevanceRanker(
            self.store, self.embedder, self.chat, self.recall_log, self.config, on_status
        )
        self.dormant = DormantConceptDetector(self.store, self.chat, self.config, on_status)
        self.clustering = SemanticClusteringEngine(self.store, self.config, on_status)
        self.bridges = CrossDomainBridgeGenerator(self.store, self.chat, self.embedder, self.config, on_status)

        self._pending: dict[str, set[asyncio.Task]] = {}

    # ── Memory formation ──────────────────────────────────────────────────────

    def submit_extraction(
        self,
        owner_id: str,
        conversation_ref: str,
        text: str,
        phase: Optional[str] = None,
    ) -> "asyncio.Task[ExtractionResult]":
        """Schedule extraction for a turn and return the tracked task."""
        validate_owner_id(owner_id)
        task = asyncio.get_running_loop().create_task(
            self.extractor.extract(owner_id, conversation_ref, text, phase=phase)
        )
        tasks = self._pending.setdefault(owner_id, set())
        tasks.add(task)
        task.add_done_callback(tasks.discard)
        return task

    async def extract(
        self,
        owner_id: str,
        conversation_ref: str,
        text: str,
        phase: Optional[str] = None,
    ) -> ExtractionResult:
        task = self.submit_extraction(owner_id, conversation_ref, text, phase=phase)
        return await asyncio.shield(task)

    def pending_count(self, owner_id: Optional[str] = None) -> int:
        if owner_id is not None:
            return len(self._pending.get(owner_id, ()))
        return sum(len(t) for t in self._pending.values())

    async def flush(self, owner_id: Optional[str] = None):
        """Wait until every pending extraction (for one owner, or all) has committed."""
        owners = [owner_id] if owner_id is not None else list(self._pending)
        for owner in owners:
            tasks = list(self._pending.get(owner, ()))
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)

    # ── Retrieval ─────────────────────────────────────────────────────────────

    async def recall(
        self,
        owner_id: str,
        query_text: str,
        query_context: Optional[QueryContext] = None,
        k: Optional[int] = None,
        await_pending: bool = False,
    ) -> list[RankedMemory]:
        validate_owner_id(owner_id)
        if await_pending:
            await self.flush(owner_id)
        if not self.store.owner_exists(owner_id):
            return []
        return await self.ranker.recall(owner_id, query_text, query_context, k=k)

    def mark_recall_consumed(self, owner_id: str, event_ids: list[str]) -> int:
        validate_owner_id(owner_id)
        if not self.store.owner_exists(owner_id):
            return 0
        return self.recall_log.mark_consumed(owner_id, event_ids)

    async def dormant_concepts(
        self,
        owner_id: str,
        message: Optional[str] = None,
        context: Optional[str] = None,
    ) -> list[DormantConcept]:
        validate_owner_id(owner_id)
        if not self.store.owner_exists(owner_id):
            return []
        return await self.dormant.dormant_concepts(owner_id, message=message, context=context)

    async def bridge(self, owner_id: str, challenge_text: str) -> list[ConceptBridge]:
        validate_owner_id(owner_id)
        if not self.store.owner_exists(owner_id):
            return []
        return await self.bridges.bridge(owner_id, challenge_text)

    async def clusters(self, owner_id: str, refresh: bool = False) -> ClusterSet:
        validate_owner_id(owner_id)
        if not self.store.owner_exists(owner_id):
            return ClusterSet.empty(owner_id)
        if refresh:
            return await self.clustering.run(owner_id)
        return self.clustering.get(owner_id)

    # ── Read-side helpers ─────────────────────────────────────────────────────

    def themes(self, owner_id: str, limit: Optional[int] = None) -> list[ThemeRecord]:
        validate_owner_id(owner_id)
        if not self.store.owner_exists(owner_id):
            return []
        return self.store.get_themes(owner_id, limit=limit)

    def reset_theme(self, owner_id: str, theme: str):
        validate_owner_id(owner_id)
        if not self.store.owner_exists(owner_id):
            raise NotFound(f"owner {owner_id} has no memory")
        self.store.reset_theme(owner_id, theme)

    def emotional_trajectory(self, owner_id: str, days: float = 30) -> list[EmotionalDataPoint]:
        validate_owner_id(owner_id)
        if not self.store.owner_exists(owner_id):
            return []
        return self.store.emotional_trajectory(owner_id, since=time.time() - days * SECONDS_PER_DAY)

    def recall_stats(self, owner_id: str) -> dict:
        validate_owner_id(owner_id)
        if not self.store.owner_exists(owner_id):
            return {"total": 0, "consumed": 0}
        return self.recall_log.get_stats(owner_id)

    def get_stats(self, owner_id: str) -> dict:
        validate_owner_id(owner_id)
        if not self.store.owner_exists(owner_id):
            return {"memories": 0}
        stats = self.store.get_stats(owner_id)
        stats["pending_extractions"] = self.pending_count(owner_id)
        return stats

    # ── Batch clustering (scheduler hooks) ────────────────────────────────────

    def owners_needing_clustering(self) -> list[str]:
        """Owners with memory newer than their stored cluster set."""
        owners = []
        for owner_id in self.store.list_owners():
            try:
                stored = self.store.load_clusters(owner_id)
                since = stored.generated_at if stored else 0.0
                if self.store.count_memories_since(owner_id, since) > 0:
                    owners.append(owner_id)
            except (MemoryEngineError, sqlite3.Error) as e:
                print(f"[Engine] Skipping {owner_id} in clustering check: {e}")
        return owners

    async def close(self):
        await self.flush()
        await self.chat.close()
        self.store.close()
