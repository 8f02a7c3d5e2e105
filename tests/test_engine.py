"""Tests for the MemoryEngine facade."""

import asyncio
import sys
import types

import pytest

from conftest import DAY, DIM, NOW, extraction_payload, seed, unit
from engine import MemoryEngine
from memory_errors import NotFound, ValidationError
from memory_models import QueryContext
from oracles import EmbeddingModel


@pytest.fixture
def scripted(oracle, embedder):
    oracle.on("Extract important memories", extraction_payload())
    oracle.on("List up to 3 short themes", {"themes": ["career"]})
    embedder.vectors["Wants to move into product design"] = unit(0)
    embedder.vectors["should I switch careers?"] = unit(0)
    return oracle


class TestFormationAndRecall:

    @pytest.mark.asyncio
    async def test_extract_then_recall(self, engine, scripted):
        result = await engine.extract("alice", "conv-1", "I want to design products")
        assert len(result.memories) == 2

        ranked = await engine.recall("alice", "should I switch careers?", QueryContext())
        assert ranked[0].memory.content == "Wants to move into product design"
        assert "semantic" in ranked[0].signal_types
        assert "thematic" in ranked[0].signal_types

    @pytest.mark.asyncio
    async def test_recall_waits_for_pending_extraction(self, engine, scripted):
        scripted.delay = 0.05
        task = engine.submit_extraction("alice", "conv-1", "I want to design products")
        assert engine.pending_count("alice") == 1
        ranked = await engine.recall("alice", "should I switch careers?", QueryContext(), await_pending=True)
        assert task.done()
        assert ranked
        assert engine.pending_count("alice") == 0

    @pytest.mark.asyncio
    async def test_cancelling_caller_does_not_cancel_formation(self, engine, scripted, store):
        scripted.delay = 0.05
        caller = asyncio.ensure_future(engine.extract("alice", "conv-1", "I want to design products"))
        await asyncio.sleep(0.01)
        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller
        await engine.flush("alice")
        assert store.count_memories("alice") == 2

    @pytest.mark.asyncio
    async def test_flush_all_owners(self, engine, scripted, store):
        scripted.delay = 0.02
        engine.submit_extraction("alice", "c", "turn")
        engine.submit_extraction("bob", "c", "turn")
        await engine.flush()
        assert store.count_memories("alice") == store.count_memories("bob") == 2

    @pytest.mark.asyncio
    async def test_unknown_owner_is_empty_not_error(self, engine):
        assert await engine.recall("nobody", "hi", QueryContext()) == []
        assert await engine.dormant_concepts("nobody") == []
        assert await engine.bridge("nobody", "hi") == []
        assert (await engine.clusters("nobody")).clusters == []
        assert engine.themes("nobody") == []
        assert engine.emotional_trajectory("nobody") == []
        assert not engine.store.owner_exists("nobody")

    @pytest.mark.asyncio
    async def test_invalid_owner_rejected(self, engine):
        with pytest.raises(ValidationError):
            await engine.recall("../etc", "hi", QueryContext())
        with pytest.raises(ValidationError):
            await engine.extract("a b", "c", "text")

    @pytest.mark.asyncio
    async def test_mark_recall_consumed_and_stats(self, engine, scripted):
        await engine.extract("alice", "conv-1", "I want to design products")
        ranked = await engine.recall("alice", "should I switch careers?", QueryContext())
        assert engine.mark_recall_consumed("alice", [ranked[0].recall_event_id]) == 1
        stats = engine.recall_stats("alice")
        assert stats["consumed"] == 1
        assert stats["total"] == len(ranked)


class TestReadSide:

    @pytest.mark.asyncio
    async def test_themes_and_trajectory(self, engine, scripted):
        await engine.extract("alice", "conv-1", "I want to design products")
        assert [t.theme for t in engine.themes("alice")] == ["career", "creativity"]
        [point] = engine.emotional_trajectory("alice", days=1)
        assert point.dominant_emotion == "excited"

    @pytest.mark.asyncio
    async def test_reset_theme(self, engine, scripted):
        await engine.extract("alice", "conv-1", "I want to design products")
        engine.reset_theme("alice", "career")
        assert {t.theme: t.frequency for t in engine.themes("alice")}["career"] == 0

    def test_reset_theme_unknown_owner(self, engine):
        with pytest.raises(NotFound):
            engine.reset_theme("nobody", "career")
        assert not engine.store.owner_exists("nobody")

    def test_stats(self, engine, store):
        seed(store, content="x")
        stats = engine.get_stats("alice")
        assert stats["memories"] == 1
        assert stats["pending_extractions"] == 0


class TestClusteringHooks:

    @pytest.mark.asyncio
    async def test_owners_needing_clustering(self, engine, store):
        seed(store, "alice", tags=["work"], created_at=NOW - DAY)
        seed(store, "bob", tags=["chess"], created_at=NOW - DAY)
        assert engine.owners_needing_clustering() == ["alice", "bob"]

        await engine.clusters("alice", refresh=True)
        assert engine.owners_needing_clustering() == ["bob"]

        await engine.clusters("bob", refresh=True)
        assert engine.owners_needing_clustering() == []

    @pytest.mark.asyncio
    async def test_clusters_stored_vs_refresh(self, engine, store):
        seed(store, tags=["work"], created_at=NOW - DAY)
        assert (await engine.clusters("alice")).clusters == []
        refreshed = await engine.clusters("alice", refresh=True)
        assert [c.theme_set for c in refreshed.clusters] == [["work"]]
        assert [c.theme_set for c in (await engine.clusters("alice")).clusters] == [["work"]]


def _unreachable_hub(*args, **kwargs):
    raise OSError("We couldn't connect to 'https://huggingface.co'")


@pytest.fixture
def offline_engine(config, store, oracle, monkeypatch):
    fake = types.ModuleType("sentence_transformers")
    fake.SentenceTransformer = _unreachable_hub
    monkeypatch.setitem(sys.modules, "sentence_transformers", fake)
    return MemoryEngine(config=config, store=store, chat=oracle, embedder=EmbeddingModel("missing/model", dim=DIM))


class TestEmbeddingModelUnavailable:

    @pytest.mark.asyncio
    async def test_extract_stores_nothing(self, offline_engine, scripted, store):
        result = await offline_engine.extract("alice", "conv-1", "I want to design products")
        assert result.is_empty
        assert not store.owner_exists("alice") or store.count_memories("alice") == 0

    @pytest.mark.asyncio
    async def test_recall_falls_back_to_other_signals(self, offline_engine, store):
        m = seed(store, content="renewal", phase="renewal", embedding=unit(2), created_at=NOW - 3 * DAY)
        ranked = await offline_engine.recall(
            "alice", "what now", QueryContext(phase="renewal", themes=[], timestamp=NOW)
        )
        assert [r.memory.id for r in ranked] == [m.id]
        assert ranked[0].signal_types == ["phase"]

    @pytest.mark.asyncio
    async def test_bridge_is_empty(self, offline_engine, store):
        store.commit_turn("alice", None, [], ["cooking", "astronomy"], now=NOW)
        assert await offline_engine.bridge("alice", "stuck") == []
