"""Tests for CrossDomainBridgeGenerator."""

import pytest

from bridges import CrossDomainBridgeGenerator, distant_pairs
from conftest import NOW, unit
from memory_errors import OracleMalformedResponse


def bridge_answer(prompt):
    return {
        "potentialSynergy": "Both reward patient observation",
        "novelInsight": "Treat the problem like a slow recipe",
        "applicability": "Break the launch into stages",
    }


@pytest.fixture
def generator(store, oracle, embedder, config):
    embedder.vectors.update({
        "cooking": unit(0),
        "astronomy": unit(1),
        "gardening": [0.8, 0.6, 0, 0, 0, 0, 0, 0],
        "poetry": [-1.0, 0, 0, 0, 0, 0, 0, 0],
    })
    return CrossDomainBridgeGenerator(store, oracle, embedder, config)


def add_themes(store, *themes):
    store.commit_turn("alice", None, [], list(themes), now=NOW)


class TestDistantPairs:

    def test_threshold_and_order(self):
        themes = ["cooking", "astronomy", "gardening"]
        vectors = [unit(0), unit(1), [0.8, 0.6, 0, 0, 0, 0, 0, 0]]
        pairs = distant_pairs(themes, vectors, 0.7)
        assert [(a, b) for a, b, _ in pairs] == [("cooking", "astronomy")]
        assert pairs[0][2] == pytest.approx(1.0)

    def test_single_theme(self):
        assert distant_pairs(["cooking"], [unit(0)], 0.7) == []


class TestBridge:

    @pytest.mark.asyncio
    async def test_fewer_than_two_themes(self, generator, store, oracle):
        assert await generator.bridge("alice", "launch stress") == []
        add_themes(store, "cooking")
        assert await generator.bridge("alice", "launch stress") == []
        assert oracle.prompts == []

    @pytest.mark.asyncio
    async def test_farthest_pairs_synthesized(self, generator, store, oracle):
        add_themes(store, "cooking", "astronomy", "gardening", "poetry")
        oracle.on("Create a novel insight", bridge_answer)
        bridges = await generator.bridge("alice", "launch stress")

        # cooking–poetry 2.0, astronomy–poetry 1.0, cooking–astronomy 1.0, gardening–poetry 1.8
        assert len(bridges) == 3
        assert {bridges[0].concept1, bridges[0].concept2} == {"cooking", "poetry"}
        assert bridges[0].distance == pytest.approx(2.0)
        assert {bridges[1].concept1, bridges[1].concept2} == {"gardening", "poetry"}
        assert all(b.distance > 0.7 for b in bridges)
        assert bridges[0].novel_insight == "Treat the problem like a slow recipe"
        assert oracle.count("Current challenge: launch stress") == 3

    @pytest.mark.asyncio
    async def test_failed_synthesis_dropped(self, generator, store, oracle):
        add_themes(store, "cooking", "astronomy", "gardening", "poetry")

        def flaky(prompt):
            if "Concept 1: gardening" in prompt or "Concept 2: gardening" in prompt:
                raise OracleMalformedResponse("bad json")
            return bridge_answer(prompt)

        oracle.on("Create a novel insight", flaky)
        bridges = await generator.bridge("alice", "launch stress")
        assert len(bridges) == 2
        assert all("gardening" not in (b.concept1, b.concept2) for b in bridges)

    @pytest.mark.asyncio
    async def test_incomplete_payload_dropped(self, generator, store, oracle):
        add_themes(store, "cooking", "astronomy")
        oracle.on("Create a novel insight", {"potentialSynergy": "x"})
        assert await generator.bridge("alice", "anything") == []

    @pytest.mark.asyncio
    async def test_embedding_failure(self, generator, store, embedder):
        add_themes(store, "cooking", "astronomy")
        embedder.fail = True
        assert await generator.bridge("alice", "anything") == []

    @pytest.mark.asyncio
    async def test_no_distant_pairs(self, generator, store, oracle):
        add_themes(store, "cooking", "gardening")
        assert await generator.bridge("alice", "anything") == []
        assert oracle.prompts == []
