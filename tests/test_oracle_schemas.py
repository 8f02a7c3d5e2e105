"""Tests for oracle payload validation."""

import pytest

from memory_errors import OracleMalformedResponse
from oracle_schemas import (
    BridgeInsight,
    EmotionalAnalysis,
    RelevanceCheck,
    normalize_labels,
    parse_dormant_category,
    parse_extraction,
    parse_memory_candidate,
    parse_theme_list,
)


class TestMemoryCandidates:

    def test_camel_case_memory_type_is_accepted(self):
        c = parse_memory_candidate({"content": "Values honesty", "memoryType": "Value"})
        assert c is not None
        assert c.category == "value"

    def test_unknown_category_dropped(self):
        assert parse_memory_candidate({"content": "x", "category": "gossip"}) is None

    def test_missing_content_dropped(self):
        assert parse_memory_candidate({"category": "goal"}) is None
        assert parse_memory_candidate({"content": "   ", "category": "goal"}) is None

    def test_missing_category_dropped(self):
        assert parse_memory_candidate({"content": "Runs every morning"}) is None

    def test_numbers_are_clamped(self):
        c = parse_memory_candidate({
            "content": "Hates mornings",
            "category": "emotion",
            "emotionalValence": -3,
            "importance": 1.7,
            "confidence": "not a number",
        })
        assert c.emotional_valence == -1.0
        assert c.importance == 1.0
        assert c.confidence == 0.5

    def test_tags_normalized(self):
        c = parse_memory_candidate({
            "content": "Learning piano",
            "category": "goal",
            "tags": ["  Music ", "music", 7, "Deep   Practice"],
        })
        assert c.tags == ["music", "deep practice"]

    def test_not_a_dict(self):
        assert parse_memory_candidate("insight") is None


class TestExtraction:

    def test_bad_entries_dropped_rest_kept(self):
        payload = parse_extraction({
            "memories": [
                {"content": "Wants a garden", "category": "goal"},
                {"content": "???", "category": "nonsense"},
                "stray string",
            ],
            "themes": ["Gardening", "gardening", " Home "],
        })
        assert [m.content for m in payload.memories] == ["Wants a garden"]
        assert payload.dropped == 2
        assert payload.themes == ["gardening", "home"]
        assert payload.emotional_analysis is None

    def test_caps(self):
        payload = parse_extraction(
            {
                "memories": [{"content": f"m{i}", "category": "insight"} for i in range(12)],
                "themes": [f"t{i}" for i in range(15)],
            },
            max_memories=8,
            max_themes=10,
        )
        assert len(payload.memories) == 8
        assert len(payload.themes) == 10

    def test_top_level_shape(self):
        with pytest.raises(OracleMalformedResponse):
            parse_extraction(["not", "an", "object"])
        with pytest.raises(OracleMalformedResponse):
            parse_extraction({"memories": "oops"})

    def test_missing_memories_key_is_empty(self):
        payload = parse_extraction({"themes": ["sleep"]})
        assert payload.memories == []
        assert payload.themes == ["sleep"]

    def test_emotional_analysis_clamped(self):
        a = EmotionalAnalysis.from_oracle({
            "valence": 2, "arousal": -1, "dominantEmotion": "  JOY ", "intensity": 9,
            "growthPhase": "Renewal",
        })
        assert a.valence == 1.0
        assert a.arousal == 0.0
        assert a.intensity == 1.0
        assert a.dominant_emotion == "joy"
        assert a.growth_phase == "renewal"

    def test_emotional_analysis_defaults(self):
        a = EmotionalAnalysis.from_oracle(None)
        assert (a.valence, a.arousal, a.dominant_emotion, a.intensity) == (0.0, 0.5, "neutral", 0.5)


class TestDormantPayloads:

    @pytest.mark.parametrize("raw,expected", [
        ({"category": "Skill"}, "skill"),
        ("dream.", "dream"),
        ({"category": "hobby"}, "interest"),
        (None, "interest"),
        ({"category": ["value"]}, "interest"),
    ])
    def test_category(self, raw, expected):
        assert parse_dormant_category(raw) == expected

    def test_relevance(self):
        check = RelevanceCheck.from_oracle({
            "isRelevant": True, "relevanceScore": 1.4,
            "connection": "Both are about patience", "reactivationPrompt": "Remember bonsai?",
        })
        assert check.relevance_score == 1.0
        assert check.connection == "Both are about patience"
        assert check.is_relevant is True

    @pytest.mark.parametrize("flag, expected", [
        (True, True),
        ("true", True),
        (" TRUE ", True),
        ("false", False),
        ("False", False),
        ("yes", False),
        (1, False),
        (None, False),
    ])
    def test_relevance_flag_parsed_strictly(self, flag, expected):
        assert RelevanceCheck.from_oracle({"isRelevant": flag, "relevanceScore": 0.5}).is_relevant is expected

    def test_relevance_not_object(self):
        with pytest.raises(OracleMalformedResponse):
            RelevanceCheck.from_oracle("yes")


class TestBridgeAndThemes:

    def test_bridge_requires_all_fields(self):
        with pytest.raises(OracleMalformedResponse):
            BridgeInsight.from_oracle({"potentialSynergy": "a", "novelInsight": "b"})

    def test_bridge_ok(self):
        b = BridgeInsight.from_oracle({
            "potentialSynergy": "rhythm", "novelInsight": "cadence", "applicability": "pace work",
        })
        assert b.applicability == "pace work"

    def test_theme_list(self):
        assert parse_theme_list({"themes": ["Work", "Sleep", "work", "Diet", "x"]}) == ["work", "sleep", "diet"]
        assert parse_theme_list(["a"]) == ["a"]
        with pytest.raises(OracleMalformedResponse):
            parse_theme_list({"themes": "work"})

    def test_normalize_labels_non_list(self):
        assert normalize_labels("work") == []
