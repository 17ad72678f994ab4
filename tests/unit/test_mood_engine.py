"""Tests for mood selection, decoding parameters and post-processing."""

import random
import pytest

from parley.domain.models.generation import MoodName
from parley.domain.personality.mood_engine import MOODS, MoodEngine
from tests.conftest import FixedRandom

BROKEN_BUILD = ["the build is broken", "another bug in prod", "error everywhere"]


class TestDetermineMood:
    """Tests for keyword-driven mood selection"""

    def test_sarcastic_when_things_break(self):
        mood = MoodEngine().determine_mood(BROKEN_BUILD, "anyone around?")

        assert mood.name == MoodName.SARCASTIC
        # every trigger sits in the last three messages
        assert mood.intensity == pytest.approx(0.7)

    def test_selection_is_deterministic(self):
        first = MoodEngine(rng=random.Random(1)).determine_mood(BROKEN_BUILD, "anyone around?")
        second = MoodEngine(rng=random.Random(99)).determine_mood(BROKEN_BUILD, "anyone around?")

        assert first == second

    def test_neutral_without_triggers(self):
        mood = MoodEngine().determine_mood(["good morning", "lunch soon"], "sounds nice")

        assert mood.name == MoodName.NEUTRAL
        assert mood.intensity == 0.5

    def test_trigger_only_in_current_message_halves_intensity(self):
        mood = MoodEngine().determine_mood(["good morning", "lunch soon"], "the build is broken")

        assert mood.name == MoodName.SARCASTIC
        assert mood.intensity == pytest.approx(0.35)

    def test_old_evidence_lowers_confidence(self):
        history = ["we deploy today", "lunch", "coffee", "meeting", "ship the release"]

        mood = MoodEngine().determine_mood(history, "ok")

        assert mood.name == MoodName.EXCITED
        # deploy is outside the last three messages; ship and release are inside
        assert mood.intensity == pytest.approx(0.8 * (0.5 + 0.5 * 2 / 3))

    def test_triggers_are_case_insensitive(self):
        mood = MoodEngine().determine_mood([], "REMEMBER WHEN we used to deploy by FTP")

        assert mood.name == MoodName.NOSTALGIC

    def test_returned_mood_does_not_alias_table(self):
        mood = MoodEngine().determine_mood(BROKEN_BUILD, "x")
        mood.trigger_keywords.append("mutated")

        assert "mutated" not in MOODS[MoodName.SARCASTIC].trigger_keywords


class TestDecodingParameters:

    def test_temperature_scales_with_intensity(self):
        engine = MoodEngine()
        mood = engine.determine_mood(BROKEN_BUILD, "anyone around?")

        assert engine.temperature_for(mood) == pytest.approx(0.77)

    def test_neutral_temperature_is_base(self):
        engine = MoodEngine()

        assert engine.temperature_for(MOODS[MoodName.NEUTRAL]) == pytest.approx(0.7)

    def test_max_tokens_follow_length_bias(self):
        engine = MoodEngine()

        assert engine.max_tokens_for(MOODS[MoodName.ANALYTICAL]) == 300
        assert engine.max_tokens_for(MOODS[MoodName.EXCITED]) == 240
        assert engine.max_tokens_for(MOODS[MoodName.NEUTRAL]) == 200

    def test_max_tokens_are_clamped(self):
        engine = MoodEngine()
        long_winded = MOODS[MoodName.ANALYTICAL].model_copy(deep=True)
        long_winded.response_modifiers.length_bias = 1.0
        terse = MOODS[MoodName.ANALYTICAL].model_copy(deep=True)
        terse.response_modifiers.length_bias = -0.9

        assert engine.max_tokens_for(long_winded) == 400
        assert engine.max_tokens_for(terse) == 100


class TestPostProcessing:

    def test_excited_reply_gets_exclamation_and_rocket(self):
        engine = MoodEngine(rng=FixedRandom(0.0))
        mood = MOODS[MoodName.EXCITED]

        assert engine.apply_post_processing("I am shipping it now.", mood) == "I'm shipping it now! 🚀"

    def test_unlucky_draw_only_applies_contractions(self):
        engine = MoodEngine(rng=FixedRandom(0.99))
        mood = MOODS[MoodName.EXCITED]

        assert engine.apply_post_processing("It is done.", mood) == "It's done."

    def test_sarcastic_reply_gets_italics(self):
        engine = MoodEngine(rng=FixedRandom(0.1))
        mood = MOODS[MoodName.SARCASTIC]

        assert engine.apply_post_processing("Sure, works on my machine.", mood) == "*Sure, works on my machine.*"

    def test_formal_moods_are_left_alone(self):
        engine = MoodEngine(rng=FixedRandom(0.0))
        mood = MOODS[MoodName.ANALYTICAL]

        assert engine.apply_post_processing("I am checking the data.", mood) == "I am checking the data."

    def test_seeded_rng_is_reproducible(self):
        mood = MOODS[MoodName.EXCITED]
        outputs = {
            MoodEngine(rng=random.Random(42)).apply_post_processing("Deployed.", mood)
            for _ in range(5)
        }

        assert len(outputs) == 1


class TestDescribe:

    def test_lists_every_mood(self):
        names = {row["name"] for row in MoodEngine().describe()}

        assert names == {mood.value for mood in MoodName}
