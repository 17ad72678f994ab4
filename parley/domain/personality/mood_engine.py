"""
Keyword-triggered moods.

Mood selection is a pure function of the recent history and the current
message: trigger occurrences are counted per mood, weighted by the mood's
base intensity, and the best-scoring mood wins (neutral when nothing
matched). Intensity is then scaled by how much of the evidence sits in the
last few messages:

    confidence = |triggers seen in the last 3 messages| / |triggers seen anywhere|
    intensity  = base * (0.5 + 0.5 * confidence)

Post-processing is the only place randomness enters, and it draws from an
injected random.Random so tests can seed it.
"""

from typing import Dict, List, Optional, Sequence
import random
import re
import structlog

from parley.domain.models.generation import Mood, MoodName, ResponseModifiers
from parley.infrastructure.config.settings import GenerationConfig

logger = structlog.get_logger(__name__)

# Messages that count as "recent" for the confidence factor
RECENT_WINDOW = 3

MOODS: Dict[MoodName, Mood] = {
    MoodName.EXCITED: Mood(
        name=MoodName.EXCITED,
        intensity=0.8,
        trigger_keywords=["ship", "deploy", "launch", "release", "merge", "production", "🚀"],
        response_modifiers=ResponseModifiers(
            temperature_delta=0.2, length_bias=0.2, humor_level=0.9, formality_level=0.2
        ),
    ),
    MoodName.SARCASTIC: Mood(
        name=MoodName.SARCASTIC,
        intensity=0.7,
        trigger_keywords=["bug", "broken", "not working", "error", "failed", "oops", "🤦"],
        response_modifiers=ResponseModifiers(
            temperature_delta=0.1, length_bias=0.0, humor_level=1.0, formality_level=0.1
        ),
    ),
    MoodName.ANALYTICAL: Mood(
        name=MoodName.ANALYTICAL,
        intensity=0.6,
        trigger_keywords=["analyze", "data", "metrics", "performance", "why", "how does"],
        response_modifiers=ResponseModifiers(
            temperature_delta=-0.1, length_bias=0.5, humor_level=0.3, formality_level=0.7
        ),
    ),
    MoodName.HELPFUL: Mood(
        name=MoodName.HELPFUL,
        intensity=0.5,
        trigger_keywords=["help", "how do i", "what is", "can someone", "stuck", "question"],
        response_modifiers=ResponseModifiers(
            temperature_delta=0.0, length_bias=0.3, humor_level=0.4, formality_level=0.5
        ),
    ),
    MoodName.NOSTALGIC: Mood(
        name=MoodName.NOSTALGIC,
        intensity=0.6,
        trigger_keywords=["remember when", "last time", "used to", "back in", "old days"],
        response_modifiers=ResponseModifiers(
            temperature_delta=0.0, length_bias=0.2, humor_level=0.6, formality_level=0.3
        ),
    ),
    MoodName.NEUTRAL: Mood(
        name=MoodName.NEUTRAL,
        intensity=0.5,
        trigger_keywords=[],
        response_modifiers=ResponseModifiers(
            temperature_delta=0.0, length_bias=0.0, humor_level=0.5, formality_level=0.4
        ),
    ),
}

CASUAL_CONTRACTIONS = [
    (re.compile(r"\bI am\b"), "I'm"),
    (re.compile(r"\bYou are\b"), "You're"),
    (re.compile(r"\bIt is\b"), "It's"),
    (re.compile(r"\bdo not\b"), "don't"),
]


def count_occurrences(text: str, trigger: str) -> int:
    return text.count(trigger.casefold())


class MoodEngine:
    """Selects a mood and bends generation around it"""

    def __init__(
        self,
        config: Optional[GenerationConfig] = None,
        rng: Optional[random.Random] = None,
        moods: Optional[Dict[MoodName, Mood]] = None
    ):
        self.config = config or GenerationConfig()
        self.rng = rng or random.Random()
        self.moods = moods or MOODS

    def determine_mood(self, recent_messages: Sequence[str], current_message: str) -> Mood:
        """Pick the mood for this turn; deterministic in its inputs"""

        all_text = " ".join([*recent_messages, current_message]).casefold()

        best = self.moods[MoodName.NEUTRAL]
        best_score = 0.0
        for mood in self.moods.values():
            if not mood.trigger_keywords:
                continue
            matches = sum(count_occurrences(all_text, trigger) for trigger in mood.trigger_keywords)
            score = matches * mood.intensity
            if score > best_score:
                best, best_score = mood, score

        if not best.trigger_keywords:
            return best.model_copy(deep=True)

        recent_text = " ".join(recent_messages[-RECENT_WINDOW:]).casefold()
        seen = [t for t in best.trigger_keywords if t.casefold() in all_text]
        recent_seen = [t for t in seen if t.casefold() in recent_text]
        confidence = len(recent_seen) / len(seen) if seen else 0.0

        intensity = min(max(best.intensity * (0.5 + 0.5 * confidence), 0.0), 1.0)

        logger.debug(
            "mood_selected",
            mood=best.name.value,
            score=round(best_score, 3),
            confidence=round(confidence, 3),
            intensity=round(intensity, 3)
        )
        return best.model_copy(update={"intensity": intensity}, deep=True)

    def temperature_for(self, mood: Mood) -> float:
        """Base temperature shifted by the mood, scaled by intensity"""

        temperature = self.config.base_temperature + mood.response_modifiers.temperature_delta * mood.intensity
        return round(min(max(temperature, 0.0), 2.0), 4)

    def max_tokens_for(self, mood: Mood) -> int:
        """Base length stretched by the mood's length bias, clamped"""

        max_tokens = round(self.config.base_max_tokens * (1 + mood.response_modifiers.length_bias))
        return max(self.config.min_max_tokens, min(self.config.max_max_tokens, max_tokens))

    def apply_post_processing(self, response: str, mood: Mood) -> str:
        """Light stylistic touches driven by the mood"""

        modifiers = mood.response_modifiers

        if mood.intensity > 0.7 and modifiers.humor_level > 0.7:
            if "!" not in response and self.rng.random() < mood.intensity:
                response = re.sub(r"\.$", "!", response)
            if mood.name == MoodName.EXCITED and self.rng.random() < mood.intensity * 0.5:
                response += " 🚀"
        elif mood.name == MoodName.SARCASTIC and mood.intensity > 0.6:
            if self.rng.random() < mood.intensity * 0.3:
                response = f"*{response}*"

        if modifiers.formality_level < 0.3:
            for pattern, replacement in CASUAL_CONTRACTIONS:
                response = pattern.sub(replacement, response)

        return response

    def describe(self) -> List[Dict[str, object]]:
        """Mood table for diagnostics"""

        return [
            {
                "name": mood.name.value,
                "intensity": mood.intensity,
                "triggers": list(mood.trigger_keywords),
            }
            for mood in self.moods.values()
        ]
