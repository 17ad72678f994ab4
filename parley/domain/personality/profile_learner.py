from typing import Optional
from datetime import datetime, timezone
import random
import structlog
from langchain_core.messages import HumanMessage, SystemMessage

from parley.domain.context.memory.runtime_memory import RuntimeMemory
from parley.domain.context.stores import ProfileStore
from parley.domain.generation.prompts import PROMPTS, PromptTemplateBuilder
from parley.domain.generation.usage_tracker import UsageTracker
from parley.domain.models.conversation import UserProfile
from parley.infrastructure.config.settings import GenerationConfig
from parley.infrastructure.providers.base import CompletionProvider

logger = structlog.get_logger(__name__)

# Interactions needed before a profile is worth writing
MIN_INTERACTIONS = 10


class ProfileLearner:
    """Occasionally rewrites a user's personality summary from their recent messages"""

    def __init__(
        self,
        completion: CompletionProvider,
        memory: RuntimeMemory,
        profile_store: ProfileStore,
        config: Optional[GenerationConfig] = None,
        rng: Optional[random.Random] = None,
        usage_tracker: Optional[UsageTracker] = None
    ):
        self.completion = completion
        self.memory = memory
        self.profile_store = profile_store
        self.config = config or GenerationConfig()
        self.rng = rng or random.Random()
        self.usage_tracker = usage_tracker

    async def observe(self, user_id: str, user_name: str, message: str, response: str) -> Optional[UserProfile]:
        """
        Record one exchange. With a small probability, and once enough
        history exists, regenerate and save the profile. Returns the new
        profile when one was written.
        """

        count = await self.memory.record_interaction(user_id, {"message": message, "response": response})

        if count < MIN_INTERACTIONS:
            return None
        if self.rng.random() >= self.config.profile_update_probability:
            return None

        try:
            return await self.update_profile(user_id, user_name)
        except Exception as e:
            logger.warning("profile_update_failed", user_id=user_id, error=str(e))
            return None

    async def update_profile(self, user_id: str, user_name: str) -> UserProfile:
        interactions = await self.memory.get_interactions(user_id)
        prompt = PromptTemplateBuilder.build(
            PROMPTS["profile"],
            {
                "userName": user_name,
                "messages": "\n".join(f"- {item['message']}" for item in interactions),
            }
        )

        result = await self.completion.complete(
            [SystemMessage(content=PROMPTS["system_concise"]), HumanMessage(content=prompt)],
            temperature=0.7,
            max_tokens=150,
            model=self.config.economy_model
        )

        if self.usage_tracker is not None:
            await self.usage_tracker.track_usage(
                result.model,
                result.usage.prompt_tokens,
                result.usage.completion_tokens,
                operation="profile",
                user_id=user_id
            )

        existing = (await self.profile_store.get_profiles([user_id])).get(user_id)
        profile = UserProfile(
            user_id=user_id,
            display_name=user_name,
            personality_summary=result.text.strip(),
            interests=list(existing.interests) if existing else [],
            updated_at=datetime.now(timezone.utc)
        )
        await self.profile_store.save_profile(profile)

        logger.info("profile_updated", user_id=user_id, interactions=len(interactions))
        return profile
