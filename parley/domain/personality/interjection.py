from typing import Optional, Sequence
import structlog
from pydantic import BaseModel
from langchain_core.messages import HumanMessage, SystemMessage

from parley.domain.context.state.state_manager import InterjectionLedger
from parley.domain.generation.prompts import PROMPTS, PromptTemplateBuilder
from parley.domain.generation.usage_tracker import UsageTracker
from parley.infrastructure.config.settings import GenerationConfig
from parley.infrastructure.observability.logging import metrics
from parley.infrastructure.providers.base import CompletionProvider

logger = structlog.get_logger(__name__)

INTERJECT_PREFIX = "INTERJECT:"

# Only the tail of the conversation is shown to the model
CONVERSATION_TAIL = 10


class InterjectionDecision(BaseModel):
    """Whether to speak unprompted, and what to say"""
    should: bool = False
    message: Optional[str] = None


class InterjectionPolicy:
    """
    Decides whether the agent should jump into a conversation unprompted.

    At most one interjection per channel per interval; the per-channel
    timestamps live in the injected ledger.
    """

    def __init__(
        self,
        completion: CompletionProvider,
        ledger: InterjectionLedger,
        config: Optional[GenerationConfig] = None,
        usage_tracker: Optional[UsageTracker] = None
    ):
        self.completion = completion
        self.ledger = ledger
        self.config = config or GenerationConfig()
        self.usage_tracker = usage_tracker

    async def should_interject(self, recent_messages: Sequence[str], channel_id: str) -> InterjectionDecision:
        """Ask the model whether to interject; any failure means no"""

        claimed, previous = await self.ledger.claim(channel_id, self.config.interjection_interval_seconds)
        if not claimed:
            return InterjectionDecision()

        decision = InterjectionDecision()
        try:
            decision = await self._ask(recent_messages, channel_id)
        finally:
            if not decision.should:
                await self.ledger.release(channel_id, previous)
        return decision

    async def _ask(self, recent_messages: Sequence[str], channel_id: str) -> InterjectionDecision:
        try:
            prompt = PromptTemplateBuilder.build(
                PROMPTS["interjection"],
                {"conversation": "\n".join(recent_messages[-CONVERSATION_TAIL:])}
            )
            result = await self.completion.complete(
                [SystemMessage(content=PROMPTS["system_concise"]), HumanMessage(content=prompt)],
                temperature=0.8,
                max_tokens=100,
                model=self.config.economy_model
            )

            if self.usage_tracker is not None:
                await self.usage_tracker.track_usage(
                    result.model,
                    result.usage.prompt_tokens,
                    result.usage.completion_tokens,
                    operation="interjection",
                    channel_id=channel_id
                )

            text = result.text.strip()
            if not text.startswith(INTERJECT_PREFIX):
                return InterjectionDecision()

            message = text[len(INTERJECT_PREFIX):].strip()
            if not message:
                return InterjectionDecision()

            metrics.increment_counter("interjections")
            logger.info("interjection_decided", channel_id=channel_id, length=len(message))
            return InterjectionDecision(should=True, message=message)

        except Exception as e:
            logger.warning("interjection_check_failed", channel_id=channel_id, error=str(e))
            return InterjectionDecision()
