from typing import Optional, Sequence
import re
import structlog

from parley.domain.models.conversation import ContextWindow
from parley.domain.models.generation import Complexity, ModelSelection
from parley.infrastructure.config.settings import GenerationConfig
from parley.infrastructure.errors import BudgetExceeded
from parley.infrastructure.observability.logging import metrics
from .usage_tracker import UsageTracker

logger = structlog.get_logger(__name__)

TECHNICAL_MARKERS = re.compile(r"```|\b(code|debug|stack ?trace|traceback|exception|regex|sql)\b", re.IGNORECASE)

QUESTION_WORDS = ("why", "how", "what", "when", "where", "analyze", "explain")
TECHNICAL_TERMS = ("api", "database", "algorithm", "function", "error", "debug")

# Conversation length past which the stronger tier is used
LONG_CONVERSATION = 20

COMPLETION_ESTIMATES = {
    Complexity.SIMPLE: 50,
    Complexity.MODERATE: 150,
    Complexity.COMPLEX: 300,
}


def assess_complexity(message: str, window: Optional[ContextWindow] = None) -> Complexity:
    """Rough difficulty of a request from the message and its context size"""

    lowered = message.lower()
    question_words = sum(1 for word in QUESTION_WORDS if word in lowered)
    technical_terms = sum(1 for term in TECHNICAL_TERMS if term in lowered)
    context_size = 0
    if window is not None:
        context_size = len(window.recent_messages) + len(window.relevant_messages)

    score = (
        (1 if len(message) > 100 else 0)
        + (1 if question_words > 1 else 0)
        + (1 if technical_terms > 0 else 0)
        + (1 if context_size > 30 else 0)
    )

    if score >= 3:
        return Complexity.COMPLEX
    if score >= 1:
        return Complexity.MODERATE
    return Complexity.SIMPLE


class ModelSelector:
    """Cost-aware choice of completion model"""

    def __init__(self, usage_tracker: UsageTracker, config: Optional[GenerationConfig] = None):
        self.usage_tracker = usage_tracker
        self.config = config or GenerationConfig()

    @property
    def tiers(self) -> Sequence[str]:
        return (self.config.economy_model, self.config.advanced_model, self.config.technical_model)

    async def select_optimal_model(
        self,
        query: str,
        requires_search: bool = False,
        conversation_length: int = 0,
        complexity: Complexity = Complexity.MODERATE
    ) -> ModelSelection:
        """
        Start cheap, escalate on search / long conversations / technical
        content, then fall back to the cheapest tier if the trailing hour
        is over budget.
        """

        model = self.config.economy_model
        reasoning = "Default economical choice"

        if requires_search or complexity == Complexity.COMPLEX:
            model = self.config.advanced_model
            reasoning = "Complex query requiring advanced reasoning"
        elif conversation_length > LONG_CONVERSATION:
            model = self.config.advanced_model
            reasoning = "Long conversation requiring better context understanding"
        elif TECHNICAL_MARKERS.search(query):
            model = self.config.technical_model
            reasoning = "Technical query requiring code understanding"

        try:
            self.usage_tracker.check_hourly_budget()
        except BudgetExceeded as e:
            model = self.config.economy_model
            reasoning += " (cost optimization due to high usage)"
            metrics.increment_counter("model_selector.budget_downgrades")
            logger.warning("hourly_budget_exceeded", spent=round(e.spent, 4), budget=e.budget)

        prompt_tokens = len(query) / 4 + conversation_length * 50 + 200
        completion_tokens = COMPLETION_ESTIMATES[complexity]
        estimated_cost = self.usage_tracker.calculate_cost(model, prompt_tokens, completion_tokens)

        logger.info("model_selected", model=model, reasoning=reasoning, estimated_cost=round(estimated_cost, 6))
        return ModelSelection(model=model, reasoning=reasoning, estimated_cost=estimated_cost)
