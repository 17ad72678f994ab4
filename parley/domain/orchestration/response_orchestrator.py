from typing import TypedDict, Annotated, List, Dict, Any, Optional, Literal
from langgraph.graph import StateGraph, END
from langgraph.graph.message import add_messages
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
import time
import uuid
import structlog

from parley.domain.context.context_manager import ContextBuildOptions, ContextManager
from parley.domain.context.memory.cache_memory_store import CacheMemoryStore
from parley.domain.generation.model_selector import ModelSelector, assess_complexity
from parley.domain.generation.prompt_optimizer import PromptOptimizer
from parley.domain.generation.prompts import PROMPTS, PromptTemplateBuilder
from parley.domain.generation.usage_tracker import UsageTracker
from parley.domain.models.conversation import ContextWindow
from parley.domain.models.generation import (
    Complexity, GeneratedResponse, ModelSelection, Mood, MoodName, ResponseMetadata
)
from parley.domain.personality.mood_engine import MoodEngine
from parley.domain.personality.profile_learner import ProfileLearner
from parley.infrastructure.config.settings import GenerationConfig
from parley.infrastructure.observability.langfuse_tracing import ResponseTrace, ResponseTracer
from parley.infrastructure.observability.logging import metrics
from parley.infrastructure.providers.base import CompletionProvider, CompletionResult

logger = structlog.get_logger(__name__)

FALLBACK_REPLY = "🤖 *sparks fly* My circuits are a bit scrambled. Try again?"

# Budget for the context block inside the response prompt
PROMPT_CONTEXT_TOKENS = 3000


class ResponseState(TypedDict):
    """State for the response graph"""
    messages: Annotated[List[BaseMessage], add_messages]
    message: str
    channel_id: str
    user_id: str
    user_name: str
    thread_id: Optional[str]
    window: Optional[ContextWindow]
    mood: Optional[Mood]
    complexity: Complexity
    selection: Optional[ModelSelection]
    prompt_test_id: Optional[str]
    prompt_variant: Optional[str]
    completion: Optional[CompletionResult]
    response_text: Optional[str]
    trace: Optional[ResponseTrace]
    started_at: float
    node_trace: List[str]
    error: Optional[str]


class ResponseOrchestrator:
    """
    Response pipeline as a LangGraph workflow:

        build_context -> select_mood -> select_model -> generate
                      -> post_process -> record -> END

    Any node failure routes to the error handler, which ends the run; the
    caller then answers with the fallback reply.
    """

    def __init__(
        self,
        context_manager: ContextManager,
        mood_engine: MoodEngine,
        model_selector: ModelSelector,
        completion: CompletionProvider,
        usage_tracker: UsageTracker,
        prompt_optimizer: Optional[PromptOptimizer] = None,
        profile_learner: Optional[ProfileLearner] = None,
        tracer: Optional[ResponseTracer] = None,
        config: Optional[GenerationConfig] = None
    ):
        self.context_manager = context_manager
        self.mood_engine = mood_engine
        self.model_selector = model_selector
        self.completion = completion
        self.usage_tracker = usage_tracker
        self.prompt_optimizer = prompt_optimizer
        self.profile_learner = profile_learner
        self.tracer = tracer
        self.config = config or GenerationConfig()
        self.response_cache = CacheMemoryStore(default_ttl=self.config.response_cache_ttl_seconds, max_entries=500)
        self.workflow = self._create_workflow()

    def _create_workflow(self):
        workflow = StateGraph(ResponseState)

        workflow.add_node("build_context", self.build_context_node)
        workflow.add_node("select_mood", self.mood_node)
        workflow.add_node("select_model", self.model_node)
        workflow.add_node("generate", self.generate_node)
        workflow.add_node("post_process", self.post_process_node)
        workflow.add_node("record", self.record_node)
        workflow.add_node("error_handler", self.error_handler_node)

        workflow.set_entry_point("build_context")

        steps = ["build_context", "select_mood", "select_model", "generate", "post_process", "record"]
        for current, following in zip(steps, steps[1:]):
            workflow.add_conditional_edges(
                current,
                self.check_error,
                {"continue": following, "error": "error_handler"}
            )

        workflow.add_edge("record", END)
        workflow.add_edge("error_handler", END)

        return workflow.compile()

    @staticmethod
    def response_cache_key(message: str, channel_id: str, thread_id: Optional[str]) -> str:
        return f"{channel_id}:{message[:50]}:{thread_id or 'main'}"

    async def build_context_node(self, state: ResponseState) -> Dict[str, Any]:
        options = ContextBuildOptions(
            thread_id=state["thread_id"],
            recent_limit=25,
            relevant_limit=15,
            semantic_weight=0.7,
            diversity_weight=0.2
        )
        try:
            window = await self.context_manager.build_context(state["channel_id"], state["message"], options)
        except Exception as e:
            return {"error": f"context build failed: {e}"}

        return {"window": window, "node_trace": state["node_trace"] + ["build_context"]}

    async def mood_node(self, state: ResponseState) -> Dict[str, Any]:
        try:
            window = state["window"]
            mood = self.mood_engine.determine_mood([m.text for m in window.recent_messages], state["message"])
            complexity = assess_complexity(state["message"], window)
        except Exception as e:
            return {"error": f"mood selection failed: {e}"}

        return {"mood": mood, "complexity": complexity, "node_trace": state["node_trace"] + ["select_mood"]}

    async def model_node(self, state: ResponseState) -> Dict[str, Any]:
        try:
            selection = await self.model_selector.select_optimal_model(
                state["message"],
                conversation_length=len(state["window"].recent_messages),
                complexity=state["complexity"]
            )
        except Exception as e:
            return {"error": f"model selection failed: {e}"}

        return {"selection": selection, "node_trace": state["node_trace"] + ["select_model"]}

    async def generate_node(self, state: ResponseState) -> Dict[str, Any]:
        try:
            window = state["window"]
            mood = state["mood"]

            system_prompt = PROMPTS["system_balanced"]
            test_id = variant_id = None
            if self.prompt_optimizer is not None:
                test = self.prompt_optimizer.get_active_test("system")
                if test is not None:
                    variant = self.prompt_optimizer.select_variant(test.id, state["user_id"])
                    system_prompt = variant.system_prompt or system_prompt
                    test_id, variant_id = test.id, variant.id

            response_prompt = PromptTemplateBuilder.build_optimal(
                "response",
                conversation_length=len(window.recent_messages),
                complexity=state["complexity"],
                variables={
                    "context": self.context_manager.format_context(window, max_tokens=PROMPT_CONTEXT_TOKENS),
                    "message": state["message"],
                    "userName": state["user_name"],
                }
            )

            prompt = [SystemMessage(content=system_prompt), HumanMessage(content=response_prompt)]
            completion = await self.completion.complete(
                prompt,
                temperature=self.mood_engine.temperature_for(mood),
                max_tokens=self.mood_engine.max_tokens_for(mood),
                model=state["selection"].model
            )
        except Exception as e:
            return {"error": f"generation failed: {e}"}

        return {
            "messages": prompt,
            "completion": completion,
            "prompt_test_id": test_id,
            "prompt_variant": variant_id,
            "node_trace": state["node_trace"] + ["generate"],
        }

    async def post_process_node(self, state: ResponseState) -> Dict[str, Any]:
        try:
            text = self.mood_engine.apply_post_processing(state["completion"].text, state["mood"])
        except Exception as e:
            return {"error": f"post-processing failed: {e}"}

        return {"response_text": text, "node_trace": state["node_trace"] + ["post_process"]}

    async def record_node(self, state: ResponseState) -> Dict[str, Any]:
        """Usage, prompt-test metrics and tracing; failures here do not cost the reply"""

        completion = state["completion"]
        selection = state["selection"]

        try:
            await self.usage_tracker.track_usage(
                selection.model,
                completion.usage.prompt_tokens,
                completion.usage.completion_tokens,
                operation="generate_response",
                user_id=state["user_id"],
                channel_id=state["channel_id"]
            )

            if self.prompt_optimizer is not None and state["prompt_test_id"] and state["prompt_variant"]:
                self.prompt_optimizer.track_metrics(
                    state["prompt_test_id"],
                    state["prompt_variant"],
                    quality=state["window"].quality_score,
                    response_time=(time.perf_counter() - state["started_at"]) * 1000,
                    tokens=completion.usage.total_tokens
                )
        except Exception as e:
            logger.warning("response_recording_failed", channel_id=state["channel_id"], error=str(e))

        trace = state["trace"]
        if trace is not None:
            trace.generation(
                model=selection.model,
                prompt=[{"role": m.type, "content": m.content} for m in state["messages"]],
                completion=completion.text,
                prompt_tokens=completion.usage.prompt_tokens,
                completion_tokens=completion.usage.completion_tokens,
                metadata={"mood": state["mood"].name.value, "reasoning": selection.reasoning}
            )

        return {"node_trace": state["node_trace"] + ["record"]}

    async def error_handler_node(self, state: ResponseState) -> Dict[str, Any]:
        logger.error(
            "response_pipeline_failed",
            channel_id=state["channel_id"],
            error=state.get("error"),
            trace=state["node_trace"]
        )
        metrics.increment_counter("responses.fallbacks")
        return {"node_trace": state["node_trace"] + ["error_handler"]}

    def check_error(self, state: ResponseState) -> Literal["continue", "error"]:
        return "error" if state.get("error") else "continue"

    async def generate_response(
        self,
        message: str,
        channel_id: str,
        user_id: str,
        user_name: str,
        thread_id: Optional[str] = None
    ) -> GeneratedResponse:
        """Produce a reply for one inbound message; never raises"""

        started_at = time.perf_counter()
        key = self.response_cache_key(message, channel_id, thread_id)

        cached = await self.response_cache.get(key)
        if cached is not None:
            metrics.increment_counter("responses.cache_hits")
            logger.debug("response_cache_hit", channel_id=channel_id)
            return cached

        with structlog.contextvars.bound_contextvars(request_id=str(uuid.uuid4()), channel_id=channel_id):
            trace = self.tracer.start_trace(channel_id, user_id, message, thread_id) if self.tracer else None

            try:
                state = await self.workflow.ainvoke(self._initial_state(
                    message, channel_id, user_id, user_name, thread_id, trace, started_at
                ))
            except Exception as e:
                logger.error("response_pipeline_crashed", error=str(e), exc_info=True)
                state = {"error": str(e)}

            processing_time = (time.perf_counter() - started_at) * 1000
            metrics.record_latency("generate_response", processing_time)

            if state.get("error") or not state.get("response_text"):
                response = self._fallback(processing_time)
                if trace is not None:
                    trace.finish(response.text, {"error": state.get("error")})
                return response

            window = state["window"]
            response = GeneratedResponse(
                text=state["response_text"],
                metadata=ResponseMetadata(
                    mood=state["mood"].name,
                    confidence=window.quality_score,
                    context_quality=window.quality_score,
                    model_used=state["selection"].model,
                    prompt_variant=state["prompt_variant"],
                    processing_time=processing_time
                )
            )

            await self.response_cache.set(key, response)

            if self.profile_learner is not None:
                try:
                    await self.profile_learner.observe(user_id, user_name, message, response.text)
                except Exception as e:
                    logger.warning("profile_observe_failed", user_id=user_id, error=str(e))

            if trace is not None:
                trace.finish(response.text, response.metadata.model_dump(mode="json"))

            logger.info(
                "response_generated",
                mood=response.metadata.mood.value,
                model=response.metadata.model_used,
                processing_time_ms=round(processing_time, 2)
            )
            return response

    @staticmethod
    def _initial_state(
        message: str,
        channel_id: str,
        user_id: str,
        user_name: str,
        thread_id: Optional[str],
        trace: Optional[ResponseTrace],
        started_at: float
    ) -> ResponseState:
        return {
            "messages": [],
            "message": message,
            "channel_id": channel_id,
            "user_id": user_id,
            "user_name": user_name,
            "thread_id": thread_id,
            "window": None,
            "mood": None,
            "complexity": Complexity.MODERATE,
            "selection": None,
            "prompt_test_id": None,
            "prompt_variant": None,
            "completion": None,
            "response_text": None,
            "trace": trace,
            "started_at": started_at,
            "node_trace": [],
            "error": None,
        }

    @staticmethod
    def _fallback(processing_time: float) -> GeneratedResponse:
        return GeneratedResponse(
            text=FALLBACK_REPLY,
            metadata=ResponseMetadata(
                mood=MoodName.NEUTRAL,
                confidence=0.0,
                context_quality=0.0,
                model_used="error",
                processing_time=processing_time
            )
        )
