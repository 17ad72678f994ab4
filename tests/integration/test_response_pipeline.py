"""End-to-end response generation through the wired container."""

from unittest.mock import MagicMock
import random
import pytest

from parley.bootstrap import Container
from parley.domain.models.generation import MoodName, PromptVariant
from parley.domain.orchestration.response_orchestrator import FALLBACK_REPLY
from parley.infrastructure.config.settings import Settings, TracingConfig
from parley.infrastructure.observability.langfuse_tracing import ResponseTracer
from parley.infrastructure.observability.logging import metrics
from tests.conftest import HashingEmbeddingProvider, ScriptedCompletionProvider, make_message

HISTORY = [
    ("h1", "the nightly deploy pipeline failed again", "U2", 60 * 24 * 3),
    ("h2", "the coffee machine is out of beans", "U3", 60 * 24 * 3 - 5),
    ("r1", "morning all", "U2", 15),
    ("r2", "anyone seen the release notes", "U3", 10),
]


async def seed(container: Container) -> None:
    for message_id, text, sender, minutes_ago in HISTORY:
        await container.message_store.add(make_message(message_id, text, sender_id=sender, minutes_ago=minutes_ago))


def build(completion=None, tracer=None, **settings) -> Container:
    return Container(
        Settings(_env_file=None, **settings),
        embedding_provider=HashingEmbeddingProvider(),
        completion_provider=completion or ScriptedCompletionProvider(),
        tracer=tracer,
        rng=random.Random(7)
    )


class TestGenerateResponse:

    @pytest.mark.asyncio
    async def test_reply_uses_context(self, container, completion_provider):
        await seed(container)

        response = await container.orchestrator.generate_response(
            "why did the nightly deploy pipeline fail again", "C1", "U1", "Ana"
        )

        assert "Sure thing" in response.text
        assert response.metadata.model_used == "gpt-4o-mini"
        assert 0 < response.metadata.context_quality <= 1
        assert response.metadata.confidence == response.metadata.context_quality
        assert response.metadata.processing_time > 0

        call = completion_provider.calls[0]
        human = call["messages"][-1].content
        assert "the nightly deploy pipeline failed again" in human
        assert "anyone seen the release notes" in human
        assert "why did the nightly deploy pipeline fail again" in human

    @pytest.mark.asyncio
    async def test_mood_drives_decoding(self, container, completion_provider):
        await seed(container)

        response = await container.orchestrator.generate_response(
            "the build is broken and the error is back", "C1", "U1", "Ana"
        )

        assert response.metadata.mood == MoodName.SARCASTIC
        call = completion_provider.calls[0]
        assert call["temperature"] > 0.7
        assert call["max_tokens"] == 200

    @pytest.mark.asyncio
    async def test_usage_is_tracked_under_selected_model(self, container):
        await seed(container)

        await container.orchestrator.generate_response("hello there", "C1", "U1", "Ana")

        bucket = container.usage_tracker.by_operation["generate_response"]
        assert bucket["tokens"] == 150
        assert bucket["cost"] > 0
        assert container.usage_tracker.by_model["gpt-4o-mini"]["tokens"] >= 150

    @pytest.mark.asyncio
    async def test_repeat_message_is_served_from_cache(self, container, completion_provider):
        await seed(container)

        first = await container.orchestrator.generate_response("hello there", "C1", "U1", "Ana")
        second = await container.orchestrator.generate_response("hello there", "C1", "U1", "Ana")

        assert second == first
        assert len(completion_provider.calls) == 1
        assert metrics.counters["responses.cache_hits"] == 1

    @pytest.mark.asyncio
    async def test_technical_question_uses_technical_model(self, container, completion_provider):
        await seed(container)

        response = await container.orchestrator.generate_response(
            "can you debug this traceback", "C1", "U1", "Ana"
        )

        assert response.metadata.model_used == "gpt-4.1"
        assert completion_provider.calls[0]["model"] == "gpt-4.1"


class TestFailureHandling:

    @pytest.mark.asyncio
    async def test_provider_failure_returns_fallback(self):
        container = build(ScriptedCompletionProvider(RuntimeError("provider exploded")))
        await seed(container)

        response = await container.orchestrator.generate_response("hello there", "C1", "U1", "Ana")

        assert response.text == FALLBACK_REPLY
        assert response.metadata.model_used == "error"
        assert response.metadata.mood == MoodName.NEUTRAL
        assert response.metadata.confidence == 0.0
        assert metrics.counters["responses.fallbacks"] == 1

    @pytest.mark.asyncio
    async def test_fallback_is_not_cached(self):
        completion = ScriptedCompletionProvider(RuntimeError("provider exploded"))
        container = build(completion)

        await container.orchestrator.generate_response("hello there", "C1", "U1", "Ana")
        completion.reply = "Back online."
        response = await container.orchestrator.generate_response("hello there", "C1", "U1", "Ana")

        assert "Back online" in response.text

    @pytest.mark.asyncio
    async def test_empty_channel_still_answers(self, container):
        response = await container.orchestrator.generate_response("hello there", "C-empty", "U1", "Ana")

        assert "Sure thing" in response.text
        assert response.metadata.context_quality == 0.0

    @pytest.mark.asyncio
    async def test_search_outage_still_answers(self, container):
        await seed(container)

        async def broken(*args, **kwargs):
            raise RuntimeError("vector index offline")

        container.message_store.vector_similar = broken

        response = await container.orchestrator.generate_response("deploy pipeline", "C1", "U1", "Ana")

        assert response.metadata.model_used != "error"


class TestBudgetAndExperiments:

    @pytest.mark.asyncio
    async def test_over_budget_forces_economy_model(self):
        completion = ScriptedCompletionProvider()
        container = build(completion, hourly_budget=0.001)
        await container.usage_tracker.track_usage("gpt-4o", 10_000)

        response = await container.orchestrator.generate_response(
            "can you debug this traceback", "C1", "U1", "Ana"
        )

        assert response.metadata.model_used == "gpt-4o-mini"
        assert completion.calls[0]["model"] == "gpt-4o-mini"
        assert metrics.counters["model_selector.budget_downgrades"] == 1

    @pytest.mark.asyncio
    async def test_active_prompt_test_supplies_system_prompt(self, container, completion_provider):
        container.prompt_optimizer.create_test(
            "tone",
            "Tone",
            [
                PromptVariant(id="a", name="Brief", system_prompt="VARIANT A SYSTEM"),
                PromptVariant(id="b", name="Chatty", system_prompt="VARIANT B SYSTEM"),
            ],
            {"a": 50, "b": 50}
        )

        response = await container.orchestrator.generate_response("hello there", "C1", "U7", "Ana")

        variant = response.metadata.prompt_variant
        assert variant in {"a", "b"}
        system = completion_provider.calls[0]["messages"][0].content
        assert system == f"VARIANT {variant.upper()} SYSTEM"

        test = container.prompt_optimizer.get_test("tone")
        assert test.metrics[variant].impressions == 1
        assert test.metrics[variant].tokens_total == 150
        assert test.metrics[variant].quality_samples == 1


class TestTracing:

    @pytest.mark.asyncio
    async def test_trace_records_generation_and_output(self):
        client = MagicMock()
        tracer = ResponseTracer(TracingConfig(public_key="pk", secret_key="sk"), client=client)
        container = build(tracer=tracer)
        await seed(container)

        response = await container.orchestrator.generate_response("hello there", "C1", "U1", "Ana", thread_id="T9")

        assert client.trace.call_args.kwargs["session_id"] == "C1:T9"
        trace = client.trace.return_value
        generation = trace.generation.call_args.kwargs
        assert generation["model"] == "gpt-4o-mini"
        assert generation["usage"] == {"input": 120, "output": 30}
        assert trace.update.call_args.kwargs["output"] == response.text

        await container.close()
        client.flush.assert_called_once()
