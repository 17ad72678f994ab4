"""Tests for hybrid search, adaptive thresholds, rerank and thread retrieval."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock
import math
import pytest

from parley.domain.context.embedding_service import EmbeddingService
from parley.domain.context.hybrid_search import (
    HybridSearchEngine,
    ThreadRetriever,
    describe_match,
    similarity_distribution,
)
from parley.domain.context.memory.vector_memory_store import VectorMemoryStore
from parley.domain.models.conversation import ScoredMessage
from parley.infrastructure.config.settings import SearchConfig
from parley.infrastructure.errors import StoreQueryFailed
from tests.conftest import HashingEmbeddingProvider, embed_text, make_message

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

CHANNEL_HISTORY = [
    ("m1", "the deploy pipeline failed on staging", "U1"),
    ("m2", "staging deploy is green again", "U2"),
    ("m3", "lunch at noon anyone", "U3"),
    ("m4", "pipeline logs show a timeout in the deploy step", "U1"),
    ("m5", "the coffee machine is out of beans", "U2"),
    ("m6", "deploy to production scheduled for friday", "U3"),
    ("m7", "who broke the staging pipeline", "U1"),
]


def scored(message_id: str, sender: str, score: float) -> ScoredMessage:
    return ScoredMessage.from_message(make_message(message_id, f"text {message_id}", sender_id=sender), combined_score=score)


async def seeded_engine(config: SearchConfig = None, clock=None):
    store = VectorMemoryStore()
    for index, (message_id, text, sender) in enumerate(CHANNEL_HISTORY):
        await store.add(make_message(message_id, text, sender_id=sender, minutes_ago=60 * (len(CHANNEL_HISTORY) - index)))
    engine = HybridSearchEngine(store, EmbeddingService(HashingEmbeddingProvider()), config or SearchConfig(), clock)
    return engine, store


class TestFusion:
    """Tests for score fusion."""

    def test_combined_score_formula(self):
        engine = HybridSearchEngine(AsyncMock(), AsyncMock(), SearchConfig())
        message = make_message("m1", "x")
        message = message.model_copy(update={"timestamp": NOW - timedelta(days=2)})

        fused = engine.fuse_results([(message, 0.8)], [(message, 0.5)], set(), 0.7, NOW)

        base = 0.7 * 0.8 + 0.3 * 0.5
        recency = math.exp(-0.1 * 2)
        assert len(fused) == 1
        assert fused[0].semantic_score == 0.8
        assert fused[0].keyword_score == 0.5
        assert fused[0].recency_weight == pytest.approx(recency)
        assert fused[0].combined_score == pytest.approx(base * (1 + 0.2 * recency))
        assert fused[0].explanation == "Somewhat similar"

    def test_recent_messages_are_boosted(self):
        engine = HybridSearchEngine(AsyncMock(), AsyncMock(), SearchConfig())
        message = make_message("m1", "x").model_copy(update={"timestamp": NOW})

        plain = engine.fuse_results([], [(message, 0.5)], set(), 0.7, NOW)[0]
        boosted = engine.fuse_results([], [(message, 0.5)], {"m1"}, 0.7, NOW)[0]

        assert boosted.combined_score == pytest.approx(plain.combined_score * 1.1)

    def test_keyword_only_and_semantic_only_hits_merge(self):
        engine = HybridSearchEngine(AsyncMock(), AsyncMock(), SearchConfig())
        a = make_message("a", "x").model_copy(update={"timestamp": NOW})
        b = make_message("b", "y").model_copy(update={"timestamp": NOW})

        fused = engine.fuse_results([(a, 0.9)], [(b, 0.9)], set(), 0.7, NOW)

        assert [m.id for m in fused] == ["a", "b"]
        assert fused[1].explanation == "Keyword match"

    def test_describe_match_bands(self):
        assert describe_match(0.95, 0) == "Very similar"
        assert describe_match(0.85, 0) == "Similar"
        assert describe_match(0.75, 0) == "Somewhat similar"
        assert describe_match(0.2, 0) == "Related"
        assert describe_match(0, 0.4) == "Keyword match"


class TestSearch:
    """Tests for the full search path."""

    @pytest.mark.asyncio
    async def test_results_are_sorted_and_above_min_score(self):
        engine, _ = await seeded_engine()

        for query in ("deploy pipeline", "staging", "coffee beans", "production deploy friday"):
            results = await engine.search(query, channel_id="C1")
            scores = [m.combined_score for m in results]
            assert scores == sorted(scores, reverse=True)
            assert all(score >= 0.3 for score in scores)

    @pytest.mark.asyncio
    async def test_relevant_message_is_found(self):
        engine, _ = await seeded_engine()

        results = await engine.search("coffee machine beans", channel_id="C1")

        assert results[0].id == "m5"

    @pytest.mark.asyncio
    async def test_limit_is_respected(self):
        engine, _ = await seeded_engine()

        results = await engine.search("deploy staging pipeline", channel_id="C1", limit=2)

        assert len(results) <= 2

    @pytest.mark.asyncio
    async def test_blank_query_returns_nothing(self):
        engine, _ = await seeded_engine()

        assert await engine.search("   ", channel_id="C1") == []

    @pytest.mark.asyncio
    async def test_other_channels_are_excluded(self):
        engine, store = await seeded_engine()
        await store.add(make_message("x1", "coffee machine beans", channel_id="C2"))

        results = await engine.search("coffee machine beans", channel_id="C1")

        assert all(m.channel_id == "C1" for m in results)

    @pytest.mark.asyncio
    async def test_store_failure_propagates(self):
        engine, store = await seeded_engine()
        store.vector_similar = AsyncMock(side_effect=RuntimeError("index offline"))

        with pytest.raises(StoreQueryFailed):
            await engine.search("deploy", channel_id="C1")


class TestAdaptiveThreshold:
    """Tests for sampled similarity cutoffs."""

    @pytest.mark.asyncio
    async def test_small_sample_falls_back_to_default(self):
        engine, _ = await seeded_engine()

        threshold = await engine.get_adaptive_threshold(embed_text("deploy"), target_results=10, channel_id="C1")

        assert threshold == 0.5

    @pytest.mark.asyncio
    async def test_large_sample_never_goes_below_default(self):
        store = VectorMemoryStore()
        for i in range(60):
            await store.add(make_message(f"m{i}", f"deploy note number {i} with extra words {i % 7}"))
        engine = HybridSearchEngine(store, EmbeddingService(HashingEmbeddingProvider()), SearchConfig())

        threshold = await engine.get_adaptive_threshold(embed_text("deploy note"), target_results=5, channel_id="C1")

        assert 0.5 <= threshold <= 1.0

    @pytest.mark.asyncio
    async def test_sampling_failure_falls_back(self):
        store = AsyncMock()
        store.sample_embeddings.side_effect = RuntimeError("boom")
        engine = HybridSearchEngine(store, AsyncMock(), SearchConfig())

        assert await engine.get_adaptive_threshold([1.0, 0.0], target_results=3) == 0.5

    def test_similarity_distribution_is_descending(self):
        sample = [[1.0, 0.0], [0.0, 1.0], [0.7, 0.7], [0.0, 0.0]]

        similarities = similarity_distribution([1.0, 0.0], sample)

        assert list(similarities) == sorted(similarities, reverse=True)
        assert similarities[0] == pytest.approx(1.0)
        assert similarities[-1] == pytest.approx(0.0)


class TestRerank:
    """Tests for the sender-diversity rerank."""

    def test_without_diversity_order_is_by_score(self):
        engine = HybridSearchEngine(AsyncMock(), AsyncMock(), SearchConfig())
        messages = [scored("a1", "A", 0.9), scored("a2", "A", 0.85), scored("a3", "A", 0.8), scored("b1", "B", 0.7)]

        reranked = engine.rerank(messages, diversity_weight=0.0)

        assert [m.id for m in reranked] == ["a1", "a2", "a3", "b1"]

    def test_well_represented_sender_is_penalized(self):
        engine = HybridSearchEngine(AsyncMock(), AsyncMock(), SearchConfig())
        messages = [scored("a1", "A", 0.9), scored("a2", "A", 0.85), scored("a3", "A", 0.8), scored("b1", "B", 0.7)]

        reranked = engine.rerank(messages, diversity_weight=0.5)

        assert [m.id for m in reranked] == ["a1", "b1", "a2", "a3"]
        assert reranked[1].combined_score == pytest.approx(0.7)
        assert reranked[2].combined_score == pytest.approx(0.85 * 0.75)
        scores = [m.combined_score for m in reranked]
        assert scores == sorted(scores, reverse=True)

    def test_user_preferences_multiply_scores(self):
        engine = HybridSearchEngine(AsyncMock(), AsyncMock(), SearchConfig())
        messages = [scored("a1", "A", 0.9), scored("b1", "B", 0.6)]

        reranked = engine.rerank(messages, diversity_weight=0.0, user_preferences={"B": 2.0})

        assert [m.id for m in reranked] == ["b1", "a1"]
        assert reranked[0].combined_score == pytest.approx(1.2)

    def test_empty_input(self):
        engine = HybridSearchEngine(AsyncMock(), AsyncMock(), SearchConfig())
        assert engine.rerank([]) == []


class TestThreadRetriever:
    """Tests for thread continuity retrieval."""

    @pytest.mark.asyncio
    async def test_thread_plus_related_in_time_order(self):
        engine, store = await seeded_engine()
        await store.add(make_message("t0", "the deploy pipeline failed on staging again", minutes_ago=30))
        await store.add(make_message("t1", "we should add retries", minutes_ago=20, thread_id="t0"))
        await store.add(make_message("t2", "and alerts", minutes_ago=10, thread_id="t0"))

        retriever = ThreadRetriever(store, engine)
        thread = await retriever.get_thread_context("C1", "t0")

        ids = [m.id for m in thread]
        assert "m1" in ids
        assert {"t0", "t1", "t2"} <= set(ids)
        assert len(ids) > 3
        timestamps = [m.timestamp for m in thread]
        assert timestamps == sorted(timestamps)
        assert all(type(m).__name__ == "Message" for m in thread)

    @pytest.mark.asyncio
    async def test_related_search_failure_keeps_thread(self):
        engine, store = await seeded_engine()
        await store.add(make_message("t0", "deploy pipeline retro", minutes_ago=30))
        await store.add(make_message("t1", "reply", minutes_ago=20, thread_id="t0"))
        engine.search = AsyncMock(side_effect=StoreQueryFailed("down"))

        thread = await ThreadRetriever(store, engine).get_thread_context("C1", "t0")

        assert [m.id for m in thread] == ["t0", "t1"]

    @pytest.mark.asyncio
    async def test_without_related(self):
        engine, store = await seeded_engine()
        await store.add(make_message("t0", "deploy pipeline retro", minutes_ago=30))
        await store.add(make_message("t1", "reply", minutes_ago=20, thread_id="t0"))

        thread = await ThreadRetriever(store, engine).get_thread_context("C1", "t0", include_related=False)

        assert [m.id for m in thread] == ["t0", "t1"]
