"""Tests for concurrent, failure-isolated context assembly."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch
import pytest

from parley.domain.context.context_manager import ContextBuildOptions, ContextManager
from parley.domain.context.embedding_service import EmbeddingService
from parley.domain.context.hybrid_search import HybridSearchEngine
from parley.domain.context.memory.runtime_memory import RuntimeMemory
from parley.domain.context.memory.vector_memory_store import VectorMemoryStore
from parley.domain.models.conversation import ConversationSummary, ContextWindow, ScoredMessage, UserProfile
from parley.infrastructure.config.settings import ContextConfig, SearchConfig
from tests.conftest import HashingEmbeddingProvider, make_message

HISTORY = [
    ("m1", "the deploy pipeline failed on staging", "U1"),
    ("m2", "staging deploy is green again", "U2"),
    ("m3", "lunch at noon anyone", "U3"),
    ("m4", "the deploy pipeline needs a retry step", "U1"),
    ("m5", "the coffee machine is out of beans", "U2"),
]


async def build_manager(**config):
    store = VectorMemoryStore()
    # Older history sits outside the recent window but inside search range
    for index, (message_id, text, sender) in enumerate(HISTORY):
        await store.add(make_message(message_id, text, sender_id=sender, minutes_ago=60 * 24 * 3 + index))
    for i in range(4):
        await store.add(make_message(f"r{i}", f"chatter {i}", sender_id="U4", minutes_ago=10 - i))

    memory = RuntimeMemory()
    await memory.add_summary(ConversationSummary(
        channel_id="C1",
        period_start=datetime(2026, 1, 1, tzinfo=timezone.utc),
        period_end=datetime(2026, 1, 2, tzinfo=timezone.utc),
        summary="Release planning"
    ))
    await memory.save_profile(UserProfile(user_id="U4", display_name="Dee", personality_summary="Chatty"))

    search = HybridSearchEngine(store, EmbeddingService(HashingEmbeddingProvider()), SearchConfig())
    manager = ContextManager(
        store,
        search,
        summary_store=memory,
        profile_store=memory,
        config=ContextConfig(**config)
    )
    return manager, store


class TestBuildContext:

    @pytest.mark.asyncio
    async def test_sections_are_filled(self):
        manager, _ = await build_manager()

        window = await manager.build_context("C1", "deploy pipeline staging")

        assert [m.id for m in window.recent_messages] == ["r0", "r1", "r2", "r3"]
        assert window.relevant_messages
        assert window.summaries[0].summary == "Release planning"
        assert window.profiles["U4"].display_name == "Dee"
        assert 0 < window.quality_score <= 1
        assert window.search_metadata.semantic_matches > 0
        assert "[Dee]: chatter 3" in window.formatted

    @pytest.mark.asyncio
    async def test_relevant_never_repeats_recent(self):
        manager, store = await build_manager()
        await store.add(make_message("r9", "deploy pipeline staging is failing", minutes_ago=1))

        window = await manager.build_context("C1", "deploy pipeline staging")

        recent_ids = {m.id for m in window.recent_messages}
        assert "r9" in recent_ids
        assert recent_ids.isdisjoint(m.id for m in window.relevant_messages)

    @pytest.mark.asyncio
    async def test_token_estimate_within_budget(self):
        manager, _ = await build_manager()

        window = await manager.build_context("C1", "deploy", ContextBuildOptions(max_tokens=40))

        assert window.token_estimate <= 40
        assert window.recent_messages

    @pytest.mark.asyncio
    async def test_cache_hit_skips_fetches(self):
        manager, store = await build_manager()

        first = await manager.build_context("C1", "deploy")
        with patch.object(store, "recent_messages", AsyncMock(side_effect=AssertionError("fetched"))):
            second = await manager.build_context("C1", "deploy")

        assert second == first
        stats = await manager.get_cache_stats()
        assert stats["hits"] == 1
        assert stats["size"] == 1

    @pytest.mark.asyncio
    async def test_cache_key_includes_thread(self):
        assert ContextManager.cache_key("C1", None, None) == "C1:recent:main"
        assert ContextManager.cache_key("C1", "q", "t9") == "C1:q:t9"

    def test_cache_key_tracks_overrides(self):
        defaults = ContextManager.cache_key("C1", "q", "t9", ContextBuildOptions(thread_id="t9"))
        tight = ContextManager.cache_key("C1", "q", "t9", ContextBuildOptions(thread_id="t9", max_tokens=40))
        same = ContextManager.cache_key("C1", "q", "t9", ContextBuildOptions(max_tokens=40, thread_id="t9"))

        assert defaults == "C1:q:t9"
        assert tight != defaults
        assert tight == same

    @pytest.mark.asyncio
    async def test_tighter_budget_is_not_served_from_looser_cache(self):
        manager, _ = await build_manager()

        loose = await manager.build_context("C1", "deploy pipeline")
        tight = await manager.build_context("C1", "deploy pipeline", ContextBuildOptions(max_tokens=40))

        assert loose.token_estimate > 40
        assert tight.token_estimate <= 40

    @pytest.mark.asyncio
    async def test_cache_hit_is_a_copy(self):
        manager, _ = await build_manager()

        first = await manager.build_context("C1", "deploy")
        first.recent_messages.clear()
        first.quality_score = 0.0
        second = await manager.build_context("C1", "deploy")
        second.relevant_messages.clear()
        third = await manager.build_context("C1", "deploy")

        assert [m.id for m in third.recent_messages] == ["r0", "r1", "r2", "r3"]
        assert third.relevant_messages
        assert third.quality_score > 0

    @pytest.mark.asyncio
    async def test_profiles_follow_the_budget(self):
        manager, _ = await build_manager()

        window = await manager.build_context("C1", None, ContextBuildOptions(max_tokens=30))

        assert "Active Users" not in window.formatted
        assert window.profiles is None
        assert window.recent_messages

    @pytest.mark.asyncio
    async def test_search_failure_only_empties_relevant(self):
        manager, store = await build_manager()
        await store.add(make_message("t0", "thread root", minutes_ago=5))
        await store.add(make_message("t1", "thread reply", minutes_ago=4, thread_id="t0"))
        store.vector_similar = AsyncMock(side_effect=RuntimeError("vector index offline"))

        window = await manager.build_context("C1", "deploy", ContextBuildOptions(thread_id="t0"))

        assert window.recent_messages
        assert window.relevant_messages == []
        assert [m.id for m in window.thread_messages] == ["t0", "t1"]
        assert window.summaries

    @pytest.mark.asyncio
    async def test_profile_failure_is_isolated(self):
        manager, _ = await build_manager()
        manager.profile_store = AsyncMock()
        manager.profile_store.get_profiles.side_effect = RuntimeError("profiles down")

        window = await manager.build_context("C1", None)

        assert window.profiles is None
        assert window.recent_messages

    @pytest.mark.asyncio
    async def test_assembly_failure_returns_empty_window(self):
        manager, _ = await build_manager()

        with patch.object(manager, "_assemble", AsyncMock(side_effect=RuntimeError("boom"))):
            window = await manager.build_context("C1", "deploy")

        assert window == ContextWindow.empty()
        assert window.quality_score == 0.0

    @pytest.mark.asyncio
    async def test_no_query_skips_search(self):
        manager, _ = await build_manager()
        manager.search.search = AsyncMock()

        window = await manager.build_context("C1")

        manager.search.search.assert_not_called()
        assert window.search_metadata is None


class TestFormatContext:

    @pytest.mark.asyncio
    async def test_rerender_under_tighter_budget(self):
        manager, _ = await build_manager()
        window = await manager.build_context("C1", "deploy pipeline")

        text = manager.format_context(window, max_tokens=25)

        assert "=== Recent Conversation ===" in text
        assert len(text) < len(window.formatted)


class TestDeduplicate:

    def test_drops_by_id(self):
        recent = [make_message("a", "x")]
        relevant = [
            ScoredMessage.from_message(make_message("a", "x"), combined_score=0.9),
            ScoredMessage.from_message(make_message("b", "x"), combined_score=0.8),
        ]

        assert [m.id for m in ContextManager.deduplicate(recent, relevant)] == ["b"]
