from typing import Dict, List, Any, Optional, Sequence, TypeVar, Awaitable
import asyncio
import hashlib
import json
import time
import structlog
from pydantic import BaseModel

from parley.domain.models.conversation import ContextWindow, Message, ScoredMessage, SearchMetadata
from parley.infrastructure.config.settings import ContextConfig, SearchConfig
from parley.infrastructure.observability.logging import engine_logger, metrics
from .context_formatter import ContextFormatter
from .context_ranker import ContextQualityScorer
from .hybrid_search import HybridSearchEngine, ThreadRetriever
from .memory.cache_memory_store import CacheMemoryStore
from .stores import MessageStore, ProfileStore, SummaryStore

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class ContextBuildOptions(BaseModel):
    """Per-call overrides for context assembly"""
    max_tokens: Optional[int] = None
    recent_limit: Optional[int] = None
    relevant_limit: Optional[int] = None
    hours: Optional[int] = None
    thread_id: Optional[str] = None
    include_profiles: bool = True
    include_summaries: bool = True
    include_scores: bool = False
    semantic_weight: Optional[float] = None
    diversity_weight: Optional[float] = None


class ContextManager:
    """
    Assembles the per-turn context window.

    Recent messages, hybrid-search hits, the thread and channel summaries
    are fetched concurrently; profiles follow for every sender seen. A
    failing fetch only empties its own section. The budgeted, scored window
    is cached for a few minutes per (channel, query, thread).
    """

    def __init__(
        self,
        message_store: MessageStore,
        search: HybridSearchEngine,
        thread_retriever: Optional[ThreadRetriever] = None,
        summary_store: Optional[SummaryStore] = None,
        profile_store: Optional[ProfileStore] = None,
        config: Optional[ContextConfig] = None,
        search_config: Optional[SearchConfig] = None,
        cache: Optional[CacheMemoryStore] = None
    ):
        self.config = config or ContextConfig()
        self.search_config = search_config or search.config
        self.message_store = message_store
        self.search = search
        self.thread_retriever = thread_retriever or ThreadRetriever(message_store, search)
        self.summary_store = summary_store
        self.profile_store = profile_store
        self.formatter = ContextFormatter(section_overhead=self.config.section_overhead_tokens)
        self.quality_scorer = ContextQualityScorer(recency_target=self.config.recency_target)
        self.cache = cache or CacheMemoryStore(
            default_ttl=self.config.cache_ttl_seconds,
            max_entries=self.config.cache_max_entries
        )

    @staticmethod
    def cache_key(
        channel_id: str,
        query: Optional[str],
        thread_id: Optional[str],
        options: Optional[ContextBuildOptions] = None
    ) -> str:
        """
        (channel, query, thread) for default builds. Any other override
        changes what gets assembled, so its digest is appended.
        """

        key = f"{channel_id}:{query or 'recent'}:{thread_id or 'main'}"
        if options is None:
            return key

        overrides = options.model_dump(exclude_defaults=True, exclude={"thread_id"})
        if not overrides:
            return key

        digest = hashlib.sha256(json.dumps(overrides, sort_keys=True).encode("utf-8")).hexdigest()[:12]
        return f"{key}:{digest}"

    async def build_context(
        self,
        channel_id: str,
        query: Optional[str] = None,
        options: Optional[ContextBuildOptions] = None
    ) -> ContextWindow:
        """Build (or reuse) the context window; never raises"""

        options = options or ContextBuildOptions()
        key = self.cache_key(channel_id, query, options.thread_id, options)

        cached = await self.cache.get(key)
        if cached is not None:
            metrics.increment_counter("context.cache_hits")
            engine_logger.log_context_build(
                channel_id,
                len(cached.recent_messages),
                len(cached.relevant_messages),
                cached.token_estimate,
                cached.quality_score,
                cached=True
            )
            # Callers get a copy; the cached window is never shared
            return cached.model_copy(deep=True)

        metrics.increment_counter("context.cache_misses")
        start = time.perf_counter()

        try:
            window = await self._assemble(channel_id, query, options)
        except Exception as e:
            logger.error("context_build_failed", channel_id=channel_id, error=str(e), exc_info=True)
            metrics.increment_counter("context.fallbacks")
            return ContextWindow.empty()

        await self.cache.set(key, window.model_copy(deep=True))

        duration_ms = (time.perf_counter() - start) * 1000
        metrics.record_latency("context_build", duration_ms)
        engine_logger.log_context_build(
            channel_id,
            len(window.recent_messages),
            len(window.relevant_messages),
            window.token_estimate,
            window.quality_score,
            has_query=bool(query),
            thread_id=options.thread_id,
            duration_ms=round(duration_ms, 2)
        )
        return window

    async def _assemble(self, channel_id: str, query: Optional[str], options: ContextBuildOptions) -> ContextWindow:
        cfg = self.config
        max_tokens = options.max_tokens or cfg.max_tokens
        recent_limit = options.recent_limit or cfg.recent_limit
        relevant_limit = options.relevant_limit or cfg.relevant_limit
        hours = options.hours or cfg.hours
        semantic_weight = (
            self.search_config.semantic_weight if options.semantic_weight is None else options.semantic_weight
        )
        diversity_weight = (
            self.search_config.diversity_weight if options.diversity_weight is None else options.diversity_weight
        )

        recent, relevant, thread, summaries = await asyncio.gather(
            self._safe_fetch(
                "recent",
                self.message_store.recent_messages(channel_id, hours, recent_limit),
                []
            ),
            self._safe_fetch(
                "relevant",
                self.search.search(
                    query,
                    channel_id=channel_id,
                    limit=relevant_limit * 2,
                    semantic_weight=semantic_weight,
                    recent_hours=hours * 2
                ),
                []
            ) if query else self._none([]),
            self._safe_fetch(
                "thread",
                self.thread_retriever.get_thread_context(
                    channel_id,
                    options.thread_id,
                    include_related=True,
                    max_messages=cfg.thread_limit
                ),
                None
            ) if options.thread_id else self._none(None),
            self._safe_fetch(
                "summaries",
                self.summary_store.recent_summaries(channel_id, cfg.summary_limit),
                None
            ) if options.include_summaries and self.summary_store is not None else self._none(None),
        )

        relevant = self.deduplicate(recent, relevant)
        if relevant and diversity_weight > 0:
            relevant = self.search.rerank(relevant, diversity_weight=diversity_weight)
        relevant = relevant[:relevant_limit]

        profiles = None
        if options.include_profiles and self.profile_store is not None:
            sender_ids = self._sender_ids([*recent, *relevant, *(thread or [])])
            if sender_ids:
                profiles = await self._safe_fetch("profiles", self.profile_store.get_profiles(sender_ids), None)

        search_metadata = None
        if query:
            search_metadata = SearchMetadata(
                keyword_matches=sum(1 for m in relevant if m.keyword_score > 0),
                semantic_matches=sum(1 for m in relevant if m.semantic_score > 0),
                average_score=sum(m.combined_score for m in relevant) / len(relevant) if relevant else 0.0
            )

        formatted = self.formatter.format(
            max_tokens,
            recent=recent,
            relevant=relevant,
            thread=thread,
            summaries=summaries,
            profiles=profiles,
            include_scores=options.include_scores,
            search_metadata=search_metadata
        )

        window = ContextWindow(
            recent_messages=formatted.recent_messages,
            relevant_messages=formatted.relevant_messages,
            thread_messages=formatted.thread_messages or None,
            summaries=formatted.summaries or None,
            profiles=formatted.profiles or None,
            token_estimate=formatted.token_estimate,
            message_count=(
                len(formatted.recent_messages)
                + len(formatted.relevant_messages)
                + len(formatted.thread_messages)
            ),
            search_metadata=search_metadata,
            formatted=formatted.text
        )
        window.quality_score = self.quality_scorer.score(window)
        return window

    async def _safe_fetch(self, section: str, call: Awaitable[T], default: T) -> T:
        """Await one section fetch; a failure yields `default`"""

        try:
            result = await call
        except Exception as e:
            logger.warning("context_fetch_failed", section=section, error=str(e), error_type=type(e).__name__)
            metrics.increment_counter("context.fetch_errors", tags={"section": section})
            return default
        return default if result is None else result

    @staticmethod
    async def _none(value):
        return value

    @staticmethod
    def deduplicate(recent: Sequence[Message], relevant: Sequence[ScoredMessage]) -> List[ScoredMessage]:
        """Drop relevant hits already present in the recent section (by id)"""

        recent_ids = {m.id for m in recent}
        return [m for m in relevant if m.id not in recent_ids]

    @staticmethod
    def _sender_ids(messages: Sequence[Message]) -> List[str]:
        seen: Dict[str, None] = {}
        for message in messages:
            seen.setdefault(message.sender_id, None)
        return list(seen)

    def format_context(
        self,
        window: ContextWindow,
        max_tokens: Optional[int] = None,
        include_scores: bool = False
    ) -> str:
        """Re-render a built window under a (usually tighter) budget"""

        formatted = self.formatter.format(
            max_tokens or self.config.max_tokens,
            recent=window.recent_messages,
            relevant=window.relevant_messages,
            thread=window.thread_messages,
            summaries=window.summaries,
            profiles=window.profiles,
            include_scores=include_scores,
            search_metadata=window.search_metadata,
            quality=window.quality_score
        )
        return formatted.text

    async def clear_cache(self) -> None:
        await self.cache.clear()

    async def get_cache_stats(self) -> Dict[str, Any]:
        stats = await self.cache.get_stats()
        return {
            "size": stats["active_keys"],
            "hits": stats["hits"],
            "misses": stats["misses"],
            "hit_rate": stats["hit_rate"],
        }
