"""
Hybrid retrieval over the message store.

A search fuses the store's vector-similarity and keyword-relevance queries:

    combined = semantic_weight * semantic + (1 - semantic_weight) * keyword
    combined *= 1 + 0.2 * exp(-temporal_decay * age_days)
    combined *= recent_boost            (messages in the recent window)

Results below `min_score` are dropped; the rest come back sorted by
combined score, best first.
"""

from typing import Dict, List, Any, Optional, Sequence
from datetime import datetime, timedelta, timezone
import asyncio
import math
import time
import numpy as np
import structlog

from parley.domain.models.conversation import Message, ScoredMessage
from parley.infrastructure.config.settings import SearchConfig
from parley.infrastructure.errors import ParleyError, StoreQueryFailed
from parley.infrastructure.observability.logging import metrics
from .embedding_service import EmbeddingService
from .stores import MessageStore

logger = structlog.get_logger(__name__)


def describe_match(semantic_score: float, keyword_score: float) -> str:
    """Short human-readable reason a message matched"""

    if semantic_score > 0.9:
        return "Very similar"
    if semantic_score > 0.8:
        return "Similar"
    if semantic_score > 0.7:
        return "Somewhat similar"
    if semantic_score > 0:
        return "Related"
    if keyword_score > 0:
        return "Keyword match"
    return "Recent"


def similarity_distribution(query: Sequence[float], sample: Sequence[Sequence[float]]) -> np.ndarray:
    """Cosine similarity of the query against each sampled vector, descending"""

    matrix = np.asarray(sample, dtype=np.float32)
    vector = np.asarray(query, dtype=np.float32)

    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(vector)
    with np.errstate(divide="ignore", invalid="ignore"):
        similarities = np.where(norms > 0, matrix @ vector / norms, 0.0)

    return np.sort(similarities)[::-1]


class HybridSearchEngine:
    """Semantic + keyword search with temporal decay and diversity rerank"""

    def __init__(
        self,
        store: MessageStore,
        embeddings: EmbeddingService,
        config: Optional[SearchConfig] = None,
        clock=None
    ):
        self.store = store
        self.embeddings = embeddings
        self.config = config or SearchConfig()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def search(
        self,
        query: str,
        channel_id: Optional[str] = None,
        limit: Optional[int] = None,
        semantic_weight: Optional[float] = None,
        recent_hours: Optional[int] = None,
        min_score: Optional[float] = None,
        adaptive_threshold: Optional[bool] = None
    ) -> List[ScoredMessage]:
        """
        Run a hybrid search.

        Store and provider failures propagate (as StoreQueryFailed or a
        ProviderError); the context assembler isolates them per section.
        """

        limit = self.config.limit if limit is None else limit
        semantic_weight = self.config.semantic_weight if semantic_weight is None else semantic_weight
        recent_hours = self.config.recent_hours if recent_hours is None else recent_hours
        min_score = self.config.min_score if min_score is None else min_score
        use_adaptive = self.config.use_adaptive_threshold if adaptive_threshold is None else adaptive_threshold

        if not query or not query.strip() or limit <= 0:
            return []

        start = time.perf_counter()
        now = self._clock()
        since = now - timedelta(hours=recent_hours)

        embedding = await self.embeddings.embed(query)

        if use_adaptive:
            threshold = await self.get_adaptive_threshold(embedding, limit, channel_id)
        else:
            threshold = self.config.fallback_threshold

        semantic, keyword, recent = await asyncio.gather(
            self._query("vector_similar", self.store.vector_similar(
                embedding, channel_id=channel_id, limit=limit * 2, threshold=threshold, since=since
            )),
            self._query("keyword_relevant", self.store.keyword_relevant(
                query, channel_id=channel_id, limit=limit * 2, since=since
            )),
            self._recent_ids(channel_id, recent_hours, limit),
        )

        fused = self.fuse_results(semantic, keyword, recent, semantic_weight, now)
        results = [m for m in fused if m.combined_score >= min_score][:limit]

        duration_ms = (time.perf_counter() - start) * 1000
        metrics.record_latency("hybrid_search", duration_ms)
        logger.info(
            "hybrid_search_completed",
            query=query[:50],
            channel_id=channel_id,
            threshold=round(threshold, 3),
            keyword_count=len(keyword),
            semantic_count=len(semantic),
            final_count=len(results),
            duration_ms=round(duration_ms, 2)
        )

        return results

    async def _query(self, operation: str, call):
        try:
            return await call
        except ParleyError:
            raise
        except Exception as e:
            logger.error("store_query_failed", operation=operation, error=str(e))
            raise StoreQueryFailed(f"{operation} failed: {e}", operation=operation) from e

    async def _recent_ids(self, channel_id: Optional[str], hours: int, limit: int) -> set:
        if channel_id is None:
            return set()
        recent = await self._query("recent_messages", self.store.recent_messages(channel_id, hours, limit))
        return {m.id for m in recent}

    def fuse_results(
        self,
        semantic: Sequence[Any],
        keyword: Sequence[Any],
        recent_ids: set,
        semantic_weight: float,
        now: datetime
    ) -> List[ScoredMessage]:
        """Merge (message, score) pairs from both retrievers into scored messages"""

        keyword_weight = 1 - semantic_weight
        merged: Dict[str, Dict[str, Any]] = {}

        for message, score in keyword:
            merged[message.id] = {"message": message, "keyword": float(score), "semantic": 0.0}

        for message, score in semantic:
            entry = merged.setdefault(message.id, {"message": message, "keyword": 0.0, "semantic": 0.0})
            entry["semantic"] = float(score)

        scored: List[ScoredMessage] = []
        for entry in merged.values():
            message: Message = entry["message"]
            base = semantic_weight * entry["semantic"] + keyword_weight * entry["keyword"]

            age_days = max((now - message.timestamp).total_seconds(), 0.0) / 86400
            recency = math.exp(-self.config.temporal_decay * age_days)
            combined = base * (1 + recency * 0.2)
            if message.id in recent_ids:
                combined *= self.config.recent_boost

            scored.append(ScoredMessage.from_message(
                message,
                semantic_score=entry["semantic"],
                keyword_score=entry["keyword"],
                recency_weight=recency,
                combined_score=combined,
                explanation=describe_match(entry["semantic"], entry["keyword"])
            ))

        scored.sort(key=lambda m: m.combined_score, reverse=True)
        return scored

    async def get_adaptive_threshold(
        self,
        embedding: Sequence[float],
        target_results: int = 10,
        channel_id: Optional[str] = None
    ) -> float:
        """
        Similarity cutoff expected to yield about `target_results` matches.

        Samples stored embeddings, sorts their similarity to the query and
        reads the cutoff at the rank that scales 2 * target to the sample.
        Falls back to the fixed default when the sample is smaller than the
        target.
        """

        fallback = self.config.fallback_threshold

        try:
            sample = await self.store.sample_embeddings(channel_id, limit=self.config.adaptive_sample_size)
            total = await self.store.count_by_channel(channel_id)
        except Exception as e:
            logger.warning("adaptive_threshold_sample_failed", error=str(e))
            return fallback

        if len(sample) < target_results:
            return fallback

        similarities = similarity_distribution(embedding, sample)
        scale = len(sample) / max(total, len(sample))
        index = min(int(math.ceil(target_results * 2 * scale)), len(similarities) - 1)

        return max(fallback, float(similarities[index]))

    def rerank(
        self,
        messages: Sequence[ScoredMessage],
        diversity_weight: Optional[float] = None,
        user_preferences: Optional[Dict[str, float]] = None
    ) -> List[ScoredMessage]:
        """
        Greedy diversity rerank.

        Each pick takes the message with the best adjusted score, where a
        sender's share of the picks so far discounts their next message by
        up to `diversity_weight`. Per-sender preference multipliers apply
        on top. Adjusted scores replace combined_score.
        """

        diversity_weight = self.config.diversity_weight if diversity_weight is None else diversity_weight
        preferences = user_preferences or {}

        remaining = list(messages)
        picked: List[ScoredMessage] = []
        sender_counts: Dict[str, int] = {}

        while remaining:
            best_index = 0
            best_score = -math.inf
            for index, message in enumerate(remaining):
                share = sender_counts.get(message.sender_id, 0) / len(picked) if picked else 0.0
                score = message.combined_score * (1 - diversity_weight * share)
                score *= preferences.get(message.sender_id, 1.0)
                if score > best_score:
                    best_index, best_score = index, score

            chosen = remaining.pop(best_index)
            sender_counts[chosen.sender_id] = sender_counts.get(chosen.sender_id, 0) + 1
            picked.append(chosen.model_copy(update={"combined_score": best_score}))

        # Greedy picks are already close to sorted; make it exact
        picked.sort(key=lambda m: m.combined_score, reverse=True)
        return picked


class ThreadRetriever:
    """Whole thread plus loosely related messages, in time order"""

    def __init__(self, store: MessageStore, search: HybridSearchEngine):
        self.store = store
        self.search = search

    async def get_thread_context(
        self,
        channel_id: str,
        thread_id: str,
        include_related: bool = True,
        max_messages: int = 50
    ) -> List[Message]:
        thread = await self.store.messages_by_thread(channel_id, thread_id, limit=max_messages)

        if not include_related or not thread:
            return thread

        root = next((m for m in thread if m.id == thread_id), None)
        if root is None:
            return thread

        try:
            related = await self.search.search(
                root.text[:200],
                channel_id=channel_id,
                limit=10,
                semantic_weight=0.8
            )
        except Exception as e:
            logger.warning("thread_related_search_failed", channel_id=channel_id, thread_id=thread_id, error=str(e))
            return thread

        seen = {m.id for m in thread}
        merged = list(thread)
        for message in related:
            if message.id not in seen:
                seen.add(message.id)
                merged.append(Message(**message.model_dump(include=set(Message.model_fields))))

        merged.sort(key=lambda m: m.timestamp)
        return merged
