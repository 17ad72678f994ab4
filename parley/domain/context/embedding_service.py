from typing import Dict, Any, List, Optional, Sequence, Tuple
import hashlib
import unicodedata
import structlog

from parley.domain.models.conversation import Message
from parley.infrastructure.providers.base import EmbeddingProvider
from .stores import MessageStore
from .vector_cache import VectorCache

logger = structlog.get_logger(__name__)

# Inputs per provider request
MAX_BATCH_SIZE = 2048


def text_cache_key(text: str) -> str:
    """Content hash used as the cache key for a text's embedding"""

    normalized = unicodedata.normalize("NFC", text)
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()[:16]


class EmbeddingService:
    """Cache-then-provider embedding lookup"""

    def __init__(
        self,
        provider: EmbeddingProvider,
        cache: Optional[VectorCache] = None,
        usage_tracker=None
    ):
        self.provider = provider
        self.cache = cache
        self.usage_tracker = usage_tracker
        self.stats = {"processed": 0, "cached": 0, "total_tokens": 0}

    async def embed(self, text: str) -> List[float]:
        """Embedding for one text; provider errors propagate"""

        key = text_cache_key(text)
        if self.cache is not None:
            cached = await self.cache.get(key)
            if cached is not None:
                self.stats["cached"] += 1
                return cached

        result = await self.provider.embed(text)
        self.stats["processed"] += 1
        self.stats["total_tokens"] += result.usage.prompt_tokens
        await self._track(result.model, result.usage.prompt_tokens)

        if self.cache is not None:
            await self.cache.set(key, result.vector)

        return result.vector

    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        """
        Embeddings for many texts, in input order.

        Cached vectors come from one mget; only the misses reach the
        provider, in chunks of MAX_BATCH_SIZE, and are written back with
        one mset per chunk.
        """

        if not texts:
            return []

        keys = [text_cache_key(text) for text in texts]
        if self.cache is not None:
            cached = await self.cache.mget(keys)
        else:
            cached = [None] * len(texts)

        results: List[Optional[List[float]]] = list(cached)
        missing = [i for i, vector in enumerate(cached) if vector is None]
        self.stats["cached"] += len(texts) - len(missing)

        logger.debug("embedding_batch", total=len(texts), cached=len(texts) - len(missing))

        for start in range(0, len(missing), MAX_BATCH_SIZE):
            chunk = missing[start:start + MAX_BATCH_SIZE]
            embedded = await self.provider.embed_many([texts[i] for i in chunk])

            entries: List[Tuple[str, List[float]]] = []
            tokens = 0
            for index, result in zip(chunk, embedded):
                results[index] = result.vector
                entries.append((keys[index], result.vector))
                tokens += result.usage.prompt_tokens

            self.stats["processed"] += len(chunk)
            self.stats["total_tokens"] += tokens
            if embedded:
                await self._track(embedded[0].model, tokens)

            if self.cache is not None:
                await self.cache.mset(entries)

        return [vector or [] for vector in results]

    async def _track(self, model: str, tokens: int):
        if self.usage_tracker is None:
            return
        await self.usage_tracker.track_usage(
            model=model,
            prompt_tokens=tokens,
            operation="embedding"
        )

    def get_stats(self) -> Dict[str, Any]:
        seen = self.stats["processed"] + self.stats["cached"]
        return {
            **self.stats,
            "avg_tokens_per_embedding": (
                round(self.stats["total_tokens"] / self.stats["processed"])
                if self.stats["processed"] else 0
            ),
            "cache_hit_rate": self.stats["cached"] / seen * 100 if seen else 0.0,
        }


class EmbeddingIndexer:
    """Attaches embeddings to messages that were stored without one"""

    def __init__(self, embeddings: EmbeddingService, store: MessageStore):
        self.embeddings = embeddings
        self.store = store

    async def index_messages(self, messages: Sequence[Message]) -> int:
        """Embed and attach; returns how many messages were updated"""

        pending = [m for m in messages if m.embedding is None and m.text.strip()]
        if not pending:
            return 0

        vectors = await self.embeddings.embed_batch([m.text for m in pending])

        attached = 0
        for message, vector in zip(pending, vectors):
            if not vector:
                continue
            if await self.store.attach_embedding(message.id, vector):
                attached += 1

        logger.info("messages_indexed", requested=len(messages), attached=attached)
        return attached
