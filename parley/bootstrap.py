"""
Wires concrete collaborators from settings.

Redis backs the warm cache tier when a URL is configured, otherwise an
in-process backend is used. Message, profile and summary stores are the
in-memory implementations; a database-backed deployment swaps them in here.
"""

from typing import Optional
import random
import structlog

from parley.domain.context.context_manager import ContextManager
from parley.domain.context.embedding_service import EmbeddingIndexer, EmbeddingService
from parley.domain.context.hybrid_search import HybridSearchEngine, ThreadRetriever
from parley.domain.context.memory.cache_memory_store import CacheMemoryStore
from parley.domain.context.memory.runtime_memory import RuntimeMemory
from parley.domain.context.memory.vector_memory_store import VectorMemoryStore
from parley.domain.context.state.state_manager import InterjectionLedger
from parley.domain.context.vector_cache import VectorCache
from parley.domain.generation.model_selector import ModelSelector
from parley.domain.generation.prompt_optimizer import PromptOptimizer
from parley.domain.generation.usage_tracker import UsageTracker
from parley.domain.orchestration.response_orchestrator import ResponseOrchestrator
from parley.domain.personality.interjection import InterjectionPolicy
from parley.domain.personality.mood_engine import MoodEngine
from parley.domain.personality.profile_learner import ProfileLearner
from parley.infrastructure.cache.memory_backend import InMemoryCacheBackend
from parley.infrastructure.cache.redis_backend import RedisCacheBackend
from parley.infrastructure.config.settings import Settings, get_settings
from parley.infrastructure.observability.langfuse_tracing import ResponseTracer
from parley.infrastructure.providers.base import CompletionProvider, EmbeddingProvider
from parley.infrastructure.providers.openai_provider import OpenAICompletionProvider, OpenAIEmbeddingProvider

logger = structlog.get_logger(__name__)


class Container:
    """Every long-lived component of one engine instance"""

    def __init__(
        self,
        settings: Settings,
        embedding_provider: Optional[EmbeddingProvider] = None,
        completion_provider: Optional[CompletionProvider] = None,
        message_store: Optional[VectorMemoryStore] = None,
        memory: Optional[RuntimeMemory] = None,
        tracer: Optional[ResponseTracer] = None,
        rng: Optional[random.Random] = None
    ):
        self.settings = settings
        self.rng = rng or random.Random()

        if settings.cache.redis_url:
            self.cache_backend = RedisCacheBackend(settings.cache.redis_url)
        else:
            self.cache_backend = InMemoryCacheBackend(
                CacheMemoryStore(default_ttl=settings.cache.warm_ttl_seconds, max_entries=100000)
            )

        self.embedding_provider = embedding_provider or OpenAIEmbeddingProvider(
            settings.provider, model=settings.generation.embedding_model
        )
        self.completion_provider = completion_provider or OpenAICompletionProvider(
            settings.provider, default_model=settings.generation.economy_model
        )

        self.message_store = message_store or VectorMemoryStore(rng=self.rng)
        self.memory = memory or RuntimeMemory()
        self.interjection_ledger = InterjectionLedger()

        self.usage_tracker = UsageTracker(settings.budget)
        self.vector_cache = VectorCache(
            self.cache_backend,
            settings.cache,
            CacheMemoryStore(default_ttl=settings.cache.hot_ttl_seconds, max_entries=settings.cache.hot_max_size)
        )
        self.embeddings = EmbeddingService(self.embedding_provider, self.vector_cache, self.usage_tracker)
        self.indexer = EmbeddingIndexer(self.embeddings, self.message_store)

        self.search = HybridSearchEngine(self.message_store, self.embeddings, settings.search)
        self.context_manager = ContextManager(
            self.message_store,
            self.search,
            thread_retriever=ThreadRetriever(self.message_store, self.search),
            summary_store=self.memory,
            profile_store=self.memory,
            config=settings.context,
            search_config=settings.search
        )

        self.mood_engine = MoodEngine(settings.generation, rng=self.rng)
        self.model_selector = ModelSelector(self.usage_tracker, settings.generation)
        self.prompt_optimizer = PromptOptimizer()
        self.profile_learner = ProfileLearner(
            self.completion_provider,
            self.memory,
            self.memory,
            config=settings.generation,
            rng=self.rng,
            usage_tracker=self.usage_tracker
        )
        self.interjection = InterjectionPolicy(
            self.completion_provider,
            self.interjection_ledger,
            config=settings.generation,
            usage_tracker=self.usage_tracker
        )

        if tracer is None and settings.tracing.enabled:
            tracer = ResponseTracer(settings.tracing)
        self.tracer = tracer

        self.orchestrator = ResponseOrchestrator(
            self.context_manager,
            self.mood_engine,
            self.model_selector,
            self.completion_provider,
            self.usage_tracker,
            prompt_optimizer=self.prompt_optimizer,
            profile_learner=self.profile_learner,
            tracer=self.tracer,
            config=settings.generation
        )

    async def close(self) -> None:
        if isinstance(self.cache_backend, RedisCacheBackend):
            await self.cache_backend.close()
        if self.tracer is not None:
            self.tracer.flush()


def build_container(settings: Optional[Settings] = None, **overrides) -> Container:
    """Build the engine from settings (environment by default)"""

    settings = settings or get_settings()
    container = Container(settings, **overrides)
    logger.info(
        "container_built",
        environment=settings.environment,
        warm_cache="redis" if settings.cache.redis_url else "memory",
        tracing=container.tracer is not None
    )
    return container
