from functools import cached_property, lru_cache
from typing import Dict, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class CacheConfig(BaseModel):
    """Two-tier vector cache settings"""
    redis_url: Optional[str] = None
    key_prefix: str = "emb:"
    hot_max_size: int = 500
    hot_ttl_seconds: float = 3600.0
    warm_ttl_seconds: int = 60 * 60 * 24 * 30
    compression_threshold: int = 1024


class SearchConfig(BaseModel):
    """Hybrid search defaults"""
    limit: int = 20
    semantic_weight: float = 0.7
    temporal_decay: float = 0.1
    min_score: float = 0.3
    recent_hours: int = 168
    recent_boost: float = 1.1
    diversity_weight: float = 0.2
    adaptive_sample_size: int = 1000
    fallback_threshold: float = 0.5
    use_adaptive_threshold: bool = True


class ContextConfig(BaseModel):
    """Context assembly defaults"""
    max_tokens: int = 4000
    recent_limit: int = 20
    relevant_limit: int = 15
    hours: int = 48
    thread_limit: int = 50
    summary_limit: int = 3
    recency_target: int = 10
    section_overhead_tokens: int = 4
    cache_ttl_seconds: int = 300
    cache_max_entries: int = 100


class GenerationConfig(BaseModel):
    """Decoding defaults and model tiers"""
    base_temperature: float = 0.7
    base_max_tokens: int = 200
    min_max_tokens: int = 100
    max_max_tokens: int = 400
    economy_model: str = "gpt-4o-mini"
    advanced_model: str = "gpt-4o"
    technical_model: str = "gpt-4.1"
    embedding_model: str = "text-embedding-3-small"
    response_cache_ttl_seconds: float = 60.0
    profile_update_probability: float = 0.05
    interjection_interval_seconds: float = 30 * 60


class BudgetConfig(BaseModel):
    """Spend limits for the usage tracker"""
    hourly_budget: float = 1.0
    daily_budget: float = 10.0
    retention_days: int = 90
    # USD per 1K tokens: {"model": {"prompt": x, "completion": y}}
    model_costs: Dict[str, Dict[str, float]] = Field(default_factory=lambda: {
        "gpt-4o-mini": {"prompt": 0.00015, "completion": 0.0006},
        "gpt-4o": {"prompt": 0.0025, "completion": 0.01},
        "gpt-4.1": {"prompt": 0.002, "completion": 0.008},
        "text-embedding-3-small": {"prompt": 0.00002, "completion": 0.0},
        "text-embedding-3-large": {"prompt": 0.00013, "completion": 0.0},
    })


class ProviderConfig(BaseModel):
    """Embedding/completion provider resilience settings"""
    api_key: Optional[str] = None
    completion_concurrency: int = 3
    embedding_concurrency: int = 25
    retry_attempts: int = 3
    retry_delay: float = 1.0
    max_retry_delay: float = 30.0
    breaker_failure_threshold: int = 5
    breaker_recovery_seconds: float = 60.0
    breaker_success_threshold: int = 2
    breaker_half_open_max_calls: int = 3


class TracingConfig(BaseModel):
    """Langfuse tracing credentials; tracing is off without keys"""
    public_key: Optional[str] = None
    secret_key: Optional[str] = None
    host: str = "https://cloud.langfuse.com"

    @property
    def enabled(self) -> bool:
        return bool(self.public_key and self.secret_key)


class LoggingConfig(BaseModel):
    """Arguments for setup_logging"""
    level: str = "INFO"
    format: str = "json"
    service_name: str = "parley"
    environment: str = "development"


class Settings(BaseSettings):
    """
    Parley settings.

    Environment variables use the PARLEY_ prefix, e.g. PARLEY_REDIS_URL,
    PARLEY_HOURLY_BUDGET. Grouped accessors hand typed config objects to
    the components that need them.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="PARLEY_",
        extra="ignore",
    )

    environment: str = "development"
    log_level: str = "INFO"
    log_format: str = "json"
    service_name: str = "parley"

    redis_url: Optional[str] = None
    openai_api_key: Optional[str] = None

    langfuse_public_key: Optional[str] = None
    langfuse_secret_key: Optional[str] = None
    langfuse_host: str = "https://cloud.langfuse.com"

    hourly_budget: float = 1.0
    daily_budget: float = 10.0
    max_context_tokens: int = 4000

    search_limit: int = 20
    semantic_weight: float = 0.7
    min_score: float = 0.3
    diversity_weight: float = 0.2

    economy_model: str = "gpt-4o-mini"
    advanced_model: str = "gpt-4o"
    technical_model: str = "gpt-4.1"
    embedding_model: str = "text-embedding-3-small"
    base_temperature: float = 0.7

    @cached_property
    def logging(self) -> LoggingConfig:
        return LoggingConfig(
            level=self.log_level,
            format=self.log_format,
            service_name=self.service_name,
            environment=self.environment
        )

    @cached_property
    def cache(self) -> CacheConfig:
        return CacheConfig(redis_url=self.redis_url)

    @cached_property
    def search(self) -> SearchConfig:
        return SearchConfig(
            limit=self.search_limit,
            semantic_weight=self.semantic_weight,
            min_score=self.min_score,
            diversity_weight=self.diversity_weight
        )

    @cached_property
    def context(self) -> ContextConfig:
        return ContextConfig(max_tokens=self.max_context_tokens)

    @cached_property
    def generation(self) -> GenerationConfig:
        return GenerationConfig(
            economy_model=self.economy_model,
            advanced_model=self.advanced_model,
            technical_model=self.technical_model,
            embedding_model=self.embedding_model,
            base_temperature=self.base_temperature
        )

    @cached_property
    def budget(self) -> BudgetConfig:
        return BudgetConfig(hourly_budget=self.hourly_budget, daily_budget=self.daily_budget)

    @cached_property
    def provider(self) -> ProviderConfig:
        return ProviderConfig(api_key=self.openai_api_key)

    @cached_property
    def tracing(self) -> TracingConfig:
        return TracingConfig(
            public_key=self.langfuse_public_key,
            secret_key=self.langfuse_secret_key,
            host=self.langfuse_host
        )


@lru_cache
def get_settings() -> Settings:
    """Load settings from the environment once per process"""
    return Settings()
