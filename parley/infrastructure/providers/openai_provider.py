from typing import Any, Dict, List, Optional, Sequence
import asyncio
import time
import structlog
import openai
from openai import AsyncOpenAI
from langchain_core.messages import BaseMessage

from parley.infrastructure.config.settings import ProviderConfig
from parley.infrastructure.errors import (
    ProviderClientError,
    ProviderError,
    ProviderRateLimited,
)
from parley.infrastructure.observability.logging import engine_logger, metrics
from parley.infrastructure.resilience.circuit_breaker import CircuitBreaker
from parley.infrastructure.resilience.retry import with_retry
from .base import CompletionResult, EmbeddingResult, TokenUsage

logger = structlog.get_logger(__name__)

# Input limit for embedding requests, in characters
MAX_EMBEDDING_INPUT = 8000

ROLE_BY_MESSAGE_TYPE = {
    "system": "system",
    "human": "user",
    "ai": "assistant",
}


def translate_openai_error(error: Exception) -> Exception:
    """Map OpenAI SDK exceptions onto the engine's provider errors"""

    if isinstance(error, openai.RateLimitError):
        retry_after = 60.0
        response = getattr(error, "response", None)
        if response is not None:
            header = response.headers.get("retry-after")
            if header:
                try:
                    retry_after = float(header)
                except ValueError:
                    pass
        return ProviderRateLimited(str(error), retry_after=retry_after, provider="openai")

    if isinstance(error, openai.APIStatusError) and 400 <= error.status_code < 500:
        return ProviderClientError(
            f"OpenAI API error: {error}",
            status_code=error.status_code,
            provider="openai"
        )

    if isinstance(error, (openai.APIStatusError, openai.APIConnectionError)):
        return ProviderError(f"OpenAI API error: {error}", provider="openai")

    return error


def to_openai_messages(messages: List[BaseMessage]) -> List[Dict[str, Any]]:
    """Convert LangChain messages into chat.completions payload"""

    payload = []
    for message in messages:
        role = ROLE_BY_MESSAGE_TYPE.get(message.type, "user")
        entry: Dict[str, Any] = {"role": role, "content": message.content}
        if getattr(message, "name", None):
            entry["name"] = message.name
        payload.append(entry)
    return payload


class _OpenAIBase:
    """Shared limiter, breaker and retry plumbing"""

    def __init__(
        self,
        config: ProviderConfig,
        client: Optional[AsyncOpenAI] = None,
        breaker: Optional[CircuitBreaker] = None,
        concurrency: int = 3,
        name: str = "openai"
    ):
        self.config = config
        self.client = client or AsyncOpenAI(api_key=config.api_key)
        self.breaker = breaker or CircuitBreaker(
            name,
            failure_threshold=config.breaker_failure_threshold,
            recovery_timeout=config.breaker_recovery_seconds,
            success_threshold=config.breaker_success_threshold,
            half_open_max_calls=config.breaker_half_open_max_calls
        )
        self.semaphore = asyncio.Semaphore(concurrency)
        self.name = name

    async def _call(self, operation: str, request):
        """Run one request through the limiter, retries and breaker"""

        async def attempt():
            async with self.breaker:
                try:
                    return await request()
                except Exception as e:
                    raise translate_openai_error(e) from e

        start = time.perf_counter()
        async with self.semaphore:
            try:
                result = await with_retry(
                    attempt,
                    attempts=self.config.retry_attempts,
                    base_delay=self.config.retry_delay,
                    max_delay=self.config.max_retry_delay,
                    operation=f"{self.name}.{operation}"
                )
            except Exception as e:
                duration_ms = (time.perf_counter() - start) * 1000
                engine_logger.log_provider_call(self.name, operation, duration_ms, success=False, error=str(e))
                metrics.increment_counter(f"provider.{operation}.errors")
                raise

        duration_ms = (time.perf_counter() - start) * 1000
        engine_logger.log_provider_call(self.name, operation, duration_ms)
        metrics.record_latency(f"provider.{operation}", duration_ms)
        return result


class OpenAIEmbeddingProvider(_OpenAIBase):
    """Embeddings through the OpenAI API"""

    def __init__(
        self,
        config: ProviderConfig,
        model: str = "text-embedding-3-small",
        client: Optional[AsyncOpenAI] = None,
        breaker: Optional[CircuitBreaker] = None
    ):
        super().__init__(
            config,
            client=client,
            breaker=breaker,
            concurrency=config.embedding_concurrency,
            name="openai.embedding"
        )
        self.model = model

    async def embed(self, text: str) -> EmbeddingResult:
        """Embed a single text (truncated to the provider input limit)"""

        response = await self._call(
            "embed",
            lambda: self.client.embeddings.create(model=self.model, input=text[:MAX_EMBEDDING_INPUT])
        )

        return EmbeddingResult(
            vector=list(response.data[0].embedding),
            model=response.model,
            usage=TokenUsage(prompt_tokens=response.usage.prompt_tokens)
        )

    async def embed_many(self, texts: Sequence[str]) -> List[EmbeddingResult]:
        """Embed several texts in one request"""

        if not texts:
            return []

        inputs = [text[:MAX_EMBEDDING_INPUT] for text in texts]
        response = await self._call(
            "embed_many",
            lambda: self.client.embeddings.create(model=self.model, input=inputs)
        )

        # Usage is reported per request; spread it evenly for accounting
        per_item = response.usage.prompt_tokens // max(len(inputs), 1)
        ordered = sorted(response.data, key=lambda item: item.index)
        return [
            EmbeddingResult(
                vector=list(item.embedding),
                model=response.model,
                usage=TokenUsage(prompt_tokens=per_item)
            )
            for item in ordered
        ]


class OpenAICompletionProvider(_OpenAIBase):
    """Chat completions through the OpenAI API"""

    def __init__(
        self,
        config: ProviderConfig,
        default_model: str = "gpt-4o-mini",
        client: Optional[AsyncOpenAI] = None,
        breaker: Optional[CircuitBreaker] = None
    ):
        super().__init__(
            config,
            client=client,
            breaker=breaker,
            concurrency=config.completion_concurrency,
            name="openai.completion"
        )
        self.default_model = default_model

    async def complete(
        self,
        messages: List[BaseMessage],
        temperature: float = 0.7,
        max_tokens: int = 200,
        model: Optional[str] = None
    ) -> CompletionResult:
        """Generate a chat completion"""

        payload = to_openai_messages(messages)
        response = await self._call(
            "complete",
            lambda: self.client.chat.completions.create(
                model=model or self.default_model,
                messages=payload,
                temperature=temperature,
                max_tokens=max_tokens
            )
        )

        content = response.choices[0].message.content
        if not content:
            raise ProviderError("No content in response", provider="openai")

        usage = response.usage
        return CompletionResult(
            text=content,
            model=response.model,
            usage=TokenUsage(
                prompt_tokens=usage.prompt_tokens if usage else 0,
                completion_tokens=usage.completion_tokens if usage else 0
            )
        )
