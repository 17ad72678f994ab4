"""
Shared fakes and fixtures.

The fake embedding provider hashes words into a small bag-of-words vector,
so texts sharing words are cosine-similar and results are deterministic.
"""

from typing import Callable, List, Optional, Sequence, Union
from datetime import datetime, timedelta, timezone
import hashlib
import math
import random
import pytest

from parley.bootstrap import Container
from parley.domain.models.conversation import Message
from parley.infrastructure.config.settings import Settings
from parley.infrastructure.observability.logging import metrics
from parley.infrastructure.providers.base import CompletionResult, EmbeddingResult, TokenUsage

EMBEDDING_DIM = 64


def embed_text(text: str, dim: int = EMBEDDING_DIM) -> List[float]:
    vector = [0.0] * dim
    for word in text.lower().split():
        index = int(hashlib.md5(word.encode("utf-8")).hexdigest(), 16) % dim
        vector[index] += 1.0
    norm = math.sqrt(sum(v * v for v in vector))
    if norm == 0:
        vector[0] = 1.0
        return vector
    return [v / norm for v in vector]


def make_message(
    message_id: str,
    text: str,
    sender_id: str = "U1",
    channel_id: str = "C1",
    minutes_ago: float = 0,
    thread_id: Optional[str] = None,
    embed: bool = True,
    sender_name: Optional[str] = None
) -> Message:
    return Message(
        id=message_id,
        channel_id=channel_id,
        sender_id=sender_id,
        sender_name=sender_name,
        text=text,
        timestamp=datetime.now(timezone.utc) - timedelta(minutes=minutes_ago),
        thread_id=thread_id,
        embedding=embed_text(text) if embed else None
    )


class HashingEmbeddingProvider:
    """Deterministic stand-in for the embedding API"""

    def __init__(self, model: str = "text-embedding-3-small"):
        self.model = model
        self.calls: List[Union[str, List[str]]] = []

    async def embed(self, text: str) -> EmbeddingResult:
        self.calls.append(text)
        return EmbeddingResult(
            vector=embed_text(text),
            model=self.model,
            usage=TokenUsage(prompt_tokens=max(len(text) // 4, 1))
        )

    async def embed_many(self, texts: Sequence[str]) -> List[EmbeddingResult]:
        self.calls.append(list(texts))
        return [
            EmbeddingResult(
                vector=embed_text(text),
                model=self.model,
                usage=TokenUsage(prompt_tokens=max(len(text) // 4, 1))
            )
            for text in texts
        ]


class ScriptedCompletionProvider:
    """Replies with a fixed text, a callable's output, or raises"""

    def __init__(self, reply: Union[str, Exception, Callable[[list], str]] = "Sure thing."):
        self.reply = reply
        self.calls: List[dict] = []

    async def complete(self, messages, temperature: float = 0.7, max_tokens: int = 200, model: Optional[str] = None):
        self.calls.append({
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "model": model,
        })
        if isinstance(self.reply, Exception):
            raise self.reply
        text = self.reply(messages) if callable(self.reply) else self.reply
        return CompletionResult(
            text=text,
            model=model or "gpt-4o-mini",
            usage=TokenUsage(prompt_tokens=120, completion_tokens=30)
        )


class FixedRandom(random.Random):
    """random() always returns the same value"""

    def __init__(self, value: float):
        super().__init__(0)
        self.value = value

    def random(self) -> float:
        return self.value


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def embedding_provider():
    return HashingEmbeddingProvider()


@pytest.fixture
def completion_provider():
    return ScriptedCompletionProvider()


@pytest.fixture
def settings():
    return Settings(_env_file=None)


@pytest.fixture
def container(settings, embedding_provider, completion_provider):
    return Container(
        settings,
        embedding_provider=embedding_provider,
        completion_provider=completion_provider,
        rng=random.Random(7)
    )
