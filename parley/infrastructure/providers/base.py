from typing import List, Optional, Protocol, Sequence
from pydantic import BaseModel, Field
from langchain_core.messages import BaseMessage


class TokenUsage(BaseModel):
    """Token counts reported by a provider call"""
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class EmbeddingResult(BaseModel):
    """Embedding vector plus usage"""
    vector: List[float]
    model: str
    usage: TokenUsage = Field(default_factory=TokenUsage)


class CompletionResult(BaseModel):
    """Completion text plus usage"""
    text: str
    model: str
    usage: TokenUsage = Field(default_factory=TokenUsage)


class EmbeddingProvider(Protocol):
    """Turns text into embedding vectors"""

    model: str

    async def embed(self, text: str) -> EmbeddingResult:
        ...

    async def embed_many(self, texts: Sequence[str]) -> List[EmbeddingResult]:
        ...


class CompletionProvider(Protocol):
    """Generates chat completions"""

    async def complete(
        self,
        messages: List[BaseMessage],
        temperature: float = 0.7,
        max_tokens: int = 200,
        model: Optional[str] = None
    ) -> CompletionResult:
        ...
