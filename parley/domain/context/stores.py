"""
Collaborator contracts the context layer reads from.

Production deployments back these with the message database (vector index
plus full-text relevance); the in-memory implementations under
`parley.domain.context.memory` serve single-process runs and tests.
"""

from typing import Dict, List, Optional, Protocol, Sequence, Tuple
from datetime import datetime

from parley.domain.models.conversation import ConversationSummary, Message, UserProfile


class MessageStore(Protocol):
    """Read/write contract for persisted messages"""

    async def recent_messages(self, channel_id: str, hours: int, limit: int) -> List[Message]:
        """Newest `limit` messages from the last `hours`, oldest first"""
        ...

    async def messages_by_thread(self, channel_id: str, thread_id: str, limit: int = 50) -> List[Message]:
        ...

    async def count_by_channel(self, channel_id: Optional[str] = None) -> int:
        ...

    async def vector_similar(
        self,
        embedding: Sequence[float],
        channel_id: Optional[str] = None,
        limit: int = 20,
        threshold: float = 0.0,
        since: Optional[datetime] = None
    ) -> List[Tuple[Message, float]]:
        """Messages with cosine similarity >= threshold, best first"""
        ...

    async def keyword_relevant(
        self,
        query: str,
        channel_id: Optional[str] = None,
        limit: int = 20,
        since: Optional[datetime] = None
    ) -> List[Tuple[Message, float]]:
        """Messages with a positive text-relevance score in [0, 1], best first"""
        ...

    async def sample_embeddings(self, channel_id: Optional[str] = None, limit: int = 1000) -> List[List[float]]:
        """Random sample of stored embeddings"""
        ...

    async def attach_embedding(self, message_id: str, vector: Sequence[float]) -> bool:
        ...


class ProfileStore(Protocol):
    """Read/write contract for user profiles"""

    async def get_profiles(self, user_ids: Sequence[str]) -> Dict[str, UserProfile]:
        ...

    async def save_profile(self, profile: UserProfile) -> None:
        ...


class SummaryStore(Protocol):
    """Read-only access to externally produced summaries"""

    async def recent_summaries(self, channel_id: str, limit: int = 3) -> List[ConversationSummary]:
        """Newest summaries first"""
        ...
