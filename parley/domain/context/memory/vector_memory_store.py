from typing import Dict, List, Optional, Sequence, Tuple
from datetime import datetime, timedelta, timezone
import asyncio
import random
import re
import numpy as np

from parley.domain.models.conversation import Message

WORD_PATTERN = re.compile(r"\w+")

# Too common to say anything about relevance
STOP_WORDS = frozenset({
    "a", "an", "and", "are", "as", "at", "be", "but", "by", "for", "if", "in",
    "is", "it", "of", "on", "or", "so", "the", "to", "was", "we", "with", "you",
})


def tokenize(text: str) -> List[str]:
    return [word for word in WORD_PATTERN.findall(text.lower()) if word not in STOP_WORDS]


def keyword_score(query: str, content: str) -> float:
    """Share of query terms present in content, boosted for a phrase match"""

    query_words = set(tokenize(query))
    if not query_words:
        return 0.0

    content_words = set(tokenize(content))
    overlap = len(query_words.intersection(content_words))
    if overlap == 0:
        return 0.0

    score = overlap / len(query_words)

    # Boost score if query appears as substring
    if query.lower().strip() in content.lower():
        score += 0.3

    return min(score, 1.0)


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    denominator = float(np.linalg.norm(a) * np.linalg.norm(b))
    if denominator == 0.0:
        return 0.0
    return float(np.dot(a, b) / denominator)


class VectorMemoryStore:
    """In-memory message store with brute-force vector and keyword search"""

    def __init__(self, rng: Optional[random.Random] = None, max_per_channel: int = 10000):
        self.messages: Dict[str, Message] = {}
        self.by_channel: Dict[str, List[str]] = {}
        self.max_per_channel = max_per_channel
        self._rng = rng or random.Random()
        self._lock = asyncio.Lock()

    async def add(self, message: Message) -> str:
        """Add a message to the store"""

        async with self._lock:
            if message.id not in self.messages:
                ids = self.by_channel.setdefault(message.channel_id, [])
                ids.append(message.id)

                # Limit memory per channel
                if len(ids) > self.max_per_channel:
                    for dropped in ids[:-self.max_per_channel]:
                        self.messages.pop(dropped, None)
                    del ids[:-self.max_per_channel]

            self.messages[message.id] = message
            return message.id

    async def add_many(self, messages: Sequence[Message]) -> None:
        for message in messages:
            await self.add(message)

    async def get(self, message_id: str) -> Optional[Message]:
        return self.messages.get(message_id)

    def _channel_messages(self, channel_id: Optional[str]) -> List[Message]:
        if channel_id is None:
            return list(self.messages.values())
        return [self.messages[mid] for mid in self.by_channel.get(channel_id, []) if mid in self.messages]

    async def recent_messages(self, channel_id: str, hours: int, limit: int) -> List[Message]:
        """Newest messages inside the window, returned oldest first"""

        async with self._lock:
            cutoff = datetime.now(timezone.utc) - timedelta(hours=hours)
            window = [m for m in self._channel_messages(channel_id) if m.timestamp >= cutoff]
            window.sort(key=lambda m: m.timestamp)
            return window[-limit:] if limit > 0 else []

    async def messages_by_thread(self, channel_id: str, thread_id: str, limit: int = 50) -> List[Message]:
        """Thread root plus replies, oldest first"""

        async with self._lock:
            thread = [
                m for m in self._channel_messages(channel_id)
                if m.thread_id == thread_id or m.id == thread_id
            ]
            thread.sort(key=lambda m: m.timestamp)
            return thread[:limit]

    async def count_by_channel(self, channel_id: Optional[str] = None) -> int:
        async with self._lock:
            return len(self._channel_messages(channel_id))

    async def vector_similar(
        self,
        embedding: Sequence[float],
        channel_id: Optional[str] = None,
        limit: int = 20,
        threshold: float = 0.0,
        since: Optional[datetime] = None
    ) -> List[Tuple[Message, float]]:
        """Cosine similarity scan over embedded messages"""

        query = np.asarray(embedding, dtype=np.float32)

        async with self._lock:
            results = []
            for message in self._channel_messages(channel_id):
                if message.embedding is None:
                    continue
                if since is not None and message.timestamp < since:
                    continue
                similarity = cosine_similarity(query, np.asarray(message.embedding, dtype=np.float32))
                if similarity >= threshold:
                    results.append((message, similarity))

        results.sort(key=lambda pair: pair[1], reverse=True)
        return results[:limit]

    async def keyword_relevant(
        self,
        query: str,
        channel_id: Optional[str] = None,
        limit: int = 20,
        since: Optional[datetime] = None
    ) -> List[Tuple[Message, float]]:
        """Keyword-overlap relevance scan"""

        async with self._lock:
            results = []
            for message in self._channel_messages(channel_id):
                if since is not None and message.timestamp < since:
                    continue
                score = keyword_score(query, message.text)
                if score > 0:
                    results.append((message, score))

        results.sort(key=lambda pair: pair[1], reverse=True)
        return results[:limit]

    async def sample_embeddings(self, channel_id: Optional[str] = None, limit: int = 1000) -> List[List[float]]:
        async with self._lock:
            embedded = [m.embedding for m in self._channel_messages(channel_id) if m.embedding is not None]
            if len(embedded) <= limit:
                return list(embedded)
            return self._rng.sample(embedded, limit)

    async def attach_embedding(self, message_id: str, vector: Sequence[float]) -> bool:
        """Attach an embedding to an already stored message"""

        async with self._lock:
            message = self.messages.get(message_id)
            if message is None:
                return False
            self.messages[message_id] = message.model_copy(update={"embedding": [float(v) for v in vector]})
            return True
