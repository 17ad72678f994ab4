from typing import Dict, Any, List, Optional
from pydantic import BaseModel, Field, ConfigDict
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Message(BaseModel):
    """A persisted chat message"""
    model_config = ConfigDict(frozen=True)

    id: str = Field(description="Unique message identifier")
    channel_id: str = Field(description="Channel the message was posted in")
    sender_id: str = Field(description="User who sent the message")
    text: str = Field(description="Message text")
    timestamp: datetime = Field(default_factory=utcnow)
    thread_id: Optional[str] = Field(None, description="Parent thread reference")
    sender_name: Optional[str] = Field(None, description="Display name, if known")
    embedding: Optional[List[float]] = Field(None, description="Attached asynchronously after creation")


class ScoredMessage(Message):
    """A message plus its relevance breakdown for one search call"""
    semantic_score: float = 0.0
    keyword_score: float = 0.0
    recency_weight: float = 1.0
    combined_score: float = 0.0
    explanation: Optional[str] = None

    @classmethod
    def from_message(cls, message: Message, **scores: Any) -> "ScoredMessage":
        data = message.model_dump(include=set(Message.model_fields))
        data.update(scores)
        return cls(**data)


class ConversationSummary(BaseModel):
    """Externally produced summary of a channel period"""
    channel_id: str
    period_start: datetime
    period_end: datetime
    summary: str
    key_topics: List[str] = Field(default_factory=list)


class UserProfile(BaseModel):
    """Personality summary and interests for one user"""
    user_id: str
    display_name: Optional[str] = None
    personality_summary: Optional[str] = None
    interests: List[str] = Field(default_factory=list)
    updated_at: Optional[datetime] = None


class SearchMetadata(BaseModel):
    """How the relevant section was found"""
    keyword_matches: int = 0
    semantic_matches: int = 0
    average_score: float = 0.0
    threshold: Optional[float] = None


class ContextWindow(BaseModel):
    """Budgeted bundle of context handed to generation"""
    recent_messages: List[Message] = Field(default_factory=list)
    relevant_messages: List[ScoredMessage] = Field(default_factory=list)
    thread_messages: Optional[List[Message]] = None
    summaries: Optional[List[ConversationSummary]] = None
    profiles: Optional[Dict[str, UserProfile]] = None
    token_estimate: int = 0
    message_count: int = 0
    quality_score: float = Field(0.0, ge=0.0, le=1.0)
    search_metadata: Optional[SearchMetadata] = None
    formatted: str = ""

    @classmethod
    def empty(cls) -> "ContextWindow":
        """Minimal valid window used when assembly fails outright"""
        return cls()

    def all_messages(self) -> List[Message]:
        """Every message in the window, across sections"""
        messages: List[Message] = list(self.recent_messages)
        messages.extend(self.relevant_messages)
        messages.extend(self.thread_messages or [])
        return messages
