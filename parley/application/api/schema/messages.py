from typing import Dict, Any, List, Optional
from pydantic import BaseModel, Field

from parley.domain.models.conversation import Message
from parley.domain.models.generation import ResponseMetadata


class RespondRequest(BaseModel):
    """Inbound message the upstream event handler wants answered"""
    message: str = Field(min_length=1)
    channel_id: str
    user_id: str
    user_name: str
    thread_id: Optional[str] = None


class RespondResponse(BaseModel):
    """Reply text and what went into it"""
    text: str
    metadata: ResponseMetadata


class InterjectRequest(BaseModel):
    """Recent channel messages to judge for an unprompted reply"""
    channel_id: str
    recent_messages: List[str] = Field(default_factory=list)


class InterjectResponse(BaseModel):
    should: bool
    message: Optional[str] = None


class HealthResponse(BaseModel):
    status: str = "healthy"
    metrics: Dict[str, Any] = Field(default_factory=dict)
    vector_cache: Dict[str, Any] = Field(default_factory=dict)
    context_cache: Dict[str, Any] = Field(default_factory=dict)
    circuit_breakers: List[Dict[str, Any]] = Field(default_factory=list)


class IngestRequest(BaseModel):
    """Channel messages seen by the upstream event handler"""
    messages: List[Message] = Field(min_length=1)


class IngestResponse(BaseModel):
    stored: int
    indexed: int
