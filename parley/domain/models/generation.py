from typing import Dict, Any, List, Optional
from pydantic import BaseModel, Field, model_validator
from datetime import datetime
from enum import Enum

from .conversation import utcnow


class MoodName(str, Enum):
    """Closed set of moods"""
    EXCITED = "excited"
    SARCASTIC = "sarcastic"
    ANALYTICAL = "analytical"
    HELPFUL = "helpful"
    NOSTALGIC = "nostalgic"
    NEUTRAL = "neutral"


class ResponseModifiers(BaseModel):
    """How a mood bends decoding parameters and post-processing"""
    temperature_delta: float = 0.0
    length_bias: float = Field(0.0, ge=-1.0, le=1.0)
    humor_level: float = Field(0.5, ge=0.0, le=1.0)
    formality_level: float = Field(0.5, ge=0.0, le=1.0)


class Mood(BaseModel):
    """Mood selected for one response"""
    name: MoodName = MoodName.NEUTRAL
    intensity: float = Field(0.5, ge=0.0, le=1.0)
    trigger_keywords: List[str] = Field(default_factory=list)
    response_modifiers: ResponseModifiers = Field(default_factory=ResponseModifiers)


class Complexity(str, Enum):
    """Coarse estimate of how hard a request is"""
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"


class ModelSelection(BaseModel):
    """Chosen model tier and why"""
    model: str
    reasoning: str
    estimated_cost: float = 0.0


class UsageRecord(BaseModel):
    """One provider call's token usage and cost"""
    model: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    cost: float = 0.0
    operation: str = "completion"
    user_id: Optional[str] = None
    channel_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class PromptVariant(BaseModel):
    """One arm of a prompt experiment"""
    id: str
    name: str
    template: str = ""
    system_prompt: Optional[str] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)


class VariantMetrics(BaseModel):
    """Accumulated metrics for one variant"""
    impressions: int = 0
    engagements: int = 0
    quality_total: float = 0.0
    quality_samples: int = 0
    response_time_total: float = 0.0
    tokens_total: int = 0
    errors: int = 0
    conversions: int = 0

    @property
    def engagement_rate(self) -> float:
        return self.engagements / self.impressions if self.impressions else 0.0

    @property
    def average_quality(self) -> float:
        return self.quality_total / self.quality_samples if self.quality_samples else 0.0

    @property
    def error_rate(self) -> float:
        return self.errors / self.impressions if self.impressions else 0.0

    @property
    def average_response_time(self) -> float:
        return self.response_time_total / self.impressions if self.impressions else 0.0

    @property
    def score(self) -> float:
        return self.engagement_rate * 0.4 + self.average_quality * 0.4 - self.error_rate * 0.2


class PromptTest(BaseModel):
    """A/B test over prompt variants"""
    id: str
    name: str
    prompt_type: str = "system"
    variants: List[PromptVariant]
    allocation: Dict[str, int]
    start_date: datetime = Field(default_factory=utcnow)
    end_date: Optional[datetime] = None
    active: bool = True
    min_sample_size: int = 100
    metrics: Dict[str, VariantMetrics] = Field(default_factory=dict)

    @model_validator(mode="after")
    def validate_allocation(self) -> "PromptTest":
        variant_ids = {variant.id for variant in self.variants}
        if set(self.allocation) != variant_ids:
            raise ValueError("allocation must name every variant exactly once")
        if any(share < 0 for share in self.allocation.values()):
            raise ValueError("allocation shares must be non-negative")
        if sum(self.allocation.values()) != 100:
            raise ValueError("allocation must sum to 100")
        for variant_id in variant_ids:
            self.metrics.setdefault(variant_id, VariantMetrics())
        return self


class ResponseMetadata(BaseModel):
    """What went into a generated response"""
    mood: MoodName = MoodName.NEUTRAL
    confidence: float = 0.5
    context_quality: float = 0.0
    model_used: str = "error"
    prompt_variant: Optional[str] = None
    processing_time: float = 0.0


class GeneratedResponse(BaseModel):
    """Final reply text plus metadata"""
    text: str
    metadata: ResponseMetadata = Field(default_factory=ResponseMetadata)
