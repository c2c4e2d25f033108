from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ecosystem.models.enums import EngagementLevel, FlowType


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ── Session value objects ─────────────────────────────────────────────────────

class StepResponse(CamelModel):
    step_id: str
    value: Any = None
    timestamp: Optional[datetime] = None
    time_spent: Optional[float] = Field(default=None, ge=0)  # seconds
    confidence: Optional[float] = Field(default=None, ge=0, le=1)


class OnboardingSession(CamelModel):
    responses: list[StepResponse] = []
    started_at: Optional[datetime] = None
    elapsed_seconds: Optional[float] = Field(default=None, ge=0)


class OnboardingStep(CamelModel):
    id: str
    type: str  # text / multiselect / slider / confidence / audio / checkpoint
    title: str
    description: str = ""
    required: bool
    estimated_time: int  # seconds
    category: str  # foundation / strengths / goals / readiness / reflection
    profile_field: Optional[str] = None


class EngagementMetrics(CamelModel):
    average_time_per_step: float = 0.0
    depth_score: float = 0.0
    average_answer_length: float = 0.0
    confidence_variance: float = 0.0
    pause_frequency: float = 0.0
    engagement_score: float = 0.0
    engagement_level: EngagementLevel = EngagementLevel.LOW


class ConfidenceScaffolding(CamelModel):
    show_archetypes: bool = False
    suggested_prompts: list[str] = []
    ai_assistance: bool = False


class OnboardingPlan(CamelModel):
    step: Optional[OnboardingStep] = None
    flow_type: FlowType
    engagement_metrics: EngagementMetrics
    completed: bool
    scaffolding: Optional[ConfidenceScaffolding] = None


# ── API payloads ──────────────────────────────────────────────────────────────

class NextStepRequest(CamelModel):
    user_id: UUID
    current_step: Optional[str] = None
    responses: list[StepResponse] = []
    started_at: Optional[datetime] = None
    elapsed_seconds: Optional[float] = Field(default=None, ge=0)

    def to_session(self) -> OnboardingSession:
        return OnboardingSession(
            responses=self.responses,
            started_at=self.started_at,
            elapsed_seconds=self.elapsed_seconds,
        )


class NextStepResponse(OnboardingPlan):
    pass


class SaveProgressRequest(NextStepRequest):
    pass


class SaveProgressResponse(CamelModel):
    user_id: UUID
    flow_type: FlowType
    engagement_score: float
    current_step: Optional[str] = None
    completed: bool
    refreshed_fields: list[str] = Field(default_factory=list)

class CompleteOnboardingRequest(CamelModel):
    user_id: UUID
    responses: list[StepResponse]


class CompleteOnboardingResponse(CamelModel):
    user_id: UUID
    onboarding_completed: bool
    refreshed_fields: list[str] = []


class TranscriptionResult(CamelModel):
    transcription: Optional[str] = None
    confidence: Optional[str] = None
    duration_seconds: Optional[float] = None
    reason: Optional[str] = None
    error: Optional[str] = None
    fallback: Optional[str] = None
