from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import ConfigDict, Field
from pydantic.alias_generators import to_camel

from ecosystem.models.enums import MatchStatus, MatchType, UserMatchAction
from ecosystem.schemas.onboarding import CamelModel


class MatchResponse(CamelModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, from_attributes=True
    )

    id: UUID
    user_a_id: UUID
    user_b_id: UUID
    match_type: MatchType
    similarity_score: float = Field(..., ge=0, le=1)
    evidence: dict[str, Any]
    explanation: str
    status: MatchStatus
    version: int
    status_changed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class GenerateMatchesRequest(CamelModel):
    user_id: UUID
    limit: Optional[int] = Field(default=None, ge=1, le=50)


class MatchActionRequest(CamelModel):
    action: UserMatchAction


class WeightingSignal(CamelModel):
    count: int
    average_rating: float
    positive_rate: float
