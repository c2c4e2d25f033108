from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import ConfigDict, Field
from pydantic.alias_generators import to_camel

from ecosystem.models.enums import FeedbackOutcome
from ecosystem.schemas.onboarding import CamelModel


class FeedbackPayload(CamelModel):
    # Range and vocabulary are enforced by FeedbackCollector.validate so the
    # API and service reject bad input with the same error.
    rating: Any
    outcome: str
    text: Optional[str] = Field(default=None, max_length=2000)


class FeedbackRequest(CamelModel):
    match_id: UUID
    user_id: UUID
    feedback: FeedbackPayload


class FeedbackResponse(CamelModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, from_attributes=True
    )

    id: UUID
    match_id: UUID
    user_id: UUID
    rating: int
    outcome: FeedbackOutcome
    text: Optional[str] = None
    created_at: Optional[datetime] = None
