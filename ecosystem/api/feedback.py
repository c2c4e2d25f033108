"""
Ecosystem — Feedback API
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from ecosystem.api.deps import enforce_user_quota, ensure_same_user
from ecosystem.database import get_db
from ecosystem.models.feedback import Feedback
from ecosystem.models.user import User
from ecosystem.schemas.feedback import FeedbackRequest, FeedbackResponse
from ecosystem.services.feedback_service import FeedbackCollector

logger = structlog.get_logger("ecosystem.api.feedback")

router = APIRouter()

_feedback_collector: FeedbackCollector | None = None


def _get_feedback_collector() -> FeedbackCollector:
    global _feedback_collector
    if _feedback_collector is None:
        _feedback_collector = FeedbackCollector()
    return _feedback_collector


@router.post(
    "",
    response_model=FeedbackResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Submit feedback for a match",
)
async def submit_feedback(
    payload: FeedbackRequest,
    user: User = Depends(enforce_user_quota),
    db: AsyncSession = Depends(get_db),
) -> Feedback:
    """Store a 1-5 rating and outcome; an open match is closed."""
    ensure_same_user(user, payload.user_id)
    return await _get_feedback_collector().submit(
        payload.match_id,
        payload.user_id,
        payload.feedback.rating,
        payload.feedback.outcome,
        db,
        text=payload.feedback.text,
    )
