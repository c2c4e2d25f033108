"""
Ecosystem — Matching API

Generate match suggestions, list a user's matches and move a match through
its lifecycle (accept / decline / save / complete / expire).
"""

from __future__ import annotations

import uuid
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from ecosystem.api.deps import enforce_user_quota, ensure_same_user
from ecosystem.database import get_db
from ecosystem.models.enums import MatchStatus
from ecosystem.models.match import Match
from ecosystem.models.user import User
from ecosystem.schemas.match import GenerateMatchesRequest, MatchActionRequest, MatchResponse
from ecosystem.services.lifecycle_service import MatchLifecycleManager
from ecosystem.services.matching_service import MatchingService

logger = structlog.get_logger("ecosystem.api.matching")

router = APIRouter()

# ── Service singletons ────────────────────────────────────────────────────────

_matching_service: MatchingService | None = None
_lifecycle_manager: MatchLifecycleManager | None = None


def _get_matching_service() -> MatchingService:
    global _matching_service
    if _matching_service is None:
        _matching_service = MatchingService(lifecycle=_get_lifecycle_manager())
    return _matching_service


def _get_lifecycle_manager() -> MatchLifecycleManager:
    global _lifecycle_manager
    if _lifecycle_manager is None:
        _lifecycle_manager = MatchLifecycleManager()
    return _lifecycle_manager


# ──────────────────────────────────────────────────────────────────────────────
# POST / — Generate matches for a user
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "",
    response_model=list[MatchResponse],
    status_code=status.HTTP_201_CREATED,
    summary="Generate match suggestions",
)
async def generate_matches(
    payload: GenerateMatchesRequest,
    user: User = Depends(enforce_user_quota),
    db: AsyncSession = Depends(get_db),
) -> list[Match]:
    """Score the candidate pool and persist the top ``limit`` matches."""
    ensure_same_user(user, payload.user_id)
    return await _get_matching_service().generate_matches(
        payload.user_id, db, limit=payload.limit
    )


# ──────────────────────────────────────────────────────────────────────────────
# GET / — List a user's matches
# ──────────────────────────────────────────────────────────────────────────────

@router.get(
    "",
    response_model=list[MatchResponse],
    summary="List matches for a user",
)
async def list_matches(
    user_id: uuid.UUID = Query(..., alias="userId"),
    match_status: Optional[MatchStatus] = Query(default=None, alias="status"),
    user: User = Depends(enforce_user_quota),
    db: AsyncSession = Depends(get_db),
) -> list[Match]:
    ensure_same_user(user, user_id)
    return await _get_matching_service().list_matches(user_id, db, status=match_status)


# ──────────────────────────────────────────────────────────────────────────────
# PATCH /{match_id} — Apply a lifecycle action
# ──────────────────────────────────────────────────────────────────────────────

@router.patch(
    "/{match_id}",
    response_model=MatchResponse,
    summary="Accept, decline or save a match",
)
async def update_match(
    match_id: uuid.UUID,
    payload: MatchActionRequest,
    user: User = Depends(enforce_user_quota),
    db: AsyncSession = Depends(get_db),
) -> Match:
    """Transition a match the current user belongs to.

    Repeating an action that already produced the current status is a no-op;
    an action not allowed from the current status returns 409.
    """
    log = logger.bind(match_id=str(match_id), user_id=str(user.id))
    log.info("match_action_requested", action=payload.action.value)
    return await _get_lifecycle_manager().transition(match_id, user.id, payload.action, db)
