"""
Ecosystem — Profile API
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ecosystem.api.deps import enforce_user_quota, ensure_same_user, get_provider_client
from ecosystem.database import get_db
from ecosystem.models.user import User
from ecosystem.schemas.profile import RefreshEmbeddingsRequest, RefreshEmbeddingsResponse
from ecosystem.services.profile_service import ProfileService
from ecosystem.services.provider_client import EmbeddingProviderClient

logger = structlog.get_logger("ecosystem.api.profile")

router = APIRouter()

_profile_service: ProfileService | None = None


def _get_profile_service() -> ProfileService:
    global _profile_service
    if _profile_service is None:
        _profile_service = ProfileService()
    return _profile_service


@router.post(
    "/embeddings",
    response_model=RefreshEmbeddingsResponse,
    summary="Re-embed stale profile fields",
)
async def refresh_embeddings(
    payload: RefreshEmbeddingsRequest,
    user: User = Depends(enforce_user_quota),
    client: EmbeddingProviderClient = Depends(get_provider_client),
    db: AsyncSession = Depends(get_db),
) -> RefreshEmbeddingsResponse:
    """Fields whose source text is unchanged are not sent to the provider."""
    ensure_same_user(user, payload.user_id)
    summary = await _get_profile_service().refresh_embeddings(payload.user_id, client, db)
    logger.info("profile_embeddings_refreshed", user_id=str(payload.user_id), **summary)
    return RefreshEmbeddingsResponse(user_id=payload.user_id, **summary)
