"""
Ecosystem — Admin operations API

  - ``GET /ai-health``     full or quick component validation
  - ``POST /run-matching`` batch matching pipeline for all onboarded users
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from ecosystem.database import get_db, get_session_factory
from ecosystem.schemas.health import HealthReport, PipelineRunResponse
from ecosystem.services.health_service import SystemHealthValidator
from ecosystem.services.matching_service import MatchingService

logger = structlog.get_logger("ecosystem.api.admin.health")

router = APIRouter()

_matching_service: MatchingService | None = None


def _get_matching_service() -> MatchingService:
    global _matching_service
    if _matching_service is None:
        _matching_service = MatchingService()
    return _matching_service


# ──────────────────────────────────────────────────────────────────────────────
# GET /ai-health
# ──────────────────────────────────────────────────────────────────────────────

@router.get(
    "/ai-health",
    response_model=HealthReport,
    summary="Validate every matching engine component",
)
async def ai_health(
    request: Request,
    quick: bool = Query(False, description="Skip the live provider embedding call"),
) -> HealthReport:
    """Run the system health validator.

    The report is returned with HTTP 200 whatever the verdict; callers read
    ``overall`` (healthy / degraded / critical).
    """
    validator = SystemHealthValidator(
        provider_client=getattr(request.app.state, "provider_client", None),
        session_factory=get_session_factory(),
    )
    return await validator.run_full_validation(quick=quick)


# ──────────────────────────────────────────────────────────────────────────────
# POST /run-matching
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "/run-matching",
    response_model=PipelineRunResponse,
    summary="Run the batch matching pipeline",
)
async def run_matching(
    limit: int | None = Query(None, ge=1, le=50, description="Matches per user"),
    db: AsyncSession = Depends(get_db),
) -> PipelineRunResponse:
    results = await _get_matching_service().run_matching_pipeline(db, limit=limit)
    response = PipelineRunResponse(
        users_processed=len(results),
        matches_generated=sum(r["matches_generated"] for r in results),
        results=results,
    )
    logger.info(
        "admin_matching_run",
        users=response.users_processed,
        matches=response.matches_generated,
    )
    return response
