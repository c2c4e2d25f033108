"""
Ecosystem — Onboarding API

Endpoints driving the adaptive onboarding flow:
  - ``next-step``        plan the next question from the answers so far
  - ``save-progress``    persist a resumable snapshot and partial profile
  - ``complete``         write the profile, embed it and flip the flag
  - ``transcribe-audio`` turn a short voice answer into text
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, File, Form, UploadFile, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ecosystem.api.deps import enforce_user_quota, ensure_same_user, get_provider_client
from ecosystem.database import get_db
from ecosystem.errors import EcosystemError
from ecosystem.models.user import User
from ecosystem.schemas.onboarding import (
    CompleteOnboardingRequest,
    CompleteOnboardingResponse,
    NextStepRequest,
    NextStepResponse,
    SaveProgressRequest,
    SaveProgressResponse,
    TranscriptionResult,
)
from ecosystem.schemas.provider import TranscriptionConstraints
from ecosystem.services.onboarding_service import OnboardingFlowEngine
from ecosystem.services.profile_service import ProfileService
from ecosystem.services.provider_client import EmbeddingProviderClient

logger = structlog.get_logger("ecosystem.api.onboarding")

router = APIRouter()

# ── Service singletons ────────────────────────────────────────────────────────

_flow_engine: OnboardingFlowEngine | None = None
_profile_service: ProfileService | None = None


def _get_flow_engine() -> OnboardingFlowEngine:
    global _flow_engine
    if _flow_engine is None:
        _flow_engine = OnboardingFlowEngine()
    return _flow_engine


def _get_profile_service() -> ProfileService:
    global _profile_service
    if _profile_service is None:
        _profile_service = ProfileService()
    return _profile_service


# ──────────────────────────────────────────────────────────────────────────────
# POST /next-step
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "/next-step",
    response_model=NextStepResponse,
    summary="Plan the next onboarding step",
)
async def next_step(
    payload: NextStepRequest,
    user: User = Depends(enforce_user_quota),
) -> NextStepResponse:
    """Return the next step, or ``step: null`` once the profile minimum is met."""
    ensure_same_user(user, payload.user_id)
    plan = _get_flow_engine().plan(payload.to_session())
    logger.info(
        "onboarding_next_step",
        user_id=str(payload.user_id),
        current_step=payload.current_step,
        next_step=plan.step.id if plan.step else None,
        flow_type=plan.flow_type.value,
    )
    return NextStepResponse(**plan.model_dump())


# ──────────────────────────────────────────────────────────────────────────────
# POST /save-progress
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "/save-progress",
    response_model=SaveProgressResponse,
    summary="Save a resumable onboarding snapshot",
)
async def save_progress(
    payload: SaveProgressRequest,
    user: User = Depends(enforce_user_quota),
    client: EmbeddingProviderClient = Depends(get_provider_client),
    db: AsyncSession = Depends(get_db),
) -> SaveProgressResponse:
    """Store the snapshot and partial profile.

    For a user who already finished onboarding, changed semantic fields are
    re-embedded in the same transaction; a provider failure saves nothing.
    """
    ensure_same_user(user, payload.user_id)
    session = payload.to_session()
    plan = _get_flow_engine().plan(session)

    service = _get_profile_service()
    progress = await service.save_progress(payload.user_id, session, plan, db)
    refreshed: list[str] = []
    if session.responses:
        _, refreshed = await service.apply_responses(
            payload.user_id, session.responses, db, client=client
        )

    return SaveProgressResponse(
        user_id=payload.user_id,
        flow_type=progress.flow_type,
        engagement_score=progress.engagement_score,
        current_step=progress.current_step,
        completed=progress.completed,
        refreshed_fields=refreshed,
    )


# ──────────────────────────────────────────────────────────────────────────────
# POST /complete
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "/complete",
    response_model=CompleteOnboardingResponse,
    summary="Finish onboarding and embed the profile",
)
async def complete_onboarding(
    payload: CompleteOnboardingRequest,
    user: User = Depends(enforce_user_quota),
    client: EmbeddingProviderClient = Depends(get_provider_client),
    db: AsyncSession = Depends(get_db),
) -> CompleteOnboardingResponse:
    """Store the profile and its embeddings together.

    A provider failure leaves the user unchanged and returns the provider
    error; the client may simply retry.
    """
    ensure_same_user(user, payload.user_id)
    result = await _get_profile_service().complete_onboarding(
        payload.user_id, payload.responses, client, db
    )
    return CompleteOnboardingResponse(**result)


# ──────────────────────────────────────────────────────────────────────────────
# POST /transcribe-audio
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "/transcribe-audio",
    response_model=TranscriptionResult,
    response_model_exclude_none=True,
    summary="Transcribe a short voice answer",
)
async def transcribe_audio(
    audio: UploadFile = File(...),
    duration: float = Form(..., ge=0),
    user: User = Depends(enforce_user_quota),
    client: EmbeddingProviderClient = Depends(get_provider_client),
):
    """Transcribe and moderate a 2-20 second recording.

    Any failure answers with ``transcription: null`` and ``fallback: "text"``
    so the client can switch the step to a typed answer.
    """
    log = logger.bind(user_id=str(user.id), duration_seconds=duration)
    data = await audio.read()
    constraints = TranscriptionConstraints(
        duration_seconds=duration,
        mime_type=audio.content_type or "audio/webm",
        filename=audio.filename or "recording.webm",
    )

    try:
        result = await client.transcribe(data, constraints)
    except EcosystemError as exc:
        log.warning("transcription_fallback", error=exc.code, message=exc.message)
        body = TranscriptionResult(
            transcription=None,
            reason=exc.user_message,
            error=exc.code,
            fallback="text",
        )
        return JSONResponse(
            status_code=exc.status_code,
            content=body.model_dump(by_alias=True),
        )

    return TranscriptionResult(
        transcription=result.text,
        confidence=result.confidence,
        duration_seconds=result.duration_seconds,
    )
