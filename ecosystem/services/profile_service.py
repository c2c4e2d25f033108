"""
Ecosystem — Profile & Onboarding Completion Pipeline

Bridges onboarding answers and the matching engine:
  1. Extract profile fields from the ordered onboarding responses
  2. Persist a resumable onboarding snapshot (``onboarding_progress``)
  3. On completion, embed every semantic field *before* writing anything,
     then store the profile, the embeddings and the onboarding flag together
  4. After completion, profile edits re-embed the fields they change in the
     same unit of work

A provider failure during completion therefore leaves the user exactly as
they were: no profile changes, no embeddings, ``onboarding_completed`` unset.
"""

from __future__ import annotations

from datetime import datetime, timezone
from types import SimpleNamespace
from typing import Any, Sequence

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ecosystem.errors import NotFoundError, ValidationError
from ecosystem.models.onboarding import OnboardingProgress
from ecosystem.models.profile import Profile
from ecosystem.models.user import User
from ecosystem.schemas.onboarding import OnboardingPlan, OnboardingSession, StepResponse
from ecosystem.services.embedding_store import EmbeddingStore
from ecosystem.services.lifecycle_service import as_uuid
from ecosystem.services.onboarding_service import (
    extract_profile_data,
    missing_required_fields,
)

logger = structlog.get_logger("ecosystem.profile_service")

_PROFILE_FIELDS: tuple[str, ...] = (
    "strengths",
    "needs",
    "goal_categories",
    "shared_values",
    "connection_preferences",
    "current_goal",
    "current_work",
    "availability",
    "industry",
)
_LIST_FIELDS = {"strengths", "needs", "goal_categories", "shared_values", "connection_preferences"}


class ProfileService:
    """Profile writes driven by onboarding, plus embedding refresh."""

    def __init__(self, embedding_store: EmbeddingStore | None = None) -> None:
        self.embedding_store = embedding_store or EmbeddingStore()

    # ── Reads ─────────────────────────────────────────────────────────────

    async def get_user(self, user_id: Any, db_session: AsyncSession) -> User:
        user = await db_session.get(User, as_uuid(user_id))
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        return user

    async def get_profile(self, user_id: Any, db_session: AsyncSession) -> Profile | None:
        stmt = select(Profile).where(Profile.user_id == as_uuid(user_id))
        return (await db_session.execute(stmt)).scalar_one_or_none()

    # ── Writes ────────────────────────────────────────────────────────────

    async def apply_responses(
        self,
        user_id: Any,
        responses: Sequence[StepResponse],
        db_session: AsyncSession,
        client: Any = None,
    ) -> tuple[Profile, list[str]]:
        """Write fields extracted from *responses* into the user's profile.

        Only fields the responses actually provide are overwritten.  Once the
        user has finished onboarding their embeddings must follow the
        profile, so changed fields are re-embedded through *client* before
        anything is written.  Returns the profile and the re-embedded fields.
        """
        uid = as_uuid(user_id)
        user = await self.get_user(uid, db_session)
        extracted = {k: v for k, v in extract_profile_data(responses).items() if v}

        refreshed: list[str] = []
        if user.onboarding_completed:
            if client is None:
                raise ValueError("An embedding client is required to edit an onboarded profile")
            candidate = self._candidate(await self.get_profile(uid, db_session), extracted)
            summary = await self.embedding_store.refresh_user_embeddings(
                uid, candidate, client, db_session
            )
            refreshed = summary["refreshed"]

        profile = await self._write_profile(uid, extracted, db_session)
        return profile, refreshed

    async def save_progress(
        self,
        user_id: Any,
        session: OnboardingSession,
        plan: OnboardingPlan,
        db_session: AsyncSession,
    ) -> OnboardingProgress:
        """Upsert the resumable onboarding snapshot for *user_id*."""
        uid = as_uuid(user_id)
        await self.get_user(uid, db_session)

        stmt = select(OnboardingProgress).where(OnboardingProgress.user_id == uid)
        progress = (await db_session.execute(stmt)).scalar_one_or_none()
        if progress is None:
            progress = OnboardingProgress(user_id=uid)
            db_session.add(progress)

        progress.responses = [r.model_dump(mode="json") for r in session.responses]
        progress.flow_type = plan.flow_type.value
        progress.engagement_score = plan.engagement_metrics.engagement_score
        progress.current_step = plan.step.id if plan.step else None
        progress.step_index = len(session.responses)
        progress.completed = plan.completed
        await db_session.flush()

        logger.info(
            "onboarding_progress_saved",
            user_id=str(uid),
            flow_type=progress.flow_type,
            current_step=progress.current_step,
            responses=progress.step_index,
        )
        return progress

    async def complete_onboarding(
        self,
        user_id: Any,
        responses: Sequence[StepResponse],
        client: Any,
        db_session: AsyncSession,
    ) -> dict:
        """Finish onboarding: profile, embeddings and flag in one unit.

        Parameters
        ----------
        user_id:
            User finishing onboarding.
        responses:
            Full ordered list of onboarding answers.
        client:
            ``EmbeddingProviderClient`` used to embed the semantic fields.
        db_session:
            Active SQLAlchemy async session.  Nothing is written to it if
            any embedding fails.

        Returns
        -------
        dict
            ``{"user_id", "onboarding_completed", "refreshed_fields"}``

        Raises
        ------
        ValidationError
            Strengths, needs, goals or values cannot be extracted.
        NotFoundError
            Unknown user.
        """
        uid = as_uuid(user_id)
        log = logger.bind(user_id=str(uid))
        user = await self.get_user(uid, db_session)

        missing = missing_required_fields(responses)
        if missing:
            raise ValidationError(
                f"Onboarding incomplete, missing {', '.join(missing)}",
                user_message="Please answer the remaining questions before finishing.",
                details={"missing_fields": missing},
            )

        log.info("onboarding_completion_start")

        extracted = {k: v for k, v in extract_profile_data(responses).items() if v}
        candidate = self._candidate(await self.get_profile(uid, db_session), extracted)

        # Embeds every stale field first; raises before any row is written.
        summary = await self.embedding_store.refresh_user_embeddings(
            uid, candidate, client, db_session
        )

        await self._write_profile(uid, extracted, db_session)
        if not user.onboarding_completed:
            user.onboarding_completed = True
            user.onboarding_completed_at = datetime.now(timezone.utc)

        progress = (
            await db_session.execute(
                select(OnboardingProgress).where(OnboardingProgress.user_id == uid)
            )
        ).scalar_one_or_none()
        if progress is not None:
            progress.completed = True
            progress.current_step = None
        await db_session.flush()

        log.info("onboarding_completed", refreshed=summary["refreshed"])
        return {
            "user_id": uid,
            "onboarding_completed": True,
            "refreshed_fields": summary["refreshed"],
        }

    async def refresh_embeddings(
        self, user_id: Any, client: Any, db_session: AsyncSession
    ) -> dict:
        """Re-embed whatever changed since the profile was last embedded."""
        profile = await self.get_profile(user_id, db_session)
        if profile is None:
            raise NotFoundError(f"Profile for user {user_id} not found")
        return await self.embedding_store.refresh_user_embeddings(
            profile.user_id, profile, client, db_session
        )

    # ── Private helpers ───────────────────────────────────────────────────

    @staticmethod
    def _candidate(existing: Profile | None, extracted: dict[str, Any]) -> SimpleNamespace:
        """The profile as it would read after *extracted* is applied."""
        candidate = SimpleNamespace(
            **{f: getattr(existing, f, None) if existing else None for f in _PROFILE_FIELDS}
        )
        for field, value in extracted.items():
            setattr(candidate, field, value)
        return candidate

    async def _write_profile(
        self, user_id: Any, fields: dict[str, Any], db_session: AsyncSession
    ) -> Profile:
        uid = as_uuid(user_id)
        profile = await self.get_profile(uid, db_session)
        if profile is None:
            profile = Profile(
                user_id=uid,
                strengths=[],
                needs=[],
                goal_categories=[],
                shared_values=[],
                connection_preferences=[],
            )
            db_session.add(profile)

        for field, value in fields.items():
            if field not in _PROFILE_FIELDS:
                continue
            setattr(profile, field, list(value) if field in _LIST_FIELDS else value)
        await db_session.flush()

        logger.debug("profile_written", user_id=str(uid), fields=sorted(fields))
        return profile
