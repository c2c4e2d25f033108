"""
Ecosystem — Batch Matching Driver

Generates match suggestions for one user (or for everyone, in the nightly
pipeline):

  1. Check the user exists and has finished onboarding
  2. Build the candidate pool: active, onboarded users not yet paired
  3. Load all embeddings for user + pool in a single query
  4. Score every pair concurrently (worker threads, bounded by a semaphore)
  5. Drop zero scores, keep the top ``limit`` and persist them as
     ``pending`` matches through the lifecycle manager

Scoring is pure CPU work, so each pair runs in ``asyncio.to_thread`` and
the event loop stays responsive while a large pool is scored.
"""

from __future__ import annotations

import asyncio
from typing import Any

import structlog
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ecosystem.config import get_settings
from ecosystem.errors import EcosystemError, NotFoundError, ValidationError
from ecosystem.models.enums import MatchStatus
from ecosystem.models.match import Match
from ecosystem.models.profile import Profile
from ecosystem.models.user import User
from ecosystem.services.embedding_store import EmbeddingStore
from ecosystem.services.lifecycle_service import MatchLifecycleManager, as_uuid
from ecosystem.services.scoring_service import MatchScorer, ScoreResult, ScoringInput

logger = structlog.get_logger("ecosystem.matching_service")


class MatchingService:
    """Candidate selection, concurrent scoring and match persistence.

    Dependencies are injected at construction so the service can be tested
    with stubs.
    """

    def __init__(
        self,
        scorer: MatchScorer | None = None,
        lifecycle: MatchLifecycleManager | None = None,
        embedding_store: EmbeddingStore | None = None,
    ) -> None:
        settings = get_settings()
        self.scorer = scorer or MatchScorer()
        self.lifecycle = lifecycle or MatchLifecycleManager()
        self.embedding_store = embedding_store or EmbeddingStore()
        self.concurrency: int = settings.MATCH_BATCH_CONCURRENCY
        self.pool_size: int = settings.MATCH_CANDIDATE_POOL_SIZE
        self.default_limit: int = settings.MATCH_DEFAULT_LIMIT

    # ── Public API ────────────────────────────────────────────────────────

    async def generate_matches(
        self,
        user_id: Any,
        db_session: AsyncSession,
        limit: int | None = None,
    ) -> list[Match]:
        """Score the candidate pool for *user_id* and persist the best pairs.

        Parameters
        ----------
        user_id:
            User to generate matches for (stored as ``user_a``).
        db_session:
            Active SQLAlchemy async session.
        limit:
            Maximum number of matches to create; defaults to
            ``MATCH_DEFAULT_LIMIT``.

        Returns
        -------
        list[Match]
            Newly created ``pending`` matches, best first.  Empty when no
            candidate scores above zero.
        """
        uid = as_uuid(user_id)
        limit = self.default_limit if limit is None else limit
        if limit < 1:
            raise ValidationError(f"limit must be >= 1, got {limit}", details={"limit": limit})

        log = logger.bind(user_id=str(uid), limit=limit)
        log.info("generate_matches_start")

        user = await db_session.get(User, uid)
        if user is None:
            raise NotFoundError(f"User {uid} not found")
        if not user.onboarding_completed:
            raise ValidationError(
                f"User {uid} has not completed onboarding",
                user_message="Finish onboarding to start receiving matches.",
            )

        candidates = await self._candidate_pool(uid, db_session)
        if not candidates:
            log.info("generate_matches_no_candidates")
            return []

        profiles = await self._profiles_for([uid, *candidates], db_session)
        vectors = await self.embedding_store.get_embeddings_for_users(
            [uid, *candidates], db_session
        )
        subject = ScoringInput.from_profile(uid, profiles.get(uid), vectors.get(uid, {}))
        inputs = [
            ScoringInput.from_profile(cid, profiles.get(cid), vectors.get(cid, {}))
            for cid in candidates
        ]

        scored = await self.score_candidates(subject, inputs)
        viable = [(cid, result) for cid, result in scored if result.score > 0]
        viable.sort(key=lambda item: item[1].score, reverse=True)

        created: list[Match] = []
        for candidate_id, result in viable[:limit]:
            match = await self.lifecycle.create_match(uid, candidate_id, result, db_session)
            created.append(match)

        log.info(
            "generate_matches_complete",
            pool=len(candidates),
            viable=len(viable),
            created=len(created),
        )
        return created

    async def score_candidates(
        self, subject: ScoringInput, candidates: list[ScoringInput]
    ) -> list[tuple[Any, ScoreResult]]:
        """Score *subject* against every candidate in worker threads."""
        semaphore = asyncio.Semaphore(self.concurrency)

        async def _score(candidate: ScoringInput) -> tuple[Any, ScoreResult]:
            async with semaphore:
                result = await asyncio.to_thread(self.scorer.score, subject, candidate)
                return candidate.user_id, result

        return list(await asyncio.gather(*(_score(c) for c in candidates)))

    async def list_matches(
        self,
        user_id: Any,
        db_session: AsyncSession,
        status: MatchStatus | str | None = None,
    ) -> list[Match]:
        """Matches the user is part of, newest first."""
        uid = as_uuid(user_id)
        stmt = (
            select(Match)
            .where(or_(Match.user_a_id == uid, Match.user_b_id == uid))
            .order_by(Match.created_at.desc(), Match.similarity_score.desc())
        )
        if status is not None:
            try:
                parsed = MatchStatus(status)
            except ValueError as exc:
                raise ValidationError(
                    f"Unknown match status {status!r}", details={"status": str(status)}
                ) from exc
            stmt = stmt.where(Match.status == parsed.value)

        result = await db_session.execute(stmt)
        matches = list(result.scalars().all())
        logger.info("user_matches_retrieved", user_id=str(uid), count=len(matches))
        return matches

    async def run_matching_pipeline(
        self, db_session: AsyncSession, limit: int | None = None
    ) -> list[dict]:
        """Generate matches for every active, onboarded user.

        One user's failure is recorded in the summary and does not stop the
        run.
        """
        stmt = select(User.id).where(
            User.is_active.is_(True), User.onboarding_completed.is_(True)
        )
        user_ids = list((await db_session.execute(stmt)).scalars().all())
        logger.info("matching_pipeline_start", users=len(user_ids))

        summary: list[dict] = []
        for uid in user_ids:
            try:
                matches = await self.generate_matches(uid, db_session, limit=limit)
            except EcosystemError as exc:
                logger.warning(
                    "matching_pipeline_user_failed", user_id=str(uid), error=exc.message
                )
                summary.append(
                    {"user_id": str(uid), "matches_generated": 0, "success": False, "error": exc.message}
                )
                continue
            summary.append(
                {"user_id": str(uid), "matches_generated": len(matches), "success": True}
            )

        logger.info(
            "matching_pipeline_complete",
            users=len(user_ids),
            succeeded=sum(1 for s in summary if s["success"]),
        )
        return summary

    # ── Private helpers ───────────────────────────────────────────────────

    async def _candidate_pool(self, user_id, db_session: AsyncSession) -> list:
        paired_a = select(Match.user_b_id).where(Match.user_a_id == user_id)
        paired_b = select(Match.user_a_id).where(Match.user_b_id == user_id)
        stmt = (
            select(User.id)
            .where(
                User.id != user_id,
                User.is_active.is_(True),
                User.onboarding_completed.is_(True),
                User.id.not_in(paired_a),
                User.id.not_in(paired_b),
            )
            .order_by(User.created_at, User.id)
            .limit(self.pool_size)
        )
        return list((await db_session.execute(stmt)).scalars().all())

    async def _profiles_for(self, user_ids: list, db_session: AsyncSession) -> dict:
        stmt = select(Profile).where(Profile.user_id.in_(user_ids))
        return {p.user_id: p for p in (await db_session.execute(stmt)).scalars().all()}
