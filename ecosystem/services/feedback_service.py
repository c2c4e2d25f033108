"""
Ecosystem — FeedbackCollector: post-meeting outcome ratings

Feedback is append-only: one row per ``(match_id, user_id)``, never
updated, and a second submission is rejected.  Recording feedback also
closes the match through the lifecycle manager (the only path allowed to
take a ``pending`` match straight to ``completed``).

Aggregated outcomes per match type are exposed as the weighting signal an
offline tuning job reads to adjust ``SCORING_WEIGHTS``.
"""

from __future__ import annotations

from typing import Any

import structlog
from sqlalchemy import case, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ecosystem.errors import ValidationError
from ecosystem.models.enums import FeedbackOutcome, MatchStatus
from ecosystem.models.feedback import Feedback
from ecosystem.models.match import Match
from ecosystem.services.lifecycle_service import MatchLifecycleManager, as_uuid

logger = structlog.get_logger("ecosystem.feedback_service")

MIN_RATING = 1
MAX_RATING = 5

_POSITIVE_OUTCOMES = [o.value for o in FeedbackOutcome if o.is_positive]


def _duplicate(match_id: Any) -> ValidationError:
    return ValidationError(
        "Feedback already submitted for this match",
        user_message="You have already shared feedback for this match.",
        details={"match_id": str(match_id)},
    )


class FeedbackCollector:
    """Validates, stores and aggregates match feedback."""

    def __init__(self, lifecycle: MatchLifecycleManager | None = None) -> None:
        self.lifecycle = lifecycle or MatchLifecycleManager()

    @staticmethod
    def validate(rating: Any, outcome: Any) -> FeedbackOutcome:
        """Check the rating range and outcome vocabulary."""
        if isinstance(rating, bool) or not isinstance(rating, int):
            raise ValidationError(
                f"Rating must be an integer, got {rating!r}",
                user_message="Please choose a rating from 1 to 5.",
                details={"rating": rating},
            )
        if not MIN_RATING <= rating <= MAX_RATING:
            raise ValidationError(
                f"Rating {rating} outside {MIN_RATING}..{MAX_RATING}",
                user_message="Please choose a rating from 1 to 5.",
                details={"rating": rating},
            )
        try:
            return FeedbackOutcome(outcome)
        except ValueError as exc:
            raise ValidationError(
                f"Unknown outcome {outcome!r}",
                user_message="Please choose one of the listed outcomes.",
                details={"outcome": str(outcome)},
            ) from exc

    async def submit(
        self,
        match_id: Any,
        user_id: Any,
        rating: int,
        outcome: FeedbackOutcome | str,
        db_session: AsyncSession,
        text: str | None = None,
    ) -> Feedback:
        """Record feedback for a match and close the match.

        Parameters
        ----------
        match_id:
            Match the feedback is about.
        user_id:
            Submitting user; must be part of the match.
        rating:
            Integer 1-5.
        outcome:
            One of ``collaboration``, ``insight``, ``good_chat``,
            ``didnt_click``, ``no_response``.
        db_session:
            Active SQLAlchemy async session.
        text:
            Optional free-text comment.

        Returns
        -------
        Feedback
            The stored feedback row.

        Raises
        ------
        ValidationError
            Invalid rating/outcome, or the user already left feedback.
        NotFoundError
            The match does not exist or does not involve the user.
        """
        parsed_outcome = self.validate(rating, outcome)
        uid = as_uuid(user_id)
        match = await self.lifecycle.get_match_for_user(match_id, uid, db_session)
        log = logger.bind(match_id=str(match.id), user_id=str(uid))

        if await self._already_submitted(match.id, uid, db_session):
            log.warning("feedback_duplicate_rejected")
            raise _duplicate(match.id)

        cleaned_text = (text or "").strip() or None
        feedback = Feedback(
            match_id=match.id,
            user_id=uid,
            rating=rating,
            outcome=parsed_outcome.value,
            text=cleaned_text,
        )
        db_session.add(feedback)
        try:
            await db_session.flush()
        except IntegrityError as exc:
            # A concurrent submission won the unique (match_id, user_id) row.
            log.warning("feedback_duplicate_rejected", concurrent=True)
            raise _duplicate(match.id) from exc
        await db_session.refresh(feedback)
        log.info("feedback_recorded", rating=rating, outcome=parsed_outcome.value)

        if not MatchStatus(match.status).is_terminal:
            await self.lifecycle.complete_from_feedback(match.id, db_session)

        return feedback

    @staticmethod
    async def _already_submitted(match_id: Any, user_id: Any, db_session: AsyncSession) -> bool:
        existing = await db_session.execute(
            select(Feedback.id).where(Feedback.match_id == match_id, Feedback.user_id == user_id)
        )
        return existing.first() is not None

    async def weighting_signals(self, db_session: AsyncSession) -> dict[str, dict]:
        """Aggregate feedback per match type.

        Returns ``{match_type: {count, average_rating, positive_rate}}``.
        """
        positive = case((Feedback.outcome.in_(_POSITIVE_OUTCOMES), 1), else_=0)
        stmt = (
            select(
                Match.match_type,
                func.count(Feedback.id),
                func.avg(Feedback.rating),
                func.sum(positive),
            )
            .select_from(Feedback)
            .join(Match, Match.id == Feedback.match_id)
            .group_by(Match.match_type)
        )
        rows = (await db_session.execute(stmt)).all()

        signals: dict[str, dict] = {}
        for match_type, count, avg_rating, positives in rows:
            signals[match_type] = {
                "count": int(count),
                "average_rating": round(float(avg_rating or 0.0), 3),
                "positive_rate": round(float(positives or 0) / count, 3) if count else 0.0,
            }
        logger.info("feedback_weighting_signals", match_types=sorted(signals))
        return signals
