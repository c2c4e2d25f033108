"""
Ecosystem — MatchLifecycleManager: match state machine

A match is created ``pending`` and moves through an explicit transition
table:

  pending --accept/decline/save--> accepted / declined / saved
  saved   --accept/decline-------> accepted / declined
  accepted|saved --complete------> completed
  pending --expire---------------> expired
  pending --complete-------------> completed   (feedback only)

``completed``, ``declined`` and ``expired`` are terminal.  Re-applying an
action to a match already in its target state is a no-op without side
effects; any other transition outside the table raises
``InvalidTransition`` and leaves the row untouched.

Writes are compare-and-set on ``(status, version)`` so two concurrent
actions on the same match cannot both win.  The loser reloads the row and
re-evaluates once before giving up.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ecosystem.errors import InvalidTransition, NotFoundError, ValidationError
from ecosystem.models.enums import MatchAction, MatchStatus, UserMatchAction
from ecosystem.models.match import Interaction, Match
from ecosystem.services.scoring_service import ScoreResult

logger = structlog.get_logger("ecosystem.lifecycle_service")

# ──────────────────────────────────────────────────────────────────────────────
# Transition table
# ──────────────────────────────────────────────────────────────────────────────

ACTION_TARGETS: dict[MatchAction, MatchStatus] = {
    MatchAction.ACCEPT: MatchStatus.ACCEPTED,
    MatchAction.DECLINE: MatchStatus.DECLINED,
    MatchAction.SAVE: MatchStatus.SAVED,
    MatchAction.COMPLETE: MatchStatus.COMPLETED,
    MatchAction.EXPIRE: MatchStatus.EXPIRED,
}

TRANSITIONS: dict[MatchStatus, frozenset[MatchAction]] = {
    MatchStatus.PENDING: frozenset(
        {MatchAction.ACCEPT, MatchAction.DECLINE, MatchAction.SAVE, MatchAction.EXPIRE}
    ),
    MatchStatus.SAVED: frozenset(
        {MatchAction.ACCEPT, MatchAction.DECLINE, MatchAction.COMPLETE}
    ),
    MatchStatus.ACCEPTED: frozenset({MatchAction.COMPLETE}),
    MatchStatus.DECLINED: frozenset(),
    MatchStatus.COMPLETED: frozenset(),
    MatchStatus.EXPIRED: frozenset(),
}

# Extra edges only the feedback path may take.
FEEDBACK_TRANSITIONS: dict[MatchStatus, frozenset[MatchAction]] = {
    MatchStatus.PENDING: frozenset({MatchAction.COMPLETE}),
}

INTERACTION_MATCH_ACCEPTED = "match_accepted"


def allowed_actions(status: MatchStatus, *, via_feedback: bool = False) -> frozenset[MatchAction]:
    allowed = TRANSITIONS[status]
    if via_feedback:
        allowed = allowed | FEEDBACK_TRANSITIONS.get(status, frozenset())
    return allowed


def _parse_user_action(action: MatchAction | UserMatchAction | str) -> MatchAction:
    value = action.value if isinstance(action, enum.Enum) else action
    try:
        return MatchAction(UserMatchAction(value).value)
    except ValueError as exc:
        raise ValidationError(
            f"Unsupported match action {value!r}",
            user_message="Unknown action. Use accept, decline or save.",
            details={"action": str(value)},
        ) from exc


def as_uuid(value: Any) -> uuid.UUID:
    try:
        return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
    except ValueError as exc:
        raise NotFoundError(f"Invalid identifier {value!r}") from exc


class MatchLifecycleManager:
    """Creates matches and moves them through their lifecycle."""

    # ── Creation ──────────────────────────────────────────────────────────

    async def create_match(
        self,
        user_a_id: Any,
        user_b_id: Any,
        result: ScoreResult,
        db_session: AsyncSession,
    ) -> Match:
        """Persist a ``pending`` match for *user_a_id*.

        Raises
        ------
        ValidationError
            Zero score, self-pair, or the pair is already matched.
        """
        a, b = as_uuid(user_a_id), as_uuid(user_b_id)
        log = logger.bind(user_a_id=str(a), user_b_id=str(b))

        if a == b:
            raise ValidationError("Cannot match a user with themselves")
        if result.score <= 0:
            raise ValidationError(
                "Refusing to persist a zero-score match",
                details={"score": result.score},
            )

        existing = await db_session.execute(
            select(Match.id).where(
                or_(
                    (Match.user_a_id == a) & (Match.user_b_id == b),
                    (Match.user_a_id == b) & (Match.user_b_id == a),
                )
            )
        )
        if existing.first() is not None:
            raise ValidationError(
                "These users are already matched",
                details={"user_a_id": str(a), "user_b_id": str(b)},
            )

        match = Match(
            user_a_id=a,
            user_b_id=b,
            match_type=result.match_type.value,
            similarity_score=round(result.score, 6),
            evidence=result.evidence_payload(),
            explanation=result.explanation,
            status=MatchStatus.PENDING.value,
            version=1,
        )
        db_session.add(match)
        await db_session.flush()
        await db_session.refresh(match)

        log.info(
            "match_created",
            match_id=str(match.id),
            score=round(result.score, 4),
            match_type=result.match_type.value,
        )
        return match

    # ── Reads ─────────────────────────────────────────────────────────────

    async def get_match(self, match_id: Any, db_session: AsyncSession) -> Match:
        match = await db_session.get(Match, as_uuid(match_id))
        if match is None:
            raise NotFoundError(f"Match {match_id} not found")
        return match

    async def get_match_for_user(
        self, match_id: Any, user_id: Any, db_session: AsyncSession
    ) -> Match:
        """Load a match, hiding it from users who are not part of it."""
        match = await self.get_match(match_id, db_session)
        if not match.involves(as_uuid(user_id)):
            raise NotFoundError(f"Match {match_id} not found for user {user_id}")
        return match

    # ── Transitions ───────────────────────────────────────────────────────

    async def transition(
        self,
        match_id: Any,
        user_id: Any,
        action: MatchAction | UserMatchAction | str,
        db_session: AsyncSession,
    ) -> Match:
        """Apply a user-initiated *action* to a match they belong to.

        Parameters
        ----------
        match_id:
            Match to update.
        user_id:
            Acting user; must be ``user_a`` or ``user_b`` of the match.
        action:
            One of ``accept``, ``decline``, ``save``.  Completion comes from
            feedback and expiry from the scheduler; both are rejected here.
        db_session:
            Active SQLAlchemy async session.

        Returns
        -------
        Match
            The match in its new (or unchanged, if idempotent) state.
        """
        parsed = _parse_user_action(action)
        match = await self.get_match_for_user(match_id, user_id, db_session)
        return await self._apply(match, parsed, db_session, actor_id=as_uuid(user_id))

    async def complete_from_feedback(self, match_id: Any, db_session: AsyncSession) -> Match:
        """Complete a match because feedback arrived; allowed from ``pending``."""
        match = await self.get_match(match_id, db_session)
        return await self._apply(match, MatchAction.COMPLETE, db_session, via_feedback=True)

    async def expire(self, match_id: Any, db_session: AsyncSession) -> Match:
        match = await self.get_match(match_id, db_session)
        return await self._apply(match, MatchAction.EXPIRE, db_session)

    async def _apply(
        self,
        match: Match,
        action: MatchAction,
        db_session: AsyncSession,
        *,
        actor_id: uuid.UUID | None = None,
        via_feedback: bool = False,
    ) -> Match:
        target = ACTION_TARGETS[action]
        log = logger.bind(match_id=str(match.id), action=action.value)

        for attempt in range(2):
            current = MatchStatus(match.status)
            if current == target:
                log.info("match_transition_noop", status=current.value)
                return match

            if action not in allowed_actions(current, via_feedback=via_feedback):
                log.warning("match_transition_rejected", status=current.value)
                raise InvalidTransition(
                    f"Cannot {action.value} a match that is {current.value}",
                    details={"status": current.value, "action": action.value},
                )

            stmt = (
                update(Match)
                .where(
                    Match.id == match.id,
                    Match.status == current.value,
                    Match.version == match.version,
                )
                .values(
                    status=target.value,
                    version=Match.version + 1,
                    status_changed_at=datetime.now(timezone.utc),
                )
                .execution_options(synchronize_session=False)
            )
            result = await db_session.execute(stmt)
            await db_session.refresh(match)

            if result.rowcount == 1:
                log.info(
                    "match_transition_applied",
                    from_status=current.value,
                    to_status=target.value,
                    version=match.version,
                )
                if target == MatchStatus.ACCEPTED and actor_id is not None:
                    await self._record_interaction(
                        match, actor_id, INTERACTION_MATCH_ACCEPTED, db_session
                    )
                return match

            log.warning("match_transition_conflict", attempt=attempt + 1)

        raise InvalidTransition(
            "Match was modified concurrently",
            details={"status": match.status, "action": action.value},
        )

    async def _record_interaction(
        self,
        match: Match,
        user_id: uuid.UUID,
        interaction_type: str,
        db_session: AsyncSession,
    ) -> None:
        existing = await db_session.execute(
            select(Interaction.id).where(
                Interaction.match_id == match.id,
                Interaction.user_id == user_id,
                Interaction.interaction_type == interaction_type,
            )
        )
        if existing.first() is not None:
            return
        db_session.add(
            Interaction(match_id=match.id, user_id=user_id, interaction_type=interaction_type)
        )
        await db_session.flush()
        logger.info(
            "interaction_recorded",
            match_id=str(match.id),
            user_id=str(user_id),
            interaction_type=interaction_type,
        )
