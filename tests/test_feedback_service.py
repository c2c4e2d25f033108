"""Unit tests for FeedbackCollector."""
from unittest.mock import AsyncMock, patch

import pytest

from ecosystem.errors import NotFoundError, ValidationError
from ecosystem.models.enums import FeedbackOutcome, MatchStatus, MatchType
from ecosystem.services.feedback_service import FeedbackCollector
from ecosystem.services.lifecycle_service import MatchLifecycleManager
from ecosystem.services.scoring_service import MatchScorer, ScoringInput


@pytest.fixture
def collector():
    return FeedbackCollector()


@pytest.fixture
async def matched(make_user, db_session, js_react_profile, python_profile):
    """Two users and a pending match between them."""
    a, b = await make_user(), await make_user()
    result = MatchScorer().score(
        ScoringInput(user_id=a.id, **js_react_profile),
        ScoringInput(user_id=b.id, **python_profile),
    )
    match = await MatchLifecycleManager().create_match(a.id, b.id, result, db_session)
    return a, b, match


class TestValidate:

    @pytest.mark.parametrize("rating", [0, 6, -1])
    def test_rating_out_of_range(self, rating):
        with pytest.raises(ValidationError):
            FeedbackCollector.validate(rating, "good_chat")

    @pytest.mark.parametrize("rating", ["3", 3.0, True, None])
    def test_rating_must_be_integer(self, rating):
        with pytest.raises(ValidationError):
            FeedbackCollector.validate(rating, "good_chat")

    def test_unknown_outcome(self):
        with pytest.raises(ValidationError):
            FeedbackCollector.validate(4, "meh")

    def test_valid_pair(self):
        assert FeedbackCollector.validate(1, "no_response") == FeedbackOutcome.NO_RESPONSE
        assert FeedbackCollector.validate(5, "collaboration") == FeedbackOutcome.COLLABORATION


class TestSubmit:

    @pytest.mark.asyncio
    async def test_feedback_completes_pending_match(self, collector, matched, db_session):
        a, _, match = matched

        feedback = await collector.submit(match.id, a.id, 3, "good_chat", db_session, text="  Nice  ")

        assert feedback.rating == 3
        assert feedback.outcome == FeedbackOutcome.GOOD_CHAT.value
        assert feedback.text == "Nice"
        assert feedback.created_at is not None
        refreshed = await collector.lifecycle.get_match(match.id, db_session)
        assert refreshed.status == MatchStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_duplicate_rejected(self, collector, matched, db_session):
        a, _, match = matched
        await collector.submit(match.id, a.id, 4, "insight", db_session)

        with pytest.raises(ValidationError):
            await collector.submit(match.id, a.id, 5, "collaboration", db_session)

    @pytest.mark.asyncio
    async def test_concurrent_duplicate_maps_to_validation_error(self, collector, matched, db_session):
        a, _, match = matched
        await collector.submit(match.id, a.id, 4, "insight", db_session)

        # Both requests passed the existence check before either inserted.
        with patch.object(FeedbackCollector, "_already_submitted", AsyncMock(return_value=False)):
            with pytest.raises(ValidationError) as exc_info:
                await collector.submit(match.id, a.id, 5, "collaboration", db_session)

        assert exc_info.value.details == {"match_id": str(match.id)}

    @pytest.mark.asyncio
    async def test_other_participant_may_also_respond(self, collector, matched, db_session):
        a, b, match = matched
        await collector.submit(match.id, a.id, 4, "insight", db_session)

        feedback = await collector.submit(match.id, b.id, 2, "didnt_click", db_session)

        assert feedback.user_id == b.id
        refreshed = await collector.lifecycle.get_match(match.id, db_session)
        assert refreshed.status == MatchStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_declined_match_stays_declined(self, collector, matched, db_session):
        a, _, match = matched
        await collector.lifecycle.transition(match.id, a.id, "decline", db_session)

        await collector.submit(match.id, a.id, 1, "no_response", db_session)

        refreshed = await collector.lifecycle.get_match(match.id, db_session)
        assert refreshed.status == MatchStatus.DECLINED.value

    @pytest.mark.asyncio
    async def test_outsider_rejected(self, collector, matched, make_user, db_session):
        _, _, match = matched
        outsider = await make_user()

        with pytest.raises(NotFoundError):
            await collector.submit(match.id, outsider.id, 3, "good_chat", db_session)

    @pytest.mark.asyncio
    async def test_invalid_rating_writes_nothing(self, collector, matched, db_session):
        a, _, match = matched

        with pytest.raises(ValidationError):
            await collector.submit(match.id, a.id, 6, "good_chat", db_session)

        refreshed = await collector.lifecycle.get_match(match.id, db_session)
        assert refreshed.status == MatchStatus.PENDING.value


class TestWeightingSignals:

    @pytest.mark.asyncio
    async def test_aggregates_per_match_type(self, collector, matched, db_session):
        a, b, match = matched
        await collector.submit(match.id, a.id, 5, "collaboration", db_session)
        await collector.submit(match.id, b.id, 2, "didnt_click", db_session)

        signals = await collector.weighting_signals(db_session)

        assert set(signals) == {match.match_type}
        entry = signals[MatchType(match.match_type).value]
        assert entry["count"] == 2
        assert entry["average_rating"] == pytest.approx(3.5)
        assert entry["positive_rate"] == pytest.approx(0.5)

    @pytest.mark.asyncio
    async def test_empty(self, collector, db_session):
        assert await collector.weighting_signals(db_session) == {}
