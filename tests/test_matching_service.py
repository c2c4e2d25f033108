"""Unit tests for MatchingService (candidate pool, scoring fan-out, pipeline)."""
import uuid
from unittest.mock import patch

import pytest

from ecosystem.errors import NotFoundError, ProviderUnavailable, ValidationError
from ecosystem.models.enums import MatchStatus
from ecosystem.services.embedding_store import EmbeddingStore
from ecosystem.services.matching_service import MatchingService
from ecosystem.services.scoring_service import ScoringInput

from tests.conftest import unit_vector

POTTERY = {"strengths": ["Pottery"], "needs": ["Kilns"], "industry": "crafts"}


@pytest.fixture
def service():
    return MatchingService()


@pytest.fixture
async def community(make_user, js_react_profile, python_profile):
    """Frontend dev, backend dev and a potter with nothing in common."""
    return {
        "frontend": await make_user(**js_react_profile),
        "backend": await make_user(**python_profile),
        "potter": await make_user(**POTTERY),
    }


class TestGenerateMatches:

    @pytest.mark.asyncio
    async def test_complementary_pair_matched_disjoint_skipped(self, service, community, db_session):
        matches = await service.generate_matches(community["frontend"].id, db_session)

        assert len(matches) == 1
        match = matches[0]
        assert match.user_a_id == community["frontend"].id
        assert match.user_b_id == community["backend"].id
        assert match.status == MatchStatus.PENDING.value
        assert match.similarity_score > 0

    @pytest.mark.asyncio
    async def test_disjoint_users_produce_no_match(self, service, make_user, db_session):
        potter = await make_user(**POTTERY)
        await make_user(strengths=["Sailing"], needs=["Boats"], industry="marine")

        assert await service.generate_matches(potter.id, db_session) == []

    @pytest.mark.asyncio
    async def test_already_paired_users_excluded_both_ways(self, service, community, db_session):
        await service.generate_matches(community["frontend"].id, db_session)

        assert await service.generate_matches(community["frontend"].id, db_session) == []
        assert await service.generate_matches(community["backend"].id, db_session) == []

    @pytest.mark.asyncio
    async def test_inactive_and_unfinished_candidates_excluded(
        self, service, make_user, js_react_profile, python_profile, db_session
    ):
        seeker = await make_user(**js_react_profile)
        await make_user(is_active=False, **python_profile)
        await make_user(onboarded=False, **python_profile)

        assert await service.generate_matches(seeker.id, db_session) == []

    @pytest.mark.asyncio
    async def test_limit_keeps_best_first(
        self, service, make_user, js_react_profile, python_profile, db_session
    ):
        seeker = await make_user(**js_react_profile)
        weak = await make_user(strengths=["Python"], industry="finance")
        strong = await make_user(**python_profile)

        matches = await service.generate_matches(seeker.id, db_session, limit=1)

        assert [m.user_b_id for m in matches] == [strong.id]

        rest = await service.generate_matches(seeker.id, db_session, limit=5)
        assert [m.user_b_id for m in rest] == [weak.id]

    @pytest.mark.asyncio
    async def test_embeddings_feed_the_score(self, service, community, db_session):
        store = EmbeddingStore()
        frontend, backend = community["frontend"], community["backend"]
        await store.upsert(frontend.id, "needs", "Python", unit_vector(1), db_session)
        await store.upsert(backend.id, "strengths", "Python", unit_vector(1), db_session)

        [match] = await service.generate_matches(frontend.id, db_session)

        assert match.evidence["components"]["needs_to_strengths"] == pytest.approx(1.0)
        assert match.evidence["weights_used"] == {"needs_to_strengths": 1.0}

    @pytest.mark.asyncio
    async def test_unknown_user(self, service, db_session):
        with pytest.raises(NotFoundError):
            await service.generate_matches(uuid.uuid4(), db_session)

    @pytest.mark.asyncio
    async def test_user_must_finish_onboarding(self, service, make_user, db_session):
        user = await make_user(onboarded=False)

        with pytest.raises(ValidationError):
            await service.generate_matches(user.id, db_session)

    @pytest.mark.asyncio
    async def test_limit_must_be_positive(self, service, community, db_session):
        with pytest.raises(ValidationError):
            await service.generate_matches(community["frontend"].id, db_session, limit=0)


class TestScoreCandidates:

    @pytest.mark.asyncio
    async def test_preserves_candidate_order(self, service, js_react_profile):
        subject = ScoringInput(user_id="me", **js_react_profile)
        candidates = [ScoringInput(user_id=f"c{i}", strengths=["React"]) for i in range(20)]

        scored = await service.score_candidates(subject, candidates)

        assert [cid for cid, _ in scored] == [f"c{i}" for i in range(20)]


class TestListMatches:

    @pytest.mark.asyncio
    async def test_both_sides_see_the_match(self, service, community, db_session):
        await service.generate_matches(community["frontend"].id, db_session)

        assert len(await service.list_matches(community["frontend"].id, db_session)) == 1
        assert len(await service.list_matches(community["backend"].id, db_session)) == 1
        assert await service.list_matches(community["potter"].id, db_session) == []

    @pytest.mark.asyncio
    async def test_status_filter(self, service, community, db_session):
        await service.generate_matches(community["frontend"].id, db_session)

        pending = await service.list_matches(community["frontend"].id, db_session, status="pending")
        accepted = await service.list_matches(community["frontend"].id, db_session, status="accepted")

        assert len(pending) == 1
        assert accepted == []

    @pytest.mark.asyncio
    async def test_unknown_status(self, service, community, db_session):
        with pytest.raises(ValidationError):
            await service.list_matches(community["frontend"].id, db_session, status="archived")


class TestPipeline:

    @pytest.mark.asyncio
    async def test_runs_for_every_onboarded_user(self, service, community, make_user, db_session):
        await make_user(onboarded=False)

        results = await service.run_matching_pipeline(db_session)

        assert len(results) == 3
        assert all(r["success"] for r in results)
        assert sum(r["matches_generated"] for r in results) == 1

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_the_run(self, service, community, db_session):
        broken = community["potter"].id
        original = service.generate_matches

        async def flaky(user_id, db, limit=None):
            if user_id == broken:
                raise ProviderUnavailable("embedding provider down")
            return await original(user_id, db, limit=limit)

        with patch.object(service, "generate_matches", side_effect=flaky):
            results = await service.run_matching_pipeline(db_session)

        by_user = {r["user_id"]: r for r in results}
        assert by_user[str(broken)]["success"] is False
        assert by_user[str(broken)]["error"] == "embedding provider down"
        assert sum(r["success"] for r in results) == 2
