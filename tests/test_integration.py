"""
Integration tests — drive the FastAPI app over ASGI.

The database is the shared in-memory SQLite engine from conftest; provider
traffic goes to an ``httpx.MockTransport``.  The lifespan is not run, so the
fixtures place the provider client and rate limiter on ``app.state``
themselves.
"""
import uuid
from unittest.mock import patch

import httpx
import pytest
from sqlalchemy import func, select

from ecosystem.database import get_db
from ecosystem.main import app
from ecosystem.models import Embedding, Profile, User
from ecosystem.services.embedding_cache import EmbeddingCache
from ecosystem.services.provider_client import EmbeddingProviderClient
from ecosystem.services.rate_limiter import RateLimiter

from tests.conftest import unit_vector


class ProviderStub:
    """Answers every embedding request with ``status``."""

    def __init__(self):
        self.status = 200
        self.calls = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls += 1
        if self.status != 200:
            return httpx.Response(self.status, text="unavailable")
        return httpx.Response(200, json=[unit_vector(1, self.calls % 5)])


@pytest.fixture
def provider():
    return ProviderStub()


@pytest.fixture
async def api(session_factory, provider):
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    provider_http = httpx.AsyncClient(transport=httpx.MockTransport(provider))
    app.dependency_overrides[get_db] = override_get_db
    app.state.provider_client = EmbeddingProviderClient(provider_http, cache=EmbeddingCache())
    app.state.user_rate_limiter = RateLimiter(max_requests=1000)

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
    await provider_http.aclose()


@pytest.fixture
def seed(session_factory):
    """``await seed(onboarded=True, strengths=[...])`` -> committed user id."""

    async def _seed(onboarded: bool = True, **profile_fields) -> uuid.UUID:
        async with session_factory() as session:
            user = User(
                email=f"{uuid.uuid4().hex[:10]}@example.com",
                display_name="Seeded",
                onboarding_completed=onboarded,
                is_active=True,
            )
            session.add(user)
            await session.flush()
            if profile_fields:
                session.add(
                    Profile(
                        user_id=user.id,
                        strengths=profile_fields.get("strengths", []),
                        needs=profile_fields.get("needs", []),
                        goal_categories=profile_fields.get("goal_categories", []),
                        shared_values=profile_fields.get("shared_values", []),
                        connection_preferences=[],
                        industry=profile_fields.get("industry"),
                    )
                )
            await session.commit()
            return user.id

    return _seed


def as_user(user_id) -> dict:
    return {"X-User-Id": str(user_id)}


ONBOARDING_ANSWERS = [
    {"stepId": "welcome", "value": "ready"},
    {"stepId": "current_work", "value": "Building a React dashboard for a climate startup"},
    {"stepId": "strengths_text", "value": "JavaScript, React"},
    {"stepId": "needs_text", "value": "Python, backend architecture"},
    {"stepId": "progress_type", "value": ["launch a product"]},
    {"stepId": "shared_values", "value": ["craftsmanship", "curiosity"]},
]


# ──────────────────────────────────────────────────────────────────────────────
# Health and identity
# ──────────────────────────────────────────────────────────────────────────────

class TestHealthEndpoints:

    @pytest.mark.asyncio
    async def test_liveness(self, api):
        response = await api.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    @pytest.mark.asyncio
    async def test_admin_quick_validation(self, api, session_factory):
        with patch("ecosystem.api.admin.health.get_session_factory", return_value=session_factory):
            response = await api.get("/api/v1/admin/ai-health", params={"quick": "true"})

        assert response.status_code == 200
        body = response.json()
        assert body["overall"] == "healthy"
        assert body["quick"] is True
        assert body["passed"] == body["total"] == 8


class TestIdentity:

    @pytest.mark.asyncio
    async def test_missing_header_is_401(self, api):
        response = await api.post("/api/v1/matches", json={"userId": str(uuid.uuid4())})

        assert response.status_code == 401
        assert response.json()["error"] == "authentication_required"

    @pytest.mark.asyncio
    async def test_acting_for_someone_else_is_403(self, api, seed):
        me, other = await seed(), await seed()

        response = await api.post("/api/v1/matches", json={"userId": str(other)}, headers=as_user(me))

        assert response.status_code == 403
        assert response.json()["error"] == "forbidden"

    @pytest.mark.asyncio
    async def test_quota_exhaustion_is_429(self, api, seed):
        me = await seed()
        app.state.user_rate_limiter = RateLimiter(max_requests=1, window_seconds=60)
        params = {"userId": str(me)}

        first = await api.get("/api/v1/matches", params=params, headers=as_user(me))
        second = await api.get("/api/v1/matches", params=params, headers=as_user(me))

        assert first.status_code == 200
        assert second.status_code == 429
        assert int(second.headers["Retry-After"]) >= 1


# ──────────────────────────────────────────────────────────────────────────────
# Match lifecycle over HTTP
# ──────────────────────────────────────────────────────────────────────────────

class TestMatchFlow:

    @pytest.mark.asyncio
    async def test_generate_accept_and_feedback(self, api, seed, js_react_profile, python_profile):
        frontend = await seed(**js_react_profile)
        backend = await seed(**python_profile)
        await seed(strengths=["Pottery"], needs=["Kilns"])

        created = await api.post(
            "/api/v1/matches", json={"userId": str(frontend), "limit": 5}, headers=as_user(frontend)
        )
        assert created.status_code == 201
        [match] = created.json()
        assert match["userBId"] == str(backend)
        assert match["status"] == "pending"
        assert 0 < match["similarityScore"] <= 1

        listed = await api.get(
            "/api/v1/matches", params={"userId": str(backend)}, headers=as_user(backend)
        )
        assert [m["id"] for m in listed.json()] == [match["id"]]

        accepted = await api.patch(
            f"/api/v1/matches/{match['id']}", json={"action": "accept"}, headers=as_user(backend)
        )
        assert accepted.status_code == 200
        assert accepted.json()["status"] == "accepted"
        assert accepted.json()["version"] == 2

        feedback = await api.post(
            "/api/v1/feedback",
            json={
                "matchId": match["id"],
                "userId": str(frontend),
                "feedback": {"rating": 3, "outcome": "good_chat", "text": "Helpful call"},
            },
            headers=as_user(frontend),
        )
        assert feedback.status_code == 201
        assert feedback.json()["outcome"] == "good_chat"

        completed = await api.get(
            "/api/v1/matches",
            params={"userId": str(frontend), "status": "completed"},
            headers=as_user(frontend),
        )
        assert len(completed.json()) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("action", ["complete", "expire"])
    async def test_system_actions_rejected_on_pending(
        self, api, seed, js_react_profile, python_profile, action
    ):
        frontend = await seed(**js_react_profile)
        await seed(**python_profile)
        [match] = (
            await api.post("/api/v1/matches", json={"userId": str(frontend)}, headers=as_user(frontend))
        ).json()

        response = await api.patch(
            f"/api/v1/matches/{match['id']}", json={"action": action}, headers=as_user(frontend)
        )

        assert response.status_code == 422
        listed = await api.get(
            "/api/v1/matches", params={"userId": str(frontend)}, headers=as_user(frontend)
        )
        assert listed.json()[0]["status"] == "pending"

    @pytest.mark.asyncio
    async def test_accepted_match_completes_only_through_feedback(
        self, api, seed, js_react_profile, python_profile
    ):
        frontend = await seed(**js_react_profile)
        await seed(**python_profile)
        [match] = (
            await api.post("/api/v1/matches", json={"userId": str(frontend)}, headers=as_user(frontend))
        ).json()
        await api.patch(
            f"/api/v1/matches/{match['id']}", json={"action": "accept"}, headers=as_user(frontend)
        )

        response = await api.patch(
            f"/api/v1/matches/{match['id']}", json={"action": "complete"}, headers=as_user(frontend)
        )

        assert response.status_code == 422
        listed = await api.get(
            "/api/v1/matches", params={"userId": str(frontend)}, headers=as_user(frontend)
        )
        assert listed.json()[0]["status"] == "accepted"

    @pytest.mark.asyncio
    async def test_out_of_range_rating_is_422(self, api, seed, js_react_profile, python_profile):
        frontend = await seed(**js_react_profile)
        await seed(**python_profile)
        [match] = (
            await api.post("/api/v1/matches", json={"userId": str(frontend)}, headers=as_user(frontend))
        ).json()

        response = await api.post(
            "/api/v1/feedback",
            json={
                "matchId": match["id"],
                "userId": str(frontend),
                "feedback": {"rating": 6, "outcome": "good_chat"},
            },
            headers=as_user(frontend),
        )

        assert response.status_code == 422
        assert response.json()["error"] == "validation_error"

    @pytest.mark.asyncio
    async def test_onboarding_required_before_matching(self, api, seed):
        newcomer = await seed(onboarded=False)

        response = await api.post(
            "/api/v1/matches", json={"userId": str(newcomer)}, headers=as_user(newcomer)
        )

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_admin_pipeline(self, api, seed, js_react_profile, python_profile):
        await seed(**js_react_profile)
        await seed(**python_profile)

        response = await api.post("/api/v1/admin/run-matching", params={"limit": 2})

        assert response.status_code == 200
        body = response.json()
        assert body["users_processed"] == 2
        assert body["matches_generated"] == 1


# ──────────────────────────────────────────────────────────────────────────────
# Onboarding over HTTP
# ──────────────────────────────────────────────────────────────────────────────

class TestOnboardingFlow:

    @pytest.mark.asyncio
    async def test_next_step_for_fresh_session(self, api, seed):
        me = await seed(onboarded=False)

        response = await api.post(
            "/api/v1/onboarding/next-step", json={"userId": str(me), "responses": []}, headers=as_user(me)
        )

        assert response.status_code == 200
        body = response.json()
        assert body["step"]["id"] == "welcome"
        assert body["flowType"] == "adaptive"
        assert body["completed"] is False

    @pytest.mark.asyncio
    async def test_save_progress_then_complete(self, api, seed, session_factory, provider):
        me = await seed(onboarded=False)

        saved = await api.post(
            "/api/v1/onboarding/save-progress",
            json={"userId": str(me), "responses": ONBOARDING_ANSWERS[:3]},
            headers=as_user(me),
        )
        assert saved.status_code == 200
        assert saved.json()["completed"] is False

        completed = await api.post(
            "/api/v1/onboarding/complete",
            json={"userId": str(me), "responses": ONBOARDING_ANSWERS},
            headers=as_user(me),
        )
        assert completed.status_code == 200
        body = completed.json()
        assert body["onboardingCompleted"] is True
        assert sorted(body["refreshedFields"]) == ["goals", "needs", "strengths", "values"]

        async with session_factory() as session:
            user = await session.get(User, me)
            count = await session.execute(
                select(func.count(Embedding.id)).where(Embedding.user_id == me)
            )
            assert user.onboarding_completed is True
            assert count.scalar_one() == 4

        # Unchanged profile: nothing is re-sent to the provider.
        calls_before = provider.calls
        refreshed = await api.post(
            "/api/v1/profile/embeddings", json={"userId": str(me)}, headers=as_user(me)
        )
        assert refreshed.status_code == 200
        assert refreshed.json()["refreshed"] == []
        assert provider.calls == calls_before

    @pytest.mark.asyncio
    async def test_profile_edit_after_onboarding_reembeds(self, api, seed, session_factory, provider):
        me = await seed(onboarded=False)
        await api.post(
            "/api/v1/onboarding/complete",
            json={"userId": str(me), "responses": ONBOARDING_ANSWERS},
            headers=as_user(me),
        )
        calls_before = provider.calls

        saved = await api.post(
            "/api/v1/onboarding/save-progress",
            json={"userId": str(me), "responses": [{"stepId": "strengths_text", "value": "Go, Rust"}]},
            headers=as_user(me),
        )

        assert saved.status_code == 200
        assert saved.json()["refreshedFields"] == ["strengths"]
        assert provider.calls == calls_before + 1
        async with session_factory() as session:
            row = await session.execute(
                select(Embedding).where(Embedding.user_id == me, Embedding.field_type == "strengths")
            )
            assert row.scalar_one().text_content == "Go, Rust"

    @pytest.mark.asyncio
    async def test_provider_outage_leaves_user_untouched(self, api, seed, session_factory, provider):
        me = await seed(onboarded=False)
        provider.status = 503

        response = await api.post(
            "/api/v1/onboarding/complete",
            json={"userId": str(me), "responses": ONBOARDING_ANSWERS},
            headers=as_user(me),
        )

        assert response.status_code == 503
        assert response.json()["error"] == "provider_unavailable"
        async with session_factory() as session:
            user = await session.get(User, me)
            profile = await session.execute(select(Profile).where(Profile.user_id == me))
            assert user.onboarding_completed is False
            assert profile.scalar_one_or_none() is None

    @pytest.mark.asyncio
    async def test_incomplete_answers_rejected(self, api, seed):
        me = await seed(onboarded=False)

        response = await api.post(
            "/api/v1/onboarding/complete",
            json={"userId": str(me), "responses": ONBOARDING_ANSWERS[:4]},
            headers=as_user(me),
        )

        assert response.status_code == 422
        assert response.json()["context"]["missing_fields"] == ["goal_categories", "shared_values"]

    @pytest.mark.asyncio
    async def test_long_recording_falls_back_to_text(self, api, seed, provider):
        me = await seed(onboarded=False)

        response = await api.post(
            "/api/v1/onboarding/transcribe-audio",
            files={"audio": ("answer.webm", b"\x01" * 4096, "audio/webm")},
            data={"duration": "25"},
            headers=as_user(me),
        )

        assert response.status_code == 422
        body = response.json()
        assert body["transcription"] is None
        assert body["fallback"] == "text"
        assert body["error"] == "validation_error"
        assert provider.calls == 0
