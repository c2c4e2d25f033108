"""Unit tests for SystemHealthValidator."""
import asyncio

import pytest

from ecosystem.errors import ProviderUnavailable
from ecosystem.models.enums import HealthStatus
from ecosystem.schemas.health import ComponentResult
from ecosystem.services.health_service import SystemHealthValidator

from tests.conftest import DIMENSION, unit_vector


class FakeProvider:
    dimension = DIMENSION

    def __init__(self, error: Exception | None = None, delay: float = 0.0, key: bool = True):
        self.error = error
        self.delay = delay
        self.key = key

    async def embed(self, text, field_type, *, user_id=None, timeout=None):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return unit_vector(1, 2)

    def configuration_status(self):
        return {"embedding_key_configured": self.key, "embedding_dimension": DIMENSION}


def component(name: str, passed: bool) -> ComponentResult:
    return ComponentResult(name=name, passed=passed, message="", duration_ms=0.0)


class TestVerdict:

    @pytest.mark.parametrize(
        "passed, total, expected",
        [
            (9, 9, HealthStatus.HEALTHY),
            (5, 9, HealthStatus.DEGRADED),
            (4, 8, HealthStatus.CRITICAL),
            (0, 9, HealthStatus.CRITICAL),
        ],
    )
    def test_overall_status(self, passed, total, expected):
        assert SystemHealthValidator.overall_status(passed, total) == expected

    def test_all_clear_recommendation(self):
        recs = SystemHealthValidator.recommendations([component("datastore", True)])

        assert recs == ["All matching engine components are functioning correctly."]

    def test_recommendation_per_failure(self):
        recs = SystemHealthValidator.recommendations(
            [component("datastore", False), component("scorer_fixture", True)]
        )

        assert recs == ["Verify database connectivity and DATABASE_URL."]

    def test_many_failures_adds_escalation(self):
        recs = SystemHealthValidator.recommendations(
            [component("datastore", False), component("retry_policy", False), component("scorer_fixture", True)]
        )

        assert len(recs) == 3
        assert recs[-1].startswith("Multiple components failed")


class TestRunFullValidation:

    @pytest.mark.asyncio
    async def test_everything_healthy(self, session_factory):
        validator = SystemHealthValidator(provider_client=FakeProvider(), session_factory=session_factory)

        report = await validator.run_full_validation()

        assert report.overall == HealthStatus.HEALTHY
        assert report.passed == report.total == 9
        assert {c.name for c in report.components} >= {"provider_embedding", "scorer_fixture", "datastore"}

    @pytest.mark.asyncio
    async def test_quick_mode_skips_live_call(self, session_factory):
        provider = FakeProvider(error=ProviderUnavailable("should not be called"))
        validator = SystemHealthValidator(provider_client=provider, session_factory=session_factory)

        report = await validator.run_full_validation(quick=True)

        assert report.quick is True
        assert report.total == 8
        assert report.overall == HealthStatus.HEALTHY

    @pytest.mark.asyncio
    async def test_provider_outage_degrades(self, session_factory):
        validator = SystemHealthValidator(
            provider_client=FakeProvider(error=ProviderUnavailable("provider down")),
            session_factory=session_factory,
        )

        report = await validator.run_full_validation()

        assert report.overall == HealthStatus.DEGRADED
        failed = [c for c in report.components if not c.passed]
        assert [c.name for c in failed] == ["provider_embedding"]
        assert failed[0].details == {"error_type": "ProviderUnavailable"}
        assert any("embedding provider" in r for r in report.recommendations)

    @pytest.mark.asyncio
    async def test_hung_check_times_out(self, session_factory):
        validator = SystemHealthValidator(
            provider_client=FakeProvider(delay=1.0), session_factory=session_factory
        )
        validator.timeout_seconds = 0.05

        report = await validator.run_full_validation()

        embedding = next(c for c in report.components if c.name == "provider_embedding")
        assert embedding.passed is False
        assert embedding.message.startswith("Timed out")

    @pytest.mark.asyncio
    async def test_missing_dependencies_fail_their_checks(self):
        validator = SystemHealthValidator(provider_client=FakeProvider(key=False))

        report = await validator.run_full_validation(quick=True)

        failed = {c.name for c in report.components if not c.passed}
        assert failed == {"provider_config", "datastore"}
        assert report.overall == HealthStatus.DEGRADED

    @pytest.mark.asyncio
    async def test_fixture_checks_pass_in_isolation(self):
        validator = SystemHealthValidator()

        for check in (
            validator.check_scorer,
            validator.check_lifecycle_table,
            validator.check_feedback_validation,
            validator.check_onboarding_determinism,
            validator.check_engagement_analyzer,
            validator.check_retry_policy,
        ):
            message, _ = await check()
            assert message
