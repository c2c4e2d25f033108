"""
Ecosystem — System Health Validator

Exercises every engine component against built-in fixtures and reports an
overall verdict:

  * provider embedding   — one live embedding call (skipped in quick mode)
  * provider config      — credentials and endpoints present
  * scorer fixture       — complementary pair scores > 0, disjoint pair 0
  * lifecycle table      — pending only completes through feedback
  * feedback validation  — ratings outside 1..5 are rejected
  * onboarding           — next-step planning is deterministic
  * engagement analyzer  — score stays within [0, 1]
  * retry policy         — 429/503 retry, other statuses do not
  * datastore            — ``SELECT 1``

Checks run concurrently; each is isolated and bounded by
``HEALTH_CHECK_TIMEOUT_SECONDS`` so a hung provider cannot stall the report.
All pass -> healthy, more than half pass -> degraded, otherwise critical.
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable

import structlog
from sqlalchemy import text

from ecosystem.config import get_settings
from ecosystem.errors import ValidationError
from ecosystem.models.enums import FieldType, HealthStatus, MatchAction, MatchStatus
from ecosystem.schemas.health import ComponentResult, HealthReport
from ecosystem.schemas.onboarding import OnboardingSession, StepResponse
from ecosystem.services.engagement_service import EngagementAnalyzer
from ecosystem.services.feedback_service import FeedbackCollector
from ecosystem.services.lifecycle_service import allowed_actions
from ecosystem.services.onboarding_service import OnboardingFlowEngine
from ecosystem.services.retry_policy import RetryableProviderError, RetryPolicy, is_retryable
from ecosystem.services.scoring_service import MatchScorer, ScoringInput

logger = structlog.get_logger("ecosystem.health_service")

_SAMPLE_TEXT = "Health check sample: JavaScript and React mentoring"

# Check name -> recommendation emitted when it fails.
_RECOMMENDATIONS: dict[str, str] = {
    "provider_embedding": "Check the embedding provider API key, model availability and rate limits.",
    "provider_config": "Set HUGGINGFACE_API_KEY (and OPENAI_API_KEY for voice answers).",
    "scorer_fixture": "Review SCORING_WEIGHTS and STRUCTURED_OVERLAP_WEIGHT; the scorer failed its fixture.",
    "lifecycle_table": "The match transition table is inconsistent; review lifecycle_service.",
    "feedback_validation": "Feedback validation accepts out-of-range input; review feedback_service.",
    "onboarding_determinism": "Onboarding planning is not deterministic; review onboarding_service.",
    "engagement_analyzer": "Engagement analysis produced an out-of-range score.",
    "retry_policy": "Review PROVIDER_MAX_RETRIES and the retryable status codes.",
    "datastore": "Verify database connectivity and DATABASE_URL.",
}
_ALL_CLEAR = "All matching engine components are functioning correctly."
_MANY_FAILURES = "Multiple components failed; check recent deploys and provider status before retrying."


class CheckFailed(Exception):
    """Raised by a check whose fixture produced the wrong answer."""

    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(message)
        self.details = details


class SystemHealthValidator:
    """Runs the component checks and aggregates them into a ``HealthReport``.

    Parameters
    ----------
    provider_client:
        ``EmbeddingProviderClient`` used for the live embedding and config
        checks.  Without one both provider checks fail.
    session_factory:
        Callable returning an ``AsyncSession`` context manager for the
        datastore check.
    """

    def __init__(
        self,
        provider_client: Any | None = None,
        session_factory: Callable[[], Any] | None = None,
        scorer: MatchScorer | None = None,
        flow_engine: OnboardingFlowEngine | None = None,
        analyzer: EngagementAnalyzer | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        settings = get_settings()
        self.provider_client = provider_client
        self.session_factory = session_factory
        self.scorer = scorer or MatchScorer()
        self.flow_engine = flow_engine or OnboardingFlowEngine()
        self.analyzer = analyzer or EngagementAnalyzer()
        self.retry_policy = retry_policy or RetryPolicy.from_settings(settings)
        self.timeout_seconds: float = settings.HEALTH_CHECK_TIMEOUT_SECONDS

    # ── Public API ────────────────────────────────────────────────────────

    async def run_full_validation(self, quick: bool = False) -> HealthReport:
        """Run every check concurrently and aggregate the verdict."""
        checks: list[tuple[str, Callable[[], Awaitable[tuple[str, dict | None]]]]] = []
        if not quick:
            checks.append(("provider_embedding", self.check_provider_embedding))
        checks.extend(
            [
                ("provider_config", self.check_provider_config),
                ("scorer_fixture", self.check_scorer),
                ("lifecycle_table", self.check_lifecycle_table),
                ("feedback_validation", self.check_feedback_validation),
                ("onboarding_determinism", self.check_onboarding_determinism),
                ("engagement_analyzer", self.check_engagement_analyzer),
                ("retry_policy", self.check_retry_policy),
                ("datastore", self.check_datastore),
            ]
        )

        logger.info("health_validation_start", quick=quick, checks=len(checks))
        results = list(await asyncio.gather(*(self._run(name, fn) for name, fn in checks)))

        passed = sum(1 for r in results if r.passed)
        total = len(results)
        overall = self.overall_status(passed, total)

        logger.info(
            "health_validation_complete",
            overall=overall.value,
            passed=passed,
            total=total,
        )
        return HealthReport(
            overall=overall,
            quick=quick,
            passed=passed,
            total=total,
            components=results,
            recommendations=self.recommendations(results),
            timestamp=datetime.now(timezone.utc),
        )

    @staticmethod
    def overall_status(passed: int, total: int) -> HealthStatus:
        if total and passed == total:
            return HealthStatus.HEALTHY
        if passed > total / 2:
            return HealthStatus.DEGRADED
        return HealthStatus.CRITICAL

    @staticmethod
    def recommendations(results: list[ComponentResult]) -> list[str]:
        failed = [r for r in results if not r.passed]
        if not failed:
            return [_ALL_CLEAR]
        recs = [_RECOMMENDATIONS[r.name] for r in failed if r.name in _RECOMMENDATIONS]
        if len(failed) > len(results) / 2:
            recs.append(_MANY_FAILURES)
        return recs

    # ── Checks ────────────────────────────────────────────────────────────

    async def check_provider_embedding(self) -> tuple[str, dict | None]:
        client = self._require_client()
        vector = await client.embed(_SAMPLE_TEXT, FieldType.STRENGTHS.value)
        if len(vector) != client.dimension:
            raise CheckFailed(
                "Embedding has the wrong dimension",
                {"expected": client.dimension, "actual": len(vector)},
            )
        return "Embedding provider returned a full vector", {"dimension": len(vector)}

    async def check_provider_config(self) -> tuple[str, dict | None]:
        status = self._require_client().configuration_status()
        if not status["embedding_key_configured"]:
            raise CheckFailed("Embedding provider key is not configured", status)
        return "Provider credentials configured", status

    async def check_scorer(self) -> tuple[str, dict | None]:
        frontend = ScoringInput(
            user_id="fixture-a",
            strengths=["JavaScript", "React"],
            needs=["Python"],
            goal_categories=["launch a product"],
        )
        backend = ScoringInput(
            user_id="fixture-b",
            strengths=["Python", "Django"],
            needs=["React"],
            goal_categories=["launch a product"],
        )
        unrelated = ScoringInput(user_id="fixture-c", strengths=["Pottery"], needs=["Sailing"])

        paired = self.scorer.score(frontend, backend)
        disjoint = self.scorer.score(frontend, unrelated)
        details = {"paired": round(paired.score, 4), "disjoint": round(disjoint.score, 4)}

        if not 0.0 < paired.score <= 1.0 or not paired.evidence["complementary_matches"]:
            raise CheckFailed("Complementary fixture did not score as a match", details)
        if disjoint.score != 0.0:
            raise CheckFailed("Disjoint fixture scored above zero", details)
        return "Scorer fixture behaves as expected", details

    async def check_lifecycle_table(self) -> tuple[str, dict | None]:
        if MatchAction.COMPLETE in allowed_actions(MatchStatus.PENDING):
            raise CheckFailed("pending -> completed reachable without feedback")
        if MatchAction.COMPLETE not in allowed_actions(MatchStatus.PENDING, via_feedback=True):
            raise CheckFailed("Feedback cannot complete a pending match")
        leaky = [s.value for s in MatchStatus if s.is_terminal and allowed_actions(s)]
        if leaky:
            raise CheckFailed("Terminal statuses allow transitions", {"statuses": leaky})
        return "Transition table consistent", None

    async def check_feedback_validation(self) -> tuple[str, dict | None]:
        for rating in (0, 6):
            try:
                FeedbackCollector.validate(rating, "good_chat")
            except ValidationError:
                continue
            raise CheckFailed(f"Rating {rating} was accepted", {"rating": rating})
        FeedbackCollector.validate(3, "good_chat")
        return "Feedback validation rejects out-of-range ratings", None

    async def check_onboarding_determinism(self) -> tuple[str, dict | None]:
        session = OnboardingSession(responses=self._fixture_responses(), elapsed_seconds=240)
        first = self.flow_engine.plan(session)
        second = self.flow_engine.plan(session)
        if first.model_dump() != second.model_dump():
            raise CheckFailed("Identical sessions produced different plans")
        return "Onboarding planning is deterministic", {
            "flow_type": first.flow_type.value,
            "next_step": first.step.id if first.step else None,
        }

    async def check_engagement_analyzer(self) -> tuple[str, dict | None]:
        metrics = self.analyzer.analyze(self._fixture_responses())
        if not 0.0 <= metrics.engagement_score <= 1.0:
            raise CheckFailed(
                "Engagement score outside [0, 1]", {"score": metrics.engagement_score}
            )
        return "Engagement analyzer within bounds", {
            "score": metrics.engagement_score,
            "level": metrics.engagement_level.value,
        }

    async def check_retry_policy(self) -> tuple[str, dict | None]:
        details = self.retry_policy.describe()
        if self.retry_policy.max_attempts < 1:
            raise CheckFailed("Retry policy allows no attempts", details)
        for status in (429, 503):
            if not is_retryable(RetryableProviderError(status)):
                raise CheckFailed(f"Status {status} is not retried", details)
        if is_retryable(RetryableProviderError(400)):
            raise CheckFailed("Status 400 is retried", details)
        return "Retry policy configured", details

    async def check_datastore(self) -> tuple[str, dict | None]:
        if self.session_factory is None:
            raise CheckFailed("No database session factory configured")
        async with self.session_factory() as session:
            await session.execute(text("SELECT 1"))
        return "Database reachable", None

    # ── Internals ─────────────────────────────────────────────────────────

    async def _run(
        self,
        name: str,
        check: Callable[[], Awaitable[tuple[str, dict | None]]],
    ) -> ComponentResult:
        start = time.perf_counter()
        try:
            message, details = await asyncio.wait_for(check(), timeout=self.timeout_seconds)
            passed = True
        except asyncio.TimeoutError:
            passed, message, details = False, f"Timed out after {self.timeout_seconds}s", None
        except CheckFailed as exc:
            passed, message, details = False, str(exc), exc.details
        except Exception as exc:
            passed, message, details = False, str(exc) or type(exc).__name__, {
                "error_type": type(exc).__name__
            }

        duration_ms = round((time.perf_counter() - start) * 1000, 2)
        log = logger.bind(check=name, duration_ms=duration_ms)
        if passed:
            log.info("health_check_passed")
        else:
            log.warning("health_check_failed", message=message)
        return ComponentResult(
            name=name,
            passed=passed,
            message=message,
            duration_ms=duration_ms,
            details=details,
        )

    def _require_client(self) -> Any:
        if self.provider_client is None:
            raise CheckFailed("Provider client not initialised")
        return self.provider_client

    @staticmethod
    def _fixture_responses() -> list[StepResponse]:
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        return [
            StepResponse(step_id="welcome", value="ready", timestamp=start),
            StepResponse(
                step_id="current_work",
                value="Building a React dashboard for a climate startup",
                timestamp=start + timedelta(seconds=90),
                confidence=0.8,
            ),
            StepResponse(
                step_id="strengths_text",
                value="JavaScript, React, design systems",
                timestamp=start + timedelta(seconds=200),
                confidence=0.6,
            ),
        ]
