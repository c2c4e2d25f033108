"""
Ecosystem — OnboardingFlowEngine: adaptive question sequencing

Chooses the next onboarding question from what the user has answered so far
and how they are engaging:

- **reflective**: high engagement and unhurried pacing get the full, deep
  sequence;
- **essential**: low engagement or a session running past the time budget
  gets the shortest sequence that still fills the profile minimum;
- **adaptive**: everyone else (and every session with fewer than three
  answers) gets the standard sequence, skipping questions whose answer is
  already implied by an earlier free-text answer.

The engine is a pure function of the session: no clock, no randomness, so
the same session always yields the same step.  Onboarding is finished
(``next_step`` returns ``None``) exactly when strengths, needs, goals and
values can be extracted from the responses.
"""

from __future__ import annotations

import re
from typing import Any, Sequence

import structlog

from ecosystem.config import get_settings
from ecosystem.models.enums import EngagementLevel, FlowType
from ecosystem.schemas.onboarding import (
    ConfidenceScaffolding,
    EngagementMetrics,
    OnboardingPlan,
    OnboardingSession,
    OnboardingStep,
    StepResponse,
)
from ecosystem.services.engagement_service import (
    EngagementAnalyzer,
    as_utc,
    step_durations,
)

logger = structlog.get_logger("ecosystem.onboarding_service")

# ──────────────────────────────────────────────────────────────────────────────
# Step catalogue
# ──────────────────────────────────────────────────────────────────────────────

ALL_STEPS: tuple[OnboardingStep, ...] = (
    # Foundation
    OnboardingStep(
        id="welcome", type="text", title="Welcome to The Ecosystem",
        description="This isn't a social network. It's a mirror for your growth.",
        required=True, estimated_time=30, category="foundation",
    ),
    OnboardingStep(
        id="ecosystem_compact", type="multiselect", title="The Ecosystem Compact",
        description="Before we begin: this is a space for genuine curiosity and generosity.",
        required=True, estimated_time=45, category="foundation",
    ),
    OnboardingStep(
        id="current_work", type="text",
        title="What are you working on or exploring right now?",
        description="Share what's capturing your attention these days.",
        required=True, estimated_time=120, category="foundation",
        profile_field="current_work",
    ),
    OnboardingStep(
        id="work_confidence", type="confidence", title="How clear are you about this?",
        description="No judgment, it just helps us understand your context.",
        required=True, estimated_time=30, category="foundation",
    ),
    OnboardingStep(
        id="progress_vision", type="text",
        title="What would feel like progress over the next 3 months?",
        description="What kind of forward motion would energize you?",
        required=True, estimated_time=150, category="foundation",
        profile_field="current_goal",
    ),
    # Strengths & needs
    OnboardingStep(
        id="strengths_confidence", type="confidence",
        title="How clear are you on your strengths right now?",
        description="This helps us know how to support you.",
        required=True, estimated_time=30, category="strengths",
    ),
    OnboardingStep(
        id="strengths_text", type="text", title="What are you unusually good at?",
        description="The things people often ask you about or come to you for.",
        required=True, estimated_time=180, category="strengths",
        profile_field="strengths",
    ),
    OnboardingStep(
        id="strengths_archetypes", type="multiselect",
        title="Which of these resonate with you?",
        description="Let's explore together. Select what feels right.",
        required=False, estimated_time=120, category="strengths",
        profile_field="strengths",
    ),
    OnboardingStep(
        id="needs_text", type="text",
        title="Where could you use help or perspective right now?",
        description="What would make your path clearer or easier?",
        required=True, estimated_time=180, category="strengths",
        profile_field="needs",
    ),
    OnboardingStep(
        id="needs_importance", type="slider",
        title="How important is this to you right now?",
        description="Helps us prioritise matches.",
        required=True, estimated_time=30, category="strengths",
    ),
    OnboardingStep(
        id="value_creation", type="multiselect",
        title="Which best describes how you create value?",
        description="Select 1-3 that feel most true.",
        required=True, estimated_time=90, category="strengths",
    ),
    # Goals & values
    OnboardingStep(
        id="progress_type", type="multiselect",
        title="What kind of progress feels meaningful to you right now?",
        description="Select 2-3 that resonate.",
        required=True, estimated_time=120, category="goals",
        profile_field="goal_categories",
    ),
    OnboardingStep(
        id="shared_values", type="multiselect",
        title="What values do you want shared by people you meet here?",
        description="Select 3-5 that matter most to you.",
        required=True, estimated_time=90, category="goals",
        profile_field="shared_values",
    ),
    OnboardingStep(
        id="connection_preferences", type="multiselect",
        title="How do you prefer to connect?",
        description="Which ways feel right for you right now?",
        required=True, estimated_time=60, category="goals",
        profile_field="connection_preferences",
    ),
    # Readiness
    OnboardingStep(
        id="time_commitment", type="multiselect",
        title="Which feels right for you right now?",
        description="How much time can you realistically give to new connections?",
        required=True, estimated_time=60, category="readiness",
        profile_field="availability",
    ),
    OnboardingStep(
        id="serendipity_openness", type="slider",
        title="How open are you to serendipity?",
        description="Calm and predictable, or exploratory and unexpected?",
        required=True, estimated_time=45, category="readiness",
    ),
    # Reflection
    OnboardingStep(
        id="human_detail", type="audio", title="Tell me something that makes you smile",
        description="A small story, quirk, or detail that captures who you are.",
        required=False, estimated_time=120, category="reflection",
    ),
    OnboardingStep(
        id="completion_checkpoint", type="checkpoint",
        title="How does this feel so far?",
        description="Take a moment to reflect on what you've shared.",
        required=True, estimated_time=60, category="reflection",
    ),
)

STEPS_BY_ID: dict[str, OnboardingStep] = {step.id: step for step in ALL_STEPS}

# shared_values closes every flow: it is the last answer the profile minimum
# needs, so everything before it is still reachable.
FLOW_STEPS: dict[FlowType, tuple[str, ...]] = {
    FlowType.REFLECTIVE: (
        "welcome", "ecosystem_compact", "current_work", "work_confidence",
        "progress_vision", "strengths_confidence", "strengths_text",
        "needs_text", "needs_importance", "value_creation",
        "progress_type", "connection_preferences", "time_commitment",
        "serendipity_openness", "human_detail", "completion_checkpoint",
        "shared_values",
    ),
    FlowType.ESSENTIAL: (
        "welcome", "current_work", "work_confidence",
        "strengths_confidence", "strengths_text", "needs_text",
        "progress_type", "time_commitment", "completion_checkpoint",
        "shared_values",
    ),
    FlowType.ADAPTIVE: (
        "welcome", "current_work", "work_confidence", "progress_vision",
        "strengths_confidence", "strengths_text", "needs_text",
        "needs_importance", "progress_type", "connection_preferences",
        "time_commitment", "serendipity_openness", "completion_checkpoint",
        "shared_values",
    ),
}

# Step that must yield each required profile field, in re-ask order.
REQUIRED_FIELD_STEPS: tuple[tuple[str, str], ...] = (
    ("strengths", "strengths_text"),
    ("needs", "needs_text"),
    ("goal_categories", "progress_type"),
    ("shared_values", "shared_values"),
)

# ── Adaptive skip heuristics ─────────────────────────────────────────────────

_HORIZON_PATTERN = re.compile(
    r"\b("
    r"\d+\s*(day|week|month|year)s?"
    r"|(next|this|coming)\s+(few\s+)?(week|month|quarter|year)s?"
    r"|by\s+(the\s+)?(end\s+of|q[1-4]|spring|summer|autumn|fall|winter)"
    r"|goal|goals|deadline|milestone|launch|launching"
    r")\b",
    re.IGNORECASE,
)
_URGENCY_PATTERN = re.compile(
    r"\b(urgent|urgently|asap|immediately|critical|right\s+now|blocked|blocking|deadline)\b",
    re.IGNORECASE,
)

# step to skip -> (step whose answer is inspected, pattern)
_SKIP_RULES: dict[str, tuple[str, re.Pattern]] = {
    "progress_vision": ("current_work", _HORIZON_PATTERN),
    "needs_importance": ("needs_text", _URGENCY_PATTERN),
}

# ── Confidence scaffolding ────────────────────────────────────────────────────

SCAFFOLDING_CONFIDENCE_THRESHOLD = 0.7

_SCAFFOLDING: dict[str, ConfidenceScaffolding] = {
    "strengths_text": ConfidenceScaffolding(
        show_archetypes=True,
        suggested_prompts=[
            "I facilitate group discussions",
            "I solve technical problems",
            "I connect people with resources",
            "I create visual designs",
            "I write clear explanations",
            "I organize complex information",
            "I build relationships",
            "I develop strategies",
        ],
        ai_assistance=True,
    ),
    "needs_text": ConfidenceScaffolding(
        show_archetypes=False,
        suggested_prompts=[
            "Help with technical implementation",
            "Guidance on business strategy",
            "Support with creative direction",
            "Mentorship in leadership",
            "Feedback on product development",
            "Connections in my industry",
            "Clarity on next steps",
            "Accountability for goals",
        ],
        ai_assistance=True,
    ),
}

# The confidence step asked just before each scaffolded text step.
_CONFIDENCE_SOURCE: dict[str, str] = {
    "strengths_text": "strengths_confidence",
    "needs_text": "strengths_confidence",
}

_LIST_SPLIT = re.compile(r"[,;\n]+")


# ──────────────────────────────────────────────────────────────────────────────
# Profile extraction
# ──────────────────────────────────────────────────────────────────────────────

def _as_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [part.strip() for part in _LIST_SPLIT.split(value) if part.strip()]
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value if str(v).strip()]
    return [str(value).strip()] if str(value).strip() else []


def _as_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        text = ", ".join(str(v).strip() for v in value if str(v).strip())
    else:
        text = str(value).strip()
    return text or None


def _dedupe(items: list[str]) -> list[str]:
    seen: set[str] = set()
    out = []
    for item in items:
        key = item.lower()
        if key not in seen:
            seen.add(key)
            out.append(item)
    return out


def extract_profile_data(responses: Sequence[StepResponse]) -> dict[str, Any]:
    """Map onboarding answers onto profile fields.

    Later answers to the same step replace earlier ones.  Strength
    archetypes are appended to the free-text strengths.
    """
    latest: dict[str, Any] = {}
    for response in responses:
        latest[response.step_id] = response.value

    strengths = _as_list(latest.get("strengths_text")) + _as_list(
        latest.get("strengths_archetypes")
    )
    return {
        "strengths": _dedupe(strengths),
        "needs": _dedupe(_as_list(latest.get("needs_text"))),
        "goal_categories": _dedupe(_as_list(latest.get("progress_type"))),
        "shared_values": _dedupe(_as_list(latest.get("shared_values"))),
        "connection_preferences": _dedupe(_as_list(latest.get("connection_preferences"))),
        "current_goal": _as_text(latest.get("progress_vision")),
        "current_work": _as_text(latest.get("current_work")),
        "availability": _as_text(latest.get("time_commitment")),
    }


def missing_required_fields(responses: Sequence[StepResponse]) -> list[str]:
    data = extract_profile_data(responses)
    return [field for field, _ in REQUIRED_FIELD_STEPS if not data[field]]


def minimum_met(responses: Sequence[StepResponse]) -> bool:
    return not missing_required_fields(responses)


# ──────────────────────────────────────────────────────────────────────────────
# Engine
# ──────────────────────────────────────────────────────────────────────────────

class OnboardingFlowEngine:
    """Stateless next-question planner for onboarding sessions."""

    def __init__(self, analyzer: EngagementAnalyzer | None = None) -> None:
        settings = get_settings()
        self.analyzer = analyzer or EngagementAnalyzer()
        self.time_budget_seconds: float = settings.ONBOARDING_TIME_BUDGET_SECONDS
        self.reflective_min_seconds: float = settings.REFLECTIVE_MIN_SECONDS_PER_STEP

    # ── Public API ────────────────────────────────────────────────────────

    def elapsed_seconds(self, session: OnboardingSession) -> float:
        """Session duration derived from the session itself, never the clock."""
        if session.elapsed_seconds is not None:
            return session.elapsed_seconds

        stamps = [as_utc(r.timestamp) for r in session.responses if r.timestamp is not None]
        if stamps:
            start = as_utc(session.started_at) if session.started_at else stamps[0]
            return max(0.0, (stamps[-1] - start).total_seconds())

        return sum(step_durations(session.responses))

    def classify_flow(
        self, session: OnboardingSession, metrics: EngagementMetrics | None = None
    ) -> FlowType:
        """Pick the flow type for *session*.

        Fewer than three responses is always ``adaptive``.  Time pressure or
        low engagement gives ``essential``; high engagement at a reflective
        pace gives ``reflective``.
        """
        if len(session.responses) < 3:
            return FlowType.ADAPTIVE

        metrics = metrics or self.analyzer.analyze(session.responses)
        if self.elapsed_seconds(session) > self.time_budget_seconds:
            return FlowType.ESSENTIAL
        if metrics.engagement_level == EngagementLevel.LOW:
            return FlowType.ESSENTIAL
        if (
            metrics.engagement_level == EngagementLevel.HIGH
            and metrics.average_time_per_step >= self.reflective_min_seconds
        ):
            return FlowType.REFLECTIVE
        return FlowType.ADAPTIVE

    def next_step(
        self,
        session: OnboardingSession,
        flow_type: FlowType | None = None,
    ) -> OnboardingStep | None:
        """Return the next question, or ``None`` once the profile minimum
        (strengths, needs, goals, values) is satisfied."""
        responses = session.responses
        if minimum_met(responses):
            return None

        flow = flow_type or self.classify_flow(session)
        answered = {r.step_id for r in responses}

        for step_id in FLOW_STEPS[flow]:
            if step_id in answered:
                continue
            if flow == FlowType.ADAPTIVE and self._skip(step_id, responses):
                continue
            return STEPS_BY_ID[step_id]

        # Flow exhausted without the minimum: re-ask the first gap.
        missing = set(missing_required_fields(responses))
        for field, step_id in REQUIRED_FIELD_STEPS:
            if field in missing:
                return STEPS_BY_ID[step_id]
        return None

    def plan(self, session: OnboardingSession) -> OnboardingPlan:
        """Next step plus the flow type and metrics that produced it."""
        metrics = self.analyzer.analyze(session.responses)
        flow = self.classify_flow(session, metrics)
        step = self.next_step(session, flow)

        scaffolding = None
        if step is not None:
            confidence = self._latest_confidence(session.responses, step.id)
            if confidence is not None:
                candidate = self.confidence_scaffolding(step.id, confidence)
                if candidate.suggested_prompts:
                    scaffolding = candidate

        logger.debug(
            "onboarding_plan",
            responses=len(session.responses),
            flow_type=flow.value,
            next_step=step.id if step else None,
            engagement_score=metrics.engagement_score,
        )
        return OnboardingPlan(
            step=step,
            flow_type=flow,
            engagement_metrics=metrics,
            completed=step is None,
            scaffolding=scaffolding,
        )

    @staticmethod
    def confidence_scaffolding(step_id: str, confidence: float) -> ConfidenceScaffolding:
        """Prompts offered when the user is unsure how to answer a step."""
        if confidence < SCAFFOLDING_CONFIDENCE_THRESHOLD and step_id in _SCAFFOLDING:
            return _SCAFFOLDING[step_id].model_copy(deep=True)
        return ConfidenceScaffolding()

    # ── Internals ─────────────────────────────────────────────────────────

    @staticmethod
    def _skip(step_id: str, responses: Sequence[StepResponse]) -> bool:
        rule = _SKIP_RULES.get(step_id)
        if rule is None:
            return False
        source_step, pattern = rule
        source = next(
            (r.value for r in reversed(responses) if r.step_id == source_step), None
        )
        return isinstance(source, str) and bool(pattern.search(source))

    @staticmethod
    def _latest_confidence(responses: Sequence[StepResponse], step_id: str) -> float | None:
        source_step = _CONFIDENCE_SOURCE.get(step_id)
        if source_step is None:
            return None
        for response in reversed(responses):
            if response.step_id != source_step:
                continue
            if response.confidence is not None:
                return response.confidence
            if isinstance(response.value, (int, float)) and not isinstance(response.value, bool):
                return float(response.value)
        return None
