"""
Ecosystem — Closed enumerations shared by models, schemas and services.
"""

import enum


class FieldType(str, enum.Enum):
    """Semantic profile field that owns one embedding per user."""

    STRENGTHS = "strengths"
    NEEDS = "needs"
    GOALS = "goals"
    VALUES = "values"


class MatchType(str, enum.Enum):
    NEED_STRENGTH = "need_strength"
    GOAL_ALIGNMENT = "goal_alignment"
    VALUES_ALIGNMENT = "values_alignment"


class MatchStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    SAVED = "saved"
    COMPLETED = "completed"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES


_TERMINAL_STATUSES = frozenset(
    {MatchStatus.COMPLETED, MatchStatus.DECLINED, MatchStatus.EXPIRED}
)


class MatchAction(str, enum.Enum):
    ACCEPT = "accept"
    DECLINE = "decline"
    SAVE = "save"
    COMPLETE = "complete"
    EXPIRE = "expire"


class UserMatchAction(str, enum.Enum):
    """Actions a participant may take; completion and expiry are system-driven."""

    ACCEPT = "accept"
    DECLINE = "decline"
    SAVE = "save"


class FeedbackOutcome(str, enum.Enum):
    COLLABORATION = "collaboration"
    INSIGHT = "insight"
    GOOD_CHAT = "good_chat"
    DIDNT_CLICK = "didnt_click"
    NO_RESPONSE = "no_response"

    @property
    def is_positive(self) -> bool:
        return self in (
            FeedbackOutcome.COLLABORATION,
            FeedbackOutcome.INSIGHT,
            FeedbackOutcome.GOOD_CHAT,
        )


class FlowType(str, enum.Enum):
    REFLECTIVE = "reflective"
    ESSENTIAL = "essential"
    ADAPTIVE = "adaptive"


class EngagementLevel(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class HealthStatus(str, enum.Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    CRITICAL = "critical"
