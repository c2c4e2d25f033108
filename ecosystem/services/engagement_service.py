"""
Ecosystem — EngagementAnalyzer: attentiveness signals from onboarding answers

Pure function of the ordered responses; no clock is read.  Timing per step
is the explicit ``time_spent`` when the client reports it, otherwise the
latency between consecutive response timestamps, compared in UTC.

engagement_score = 0.3 · min(1, avg_time / 120 s)
                 + 0.3 · depth
                 + 0.2 · (1 − confidence spread)
                 + 0.2 · (1 − pause frequency)

Levels: high > 0.7, medium > 0.4, otherwise low.
"""

from __future__ import annotations

import statistics
from datetime import datetime, timezone
from typing import Any, Sequence

from ecosystem.models.enums import EngagementLevel
from ecosystem.schemas.onboarding import EngagementMetrics, StepResponse

TIME_BASELINE_SECONDS = 120.0
TEXT_LENGTH_BASELINE = 100
MULTISELECT_BASELINE = 3
PAUSE_THRESHOLD_SECONDS = 300.0

HIGH_ENGAGEMENT = 0.7
MEDIUM_ENGAGEMENT = 0.4


def as_utc(moment: datetime) -> datetime:
    """Naive timestamps are taken to be UTC; aware ones are converted to it."""
    if moment.tzinfo is None or moment.utcoffset() is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def step_durations(responses: Sequence[StepResponse]) -> list[float]:
    """Seconds spent on each step where it can be determined."""
    durations: list[float] = []
    previous = None
    for response in responses:
        if response.time_spent is not None:
            durations.append(float(response.time_spent))
        elif response.timestamp is not None and previous is not None:
            durations.append(max(0.0, (as_utc(response.timestamp) - previous).total_seconds()))
        if response.timestamp is not None:
            previous = as_utc(response.timestamp)
    return durations


def _depth(value: Any) -> float | None:
    if isinstance(value, str):
        return min(1.0, len(value.strip()) / TEXT_LENGTH_BASELINE)
    if isinstance(value, (list, tuple)):
        return min(1.0, len(value) / MULTISELECT_BASELINE)
    return None


def engagement_level(score: float) -> EngagementLevel:
    if score > HIGH_ENGAGEMENT:
        return EngagementLevel.HIGH
    if score > MEDIUM_ENGAGEMENT:
        return EngagementLevel.MEDIUM
    return EngagementLevel.LOW


class EngagementAnalyzer:
    """Derives ``EngagementMetrics`` from a list of step responses."""

    def analyze(self, responses: Sequence[StepResponse]) -> EngagementMetrics:
        if not responses:
            return EngagementMetrics()

        durations = step_durations(responses)
        average_time = sum(durations) / len(durations) if durations else 0.0

        depths = [d for d in (_depth(r.value) for r in responses) if d is not None]
        depth_score = sum(depths) / len(depths) if depths else 0.0

        total_length = sum(len(r.value) for r in responses if isinstance(r.value, str))
        average_length = total_length / len(responses)

        confidences = [r.confidence for r in responses if r.confidence is not None]
        spread = statistics.pstdev(confidences) if len(confidences) > 1 else 0.0

        pause_frequency = (
            sum(1 for d in durations if d > PAUSE_THRESHOLD_SECONDS) / len(durations)
            if durations
            else 0.0
        )

        score = (
            min(1.0, average_time / TIME_BASELINE_SECONDS) * 0.3
            + depth_score * 0.3
            + (1.0 - min(1.0, spread)) * 0.2
            + (1.0 - pause_frequency) * 0.2
        )
        score = max(0.0, min(1.0, score))

        return EngagementMetrics(
            average_time_per_step=round(average_time, 3),
            depth_score=round(depth_score, 4),
            average_answer_length=round(average_length, 2),
            confidence_variance=round(spread, 4),
            pause_frequency=round(pause_frequency, 4),
            engagement_score=round(score, 4),
            engagement_level=engagement_level(score),
        )
