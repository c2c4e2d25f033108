"""
Ecosystem — MatchScorer: pairwise compatibility scoring

Scores an ordered pair of users (A is the user the match is generated for)
from two kinds of evidence:

Embedding signals (cosine similarity, negatives clamped to 0):
  needs_to_strengths  = cos(A.needs, B.strengths)       directional
  strengths_to_needs  = cos(A.strengths, B.needs)       directional
  goals               = cos(A.goals, B.goals)           commutative
  values              = cos(A.values, B.values)         commutative

  embedding_score = Σ wᵢ·sᵢ / Σ wᵢ   over the *available* signals only,
  so a missing field redistributes its weight proportionally.

Structured overlap (case-insensitive containment over the profile lists):
  structured_score = 0.4·complementary + 0.3·goals + 0.2·values + 0.1·industry

Final score:
  with ≥1 embedding signal: (1 − β)·embedding_score + β·structured_score
  without any:              structured_score
  β = STRUCTURED_OVERLAP_WEIGHT (default 0.2); the result is clamped to [0, 1].

The scorer is pure: no I/O, no clock, no randomness.  It runs in worker
threads during batch matching.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Iterable, Mapping

import numpy as np
import structlog

from ecosystem.config import Settings, get_settings
from ecosystem.models.enums import FieldType, MatchType

logger = structlog.get_logger("ecosystem.scoring_service")

# ──────────────────────────────────────────────────────────────────────────────
# Constants
# ──────────────────────────────────────────────────────────────────────────────

EVIDENCE_FLAGS: tuple[str, ...] = (
    "complementary_matches",
    "shared_goals",
    "aligned_values",
    "industry_overlap",
)

# Highest-priority flag first; exactly one sentence is ever emitted.
_EXPLANATIONS: dict[str, str] = {
    "complementary_matches": "You both have complementary skills that could benefit each other.",
    "shared_goals": "You share similar professional goals and could collaborate effectively.",
    "aligned_values": "Your values align well, creating a strong foundation for meaningful connection.",
    "industry_overlap": "You're both in related industries, opening opportunities for knowledge sharing.",
}
_FALLBACK_EXPLANATION = "This match shows potential for meaningful professional connection."

# Signal name -> (field on A, field on B)
_SIGNAL_FIELDS: dict[str, tuple[str, str]] = {
    "needs_to_strengths": (FieldType.NEEDS.value, FieldType.STRENGTHS.value),
    "strengths_to_needs": (FieldType.STRENGTHS.value, FieldType.NEEDS.value),
    "goals": (FieldType.GOALS.value, FieldType.GOALS.value),
    "values": (FieldType.VALUES.value, FieldType.VALUES.value),
}

# Ties resolve in this order.
_FAMILY_ORDER: tuple[MatchType, ...] = (
    MatchType.NEED_STRENGTH,
    MatchType.GOAL_ALIGNMENT,
    MatchType.VALUES_ALIGNMENT,
)
_SIGNAL_FAMILY: dict[str, MatchType] = {
    "needs_to_strengths": MatchType.NEED_STRENGTH,
    "strengths_to_needs": MatchType.NEED_STRENGTH,
    "goals": MatchType.GOAL_ALIGNMENT,
    "values": MatchType.VALUES_ALIGNMENT,
}
_STRUCTURED_FAMILY: dict[str, MatchType] = {
    "complementary": MatchType.NEED_STRENGTH,
    "goals": MatchType.GOAL_ALIGNMENT,
    "values": MatchType.VALUES_ALIGNMENT,
}


# ──────────────────────────────────────────────────────────────────────────────
# Value objects
# ──────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ScoringWeights:
    needs_to_strengths: float = 0.35
    strengths_to_needs: float = 0.15
    goals: float = 0.30
    values: float = 0.20

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "ScoringWeights":
        settings = settings or get_settings()
        return cls(**{k: float(v) for k, v in settings.SCORING_WEIGHTS.items()})

    def as_dict(self) -> dict[str, float]:
        return asdict(self)


@dataclass
class ScoringInput:
    """Everything the scorer needs to know about one side of a pair."""

    user_id: Any
    embeddings: Mapping[str, list[float]] = field(default_factory=dict)
    strengths: list[str] = field(default_factory=list)
    needs: list[str] = field(default_factory=list)
    goal_categories: list[str] = field(default_factory=list)
    shared_values: list[str] = field(default_factory=list)
    industry: str | None = None

    @classmethod
    def from_profile(
        cls,
        user_id: Any,
        profile: Any | None,
        embeddings: Mapping[str, list[float]] | None = None,
    ) -> "ScoringInput":
        if profile is None:
            return cls(user_id=user_id, embeddings=embeddings or {})
        return cls(
            user_id=user_id,
            embeddings=embeddings or {},
            strengths=list(profile.strengths or []),
            needs=list(profile.needs or []),
            goal_categories=list(profile.goal_categories or []),
            shared_values=list(profile.shared_values or []),
            industry=profile.industry,
        )


@dataclass
class ScoreResult:
    score: float
    match_type: MatchType
    evidence: dict[str, bool]
    explanation: str
    components: dict[str, float]
    structured: dict[str, float]
    weights_used: dict[str, float]

    def evidence_payload(self) -> dict:
        """Evidence as persisted on the match row."""
        return {
            **self.evidence,
            "components": {k: round(v, 4) for k, v in self.components.items()},
            "structured": {k: round(v, 4) for k, v in self.structured.items()},
            "weights_used": self.weights_used,
        }


# ──────────────────────────────────────────────────────────────────────────────
# Pure helpers
# ──────────────────────────────────────────────────────────────────────────────

def cosine_similarity(a: Iterable[float], b: Iterable[float]) -> float | None:
    """Cosine similarity of two vectors, or None when undefined.

    Undefined means mismatched dimensions or a zero-norm vector.
    """
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.ndim != 1 or va.shape != vb.shape or va.size == 0:
        return None
    norm = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if norm == 0.0 or not np.isfinite(norm):
        return None
    return float(np.dot(va, vb) / norm)


def _clean(items: Iterable[Any] | None) -> list[str]:
    return [str(i).strip().lower() for i in (items or []) if str(i).strip()]


def fuzzy_overlap(xs: Iterable[Any] | None, ys: Iterable[Any] | None) -> float:
    """Share of items that appear (by case-insensitive containment) in the
    other list, relative to the longer list.  Symmetric in its arguments."""
    left, right = _clean(xs), _clean(ys)
    if not left or not right:
        return 0.0

    def _hits(src: list[str], dst: list[str]) -> int:
        return sum(1 for s in src if any(s in d or d in s for d in dst))

    hits = max(_hits(left, right), _hits(right, left))
    return min(1.0, hits / max(len(left), len(right)))


def _same_industry(a: str | None, b: str | None) -> bool:
    return bool(a and b and a.strip().lower() == b.strip().lower())


# ──────────────────────────────────────────────────────────────────────────────
# Scorer
# ──────────────────────────────────────────────────────────────────────────────

class MatchScorer:
    """Deterministic compatibility scorer for an ordered user pair."""

    def __init__(
        self,
        weights: ScoringWeights | None = None,
        structured_weight: float | None = None,
        evidence_threshold: float | None = None,
        structured_components: Mapping[str, float] | None = None,
    ) -> None:
        settings = get_settings()
        self.weights = weights or ScoringWeights.from_settings(settings)
        self.structured_weight: float = (
            settings.STRUCTURED_OVERLAP_WEIGHT if structured_weight is None else structured_weight
        )
        self.evidence_threshold: float = (
            settings.EVIDENCE_SIMILARITY_THRESHOLD
            if evidence_threshold is None
            else evidence_threshold
        )
        self.structured_components: dict[str, float] = dict(
            structured_components or settings.STRUCTURED_COMPONENT_WEIGHTS
        )

    # ── Public API ────────────────────────────────────────────────────────

    def score(self, a: ScoringInput, b: ScoringInput) -> ScoreResult:
        """Score *b* as a match for *a*.

        Parameters
        ----------
        a:
            The user the match is generated for.
        b:
            The candidate.

        Returns
        -------
        ScoreResult
            Score in [0, 1], match type, evidence flags, one-sentence
            explanation and the per-signal breakdown.
        """
        signals = self._embedding_signals(a, b)
        structured = self._structured_overlap(a, b)

        weights = self.weights.as_dict()
        available_weight = sum(weights[name] for name in signals)
        if signals and available_weight > 0:
            normalised = {name: weights[name] / available_weight for name in signals}
            embedding_score = sum(normalised[n] * s for n, s in signals.items())
            embedding_share = 1.0 - self.structured_weight
            structured_share = self.structured_weight
        else:
            normalised = {}
            embedding_score = 0.0
            embedding_share = 0.0
            structured_share = 1.0

        structured_score = sum(
            self.structured_components.get(name, 0.0) * value
            for name, value in structured.items()
        )
        raw = embedding_share * embedding_score + structured_share * structured_score
        final = max(0.0, min(1.0, raw))

        families = {family: 0.0 for family in _FAMILY_ORDER}
        for name, sim in signals.items():
            families[_SIGNAL_FAMILY[name]] += embedding_share * normalised.get(name, 0.0) * sim
        for name, family in _STRUCTURED_FAMILY.items():
            families[family] += (
                structured_share * self.structured_components.get(name, 0.0) * structured[name]
            )
        match_type = _FAMILY_ORDER[0]
        for family in _FAMILY_ORDER[1:]:
            if families[family] > families[match_type]:
                match_type = family

        evidence = self._evidence(signals, structured)

        logger.debug(
            "pair_scored",
            user_a_id=str(a.user_id),
            user_b_id=str(b.user_id),
            score=round(final, 4),
            signals=sorted(signals),
            match_type=match_type.value,
        )

        return ScoreResult(
            score=final,
            match_type=match_type,
            evidence=evidence,
            explanation=self.explain(evidence),
            components=dict(signals),
            structured=structured,
            weights_used={k: round(v, 4) for k, v in normalised.items()},
        )

    @staticmethod
    def explain(evidence: Mapping[str, bool]) -> str:
        for flag in EVIDENCE_FLAGS:
            if evidence.get(flag):
                return _EXPLANATIONS[flag]
        return _FALLBACK_EXPLANATION

    # ── Internals ─────────────────────────────────────────────────────────

    @staticmethod
    def _embedding_signals(a: ScoringInput, b: ScoringInput) -> dict[str, float]:
        signals: dict[str, float] = {}
        for name, (field_a, field_b) in _SIGNAL_FIELDS.items():
            va = a.embeddings.get(field_a)
            vb = b.embeddings.get(field_b)
            if not va or not vb:
                continue
            sim = cosine_similarity(va, vb)
            if sim is None:
                logger.warning(
                    "embedding_signal_undefined",
                    signal=name,
                    user_a_id=str(a.user_id),
                    user_b_id=str(b.user_id),
                )
                continue
            signals[name] = max(0.0, min(1.0, sim))
        return signals

    @staticmethod
    def _structured_overlap(a: ScoringInput, b: ScoringInput) -> dict[str, float]:
        return {
            "complementary": max(
                fuzzy_overlap(a.strengths, b.needs),
                fuzzy_overlap(a.needs, b.strengths),
            ),
            "goals": fuzzy_overlap(a.goal_categories, b.goal_categories),
            "values": fuzzy_overlap(a.shared_values, b.shared_values),
            "industry": 1.0 if _same_industry(a.industry, b.industry) else 0.0,
        }

    def _evidence(
        self, signals: Mapping[str, float], structured: Mapping[str, float]
    ) -> dict[str, bool]:
        def strong(name: str) -> bool:
            return name in signals and signals[name] >= self.evidence_threshold

        return {
            "complementary_matches": (
                strong("needs_to_strengths")
                or strong("strengths_to_needs")
                or structured["complementary"] > 0
            ),
            "shared_goals": strong("goals") or structured["goals"] > 0,
            "aligned_values": strong("values") or structured["values"] > 0,
            "industry_overlap": structured["industry"] > 0,
        }
