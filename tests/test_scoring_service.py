"""Unit tests for MatchScorer — pure scoring, no I/O."""
import pytest

from ecosystem.models.enums import MatchType
from ecosystem.services.scoring_service import (
    MatchScorer,
    ScoringInput,
    cosine_similarity,
    fuzzy_overlap,
)

from tests.conftest import unit_vector


E1 = unit_vector(1)
E2 = unit_vector(0, 1)
E3 = unit_vector(0, 0, 1)


@pytest.fixture
def scorer():
    return MatchScorer()


class TestCosineSimilarity:

    def test_identical_vectors(self):
        assert cosine_similarity(E1, E1) == pytest.approx(1.0)

    def test_orthogonal_vectors(self):
        assert cosine_similarity(E1, E2) == pytest.approx(0.0)

    def test_zero_norm_is_undefined(self):
        assert cosine_similarity([0.0] * 8, E1) is None

    def test_dimension_mismatch_is_undefined(self):
        assert cosine_similarity([1.0, 0.0], E1) is None


class TestFuzzyOverlap:

    def test_case_insensitive_containment(self):
        assert fuzzy_overlap(["React"], ["react native"]) == pytest.approx(1.0)

    def test_relative_to_longer_list(self):
        assert fuzzy_overlap(["JavaScript", "React"], ["React"]) == pytest.approx(0.5)

    def test_symmetric(self):
        xs, ys = ["Python", "backend architecture"], ["Python", "Django", "SQL"]
        assert fuzzy_overlap(xs, ys) == fuzzy_overlap(ys, xs)

    def test_empty_lists(self):
        assert fuzzy_overlap([], ["x"]) == 0.0
        assert fuzzy_overlap(["  "], ["x"]) == 0.0


class TestStructuredOnlyScoring:
    """Without embeddings the score is the structured overlap alone."""

    def test_frontend_backend_pair_scores_positive(self, scorer, js_react_profile, python_profile):
        a = ScoringInput(user_id="a", **js_react_profile)
        b = ScoringInput(user_id="b", **python_profile)

        result = scorer.score(a, b)

        # complementary 0.5, goals 1, values 1, industry 1
        assert result.score == pytest.approx(0.4 * 0.5 + 0.3 + 0.2 + 0.1)
        assert result.evidence["complementary_matches"] is True
        assert result.explanation == MatchScorer.explain({"complementary_matches": True})
        assert result.weights_used == {}

    def test_disjoint_profiles_score_zero(self, scorer):
        a = ScoringInput(user_id="a", strengths=["Pottery"], needs=["Kilns"], industry="crafts")
        b = ScoringInput(user_id="b", strengths=["Sailing"], needs=["Boats"], industry="marine")

        result = scorer.score(a, b)

        assert result.score == 0.0
        assert not any(result.evidence.values())
        assert result.explanation == "This match shows potential for meaningful professional connection."

    def test_empty_inputs_score_zero(self, scorer):
        assert scorer.score(ScoringInput(user_id="a"), ScoringInput(user_id="b")).score == 0.0


class TestEmbeddingScoring:

    def test_score_in_unit_interval(self, scorer):
        a = ScoringInput(user_id="a", embeddings={"needs": E1, "goals": E2, "values": E3})
        b = ScoringInput(user_id="b", embeddings={"strengths": E1, "goals": E2, "values": E3})

        result = scorer.score(a, b)

        assert 0.0 <= result.score <= 1.0

    def test_commutative_signals_are_symmetric(self, scorer):
        a = ScoringInput(user_id="a", embeddings={"goals": E1, "values": unit_vector(1, 1)})
        b = ScoringInput(user_id="b", embeddings={"goals": unit_vector(1, 2), "values": E2})

        assert scorer.score(a, b).score == pytest.approx(scorer.score(b, a).score)

    def test_directional_signals_are_asymmetric(self, scorer):
        a = ScoringInput(user_id="a", embeddings={"needs": E1, "strengths": E2})
        b = ScoringInput(user_id="b", embeddings={"strengths": E1, "needs": E3})

        forward = scorer.score(a, b)
        backward = scorer.score(b, a)

        # Only the directional pair is present: 0.35 vs 0.15 of 0.5, times 0.8
        assert forward.score == pytest.approx(0.8 * 0.7)
        assert backward.score == pytest.approx(0.8 * 0.3)
        assert forward.match_type == MatchType.NEED_STRENGTH

    def test_missing_fields_redistribute_weight(self, scorer):
        a = ScoringInput(user_id="a", embeddings={"goals": E1})
        b = ScoringInput(user_id="b", embeddings={"goals": E1})

        result = scorer.score(a, b)

        assert result.weights_used == {"goals": 1.0}
        assert result.score == pytest.approx(0.8)
        assert result.match_type == MatchType.GOAL_ALIGNMENT
        assert result.evidence["shared_goals"] is True

    def test_negative_similarity_clamped(self, scorer):
        a = ScoringInput(user_id="a", embeddings={"values": E1})
        b = ScoringInput(user_id="b", embeddings={"values": [-v for v in E1]})

        result = scorer.score(a, b)

        assert result.components["values"] == 0.0
        assert result.score == 0.0

    def test_undefined_signal_is_skipped(self, scorer):
        a = ScoringInput(user_id="a", embeddings={"goals": [0.0] * 8, "values": E1})
        b = ScoringInput(user_id="b", embeddings={"goals": E1, "values": E1})

        result = scorer.score(a, b)

        assert set(result.components) == {"values"}
        assert result.match_type == MatchType.VALUES_ALIGNMENT

    def test_scoring_is_deterministic(self, scorer, js_react_profile, python_profile):
        a = ScoringInput(user_id="a", embeddings={"goals": E1}, **js_react_profile)
        b = ScoringInput(user_id="b", embeddings={"goals": unit_vector(1, 1)}, **python_profile)

        assert scorer.score(a, b) == scorer.score(a, b)


class TestEvidencePayload:

    def test_payload_carries_flags_and_breakdown(self, scorer, js_react_profile, python_profile):
        result = scorer.score(
            ScoringInput(user_id="a", **js_react_profile),
            ScoringInput(user_id="b", **python_profile),
        )

        payload = result.evidence_payload()

        assert payload["complementary_matches"] is True
        assert payload["structured"]["complementary"] == pytest.approx(0.5)
        assert payload["components"] == {}


class TestExplanation:

    @pytest.mark.parametrize(
        "flags, expected_flag",
        [
            ({"complementary_matches", "shared_goals", "aligned_values", "industry_overlap"},
             "complementary_matches"),
            ({"shared_goals", "aligned_values", "industry_overlap"}, "shared_goals"),
            ({"aligned_values", "industry_overlap"}, "aligned_values"),
            ({"industry_overlap"}, "industry_overlap"),
        ],
    )
    def test_highest_priority_flag_wins(self, flags, expected_flag):
        evidence = {flag: flag in flags for flag in
                    ("complementary_matches", "shared_goals", "aligned_values", "industry_overlap")}

        assert MatchScorer.explain(evidence) == MatchScorer.explain({expected_flag: True})

    def test_each_flag_has_its_own_sentence(self):
        sentences = {
            MatchScorer.explain({flag: True})
            for flag in ("complementary_matches", "shared_goals", "aligned_values", "industry_overlap")
        }

        assert len(sentences) == 4

    def test_shared_goals_sentence(self):
        evidence = {"shared_goals": True, "aligned_values": True, "industry_overlap": True}

        assert MatchScorer.explain(evidence).startswith("You share similar professional goals")

    def test_no_flags_falls_back(self):
        explanation = MatchScorer.explain({"complementary_matches": False})

        assert explanation == "This match shows potential for meaningful professional connection."
