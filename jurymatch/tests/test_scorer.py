"""Tests for the rule-based score model, thesis matching and AI response parsing."""
from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from jurymatch.config import EngineSettings
from jurymatch.scorer import (
    NO_MATCH_REASON,
    FuzzyThesisMatcher,
    LLMCallError,
    LLMScoringProvider,
    ScoreModel,
    build_ai_prompt,
    parse_ai_scores,
    rank_key,
)
from jurymatch.types import AIScore, JurorProfile, RoundConfig, StartupProfile
from jurymatch.workload import WorkloadEntry

SETTINGS = EngineSettings()


def _entry(proposed: int = 0, limit: int = 4, current: int = 0) -> WorkloadEntry:
    return WorkloadEntry(
        juror_id="J", juror_name="J", current_assignments=current,
        proposed_assignments=proposed, target_assignments=limit,
        effective_limit=limit, is_custom_limit=False,
    )


def _model(**weights) -> ScoreModel:
    return ScoreModel(RoundConfig(**weights), SETTINGS)


FINTECH = StartupProfile(
    id="S1", name="PayFlow", stage="Seed", verticals=["Fintech"], regions=["Europe"],
    description="Instant cross-border payments for small merchants",
)
SPECIALIST = JurorProfile(
    id="J1", name="Ada", preferred_regions=["EU"], target_verticals=["Payments"],
    preferred_stages=["seed"],
)
GENERALIST = JurorProfile(id="J3", name="Gus")


class TestRuleScoring:
    def test_full_match_earns_all_criteria(self):
        b = _model().score(SPECIALIST, FINTECH, _entry())
        assert b.region == 2.0
        assert b.vertical == 4.0
        assert b.stage == 2.0
        assert b.thesis == 0.0
        assert b.load_penalty == 0.0
        assert b.total == 8.0
        assert b.reasoning == "Region match (Europe), Vertical match (Fintech), Stage match (Seed)"

    def test_no_preferences_scores_zero_with_reason(self):
        b = _model().score(GENERALIST, FINTECH, _entry())
        assert b.total == 0.0
        assert b.reasoning == NO_MATCH_REASON

    def test_global_region_matches_any_startup_region(self):
        juror = JurorProfile(id="J9", name="World", preferred_regions=["Worldwide"])
        b = _model().score(juror, FINTECH, _entry())
        assert b.region == 2.0
        assert "Region match (Global)" in b.reasoning

    def test_missing_startup_region_gives_no_region_credit(self):
        startup = FINTECH.model_copy(update={"regions": []})
        b = _model().score(SPECIALIST, startup, _entry())
        assert b.region == 0.0

    def test_weights_scale_each_criterion(self):
        b = _model(vertical_weight=60, stage_weight=10, region_weight=10,
                   thesis_weight=10, load_penalty_weight=10).score(SPECIALIST, FINTECH, _entry())
        assert b.vertical == 6.0
        assert b.stage == 1.0
        assert b.region == 1.0

    def test_interest_adds_bonus(self):
        plain = _model().score(GENERALIST, FINTECH, _entry())
        keen = _model().score(GENERALIST, FINTECH, _entry(), interested=True)
        assert keen.total - plain.total == pytest.approx(SETTINGS.interest_bonus)
        assert "Explicit interest (+1.5)" in keen.reasoning


class TestThesis:
    def test_fraction_of_keywords_found(self):
        matcher = FuzzyThesisMatcher(threshold=85)
        text = "Instant cross-border payments for small merchants"
        assert matcher.match(text, ["payments", "quantum"]) == pytest.approx(0.5)

    def test_empty_inputs(self):
        matcher = FuzzyThesisMatcher()
        assert matcher.match("", ["payments"]) == 0.0
        assert matcher.match("payments", []) == 0.0

    def test_thesis_credit_scales_with_match(self):
        juror = JurorProfile(id="J5", name="Theo", thesis_keywords=["cross-border", "merchants"])
        b = _model().score(juror, FINTECH, _entry())
        assert b.thesis == pytest.approx(1.0)
        assert "Thesis match (100% of keywords)" in b.reasoning

    def test_custom_matcher_is_clamped(self):
        class Overeager:
            def match(self, text, keywords):
                return 3.0

        juror = JurorProfile(id="J5", name="Theo", thesis_keywords=["x"])
        b = ScoreModel(RoundConfig(), SETTINGS, Overeager()).score(juror, FINTECH, _entry())
        assert b.thesis == pytest.approx(1.0)


class TestLoadPenalty:
    def test_strictly_decreasing_below_limit(self):
        model = _model()
        penalties = [model.load_penalty(_entry(proposed=n, limit=4)) for n in range(6)]
        assert penalties[0] == 0.0
        assert all(a > b for a, b in zip(penalties, penalties[1:]))

    def test_at_limit_outranks_nothing_below_limit(self):
        model = _model()
        best_at_limit = model.score(SPECIALIST, FINTECH, _entry(proposed=2, limit=2), interested=True)
        worst_below = model.score(GENERALIST, FINTECH, _entry(proposed=0, limit=2))
        assert best_at_limit.total < worst_below.total
        assert "Overloaded" in best_at_limit.reasoning

    def test_dominance_holds_with_ai_blend(self):
        model = _model()
        perfect = AIScore(juror_id="J1", compatibility_score=10.0, confidence=1.0)
        dreadful = AIScore(juror_id="J3", compatibility_score=0.0, confidence=1.0)
        full = model.score(SPECIALIST, FINTECH, _entry(proposed=1, limit=1), interested=True, ai=perfect)
        free = model.score(GENERALIST, FINTECH, _entry(proposed=7, limit=8), ai=dreadful)
        assert full.total < free.total

    def test_zero_limit_does_not_divide_by_zero(self):
        assert _model().load_penalty(_entry(proposed=0, limit=0)) < 0


class TestAIBlend:
    def test_blends_rule_and_ai(self):
        ai = AIScore(juror_id="J1", compatibility_score=5.0, confidence=0.8, reasoning="Solid fit")
        b = _model().score(SPECIALIST, FINTECH, _entry(), ai=ai)
        assert b.total == pytest.approx(0.3 * 8.0 + 0.7 * 5.0)
        assert b.ai_component == 5.0
        assert b.ai_confidence == 0.8
        assert "AI compatibility (5/10)" in b.reasoning


class TestRankKey:
    def test_generalist_wins_ties_then_id(self):
        a = JurorProfile(id="A", name="A", target_verticals=["Climate"])
        b = JurorProfile(id="B", name="B")
        c = JurorProfile(id="C", name="C")
        model = _model()
        ranked = sorted([a, c, b], key=lambda j: rank_key(model.score(j, FINTECH, _entry()), j))
        assert [j.id for j in ranked] == ["B", "C", "A"]


class TestAIParsing:
    JURORS = [JurorProfile(id="J1", name="Ada"), JurorProfile(id="J2", name="Bo")]

    def test_parses_and_clamps(self):
        raw = {"scores": [
            {"juror_id": "J1", "compatibility_score": 14, "confidence": 2, "brief_reasoning": "Fit"},
            {"juror_id": "J2", "compatibility_score": "6.5"},
        ]}
        scores = parse_ai_scores(raw, self.JURORS)
        assert [s.juror_id for s in scores] == ["J1", "J2"]
        assert scores[0].compatibility_score == 10.0
        assert scores[0].confidence == 1.0
        assert scores[0].reasoning == "Fit"
        assert scores[1].compatibility_score == 6.5
        assert scores[1].confidence == 0.5

    def test_drops_unknown_and_duplicate_ids(self):
        raw = {"scores": [
            {"juror_id": "J1", "compatibility_score": 4},
            {"juror_id": "J1", "compatibility_score": 9},
            {"juror_id": "ghost", "compatibility_score": 9},
        ]}
        scores = parse_ai_scores(raw, self.JURORS)
        assert [(s.juror_id, s.compatibility_score) for s in scores] == [("J1", 4.0)]

    def test_missing_scores_list_raises(self):
        with pytest.raises(LLMCallError):
            parse_ai_scores({"result": "nope"}, self.JURORS)

    def test_prompt_lists_every_juror(self):
        prompt = build_ai_prompt(FINTECH, self.JURORS)
        assert "ID: J1" in prompt and "ID: J2" in prompt
        assert "Name: PayFlow" in prompt

    @pytest.mark.asyncio
    async def test_provider_forwards_seed(self):
        client = AsyncMock()
        client.call.return_value = {"scores": [{"juror_id": "J1", "compatibility_score": 7}]}
        provider = LLMScoringProvider(client)
        scores = await provider.score_batch(FINTECH, self.JURORS[:1], round_name="screening", seed=42)
        assert scores[0].compatibility_score == 7.0
        system, _ = client.call.call_args.args
        assert "seed 42" in system
        assert "screening" in system
