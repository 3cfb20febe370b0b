"""Tests for scoring request building, response normalisation and both scorers."""
from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from autopilot.heuristics import RuleBasedScorer, next_steps, recommended_approach, sub_scores
from autopilot.models import IntakeForm
from autopilot.schemas import IntakeFormCreate
from autopilot.scorer import (
    LLMCallError,
    LLMClient,
    LLMScorer,
    ScoringRequest,
    _extract_json_object,
    _is_retryable,
    build_scoring_request,
    make_scorer,
    normalize_score_response,
)


# ---------------------------------------------------------------------------
# Request building
# ---------------------------------------------------------------------------


class TestBuildScoringRequest:
    def test_from_mapping(self, form_data):
        req = build_scoring_request(form_data, intake_form_id="f-1")
        assert req.intake_form_id == "f-1"
        assert req.project_type == "ai-integration"
        assert req.preferred_tech_stack == ("python", "fastapi", "postgresql")
        assert req.timezone == "UTC"

    def test_from_validated_model(self, form_data):
        req = build_scoring_request(IntakeFormCreate.model_validate(form_data))
        assert req.intake_form_id is None
        assert req.key_requirements == form_data["key_requirements"]

    def test_from_orm_row(self, form_data):
        row = IntakeForm(
            id="f-2",
            **{k: v for k, v in form_data.items() if k != "preferred_tech_stack"},
            preferred_tech_stack_json=json.dumps(["react"]),
            timezone="Europe/Berlin",
        )
        req = build_scoring_request(row)
        assert req.intake_form_id == "f-2"
        assert req.preferred_tech_stack == ("react",)
        assert req.timezone == "Europe/Berlin"

    def test_optional_fields_default(self, form_data):
        minimal = {k: v for k, v in form_data.items()
                   if k not in ("business_goals", "success_metrics", "preferred_tech_stack")}
        req = build_scoring_request(minimal)
        assert req.business_goals is None
        assert req.preferred_tech_stack == ()

    def test_contact_details_stay_out_of_prompt(self, form_data):
        dossier = build_scoring_request(form_data).to_dossier()
        assert "PROJECT: Dispatch Copilot" in dossier
        assert "BUDGET RANGE: 50k-100k" in dossier
        assert form_data["contact_email"] not in dossier


# ---------------------------------------------------------------------------
# Normalisation
# ---------------------------------------------------------------------------


def _reply(**overrides) -> dict:
    return {"overall_score": 70, "confidence_level": 80, **overrides}


class TestNormalizeScoreResponse:
    def test_clamps_scores(self):
        result = normalize_score_response(_reply(overall_score=140, budget_score=-5, timeline_score="abc"))
        assert result["overall_score"] == 100.0
        assert result["budget_score"] == 0.0
        assert result["timeline_score"] == 0.0

    @pytest.mark.parametrize("reply", [
        {"budget_score": 90, "confidence_level": 80},
        {"overall_score": "high", "confidence_level": 80},
        {"overall_score": None, "confidence_level": 80},
        {"overall_score": 70},
        {"overall_score": 70, "confidence_level": "sure"},
    ])
    def test_missing_headline_scores_rejected(self, reply):
        with pytest.raises(LLMCallError) as exc_info:
            normalize_score_response(reply)
        assert not exc_info.value.retryable

    def test_missing_sub_score_warns(self, caplog):
        with caplog.at_level("WARNING", logger="autopilot.scorer"):
            result = normalize_score_response(_reply())
        assert result["market_potential_score"] == 0.0
        assert "market_potential_score" in caplog.text

    @pytest.mark.parametrize("given,stored", [
        (0.82, 82.0),
        (82, 82.0),
        (1, 1.0),
        (1.0, 1.0),
        (0, 0.0),
        (100, 100.0),
    ])
    def test_confidence_scale(self, given, stored):
        assert normalize_score_response(_reply(confidence_level=given))["confidence_level"] == stored

    def test_lists_capped_and_stringified(self):
        result = normalize_score_response(_reply(risk_factors=list(range(15)), next_steps="call them"))
        assert result["risk_factors"] == [str(i) for i in range(10)]
        assert result["next_steps"] == []

    def test_team_size(self):
        assert normalize_score_response(_reply(suggested_team_size="3"))["suggested_team_size"] == 3
        assert normalize_score_response(_reply(suggested_team_size=0))["suggested_team_size"] is None
        assert normalize_score_response(_reply())["suggested_team_size"] is None

    def test_non_dict_analysis_dropped(self):
        assert normalize_score_response(_reply(ai_analysis=["x"]))["ai_analysis"] == {}


# ---------------------------------------------------------------------------
# LLM scorer
# ---------------------------------------------------------------------------


class TestLLMScorer:
    @pytest.mark.asyncio
    async def test_scores_via_client(self, form_data):
        client = MagicMock()
        client.model = "claude-haiku-4-5-20251001"
        client.call = AsyncMock(return_value={
            "budget_score": 80, "timeline_score": 70, "technical_complexity_score": 90,
            "business_impact_score": 75, "market_potential_score": 85,
            "overall_score": 81, "confidence_level": 0.9,
            "risk_factors": ["Legacy TMS"], "suggested_team_size": 4,
        })
        scorer = LLMScorer(client=client)
        result = await scorer.score(build_scoring_request(form_data))

        assert scorer.model == "claude-haiku-4-5-20251001"
        assert result["overall_score"] == 81.0
        assert result["confidence_level"] == 90.0
        assert result["risk_factors"] == ["Legacy TMS"]
        system, user = client.call.call_args.args
        assert "budget_score" in system
        assert "PROJECT: Dispatch Copilot" in user

    @pytest.mark.asyncio
    async def test_client_failure_propagates(self, form_data):
        client = MagicMock()
        client.call = AsyncMock(side_effect=LLMCallError("rate limited", retryable=True))
        with pytest.raises(LLMCallError) as exc_info:
            await LLMScorer(client=client).score(build_scoring_request(form_data))
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_non_object_response_rejected(self, form_data):
        client = MagicMock()
        client.call = AsyncMock(return_value=[1, 2, 3])
        with pytest.raises(LLMCallError):
            await LLMScorer(client=client).score(build_scoring_request(form_data))


class TestMakeScorer:
    def test_rules(self):
        assert isinstance(make_scorer("rules"), RuleBasedScorer)

    def test_env(self, monkeypatch):
        monkeypatch.setenv("AUTOPILOT_SCORER", "RULES")
        assert make_scorer().model == "rules"

    def test_unknown(self):
        with pytest.raises(ValueError, match="Unknown scorer"):
            make_scorer("dice")


# ---------------------------------------------------------------------------
# Rule-based scorer
# ---------------------------------------------------------------------------


class TestRuleBasedScorer:
    def test_sub_scores(self, form_data):
        assert sub_scores(build_scoring_request(form_data)) == {
            "budget_score": 85,
            "timeline_score": 85,
            "technical_complexity_score": 90,
            "business_impact_score": 80,
            "market_potential_score": 95,
        }

    @pytest.mark.asyncio
    async def test_strong_lead(self, form_data, rules_scorer):
        result = await rules_scorer.score(build_scoring_request(form_data))
        assert result["overall_score"] == 86.0
        assert result["confidence_level"] == 86.0
        assert result["estimated_project_duration"] == "3-6 months"
        assert result["suggested_team_size"] == 4
        assert result["ai_analysis"]["market_fit"] == "High"
        assert "Strong market demand for this solution" in result["opportunity_factors"]
        assert result["next_steps"][0] == "Schedule technical discovery call"

    @pytest.mark.asyncio
    async def test_weak_lead(self, low_form_data, rules_scorer):
        result = await rules_scorer.score(build_scoring_request(low_form_data))
        assert result["overall_score"] == 44.0
        assert result["confidence_level"] == 44.0
        assert "Limited budget may constrain project scope" in result["risk_factors"]
        assert "Aggressive timeline may affect quality" in result["ai_analysis"]["concerns"]
        assert result["suggested_team_size"] == 3

    def test_complex_tech_raises_web_app_score(self, low_form_data):
        plain = sub_scores(build_scoring_request(low_form_data))
        data = {**low_form_data, "project_description": low_form_data["project_description"] + " It must be scalable."}
        complex_ = sub_scores(build_scoring_request(data))
        assert plain["technical_complexity_score"] == 60
        assert complex_["technical_complexity_score"] == 75

    def test_unknown_options_fall_back(self):
        req = ScoringRequest(
            intake_form_id=None, contact_name="X", company_name=None, project_name="Thing",
            project_type="other", project_description="d" * 50, key_requirements="r" * 20,
            business_goals=None, success_metrics=None, timeline="someday",
            budget_range="unknown", budget_flexibility=None,
        )
        s = sub_scores(req)
        assert s["budget_score"] == 0
        assert s["timeline_score"] == 0
        assert s["technical_complexity_score"] == 50
        assert s["market_potential_score"] == 50

    def test_confidence_floor(self):
        assert RuleBasedScorer().evaluate(ScoringRequest(
            intake_form_id=None, contact_name="X", company_name=None, project_name="Thing",
            project_type="other", project_description="d" * 50, key_requirements="r" * 20,
            business_goals=None, success_metrics=None, timeline="someday",
            budget_range="unknown", budget_flexibility=None,
        ))["confidence_level"] == 30

    @pytest.mark.parametrize("overall,prefix", [
        (80, "High-priority"), (60, "Qualified"), (40, "Potential"), (39, "Low-priority"),
    ])
    def test_recommended_approach_bands(self, overall, prefix):
        assert recommended_approach(overall).startswith(prefix)

    def test_next_steps_bands(self):
        assert len(next_steps(70)) == 3
        assert next_steps(50)[0] == "Schedule initial consultation"
        assert next_steps(49) == ["Review project alignment", "Consider referral to partner"]


# ---------------------------------------------------------------------------
# LLM client
# ---------------------------------------------------------------------------


class _StatusError(Exception):
    def __init__(self, status_code: int):
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code


class TestLLMClient:
    def test_missing_key_is_config_error(self, monkeypatch):
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        with pytest.raises(ValueError, match="ANTHROPIC_API_KEY"):
            LLMClient(provider="anthropic")

    def test_unknown_provider(self):
        with pytest.raises(ValueError, match="Unknown LLM provider"):
            LLMClient(provider="carrier-pigeon")

    def test_model_defaults_per_provider(self, monkeypatch):
        monkeypatch.delenv("LLM_MODEL", raising=False)
        assert LLMClient(provider="anthropic", api_key="k").model == "claude-haiku-4-5-20251001"
        assert LLMClient(provider="openai", api_key="k").model == "gpt-4o-mini"

    @pytest.mark.parametrize("text", [
        '{"overall_score": 70}',
        '```json\n{"overall_score": 70}\n```',
        'Here is my assessment: {"overall_score": 70} Hope it helps.',
    ])
    def test_extract_json_object(self, text):
        assert json.loads(_extract_json_object(text)) == {"overall_score": 70}

    @pytest.mark.parametrize("exc,expected", [
        (_StatusError(429), True),
        (_StatusError(503), True),
        (_StatusError(400), False),
        (_StatusError(401), False),
        (ConnectionError("reset"), True),
    ])
    def test_retryable_classification(self, exc, expected):
        assert _is_retryable(exc) is expected

    @pytest.mark.asyncio
    async def test_anthropic_call(self):
        client = LLMClient(provider="anthropic", api_key="k")
        reply = MagicMock()
        reply.content = [MagicMock(text='Sure. {"overall_score": 77}')]
        client._client = MagicMock()
        client._client.messages.create = AsyncMock(return_value=reply)

        assert await client.call("system", "user") == {"overall_score": 77}
        kwargs = client._client.messages.create.call_args.kwargs
        assert kwargs["system"] == "system"
        assert kwargs["temperature"] == 0

    @pytest.mark.asyncio
    async def test_upstream_error_wrapped(self):
        client = LLMClient(provider="anthropic", api_key="k")
        client._client = MagicMock()
        client._client.messages.create = AsyncMock(side_effect=_StatusError(400))
        with pytest.raises(LLMCallError) as exc_info:
            await client.call("system", "user")
        assert not exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        client = LLMClient(provider="anthropic", api_key="k")
        reply = MagicMock()
        reply.content = [MagicMock(text="no json here")]
        client._client = MagicMock()
        client._client.messages.create = AsyncMock(return_value=reply)
        with pytest.raises(LLMCallError, match="invalid JSON"):
            await client.call("system", "user")
