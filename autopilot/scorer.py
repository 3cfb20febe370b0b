"""Intake scoring: request building and the AI scoring collaborator.

The service never computes a qualification score itself.  It builds a
:class:`ScoringRequest` from a validated form, hands it to a scorer
(an LLM by default, or the offline :class:`~autopilot.heuristics.RuleBasedScorer`)
and stores whatever comes back after clamping it to the 0-100 scale.
"""
from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass
from typing import Any, Mapping, Protocol

from autopilot.utils import json_parse

log = logging.getLogger(__name__)

SCORE_FIELDS = (
    "budget_score", "timeline_score", "technical_complexity_score",
    "business_impact_score", "market_potential_score",
    "overall_score", "confidence_level",
)

MAX_LIST_ITEMS = 10


class LLMCallError(Exception):
    """LLM call failed or returned unparseable output."""
    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


# ---------------------------------------------------------------------------
# Scoring request
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ScoringRequest:
    intake_form_id: str | None
    contact_name: str
    company_name: str | None
    project_name: str
    project_type: str
    project_description: str
    key_requirements: str
    business_goals: str | None
    success_metrics: str | None
    timeline: str
    budget_range: str
    budget_flexibility: str | None
    preferred_tech_stack: tuple[str, ...] = ()
    existing_systems: str | None = None
    integration_requirements: str | None = None
    timezone: str = "UTC"

    def to_dossier(self) -> str:
        """Render the request as labelled lines for the LLM prompt."""
        lines = [f"PROJECT: {self.project_name}", f"TYPE: {self.project_type}"]
        for label, value in (
            ("COMPANY", self.company_name),
            ("TIMELINE", self.timeline),
            ("BUDGET RANGE", self.budget_range),
            ("BUDGET FLEXIBILITY", self.budget_flexibility),
            ("PREFERRED TECH STACK", ", ".join(self.preferred_tech_stack)),
            ("EXISTING SYSTEMS", self.existing_systems),
            ("INTEGRATION REQUIREMENTS", self.integration_requirements),
            ("TIMEZONE", self.timezone),
        ):
            if value:
                lines.append(f"{label}: {value}")
        lines.append(f"\n--- DESCRIPTION ---\n{self.project_description}")
        lines.append(f"\n--- KEY REQUIREMENTS ---\n{self.key_requirements}")
        if self.business_goals:
            lines.append(f"\n--- BUSINESS GOALS ---\n{self.business_goals}")
        if self.success_metrics:
            lines.append(f"\n--- SUCCESS METRICS ---\n{self.success_metrics}")
        return "\n".join(lines)


_REQUEST_FIELDS = (
    "contact_name", "company_name", "project_name", "project_type",
    "project_description", "key_requirements", "business_goals", "success_metrics",
    "timeline", "budget_range", "budget_flexibility", "existing_systems",
    "integration_requirements",
)


def _read(form: Any, name: str, default: Any = None) -> Any:
    if isinstance(form, Mapping):
        return form.get(name, default)
    return getattr(form, name, default)


def build_scoring_request(form: Any, intake_form_id: str | None = None) -> ScoringRequest:
    """Select the scoring-relevant fields of *form* and fill defaults.

    *form* may be an ``IntakeForm`` row, an ``IntakeFormCreate`` or a plain
    mapping.  ORM rows keep list fields in ``*_json`` columns.
    """
    values = {name: _read(form, name) for name in _REQUEST_FIELDS}
    tech = _read(form, "preferred_tech_stack")
    if tech is None and _read(form, "preferred_tech_stack_json") is not None:
        tech = json_parse(_read(form, "preferred_tech_stack_json"), [])
    return ScoringRequest(
        intake_form_id=intake_form_id or _read(form, "id"),
        preferred_tech_stack=tuple(str(t) for t in (tech or ())),
        timezone=_read(form, "timezone") or "UTC",
        **values,
    )


# ---------------------------------------------------------------------------
# Response normalisation
# ---------------------------------------------------------------------------


SUB_SCORE_FIELDS = SCORE_FIELDS[:5]
REQUIRED_SCORE_FIELDS = ("overall_score", "confidence_level")


def _number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        num = float(value)
    except (TypeError, ValueError):
        return None
    return num if num == num else None  # NaN


def _clamp(num: float) -> float:
    return round(max(0.0, min(100.0, num)), 1)


def _str_list(value: Any, limit: int = MAX_LIST_ITEMS) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v) for v in value[:limit]]


def normalize_score_response(raw: Mapping[str, Any]) -> dict[str, Any]:
    """Validate and normalize a scorer response into IntakeScore fields.

    ``overall_score`` and ``confidence_level`` must come from the scorer; a
    reply without them raises :class:`LLMCallError`.  Missing sub-scores fall
    back to 0 with a warning.  A confidence strictly between 0 and 1 is read
    as a fraction and rescaled; 1 itself means 1%.
    """
    result: dict[str, Any] = {}
    for name in REQUIRED_SCORE_FIELDS:
        num = _number(raw.get(name))
        if num is None:
            raise LLMCallError(f"Scorer response has missing or invalid {name}: {raw.get(name)!r}")
        result[name] = _clamp(num)
    for name in SUB_SCORE_FIELDS:
        num = _number(raw.get(name))
        if num is None:
            log.warning("Unrecognizable %s %r, defaulting to 0", name, raw.get(name))
            num = 0.0
        result[name] = _clamp(num)

    confidence = _number(raw.get("confidence_level"))
    if 0 < confidence < 1:
        result["confidence_level"] = round(confidence * 100, 1)

    analysis = raw.get("ai_analysis", {})
    result["ai_analysis"] = analysis if isinstance(analysis, dict) else {}
    result["risk_factors"] = _str_list(raw.get("risk_factors"))
    result["opportunity_factors"] = _str_list(raw.get("opportunity_factors"))
    result["next_steps"] = _str_list(raw.get("next_steps"))

    approach = raw.get("recommended_approach")
    result["recommended_approach"] = str(approach) if approach else None
    duration = raw.get("estimated_project_duration")
    result["estimated_project_duration"] = str(duration) if duration else None
    try:
        team = int(raw.get("suggested_team_size"))
        result["suggested_team_size"] = team if team > 0 else None
    except (TypeError, ValueError):
        result["suggested_team_size"] = None
    return result


class Scorer(Protocol):
    model: str

    async def score(self, request: ScoringRequest) -> dict[str, Any]: ...


# ---------------------------------------------------------------------------
# LLM Client
# ---------------------------------------------------------------------------

DEFAULT_MODELS = {
    "anthropic": "claude-haiku-4-5-20251001",
    "openai": "gpt-4o-mini",
    "openai_compatible": "gpt-4o-mini",
}

# Upstream HTTP statuses worth another attempt.
RETRYABLE_STATUSES = {408, 409, 429}


def _is_retryable(exc: Exception) -> bool:
    status = getattr(exc, "status_code", None)
    if status is None:
        return True  # connection errors and timeouts carry no status
    return status in RETRYABLE_STATUSES or status >= 500


def _extract_json_object(text: str) -> str:
    """Strip code fences or prose around the first ``{...}`` block."""
    fenced = re.search(r"```(?:json)?\s*(\{.*\})\s*```", text, re.DOTALL)
    if fenced:
        return fenced.group(1)
    start, end = text.find("{"), text.rfind("}")
    return text[start:end + 1] if 0 <= start < end else text


class LLMClient:
    """Async JSON-mode client for Anthropic or OpenAI(-compatible) models.

    Provider and model come from ``LLM_PROVIDER`` / ``LLM_MODEL`` unless given.
    A missing API key is a configuration error and raises ``ValueError`` here,
    not on the first scoring call.
    """

    def __init__(
        self,
        provider: str | None = None,
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        max_tokens: int = 2048,
    ):
        self.provider = (provider or os.environ.get("LLM_PROVIDER", "anthropic")).strip().lower()
        if self.provider not in DEFAULT_MODELS:
            raise ValueError(f"Unknown LLM provider: {self.provider!r}")
        self.model = model or os.environ.get("LLM_MODEL") or DEFAULT_MODELS[self.provider]
        self.max_tokens = max_tokens
        self._client: Any = self._build_client(api_key, base_url)

    def _build_client(self, api_key: str | None, base_url: str | None) -> Any:
        if self.provider == "anthropic":
            key = api_key or os.environ.get("ANTHROPIC_API_KEY")
            if not key:
                raise ValueError("ANTHROPIC_API_KEY is not set (or use AUTOPILOT_SCORER=rules)")
            import anthropic
            return anthropic.AsyncAnthropic(api_key=key)

        import openai
        key = api_key or os.environ.get("OPENAI_API_KEY")
        url = base_url or os.environ.get("OPENAI_BASE_URL")
        if not key:
            if self.provider == "openai":
                raise ValueError("OPENAI_API_KEY is not set (or use AUTOPILOT_SCORER=rules)")
            key = "unused"  # local OpenAI-compatible servers ignore the key
        return openai.AsyncOpenAI(api_key=key, base_url=url) if url else openai.AsyncOpenAI(api_key=key)

    async def _complete(self, system: str, user: str) -> str:
        if self.provider == "anthropic":
            response = await self._client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                temperature=0,
                system=system,
                messages=[{"role": "user", "content": user}],
            )
            return _extract_json_object(response.content[0].text.strip())
        response = await self._client.chat.completions.create(
            model=self.model,
            max_tokens=self.max_tokens,
            temperature=0,
            response_format={"type": "json_object"},
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
        )
        return response.choices[0].message.content or "{}"

    async def call(self, system: str, user: str) -> Any:
        """One system+user round trip; returns the decoded JSON reply."""
        try:
            text = await self._complete(system, user)
        except Exception as exc:
            log.warning("%s call to %s failed: %s", self.provider, self.model, exc)
            raise LLMCallError(f"LLM API call failed: {exc}", retryable=_is_retryable(exc)) from exc

        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise LLMCallError(f"LLM returned invalid JSON: {text[:200]}") from exc


SCORING_SYSTEM_PROMPT = """\
You are qualifying an inbound project request for a software agency.

Read the intake dossier and score the lead on five dimensions, each 0-100:
- budget_score: is the budget adequate for the described scope?
- timeline_score: is the timeline realistic for the scope?
- technical_complexity_score: how technically demanding (and interesting) is it?
- business_impact_score: how clear is the business value / ROI?
- market_potential_score: how strong is demand for this kind of solution?

Then give an overall_score (0-100) and a confidence_level (0-100) for your
own assessment, plus qualitative guidance for the sales team.

Respond with ONLY valid JSON:
{
  "budget_score": <0-100>,
  "timeline_score": <0-100>,
  "technical_complexity_score": <0-100>,
  "business_impact_score": <0-100>,
  "market_potential_score": <0-100>,
  "overall_score": <0-100>,
  "confidence_level": <0-100>,
  "ai_analysis": {"strengths": ["..."], "concerns": ["..."],
                  "market_fit": "<High|Medium|Low>", "technical_feasibility": "<High|Medium|Low>"},
  "risk_factors": ["..."],
  "opportunity_factors": ["..."],
  "recommended_approach": "<one or two sentences>",
  "estimated_project_duration": "<e.g. 2-4 months>",
  "suggested_team_size": <integer>,
  "next_steps": ["..."]
}
"""


class LLMScorer:
    """Scores a request with a single LLM round trip."""

    def __init__(self, client: LLMClient | None = None, prompt: str = SCORING_SYSTEM_PROMPT):
        self.client = client or LLMClient()
        self.prompt = prompt

    @property
    def model(self) -> str:
        return self.client.model

    async def score(self, request: ScoringRequest) -> dict[str, Any]:
        raw = await self.client.call(self.prompt, request.to_dossier())
        if not isinstance(raw, dict):
            raise LLMCallError("LLM response was not a JSON object", retryable=False)
        return normalize_score_response(raw)


def make_scorer(kind: str | None = None) -> Scorer:
    """Build the configured scorer (``AUTOPILOT_SCORER``: ``llm`` or ``rules``)."""
    kind = (kind or os.environ.get("AUTOPILOT_SCORER", "llm")).strip().lower()
    if kind == "rules":
        from autopilot.heuristics import RuleBasedScorer
        return RuleBasedScorer()
    if kind == "llm":
        return LLMScorer()
    raise ValueError(f"Unknown scorer: {kind!r}")
