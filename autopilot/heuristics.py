"""Rule-based scorer: an offline stand-in for the AI scoring process.

Produces the same response shape as :class:`autopilot.scorer.LLMScorer`
from fixed lookup tables and keyword checks, so the intake pipeline can run
(and be tested) without an LLM key.  Select it with ``AUTOPILOT_SCORER=rules``.
"""
from __future__ import annotations

from typing import Any

from autopilot.scorer import ScoringRequest, normalize_score_response

BUDGET_SCORES = {
    "under-10k": 30, "10k-25k": 50, "25k-50k": 70, "50k-100k": 85, "100k+": 95,
}

TIMELINE_SCORES = {
    "1-2-weeks": 20, "1-month": 40, "2-3-months": 70, "3-6-months": 85, "6+months": 90,
}

# (score without complex tech, score with complex tech)
TECHNICAL_SCORES = {
    "ai-integration": (90, 90),
    "data-analytics": (80, 80),
    "api-development": (70, 70),
    "web-app": (60, 75),
    "mobile-app": (65, 80),
    "e-commerce": (70, 70),
}
DEFAULT_TECHNICAL_SCORE = 50

MARKET_SCORES = {
    "ai-integration": 95, "data-analytics": 85, "e-commerce": 80, "web-app": 70,
    "mobile-app": 75, "api-development": 65, "custom-software": 60, "other": 50,
}
DEFAULT_MARKET_SCORE = 50

WEIGHTS = {
    "budget_score": 0.25,
    "timeline_score": 0.20,
    "technical_complexity_score": 0.25,
    "business_impact_score": 0.20,
    "market_potential_score": 0.10,
}

TECH_KEYWORDS = ("ai", "machine learning", "blockchain", "iot", "microservices", "scalable", "real-time")
BUSINESS_KEYWORDS = ("revenue", "growth", "efficiency", "automation", "roi", "cost reduction")

DURATIONS = {
    "1-2-weeks": "2-4 weeks",
    "1-month": "1-2 months",
    "2-3-months": "2-4 months",
    "3-6-months": "3-6 months",
    "6+months": "6+ months",
}


def _round_half_up(value: float) -> int:
    return int(value + 0.5)


def _level(score: float, high: float, medium: float) -> str:
    if score >= high:
        return "High"
    if score >= medium:
        return "Medium"
    return "Low"


def _strengths(s: dict[str, int]) -> list[str]:
    out = []
    if s["budget_score"] >= 70:
        out.append("Strong budget allocation")
    if s["timeline_score"] >= 70:
        out.append("Realistic timeline expectations")
    if s["technical_complexity_score"] >= 70:
        out.append("Clear technical requirements")
    if s["business_impact_score"] >= 70:
        out.append("Strong business value proposition")
    if s["market_potential_score"] >= 70:
        out.append("High market potential")
    return out


def _concerns(s: dict[str, int]) -> list[str]:
    out = []
    if s["budget_score"] < 50:
        out.append("Limited budget may impact scope")
    if s["timeline_score"] < 50:
        out.append("Aggressive timeline may affect quality")
    if s["technical_complexity_score"] < 50:
        out.append("Unclear technical requirements")
    if s["business_impact_score"] < 50:
        out.append("Unclear business value")
    if s["market_potential_score"] < 50:
        out.append("Limited market validation")
    return out


def _risks(s: dict[str, int]) -> list[str]:
    out = []
    if s["budget_score"] < 50:
        out.append("Limited budget may constrain project scope")
    if s["timeline_score"] < 50:
        out.append("Aggressive timeline may impact quality")
    if s["technical_complexity_score"] > 80:
        out.append("High technical complexity requires experienced team")
    if s["market_potential_score"] < 60:
        out.append("Limited market validation for this project type")
    return out


def _opportunities(s: dict[str, int]) -> list[str]:
    out = []
    if s["budget_score"] >= 70:
        out.append("Adequate budget for comprehensive solution")
    if s["timeline_score"] >= 70:
        out.append("Realistic timeline allows for proper development")
    if s["business_impact_score"] >= 70:
        out.append("Clear business value and ROI potential")
    if s["market_potential_score"] >= 80:
        out.append("Strong market demand for this solution")
    return out


def recommended_approach(overall: int) -> str:
    if overall >= 80:
        return "High-priority lead. Recommend immediate engagement and proposal generation."
    if overall >= 60:
        return "Qualified lead. Schedule technical discussion to refine requirements."
    if overall >= 40:
        return "Potential lead. Gather more information through discovery call."
    return "Low-priority lead. Consider if project aligns with company capabilities."


def next_steps(overall: int) -> list[str]:
    if overall >= 70:
        return ["Schedule technical discovery call", "Prepare detailed proposal", "Identify key stakeholders"]
    if overall >= 50:
        return ["Schedule initial consultation", "Gather additional requirements", "Assess technical feasibility"]
    return ["Review project alignment", "Consider referral to partner"]


def suggested_team_size(technical: int, overall: int) -> int:
    if technical >= 80:
        return 4
    if technical >= 60 or overall >= 70:
        return 3
    return 2


def sub_scores(request: ScoringRequest) -> dict[str, int]:
    description = request.project_description.lower()
    complex_tech = any(k in description for k in TECH_KEYWORDS)
    plain, with_complex = TECHNICAL_SCORES.get(
        request.project_type, (DEFAULT_TECHNICAL_SCORE, DEFAULT_TECHNICAL_SCORE),
    )
    requirements = f"{request.key_requirements} {request.business_goals or ''}".lower()
    return {
        "budget_score": BUDGET_SCORES.get(request.budget_range, 0),
        "timeline_score": TIMELINE_SCORES.get(request.timeline, 0),
        "technical_complexity_score": with_complex if complex_tech else plain,
        "business_impact_score": 80 if any(k in requirements for k in BUSINESS_KEYWORDS) else 50,
        "market_potential_score": MARKET_SCORES.get(request.project_type, DEFAULT_MARKET_SCORE),
    }


class RuleBasedScorer:
    model = "rules"

    async def score(self, request: ScoringRequest) -> dict[str, Any]:
        return normalize_score_response(self.evaluate(request))

    def evaluate(self, request: ScoringRequest) -> dict[str, Any]:
        s = sub_scores(request)
        overall = _round_half_up(sum(s[k] * w for k, w in WEIGHTS.items()))
        confidence = min(95, max(30, overall))
        return {
            **s,
            "overall_score": overall,
            "confidence_level": confidence,
            "ai_analysis": {
                "strengths": _strengths(s),
                "concerns": _concerns(s),
                "market_fit": _level(s["market_potential_score"], 70, 50),
                "technical_feasibility": _level(s["technical_complexity_score"], 70, 50),
            },
            "risk_factors": _risks(s),
            "opportunity_factors": _opportunities(s),
            "recommended_approach": recommended_approach(overall),
            "estimated_project_duration": DURATIONS.get(request.timeline, "TBD"),
            "suggested_team_size": suggested_team_size(s["technical_complexity_score"], overall),
            "next_steps": next_steps(overall),
        }
