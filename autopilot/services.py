"""Shared intake business logic for the HTTP API and the MCP server.

Every function takes an open session and leaves committing to the caller.
"""
from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from autopilot import store
from autopilot.interpret import MANUAL_PRIORITIES, priority_for_score, score_color, score_label
from autopilot.models import IntakeForm, IntakeScore
from autopilot.schemas import IntakeFormCreate, IntakeFormUpdate, IntakeScoreUpdate
from autopilot.scorer import Scorer, build_scoring_request
from autopilot.utils import json_dump, json_parse
from autopilot.workflow import INITIAL_STATUS, Actor, IntakeStatus, state_machine

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Shared field tuples
# ---------------------------------------------------------------------------

FORM_TEXT_FIELDS = (
    "user_id", "contact_name", "contact_email", "contact_phone", "company_name",
    "project_name", "project_type", "project_description", "key_requirements",
    "business_goals", "success_metrics", "timeline", "budget_range",
    "budget_flexibility", "existing_systems", "integration_requirements",
    "timezone", "priority", "ai_recommendations",
)

# Columns that may not be cleared by an update.
REQUIRED_FORM_FIELDS = (
    "contact_name", "contact_email", "project_name", "project_type",
    "project_description", "key_requirements", "timeline", "budget_range",
    "timezone", "priority",
)

# (api field, column, empty default)
FORM_JSON_FIELDS = (
    ("preferred_tech_stack", "preferred_tech_stack_json", []),
    ("preferred_meeting_times", "preferred_meeting_times_json", []),
    ("ai_insights", "ai_insights_json", {}),
    ("metadata", "metadata_json", {}),
)

SCORE_NUMERIC_FIELDS = (
    "budget_score", "timeline_score", "technical_complexity_score",
    "business_impact_score", "market_potential_score", "overall_score",
    "confidence_level",
)

SCORE_TEXT_FIELDS = ("recommended_approach", "estimated_project_duration", "suggested_team_size")

SCORE_JSON_FIELDS = (
    ("ai_analysis", "ai_analysis_json", {}),
    ("risk_factors", "risk_factors_json", []),
    ("opportunity_factors", "opportunity_factors_json", []),
    ("next_steps", "next_steps_json", []),
)

_PRIORITY_ORDER = {"urgent": 3, "high": 2, "medium": 1, "low": 0}

# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def form_summary(form: IntakeForm) -> dict:
    out: dict[str, Any] = {"id": form.id}
    out.update({f: getattr(form, f) for f in FORM_TEXT_FIELDS})
    for api_field, column, default in FORM_JSON_FIELDS:
        out[api_field] = json_parse(getattr(form, column), default)
    out.update({
        "ai_qualification_score": form.ai_qualification_score or 0.0,
        "ai_confidence_score": form.ai_confidence_score or 0.0,
        "status": form.status,
        "meeting_scheduled_at": _iso(form.meeting_scheduled_at),
        "meeting_completed_at": _iso(form.meeting_completed_at),
        "created_at": _iso(form.created_at),
        "updated_at": _iso(form.updated_at),
        "scored": form.score is not None,
    })
    return out


def score_summary(score: IntakeScore) -> dict:
    out: dict[str, Any] = {"id": score.id, "intake_form_id": score.intake_form_id}
    out.update({f: getattr(score, f) or 0.0 for f in SCORE_NUMERIC_FIELDS})
    out.update({f: getattr(score, f) for f in SCORE_TEXT_FIELDS})
    for api_field, column, default in SCORE_JSON_FIELDS:
        out[api_field] = json_parse(getattr(score, column), default)
    out["scoring_model"] = score.scoring_model
    out["score_label"] = score_label(out["overall_score"])
    out["score_color"] = score_color(out["overall_score"])
    out["created_at"] = _iso(score.created_at)
    out["updated_at"] = _iso(score.updated_at)
    return out


def _form_columns(values: dict[str, Any]) -> dict[str, Any]:
    """Translate API field names to column values (lists/maps become JSON text)."""
    columns = {k: v for k, v in values.items() if k in FORM_TEXT_FIELDS or k in (
        "status", "meeting_scheduled_at", "meeting_completed_at",
        "ai_qualification_score", "ai_confidence_score",
    )}
    for api_field, column, default in FORM_JSON_FIELDS:
        if api_field in values:
            columns[column] = json_dump(values[api_field], default)
    return columns


def _score_columns(values: dict[str, Any]) -> dict[str, Any]:
    columns = {k: v for k, v in values.items() if k in SCORE_NUMERIC_FIELDS or k in SCORE_TEXT_FIELDS}
    for api_field, column, default in SCORE_JSON_FIELDS:
        if api_field in values:
            columns[column] = json_dump(values[api_field], default)
    return columns


# ---------------------------------------------------------------------------
# Filtering and sorting
# ---------------------------------------------------------------------------


def filter_and_sort(
    items: list[dict], *, status=None, priority=None, project_type=None, search=None,
    sort_by="created_at", sort_dir="desc",
) -> list[dict]:
    if status:
        ss = {s.strip().lower() for s in status.split(",")}
        items = [i for i in items if i["status"] in ss]
    if priority:
        ps = {p.strip().lower() for p in priority.split(",")}
        items = [i for i in items if i["priority"] in ps]
    if project_type:
        ts = {t.strip().lower() for t in project_type.split(",")}
        items = [i for i in items if i["project_type"] in ts]
    if search:
        q = search.lower()
        items = [i for i in items if q in i["project_name"].lower()
                 or q in i["contact_name"].lower()
                 or q in (i.get("company_name") or "").lower()
                 or q in i["project_description"].lower()]

    def sort_key(item: dict):
        if sort_by == "score":
            return item["ai_qualification_score"] if item.get("scored") else -1
        if sort_by == "priority":
            return _PRIORITY_ORDER.get(item["priority"], -1)
        if sort_by == "name":
            return item["project_name"].lower()
        return item.get("created_at") or ""

    return sorted(items, key=sort_key, reverse=(sort_dir == "desc"))


# ---------------------------------------------------------------------------
# Form operations
# ---------------------------------------------------------------------------


def create_form(session: Session, payload: IntakeFormCreate) -> IntakeForm:
    """Insert a new form in the initial ``submitted`` state (caller must commit)."""
    values = _form_columns(payload.model_dump())
    values["status"] = INITIAL_STATUS.value
    return store.insert_row(session, IntakeForm, values)


def get_form(session: Session, form_id: str) -> IntakeForm:
    return store.get_row(session, IntakeForm, form_id)


def list_forms(session: Session, user_id: str | None = None) -> list[IntakeForm]:
    """Newest first, optionally restricted to one owner."""
    return store.select_rows(
        session, IntakeForm,
        eq={"user_id": user_id} if user_id else None,
        order_by={"created_at": "desc"},
    )


def update_form(
    session: Session, form_id: str, body: IntakeFormUpdate, actor: Actor | str = Actor.REVIEWER,
) -> IntakeForm:
    """Apply a partial update (caller must commit).

    A ``status`` in the body goes through the state machine before any other
    field is touched, so a rejected transition leaves the row unchanged.
    """
    form = get_form(session, form_id)
    updates = body.model_dump(exclude_unset=True)
    target = updates.pop("status", None)
    if target is not None and target != form.status:
        state_machine.validate_transition(form.status, target, actor)
    for name in REQUIRED_FORM_FIELDS:
        if name in updates and updates[name] is None:
            del updates[name]
    columns = _form_columns(updates)
    for name, value in columns.items():
        setattr(form, name, value)
    if target is not None and target != form.status:
        state_machine.apply_transition(form, target, actor)
    session.flush()
    return form


def delete_form(session: Session, form_id: str) -> None:
    store.delete_row(session, IntakeForm, form_id)


def transition_form(
    session: Session, form_id: str, target: IntakeStatus | str, actor: Actor | str = Actor.REVIEWER,
) -> IntakeForm:
    form = get_form(session, form_id)
    state_machine.apply_transition(form, target, actor)
    session.flush()
    return form


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------


def get_score(session: Session, form_id: str) -> IntakeScore | None:
    return store.find_row(session, IntakeScore, intake_form_id=form_id)


def update_score(session: Session, score_id: str, body: IntakeScoreUpdate) -> IntakeScore:
    updates = {k: v for k, v in body.model_dump(exclude_unset=True).items() if v is not None}
    return store.update_row(session, IntakeScore, score_id, _score_columns(updates))


async def run_scoring(session: Session, form: IntakeForm, scorer: Scorer) -> IntakeScore:
    """Score a form and store the result (caller must commit).

    The score row is created on first scoring and updated in place on
    re-scoring.  The form's AI fields follow the new score, as does its
    priority unless a reviewer marked it urgent.  A ``submitted`` form moves
    to ``under-review``.
    """
    request = build_scoring_request(form)
    result = await scorer.score(request)

    score = get_score(session, form.id)
    columns = _score_columns(result)
    columns["scoring_model"] = scorer.model
    if score is None:
        score = store.insert_row(session, IntakeScore, {"intake_form_id": form.id, **columns})
        form.score = score
    else:
        for name, value in columns.items():
            setattr(score, name, value)

    overall = result["overall_score"]
    form.ai_qualification_score = overall
    form.ai_confidence_score = result["confidence_level"]
    form.ai_insights_json = json_dump(result.get("ai_analysis"), {})
    form.ai_recommendations = result.get("recommended_approach")
    if form.priority not in MANUAL_PRIORITIES:
        form.priority = priority_for_score(overall)
    if form.status == IntakeStatus.SUBMITTED.value:
        state_machine.apply_transition(form, IntakeStatus.UNDER_REVIEW, Actor.SYSTEM)
    session.flush()
    log.info("Scored intake form %s: %.1f (%s)", form.id, overall, score_label(overall))
    return score


async def submit_form(
    session: Session, payload: IntakeFormCreate, scorer: Scorer,
) -> tuple[IntakeForm, IntakeScore]:
    """Create a form and score it in one go (caller must commit)."""
    form = create_form(session, payload)
    score = await run_scoring(session, form, scorer)
    return form, score


# ---------------------------------------------------------------------------
# Stats
# ---------------------------------------------------------------------------


def compute_stats(session: Session) -> dict:
    forms = store.select_rows(session, IntakeForm)
    by_status: Counter[str] = Counter()
    by_priority: Counter[str] = Counter()
    by_type: Counter[str] = Counter()
    scored_values: list[float] = []
    for form in forms:
        by_status[form.status] += 1
        by_priority[form.priority] += 1
        by_type[form.project_type] += 1
        if form.score is not None:
            scored_values.append(form.score.overall_score)
    average = round(sum(scored_values) / len(scored_values), 1) if scored_values else None
    return {
        "total": len(forms), "scored": len(scored_values), "average_score": average,
        "by_status": dict(by_status), "by_priority": dict(by_priority),
        "by_project_type": dict(by_type),
    }
