from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from mcp.server.fastmcp import FastMCP

from autopilot import services
from autopilot.actions import IntakeActions, MutationResult
from autopilot.cache import QueryCache
from autopilot.db import init_db, session_scope
from autopilot.interpret import COLOR_BANDS, LABEL_BANDS, QUALIFIED_THRESHOLD
from autopilot.notifications import Notifier
from autopilot.scorer import make_scorer
from autopilot.store import RecordNotFoundError
from autopilot.workflow import TRANSITION_MAP

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def autopilot_lifespan(server: FastMCP) -> AsyncIterator[None]:
    init_db()
    yield


mcp = FastMCP(
    "Autopilot Studio",
    instructions=(
        "Autopilot Studio collects project requests from prospective clients and scores them with AI. "
        "Use these tools to browse, submit, score and review intake forms. "
        "Start with get_intake_stats() for an overview, then list_intake_forms() to browse, "
        "then get_intake_form(id) for full details including the score."
    ),
    lifespan=autopilot_lifespan,
    json_response=True,
)

actions = IntakeActions(QueryCache(), Notifier())


def _result(result: MutationResult) -> dict:
    if not result.success:
        return {"error": result.error, "kind": result.error_kind}
    return result.data


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("autopilot://overview")
def autopilot_overview() -> str:
    """Overview of the intake pipeline: data model, workflow and score bands."""
    return json.dumps({
        "system": "Autopilot Studio: client intake and AI lead qualification",
        "data_model": {
            "intake_form": "A prospective client's project request: contact, project, budget, timeline, tech stack.",
            "intake_score": "The AI assessment of one form: five sub-scores, overall score, confidence, risks and next steps.",
        },
        "workflow": [
            "1. get_intake_stats(): totals and breakdowns.",
            "2. list_intake_forms(): browse with filters (status, priority, project_type, search).",
            "3. get_intake_form(id): full form plus its score.",
            "4. submit_intake_form(...): validate, store and score a new request.",
            "5. rescore_intake_form(id): run the scorer again.",
            "6. transition_intake_form(id, status): move a form through review.",
        ],
        "transitions": {
            current.value: sorted(target.value for target in targets)
            for current, targets in TRANSITION_MAP.items()
        },
        "archiving": "Any status except archived can move to archived.",
        "score_labels": {label: f">= {threshold}" for threshold, label in LABEL_BANDS},
        "score_colors": {color: f">= {threshold}" for threshold, color in COLOR_BANDS},
        "qualified_threshold": QUALIFIED_THRESHOLD,
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools: Intake
# ---------------------------------------------------------------------------


@mcp.tool()
def list_intake_forms(
    status: str | None = None, priority: str | None = None,
    project_type: str | None = None, search: str | None = None,
    sort_by: str = "created_at", sort_dir: str = "desc", limit: int = 50,
) -> list[dict]:
    """List and filter intake forms.

    Args:
        status: Comma-separated from: submitted, under-review, qualified,
                disqualified, scheduled, completed, archived.
        priority: Comma-separated from: low, medium, high, urgent.
        project_type: Comma-separated, e.g. "web-app,ai-integration".
        search: Free-text search across project name, contact, company and description.
        sort_by: Sort field: created_at, score, priority, name.
        sort_dir: Sort direction: asc or desc.
        limit: Max results (default 50, max 500).
    """
    with session_scope() as session:
        items = services.filter_and_sort(
            actions.list_forms(session),
            status=status, priority=priority, project_type=project_type,
            search=search, sort_by=sort_by, sort_dir=sort_dir,
        )
        return items[:max(1, min(limit, 500))]


@mcp.tool()
def get_intake_form(form_id: str) -> dict:
    """Get one intake form together with its AI score (null when unscored)."""
    with session_scope() as session:
        try:
            form = actions.get_form(session, form_id)
        except RecordNotFoundError:
            return {"error": f"Intake form {form_id} not found"}
        return {**form, "score": actions.get_score(session, form_id)}


@mcp.tool()
async def submit_intake_form(
    contact_name: str, contact_email: str, project_name: str, project_type: str,
    project_description: str, key_requirements: str, timeline: str, budget_range: str,
    company_name: str | None = None, contact_phone: str | None = None,
    business_goals: str | None = None, success_metrics: str | None = None,
    budget_flexibility: str | None = None, preferred_tech_stack: list[str] | None = None,
    existing_systems: str | None = None, integration_requirements: str | None = None,
    timezone: str = "UTC",
) -> dict:
    """Validate, store and AI-score a new intake form.

    The description needs 50-2000 characters and key_requirements 20-1000.
    Returns the stored form and its score, or an error listing invalid fields.
    """
    data = {
        "contact_name": contact_name, "contact_email": contact_email,
        "contact_phone": contact_phone, "company_name": company_name,
        "project_name": project_name, "project_type": project_type,
        "project_description": project_description, "key_requirements": key_requirements,
        "business_goals": business_goals, "success_metrics": success_metrics,
        "timeline": timeline, "budget_range": budget_range,
        "budget_flexibility": budget_flexibility,
        "preferred_tech_stack": preferred_tech_stack or [],
        "existing_systems": existing_systems,
        "integration_requirements": integration_requirements,
        "timezone": timezone,
    }
    try:
        scorer = make_scorer()
    except ValueError as exc:
        return {"error": str(exc)}
    with session_scope() as session:
        return _result(await actions.submit(session, data, scorer))


@mcp.tool()
async def rescore_intake_form(form_id: str) -> dict:
    """Run AI scoring again for an intake form and replace its score."""
    try:
        scorer = make_scorer()
    except ValueError as exc:
        return {"error": str(exc)}
    with session_scope() as session:
        return _result(await actions.rescore(session, form_id, scorer))


@mcp.tool()
async def transition_intake_form(form_id: str, status: str) -> dict:
    """Move an intake form to a new status as a reviewer.

    Allowed: submitted -> under-review (system only), under-review -> qualified
    or disqualified, qualified -> scheduled, scheduled -> completed, and any
    non-archived status -> archived.
    """
    with session_scope() as session:
        return _result(await actions.transition(session, form_id, status))


# ---------------------------------------------------------------------------
# Tools: Stats
# ---------------------------------------------------------------------------


@mcp.tool()
def get_intake_stats() -> dict:
    """Get summary statistics about all intake forms."""
    with session_scope() as session:
        return services.compute_stats(session)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the Autopilot Studio MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
