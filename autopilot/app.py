from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Generator

from fastapi import Depends, FastAPI, Header, HTTPException, Query
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, EmailStr
from sqlalchemy.orm import Session

from autopilot import services
from autopilot.actions import IntakeActions, MutationResult
from autopilot.auth import AuthClient, AuthErrorKind, AuthResponse, PasswordResetResponse
from autopilot.cache import QueryCache
from autopilot.db import get_session, init_db
from autopilot.notifications import Notifier
from autopilot.schemas import (
    BUDGET_FLEXIBILITY_OPTIONS,
    BUDGET_RANGE_OPTIONS,
    PRIORITY_VALUES,
    PROJECT_TYPE_OPTIONS,
    TECH_STACK_OPTIONS,
    TIMELINE_OPTIONS,
    IntakeFormOut,
    IntakeFormUpdate,
    IntakeScoreOut,
    IntakeScoreUpdate,
    StatsOut,
    TransitionRequest,
    ValidationResultOut,
    validate_intake,
)
from autopilot.scorer import Scorer, make_scorer
from autopilot.store import RecordNotFoundError
from autopilot.workflow import Actor, state_machine

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="Autopilot Studio",
    version="0.1.0",
    description=(
        "Client intake API for Autopilot Studio. "
        "Collect project requests, score them with AI, and move them through review. "
        "All endpoints return JSON."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Intake", "description": "Create, browse, update and delete intake forms."},
        {"name": "Scoring", "description": "AI qualification scores. The LLM scorer needs ANTHROPIC_API_KEY or OPENAI_API_KEY."},
        {"name": "Workflow", "description": "Intake status transitions."},
        {"name": "Stats", "description": "Aggregate statistics and breakdowns."},
        {"name": "Notifications", "description": "Recent success and error notifications."},
        {"name": "Auth", "description": "Sign in, sign up and account recovery via the hosted auth provider."},
    ],
)

# Failed mutation kind -> HTTP status
ERROR_STATUS = {
    "validation": 422,
    "not_found": 404,
    "invalid_transition": 409,
    "scoring": 502,
    "remote": 502,
}


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------

_actions = IntakeActions(QueryCache(), Notifier())


def db_session() -> Generator[Session, None, None]:
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_actions() -> IntakeActions:
    return _actions


def get_scorer() -> Scorer:
    try:
        return make_scorer()
    except ValueError as exc:
        raise HTTPException(500, str(exc)) from exc


def get_auth_client() -> AuthClient:
    """A client per request; tokens travel with the request, never in shared state."""
    try:
        return AuthClient()
    except ValueError as exc:
        raise HTTPException(503, f"Authentication is not configured: {exc}") from exc


_bearer = HTTPBearer(auto_error=False)


def bearer_token(credentials: HTTPAuthorizationCredentials | None = Depends(_bearer)) -> str | None:
    return credentials.credentials if credentials else None


def _respond(result: MutationResult, status_code: int = 200) -> JSONResponse:
    if not result.success:
        status_code = ERROR_STATUS.get(result.error_kind or "remote", 502)
    return JSONResponse(jsonable_encoder(result.to_dict()), status_code=status_code)


def _options(options: tuple[tuple[str, str], ...]) -> list[dict[str, str]]:
    return [{"value": value, "label": label} for value, label in options]


# ---------------------------------------------------------------------------
# Routes: Intake
# ---------------------------------------------------------------------------


@app.get("/api/intake/options", tags=["Intake"], summary="Allowed values for the intake form selects")
async def intake_options():
    return {
        "project_types": _options(PROJECT_TYPE_OPTIONS),
        "timelines": _options(TIMELINE_OPTIONS),
        "budget_ranges": _options(BUDGET_RANGE_OPTIONS),
        "budget_flexibility": _options(BUDGET_FLEXIBILITY_OPTIONS),
        "tech_stack": _options(TECH_STACK_OPTIONS),
        "priorities": list(PRIORITY_VALUES),
    }


@app.post("/api/intake/validate", response_model=ValidationResultOut,
          tags=["Intake"], summary="Check a candidate form and report every violation")
async def validate_form(body: dict[str, Any]):
    result = validate_intake(body)
    return {"ok": result.ok, "errors": [{"field": e.field, "message": e.message} for e in result.errors]}


class IntakeFormListResponse(BaseModel):
    items: list[IntakeFormOut]
    total: int


@app.get("/api/intake/forms", response_model=IntakeFormListResponse,
         tags=["Intake"], summary="List intake forms with filtering, sorting, and pagination")
async def list_forms(
    status: str | None = Query(None, description="Comma-separated statuses, e.g. submitted,under-review"),
    priority: str | None = Query(None, description="Comma-separated: low, medium, high, urgent"),
    project_type: str | None = Query(None, description="Comma-separated project types"),
    search: str | None = Query(None, description="Free-text search across project, contact, company and description"),
    user_id: str | None = Query(None, description="Only forms owned by this user"),
    sort_by: str = Query("created_at", description="Sort field: created_at, score, priority, name"),
    sort_dir: str = Query("desc", description="asc or desc"),
    page: int = Query(1, ge=1),
    per_page: int = Query(50, ge=1, le=500),
    session: Session = Depends(db_session),
    actions: IntakeActions = Depends(get_actions),
):
    items = services.filter_and_sort(
        actions.list_forms(session, user_id),
        status=status, priority=priority, project_type=project_type, search=search,
        sort_by=sort_by, sort_dir=sort_dir,
    )
    start = (page - 1) * per_page
    return {"items": items[start:start + per_page], "total": len(items)}


@app.post("/api/intake/forms", tags=["Intake"], summary="Create an intake form without scoring it")
async def create_form(
    body: dict[str, Any], session: Session = Depends(db_session),
    actions: IntakeActions = Depends(get_actions),
):
    return _respond(await actions.create(session, body), status_code=201)


@app.post("/api/intake/submit", tags=["Intake", "Scoring"],
          summary="Validate, store and AI-score a new intake form")
async def submit_form(
    body: dict[str, Any], session: Session = Depends(db_session),
    actions: IntakeActions = Depends(get_actions), scorer: Scorer = Depends(get_scorer),
):
    return _respond(await actions.submit(session, body, scorer), status_code=201)


@app.get("/api/intake/forms/{form_id}", response_model=IntakeFormOut,
         tags=["Intake"], summary="Get one intake form")
async def get_form(
    form_id: str, session: Session = Depends(db_session),
    actions: IntakeActions = Depends(get_actions),
):
    try:
        return actions.get_form(session, form_id)
    except RecordNotFoundError as exc:
        raise HTTPException(404, "Intake form not found") from exc


@app.put("/api/intake/forms/{form_id}", tags=["Intake"],
         summary="Update intake form fields (partial update; a status change is checked against the workflow)")
async def update_form(
    form_id: str, body: IntakeFormUpdate, session: Session = Depends(db_session),
    actions: IntakeActions = Depends(get_actions),
):
    return _respond(await actions.update(session, form_id, body))


@app.delete("/api/intake/forms/{form_id}", tags=["Intake"], summary="Delete an intake form and its score")
async def delete_form(
    form_id: str, session: Session = Depends(db_session),
    actions: IntakeActions = Depends(get_actions),
):
    return _respond(await actions.delete(session, form_id))


# ---------------------------------------------------------------------------
# Routes: Workflow
# ---------------------------------------------------------------------------


@app.get("/api/intake/forms/{form_id}/transitions", tags=["Workflow"],
         summary="Statuses the form can move to next")
async def list_transitions(
    form_id: str, session: Session = Depends(db_session),
    actions: IntakeActions = Depends(get_actions),
):
    try:
        form = actions.get_form(session, form_id)
    except RecordNotFoundError as exc:
        raise HTTPException(404, "Intake form not found") from exc
    return {
        "status": form["status"],
        "allowed": [s.value for s in state_machine.allowed_targets(form["status"], Actor.REVIEWER)],
    }


@app.post("/api/intake/forms/{form_id}/status", tags=["Workflow"], summary="Move an intake form to a new status")
async def transition_form(
    form_id: str, body: TransitionRequest, session: Session = Depends(db_session),
    actions: IntakeActions = Depends(get_actions),
):
    return _respond(await actions.transition(session, form_id, body.status, Actor.REVIEWER))


# ---------------------------------------------------------------------------
# Routes: Scoring
# ---------------------------------------------------------------------------


@app.post("/api/intake/forms/{form_id}/score", tags=["Scoring"], summary="Re-run AI scoring for a form")
async def rescore_form(
    form_id: str, session: Session = Depends(db_session),
    actions: IntakeActions = Depends(get_actions), scorer: Scorer = Depends(get_scorer),
):
    return _respond(await actions.rescore(session, form_id, scorer))


@app.get("/api/intake/forms/{form_id}/score", response_model=IntakeScoreOut,
         tags=["Scoring"], summary="Get the AI score of a form")
async def get_score(
    form_id: str, session: Session = Depends(db_session),
    actions: IntakeActions = Depends(get_actions),
):
    score = actions.get_score(session, form_id)
    if score is None:
        raise HTTPException(404, "Intake score not found")
    return score


@app.put("/api/intake/scores/{score_id}", tags=["Scoring"], summary="Adjust a stored score (partial update)")
async def update_score(
    score_id: str, body: IntakeScoreUpdate, session: Session = Depends(db_session),
    actions: IntakeActions = Depends(get_actions),
):
    return _respond(await actions.update_score(session, score_id, body))


# ---------------------------------------------------------------------------
# Routes: Stats & Notifications
# ---------------------------------------------------------------------------


@app.get("/api/intake/stats", response_model=StatsOut,
         tags=["Stats"], summary="Get aggregate statistics and breakdowns")
async def get_stats(session: Session = Depends(db_session)):
    return services.compute_stats(session)


@app.get("/api/notifications", tags=["Notifications"], summary="Recent notifications, newest first")
async def list_notifications(
    limit: int = Query(20, ge=1, le=100), actions: IntakeActions = Depends(get_actions),
):
    return actions.notifier.recent(limit)


# ---------------------------------------------------------------------------
# Routes: Auth
# ---------------------------------------------------------------------------


class SignInRequest(BaseModel):
    email: EmailStr
    password: str


class SignUpRequest(BaseModel):
    email: EmailStr
    password: str
    confirm_password: str
    name: str | None = None
    company: str | None = None


class EmailRequest(BaseModel):
    email: EmailStr


class PasswordResetConfirmRequest(BaseModel):
    password: str
    access_token: str | None = None


class TokenRequest(BaseModel):
    token: str


class SetSessionRequest(BaseModel):
    access_token: str
    refresh_token: str | None = None


def _auth_respond(result: AuthResponse | PasswordResetResponse) -> JSONResponse:
    status_code = 200
    if not result.success:
        network = result.error is not None and result.error.kind == AuthErrorKind.NETWORK
        status_code = 502 if network else 400
    return JSONResponse(jsonable_encoder(result.to_dict()), status_code=status_code)


@app.post("/api/auth/signin", tags=["Auth"], summary="Sign in with email and password")
async def sign_in(body: SignInRequest, auth: AuthClient = Depends(get_auth_client)):
    return _auth_respond(await auth.sign_in_with_password(body.email, body.password))


@app.post("/api/auth/signup", tags=["Auth"], summary="Create an account")
async def sign_up(body: SignUpRequest, auth: AuthClient = Depends(get_auth_client)):
    return _auth_respond(await auth.sign_up_with_password(
        body.email, body.password, body.confirm_password, name=body.name, company=body.company,
    ))


@app.post("/api/auth/signout", tags=["Auth"], summary="Revoke the bearer token")
async def sign_out(token: str | None = Depends(bearer_token), auth: AuthClient = Depends(get_auth_client)):
    if token is None:
        return _auth_respond(AuthResponse(success=True))
    return _auth_respond(await auth.sign_out(access_token=token))


@app.get("/api/auth/user", tags=["Auth"], summary="The user behind the bearer token, or null")
async def current_user(token: str | None = Depends(bearer_token), auth: AuthClient = Depends(get_auth_client)):
    if token is None:
        return None
    return jsonable_encoder(await auth.get_user(token))


@app.get("/api/auth/session", tags=["Auth"], summary="Session for the bearer token (refreshed if rejected), or null")
async def current_session(
    token: str | None = Depends(bearer_token),
    refresh_token: str | None = Header(None, alias="X-Refresh-Token"),
    auth: AuthClient = Depends(get_auth_client),
):
    if token is None:
        return None
    return jsonable_encoder(await auth.resolve_session(token, refresh_token))


@app.post("/api/auth/session", tags=["Auth"], summary="Check tokens from an OAuth or recovery redirect")
async def set_session(body: SetSessionRequest, auth: AuthClient = Depends(get_auth_client)):
    return _auth_respond(await auth.set_session(body.access_token, body.refresh_token, persist=False))


@app.post("/api/auth/password-reset", tags=["Auth"], summary="Email a password reset link")
async def password_reset(body: EmailRequest, auth: AuthClient = Depends(get_auth_client)):
    return _auth_respond(await auth.request_password_reset(body.email))


@app.post("/api/auth/password-reset/confirm", tags=["Auth"], summary="Set a new password")
async def password_reset_confirm(
    body: PasswordResetConfirmRequest,
    token: str | None = Depends(bearer_token),
    auth: AuthClient = Depends(get_auth_client),
):
    return _auth_respond(await auth.confirm_password_reset(
        body.password, body.access_token or token, use_current_session=False,
    ))


@app.post("/api/auth/verify-email", tags=["Auth"], summary="Confirm an email address with its token")
async def verify_email(body: TokenRequest, auth: AuthClient = Depends(get_auth_client)):
    return _auth_respond(await auth.verify_email(body.token))


@app.post("/api/auth/resend-verification", tags=["Auth"], summary="Send the verification email again")
async def resend_verification(body: EmailRequest, auth: AuthClient = Depends(get_auth_client)):
    return _auth_respond(await auth.resend_email_verification(body.email))


@app.get("/api/auth/oauth/{provider}", tags=["Auth"], summary="Authorize URL for an OAuth provider")
async def oauth_url(
    provider: str, redirect_to: str | None = Query(None),
    auth: AuthClient = Depends(get_auth_client),
):
    return {"url": await auth.sign_in_with_provider(provider, redirect_to)}


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    uvicorn.run("autopilot.app:app", host="127.0.0.1", port=8001, reload=True)


if __name__ == "__main__":
    main()
