"""Intake reads and mutations with cache synchronisation and notifications.

Each mutation runs the service call, commits, invalidates the affected
cache keys, raises a toast and returns a :class:`MutationResult`.  Nothing
here raises to the caller: failures roll the session back, get logged with
the original error and come back as ``success=False``.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Mapping

from pydantic import ValidationError
from sqlalchemy.orm import Session

from autopilot import services
from autopilot.cache import FORMS_STALE_TIME, QueryCache, intake_keys
from autopilot.interpret import submission_message
from autopilot.notifications import Notifier
from autopilot.schemas import (
    IntakeFormCreate,
    IntakeFormUpdate,
    IntakeScoreUpdate,
    violations_from,
)
from autopilot.scorer import LLMCallError, Scorer
from autopilot.store import RecordNotFoundError
from autopilot.workflow import Actor, IntakeStatus, InvalidTransitionError

log = logging.getLogger(__name__)

GENERIC_ERROR = "Something went wrong. Please try again."


@dataclass
class MutationResult:
    success: bool
    data: Any = None
    error: str | None = None
    error_kind: str | None = None  # validation | not_found | invalid_transition | scoring | remote
    message: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)


def _classify(exc: Exception) -> tuple[str, str]:
    """Map an exception to (error_kind, user-facing text)."""
    if isinstance(exc, ValidationError):
        fields = ", ".join(v.field for v in violations_from(exc))
        return "validation", f"Invalid fields: {fields}"
    if isinstance(exc, RecordNotFoundError):
        return "not_found", "Intake record not found"
    if isinstance(exc, InvalidTransitionError):
        return "invalid_transition", str(exc)
    if isinstance(exc, LLMCallError):
        return "scoring", "AI scoring is unavailable right now. Please try again."
    if isinstance(exc, ValueError):
        return "validation", str(exc)
    return "remote", GENERIC_ERROR


class IntakeActions:
    def __init__(self, cache: QueryCache, notifier: Notifier):
        self.cache = cache
        self.notifier = notifier

    # -- plumbing -----------------------------------------------------------

    def _fail(self, session: Session, verb: str, exc: Exception) -> MutationResult:
        session.rollback()
        kind, text = _classify(exc)
        log.warning("Failed to %s: %s", verb, exc)
        message = f"Failed to {verb}: {text}"
        self.notifier.error(message)
        return MutationResult(success=False, error=text, error_kind=kind, message=message)

    def _ok(self, data: Any, message: str, *invalidate, remove=()) -> MutationResult:
        for key in invalidate:
            self.cache.invalidate(key)
        for key in remove:
            self.cache.remove(key)
        self.notifier.success(message)
        return MutationResult(success=True, data=data, message=message)

    async def _run(self, session: Session, verb: str, fn: Callable[[], Awaitable[Any]]) -> tuple[Any, MutationResult | None]:
        try:
            value = await fn()
            session.commit()
            return value, None
        except Exception as exc:
            return None, self._fail(session, verb, exc)

    # -- reads ----------------------------------------------------------------

    def list_forms(self, session: Session, user_id: str | None = None) -> list[dict]:
        key = intake_keys.forms() if user_id is None else intake_keys.forms_by_user(user_id)
        return self.cache.fetch(
            key,
            lambda: [services.form_summary(f) for f in services.list_forms(session, user_id)],
            stale_time=FORMS_STALE_TIME,
        )

    def get_form(self, session: Session, form_id: str) -> dict:
        return self.cache.fetch(
            intake_keys.form(form_id),
            lambda: services.form_summary(services.get_form(session, form_id)),
        )

    def get_score(self, session: Session, form_id: str) -> dict | None:
        def _load():
            score = services.get_score(session, form_id)
            return services.score_summary(score) if score else None
        return self.cache.fetch(intake_keys.score(form_id), _load)

    # -- mutations ------------------------------------------------------------

    async def create(self, session: Session, data: IntakeFormCreate | Mapping[str, Any]) -> MutationResult:
        async def op():
            payload = data if isinstance(data, IntakeFormCreate) else IntakeFormCreate.model_validate(dict(data))
            return services.form_summary(services.create_form(session, payload))

        form, failed = await self._run(session, "create intake form", op)
        if failed:
            return failed
        return self._ok(form, "Intake form created successfully", intake_keys.forms())

    async def submit(
        self, session: Session, data: IntakeFormCreate | Mapping[str, Any], scorer: Scorer,
    ) -> MutationResult:
        async def op():
            payload = data if isinstance(data, IntakeFormCreate) else IntakeFormCreate.model_validate(dict(data))
            form, score = await services.submit_form(session, payload, scorer)
            return {"form": services.form_summary(form), "score": services.score_summary(score)}

        result, failed = await self._run(session, "submit intake form", op)
        if failed:
            return failed
        return self._ok(
            result, submission_message(result["score"]["overall_score"]),
            intake_keys.forms(), intake_keys.scores(),
        )

    async def update(
        self, session: Session, form_id: str, body: IntakeFormUpdate, actor: Actor | str = Actor.REVIEWER,
    ) -> MutationResult:
        async def op():
            return services.form_summary(services.update_form(session, form_id, body, actor))

        form, failed = await self._run(session, "update intake form", op)
        if failed:
            return failed
        return self._ok(form, "Intake form updated successfully", intake_keys.form(form_id), intake_keys.forms())

    async def delete(self, session: Session, form_id: str) -> MutationResult:
        async def op():
            services.delete_form(session, form_id)

        _, failed = await self._run(session, "delete intake form", op)
        if failed:
            return failed
        return self._ok(
            {"id": form_id}, "Intake form deleted successfully", intake_keys.forms(),
            remove=(intake_keys.form(form_id), intake_keys.score(form_id)),
        )

    async def transition(
        self, session: Session, form_id: str, target: IntakeStatus | str, actor: Actor | str = Actor.REVIEWER,
    ) -> MutationResult:
        async def op():
            return services.form_summary(services.transition_form(session, form_id, target, actor))

        form, failed = await self._run(session, "change intake status", op)
        if failed:
            return failed
        return self._ok(
            form, f"Intake form moved to {form['status']}", intake_keys.form(form_id), intake_keys.forms(),
        )

    async def update_score(self, session: Session, score_id: str, body: IntakeScoreUpdate) -> MutationResult:
        async def op():
            return services.score_summary(services.update_score(session, score_id, body))

        score, failed = await self._run(session, "update intake score", op)
        if failed:
            return failed
        return self._ok(
            score, "Intake score updated successfully",
            intake_keys.scores(), intake_keys.form(score["intake_form_id"]),
        )

    async def rescore(self, session: Session, form_id: str, scorer: Scorer) -> MutationResult:
        async def op():
            form = services.get_form(session, form_id)
            score = await services.run_scoring(session, form, scorer)
            return {"form": services.form_summary(form), "score": services.score_summary(score)}

        result, failed = await self._run(session, "score intake form", op)
        if failed:
            return failed
        return self._ok(
            result, "Intake form re-scored successfully",
            intake_keys.form(form_id), intake_keys.score(form_id), intake_keys.forms(),
        )
