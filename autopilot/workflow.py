"""Intake state machine: validates status transitions for an intake form.

Forward path::

    submitted -> under-review -> qualified -> scheduled -> completed
                              \\-> disqualified

``archived`` is reachable from every other state and is final.
"""
from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum


class IntakeStatus(str, Enum):
    SUBMITTED = "submitted"
    UNDER_REVIEW = "under-review"
    QUALIFIED = "qualified"
    DISQUALIFIED = "disqualified"
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    ARCHIVED = "archived"


class Actor(str, Enum):
    SYSTEM = "system"      # automatic: scoring finished, meeting ended
    REVIEWER = "reviewer"  # manual dashboard action


class InvalidTransitionError(Exception):
    """Raised when an intake status transition is not allowed."""

    def __init__(self, current_status: IntakeStatus, target_status: IntakeStatus, reason: str):
        self.current_status = current_status
        self.target_status = target_status
        self.reason = reason
        super().__init__(
            f"Invalid transition from {current_status.value} to {target_status.value}: {reason}"
        )


S = IntakeStatus
A = Actor

# from_status -> {to_status: allowed actors}
TRANSITION_MAP: dict[IntakeStatus, dict[IntakeStatus, set[Actor]]] = {
    S.SUBMITTED: {
        S.UNDER_REVIEW: {A.SYSTEM},
    },
    S.UNDER_REVIEW: {
        S.QUALIFIED: {A.REVIEWER},
        S.DISQUALIFIED: {A.REVIEWER},
    },
    S.QUALIFIED: {
        S.SCHEDULED: {A.REVIEWER},
    },
    S.SCHEDULED: {
        S.COMPLETED: {A.REVIEWER, A.SYSTEM},
    },
}

ARCHIVE_ACTORS: set[Actor] = {A.REVIEWER}

TERMINAL_STATES: set[IntakeStatus] = {S.DISQUALIFIED, S.COMPLETED, S.ARCHIVED}

INITIAL_STATUS = S.SUBMITTED


def _coerce(status: IntakeStatus | str) -> IntakeStatus:
    return status if isinstance(status, IntakeStatus) else IntakeStatus(status)


class IntakeStateMachine:
    """Validates intake status transitions and applies them to a form."""

    def validate_transition(
        self,
        current_status: IntakeStatus | str,
        target_status: IntakeStatus | str,
        actor: Actor | str = A.REVIEWER,
    ) -> bool:
        """Return True if the transition is valid. Raise InvalidTransitionError if not."""
        current = _coerce(current_status)
        target = _coerce(target_status)
        actor = actor if isinstance(actor, Actor) else Actor(actor)

        if current == S.ARCHIVED:
            raise InvalidTransitionError(current, target, "archived intake forms cannot change status")

        if target == S.ARCHIVED:
            if actor not in ARCHIVE_ACTORS:
                raise InvalidTransitionError(current, target, f"Actor {actor.value} cannot archive")
            return True

        if current in TERMINAL_STATES:
            raise InvalidTransitionError(
                current, target, f"{current.value} is a terminal status; it can only be archived",
            )
        allowed_targets = TRANSITION_MAP[current]
        if target not in allowed_targets:
            raise InvalidTransitionError(
                current, target, f"Transition from {current.value} to {target.value} is not allowed",
            )
        allowed_actors = allowed_targets[target]
        if actor not in allowed_actors:
            raise InvalidTransitionError(
                current, target,
                f"Actor {actor.value} is not permitted for this transition "
                f"(allowed: {', '.join(sorted(a.value for a in allowed_actors))})",
            )
        return True

    def can_transition(
        self,
        current_status: IntakeStatus | str,
        target_status: IntakeStatus | str,
        actor: Actor | str = A.REVIEWER,
    ) -> bool:
        try:
            return self.validate_transition(current_status, target_status, actor)
        except InvalidTransitionError:
            return False

    def allowed_targets(self, current_status: IntakeStatus | str, actor: Actor | str | None = None) -> list[IntakeStatus]:
        """List the statuses reachable from *current_status*, optionally for one actor."""
        actors = list(Actor) if actor is None else [actor]
        return [
            target for target in IntakeStatus
            if any(self.can_transition(current_status, target, a) for a in actors)
        ]

    def apply_transition(
        self,
        form,
        target_status: IntakeStatus | str,
        actor: Actor | str = A.REVIEWER,
        now: datetime | None = None,
    ) -> IntakeStatus:
        """Validate, then move *form* to *target_status*.

        Nothing on *form* is touched when the transition is rejected.
        """
        target = _coerce(target_status)
        self.validate_transition(form.status, target, actor)
        stamp = (now or datetime.now(UTC)).replace(tzinfo=None)
        if target == S.SCHEDULED and getattr(form, "meeting_scheduled_at", None) is None:
            form.meeting_scheduled_at = stamp
        if target == S.COMPLETED and getattr(form, "meeting_completed_at", None) is None:
            form.meeting_completed_at = stamp
        form.status = target.value
        return target


state_machine = IntakeStateMachine()
