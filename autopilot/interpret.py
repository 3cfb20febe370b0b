"""Map an overall qualification score (0-100) to labels, colors and priority.

The label bands (90/80/70/60/40) and the color bands (80/60/40) do not
line up.  Both tables are kept exactly as the dashboard has always shown
them; see DESIGN.md before changing either one.
"""
from __future__ import annotations

LABEL_BANDS: tuple[tuple[float, str], ...] = (
    (90, "Excellent"),
    (80, "Very Good"),
    (70, "Good"),
    (60, "Fair"),
    (40, "Poor"),
)
LOWEST_LABEL = "Very Poor"

COLOR_BANDS: tuple[tuple[float, str], ...] = (
    (80, "green"),
    (60, "yellow"),
    (40, "orange"),
)
LOWEST_COLOR = "red"

# Independent of LABEL_BANDS even though both use 70.
QUALIFIED_THRESHOLD = 70

PRIORITY_BANDS: tuple[tuple[float, str], ...] = (
    (80, "high"),
    (60, "medium"),
)
LOWEST_PRIORITY = "low"

# Set only by reviewers; scoring never overwrites them.
MANUAL_PRIORITIES = frozenset({"urgent"})


def _band(score: float, bands: tuple[tuple[float, str], ...], fallback: str) -> str:
    for threshold, value in bands:
        if score >= threshold:
            return value
    return fallback


def score_label(score: float) -> str:
    return _band(score, LABEL_BANDS, LOWEST_LABEL)


def score_color(score: float) -> str:
    return _band(score, COLOR_BANDS, LOWEST_COLOR)


def is_qualified(score: float) -> bool:
    return score >= QUALIFIED_THRESHOLD


def qualification_label(score: float) -> str:
    """Binary wording used in the submission toast."""
    return "qualified" if is_qualified(score) else "needs review"


def submission_message(score: float) -> str:
    shown = int(score) if float(score).is_integer() else score
    return f"Intake form submitted! AI Score: {shown}/100 ({qualification_label(score)})"


def priority_for_score(score: float) -> str:
    return _band(score, PRIORITY_BANDS, LOWEST_PRIORITY)
