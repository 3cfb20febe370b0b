"""Helpers for the text-encoded ``*_json`` columns."""
from __future__ import annotations

import json
from typing import Any


def json_parse(value: str | None, default: Any) -> Any:
    """Decode a ``*_json`` column.

    Returns *default* when the text is empty, malformed, or decodes to a
    different container type than *default* (a list column holding a dict).
    """
    try:
        parsed = json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return default
    if default is not None and not isinstance(parsed, type(default)):
        return default
    return parsed


def json_dump(value: Any, default: Any) -> str:
    """Encode *value* for a ``*_json`` column, storing *default* in place of None."""
    return json.dumps(default if value is None else value)
