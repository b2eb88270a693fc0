"""
Value coercion for loosely-typed record fields.

Airtable automations and no-code callers send the same logical value in many
shapes: plain strings, lists of linked records, select options as
``{"name": ...}`` objects, numbers. This module collapses them all into a
single canonical scalar: a non-empty stripped string, or None.
"""

import json
import math
from collections.abc import Mapping
from typing import Any, Optional


def _coerce_text(value: str) -> Optional[str]:
    text = value.strip()
    return text or None


def _coerce_number(value: Any) -> Optional[str]:
    if isinstance(value, float):
        if not math.isfinite(value):
            return None
        if value.is_integer():
            return str(int(value))
        return repr(value)
    return str(value)


def _is_number(value: Any) -> bool:
    # bool is an int subclass but JSON booleans are not numbers here
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _serialize(value: Any) -> Optional[str]:
    try:
        text = json.dumps(value, ensure_ascii=False, separators=(",", ":"))
    except (TypeError, ValueError, RecursionError):
        return None
    return _coerce_text(text)


def _coerce_mapping(value: Mapping) -> Optional[str]:
    for key in ("name", "value"):
        candidate = value.get(key)
        if isinstance(candidate, str):
            text = _coerce_text(candidate)
            if text is not None:
                return text
    return _serialize(value)


def coerce(value: Any) -> Optional[str]:
    """
    Coerce an arbitrary JSON value to a canonical string or None.

    Rules:
    1. None -> None
    2. str -> stripped, empty collapses to None
    3. list/tuple -> only the first element is inspected
    4. mapping -> "name", then "value", then compact JSON
    5. int/float -> decimal string
    6. anything else (bool included) -> None

    Never raises.

    Examples:
        >>> coerce("  Acme  ")
        'Acme'
        >>> coerce([{"name": "In Progress"}, {"name": "Done"}])
        'In Progress'
        >>> coerce({"value": "x"})
        'x'
        >>> coerce(42)
        '42'
        >>> coerce("   ") is None
        True
    """
    if value is None:
        return None

    if isinstance(value, str):
        return _coerce_text(value)

    if isinstance(value, (list, tuple)):
        if not value:
            return None
        first = value[0]
        if isinstance(first, Mapping):
            return _coerce_mapping(first)
        if isinstance(first, str):
            return _coerce_text(first)
        if _is_number(first):
            return _coerce_number(first)
        return None

    if isinstance(value, Mapping):
        return _coerce_mapping(value)

    if _is_number(value):
        return _coerce_number(value)

    return None
