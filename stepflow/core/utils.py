"""
Utility functions for the stepflow engine.

Includes:
- UTC datetime helpers
- Dot-path lookup into nested data
- Value formatting for trace lines
"""

import json
import math
from datetime import datetime, timezone
from typing import Any, Optional


def utc_now() -> datetime:
    """
    Get the current UTC datetime.

    Returns:
        Current datetime in UTC timezone
    """
    return datetime.now(timezone.utc)


class _Missing:
    """Sentinel for a path that does not resolve."""

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING = _Missing()


def get_nested_value(obj: Any, path: str) -> Any:
    """Resolve a dot-notation path like 'data.items.0.name'.

    A leading '$.' (JSONPath root) is tolerated. List segments are integer
    indices. Returns MISSING when any segment does not resolve.
    """
    path = path.strip()
    if path.startswith("$"):
        path = path[1:].lstrip(".")
    if not path:
        return obj

    current = obj
    for part in path.split("."):
        if current is None:
            return MISSING
        if isinstance(current, dict):
            if part not in current:
                return MISSING
            current = current[part]
        elif isinstance(current, (list, tuple)):
            try:
                current = current[int(part)]
            except (ValueError, IndexError):
                return MISSING
        elif hasattr(current, part):
            current = getattr(current, part)
        else:
            return MISSING
    return current


def to_finite_number(value: Any) -> Optional[float]:
    """Coerce a value to a finite float, or None when it does not coerce cleanly.

    Booleans and None are not numbers.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        # float() accepts digit separators; "1_000" is not a clean number
        if "_" in value:
            return None
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def to_js_string(value: Any) -> str:
    """String form used for textual comparisons (true/false/null like JSON)."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def format_value(value: Any) -> str:
    """Format a value for trace/log lines."""
    if value is MISSING:
        return "undefined"
    if isinstance(value, str):
        return value
    return to_js_string(value)


def truncate(text: str, max_length: int = 100) -> str:
    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."
