"""Expression support for the automation context.

Scripted expressions and ``{{ }}`` config templates are plain Python
expressions evaluated against a restricted namespace built from the run's
RuntimeState:

- ``context.get_variable("count") > 3``
- ``context.get_data("apiResponse")["status"] == 200``
- ``{{ variables.user.name }}`` / ``{{ data.apiResponse.body.items[0] }}``
- ``{{ item.id }}`` and ``{{ index }}`` inside loop bodies

Nothing here touches the rendered page; that surface belongs to the
automation session (see conditions.py).
"""

import re
from typing import Any

import structlog

from stepflow.core.utils import MISSING, get_nested_value

logger = structlog.get_logger(__name__)

# Names a scripted expression may use
SAFE_BUILTINS = {
    "True": True, "False": False, "None": None,
    "len": len, "int": int, "float": float, "str": str,
    "bool": bool, "list": list, "dict": dict, "abs": abs,
    "min": min, "max": max, "range": range, "any": any, "all": all,
    "round": round, "sorted": sorted, "isinstance": isinstance,
}

# Accessor calls that mark an expression as automation-context only
ACCESSOR_MARKERS = (
    "context.get_data",
    "context.get_variable",
    "context.getData",
    "context.getVariable",
)

_TEMPLATE_RE = re.compile(r"\{\{\s*(.+?)\s*\}\}")


class _DotDict(dict):
    """Dict that supports attribute-style access for eval expressions."""

    def __getattr__(self, name):
        try:
            return self[name]
        except KeyError:
            alt = name.replace('_', '-')
            if alt in self:
                return self[alt]
            raise AttributeError(f"No key '{name}' or '{alt}'")

    def __setattr__(self, name, value):
        self[name] = value


def _make_dot_dict(obj, _depth=0, _max_depth=50):
    """Recursively convert dicts to _DotDict for eval-friendly access."""
    if _depth >= _max_depth:
        return obj
    if isinstance(obj, dict) and not isinstance(obj, _DotDict):
        return _DotDict({k: _make_dot_dict(v, _depth + 1, _max_depth) for k, v in obj.items()})
    elif isinstance(obj, list):
        return [_make_dot_dict(item, _depth + 1, _max_depth) for item in obj]
    return obj


class ScriptContext:
    """Read-only accessor object exposed to scripted expressions as ``context``."""

    def __init__(self, runtime_state):
        self._state = runtime_state

    def get_data(self, key: str) -> Any:
        return self._state.get_data(key)

    def get_variable(self, key: str) -> Any:
        return self._state.get_variable(key)

    # camelCase spellings used by workflows authored in the editor
    getData = get_data
    getVariable = get_variable

    @property
    def data(self) -> dict:
        return _make_dot_dict(self._state.all_data())

    @property
    def variables(self) -> dict:
        return _make_dot_dict(self._state.all_variables())


def uses_context_accessors(expression: str) -> bool:
    """Heuristic: does the expression read run data/variables through ``context``?"""
    return any(marker in expression for marker in ACCESSOR_MARKERS)


def build_namespace(runtime_state) -> dict:
    """Evaluation namespace for expressions and templates."""
    variables = runtime_state.all_variables()
    return _DotDict({
        "context": ScriptContext(runtime_state),
        "variables": _make_dot_dict(variables),
        "data": _make_dot_dict(runtime_state.all_data()),
        "item": _make_dot_dict(variables.get("item")),
        "index": variables.get("index"),
    })


def evaluate_expression(expression: str, runtime_state) -> Any:
    """Evaluate a Python expression in the automation context.

    Raises whatever the expression raises; callers decide how to report it.
    """
    namespace = build_namespace(runtime_state)
    expr = expression.strip()

    # Simple dot path first (fast path, no eval)
    if expr and all(c.isalnum() or c in "._-" for c in expr):
        value = get_nested_value(namespace, expr)
        if value is not MISSING:
            return value

    return eval(expr, {"__builtins__": SAFE_BUILTINS}, namespace)


def resolve_template(value: str, runtime_state) -> Any:
    """Resolve ``{{ expr }}`` markers in a string.

    A string that is exactly one template yields the raw value; templates
    embedded in text are substituted as strings. Failed expressions are
    left untouched.
    """
    if "{{" not in value:
        return value

    whole = _TEMPLATE_RE.fullmatch(value.strip())
    if whole:
        try:
            return evaluate_expression(whole.group(1), runtime_state)
        except Exception as e:
            logger.warning("Template evaluation failed", template=value, error=str(e))
            return value

    def _substitute(match: re.Match) -> str:
        try:
            result = evaluate_expression(match.group(1), runtime_state)
        except Exception as e:
            logger.warning("Template evaluation failed", template=match.group(0), error=str(e))
            return match.group(0)
        return "" if result is None else str(result)

    return _TEMPLATE_RE.sub(_substitute, value)


def resolve_config(config: Any, runtime_state) -> Any:
    """Recursively resolve all template expressions in a config payload."""
    if isinstance(config, str):
        return resolve_template(config, runtime_state)
    if isinstance(config, dict):
        return {key: resolve_config(value, runtime_state) for key, value in config.items()}
    if isinstance(config, list):
        return [resolve_config(item, runtime_state) for item in config]
    return config
