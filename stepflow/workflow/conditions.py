"""Condition evaluator shared by switch, verify, loop and retry-until.

Supported condition types:
- elementState: wait for an element to be visible / hidden / attached
- responseStatus: compare a stored API response's status code
- responseBodyPath: match a value at a dot path in a stored response body
- scriptedExpression: truthiness of an expression (automation or page surface)
- variableComparison: compare a run variable against a value

Evaluation never raises. Malformed input, missing collaborators and errors
raised while evaluating all come back as ``passed=False`` with a message.
"""

import asyncio
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

import structlog
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from stepflow.config import get_settings
from stepflow.core.constants import DEFAULT_API_CONTEXT_KEY
from stepflow.core.exceptions import ConditionEvaluationError
from stepflow.core.utils import MISSING, format_value, get_nested_value, to_finite_number, to_js_string
from stepflow.workflow.expressions import evaluate_expression, uses_context_accessors

logger = structlog.get_logger(__name__)


class MatchOperator(str, Enum):
    """Body-path match operators."""

    EQUALS = "equals"
    CONTAINS = "contains"
    STARTS_WITH = "startsWith"
    ENDS_WITH = "endsWith"
    REGEX = "regex"


class ComparisonOperator(str, Enum):
    """Variable comparison operators."""

    EQUALS = "equals"
    GREATER_THAN = "greaterThan"
    LESS_THAN = "lessThan"
    GREATER_THAN_OR_EQUAL = "greaterThanOrEqual"
    LESS_THAN_OR_EQUAL = "lessThanOrEqual"


class ExpressionSurface(str, Enum):
    """Where a scripted expression is evaluated."""

    AUTO = "auto"
    AUTOMATION = "automation"
    PAGE = "page"


# Element check -> session wait state
ELEMENT_STATES = {
    "visible": "visible",
    "hidden": "hidden",
    "exists": "attached",
}

# Tags written by older editor versions
LEGACY_CONDITION_TYPES = {
    "ui-element": "elementState",
    "api-status": "responseStatus",
    "api-json-path": "responseBodyPath",
    "javascript": "scriptedExpression",
    "variable": "variableComparison",
}


class ConditionModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )


class ElementStateCondition(ConditionModel):
    type: Literal["elementState"] = "elementState"
    selector: Optional[str] = None
    selector_type: str = "css"
    element_check: str = "visible"
    timeout: Optional[float] = None


class ResponseStatusCondition(ConditionModel):
    type: Literal["responseStatus"] = "responseStatus"
    api_context_key: Optional[str] = None
    status_code: Optional[Any] = None


class ResponseBodyPathCondition(ConditionModel):
    type: Literal["responseBodyPath"] = "responseBodyPath"
    api_context_key: Optional[str] = None
    json_path: Optional[str] = None
    expected_value: Optional[Any] = None
    match_type: Optional[str] = None
    case_sensitive: bool = False


class ScriptedExpressionCondition(ConditionModel):
    type: Literal["scriptedExpression"] = "scriptedExpression"
    expression: Optional[str] = None
    surface: ExpressionSurface = ExpressionSurface.AUTO


class VariableComparisonCondition(ConditionModel):
    type: Literal["variableComparison"] = "variableComparison"
    variable_name: Optional[str] = None
    comparison_operator: Optional[str] = None
    comparison_value: Optional[Any] = None


Condition = Annotated[
    Union[
        ElementStateCondition,
        ResponseStatusCondition,
        ResponseBodyPathCondition,
        ScriptedExpressionCondition,
        VariableComparisonCondition,
    ],
    Field(discriminator="type"),
]

_condition_adapter = TypeAdapter(Condition)


def normalize_condition_payload(payload: Any) -> Any:
    """Map legacy condition tags and field names onto the current ones."""
    if not isinstance(payload, dict):
        return payload
    legacy = LEGACY_CONDITION_TYPES.get(payload.get("type"))
    if legacy is None:
        return payload
    normalized = dict(payload, type=legacy)
    if "javascriptExpression" in normalized and "expression" not in normalized:
        normalized["expression"] = normalized.pop("javascriptExpression")
    return normalized


def parse_condition(payload: Any) -> Condition:
    """Parse a raw condition dict (or pass a model through).

    Raises:
        ConditionEvaluationError: unknown tag or malformed payload
    """
    if isinstance(payload, ConditionModel):
        return payload
    if not isinstance(payload, dict):
        raise ConditionEvaluationError("Condition must be an object with a 'type'")
    if "type" not in payload:
        raise ConditionEvaluationError("Condition type is required")
    try:
        return _condition_adapter.validate_python(normalize_condition_payload(payload))
    except PydanticValidationError as e:
        if any(err.get("type") == "union_tag_invalid" for err in e.errors()):
            raise ConditionEvaluationError(f"Unknown condition type: {payload.get('type')}")
        raise ConditionEvaluationError(f"Invalid condition: {e.errors()[0].get('msg')}")


@dataclass
class ConditionResult:
    """Outcome of one condition evaluation."""

    passed: bool
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"passed": self.passed, "message": self.message, "details": self.details}


def _has_variable(runtime_state, name: str) -> bool:
    has = getattr(runtime_state, "has_variable", None)
    if has is not None:
        return has(name)
    return runtime_state.get_variable(name) is not None


def _read_field(obj: Any, *names: str) -> Any:
    for name in names:
        if isinstance(obj, dict):
            if name in obj:
                return obj[name]
        elif hasattr(obj, name):
            return getattr(obj, name)
    return MISSING


def _is_timeout(error: Exception) -> bool:
    return isinstance(error, (asyncio.TimeoutError, TimeoutError)) or "timeout" in type(error).__name__.lower()


class ConditionEvaluator:
    """Evaluates conditions against a runtime state.

    Stateless; one instance can be shared by every run.
    """

    async def evaluate(self, condition: Any, runtime_state) -> ConditionResult:
        try:
            parsed = parse_condition(condition)
            if isinstance(parsed, ElementStateCondition):
                result = await self._element_state(parsed, runtime_state)
            elif isinstance(parsed, ResponseStatusCondition):
                result = self._response_status(parsed, runtime_state)
            elif isinstance(parsed, ResponseBodyPathCondition):
                result = self._response_body_path(parsed, runtime_state)
            elif isinstance(parsed, ScriptedExpressionCondition):
                result = await self._scripted_expression(parsed, runtime_state)
            else:
                result = self._variable_comparison(parsed, runtime_state)
        except ConditionEvaluationError as e:
            result = ConditionResult(passed=False, message=e.message)
        except Exception as e:
            result = ConditionResult(
                passed=False,
                message=f"Condition evaluation failed: {e}",
                details={"error": str(e)},
            )

        logger.debug("Condition evaluated", passed=result.passed, message=result.message)
        return result

    # ── elementState ──

    async def _element_state(self, condition: ElementStateCondition, runtime_state) -> ConditionResult:
        if not condition.selector:
            return ConditionResult(False, "Selector is required for element state condition")

        session = runtime_state.get_session()
        if session is None:
            return ConditionResult(
                False, "No automation session available. Open a browser session before checking elements."
            )

        timeout = condition.timeout or get_settings().DEFAULT_CONDITION_TIMEOUT_MS
        check = condition.element_check if condition.element_check in ELEMENT_STATES else "visible"
        selector = condition.selector
        if condition.selector_type == "xpath" and not selector.startswith("xpath="):
            selector = f"xpath={selector}"

        details = {"selector": condition.selector, "elementCheck": check, "timeout": timeout}
        try:
            await asyncio.wait_for(
                session.wait_for_selector(selector, state=ELEMENT_STATES[check], timeout=timeout),
                timeout=timeout / 1000,
            )
        except Exception as e:
            if _is_timeout(e):
                return ConditionResult(
                    False,
                    f'Element "{condition.selector}" was not {check} within timeout of {timeout:g}ms',
                    details,
                )
            return ConditionResult(False, f"Element state check failed: {e}", {**details, "error": str(e)})

        return ConditionResult(True, f'Element "{condition.selector}" is {check}', details)

    # ── responseStatus ──

    def _get_response(self, api_context_key: Optional[str], runtime_state) -> tuple[str, Any]:
        key = api_context_key or DEFAULT_API_CONTEXT_KEY
        response = runtime_state.get_data(key)
        if response is None:
            available = ", ".join(runtime_state.all_data()) or "none"
            raise ConditionEvaluationError(
                f"API response not found in context with key: {key}. Available keys: {available}"
            )
        return key, response

    def _response_status(self, condition: ResponseStatusCondition, runtime_state) -> ConditionResult:
        if condition.status_code is None:
            return ConditionResult(False, "Status code is required for response status condition")

        key, response = self._get_response(condition.api_context_key, runtime_state)
        actual = _read_field(response, "status", "status_code", "statusCode")
        expected_number = to_finite_number(condition.status_code)
        actual_number = to_finite_number(None if actual is MISSING else actual)
        passed = expected_number is not None and actual_number is not None and actual_number == expected_number

        details = {"apiContextKey": key, "expected": condition.status_code, "actual": format_value(actual)}
        if passed:
            return ConditionResult(
                True, f"Response status {format_value(actual)} matches expected {condition.status_code}", details
            )
        return ConditionResult(
            False, f"Expected status code {condition.status_code}, but got {format_value(actual)}", details
        )

    # ── responseBodyPath ──

    def _response_body_path(self, condition: ResponseBodyPathCondition, runtime_state) -> ConditionResult:
        if not condition.json_path:
            return ConditionResult(False, "JSON path is required for response body path condition")
        if condition.expected_value is None:
            return ConditionResult(False, "Expected value is required for response body path condition")

        try:
            operator = MatchOperator(condition.match_type)
        except ValueError:
            operator = MatchOperator.EQUALS

        key, response = self._get_response(condition.api_context_key, runtime_state)
        body = _read_field(response, "body", "data")
        actual = MISSING if body is MISSING else get_nested_value(body, condition.json_path)

        details = {"apiContextKey": key, "jsonPath": condition.json_path, "matchType": operator.value}
        if actual is MISSING:
            return ConditionResult(False, f'Path "{condition.json_path}" not found in response body', details)

        details["actual"] = actual
        passed = self.match_value(actual, condition.expected_value, operator, condition.case_sensitive)
        if passed:
            return ConditionResult(
                True,
                f'Path "{condition.json_path}" has value "{format_value(actual)}" '
                f'matching expected "{format_value(condition.expected_value)}"',
                details,
            )
        return ConditionResult(
            False,
            f'Path "{condition.json_path}" has value "{format_value(actual)}" but expected '
            f'"{format_value(condition.expected_value)}" (match type: {operator.value})',
            details,
        )

    @staticmethod
    def match_value(actual: Any, expected: Any, operator: MatchOperator, case_sensitive: bool = False) -> bool:
        """String-based match; an invalid regex raises ConditionEvaluationError."""
        actual_text = to_js_string(actual)
        expected_text = to_js_string(expected)

        if operator == MatchOperator.REGEX:
            flags = 0 if case_sensitive else re.IGNORECASE
            try:
                return re.search(expected_text, actual_text, flags) is not None
            except re.error as e:
                raise ConditionEvaluationError(f"Invalid regular expression '{expected_text}': {e}")

        if not case_sensitive:
            actual_text = actual_text.lower()
            expected_text = expected_text.lower()

        if operator == MatchOperator.CONTAINS:
            return expected_text in actual_text
        if operator == MatchOperator.STARTS_WITH:
            return actual_text.startswith(expected_text)
        if operator == MatchOperator.ENDS_WITH:
            return actual_text.endswith(expected_text)
        return actual_text == expected_text

    # ── scriptedExpression ──

    async def _scripted_expression(self, condition: ScriptedExpressionCondition, runtime_state) -> ConditionResult:
        expression = condition.expression
        if not expression or not expression.strip():
            return ConditionResult(False, "Expression is required for scripted expression condition")

        surface = condition.surface
        if surface == ExpressionSurface.AUTO:
            surface = ExpressionSurface.AUTOMATION if uses_context_accessors(expression) else ExpressionSurface.PAGE

        details: dict[str, Any] = {"expression": expression, "surface": surface.value}
        try:
            if surface == ExpressionSurface.AUTOMATION:
                value = evaluate_expression(expression, runtime_state)
            else:
                session = runtime_state.get_session()
                if session is None:
                    return ConditionResult(
                        False,
                        "No automation session available to evaluate page expression",
                        details,
                    )
                value = await session.evaluate(expression)
        except Exception as e:
            return ConditionResult(False, f"Expression evaluation failed: {e}", {**details, "error": str(e)})

        passed = bool(value)
        details["result"] = value
        if passed:
            return ConditionResult(True, "Expression evaluated to true", details)
        return ConditionResult(False, f"Expression evaluated to {format_value(value)}", details)

    # ── variableComparison ──

    def _variable_comparison(self, condition: VariableComparisonCondition, runtime_state) -> ConditionResult:
        name = condition.variable_name
        if not name:
            return ConditionResult(False, "Variable name is required for variable comparison condition")
        if not _has_variable(runtime_state, name):
            return ConditionResult(False, f'Variable "{name}" not found in context')
        if condition.comparison_value is None:
            return ConditionResult(False, "Comparison value is required for variable comparison condition")

        try:
            operator = ComparisonOperator(condition.comparison_operator)
        except ValueError:
            operator = ComparisonOperator.EQUALS

        actual = runtime_state.get_variable(name)
        expected = condition.comparison_value
        actual_number = to_finite_number(actual)
        expected_number = to_finite_number(expected)

        if actual_number is not None and expected_number is not None:
            passed = {
                ComparisonOperator.EQUALS: actual_number == expected_number,
                ComparisonOperator.GREATER_THAN: actual_number > expected_number,
                ComparisonOperator.LESS_THAN: actual_number < expected_number,
                ComparisonOperator.GREATER_THAN_OR_EQUAL: actual_number >= expected_number,
                ComparisonOperator.LESS_THAN_OR_EQUAL: actual_number <= expected_number,
            }[operator]
        elif operator == ComparisonOperator.EQUALS:
            passed = to_js_string(actual) == to_js_string(expected)
        else:
            # Relational operators need numbers on both sides
            passed = False

        outcome = "passed" if passed else "failed"
        return ConditionResult(
            passed,
            f'Variable condition {outcome}: "{name}" ({format_value(actual)}) {operator.value} {format_value(expected)}',
            {
                "variableName": name,
                "variableValue": actual,
                "operator": operator.value,
                "comparisonValue": expected,
            },
        )


_evaluator = ConditionEvaluator()


async def evaluate_condition(condition: Any, runtime_state) -> ConditionResult:
    """Evaluate with the shared evaluator."""
    return await _evaluator.evaluate(condition, runtime_state)
