"""Tests for the condition evaluator."""

import pytest

from stepflow.core.exceptions import ConditionEvaluationError
from stepflow.workflow.conditions import (
    ConditionEvaluator,
    MatchOperator,
    ResponseBodyPathCondition,
    ScriptedExpressionCondition,
    VariableComparisonCondition,
    evaluate_condition,
    parse_condition,
)
from stepflow.workflow.context import RuntimeState


@pytest.fixture
def evaluator():
    return ConditionEvaluator()


@pytest.mark.unit
class TestParseCondition:
    def test_parses_camel_case_payload(self):
        condition = parse_condition(
            {"type": "variableComparison", "variableName": "count", "comparisonOperator": "greaterThan",
             "comparisonValue": 5}
        )
        assert isinstance(condition, VariableComparisonCondition)
        assert condition.variable_name == "count"

    def test_legacy_tags_are_mapped(self):
        condition = parse_condition({"type": "javascript", "javascriptExpression": "1 + 1 == 2"})
        assert isinstance(condition, ScriptedExpressionCondition)
        assert condition.expression == "1 + 1 == 2"

        condition = parse_condition({"type": "api-json-path", "jsonPath": "a.b", "expectedValue": 1})
        assert isinstance(condition, ResponseBodyPathCondition)

    def test_unknown_type(self):
        with pytest.raises(ConditionEvaluationError, match="Unknown condition type: bogus"):
            parse_condition({"type": "bogus"})

    def test_missing_type(self):
        with pytest.raises(ConditionEvaluationError, match="Condition type is required"):
            parse_condition({"selector": "#x"})


@pytest.mark.unit
class TestElementState:
    @pytest.mark.asyncio
    async def test_visible_element_passes(self, evaluator, state):
        result = await evaluator.evaluate({"type": "elementState", "selector": "#ready"}, state)
        assert result.passed
        assert result.message == 'Element "#ready" is visible'

    @pytest.mark.asyncio
    async def test_missing_element_times_out(self, evaluator, state):
        result = await evaluator.evaluate(
            {"type": "elementState", "selector": "#missing", "timeout": 50}, state
        )
        assert not result.passed
        assert result.message == 'Element "#missing" was not visible within timeout of 50ms'

    @pytest.mark.asyncio
    async def test_exists_maps_to_attached(self, evaluator, state, session):
        await evaluator.evaluate({"type": "elementState", "selector": "#ready", "elementCheck": "exists"}, state)
        assert session.calls[-1][2] == "attached"

    @pytest.mark.asyncio
    async def test_xpath_selector_is_prefixed(self, evaluator, state, session):
        await evaluator.evaluate(
            {"type": "elementState", "selector": "//div", "selectorType": "xpath", "timeout": 10}, state
        )
        assert session.calls[-1][1] == "xpath=//div"

    @pytest.mark.asyncio
    async def test_requires_session(self, evaluator):
        result = await evaluator.evaluate({"type": "elementState", "selector": "#ready"}, RuntimeState())
        assert not result.passed
        assert "No automation session available" in result.message

    @pytest.mark.asyncio
    async def test_requires_selector(self, evaluator, state):
        result = await evaluator.evaluate({"type": "elementState"}, state)
        assert not result.passed
        assert "Selector is required" in result.message


@pytest.mark.unit
class TestResponseConditions:
    @pytest.mark.asyncio
    async def test_status_matches(self, evaluator, state):
        result = await evaluator.evaluate({"type": "responseStatus", "statusCode": "200"}, state)
        assert result.passed

    @pytest.mark.asyncio
    async def test_status_mismatch(self, evaluator, state):
        result = await evaluator.evaluate({"type": "responseStatus", "statusCode": 404}, state)
        assert not result.passed
        assert result.message == "Expected status code 404, but got 200"

    @pytest.mark.asyncio
    async def test_missing_response_lists_available_keys(self, evaluator, state):
        result = await evaluator.evaluate(
            {"type": "responseStatus", "apiContextKey": "other", "statusCode": 200}, state
        )
        assert not result.passed
        assert "API response not found in context with key: other" in result.message
        assert "apiResponse" in result.message

    @pytest.mark.asyncio
    async def test_body_path_equals(self, evaluator, state):
        result = await evaluator.evaluate(
            {"type": "responseBodyPath", "jsonPath": "user.name", "expectedValue": "alice"}, state
        )
        assert result.passed

    @pytest.mark.asyncio
    async def test_body_path_case_sensitive(self, evaluator, state):
        result = await evaluator.evaluate(
            {"type": "responseBodyPath", "jsonPath": "user.name", "expectedValue": "alice", "caseSensitive": True},
            state,
        )
        assert not result.passed

    @pytest.mark.asyncio
    async def test_body_path_list_index(self, evaluator, state):
        result = await evaluator.evaluate(
            {"type": "responseBodyPath", "jsonPath": "$.items.1", "expectedValue": 2}, state
        )
        assert result.passed

    @pytest.mark.asyncio
    async def test_body_path_not_found(self, evaluator, state):
        result = await evaluator.evaluate(
            {"type": "responseBodyPath", "jsonPath": "user.email", "expectedValue": "x"}, state
        )
        assert not result.passed
        assert result.message == 'Path "user.email" not found in response body'

    @pytest.mark.asyncio
    async def test_unknown_match_type_falls_back_to_equals(self, evaluator, state):
        result = await evaluator.evaluate(
            {"type": "responseBodyPath", "jsonPath": "user.name", "expectedValue": "Alice", "matchType": "fuzzy"},
            state,
        )
        assert result.passed
        assert result.details["matchType"] == "equals"

    @pytest.mark.asyncio
    async def test_invalid_regex_fails_without_raising(self, evaluator, state):
        result = await evaluator.evaluate(
            {"type": "responseBodyPath", "jsonPath": "user.name", "expectedValue": "(", "matchType": "regex"},
            state,
        )
        assert not result.passed
        assert "Invalid regular expression" in result.message


@pytest.mark.unit
class TestMatchValue:
    def test_operators(self):
        match = ConditionEvaluator.match_value
        assert match("Hello World", "world", MatchOperator.CONTAINS)
        assert match("Hello World", "hello", MatchOperator.STARTS_WITH)
        assert match("Hello World", "WORLD", MatchOperator.ENDS_WITH)
        assert match("order-123", r"order-\d+", MatchOperator.REGEX)
        assert not match("Hello", "hello", MatchOperator.EQUALS, case_sensitive=True)

    def test_booleans_and_null_compare_as_json_text(self):
        match = ConditionEvaluator.match_value
        assert match(True, "true", MatchOperator.EQUALS)
        assert match(None, "null", MatchOperator.EQUALS)
        assert match(2.0, "2", MatchOperator.EQUALS)


@pytest.mark.unit
class TestScriptedExpression:
    @pytest.mark.asyncio
    async def test_context_accessors_run_in_automation_context(self, evaluator, state, session):
        result = await evaluator.evaluate(
            {"type": "scriptedExpression", "expression": 'context.get_variable("name") == "alice"'}, state
        )
        assert result.passed
        assert result.details["surface"] == "automation"
        assert session.calls == []

    @pytest.mark.asyncio
    async def test_other_expressions_run_on_page(self, evaluator, state, session):
        result = await evaluator.evaluate({"type": "scriptedExpression", "expression": "document.title"}, state)
        assert result.passed
        assert session.calls == [("evaluate", "document.title")]

    @pytest.mark.asyncio
    async def test_falsy_page_value_fails(self, evaluator, state):
        result = await evaluator.evaluate({"type": "scriptedExpression", "expression": "window.empty"}, state)
        assert not result.passed
        assert result.message == "Expression evaluated to "

    @pytest.mark.asyncio
    async def test_explicit_surface_overrides_heuristic(self, evaluator, state, session):
        result = await evaluator.evaluate(
            {"type": "scriptedExpression", "expression": "variables.count == '10'", "surface": "automation"},
            state,
        )
        assert result.passed
        assert session.calls == []

    @pytest.mark.asyncio
    async def test_expression_error_is_reported(self, evaluator, state):
        result = await evaluator.evaluate(
            {"type": "scriptedExpression", "expression": "1 / 0", "surface": "automation"}, state
        )
        assert not result.passed
        assert result.message.startswith("Expression evaluation failed")

    @pytest.mark.asyncio
    async def test_page_expression_without_session(self, evaluator):
        result = await evaluator.evaluate(
            {"type": "scriptedExpression", "expression": "document.title"}, RuntimeState()
        )
        assert not result.passed
        assert "No automation session" in result.message


@pytest.mark.unit
class TestVariableComparison:
    @pytest.mark.asyncio
    async def test_numeric_comparison_of_strings(self, evaluator, state):
        # "10" > "9" lexicographically is False; numerically it is True
        state.set_variable("count", "10")
        result = await evaluator.evaluate(
            {"type": "variableComparison", "variableName": "count", "comparisonOperator": "greaterThan",
             "comparisonValue": "9"},
            state,
        )
        assert result.passed

    @pytest.mark.asyncio
    async def test_relational_operator_on_text_fails(self, evaluator, state):
        result = await evaluator.evaluate(
            {"type": "variableComparison", "variableName": "name", "comparisonOperator": "lessThan",
             "comparisonValue": "bob"},
            state,
        )
        assert not result.passed

    @pytest.mark.asyncio
    async def test_digit_separators_are_not_numbers(self, evaluator, state):
        state.set_variable("total", "1_000")
        greater = await evaluator.evaluate(
            {"type": "variableComparison", "variableName": "total", "comparisonOperator": "greaterThan",
             "comparisonValue": 5},
            state,
        )
        equal = await evaluator.evaluate(
            {"type": "variableComparison", "variableName": "total", "comparisonValue": 1000}, state
        )
        assert not greater.passed
        assert not equal.passed

    @pytest.mark.asyncio
    async def test_string_equality(self, evaluator, state):
        result = await evaluator.evaluate(
            {"type": "variableComparison", "variableName": "name", "comparisonValue": "alice"}, state
        )
        assert result.passed
        assert result.details["operator"] == "equals"

    @pytest.mark.asyncio
    async def test_missing_variable(self, evaluator, state):
        result = await evaluator.evaluate(
            {"type": "variableComparison", "variableName": "nope", "comparisonValue": 1}, state
        )
        assert not result.passed
        assert result.message == 'Variable "nope" not found in context'

    @pytest.mark.asyncio
    async def test_evaluation_is_idempotent(self, evaluator, state):
        condition = {"type": "variableComparison", "variableName": "count", "comparisonOperator": "lessThanOrEqual",
                     "comparisonValue": 10}
        first = await evaluator.evaluate(condition, state)
        second = await evaluator.evaluate(condition, state)
        assert first.passed == second.passed
        assert first.message == second.message
        assert state.all_variables() == {"count": "10", "name": "alice"}


@pytest.mark.unit
class TestNeverRaises:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [None, "visible", 42, {"type": "bogus"}, {}])
    async def test_malformed_input(self, payload):
        result = await evaluate_condition(payload, RuntimeState())
        assert result.passed is False
        assert result.message
