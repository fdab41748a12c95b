"""Branch, loop, assertion and expression executors.

These executors decide; the run walker acts on their output:
- switch returns the chosen slot id
- loop returns the iteration plan (items, or a doWhile plan)
"""

from typing import Any, Dict

import structlog

from stepflow.config import get_settings
from stepflow.core.constants import DEFAULT_CASE
from stepflow.core.exceptions import NonRetriableError, StepFailure
from stepflow.core.utils import format_value, truncate
from stepflow.tasks.base_task import BaseTask, StepResult
from stepflow.workflow.conditions import ConditionEvaluator, normalize_condition_payload
from stepflow.workflow.expressions import evaluate_expression, uses_context_accessors

logger = structlog.get_logger(__name__)

_evaluator = ConditionEvaluator()


class SwitchTask(BaseTask):
    """Pick an outgoing slot by evaluating cases in declaration order.

    Config:
        cases: [{"id": "ok", "condition": {...}}, ...]
    The first passing case wins; otherwise the "default" slot is chosen.
    """

    task_type = "switch"
    display_name = "Switch"
    description = "Branch on conditions"

    async def execute(self, config: Dict[str, Any], runtime_state) -> Any:
        cases = config.get("cases") or []
        if not isinstance(cases, list):
            raise NonRetriableError("Switch cases must be a list")

        trace = []
        for index, case in enumerate(cases):
            case_id = case.get("id") or f"case-{index}"
            result = await _evaluator.evaluate(case.get("condition"), runtime_state)
            line = f"Case {case_id}: {'passed' if result.passed else 'failed'} ({result.message})"
            trace.append(line)
            runtime_state.trace(line)
            if result.passed:
                runtime_state.set_data("switchOutput", case_id)
                return StepResult.success(output=case_id, trace=trace)

        runtime_state.trace("No case matched, taking default")
        runtime_state.set_data("switchOutput", DEFAULT_CASE)
        return StepResult.success(output=DEFAULT_CASE, trace=trace)


class LoopTask(BaseTask):
    """Resolve a loop's iteration plan.

    Config (forEach):
        mode: "forEach"
        items: list, or a template resolving to one
        arrayVariable: variable (or data key) holding the list, if no items
    Config (doWhile):
        mode: "doWhile"
        condition: condition checked before every iteration
        maxIterations: iteration cap (default from settings)
        update: {variable: expression} evaluated after every iteration
    """

    task_type = "loop"
    display_name = "Loop"
    description = "Iterate a body subgraph"

    async def execute(self, config: Dict[str, Any], runtime_state) -> Any:
        mode = config.get("mode", "forEach")

        if mode == "forEach":
            items = config.get("items")
            source = "items"
            if items is None and config.get("arrayVariable"):
                source = config["arrayVariable"]
                items = runtime_state.get_variable(source)
                if items is None:
                    items = runtime_state.get_data(source)
            if items is None:
                raise NonRetriableError("forEach loop requires items or arrayVariable")
            if isinstance(items, tuple):
                items = list(items)
            if not isinstance(items, list):
                raise StepFailure(f"Loop source {source} is not a list: {truncate(format_value(items))}")
            return {"mode": "forEach", "items": items}

        if mode == "doWhile":
            condition = config.get("condition")
            if not condition:
                raise NonRetriableError("Condition is required for doWhile mode")
            max_iterations = int(config.get("maxIterations") or get_settings().LOOP_MAX_ITERATIONS)
            return {
                "mode": "doWhile",
                "condition": normalize_condition_payload(condition),
                "maxIterations": max_iterations,
                "update": dict(config.get("update") or {}),
            }

        raise NonRetriableError(f'Invalid loop mode: {mode}. Must be either "forEach" or "doWhile"')


class VerifyTask(BaseTask):
    """Assert a condition; a failed check fails the step.

    Config:
        condition: the condition to assert
    """

    task_type = "verify"
    display_name = "Verify"
    description = "Assert a condition"

    async def execute(self, config: Dict[str, Any], runtime_state) -> Any:
        condition = config.get("condition")
        if condition is None:
            raise NonRetriableError("Missing required config: condition")

        result = await _evaluator.evaluate(condition, runtime_state)
        runtime_state.trace(f"Verification {'passed' if result.passed else 'failed'}: {result.message}")
        if not result.passed:
            raise StepFailure(result.message, details=result.details)
        return result.to_dict()


class ScriptTask(BaseTask):
    """Evaluate an expression and store its result.

    Config:
        code: expression to evaluate (required)
        surface: "auto" (default), "automation", or "page" for the session page
        resultKey: data key for the result (default "result")
    """

    task_type = "javascript"
    display_name = "Script"
    description = "Evaluate an expression in the automation context or page"

    async def execute(self, config: Dict[str, Any], runtime_state) -> Any:
        code = config.get("code") or config.get("expression")
        if not code:
            raise NonRetriableError("Code is required for script node")

        surface = config.get("surface", "auto")
        if surface == "auto":
            has_session = runtime_state.get_session() is not None
            surface = "page" if has_session and not uses_context_accessors(code) else "automation"

        try:
            if surface == "page":
                session = runtime_state.get_session()
                if session is None:
                    raise StepFailure("No automation session available for page script")
                result = await session.evaluate(code)
            else:
                result = evaluate_expression(code, runtime_state)
        except StepFailure:
            raise
        except Exception as e:
            raise StepFailure(f"Script execution error: {e}")

        if result is not None:
            runtime_state.set_data(config.get("resultKey", "result"), result)
        return result


FLOW_TASK_TYPES = {
    "switch": SwitchTask,
    "loop": LoopTask,
    "verify": VerifyTask,
    "javascript": ScriptTask,
}
