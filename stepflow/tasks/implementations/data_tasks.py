"""Variable, value, log and wait executors."""

import asyncio
import json
from typing import Any, Dict

import structlog

from stepflow.core.exceptions import NonRetriableError, StepFailure
from stepflow.core.utils import format_value, to_finite_number
from stepflow.tasks.base_task import BaseTask

logger = structlog.get_logger(__name__)


class SetVariableTask(BaseTask):
    """Set one or more run variables.

    Config:
        name + value: a single variable
        variables: dict of name -> value (alternative to name/value)
    """

    task_type = "set_variable"
    display_name = "Set Variable"
    description = "Assign run variables"

    async def execute(self, config: Dict[str, Any], runtime_state) -> Any:
        assignments = dict(config.get("variables") or {})
        name = config.get("name") or config.get("variableName")
        if name:
            assignments[name] = config.get("value")
        if not assignments:
            raise NonRetriableError("Missing required config: name or variables")

        for key, value in assignments.items():
            runtime_state.set_variable(key, value)
            runtime_state.trace(f"Set variable {key} = {format_value(value)}")
        return assignments


class ValueTask(BaseTask):
    """Produce a typed constant for property inputs of other nodes.

    Config:
        value: The value (templates already resolved)
        dataType: string | number | int | boolean | json (default: as given)
        variableName: Also store the value under this variable (optional)
    """

    task_type = "value"
    display_name = "Value"
    description = "Typed value source"

    async def execute(self, config: Dict[str, Any], runtime_state) -> Any:
        value = self._coerce(config.get("value"), config.get("dataType"))
        if config.get("variableName"):
            runtime_state.set_variable(config["variableName"].strip(), value)
        return value

    @staticmethod
    def _coerce(value: Any, data_type: Any) -> Any:
        if data_type in (None, "", "any"):
            return value
        if data_type == "string":
            return "" if value is None else format_value(value)
        if data_type in ("number", "int"):
            number = to_finite_number(value)
            if number is None:
                return 0
            return int(number) if data_type == "int" or number.is_integer() else number
        if data_type == "boolean":
            if isinstance(value, str):
                return value.strip().lower() in ("true", "1", "yes")
            return bool(value)
        if data_type == "json":
            if isinstance(value, str):
                try:
                    return json.loads(value)
                except json.JSONDecodeError as e:
                    raise NonRetriableError(f"Invalid JSON value: {e}")
            return value
        raise NonRetriableError(f"Unknown dataType: {data_type}")


class LogTask(BaseTask):
    """Write a message to the run's trace and the engine log."""

    task_type = "log"
    display_name = "Log"
    description = "Log a message"

    async def execute(self, config: Dict[str, Any], runtime_state) -> Any:
        message = format_value(config.get("message", ""))
        level = str(config.get("level", "info")).lower()
        if level not in ("debug", "info", "warning", "error"):
            level = "info"
        getattr(logger, level)("Workflow log", message=message)
        runtime_state.trace(message)
        return message


class WaitTask(BaseTask):
    """Wait for a duration, an element state, or a manual resume.

    Config:
        duration: Milliseconds to sleep
        selector + state (+ timeout): wait on the automation session
        pause: true to pause the run after this node until resumed
    """

    task_type = "wait"
    display_name = "Wait"
    description = "Pause for time, an element, or a manual resume"

    async def execute(self, config: Dict[str, Any], runtime_state) -> Any:
        if config.get("pause"):
            return {"pause": True}

        if config.get("selector"):
            session = runtime_state.get_session()
            if session is None:
                raise StepFailure("No automation session available to wait for selector")
            timeout = config.get("timeout", 30000)
            state = config.get("state", "visible")
            runtime_state.trace(f"Waiting for {config['selector']} to be {state}")
            await session.wait_for_selector(config["selector"], state=state, timeout=timeout)
            return {"selector": config["selector"], "state": state}

        duration = to_finite_number(config.get("duration", 0))
        if duration is None or duration < 0:
            raise NonRetriableError(f"Invalid wait duration: {config.get('duration')}")
        await asyncio.sleep(duration / 1000)
        return {"waited_ms": duration}


DATA_TASK_TYPES = {
    "set_variable": SetVariableTask,
    "value": ValueTask,
    "log": LogTask,
    "wait": WaitTask,
}
