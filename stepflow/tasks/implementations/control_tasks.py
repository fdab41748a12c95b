"""Entry, terminal and session action executors.

Concrete drivers live outside the engine. ``action`` forwards a named call
to the live automation session so hosts can wire any page method in.
"""

import inspect
from typing import Any, Dict

import structlog

from stepflow.core.exceptions import NonRetriableError, StepFailure
from stepflow.tasks.base_task import BaseTask

logger = structlog.get_logger(__name__)


class StartTask(BaseTask):
    """Entry node. Seeds optional initial variables."""

    task_type = "start"
    display_name = "Start"
    description = "Workflow entry point"

    async def execute(self, config: Dict[str, Any], runtime_state) -> Any:
        for name, value in (config.get("variables") or {}).items():
            runtime_state.set_variable(name, value)
        return None


class EndTask(BaseTask):
    """Terminal node. Reaching it completes the run."""

    task_type = "end"
    display_name = "End"
    description = "Workflow terminal node"

    async def execute(self, config: Dict[str, Any], runtime_state) -> Any:
        return None


class SessionActionTask(BaseTask):
    """Invoke a method on the live automation session.

    Config:
        action: Session method name, e.g. "click" or "goto" (required)
        args: Positional arguments (optional list)
        options: Keyword arguments (optional dict)
        resultKey: Store the call's return value under this data key (optional)
    """

    task_type = "action"
    display_name = "Session Action"
    description = "Call a method on the automation session"

    async def execute(self, config: Dict[str, Any], runtime_state) -> Any:
        action = config.get("action")
        if not action:
            raise NonRetriableError("Missing required config: action")
        if action.startswith("_"):
            raise NonRetriableError(f"Action not allowed: {action}")

        session = runtime_state.get_session()
        if session is None:
            raise StepFailure("No automation session available. Open a browser session first.")

        method = getattr(session, action, None)
        if not callable(method):
            raise NonRetriableError(f"Automation session does not support action: {action}")

        runtime_state.trace(f"Calling session action {action}")
        result = method(*(config.get("args") or []), **(config.get("options") or {}))
        if inspect.isawaitable(result):
            result = await result

        if config.get("resultKey"):
            runtime_state.set_data(config["resultKey"], result)
        return result


CONTROL_TASK_TYPES = {
    "start": StartTask,
    "end": EndTask,
    "action": SessionActionTask,
}
