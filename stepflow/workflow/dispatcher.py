"""Step dispatcher: resolve, invoke and settle one node.

For every node the dispatcher
1. short-circuits bypassed nodes,
2. finds the executor in the registry (missing type is fatal),
3. resolves ``{{ }}`` templates and property inputs into the config,
4. runs each attempt on a fresh staged view under the node's time budget,
5. applies the node's retry policy, if any,
6. commits the staged writes only when the final outcome is success.
"""

import asyncio
import time
from typing import Any, Callable, Optional

import structlog

from stepflow.config import get_settings
from stepflow.core.constants import PROPERTY_SLOT_SUFFIX
from stepflow.core.exceptions import ExecutorNotFoundError, FatalRunError, StepFailure, TimeoutFailure
from stepflow.core.utils import MISSING, format_value, truncate
from stepflow.tasks.base_task import StepResult
from stepflow.tasks.registry import TaskRegistry, get_task_registry
from stepflow.workflow.conditions import ConditionEvaluator
from stepflow.workflow.context import StagedState
from stepflow.workflow.expressions import resolve_config
from stepflow.workflow.graph import Graph, Node
from stepflow.workflow.retry_strategies import run_with_policy

logger = structlog.get_logger(__name__)


def _trace(runtime_state, message: str) -> None:
    trace = getattr(runtime_state, "trace", None)
    if trace is not None:
        trace(message)


def property_name(slot: str) -> str:
    """``url-input`` -> ``url``."""
    if slot.endswith(PROPERTY_SLOT_SUFFIX):
        return slot[: -len(PROPERTY_SLOT_SUFFIX)]
    return slot


class StepDispatcher:
    """Dispatches the nodes of one graph.

    Keeps the outputs of successful nodes so property inputs can read them.
    """

    def __init__(
        self,
        graph: Graph,
        task_registry: Optional[TaskRegistry] = None,
        evaluator: Optional[ConditionEvaluator] = None,
    ):
        self.graph = graph
        self._task_registry = task_registry or get_task_registry()
        self._evaluator = evaluator or ConditionEvaluator()
        self.outputs: dict[str, Any] = {}
        self._resolving: set[str] = set()

    async def dispatch(
        self,
        node: Node,
        runtime_state,
        on_retry: Optional[Callable] = None,
    ) -> StepResult:
        """Run one node and settle its side effects.

        Raises:
            FatalRunError: unknown node type or an invariant violation
        """
        started = time.monotonic()

        if node.bypass:
            _trace(runtime_state, f"Node {node.id} bypassed")
            return StepResult.success(output={"bypassed": True}, bypassed=True)

        task = self._task_registry.create_instance(node.type)
        if task is None:
            raise ExecutorNotFoundError(node.type)

        try:
            config = await self.resolve_inputs(node, runtime_state)
        except StepFailure as e:
            result = StepResult.failure(e.message, debug_snapshot=e.debug_snapshot, attempts=0)
            return self._settle(node, result, started)

        timeout_ms = node.timeout or get_settings().DEFAULT_STEP_TIMEOUT_MS

        async def attempt(number: int) -> StepResult:
            staged = runtime_state.stage() if hasattr(runtime_state, "stage") else StagedState(runtime_state)
            if number > 1:
                _trace(runtime_state, f"Attempt {number} for node {node.id}")
            try:
                result = await asyncio.wait_for(task.run(config, staged), timeout=timeout_ms / 1000)
            except asyncio.TimeoutError:
                staged.discard()
                error = TimeoutFailure(f"Node {node.id} timed out after {timeout_ms:g}ms", timeout_ms)
                result = StepResult.failure(error.message, timed_out=True)
            result.staged = staged
            return result

        if node.retry is not None:
            result = await run_with_policy(node.retry, attempt, runtime_state, on_retry, self._evaluator)
        else:
            result = await attempt(1)

        return self._settle(node, result, started)

    def _settle(self, node: Node, result: StepResult, started: float) -> StepResult:
        staged, result.staged = result.staged, None

        if result.ok:
            result.side_effects_applied = staged.commit() if staged is not None else False
            self.outputs[node.id] = result.output
        else:
            if staged is not None:
                staged.discard()
            if node.fail_silently:
                result.soft_failure = True

        result.duration_ms = (time.monotonic() - started) * 1000
        logger.debug(
            "Step dispatched",
            node_id=node.id,
            node_type=node.type,
            status=result.status.value,
            attempts=result.attempts,
            soft_failure=result.soft_failure,
        )
        return result

    async def resolve_inputs(self, node: Node, runtime_state) -> dict:
        """Resolved config: templates first, then property-input edges.

        A property input reads the source node's output. Sources that have
        not run yet (value nodes off the control path) are dispatched on
        demand.
        """
        config = resolve_config(dict(node.config), runtime_state)

        for edge in self.graph.property_inputs(node.id):
            prop = property_name(edge.target_slot)
            value = await self._source_value(edge.source, runtime_state)
            if value is MISSING:
                _trace(runtime_state, f"Warning: source value not found for property {prop} from node {edge.source}")
                continue
            config[prop] = value
            _trace(runtime_state, f"Resolved property {prop} = {truncate(format_value(value))}")
        return config

    async def _source_value(self, source_id: str, runtime_state) -> Any:
        if source_id in self.outputs:
            return self.outputs[source_id]

        has_variable = getattr(runtime_state, "has_variable", None)
        if has_variable is not None and has_variable(source_id):
            return runtime_state.get_variable(source_id)

        source = self.graph.get_node(source_id)
        if source is None:
            return MISSING
        if source_id in self._resolving:
            raise FatalRunError(f"Property input cycle through node {source_id}")

        self._resolving.add(source_id)
        try:
            result = await self.dispatch(source, runtime_state)
        finally:
            self._resolving.discard(source_id)

        if not result.ok:
            raise StepFailure(f"Property input source {source_id} failed: {result.error}")
        return result.output
