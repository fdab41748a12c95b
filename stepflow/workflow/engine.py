"""Workflow Execution Engine — graph walker and run manager.

A run walks the graph depth-first from the entry node, following
control-flow edges in declaration order:

- switch nodes continue on the edges leaving the chosen case slot
  (or "default")
- loop nodes walk the subgraph hanging off their "body" slot once per
  iteration, then continue on their "output" edges
- an end node completes the run

Before and after every node the run-state machine checks breakpoints and
pause requests. A hard failure errors the run; a soft failure
(``failSilently``) is recorded and the walk continues.

Usage:
    engine = get_workflow_engine()
    run = engine.start_run(graph, RuntimeState(variables={"user": "alice"}))
    monitor = ExecutionMonitor(run)
    await monitor.wait_for_completion()
"""

import asyncio
from typing import Any, Callable, Optional, Union
from uuid import uuid4

import structlog

from stepflow.config import get_settings
from stepflow.core.constants import BODY_SLOT, BreakpointTiming, DEFAULT_CASE, NodeType, RunStatus
from stepflow.core.exceptions import FatalRunError, RunNotFoundError, RunStopped
from stepflow.core.logging_config import run_context
from stepflow.core.utils import format_value, truncate
from stepflow.tasks.base_task import StepResult
from stepflow.tasks.registry import TaskRegistry
from stepflow.workflow.conditions import ConditionEvaluator
from stepflow.workflow.context import RuntimeState
from stepflow.workflow.dispatcher import StepDispatcher
from stepflow.workflow.expressions import evaluate_expression
from stepflow.workflow.graph import Edge, Graph, Node
from stepflow.workflow.run_state import BreakpointConfig, FailureRecord, RunState, RunStateMachine
from stepflow.workflow.validator import validate_or_raise

logger = structlog.get_logger(__name__)

# Node id used for failures that happen outside any node
RUN_FAILURE_KEY = "__run__"


class _HardFailure(Exception):
    """Unwinds the walk after a node failed hard."""

    def __init__(self, record: FailureRecord):
        self.record = record
        super().__init__(record.message)


class WorkflowRun:
    """One execution of a validated graph against its own RuntimeState."""

    def __init__(
        self,
        graph: Graph,
        runtime_state: Any = None,
        run_id: Optional[str] = None,
        breakpoints: Optional[BreakpointConfig] = None,
        task_registry: Optional[TaskRegistry] = None,
        evaluator: Optional[ConditionEvaluator] = None,
    ):
        self.run_id = run_id or str(uuid4())
        self.graph = graph
        self.runtime_state = runtime_state if runtime_state is not None else RuntimeState()
        self.machine = RunStateMachine(self.run_id, breakpoints)
        self._evaluator = evaluator or ConditionEvaluator()
        self.dispatcher = StepDispatcher(graph, task_registry=task_registry, evaluator=self._evaluator)
        self.traces: dict[str, list[str]] = {}
        self._current_trace: Optional[list[str]] = None
        self._ended = False
        self._task: Optional[asyncio.Task] = None

    # ── Control surface ──

    @property
    def status(self) -> RunStatus:
        return self.machine.status

    def get_status(self) -> RunState:
        return self.machine.get_status()

    def subscribe(self, handler: Callable, event_types: Optional[list] = None) -> None:
        self.machine.subscribe(handler, event_types)

    def unsubscribe(self, handler: Callable) -> None:
        self.machine.unsubscribe(handler)

    def resume(self, skip: bool = False) -> None:
        self.machine.resume(skip=skip)

    def pause(self) -> None:
        self.machine.pause()

    def stop(self) -> None:
        self.machine.stop()

    def disable_breakpoints(self) -> None:
        self.machine.disable_breakpoints()

    async def wait(self) -> RunState:
        """Wait for a background run to finish."""
        if self._task is not None:
            await asyncio.shield(self._task)
        return self.get_status()

    # ── Walk ──

    async def run(self) -> RunState:
        """Walk the graph to a terminal state and return the final RunState."""
        if self.machine.is_terminal:
            return self.get_status()
        with run_context(self.run_id):
            return await self._run()

    async def _run(self) -> RunState:
        set_tracer = getattr(self.runtime_state, "set_tracer", None)
        if set_tracer is not None:
            set_tracer(self._on_trace)

        self.machine.start()
        logger.info("Run started", nodes=len(self.graph.nodes))
        try:
            entry = self.graph.entry_node
            if entry is None:
                raise FatalRunError("Graph must contain exactly one start node")
            await self._walk([entry.id], set())
            if not self.machine.is_terminal:
                self.machine.complete()
                logger.info("Run completed", visited=len(self.machine.get_status().visited_order))
        except RunStopped:
            logger.info("Run stopped during walk")
        except _HardFailure as e:
            if self.machine.is_terminal:
                return self.get_status()
            self.machine.fail(f"Node {e.record.node_id} failed: {e.record.message}", e.record)
            logger.info("Run errored", node_id=e.record.node_id, error=e.record.message)
        except FatalRunError as e:
            if self.machine.is_terminal:
                return self.get_status()
            node_id = self.machine.get_status().current_node_id or RUN_FAILURE_KEY
            record = FailureRecord(node_id=node_id, message=e.message, trace_log=list(self.traces.get(node_id, [])))
            self.machine.record_failure(record)
            self.machine.fail(e.message, record)
            logger.error("Run halted by fatal error", node_id=node_id, error=e.message)
        except asyncio.CancelledError:
            self.machine.stop()
            raise
        except Exception as e:
            logger.exception("Run crashed", error=str(e))
            if not self.machine.is_terminal:
                self._fail_unexpected(e)
        finally:
            if set_tracer is not None:
                set_tracer(None)

        return self.get_status()

    def _fail_unexpected(self, error: Exception) -> None:
        """Error the run after an exception the walk has no handler for."""
        node_id = self.machine.get_status().current_node_id or RUN_FAILURE_KEY
        message = f"{type(error).__name__}: {error}"
        record = FailureRecord(node_id=node_id, message=message, trace_log=list(self.traces.get(node_id, [])))
        self.machine.fail(message if node_id == RUN_FAILURE_KEY else f"Node {node_id} failed: {message}", record)

    async def _walk(self, targets: list[str], segment: set[str]) -> None:
        """Depth-first walk from ``targets``, following control edges in declaration order.

        ``segment`` holds the nodes already entered in this walk segment;
        reaching one of them again is a control-flow cycle.
        """
        pending = list(reversed(targets))
        while pending and not self._ended:
            node_id = pending.pop()
            if node_id in segment:
                raise FatalRunError(f"Control-flow cycle detected at node {node_id}")
            segment.add(node_id)

            node = self.graph.get_node(node_id)
            if node is None:
                raise FatalRunError(f"Edge references missing node {node_id}")

            result = await self._execute_node(node)
            if self._ended:
                return

            edges = await self._next_edges(node, result)
            pending.extend(edge.target for edge in reversed(edges))

    async def _execute_node(self, node: Node) -> Optional[StepResult]:
        """Checkpoint, dispatch and record one node. None when skipped."""
        trace = self.traces[node.id] = []
        self._current_trace = trace

        if await self.machine.checkpoint(node, BreakpointTiming.PRE):
            self._trace(f"Node {node.id} skipped on resume")
            self.machine.skip_node(node.id)
            return None

        self.machine.enter_node(node.id)
        self._trace(f"Executing node {node.id} (type: {node.type})")
        result = await self._dispatch(node)

        if not result.ok:
            record = FailureRecord(
                node_id=node.id,
                message=result.error or f"Node {node.id} failed",
                trace_log=list(trace),
                debug_snapshot=result.debug_snapshot,
                soft=result.soft_failure,
                timed_out=result.timed_out,
                attempts=result.attempts,
            )
            self.machine.record_failure(record)
            if not result.soft_failure:
                raise _HardFailure(record)
            logger.warning("Node failed silently, continuing", node_id=node.id, error=record.message)
            return result

        self.machine.complete_node(node.id, result)
        if node.type == NodeType.END.value and not result.bypassed:
            self._ended = True
            return result
        if node.type == NodeType.WAIT.value and isinstance(result.output, dict) and result.output.get("pause"):
            self.machine.pause()

        await self.machine.checkpoint(node, BreakpointTiming.POST)
        return result

    async def _dispatch(self, node: Node) -> StepResult:
        future = asyncio.ensure_future(self.dispatcher.dispatch(node, self.runtime_state, self._on_retry))
        self.machine.track(future)
        try:
            return await future
        except asyncio.CancelledError:
            if self.machine.stopped:
                raise RunStopped()
            raise
        finally:
            self.machine.track(None)

    async def _next_edges(self, node: Node, result: Optional[StepResult]) -> list[Edge]:
        ran = result is not None and result.ok and not result.bypassed

        if node.type == NodeType.SWITCH.value:
            slot = result.output if ran and isinstance(result.output, str) else DEFAULT_CASE
            self._trace(f"Switch {node.id} selected {slot}")
            return self.graph.outgoing(node.id, slot)

        if node.type == NodeType.LOOP.value:
            if ran:
                await self._run_loop(node, result.output or {})
            return [e for e in self.graph.outgoing(node.id) if e.source_slot != BODY_SLOT]

        return self.graph.outgoing(node.id)

    # ── Loops ──

    async def _run_loop(self, node: Node, plan: dict) -> None:
        body = self.graph.outgoing(node.id, BODY_SLOT)
        if plan.get("mode") == "doWhile":
            await self._run_do_while(node, plan, body)
            return

        items = plan.get("items") or []
        for index, item in enumerate(items):
            self.runtime_state.set_variable("index", index)
            self.runtime_state.set_variable("item", item)
            self._trace_to(node.id, f"Loop iteration {index + 1}/{len(items)}: {truncate(format_value(item))}")
            await self._walk_body(node, body)
            if self._ended:
                return

    async def _run_do_while(self, node: Node, plan: dict, body: list[Edge]) -> None:
        max_iterations = plan.get("maxIterations") or get_settings().LOOP_MAX_ITERATIONS
        iterations = 0
        self.runtime_state.set_variable("item", None)

        while True:
            self.runtime_state.set_variable("index", iterations)
            check = await self._evaluator.evaluate(plan.get("condition"), self.runtime_state)
            if not check.passed:
                self._trace_to(node.id, f"Loop condition failed after {iterations} iterations, exiting loop")
                return
            if iterations >= max_iterations:
                message = f"Loop exceeded maximum iterations limit of {max_iterations}"
                record = FailureRecord(node_id=node.id, message=message, trace_log=list(self.traces.get(node.id, [])))
                self.machine.record_failure(record)
                raise _HardFailure(record)

            await self._walk_body(node, body)
            if self._ended:
                return
            self._apply_updates(node, plan.get("update") or {})
            iterations += 1

    def _apply_updates(self, node: Node, updates: dict) -> None:
        for name, expression in updates.items():
            try:
                value = evaluate_expression(str(expression), self.runtime_state)
            except Exception as e:
                self._trace_to(node.id, f"Warning: loop update for {name} failed: {e}")
                continue
            self.runtime_state.set_variable(name, value)

    async def _walk_body(self, loop_node: Node, body: list[Edge]) -> None:
        # Each iteration is its own walk segment; reaching the loop again is a cycle
        await self._walk([edge.target for edge in body], {loop_node.id})

    # ── Tracing and callbacks ──

    def _on_trace(self, message: str) -> None:
        if self._current_trace is not None:
            self._current_trace.append(message)
        if get_settings().TRACE_LOGS:
            logger.debug("Trace", message=message)

    def _trace(self, message: str) -> None:
        self._on_trace(message)

    def _trace_to(self, node_id: str, message: str) -> None:
        self.traces.setdefault(node_id, []).append(message)
        if get_settings().TRACE_LOGS:
            logger.debug("Trace", node_id=node_id, message=message)

    def _on_retry(self, retry_number: int, result: StepResult, delay: float) -> None:
        self._trace(f"Retry {retry_number} after {delay:g}ms: {result.error or 'condition not met'}")


class WorkflowEngine:
    """Creates runs and owns their concurrency.

    Each run walks sequentially; many runs share the event loop, with at
    most ``max_concurrent_runs`` walking at once.
    """

    def __init__(
        self,
        task_registry: Optional[TaskRegistry] = None,
        max_concurrent_runs: Optional[int] = None,
        on_run_complete: Optional[Callable] = None,
    ):
        self._task_registry = task_registry
        self._max_concurrent_runs = max_concurrent_runs or get_settings().MAX_CONCURRENT_RUNS
        self._semaphore = asyncio.Semaphore(self._max_concurrent_runs)
        self._on_run_complete = on_run_complete
        self._runs: dict[str, WorkflowRun] = {}
        self._running_executions: dict[str, WorkflowRun] = {}

    def create_run(
        self,
        graph: Union[Graph, dict],
        runtime_state: Any = None,
        run_id: Optional[str] = None,
        breakpoints: Optional[BreakpointConfig] = None,
    ) -> WorkflowRun:
        """Validate the graph and create an idle run.

        Raises:
            ValidationError: the graph has structural errors
            FatalRunError: the runtime state already belongs to a live run
        """
        if isinstance(graph, dict):
            graph = Graph.model_validate(graph)
        validate_or_raise(graph)

        if runtime_state is not None:
            for other in self._runs.values():
                if other.runtime_state is runtime_state and not other.machine.is_terminal:
                    raise FatalRunError(f"Runtime state is already in use by live run {other.run_id}")

        run = WorkflowRun(
            graph,
            runtime_state=runtime_state,
            run_id=run_id,
            breakpoints=breakpoints,
            task_registry=self._task_registry,
        )
        if run.run_id in self._runs:
            raise FatalRunError(f"Duplicate run id: {run.run_id}")
        self._runs[run.run_id] = run
        return run

    async def execute(
        self,
        graph: Union[Graph, dict],
        runtime_state: Any = None,
        run_id: Optional[str] = None,
        breakpoints: Optional[BreakpointConfig] = None,
    ) -> RunState:
        """Run a graph to completion and return its final state."""
        run = self.create_run(graph, runtime_state, run_id, breakpoints)
        return await self._execute_run(run)

    def start_run(
        self,
        graph: Union[Graph, dict],
        runtime_state: Any = None,
        run_id: Optional[str] = None,
        breakpoints: Optional[BreakpointConfig] = None,
    ) -> WorkflowRun:
        """Start a run in the background and return its handle immediately."""
        run = self.create_run(graph, runtime_state, run_id, breakpoints)
        run._task = asyncio.create_task(self._execute_run(run))
        return run

    async def _execute_run(self, run: WorkflowRun) -> RunState:
        async with self._semaphore:
            self._running_executions[run.run_id] = run
            try:
                state = await run.run()
            finally:
                self._running_executions.pop(run.run_id, None)

        if self._on_run_complete:
            try:
                outcome = self._on_run_complete(state)
                if asyncio.iscoroutine(outcome):
                    await outcome
            except Exception as e:
                logger.error("on_run_complete callback failed", run_id=run.run_id, error=str(e))
        return state

    def get_run(self, run_id: str) -> WorkflowRun:
        run = self._runs.get(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    def stop_run(self, run_id: str) -> bool:
        """Stop a run. Returns False when it had already finished."""
        run = self.get_run(run_id)
        if run.machine.is_terminal:
            return False
        run.stop()
        return True

    def forget_run(self, run_id: str) -> None:
        """Drop a finished run from the engine's bookkeeping."""
        run = self.get_run(run_id)
        if not run.machine.is_terminal:
            raise FatalRunError(f"Cannot forget live run {run_id}")
        del self._runs[run_id]

    def get_running_executions(self) -> dict[str, dict]:
        """Get status of all walking runs."""
        result = {}
        for run_id, run in self._running_executions.items():
            state = run.get_status()
            result[run_id] = {
                "status": state.status.value,
                "current_node": state.current_node_id,
                "paused_node": state.paused_node_id,
                "nodes_visited": len(state.visited_order),
                "nodes_failed": len(state.failures),
            }
        return result


# ─── Singleton ─────────────────────────────────────────────────

_engine: Optional[WorkflowEngine] = None


def get_workflow_engine() -> WorkflowEngine:
    """Get or create the singleton WorkflowEngine."""
    global _engine
    if _engine is None:
        _engine = WorkflowEngine()
    return _engine
