"""Tests for the workflow execution engine."""

import asyncio
import threading

import pytest
import structlog

from conftest import chain, make_edge, make_node
from stepflow.core.constants import BreakpointScope, ExecutionEventType, PauseReason, RunStatus
from stepflow.core.exceptions import FatalRunError, RunNotFoundError, StepFailure, ValidationError
from stepflow.tasks.base_task import BaseTask
from stepflow.workflow.context import RuntimeState
from stepflow.workflow.engine import WorkflowEngine, get_workflow_engine
from stepflow.workflow.graph import Graph
from stepflow.workflow.monitor import ExecutionMonitor
from stepflow.workflow.retry_strategies import RetryPolicy
from stepflow.workflow.run_state import BreakpointConfig


def _record(node_id, tag=None):
    return make_node(node_id, "record", config={"tag": tag or node_id})


@pytest.mark.unit
class TestLinearRuns:
    @pytest.mark.asyncio
    async def test_runs_nodes_in_order(self, engine):
        graph = chain(make_node("s", "start"), _record("a"), _record("b"), make_node("e", "end"))
        state = RuntimeState()
        result = await engine.execute(graph, state)

        assert result.status == RunStatus.COMPLETED
        assert result.visited_order == ["s", "a", "b", "e"]
        assert state.get_variable("seen") == ["a", "b"]
        assert result.failures == {}

    @pytest.mark.asyncio
    async def test_start_node_seeds_variables(self, engine):
        graph = chain(make_node("s", "start", config={"variables": {"user": "alice"}}),
                      make_node("set", "set_variable", config={"name": "greet", "value": "hi {{ variables.user }}"}))
        state = RuntimeState()
        await engine.execute(graph, state)
        assert state.get_variable("greet") == "hi alice"

    @pytest.mark.asyncio
    async def test_end_node_stops_the_walk(self, engine):
        graph = chain(make_node("s", "start"), make_node("e", "end"), _record("after"))
        state = RuntimeState()
        result = await engine.execute(graph, state)
        assert result.status == RunStatus.COMPLETED
        assert "after" not in result.visited_order

    @pytest.mark.asyncio
    async def test_fan_out_is_depth_first_in_edge_order(self, engine):
        graph = Graph(
            nodes=[make_node("s", "start"), _record("a"), _record("a2"), _record("b")],
            edges=[make_edge("s", "a"), make_edge("s", "b"), make_edge("a", "a2")],
        )
        state = RuntimeState()
        result = await engine.execute(graph, state)
        assert result.visited_order == ["s", "a", "a2", "b"]

    @pytest.mark.asyncio
    async def test_invalid_graph_rejected_before_run(self, engine):
        with pytest.raises(ValidationError):
            await engine.execute(chain(make_node("s1", "start"), make_node("s2", "start")))

    @pytest.mark.asyncio
    async def test_accepts_dict_document(self, engine):
        result = await engine.execute({
            "nodes": [{"id": "s", "type": "start"}, {"id": "e", "type": "end"}],
            "edges": [{"id": "e1", "source": "s", "target": "e"}],
        })
        assert result.status == RunStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_bypassed_node_is_walked_through(self, engine):
        graph = chain(make_node("s", "start"), make_node("x", "record", bypass=True), _record("b"))
        state = RuntimeState()
        result = await engine.execute(graph, state)
        assert result.status == RunStatus.COMPLETED
        assert state.get_variable("seen") == ["b"]

    @pytest.mark.asyncio
    async def test_long_chain_completes(self, engine):
        steps = [make_node(f"n{i}", "log", config={"message": f"step {i}", "level": "debug"}) for i in range(1500)]
        result = await engine.execute(chain(make_node("s", "start"), *steps), RuntimeState())

        assert result.status == RunStatus.COMPLETED
        assert len(result.visited_order) == 1501
        assert result.visited_order[-1] == "n1499"


@pytest.mark.unit
class TestFailures:
    @pytest.mark.asyncio
    async def test_hard_failure_errors_the_run(self, engine):
        graph = chain(make_node("s", "start"), make_node("f", "flaky", config={"succeed_on": 9}), _record("b"))
        result = await engine.execute(graph, RuntimeState())

        assert result.status == RunStatus.ERRORED
        assert result.error == "Node f failed: flaky failure 1"
        assert "b" not in result.visited_order
        record = result.failures["f"]
        assert record.message == "flaky failure 1"
        assert record.trace_log[0] == "Executing node f (type: flaky)"

    @pytest.mark.asyncio
    async def test_soft_failure_completes_with_record(self, engine):
        graph = chain(
            make_node("s", "start"),
            make_node("f", "flaky", config={"succeed_on": 9}, fail_silently=True),
            _record("b"),
        )
        state = RuntimeState()
        result = await engine.execute(graph, state)

        assert result.status == RunStatus.COMPLETED
        assert result.failures["f"].soft is True
        assert state.get_variable("seen") == ["b"]

    @pytest.mark.asyncio
    async def test_retry_recovers(self, engine):
        node = make_node("f", "flaky", config={"succeed_on": 2}, retry=RetryPolicy.fixed(count=2, delay=1))
        result = await engine.execute(chain(make_node("s", "start"), node), RuntimeState())
        assert result.status == RunStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_unknown_executor_is_fatal(self, engine):
        result = await engine.execute(chain(make_node("s", "start"), make_node("x", "nope")), RuntimeState())
        assert result.status == RunStatus.ERRORED
        assert result.error == "No executor registered for node type: nope"
        assert "x" in result.failures

    @pytest.mark.asyncio
    async def test_step_timeout(self, engine):
        graph = chain(make_node("s", "start"), make_node("w", "slow", config={"ms": 500}, timeout=20))
        result = await engine.execute(graph, RuntimeState())
        assert result.status == RunStatus.ERRORED
        assert result.failures["w"].timed_out

    @pytest.mark.asyncio
    async def test_uncopyable_debug_snapshot_is_kept(self, engine, registry):
        lock = threading.Lock()

        class LockedPageTask(BaseTask):
            task_type = "locked_page"
            display_name = "Locked page"

            async def execute(self, config, runtime_state):
                raise StepFailure("element not found", debug_snapshot={"page": lock})

        registry.register("locked_page", LockedPageTask)
        graph = chain(make_node("s", "start"), make_node("p", "locked_page", fail_silently=True), _record("b"))
        result = await engine.execute(graph, RuntimeState())

        assert result.status == RunStatus.COMPLETED
        assert result.visited_order == ["s", "p", "b"]
        assert result.failures["p"].message == "element not found"
        assert result.failures["p"].debug_snapshot["page"] is lock

    @pytest.mark.asyncio
    async def test_unexpected_error_errors_the_run(self, engine, monkeypatch):
        run = engine.create_run(chain(make_node("s", "start"), _record("a"), _record("b")), RuntimeState())
        original = run.dispatcher.dispatch

        async def crashing_dispatch(node, *args):
            if node.id == "a":
                raise RuntimeError("dispatcher crashed")
            return await original(node, *args)

        monkeypatch.setattr(run.dispatcher, "dispatch", crashing_dispatch)
        result = await run.run()

        assert result.status == RunStatus.ERRORED
        assert result.error == "Node a failed: RuntimeError: dispatcher crashed"
        assert result.failures["a"].message == "RuntimeError: dispatcher crashed"
        assert result.failures["a"].trace_log == ["Executing node a (type: record)"]
        assert "b" not in result.visited_order


@pytest.mark.unit
class TestSwitch:
    def _graph(self):
        return Graph(
            nodes=[
                make_node("s", "start"),
                make_node("sw", "switch", config={"cases": [
                    {"id": "big", "condition": {"type": "variableComparison", "variableName": "n",
                                                "comparisonOperator": "greaterThan", "comparisonValue": 10}},
                    {"id": "small", "condition": {"type": "variableComparison", "variableName": "n",
                                                  "comparisonOperator": "lessThan", "comparisonValue": 0}},
                ]}),
                _record("on_big"),
                _record("on_small"),
                _record("on_default"),
            ],
            edges=[
                make_edge("s", "sw"),
                make_edge("sw", "on_big", source_slot="big"),
                make_edge("sw", "on_small", source_slot="small"),
                make_edge("sw", "on_default", source_slot="default"),
            ],
        )

    @pytest.mark.asyncio
    @pytest.mark.parametrize("n,expected", [(42, "on_big"), (-1, "on_small"), (5, "on_default")])
    async def test_branch_selection(self, engine, n, expected):
        state = RuntimeState(variables={"n": n})
        result = await engine.execute(self._graph(), state)
        assert result.visited_order == ["s", "sw", expected]
        assert state.get_data("switchOutput") == expected[3:]


@pytest.mark.unit
class TestLoops:
    @pytest.mark.asyncio
    async def test_for_each_runs_body_per_item_in_order(self, engine):
        graph = Graph(
            nodes=[
                make_node("s", "start"),
                make_node("loop", "loop", config={"mode": "forEach", "arrayVariable": "letters"}),
                make_node("body", "record"),
                _record("after"),
            ],
            edges=[
                make_edge("s", "loop"),
                make_edge("loop", "body", source_slot="body"),
                make_edge("loop", "after"),
            ],
        )
        state = RuntimeState(variables={"letters": ["x", "y", "z"]})
        result = await engine.execute(graph, state)

        assert result.status == RunStatus.COMPLETED
        assert state.get_variable("seen") == ["x", "y", "z", "after"]
        assert result.visited_order == ["s", "loop", "body", "body", "body", "after"]

    @pytest.mark.asyncio
    async def test_do_while_with_update(self, engine):
        graph = Graph(
            nodes=[
                make_node("s", "start"),
                make_node("loop", "loop", config={
                    "mode": "doWhile",
                    "condition": {"type": "scriptedExpression", "expression": 'context.get_variable("i") < 3'},
                    "update": {"i": 'context.get_variable("i") + 1'},
                }),
                make_node("body", "record", config={"tag": "tick"}),
            ],
            edges=[make_edge("s", "loop"), make_edge("loop", "body", source_slot="body")],
        )
        state = RuntimeState(variables={"i": 0})
        result = await engine.execute(graph, state)

        assert result.status == RunStatus.COMPLETED
        assert state.get_variable("seen") == ["tick", "tick", "tick"]
        assert state.get_variable("i") == 3

    @pytest.mark.asyncio
    async def test_do_while_iteration_cap(self, engine):
        graph = Graph(
            nodes=[
                make_node("s", "start"),
                make_node("loop", "loop", config={
                    "mode": "doWhile",
                    "condition": {"type": "scriptedExpression", "expression": "True", "surface": "automation"},
                    "maxIterations": 2,
                }),
                make_node("body", "record", config={"tag": "tick"}),
            ],
            edges=[make_edge("s", "loop"), make_edge("loop", "body", source_slot="body")],
        )
        state = RuntimeState()
        result = await engine.execute(graph, state)

        assert result.status == RunStatus.ERRORED
        assert result.error == "Node loop failed: Loop exceeded maximum iterations limit of 2"
        assert state.get_variable("seen") == ["tick", "tick"]

    @pytest.mark.asyncio
    async def test_cycle_outside_loop_is_fatal(self, engine):
        graph = Graph(
            nodes=[make_node("s", "start"), _record("a"), _record("b")],
            edges=[make_edge("s", "a"), make_edge("a", "b"), make_edge("b", "s")],
        )
        result = await engine.execute(graph, RuntimeState())
        assert result.status == RunStatus.ERRORED
        assert result.error == "Control-flow cycle detected at node s"


@pytest.mark.unit
class TestBreakpointsAndControl:
    @pytest.mark.asyncio
    async def test_only_marked_nodes_pause(self, engine):
        graph = chain(make_node("s", "start"), _record("a"), make_node("b", "record", breakpoint=True), _record("c"))
        run = engine.start_run(graph, RuntimeState(), breakpoints=BreakpointConfig(enabled=True))
        monitor = ExecutionMonitor(run)

        state = await monitor.wait_for_breakpoint(timeout=1000, interval=5)
        assert state.paused_node_id == "b"
        assert state.visited_order == ["s", "a"]

        monitor.resume()
        final = await monitor.wait_for_completion(timeout=1000, interval=5)
        assert final.status == RunStatus.COMPLETED
        assert final.visited_order == ["s", "a", "b", "c"]

    @pytest.mark.asyncio
    async def test_stop_while_paused_skips_paused_node(self, engine):
        graph = chain(make_node("s", "start"), make_node("b", "record", breakpoint=True), _record("c"))
        state = RuntimeState()
        run = engine.start_run(graph, state, breakpoints=BreakpointConfig(enabled=True))
        monitor = ExecutionMonitor(run)

        await monitor.wait_for_breakpoint(timeout=1000, interval=5)
        monitor.stop()
        final = await run.wait()

        assert final.status == RunStatus.STOPPED
        assert "b" not in final.visited_order
        assert state.get_variable("seen") is None

    @pytest.mark.asyncio
    async def test_resume_with_skip(self, engine):
        graph = chain(make_node("s", "start"), make_node("b", "record", breakpoint=True), _record("c"))
        state = RuntimeState()
        run = engine.start_run(graph, state, breakpoints=BreakpointConfig(enabled=True))
        monitor = ExecutionMonitor(run)

        await monitor.wait_for_breakpoint(timeout=1000, interval=5)
        monitor.resume(skip=True)
        final = await run.wait()

        assert final.status == RunStatus.COMPLETED
        assert final.skipped == ["b"]
        assert state.get_variable("seen") == ["c"]

    @pytest.mark.asyncio
    async def test_disable_breakpoints_mid_run(self, engine):
        graph = chain(make_node("s", "start"), _record("a"), _record("b"))
        run = engine.start_run(graph, RuntimeState(),
                               breakpoints=BreakpointConfig(enabled=True, breakpoint_for=BreakpointScope.ALL))
        monitor = ExecutionMonitor(run)

        state = await monitor.wait_for_breakpoint(timeout=1000, interval=5)
        assert state.paused_node_id == "s"
        run.disable_breakpoints()
        monitor.resume()
        final = await run.wait()
        assert final.status == RunStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_stop_cancels_in_flight_step(self, engine):
        graph = chain(make_node("s", "start"), make_node("w", "slow", config={"ms": 2000}), _record("c"))
        state = RuntimeState()
        run = engine.start_run(graph, state)
        await asyncio.sleep(0.05)
        assert engine.stop_run(run.run_id) is True

        final = await asyncio.wait_for(run.wait(), timeout=1)
        assert final.status == RunStatus.STOPPED
        assert not state.has_variable("slow_done")
        assert engine.stop_run(run.run_id) is False

    @pytest.mark.asyncio
    async def test_wait_node_pauses_run(self, engine):
        graph = chain(make_node("s", "start"), make_node("w", "wait", config={"pause": True}), _record("c"))
        run = engine.start_run(graph, RuntimeState())
        events = []
        run.subscribe(events.append, [ExecutionEventType.EXECUTION_PAUSED])

        for _ in range(100):
            if run.status == RunStatus.PAUSED:
                break
            await asyncio.sleep(0.005)
        state = run.get_status()
        assert state.pause_reason == PauseReason.MANUAL
        assert state.paused_node_id == "w"

        run.resume()
        final = await run.wait()
        assert final.status == RunStatus.COMPLETED
        assert len(events) == 1


@pytest.mark.unit
class TestEngineBookkeeping:
    @pytest.mark.asyncio
    async def test_concurrent_runs_are_isolated(self, engine):
        graph = chain(make_node("s", "start"), make_node("set", "set_variable",
                                                          config={"name": "me", "value": "{{ variables.who }}"}))
        states = [RuntimeState(variables={"who": f"run-{i}"}) for i in range(5)]
        results = await asyncio.gather(*(engine.execute(graph, s) for s in states))

        assert all(r.status == RunStatus.COMPLETED for r in results)
        assert [s.get_variable("me") for s in states] == [f"run-{i}" for i in range(5)]

    @pytest.mark.asyncio
    async def test_shared_state_with_live_run_refused(self, engine):
        graph = chain(make_node("s", "start"), make_node("w", "slow", config={"ms": 200}))
        state = RuntimeState()
        run = engine.start_run(graph, state)
        with pytest.raises(FatalRunError, match="already in use"):
            engine.create_run(graph, state)
        run.stop()
        await run.wait()

    @pytest.mark.asyncio
    async def test_duplicate_run_id_refused(self, engine):
        graph = chain(make_node("s", "start"))
        await engine.execute(graph, run_id="fixed")
        with pytest.raises(FatalRunError, match="Duplicate run id"):
            engine.create_run(graph, run_id="fixed")

    @pytest.mark.asyncio
    async def test_get_and_forget_runs(self, engine):
        graph = chain(make_node("s", "start"))
        await engine.execute(graph, run_id="r1")
        assert engine.get_run("r1").status == RunStatus.COMPLETED
        engine.forget_run("r1")
        with pytest.raises(RunNotFoundError):
            engine.get_run("r1")

    @pytest.mark.asyncio
    async def test_running_executions_and_callback(self, registry):
        finished = []
        engine = WorkflowEngine(task_registry=registry, on_run_complete=finished.append)
        run = engine.start_run(chain(make_node("s", "start"), make_node("w", "slow", config={"ms": 100})))
        await asyncio.sleep(0.03)
        running = engine.get_running_executions()
        assert running[run.run_id]["current_node"] == "w"

        await run.wait()
        assert engine.get_running_executions() == {}
        assert finished[0].run_id == run.run_id

    def test_singleton(self):
        assert get_workflow_engine() is get_workflow_engine()


@pytest.mark.unit
class TestLogContext:
    @pytest.mark.asyncio
    async def test_run_id_bound_only_while_walking(self, engine):
        seen = []
        run = engine.create_run(chain(make_node("s", "start"), _record("a")), RuntimeState(), run_id="ctx-run")
        run.subscribe(lambda e: seen.append(structlog.contextvars.get_contextvars().get("run_id")), ["NODE_START"])

        structlog.contextvars.bind_contextvars(request_id="req-1")
        try:
            await run.run()
            assert seen == ["ctx-run", "ctx-run"]
            assert structlog.contextvars.get_contextvars() == {"request_id": "req-1"}
        finally:
            structlog.contextvars.clear_contextvars()
