"""Shared pytest fixtures for the stepflow test suite.

Provides:
- Settings overrides (no plugins, no .env surprises)
- A fake automation session recording the calls made to it
- Graph builder helpers
- A fresh TaskRegistry and WorkflowEngine per test
"""

import asyncio
import os
from typing import Any, Optional

import pytest

# Override settings BEFORE any stepflow imports
os.environ.setdefault("STEPFLOW_ENVIRONMENT", "testing")
os.environ.setdefault("STEPFLOW_LOG_FORMAT", "text")
os.environ.setdefault("STEPFLOW_PLUGINS_ENABLED", "false")

from stepflow.tasks.base_task import BaseTask  # noqa: E402
from stepflow.tasks.registry import TaskRegistry  # noqa: E402
from stepflow.workflow.context import RuntimeState  # noqa: E402
from stepflow.workflow.engine import WorkflowEngine  # noqa: E402
from stepflow.workflow.graph import Edge, Graph, Node  # noqa: E402


# ---------------------------------------------------------------------------
# Automation session
# ---------------------------------------------------------------------------

class FakeSession:
    """Stand-in for a browser page.

    ``visible`` holds the selectors that satisfy wait_for_selector;
    ``page_values`` maps expressions to what page-side evaluate returns.
    """

    def __init__(self, visible=None, page_values=None):
        self.visible = set(visible or [])
        self.page_values = dict(page_values or {})
        self.calls: list[tuple] = []

    async def evaluate(self, expression: str) -> Any:
        self.calls.append(("evaluate", expression))
        if expression not in self.page_values:
            raise RuntimeError(f"ReferenceError: {expression} is not defined")
        return self.page_values[expression]

    async def wait_for_selector(self, selector: str, *, state: str, timeout: float) -> Any:
        self.calls.append(("wait_for_selector", selector, state, timeout))
        if state == "hidden":
            if selector in self.visible:
                raise asyncio.TimeoutError()
            return None
        if selector not in self.visible:
            raise asyncio.TimeoutError()
        return selector

    async def click(self, selector: str) -> str:
        self.calls.append(("click", selector))
        return f"clicked {selector}"


@pytest.fixture
def session():
    return FakeSession(visible={"#ready"}, page_values={"document.title": "Home", "window.empty": ""})


@pytest.fixture
def state(session):
    return RuntimeState(
        data={"apiResponse": {"status": 200, "body": {"user": {"name": "Alice"}, "items": [1, 2, 3]}}},
        variables={"count": "10", "name": "alice"},
        session=session,
    )


# ---------------------------------------------------------------------------
# Graph helpers
# ---------------------------------------------------------------------------

def make_node(node_id: str, node_type: str, **kwargs) -> Node:
    return Node(id=node_id, type=node_type, **kwargs)


def make_edge(source: str, target: str, source_slot: str = "output", target_slot: str = "input",
              edge_id: Optional[str] = None) -> Edge:
    return Edge(
        id=edge_id or f"{source}:{source_slot}->{target}:{target_slot}",
        source=source,
        target=target,
        source_slot=source_slot,
        target_slot=target_slot,
    )


def chain(*nodes: Node, extra_edges=()) -> Graph:
    """Graph with the given nodes wired output->input in order."""
    edges = [make_edge(a.id, b.id) for a, b in zip(nodes, nodes[1:])]
    return Graph(nodes=list(nodes), edges=edges + list(extra_edges))


# ---------------------------------------------------------------------------
# Executors used by tests
# ---------------------------------------------------------------------------

class RecordingTask(BaseTask):
    """Appends ``config["tag"]`` (or the loop item) to the ``seen`` variable."""

    task_type = "record"
    display_name = "Record"

    async def execute(self, config, runtime_state):
        seen = list(runtime_state.get_variable("seen") or [])
        seen.append(config.get("tag", runtime_state.get_variable("item")))
        runtime_state.set_variable("seen", seen)
        return seen[-1]


class FlakyTask(BaseTask):
    """Fails until it has been called ``config["succeed_on"]`` times."""

    task_type = "flaky"
    display_name = "Flaky"
    calls = 0

    async def execute(self, config, runtime_state):
        FlakyTask.calls += 1
        runtime_state.set_variable("flaky_writes", FlakyTask.calls)
        if FlakyTask.calls < config.get("succeed_on", 1):
            raise RuntimeError(f"flaky failure {FlakyTask.calls}")
        return FlakyTask.calls


class SlowTask(BaseTask):
    """Sleeps ``config["ms"]`` milliseconds."""

    task_type = "slow"
    display_name = "Slow"

    async def execute(self, config, runtime_state):
        await asyncio.sleep(config.get("ms", 50) / 1000)
        runtime_state.set_variable("slow_done", True)
        return "slow"


@pytest.fixture
def registry():
    FlakyTask.calls = 0
    reg = TaskRegistry()
    reg.register("record", RecordingTask)
    reg.register("flaky", FlakyTask)
    reg.register("slow", SlowTask)
    return reg


@pytest.fixture
def engine(registry):
    return WorkflowEngine(task_registry=registry, max_concurrent_runs=4)
