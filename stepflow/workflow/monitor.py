"""Execution monitor: read-only observation and remote control of one run.

Polling ``get_status()`` is the source of truth; event subscriptions only
shorten the time until the next look.
"""

import asyncio
import re
import time
from dataclasses import dataclass
from typing import Callable, Optional

import structlog

from stepflow.config import get_settings
from stepflow.core.constants import ExecutionEventType, PauseReason, RunStatus
from stepflow.core.exceptions import BreakpointWaitError, MonitorTimeoutError
from stepflow.workflow.run_state import ExecutionEvent, RunState

logger = structlog.get_logger(__name__)

_NODE_ERROR_RE = re.compile(r"Node\s+(\S+)\s+failed[:\s]+(.+)", re.IGNORECASE | re.DOTALL)

# Events that make a waiting client look again
WAKE_EVENTS = (
    ExecutionEventType.NODE_ERROR,
    ExecutionEventType.EXECUTION_COMPLETE,
    ExecutionEventType.EXECUTION_ERROR,
    ExecutionEventType.EXECUTION_STOPPED,
)


@dataclass
class FailureContext:
    """Where and why a run failed."""

    node_id: str
    error: str
    soft: bool = False


def extract_failure_context(state: RunState) -> list[FailureContext]:
    """Turn a run's failures into (node, error) pairs.

    Failure records come first, in the order they were recorded. A run that
    errored without any record falls back to parsing its error message
    (``Node <id> failed: <message>``).
    """
    failures = [
        FailureContext(node_id=node_id, error=record.message, soft=record.soft)
        for node_id, record in state.failures.items()
    ]
    if failures or state.status != RunStatus.ERRORED or not state.error:
        return failures

    match = _NODE_ERROR_RE.search(state.error)
    if match:
        return [FailureContext(node_id=match.group(1), error=match.group(2).strip())]
    return [FailureContext(node_id=state.current_node_id or "unknown", error=state.error)]


class ExecutionMonitor:
    """Monitor for a single run.

    ``run`` is any object exposing get_status/subscribe/unsubscribe/resume/stop
    (WorkflowRun or RunStateMachine).
    """

    def __init__(self, run):
        self._run = run
        self._settings = get_settings()

    def get_status(self) -> RunState:
        return self._run.get_status()

    def subscribe(self, handler: Callable, event_types: Optional[list] = None) -> None:
        self._run.subscribe(handler, event_types)

    def unsubscribe(self, handler: Callable) -> None:
        self._run.unsubscribe(handler)

    def resume(self, skip: bool = False) -> None:
        self._run.resume(skip=skip)

    def stop(self) -> None:
        self._run.stop()

    def extract_failure_context(self, state: Optional[RunState] = None) -> list[FailureContext]:
        return extract_failure_context(state or self.get_status())

    async def wait_for_breakpoint(
        self,
        timeout: Optional[float] = None,
        interval: Optional[float] = None,
    ) -> RunState:
        """Poll until the run pauses on a breakpoint.

        Args:
            timeout: Maximum wait in ms
            interval: Poll interval in ms

        Raises:
            BreakpointWaitError: the run finished before pausing
            MonitorTimeoutError: no breakpoint pause within ``timeout``
        """
        timeout = timeout if timeout is not None else self._settings.BREAKPOINT_WAIT_TIMEOUT_MS
        interval = interval if interval is not None else self._settings.MONITOR_POLL_INTERVAL_MS
        deadline = time.monotonic() + timeout / 1000

        while True:
            state = self.get_status()
            if state.status.is_terminal:
                raise BreakpointWaitError(state.status.value, state.error)
            if (
                state.status == RunStatus.PAUSED
                and state.paused_node_id
                and state.pause_reason == PauseReason.BREAKPOINT
            ):
                return state
            if time.monotonic() >= deadline:
                logger.info("Breakpoint wait timed out", run_id=state.run_id, status=state.status.value)
                raise MonitorTimeoutError("Timeout waiting for breakpoint")
            await asyncio.sleep(interval / 1000)

    async def wait_for_completion(
        self,
        timeout: Optional[float] = None,
        interval: Optional[float] = None,
    ) -> RunState:
        """Poll until the run reaches a terminal state.

        Raises:
            MonitorTimeoutError: still not terminal after ``timeout`` ms
        """
        timeout = timeout if timeout is not None else self._settings.MONITOR_MAX_DURATION_MS
        interval = interval if interval is not None else self._settings.MONITOR_POLL_INTERVAL_MS
        deadline = time.monotonic() + timeout / 1000

        while True:
            state = self.get_status()
            if state.status.is_terminal:
                return state
            if time.monotonic() >= deadline:
                logger.info("Completion wait timed out", run_id=state.run_id, status=state.status.value)
                raise MonitorTimeoutError("Execution status polling timeout")
            await asyncio.sleep(interval / 1000)

    async def wait_for_completion_with_events(
        self,
        timeout: Optional[float] = None,
        interval: Optional[float] = None,
    ) -> RunState:
        """Like wait_for_completion, but woken early by run events."""
        timeout = timeout if timeout is not None else self._settings.MONITOR_MAX_DURATION_MS
        interval = interval if interval is not None else self._settings.MONITOR_POLL_INTERVAL_MS
        deadline = time.monotonic() + timeout / 1000
        wake = asyncio.Event()

        def _on_event(event: ExecutionEvent) -> None:
            wake.set()

        self.subscribe(_on_event, list(WAKE_EVENTS))
        try:
            while True:
                wake.clear()
                state = self.get_status()
                if state.status.is_terminal:
                    return state
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise MonitorTimeoutError("Execution monitoring timeout")
                try:
                    await asyncio.wait_for(wake.wait(), timeout=min(interval / 1000, remaining))
                except asyncio.TimeoutError:
                    pass  # poll interval elapsed
        finally:
            self.unsubscribe(_on_event)
