"""Breakpoint and run-state machine.

States::

    idle -> running -> {paused <-> running} -> {completed | errored | stopped}

The machine is the only writer of a run's RunState. The walker calls
``checkpoint()`` before and after every node; the checkpoint suspends on a
breakpoint or a requested pause until ``resume()`` or ``stop()``.

``stop()``, ``resume()`` and ``pause()`` may be called from any thread.
Off the event loop thread they are marshalled through
``loop.call_soon_threadsafe``.
"""

import asyncio
import copy
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Optional

import structlog

from stepflow.core.constants import (
    BreakpointScope,
    BreakpointTiming,
    ExecutionEventType,
    PauseReason,
    RunStatus,
)
from stepflow.core.exceptions import InvalidTransitionError, RunStopped
from stepflow.core.utils import utc_now

logger = structlog.get_logger(__name__)


# Allowed status transitions
TRANSITIONS: dict[RunStatus, set[RunStatus]] = {
    RunStatus.IDLE: {RunStatus.RUNNING, RunStatus.STOPPED},
    RunStatus.RUNNING: {RunStatus.PAUSED, RunStatus.COMPLETED, RunStatus.ERRORED, RunStatus.STOPPED},
    RunStatus.PAUSED: {RunStatus.RUNNING, RunStatus.STOPPED},
    RunStatus.COMPLETED: set(),
    RunStatus.ERRORED: set(),
    RunStatus.STOPPED: set(),
}


@dataclass
class BreakpointConfig:
    """Run-wide breakpoint settings."""

    enabled: bool = False
    breakpoint_at: BreakpointTiming = BreakpointTiming.PRE
    breakpoint_for: BreakpointScope = BreakpointScope.MARKED

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "BreakpointConfig":
        data = data or {}
        return cls(
            enabled=bool(data.get("enabled", False)),
            breakpoint_at=BreakpointTiming(data.get("breakpoint_at", data.get("breakpointAt", "pre"))),
            breakpoint_for=BreakpointScope(data.get("breakpoint_for", data.get("breakpointFor", "marked"))),
        )


def should_trigger_breakpoint(node, timing: BreakpointTiming, config: BreakpointConfig) -> bool:
    """Does ``node`` qualify for a breakpoint at ``timing`` under ``config``?"""
    if not config.enabled or node.bypass:
        return False
    if config.breakpoint_at not in (timing, BreakpointTiming.BOTH):
        return False
    if config.breakpoint_for == BreakpointScope.ALL:
        return True
    return bool(node.breakpoint)


@dataclass
class FailureRecord:
    """Why a node failed, with the trace collected while it ran."""

    node_id: str
    message: str
    trace_log: list[str] = field(default_factory=list)
    debug_snapshot: Any = None
    soft: bool = False
    timed_out: bool = False
    attempts: int = 1

    def to_dict(self) -> dict:
        return {
            "node_id": self.node_id,
            "message": self.message,
            "trace_log": list(self.trace_log),
            "debug_snapshot": self.debug_snapshot,
            "soft": self.soft,
            "timed_out": self.timed_out,
            "attempts": self.attempts,
        }


@dataclass
class RunState:
    """Snapshot of one run's progress."""

    run_id: str
    status: RunStatus = RunStatus.IDLE
    current_node_id: Optional[str] = None
    paused_node_id: Optional[str] = None
    pause_reason: Optional[PauseReason] = None
    failures: dict[str, FailureRecord] = field(default_factory=dict)
    visited_order: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "current_node_id": self.current_node_id,
            "paused_node_id": self.paused_node_id,
            "pause_reason": self.pause_reason.value if self.pause_reason else None,
            "failures": {node_id: record.to_dict() for node_id, record in self.failures.items()},
            "visited_order": list(self.visited_order),
            "skipped": list(self.skipped),
            "error": self.error,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


def _copy_opaque(value: Any) -> Any:
    """Deep copy of an executor payload; payloads that refuse copying are shared."""
    try:
        return copy.deepcopy(value)
    except Exception as e:
        logger.debug("Debug snapshot shared by reference", type=type(value).__name__, error=str(e))
        return value


def _copy_state(state: RunState) -> RunState:
    failures = {
        node_id: replace(record, trace_log=list(record.trace_log), debug_snapshot=_copy_opaque(record.debug_snapshot))
        for node_id, record in state.failures.items()
    }
    return replace(state, failures=failures, visited_order=list(state.visited_order), skipped=list(state.skipped))


@dataclass
class ExecutionEvent:
    """Notification delivered to subscribers on a state transition."""

    type: ExecutionEventType
    run_id: str
    node_id: Optional[str] = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "run_id": self.run_id,
            "node_id": self.node_id,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


class _Subscription:
    def __init__(self, handler: Callable, event_types: Optional[set[ExecutionEventType]]):
        self.handler = handler
        self.event_types = event_types

    def wants(self, event: ExecutionEvent) -> bool:
        return self.event_types is None or event.type in self.event_types


class RunStateMachine:
    """Owns one run's RunState, breakpoints and control signals."""

    def __init__(self, run_id: str, breakpoints: Optional[BreakpointConfig] = None):
        self.run_id = run_id
        self.breakpoints = breakpoints or BreakpointConfig()
        self._state = RunState(run_id=run_id)
        self._published = _copy_state(self._state)
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._resume_event = asyncio.Event()
        self._pause_requested = False
        self._skip_requested = False
        self._inflight: Optional[asyncio.Future] = None
        self._subscriptions: list[_Subscription] = []
        self._handler_tasks: set[asyncio.Task] = set()

    # ── Snapshot ──

    @property
    def status(self) -> RunStatus:
        return self._state.status

    @property
    def is_terminal(self) -> bool:
        return self._state.status.is_terminal

    @property
    def stopped(self) -> bool:
        return self._state.status == RunStatus.STOPPED

    def get_status(self) -> RunState:
        """Copy of the latest committed state. Never blocks."""
        return _copy_state(self._published)

    def _publish(self) -> None:
        # Readers only ever see a fully built copy
        self._published = _copy_state(self._state)

    def _transition(self, target: RunStatus) -> None:
        current = self._state.status
        if target not in TRANSITIONS[current]:
            raise InvalidTransitionError(current.value, target.value)
        self._state.status = target
        logger.debug("Run state transition", run_id=self.run_id, from_status=current.value, to_status=target.value)

    # ── Lifecycle ──

    def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._transition(RunStatus.RUNNING)
        self._state.started_at = utc_now()
        self._publish()
        self._emit(ExecutionEventType.EXECUTION_START)

    def enter_node(self, node_id: str) -> None:
        self._state.current_node_id = node_id
        self._state.visited_order.append(node_id)
        self._publish()
        self._emit(ExecutionEventType.NODE_START, node_id)

    def complete_node(self, node_id: str, result: Any = None) -> None:
        data = result.to_dict() if hasattr(result, "to_dict") else {}
        self._emit(ExecutionEventType.NODE_COMPLETE, node_id, data)

    def skip_node(self, node_id: str) -> None:
        self._state.skipped.append(node_id)
        self._publish()

    def record_failure(self, record: FailureRecord) -> None:
        """Record a node failure. Soft failures leave the run running."""
        self._state.failures[record.node_id] = record
        self._publish()
        self._emit(
            ExecutionEventType.NODE_ERROR,
            record.node_id,
            {
                "message": record.message,
                "traceLogs": list(record.trace_log),
                "debugInfo": record.debug_snapshot,
                "soft": record.soft,
                "timedOut": record.timed_out,
                "attempts": record.attempts,
            },
        )

    def complete(self) -> None:
        self._transition(RunStatus.COMPLETED)
        self._finish()
        self._emit(ExecutionEventType.EXECUTION_COMPLETE)

    def fail(self, message: str, record: Optional[FailureRecord] = None) -> None:
        """Hard failure: the run becomes errored with at least one FailureRecord."""
        if record is not None and record.node_id not in self._state.failures:
            self._state.failures[record.node_id] = record
        self._state.error = message
        self._transition(RunStatus.ERRORED)
        self._finish()
        self._emit(ExecutionEventType.EXECUTION_ERROR, self._state.current_node_id, {"error": message})

    def _finish(self) -> None:
        self._state.paused_node_id = None
        self._state.pause_reason = None
        self._state.completed_at = utc_now()
        self._publish()

    # ── Breakpoints and pausing ──

    async def checkpoint(self, node, timing: BreakpointTiming) -> bool:
        """Suspend here if a breakpoint or manual pause applies.

        Returns True when the caller should skip the node (resume(skip=True)
        after a pre-node pause).

        Raises:
            RunStopped: the run was stopped, now or while paused
        """
        self._raise_if_stopped()
        if node.bypass:
            return False

        if self._pause_requested:
            self._pause_requested = False
            await self._pause(node.id, PauseReason.MANUAL)
        elif should_trigger_breakpoint(node, timing, self.breakpoints):
            self._emit(ExecutionEventType.BREAKPOINT_TRIGGERED, node.id, {"timing": timing.value})
            await self._pause(node.id, PauseReason.BREAKPOINT)
        else:
            return False

        skip = self._skip_requested and timing == BreakpointTiming.PRE
        self._skip_requested = False
        return skip

    async def _pause(self, node_id: str, reason: PauseReason) -> None:
        self._transition(RunStatus.PAUSED)
        self._state.paused_node_id = node_id
        self._state.pause_reason = reason
        self._resume_event.clear()
        self._publish()
        logger.info("Run paused", run_id=self.run_id, node_id=node_id, reason=reason.value)
        self._emit(ExecutionEventType.EXECUTION_PAUSED, node_id, {"reason": reason.value})

        await self._resume_event.wait()
        self._raise_if_stopped()

    def _raise_if_stopped(self) -> None:
        if self.stopped:
            raise RunStopped()

    def track(self, future: Optional[asyncio.Future]) -> None:
        """Register the in-flight dispatch so stop() can cancel it."""
        self._inflight = future

    # ── Control (thread-safe) ──

    def resume(self, skip: bool = False) -> None:
        """Continue a paused run. ``skip=True`` skips the node paused before."""
        self._call_on_loop(self._do_resume, skip)

    def pause(self) -> None:
        """Request a manual pause at the next checkpoint."""
        self._call_on_loop(self._do_pause)

    def stop(self) -> None:
        """Stop the run. No-op on a terminal run."""
        self._call_on_loop(self._do_stop)

    def disable_breakpoints(self) -> None:
        self.breakpoints.enabled = False

    def _do_resume(self, skip: bool) -> None:
        if self._state.status != RunStatus.PAUSED:
            raise InvalidTransitionError(self._state.status.value, RunStatus.RUNNING.value)
        node_id = self._state.paused_node_id
        self._transition(RunStatus.RUNNING)
        self._state.paused_node_id = None
        self._state.pause_reason = None
        self._skip_requested = skip
        self._publish()
        logger.info("Run resumed", run_id=self.run_id, node_id=node_id, skip=skip)
        self._emit(ExecutionEventType.EXECUTION_RESUMED, node_id, {"skip": skip})
        self._resume_event.set()

    def _do_pause(self) -> None:
        if not self.is_terminal:
            self._pause_requested = True

    def _do_stop(self) -> None:
        if self.is_terminal:
            return
        self._transition(RunStatus.STOPPED)
        self._finish()
        logger.info("Run stopped", run_id=self.run_id)
        if self._inflight is not None and not self._inflight.done():
            self._inflight.cancel()
        self._resume_event.set()
        self._emit(ExecutionEventType.EXECUTION_STOPPED, self._state.current_node_id)

    def _call_on_loop(self, fn: Callable, *args) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            fn(*args)
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            fn(*args)
        else:
            loop.call_soon_threadsafe(self._run_marshalled, fn, *args)

    def _run_marshalled(self, fn: Callable, *args) -> None:
        try:
            fn(*args)
        except InvalidTransitionError as e:
            logger.warning("Ignored control request", run_id=self.run_id, error=e.message)

    # ── Events ──

    def subscribe(self, handler: Callable, event_types: Optional[list] = None) -> None:
        """Deliver events to ``handler`` (sync or async), optionally filtered by type."""
        types = {ExecutionEventType(t) for t in event_types} if event_types else None
        self._subscriptions.append(_Subscription(handler, types))

    def unsubscribe(self, handler: Callable) -> None:
        self._subscriptions = [s for s in self._subscriptions if s.handler != handler]

    def _emit(self, event_type: ExecutionEventType, node_id: Optional[str] = None, data: Optional[dict] = None) -> None:
        event = ExecutionEvent(type=event_type, run_id=self.run_id, node_id=node_id, data=data or {})
        for subscription in list(self._subscriptions):
            if not subscription.wants(event):
                continue
            try:
                outcome = subscription.handler(event)
                if asyncio.iscoroutine(outcome):
                    task = asyncio.ensure_future(outcome)
                    self._handler_tasks.add(task)
                    task.add_done_callback(self._handler_done)
            except Exception as e:
                logger.warning("Event handler failed", run_id=self.run_id, event=event_type.value, error=str(e))

    def _handler_done(self, task: asyncio.Task) -> None:
        self._handler_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("Event handler failed", run_id=self.run_id, error=str(task.exception()))
