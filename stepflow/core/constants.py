"""Constants and enums for the stepflow engine."""

from enum import Enum


class RunStatus(str, Enum):
    """Run lifecycle status."""

    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERRORED = "errored"
    STOPPED = "stopped"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.ERRORED, RunStatus.STOPPED)


class PauseReason(str, Enum):
    """Why a run is paused."""

    BREAKPOINT = "breakpoint"
    MANUAL = "manual"


class StepStatus(str, Enum):
    """Outcome of a single step dispatch."""

    SUCCESS = "success"
    FAILURE = "failure"


class NodeType(str, Enum):
    """Built-in node type tags. Other tags resolve through the registry."""

    START = "start"
    ACTION = "action"
    SWITCH = "switch"
    LOOP = "loop"
    VERIFY = "verify"
    VALUE = "value"
    END = "end"
    JAVASCRIPT = "javascript"
    SET_VARIABLE = "set_variable"
    LOG = "log"
    WAIT = "wait"


class BreakpointTiming(str, Enum):
    """When breakpoints fire relative to a node."""

    PRE = "pre"
    POST = "post"
    BOTH = "both"


class BreakpointScope(str, Enum):
    """Which nodes qualify for breakpoints."""

    ALL = "all"
    MARKED = "marked"


class ExecutionEventType(str, Enum):
    """Events delivered to monitor subscribers."""

    EXECUTION_START = "EXECUTION_START"
    NODE_START = "NODE_START"
    NODE_COMPLETE = "NODE_COMPLETE"
    NODE_ERROR = "NODE_ERROR"
    BREAKPOINT_TRIGGERED = "BREAKPOINT_TRIGGERED"
    EXECUTION_PAUSED = "EXECUTION_PAUSED"
    EXECUTION_RESUMED = "EXECUTION_RESUMED"
    EXECUTION_COMPLETE = "EXECUTION_COMPLETE"
    EXECUTION_ERROR = "EXECUTION_ERROR"
    EXECUTION_STOPPED = "EXECUTION_STOPPED"


# Slot names
INPUT_SLOT = "input"
OUTPUT_SLOT = "output"
BODY_SLOT = "body"
DEFAULT_CASE = "default"
PROPERTY_SLOT_SUFFIX = "-input"

# Runtime data keys
DEFAULT_API_CONTEXT_KEY = "apiResponse"
