"""Custom exceptions for the stepflow engine."""

from typing import Any, Optional


class StepflowException(Exception):
    """Base exception for the stepflow engine."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        """Initialize exception with message and optional details.

        Args:
            message: Exception message
            details: Extra diagnostic data for callers
        """
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(StepflowException):
    """Graph is malformed. Reported before any run starts."""

    def __init__(self, errors: list[str], warnings: Optional[list[str]] = None):
        """Initialize ValidationError with the validator's error list."""
        self.errors = list(errors)
        self.warnings = list(warnings or [])
        super().__init__(
            f"Workflow validation failed: {', '.join(self.errors)}",
            {"errors": self.errors, "warnings": self.warnings},
        )


class ConditionEvaluationError(StepflowException):
    """Malformed condition input. Never escapes the condition evaluator."""

    def __init__(self, message: str = "Condition evaluation failed"):
        super().__init__(message)


class StepFailure(StepflowException):
    """Executor-reported failure. Subject to retry policies."""

    def __init__(
        self,
        message: str = "Step failed",
        debug_snapshot: Any = None,
        details: Optional[dict[str, Any]] = None,
    ):
        self.debug_snapshot = debug_snapshot
        super().__init__(message, details)


class NonRetriableError(StepFailure):
    """Executor failure that must not be retried."""


class TimeoutFailure(StepFailure):
    """A step, condition or retry policy exceeded its time budget."""

    def __init__(self, message: str = "Timed out", timeout_ms: Optional[float] = None):
        """Initialize TimeoutFailure with the budget that was exceeded."""
        self.timeout_ms = timeout_ms
        super().__init__(message, details={"timeout_ms": timeout_ms})


class FatalRunError(StepflowException):
    """Internal invariant violation. Halts the run, never retried."""


class ExecutorNotFoundError(FatalRunError):
    """No executor is registered for a node type."""

    def __init__(self, node_type: str):
        """Initialize ExecutorNotFoundError for the missing type tag."""
        self.node_type = node_type
        super().__init__(f"No executor registered for node type: {node_type}")


class InvalidTransitionError(FatalRunError):
    """Run-state machine was asked for an illegal transition."""

    def __init__(self, current: str, target: str):
        """Initialize InvalidTransitionError with both states."""
        super().__init__(
            f"Invalid run state transition: {current} -> {target}",
            {"from": current, "to": target},
        )


class RunStopped(StepflowException):
    """Raised inside a run when stop() was requested. Never escapes the run."""

    def __init__(self, message: str = "Run was stopped"):
        super().__init__(message)


class RunNotFoundError(StepflowException):
    """Run id is not known to the engine."""

    def __init__(self, run_id: str):
        """Initialize RunNotFoundError for the given id."""
        super().__init__(f"Run not found: {run_id}")


class MonitorError(StepflowException):
    """Base class for execution monitor errors."""


class BreakpointWaitError(MonitorError):
    """Run ended before reaching a breakpoint."""

    def __init__(self, status: str, error: Optional[str] = None):
        """Initialize BreakpointWaitError with the terminal status seen."""
        self.status = status
        super().__init__(
            f"Execution failed while waiting for breakpoint: {error or status}",
            {"status": status},
        )


class MonitorTimeoutError(MonitorError):
    """Neither the awaited state nor a terminal state was observed in time."""

    def __init__(self, message: str = "Timeout waiting for execution state"):
        super().__init__(message)
