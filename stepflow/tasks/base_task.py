"""
Base executor interface for all step implementations.

Every node type (browser action, HTTP call, branch, loop, etc.)
is handled by a BaseTask subclass registered under its type tag.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import structlog

from stepflow.core.constants import StepStatus
from stepflow.core.exceptions import FatalRunError, NonRetriableError, StepFailure, TimeoutFailure

logger = structlog.get_logger(__name__)


@dataclass
class StepResult:
    """Standardized outcome of one step dispatch."""

    status: StepStatus = StepStatus.SUCCESS
    output: Any = None
    side_effects_applied: bool = False
    error: Optional[str] = None
    trace: List[str] = field(default_factory=list)
    debug_snapshot: Any = None
    non_retriable: bool = False
    timed_out: bool = False
    soft_failure: bool = False
    bypassed: bool = False
    attempts: int = 1
    duration_ms: float = 0
    # Write-buffering view the attempt ran against; committed by the dispatcher
    staged: Any = field(default=None, repr=False, compare=False)

    @property
    def ok(self) -> bool:
        return self.status == StepStatus.SUCCESS

    @property
    def retriable(self) -> bool:
        return not self.ok and not self.non_retriable

    @classmethod
    def success(cls, output: Any = None, **kwargs) -> "StepResult":
        return cls(status=StepStatus.SUCCESS, output=output, **kwargs)

    @classmethod
    def failure(cls, error: str, **kwargs) -> "StepResult":
        return cls(status=StepStatus.FAILURE, error=error, **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "output": self.output,
            "side_effects_applied": self.side_effects_applied,
            "error": self.error,
            "trace": list(self.trace),
            "non_retriable": self.non_retriable,
            "timed_out": self.timed_out,
            "soft_failure": self.soft_failure,
            "bypassed": self.bypassed,
            "attempts": self.attempts,
            "duration_ms": self.duration_ms,
        }


class BaseTask(ABC):
    """
    Abstract base class for all step executors.

    Subclasses must implement:
    - execute(config, runtime_state) -> StepResult or a plain output value
    - task_type (class property)
    - display_name (class property)

    Raise StepFailure (retriable) or NonRetriableError to report failure;
    any other exception is treated as a retriable failure.
    """

    task_type: str = "base"
    display_name: str = "Base Task"
    description: str = "Abstract base task"

    @abstractmethod
    async def execute(self, config: Dict[str, Any], runtime_state) -> Any:
        """
        Execute the step with its resolved configuration.

        Args:
            config: Node config with templates and property inputs resolved
            runtime_state: Run data, variables and session handle

        Returns:
            StepResult, or any value (wrapped as a successful output)
        """

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        """Config fields the editor should offer for this type."""
        return {}

    async def run(self, config: Dict[str, Any], runtime_state) -> StepResult:
        """
        Run the executor with timing and error handling.

        This is the entry point called by the step dispatcher. FatalRunError
        and cancellation propagate; everything else becomes a StepResult.
        """
        start = time.monotonic()
        logger.debug("Task starting", task_type=self.task_type)
        try:
            value = await self.execute(config, runtime_state)
            result = value if isinstance(value, StepResult) else StepResult.success(output=value)
        except FatalRunError:
            raise
        except NonRetriableError as e:
            result = StepResult.failure(e.message, non_retriable=True, debug_snapshot=e.debug_snapshot)
        except TimeoutFailure as e:
            result = StepResult.failure(e.message, timed_out=True, debug_snapshot=e.debug_snapshot)
        except StepFailure as e:
            result = StepResult.failure(e.message, debug_snapshot=e.debug_snapshot)
        except Exception as e:
            result = StepResult.failure(str(e) or type(e).__name__)

        result.duration_ms = (time.monotonic() - start) * 1000
        if result.ok:
            logger.debug("Task completed", task_type=self.task_type, duration_ms=round(result.duration_ms, 2))
        else:
            logger.info(
                "Task failed",
                task_type=self.task_type,
                error=result.error,
                duration_ms=round(result.duration_ms, 2),
            )
        return result
