"""Step retry policies.

Two strategies:
- count: retry a failed attempt up to ``count`` times
- untilCondition: re-run the step until a condition passes or ``timeout`` elapses

Delays between attempts are fixed or exponential (``delay * 2^(n-1)``,
optionally capped by ``max_delay``). All durations are milliseconds.

Usage:
    policy = RetryPolicy.exponential(count=4, delay=100, max_delay=400)
    policy.delays()  # [100, 200, 400, 400]
    result = await run_with_policy(policy, attempt, runtime_state)
"""

import asyncio
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from stepflow.config import get_settings
from stepflow.tasks.base_task import StepResult
from stepflow.workflow.conditions import Condition, ConditionEvaluator, normalize_condition_payload

logger = structlog.get_logger(__name__)

Attempt = Callable[[int], Awaitable[StepResult]]


class RetryStrategy(str, Enum):
    """Available retry strategies."""
    COUNT = "count"
    UNTIL_CONDITION = "untilCondition"


class DelayStrategy(str, Enum):
    """How the wait between attempts grows."""
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


class RetryPolicy(BaseModel):
    """Per-node retry configuration."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    strategy: RetryStrategy = RetryStrategy.COUNT
    count: int = Field(default_factory=lambda: get_settings().DEFAULT_RETRY_COUNT, ge=0)
    until_condition: Optional[Condition] = None
    timeout: float = Field(default_factory=lambda: get_settings().DEFAULT_UNTIL_CONDITION_TIMEOUT_MS, gt=0)
    delay: float = Field(default_factory=lambda: get_settings().DEFAULT_RETRY_DELAY_MS, ge=0)
    delay_strategy: DelayStrategy = DelayStrategy.FIXED
    max_delay: Optional[float] = Field(default=None, ge=0)

    @field_validator("until_condition", mode="before")
    @classmethod
    def _normalize_condition(cls, value: Any) -> Any:
        return normalize_condition_payload(value)

    @model_validator(mode="after")
    def _check_condition(self) -> "RetryPolicy":
        if self.strategy == RetryStrategy.UNTIL_CONDITION and self.until_condition is None:
            raise ValueError("untilCondition retry strategy requires an untilCondition")
        return self

    @classmethod
    def fixed(cls, count: int = 3, delay: float = 1000) -> "RetryPolicy":
        """Fixed delay between retries."""
        return cls(strategy=RetryStrategy.COUNT, count=count, delay=delay)

    @classmethod
    def exponential(
        cls,
        count: int = 3,
        delay: float = 1000,
        max_delay: Optional[float] = None,
    ) -> "RetryPolicy":
        """Exponential backoff: delay * 2^(n-1), capped at max_delay."""
        return cls(
            strategy=RetryStrategy.COUNT,
            count=count,
            delay=delay,
            delay_strategy=DelayStrategy.EXPONENTIAL,
            max_delay=max_delay,
        )

    @classmethod
    def until(
        cls,
        condition: Any,
        timeout: float = 30000,
        delay: float = 1000,
        delay_strategy: DelayStrategy = DelayStrategy.FIXED,
        max_delay: Optional[float] = None,
    ) -> "RetryPolicy":
        """Re-run until the condition passes or timeout elapses."""
        return cls(
            strategy=RetryStrategy.UNTIL_CONDITION,
            until_condition=condition,
            timeout=timeout,
            delay=delay,
            delay_strategy=delay_strategy,
            max_delay=max_delay,
        )

    def compute_delay(self, retry_number: int) -> float:
        """Compute the wait before retry number ``retry_number`` (1-based), in ms."""
        if self.delay_strategy == DelayStrategy.EXPONENTIAL:
            delay = self.delay * (2 ** (retry_number - 1))
        else:
            delay = self.delay

        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return delay

    def delays(self) -> list[float]:
        """Planned waits between attempts.

        For untilCondition the schedule is cut where the cumulative wait
        reaches the timeout; a zero delay has no planned schedule.
        """
        if self.strategy == RetryStrategy.COUNT:
            return [self.compute_delay(n) for n in range(1, self.count + 1)]

        planned: list[float] = []
        total = 0.0
        while True:
            delay = self.compute_delay(len(planned) + 1)
            if delay <= 0 or total + delay >= self.timeout:
                return planned
            planned.append(delay)
            total += delay


# ─── Preset policies ───

RETRY_PRESETS: dict[str, RetryPolicy] = {
    'none': RetryPolicy.fixed(count=0, delay=0),
    'conservative': RetryPolicy.exponential(count=3, delay=2000, max_delay=30000),
    'aggressive': RetryPolicy.exponential(count=7, delay=500, max_delay=120000),
    'api_call': RetryPolicy.exponential(count=5, delay=1000, max_delay=60000),
    'web_scraping': RetryPolicy.exponential(count=4, delay=3000, max_delay=90000),
    'database': RetryPolicy.fixed(count=3, delay=2000),
}


def compute_delay(policy: RetryPolicy, retry_number: int) -> float:
    return policy.compute_delay(retry_number)


def delays(policy: RetryPolicy) -> list[float]:
    return policy.delays()


async def _notify(on_retry: Optional[Callable], retry_number: int, result: StepResult, delay: float) -> None:
    if on_retry is None:
        return
    try:
        if asyncio.iscoroutinefunction(on_retry):
            await on_retry(retry_number, result, delay)
        else:
            on_retry(retry_number, result, delay)
    except Exception as e:
        logger.warning("Retry callback failed", retry_number=retry_number, error=str(e))


async def run_with_policy(
    policy: RetryPolicy,
    attempt: Attempt,
    runtime_state,
    on_retry: Optional[Callable] = None,
    evaluator: Optional[ConditionEvaluator] = None,
) -> StepResult:
    """Run ``attempt`` under the given retry policy.

    Args:
        policy: RetryPolicy to apply.
        attempt: Async callable(attempt_number) -> StepResult. Attempt numbers are 1-based.
        runtime_state: State the until-condition falls back to when an
            attempt result carries no staged view.
        on_retry: Optional callback(retry_number, last_result, delay_ms) called before each wait.
        evaluator: ConditionEvaluator for untilCondition (a fresh one by default).

    Returns:
        The final StepResult with ``attempts`` recorded. Results flagged
        non_retriable are returned without retrying.
    """
    if policy.strategy == RetryStrategy.UNTIL_CONDITION:
        return await _run_until_condition(policy, attempt, runtime_state, on_retry, evaluator or ConditionEvaluator())
    return await _run_count(policy, attempt, on_retry)


async def _run_count(policy: RetryPolicy, attempt: Attempt, on_retry: Optional[Callable]) -> StepResult:
    number = 1
    result = await attempt(number)

    while result.retriable and number <= policy.count:
        delay = policy.compute_delay(number)
        logger.info("Retrying step", attempt=number, max_retries=policy.count, delay_ms=delay, error=result.error)
        await _notify(on_retry, number, result, delay)
        await asyncio.sleep(delay / 1000)
        number += 1
        result = await attempt(number)

    result.attempts = number
    return result


async def _run_until_condition(
    policy: RetryPolicy,
    attempt: Attempt,
    runtime_state,
    on_retry: Optional[Callable],
    evaluator: ConditionEvaluator,
) -> StepResult:
    started = time.monotonic()
    number = 0

    while True:
        number += 1
        result = await attempt(number)
        if result.non_retriable:
            result.attempts = number
            return result

        view = result.staged if result.staged is not None else runtime_state
        check = await evaluator.evaluate(policy.until_condition, view)
        if check.passed:
            return StepResult.success(
                output=result.output if result.ok else None,
                trace=result.trace,
                attempts=number,
                staged=result.staged,
            )

        delay = policy.compute_delay(number)
        elapsed = (time.monotonic() - started) * 1000
        if elapsed + delay >= policy.timeout:
            logger.info("Retry until condition timed out", attempts=number, timeout_ms=policy.timeout)
            return StepResult.failure(
                f"Retry until condition timed out after {policy.timeout:g}ms "
                f"({number} attempts): {check.message}",
                timed_out=True,
                trace=result.trace,
                debug_snapshot=result.debug_snapshot,
                attempts=number,
            )

        logger.debug("Until condition not met, retrying", attempt=number, delay_ms=delay, reason=check.message)
        await _notify(on_retry, number, result, delay)
        await asyncio.sleep(delay / 1000)
