"""Retry policy for failed task results."""

from __future__ import annotations

from dataclasses import dataclass

from memento.orchestrator.models import FailureCause, Task

RETRYABLE_CAUSES: frozenset[FailureCause] = frozenset(
    {
        FailureCause.TIMEOUT,
        FailureCause.COORDINATOR_TIMEOUT,
        FailureCause.AGENT_EXIT,
        FailureCause.MISSING_RESULT,
        FailureCause.INTERRUPTED,
        FailureCause.EXECUTOR_LOST,
        FailureCause.STALE_PROCESSING,
        FailureCause.SPAWN_ERROR,
    },
)


@dataclass(slots=True)
class RetryDecision:
    """Decision returned by the retry policy."""

    should_retry: bool
    reason: str


def decide_retry(*, task: Task, retry_attempts: int) -> RetryDecision:
    """Re-enqueue infrastructure failures until ``retry_attempts`` retries are spent."""

    result = task.result
    if result is None or result.succeeded:
        return RetryDecision(should_retry=False, reason="Task did not fail.")
    if result.cause is None or result.cause not in RETRYABLE_CAUSES:
        cause = result.cause.value if result.cause is not None else "unspecified"
        return RetryDecision(should_retry=False, reason=f"Failure cause {cause} is not retryable.")
    if task.attempt > retry_attempts:
        return RetryDecision(
            should_retry=False,
            reason=f"Retry budget exhausted after {task.attempt} attempt(s).",
        )
    return RetryDecision(
        should_retry=True,
        reason=f"Retrying {result.cause.value} failure (attempt {task.attempt + 1}).",
    )
