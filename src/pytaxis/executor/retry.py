"""
Retry decisions for failed tasks.

**Design Pattern**: State Machine using Union types

``should_retry`` is a pure function of the task's retry count, its policy
and the error. The owner loop acts on the answer: ``Retry`` puts the task
back to PENDING behind a backoff timer, ``GiveUp`` hands it to the error
coordinator.

Example:
    ```python
    match should_retry(task, step.retry, error):
        case Retry(delay_ms):
            schedule(delay_ms)
        case GiveUp(reason):
            coordinator.handle(...)
    ```
"""

from __future__ import annotations

from dataclasses import dataclass

from pytaxis.models import RetryableError, RetryPolicy, TaskExecution

__all__ = ["Retry", "GiveUp", "RetryDecision", "should_retry"]


@dataclass(frozen=True)
class Retry:
    """Try again after ``delay_ms``."""

    delay_ms: int
    attempt: int
    """Number of the attempt that will run next (1-based)."""

    def __str__(self) -> str:
        return f"Retry(attempt={self.attempt}, delay_ms={self.delay_ms})"


@dataclass(frozen=True)
class GiveUp:
    """Stop retrying; the error coordinator takes over."""

    reason: str
    attempts: int

    def __str__(self) -> str:
        return f"GiveUp(attempts={self.attempts}, reason={self.reason!r})"


RetryDecision = Retry | GiveUp


def should_retry(
    task: TaskExecution, policy: RetryPolicy | None, error: BaseException | None = None
) -> RetryDecision:
    """
    Decide whether a failed task gets another attempt.

    ``task.retry_count`` is the number of retries already performed, so the
    attempt that just failed is number ``retry_count + 1``. With
    ``max_attempts=3`` a task runs at most three times.

    Args:
        task: The task whose latest attempt failed
        policy: The step's retry policy (None means no retries)
        error: The failure; a ``RetryableError`` that reports itself as
            permanent stops retries regardless of the policy

    Returns:
        Retry with the backoff delay, or GiveUp with the reason
    """
    attempts = task.retry_count + 1

    if isinstance(error, RetryableError) and not error.is_retryable():
        return GiveUp(reason=f"non-retryable error: {error}", attempts=attempts)

    if policy is None:
        return GiveUp(reason="no retry policy", attempts=attempts)

    if not policy.has_attempts_left(task.retry_count):
        return GiveUp(
            reason=f"max attempts ({policy.max_attempts}) exhausted", attempts=attempts
        )

    return Retry(delay_ms=policy.delay_for(task.retry_count), attempt=attempts + 1)
