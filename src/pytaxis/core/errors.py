"""Error taxonomy for workflow orchestration.

Errors are values: each carries the context a caller needs (offending step
ids, task keys, attempt counts) instead of a bare message.

Propagation:
- ValidationError surfaces synchronously to whoever submitted a definition.
- StepInvocationError stays inside the scheduler until retries run out.
- RetryExhaustedError is what the error coordinator receives.
- CompensationError is logged, never raised out of the coordinator.
- CancellationError marks deliberate termination, not a failure.
- DependencyUnsatisfiableError describes tasks that can never run.
"""

from __future__ import annotations

from collections.abc import Iterable

from pytaxis.models.retry import RetryableError


class WorkflowError(Exception):
    """Base class for every error raised by pytaxis."""


class ValidationError(WorkflowError):
    """Malformed or cyclic workflow definition.

    Attributes:
        step_ids: The offending step ids (may be empty for whole-definition
            problems such as "no steps").
    """

    def __init__(self, message: str, step_ids: Iterable[str] = ()):
        super().__init__(message)
        self.step_ids: tuple[str, ...] = tuple(step_ids)


class StepInvocationError(RetryableError, WorkflowError):
    """An invoker reported failure, or an attempt timed out.

    Recoverable through the step's retry policy unless ``retryable`` is
    False (rejected human tasks, missing invokers).
    """

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self._retryable = retryable

    def is_retryable(self) -> bool:
        return self._retryable


class RetryExhaustedError(WorkflowError):
    """The retry policy gave up on a task."""

    def __init__(self, task_key: str, attempts: int, cause: str | None):
        super().__init__(f"Step '{task_key}' failed after {attempts} attempt(s): {cause}")
        self.task_key = task_key
        self.attempts = attempts
        self.cause = cause


class CompensationError(WorkflowError):
    """A compensation action failed. Logged, never compensated again."""

    def __init__(self, step_id: str, cause: BaseException | str):
        super().__init__(f"Compensation for step '{step_id}' failed: {cause}")
        self.step_id = step_id
        self.cause = cause


class CancellationError(WorkflowError):
    """Deliberate termination of an execution or task.

    Its message is what a cancelled execution reports as ``error_message``.
    """

    def __init__(self, reason: str):
        super().__init__(f"Cancelled: {reason}")
        self.reason = reason


class DependencyUnsatisfiableError(WorkflowError):
    """Tasks that can never run because an upstream task failed."""

    def __init__(self, blocked_keys: Iterable[str], failed_key: str | None):
        self.blocked_keys = tuple(blocked_keys)
        self.failed_key = failed_key
        blocked = ", ".join(self.blocked_keys)
        if failed_key:
            message = f"Step(s) {blocked} cannot run because '{failed_key}' failed"
        else:
            message = f"Step(s) {blocked} cannot run"
        super().__init__(message)


class ExpressionError(WorkflowError):
    """An expression could not be evaluated."""


class NotFoundError(WorkflowError):
    """A workflow, template or execution does not exist."""


class InvalidStateError(WorkflowError):
    """The operation is not valid in the record's current state."""


__all__ = [
    "WorkflowError",
    "ValidationError",
    "StepInvocationError",
    "RetryExhaustedError",
    "CompensationError",
    "CancellationError",
    "DependencyUnsatisfiableError",
    "ExpressionError",
    "NotFoundError",
    "InvalidStateError",
]
