"""
Error/Compensation Coordinator.

Consulted once per task whose failure is final: retries are exhausted, the
error is permanent, or a composite step's children could not all succeed.
The workflow's ``ErrorHandler`` decides the effect:

- FAIL: the task is FAILED; its dependents stay PENDING and the execution
  fails once nothing else can make progress.
- IGNORE: the task is FAILED but counts as satisfied; dependents run and see
  a None output.
- RETRY: the task is FAILED and, once this execution has settled as FAILED,
  a brand-new execution of the same workflow and input is started. At most
  one per execution, at most ``max_execution_retries`` along a chain.
- COMPENSATE: running work is cancelled, registered compensations run
  best-effort for the failed task and then every completed task in reverse
  completion order, and the execution fails immediately.

Compensation failures are logged as ``CompensationError`` and never
compensated or retried.
"""

from __future__ import annotations

import copy
import logging
from enum import Enum
from typing import TYPE_CHECKING

from pytaxis.core.errors import CompensationError
from pytaxis.executor.invoker import CompensationInvoker
from pytaxis.executor.readiness import root_cause
from pytaxis.models import (
    ErrorHandler,
    ErrorHandlerKind,
    ExecutionStatus,
    LogLevel,
    TaskExecution,
    TaskStatus,
)

if TYPE_CHECKING:
    from pytaxis.executor.run import ExecutionRun

logger = logging.getLogger(__name__)

__all__ = ["ErrorEffect", "ErrorCoordinator"]


class ErrorEffect(Enum):
    """What the coordinator did with a failure."""

    PROPAGATED = "PROPAGATED"
    """Task failed; the execution fails once it settles."""

    CONTAINED = "CONTAINED"
    """Task failed but dependents proceed."""

    RETRY_SCHEDULED = "RETRY_SCHEDULED"
    """Task failed; a new execution follows this one."""

    COMPENSATED = "COMPENSATED"
    """Completed work was undone and the execution failed."""

    def __str__(self) -> str:
        return self.value


class ErrorCoordinator:
    """Applies an ErrorHandler to a task whose failure is final."""

    def __init__(self, compensation_invoker: CompensationInvoker | None = None):
        self._compensation_invoker = compensation_invoker

    async def handle(
        self,
        run: ExecutionRun,
        task: TaskExecution,
        error: BaseException,
        handler: ErrorHandler,
    ) -> ErrorEffect:
        logger.debug(f"Handling failure of {task.key} with {handler.kind}: {error}")

        match handler.kind:
            case ErrorHandlerKind.IGNORE:
                await run.fail_task(task, error, ignored=True)
                return ErrorEffect.CONTAINED

            case ErrorHandlerKind.RETRY:
                await run.fail_task(task, error)
                if self._request_retry(run, handler):
                    return ErrorEffect.RETRY_SCHEDULED
                return ErrorEffect.PROPAGATED

            case ErrorHandlerKind.COMPENSATE:
                await run.fail_task(task, error)
                await run.cancel_in_flight()
                await self.compensate(run, task, handler)
                cause = root_cause(run.execution, task.key) or task
                await run.finish(
                    ExecutionStatus.FAILED,
                    error_message=cause.error_message or str(error),
                    failed_task_id=cause.key,
                )
                return ErrorEffect.COMPENSATED

            case _:  # FAIL
                await run.fail_task(task, error)
                return ErrorEffect.PROPAGATED

    def _request_retry(self, run: ExecutionRun, handler: ErrorHandler) -> bool:
        if run.retry_requested:
            return True
        attempt = int(run.execution.metadata.get("retry_attempt", 0)) + 1
        if attempt > handler.max_execution_retries:
            run.emit(
                f"Execution retry limit ({handler.max_execution_retries}) reached",
                LogLevel.ERROR,
            )
            return False
        run.retry_requested = True
        run.emit(
            f"Execution will be retried (attempt {attempt} of {handler.max_execution_retries})",
            LogLevel.WARN,
        )
        return True

    async def compensate(
        self, run: ExecutionRun, failed: TaskExecution, handler: ErrorHandler
    ) -> list[str]:
        """
        Run compensations best-effort and return the keys compensated.

        The failed task comes first (its partial work may need undoing),
        followed by completed tasks, most recently completed first.
        """
        completed = [
            run.execution.tasks[key]
            for key in reversed(run.completion_order)
            if run.execution.tasks[key].status == TaskStatus.COMPLETED
        ]
        compensated: list[str] = []

        for task in [failed, *completed]:
            compensation = handler.compensation_for(task.step_id)
            if compensation is None:
                continue
            if self._compensation_invoker is None:
                logger.warning(
                    f"No compensation invoker configured, skipping compensation of {task.key}"
                )
                run.emit(
                    f"Compensation for '{task.key}' skipped: no compensation invoker",
                    LogLevel.WARN,
                    task=task,
                )
                continue

            try:
                await self._compensation_invoker.compensate(compensation, copy.deepcopy(task))
            except Exception as e:
                failure = CompensationError(task.step_id, e)
                logger.error(f"Execution {run.execution.id}: {failure}")
                run.emit(str(failure), LogLevel.ERROR, task=task)
                continue

            compensated.append(task.key)
            run.emit(
                f"Compensated via {compensation.service}.{compensation.method}",
                LogLevel.INFO,
                task=task,
            )

        return compensated

    def __repr__(self) -> str:
        return f"ErrorCoordinator(compensation_invoker={self._compensation_invoker!r})"
