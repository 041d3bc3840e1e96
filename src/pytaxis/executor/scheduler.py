"""
Scheduler: starts, tracks, cancels and retries executions.

The Scheduler is a thin facade. It creates Execution records, hands each one
to its own ExecutionRun (the single owner that drives it), and talks to
running executions only through their mailboxes. Many executions run
concurrently; nothing is shared between them except the repository, the
invokers and the log bus.

Configuration uses builder methods, each returning ``self``:

    scheduler = (
        Scheduler(repository)
        .with_invoker(StepKind.SERVICE, http_invoker)
        .with_compensation_invoker(refunds)
        .with_max_concurrent_tasks(8)
    )

Example:
    ```python
    execution = await scheduler.start_execution(workflow.id, {"order_id": 7})
    async with await scheduler.subscribe_logs(execution.id) as events:
        async for event in events:
            print(event)
    final = await scheduler.wait_for_execution(execution.id)
    ```
"""

import asyncio
import copy
import logging
from datetime import datetime
from typing import Any

from uuid_extensions import uuid7

from pytaxis.core.errors import (
    CancellationError,
    InvalidStateError,
    NotFoundError,
    WorkflowError,
)
from pytaxis.core.expressions import ExpressionEvaluator, SimpleEvaluator
from pytaxis.core.pagination import fetch_page
from pytaxis.executor.invoker import CompensationInvoker, InvokerRegistry, StepInvoker
from pytaxis.executor.log_bus import ExecutionLogBus, Subscription
from pytaxis.executor.messages import CancelRequested, HumanSignal
from pytaxis.executor.readiness import downstream_of, new_task
from pytaxis.executor.run import ExecutionRun
from pytaxis.models import (
    ErrorHandler,
    Execution,
    ExecutionStatus,
    LogLevel,
    Page,
    StepKind,
    TaskExecution,
    TaskStatus,
    Workflow,
    WorkflowStatus,
)
from pytaxis.storage.base import WorkflowRepository

logger = logging.getLogger(__name__)

__all__ = ["Scheduler"]

_RETRYABLE_STATUSES = (
    ExecutionStatus.FAILED,
    ExecutionStatus.CANCELLED,
    ExecutionStatus.TIMED_OUT,
)


class Scheduler:
    """Execution control for workflows stored in a repository.

    Usage:
        scheduler = Scheduler(InMemoryRepository()).with_invoker(StepKind.SERVICE, invoker)
        execution = await scheduler.start_execution(workflow_id)
        ...
        await scheduler.shutdown()
    """

    def __init__(self, repository: WorkflowRepository):
        self.repository = repository
        self.invokers = InvokerRegistry()
        self.compensation_invoker: CompensationInvoker | None = None
        self.evaluator: ExpressionEvaluator = SimpleEvaluator()
        self.log_bus = ExecutionLogBus()
        self.default_error_handler = ErrorHandler()
        self.max_concurrent_tasks: int | None = None

        self._runs: dict[str, ExecutionRun] = {}
        self._tasks: set[asyncio.Task] = set()
        self._closing = False

    def __repr__(self) -> str:
        return f"Scheduler(repository={self.repository!r}, active={len(self._runs)})"

    # ========================================================================
    # Configuration
    # ========================================================================

    def with_invoker(self, kind: StepKind, invoker: StepInvoker) -> "Scheduler":
        """Register the invoker for every step of ``kind``.

        Returns:
            self for method chaining
        """
        self.invokers.register(kind, invoker)
        return self

    def with_service_invoker(self, service: str, invoker: StepInvoker) -> "Scheduler":
        """Register the invoker for SERVICE steps naming ``service``.

        Takes precedence over the SERVICE kind invoker.

        Returns:
            self for method chaining
        """
        self.invokers.register_service(service, invoker)
        return self

    def with_compensation_invoker(self, invoker: CompensationInvoker) -> "Scheduler":
        self.compensation_invoker = invoker
        return self

    def with_evaluator(self, evaluator: ExpressionEvaluator) -> "Scheduler":
        """Replace the default SimpleEvaluator for conditions, loop items and deadlines."""
        self.evaluator = evaluator
        return self

    def with_log_bus(self, log_bus: ExecutionLogBus) -> "Scheduler":
        """Share a log bus (for example between several schedulers)."""
        self.log_bus = log_bus
        return self

    def with_default_error_handler(self, handler: ErrorHandler) -> "Scheduler":
        """Handler used by definitions that do not declare their own. Default: FAIL."""
        self.default_error_handler = handler
        return self

    def with_max_concurrent_tasks(self, max_concurrent: int) -> "Scheduler":
        """Cap in-flight top-level tasks per execution.

        Nested scopes use their own ``max_concurrency``. Default: unbounded.

        Raises:
            ValueError: If max_concurrent is less than 1
        """
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.max_concurrent_tasks = max_concurrent
        return self

    # ========================================================================
    # Starting executions
    # ========================================================================

    async def start_execution(
        self,
        workflow_id: str,
        input_parameters: dict[str, Any] | None = None,
        triggered_by: str = "manual",
        metadata: dict[str, Any] | None = None,
    ) -> Execution:
        """
        Create an execution of an ACTIVE workflow and start driving it.

        Returns as soon as the execution record exists (status PENDING); the
        owner loop runs in the background.

        Raises:
            NotFoundError: If the workflow does not exist
            InvalidStateError: If the workflow is not ACTIVE
        """
        workflow = await self._active_workflow(workflow_id)
        return await self._launch(workflow, input_parameters or {}, triggered_by, metadata or {})

    async def _active_workflow(self, workflow_id: str) -> Workflow:
        workflow = await self.repository.get_workflow(workflow_id)
        if workflow is None:
            raise NotFoundError(f"Workflow {workflow_id} not found")
        if workflow.status != WorkflowStatus.ACTIVE:
            raise InvalidStateError(
                f"Workflow {workflow_id} is {workflow.status}; only ACTIVE workflows can run"
            )
        return workflow

    async def _launch(
        self,
        workflow: Workflow,
        input_parameters: dict[str, Any],
        triggered_by: str,
        metadata: dict[str, Any],
        retry_of: str | None = None,
        carried_over: dict[str, TaskExecution] | None = None,
    ) -> Execution:
        if self._closing:
            raise InvalidStateError("Scheduler is shutting down")

        execution = Execution(
            id=str(uuid7()),
            workflow_id=workflow.id,
            tenant_id=workflow.tenant_id,
            input_parameters=dict(input_parameters),
            triggered_by=triggered_by,
            metadata=dict(metadata),
            retry_of=retry_of,
        )
        for step in workflow.definition.steps:
            task = new_task(step)
            previous = (carried_over or {}).get(step.id)
            if previous is not None:
                task.status = TaskStatus.COMPLETED
                task.input = copy.deepcopy(previous.input)
                task.output = copy.deepcopy(previous.output)
                task.started_at = previous.started_at
                task.completed_at = previous.completed_at
            execution.tasks[task.key] = task

        await self.repository.save_execution(execution)
        snapshot = copy.deepcopy(execution)

        run = ExecutionRun(self, workflow.definition, execution)
        self._runs[execution.id] = run
        self._track(run.start())
        logger.info(
            f"Started execution {execution.id} of workflow {workflow.id} "
            f"(v{workflow.version}, triggered by {triggered_by})"
        )
        return snapshot

    def _track(self, task: asyncio.Task) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ========================================================================
    # Queries
    # ========================================================================

    async def get_execution(self, execution_id: str) -> Execution:
        """
        Current state of an execution, tasks included.

        A FAILED execution always names the task that caused it in
        ``failed_task_id`` and carries its error in ``error_message``.

        Raises:
            NotFoundError: If the execution does not exist
        """
        execution = await self.repository.get_execution(execution_id)
        if execution is None:
            raise NotFoundError(f"Execution {execution_id} not found")
        return execution

    async def list_executions(
        self,
        workflow_id: str | None = None,
        tenant_id: str | None = None,
        status: ExecutionStatus | None = None,
        page_size: int | None = None,
        page_token: str | None = None,
    ) -> Page[Execution]:
        """Executions matching the filters, newest first."""
        return await fetch_page(
            lambda offset, limit: self.repository.list_executions(
                workflow_id=workflow_id,
                tenant_id=tenant_id,
                status=status,
                offset=offset,
                limit=limit,
            ),
            page_size,
            page_token,
        )

    def is_running(self, execution_id: str) -> bool:
        return execution_id in self._runs

    async def wait_for_execution(
        self, execution_id: str, timeout: float | None = None
    ) -> Execution:
        """
        Wait until the execution is terminal and return its final state.

        Raises:
            NotFoundError: If the execution does not exist
            TimeoutError: If it is still running after ``timeout`` seconds
        """
        run = self._runs.get(execution_id)
        if run is not None:
            await asyncio.wait_for(run.done.wait(), timeout)
        return await self.get_execution(execution_id)

    async def subscribe_logs(
        self,
        execution_id: str,
        task_id: str | None = None,
        min_level: LogLevel = LogLevel.DEBUG,
    ) -> Subscription:
        """
        Live tail of an execution's events from now on.

        Subscribing to an execution that is no longer running yields a
        subscription that has already ended.

        Raises:
            NotFoundError: If the execution does not exist
        """
        if execution_id in self._runs:
            return self.log_bus.subscribe(execution_id, task_id, min_level)
        await self.get_execution(execution_id)
        return self.log_bus.ended_subscription(execution_id, task_id, min_level)

    # ========================================================================
    # Control
    # ========================================================================

    async def cancel_execution(
        self, execution_id: str, reason: str = "cancelled by user"
    ) -> Execution:
        """
        Cancel a PENDING or RUNNING execution.

        When this returns, the execution is CANCELLED: running tasks were
        asked to stop and are no longer awaited, pending tasks will never
        run.

        Raises:
            NotFoundError: If the execution does not exist
            InvalidStateError: If the execution is already terminal
        """
        run = self._runs.get(execution_id)
        if run is None:
            execution = await self.get_execution(execution_id)
            if not execution.status.is_active:
                raise InvalidStateError(
                    f"Cannot cancel execution {execution_id} in status {execution.status}"
                )
            # Record left active by a previous process: nothing owns it any more
            return await self._cancel_orphan(execution, reason)

        reply = asyncio.get_running_loop().create_future()
        run.post(CancelRequested(reason, reply))
        await reply
        logger.info(f"Cancelled execution {execution_id}: {reason}")
        return await self.get_execution(execution_id)

    async def _cancel_orphan(self, execution: Execution, reason: str) -> Execution:
        logger.warning(f"Cancelling orphaned execution {execution.id}")
        for task in execution.tasks.values():
            if task.status in (TaskStatus.PENDING, TaskStatus.RUNNING):
                task.status = TaskStatus.CANCELLED
                task.retry_scheduled = False
        execution.status = ExecutionStatus.CANCELLED
        execution.error_message = str(CancellationError(reason))
        execution.metadata["cancel_reason"] = reason
        execution.completed_at = datetime.now()
        await self.repository.save_execution(execution)
        return execution

    async def retry_execution(
        self, execution_id: str, from_task_id: str | None = None
    ) -> Execution:
        """
        Start a new execution of a FAILED, CANCELLED or TIMED_OUT one.

        The new execution has the same workflow and input, is triggered by
        ``retry:<execution_id>`` and records ``retry_from`` (and
        ``retry_from_task``) in its metadata.

        With ``from_task_id``, top-level steps that completed in the source
        execution and are neither that task nor downstream of it are carried
        over as COMPLETED with their outputs; everything else runs again.

        Raises:
            NotFoundError: If the execution, the workflow or the task does not exist
            InvalidStateError: If the execution cannot be retried
        """
        source = await self.get_execution(execution_id)
        if source.status not in _RETRYABLE_STATUSES:
            raise InvalidStateError(
                f"Can only retry failed, cancelled or timed out executions "
                f"(execution {execution_id} is {source.status})"
            )
        workflow = await self._active_workflow(source.workflow_id)

        carried_over: dict[str, TaskExecution] = {}
        metadata = {**source.metadata, "retry_from": execution_id}
        metadata.pop("cancel_reason", None)
        if from_task_id is not None:
            task = source.find_task(from_task_id)
            if task is None:
                raise NotFoundError(f"Task {from_task_id} not found in execution {execution_id}")
            while task.parent_key is not None:
                task = source.tasks[task.parent_key]
            rerun = {task.step_id} | downstream_of(workflow.definition.steps, task.step_id)
            carried_over = {
                t.step_id: t
                for t in source.children_of(None)
                if t.status == TaskStatus.COMPLETED and t.step_id not in rerun
            }
            metadata["retry_from_task"] = from_task_id

        return await self._launch(
            workflow,
            source.input_parameters,
            f"retry:{execution_id}",
            metadata,
            retry_of=execution_id,
            carried_over=carried_over,
        )

    async def signal_human_task(
        self,
        execution_id: str,
        task_key: str,
        approved: bool = True,
        data: dict[str, Any] | None = None,
        actor: str = "system",
    ) -> Execution:
        """
        Approve or reject a RUNNING human task.

        ``task_key`` may be the task key, its id or its step id.

        Raises:
            NotFoundError: If the execution does not exist
            InvalidStateError: If the execution is not running or the task
                is not waiting for a signal
        """
        run = self._runs.get(execution_id)
        if run is None:
            execution = await self.get_execution(execution_id)
            raise InvalidStateError(
                f"Execution {execution_id} is {execution.status}; cannot signal tasks"
            )

        reply = asyncio.get_running_loop().create_future()
        run.post(HumanSignal(task_key, approved, dict(data or {}), actor, reply))
        await reply
        verdict = "approved" if approved else "rejected"
        logger.info(f"Human task {task_key} of execution {execution_id} {verdict} by {actor}")
        return await self.get_execution(execution_id)

    # ========================================================================
    # Run bookkeeping
    # ========================================================================

    def _run_finished(self, run: ExecutionRun) -> None:
        """Called by a run's owner loop once its execution is terminal."""
        self._runs.pop(run.execution.id, None)
        if (
            run.retry_requested
            and run.execution.status == ExecutionStatus.FAILED
            and not self._closing
        ):
            self._track(asyncio.create_task(self._start_follow_up(run.execution)))

    async def _start_follow_up(self, failed: Execution) -> None:
        attempt = int(failed.metadata.get("retry_attempt", 0)) + 1
        try:
            workflow = await self._active_workflow(failed.workflow_id)
            follow_up = await self._launch(
                workflow,
                failed.input_parameters,
                f"retry:{failed.id}",
                {**failed.metadata, "retry_of": failed.id, "retry_attempt": attempt},
                retry_of=failed.id,
            )
        except WorkflowError as e:
            logger.warning(f"Could not retry execution {failed.id}: {e}")
            return
        logger.info(f"Execution {failed.id} retried as {follow_up.id} (attempt {attempt})")

    async def shutdown(self, reason: str = "scheduler shutdown") -> None:
        """Cancel every active execution and wait for the owner loops to stop."""
        self._closing = True
        for execution_id in list(self._runs):
            try:
                await self.cancel_execution(execution_id, reason)
            except WorkflowError as e:
                logger.debug(f"Shutdown: {execution_id} already finished ({e})")
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        logger.info("Scheduler shut down")
