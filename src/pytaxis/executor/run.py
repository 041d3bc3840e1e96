"""
ExecutionRun: the single owner of one live execution.

**Design Pattern**: Actor

Each execution started by the Scheduler gets exactly one ExecutionRun,
running as one asyncio task. The run owns the Execution object and is the
only code that mutates it or its tasks. Everything that happens elsewhere
(an invoker returning, a timer firing, a human signal, a cancel request, the
workflow timeout) is posted to the run's mailbox and applied in order.

Loop:
    1. begin: PENDING -> RUNNING, arm the workflow timeout, advance
    2. take one message, apply it, advance
    3. repeat until the execution is terminal

``advance`` dispatches every ready task, settles every composite whose
children are done, and finally settles the execution itself when nothing is
in flight and nothing is ready.

Every transition is persisted through the repository and emitted on the
log bus before the next message is taken.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import TYPE_CHECKING, Any

from pytaxis.core.errors import (
    CancellationError,
    DependencyUnsatisfiableError,
    ExpressionError,
    InvalidStateError,
    RetryExhaustedError,
    StepInvocationError,
    WorkflowError,
)
from pytaxis.core.placeholders import resolve_input
from pytaxis.executor.compensation import ErrorCoordinator
from pytaxis.executor.handlers import handler_for
from pytaxis.executor.invoker import StepInvoker
from pytaxis.executor.messages import (
    CancelRequested,
    HumanSignal,
    HumanTimeout,
    Message,
    RetryDue,
    TaskFailed,
    TaskSucceeded,
    TimerFired,
    Token,
    WorkflowTimedOut,
)
from pytaxis.executor.readiness import (
    blocked_tasks,
    ready_tasks,
    root_cause,
    scope_settled,
    visible_outputs,
)
from pytaxis.executor.retry import GiveUp, Retry, should_retry
from pytaxis.models import (
    ErrorHandler,
    Execution,
    ExecutionStatus,
    LogEvent,
    LogLevel,
    Step,
    TaskExecution,
    TaskStatus,
    WorkflowDefinition,
)

if TYPE_CHECKING:
    from pytaxis.executor.scheduler import Scheduler

logger = logging.getLogger(__name__)

__all__ = ["ExecutionRun"]

_FINAL_LEVELS = {
    ExecutionStatus.COMPLETED: LogLevel.INFO,
    ExecutionStatus.FAILED: LogLevel.ERROR,
    ExecutionStatus.CANCELLED: LogLevel.WARN,
    ExecutionStatus.TIMED_OUT: LogLevel.ERROR,
}


class ExecutionRun:
    """Owner loop of one execution. Created and started by the Scheduler."""

    def __init__(self, scheduler: Scheduler, definition: WorkflowDefinition, execution: Execution):
        self.execution = execution
        self.definition = definition
        self.steps_by_id: dict[str, Step] = definition.step_index()
        self.error_handler: ErrorHandler = (
            definition.error_handler or scheduler.default_error_handler
        )
        self.params: dict[str, Any] = {
            **definition.global_parameters,
            **execution.input_parameters,
        }
        self.invokers = scheduler.invokers
        self.evaluator = scheduler.evaluator
        self.retry_requested = False
        """Set by the RETRY handler; the Scheduler starts the follow-up execution."""

        self.completion_order: list[str] = []
        """Keys of tasks in the order they COMPLETED."""

        self.done = asyncio.Event()

        self._scheduler = scheduler
        self._repository = scheduler.repository
        self._log_bus = scheduler.log_bus
        self._top_level_cap = scheduler.max_concurrent_tasks
        self._coordinator = ErrorCoordinator(scheduler.compensation_invoker)

        self._mailbox: asyncio.Queue[Message] = asyncio.Queue()
        self._dispatch_counter = itertools.count(1)
        self._live: dict[str, Token] = {}
        self._inflight: dict[str, asyncio.Task] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._awaiting_signal: set[str] = set()
        self._background: set[asyncio.Task] = set()
        self._workflow_timer: asyncio.TimerHandle | None = None
        self._task: asyncio.Task | None = None

    def __repr__(self) -> str:
        return f"ExecutionRun(execution_id={self.execution.id!r}, status={self.execution.status})"

    # ========================================================================
    # Lifecycle
    # ========================================================================

    def start(self) -> asyncio.Task:
        """Spawn the owner loop as an asyncio task."""
        if self._task is None:
            self._task = asyncio.create_task(self.run(), name=f"execution-{self.execution.id}")
        return self._task

    def post(self, message: Message) -> None:
        """Deliver a message to the owner loop. Safe from any coroutine or callback."""
        self._mailbox.put_nowait(message)

    async def run(self) -> None:
        """Owner loop. Returns once the execution is terminal."""
        execution_id = self.execution.id
        try:
            await self._begin()
            while not self.execution.status.is_terminal:
                message = await self._mailbox.get()
                await self._handle(message)
                await self.advance()
        except asyncio.CancelledError:
            logger.warning(f"Execution {execution_id}: owner loop cancelled")
            raise
        except Exception as e:
            logger.exception(f"Execution {execution_id}: owner loop crashed: {e}")
            if not self.execution.status.is_terminal:
                await self.finish(ExecutionStatus.FAILED, error_message=f"Internal error: {e}")
        finally:
            self._release_all()
            self._reject_unanswered()
            self._log_bus.close_topic(execution_id)
            self.done.set()
            self._scheduler._run_finished(self)

    async def _begin(self) -> None:
        execution = self.execution
        execution.status = ExecutionStatus.RUNNING
        execution.started_at = datetime.now()
        await self._repository.save_execution(execution)
        self.emit(f"Execution started (triggered by {execution.triggered_by})", LogLevel.INFO)

        for task in execution.tasks.values():
            if task.status == TaskStatus.COMPLETED:
                self.completion_order.append(task.key)
                self.emit(
                    f"Step '{task.name}' carried over from execution {execution.retry_of}",
                    LogLevel.INFO,
                    task=task,
                )

        timeout = self.definition.timeout_seconds
        if timeout is not None:
            loop = asyncio.get_running_loop()
            self._workflow_timer = loop.call_later(timeout, self.post, WorkflowTimedOut(timeout))

        # Cancelled while still PENDING: nothing may be dispatched
        request = self._take_cancel_request()
        if request is not None:
            await self._handle(request)
            return

        await self.advance()

    def _take_cancel_request(self) -> CancelRequested | None:
        """Pull the first cancel request out of the mailbox, keeping the other messages."""
        request = None
        kept: list[Message] = []
        while not self._mailbox.empty():
            message = self._mailbox.get_nowait()
            if request is None and isinstance(message, CancelRequested):
                request = message
            else:
                kept.append(message)
        for message in kept:
            self._mailbox.put_nowait(message)
        return request

    # ========================================================================
    # Readiness and settling
    # ========================================================================

    async def advance(self) -> None:
        """Dispatch ready tasks and settle finished scopes until nothing changes."""
        execution = self.execution
        while execution.status == ExecutionStatus.RUNNING:
            progressed = False

            for task in ready_tasks(execution, self.steps_by_id, self._top_level_cap):
                if execution.status != ExecutionStatus.RUNNING:
                    return
                if task.status == TaskStatus.PENDING and not task.retry_scheduled:
                    await self._start_task(task)
                    progressed = True

            for task in self._settleable():
                if execution.status != ExecutionStatus.RUNNING:
                    return
                await self._settle_scope(task)
                progressed = True

            if not progressed:
                break

        if execution.status == ExecutionStatus.RUNNING and scope_settled(
            execution, None, self.steps_by_id, self._top_level_cap
        ):
            await self._settle_execution()

    def _settleable(self) -> list[TaskExecution]:
        """RUNNING tasks with a child scope in which nothing can happen any more."""
        result = []
        for task in self.execution.tasks.values():
            if task.status != TaskStatus.RUNNING:
                continue
            step = self.steps_by_id[task.step_id]
            if not step.kind.is_composite and not self.execution.children_of(task.key):
                continue
            if scope_settled(self.execution, task.key, self.steps_by_id, self._top_level_cap):
                result.append(task)
        return result

    async def _settle_scope(self, task: TaskExecution) -> None:
        children = self.execution.children_of(task.key)
        step = self.steps_by_id[task.step_id]
        if all(child.is_satisfied for child in children):
            await self.complete(task, handler_for(step).aggregate(self, task, step, children))
            return

        cause = root_cause(self.execution, task.key)
        message = cause.error_message if cause else f"Nested steps of '{task.key}' did not complete"
        blocked = [c.key for c in children if c.status == TaskStatus.PENDING]
        if blocked:
            unsatisfiable = DependencyUnsatisfiableError(blocked, cause.key if cause else None)
            message = f"{message}; {unsatisfiable}"
        if step.kind.is_composite:
            # rerun of the whole nested scope when the step has a retry policy
            await self.task_failed(task, StepInvocationError(message))
        else:
            await self._coordinator.handle(
                self, task, StepInvocationError(message, retryable=False), self.error_handler
            )

    async def _settle_execution(self) -> None:
        top_level = self.execution.children_of(None)
        if all(task.is_satisfied for task in top_level):
            output = {t.step_id: t.output for t in top_level if t.status == TaskStatus.COMPLETED}
            await self.finish(ExecutionStatus.COMPLETED, output_data=output)
            return

        cause = root_cause(self.execution)
        message = cause.error_message if cause else "Execution could not complete"
        blocked = [t.key for t in blocked_tasks(self.execution)]
        if blocked:
            unsatisfiable = DependencyUnsatisfiableError(blocked, cause.key if cause else None)
            message = f"{message}; {unsatisfiable}"
        await self.finish(
            ExecutionStatus.FAILED,
            error_message=message,
            failed_task_id=cause.key if cause else None,
        )

    # ========================================================================
    # Task transitions
    # ========================================================================

    async def _start_task(self, task: TaskExecution) -> None:
        step = self.steps_by_id[task.step_id]
        task.input = resolve_input(step.input, self.context_for(task))
        await self._transition(
            task,
            TaskStatus.RUNNING,
            f"Step '{task.name}' started (attempt {task.retry_count + 1})",
            started_at=task.started_at or datetime.now(),
        )
        try:
            await handler_for(step).start(self, task, step)
        except WorkflowError as e:
            await self.task_failed(task, e)

    async def complete(self, task: TaskExecution, output: Any) -> None:
        self._release(task.key)
        self.completion_order.append(task.key)
        await self._transition(
            task,
            TaskStatus.COMPLETED,
            f"Step '{task.name}' completed",
            output=output,
            error_message=None,
            completed_at=datetime.now(),
        )

    async def task_failed(self, task: TaskExecution, error: BaseException) -> None:
        """An attempt failed: retry it or hand it to the error coordinator."""
        if task.status != TaskStatus.RUNNING:
            return
        self._release(task.key)
        step = self.steps_by_id[task.step_id]

        if step.kind.is_composite and step.retry is None:
            await self._coordinator.handle(self, task, error, self.error_handler)
            return

        match should_retry(task, step.retry, error):
            case Retry(delay_ms=delay_ms, attempt=attempt):
                if step.kind.is_composite:
                    await self._reset_scope(task)
                await self._transition(
                    task,
                    TaskStatus.PENDING,
                    f"Step '{task.name}' failed: {error}; retrying in {delay_ms}ms "
                    f"(attempt {attempt})",
                    LogLevel.WARN,
                    retry_count=task.retry_count + 1,
                    retry_scheduled=True,
                    error_message=str(error),
                )
                self.arm_timer(task, delay_ms / 1000, RetryDue)
            case GiveUp(reason=reason, attempts=attempts):
                logger.debug(f"Giving up on {task.key}: {reason}")
                exhausted = RetryExhaustedError(task.key, attempts, str(error))
                await self._coordinator.handle(self, task, exhausted, self.error_handler)

    async def fail_task(
        self, task: TaskExecution, error: BaseException, ignored: bool = False
    ) -> None:
        self._release(task.key)
        level = LogLevel.WARN if ignored else LogLevel.ERROR
        suffix = " (ignored)" if ignored else ""
        await self._transition(
            task,
            TaskStatus.FAILED,
            f"Step '{task.name}' failed{suffix}: {error}",
            level,
            error_message=str(error),
            error_ignored=ignored,
            retry_scheduled=False,
            output=None,
            completed_at=datetime.now(),
        )

    async def cancel_in_flight(self, include_pending: bool = False) -> None:
        """Cancel RUNNING and retry-scheduled tasks (and plain PENDING ones if asked).

        Children are cancelled before their parents.
        """
        for task in reversed(list(self.execution.tasks.values())):
            if task.in_flight or (include_pending and task.status == TaskStatus.PENDING):
                self._release(task.key)
                await self._transition(
                    task,
                    TaskStatus.CANCELLED,
                    f"Step '{task.name}' cancelled",
                    LogLevel.WARN,
                    retry_scheduled=False,
                    completed_at=datetime.now(),
                )

    async def _reset_scope(self, task: TaskExecution) -> None:
        """Drop every task nested under ``task`` so its next attempt starts afresh."""
        nested: set[str] = set()
        for candidate in self.execution.tasks.values():
            if candidate.parent_key == task.key or candidate.parent_key in nested:
                nested.add(candidate.key)
        if not nested:
            return

        for key in nested:
            self._release(key)
            del self.execution.tasks[key]
        self.completion_order = [key for key in self.completion_order if key not in nested]
        await self._repository.save_execution(self.execution)
        logger.debug(f"Execution {self.execution.id}: reset {len(nested)} task(s) under {task.key}")

    async def add_task(self, task: TaskExecution) -> None:
        """Register a newly created child task."""
        self.execution.tasks[task.key] = task
        await self._repository.save_task(self.execution.id, task)
        if task.status == TaskStatus.SKIPPED:
            self.emit(f"Step '{task.name}' skipped", LogLevel.INFO, task=task)

    async def persist(self, task: TaskExecution) -> None:
        await self._repository.save_task(self.execution.id, task)

    async def _transition(
        self,
        task: TaskExecution,
        status: TaskStatus,
        message: str,
        level: LogLevel = LogLevel.INFO,
        **changes: Any,
    ) -> None:
        for name, value in changes.items():
            setattr(task, name, value)
        task.status = status
        await self._repository.save_task(self.execution.id, task)
        self.emit(message, level, task=task, status=str(status))

    async def finish(
        self,
        status: ExecutionStatus,
        error_message: str | None = None,
        failed_task_id: str | None = None,
        output_data: dict[str, Any] | None = None,
    ) -> None:
        """Move the execution to a terminal status. Happens exactly once."""
        execution = self.execution
        if execution.status.is_terminal:
            return

        await self.cancel_in_flight(
            include_pending=status in (ExecutionStatus.CANCELLED, ExecutionStatus.TIMED_OUT)
        )
        if self._workflow_timer is not None:
            self._workflow_timer.cancel()
            self._workflow_timer = None

        execution.status = status
        execution.completed_at = datetime.now()
        execution.error_message = error_message
        execution.failed_task_id = failed_task_id
        if output_data is not None:
            execution.output_data = output_data
        await self._repository.save_execution(execution)

        message = f"Execution {str(status).lower().replace('_', ' ')}"
        if error_message:
            message = f"{message}: {error_message}"
        self.emit(message, _FINAL_LEVELS[status], status=str(status))
        logger.info(
            f"Execution {execution.id} finished {status} in {execution.duration_seconds:.3f}s"
        )

    # ========================================================================
    # Messages
    # ========================================================================

    async def _handle(self, message: Message) -> None:
        match message:
            case TaskSucceeded(token=token, output=output):
                if self._consume(token):
                    await self.complete(self.execution.tasks[token.key], output)

            case TaskFailed(token=token, error=error):
                if self._consume(token):
                    await self.task_failed(self.execution.tasks[token.key], error)

            case RetryDue(token=token):
                if self._consume(token):
                    task = self.execution.tasks[token.key]
                    task.retry_scheduled = False
                    await self._start_task(task)

            case TimerFired(token=token) | HumanTimeout(token=token):
                if self._consume(token):
                    task = self.execution.tasks[token.key]
                    step = self.steps_by_id[task.step_id]
                    await handler_for(step).on_timer(self, task, step)

            case HumanSignal():
                await self._apply_signal(message)

            case CancelRequested(reason=reason, reply=reply):
                self.execution.metadata["cancel_reason"] = reason
                await self.finish(
                    ExecutionStatus.CANCELLED, error_message=str(CancellationError(reason))
                )
                if not reply.done():
                    reply.set_result(None)

            case WorkflowTimedOut(timeout_seconds=timeout):
                await self.finish(
                    ExecutionStatus.TIMED_OUT,
                    error_message=f"Workflow timed out after {timeout}s",
                )

    async def _apply_signal(self, signal: HumanSignal) -> None:
        task = self.execution.find_task(signal.task_key)
        if task is None or task.key not in self._awaiting_signal:
            if not signal.reply.done():
                signal.reply.set_exception(
                    InvalidStateError(f"Task '{signal.task_key}' is not waiting for a signal")
                )
            return

        self._release(task.key)
        if not signal.reply.done():
            signal.reply.set_result(None)

        if signal.approved:
            await self.complete(
                task, {"approved": True, "actor": signal.actor, "data": dict(signal.data)}
            )
        else:
            await self.task_failed(
                task,
                StepInvocationError(
                    f"Human task '{task.key}' rejected by {signal.actor}", retryable=False
                ),
            )

    def _consume(self, token: Token) -> bool:
        """Accept a message for ``token`` if it is still the live one."""
        if self._live.get(token.key) != token:
            logger.debug(f"Execution {self.execution.id}: dropping stale message for {token}")
            return False
        del self._live[token.key]
        self._inflight.pop(token.key, None)
        self._timers.pop(token.key, None)
        self._awaiting_signal.discard(token.key)
        return True

    def _reject_unanswered(self) -> None:
        """Fail callers still waiting on messages the loop will never take."""
        while not self._mailbox.empty():
            message = self._mailbox.get_nowait()
            reply = getattr(message, "reply", None)
            if reply is not None and not reply.done():
                reply.set_exception(
                    InvalidStateError(
                        f"Execution {self.execution.id} is already {self.execution.status}"
                    )
                )

    # ========================================================================
    # Dispatch helpers used by step handlers
    # ========================================================================

    def context_for(self, task: TaskExecution) -> dict[str, Any]:
        """Evaluation context seen by ``task``'s expressions and placeholders."""
        variables = dict(task.variables)
        return {
            **variables,
            "params": self.params,
            "steps": visible_outputs(self.execution, task),
            "vars": variables,
        }

    def evaluate(self, expression: str, task: TaskExecution) -> Any:
        try:
            return self.evaluator.evaluate(expression, self.context_for(task))
        except WorkflowError:
            raise
        except Exception as e:
            raise ExpressionError(f"Evaluating '{expression}' failed: {e}") from e

    def _new_token(self, key: str) -> Token:
        token = Token(key, next(self._dispatch_counter))
        self._live[key] = token
        return token

    def dispatch(
        self,
        task: TaskExecution,
        call: Callable[[], Awaitable[Any]],
        timeout: float | None = None,
    ) -> Token:
        """Run ``call()`` in its own asyncio task and post the outcome back."""
        token = self._new_token(task.key)

        async def invoke() -> None:
            try:
                output = await asyncio.wait_for(call(), timeout)
            except TimeoutError:
                self.post(
                    TaskFailed(token, StepInvocationError(f"Timed out after {timeout}s"))
                )
            except Exception as e:
                self.post(TaskFailed(token, e))
            else:
                self.post(TaskSucceeded(token, output))

        self._inflight[task.key] = asyncio.create_task(invoke(), name=f"invoke-{token}")
        logger.debug(f"Execution {self.execution.id}: dispatched {token}")
        return token

    def arm_timer(
        self, task: TaskExecution, delay_seconds: float, message_type: Callable[[Token], Message]
    ) -> Token:
        token = self._new_token(task.key)
        loop = asyncio.get_running_loop()
        self._timers[task.key] = loop.call_later(
            max(delay_seconds, 0.0), self.post, message_type(token)
        )
        return token

    def await_signal(self, task: TaskExecution) -> None:
        self._awaiting_signal.add(task.key)

    def notify(self, invoker: StepInvoker, step: Step, task: TaskExecution) -> None:
        """Fire-and-forget notification call for a human task."""
        resolved = dict(task.input)
        key = task.key

        async def call() -> None:
            try:
                await invoker.invoke(step, resolved, None)
            except Exception as e:
                logger.warning(f"Execution {self.execution.id}: notification for {key} failed: {e}")

        background = asyncio.create_task(call(), name=f"notify-{key}")
        self._background.add(background)
        background.add_done_callback(self._background.discard)

    def emit(
        self,
        message: str,
        level: LogLevel = LogLevel.INFO,
        task: TaskExecution | None = None,
        **metadata: str,
    ) -> None:
        self._log_bus.publish(
            LogEvent(
                execution_id=self.execution.id,
                task_id=task.key if task else None,
                level=level,
                message=message,
                metadata=metadata,
            )
        )

    # ========================================================================
    # Releasing in-flight work
    # ========================================================================

    def _release(self, key: str) -> None:
        """Forget the live token of ``key`` and stop whatever it was waiting on."""
        self._live.pop(key, None)
        self._awaiting_signal.discard(key)
        inflight = self._inflight.pop(key, None)
        if inflight is not None and not inflight.done():
            inflight.cancel()
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()

    def _release_all(self) -> None:
        for key in list(self._live):
            self._release(key)
        for background in list(self._background):
            background.cancel()
        if self._workflow_timer is not None:
            self._workflow_timer.cancel()
            self._workflow_timer = None

