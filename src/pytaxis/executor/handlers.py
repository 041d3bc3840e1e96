"""
Step kind handlers.

**Design Pattern**: Strategy + lookup table

The owner loop never branches on step kind. It looks the kind up in
``STEP_HANDLERS`` and calls one of three hooks:

- ``start``: the task has just moved to RUNNING. Leaf kinds dispatch work
  (an invoker call, a timer, a signal wait); composite kinds create their
  child tasks.
- ``aggregate``: every child of the task has settled successfully; build
  the task's output from theirs.
- ``on_timer``: a timer armed by ``start`` fired.

Raising a ``WorkflowError`` from ``start`` fails the task.

Adding a step kind means adding a config class, a handler and one table
entry.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from pytaxis.core.errors import ExpressionError, InvalidStateError, StepInvocationError
from pytaxis.executor.messages import HumanTimeout, TimerFired
from pytaxis.executor.readiness import new_task, scope_prefix
from pytaxis.models import (
    ConditionalConfig,
    HumanTaskConfig,
    LogLevel,
    LoopConfig,
    ParallelConfig,
    ServiceConfig,
    Step,
    StepKind,
    TaskExecution,
    TaskStatus,
    WaitConfig,
)

if TYPE_CHECKING:
    from pytaxis.executor.run import ExecutionRun

__all__ = ["StepHandler", "STEP_HANDLERS", "handler_for"]


class StepHandler:
    """Base handler: no children, no timers."""

    async def start(self, run: ExecutionRun, task: TaskExecution, step: Step) -> None:
        raise NotImplementedError

    def aggregate(
        self, run: ExecutionRun, task: TaskExecution, step: Step, children: list[TaskExecution]
    ) -> Any:
        return {child.step_id: child.output for child in children}

    async def on_timer(self, run: ExecutionRun, task: TaskExecution, step: Step) -> None:
        raise InvalidStateError(f"Step kind {step.kind} does not use timers")


class ServiceHandler(StepHandler):
    """Invoke the registered invoker with the step's timeout as deadline."""

    async def start(self, run: ExecutionRun, task: TaskExecution, step: Step) -> None:
        config: ServiceConfig = step.config
        invoker = run.invokers.resolve(step)
        if invoker is None:
            raise StepInvocationError(
                f"No invoker registered for service '{config.service}'", retryable=False
            )

        deadline = datetime.now() + timedelta(seconds=config.timeout_seconds)
        resolved = dict(task.input)
        run.dispatch(
            task,
            lambda: invoker.invoke(step, resolved, deadline),
            timeout=config.timeout_seconds,
        )


class ParallelHandler(StepHandler):
    """Children form a sub-DAG; the scope cap is ``max_concurrency``."""

    async def start(self, run: ExecutionRun, task: TaskExecution, step: Step) -> None:
        config: ParallelConfig = step.config
        prefix = scope_prefix(task.key)
        for child in config.steps:
            await run.add_task(new_task(child, task.key, prefix, task.variables))


class ConditionalHandler(StepHandler):
    """Evaluate once; the untaken branch is created SKIPPED."""

    async def start(self, run: ExecutionRun, task: TaskExecution, step: Step) -> None:
        config: ConditionalConfig = step.config
        taken = bool(run.evaluate(config.condition, task))
        task.input["branch"] = "if" if taken else "else"
        await run.persist(task)

        prefix = scope_prefix(task.key)
        branches = ((config.if_steps, taken), (config.else_steps, not taken))
        for steps, runs in branches:
            status = TaskStatus.PENDING if runs else TaskStatus.SKIPPED
            for child in steps:
                await run.add_task(new_task(child, task.key, prefix, task.variables, status))

    def aggregate(
        self, run: ExecutionRun, task: TaskExecution, step: Step, children: list[TaskExecution]
    ) -> Any:
        return {
            "branch": task.input.get("branch"),
            "outputs": {
                c.step_id: c.output for c in children if c.status != TaskStatus.SKIPPED
            },
        }


class LoopHandler(StepHandler):
    """One copy of the nested steps per item, keyed ``loop[i]/child``."""

    async def start(self, run: ExecutionRun, task: TaskExecution, step: Step) -> None:
        config: LoopConfig = step.config
        items = run.evaluate(config.items_expression, task)
        if not isinstance(items, list | tuple):
            raise ExpressionError(
                f"Loop '{task.key}' items must be a list, got {type(items).__name__}"
            )
        items = list(items)
        if config.max_iterations is not None:
            items = items[: config.max_iterations]

        task.input["items"] = items
        await run.persist(task)

        if not items:
            await run.complete(task, [])
            return

        for index, item in enumerate(items):
            prefix = scope_prefix(task.key, index)
            variables = {**task.variables, config.item_variable: item, "index": index}
            for child in config.steps:
                await run.add_task(new_task(child, task.key, prefix, variables))

    def aggregate(
        self, run: ExecutionRun, task: TaskExecution, step: Step, children: list[TaskExecution]
    ) -> Any:
        results = []
        for index in range(len(task.input.get("items", ()))):
            prefix = scope_prefix(task.key, index)
            results.append({c.step_id: c.output for c in children if c.key.startswith(prefix)})
        return results


class WaitHandler(StepHandler):
    """Timer suspension: no invoker, no blocked thread."""

    async def start(self, run: ExecutionRun, task: TaskExecution, step: Step) -> None:
        config: WaitConfig = step.config
        if config.duration_seconds is not None:
            delay = float(config.duration_seconds)
        else:
            deadline = _to_datetime(run.evaluate(config.until_expression, task), task)
            now = datetime.now(deadline.tzinfo)
            delay = max((deadline - now).total_seconds(), 0.0)

        task.input["delay_seconds"] = delay
        await run.persist(task)
        run.arm_timer(task, delay, TimerFired)

    async def on_timer(self, run: ExecutionRun, task: TaskExecution, step: Step) -> None:
        await run.complete(task, {"waited_seconds": task.input.get("delay_seconds")})


class HumanTaskHandler(StepHandler):
    """Wait for a signal; on timeout run the fallback step or fail."""

    async def start(self, run: ExecutionRun, task: TaskExecution, step: Step) -> None:
        config: HumanTaskConfig = step.config
        task.input["assignee"] = run.evaluate(config.assignee_expression, task)
        task.input["form_schema"] = config.form_schema
        await run.persist(task)

        run.await_signal(task)
        if config.timeout_seconds is not None:
            run.arm_timer(task, config.timeout_seconds, HumanTimeout)

        invoker = run.invokers.resolve(step)
        if invoker is not None:
            run.notify(invoker, step, task)

    async def on_timer(self, run: ExecutionRun, task: TaskExecution, step: Step) -> None:
        config: HumanTaskConfig = step.config
        if config.on_timeout is None:
            await run.task_failed(
                task,
                StepInvocationError(
                    f"Human task '{task.key}' timed out after {config.timeout_seconds}s"
                ),
            )
            return

        fallback = new_task(config.on_timeout, task.key, scope_prefix(task.key), task.variables)
        await run.add_task(fallback)
        run.emit(
            f"Human task timed out, running fallback '{config.on_timeout.id}'",
            LogLevel.WARN,
            task=task,
        )

    def aggregate(
        self, run: ExecutionRun, task: TaskExecution, step: Step, children: list[TaskExecution]
    ) -> Any:
        return children[0].output if children else None


def _to_datetime(value: Any, task: TaskExecution) -> datetime:
    """Wait deadline from a datetime, an ISO-8601 string or epoch seconds."""
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value)
        except ValueError as e:
            raise ExpressionError(f"Wait '{task.key}': invalid deadline {value!r}") from e
    if isinstance(value, int | float) and not isinstance(value, bool):
        return datetime.fromtimestamp(value)
    raise ExpressionError(f"Wait '{task.key}': cannot use {value!r} as a deadline")


STEP_HANDLERS: dict[StepKind, StepHandler] = {
    StepKind.SERVICE: ServiceHandler(),
    StepKind.PARALLEL: ParallelHandler(),
    StepKind.CONDITIONAL: ConditionalHandler(),
    StepKind.LOOP: LoopHandler(),
    StepKind.WAIT: WaitHandler(),
    StepKind.HUMAN_TASK: HumanTaskHandler(),
}


def handler_for(step: Step) -> StepHandler:
    return STEP_HANDLERS[step.kind]
