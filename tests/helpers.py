"""Step builders and recording invokers shared by the test modules."""

import asyncio
from typing import Any

from pytaxis import (
    BackoffKind,
    CompensationStep,
    RetryPolicy,
    ServiceConfig,
    Step,
    StepInvocationError,
    TaskStatus,
)

FAST_RETRY = RetryPolicy(
    max_attempts=3, backoff=BackoffKind.FIXED, initial_delay_ms=1, max_delay_ms=1
)


def service(
    step_id: str,
    *depends_on: str,
    retry: RetryPolicy | None = None,
    input: dict[str, Any] | None = None,
    timeout: float = 30.0,
    name: str | None = None,
) -> Step:
    """A SERVICE step calling ``svc.<step_id>``."""
    return Step(
        id=step_id,
        name=name or step_id.upper(),
        config=ServiceConfig(service="svc", method=step_id, timeout_seconds=timeout),
        depends_on=tuple(depends_on),
        retry=retry,
        input=dict(input or {}),
    )


class RecordingInvoker:
    """Step invoker with scripted behavior per step id.

    - ``outputs[step_id]``: value returned (default: the resolved input plus
      ``{"step": step_id}``)
    - ``failures[step_id]``: number of transient failures before succeeding
    - ``permanent``: step ids that always fail with a non-retryable error
    - ``delays[step_id]``: seconds to sleep before answering
    """

    def __init__(self):
        self.calls: list[str] = []
        self.inputs: dict[str, list[dict[str, Any]]] = {}
        self.outputs: dict[str, Any] = {}
        self.failures: dict[str, int] = {}
        self.permanent: set[str] = set()
        self.delays: dict[str, float] = {}
        self.cancelled: list[str] = []
        self.active = 0
        self.max_active = 0

    async def invoke(self, step, resolved_input, deadline):
        self.calls.append(step.id)
        self.inputs.setdefault(step.id, []).append(resolved_input)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            delay = self.delays.get(step.id, 0)
            if delay:
                await asyncio.sleep(delay)
            if step.id in self.permanent:
                raise StepInvocationError(f"{step.id} is broken", retryable=False)
            if self.failures.get(step.id, 0) > 0:
                self.failures[step.id] -= 1
                raise StepInvocationError(f"{step.id} is flaky")
            if step.id in self.outputs:
                return self.outputs[step.id]
            return {"step": step.id, **resolved_input}
        except asyncio.CancelledError:
            self.cancelled.append(step.id)
            raise
        finally:
            self.active -= 1

    def count(self, step_id: str) -> int:
        return self.calls.count(step_id)


class RecordingCompensator:
    """Compensation invoker recording ``(step_id, method)`` pairs."""

    def __init__(self):
        self.calls: list[tuple[str, str]] = []
        self.broken: set[str] = set()

    async def compensate(self, compensation: CompensationStep, task):
        if compensation.step_id in self.broken:
            raise RuntimeError(f"cannot undo {compensation.step_id}")
        self.calls.append((compensation.step_id, compensation.method))

    @property
    def step_ids(self) -> list[str]:
        return [step_id for step_id, _ in self.calls]


async def wait_for_task(
    scheduler, execution_id: str, key: str, status: TaskStatus = TaskStatus.RUNNING
):
    """Poll until the task reaches ``status``; return the execution."""
    for _ in range(500):
        execution = await scheduler.get_execution(execution_id)
        task = execution.tasks.get(key)
        if task is not None and task.status == status:
            return execution
        await asyncio.sleep(0.005)
    raise AssertionError(f"Task {key} never reached {status}")


async def wait_for_executions(scheduler, count: int, workflow_id: str | None = None):
    """Poll until ``count`` executions exist and all are terminal."""
    for _ in range(500):
        page = await scheduler.list_executions(workflow_id=workflow_id, page_size=100)
        if page.total_count >= count and all(e.status.is_terminal for e in page.items):
            return page.items
        await asyncio.sleep(0.005)
    raise AssertionError(f"Never saw {count} terminal executions")
