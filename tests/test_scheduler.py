"""End-to-end tests for the Scheduler: dispatch order, retries, error handling and control."""

import asyncio

import pytest
from helpers import FAST_RETRY, RecordingInvoker, service, wait_for_executions, wait_for_task

from pytaxis import (
    CancellationError,
    CompensationStep,
    ErrorHandler,
    ErrorHandlerKind,
    ExecutionStatus,
    InvalidStateError,
    NotFoundError,
    Scheduler,
    StepKind,
    TaskStatus,
    WorkflowDefinition,
    WorkflowService,
    WorkflowStatus,
)

DIAMOND = WorkflowDefinition(
    steps=(service("a"), service("b", "a"), service("c", "a"), service("d", "b", "c"))
)


def compensating(*step_ids: str, **kwargs) -> ErrorHandler:
    return ErrorHandler(
        ErrorHandlerKind.COMPENSATE,
        tuple(CompensationStep(s, "svc", f"undo_{s}") for s in step_ids),
        **kwargs,
    )


# ==============================================================================
# Happy paths
# ==============================================================================


async def test_linear_flow_resolves_inputs_and_collects_outputs(execute, invoker):
    definition = WorkflowDefinition(
        steps=(
            service("a", input={"x": "{{params.x}}", "region": "{{params.region}}"}),
            service("b", "a", input={"from_a": "{{steps.a.x}}", "msg": "got {{steps.a.x}}"}),
        ),
        global_parameters={"region": "eu", "x": 1},
    )

    final = await execute(definition, {"x": 5})

    assert final.status == ExecutionStatus.COMPLETED
    assert invoker.inputs["a"] == [{"x": 5, "region": "eu"}]
    assert invoker.inputs["b"] == [{"from_a": 5, "msg": "got 5"}]
    assert final.output_data["b"] == {"step": "b", "from_a": 5, "msg": "got 5"}
    assert final.completed_at is not None
    assert all(t.status == TaskStatus.COMPLETED for t in final.tasks.values())


async def test_diamond_runs_branches_together_and_joins_after_both(execute, invoker):
    invoker.delays = {"b": 0.05, "c": 0.05}

    final = await execute(DIAMOND)

    assert final.status == ExecutionStatus.COMPLETED
    assert invoker.calls[0] == "a"
    assert set(invoker.calls[1:3]) == {"b", "c"}
    assert invoker.calls[3] == "d"
    assert set(final.output_data) == {"a", "b", "c", "d"}

    a, b, c, d = (final.tasks[key] for key in "abcd")
    assert invoker.max_active == 2
    assert b.started_at >= a.completed_at
    assert c.started_at >= a.completed_at
    assert b.started_at < c.completed_at
    assert c.started_at < b.completed_at
    assert d.started_at >= max(b.completed_at, c.completed_at)


async def test_top_level_concurrency_cap(repository, activate):
    invoker = RecordingInvoker()
    invoker.delays = {s: 0.02 for s in "abcd"}
    scheduler = (
        Scheduler(repository)
        .with_invoker(StepKind.SERVICE, invoker)
        .with_max_concurrent_tasks(2)
    )
    try:
        workflow = await activate(WorkflowDefinition(steps=tuple(service(s) for s in "abcd")))
        execution = await scheduler.start_execution(workflow.id)
        final = await scheduler.wait_for_execution(execution.id, timeout=5)
    finally:
        await scheduler.shutdown()

    assert final.status == ExecutionStatus.COMPLETED
    assert invoker.max_active == 2


def test_max_concurrent_tasks_must_be_positive(repository):
    with pytest.raises(ValueError):
        Scheduler(repository).with_max_concurrent_tasks(0)


# ==============================================================================
# Retries
# ==============================================================================


async def test_transient_failures_are_retried(execute, invoker):
    invoker.failures["a"] = 2

    final = await execute(WorkflowDefinition(steps=(service("a", retry=FAST_RETRY),)))

    assert final.status == ExecutionStatus.COMPLETED
    assert invoker.count("a") == 3
    assert final.tasks["a"].retry_count == 2


async def test_retries_exhausted_then_handler_applied_once(
    scheduler, activate, invoker, compensator
):
    invoker.failures["a"] = 10
    definition = WorkflowDefinition(
        steps=(service("a", retry=FAST_RETRY),), error_handler=compensating("a")
    )
    workflow = await activate(definition)
    execution = await scheduler.start_execution(workflow.id)
    final = await scheduler.wait_for_execution(execution.id, timeout=5)

    assert invoker.count("a") == 3
    assert final.status == ExecutionStatus.FAILED
    assert final.failed_task_id == "a"
    assert "failed after 3 attempt(s)" in final.error_message
    assert final.tasks["a"].status == TaskStatus.FAILED
    assert final.tasks["a"].retry_count == 2
    assert compensator.step_ids == ["a"]


async def test_non_retryable_error_is_not_retried(execute, invoker):
    invoker.permanent.add("a")

    final = await execute(WorkflowDefinition(steps=(service("a", retry=FAST_RETRY),)))

    assert invoker.count("a") == 1
    assert final.status == ExecutionStatus.FAILED


async def test_attempt_timeout_counts_as_failure(execute, invoker):
    invoker.delays["slow"] = 1.0

    final = await execute(WorkflowDefinition(steps=(service("slow", timeout=0.05),)))

    assert final.status == ExecutionStatus.FAILED
    assert "Timed out after 0.05s" in final.tasks["slow"].error_message


# ==============================================================================
# Error handlers
# ==============================================================================


async def test_fail_leaves_dependents_pending(execute, invoker):
    invoker.permanent.add("b")

    final = await execute(DIAMOND)

    assert final.status == ExecutionStatus.FAILED
    assert final.failed_task_id == "b"
    assert "b is broken" in final.error_message
    assert "cannot run because 'b' failed" in final.error_message
    assert final.tasks["c"].status == TaskStatus.COMPLETED
    assert final.tasks["d"].status == TaskStatus.PENDING
    assert "d" not in invoker.calls


async def test_ignore_lets_dependents_run(execute, invoker):
    invoker.permanent.add("b")
    definition = WorkflowDefinition(
        steps=DIAMOND.steps, error_handler=ErrorHandler(ErrorHandlerKind.IGNORE)
    )

    final = await execute(definition)

    assert final.status == ExecutionStatus.COMPLETED
    assert final.tasks["b"].status == TaskStatus.FAILED
    assert final.tasks["b"].error_ignored
    assert final.tasks["b"].output is None
    assert final.tasks["d"].status == TaskStatus.COMPLETED
    assert "b" not in final.output_data


async def test_compensate_runs_in_reverse_completion_order(execute, invoker, compensator):
    invoker.permanent.add("c")
    definition = WorkflowDefinition(
        steps=(service("a"), service("b", "a"), service("c", "b")),
        error_handler=compensating("a", "b"),
    )

    final = await execute(definition)

    assert final.status == ExecutionStatus.FAILED
    assert final.failed_task_id == "c"
    assert compensator.calls == [("b", "undo_b"), ("a", "undo_a")]


async def test_compensate_cancels_running_work(execute, invoker, compensator):
    invoker.permanent.add("c")
    invoker.delays["d"] = 5.0
    definition = WorkflowDefinition(
        steps=(service("a"), service("c", "a"), service("d")),
        error_handler=compensating("a", "d"),
    )

    final = await execute(definition)
    await asyncio.sleep(0.01)

    assert final.status == ExecutionStatus.FAILED
    assert final.tasks["d"].status == TaskStatus.CANCELLED
    assert "d" in invoker.cancelled
    assert compensator.step_ids == ["a"]


async def test_compensation_failure_is_logged_and_skipped(execute, invoker, compensator, caplog):
    invoker.permanent.add("c")
    compensator.broken.add("b")
    definition = WorkflowDefinition(
        steps=(service("a"), service("b", "a"), service("c", "b")),
        error_handler=compensating("a", "b"),
    )

    final = await execute(definition)

    assert final.status == ExecutionStatus.FAILED
    assert compensator.step_ids == ["a"]
    assert "Compensation for step 'b' failed" in caplog.text


async def test_retry_handler_starts_one_follow_up_per_execution(execute, invoker, scheduler):
    invoker.permanent.add("a")
    definition = WorkflowDefinition(
        steps=(service("a"),),
        error_handler=ErrorHandler(ErrorHandlerKind.RETRY, max_execution_retries=1),
    )

    first = await execute(definition)
    executions = await wait_for_executions(scheduler, 2, first.workflow_id)
    await asyncio.sleep(0.05)

    page = await scheduler.list_executions(workflow_id=first.workflow_id)
    assert page.total_count == 2
    follow_up = next(e for e in executions if e.id != first.id)
    assert follow_up.retry_of == first.id
    assert follow_up.triggered_by == f"retry:{first.id}"
    assert follow_up.metadata["retry_attempt"] == 1
    assert follow_up.status == ExecutionStatus.FAILED
    assert invoker.count("a") == 2


# ==============================================================================
# Control operations
# ==============================================================================


async def test_cancel_running_execution(scheduler, activate, invoker):
    invoker.delays["b"] = 5.0
    workflow = await activate(
        WorkflowDefinition(steps=(service("a"), service("b", "a"), service("c", "b")))
    )
    execution = await scheduler.start_execution(workflow.id)
    await wait_for_task(scheduler, execution.id, "b")

    cancelled = await scheduler.cancel_execution(execution.id, "operator request")
    await asyncio.sleep(0.01)

    assert cancelled.status == ExecutionStatus.CANCELLED
    assert cancelled.error_message == "Cancelled: operator request"
    assert cancelled.metadata["cancel_reason"] == "operator request"
    assert cancelled.tasks["a"].status == TaskStatus.COMPLETED
    assert cancelled.tasks["b"].status == TaskStatus.CANCELLED
    assert cancelled.tasks["c"].status == TaskStatus.CANCELLED
    assert invoker.cancelled == ["b"]
    assert "c" not in invoker.calls


@pytest.fixture(params=["repository", "sqlite_repository"])
def backend(request):
    return request.getfixturevalue(request.param)


async def test_cancel_pending_execution_never_dispatches(backend, invoker):
    workflow = await WorkflowService(backend).create_workflow(
        "flow",
        "tenant-1",
        WorkflowDefinition(steps=(service("a"), service("b", "a"))),
        status=WorkflowStatus.ACTIVE,
    )
    scheduler = Scheduler(backend).with_invoker(StepKind.SERVICE, invoker)
    try:
        execution = await scheduler.start_execution(workflow.id)
        events = await scheduler.subscribe_logs(execution.id)
        cancelled = await scheduler.cancel_execution(execution.id, "changed plans")
        messages = [event.message async for event in events]
    finally:
        await scheduler.shutdown()

    assert execution.status == ExecutionStatus.PENDING
    assert cancelled.status == ExecutionStatus.CANCELLED
    assert cancelled.error_message == str(CancellationError("changed plans"))
    assert invoker.calls == []
    assert all(t.status == TaskStatus.CANCELLED for t in cancelled.tasks.values())
    assert all(t.started_at is None for t in cancelled.tasks.values())
    assert not any("started (attempt" in message for message in messages)
    assert "Step 'A' cancelled" in messages
    assert messages[-1] == "Execution cancelled: Cancelled: changed plans"


async def test_cancel_terminal_execution_rejected(execute, scheduler):
    final = await execute(WorkflowDefinition(steps=(service("a"),)))
    with pytest.raises(InvalidStateError):
        await scheduler.cancel_execution(final.id)


async def test_unknown_execution_raises_not_found(scheduler):
    with pytest.raises(NotFoundError):
        await scheduler.get_execution("missing")
    with pytest.raises(NotFoundError):
        await scheduler.cancel_execution("missing")


async def test_only_active_workflows_start(scheduler, workflows):
    definition = WorkflowDefinition(steps=(service("a"),))
    workflow = await workflows.create_workflow("draft", "t", definition)
    with pytest.raises(InvalidStateError, match="ACTIVE"):
        await scheduler.start_execution(workflow.id)
    with pytest.raises(NotFoundError):
        await scheduler.start_execution("missing")


async def test_missing_invoker_fails_the_step(repository, activate):
    scheduler = Scheduler(repository)
    try:
        workflow = await activate(WorkflowDefinition(steps=(service("a"),)))
        execution = await scheduler.start_execution(workflow.id)
        final = await scheduler.wait_for_execution(execution.id, timeout=5)
    finally:
        await scheduler.shutdown()

    assert final.status == ExecutionStatus.FAILED
    assert "No invoker registered for service 'svc'" in final.error_message


async def test_service_invoker_takes_precedence_over_kind(repository, activate, invoker):
    special = RecordingInvoker()
    scheduler = (
        Scheduler(repository)
        .with_invoker(StepKind.SERVICE, invoker)
        .with_service_invoker("svc", special)
    )
    try:
        workflow = await activate(WorkflowDefinition(steps=(service("a"),)))
        execution = await scheduler.start_execution(workflow.id)
        await scheduler.wait_for_execution(execution.id, timeout=5)
    finally:
        await scheduler.shutdown()

    assert special.calls == ["a"]
    assert invoker.calls == []


async def test_workflow_timeout(execute, invoker):
    invoker.delays["slow"] = 5.0
    definition = WorkflowDefinition(
        steps=(service("slow"), service("after", "slow")), timeout_seconds=0.05
    )

    final = await execute(definition)

    assert final.status == ExecutionStatus.TIMED_OUT
    assert final.error_message == "Workflow timed out after 0.05s"
    assert final.tasks["slow"].status == TaskStatus.CANCELLED
    assert final.tasks["after"].status == TaskStatus.CANCELLED


async def test_wait_for_execution_times_out(scheduler, activate, invoker):
    invoker.delays["slow"] = 5.0
    workflow = await activate(WorkflowDefinition(steps=(service("slow"),)))
    execution = await scheduler.start_execution(workflow.id)

    with pytest.raises(TimeoutError):
        await scheduler.wait_for_execution(execution.id, timeout=0.05)
    assert scheduler.is_running(execution.id)


async def test_shutdown_cancels_active_executions(scheduler, activate, invoker):
    invoker.delays["slow"] = 5.0
    workflow = await activate(WorkflowDefinition(steps=(service("slow"),)))
    execution = await scheduler.start_execution(workflow.id)
    await wait_for_task(scheduler, execution.id, "slow")

    await scheduler.shutdown()

    final = await scheduler.get_execution(execution.id)
    assert final.status == ExecutionStatus.CANCELLED
    assert final.metadata["cancel_reason"] == "scheduler shutdown"
    with pytest.raises(InvalidStateError):
        await scheduler.start_execution(workflow.id)


# ==============================================================================
# Manual retry
# ==============================================================================


async def test_retry_execution_from_task_carries_over_upstream(execute, scheduler, invoker):
    invoker.permanent.add("c")
    definition = WorkflowDefinition(steps=(service("a"), service("b", "a"), service("c", "b")))
    first = await execute(definition)
    assert first.status == ExecutionStatus.FAILED

    invoker.permanent.clear()
    retried = await scheduler.retry_execution(first.id, from_task_id="c")
    final = await scheduler.wait_for_execution(retried.id, timeout=5)

    assert final.status == ExecutionStatus.COMPLETED
    assert final.retry_of == first.id
    assert final.triggered_by == f"retry:{first.id}"
    assert final.metadata["retry_from"] == first.id
    assert final.metadata["retry_from_task"] == "c"
    assert invoker.count("a") == 1
    assert invoker.count("b") == 1
    assert invoker.count("c") == 2
    assert final.output_data["a"] == first.tasks["a"].output


async def test_retry_execution_reruns_everything_by_default(execute, scheduler, invoker):
    invoker.permanent.add("b")
    first = await execute(WorkflowDefinition(steps=(service("a"), service("b", "a"))))

    invoker.permanent.clear()
    retried = await scheduler.retry_execution(first.id)
    final = await scheduler.wait_for_execution(retried.id, timeout=5)

    assert final.status == ExecutionStatus.COMPLETED
    assert invoker.count("a") == 2
    assert "retry_from_task" not in final.metadata


async def test_retry_execution_requires_unsuccessful_execution(execute, scheduler):
    final = await execute(WorkflowDefinition(steps=(service("a"),)))
    with pytest.raises(InvalidStateError):
        await scheduler.retry_execution(final.id)


# ==============================================================================
# Listing
# ==============================================================================


async def test_list_executions_pages(scheduler, activate):
    workflow = await activate(WorkflowDefinition(steps=(service("a"),)))
    for _ in range(3):
        execution = await scheduler.start_execution(workflow.id)
        await scheduler.wait_for_execution(execution.id, timeout=5)

    first = await scheduler.list_executions(workflow_id=workflow.id, page_size=2)
    second = await scheduler.list_executions(
        workflow_id=workflow.id, page_size=2, page_token=first.next_page_token
    )

    assert len(first.items) == 2
    assert first.total_count == 3
    assert first.next_page_token == "2"
    assert len(second.items) == 1
    assert second.next_page_token == ""

    completed = await scheduler.list_executions(status=ExecutionStatus.COMPLETED)
    assert completed.total_count == 3

    with pytest.raises(ValueError):
        await scheduler.list_executions(page_token="not-a-number")
