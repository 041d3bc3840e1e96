"""Tests for the execution log bus."""

import pytest
from helpers import FAST_RETRY, service

from pytaxis import (
    ExecutionLogBus,
    LogEvent,
    LogLevel,
    NotFoundError,
    WorkflowDefinition,
)


def event(task_id=None, level=LogLevel.INFO, message="hello", execution_id="exec-1"):
    return LogEvent(execution_id=execution_id, task_id=task_id, level=level, message=message)


async def drain(subscription) -> list[LogEvent]:
    return [e async for e in subscription]


async def test_subscribers_only_see_their_execution():
    bus = ExecutionLogBus()
    mine = bus.subscribe("exec-1")
    other = bus.subscribe("exec-2")

    bus.publish(event(message="one"))
    bus.publish(event(execution_id="exec-2", message="two"))
    bus.close_topic("exec-1")
    bus.close_topic("exec-2")

    assert [e.message for e in await drain(mine)] == ["one"]
    assert [e.message for e in await drain(other)] == ["two"]


async def test_task_and_level_filters():
    bus = ExecutionLogBus()
    for_task = bus.subscribe("exec-1", task_id="a")
    warnings = bus.subscribe("exec-1", min_level=LogLevel.WARN)

    bus.publish(event(task_id="a", message="a info"))
    bus.publish(event(task_id="b", level=LogLevel.ERROR, message="b error"))
    bus.publish(event(level=LogLevel.WARN, message="execution warn"))
    bus.close_topic("exec-1")

    assert [e.message for e in await drain(for_task)] == ["a info"]
    assert [e.message for e in await drain(warnings)] == ["b error", "execution warn"]


async def test_no_replay_for_late_subscribers():
    bus = ExecutionLogBus()
    bus.publish(event(message="early"))
    late = bus.subscribe("exec-1")
    bus.publish(event(message="late"))
    bus.close_topic("exec-1")

    assert [e.message for e in await drain(late)] == ["late"]


async def test_close_leaves_the_topic():
    bus = ExecutionLogBus()
    first = bus.subscribe("exec-1")
    second = bus.subscribe("exec-1")
    assert bus.subscriber_count("exec-1") == 2

    first.close()
    assert first.closed
    assert bus.subscriber_count("exec-1") == 1

    async with second:
        pass
    assert not bus.has_topic("exec-1")
    assert await second.get() is None


async def test_ended_subscription_yields_nothing():
    bus = ExecutionLogBus()
    ended = bus.ended_subscription("exec-1")

    assert ended.closed
    assert await drain(ended) == []
    assert not bus.has_topic("exec-1")


async def test_published_events_reach_the_logger(caplog):
    bus = ExecutionLogBus()
    with caplog.at_level("WARNING", logger="pytaxis.executor.log_bus"):
        bus.publish(event(task_id="a", level=LogLevel.WARN, message="slow"))
    assert "[WARN] exec-1/a: slow" in caplog.text


# ==============================================================================
# Through the scheduler
# ==============================================================================


async def test_live_tail_of_an_execution(scheduler, activate):
    workflow = await activate(WorkflowDefinition(steps=(service("a"), service("b", "a"))))
    execution = await scheduler.start_execution(workflow.id, triggered_by="api")

    subscription = await scheduler.subscribe_logs(execution.id)
    events = await drain(subscription)
    messages = [e.message for e in events]

    assert messages[0] == "Execution started (triggered by api)"
    assert messages[-1] == "Execution completed"
    assert "Step 'A' completed" in messages
    assert messages.index("Step 'A' completed") < messages.index("Step 'B' started (attempt 1)")
    assert all(e.execution_id == execution.id for e in events)


async def test_warn_filter_sees_retries(scheduler, activate, invoker):
    invoker.failures["a"] = 1
    workflow = await activate(WorkflowDefinition(steps=(service("a", retry=FAST_RETRY),)))
    execution = await scheduler.start_execution(workflow.id)

    subscription = await scheduler.subscribe_logs(execution.id, min_level=LogLevel.WARN)
    events = await drain(subscription)

    assert len(events) == 1
    assert events[0].task_id == "a"
    assert "retrying in 1ms (attempt 2)" in events[0].message


async def test_task_filter_through_scheduler(scheduler, activate):
    workflow = await activate(WorkflowDefinition(steps=(service("a"), service("b", "a"))))
    execution = await scheduler.start_execution(workflow.id)

    subscription = await scheduler.subscribe_logs(execution.id, task_id="b")
    events = await drain(subscription)

    assert [e.message for e in events] == ["Step 'B' started (attempt 1)", "Step 'B' completed"]


async def test_subscribing_to_finished_execution_ends_at_once(scheduler, execute):
    final = await execute(WorkflowDefinition(steps=(service("a"),)))

    subscription = await scheduler.subscribe_logs(final.id)

    assert subscription.closed
    assert await drain(subscription) == []


async def test_subscribing_to_unknown_execution(scheduler):
    with pytest.raises(NotFoundError):
        await scheduler.subscribe_logs("missing")
