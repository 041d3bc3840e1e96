"""Property-based tests over randomly generated step graphs."""

import pytest
from helpers import service
from hypothesis import given
from hypothesis import strategies as st

from pytaxis import Execution, TaskStatus, ValidationError, WorkflowDefinition, validate_definition
from pytaxis.core import find_cycle
from pytaxis.executor.readiness import new_task, ready_tasks


@st.composite
def dags(draw, max_steps: int = 12):
    """Steps s0..sN where every step depends only on earlier ones."""
    count = draw(st.integers(min_value=1, max_value=max_steps))
    steps = []
    for index in range(count):
        earlier = [f"s{i}" for i in range(index)]
        deps = draw(st.lists(st.sampled_from(earlier), unique=True)) if earlier else []
        steps.append(service(f"s{index}", *deps))
    return tuple(steps)


def build(steps) -> tuple[Execution, dict]:
    execution = Execution(id="exec-1", workflow_id="wf-1", tenant_id="t")
    for step in steps:
        task = new_task(step)
        execution.tasks[task.key] = task
    return execution, {step.id: step for step in steps}


@pytest.mark.property
@given(steps=dags())
def test_forward_only_graphs_are_valid(steps):
    validate_definition(WorkflowDefinition(steps=steps))
    assert find_cycle(steps) is None


@pytest.mark.property
@given(steps=dags(), data=st.data())
def test_a_back_edge_is_always_rejected(steps, data):
    if len(steps) < 2:
        return
    later = data.draw(st.integers(min_value=1, max_value=len(steps) - 1))
    earlier = data.draw(st.integers(min_value=0, max_value=later - 1))

    # later depends on earlier and earlier on later
    patched = list(steps)
    patched[later] = service(f"s{later}", *{*steps[later].depends_on, f"s{earlier}"})
    patched[earlier] = service(f"s{earlier}", *steps[earlier].depends_on, f"s{later}")

    with pytest.raises(ValidationError, match="Cycle"):
        validate_definition(WorkflowDefinition(steps=tuple(patched)))


@pytest.mark.property
@given(
    steps=dags(),
    statuses=st.lists(st.sampled_from(list(TaskStatus)), min_size=12, max_size=12),
    cap=st.one_of(st.none(), st.integers(min_value=1, max_value=4)),
)
def test_readiness_is_idempotent_and_sound(steps, statuses, cap):
    execution, steps_by_id = build(steps)
    for task, status in zip(execution.tasks.values(), statuses):
        task.status = status

    first = ready_tasks(execution, steps_by_id, cap)
    second = ready_tasks(execution, steps_by_id, cap)

    assert [t.key for t in first] == [t.key for t in second]
    for task in first:
        assert task.status == TaskStatus.PENDING
        assert all(execution.tasks[d].is_satisfied for d in task.depends_on_keys)
    if cap is not None:
        running = sum(1 for t in execution.tasks.values() if t.in_flight)
        assert len(first) <= max(cap - running, 0)


@pytest.mark.property
@given(steps=dags(), cap=st.one_of(st.none(), st.integers(min_value=1, max_value=3)))
def test_dispatching_ready_tasks_completes_every_dag(steps, cap):
    execution, steps_by_id = build(steps)
    finished: list[str] = []

    while True:
        ready = ready_tasks(execution, steps_by_id, cap)
        if not ready:
            break
        if cap is not None:
            assert len(ready) <= cap
        for task in ready:
            assert all(d in finished for d in task.depends_on_keys)
            task.status = TaskStatus.COMPLETED
            finished.append(task.key)

    assert len(finished) == len(steps)
