"""
Readiness evaluation and task scopes.

Every function here is pure: it reads an Execution snapshot and returns an
answer without mutating anything. The owner loop can therefore re-run
readiness after any single transition and always get the same dispatch set
for the same snapshot.

**Scopes**: top-level tasks live in scope ``None``. The children of a
Parallel, Conditional or Loop task (and the fallback of a timed-out human
task) live in the scope named by the parent's key. Keys are paths:

    fetch                 top-level step "fetch"
    fanout/resize         child "resize" of Parallel "fanout"
    each[2]/notify        child "notify" of the third iteration of Loop "each"

Dependencies only ever point at siblings in the same scope (and the same
loop iteration), so they are resolved to keys once, when the task is
created.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Mapping
from datetime import datetime
from typing import Any

from uuid_extensions import uuid7

from pytaxis.models import Execution, Step, TaskExecution, TaskStatus

__all__ = [
    "scope_prefix",
    "new_task",
    "scope_cap",
    "ready_tasks",
    "scope_settled",
    "blocked_tasks",
    "root_cause",
    "visible_outputs",
    "downstream_of",
]


def scope_prefix(parent_key: str | None, iteration: int | None = None) -> str:
    """Key prefix for children created in ``parent_key``'s scope."""
    if parent_key is None:
        return ""
    if iteration is None:
        return f"{parent_key}/"
    return f"{parent_key}[{iteration}]/"


def new_task(
    step: Step,
    parent_key: str | None = None,
    prefix: str = "",
    variables: Mapping[str, Any] | None = None,
    status: TaskStatus = TaskStatus.PENDING,
) -> TaskExecution:
    """Create the runtime task for ``step`` with its dependency keys resolved."""
    return TaskExecution(
        id=str(uuid7()),
        key=f"{prefix}{step.id}",
        step_id=step.id,
        name=step.name,
        status=status,
        parent_key=parent_key,
        depends_on_keys=tuple(f"{prefix}{dep}" for dep in step.depends_on),
        variables=dict(variables or {}),
    )


def scope_cap(
    execution: Execution,
    parent_key: str | None,
    steps_by_id: Mapping[str, Step],
    top_level_cap: int | None = None,
) -> int | None:
    """Maximum number of in-flight tasks in a scope (None = unbounded)."""
    if parent_key is None:
        return top_level_cap
    parent = execution.tasks[parent_key]
    return getattr(steps_by_id[parent.step_id].config, "max_concurrency", None)


def ready_tasks(
    execution: Execution,
    steps_by_id: Mapping[str, Step],
    top_level_cap: int | None = None,
) -> list[TaskExecution]:
    """
    Tasks that may be dispatched now, in creation order.

    A task is ready when it is PENDING, not waiting out a retry backoff, its
    parent (if any) is RUNNING, every dependency is satisfied, and its scope
    has a free concurrency slot. Tasks in flight (RUNNING or retry-scheduled)
    occupy a slot.
    """
    tasks = execution.tasks
    occupied = Counter(t.parent_key for t in tasks.values() if t.in_flight)
    free_slots: dict[str | None, int | None] = {}
    ready: list[TaskExecution] = []

    for task in tasks.values():
        if task.status != TaskStatus.PENDING or task.retry_scheduled:
            continue
        if task.parent_key is not None and tasks[task.parent_key].status != TaskStatus.RUNNING:
            continue
        if not all(dep in tasks and tasks[dep].is_satisfied for dep in task.depends_on_keys):
            continue

        scope = task.parent_key
        if scope not in free_slots:
            cap = scope_cap(execution, scope, steps_by_id, top_level_cap)
            free_slots[scope] = None if cap is None else max(cap - occupied[scope], 0)
        slots = free_slots[scope]
        if slots is not None:
            if slots == 0:
                continue
            free_slots[scope] = slots - 1
        ready.append(task)

    return ready


def scope_settled(
    execution: Execution,
    parent_key: str | None,
    steps_by_id: Mapping[str, Step],
    top_level_cap: int | None = None,
) -> bool:
    """True when nothing in the scope is in flight and nothing more can start."""
    if any(t.in_flight for t in execution.children_of(parent_key)):
        return False
    ready = ready_tasks(execution, steps_by_id, top_level_cap)
    return not any(t.parent_key == parent_key for t in ready)


def blocked_tasks(execution: Execution) -> list[TaskExecution]:
    """PENDING tasks of a settled execution: they can never run."""
    return [
        t
        for t in execution.tasks.values()
        if t.status == TaskStatus.PENDING and not t.retry_scheduled
    ]


def root_cause(execution: Execution, parent_key: str | None = None) -> TaskExecution | None:
    """Earliest unignored failure in a scope, followed down to the leaf that caused it."""
    failed = [
        t
        for t in execution.children_of(parent_key)
        if t.status == TaskStatus.FAILED and not t.error_ignored
    ]
    if not failed:
        return None
    first = min(failed, key=lambda t: t.completed_at or datetime.max)
    return root_cause(execution, first.key) or first


def visible_outputs(execution: Execution, task: TaskExecution) -> dict[str, Any]:
    """``{step_id: output}`` of completed tasks visible from ``task``.

    Visible means completed in the task's own scope or in any enclosing
    scope. Inner scopes shadow outer ones, so inside a loop iteration
    ``steps.x`` is that iteration's ``x``.
    """
    chain: list[str | None] = []
    scope = task.parent_key
    while scope is not None:
        chain.append(scope)
        scope = execution.tasks[scope].parent_key
    chain.append(None)

    outputs: dict[str, Any] = {}
    for scope in reversed(chain):
        prefix = _iteration_prefix(task.key, scope)
        for sibling in execution.children_of(scope):
            if sibling.status != TaskStatus.COMPLETED:
                continue
            if prefix is not None and not sibling.key.startswith(prefix):
                continue
            outputs[sibling.step_id] = sibling.output
    return outputs


def _iteration_prefix(key: str, scope: str | None) -> str | None:
    """Loop iteration prefix of ``key`` inside ``scope``, if any."""
    if scope is None:
        return None
    head = f"{scope}["
    if not key.startswith(head):
        return None
    end = key.find("]/", len(head))
    return key[: end + 2] if end != -1 else None


def downstream_of(steps: tuple[Step, ...] | list[Step], step_id: str) -> set[str]:
    """Ids of sibling steps that transitively depend on ``step_id``."""
    dependents: dict[str, list[str]] = {s.id: [] for s in steps}
    for step in steps:
        for dep in step.depends_on:
            dependents.setdefault(dep, []).append(step.id)

    found: set[str] = set()
    stack = list(dependents.get(step_id, ()))
    while stack:
        current = stack.pop()
        if current not in found:
            found.add(current)
            stack.extend(dependents.get(current, ()))
    return found
