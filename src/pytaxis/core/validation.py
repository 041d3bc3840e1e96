"""Structural validation of workflow definitions.

A definition must pass ``validate_definition`` before it is stored or
executed. The scheduler relies on it: it assumes every dependency exists
and the graph is acyclic, and performs no cycle checking at run time.

Checks run in a fixed order, and the first failure wins:
(a) at least one step
(b) step ids unique across the whole definition (nested steps included)
(c) every depends_on entry names a sibling step
(d) no dependency cycle in any sibling group
followed by per-kind configuration checks.
"""

from __future__ import annotations

from collections.abc import Sequence

from pytaxis.core.errors import ValidationError
from pytaxis.models import (
    ConditionalConfig,
    HumanTaskConfig,
    LoopConfig,
    ParallelConfig,
    RetryPolicy,
    ServiceConfig,
    Step,
    WaitConfig,
    WorkflowDefinition,
    sibling_groups,
    walk_steps,
)

__all__ = ["validate_definition", "find_cycle"]


def validate_definition(definition: WorkflowDefinition) -> None:
    """Validate a workflow definition.

    Args:
        definition: Definition to check

    Raises:
        ValidationError: Naming the offending step id(s)

    Example:
        ```python
        try:
            validate_definition(definition)
        except ValidationError as e:
            print(f"rejected: {e} (steps: {e.step_ids})")
        ```
    """
    # (a) at least one step
    if not definition.steps:
        raise ValidationError("Workflow must have at least one step")

    # (b) unique ids
    seen: set[str] = set()
    for step in walk_steps(definition.steps):
        if not step.id:
            raise ValidationError(f"Step '{step.name}' has an empty id")
        if step.id in seen:
            raise ValidationError(f"Duplicate step ID: {step.id}", [step.id])
        seen.add(step.id)

    groups = list(sibling_groups(definition.steps))

    # (c) dependencies name siblings
    for group in groups:
        ids = {s.id for s in group}
        for step in group:
            for dep in step.depends_on:
                if dep not in ids:
                    raise ValidationError(
                        f"Step {step.id} depends on non-existent step {dep}", [step.id, dep]
                    )

    # (d) acyclic
    for group in groups:
        cycle = find_cycle(group)
        if cycle:
            raise ValidationError(
                f"Cycle detected in dependency graph: {' -> '.join(cycle)}", cycle
            )

    for step in walk_steps(definition.steps):
        _validate_step_config(step)

    _validate_error_handler(definition, seen)

    if definition.timeout_seconds is not None and definition.timeout_seconds <= 0:
        raise ValidationError("Workflow timeout must be positive")


def find_cycle(steps: Sequence[Step]) -> list[str] | None:
    """Find a dependency cycle among sibling steps.

    Standard DFS with a recursion-stack set: reaching a node that is still
    on the stack is a back-edge, hence a cycle.

    Returns:
        The step ids forming the cycle (first id repeated at the end),
        or None if the group is acyclic.
    """
    deps = {s.id: tuple(d for d in s.depends_on) for s in steps}
    visited: set[str] = set()
    rec_stack: list[str] = []
    on_stack: set[str] = set()

    def visit(step_id: str) -> list[str] | None:
        visited.add(step_id)
        rec_stack.append(step_id)
        on_stack.add(step_id)

        for dep in deps.get(step_id, ()):
            if dep not in deps:
                continue
            if dep not in visited:
                cycle = visit(dep)
                if cycle:
                    return cycle
            elif dep in on_stack:
                start = rec_stack.index(dep)
                return rec_stack[start:] + [dep]

        rec_stack.pop()
        on_stack.remove(step_id)
        return None

    for step_id in deps:
        if step_id not in visited:
            cycle = visit(step_id)
            if cycle:
                return cycle
    return None


def _validate_retry(step: Step, policy: RetryPolicy) -> None:
    if policy.max_attempts < 1:
        raise ValidationError(f"Step {step.id}: retry max_attempts must be >= 1", [step.id])
    if policy.initial_delay_ms < 0:
        raise ValidationError(f"Step {step.id}: retry initial delay must be >= 0", [step.id])
    if policy.max_delay_ms < policy.initial_delay_ms:
        raise ValidationError(
            f"Step {step.id}: retry max delay must be >= initial delay", [step.id]
        )


def _validate_cap(step: Step, value: int | None, what: str) -> None:
    if value is not None and value < 1:
        raise ValidationError(f"Step {step.id}: {what} must be >= 1", [step.id])


def _validate_step_config(step: Step) -> None:
    if step.retry is not None:
        _validate_retry(step, step.retry)

    config = step.config
    if isinstance(config, ServiceConfig):
        if not config.service or not config.method:
            raise ValidationError(f"Step {step.id}: service and method are required", [step.id])
        if config.timeout_seconds <= 0:
            raise ValidationError(f"Step {step.id}: timeout must be positive", [step.id])
    elif isinstance(config, ParallelConfig):
        if not config.steps:
            raise ValidationError(f"Step {step.id}: parallel step has no steps", [step.id])
        _validate_cap(step, config.max_concurrency, "max_concurrency")
    elif isinstance(config, ConditionalConfig):
        if not config.condition:
            raise ValidationError(f"Step {step.id}: condition is required", [step.id])
        if not config.if_steps:
            raise ValidationError(f"Step {step.id}: conditional has no if-steps", [step.id])
    elif isinstance(config, LoopConfig):
        if not config.items_expression or not config.item_variable:
            raise ValidationError(
                f"Step {step.id}: items expression and item variable are required", [step.id]
            )
        if not config.steps:
            raise ValidationError(f"Step {step.id}: loop has no steps", [step.id])
        _validate_cap(step, config.max_iterations, "max_iterations")
        _validate_cap(step, config.max_concurrency, "max_concurrency")
    elif isinstance(config, WaitConfig):
        if (config.duration_seconds is None) == (config.until_expression is None):
            raise ValidationError(
                f"Step {step.id}: wait needs exactly one of duration or until expression",
                [step.id],
            )
        if config.duration_seconds is not None and config.duration_seconds < 0:
            raise ValidationError(f"Step {step.id}: wait duration must be >= 0", [step.id])
    elif isinstance(config, HumanTaskConfig):
        if not config.assignee_expression:
            raise ValidationError(f"Step {step.id}: assignee expression is required", [step.id])
        if config.timeout_seconds is not None and config.timeout_seconds <= 0:
            raise ValidationError(f"Step {step.id}: timeout must be positive", [step.id])
        if config.on_timeout is not None and config.on_timeout.depends_on:
            raise ValidationError(
                f"Step {step.id}: on-timeout step cannot have dependencies",
                [step.id, config.on_timeout.id],
            )
    else:
        raise ValidationError(f"Step {step.id}: unknown step configuration", [step.id])


def _validate_error_handler(definition: WorkflowDefinition, step_ids: set[str]) -> None:
    handler = definition.error_handler
    if handler is None:
        return
    for compensation in handler.compensation_steps:
        if compensation.step_id not in step_ids:
            raise ValidationError(
                f"Compensation references non-existent step {compensation.step_id}",
                [compensation.step_id],
            )
    if handler.max_execution_retries < 0:
        raise ValidationError("Error handler max_execution_retries must be >= 0")
