"""Step definitions: the nodes of a workflow's dependency graph.

A Step is a tagged union. Every step carries the common fields (id, name,
dependencies, retry policy, static input) and exactly one kind-specific
configuration object. The kind is derived from the configuration type, so
a step can never claim to be a Loop while carrying Service settings.

Design: Sum Type
    ``Step.config`` is one of the ``*Config`` dataclasses below. The
    scheduler dispatches on ``Step.kind`` through a handler table, so
    adding a kind means adding a config class and a handler.
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pytaxis.models.retry import RetryPolicy


class StepKind(Enum):
    """Kind of work a step performs."""

    SERVICE = "SERVICE"
    PARALLEL = "PARALLEL"
    CONDITIONAL = "CONDITIONAL"
    LOOP = "LOOP"
    WAIT = "WAIT"
    HUMAN_TASK = "HUMAN_TASK"

    @property
    def is_composite(self) -> bool:
        """True for kinds whose work is a nested sub-DAG."""
        return self in (StepKind.PARALLEL, StepKind.CONDITIONAL, StepKind.LOOP)

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class ServiceConfig:
    """Invoke ``method`` on an external ``service``."""

    service: str
    method: str
    timeout_seconds: float = 30.0
    """Elapsing counts as a failure of the attempt."""

    kind = StepKind.SERVICE


@dataclass(frozen=True)
class ParallelConfig:
    """Run a nested sub-DAG, optionally bounding concurrency."""

    steps: tuple[Step, ...]
    max_concurrency: int | None = None
    """None means unbounded."""

    kind = StepKind.PARALLEL


@dataclass(frozen=True)
class ConditionalConfig:
    """Evaluate ``condition`` once and run exactly one branch."""

    condition: str
    if_steps: tuple[Step, ...]
    else_steps: tuple[Step, ...] = ()

    kind = StepKind.CONDITIONAL


@dataclass(frozen=True)
class LoopConfig:
    """Run ``steps`` once per item of ``items_expression``.

    Each iteration sees the current item bound to ``item_variable`` and its
    position bound to ``index``.
    """

    items_expression: str
    item_variable: str
    steps: tuple[Step, ...]
    max_iterations: int | None = None
    """Truncates the item sequence. None means no truncation."""

    max_concurrency: int | None = None
    """Caps running tasks across all iterations. None means unbounded."""

    kind = StepKind.LOOP


@dataclass(frozen=True)
class WaitConfig:
    """Suspend for a fixed duration or until an expression's deadline."""

    duration_seconds: float | None = None
    until_expression: str | None = None

    kind = StepKind.WAIT


@dataclass(frozen=True)
class HumanTaskConfig:
    """Wait for an external approval or rejection signal."""

    assignee_expression: str
    form_schema: str = ""
    timeout_seconds: float | None = None
    on_timeout: Step | None = None
    """Fallback step run when the timeout elapses. Without one, a timeout
    fails the task."""

    kind = StepKind.HUMAN_TASK


StepConfig = (
    ServiceConfig | ParallelConfig | ConditionalConfig | LoopConfig | WaitConfig | HumanTaskConfig
)


@dataclass(frozen=True)
class Step:
    """A unit of work in a workflow definition.

    Example:
        ```python
        fetch = Step(
            id="fetch",
            name="Fetch order",
            config=ServiceConfig(service="orders", method="get"),
            input={"order_id": "{{params.order_id}}"},
        )
        charge = Step(
            id="charge",
            name="Charge card",
            config=ServiceConfig(service="billing", method="charge"),
            depends_on=("fetch",),
            retry=RetryPolicy.STANDARD,
            input={"amount": "{{steps.fetch.total}}"},
        )
        ```
    """

    id: str
    name: str
    config: StepConfig
    depends_on: tuple[str, ...] = ()
    """Sibling step ids that must be satisfied first. Empty = eligible at start."""

    retry: RetryPolicy | None = None
    input: dict[str, Any] = field(default_factory=dict)
    """Static input. String values may contain ``{{path}}`` placeholders."""

    @property
    def kind(self) -> StepKind:
        return self.config.kind

    def children(self) -> tuple[Step, ...]:
        """Nested steps carried by this step's configuration, in order."""
        config = self.config
        if isinstance(config, ParallelConfig | LoopConfig):
            return tuple(config.steps)
        if isinstance(config, ConditionalConfig):
            return tuple(config.if_steps) + tuple(config.else_steps)
        if isinstance(config, HumanTaskConfig) and config.on_timeout is not None:
            return (config.on_timeout,)
        return ()

    def __hash__(self) -> int:
        return hash(self.id)


def walk_steps(steps: tuple[Step, ...] | list[Step]) -> Iterator[Step]:
    """Yield every step depth-first, nested steps included."""
    for step in steps:
        yield step
        yield from walk_steps(step.children())


def sibling_groups(steps: tuple[Step, ...] | list[Step]) -> Iterator[tuple[Step, ...]]:
    """Yield every list of sibling steps that forms its own sub-DAG.

    Conditional branches are separate groups: an if-step can only depend on
    other if-steps.
    """
    yield tuple(steps)
    for step in steps:
        config = step.config
        if isinstance(config, ConditionalConfig):
            yield from sibling_groups(config.if_steps)
            if config.else_steps:
                yield from sibling_groups(config.else_steps)
        elif isinstance(config, HumanTaskConfig):
            if config.on_timeout is not None:
                yield from sibling_groups((config.on_timeout,))
        elif step.children():
            yield from sibling_groups(step.children())
