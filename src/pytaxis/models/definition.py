"""Workflow definitions and the stored records built around them.

A WorkflowDefinition is the declarative DAG. It is never mutated once an
execution references it: updates replace the definition on the Workflow
record and bump its version, while running executions keep the object
they were started with.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Generic, TypeVar

from pytaxis.models.status import WorkflowStatus
from pytaxis.models.step import Step, walk_steps

T = TypeVar("T")


class TriggerKind(Enum):
    WEBHOOK = "WEBHOOK"
    SCHEDULE = "SCHEDULE"
    EVENT = "EVENT"

    def __str__(self) -> str:
        return self.value


class ErrorHandlerKind(Enum):
    """What happens once a task has exhausted its retries."""

    RETRY = "RETRY"
    """Start a brand-new execution from the same workflow and input."""

    COMPENSATE = "COMPENSATE"
    """Undo completed steps in reverse order, then fail the execution."""

    IGNORE = "IGNORE"
    """Fail the task but let its dependents proceed with a None output."""

    FAIL = "FAIL"
    """Fail the task; its dependents never run."""

    def __str__(self) -> str:
        return self.value


class ParameterType(Enum):
    STRING = "STRING"
    NUMBER = "NUMBER"
    BOOLEAN = "BOOLEAN"
    OBJECT = "OBJECT"
    ARRAY = "ARRAY"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class Trigger:
    """Something external that starts executions (data only).

    ``config`` holds the kind-specific settings, e.g. ``{"path": "/hook",
    "allowed_methods": ["POST"]}`` for a webhook or ``{"cron_expression":
    "0 * * * *", "timezone": "UTC"}`` for a schedule.
    """

    id: str
    kind: TriggerKind
    config: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CompensationStep:
    """Reversing action registered for a step id."""

    step_id: str
    service: str
    method: str


@dataclass(frozen=True)
class ErrorHandler:
    kind: ErrorHandlerKind = ErrorHandlerKind.FAIL
    compensation_steps: tuple[CompensationStep, ...] = ()
    """Ordered (step id, action) pairs, used by COMPENSATE."""

    notification_channel: str | None = None
    max_execution_retries: int = 3
    """Upper bound on the chain of executions created by RETRY."""

    def compensation_for(self, step_id: str) -> CompensationStep | None:
        for compensation in self.compensation_steps:
            if compensation.step_id == step_id:
                return compensation
        return None


@dataclass(frozen=True)
class WorkflowDefinition:
    """Declarative DAG of steps.

    Example:
        ```python
        definition = WorkflowDefinition(
            steps=(fetch, charge, notify),
            error_handler=ErrorHandler(ErrorHandlerKind.COMPENSATE, (
                CompensationStep("charge", "billing", "refund"),
            )),
            global_parameters={"currency": "EUR"},
        )
        validate_definition(definition)
        ```
    """

    steps: tuple[Step, ...]
    triggers: tuple[Trigger, ...] = ()
    error_handler: ErrorHandler | None = None
    global_parameters: dict[str, Any] = field(default_factory=dict)
    timeout_seconds: float | None = None
    """Workflow-level timeout racing normal completion. None disables it."""

    def step_index(self) -> dict[str, Step]:
        """Map every step id (nested ones included) to its Step."""
        return {step.id: step for step in walk_steps(self.steps)}


@dataclass
class Workflow:
    """Stored workflow: a definition plus ownership and lifecycle data."""

    id: str
    name: str
    tenant_id: str
    definition: WorkflowDefinition
    description: str = ""
    status: WorkflowStatus = WorkflowStatus.DRAFT
    version: int = 1
    metadata: dict[str, str] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)
    created_by: str = "system"
    updated_by: str = "system"

    def __repr__(self) -> str:
        return (
            f"Workflow(id={self.id!r}, name={self.name!r}, tenant_id={self.tenant_id!r}, "
            f"status={self.status}, version={self.version})"
        )


@dataclass(frozen=True)
class ParameterSchema:
    name: str
    type: ParameterType = ParameterType.STRING
    default_value: Any = None
    required: bool = False
    description: str = ""


@dataclass
class WorkflowTemplate:
    """Reusable definition with ``{{param}}`` placeholders."""

    id: str
    name: str
    category: str
    definition: WorkflowDefinition
    description: str = ""
    parameter_schemas: dict[str, ParameterSchema] = field(default_factory=dict)
    tags: list[str] = field(default_factory=list)
    metadata: dict[str, str] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)


@dataclass
class Page(Generic[T]):
    """One page of a listing.

    ``next_page_token`` is empty when there are no further pages.
    """

    items: list[T]
    next_page_token: str
    total_count: int


@dataclass
class WorkflowMetrics:
    total_executions: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    cancelled_executions: int = 0
    timed_out_executions: int = 0
    average_duration_seconds: float = 0.0
    error_counts: dict[str, int] = field(default_factory=dict)
