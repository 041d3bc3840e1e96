"""Runtime records: one Execution per run, one TaskExecution per step instance.

These records are mutated only by the execution's owner loop
(``ExecutionRun``). Everything else sees copies handed out by the
repository.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pytaxis.models.status import ExecutionStatus, LogLevel, TaskStatus


@dataclass
class TaskExecution:
    """Runtime instance of a Step within one Execution.

    Top-level tasks use the step id as key. Nested tasks use a path:
    ``fanout/child`` for a Parallel child, ``items[2]/child`` for the child
    of a Loop's third iteration. ``depends_on_keys`` are resolved to keys
    at creation time, so readiness never has to look at the definition.
    """

    id: str
    key: str
    step_id: str
    name: str
    status: TaskStatus = TaskStatus.PENDING
    parent_key: str | None = None
    depends_on_keys: tuple[str, ...] = ()
    input: dict[str, Any] = field(default_factory=dict)
    output: Any = None
    error_message: str | None = None
    retry_count: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None

    error_ignored: bool = False
    """Failed under an IGNORE handler: counts as satisfied for dependents."""

    retry_scheduled: bool = False
    """Back in PENDING while a retry backoff timer is running."""

    variables: dict[str, Any] = field(default_factory=dict)
    """Loop bindings visible to this task and its descendants."""

    @property
    def is_satisfied(self) -> bool:
        """True if dependents of this task may run."""
        if self.status in (TaskStatus.COMPLETED, TaskStatus.SKIPPED):
            return True
        return self.status == TaskStatus.FAILED and self.error_ignored

    @property
    def in_flight(self) -> bool:
        """True while the task still has work going on."""
        return self.status == TaskStatus.RUNNING or (
            self.status == TaskStatus.PENDING and self.retry_scheduled
        )

    def __repr__(self) -> str:
        return (
            f"TaskExecution(key={self.key!r}, status={self.status}, "
            f"retry_count={self.retry_count})"
        )


@dataclass
class Execution:
    """One run of a WorkflowDefinition against concrete input."""

    id: str
    workflow_id: str
    tenant_id: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    input_parameters: dict[str, Any] = field(default_factory=dict)
    output_data: dict[str, Any] = field(default_factory=dict)
    error_message: str | None = None
    failed_task_id: str | None = None
    """Key of the task that caused a FAILED/TIMED_OUT outcome."""

    started_at: datetime = field(default_factory=datetime.now)
    completed_at: datetime | None = None
    triggered_by: str = "manual"
    metadata: dict[str, Any] = field(default_factory=dict)
    tasks: dict[str, TaskExecution] = field(default_factory=dict)
    """Task key → TaskExecution, in creation order."""

    retry_of: str | None = None
    """Execution this one was cloned from by a retry, if any."""

    def task(self, key: str) -> TaskExecution:
        return self.tasks[key]

    def children_of(self, parent_key: str | None) -> list[TaskExecution]:
        """Tasks directly inside the scope of ``parent_key`` (None = top level)."""
        return [t for t in self.tasks.values() if t.parent_key == parent_key]

    def find_task(self, task_id_or_key: str) -> TaskExecution | None:
        """Look a task up by key, then by id, then by step id."""
        if task_id_or_key in self.tasks:
            return self.tasks[task_id_or_key]
        for task in self.tasks.values():
            if task.id == task_id_or_key:
                return task
        for task in self.tasks.values():
            if task.step_id == task_id_or_key:
                return task
        return None

    @property
    def duration_seconds(self) -> float | None:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    def __repr__(self) -> str:
        return (
            f"Execution(id={self.id!r}, workflow_id={self.workflow_id!r}, "
            f"status={self.status}, tasks={len(self.tasks)})"
        )


@dataclass(frozen=True)
class LogEvent:
    """Structured log event emitted on every state transition."""

    execution_id: str
    task_id: str | None
    level: LogLevel
    message: str
    timestamp: datetime = field(default_factory=datetime.now)
    metadata: dict[str, str] = field(default_factory=dict)

    def __str__(self) -> str:
        where = f"{self.execution_id}/{self.task_id}" if self.task_id else self.execution_id
        return f"[{self.level}] {where}: {self.message}"
