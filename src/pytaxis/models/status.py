"""Status enumerations for workflow and execution tracking.

Defines lifecycle states for stored workflows, executions, and the
individual tasks an execution is made of.
"""

from enum import Enum, IntEnum


class WorkflowStatus(Enum):
    """Lifecycle of a stored workflow.

    Lifecycle:
        DRAFT → ACTIVE ⇄ INACTIVE → ARCHIVED

    Only ACTIVE workflows can be executed. ARCHIVED is the soft-deleted
    state and cannot be left.
    """

    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    ARCHIVED = "ARCHIVED"

    def __str__(self) -> str:
        return self.value


class ExecutionStatus(Enum):
    """Status of one run of a workflow definition.

    Lifecycle:
        PENDING → RUNNING → COMPLETED/FAILED/CANCELLED/TIMED_OUT

    Terminal states are absorbing: an execution becomes terminal exactly once.
    """

    PENDING = "PENDING"
    """Execution record created, owner loop not started yet."""

    RUNNING = "RUNNING"
    """Owner loop is dispatching tasks."""

    COMPLETED = "COMPLETED"
    """Every task ended COMPLETED or SKIPPED (or failed with IGNORE)."""

    FAILED = "FAILED"
    """At least one task failed and the failure was not contained."""

    CANCELLED = "CANCELLED"
    """Execution was cancelled by a caller."""

    TIMED_OUT = "TIMED_OUT"
    """Workflow-level timeout elapsed before normal completion."""

    @property
    def is_terminal(self) -> bool:
        """Check if this status is terminal (no more work will happen)."""
        return self in (
            ExecutionStatus.COMPLETED,
            ExecutionStatus.FAILED,
            ExecutionStatus.CANCELLED,
            ExecutionStatus.TIMED_OUT,
        )

    @property
    def is_active(self) -> bool:
        """Check if the execution can still be cancelled."""
        return self in (ExecutionStatus.PENDING, ExecutionStatus.RUNNING)

    def __str__(self) -> str:
        return self.value


class TaskStatus(Enum):
    """Status of the runtime instance of a step.

    Lifecycle:
        PENDING → RUNNING → COMPLETED/FAILED/SKIPPED/CANCELLED

    A task waiting for a retry goes back to PENDING with its
    ``retry_scheduled`` flag set, and is dispatched again when the backoff
    delay elapses. Untaken conditional branches are created directly in
    SKIPPED.
    """

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        """Check if this status is terminal."""
        return self in (
            TaskStatus.COMPLETED,
            TaskStatus.FAILED,
            TaskStatus.SKIPPED,
            TaskStatus.CANCELLED,
        )

    def __str__(self) -> str:
        return self.value


class LogLevel(IntEnum):
    """Severity of an execution log event.

    IntEnum so that ``event.level >= min_level`` works for filtering.
    """

    DEBUG = 1
    INFO = 2
    WARN = 3
    ERROR = 4

    def __str__(self) -> str:
        return self.name
