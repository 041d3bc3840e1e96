"""Core data models for workflow orchestration.

Defines definitions (steps, policies, handlers), stored records
(workflows, templates) and runtime records (executions, tasks, log events).

Design: Dependency-Free Models
These types have no dependencies on core, executor or storage modules to
prevent circular imports and enable clean layering.
"""

from pytaxis.models.definition import (
    CompensationStep,
    ErrorHandler,
    ErrorHandlerKind,
    Page,
    ParameterSchema,
    ParameterType,
    Trigger,
    TriggerKind,
    Workflow,
    WorkflowDefinition,
    WorkflowMetrics,
    WorkflowTemplate,
)
from pytaxis.models.execution import Execution, LogEvent, TaskExecution
from pytaxis.models.retry import BackoffKind, RetryableError, RetryPolicy
from pytaxis.models.status import ExecutionStatus, LogLevel, TaskStatus, WorkflowStatus
from pytaxis.models.step import (
    ConditionalConfig,
    HumanTaskConfig,
    LoopConfig,
    ParallelConfig,
    ServiceConfig,
    Step,
    StepConfig,
    StepKind,
    WaitConfig,
    sibling_groups,
    walk_steps,
)

__all__ = [
    # Steps
    "Step",
    "StepKind",
    "StepConfig",
    "ServiceConfig",
    "ParallelConfig",
    "ConditionalConfig",
    "LoopConfig",
    "WaitConfig",
    "HumanTaskConfig",
    "walk_steps",
    "sibling_groups",
    # Policies
    "RetryPolicy",
    "BackoffKind",
    "RetryableError",
    "ErrorHandler",
    "ErrorHandlerKind",
    "CompensationStep",
    # Definitions and records
    "Trigger",
    "TriggerKind",
    "WorkflowDefinition",
    "Workflow",
    "WorkflowTemplate",
    "ParameterSchema",
    "ParameterType",
    "Page",
    "WorkflowMetrics",
    "Execution",
    "TaskExecution",
    "LogEvent",
    # Status
    "WorkflowStatus",
    "ExecutionStatus",
    "TaskStatus",
    "LogLevel",
]
