"""
Taxis: Workflow Orchestration Core for Python

Declarative workflows as DAGs of typed steps (service calls, parallel
blocks, conditionals, loops, waits and human approvals), validated before
they run and executed with per-step retries, error handling and
compensation, cancellation and live execution logs.

Design Pattern: Façade Pattern
This module provides a simplified interface to the taxis packages, hiding
the details of storage, the owner loops and timer coordination.

Package "taxis" (Greek: arrangement, order) describes what it provides.

Example:
    ```python
    import asyncio
    from pytaxis import (
        CallableInvoker, InMemoryRepository, Scheduler, ServiceConfig, Step,
        StepKind, WorkflowDefinition, WorkflowService, WorkflowStatus,
    )

    async def call_service(step, resolved_input, deadline):
        return {"ok": True, **resolved_input}

    async def main():
        repository = InMemoryRepository()
        workflows = WorkflowService(repository)
        scheduler = Scheduler(repository).with_invoker(
            StepKind.SERVICE, CallableInvoker(call_service)
        )

        definition = WorkflowDefinition(steps=(
            Step("fetch", "Fetch", ServiceConfig("orders", "get")),
            Step("ship", "Ship", ServiceConfig("shipping", "send"), depends_on=("fetch",)),
        ))
        workflow = await workflows.create_workflow(
            "orders", "acme", definition, status=WorkflowStatus.ACTIVE
        )

        execution = await scheduler.start_execution(workflow.id, {"order_id": 7})
        final = await scheduler.wait_for_execution(execution.id)
        print(final.status, final.output_data)

    asyncio.run(main())
    ```
"""

# Core types - pure dataclasses (no engine dependencies)
from pytaxis.models import (
    BackoffKind,
    CompensationStep,
    ConditionalConfig,
    ErrorHandler,
    ErrorHandlerKind,
    Execution,
    ExecutionStatus,
    HumanTaskConfig,
    LogEvent,
    LogLevel,
    LoopConfig,
    Page,
    ParallelConfig,
    ParameterSchema,
    ParameterType,
    RetryableError,
    RetryPolicy,
    ServiceConfig,
    Step,
    StepKind,
    TaskExecution,
    TaskStatus,
    Trigger,
    TriggerKind,
    WaitConfig,
    Workflow,
    WorkflowDefinition,
    WorkflowMetrics,
    WorkflowStatus,
    WorkflowTemplate,
)

# Validation, expressions and errors
from pytaxis.core import (
    CancellationError,
    CompensationError,
    DependencyUnsatisfiableError,
    ExpressionError,
    ExpressionEvaluator,
    InvalidStateError,
    NotFoundError,
    RetryExhaustedError,
    SimpleEvaluator,
    StepInvocationError,
    ValidationError,
    WorkflowError,
    validate_definition,
)

# Storage (Adapter pattern)
from pytaxis.storage import StorageError, WorkflowRepository
from pytaxis.storage.memory import InMemoryRepository
from pytaxis.storage.sqlite import SqliteRepository

# Execution
from pytaxis.executor import (
    CallableCompensationInvoker,
    CallableInvoker,
    CompensationInvoker,
    ErrorCoordinator,
    ErrorEffect,
    ExecutionLogBus,
    GiveUp,
    InvokerRegistry,
    Retry,
    Scheduler,
    StepInvoker,
    Subscription,
    should_retry,
)

# Services
from pytaxis.service import WorkflowService
from pytaxis.templates import TemplateService

# Version
__version__ = "0.1.0"

__all__ = [
    # Steps and definitions
    "Step",
    "StepKind",
    "ServiceConfig",
    "ParallelConfig",
    "ConditionalConfig",
    "LoopConfig",
    "WaitConfig",
    "HumanTaskConfig",
    "RetryPolicy",
    "BackoffKind",
    "RetryableError",
    "ErrorHandler",
    "ErrorHandlerKind",
    "CompensationStep",
    "Trigger",
    "TriggerKind",
    "WorkflowDefinition",

    # Records
    "Workflow",
    "WorkflowStatus",
    "WorkflowTemplate",
    "ParameterSchema",
    "ParameterType",
    "WorkflowMetrics",
    "Page",
    "Execution",
    "ExecutionStatus",
    "TaskExecution",
    "TaskStatus",
    "LogEvent",
    "LogLevel",

    # Validation and expressions
    "validate_definition",
    "ExpressionEvaluator",
    "SimpleEvaluator",

    # Errors
    "WorkflowError",
    "ValidationError",
    "StepInvocationError",
    "RetryExhaustedError",
    "CompensationError",
    "CancellationError",
    "DependencyUnsatisfiableError",
    "ExpressionError",
    "NotFoundError",
    "InvalidStateError",
    "StorageError",

    # Storage (Adapter pattern)
    "WorkflowRepository",
    "InMemoryRepository",
    "SqliteRepository",

    # Execution
    "Scheduler",
    "StepInvoker",
    "CompensationInvoker",
    "CallableInvoker",
    "CallableCompensationInvoker",
    "InvokerRegistry",
    "ErrorCoordinator",
    "ErrorEffect",
    "Retry",
    "GiveUp",
    "should_retry",
    "ExecutionLogBus",
    "Subscription",

    # Services
    "WorkflowService",
    "TemplateService",

    # Metadata
    "__version__",
]
