"""
Executor module - runtime engine for workflow executions.

This module contains the execution components:
- scheduler: facade that starts, cancels, retries and signals executions
- run: the owner loop of one execution (mailbox, timers, dispatch)
- readiness: pure readiness and settlement functions over an Execution
- handlers: one handler per step kind
- retry: the retry policy engine
- compensation: the error/compensation coordinator
- log_bus: per-execution live event streams
- invoker: the protocols through which steps reach the outside world
"""

from pytaxis.executor.compensation import ErrorCoordinator, ErrorEffect
from pytaxis.executor.handlers import STEP_HANDLERS, StepHandler, handler_for
from pytaxis.executor.invoker import (
    CallableCompensationInvoker,
    CallableInvoker,
    CompensationInvoker,
    InvokerRegistry,
    StepInvoker,
)
from pytaxis.executor.log_bus import ExecutionLogBus, Subscription
from pytaxis.executor.readiness import blocked_tasks, downstream_of, ready_tasks, root_cause
from pytaxis.executor.retry import GiveUp, Retry, RetryDecision, should_retry
from pytaxis.executor.run import ExecutionRun
from pytaxis.executor.scheduler import Scheduler

__all__ = [
    # Scheduler
    "Scheduler",
    "ExecutionRun",
    # Invokers
    "StepInvoker",
    "CompensationInvoker",
    "CallableInvoker",
    "CallableCompensationInvoker",
    "InvokerRegistry",
    # Handlers
    "StepHandler",
    "STEP_HANDLERS",
    "handler_for",
    # Readiness
    "ready_tasks",
    "blocked_tasks",
    "root_cause",
    "downstream_of",
    # Retry
    "Retry",
    "GiveUp",
    "RetryDecision",
    "should_retry",
    # Errors and compensation
    "ErrorCoordinator",
    "ErrorEffect",
    # Log bus
    "ExecutionLogBus",
    "Subscription",
]
