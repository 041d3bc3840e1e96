"""
Mailbox messages for an execution's owner loop.

Nothing outside the owner loop mutates an Execution. Invoker coroutines,
timers and callers describe what happened by posting one of these messages;
the owner applies them one at a time.

Every message that answers a dispatch carries the ``Token`` handed out with
that dispatch. The owner keeps one live token per task key and drops
messages whose token is no longer live (the task was cancelled, retried or
timed out in the meantime).
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

__all__ = [
    "Token",
    "TaskSucceeded",
    "TaskFailed",
    "RetryDue",
    "TimerFired",
    "HumanTimeout",
    "HumanSignal",
    "CancelRequested",
    "WorkflowTimedOut",
    "Message",
]


@dataclass(frozen=True)
class Token:
    """Completion token: which task, and which dispatch of it."""

    key: str
    attempt: int

    def __str__(self) -> str:
        return f"{self.key}#{self.attempt}"


@dataclass(frozen=True)
class TaskSucceeded:
    token: Token
    output: Any


@dataclass(frozen=True)
class TaskFailed:
    token: Token
    error: BaseException


@dataclass(frozen=True)
class RetryDue:
    """Backoff elapsed; dispatch the task again."""

    token: Token


@dataclass(frozen=True)
class TimerFired:
    """A Wait step's deadline passed."""

    token: Token


@dataclass(frozen=True)
class HumanTimeout:
    token: Token


@dataclass(frozen=True)
class HumanSignal:
    """Approval or rejection of a human task, answered through ``reply``."""

    task_key: str
    approved: bool
    data: dict[str, Any]
    actor: str
    reply: asyncio.Future = field(compare=False)


@dataclass(frozen=True)
class CancelRequested:
    reason: str
    reply: asyncio.Future = field(compare=False)


@dataclass(frozen=True)
class WorkflowTimedOut:
    timeout_seconds: float


Message = (
    TaskSucceeded
    | TaskFailed
    | RetryDue
    | TimerFired
    | HumanTimeout
    | HumanSignal
    | CancelRequested
    | WorkflowTimedOut
)
