"""Step invokers: the capabilities that perform a step's actual work.

The scheduler never talks to services itself. It hands a step and its
resolved input to the ``StepInvoker`` registered for the step, awaits the
result inside its own asyncio task, and posts the outcome back to the
execution's owner loop.

Lookup order for a step:
    1. invoker registered for the SERVICE step's ``service`` name
    2. invoker registered for the step's kind

Example:
    ```python
    async def charge(step, data, deadline):
        return await billing.charge(data["amount"])

    registry = InvokerRegistry().register_service("billing", CallableInvoker(charge))
    ```
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from pytaxis.models import CompensationStep, ServiceConfig, Step, StepKind, TaskExecution

__all__ = [
    "StepInvoker",
    "CompensationInvoker",
    "CallableInvoker",
    "CallableCompensationInvoker",
    "InvokerRegistry",
]


@runtime_checkable
class StepInvoker(Protocol):
    """Performs the work of one step.

    Raising any exception reports failure; ``StepInvocationError`` lets the
    invoker say whether the failure is worth retrying. Implementations must
    let ``asyncio.CancelledError`` propagate promptly.
    """

    async def invoke(
        self, step: Step, resolved_input: dict[str, Any], deadline: datetime | None
    ) -> Any: ...


@runtime_checkable
class CompensationInvoker(Protocol):
    """Runs the reversing action registered for a completed step."""

    async def compensate(self, compensation: CompensationStep, task: TaskExecution) -> None: ...


class CallableInvoker:
    """Adapts a plain ``async def fn(step, input, deadline)`` to StepInvoker."""

    def __init__(
        self, fn: Callable[[Step, dict[str, Any], datetime | None], Awaitable[Any]]
    ):
        self._fn = fn

    async def invoke(
        self, step: Step, resolved_input: dict[str, Any], deadline: datetime | None
    ) -> Any:
        return await self._fn(step, resolved_input, deadline)

    def __repr__(self) -> str:
        return f"CallableInvoker({getattr(self._fn, '__name__', self._fn)!r})"


class CallableCompensationInvoker:
    """Adapts ``async def fn(compensation, task)`` to CompensationInvoker."""

    def __init__(self, fn: Callable[[CompensationStep, TaskExecution], Awaitable[None]]):
        self._fn = fn

    async def compensate(self, compensation: CompensationStep, task: TaskExecution) -> None:
        await self._fn(compensation, task)


class InvokerRegistry:
    """Kind and service-name table of step invokers."""

    def __init__(self):
        self._by_kind: dict[StepKind, StepInvoker] = {}
        self._by_service: dict[str, StepInvoker] = {}

    def register(self, kind: StepKind, invoker: StepInvoker) -> InvokerRegistry:
        self._by_kind[kind] = invoker
        return self

    def register_service(self, service: str, invoker: StepInvoker) -> InvokerRegistry:
        self._by_service[service] = invoker
        return self

    def resolve(self, step: Step) -> StepInvoker | None:
        """Invoker for ``step``, or None if nothing is registered."""
        if isinstance(step.config, ServiceConfig) and step.config.service in self._by_service:
            return self._by_service[step.config.service]
        return self._by_kind.get(step.kind)

    def __repr__(self) -> str:
        kinds = ", ".join(str(k) for k in self._by_kind)
        services = ", ".join(self._by_service)
        return f"InvokerRegistry(kinds=[{kinds}], services=[{services}])"
