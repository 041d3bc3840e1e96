"""In-memory repository implementation for pytaxis.

Design Pattern: Adapter Pattern
InMemoryRepository adapts plain dictionaries to the WorkflowRepository
interface.

Instance is immediately usable after __init__.
"""

from __future__ import annotations

import asyncio
import copy
from collections.abc import Callable, Iterable
from typing import TypeVar

from pytaxis.models import (
    Execution,
    ExecutionStatus,
    TaskExecution,
    Workflow,
    WorkflowStatus,
    WorkflowTemplate,
)
from pytaxis.storage.base import StorageError, WorkflowRepository

T = TypeVar("T")


class InMemoryRepository(WorkflowRepository):
    """In-memory storage for tests and single-process deployments.

    Can be substituted for SqliteRepository without changing client code.

    Usage:
        repository = InMemoryRepository()
        scheduler = Scheduler(repository)
    """

    def __init__(self):
        self._workflows: dict[str, Workflow] = {}
        self._templates: dict[str, WorkflowTemplate] = {}
        self._executions: dict[str, Execution] = {}
        self._lock = asyncio.Lock()

    def __repr__(self) -> str:
        return "InMemoryRepository"

    # ========================================================================
    # Workflows
    # ========================================================================

    async def save_workflow(self, workflow: Workflow) -> None:
        async with self._lock:
            self._workflows[workflow.id] = copy.deepcopy(workflow)

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        async with self._lock:
            return copy.deepcopy(self._workflows.get(workflow_id))

    async def list_workflows(
        self,
        tenant_id: str | None = None,
        status: WorkflowStatus | None = None,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[Workflow], int]:
        async with self._lock:
            matches = [
                w
                for w in self._workflows.values()
                if (tenant_id is None or w.tenant_id == tenant_id)
                and (status is None or w.status == status)
            ]
            return _page(matches, lambda w: w.created_at, offset, limit)

    # ========================================================================
    # Templates
    # ========================================================================

    async def save_template(self, template: WorkflowTemplate) -> None:
        async with self._lock:
            self._templates[template.id] = copy.deepcopy(template)

    async def get_template(self, template_id: str) -> WorkflowTemplate | None:
        async with self._lock:
            return copy.deepcopy(self._templates.get(template_id))

    async def get_template_by_name(self, name: str) -> WorkflowTemplate | None:
        async with self._lock:
            for template in self._templates.values():
                if template.name == name:
                    return copy.deepcopy(template)
            return None

    async def list_templates(
        self, category: str | None = None, offset: int = 0, limit: int = 20
    ) -> tuple[list[WorkflowTemplate], int]:
        async with self._lock:
            matches = [
                t for t in self._templates.values() if category is None or t.category == category
            ]
            return _page(matches, lambda t: t.created_at, offset, limit)

    # ========================================================================
    # Executions
    # ========================================================================

    async def save_execution(self, execution: Execution) -> None:
        async with self._lock:
            self._executions[execution.id] = copy.deepcopy(execution)

    async def save_task(self, execution_id: str, task: TaskExecution) -> None:
        async with self._lock:
            execution = self._executions.get(execution_id)
            if execution is None:
                raise StorageError(f"Execution not found: {execution_id}")
            execution.tasks[task.key] = copy.deepcopy(task)

    async def get_execution(self, execution_id: str) -> Execution | None:
        async with self._lock:
            return copy.deepcopy(self._executions.get(execution_id))

    async def list_executions(
        self,
        workflow_id: str | None = None,
        tenant_id: str | None = None,
        status: ExecutionStatus | None = None,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[Execution], int]:
        async with self._lock:
            matches = [
                e
                for e in self._executions.values()
                if (workflow_id is None or e.workflow_id == workflow_id)
                and (tenant_id is None or e.tenant_id == tenant_id)
                and (status is None or e.status == status)
            ]
            return _page(matches, lambda e: e.started_at, offset, limit)

    # ========================================================================
    # Utility Operations
    # ========================================================================

    async def reset(self) -> None:
        async with self._lock:
            self._workflows.clear()
            self._templates.clear()
            self._executions.clear()

    async def close(self) -> None:
        pass


def _page(items: Iterable[T], key: Callable[[T], object], offset: int, limit: int):
    ordered = sorted(items, key=key, reverse=True)
    return [copy.deepcopy(i) for i in ordered[offset : offset + limit]], len(ordered)
