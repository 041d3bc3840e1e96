"""
WorkflowRepository - Abstract interface for persistence backends.

Design Pattern: Adapter Pattern
WorkflowRepository defines the target interface that every backend
(memory, SQLite, Redis) adapts to.

Design Principle: Dependency Inversion (SOLID)
The scheduler and the services depend on this abstraction, never on a
concrete backend, so tests run against InMemoryRepository and production
against SqliteRepository or RedisRepository without code changes.

Write discipline:
The scheduler is the single writer for an execution and its tasks (one
owner loop per execution), so "read current state, apply one mutation" is
enough to avoid lost updates; backends do not need optimistic locking.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from pytaxis.core.errors import WorkflowError
from pytaxis.models import (
    Execution,
    ExecutionStatus,
    TaskExecution,
    Workflow,
    WorkflowStatus,
    WorkflowTemplate,
)


class StorageError(WorkflowError):
    """Storage operation failed."""


class WorkflowRepository(ABC):
    """
    Abstract storage interface for workflows, templates and executions.

    Listing methods return ``(items, total_count)`` where ``total_count``
    ignores ``offset``/``limit``; pagination tokens are built by callers.
    Items are ordered newest first.

    Returned objects are copies: mutating them never changes stored state.
    """

    # ========================================================================
    # Workflows
    # ========================================================================

    @abstractmethod
    async def save_workflow(self, workflow: Workflow) -> None:
        """Insert or replace a workflow record."""

    @abstractmethod
    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        """Return the workflow, or None if it does not exist."""

    @abstractmethod
    async def list_workflows(
        self,
        tenant_id: str | None = None,
        status: WorkflowStatus | None = None,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[Workflow], int]:
        """List workflows matching the filters."""

    # ========================================================================
    # Templates
    # ========================================================================

    @abstractmethod
    async def save_template(self, template: WorkflowTemplate) -> None:
        """Insert or replace a template record."""

    @abstractmethod
    async def get_template(self, template_id: str) -> WorkflowTemplate | None:
        """Return the template, or None."""

    @abstractmethod
    async def get_template_by_name(self, name: str) -> WorkflowTemplate | None:
        """Return the template with this (unique) name, or None."""

    @abstractmethod
    async def list_templates(
        self, category: str | None = None, offset: int = 0, limit: int = 20
    ) -> tuple[list[WorkflowTemplate], int]:
        """List templates, optionally filtered by category."""

    # ========================================================================
    # Executions
    # ========================================================================

    @abstractmethod
    async def save_execution(self, execution: Execution) -> None:
        """Insert or replace an execution together with all of its tasks."""

    @abstractmethod
    async def save_task(self, execution_id: str, task: TaskExecution) -> None:
        """Insert or replace a single task of an existing execution.

        Raises:
            StorageError: If the execution does not exist
        """

    @abstractmethod
    async def get_execution(self, execution_id: str) -> Execution | None:
        """Return the execution with its tasks, or None."""

    @abstractmethod
    async def list_executions(
        self,
        workflow_id: str | None = None,
        tenant_id: str | None = None,
        status: ExecutionStatus | None = None,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[Execution], int]:
        """List executions matching the filters, newest first."""

    async def count_active_executions(self, workflow_id: str) -> int:
        """Count PENDING or RUNNING executions of a workflow."""
        total = 0
        for status in (ExecutionStatus.PENDING, ExecutionStatus.RUNNING):
            _, count = await self.list_executions(workflow_id=workflow_id, status=status, limit=1)
            total += count
        return total

    # ========================================================================
    # Utility Operations
    # ========================================================================

    @abstractmethod
    async def reset(self) -> None:
        """
        Clear all data (for testing/demos).

        Warning: Destructive operation - only use in testing!
        """

    @abstractmethod
    async def close(self) -> None:
        """Close connections and release resources."""
