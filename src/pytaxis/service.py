"""
Workflow lifecycle: create, update, activate, archive, list and measure.

Definitions are validated before they are stored, so the scheduler never
sees a malformed or cyclic graph. Updates replace the definition and bump
the version; executions already running keep the definition they started
with.

Lifecycle:
    DRAFT → ACTIVE ⇄ INACTIVE → ARCHIVED

Example:
    ```python
    service = WorkflowService(repository)
    workflow = await service.create_workflow("orders", "acme", definition)
    await service.activate_workflow(workflow.id)
    ```
"""

import logging
from collections.abc import AsyncIterator
from dataclasses import replace
from datetime import datetime

from uuid_extensions import uuid7

from pytaxis.core.errors import InvalidStateError, NotFoundError
from pytaxis.core.pagination import fetch_page
from pytaxis.core.validation import validate_definition
from pytaxis.models import (
    Execution,
    ExecutionStatus,
    Page,
    Workflow,
    WorkflowDefinition,
    WorkflowMetrics,
    WorkflowStatus,
)
from pytaxis.storage.base import WorkflowRepository

logger = logging.getLogger(__name__)

__all__ = ["WorkflowService"]

# Executions are scanned in batches of this size when computing metrics.
_METRICS_BATCH = 200


class WorkflowService:
    """Stored workflow records and their lifecycle."""

    def __init__(self, repository: WorkflowRepository):
        self.repository = repository

    def __repr__(self) -> str:
        return f"WorkflowService(repository={self.repository!r})"

    async def create_workflow(
        self,
        name: str,
        tenant_id: str,
        definition: WorkflowDefinition,
        description: str = "",
        metadata: dict[str, str] | None = None,
        status: WorkflowStatus = WorkflowStatus.DRAFT,
        created_by: str = "system",
    ) -> Workflow:
        """
        Validate and store a new workflow.

        Raises:
            ValidationError: If the definition is malformed or cyclic
        """
        validate_definition(definition)
        workflow = Workflow(
            id=str(uuid7()),
            name=name,
            tenant_id=tenant_id,
            definition=definition,
            description=description,
            status=status,
            metadata=dict(metadata or {}),
            created_by=created_by,
            updated_by=created_by,
        )
        await self.repository.save_workflow(workflow)
        logger.info(f"Created workflow {workflow.id} ({name}) for tenant {tenant_id}")
        return workflow

    async def get_workflow(self, workflow_id: str) -> Workflow:
        """
        Raises:
            NotFoundError: If the workflow does not exist
        """
        workflow = await self.repository.get_workflow(workflow_id)
        if workflow is None:
            raise NotFoundError(f"Workflow {workflow_id} not found")
        return workflow

    async def update_workflow(
        self,
        workflow_id: str,
        name: str | None = None,
        description: str | None = None,
        definition: WorkflowDefinition | None = None,
        metadata: dict[str, str] | None = None,
        updated_by: str = "system",
    ) -> Workflow:
        """
        Update a workflow and bump its version.

        Only the given fields change; ``metadata`` is merged into the
        existing metadata.

        Raises:
            NotFoundError: If the workflow does not exist
            InvalidStateError: If the workflow is archived
            ValidationError: If the new definition is invalid
        """
        workflow = await self.get_workflow(workflow_id)
        if workflow.status == WorkflowStatus.ARCHIVED:
            raise InvalidStateError(f"Workflow {workflow_id} is archived")
        if definition is not None:
            validate_definition(definition)

        workflow = replace(
            workflow,
            name=workflow.name if name is None else name,
            description=workflow.description if description is None else description,
            definition=workflow.definition if definition is None else definition,
            metadata={**workflow.metadata, **(metadata or {})},
            version=workflow.version + 1,
            updated_at=datetime.now(),
            updated_by=updated_by,
        )
        await self.repository.save_workflow(workflow)
        logger.info(f"Updated workflow {workflow_id} to version {workflow.version}")
        return workflow

    async def delete_workflow(self, workflow_id: str) -> None:
        """
        Soft delete: the workflow becomes ARCHIVED and can no longer run.

        Raises:
            NotFoundError: If the workflow does not exist
            InvalidStateError: If it still has PENDING or RUNNING executions
        """
        workflow = await self.get_workflow(workflow_id)
        active = await self.repository.count_active_executions(workflow_id)
        if active:
            raise InvalidStateError(
                f"Cannot delete workflow {workflow_id} with {active} active execution(s)"
            )
        await self._set_status(workflow, WorkflowStatus.ARCHIVED)
        logger.info(f"Archived workflow {workflow_id}")

    async def activate_workflow(self, workflow_id: str) -> Workflow:
        """Allow the workflow to be executed."""
        return await self._set_status(await self.get_workflow(workflow_id), WorkflowStatus.ACTIVE)

    async def deactivate_workflow(self, workflow_id: str) -> Workflow:
        """Stop new executions; running ones are unaffected."""
        return await self._set_status(
            await self.get_workflow(workflow_id), WorkflowStatus.INACTIVE
        )

    async def _set_status(self, workflow: Workflow, status: WorkflowStatus) -> Workflow:
        if workflow.status == WorkflowStatus.ARCHIVED:
            raise InvalidStateError(f"Workflow {workflow.id} is archived")
        workflow.status = status
        workflow.updated_at = datetime.now()
        await self.repository.save_workflow(workflow)
        logger.debug(f"Workflow {workflow.id} is now {status}")
        return workflow

    async def list_workflows(
        self,
        tenant_id: str | None = None,
        status: WorkflowStatus | None = None,
        page_size: int | None = None,
        page_token: str | None = None,
    ) -> Page[Workflow]:
        """Workflows matching the filters, newest first."""
        return await fetch_page(
            lambda offset, limit: self.repository.list_workflows(
                tenant_id=tenant_id, status=status, offset=offset, limit=limit
            ),
            page_size,
            page_token,
        )

    async def get_workflow_metrics(
        self,
        workflow_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> WorkflowMetrics:
        """
        Aggregate the stored executions of a workflow started in [start, end).

        ``average_duration_seconds`` covers finished executions only.
        ``error_counts`` maps the failing task key to how many FAILED or
        TIMED_OUT executions it caused.

        Raises:
            NotFoundError: If the workflow does not exist
        """
        await self.get_workflow(workflow_id)
        metrics = WorkflowMetrics()
        durations: list[float] = []

        async for execution in self._executions_of(workflow_id):
            if start is not None and execution.started_at < start:
                continue
            if end is not None and execution.started_at >= end:
                continue
            _count(metrics, execution)
            if execution.duration_seconds is not None:
                durations.append(execution.duration_seconds)

        if durations:
            metrics.average_duration_seconds = sum(durations) / len(durations)
        return metrics

    async def _executions_of(self, workflow_id: str) -> AsyncIterator[Execution]:
        offset = 0
        while True:
            batch, total = await self.repository.list_executions(
                workflow_id=workflow_id, offset=offset, limit=_METRICS_BATCH
            )
            for execution in batch:
                yield execution
            offset += len(batch)
            if not batch or offset >= total:
                return


def _count(metrics: WorkflowMetrics, execution: Execution) -> None:
    metrics.total_executions += 1
    match execution.status:
        case ExecutionStatus.COMPLETED:
            metrics.successful_executions += 1
        case ExecutionStatus.FAILED:
            metrics.failed_executions += 1
        case ExecutionStatus.CANCELLED:
            metrics.cancelled_executions += 1
        case ExecutionStatus.TIMED_OUT:
            metrics.timed_out_executions += 1

    if execution.status in (ExecutionStatus.FAILED, ExecutionStatus.TIMED_OUT):
        key = execution.failed_task_id or "unknown"
        metrics.error_counts[key] = metrics.error_counts.get(key, 0) + 1
