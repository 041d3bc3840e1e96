"""Redis-based repository implementation.

Lets several processes share workflows, templates and execution history.
Each execution is still owned by exactly one scheduler process; Redis only
holds the records.

Data Structures:
- pytaxis:workflow:{id} (STRING): pickled Workflow
- pytaxis:workflows (ZSET): workflow ids (score = created_at)
- pytaxis:template:{id} (STRING): pickled WorkflowTemplate
- pytaxis:template_names (HASH): template name -> id
- pytaxis:templates (ZSET): template ids (score = created_at)
- pytaxis:execution:{id} (STRING): pickled Execution without tasks
- pytaxis:tasks:{id} (HASH): task key -> pickled TaskExecution
- pytaxis:task_order:{id} (LIST): task keys in creation order
- pytaxis:executions (ZSET): execution ids (score = started_at)

Filtering happens client-side after a newest-first ZSET scan, which is
fine for the history sizes a single deployment keeps.

Design: Adapter Pattern
Implements WorkflowRepository for Redis.
"""

from __future__ import annotations

import copy
import pickle
from collections.abc import Callable

try:
    import redis.asyncio as redis
except ImportError:
    raise ImportError("redis-py is required for RedisRepository. Install with: pip install redis")

from pytaxis.models import (
    Execution,
    ExecutionStatus,
    TaskExecution,
    Workflow,
    WorkflowStatus,
    WorkflowTemplate,
)
from pytaxis.storage.base import StorageError, WorkflowRepository

PREFIX = "pytaxis"


class RedisRepository(WorkflowRepository):
    """Redis repository using connection pooling.

    Usage:
        repository = RedisRepository("redis://localhost:6379")
        await repository.connect()
        scheduler = Scheduler(repository)
    """

    def __init__(self, redis_url: str = "redis://localhost:6379", max_connections: int = 16):
        """Initialize Redis repository.

        Args:
            redis_url: Redis connection URL
            max_connections: Maximum pool size
        """
        self._redis_url = redis_url
        self._max_connections = max_connections
        self._redis: redis.Redis | None = None

    def __repr__(self) -> str:
        return f"RedisRepository({self._redis_url})"

    async def connect(self) -> None:
        """Establish Redis connection pool."""
        self._redis = redis.from_url(
            self._redis_url,
            encoding="utf-8",
            decode_responses=False,  # Values are pickle blobs
            max_connections=self._max_connections,
        )

    async def close(self) -> None:
        """Close Redis connection pool."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    def _check_connected(self) -> None:
        if self._redis is None:
            raise StorageError("Not connected. Call connect() first.")

    # ========================================================================
    # Workflows
    # ========================================================================

    async def save_workflow(self, workflow: Workflow) -> None:
        self._check_connected()
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.set(f"{PREFIX}:workflow:{workflow.id}", pickle.dumps(workflow))
            pipe.zadd(f"{PREFIX}:workflows", {workflow.id: workflow.created_at.timestamp()})
            await pipe.execute()

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        self._check_connected()
        data = await self._redis.get(f"{PREFIX}:workflow:{workflow_id}")
        return pickle.loads(data) if data else None

    async def list_workflows(
        self,
        tenant_id: str | None = None,
        status: WorkflowStatus | None = None,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[Workflow], int]:
        def matches(w: Workflow) -> bool:
            return (tenant_id is None or w.tenant_id == tenant_id) and (
                status is None or w.status == status
            )

        return await self._scan("workflows", "workflow", matches, offset, limit)

    # ========================================================================
    # Templates
    # ========================================================================

    async def save_template(self, template: WorkflowTemplate) -> None:
        self._check_connected()
        names_key = f"{PREFIX}:template_names"
        owner = await self._redis.hget(names_key, template.name)
        if owner is not None and owner.decode() != template.id:
            raise StorageError(f"Template name already in use: {template.name}")

        previous = await self.get_template(template.id)
        async with self._redis.pipeline(transaction=True) as pipe:
            if previous is not None and previous.name != template.name:
                pipe.hdel(names_key, previous.name)
            pipe.set(f"{PREFIX}:template:{template.id}", pickle.dumps(template))
            pipe.hset(names_key, template.name, template.id)
            pipe.zadd(f"{PREFIX}:templates", {template.id: template.created_at.timestamp()})
            await pipe.execute()

    async def get_template(self, template_id: str) -> WorkflowTemplate | None:
        self._check_connected()
        data = await self._redis.get(f"{PREFIX}:template:{template_id}")
        return pickle.loads(data) if data else None

    async def get_template_by_name(self, name: str) -> WorkflowTemplate | None:
        self._check_connected()
        template_id = await self._redis.hget(f"{PREFIX}:template_names", name)
        if template_id is None:
            return None
        return await self.get_template(template_id.decode())

    async def list_templates(
        self, category: str | None = None, offset: int = 0, limit: int = 20
    ) -> tuple[list[WorkflowTemplate], int]:
        return await self._scan(
            "templates",
            "template",
            lambda t: category is None or t.category == category,
            offset,
            limit,
        )

    # ========================================================================
    # Executions
    # ========================================================================

    async def save_execution(self, execution: Execution) -> None:
        """Write the execution header and replace all of its tasks."""
        self._check_connected()
        header = copy.copy(execution)
        header.tasks = {}
        tasks_key = f"{PREFIX}:tasks:{execution.id}"
        order_key = f"{PREFIX}:task_order:{execution.id}"

        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.set(f"{PREFIX}:execution:{execution.id}", pickle.dumps(header))
            pipe.zadd(f"{PREFIX}:executions", {execution.id: execution.started_at.timestamp()})
            pipe.delete(tasks_key, order_key)
            if execution.tasks:
                pipe.hset(
                    tasks_key,
                    mapping={key: pickle.dumps(task) for key, task in execution.tasks.items()},
                )
                pipe.rpush(order_key, *execution.tasks.keys())
            await pipe.execute()

    async def save_task(self, execution_id: str, task: TaskExecution) -> None:
        self._check_connected()
        if not await self._redis.exists(f"{PREFIX}:execution:{execution_id}"):
            raise StorageError(f"Execution not found: {execution_id}")

        tasks_key = f"{PREFIX}:tasks:{execution_id}"
        is_new = not await self._redis.hexists(tasks_key, task.key)
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.hset(tasks_key, task.key, pickle.dumps(task))
            if is_new:
                pipe.rpush(f"{PREFIX}:task_order:{execution_id}", task.key)
            await pipe.execute()

    async def get_execution(self, execution_id: str) -> Execution | None:
        self._check_connected()
        data = await self._redis.get(f"{PREFIX}:execution:{execution_id}")
        if not data:
            return None
        return await self._attach_tasks(pickle.loads(data))

    async def _attach_tasks(self, execution: Execution) -> Execution:
        order = await self._redis.lrange(f"{PREFIX}:task_order:{execution.id}", 0, -1)
        blobs = await self._redis.hgetall(f"{PREFIX}:tasks:{execution.id}")
        for key in order:
            if key in blobs:
                task: TaskExecution = pickle.loads(blobs[key])
                execution.tasks[task.key] = task
        return execution

    async def list_executions(
        self,
        workflow_id: str | None = None,
        tenant_id: str | None = None,
        status: ExecutionStatus | None = None,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[Execution], int]:
        def matches(e: Execution) -> bool:
            return (
                (workflow_id is None or e.workflow_id == workflow_id)
                and (tenant_id is None or e.tenant_id == tenant_id)
                and (status is None or e.status == status)
            )

        headers, total = await self._scan("executions", "execution", matches, offset, limit)
        return [await self._attach_tasks(e) for e in headers], total

    async def _scan(
        self, index: str, kind: str, matches: Callable[[object], bool], offset: int, limit: int
    ):
        """Newest-first filtered page over an index ZSET plus the total count."""
        self._check_connected()
        ids = await self._redis.zrevrange(f"{PREFIX}:{index}", 0, -1)
        if not ids:
            return [], 0
        blobs = await self._redis.mget([f"{PREFIX}:{kind}:{i.decode()}" for i in ids])
        records = [pickle.loads(b) for b in blobs if b]
        selected = [r for r in records if matches(r)]
        return selected[offset : offset + limit], len(selected)

    # ========================================================================
    # Utility Operations
    # ========================================================================

    async def reset(self) -> None:
        """Delete all pytaxis:* keys, leaving other Redis data alone."""
        self._check_connected()
        keys = [key async for key in self._redis.scan_iter(match=f"{PREFIX}:*")]
        if keys:
            await self._redis.delete(*keys)
