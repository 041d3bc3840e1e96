"""SQLite-backed repository implementation for pytaxis.

Design Pattern: Adapter Pattern
SqliteRepository adapts a SQLite database to the WorkflowRepository interface.

Implementation details:
- aiosqlite for async operations
- WAL mode for concurrent reads
- Records stored as pickle blobs next to the indexed columns used for
  filtering and ordering
- Tasks live in their own table so a single transition rewrites one row
"""

from __future__ import annotations

import asyncio
import copy
import pickle
from pathlib import Path

import aiosqlite

from pytaxis.models import (
    Execution,
    ExecutionStatus,
    TaskExecution,
    Workflow,
    WorkflowStatus,
    WorkflowTemplate,
)
from pytaxis.storage.base import StorageError, WorkflowRepository


class SqliteRepository(WorkflowRepository):
    """SQLite-backed durable storage.

    After __init__, the instance is not yet usable. Call connect() first.

    Usage:
        repository = SqliteRepository("workflows.db")
        await repository.connect()
        try:
            scheduler = Scheduler(repository)
        finally:
            await repository.close()
    """

    def __init__(self, db_path: str):
        """Initialize storage (connection not opened yet).

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        self._connection: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()  # Serialize access to shared connection

    @classmethod
    async def in_memory(cls) -> SqliteRepository:
        """
        Create an in-memory SQLite repository for testing.

        Example:
            repository = await SqliteRepository.in_memory()
            # Ready to use immediately
        """
        instance = cls(":memory:")
        await instance.connect()
        return instance

    def __repr__(self) -> str:
        if self.db_path == ":memory:":
            return "SqliteRepository(in-memory)"
        return f"SqliteRepository({self.db_path})"

    async def connect(self) -> None:
        """Open database connection and initialize schema.

        Pattern: Template Method
        Fixed initialization sequence:
        1. Open connection
        2. Enable WAL mode
        3. Create tables and indexes
        """
        if self._connection is not None:
            return

        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._connection = await aiosqlite.connect(
            self.db_path,
            timeout=5.0,
            isolation_level=None,
        )

        # In-memory databases report "memory" and don't support WAL
        cursor = await self._connection.execute("PRAGMA journal_mode=WAL")
        result = await cursor.fetchone()
        await cursor.close()
        if result:
            mode = result[0].upper()
            if mode not in ("WAL", "MEMORY"):
                raise StorageError(f"Failed to enable WAL mode, got: {result[0]}")

        await self._connection.execute("PRAGMA synchronous=NORMAL")
        await self._connection.execute("PRAGMA busy_timeout=5000")

        await self._create_schema()
        await self._connection.commit()

    async def _create_schema(self) -> None:
        """Create database tables and indexes.

        Timestamps are REAL epoch seconds so ORDER BY gives newest first.
        """
        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                tenant_id TEXT NOT NULL,
                status TEXT NOT NULL,
                created_at REAL NOT NULL,
                data BLOB NOT NULL
            )
        """)
        await self._connection.execute("""
            CREATE INDEX IF NOT EXISTS idx_workflows_tenant
            ON workflows(tenant_id, status, created_at)
        """)

        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS templates (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL UNIQUE,
                category TEXT NOT NULL,
                created_at REAL NOT NULL,
                data BLOB NOT NULL
            )
        """)

        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS executions (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                tenant_id TEXT NOT NULL,
                status TEXT NOT NULL,
                started_at REAL NOT NULL,
                data BLOB NOT NULL
            )
        """)
        await self._connection.execute("""
            CREATE INDEX IF NOT EXISTS idx_executions_workflow
            ON executions(workflow_id, status, started_at)
        """)

        # rowid keeps task creation order across upserts
        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS tasks (
                execution_id TEXT NOT NULL,
                task_key TEXT NOT NULL,
                status TEXT NOT NULL,
                data BLOB NOT NULL,
                PRIMARY KEY (execution_id, task_key)
            )
        """)

    def _check_connected(self) -> None:
        if self._connection is None:
            raise StorageError("Database not connected. Call connect() first.")

    # ========================================================================
    # Workflows
    # ========================================================================

    async def save_workflow(self, workflow: Workflow) -> None:
        self._check_connected()
        async with self._lock:
            await self._connection.execute(
                """
                INSERT INTO workflows (id, tenant_id, status, created_at, data)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    tenant_id = excluded.tenant_id,
                    status = excluded.status,
                    data = excluded.data
            """,
                (
                    workflow.id,
                    workflow.tenant_id,
                    workflow.status.value,
                    workflow.created_at.timestamp(),
                    pickle.dumps(workflow),
                ),
            )
            await self._connection.commit()

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        self._check_connected()
        async with self._lock:
            cursor = await self._connection.execute(
                "SELECT data FROM workflows WHERE id = ?", (workflow_id,)
            )
            row = await cursor.fetchone()
        return pickle.loads(row[0]) if row else None

    async def list_workflows(
        self,
        tenant_id: str | None = None,
        status: WorkflowStatus | None = None,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[Workflow], int]:
        filters = {"tenant_id": tenant_id, "status": status.value if status else None}
        return await self._list("workflows", "created_at", filters, offset, limit)

    # ========================================================================
    # Templates
    # ========================================================================

    async def save_template(self, template: WorkflowTemplate) -> None:
        self._check_connected()
        async with self._lock:
            try:
                await self._connection.execute(
                    """
                    INSERT INTO templates (id, name, category, created_at, data)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        name = excluded.name,
                        category = excluded.category,
                        data = excluded.data
                """,
                    (
                        template.id,
                        template.name,
                        template.category,
                        template.created_at.timestamp(),
                        pickle.dumps(template),
                    ),
                )
            except aiosqlite.IntegrityError as e:
                raise StorageError(f"Template name already in use: {template.name}") from e
            await self._connection.commit()

    async def get_template(self, template_id: str) -> WorkflowTemplate | None:
        return await self._get_one("SELECT data FROM templates WHERE id = ?", template_id)

    async def get_template_by_name(self, name: str) -> WorkflowTemplate | None:
        return await self._get_one("SELECT data FROM templates WHERE name = ?", name)

    async def list_templates(
        self, category: str | None = None, offset: int = 0, limit: int = 20
    ) -> tuple[list[WorkflowTemplate], int]:
        return await self._list("templates", "created_at", {"category": category}, offset, limit)

    # ========================================================================
    # Executions
    # ========================================================================

    async def save_execution(self, execution: Execution) -> None:
        """Write the execution row and replace all of its task rows."""
        self._check_connected()
        header = copy.copy(execution)
        header.tasks = {}
        async with self._lock:
            await self._connection.execute("BEGIN IMMEDIATE")
            try:
                await self._connection.execute(
                    """
                    INSERT INTO executions (id, workflow_id, tenant_id, status, started_at, data)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        status = excluded.status,
                        started_at = excluded.started_at,
                        data = excluded.data
                """,
                    (
                        execution.id,
                        execution.workflow_id,
                        execution.tenant_id,
                        execution.status.value,
                        execution.started_at.timestamp(),
                        pickle.dumps(header),
                    ),
                )
                await self._connection.execute(
                    "DELETE FROM tasks WHERE execution_id = ?", (execution.id,)
                )
                for task in execution.tasks.values():
                    await self._upsert_task(execution.id, task)
                await self._connection.execute("COMMIT")
            except Exception:
                await self._connection.execute("ROLLBACK")
                raise

    async def save_task(self, execution_id: str, task: TaskExecution) -> None:
        self._check_connected()
        async with self._lock:
            cursor = await self._connection.execute(
                "SELECT 1 FROM executions WHERE id = ?", (execution_id,)
            )
            if await cursor.fetchone() is None:
                raise StorageError(f"Execution not found: {execution_id}")
            await self._upsert_task(execution_id, task)
            await self._connection.commit()

    async def _upsert_task(self, execution_id: str, task: TaskExecution) -> None:
        await self._connection.execute(
            """
            INSERT INTO tasks (execution_id, task_key, status, data)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(execution_id, task_key) DO UPDATE SET
                status = excluded.status,
                data = excluded.data
        """,
            (execution_id, task.key, task.status.value, pickle.dumps(task)),
        )

    async def get_execution(self, execution_id: str) -> Execution | None:
        self._check_connected()
        async with self._lock:
            cursor = await self._connection.execute(
                "SELECT data FROM executions WHERE id = ?", (execution_id,)
            )
            row = await cursor.fetchone()
            if row is None:
                return None
            execution = await self._attach_tasks(pickle.loads(row[0]))
        return execution

    async def _attach_tasks(self, execution: Execution) -> Execution:
        cursor = await self._connection.execute(
            "SELECT data FROM tasks WHERE execution_id = ? ORDER BY rowid", (execution.id,)
        )
        for (data,) in await cursor.fetchall():
            task: TaskExecution = pickle.loads(data)
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
        filters = {
            "workflow_id": workflow_id,
            "tenant_id": tenant_id,
            "status": status.value if status else None,
        }
        headers, total = await self._list("executions", "started_at", filters, offset, limit)
        async with self._lock:
            executions = [await self._attach_tasks(e) for e in headers]
        return executions, total

    # ========================================================================
    # Helpers
    # ========================================================================

    async def _get_one(self, query: str, value: str):
        self._check_connected()
        async with self._lock:
            cursor = await self._connection.execute(query, (value,))
            row = await cursor.fetchone()
        return pickle.loads(row[0]) if row else None

    async def _list(self, table: str, order_by: str, filters: dict, offset: int, limit: int):
        """Filtered, newest-first page of a table plus its total count."""
        self._check_connected()
        clauses = [f"{column} = ?" for column, value in filters.items() if value is not None]
        params = [value for value in filters.values() if value is not None]
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        async with self._lock:
            cursor = await self._connection.execute(
                f"SELECT COUNT(*) FROM {table} {where}", params
            )
            (total,) = await cursor.fetchone()
            cursor = await self._connection.execute(
                f"SELECT data FROM {table} {where} ORDER BY {order_by} DESC LIMIT ? OFFSET ?",
                [*params, limit, offset],
            )
            rows = await cursor.fetchall()
        return [pickle.loads(data) for (data,) in rows], total

    # ========================================================================
    # Utility Operations
    # ========================================================================

    async def reset(self) -> None:
        self._check_connected()
        async with self._lock:
            for table in ("tasks", "executions", "templates", "workflows"):
                await self._connection.execute(f"DELETE FROM {table}")
            await self._connection.commit()

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
