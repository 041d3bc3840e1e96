"""
Pytest configuration and fixtures for pytaxis tests.

Provides repositories, a scheduler wired to recording invokers, and a
helper that runs a definition end to end.
"""

import os
import shutil
import tempfile
from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
from helpers import RecordingCompensator, RecordingInvoker

from pytaxis import (
    InMemoryRepository,
    Scheduler,
    SqliteRepository,
    StepKind,
    WorkflowDefinition,
    WorkflowService,
    WorkflowStatus,
)


@pytest.fixture
async def repository() -> AsyncGenerator[InMemoryRepository, None]:
    """In-memory repository with automatic cleanup."""
    repo = InMemoryRepository()
    yield repo
    await repo.reset()


@pytest.fixture
async def sqlite_repository() -> AsyncGenerator[SqliteRepository, None]:
    """SQLite in-memory repository with automatic cleanup."""
    repo = await SqliteRepository.in_memory()
    yield repo
    await repo.close()


@pytest.fixture
async def redis_repository():
    """Redis repository on a scratch database; skipped without a server."""
    redis = pytest.importorskip("redis")
    from pytaxis.storage.redis import RedisRepository

    repo = RedisRepository(os.environ.get("PYTAXIS_REDIS_URL", "redis://localhost:6379/15"))
    await repo.connect()
    try:
        await repo._redis.ping()
    except (redis.exceptions.ConnectionError, OSError):
        await repo.close()
        pytest.skip("Redis server not available")
    await repo.reset()
    yield repo
    await repo.reset()
    await repo.close()


@pytest.fixture
def temp_db_path():
    """Temporary database file path with automatic cleanup."""
    tmpdir = Path(tempfile.mkdtemp())
    yield tmpdir / "test.db"
    shutil.rmtree(tmpdir, ignore_errors=True)


@pytest.fixture
def invoker() -> RecordingInvoker:
    return RecordingInvoker()


@pytest.fixture
def compensator() -> RecordingCompensator:
    return RecordingCompensator()


@pytest.fixture
async def scheduler(repository, invoker, compensator) -> AsyncGenerator[Scheduler, None]:
    """Scheduler with the recording invoker for SERVICE steps."""
    sched = (
        Scheduler(repository)
        .with_invoker(StepKind.SERVICE, invoker)
        .with_compensation_invoker(compensator)
    )
    yield sched
    await sched.shutdown()


@pytest.fixture
def workflows(repository) -> WorkflowService:
    return WorkflowService(repository)


@pytest.fixture
def activate(workflows):
    """Store a definition as an ACTIVE workflow and return it."""

    async def _activate(definition: WorkflowDefinition, name: str = "test-flow"):
        return await workflows.create_workflow(
            name, "tenant-1", definition, status=WorkflowStatus.ACTIVE
        )

    return _activate


@pytest.fixture
def execute(scheduler, activate):
    """Run a definition to completion and return the final execution."""

    async def _execute(definition: WorkflowDefinition, input_parameters=None, timeout=5.0):
        workflow = await activate(definition)
        execution = await scheduler.start_execution(workflow.id, input_parameters)
        return await scheduler.wait_for_execution(execution.id, timeout=timeout)

    return _execute
