"""Storage backends for workflows, templates and execution history.

Provides multiple repository implementations behind a common interface:
    - WorkflowRepository: Abstract interface
    - InMemoryRepository: In-memory storage for tests
    - SqliteRepository: SQLite-backed storage
    - RedisRepository: Redis-backed shared storage

Design: Adapter Pattern + Dependency Inversion (SOLID)
    Clients depend on WorkflowRepository, never on a concrete backend.
"""

from pytaxis.storage.base import StorageError, WorkflowRepository

# Lazy imports: backends pull in optional drivers (redis) that
# should only be required when the backend is actually used.


def __getattr__(name: str):
    """Lazy import repository implementations."""
    if name == "InMemoryRepository":
        from pytaxis.storage.memory import InMemoryRepository

        return InMemoryRepository
    elif name == "RedisRepository":
        from pytaxis.storage.redis import RedisRepository

        return RedisRepository
    elif name == "SqliteRepository":
        from pytaxis.storage.sqlite import SqliteRepository

        return SqliteRepository
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "WorkflowRepository",
    "StorageError",
    "InMemoryRepository",
    "SqliteRepository",
    "RedisRepository",
]
