"""
Execution Log Bus: live tail of execution events.

Design: Topic Registry
    One topic per execution id. ``publish`` only visits the subscribers of
    the event's execution, and each subscriber filters by task id and
    minimum level before the event is queued. Topics disappear when their
    last subscriber leaves or when the execution becomes terminal.

There is no replay: a subscriber sees events published after it
subscribed. History lives in the repository.

Every published event is also written to this module's logger, at the
matching ``logging`` level.

Example:
    ```python
    async with bus.subscribe(execution.id, min_level=LogLevel.WARN) as events:
        async for event in events:
            print(event)
    ```
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict

from pytaxis.models import LogEvent, LogLevel

logger = logging.getLogger(__name__)

__all__ = ["ExecutionLogBus", "Subscription"]

_LOGGING_LEVELS = {
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARN: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}

# Queued after the last event of a closed subscription.
_CLOSED = object()


class Subscription:
    """
    One subscriber's filtered view of an execution's events.

    Async iterator (ends when the topic is closed or ``close()`` is called)
    and async context manager (unsubscribes on exit).
    """

    def __init__(
        self,
        bus: ExecutionLogBus,
        execution_id: str,
        task_id: str | None = None,
        min_level: LogLevel = LogLevel.DEBUG,
    ):
        self.execution_id = execution_id
        self.task_id = task_id
        self.min_level = min_level
        self._bus = bus
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    def accepts(self, event: LogEvent) -> bool:
        if self.task_id is not None and event.task_id != self.task_id:
            return False
        return event.level >= self.min_level

    @property
    def closed(self) -> bool:
        return self._closed

    def _deliver(self, event: LogEvent) -> None:
        if not self._closed:
            self._queue.put_nowait(event)

    def _end(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_CLOSED)

    def close(self) -> None:
        """Stop receiving events and leave the topic."""
        self._bus._unsubscribe(self)
        self._end()

    async def get(self, timeout: float | None = None) -> LogEvent | None:
        """Next event, or None once the subscription has ended."""
        item = await asyncio.wait_for(self._queue.get(), timeout)
        if item is _CLOSED:
            # Keep the sentinel for any later get()
            self._queue.put_nowait(_CLOSED)
            return None
        return item

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> LogEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event

    async def __aenter__(self) -> Subscription:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def __repr__(self) -> str:
        return (
            f"Subscription(execution_id={self.execution_id!r}, task_id={self.task_id!r}, "
            f"min_level={self.min_level}, closed={self._closed})"
        )


class ExecutionLogBus:
    """Per-execution topic registry of live log subscriptions."""

    def __init__(self):
        self._topics: dict[str, set[Subscription]] = defaultdict(set)

    def subscribe(
        self,
        execution_id: str,
        task_id: str | None = None,
        min_level: LogLevel = LogLevel.DEBUG,
    ) -> Subscription:
        subscription = Subscription(self, execution_id, task_id, min_level)
        self._topics[execution_id].add(subscription)
        logger.debug(f"Subscribed to execution {execution_id} (task={task_id}, min={min_level})")
        return subscription

    def ended_subscription(
        self,
        execution_id: str,
        task_id: str | None = None,
        min_level: LogLevel = LogLevel.DEBUG,
    ) -> Subscription:
        """An already-ended subscription, for executions that are terminal."""
        subscription = Subscription(self, execution_id, task_id, min_level)
        subscription._end()
        return subscription

    def publish(self, event: LogEvent) -> None:
        """Fan ``event`` out to matching subscribers of its execution."""
        logger.log(_LOGGING_LEVELS[event.level], str(event))
        for subscription in tuple(self._topics.get(event.execution_id, ())):
            if subscription.accepts(event):
                subscription._deliver(event)

    def close_topic(self, execution_id: str) -> None:
        """End every subscription of ``execution_id`` and drop the topic."""
        for subscription in self._topics.pop(execution_id, set()):
            subscription._end()

    def subscriber_count(self, execution_id: str) -> int:
        return len(self._topics.get(execution_id, ()))

    def has_topic(self, execution_id: str) -> bool:
        return execution_id in self._topics

    def _unsubscribe(self, subscription: Subscription) -> None:
        subscribers = self._topics.get(subscription.execution_id)
        if subscribers is None:
            return
        subscribers.discard(subscription)
        if not subscribers:
            del self._topics[subscription.execution_id]

    def __repr__(self) -> str:
        return f"ExecutionLogBus(topics={len(self._topics)})"
