"""
Ports (interfaces) used by the queue engine and synchronizer.

The core depends on Protocols instead of concrete implementations, so the
Supabase adapters can be swapped for in-memory fakes in tests.
"""

from typing import Any, Awaitable, Callable, Iterable, Optional, Protocol

from src.models.activity import ActivityLogEntry, ActivityMatchKey
from src.models.bellman import Bellman, BellmanStatus
from src.models.change_event import ChangeEvent
from src.models.task import Task, TaskStatus

ChangeHandler = Callable[[ChangeEvent], None]
StatusHandler = Callable[[bool], None]


class TaskStore(Protocol):
    """Tenant-scoped task persistence."""

    def list_tasks(
        self,
        hotel_id: str,
        statuses: Optional[Iterable[TaskStatus]] = None,
        assigned_to: Optional[str] = None,
    ) -> Awaitable[list[Task]]: ...

    def create_task(self, hotel_id: str, fields: dict[str, Any]) -> Awaitable[Task]: ...

    def update_task_conditional(
        self,
        task_id: str,
        expected_status: TaskStatus,
        fields: dict[str, Any],
    ) -> Awaitable[Optional[Task]]:
        """Update only if the row still has expected_status; None when zero rows matched."""
        ...

    def update_tasks_by_assignee(
        self,
        hotel_id: str,
        assigned_to: str,
        expected_status: TaskStatus,
        fields: dict[str, Any],
    ) -> Awaitable[list[Task]]: ...


class BellmanRegistry(Protocol):
    """Persisted bellman status."""

    def list_bellmen(self, hotel_id: str) -> Awaitable[list[Bellman]]: ...

    def update_bellman_status(self, bellman_id: str, status: BellmanStatus) -> Awaitable[Optional[Bellman]]:
        """Returns the confirmed row, or None when the bellman no longer exists."""
        ...


class ActivityLogSink(Protocol):
    """Audit trail of assignments and their outcomes."""

    def find_latest_activity_log(
        self, hotel_id: str, key: ActivityMatchKey
    ) -> Awaitable[Optional[ActivityLogEntry]]: ...

    def insert_activity_log(self, hotel_id: str, entry: ActivityLogEntry) -> Awaitable[ActivityLogEntry]: ...

    def update_activity_log(self, log_id: str, fields: dict[str, Any]) -> Awaitable[None]: ...


class BellDeskStore(TaskStore, BellmanRegistry, ActivityLogSink, Protocol):
    """All data-layer operations the engine needs."""


class ChangeFeed(Protocol):
    """Live insert/update/delete notifications, at-least-once with possible gaps."""

    def subscribe(
        self,
        hotel_id: str,
        table: str,
        on_event: ChangeHandler,
        on_status: Optional[StatusHandler] = None,
    ) -> Awaitable[Any]: ...

    def unsubscribe(self, subscription: Any) -> Awaitable[None]: ...
