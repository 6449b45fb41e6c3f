"""Display mappings for tasks and activity entries, plus live change notifications."""

from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel

from src.models.activity import ActivityStatus
from src.models.task import Task, TaskCategory, TaskPriority, TaskStatus

DEFAULT_COLOR = "bg-gray-100 text-gray-800"


class UrgencyTier(str, Enum):
    """How loudly a task should be presented."""
    CRITICAL = "critical"
    ELEVATED = "elevated"
    NORMAL = "normal"
    LOW = "low"


class NotificationType(str, Enum):
    """Severity of a change notification."""
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"


class TaskNotification(BaseModel):
    """Short message describing a task change."""
    message: str
    type: NotificationType = NotificationType.INFO


PRIORITY_TIERS = {
    TaskPriority.URGENT: UrgencyTier.CRITICAL,
    TaskPriority.HIGH: UrgencyTier.ELEVATED,
    TaskPriority.MEDIUM: UrgencyTier.NORMAL,
    TaskPriority.LOW: UrgencyTier.LOW,
}

PRIORITY_COLORS = {
    TaskPriority.URGENT: "bg-red-100 text-red-800 border-red-200",
    TaskPriority.HIGH: "bg-orange-100 text-orange-800 border-orange-200",
    TaskPriority.MEDIUM: "bg-yellow-100 text-yellow-800 border-yellow-200",
    TaskPriority.LOW: "bg-green-100 text-green-800 border-green-200",
}

STATUS_COLORS = {
    TaskStatus.PENDING: "bg-yellow-100 text-yellow-800",
    TaskStatus.IN_PROGRESS: "bg-blue-100 text-blue-800",
    TaskStatus.COMPLETED: "bg-green-100 text-green-800",
    TaskStatus.CANCELLED: "bg-gray-100 text-gray-800",
    TaskStatus.EMPTY_ROOM: "bg-red-100 text-red-800",
}

CATEGORY_ICONS = {
    TaskCategory.MAINTENANCE: "🔧",
    TaskCategory.HOUSEKEEPING: "🧹",
    TaskCategory.GUEST_SERVICE: "🛎️",
    TaskCategory.DELIVERY: "📦",
    TaskCategory.CHECK_IN: "🔑",
    TaskCategory.CHECK_OUT: "🧳",
    TaskCategory.ROOM_MOVE: "🔀",
}
DEFAULT_ICON = "📋"

ACTIVITY_COLORS = {
    ActivityStatus.ASSIGNED: "bg-purple-100 text-purple-800",
    ActivityStatus.COMPLETED: "bg-emerald-100 text-emerald-800",
    ActivityStatus.CANCELLED: "bg-gray-100 text-gray-800",
    ActivityStatus.EMPTY_ROOM: "bg-red-100 text-red-800",
}


def _coerce(enum_cls, value):
    try:
        return enum_cls(value)
    except ValueError:
        return None


def priority_tier(priority: Union[TaskPriority, str]) -> UrgencyTier:
    return PRIORITY_TIERS.get(_coerce(TaskPriority, priority), UrgencyTier.NORMAL)


def priority_color(priority: Union[TaskPriority, str]) -> str:
    return PRIORITY_COLORS.get(_coerce(TaskPriority, priority), f"{DEFAULT_COLOR} border-gray-200")


def status_color(status: Union[TaskStatus, str]) -> str:
    return STATUS_COLORS.get(_coerce(TaskStatus, status), DEFAULT_COLOR)


def status_label(status: Union[TaskStatus, str]) -> str:
    """Badge text, e.g. "in_progress" -> "IN PROGRESS"."""
    value = status.value if isinstance(status, Enum) else str(status)
    return value.replace("_", " ").upper()


def category_icon(category: Union[TaskCategory, str]) -> str:
    return CATEGORY_ICONS.get(_coerce(TaskCategory, category), DEFAULT_ICON)


def activity_color(status: Union[ActivityStatus, str]) -> str:
    return ACTIVITY_COLORS.get(_coerce(ActivityStatus, status), DEFAULT_COLOR)


def _room(task: Task) -> str:
    return f"(Room {task.room_number or 'N/A'})"


def describe_task_change(task: Task, old: Optional[Task] = None) -> Optional[TaskNotification]:
    """
    Notification for a task change as the dashboard shows it.

    Without an old row the task is new. With one, a notification is produced
    only when the status changed; other edits are silent.
    """
    if old is None:
        return TaskNotification(message=f"New task: {task.title} {_room(task)}")

    if old.status == task.status:
        return None

    if task.status == TaskStatus.COMPLETED:
        return TaskNotification(
            message=f"Task completed: {task.title} {_room(task)}",
            type=NotificationType.SUCCESS,
        )
    if task.status == TaskStatus.CANCELLED:
        return TaskNotification(
            message=f"Task cancelled: {task.title} {_room(task)}",
            type=NotificationType.WARNING,
        )
    if task.status == TaskStatus.EMPTY_ROOM:
        return TaskNotification(message=f"Empty room: {task.title} {_room(task)}")
    if task.status == TaskStatus.IN_PROGRESS:
        return TaskNotification(message=f"Task in progress: {task.title} {_room(task)}")
    return TaskNotification(message=f"Task updated: {task.title}")
