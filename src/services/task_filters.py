"""
Task filtering, dashboard stats and report aggregates.

All date buckets compare local calendar days in the configured hotel timezone
(BELLDESK_TIMEZONE), falling back to the system local time.
"""

import math
from datetime import date, datetime, time, timedelta, tzinfo
from enum import Enum
from typing import Iterable, Optional

from pydantic import BaseModel, Field

from src.models.activity import ActivityLogEntry
from src.models.task import Task, TaskCategory, TaskPriority, TaskStatus
from src.utils.settings import BellDeskConfig

ALL = "all"

TITLE_CATEGORIES = {
    TaskCategory.CHECK_IN.value: "check in",
    TaskCategory.CHECK_OUT.value: "check out",
    TaskCategory.ROOM_MOVE.value: "room move",
}


class DateBucket(str, Enum):
    """Created-at windows offered by the dashboard."""
    ALL = "all"
    TODAY = "today"
    YESTERDAY = "yesterday"
    WEEK = "week"


class TaskFilter(BaseModel):
    """Dashboard filter; every predicate defaults to "all"."""
    search: str = ""
    status: str = Field(default=ALL, description="TaskStatus value or 'all'")
    priority: str = Field(default=ALL, description="TaskPriority value or 'all'")
    category: str = Field(default=ALL, description="check_in, check_out, room_move, other or 'all'")
    date: DateBucket = DateBucket.ALL
    assignee: str = Field(default=ALL, description="Bellman user ID or 'all'")


class TaskStats(BaseModel):
    total: int = 0
    pending: int = 0
    in_progress: int = 0
    completed: int = 0


class ReportStats(BaseModel):
    """Aggregates for the trailing report window."""
    days: int
    total: int = 0
    completed: int = 0
    pending: int = 0
    in_progress: int = 0
    urgent: int = 0
    overdue: int = 0
    completion_rate: int = 0
    categories: dict[str, int] = Field(default_factory=dict)


def _tz() -> Optional[tzinfo]:
    return BellDeskConfig.timezone()


def _now(now: Optional[datetime]) -> datetime:
    return now if now is not None else datetime.now().astimezone()


def local_day(moment: datetime, tz: Optional[tzinfo] = None) -> date:
    """Calendar day of a timestamp in the hotel timezone."""
    if moment.tzinfo is None:
        return moment.date()
    return moment.astimezone(tz).date()


def in_date_bucket(task: Task, bucket: DateBucket, now: Optional[datetime] = None) -> bool:
    bucket = DateBucket(bucket)
    if bucket == DateBucket.ALL:
        return True
    if task.created_at is None:
        return False

    tz = _tz()
    today = local_day(_now(now), tz)
    task_day = local_day(task.created_at, tz)

    if bucket == DateBucket.TODAY:
        return task_day == today
    if bucket == DateBucket.YESTERDAY:
        return task_day == today - timedelta(days=1)
    return task_day >= today - timedelta(days=7)


def matches_search(task: Task, search: str) -> bool:
    """Case-insensitive match over title, description, room and guest."""
    needle = (search or "").strip().lower()
    if not needle:
        return True
    fields = (task.title, task.description, task.room_number, task.guest_name)
    return any(needle in (value or "").lower() for value in fields)


def task_type_category(task: Task) -> str:
    """Queue category derived from the title; "other" when no known type matches."""
    title = task.title.lower()
    for category, label in TITLE_CATEGORIES.items():
        if label in title:
            return category
    return TaskCategory.OTHER.value


def filter_tasks(tasks: Iterable[Task], task_filter: TaskFilter, now: Optional[datetime] = None) -> list[Task]:
    """Apply every predicate of task_filter; order is preserved."""
    now = _now(now)
    result = []
    for task in tasks:
        if not matches_search(task, task_filter.search):
            continue
        if task_filter.status != ALL and task.status.value != task_filter.status:
            continue
        if task_filter.priority != ALL and task.priority.value != task_filter.priority:
            continue
        if task_filter.category != ALL and task_type_category(task) != task_filter.category:
            continue
        if not in_date_bucket(task, task_filter.date, now):
            continue
        if task_filter.assignee != ALL and task.assigned_to != task_filter.assignee:
            continue
        result.append(task)
    return result


def task_stats(
    tasks: Iterable[Task],
    bucket: DateBucket = DateBucket.ALL,
    now: Optional[datetime] = None,
) -> TaskStats:
    """Header counters for the tasks created in a date bucket."""
    now = _now(now)
    scoped = [t for t in tasks if in_date_bucket(t, bucket, now)]
    return TaskStats(
        total=len(scoped),
        pending=sum(1 for t in scoped if t.status == TaskStatus.PENDING),
        in_progress=sum(1 for t in scoped if t.status == TaskStatus.IN_PROGRESS),
        completed=sum(1 for t in scoped if t.status == TaskStatus.COMPLETED),
    )


def report_window(days: int, now: Optional[datetime] = None) -> tuple[datetime, datetime]:
    """Start of the day `days` ago through the end of today, in hotel time."""
    tz = _tz()
    current = _now(now).astimezone(tz)
    today = current.date()
    start = datetime.combine(today - timedelta(days=days), time.min, tzinfo=current.tzinfo)
    end = datetime.combine(today, time.max, tzinfo=current.tzinfo)
    return start, end


def report_stats(tasks: Iterable[Task], days: int = 7, now: Optional[datetime] = None) -> ReportStats:
    """Totals, overdue count, completion rate and per-category counts for the trailing window."""
    if days < 0:
        raise ValueError("days must be non-negative")

    now = _now(now)
    start, end = report_window(days, now)
    today = local_day(now, _tz())
    scoped = [t for t in tasks if t.created_at is not None and start <= t.created_at.astimezone(start.tzinfo) <= end]

    total = len(scoped)
    completed = sum(1 for t in scoped if t.status == TaskStatus.COMPLETED)
    return ReportStats(
        days=days,
        total=total,
        completed=completed,
        pending=sum(1 for t in scoped if t.status == TaskStatus.PENDING),
        in_progress=sum(1 for t in scoped if t.status == TaskStatus.IN_PROGRESS),
        urgent=sum(1 for t in scoped if t.priority == TaskPriority.URGENT),
        overdue=sum(
            1 for t in scoped
            if t.due_date is not None and t.due_date < today and t.status != TaskStatus.COMPLETED
        ),
        # Half-up, as shown on the reports page
        completion_rate=math.floor(completed * 100 / total + 0.5) if total else 0,
        categories={c.value: sum(1 for t in scoped if t.category == c) for c in TaskCategory},
    )


def filter_activity_logs(
    entries: Iterable[ActivityLogEntry],
    search: str = "",
    status: str = ALL,
    bellman: str = ALL,
) -> list[ActivityLogEntry]:
    """Search over bellman, task type, room, guest and ticket, plus status and bellman filters."""
    needle = (search or "").strip().lower()
    result = []
    for entry in entries:
        if needle:
            fields = (entry.bellman_name, entry.task_type, entry.room_number, entry.guest_name, entry.ticket_number)
            if not any(needle in (value or "").lower() for value in fields):
                continue
        if status != ALL and entry.status.value != status:
            continue
        if bellman != ALL and entry.bellman_name != bellman:
            continue
        result.append(entry)
    return result
