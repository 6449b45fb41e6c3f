"""Task models."""

from datetime import date, datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, ValidationInfo, field_validator


class TaskStatus(str, Enum):
    """Task lifecycle status."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EMPTY_ROOM = "empty_room"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.CANCELLED, TaskStatus.EMPTY_ROOM})
ACTIVE_STATUSES = frozenset({TaskStatus.PENDING, TaskStatus.IN_PROGRESS})


class TaskPriority(str, Enum):
    """Task priority."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class TaskCategory(str, Enum):
    """Task category."""
    MAINTENANCE = "maintenance"
    HOUSEKEEPING = "housekeeping"
    GUEST_SERVICE = "guest_service"
    DELIVERY = "delivery"
    OTHER = "other"
    CHECK_IN = "check_in"
    CHECK_OUT = "check_out"
    ROOM_MOVE = "room_move"


class TaskType(str, Enum):
    """Task-type labels offered at the bell stand, stored as the task title."""
    CHECK_IN = "Check In"
    CHECK_OUT = "Check Out"
    ROOM_MOVE = "Room Move"
    OTHER = "Other"

    @property
    def category(self) -> TaskCategory:
        return {
            TaskType.CHECK_IN: TaskCategory.CHECK_IN,
            TaskType.CHECK_OUT: TaskCategory.CHECK_OUT,
            TaskType.ROOM_MOVE: TaskCategory.ROOM_MOVE,
            TaskType.OTHER: TaskCategory.OTHER,
        }[self]


class Task(BaseModel):
    """Guest-service task, one row of the tasks table."""
    id: str = Field(..., description="Task ID")
    hotel_id: Optional[str] = Field(None, description="Owning hotel (tenant)")
    title: str = Field(..., description="Task-type label, e.g. Check In")
    description: Optional[str] = Field(None, description="Free-text description")
    room_number: Optional[str] = Field(None, description="Room number, or 'from → to' for room moves")
    guest_name: Optional[str] = None
    ticket_number: Optional[str] = None
    priority: TaskPriority = Field(default=TaskPriority.MEDIUM)
    category: TaskCategory = Field(default=TaskCategory.OTHER)
    status: TaskStatus = Field(default=TaskStatus.PENDING)
    created_by: Optional[str] = Field(None, description="Creator user ID")
    assigned_to: Optional[str] = Field(None, description="Assigned bellman user ID")
    assignee_name: Optional[str] = Field(None, description="Display name of the assignee")
    due_date: Optional[date] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @field_validator("priority", "category", "status", mode="before")
    @classmethod
    def _default_when_null(cls, value, info: ValidationInfo):
        # Older rows may carry nulls in enum columns
        if value is None:
            return cls.model_fields[info.field_name].default
        return value

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def has_assignee(self) -> bool:
        """True when held by a persisted user or a temporary bellman."""
        return bool(self.assigned_to or self.assignee_name)

    def sync_key(self) -> tuple:
        """Tuple compared by the reconciliation poll."""
        return (self.id, self.status, self.updated_at)
