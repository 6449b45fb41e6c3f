"""Activity log model - one entry per task assignment, mutated to its final status."""

from datetime import datetime
from enum import Enum
from typing import NamedTuple, Optional

from pydantic import BaseModel, Field


class ActivityStatus(str, Enum):
    """Status recorded on an activity log entry."""
    ASSIGNED = "assigned"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EMPTY_ROOM = "empty_room"


class ActivityMatchKey(NamedTuple):
    """Fields used to find the entry a terminal event collapses into."""
    bellman_name: str
    task_type: str
    room_number: str
    guest_name: Optional[str]


class ActivityLogEntry(BaseModel):
    """Activity log entry (activity_logs table)."""
    id: Optional[str] = None
    hotel_id: Optional[str] = None
    bellman_name: str = Field(..., description="Actor display name")
    task_type: str = Field(..., description="Task-type label")
    room_number: str = Field(default="N/A")
    status: ActivityStatus = Field(...)
    guest_name: Optional[str] = None
    ticket_number: Optional[str] = None
    task_id: Optional[str] = Field(None, description="Informational; not used for matching")
    timestamp: Optional[datetime] = None

    def match_key(self) -> ActivityMatchKey:
        return ActivityMatchKey(
            bellman_name=self.bellman_name,
            task_type=self.task_type,
            room_number=self.room_number,
            guest_name=self.guest_name or None,
        )
