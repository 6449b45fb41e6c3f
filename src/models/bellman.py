"""Bellman models - persisted staff and session-local temporary staff."""

from datetime import datetime
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field


class BellmanStatus(str, Enum):
    """Queue status of a bellman."""
    IN_LINE = "in_line"
    IN_PROCESS = "in_process"
    OFF_DUTY = "off_duty"


class QueuePosition(str, Enum):
    """Where a bellman re-enters the line after resolving a task."""
    TOP = "top"
    BOTTOM = "bottom"


class Bellman(BaseModel):
    """Bellman backed by a users row with role = bellman."""
    kind: Literal["persisted"] = "persisted"
    id: str = Field(..., description="User ID")
    hotel_id: Optional[str] = None
    full_name: str = Field(..., description="Display name")
    bellman_status: BellmanStatus = Field(default=BellmanStatus.OFF_DUTY)
    is_active: bool = True
    updated_at: Optional[datetime] = None

    @property
    def display_name(self) -> str:
        return self.full_name

    @property
    def status(self) -> BellmanStatus:
        return self.bellman_status


class LocalBellman(BaseModel):
    """Walk-up bellman without an account, owned by one session."""
    kind: Literal["local"] = "local"
    id: str = Field(..., description="Session-local ID (ULID)")
    name: str = Field(..., min_length=1)
    status: BellmanStatus = Field(default=BellmanStatus.IN_LINE)
    task_id: Optional[str] = Field(None, description="Task currently held")
    task_type: Optional[str] = None
    room_number: Optional[str] = None
    guest_name: Optional[str] = None
    ticket_number: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.name

    def clear_assignment(self) -> "LocalBellman":
        return self.model_copy(update={
            "status": BellmanStatus.IN_LINE,
            "task_id": None,
            "task_type": None,
            "room_number": None,
            "guest_name": None,
            "ticket_number": None,
        })


QueueMember = Annotated[Union[Bellman, LocalBellman], Field(discriminator="kind")]


def bellman_from_row(row: dict) -> Bellman:
    """Build a Bellman from a users row, tolerating a null status or name."""
    data = dict(row)
    data["bellman_status"] = data.get("bellman_status") or BellmanStatus.OFF_DUTY
    data["full_name"] = data.get("full_name") or "Unknown"
    if data.get("is_active") is None:
        data["is_active"] = True
    data.pop("kind", None)
    return Bellman.model_validate(data)
