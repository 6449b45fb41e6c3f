"""Session-local roster of temporary bellmen, persisted to a JSON file."""

import json
from pathlib import Path
from typing import Optional, Union

from pydantic import ValidationError
from ulid import ULID

from src.models.bellman import BellmanStatus, LocalBellman, QueuePosition
from src.models.task import Task
from src.utils.errors import QueueValidationError
from src.utils.logging import get_structured_logger

logger = get_structured_logger(__name__)


class LocalRoster:
    """
    Ordered list of temporary bellmen owned by one session.

    The list order is the line order among temporary bellmen. Every mutation
    is written through to the JSON file so the roster survives restarts of
    the same session; it is never shared with other sessions.
    """

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self.path = Path(path) if path else None
        self._members: list[LocalBellman] = []
        if self.path is not None:
            self.load()

    @property
    def members(self) -> list[LocalBellman]:
        return list(self._members)

    def load(self) -> None:
        if self.path is None or not self.path.exists():
            self._members = []
            return
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            self._members = [LocalBellman.model_validate(item) for item in raw]
        except (OSError, ValueError, TypeError, ValidationError) as e:
            logger.warning(
                "Discarding unreadable local roster",
                path=str(self.path),
                error=str(e)
            )
            self._members = []

    def save(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = [m.model_dump(mode="json") for m in self._members]
        self.path.write_text(json.dumps(data, indent=2), encoding="utf-8")

    def get(self, bellman_id: str) -> Optional[LocalBellman]:
        for member in self._members:
            if member.id == bellman_id:
                return member
        return None

    def add(self, name: str) -> LocalBellman:
        """Append a new in-line temporary bellman; blank names are rejected."""
        cleaned = (name or "").strip()
        if not cleaned:
            raise QueueValidationError(
                "Temporary bellman name is empty",
                user_message="Please enter a bellman name",
            )
        member = LocalBellman(id=str(ULID()), name=cleaned)
        self._members.append(member)
        self.save()
        return member

    def remove(self, bellman_id: str) -> Optional[LocalBellman]:
        member = self.get(bellman_id)
        self._members = [m for m in self._members if m.id != bellman_id]
        self.save()
        return member

    def in_line(self) -> list[LocalBellman]:
        return [m for m in self._members if m.status == BellmanStatus.IN_LINE]

    def in_process(self) -> list[LocalBellman]:
        return [m for m in self._members if m.status == BellmanStatus.IN_PROCESS]

    def mark_in_process(self, bellman_id: str, task: Task) -> LocalBellman:
        """Record the task a temporary bellman is now working."""
        updated = None
        for idx, member in enumerate(self._members):
            if member.id == bellman_id:
                updated = member.model_copy(update={
                    "status": BellmanStatus.IN_PROCESS,
                    "task_id": task.id,
                    "task_type": task.title,
                    "room_number": task.room_number or "N/A",
                    "guest_name": task.guest_name,
                    "ticket_number": task.ticket_number,
                })
                self._members[idx] = updated
                break
        if updated is None:
            raise KeyError(bellman_id)
        self.save()
        return updated

    def return_to_line(self, bellman_id: str, position: QueuePosition) -> LocalBellman:
        """Clear the assignment and place the bellman at the top or bottom of the line."""
        member = self.get(bellman_id)
        if member is None:
            raise KeyError(bellman_id)
        returned = member.clear_assignment()
        others_in_line = [m for m in self._members if m.id != bellman_id and m.status == BellmanStatus.IN_LINE]
        others = [m for m in self._members if m.id != bellman_id and m.status != BellmanStatus.IN_LINE]
        if QueuePosition(position) == QueuePosition.TOP:
            self._members = [returned, *others_in_line, *others]
        else:
            self._members = [*others_in_line, returned, *others]
        self.save()
        return returned

    def set_status(self, bellman_id: str, status: BellmanStatus) -> LocalBellman:
        """Manual toggle between in_line and off_duty."""
        for idx, member in enumerate(self._members):
            if member.id == bellman_id:
                updated = member.model_copy(update={"status": BellmanStatus(status)})
                self._members[idx] = updated
                self.save()
                return updated
        raise KeyError(bellman_id)
