"""
Bellman queue engine - the only component that moves tasks and bellmen
between the pending, in-line and in-process queues.

Each mutation writes to the store first and then merges the confirmed row
into the synchronizer, so the later feed echo of that row is a no-op. Persisted and
temporary bellmen are handled by dispatching on the member type.
"""

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Union

from src.models.activity import ActivityLogEntry, ActivityStatus
from src.models.bellman import Bellman, BellmanStatus, LocalBellman, QueuePosition
from src.models.task import Task, TaskPriority, TaskStatus, TaskType
from src.models.user_context import UserContext
from src.services.activity_log import append_or_update_activity_log
from src.services.local_roster import LocalRoster
from src.services.permissions import can_change_bellman_status
from src.services.ports import BellDeskStore
from src.services.task_sync import SyncEvent, TaskSynchronizer
from src.utils.errors import (
    AssignmentNotFoundError,
    InvalidTransitionError,
    OperationInProgressError,
    PermissionDeniedError,
    QueueValidationError,
    SupabaseError,
    TaskConflictError,
)
from src.utils.logging import get_structured_logger, mask_guest_name, mask_user_id, timed
from src.utils.settings import BellDeskConfig

logger = get_structured_logger(__name__)

Member = Union[Bellman, LocalBellman]

RESOLUTION_OUTCOMES = frozenset({TaskStatus.COMPLETED, TaskStatus.CANCELLED, TaskStatus.EMPTY_ROOM})


@dataclass(frozen=True)
class ResolutionResult:
    """Outcome of resolve_task, including whether recovery was needed."""

    bellman: Member
    outcome: TaskStatus
    position: QueuePosition
    task: Optional[Task] = None
    recovered: bool = False
    message: str = ""


def _now() -> datetime:
    return datetime.now().astimezone()


def _clean(value: Optional[str]) -> Optional[str]:
    value = (value or "").strip()
    return value or None


def build_task_fields(
    task_type: Union[TaskType, str],
    room_number: Optional[str] = None,
    from_room: Optional[str] = None,
    to_room: Optional[str] = None,
    guest_name: Optional[str] = None,
    ticket_number: Optional[str] = None,
    description: Optional[str] = None,
    priority: Union[TaskPriority, str] = TaskPriority.MEDIUM,
) -> dict[str, Any]:
    """
    Validate bell-stand task input and build the task columns.

    Room Move needs both rooms and becomes "from → to"; Check In and Check Out
    need a room number; Other accepts none.
    """
    try:
        task_type = TaskType(task_type)
    except ValueError:
        raise QueueValidationError(
            f"Unknown task type: {task_type!r}",
            user_message="Please select a task type",
        )
    try:
        priority = TaskPriority(priority)
    except ValueError:
        raise QueueValidationError(f"Unknown priority: {priority!r}", user_message="Please select a priority")

    description = _clean(description)

    if task_type == TaskType.ROOM_MOVE:
        from_room, to_room = _clean(from_room), _clean(to_room)
        if not from_room or not to_room:
            raise QueueValidationError(
                "Room Move requires both from-room and to-room",
                user_message="Please enter both the from room and the to room",
            )
        room = f"{from_room} → {to_room}"
        text = f"Move from room {from_room} to room {to_room}"
        if description:
            text = f"{text}. {description}"
        description = text
    else:
        room = _clean(room_number)
        if room is None and task_type in (TaskType.CHECK_IN, TaskType.CHECK_OUT):
            raise QueueValidationError(
                f"{task_type.value} requires a room number",
                user_message="Please enter a room number",
            )

    return {
        "title": task_type.value,
        "category": task_type.category,
        "description": description or "",
        "room_number": room,
        "guest_name": _clean(guest_name),
        "ticket_number": _clean(ticket_number),
        "priority": priority,
    }


class BellmanQueueEngine:
    """Pending tasks, the in-line roster and in-process bellmen for one session."""

    def __init__(
        self,
        user: UserContext,
        store: BellDeskStore,
        sync: TaskSynchronizer,
        roster: LocalRoster,
        activity_log_enabled: Optional[bool] = None,
    ):
        self.user = user
        self.hotel_id = user.require_hotel()
        self.store = store
        self.sync = sync
        self.roster = roster
        self.activity_log_enabled = (
            activity_log_enabled if activity_log_enabled is not None else BellDeskConfig.ACTIVITY_LOG_ENABLED
        )
        self._line: list[str] = []
        self._in_flight: set[str] = set()
        sync.add_listener(SyncEvent.BELLMEN_CHANGED, self._on_bellmen_changed)
        self.reconcile_line()

    # Views

    def find_member(self, bellman_id: str) -> Optional[Member]:
        return self.roster.get(bellman_id) or self.sync.get_bellman(bellman_id)

    def pending_tasks(self) -> list[Task]:
        """Unassigned pending tasks, oldest first."""
        pending = [t for t in self.sync.tasks if t.status == TaskStatus.PENDING and not t.has_assignee]
        return sorted(pending, key=lambda t: t.created_at.timestamp() if t.created_at else 0.0)

    def in_progress_tasks(self) -> list[Task]:
        return [t for t in self.sync.tasks if t.status == TaskStatus.IN_PROGRESS]

    def in_line(self) -> list[Member]:
        members = [self.find_member(member_id) for member_id in self._line]
        return [m for m in members if m is not None]

    def in_process(self) -> list[Member]:
        persisted = [b for b in self.sync.bellmen if b.bellman_status == BellmanStatus.IN_PROCESS]
        return [*self.roster.in_process(), *persisted]

    def current_task_for(self, member: Member) -> Optional[Task]:
        """The in-progress task a bellman holds, if the local view knows it."""
        if isinstance(member, LocalBellman):
            if not member.task_id:
                return None
            task = self.sync.get_task(member.task_id)
            if task is None:
                # Not merged yet: rebuild from the roster's tracked reference
                return Task(
                    id=member.task_id,
                    hotel_id=self.hotel_id,
                    title=member.task_type or "Unknown",
                    room_number=member.room_number,
                    guest_name=member.guest_name,
                    ticket_number=member.ticket_number,
                    status=TaskStatus.IN_PROGRESS,
                    assignee_name=member.name,
                )
            return task if task.status == TaskStatus.IN_PROGRESS else None

        held = [t for t in self.in_progress_tasks() if t.assigned_to == member.id]
        if not held:
            return None
        return max(held, key=lambda t: t.updated_at.timestamp() if t.updated_at else 0.0)

    # Line order

    def _on_bellmen_changed(self, _bellmen: list[Bellman]) -> None:
        self.reconcile_line()

    def reconcile_line(self) -> None:
        """
        Merge persisted in-line bellmen into the line order.

        Current positions are kept, newcomers are appended (temporary bellmen
        in roster order, then persisted bellmen by when they joined), and
        anyone no longer in line is dropped.
        """
        local_in_line = [m.id for m in self.roster.in_line()]
        persisted_in_line = sorted(
            (b for b in self.sync.bellmen if b.bellman_status == BellmanStatus.IN_LINE and b.is_active),
            key=lambda b: (b.updated_at.timestamp() if b.updated_at else 0.0, b.full_name.lower()),
        )
        eligible = set(local_in_line) | {b.id for b in persisted_in_line}

        line = [member_id for member_id in self._line if member_id in eligible]
        seen = set(line)
        for member_id in [*local_in_line, *(b.id for b in persisted_in_line)]:
            if member_id not in seen:
                line.append(member_id)
                seen.add(member_id)
        self._line = line

    def _place_in_line(self, member_id: str, position: QueuePosition) -> None:
        self._line = [m for m in self._line if m != member_id]
        if QueuePosition(position) == QueuePosition.TOP:
            self._line.insert(0, member_id)
        else:
            self._line.append(member_id)

    def _drop_from_line(self, member_id: str) -> None:
        self._line = [m for m in self._line if m != member_id]

    # Guards

    @contextmanager
    def _guard(self, *keys: str):
        """Reject a second submission while the first round trip is in flight."""
        busy = [key for key in keys if key in self._in_flight]
        if busy:
            raise OperationInProgressError(f"Operation already in flight for {', '.join(busy)}")
        self._in_flight.update(keys)
        try:
            yield
        finally:
            self._in_flight.difference_update(keys)

    def _require_member(self, bellman_id: str) -> Member:
        member = self.find_member(bellman_id)
        if member is None:
            raise QueueValidationError(f"Unknown bellman {bellman_id}", user_message="Bellman not found")
        return member

    def _require_in_line(self, bellman_id: str) -> Member:
        member = self._require_member(bellman_id)
        if member.status != BellmanStatus.IN_LINE:
            raise InvalidTransitionError(
                f"Bellman {bellman_id} is {member.status.value}, not in_line",
                user_message=f"{member.display_name} is not in line",
            )
        return member

    # Temporary roster

    def add_temporary_bellman(self, name: str) -> LocalBellman:
        member = self.roster.add(name)
        self._place_in_line(member.id, QueuePosition.BOTTOM)
        logger.info("Temporary bellman added to line", bellman_id=member.id, line_length=len(self._line))
        return member

    def remove_temporary_bellman(self, bellman_id: str) -> Optional[LocalBellman]:
        member = self.roster.remove(bellman_id)
        self._drop_from_line(bellman_id)
        if member is not None:
            logger.info(
                "Temporary bellman removed",
                bellman_id=bellman_id,
                bellman_status=member.status.value
            )
        return member

    # Assignment

    @timed("queue.assign_existing_task", logger=logger)
    async def assign_existing_task(self, task_id: str, bellman_id: str) -> Task:
        """Hand a pending task to an in-line bellman; raises TaskConflictError if someone got there first."""
        with self._guard(f"task:{task_id}", f"bellman:{bellman_id}"):
            member = self._require_in_line(bellman_id)

            known = self.sync.get_task(task_id)
            if known is not None and (known.status != TaskStatus.PENDING or known.has_assignee):
                raise TaskConflictError(task_id)

            updated = await self.store.update_task_conditional(
                task_id,
                TaskStatus.PENDING,
                self._assignment_fields(member),
            )
            if updated is None:
                logger.warning(
                    "Task assignment conflict",
                    task_id=task_id,
                    bellman_id=mask_user_id(bellman_id)
                )
                await self._resync()
                raise TaskConflictError(task_id)

            self.sync.merge_task(updated)
            await self._mark_in_process(member, updated)
            await self._record_activity(member, updated, ActivityStatus.ASSIGNED)

        logger.info(
            "Task assigned",
            task_id=updated.id,
            task_type=updated.title,
            room_number=updated.room_number,
            bellman_id=mask_user_id(bellman_id),
            temporary=isinstance(member, LocalBellman)
        )
        return updated

    @timed("queue.create_and_assign_task", logger=logger)
    async def create_and_assign_task(
        self,
        bellman_id: str,
        task_type: Union[TaskType, str],
        room_number: Optional[str] = None,
        from_room: Optional[str] = None,
        to_room: Optional[str] = None,
        guest_name: Optional[str] = None,
        ticket_number: Optional[str] = None,
        description: Optional[str] = None,
        priority: Union[TaskPriority, str] = TaskPriority.MEDIUM,
    ) -> Task:
        """Create a task directly in progress for an in-line bellman."""
        fields = build_task_fields(
            task_type,
            room_number=room_number,
            from_room=from_room,
            to_room=to_room,
            guest_name=guest_name,
            ticket_number=ticket_number,
            description=description,
            priority=priority,
        )

        with self._guard(f"bellman:{bellman_id}"):
            member = self._require_in_line(bellman_id)
            now = _now()
            fields.update(self._assignment_fields(member, now))
            fields.update({"created_by": self.user.user_id, "created_at": now})

            task = await self.store.create_task(self.hotel_id, fields)
            self.sync.merge_task(task)
            await self._mark_in_process(member, task)
            await self._record_activity(member, task, ActivityStatus.ASSIGNED)

        logger.info(
            "Task created and assigned",
            task_id=task.id,
            task_type=task.title,
            room_number=task.room_number,
            guest=mask_guest_name(task.guest_name),
            bellman_id=mask_user_id(bellman_id)
        )
        return task

    def _assignment_fields(self, member: Member, now: Optional[datetime] = None) -> dict[str, Any]:
        fields = {
            "status": TaskStatus.IN_PROGRESS,
            "assigned_to": member.id if isinstance(member, Bellman) else None,
            "updated_at": now or _now(),
        }
        if isinstance(member, LocalBellman):
            # Temporary bellmen have no users row; the name is the only assignee marker
            fields["assignee_name"] = member.display_name
        return fields

    async def _mark_in_process(self, member: Member, task: Task) -> None:
        if isinstance(member, LocalBellman):
            self.roster.mark_in_process(member.id, task)
        else:
            try:
                await self._write_bellman_status(member, BellmanStatus.IN_PROCESS)
            except SupabaseError:
                await self._undo_assignment(member, task)
                raise
        self._drop_from_line(member.id)

    async def _undo_assignment(self, member: Bellman, task: Task) -> None:
        """Put a task back to pending after the bellman's status write failed."""
        try:
            reverted = await self.store.update_task_conditional(task.id, TaskStatus.IN_PROGRESS, {
                "status": TaskStatus.PENDING,
                "assigned_to": None,
                "updated_at": _now(),
            })
        except SupabaseError as e:
            reverted = None
            logger.warning("Reverting assignment failed", task_id=task.id, error=str(e))

        if reverted is not None:
            self.sync.merge_task(reverted)
            logger.warning(
                "Assignment reverted after bellman status write failed",
                task_id=task.id,
                bellman_id=mask_user_id(member.id)
            )
            return

        # The task stays assigned, so track the bellman as working it until resolve_task runs
        self.sync.merge_bellman(member.model_copy(update={
            "bellman_status": BellmanStatus.IN_PROCESS,
            "updated_at": _now(),
        }))
        self._drop_from_line(member.id)
        logger.error(
            "Task left assigned without a confirmed bellman status",
            task_id=task.id,
            bellman_id=mask_user_id(member.id)
        )

    # Resolution

    @timed("queue.resolve_task", logger=logger)
    async def resolve_task(
        self,
        bellman_id: str,
        outcome: Union[TaskStatus, str],
        position: Union[QueuePosition, str] = QueuePosition.BOTTOM,
    ) -> ResolutionResult:
        """
        Close the bellman's current task and put them back in line.

        Completed always returns the bellman to the bottom of the line;
        cancelled and empty_room honor the requested position. When the task
        cannot be found or was already changed elsewhere, a best-effort write
        matched by assignee is attempted and the bellman is returned to line
        regardless.
        """
        try:
            outcome = TaskStatus(outcome)
        except ValueError:
            outcome = None
        if outcome not in RESOLUTION_OUTCOMES:
            raise QueueValidationError(
                f"Invalid resolution outcome: {outcome}",
                user_message="Choose completed, cancelled or empty room",
            )
        position = QueuePosition.BOTTOM if outcome == TaskStatus.COMPLETED else QueuePosition(position)

        with self._guard(f"bellman:{bellman_id}"):
            member = self._require_member(bellman_id)
            if member.status != BellmanStatus.IN_PROCESS:
                raise InvalidTransitionError(
                    f"Bellman {bellman_id} is {member.status.value}, not in_process",
                    user_message=f"{member.display_name} is not working a task",
                )

            current = self.current_task_for(member)
            now = _now()
            fields = {"status": outcome, "completed_at": now, "updated_at": now}

            resolved, recovered = await self._close_task(member, current, fields)
            returned, unconfirmed = await self._return_to_line(member, position)
            recovered = recovered or unconfirmed

            log_source = resolved or current
            if log_source is not None:
                await self._record_activity(member, log_source, ActivityStatus(outcome.value))

        message = f"Task {outcome.value.replace('_', ' ')}"
        if recovered:
            message = f"{returned.display_name} is back in line; the change could not be fully confirmed"
            logger.warning(
                "Resolved bellman with unconfirmed writes",
                bellman_id=mask_user_id(bellman_id),
                outcome=outcome.value,
                task_id=current.id if current else None
            )
        else:
            logger.info(
                "Task resolved",
                task_id=resolved.id,
                outcome=outcome.value,
                position=position.value,
                bellman_id=mask_user_id(bellman_id)
            )

        return ResolutionResult(
            bellman=returned,
            outcome=outcome,
            position=position,
            task=resolved,
            recovered=recovered,
            message=message,
        )

    async def _close_task(
        self,
        member: Member,
        current: Optional[Task],
        fields: dict[str, Any],
    ) -> tuple[Optional[Task], bool]:
        """Move the task to its terminal status; returns (task, recovered)."""
        try:
            if current is None:
                raise AssignmentNotFoundError(f"No in-progress task for bellman {member.id}")
            resolved = await self.store.update_task_conditional(current.id, TaskStatus.IN_PROGRESS, fields)
            if resolved is None:
                raise AssignmentNotFoundError(f"Task {current.id} is no longer in progress")
        except AssignmentNotFoundError as e:
            logger.warning("Assignment lookup failed, falling back", bellman_id=mask_user_id(member.id), error=str(e))
            resolved = await self._fallback_close(member, fields)
            await self._resync()
            return resolved, True
        except SupabaseError as e:
            logger.warning("Task update failed during resolution", bellman_id=mask_user_id(member.id), error=str(e))
            return None, True

        self.sync.merge_task(resolved)
        return resolved, False

    async def _fallback_close(self, member: Member, fields: dict[str, Any]) -> Optional[Task]:
        """Best-effort write matched by assignee rather than by task id."""
        if isinstance(member, LocalBellman):
            # Temporary bellmen have no user id to match on
            return None
        try:
            closed = await self.store.update_tasks_by_assignee(
                self.hotel_id, member.id, TaskStatus.IN_PROGRESS, fields
            )
        except SupabaseError as e:
            logger.warning("Fallback task update failed", bellman_id=mask_user_id(member.id), error=str(e))
            return None
        for task in closed:
            self.sync.merge_task(task)
        return closed[0] if closed else None

    async def _return_to_line(self, member: Member, position: QueuePosition) -> tuple[Member, bool]:
        """Put the bellman back in line; returns (member, recovered)."""
        recovered = False
        if isinstance(member, LocalBellman):
            returned = self.roster.return_to_line(member.id, position)
        else:
            try:
                returned = await self._write_bellman_status(member, BellmanStatus.IN_LINE)
            except SupabaseError as e:
                logger.warning(
                    "Bellman status write failed during resolution",
                    bellman_id=mask_user_id(member.id),
                    error=str(e)
                )
                returned = member.model_copy(update={"bellman_status": BellmanStatus.IN_LINE, "updated_at": _now()})
                self.sync.merge_bellman(returned)
                recovered = True
        self._place_in_line(member.id, position)
        return returned, recovered

    async def _write_bellman_status(self, member: Bellman, status: BellmanStatus) -> Bellman:
        """Persist a status change and merge the confirmed row."""
        confirmed = await self.store.update_bellman_status(member.id, status)
        updated = confirmed or member.model_copy(update={"bellman_status": status, "updated_at": _now()})
        self.sync.merge_bellman(updated)
        return updated

    # Manual status

    async def set_bellman_status(self, bellman_id: str, status: Union[BellmanStatus, str]) -> Member:
        """Self-service toggle between off_duty and in_line."""
        status = BellmanStatus(status)
        if status == BellmanStatus.IN_PROCESS:
            raise InvalidTransitionError(
                "in_process can only be entered through an assignment",
                user_message="You can't set yourself in process without a task",
            )

        member = self._require_member(bellman_id)
        if isinstance(member, Bellman) and not can_change_bellman_status(self.user, bellman_id):
            raise PermissionDeniedError(f"User {self.user.user_id} cannot change status of {bellman_id}")
        if member.status == BellmanStatus.IN_PROCESS:
            raise InvalidTransitionError(
                f"Bellman {bellman_id} holds an active task",
                user_message="Finish the current task first",
            )
        if member.status == status:
            return member

        with self._guard(f"bellman:{bellman_id}"):
            if isinstance(member, LocalBellman):
                updated = self.roster.set_status(bellman_id, status)
            else:
                updated = await self._write_bellman_status(member, status)

        if status == BellmanStatus.IN_LINE:
            self._place_in_line(bellman_id, QueuePosition.BOTTOM)
        else:
            self._drop_from_line(bellman_id)

        logger.info(
            "Bellman status changed",
            bellman_id=mask_user_id(bellman_id),
            bellman_status=status.value
        )
        return updated

    # Helpers

    async def _resync(self) -> None:
        try:
            await self.sync.reconcile()
        except SupabaseError as e:
            logger.warning("Re-sync after conflict failed", error=str(e))

    async def _record_activity(self, member: Member, task: Task, status: ActivityStatus) -> None:
        """Write the activity log; failures never block a state transition."""
        if not self.activity_log_enabled:
            return

        if isinstance(member, LocalBellman) and status != ActivityStatus.ASSIGNED and member.task_type:
            # Collapse onto exactly what was logged at assignment time
            task_type, room, guest, ticket = member.task_type, member.room_number, member.guest_name, member.ticket_number
        else:
            task_type, room, guest, ticket = task.title, task.room_number, task.guest_name, task.ticket_number

        entry = ActivityLogEntry(
            hotel_id=self.hotel_id,
            bellman_name=member.display_name,
            task_type=task_type,
            room_number=room or "N/A",
            status=status,
            guest_name=guest,
            ticket_number=ticket,
            task_id=task.id,
        )
        try:
            await append_or_update_activity_log(self.store, self.hotel_id, entry)
        except SupabaseError as e:
            logger.warning(
                "Failed to log activity",
                task_id=task.id,
                activity_status=status.value,
                error=str(e)
            )
