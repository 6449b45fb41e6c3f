"""Role-based dispatch: which queue actions a user may take on a task."""

from enum import Enum

from src.models.task import Task, TaskStatus
from src.models.user_context import Role, UserContext


class TaskAction(str, Enum):
    """Actions a viewer can be offered on a task."""
    TAKE = "take"
    ASSIGN = "assign"
    START = "start"
    COMPLETE = "complete"
    CANCEL = "cancel"
    MARK_EMPTY_ROOM = "mark_empty_room"


BELL_STAFF_ROLES = frozenset({Role.BELLMAN, Role.BELL_STAFF})
SUPERVISOR_ROLES = frozenset({Role.ADMIN, Role.MANAGER, Role.OPERATOR})
QUEUE_MANAGER_ROLES = frozenset({Role.ADMIN, Role.MANAGER, Role.OPERATOR, Role.BELL_CAPTAIN})
TASK_CREATOR_ROLES = frozenset({Role.OPERATOR, Role.MANAGER, Role.ADMIN, Role.PHONE_OPERATOR, Role.FRONT_DESK})


def can_create_tasks(role: Role) -> bool:
    return Role(role) in TASK_CREATOR_ROLES


def can_manage_queue(role: Role) -> bool:
    """Assign work to others and change other bellmen's status."""
    return Role(role) in QUEUE_MANAGER_ROLES


def can_change_bellman_status(user: UserContext, bellman_id: str) -> bool:
    return user.user_id == bellman_id or user.is_super_admin or can_manage_queue(user.role)


def allowed_actions(user: UserContext, task: Task) -> frozenset[TaskAction]:
    """Actions offered to user on task, as a pure function of role and task state."""
    if task.is_terminal:
        return frozenset()

    role = Role(user.role)
    actions: set[TaskAction] = set()
    involved = user.user_id in (task.created_by, task.assigned_to)
    supervisor = role in SUPERVISOR_ROLES or user.is_super_admin

    if task.status == TaskStatus.PENDING:
        if not task.has_assignee and role in BELL_STAFF_ROLES:
            actions.add(TaskAction.TAKE)
        if supervisor or role == Role.BELL_CAPTAIN:
            actions.add(TaskAction.ASSIGN)
        if task.assigned_to and (supervisor or involved):
            actions.add(TaskAction.START)
        if supervisor or involved:
            actions.add(TaskAction.CANCEL)

    elif task.status == TaskStatus.IN_PROGRESS:
        if supervisor or involved or role == Role.BELL_CAPTAIN:
            actions.update({TaskAction.COMPLETE, TaskAction.CANCEL, TaskAction.MARK_EMPTY_ROOM})

    return frozenset(actions)
