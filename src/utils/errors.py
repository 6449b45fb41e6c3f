"""Error handling utilities."""

from typing import Optional


class BellDeskError(Exception):
    """Base exception for BellDesk backend."""

    user_message = "Something went wrong"

    def __init__(self, message: str = "", user_message: Optional[str] = None):
        super().__init__(message or self.user_message)
        if user_message:
            self.user_message = user_message


class QueueValidationError(BellDeskError):
    """Missing or invalid input, rejected before any write."""

    user_message = "Please fill in all required fields"


class TaskConflictError(BellDeskError):
    """Conditional task update affected zero rows."""

    user_message = "Task no longer available"

    def __init__(self, task_id: str, message: str = "", user_message: Optional[str] = None):
        super().__init__(message or f"Task {task_id} was changed by someone else", user_message)
        self.task_id = task_id


class AssignmentNotFoundError(BellDeskError):
    """No in-progress task could be found for a bellman."""

    user_message = "No active task found for this bellman"


class InvalidTransitionError(BellDeskError):
    """Status change not allowed by the task or bellman state machine."""

    user_message = "That status change is not allowed"


class OperationInProgressError(BellDeskError):
    """Same task or bellman already has a round trip in flight."""

    user_message = "Please wait, still working on the previous request"


class SupabaseError(BellDeskError):
    """Supabase operation error."""

    user_message = "Could not reach the server, please try again"


class RealtimeError(BellDeskError):
    """Live change feed error."""

    user_message = "Not connected to live updates"


class PermissionDeniedError(BellDeskError):
    """Role does not allow the requested queue operation."""

    user_message = "You are not allowed to do that"
