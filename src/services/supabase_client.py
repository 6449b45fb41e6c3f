"""Supabase client wrapper with async context manager support."""

import os
from datetime import date, datetime
from enum import Enum
from typing import Any, Iterable, Optional

from supabase import (
    AsyncClient,
    AsyncClientOptions,
    Client,
    ClientOptions,
    acreate_client,
    create_client,
)

from src.models.activity import ActivityLogEntry, ActivityMatchKey
from src.models.bellman import Bellman, BellmanStatus, bellman_from_row
from src.models.task import Task, TaskStatus
from src.utils.errors import SupabaseError
from src.utils.logging import get_structured_logger, mask_user_id

logger = get_structured_logger(__name__)

TASKS_TABLE = "tasks"
USERS_TABLE = "users"
ACTIVITY_LOGS_TABLE = "activity_logs"

# Global client instances (singleton pattern)
_client: Optional[Client] = None
_async_client: Optional[AsyncClient] = None


def _credentials() -> tuple[str, str]:
    url = os.environ.get("SUPABASE_URL")
    key = os.environ.get("SUPABASE_SERVICE_ROLE_KEY")

    if not url or not key:
        raise SupabaseError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
    return url, key


def get_supabase_client() -> Client:
    """Get or create Supabase client singleton."""
    global _client

    if _client is None:
        url, key = _credentials()
        options = ClientOptions(
            auto_refresh_token=False,
            persist_session=False,
        )
        _client = create_client(url, key, options)
        logger.info("Supabase client initialized", url=url)

    return _client


async def get_async_supabase_client() -> AsyncClient:
    """Get or create the async Supabase client used for realtime channels."""
    global _async_client

    if _async_client is None:
        url, key = _credentials()
        options = AsyncClientOptions(
            auto_refresh_token=False,
            persist_session=False,
        )
        _async_client = await acreate_client(url, key, options)
        logger.info("Async Supabase client initialized", url=url)

    return _async_client


async def close_supabase_client() -> None:
    """Close Supabase client connections."""
    global _client, _async_client
    if _async_client is not None:
        await _async_client.remove_all_channels()
        _async_client = None
    if _client is not None:
        _client = None
    logger.info("Supabase client closed")


class SupabaseClient:
    """Async context manager for Supabase client."""

    def __init__(self):
        self.client: Optional[Client] = None

    async def __aenter__(self) -> Client:
        self.client = get_supabase_client()
        return self.client

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if exc_type:
            logger.error(
                "Supabase operation error",
                error=str(exc_val),
                error_type=exc_type.__name__
            )
        return False


def serialize_fields(fields: dict[str, Any]) -> dict[str, Any]:
    """Convert enums and datetimes into JSON-ready values for PostgREST."""
    payload = {}
    for key, value in fields.items():
        if isinstance(value, Enum):
            value = value.value
        elif isinstance(value, (datetime, date)):
            value = value.isoformat()
        payload[key] = value
    return payload


# Tasks table operations
async def list_tasks(
    hotel_id: str,
    statuses: Optional[Iterable[TaskStatus]] = None,
    assigned_to: Optional[str] = None,
) -> list[Task]:
    """List a hotel's tasks, newest first."""
    async with SupabaseClient() as client:
        try:
            query = client.table(TASKS_TABLE).select("*").eq("hotel_id", hotel_id)
            if statuses is not None:
                query = query.in_("status", [TaskStatus(s).value for s in statuses])
            if assigned_to is not None:
                query = query.eq("assigned_to", assigned_to)
            result = query.order("created_at", desc=True).execute()
        except Exception as e:
            raise SupabaseError(f"Failed to list tasks: {e}")
    return [Task.model_validate(row) for row in (result.data or [])]


async def create_task(hotel_id: str, fields: dict[str, Any]) -> Task:
    """Create a new task."""
    async with SupabaseClient() as client:
        try:
            payload = serialize_fields({**fields, "hotel_id": hotel_id})
            result = client.table(TASKS_TABLE).insert(payload).execute()
        except Exception as e:
            raise SupabaseError(f"Failed to create task: {e}")
    if result.data and len(result.data) > 0:
        return Task.model_validate(result.data[0])
    raise SupabaseError("Failed to create task: no data returned")


async def update_task_conditional(
    task_id: str,
    expected_status: TaskStatus,
    fields: dict[str, Any],
) -> Optional[Task]:
    """
    Update a task only while it still has expected_status.

    Returns the updated row, or None when zero rows matched (someone else
    changed the task first).
    """
    async with SupabaseClient() as client:
        try:
            result = (
                client.table(TASKS_TABLE)
                .update(serialize_fields(fields))
                .eq("id", task_id)
                .eq("status", TaskStatus(expected_status).value)
                .execute()
            )
        except Exception as e:
            raise SupabaseError(f"Failed to update task {task_id}: {e}")
    if result.data and len(result.data) > 0:
        return Task.model_validate(result.data[0])
    logger.info(
        "Conditional task update matched zero rows",
        task_id=task_id,
        expected_status=TaskStatus(expected_status).value
    )
    return None


async def update_tasks_by_assignee(
    hotel_id: str,
    assigned_to: str,
    expected_status: TaskStatus,
    fields: dict[str, Any],
) -> list[Task]:
    """Update every task held by an assignee in expected_status."""
    async with SupabaseClient() as client:
        try:
            result = (
                client.table(TASKS_TABLE)
                .update(serialize_fields(fields))
                .eq("hotel_id", hotel_id)
                .eq("assigned_to", assigned_to)
                .eq("status", TaskStatus(expected_status).value)
                .execute()
            )
        except Exception as e:
            raise SupabaseError(f"Failed to update tasks for assignee: {e}")
    return [Task.model_validate(row) for row in (result.data or [])]


# Users table operations (bellman status registry)
async def list_bellmen(hotel_id: str) -> list[Bellman]:
    """List a hotel's bellmen ordered by name."""
    async with SupabaseClient() as client:
        try:
            result = (
                client.table(USERS_TABLE)
                .select("id, hotel_id, full_name, bellman_status, is_active, updated_at")
                .eq("hotel_id", hotel_id)
                .eq("role", "bellman")
                .order("full_name")
                .execute()
            )
        except Exception as e:
            raise SupabaseError(f"Failed to list bellmen: {e}")
    return [bellman_from_row(row) for row in (result.data or [])]


async def update_bellman_status(bellman_id: str, status: BellmanStatus) -> Optional[Bellman]:
    """Set a bellman's queue status and return the confirmed row."""
    async with SupabaseClient() as client:
        try:
            result = client.table(USERS_TABLE).update(serialize_fields({
                "bellman_status": BellmanStatus(status),
                "updated_at": datetime.now().astimezone(),
            })).eq("id", bellman_id).execute()
        except Exception as e:
            raise SupabaseError(f"Failed to update bellman status: {e}")
    logger.debug(
        "Bellman status updated",
        bellman_id=mask_user_id(bellman_id),
        bellman_status=BellmanStatus(status).value
    )
    if result.data and len(result.data) > 0:
        return bellman_from_row(result.data[0])
    return None


# Activity logs table operations
async def find_latest_activity_log(hotel_id: str, key: ActivityMatchKey) -> Optional[ActivityLogEntry]:
    """Find the most recent log entry for (bellman, task type, room, guest)."""
    async with SupabaseClient() as client:
        try:
            query = (
                client.table(ACTIVITY_LOGS_TABLE)
                .select("*")
                .eq("hotel_id", hotel_id)
                .eq("bellman_name", key.bellman_name)
                .eq("task_type", key.task_type)
                .eq("room_number", key.room_number)
            )
            if key.guest_name:
                query = query.eq("guest_name", key.guest_name)
            else:
                query = query.is_("guest_name", "null")
            result = query.order("timestamp", desc=True).limit(1).execute()
        except Exception as e:
            raise SupabaseError(f"Failed to look up activity log: {e}")
    if result.data and len(result.data) > 0:
        return ActivityLogEntry.model_validate(result.data[0])
    return None


async def insert_activity_log(hotel_id: str, entry: ActivityLogEntry) -> ActivityLogEntry:
    """Append an activity log entry."""
    async with SupabaseClient() as client:
        try:
            payload = serialize_fields(entry.model_dump(exclude={"id"}))
            payload["hotel_id"] = hotel_id
            result = client.table(ACTIVITY_LOGS_TABLE).insert(payload).execute()
        except Exception as e:
            raise SupabaseError(f"Failed to insert activity log: {e}")
    if result.data and len(result.data) > 0:
        return ActivityLogEntry.model_validate(result.data[0])
    raise SupabaseError("Failed to insert activity log: no data returned")


async def update_activity_log(log_id: str, fields: dict[str, Any]) -> None:
    """Update an activity log entry in place."""
    async with SupabaseClient() as client:
        try:
            client.table(ACTIVITY_LOGS_TABLE).update(serialize_fields(fields)).eq("id", log_id).execute()
        except Exception as e:
            raise SupabaseError(f"Failed to update activity log: {e}")


class SupabaseStore:
    """BellDeskStore backed by the module-level Supabase helpers."""

    async def list_tasks(self, hotel_id, statuses=None, assigned_to=None):
        return await list_tasks(hotel_id, statuses=statuses, assigned_to=assigned_to)

    async def create_task(self, hotel_id, fields):
        return await create_task(hotel_id, fields)

    async def update_task_conditional(self, task_id, expected_status, fields):
        return await update_task_conditional(task_id, expected_status, fields)

    async def update_tasks_by_assignee(self, hotel_id, assigned_to, expected_status, fields):
        return await update_tasks_by_assignee(hotel_id, assigned_to, expected_status, fields)

    async def list_bellmen(self, hotel_id):
        return await list_bellmen(hotel_id)

    async def update_bellman_status(self, bellman_id, status):
        return await update_bellman_status(bellman_id, status)

    async def find_latest_activity_log(self, hotel_id, key):
        return await find_latest_activity_log(hotel_id, key)

    async def insert_activity_log(self, hotel_id, entry):
        return await insert_activity_log(hotel_id, entry)

    async def update_activity_log(self, log_id, fields):
        await update_activity_log(log_id, fields)
