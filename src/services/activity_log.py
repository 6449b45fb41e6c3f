"""Activity log writes - one entry per assignment, collapsed to its final status."""

from datetime import datetime
from typing import Optional

from src.models.activity import ActivityLogEntry, ActivityStatus
from src.services.ports import ActivityLogSink
from src.utils.logging import get_structured_logger, mask_guest_name

logger = get_structured_logger(__name__)


async def append_or_update_activity_log(
    sink: ActivityLogSink,
    hotel_id: str,
    entry: ActivityLogEntry,
) -> Optional[ActivityLogEntry]:
    """
    Record an assignment or its outcome.

    An "assigned" event always appends. Any other status updates the most
    recent entry with the same (bellman, task type, room, guest) in place,
    and appends only when no such entry exists.
    """
    entry = entry.model_copy(update={"timestamp": entry.timestamp or datetime.now().astimezone()})

    if entry.status != ActivityStatus.ASSIGNED:
        existing = await sink.find_latest_activity_log(hotel_id, entry.match_key())
        if existing is not None and existing.id:
            await sink.update_activity_log(existing.id, {
                "status": entry.status,
                "timestamp": entry.timestamp,
            })
            logger.debug(
                "Activity log entry collapsed",
                log_id=existing.id,
                activity_status=entry.status.value,
                task_type=entry.task_type,
                room_number=entry.room_number,
                guest=mask_guest_name(entry.guest_name)
            )
            return existing.model_copy(update={"status": entry.status, "timestamp": entry.timestamp})

    created = await sink.insert_activity_log(hotel_id, entry)
    logger.debug(
        "Activity log entry appended",
        log_id=created.id,
        activity_status=entry.status.value,
        task_type=entry.task_type,
        room_number=entry.room_number,
        guest=mask_guest_name(entry.guest_name)
    )
    return created
