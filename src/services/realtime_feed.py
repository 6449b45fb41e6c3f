"""Live change feed over Supabase Realtime postgres_changes channels."""

from typing import Any, Optional

from src.models.change_event import ChangeEvent, ChangeOp
from src.services.ports import ChangeHandler, StatusHandler
from src.services.supabase_client import get_async_supabase_client
from src.utils.errors import RealtimeError
from src.utils.logging import get_structured_logger

logger = get_structured_logger(__name__)

SUBSCRIBED = "SUBSCRIBED"


def parse_change_payload(table: str, payload: dict) -> Optional[ChangeEvent]:
    """
    Normalize a postgres_changes payload into a ChangeEvent.

    Accepts the realtime-py shape ({"data": {"type", "record", "old_record"}})
    and the JS client shape ({"eventType", "new", "old"}). Returns None for
    payloads that carry no recognizable operation.
    """
    if not isinstance(payload, dict):
        return None

    data = payload.get("data") if isinstance(payload.get("data"), dict) else payload
    op_name = data.get("type") or data.get("eventType")
    if not op_name:
        return None

    try:
        op = ChangeOp(str(op_name).lower())
    except ValueError:
        logger.debug("Ignoring unknown change operation", table=table, op=op_name)
        return None

    record = data.get("record") or data.get("new") or {}
    old_record = data.get("old_record") or data.get("old") or {}
    return ChangeEvent(
        op=op,
        table=data.get("table") or table,
        record=record,
        old_record=old_record,
    )


class SupabaseChangeFeed:
    """ChangeFeed backed by one realtime channel per (hotel, table)."""

    def __init__(self, schema: str = "public"):
        self.schema = schema

    async def subscribe(
        self,
        hotel_id: str,
        table: str,
        on_event: ChangeHandler,
        on_status: Optional[StatusHandler] = None,
    ) -> Any:
        try:
            client = await get_async_supabase_client()
            channel = client.channel(f"{table}-realtime-{hotel_id}")

            def _on_change(payload: dict) -> None:
                event = parse_change_payload(table, payload)
                if event is not None:
                    on_event(event)

            def _on_status(status: Any, err: Optional[Exception] = None) -> None:
                state = getattr(status, "value", status)
                connected = state == SUBSCRIBED
                if err is not None:
                    logger.warning(
                        "Realtime channel error",
                        table=table,
                        hotel_id=hotel_id,
                        channel_state=str(state),
                        error=str(err)
                    )
                else:
                    logger.info(
                        "Realtime channel state changed",
                        table=table,
                        hotel_id=hotel_id,
                        channel_state=str(state)
                    )
                if on_status is not None:
                    on_status(connected)

            channel.on_postgres_changes(
                "*",
                callback=_on_change,
                table=table,
                schema=self.schema,
                filter=f"hotel_id=eq.{hotel_id}",
            )
            await channel.subscribe(_on_status)
        except Exception as e:
            raise RealtimeError(f"Failed to subscribe to {table} changes: {e}")

        return channel

    async def unsubscribe(self, subscription: Any) -> None:
        try:
            client = await get_async_supabase_client()
            await client.remove_channel(subscription)
        except Exception as e:
            raise RealtimeError(f"Failed to remove realtime channel: {e}")
