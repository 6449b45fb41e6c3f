"""Composition root wiring one viewer's queue session."""

from typing import Optional

from src.models.user_context import UserContext
from src.services.local_roster import LocalRoster
from src.services.ports import BellDeskStore, ChangeFeed
from src.services.queue_engine import BellmanQueueEngine
from src.services.realtime_feed import SupabaseChangeFeed
from src.services.supabase_client import SupabaseStore
from src.services.task_sync import TaskSynchronizer
from src.utils.logging import correlation_context, get_structured_logger, mask_user_id
from src.utils.settings import BellDeskConfig

logger = get_structured_logger(__name__)


class BellDeskSession:
    """
    Owns the store, feed, synchronizer, temporary roster and engine for one user.

    Usage:
        async with BellDeskSession(user) as session:
            await session.engine.assign_existing_task(task_id, bellman_id)
    """

    def __init__(
        self,
        user: UserContext,
        store: Optional[BellDeskStore] = None,
        feed: Optional[ChangeFeed] = None,
        roster: Optional[LocalRoster] = None,
        interval_seconds: Optional[float] = None,
        activity_log_enabled: Optional[bool] = None,
    ):
        self.user = user
        self.hotel_id = user.require_hotel()
        self.store = store if store is not None else SupabaseStore()
        self.feed = feed if feed is not None else SupabaseChangeFeed()
        self.roster = roster if roster is not None else LocalRoster(BellDeskConfig.LOCAL_ROSTER_PATH)
        self.sync = TaskSynchronizer(
            self.hotel_id,
            self.store,
            feed=self.feed,
            interval_seconds=interval_seconds,
        )
        self.engine = BellmanQueueEngine(
            user,
            self.store,
            self.sync,
            self.roster,
            activity_log_enabled=activity_log_enabled,
        )
        self._started = False

    async def start(self) -> None:
        if self._started:
            return
        with correlation_context(hotel_id=self.hotel_id):
            await self.sync.start()
            self.engine.reconcile_line()
        self._started = True
        logger.info(
            "BellDesk session started",
            hotel_id=self.hotel_id,
            user_id=mask_user_id(self.user.user_id),
            role=self.user.role.value
        )

    async def stop(self) -> None:
        if not self._started:
            return
        await self.sync.stop()
        self._started = False
        logger.info("BellDesk session stopped", hotel_id=self.hotel_id)

    async def __aenter__(self) -> "BellDeskSession":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()
