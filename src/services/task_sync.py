"""
Synchronization layer - an eventually-consistent, tenant-scoped view of tasks
and bellmen.

The live change feed is a latency optimization only; a periodic full
reconciliation fetch is the correctness backstop. The two run independently:
a dead feed never stops the poll and a failing poll never drops the feed.
This layer never writes to the server.
"""

import asyncio
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Iterable, Optional

from pydantic import ValidationError

from src.models.bellman import Bellman, bellman_from_row
from src.models.change_event import ChangeEvent, ChangeOp
from src.models.task import Task
from src.services.ports import BellDeskStore, ChangeFeed
from src.utils.errors import RealtimeError, SupabaseError
from src.utils.logging import get_structured_logger, log_timing
from src.utils.settings import BellDeskConfig

logger = get_structured_logger(__name__)

TASKS_TABLE = "tasks"
USERS_TABLE = "users"


class SyncEvent(str, Enum):
    """Callbacks the synchronizer can fire."""
    TASK_INSERTED = "task_inserted"
    TASK_UPDATED = "task_updated"
    TASK_DELETED = "task_deleted"
    BELLMEN_CHANGED = "bellmen_changed"
    CONNECTION_CHANGED = "connection_changed"


class TaskSynchronizer:
    """Merges server state, feed events and local optimistic writes by id."""

    def __init__(
        self,
        hotel_id: str,
        store: BellDeskStore,
        feed: Optional[ChangeFeed] = None,
        initial_tasks: Optional[Iterable[Task]] = None,
        initial_bellmen: Optional[Iterable[Bellman]] = None,
        interval_seconds: Optional[float] = None,
    ):
        self.hotel_id = hotel_id
        self.store = store
        self.feed = feed
        self.interval_seconds = (
            interval_seconds if interval_seconds is not None else BellDeskConfig.RECONCILE_INTERVAL_SECONDS
        )
        self._tasks: dict[str, Task] = {t.id: t for t in (initial_tasks or [])}
        self._bellmen: dict[str, Bellman] = {b.id: b for b in (initial_bellmen or [])}
        self._seeded = initial_tasks is not None
        self._listeners: dict[SyncEvent, list[Callable[..., Any]]] = {event: [] for event in SyncEvent}
        self._subscriptions: list[Any] = []
        self._poll_task: Optional[asyncio.Task] = None
        self._background: set[asyncio.Task] = set()
        self._reconcile_lock = asyncio.Lock()
        self.is_connected = False
        self.last_update: Optional[datetime] = None

    # Views

    @property
    def tasks(self) -> list[Task]:
        """All known tasks, newest first."""
        return sorted(
            self._tasks.values(),
            key=lambda t: t.created_at.timestamp() if t.created_at else 0.0,
            reverse=True,
        )

    @property
    def bellmen(self) -> list[Bellman]:
        return sorted(self._bellmen.values(), key=lambda b: b.full_name.lower())

    def get_task(self, task_id: str) -> Optional[Task]:
        return self._tasks.get(task_id)

    def get_bellman(self, bellman_id: str) -> Optional[Bellman]:
        return self._bellmen.get(bellman_id)

    # Listeners

    def add_listener(self, event: SyncEvent, callback: Callable[..., Any]) -> None:
        self._listeners[SyncEvent(event)].append(callback)

    def remove_listener(self, event: SyncEvent, callback: Callable[..., Any]) -> None:
        listeners = self._listeners[SyncEvent(event)]
        if callback in listeners:
            listeners.remove(callback)

    def _emit(self, event: SyncEvent, *args: Any) -> None:
        for callback in list(self._listeners[event]):
            try:
                callback(*args)
            except Exception:
                # One broken listener must not stop the merge or the others
                logger.exception("Sync listener failed", sync_event=event.value)

    def _touch(self) -> None:
        self.last_update = datetime.now().astimezone()

    # Local merges (feed events and the engine's optimistic writes)

    def merge_task(self, task: Task) -> bool:
        """Upsert a task row; the delivered row replaces the local one whole."""
        old = self._tasks.get(task.id)
        if old == task:
            return False
        self._tasks[task.id] = task
        self._touch()
        if old is None:
            self._emit(SyncEvent.TASK_INSERTED, task)
        else:
            self._emit(SyncEvent.TASK_UPDATED, task, old)
        return True

    def remove_task(self, task_id: str) -> bool:
        if self._tasks.pop(task_id, None) is None:
            return False
        self._touch()
        self._emit(SyncEvent.TASK_DELETED, task_id)
        return True

    def merge_bellman(self, bellman: Bellman) -> bool:
        if self._bellmen.get(bellman.id) == bellman:
            return False
        self._bellmen[bellman.id] = bellman
        self._touch()
        self._emit(SyncEvent.BELLMEN_CHANGED, self.bellmen)
        return True

    def remove_bellman(self, bellman_id: str) -> bool:
        if self._bellmen.pop(bellman_id, None) is None:
            return False
        self._touch()
        self._emit(SyncEvent.BELLMEN_CHANGED, self.bellmen)
        return True

    def handle_task_change(self, event: ChangeEvent) -> None:
        """Apply one tasks-table feed event; unknown ids on update are upserts."""
        if event.op == ChangeOp.DELETE:
            if event.row_id:
                self.remove_task(event.row_id)
            return

        if event.record.get("hotel_id") and event.record["hotel_id"] != self.hotel_id:
            return
        try:
            task = Task.model_validate(event.record)
        except ValidationError as e:
            logger.warning("Ignoring malformed task event", op=event.op.value, error=str(e))
            return
        self.merge_task(task)

    def handle_bellman_change(self, event: ChangeEvent) -> None:
        """Apply one users-table feed event, keeping only bellmen."""
        if event.op == ChangeOp.DELETE:
            if event.row_id:
                self.remove_bellman(event.row_id)
            return

        record = event.record
        if record.get("hotel_id") and record["hotel_id"] != self.hotel_id:
            return
        if record.get("role") and record["role"] != "bellman":
            # Role changed away from bellman
            if event.row_id:
                self.remove_bellman(event.row_id)
            return
        try:
            bellman = bellman_from_row(record)
        except ValidationError as e:
            logger.warning("Ignoring malformed bellman event", op=event.op.value, error=str(e))
            return
        self.merge_bellman(bellman)

    # Reconciliation

    async def reconcile(self) -> int:
        """
        Re-fetch tasks and bellmen and diff against local state.

        Tasks are compared by (id, status, updated_at). Update callbacks fire
        only when a status actually changed. Returns the number of changed
        entries; a second call with no server change returns 0.
        """
        async with self._reconcile_lock:
            with log_timing("reconcile", logger=logger, hotel_id=self.hotel_id):
                fresh_tasks = await self.store.list_tasks(self.hotel_id)
                fresh_bellmen = await self.store.list_bellmen(self.hotel_id)

            changes = self._apply_task_snapshot(fresh_tasks)
            if self._apply_bellman_snapshot(fresh_bellmen):
                changes += 1

        if changes:
            self._touch()
            logger.info("Reconciliation applied changes", hotel_id=self.hotel_id, changes=changes)
        return changes

    def _apply_task_snapshot(self, fresh_tasks: Iterable[Task]) -> int:
        fresh = {t.id: t for t in fresh_tasks}
        changes = 0

        for task_id in list(self._tasks):
            if task_id not in fresh:
                del self._tasks[task_id]
                changes += 1
                self._emit(SyncEvent.TASK_DELETED, task_id)

        for task_id, task in fresh.items():
            old = self._tasks.get(task_id)
            if old is None:
                self._tasks[task_id] = task
                changes += 1
                self._emit(SyncEvent.TASK_INSERTED, task)
                continue
            if old.sync_key() == task.sync_key():
                continue
            if old.updated_at and task.updated_at and old.updated_at > task.updated_at:
                # Fetched before a newer local write landed
                continue
            self._tasks[task_id] = task
            changes += 1
            if old.status != task.status:
                self._emit(SyncEvent.TASK_UPDATED, task, old)

        return changes

    def _apply_bellman_snapshot(self, fresh_bellmen: Iterable[Bellman]) -> bool:
        fresh = {}
        for bellman in fresh_bellmen:
            old = self._bellmen.get(bellman.id)
            if old and old.updated_at and bellman.updated_at and old.updated_at > bellman.updated_at:
                # Fetched before a newer local write landed
                bellman = old
            fresh[bellman.id] = bellman

        def _keys(bellmen: dict[str, Bellman]) -> set[tuple]:
            return {(b.id, b.bellman_status, b.updated_at) for b in bellmen.values()}

        if _keys(fresh) == _keys(self._bellmen):
            return False
        self._bellmen = fresh
        self._emit(SyncEvent.BELLMEN_CHANGED, self.bellmen)
        return True

    async def _safe_reconcile(self) -> None:
        try:
            await self.reconcile()
        except SupabaseError as e:
            logger.warning("Reconciliation failed, retrying next tick", hotel_id=self.hotel_id, error=str(e))

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            await self._safe_reconcile()

    # Live feed

    def _set_connected(self, connected: bool) -> None:
        was_connected = self.is_connected
        self.is_connected = connected
        if connected != was_connected:
            self._emit(SyncEvent.CONNECTION_CHANGED, connected)
        if connected and not was_connected:
            # Close the gap between the last known state and the moment the feed went live
            self._spawn(self._safe_reconcile())

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def start(self) -> None:
        """Load state (unless seeded), subscribe to the feed and start polling."""
        if not self._seeded:
            await self._safe_reconcile()

        if self.feed is not None:
            for table, handler in ((TASKS_TABLE, self.handle_task_change), (USERS_TABLE, self.handle_bellman_change)):
                try:
                    subscription = await self.feed.subscribe(
                        self.hotel_id, table, handler, on_status=self._set_connected
                    )
                    self._subscriptions.append(subscription)
                except RealtimeError as e:
                    logger.warning(
                        "Live feed unavailable, relying on reconciliation poll",
                        hotel_id=self.hotel_id,
                        table=table,
                        error=str(e)
                    )
                    self._set_connected(False)

        if self._poll_task is None:
            self._poll_task = asyncio.get_running_loop().create_task(self._poll_loop())
        logger.info(
            "Task synchronizer started",
            hotel_id=self.hotel_id,
            interval_seconds=self.interval_seconds,
            live_feed=self.feed is not None
        )

    async def stop(self) -> None:
        if self._poll_task is not None:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None

        background = list(self._background)
        for task in background:
            task.cancel()
        await asyncio.gather(*background, return_exceptions=True)
        self._background.clear()

        if self.feed is not None:
            for subscription in self._subscriptions:
                try:
                    await self.feed.unsubscribe(subscription)
                except RealtimeError as e:
                    logger.warning("Failed to unsubscribe from live feed", error=str(e))
        self._subscriptions.clear()
        self._set_connected(False)
        logger.info("Task synchronizer stopped", hotel_id=self.hotel_id)
