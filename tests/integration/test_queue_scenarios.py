"""End-to-end bell stand scenarios over the in-memory store and feed."""

import asyncio

import pytest

from src.models.activity import ActivityStatus
from src.models.bellman import BellmanStatus, QueuePosition
from src.models.change_event import ChangeEvent, ChangeOp
from src.models.task import TaskStatus
from src.models.user_context import Role, UserContext
from src.services.local_roster import LocalRoster
from src.services.queue_engine import BellmanQueueEngine
from src.services.session import BellDeskSession
from src.services.task_display import describe_task_change
from src.services.task_sync import SyncEvent, TaskSynchronizer
from src.utils.errors import QueueValidationError, TaskConflictError
from tests.fakes import FakeChangeFeed


def assert_assignee_invariant(store):
    """pending <=> no assignee, for every stored task."""
    for task in store.tasks.values():
        assert (task.status == TaskStatus.PENDING) == (not task.has_assignee), task


def assert_in_process_invariant(store, roster=None):
    """Every in-process bellman holds exactly one non-terminal task."""
    for bellman in store.bellmen.values():
        held = [t for t in store.tasks.values() if t.assigned_to == bellman.id and not t.is_terminal]
        assert (bellman.bellman_status == BellmanStatus.IN_PROCESS) == (len(held) == 1), bellman
    for member in (roster.members if roster else []):
        if member.status == BellmanStatus.IN_PROCESS:
            assert not store.tasks[member.task_id].is_terminal


@pytest.mark.integration
@pytest.mark.asyncio
async def test_check_in_assign_then_complete(engine, sync, store, hotel_id):
    """Check In for room 304, J. Smith: assigned, completed, back at the bottom of the line."""
    ben = store.seed_bellman(hotel_id=hotel_id, full_name="Ben Bellman", bellman_status=BellmanStatus.IN_LINE)
    cara = store.seed_bellman(hotel_id=hotel_id, full_name="Cara Cole", bellman_status=BellmanStatus.IN_LINE)
    task = store.seed_task(hotel_id=hotel_id, title="Check In", room_number="304", guest_name="J. Smith",
                           category="check_in")
    await sync.reconcile()

    await engine.assign_existing_task(task.id, ben.id)
    assert_assignee_invariant(store)
    assert_in_process_invariant(store)
    assert store.logs_for("Ben Bellman")[0].status == ActivityStatus.ASSIGNED

    result = await engine.resolve_task(ben.id, TaskStatus.COMPLETED, position=QueuePosition.TOP)

    assert result.task.status == TaskStatus.COMPLETED
    assert [m.id for m in engine.in_line()] == [cara.id, ben.id]
    logs = store.logs_for("Ben Bellman")
    assert len(logs) == 1
    assert (logs[0].status, logs[0].task_type, logs[0].room_number, logs[0].guest_name) == (
        ActivityStatus.COMPLETED, "Check In", "304", "J. Smith"
    )
    assert_assignee_invariant(store)
    assert_in_process_invariant(store)


@pytest.mark.integration
@pytest.mark.asyncio
async def test_room_move_for_temporary_bellman(manager_user, store, sync, tmp_path):
    roster = LocalRoster(tmp_path / "roster.json")
    engine = BellmanQueueEngine(manager_user, store, sync, roster)
    walt = engine.add_temporary_bellman("Walt")

    task = await engine.create_and_assign_task(walt.id, "Room Move", from_room="101", to_room="205")

    assert task.room_number == "101 → 205"
    assert task.description == "Move from room 101 to room 205"
    assert task.assigned_to is None
    assert task.assignee_name == "Walt"
    assert_assignee_invariant(store)
    assert_in_process_invariant(store, roster)

    # The temporary roster survives a restart of the same session
    restored = LocalRoster(tmp_path / "roster.json").get(walt.id)
    assert restored.task_id == task.id
    assert restored.room_number == "101 → 205"

    result = await engine.resolve_task(walt.id, TaskStatus.EMPTY_ROOM, position=QueuePosition.TOP)

    assert result.task.status == TaskStatus.EMPTY_ROOM
    assert [e.status for e in store.logs_for("Walt")] == [ActivityStatus.EMPTY_ROOM]


@pytest.mark.integration
@pytest.mark.asyncio
async def test_two_clients_race_for_one_task(store, hotel_id, tmp_path):
    """Two front-desk sessions assign the same pending task at once: one wins, one conflicts."""
    ann = store.seed_bellman(hotel_id=hotel_id, full_name="Ann Able", bellman_status=BellmanStatus.IN_LINE)
    bo = store.seed_bellman(hotel_id=hotel_id, full_name="Bo Baker", bellman_status=BellmanStatus.IN_LINE)
    task = store.seed_task(hotel_id=hotel_id, title="Check Out", room_number="812")

    engines = []
    for idx in range(2):
        user = UserContext(user_id=f"user-desk-{idx}", hotel_id=hotel_id, role=Role.OPERATOR)
        sync = TaskSynchronizer(hotel_id, store, initial_tasks=[], interval_seconds=3600)
        await sync.reconcile()
        engines.append(BellmanQueueEngine(user, store, sync, LocalRoster(tmp_path / f"roster-{idx}.json")))

    results = await asyncio.gather(
        engines[0].assign_existing_task(task.id, ann.id),
        engines[1].assign_existing_task(task.id, bo.id),
        return_exceptions=True,
    )

    winners = [r for r in results if not isinstance(r, Exception)]
    losers = [r for r in results if isinstance(r, TaskConflictError)]
    assert len(winners) == 1
    assert len(losers) == 1

    stored = store.tasks[task.id]
    assert stored.status == TaskStatus.IN_PROGRESS
    assert stored.assigned_to == winners[0].assigned_to
    loser_bellman = bo if stored.assigned_to == ann.id else ann
    assert store.bellmen[loser_bellman.id].bellman_status == BellmanStatus.IN_LINE

    # The losing session re-synced and now sees the winner's row
    for engine in engines:
        assert engine.sync.get_task(task.id).status == TaskStatus.IN_PROGRESS
        assert engine.pending_tasks() == []
    assert len(store.activity_logs) == 1
    assert_assignee_invariant(store)
    assert_in_process_invariant(store)


@pytest.mark.integration
def test_blank_temporary_bellman_name(engine, roster):
    with pytest.raises(QueueValidationError) as exc_info:
        engine.add_temporary_bellman("   ")

    assert exc_info.value.user_message == "Please enter a bellman name"
    assert roster.members == []
    assert engine.in_line() == []


@pytest.mark.integration
@pytest.mark.asyncio
async def test_feed_echo_of_own_write_is_idempotent(manager_user, store, roster, hotel_id):
    ben = store.seed_bellman(hotel_id=hotel_id, full_name="Ben Bellman", bellman_status=BellmanStatus.IN_LINE)
    task = store.seed_task(hotel_id=hotel_id, title="Check In", room_number="304")
    feed = FakeChangeFeed()
    notifications = []

    async with BellDeskSession(manager_user, store=store, feed=feed, roster=roster, interval_seconds=3600) as session:
        session.sync.add_listener(
            SyncEvent.TASK_UPDATED,
            lambda new, old: notifications.append(describe_task_change(new, old).message),
        )
        await session.engine.assign_existing_task(task.id, ben.id)

        echo = store.tasks[task.id].model_dump(mode="json")
        feed.emit(ChangeEvent(op=ChangeOp.UPDATE, table="tasks", record=echo))
        assert await session.sync.reconcile() == 0
        assert await session.sync.reconcile() == 0

    assert notifications == ["Task in progress: Check In (Room 304)"]


@pytest.mark.integration
@pytest.mark.asyncio
async def test_terminal_tasks_are_absorbing(engine, sync, store, hotel_id):
    ben = store.seed_bellman(hotel_id=hotel_id, full_name="Ben Bellman", bellman_status=BellmanStatus.IN_LINE)
    task = store.seed_task(hotel_id=hotel_id)
    await sync.reconcile()
    await engine.assign_existing_task(task.id, ben.id)
    await engine.resolve_task(ben.id, TaskStatus.CANCELLED)

    with pytest.raises(TaskConflictError):
        await engine.assign_existing_task(task.id, ben.id)

    assert store.tasks[task.id].status == TaskStatus.CANCELLED
