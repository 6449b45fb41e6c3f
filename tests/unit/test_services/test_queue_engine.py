"""Tests for the bellman queue engine."""

import asyncio

import pytest

from src.models.activity import ActivityStatus
from src.models.bellman import BellmanStatus, LocalBellman, QueuePosition
from src.models.task import TaskCategory, TaskStatus
from src.models.user_context import Role, UserContext
from src.services.queue_engine import BellmanQueueEngine, build_task_fields
from src.utils.errors import (
    InvalidTransitionError,
    OperationInProgressError,
    PermissionDeniedError,
    QueueValidationError,
    SupabaseError,
    TaskConflictError,
)


def _line_names(engine):
    return [m.display_name for m in engine.in_line()]


@pytest.fixture
def bellmen(store, hotel_id):
    """Three persisted bellmen in line, joined in order A, B, C."""
    return [
        store.seed_bellman(hotel_id=hotel_id, full_name=name, bellman_status=BellmanStatus.IN_LINE)
        for name in ("Alice Able", "Bruno Baker", "Chen Cole")
    ]


# Temporary roster

@pytest.mark.unit
def test_add_temporary_bellman_joins_bottom_of_line(engine):
    engine.add_temporary_bellman("Walt")
    engine.add_temporary_bellman("Jess")

    assert _line_names(engine) == ["Walt", "Jess"]


@pytest.mark.unit
@pytest.mark.parametrize("name", ["", "   "])
def test_add_temporary_bellman_rejects_blank(engine, roster, name):
    with pytest.raises(QueueValidationError):
        engine.add_temporary_bellman(name)

    assert roster.members == []
    assert engine.in_line() == []


@pytest.mark.unit
def test_remove_temporary_bellman(engine):
    walt = engine.add_temporary_bellman("Walt")

    removed = engine.remove_temporary_bellman(walt.id)

    assert removed == walt
    assert engine.in_line() == []
    assert engine.remove_temporary_bellman(walt.id) is None


# Line reconciliation

@pytest.mark.unit
@pytest.mark.asyncio
async def test_persisted_bellmen_join_line_in_order(engine, sync, bellmen):
    await sync.reconcile()

    assert _line_names(engine) == ["Alice Able", "Bruno Baker", "Chen Cole"]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_line_keeps_positions_and_drops_departed(engine, sync, store, bellmen):
    await sync.reconcile()
    walt = engine.add_temporary_bellman("Walt")
    store.bellmen[bellmen[0].id] = bellmen[0].model_copy(update={"bellman_status": BellmanStatus.OFF_DUTY})

    await sync.reconcile()

    assert _line_names(engine) == ["Bruno Baker", "Chen Cole", "Walt"]
    assert engine.find_member(walt.id) is not None


@pytest.mark.unit
@pytest.mark.asyncio
async def test_inactive_bellmen_stay_out_of_line(engine, sync, store, hotel_id):
    store.seed_bellman(hotel_id=hotel_id, full_name="Gone Gary", bellman_status=BellmanStatus.IN_LINE, is_active=False)

    await sync.reconcile()

    assert engine.in_line() == []


# Assignment

@pytest.mark.unit
@pytest.mark.asyncio
async def test_assign_existing_task_to_persisted_bellman(engine, sync, store, hotel_id, bellmen):
    task = store.seed_task(hotel_id=hotel_id, title="Check In", room_number="304", guest_name="J. Smith")
    await sync.reconcile()
    chen = bellmen[2]

    updated = await engine.assign_existing_task(task.id, chen.id)

    assert updated.status == TaskStatus.IN_PROGRESS
    assert updated.assigned_to == chen.id
    assert updated.assignee_name is None
    assert "assignee_name" not in store.task_writes[-1][1]
    assert store.bellmen[chen.id].bellman_status == BellmanStatus.IN_PROCESS
    assert sync.get_task(task.id).status == TaskStatus.IN_PROGRESS
    assert engine.pending_tasks() == []
    assert _line_names(engine) == ["Alice Able", "Bruno Baker"]
    assert [m.id for m in engine.in_process()] == [chen.id]
    assert engine.current_task_for(engine.find_member(chen.id)).id == task.id

    logs = store.logs_for("Chen Cole")
    assert len(logs) == 1
    assert logs[0].status == ActivityStatus.ASSIGNED
    assert logs[0].room_number == "304"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_assign_existing_task_to_temporary_bellman(engine, sync, store, roster, hotel_id):
    task = store.seed_task(hotel_id=hotel_id, title="Check Out", room_number="512")
    await sync.reconcile()
    walt = engine.add_temporary_bellman("Walt")

    updated = await engine.assign_existing_task(task.id, walt.id)

    assert updated.assigned_to is None
    assert updated.assignee_name == "Walt"
    assert store.task_writes[-1][1]["assignee_name"] == "Walt"
    assert updated.has_assignee
    member = roster.get(walt.id)
    assert member.status == BellmanStatus.IN_PROCESS
    assert member.task_id == task.id
    assert engine.current_task_for(member).id == task.id
    assert engine.in_line() == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_pending_tasks_oldest_first(engine, sync, store, hotel_id):
    first = store.seed_task(hotel_id=hotel_id, title="Check In")
    second = store.seed_task(hotel_id=hotel_id, title="Check Out")
    store.seed_task(hotel_id=hotel_id, title="Other", status=TaskStatus.COMPLETED)
    await sync.reconcile()

    assert [t.id for t in engine.pending_tasks()] == [first.id, second.id]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_assign_requires_bellman_in_line(engine, sync, store, hotel_id):
    task = store.seed_task(hotel_id=hotel_id)
    off = store.seed_bellman(hotel_id=hotel_id, full_name="Off Duty Otto")
    await sync.reconcile()

    with pytest.raises(InvalidTransitionError):
        await engine.assign_existing_task(task.id, off.id)

    assert "update_task_conditional" not in store.calls


@pytest.mark.unit
@pytest.mark.asyncio
async def test_assign_unknown_bellman(engine, sync, store, hotel_id):
    task = store.seed_task(hotel_id=hotel_id)
    await sync.reconcile()

    with pytest.raises(QueueValidationError):
        await engine.assign_existing_task(task.id, "nobody")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_assign_conflict_resyncs_and_raises(engine, sync, store, hotel_id, bellmen):
    """Another session took the task after our last sync."""
    task = store.seed_task(hotel_id=hotel_id)
    await sync.reconcile()
    store.change_task(task.id, status=TaskStatus.IN_PROGRESS, assigned_to="someone-else", assignee_name="Other")

    with pytest.raises(TaskConflictError) as exc_info:
        await engine.assign_existing_task(task.id, bellmen[0].id)

    assert exc_info.value.task_id == task.id
    assert exc_info.value.user_message == "Task no longer available"
    assert sync.get_task(task.id).status == TaskStatus.IN_PROGRESS
    assert store.bellmen[bellmen[0].id].bellman_status == BellmanStatus.IN_LINE
    assert bellmen[0].id in [m.id for m in engine.in_line()]
    assert store.activity_logs == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_assign_locally_known_non_pending_task_conflicts(engine, sync, store, hotel_id, bellmen):
    task = store.seed_task(hotel_id=hotel_id, status=TaskStatus.COMPLETED)
    await sync.reconcile()

    with pytest.raises(TaskConflictError):
        await engine.assign_existing_task(task.id, bellmen[0].id)

    assert "update_task_conditional" not in store.calls


@pytest.mark.unit
@pytest.mark.asyncio
async def test_duplicate_submission_is_rejected(engine, sync, store, hotel_id, bellmen):
    first = store.seed_task(hotel_id=hotel_id)
    second = store.seed_task(hotel_id=hotel_id)
    await sync.reconcile()

    results = await asyncio.gather(
        engine.assign_existing_task(first.id, bellmen[0].id),
        engine.assign_existing_task(second.id, bellmen[0].id),
        return_exceptions=True,
    )

    assert results[0].id == first.id
    assert isinstance(results[1], OperationInProgressError)
    assert store.tasks[second.id].status == TaskStatus.PENDING


@pytest.mark.unit
@pytest.mark.asyncio
async def test_activity_log_failure_does_not_block_assignment(engine, sync, store, hotel_id, bellmen):
    task = store.seed_task(hotel_id=hotel_id)
    await sync.reconcile()
    store.failures.add("insert_activity_log")

    updated = await engine.assign_existing_task(task.id, bellmen[0].id)

    assert updated.status == TaskStatus.IN_PROGRESS
    assert store.activity_logs == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_activity_log_can_be_disabled(manager_user, store, sync, roster, hotel_id, bellmen):
    engine = BellmanQueueEngine(manager_user, store, sync, roster, activity_log_enabled=False)
    task = store.seed_task(hotel_id=hotel_id)
    await sync.reconcile()

    await engine.assign_existing_task(task.id, bellmen[0].id)

    assert store.activity_logs == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_poll_racing_assignment_keeps_bellman_in_process(engine, sync, store, hotel_id, bellmen):
    """A users snapshot taken before the status write lands must not free the bellman for more work."""
    first = store.seed_task(hotel_id=hotel_id)
    second = store.seed_task(hotel_id=hotel_id)
    await sync.reconcile()
    alice = bellmen[0]
    list_bellmen = store.list_bellmen

    async def slow_list_bellmen(hotel):
        snapshot = await list_bellmen(hotel)
        for _ in range(6):
            await asyncio.sleep(0)
        return snapshot

    store.list_bellmen = slow_list_bellmen

    await asyncio.gather(sync.reconcile(), engine.assign_existing_task(first.id, alice.id))

    assert sync.get_bellman(alice.id).status == BellmanStatus.IN_PROCESS
    assert alice.id not in [m.id for m in engine.in_line()]
    with pytest.raises(InvalidTransitionError):
        await engine.assign_existing_task(second.id, alice.id)
    held = [t for t in store.tasks.values() if t.assigned_to == alice.id]
    assert [t.id for t in held] == [first.id]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_failed_status_write_reverts_assignment(engine, sync, store, hotel_id, bellmen):
    task = store.seed_task(hotel_id=hotel_id)
    await sync.reconcile()
    bruno = bellmen[1]
    store.failures.add("update_bellman_status")

    with pytest.raises(SupabaseError):
        await engine.assign_existing_task(task.id, bruno.id)

    assert store.tasks[task.id].status == TaskStatus.PENDING
    assert store.tasks[task.id].assigned_to is None
    assert [t.id for t in engine.pending_tasks()] == [task.id]
    assert sync.get_bellman(bruno.id).status == BellmanStatus.IN_LINE
    assert bruno.id in [m.id for m in engine.in_line()]
    assert store.activity_logs == []

    store.failures.clear()
    updated = await engine.assign_existing_task(task.id, bruno.id)
    assert updated.assigned_to == bruno.id


@pytest.mark.unit
@pytest.mark.asyncio
async def test_unrevertable_assignment_can_still_be_resolved(engine, sync, store, hotel_id, bellmen):
    """If the task cannot be put back, the bellman is held in process so resolve_task can close it."""
    task = store.seed_task(hotel_id=hotel_id)
    await sync.reconcile()
    bruno = bellmen[1]

    async def registry_down(bellman_id, status):
        store.failures.add("update_task_conditional")
        raise SupabaseError("registry unavailable")

    store.update_bellman_status = registry_down

    with pytest.raises(SupabaseError):
        await engine.assign_existing_task(task.id, bruno.id)

    assert store.tasks[task.id].assigned_to == bruno.id
    assert sync.get_bellman(bruno.id).status == BellmanStatus.IN_PROCESS
    assert bruno.id not in [m.id for m in engine.in_line()]

    del store.update_bellman_status
    store.failures.clear()
    result = await engine.resolve_task(bruno.id, TaskStatus.COMPLETED)

    assert result.task.id == task.id
    assert store.tasks[task.id].status == TaskStatus.COMPLETED
    assert store.bellmen[bruno.id].bellman_status == BellmanStatus.IN_LINE


# Create and assign

@pytest.mark.unit
def test_build_task_fields_room_move():
    fields = build_task_fields("Room Move", from_room="101", to_room="205", description="Luggage cart")

    assert fields["room_number"] == "101 → 205"
    assert fields["description"] == "Move from room 101 to room 205. Luggage cart"
    assert fields["category"] == TaskCategory.ROOM_MOVE
    assert fields["title"] == "Room Move"


@pytest.mark.unit
@pytest.mark.parametrize("kwargs", [
    {"task_type": "Room Move", "from_room": "101"},
    {"task_type": "Room Move", "to_room": "205"},
    {"task_type": "Check In"},
    {"task_type": "Check Out", "room_number": "  "},
    {"task_type": "Valet"},
    {"task_type": "Other", "priority": "critical"},
])
def test_build_task_fields_rejects_invalid_input(kwargs):
    with pytest.raises(QueueValidationError):
        build_task_fields(**kwargs)


@pytest.mark.unit
def test_build_task_fields_other_without_room():
    fields = build_task_fields("Other", guest_name="  ", description="Umbrella to lobby")

    assert fields["room_number"] is None
    assert fields["guest_name"] is None
    assert fields["category"] == TaskCategory.OTHER


@pytest.mark.unit
@pytest.mark.asyncio
async def test_create_and_assign_task(engine, sync, store, manager_user, bellmen):
    await sync.reconcile()

    task = await engine.create_and_assign_task(
        bellmen[1].id, "Check In", room_number="304", guest_name="J. Smith", priority="high"
    )

    assert task.status == TaskStatus.IN_PROGRESS
    assert task.assigned_to == bellmen[1].id
    assert task.created_by == manager_user.user_id
    assert "assignee_name" not in store.task_writes[-1][1]
    assert task.category == TaskCategory.CHECK_IN
    assert sync.get_task(task.id) == task
    assert store.bellmen[bellmen[1].id].bellman_status == BellmanStatus.IN_PROCESS
    assert [e.status for e in store.logs_for("Bruno Baker")] == [ActivityStatus.ASSIGNED]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_create_and_assign_validation_happens_before_writes(engine, sync, store, bellmen):
    await sync.reconcile()
    calls_before = list(store.calls)

    with pytest.raises(QueueValidationError):
        await engine.create_and_assign_task(bellmen[0].id, "Room Move", from_room="101")

    assert store.calls == calls_before
    assert store.tasks == {}


@pytest.mark.unit
@pytest.mark.asyncio
async def test_create_and_assign_leaves_task_pending_when_status_write_fails(engine, sync, store, bellmen):
    await sync.reconcile()
    store.failures.add("update_bellman_status")

    with pytest.raises(SupabaseError):
        await engine.create_and_assign_task(bellmen[0].id, "Check Out", room_number="512")

    [task] = store.tasks.values()
    assert task.status == TaskStatus.PENDING
    assert task.assigned_to is None
    assert [t.id for t in engine.pending_tasks()] == [task.id]
    assert bellmen[0].id in [m.id for m in engine.in_line()]


# Resolution

@pytest.mark.unit
@pytest.mark.asyncio
async def test_completed_always_returns_to_bottom(engine, sync, store, hotel_id, bellmen):
    task = store.seed_task(hotel_id=hotel_id, room_number="304")
    await sync.reconcile()
    alice = bellmen[0]
    await engine.assign_existing_task(task.id, alice.id)

    result = await engine.resolve_task(alice.id, TaskStatus.COMPLETED, position=QueuePosition.TOP)

    assert result.position == QueuePosition.BOTTOM
    assert not result.recovered
    assert result.task.status == TaskStatus.COMPLETED
    assert result.task.completed_at is not None
    assert result.bellman.status == BellmanStatus.IN_LINE
    assert result.message == "Task completed"
    assert _line_names(engine) == ["Bruno Baker", "Chen Cole", "Alice Able"]
    assert store.bellmen[alice.id].bellman_status == BellmanStatus.IN_LINE


@pytest.mark.unit
@pytest.mark.asyncio
@pytest.mark.parametrize("outcome", [TaskStatus.CANCELLED, TaskStatus.EMPTY_ROOM])
async def test_cancel_and_empty_room_honor_top(engine, sync, store, hotel_id, bellmen, outcome):
    task = store.seed_task(hotel_id=hotel_id)
    await sync.reconcile()
    chen = bellmen[2]
    await engine.assign_existing_task(task.id, chen.id)

    result = await engine.resolve_task(chen.id, outcome, position="top")

    assert result.position == QueuePosition.TOP
    assert store.tasks[task.id].status == outcome
    assert _line_names(engine) == ["Chen Cole", "Alice Able", "Bruno Baker"]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_resolution_collapses_activity_entry(engine, sync, store, hotel_id, bellmen):
    task = store.seed_task(hotel_id=hotel_id, room_number="304", guest_name="J. Smith")
    await sync.reconcile()
    await engine.assign_existing_task(task.id, bellmen[0].id)

    await engine.resolve_task(bellmen[0].id, TaskStatus.EMPTY_ROOM)

    logs = store.logs_for("Alice Able")
    assert len(logs) == 1
    assert logs[0].status == ActivityStatus.EMPTY_ROOM


@pytest.mark.unit
@pytest.mark.asyncio
async def test_resolve_recovers_when_task_changed_elsewhere(engine, sync, store, hotel_id, bellmen):
    """The bellman is never left in process, even when the task write fails."""
    task = store.seed_task(hotel_id=hotel_id)
    await sync.reconcile()
    bruno = bellmen[1]
    await engine.assign_existing_task(task.id, bruno.id)
    store.change_task(task.id, status=TaskStatus.CANCELLED)

    result = await engine.resolve_task(bruno.id, TaskStatus.COMPLETED)

    assert result.recovered
    assert result.task is None
    assert "back in line" in result.message
    assert store.bellmen[bruno.id].bellman_status == BellmanStatus.IN_LINE
    assert bruno.id in [m.id for m in engine.in_line()]
    assert store.tasks[task.id].status == TaskStatus.CANCELLED
    assert sync.get_task(task.id).status == TaskStatus.CANCELLED


@pytest.mark.unit
@pytest.mark.asyncio
async def test_resolve_falls_back_to_assignee_match(engine, sync, store, hotel_id, bellmen):
    """Local view lost the task but the server still has it in progress."""
    task = store.seed_task(hotel_id=hotel_id)
    await sync.reconcile()
    alice = bellmen[0]
    await engine.assign_existing_task(task.id, alice.id)
    sync.remove_task(task.id)

    result = await engine.resolve_task(alice.id, TaskStatus.COMPLETED)

    assert result.recovered
    assert result.task.id == task.id
    assert store.tasks[task.id].status == TaskStatus.COMPLETED
    assert "update_tasks_by_assignee" in store.calls


@pytest.mark.unit
@pytest.mark.asyncio
async def test_resolve_temporary_bellman_with_missing_task(engine, roster):
    walt = engine.add_temporary_bellman("Walt")
    roster.set_status(walt.id, BellmanStatus.IN_PROCESS)

    result = await engine.resolve_task(walt.id, TaskStatus.CANCELLED, position=QueuePosition.TOP)

    assert result.recovered
    assert isinstance(result.bellman, LocalBellman)
    assert roster.get(walt.id).status == BellmanStatus.IN_LINE
    assert _line_names(engine) == ["Walt"]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_resolve_temporary_bellman(engine, sync, store, roster, hotel_id):
    task = store.seed_task(hotel_id=hotel_id, title="Check In", room_number="304", guest_name="J. Smith")
    await sync.reconcile()
    walt = engine.add_temporary_bellman("Walt")
    jess = engine.add_temporary_bellman("Jess")
    await engine.assign_existing_task(task.id, walt.id)

    result = await engine.resolve_task(walt.id, TaskStatus.CANCELLED, position=QueuePosition.TOP)

    assert not result.recovered
    assert store.tasks[task.id].status == TaskStatus.CANCELLED
    assert roster.get(walt.id).task_id is None
    assert [m.id for m in roster.in_line()] == [walt.id, jess.id]
    assert _line_names(engine) == ["Walt", "Jess"]
    logs = store.logs_for("Walt")
    assert [e.status for e in logs] == [ActivityStatus.CANCELLED]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_resolve_requires_bellman_in_process(engine, sync, bellmen):
    await sync.reconcile()

    with pytest.raises(InvalidTransitionError):
        await engine.resolve_task(bellmen[0].id, TaskStatus.COMPLETED)


@pytest.mark.unit
@pytest.mark.asyncio
@pytest.mark.parametrize("outcome", ["pending", "in_progress", "done"])
async def test_resolve_rejects_non_terminal_outcome(engine, outcome):
    with pytest.raises(QueueValidationError):
        await engine.resolve_task("anyone", outcome)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_resolve_returns_bellman_to_line_when_status_write_fails(engine, sync, store, hotel_id, bellmen):
    task = store.seed_task(hotel_id=hotel_id)
    await sync.reconcile()
    chen = bellmen[2]
    await engine.assign_existing_task(task.id, chen.id)
    store.failures.add("update_bellman_status")

    result = await engine.resolve_task(chen.id, TaskStatus.CANCELLED, position=QueuePosition.TOP)

    assert result.recovered
    assert result.task.status == TaskStatus.CANCELLED
    assert result.bellman.status == BellmanStatus.IN_LINE
    assert "back in line" in result.message
    assert store.tasks[task.id].status == TaskStatus.CANCELLED
    assert _line_names(engine)[0] == "Chen Cole"
    assert engine.in_process() == []

    store.failures.clear()
    await sync.reconcile()
    assert sync.get_bellman(chen.id).status == BellmanStatus.IN_LINE


# Manual status

@pytest.mark.unit
@pytest.mark.asyncio
async def test_set_bellman_status_toggle(engine, sync, store, hotel_id, bellmen):
    otto = store.seed_bellman(hotel_id=hotel_id, full_name="Otto Off")
    await sync.reconcile()

    await engine.set_bellman_status(otto.id, BellmanStatus.IN_LINE)
    assert _line_names(engine)[-1] == "Otto Off"
    assert store.bellmen[otto.id].bellman_status == BellmanStatus.IN_LINE

    await engine.set_bellman_status(otto.id, "off_duty")
    assert "Otto Off" not in _line_names(engine)
    assert store.bellmen[otto.id].bellman_status == BellmanStatus.OFF_DUTY


@pytest.mark.unit
@pytest.mark.asyncio
async def test_set_bellman_status_cannot_request_in_process(engine, sync, bellmen):
    await sync.reconcile()

    with pytest.raises(InvalidTransitionError):
        await engine.set_bellman_status(bellmen[0].id, BellmanStatus.IN_PROCESS)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_set_bellman_status_blocked_with_active_task(engine, sync, store, hotel_id, bellmen):
    task = store.seed_task(hotel_id=hotel_id)
    await sync.reconcile()
    await engine.assign_existing_task(task.id, bellmen[0].id)

    with pytest.raises(InvalidTransitionError):
        await engine.set_bellman_status(bellmen[0].id, BellmanStatus.OFF_DUTY)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_bellman_can_only_toggle_themselves(store, sync, roster, hotel_id, bellmen):
    me = UserContext(user_id=bellmen[0].id, hotel_id=hotel_id, role=Role.BELLMAN)
    engine = BellmanQueueEngine(me, store, sync, roster)
    await sync.reconcile()

    await engine.set_bellman_status(bellmen[0].id, BellmanStatus.OFF_DUTY)
    with pytest.raises(PermissionDeniedError):
        await engine.set_bellman_status(bellmen[1].id, BellmanStatus.OFF_DUTY)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_temporary_bellman_status_toggle(engine, roster):
    walt = engine.add_temporary_bellman("Walt")

    await engine.set_bellman_status(walt.id, BellmanStatus.OFF_DUTY)
    assert engine.in_line() == []

    await engine.set_bellman_status(walt.id, BellmanStatus.IN_LINE)
    assert _line_names(engine) == ["Walt"]
    assert roster.get(walt.id).status == BellmanStatus.IN_LINE
