"""Shared pytest fixtures and configuration."""

import os

import pytest
from freezegun import freeze_time

# Set test environment variables
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("SUPABASE_URL", "https://test.supabase.co")
os.environ.setdefault("SUPABASE_SERVICE_ROLE_KEY", "test-key")
os.environ.setdefault("RECONCILE_INTERVAL_SECONDS", "15")
os.environ.setdefault("ACTIVITY_LOG_ENABLED", "true")

from src.models.user_context import Role, UserContext  # noqa: E402
from src.services.local_roster import LocalRoster  # noqa: E402
from src.services.queue_engine import BellmanQueueEngine  # noqa: E402
from src.services.task_sync import TaskSynchronizer  # noqa: E402
from tests.fakes import FakeChangeFeed, InMemoryBellDeskStore  # noqa: E402

HOTEL_ID = "hotel-grand-01"


@pytest.fixture
def hotel_id():
    return HOTEL_ID


@pytest.fixture
def manager_user(hotel_id):
    """Manager signed in at the bell stand."""
    return UserContext(user_id="user-manager-1", hotel_id=hotel_id, role=Role.MANAGER, full_name="Maria Manager")


@pytest.fixture
def bellman_user(hotel_id):
    return UserContext(user_id="user-bellman-1", hotel_id=hotel_id, role=Role.BELLMAN, full_name="Ben Bellman")


@pytest.fixture
def store():
    """Empty in-memory store."""
    return InMemoryBellDeskStore()


@pytest.fixture
def feed():
    return FakeChangeFeed()


@pytest.fixture
def roster(tmp_path):
    """Temporary roster persisted under the test's tmp dir."""
    return LocalRoster(tmp_path / "local_bellmen.json")


@pytest.fixture
def sync(hotel_id, store):
    """Synchronizer with an empty snapshot; tests seed the store and await reconcile()."""
    return TaskSynchronizer(
        hotel_id,
        store,
        initial_tasks=[],
        initial_bellmen=[],
        interval_seconds=3600,
    )


@pytest.fixture
def engine(manager_user, store, sync, roster):
    return BellmanQueueEngine(manager_user, store, sync, roster)


@pytest.fixture
def freeze_time_fixture():
    """Fixture for freezing time in tests."""
    with freeze_time("2025-01-15 12:00:00") as frozen_time:
        yield frozen_time
