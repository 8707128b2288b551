"""Pytest configuration and shared fixtures."""

import json
from datetime import datetime, timedelta, timezone
from typing import Any
from unittest.mock import AsyncMock

import pytest
from prometheus_client import CollectorRegistry

from migrator.config import LocalStoreConfig, MigratorConfig
from migrator.extractor import Extractor
from migrator.local_store import USERS_KEY, MemoryLocalStore, section_key
from migrator.metrics import MigratorMetrics
from migrator.remote_store import RemoteStore
from migrator.status_store import MigrationStatusStore
from migrator.validator import DatasetValidator
from recovery.recovery_manager import RecoveryManager

USER_IDS = ("alice", "bob", "carol")
SESSIONS_PER_USER = 5


def _iso(value: datetime) -> str:
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def make_session(user_id: str, index: int, status: str = "completed") -> dict[str, Any]:
    """Build a valid session record starting on January ``index + 1``."""
    start = datetime(2024, 1, index + 1, 9, 0, tzinfo=timezone.utc)
    end = start + timedelta(minutes=25)
    session = {
        "id": f"{user_id}-session-{index}",
        "title": f"Focus block {index}",
        "duration": 25,
        "startTime": _iso(start),
        "endTime": _iso(end),
        "status": status,
        "tags": "work",
        "user": user_id,
        "createdAt": _iso(start),
    }
    if status == "completed":
        session["completedAt"] = _iso(end)
    elif status == "stopped":
        session["stoppedAt"] = _iso(start + timedelta(minutes=10))
    return session


def make_user(user_id: str) -> dict[str, Any]:
    return {
        "id": user_id,
        "email": f"{user_id}@example.com",
        "displayName": user_id.capitalize(),
        "createdAt": "2023-12-01T08:00:00.000Z",
        "lastLogin": "2024-01-05T08:00:00.000Z",
        "preferences": {"defaultPomodoroLength": 25, "theme": "default"},
    }


def make_stats(user_id: str) -> dict[str, Any]:
    return {
        "userId": user_id,
        "totalSessions": 5,
        "completedSessions": 3,
        "totalMinutes": 125,
        "completedMinutes": 75,
        "streakDays": 2,
        "longestStreak": 3,
        "completionRate": 60,
        "lastSessionDate": "2024-01-05",
        "updatedAt": "2024-01-05T09:25:00.000Z",
    }


def build_seed(user_ids: tuple[str, ...] = USER_IDS) -> dict[str, str]:
    """Raw store contents: every user has 3 completed and 2 stopped sessions."""
    statuses = ("completed", "completed", "completed", "stopped", "stopped")
    raw: dict[str, str] = {USERS_KEY: json.dumps({uid: make_user(uid) for uid in user_ids})}
    for uid in user_ids:
        sessions = [make_session(uid, i, statuses[i]) for i in range(SESSIONS_PER_USER)]
        raw[section_key("sessions", uid)] = json.dumps(sessions)
        raw[section_key("stats", uid)] = json.dumps(make_stats(uid))
    return raw


def build_remote() -> AsyncMock:
    """Remote store double that accepts every write."""
    remote = AsyncMock(spec=RemoteStore)
    remote.connected = True
    remote.test_connection.return_value = True
    remote.get_user_id.return_value = None
    remote.migrate_user.side_effect = lambda profile: f"remote-{profile['id']}"
    remote.validate_migration.return_value = [
        {"table_name": "users", "record_count": 3, "validation_status": "OK"},
        {"table_name": "user_stats", "record_count": 3, "validation_status": "OK"},
        {"table_name": "pomodoro_sessions", "record_count": 15, "validation_status": "OK"},
        {"table_name": "meetings", "record_count": 0, "validation_status": "OK"},
    ]
    remote.check_referential_integrity.return_value = [
        {"check_name": "sessions_have_users", "status": "OK", "details": "0 orphans"},
    ]
    remote.export_tables.return_value = {"users": [], "pomodoro_sessions": []}
    remote.create_session.return_value = "remote-session-1"
    remote.complete_session.return_value = True
    remote.stop_session.return_value = True
    remote.get_user_stats.return_value = None
    return remote


@pytest.fixture
def seeded_store() -> MemoryLocalStore:
    """Store holding 3 users with 5 sessions each and no meetings."""
    return MemoryLocalStore(build_seed())


@pytest.fixture
def empty_store() -> MemoryLocalStore:
    return MemoryLocalStore()


@pytest.fixture
def remote() -> AsyncMock:
    return build_remote()


@pytest.fixture
def registry() -> CollectorRegistry:
    """Fresh Prometheus registry per test."""
    return CollectorRegistry()


@pytest.fixture
def metrics(registry: CollectorRegistry) -> MigratorMetrics:
    return MigratorMetrics(registry=registry)


@pytest.fixture
def config() -> MigratorConfig:
    """Configuration with defaults and no remote section."""
    return MigratorConfig(version="1.0", local_store=LocalStoreConfig(path="unused.json"))


@pytest.fixture
def extractor(seeded_store: MemoryLocalStore) -> Extractor:
    return Extractor(seeded_store)


@pytest.fixture
def validator() -> DatasetValidator:
    return DatasetValidator()


@pytest.fixture
def status_store(seeded_store: MemoryLocalStore) -> MigrationStatusStore:
    return MigrationStatusStore(seeded_store)


@pytest.fixture
def recovery(
    seeded_store: MemoryLocalStore,
    extractor: Extractor,
    status_store: MigrationStatusStore,
) -> RecoveryManager:
    return RecoveryManager(seeded_store, extractor, status_store)


@pytest.fixture
def session_factory():
    """Factory building valid session records."""
    return make_session


@pytest.fixture
def seed_factory():
    """Factory building raw store contents for a set of user ids."""
    return build_seed
