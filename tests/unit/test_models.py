"""Unit tests for domain models."""

import re

import pytest

from migrator.models import (
    MIGRATION_STEPS,
    Backup,
    ExportDataset,
    MigrationStatus,
    MigrationStep,
    RunState,
    SyncOperation,
    SyncQueueItem,
    UserMigrationStatus,
    generate_id,
    iso_now,
    parse_timestamp,
)


def test_iso_now_format() -> None:
    """Test UTC timestamp with millisecond precision."""
    value = iso_now()

    assert value.endswith("Z")
    assert re.match(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}Z$", value)


@pytest.mark.parametrize("value", [None, "", "yesterday", 42])
def test_parse_timestamp_invalid(value: object) -> None:
    """Test that malformed timestamps parse to None."""
    assert parse_timestamp(value) is None


def test_parse_timestamp_naive_is_utc() -> None:
    """Test that timestamps without offset are treated as UTC."""
    parsed = parse_timestamp("2024-01-01T09:00:00")

    assert parsed is not None
    assert parsed.utcoffset().total_seconds() == 0
    assert parse_timestamp("2024-01-01T09:00:00.000Z") == parsed


def test_generate_id() -> None:
    """Test id format and uniqueness."""
    first = generate_id("backup")
    second = generate_id("backup")

    assert re.match(r"^backup_\d+_[0-9a-f]{9}$", first)
    assert first != second


class TestExportDataset:
    """Tests for ExportDataset."""

    def test_counts_and_orphans(self) -> None:
        """Test record counts and orphan detection."""
        dataset = ExportDataset(
            users={"a": {"id": "a"}},
            sessions={"a": [{"id": "s1"}, {"id": "s2"}], "ghost": [{"id": "s3"}]},
            stats={"a": {}},
            meetings={"ghost2": [{"id": "m1"}]},
        )

        assert dataset.user_ids == {"a"}
        assert dataset.counts() == {"users": 1, "sessions": 3, "stats": 1, "meetings": 1}
        assert dataset.orphan_owner_ids() == {
            "sessions": ["ghost"],
            "stats": [],
            "meetings": ["ghost2"],
        }

    def test_dict_round_trip(self) -> None:
        """Test conversion to and from dictionaries."""
        dataset = ExportDataset(
            users={"a": {"id": "a"}},
            sessions={},
            stats={},
            meetings={},
            metadata={"warnings": []},
            timestamp="2024-01-01T00:00:00.000Z",
        )

        restored = ExportDataset.from_dict(dataset.to_dict())

        assert restored.to_dict() == dataset.to_dict()
        assert restored.version == "4.0.0"

    def test_from_dict_rejects_bad_section(self) -> None:
        """Test that every section must be an object."""
        with pytest.raises(ValueError, match="sessions"):
            ExportDataset.from_dict({"users": {}, "sessions": [], "stats": {}, "meetings": {}})


class TestMigrationStatus:
    """Tests for MigrationStatus."""

    def test_initial_state(self) -> None:
        """Test a fresh status."""
        status = MigrationStatus()

        assert status.started is False
        assert status.completed is False
        assert status.progress == 0
        assert status.next_step == MigrationStep.EXPORT

    def test_complete_step(self) -> None:
        """Test progress derivation and idempotent completion."""
        status = MigrationStatus(state=RunState.RUNNING)
        status.complete_step(MigrationStep.EXPORT)
        status.complete_step(MigrationStep.EXPORT)
        status.complete_step(MigrationStep.VALIDATE_EXPORT, skipped=True)

        assert status.completed_steps == [MigrationStep.EXPORT, MigrationStep.VALIDATE_EXPORT]
        assert status.skipped_steps == [MigrationStep.VALIDATE_EXPORT]
        assert status.progress == 20
        assert status.next_step == MigrationStep.CREATE_BACKUP

    def test_all_steps_complete(self) -> None:
        """Test that progress reaches 100 with no next step."""
        status = MigrationStatus(completed_steps=list(MIGRATION_STEPS))

        assert status.progress == 100
        assert status.next_step is None

    def test_record_error(self) -> None:
        """Test error log entries."""
        status = MigrationStatus()
        status.record_error("boom", MigrationStep.MIGRATE_USERS, {"user_id": "a"})

        assert status.errors[0]["step"] == "migrate-users"
        assert status.errors[0]["message"] == "boom"
        assert status.errors[0]["context"] == {"user_id": "a"}

    def test_dict_round_trip(self) -> None:
        """Test persistence form."""
        status = MigrationStatus(
            state=RunState.FAILED,
            current_step=MigrationStep.MIGRATE_STATS,
            completed_steps=[MigrationStep.EXPORT],
            backup_id="backup_1",
            remote_ids={"a": "r-a"},
            failed_users=["b"],
        )

        data = status.to_dict()
        restored = MigrationStatus.from_dict(data)

        assert data["state"] == "failed"
        assert data["progress"] == 10
        assert restored.current_step == MigrationStep.MIGRATE_STATS
        assert restored.completed_steps == [MigrationStep.EXPORT]
        assert restored.remote_ids == {"a": "r-a"}
        assert restored.failed_users == ["b"]

    def test_from_dict_unknown_step(self) -> None:
        """Test that unknown step names are rejected."""
        with pytest.raises(ValueError):
            MigrationStatus.from_dict({"completed_steps": ["teleport"]})


def test_backup_round_trip() -> None:
    """Test backup persistence and summary."""
    backup = Backup(
        id="snapshot_1",
        timestamp="2024-01-01T00:00:00.000Z",
        source="localStorage",
        data={"k": "v"},
        kind="snapshot",
        event="manual",
    )

    assert backup.is_snapshot is True
    assert "data" not in backup.summary()
    assert Backup.from_dict(backup.to_dict()) == backup

    with pytest.raises(KeyError):
        Backup.from_dict({"id": "x", "timestamp": "t"})


def test_user_migration_status_round_trip() -> None:
    """Test per-user status persistence."""
    status = UserMigrationStatus("a", migrated=True, needs_migration=False, remote_id="r-a")

    restored = UserMigrationStatus.from_dict(status.to_dict())

    assert restored.to_dict() == status.to_dict()


def test_sync_queue_item() -> None:
    """Test attempts accounting and persistence."""
    item = SyncQueueItem(SyncOperation.SAVE_MEETING, "a", {"meeting": {}}, max_attempts=2)

    assert item.id.startswith("sync_")
    assert item.exhausted is False
    item.attempts = 2
    assert item.exhausted is True

    restored = SyncQueueItem.from_dict(item.to_dict())
    assert restored.id == item.id
    assert restored.operation == SyncOperation.SAVE_MEETING
    assert restored.attempts == 2
