"""Unit tests for recovery manager."""

import dataclasses
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from prometheus_client import CollectorRegistry

from migrator.exceptions import BackupError, ConflictError
from migrator.extractor import Extractor
from migrator.local_store import (
    CURRENT_USER_KEY,
    RECOVERY_BACKUP_KEY,
    USERS_KEY,
    MemoryLocalStore,
    section_key,
)
from migrator.metrics import MigratorMetrics
from migrator.models import Conflict, MigrationStep
from migrator.status_store import MigrationStatusStore
from recovery.backup_sink import LocalFileSink
from recovery.conflict_resolver import ConflictStrategy
from recovery.recovery_manager import RecoveryManager, namespace_to_keys


def _change_email(store: MemoryLocalStore, user_id: str, email: str) -> None:
    users = store.get_json(USERS_KEY)
    users[user_id]["email"] = email
    store.set_json(USERS_KEY, users)


def test_namespace_to_keys() -> None:
    """Test mapping namespace sections back onto store keys."""
    data = {
        "users": {"a": {"id": "a"}},
        "sessions": {"a": [], "b": [{"id": "s"}]},
        "stats": {"a": {}},
        "active_sessions": {"a": {"id": "x"}},
        "system": {"current_user": {"id": "a"}},
    }

    assert namespace_to_keys(data) == {
        USERS_KEY: {"a": {"id": "a"}},
        CURRENT_USER_KEY: {"id": "a"},
        "pomodoroSessions_a": [],
        "pomodoroSessions_b": [{"id": "s"}],
        "userStats_a": {},
        "activePomodoroSession_a": {"id": "x"},
    }
    assert namespace_to_keys(data, user_id="b") == {"pomodoroSessions_b": [{"id": "s"}]}


class TestCreateBackup:
    """Tests for full backups."""

    @pytest.mark.asyncio
    async def test_local_backup(self, recovery: RecoveryManager, extractor: Extractor) -> None:
        """Test that a compressed backup decodes to the namespace."""
        expected = extractor.read_namespace()
        expected.pop("warnings")

        backup = await recovery.create_full_backup()

        assert backup.id.startswith("backup_")
        assert backup.compressed is True
        assert isinstance(backup.data, str)
        assert recovery.decode(backup) == expected
        assert recovery.get_backup() == backup
        assert [b["id"] for b in recovery.list_backups()] == [backup.id]
        assert recovery.validate_backup(backup) == {"valid": True, "errors": []}

    @pytest.mark.asyncio
    async def test_uncompressed_without_checksum(self, recovery: RecoveryManager) -> None:
        """Test plain payloads."""
        backup = await recovery.create_full_backup(compress=False, checksum=False)

        assert backup.checksum is None
        assert backup.data["users"]["alice"]["id"] == "alice"

    @pytest.mark.asyncio
    async def test_include_snapshots(self, recovery: RecoveryManager) -> None:
        """Test embedding the snapshot list."""
        snapshot = recovery.create_snapshot("manual")

        backup = await recovery.create_full_backup(include_snapshots=True)

        assert [s["id"] for s in recovery.decode(backup)["snapshots"]] == [snapshot.id]

    @pytest.mark.asyncio
    async def test_unknown_source(self, recovery: RecoveryManager) -> None:
        """Test that unknown sources are rejected."""
        with pytest.raises(BackupError, match="Unknown backup source"):
            await recovery.create_full_backup(source="floppy")

    @pytest.mark.asyncio
    async def test_remote_without_remote_store(self, recovery: RecoveryManager) -> None:
        """Test that remote backups need a remote store."""
        with pytest.raises(BackupError, match="no remote store"):
            await recovery.create_full_backup(source="remote")

    @pytest.mark.asyncio
    async def test_remote_backup(self, seeded_store, extractor, status_store, remote) -> None:
        """Test that remote backups are recorded but never become the latest backup."""
        recovery = RecoveryManager(seeded_store, extractor, status_store, remote=remote)

        backup = await recovery.create_full_backup(source="remote")

        assert recovery.decode(backup) == {"tables": {"users": [], "pomodoro_sessions": []}}
        assert seeded_store.get(RECOVERY_BACKUP_KEY) is None
        assert recovery.list_backups()[0]["source"] == "remote"

    @pytest.mark.asyncio
    async def test_remote_read_failure(self, seeded_store, extractor, status_store, remote) -> None:
        """Test that remote read errors become backup errors."""
        remote.export_tables.side_effect = RuntimeError("connection lost")
        recovery = RecoveryManager(seeded_store, extractor, status_store, remote=remote)

        with pytest.raises(BackupError, match="connection lost"):
            await recovery.create_full_backup(source="remote")

    @pytest.mark.asyncio
    async def test_history_is_capped(self, seeded_store, extractor, status_store) -> None:
        """Test the backup history limit."""
        recovery = RecoveryManager(seeded_store, extractor, status_store, max_backup_history=2)
        ids = [(await recovery.create_full_backup()).id for _ in range(3)]

        assert [b["id"] for b in recovery.list_backups()] == ids[1:]

    @pytest.mark.asyncio
    async def test_export_to_sink(self, seeded_store, extractor, status_store, tmp_path) -> None:
        """Test that exported copies can be found again."""
        sink = LocalFileSink(tmp_path)
        recovery = RecoveryManager(seeded_store, extractor, status_store, sink=sink)
        old = await recovery.create_full_backup()
        await recovery.create_full_backup()

        assert (tmp_path / f"{old.id}.json").exists()
        assert recovery.get_backup(old.id) == old

    @pytest.mark.asyncio
    async def test_export_failure_only_warns(self, seeded_store, extractor, status_store) -> None:
        """Test that a failing sink does not fail the backup."""
        sink = MagicMock()
        sink.write.side_effect = BackupError("disk full")
        recovery = RecoveryManager(seeded_store, extractor, status_store, sink=sink)

        backup = await recovery.create_full_backup()

        assert recovery.get_backup() == backup


class TestSnapshots:
    """Tests for snapshots."""

    def test_snapshot(self, recovery: RecoveryManager) -> None:
        """Test snapshot contents."""
        snapshot = recovery.create_snapshot("manual", "Before cleanup")

        assert snapshot.is_snapshot is True
        assert snapshot.event == "manual"
        assert snapshot.compressed is False
        assert recovery.get_backup(snapshot.id) == snapshot
        assert recovery.validate_backup(snapshot)["valid"] is True

    def test_discard(self, recovery: RecoveryManager) -> None:
        """Test removing a snapshot."""
        snapshot = recovery.create_snapshot("manual")

        assert recovery.discard_snapshot(snapshot.id) is True
        assert recovery.discard_snapshot(snapshot.id) is False
        assert recovery.list_snapshots() == []


class TestLookupAndValidation:
    """Tests for backup lookup and validation."""

    def test_no_backup(self, recovery: RecoveryManager) -> None:
        """Test lookup without any backup."""
        with pytest.raises(BackupError, match="No backup available for rollback"):
            recovery.get_backup()

    @pytest.mark.asyncio
    async def test_unknown_id(self, recovery: RecoveryManager) -> None:
        """Test lookup of an unknown id."""
        await recovery.create_full_backup()

        with pytest.raises(BackupError, match="Backup not found"):
            recovery.get_backup("backup_0_missing")

    @pytest.mark.asyncio
    async def test_checksum_mismatch(self, recovery: RecoveryManager) -> None:
        """Test that tampered payloads fail validation."""
        backup = await recovery.create_full_backup(compress=False)
        tampered = dataclasses.replace(backup, data={**backup.data, "users": {}})

        result = recovery.validate_backup(tampered)

        assert result == {"valid": False, "errors": ["Checksum mismatch"]}

    @pytest.mark.asyncio
    async def test_corrupt_payload(self, recovery: RecoveryManager) -> None:
        """Test that undecodable payloads fail validation."""
        backup = await recovery.create_full_backup()
        corrupt = dataclasses.replace(backup, data="garbage")

        result = recovery.validate_backup(corrupt)

        assert result["valid"] is False
        assert result["errors"][0].startswith("Decompression failed")


class TestFullRollback:
    """Tests for full rollback."""

    @pytest.mark.asyncio
    async def test_restores_and_clears_status(self, seeded_store, extractor) -> None:
        """Test restore, status clearing, snapshots and metrics."""
        registry = CollectorRegistry()
        status_store = MigrationStatusStore(seeded_store)
        recovery = RecoveryManager(
            seeded_store,
            extractor,
            status_store,
            metrics=MigratorMetrics(registry=registry),
        )
        backup = await recovery.create_full_backup()
        status = status_store.init()
        status.complete_step(MigrationStep.EXPORT)
        status_store.update(status)
        _change_email(seeded_store, "alice", "new@example.com")

        result = recovery.perform_full_rollback()

        assert result["backup_id"] == backup.id
        assert USERS_KEY in result["restored_keys"]
        assert seeded_store.get_json(USERS_KEY)["alice"]["email"] == "alice@example.com"
        assert status_store.read().started is False
        events = [s.event for s in recovery.list_snapshots()]
        assert events == ["pre_rollback", "post_rollback"]
        assert result["pre_rollback_snapshot_id"] == recovery.list_snapshots()[0].id
        assert (
            registry.get_sample_value(
                "migrator_rollbacks_total", {"kind": "full", "outcome": "success"}
            )
            == 1
        )

    @pytest.mark.asyncio
    async def test_preserve_local(self, seeded_store, recovery) -> None:
        """Test that preserve-local keeps differing local values."""
        await recovery.create_full_backup()
        seeded_store.set_json(section_key("stats", "bob"), {"userId": "bob", "totalSessions": 9})

        result = recovery.perform_full_rollback(
            conflict_strategy=ConflictStrategy.PRESERVE_LOCAL,
            create_pre_rollback_snapshot=False,
        )

        assert result["restored_keys"] == []
        assert result["conflicts"]["total_conflicts"] == 1
        assert seeded_store.get_json(section_key("stats", "bob"))["totalSessions"] == 9
        assert result["pre_rollback_snapshot_id"] is None

    @pytest.mark.asyncio
    async def test_ask_user_writes_nothing(self, seeded_store, recovery) -> None:
        """Test that an unresolvable conflict aborts before any write."""
        await recovery.create_full_backup()
        seeded_store.remove(section_key("stats", "carol"))
        seeded_store.set_json(section_key("stats", "bob"), {"userId": "bob"})

        with pytest.raises(ConflictError):
            recovery.perform_full_rollback(conflict_strategy=ConflictStrategy.ASK_USER)

        assert seeded_store.get(section_key("stats", "carol")) is None

    @pytest.mark.asyncio
    async def test_keys_outside_backup_untouched(self, seeded_store, recovery) -> None:
        """Test that keys absent from the backup survive a rollback."""
        await recovery.create_full_backup()
        seeded_store.set_json(section_key("meetings", "alice"), [{"id": "m1"}])
        seeded_store.set("otherApp.theme", "dark")

        recovery.perform_full_rollback()

        assert seeded_store.get_json(section_key("meetings", "alice")) == [{"id": "m1"}]
        assert seeded_store.get("otherApp.theme") == "dark"

    @pytest.mark.asyncio
    async def test_verification_failure(self, seeded_store, recovery) -> None:
        """Test post-restore verification with preserved local changes."""
        await recovery.create_full_backup()
        _change_email(seeded_store, "alice", "new@example.com")

        with pytest.raises(BackupError, match="verification failed"):
            recovery.perform_full_rollback(conflict_strategy=ConflictStrategy.PRESERVE_LOCAL)

        result = recovery.perform_full_rollback(
            conflict_strategy=ConflictStrategy.PRESERVE_LOCAL,
            skip_integrity_check=True,
        )
        assert result["success"] is True

    @pytest.mark.asyncio
    async def test_verification_failure_writes_nothing(self, seeded_store, recovery) -> None:
        """Test that a failed verification leaves every key as it was."""
        await recovery.create_full_backup()
        users = seeded_store.get_json(USERS_KEY)
        users["dave"] = {"id": "dave", "email": "dave@example.com"}
        seeded_store.set_json(USERS_KEY, users)
        seeded_store.set_json(section_key("sessions", "alice"), [{"id": "local-only"}])
        before = seeded_store.dump()

        with pytest.raises(BackupError, match="verification failed"):
            recovery.perform_full_rollback(
                conflict_strategy=ConflictStrategy.MERGE,
                create_pre_rollback_snapshot=False,
            )

        assert seeded_store.dump() == before
        assert seeded_store.get_json(section_key("sessions", "alice")) == [{"id": "local-only"}]

    @pytest.mark.asyncio
    async def test_remote_backup_not_restorable(
        self, seeded_store, extractor, status_store, remote, tmp_path: Path
    ) -> None:
        """Test that remote-source backups cannot be restored."""
        recovery = RecoveryManager(
            seeded_store,
            extractor,
            status_store,
            sink=LocalFileSink(tmp_path),
            remote=remote,
        )
        await recovery.create_full_backup()
        remote_backup = await recovery.create_full_backup(source="remote")

        with pytest.raises(BackupError, match="Only local backups can be restored"):
            recovery.perform_full_rollback(remote_backup.id)

    def test_missing_backup_records_failure(self, seeded_store, extractor, status_store) -> None:
        """Test failure metrics when there is nothing to restore."""
        registry = CollectorRegistry()
        recovery = RecoveryManager(
            seeded_store,
            extractor,
            status_store,
            metrics=MigratorMetrics(registry=registry),
        )

        with pytest.raises(BackupError):
            recovery.perform_full_rollback()

        assert (
            registry.get_sample_value(
                "migrator_rollbacks_total", {"kind": "full", "outcome": "failure"}
            )
            == 1
        )


class TestPartialRollback:
    """Tests for single-user rollback."""

    @pytest.mark.asyncio
    async def test_only_one_user_restored(self, seeded_store, recovery) -> None:
        """Test that other users keep their current data."""
        await recovery.create_full_backup()
        _change_email(seeded_store, "alice", "alice2@example.com")
        _change_email(seeded_store, "bob", "bob2@example.com")
        seeded_store.remove(section_key("sessions", "alice"))

        result = recovery.perform_partial_rollback("alice")

        users = seeded_store.get_json(USERS_KEY)
        assert users["alice"]["email"] == "alice@example.com"
        assert users["bob"]["email"] == "bob2@example.com"
        assert len(seeded_store.get_json(section_key("sessions", "alice"))) == 5
        assert result["user_id"] == "alice"

    @pytest.mark.asyncio
    async def test_unknown_user(self, recovery: RecoveryManager) -> None:
        """Test that the user must exist in the backup."""
        await recovery.create_full_backup()

        with pytest.raises(BackupError, match="User dave not found in backup"):
            recovery.perform_partial_rollback("dave")


def test_perform_conflict_resolution(seeded_store, recovery) -> None:
    """Test writing resolved values, removing keys resolved to None."""
    conflicts = [
        Conflict(key="userStats_alice", local_value={"a": 1}, backup_value={"b": 2}),
        Conflict(key="meetings_bob", local_value=[{"id": "m"}], backup_value=None),
    ]
    seeded_store.set_json("meetings_bob", [{"id": "m"}])

    report = recovery.perform_conflict_resolution(conflicts, ConflictStrategy.PREFER_BACKUP)

    assert report.total_conflicts == 2
    assert seeded_store.get_json("userStats_alice") == {"b": 2}
    assert seeded_store.get("meetings_bob") is None


@pytest.mark.asyncio
async def test_recovery_status(recovery: RecoveryManager) -> None:
    """Test the status summary."""
    empty = recovery.get_recovery_status()
    assert empty["latest_backup"] is None
    assert empty["snapshots"] == 0

    backup = await recovery.create_full_backup()
    recovery.create_snapshot("manual")

    status = recovery.get_recovery_status()
    assert status["latest_backup"]["id"] == backup.id
    assert "data" not in status["latest_backup"]
    assert status["backup_history"] == 1
    assert status["latest_snapshot"]["event"] == "manual"
    assert status["max_snapshots"] == 10
