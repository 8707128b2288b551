"""End-to-end scenarios over an in-memory local store and a mocked remote store."""

import json

import pytest

from migrator.events import EventType
from migrator.extractor import Extractor
from migrator.local_store import MemoryLocalStore, section_key
from migrator.migration_manager import MigrationManager
from migrator.models import MigrationStep, RunState, SyncOperation
from migrator.orchestrator import Orchestrator
from migrator.sync_queue import SyncQueue
from migrator.validator import DatasetValidator

pytestmark = pytest.mark.integration


class TestScenarioValidDataset:
    """Three users with five sessions each validate cleanly."""

    def test_all_records_valid(self, extractor, validator):
        """Test that the seeded dataset is ready for migration."""
        dataset = extractor.extract_all()
        result = validator.validate_dataset(dataset)

        assert result.is_valid is True
        assert result.summary["valid_users"] == 3
        assert result.summary["valid_sessions"] == 15
        assert result.summary["total_meetings"] == 0
        assert result.score >= 90
        messages = [r["message"] for r in result.recommendations]
        assert any("ready for migration" in m for m in messages)

    def test_analysis_agrees(self, extractor):
        """Test that the extractor's analysis finds no issues."""
        analysis = extractor.analyze(extractor.extract_all())

        assert analysis["issues"] == []
        assert analysis["summary"]["sessions"] == 15
        assert analysis["recommendations"][-1]["type"] == "ready"


class TestScenarioInvertedSession:
    """A session ending before it starts is invalid without invalidating its user."""

    def test_time_range_rule(self, seed_factory):
        """Test the valid_time_range rule on an inverted session."""
        raw = seed_factory()
        sessions = json.loads(raw[section_key("sessions", "alice")])
        sessions[0]["endTime"] = "2024-01-01T08:00:00.000Z"
        raw[section_key("sessions", "alice")] = json.dumps(sessions)

        dataset = Extractor(MemoryLocalStore(raw)).extract_all()
        result = DatasetValidator().validate_dataset(dataset)

        rules = [r for r in result.results["business_rules"] if r["rule"] == "valid_time_range"]
        assert len(rules) == 1
        assert rules[0]["id"] == "alice-session-0"
        assert rules[0]["severity"] == "error"

        session_result = next(
            r for r in result.results["sessions"] if r["id"] == "alice-session-0"
        )
        assert session_result["valid"] is False
        assert result.summary["invalid_sessions"] == 1
        assert result.summary["valid_users"] == 3
        assert result.is_valid is True
        assert result.score < 100


class TestScenarioIntegrityViolation:
    """A remote integrity violation makes the safe strategy roll back."""

    @pytest.mark.asyncio
    async def test_safe_strategy_rolls_back(self, config, seeded_store, remote):
        """Test automatic rollback after failed post-migration verification."""
        remote.check_referential_integrity.return_value = [
            {
                "check_name": "sessions_have_users",
                "status": "VIOLATION",
                "details": "2 orphaned sessions",
            }
        ]
        orchestrator = Orchestrator.from_config(config, store=seeded_store, remote=remote)
        rollbacks = []
        orchestrator.events.subscribe(EventType.ROLLBACK_COMPLETE, rollbacks.append)

        result = await orchestrator.start_migration(strategy="safe")

        assert result.success is False
        assert "rolled back to backup" in result.message
        assert result.error["type"] == "IntegrityError"
        assert result.payload["rollback"]["success"] is True
        assert len(rollbacks) == 1
        assert rollbacks[0].data["automatic"] is True

        backup_id = result.payload["rollback"]["backup_id"]
        assert backup_id in result.message
        assert orchestrator.migration_manager.status_store.read().started is False
        statuses = orchestrator.hybrid_manager.user_status.all()
        assert all(not status.migrated for status in statuses.values())
        assert orchestrator.hybrid_manager.enabled is False

    @pytest.mark.asyncio
    async def test_safe_strategy_succeeds(self, config, seeded_store, remote):
        """Test the same run without violations enables hybrid mode."""
        orchestrator = Orchestrator.from_config(config, store=seeded_store, remote=remote)

        result = await orchestrator.start_migration(strategy="safe")

        assert result.success is True
        assert result.payload["transfer"]["migrated_users"] == 3
        assert result.payload["transfer"]["migrated_sessions"] == 15
        assert orchestrator.hybrid_manager.enabled is True
        steps = [step["step"] for step in result.payload["steps"]]
        assert steps == [
            "health_check",
            "backup",
            "export",
            "validate",
            "migrate",
            "verify",
            "hybrid",
        ]


class TestScenarioDryRun:
    """A dry run stops after the backup and never writes remotely."""

    @pytest.mark.asyncio
    async def test_dry_run_steps(self, extractor, validator, recovery, status_store, remote):
        """Test completed steps and payload of a dry run."""
        manager = MigrationManager(extractor, validator, recovery, status_store, remote=remote)

        result = await manager.start(dry_run=True)

        assert result.success is True
        assert result.status.completed_steps == [
            MigrationStep.EXPORT,
            MigrationStep.VALIDATE_EXPORT,
            MigrationStep.CREATE_BACKUP,
        ]
        assert result.status.state == RunState.COMPLETED
        assert result.status.backup_id is not None
        assert set(result.export["users"]) == {"alice", "bob", "carol"}
        assert result.validation["is_valid"] is True
        assert remote.method_calls == []

    @pytest.mark.asyncio
    async def test_orchestrated_dry_run_without_remote(self, config, seeded_store):
        """Test that a dry run needs no remote store."""
        orchestrator = Orchestrator.from_config(config, store=seeded_store)

        result = await orchestrator.start_migration(dry_run=True)

        assert result.success is True
        assert result.payload["dry_run"] is True
        run_steps = result.payload["run"]["status"]["completed_steps"]
        assert run_steps == ["export", "validate-export", "create-backup"]


class TestScenarioSyncQueueExhaustion:
    """A sync item that keeps failing is dropped after its third attempt."""

    @pytest.mark.asyncio
    async def test_item_permanently_failed(self, seeded_store):
        """Test that the item is removed and recorded as failed."""
        queue = SyncQueue(seeded_store, max_attempts=3)
        item = queue.enqueue(SyncOperation.CREATE_SESSION, "alice", {"session_id": "s1"})
        calls = []

        async def always_fails(queued):
            calls.append(queued.id)
            raise RuntimeError("remote unavailable")

        first = await queue.drain(always_fails)
        second = await queue.drain(always_fails)
        assert first["retried"] == 1
        assert second["retried"] == 1
        assert len(queue) == 1

        third = await queue.drain(always_fails)
        assert third["failed"] == 1
        assert third["failed_items"] == [item.id]
        assert len(queue) == 0
        assert queue.failures()[-1]["id"] == item.id
        assert queue.failures()[-1]["attempts"] == 3

        fourth = await queue.drain(always_fails)
        assert fourth["processed"] == 0
        assert calls == [item.id] * 3
