"""Top-level facade sequencing extraction, backup, migration and hybrid mode."""

from enum import StrEnum
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

import structlog

from migrator.config import MigratorConfig
from migrator.events import EventBus, EventType
from migrator.exceptions import ConfigurationError, IntegrityError, MigratorError, ValidationError
from migrator.extractor import Extractor
from migrator.health_check import HealthChecker
from migrator.hybrid_manager import HybridManager
from migrator.local_store import FileLocalStore, LocalStore
from migrator.local_users import LocalUserRepository
from migrator.locking import UserLockManager
from migrator.metrics import MigratorMetrics
from migrator.migration_manager import MigrationManager, MigrationRunResult
from migrator.models import generate_id, iso_now
from migrator.remote_store import RemoteStore
from migrator.status_store import MigrationLog, MigrationStatusStore, UserStatusStore
from migrator.sync_queue import SyncQueue
from migrator.validator import DatasetValidator
from recovery.backup_sink import BackupSink, LocalFileSink, S3BackupSink
from recovery.compressor import PayloadCompressor
from recovery.conflict_resolver import ConflictStrategy
from recovery.recovery_manager import RecoveryManager
from utils.logging import bind_operation, get_logger, unbind_operation

MAX_OPERATION_HISTORY = 50


class MigrationStrategy(StrEnum):
    SAFE = "safe"
    FAST = "fast"
    HYBRID = "hybrid"


class OperationResult:
    """Uniform outcome of every public orchestrator operation."""

    def __init__(
        self,
        success: bool,
        operation: str,
        operation_id: str,
        payload: Optional[dict[str, Any]] = None,
        error: Optional[dict[str, Any]] = None,
    ) -> None:
        """Initialize operation result.

        Args:
            success: Whether the operation achieved its goal
            operation: Operation name (migration, health_check, rollback, ...)
            operation_id: Identifier of this invocation
            payload: Operation-specific result data
            error: Error dictionary ({type, message, context}) on failure
        """
        self.success = success
        self.operation = operation
        self.operation_id = operation_id
        self.payload = payload or {}
        self.error = error

    @property
    def message(self) -> str:
        if self.error:
            return str(self.error.get("message", ""))
        return f"{self.operation} completed"

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "operation": self.operation,
            "operation_id": self.operation_id,
            "message": self.message,
            "payload": self.payload,
            "error": self.error,
        }


def _error_dict(error: Exception) -> dict[str, Any]:
    if isinstance(error, MigratorError):
        return error.to_dict()
    return {"type": type(error).__name__, "message": str(error), "context": {}}


class Orchestrator:
    """Selects a migration strategy and runs it over the engine components.

    Progress and lifecycle are published on :attr:`events`. Every public
    operation returns an :class:`OperationResult`; errors never escape.
    """

    def __init__(
        self,
        config: MigratorConfig,
        extractor: Extractor,
        validator: DatasetValidator,
        recovery: RecoveryManager,
        migration_manager: MigrationManager,
        hybrid_manager: Optional[HybridManager] = None,
        health_checker: Optional[HealthChecker] = None,
        remote: Optional[RemoteStore] = None,
        events: Optional[EventBus] = None,
        metrics: Optional[MigratorMetrics] = None,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        """Initialize orchestrator.

        Args:
            config: Migrator configuration (strategy and run defaults)
            extractor: Local store extractor
            validator: Dataset validator
            recovery: Recovery manager
            migration_manager: Step-ordered migration driver
            hybrid_manager: Dual-store manager (None disables hybrid mode)
            health_checker: Health checker (built from the components if None)
            remote: Remote store client
            events: Event bus (a new one is created if None)
            metrics: Optional metrics collector
            logger: Optional logger instance
        """
        self.config = config
        self.extractor = extractor
        self.validator = validator
        self.recovery = recovery
        self.migration_manager = migration_manager
        self.hybrid_manager = hybrid_manager
        self.remote = remote
        self.events = events or EventBus()
        self.metrics = metrics
        self.logger = logger or get_logger("orchestrator")
        self.health_checker = health_checker or HealthChecker(
            extractor,
            validator,
            recovery,
            connection_probe=hybrid_manager.test_connection if hybrid_manager else None,
        )

        self.current_operation: Optional[dict[str, Any]] = None
        self.operation_history: list[dict[str, Any]] = []

    @classmethod
    def from_config(
        cls,
        config: MigratorConfig,
        store: Optional[LocalStore] = None,
        remote: Optional[RemoteStore] = None,
        sink: Optional[BackupSink] = None,
        metrics: Optional[MigratorMetrics] = None,
        events: Optional[EventBus] = None,
    ) -> "Orchestrator":
        """Wire every component from configuration.

        Args:
            config: Migrator configuration
            store: Local store (opened from ``config.local_store`` if None)
            remote: Remote store (built from ``config.remote`` if None and configured)
            sink: Backup file sink (built from ``config.backup`` if None)
            metrics: Optional metrics collector
            events: Optional event bus

        Returns:
            Orchestrator with all components sharing one store, lock manager and metrics
        """
        if store is None:
            store = FileLocalStore(
                Path(config.local_store.path),
                create_if_missing=config.local_store.create_if_missing,
            )
        if remote is None and config.remote is not None:
            remote = RemoteStore(config.remote)
        if sink is None:
            if config.backup.s3 is not None:
                sink = S3BackupSink(config.backup.s3)
            elif config.backup.download_dir:
                sink = LocalFileSink(Path(config.backup.download_dir))

        extractor = Extractor(store, large_dataset_bytes=config.validation.large_dataset_bytes)
        validator = DatasetValidator(
            batch_size=config.validation.batch_size,
            max_errors=config.validation.max_errors,
            large_dataset_bytes=config.validation.large_dataset_bytes,
        )
        status_store = MigrationStatusStore(store)
        user_status = UserStatusStore(store)
        locks = UserLockManager()
        recovery = RecoveryManager(
            store,
            extractor,
            status_store,
            sink=sink,
            remote=remote,
            compressor=PayloadCompressor(compression_level=config.backup.compression_level),
            max_snapshots=config.backup.max_snapshots,
            max_backup_history=config.backup.max_backup_history,
            metrics=metrics,
        )
        migration_manager = MigrationManager(
            extractor,
            validator,
            recovery,
            status_store,
            remote=remote,
            migration_log=MigrationLog(store),
            user_status=user_status,
            locks=locks,
            metrics=metrics,
        )
        hybrid_manager = HybridManager(
            LocalUserRepository(store),
            user_status,
            SyncQueue(store, max_attempts=config.hybrid.max_attempts, metrics=metrics),
            remote=remote,
            recovery=recovery,
            locks=locks,
            config=config.hybrid,
            metrics=metrics,
        )
        return cls(
            config,
            extractor,
            validator,
            recovery,
            migration_manager,
            hybrid_manager=hybrid_manager,
            remote=remote,
            events=events,
            metrics=metrics,
        )

    async def connect_remote(self) -> bool:
        """Open the remote connection pool.

        A failure is logged and leaves the hybrid manager offline; local
        operations (health check, dry run, rollback) keep working.

        Returns:
            Whether the remote store is connected
        """
        if self.remote is None:
            return False
        if not self.remote.connected:
            try:
                await self.remote.connect()
            except MigratorError as e:
                self.logger.warning("Remote store unavailable", error=e.message)
                if self.hybrid_manager is not None:
                    await self.hybrid_manager.set_online(False)
                return False
        if self.hybrid_manager is not None:
            await self.hybrid_manager.set_online(True)
        return True

    # Operation bookkeeping

    def _begin_operation(self, kind: str, **details: Any) -> dict[str, Any]:
        operation = {
            "id": generate_id(kind),
            "type": kind,
            "status": "running",
            "start_time": iso_now(),
            **details,
        }
        self.current_operation = operation
        bind_operation(operation["id"], kind)
        self.events.emit(EventType.OPERATION_START, **operation)
        self.logger.info("Operation started", **details)
        return operation

    def _end_operation(
        self,
        operation: dict[str, Any],
        payload: dict[str, Any],
        error: Optional[dict[str, Any]] = None,
    ) -> OperationResult:
        success = error is None
        operation.update(
            status="completed" if success else "failed",
            end_time=iso_now(),
            error=error["message"] if error else None,
        )
        self.operation_history.append(dict(operation))
        del self.operation_history[:-MAX_OPERATION_HISTORY]
        if self.current_operation is operation:
            self.current_operation = None

        if success:
            self.events.emit(EventType.OPERATION_COMPLETE, operation_id=operation["id"])
            self.logger.info("Operation completed")
        else:
            self.events.emit(EventType.OPERATION_ERROR, operation_id=operation["id"], error=error)
            self.logger.error("Operation failed", error=error["message"])
        unbind_operation()

        return OperationResult(
            success=success,
            operation=operation["type"],
            operation_id=operation["id"],
            payload=payload,
            error=error,
        )

    async def _execute(
        self,
        kind: str,
        action: Callable[[dict[str, Any]], Awaitable[dict[str, Any]]],
        **details: Any,
    ) -> OperationResult:
        """Run one operation, converting every outcome into an OperationResult.

        ``action`` may report a handled failure by returning a payload with an
        ``error`` entry.
        """
        operation = self._begin_operation(kind, **details)
        try:
            payload = await action(operation)
        except Exception as e:
            if not isinstance(e, MigratorError):
                self.logger.error("Unexpected operation failure", error=str(e), exc_info=True)
            return self._end_operation(operation, {}, _error_dict(e))
        error = payload.pop("error", None)
        return self._end_operation(operation, payload, error)

    def _progress(self, step: str, progress: int, **detail: Any) -> None:
        self.events.emit(EventType.MIGRATION_PROGRESS, step=step, progress=progress, **detail)

    # Migration

    async def start_migration(
        self,
        strategy: Optional[str] = None,
        dry_run: bool = False,
        skip_backup: Optional[bool] = None,
        batch_size: Optional[int] = None,
        ignore_validation_errors: Optional[bool] = None,
        enable_hybrid: Optional[bool] = None,
        resume: bool = False,
    ) -> OperationResult:
        """Run a migration with the given (or configured) strategy.

        Args:
            strategy: safe, fast or hybrid (configured default if None)
            dry_run: Export, validate and back up without remote writes
            skip_backup: Skip the full backup (defaults to not ``auto_backup``)
            batch_size: Users per batch (configured default if None)
            ignore_validation_errors: Continue despite a failed export validation
            enable_hybrid: Activate hybrid mode after a successful safe run
            resume: Continue an unfinished run instead of starting over

        Returns:
            OperationResult whose payload lists the executed steps
        """
        defaults = self.config.migration
        options = {
            "dry_run": dry_run,
            "skip_backup": (not defaults.auto_backup) if skip_backup is None else skip_backup,
            "batch_size": batch_size or defaults.batch_size,
            "ignore_validation_errors": (
                defaults.ignore_validation_errors
                if ignore_validation_errors is None
                else ignore_validation_errors
            ),
            "enable_hybrid": (
                defaults.enable_hybrid_mode if enable_hybrid is None else enable_hybrid
            ),
            "resume": resume,
        }

        async def run(operation: dict[str, Any]) -> dict[str, Any]:
            try:
                chosen = MigrationStrategy(operation["strategy"])
            except ValueError:
                raise ConfigurationError(
                    f"Unknown migration strategy: {operation['strategy']}"
                ) from None
            if not dry_run and self.remote is None:
                raise ConfigurationError("A remote store is required to run a migration")

            if chosen == MigrationStrategy.SAFE:
                payload = await self._execute_safe(options)
            elif chosen == MigrationStrategy.FAST:
                payload = await self._execute_fast(options)
            else:
                payload = await self._execute_hybrid(options)

            if self.metrics:
                outcome = "dry_run" if dry_run else ("failure" if "error" in payload else "success")
                self.metrics.record_run(str(chosen), outcome)
            return payload

        result = await self._execute(
            "migration",
            run,
            strategy=strategy or defaults.strategy,
            dry_run=dry_run,
        )
        if not result.success and self.metrics and result.payload == {}:
            self.metrics.record_run(strategy or defaults.strategy, "failure")
        return result

    async def _run_manager(
        self,
        options: dict[str, Any],
        backup_id: Optional[str],
        batch_size: int,
        verify: bool,
    ) -> MigrationRunResult:
        return await self.migration_manager.start(
            skip_backup=True,
            dry_run=options["dry_run"],
            batch_size=batch_size,
            ignore_validation_errors=options["ignore_validation_errors"],
            backup_id=backup_id,
            restart=not options["resume"],
            verify=verify,
        )

    async def _execute_safe(self, options: dict[str, Any]) -> dict[str, Any]:
        steps: list[dict[str, Any]] = []

        if self.config.migration.preflight_health_check:
            report = await self.health_checker.check_health(self._health_progress)
            steps.append({"step": "health_check", "success": True, "overall": report.overall})
            if report.overall == "critical":
                raise ValidationError(
                    "Pre-flight health check failed",
                    context={"recommendations": report.recommendations},
                )

        self._progress("backup", 10)
        backup_id = None
        if not options["skip_backup"]:
            backup = await self.recovery.create_full_backup(
                include_snapshots=True,
                compress=self.config.backup.compress,
                checksum=self.config.backup.checksum,
            )
            backup_id = backup.id
        steps.append(
            {"step": "backup", "success": True, "backup_id": backup_id, "skipped": not backup_id}
        )

        self._progress("export", 25)
        dataset = self.extractor.extract_all()
        steps.append({"step": "export", "success": True, "counts": dataset.counts()})

        self._progress("validate", 40)
        validation = self.validator.validate_dataset(dataset)
        steps.append(
            {"step": "validate", "success": validation.is_valid, "score": validation.score}
        )
        if (
            self.config.migration.validate_data
            and not validation.is_valid
            and not options["ignore_validation_errors"]
        ):
            raise ValidationError(
                "Data validation failed",
                context={
                    "score": validation.score,
                    "errors": [e["message"] for e in validation.errors[:10]],
                },
            )

        self._progress("migrate", 60)
        run = await self._run_manager(
            {**options, "ignore_validation_errors": True},
            backup_id,
            options["batch_size"],
            verify=True,
        )
        steps.append({"step": "migrate", "success": run.success, "result": run.to_dict()})

        if options["dry_run"]:
            self._progress("complete", 100)
            return {"strategy": "safe", "dry_run": True, "steps": steps, "run": run.to_dict()}

        self._progress("verify", 80)
        if not run.success:
            steps.append({"step": "verify", "success": False})
            return {
                "strategy": "safe",
                "steps": steps,
                **self._auto_rollback(backup_id, run),
            }
        steps.append({"step": "verify", "success": True})

        if options["enable_hybrid"] and self.hybrid_manager is not None:
            self._progress("hybrid", 95)
            await self._enable_hybrid(start_sync_loop=False)
            steps.append({"step": "hybrid", "success": True})

        self._progress("complete", 100)
        return {"strategy": "safe", "steps": steps, "transfer": run.transfer}

    def _auto_rollback(self, backup_id: Optional[str], run: MigrationRunResult) -> dict[str, Any]:
        """Restore the pre-migration backup after failed verification."""
        verification = run.verification or {}
        self.logger.warning(
            "Post-migration verification failed, rolling back",
            backup_id=backup_id,
            errors=len(verification.get("errors", [])),
        )
        if backup_id is None:
            error = IntegrityError(
                "Post-migration verification failed; no backup was taken, nothing rolled back",
                context={"errors": verification.get("errors", [])[:10]},
            )
            return {"verification": verification, "error": error.to_dict()}

        try:
            rollback = self.migration_manager.rollback()
        except MigratorError as e:
            self.events.emit(EventType.ROLLBACK_ERROR, backup_id=backup_id, error=e.to_dict())
            error = IntegrityError(
                f"Post-migration verification failed and rollback to backup {backup_id} "
                f"failed: {e.message}",
                context={"errors": verification.get("errors", [])[:10]},
            )
            return {"verification": verification, "error": error.to_dict()}

        self.events.emit(EventType.ROLLBACK_COMPLETE, backup_id=backup_id, automatic=True)
        error = IntegrityError(
            f"Post-migration verification failed; rolled back to backup {backup_id}",
            context={"errors": verification.get("errors", [])[:10]},
        )
        return {
            "verification": verification,
            "rollback": rollback,
            "error": error.to_dict(),
        }

    async def _execute_fast(self, options: dict[str, Any]) -> dict[str, Any]:
        steps: list[dict[str, Any]] = []

        self._progress("backup", 5)
        snapshot = self.recovery.create_snapshot("fast_migration", "Pre-fast-migration snapshot")
        steps.append({"step": "backup", "success": True, "snapshot_id": snapshot.id})

        self._progress("migrate", 30)
        run = await self._run_manager(
            options,
            snapshot.id,
            options["batch_size"] * 2,
            verify=False,
        )
        steps.append({"step": "migrate", "success": run.success, "result": run.to_dict()})

        self._progress("complete", 100)
        return {
            "strategy": "fast",
            "dry_run": options["dry_run"],
            "steps": steps,
            "transfer": run.transfer,
        }

    async def _execute_hybrid(self, options: dict[str, Any]) -> dict[str, Any]:
        if self.hybrid_manager is None:
            raise ConfigurationError("Hybrid mode is not available")
        if options["dry_run"]:
            raise ConfigurationError("The hybrid strategy does not support dry runs")

        steps: list[dict[str, Any]] = []
        self._progress("enable_hybrid", 10)
        await self._enable_hybrid(start_sync_loop=False)
        steps.append({"step": "enable_hybrid", "success": True})

        self._progress("progressive_migration", 30)
        user_ids = sorted(self.extractor.extract_all().users)
        migrated = 0
        failed: list[dict[str, Any]] = []
        for index, user_id in enumerate(user_ids, start=1):
            try:
                result = await self.hybrid_manager.migrate_user(user_id)
            except MigratorError as e:
                self.logger.warning("User migration failed", user_id=user_id, error=e.message)
                failed.append({"user_id": user_id, "errors": [e.message]})
            else:
                if result["success"]:
                    migrated += 1
                else:
                    failed.append({"user_id": user_id, "errors": result["errors"]})
            self._progress(
                "progressive_migration",
                round(30 + 60 * index / len(user_ids)),
                detail=f"{migrated}/{len(user_ids)} users migrated",
            )

        steps.append(
            {
                "step": "progressive_migration",
                "success": True,
                "migrated_users": migrated,
                "total_users": len(user_ids),
                "failed_users": failed,
            }
        )
        self._progress("complete", 100)
        return {"strategy": "hybrid", "steps": steps}

    # Health check and rollback

    def _health_progress(self, step: str, progress: int) -> None:
        self.events.emit(EventType.HEALTH_CHECK_PROGRESS, step=step, progress=progress)

    async def perform_health_check(self) -> OperationResult:
        async def run(_operation: dict[str, Any]) -> dict[str, Any]:
            report = await self.health_checker.check_health(self._health_progress)
            return report.to_dict()

        return await self._execute("health_check", run)

    async def rollback_migration(
        self,
        backup_id: Optional[str] = None,
        strategy: ConflictStrategy = ConflictStrategy.PREFER_BACKUP,
    ) -> OperationResult:
        """Restore the local store from a backup.

        Without a backup id the backup of the recorded migration run (or the
        latest full backup) is used, and users migrated by that run are
        marked unmigrated again.
        """

        async def run(_operation: dict[str, Any]) -> dict[str, Any]:
            try:
                status = self.migration_manager.status_store.read()
                if backup_id is None and status.started:
                    result = self.migration_manager.rollback(conflict_strategy=strategy)
                else:
                    result = self.recovery.perform_full_rollback(
                        backup_id=backup_id,
                        conflict_strategy=strategy,
                    )
            except MigratorError as e:
                self.events.emit(EventType.ROLLBACK_ERROR, backup_id=backup_id, error=e.to_dict())
                raise
            self.events.emit(EventType.ROLLBACK_COMPLETE, backup_id=result["backup_id"])
            return result

        return await self._execute("rollback", run, backup_id=backup_id)

    # Hybrid mode

    async def _enable_hybrid(self, start_sync_loop: bool) -> dict[str, Any]:
        if self.hybrid_manager.enabled:
            return {"already_enabled": True, **self.hybrid_manager.get_hybrid_status()}
        status = self.hybrid_manager.enable(start_sync_loop=start_sync_loop)
        self.events.emit(EventType.HYBRID_MODE_ENABLED, timestamp=iso_now())
        return status

    async def enable_hybrid_mode(self, start_sync_loop: bool = False) -> OperationResult:
        async def run(_operation: dict[str, Any]) -> dict[str, Any]:
            if self.hybrid_manager is None:
                raise ConfigurationError("Hybrid mode is not available")
            return await self._enable_hybrid(start_sync_loop)

        return await self._execute("enable_hybrid", run)

    async def disable_hybrid_mode(self) -> OperationResult:
        """Drain the sync queue and turn hybrid mode off."""

        async def run(_operation: dict[str, Any]) -> dict[str, Any]:
            if self.hybrid_manager is None or not self.hybrid_manager.enabled:
                return {"already_disabled": True}
            report = await self.hybrid_manager.disable()
            self.events.emit(EventType.HYBRID_MODE_DISABLED, timestamp=iso_now())
            return {"disabled": True, "sync": report}

        return await self._execute("disable_hybrid", run)

    async def sync_now(self) -> OperationResult:
        """Drain the sync queue once."""

        async def run(_operation: dict[str, Any]) -> dict[str, Any]:
            if self.hybrid_manager is None:
                raise ConfigurationError("Hybrid mode is not available")
            return await self.hybrid_manager.process_sync_queue()

        return await self._execute("sync", run)

    # Status

    def get_status(self) -> dict[str, Any]:
        hybrid = self.hybrid_manager
        return {
            "timestamp": iso_now(),
            "current_operation": self.current_operation,
            "migration": self.migration_manager.get_status(),
            "recovery": self.recovery.get_recovery_status(),
            "hybrid_mode": {
                "available": hybrid is not None,
                "enabled": bool(hybrid and hybrid.enabled),
                "status": hybrid.get_hybrid_status() if hybrid else None,
            },
            "migration_history": [
                op for op in self.operation_history if op["type"] == "migration"
            ],
            "options": self.config.migration.model_dump(),
        }

    def get_operation_history(self) -> list[dict[str, Any]]:
        return [dict(op) for op in self.operation_history]

    async def cleanup(self) -> None:
        """Stop background work and close the remote connection."""
        self.current_operation = None
        if self.hybrid_manager is not None:
            await self.hybrid_manager.shutdown()
        if self.remote is not None:
            await self.remote.disconnect()
        self.logger.debug("Orchestrator cleanup completed")
