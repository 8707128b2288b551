"""Step-ordered, resumable transfer of the local dataset into the remote store."""

import time
from contextlib import AsyncExitStack
from typing import Any, Callable, Optional

import structlog

from migrator.exceptions import (
    BackupError,
    ConfigurationError,
    IntegrityError,
    LockError,
    MigratorError,
    TransferError,
    ValidationError,
)
from migrator.extractor import Extractor
from migrator.locking import UserLockManager
from migrator.metrics import MigratorMetrics
from migrator.models import (
    ExportDataset,
    MigrationStatus,
    MigrationStep,
    RunState,
    UserMigrationStatus,
    iso_now,
)
from migrator.remote_store import RemoteStore
from migrator.status_store import MigrationLog, MigrationStatusStore, UserStatusStore
from migrator.validator import DatasetValidator, ValidationResult
from recovery.conflict_resolver import ConflictStrategy
from recovery.recovery_manager import RecoveryManager
from utils.logging import get_logger

ProgressCallback = Callable[[MigrationStatus], None]

LOCK_OWNER = "migration_manager"

# Remote table receiving each exported entity, used by post-migration checks
EXPECTED_TABLES = {
    "users": "users",
    "stats": "user_stats",
    "sessions": "pomodoro_sessions",
    "meetings": "meetings",
}


class MigrationRunResult:
    """Outcome of one call to :meth:`MigrationManager.start`."""

    def __init__(
        self,
        success: bool,
        status: MigrationStatus,
        dry_run: bool = False,
        export: Optional[dict[str, Any]] = None,
        validation: Optional[dict[str, Any]] = None,
        transfer: Optional[dict[str, Any]] = None,
        verification: Optional[dict[str, Any]] = None,
        error: Optional[dict[str, Any]] = None,
    ) -> None:
        self.success = success
        self.status = status
        self.dry_run = dry_run
        self.export = export
        self.validation = validation
        self.transfer = transfer or {}
        self.verification = verification
        self.error = error

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "dry_run": self.dry_run,
            "status": self.status.to_dict(),
            "export": self.export,
            "validation": self.validation,
            "transfer": self.transfer,
            "verification": self.verification,
            "error": self.error,
        }


def _new_transfer_summary() -> dict[str, Any]:
    return {
        "migrated_users": 0,
        "existing_users": 0,
        "migrated_preferences": 0,
        "migrated_stats": 0,
        "migrated_sessions": 0,
        "migrated_meetings": 0,
        "failed_users": [],
        "errors": [],
    }


class MigrationManager:
    """Drives the ordered migration steps and persists their progress.

    Steps run in the fixed order of :class:`MigrationStep`. Users are
    transferred phase by phase (profiles, then preferences, stats, sessions
    and meetings), in batches of ``batch_size``. A user whose transfer fails
    is recorded and skipped by every later phase; the run continues.
    """

    def __init__(
        self,
        extractor: Extractor,
        validator: DatasetValidator,
        recovery: RecoveryManager,
        status_store: MigrationStatusStore,
        remote: Optional[RemoteStore] = None,
        migration_log: Optional[MigrationLog] = None,
        user_status: Optional[UserStatusStore] = None,
        locks: Optional[UserLockManager] = None,
        metrics: Optional[MigratorMetrics] = None,
        progress_callback: Optional[ProgressCallback] = None,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        """Initialize migration manager.

        Args:
            extractor: Builds the export dataset
            validator: Validates the export before any remote write
            recovery: Creates the pre-migration backup and performs rollbacks
            status_store: Persisted MigrationStatus record (this class is its only writer)
            remote: Remote store client (not needed for dry runs)
            migration_log: Bounded textual run log
            user_status: Per-user status map, updated for transferred users
            locks: Per-user locks shared with the hybrid manager
            metrics: Optional metrics collector
            progress_callback: Called with the status after every transition
            logger: Optional logger instance
        """
        self.extractor = extractor
        self.validator = validator
        self.recovery = recovery
        self.status_store = status_store
        self.remote = remote
        self.migration_log = migration_log
        self.user_status = user_status
        self.locks = locks or UserLockManager()
        self.metrics = metrics
        self.progress_callback = progress_callback
        self.logger = logger or get_logger("migration_manager")
        self._step_started: Optional[float] = None

    # Status transitions

    def _save(self, status: MigrationStatus) -> None:
        self.status_store.update(status)
        if self.metrics:
            self.metrics.set_progress(status.progress)
        if self.progress_callback:
            try:
                self.progress_callback(status)
            except Exception as e:
                self.logger.warning("Progress callback failed", error=str(e))

    def _log(self, message: str, level: str = "info", **context: Any) -> None:
        if self.migration_log:
            self.migration_log.append(message, level=level, **context)

    def _begin(self, status: MigrationStatus, step: MigrationStep) -> None:
        status.current_step = step
        self._step_started = time.perf_counter()
        self._save(status)
        self.logger.info("Migration step started", step=str(step))

    def _complete(
        self,
        status: MigrationStatus,
        step: MigrationStep,
        skipped: bool = False,
    ) -> None:
        status.complete_step(step, skipped=skipped)
        if self.metrics and self._step_started is not None:
            self.metrics.observe_step(str(step), time.perf_counter() - self._step_started)
        self._save(status)
        self._log(f"Step {step} completed", step=str(step), skipped=skipped)
        self.logger.info(
            "Migration step completed",
            step=str(step),
            skipped=skipped,
            progress=status.progress,
        )

    def _fail(self, status: MigrationStatus, error: MigratorError) -> None:
        status.record_error(error.message, status.current_step, error.context)
        status.state = RunState.FAILED
        status.end_time = iso_now()
        self._save(status)
        self._log(
            f"Migration failed: {error.message}",
            level="error",
            step=str(status.current_step) if status.current_step else None,
        )
        self.logger.error(
            "Migration failed",
            step=str(status.current_step) if status.current_step else None,
            error=error.message,
            error_type=type(error).__name__,
        )

    # Main entry point

    async def start(
        self,
        skip_backup: bool = False,
        dry_run: bool = False,
        batch_size: int = 10,
        ignore_validation_errors: bool = False,
        backup_id: Optional[str] = None,
        restart: bool = False,
        verify: bool = True,
    ) -> MigrationRunResult:
        """Run (or resume) a migration.

        An unfinished run is resumed after its last completed step unless
        ``restart`` is set. Dry runs stop after the backup step and never
        touch the remote store.

        Args:
            skip_backup: Skip the backup step (the caller took one already)
            dry_run: Stop after export, validation and backup
            batch_size: Users transferred per batch
            ignore_validation_errors: Continue when export validation fails
            backup_id: Backup taken by the caller, recorded for rollback
            restart: Discard an unfinished run and start over
            verify: Run the post-migration remote checks

        Returns:
            MigrationRunResult; ``success`` is False when post-migration
            verification found violations

        Raises:
            ConfigurationError: If no remote store is available for a real run
            ValidationError: If export validation fails and is not ignored
            BackupError: If the pre-migration backup cannot be created
        """
        if batch_size < 1:
            raise ValueError(f"batch_size must be at least 1, got {batch_size}")
        if not dry_run and self.remote is None:
            raise ConfigurationError("A remote store is required to run a migration")

        status = self.status_store.read()
        resuming = (
            not restart
            and not dry_run
            and not status.dry_run
            and status.state in (RunState.RUNNING, RunState.FAILED)
            and bool(status.completed_steps)
        )
        if not resuming:
            status = self.status_store.init(dry_run=dry_run)
        status.state = RunState.RUNNING
        status.end_time = None
        if backup_id:
            status.backup_id = backup_id
        self._save(status)

        self._log(
            "Migration resumed" if resuming else "Migration started",
            dry_run=dry_run,
            next_step=str(status.next_step) if status.next_step else None,
        )
        self.logger.info(
            "Migration run starting",
            resuming=resuming,
            dry_run=dry_run,
            batch_size=batch_size,
            next_step=str(status.next_step) if status.next_step else None,
        )

        try:
            return await self._run(
                status,
                skip_backup=skip_backup,
                dry_run=dry_run,
                batch_size=batch_size,
                ignore_validation_errors=ignore_validation_errors,
                verify=verify,
            )
        except MigratorError as e:
            self._fail(status, e)
            raise
        except Exception as e:
            self._fail(status, TransferError(f"Unexpected migration failure: {e}"))
            raise

    async def _run(
        self,
        status: MigrationStatus,
        skip_backup: bool,
        dry_run: bool,
        batch_size: int,
        ignore_validation_errors: bool,
        verify: bool,
    ) -> MigrationRunResult:
        # The dataset is rebuilt on resume; the export step itself is not repeated
        exported = MigrationStep.EXPORT in status.completed_steps
        if not exported:
            self._begin(status, MigrationStep.EXPORT)
        dataset = self.extractor.extract_all()
        if not exported:
            self._complete(status, MigrationStep.EXPORT)

        validation = self.validator.validate_dataset(dataset)
        if self.metrics:
            self.metrics.set_validation_score(validation.score)
        if MigrationStep.VALIDATE_EXPORT not in status.completed_steps:
            self._begin(status, MigrationStep.VALIDATE_EXPORT)
            self._check_validation(validation, ignore_validation_errors)
            self._complete(status, MigrationStep.VALIDATE_EXPORT)

        if MigrationStep.CREATE_BACKUP not in status.completed_steps:
            self._begin(status, MigrationStep.CREATE_BACKUP)
            if skip_backup:
                self._complete(status, MigrationStep.CREATE_BACKUP, skipped=True)
            else:
                status.backup_id = await self._create_backup()
                self._complete(status, MigrationStep.CREATE_BACKUP)

        if dry_run:
            status.state = RunState.COMPLETED
            status.end_time = iso_now()
            self._save(status)
            self._log("Dry run completed", backup_id=status.backup_id)
            self.logger.info("Dry run completed", backup_id=status.backup_id)
            return MigrationRunResult(
                success=True,
                status=status,
                dry_run=True,
                export=dataset.to_dict(),
                validation=validation.to_dict(),
            )

        transfer = await self._transfer(status, dataset, batch_size)

        verification = None
        if MigrationStep.VALIDATE_MIGRATION not in status.completed_steps and not verify:
            self._begin(status, MigrationStep.VALIDATE_MIGRATION)
            self._complete(status, MigrationStep.VALIDATE_MIGRATION, skipped=True)
        elif MigrationStep.VALIDATE_MIGRATION not in status.completed_steps:
            self._begin(status, MigrationStep.VALIDATE_MIGRATION)
            verification = await self.validate_remote_migration(dataset, status)
            if not verification["is_valid"]:
                error = IntegrityError(
                    "Post-migration verification failed",
                    context={"errors": verification["errors"][:10]},
                )
                self._fail(status, error)
                return MigrationRunResult(
                    success=False,
                    status=status,
                    export=dataset.counts(),
                    validation=validation.to_dict(),
                    transfer=transfer,
                    verification=verification,
                    error=error.to_dict(),
                )
            self._complete(status, MigrationStep.VALIDATE_MIGRATION)

        if MigrationStep.CLEANUP not in status.completed_steps:
            self._begin(status, MigrationStep.CLEANUP)
            await self._cleanup()
            self._complete(status, MigrationStep.CLEANUP)

        status.state = RunState.COMPLETED
        status.end_time = iso_now()
        self._save(status)
        self._log(
            "Migration completed",
            migrated_users=transfer["migrated_users"],
            failed_users=len(status.failed_users),
        )
        self.logger.info(
            "Migration completed",
            migrated_users=transfer["migrated_users"],
            existing_users=transfer["existing_users"],
            failed_users=len(status.failed_users),
            errors=len(status.errors),
        )
        return MigrationRunResult(
            success=True,
            status=status,
            export=dataset.counts(),
            validation=validation.to_dict(),
            transfer=transfer,
            verification=verification,
        )

    def _check_validation(self, validation: ValidationResult, ignore_errors: bool) -> None:
        if validation.is_valid:
            return
        if ignore_errors:
            self.logger.warning(
                "Export validation failed, continuing as requested",
                score=validation.score,
                errors=len(validation.errors),
            )
            self._log("Validation errors ignored", level="warning", score=validation.score)
            return
        raise ValidationError(
            "Export validation failed",
            context={
                "score": validation.score,
                "errors": [e["message"] for e in validation.errors[:10]],
            },
        )

    async def _create_backup(self) -> str:
        try:
            backup = await self.recovery.create_full_backup()
        except BackupError:
            raise
        except Exception as e:
            raise BackupError(f"Failed to create pre-migration backup: {e}") from e
        return backup.id

    async def _cleanup(self) -> None:
        """Post-migration optimization; failure is logged, never fatal."""
        try:
            await self.remote.post_migration_optimization()
        except MigratorError as e:
            self.logger.warning("Post-migration optimization failed", error=e.message)
            self._log("Post-migration optimization failed", level="warning", error=e.message)

    # Transfer

    async def _transfer(
        self,
        status: MigrationStatus,
        dataset: ExportDataset,
        batch_size: int,
    ) -> dict[str, Any]:
        summary = _new_transfer_summary()
        phases = (
            (MigrationStep.MIGRATE_USERS, self._transfer_profile),
            (MigrationStep.MIGRATE_PREFERENCES, self._transfer_preferences),
            (MigrationStep.MIGRATE_STATS, self._transfer_stats),
            (MigrationStep.MIGRATE_SESSIONS, self._transfer_sessions),
            (MigrationStep.MIGRATE_MEETINGS, self._transfer_meetings),
        )
        marked = MigrationStep.MIGRATE_MEETINGS in status.completed_steps

        # Each user stays locked from profile creation until marked migrated
        async with AsyncExitStack() as held:
            await self._lock_users(status, dataset, held, summary)
            for step, transfer_user in phases:
                if step in status.completed_steps:
                    continue
                self._begin(status, step)
                await self._run_phase(status, step, dataset, batch_size, transfer_user, summary)
                self._complete(status, step)

            if not marked:
                self._mark_migrated_users(status)
        summary["failed_users"] = list(status.failed_users)
        return summary

    async def _lock_users(
        self,
        status: MigrationStatus,
        dataset: ExportDataset,
        held: AsyncExitStack,
        summary: dict[str, Any],
    ) -> None:
        """Take the lock of every user still to transfer.

        A user whose lock is busy (a hybrid migration is running for it) is
        recorded as failed and skipped by every phase.
        """
        step = status.next_step or MigrationStep.MIGRATE_USERS
        failed = set(status.failed_users)
        for user_id in dataset.users:
            if user_id in failed:
                continue
            try:
                await held.enter_async_context(self.locks.hold(user_id, LOCK_OWNER))
            except LockError as e:
                self._record_user_failure(status, step, user_id, e, summary)

    def _phase_targets(
        self,
        status: MigrationStatus,
        step: MigrationStep,
        dataset: ExportDataset,
    ) -> list[str]:
        failed = set(status.failed_users)
        if step == MigrationStep.MIGRATE_USERS:
            return [uid for uid in dataset.users if uid not in failed]
        existing = set(status.existing_users)
        return [
            uid
            for uid in dataset.users
            if uid in status.remote_ids and uid not in failed and uid not in existing
        ]

    async def _run_phase(
        self,
        status: MigrationStatus,
        step: MigrationStep,
        dataset: ExportDataset,
        batch_size: int,
        transfer_user: Callable[..., Any],
        summary: dict[str, Any],
    ) -> None:
        targets = self._phase_targets(status, step, dataset)
        total_batches = (len(targets) + batch_size - 1) // batch_size

        for batch_number, start in enumerate(range(0, len(targets), batch_size), start=1):
            batch = targets[start : start + batch_size]
            for user_id in batch:
                try:
                    await transfer_user(status, dataset, user_id, summary)
                except MigratorError as e:
                    self._record_user_failure(status, step, user_id, e, summary)

            # Progress is reported once the whole batch has finished
            self._save(status)
            self.logger.debug(
                "Batch processed",
                step=str(step),
                batch=batch_number,
                total_batches=total_batches,
                users=len(batch),
            )

    def _record_user_failure(
        self,
        status: MigrationStatus,
        step: MigrationStep,
        user_id: str,
        cause: MigratorError,
        summary: dict[str, Any],
    ) -> None:
        error = TransferError(
            f"Failed to transfer user {user_id}: {cause.message}",
            context={"user_id": user_id, "step": str(step), "cause": type(cause).__name__},
        )
        if user_id not in status.failed_users:
            status.failed_users.append(user_id)
        status.record_error(error.message, step, error.context)
        summary["errors"].append(error.to_dict())
        if self.metrics:
            self.metrics.record_user("failed")
        self._log(error.message, level="error", user_id=user_id, step=str(step))
        self.logger.error(
            "User transfer failed",
            user_id=user_id,
            step=str(step),
            error=cause.message,
        )

    async def _transfer_profile(
        self,
        status: MigrationStatus,
        dataset: ExportDataset,
        user_id: str,
        summary: dict[str, Any],
    ) -> None:
        existing_id = await self.remote.get_user_id(user_id)
        if existing_id:
            status.remote_ids[user_id] = str(existing_id)
            if user_id not in status.existing_users:
                status.existing_users.append(user_id)
            summary["existing_users"] += 1
            self.logger.info("Remote profile already exists, skipping user", user_id=user_id)
            return

        profile = {k: v for k, v in dataset.users[user_id].items() if k != "preferences"}
        profile.setdefault("id", user_id)
        status.remote_ids[user_id] = await self.remote.migrate_user(profile)
        summary["migrated_users"] += 1

    async def _transfer_preferences(
        self,
        status: MigrationStatus,
        dataset: ExportDataset,
        user_id: str,
        summary: dict[str, Any],
    ) -> None:
        preferences = dataset.users[user_id].get("preferences")
        if isinstance(preferences, dict):
            await self.remote.upsert_preferences(status.remote_ids[user_id], preferences)
            summary["migrated_preferences"] += 1

    async def _transfer_stats(
        self,
        status: MigrationStatus,
        dataset: ExportDataset,
        user_id: str,
        summary: dict[str, Any],
    ) -> None:
        stats = dataset.stats.get(user_id)
        if isinstance(stats, dict):
            await self.remote.migrate_user_stats(status.remote_ids[user_id], stats)
            summary["migrated_stats"] += 1

    async def _transfer_sessions(
        self,
        status: MigrationStatus,
        dataset: ExportDataset,
        user_id: str,
        summary: dict[str, Any],
    ) -> None:
        sessions = dataset.sessions.get(user_id) or []
        if sessions:
            await self.remote.migrate_sessions(status.remote_ids[user_id], sessions)
            summary["migrated_sessions"] += len(sessions)

    async def _transfer_meetings(
        self,
        status: MigrationStatus,
        dataset: ExportDataset,
        user_id: str,
        summary: dict[str, Any],
    ) -> None:
        meetings = dataset.meetings.get(user_id) or []
        if meetings:
            await self.remote.migrate_meetings(status.remote_ids[user_id], meetings)
            summary["migrated_meetings"] += len(meetings)

    def _mark_migrated_users(self, status: MigrationStatus) -> None:
        """Flag every fully transferred user as migrated for hybrid mode."""
        failed = set(status.failed_users)
        now = iso_now()
        for user_id, remote_id in status.remote_ids.items():
            if user_id in failed:
                continue
            if self.user_status:
                self.user_status.save(
                    UserMigrationStatus(
                        user_id=user_id,
                        migrated=True,
                        needs_migration=False,
                        reason="batch_migration",
                        last_sync=now,
                        migrated_at=now,
                        remote_id=remote_id,
                    )
                )
            if self.metrics:
                outcome = "skipped" if user_id in status.existing_users else "success"
                self.metrics.record_user(outcome)

    # Verification

    def _expected_counts(
        self,
        dataset: ExportDataset,
        status: Optional[MigrationStatus],
    ) -> dict[str, int]:
        if status is None:
            user_ids = list(dataset.users)
        else:
            skipped = set(status.failed_users) | set(status.existing_users)
            user_ids = [uid for uid in status.remote_ids if uid not in skipped]
        return {
            EXPECTED_TABLES["users"]: len(user_ids),
            EXPECTED_TABLES["stats"]: sum(1 for uid in user_ids if uid in dataset.stats),
            EXPECTED_TABLES["sessions"]: sum(
                len(dataset.sessions.get(uid) or []) for uid in user_ids
            ),
            EXPECTED_TABLES["meetings"]: sum(
                len(dataset.meetings.get(uid) or []) for uid in user_ids
            ),
        }

    async def validate_remote_migration(
        self,
        dataset: ExportDataset,
        status: Optional[MigrationStatus] = None,
    ) -> dict[str, Any]:
        """Check remote row counts and referential integrity after a transfer.

        Args:
            dataset: The exported dataset
            status: Run whose transferred users define the expected counts
                (every dataset user when None)

        Returns:
            Dictionary with 'is_valid', 'tables', 'integrity', 'expected' and 'errors'
        """
        if self.remote is None:
            raise ConfigurationError("A remote store is required for verification")

        expected = self._expected_counts(dataset, status)
        try:
            tables = await self.remote.validate_migration()
            integrity = await self.remote.check_referential_integrity()
        except MigratorError as e:
            self.logger.error("Remote verification could not run", error=e.message)
            return {
                "is_valid": False,
                "tables": [],
                "integrity": [],
                "expected": expected,
                "errors": [f"Verification failed: {e.message}"],
            }

        counts = {row.get("table_name"): row.get("record_count") or 0 for row in tables}
        errors = [
            f"{table}: expected at least {count} records, found {counts.get(table, 0)}"
            for table, count in expected.items()
            if count and counts.get(table, 0) < count
        ]
        errors.extend(
            f"{row.get('check_name')}: {row.get('details')}"
            for row in integrity
            if row.get("status") == "VIOLATION"
        )

        self.logger.info(
            "Remote verification completed",
            is_valid=not errors,
            violations=len(errors),
        )
        return {
            "is_valid": not errors,
            "tables": tables,
            "integrity": integrity,
            "expected": expected,
            "errors": errors,
        }

    # Rollback and status

    def rollback(
        self,
        conflict_strategy: ConflictStrategy = ConflictStrategy.PREFER_BACKUP,
    ) -> dict[str, Any]:
        """Restore the pre-migration state and clear the migration status.

        Users flagged as migrated by the rolled-back run become unmigrated.

        Raises:
            BackupError: If no migration was started or no backup is available
        """
        status = self.status_store.read()
        if not status.started:
            raise BackupError("No migration to roll back")

        result = self.recovery.perform_full_rollback(
            backup_id=status.backup_id,
            conflict_strategy=conflict_strategy,
        )
        self.status_store.clear()

        if self.user_status:
            for user_id in status.remote_ids:
                if user_id in status.existing_users:
                    continue
                self.user_status.save(
                    UserMigrationStatus(user_id=user_id, reason="rolled_back")
                )

        self._log("Migration rolled back", backup_id=result["backup_id"])
        self.logger.info("Migration rolled back", backup_id=result["backup_id"])
        return result

    def get_status(self) -> dict[str, Any]:
        """Current run status plus the most recent log entries."""
        status = self.status_store.read()
        recent = self.migration_log.entries()[-20:] if self.migration_log else []
        return {**status.to_dict(), "recent_log": recent}
