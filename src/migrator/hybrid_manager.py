"""Dual-store operation during a gradual cut-over.

The local store stays authoritative: every mutating call is applied locally
first. Calls acting for a migrated user are mirrored to the remote store when
connectivity is available; a mirror that cannot run now is queued for retry
and never fails the local call.
"""

import asyncio
import contextlib
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import structlog

from migrator.config import HybridConfig
from migrator.exceptions import ConfigurationError, MigratorError, SyncError
from migrator.local_users import LocalUserRepository
from migrator.locking import UserLockManager
from migrator.metrics import MigratorMetrics
from migrator.models import (
    SyncOperation,
    SyncQueueItem,
    UserMigrationStatus,
    iso_now,
    parse_timestamp,
)
from migrator.remote_store import RemoteStore
from migrator.status_store import UserStatusStore
from migrator.sync_queue import SyncQueue
from recovery.recovery_manager import RecoveryManager
from utils.logging import get_logger

LOCK_OWNER = "hybrid_manager"

# Counters merged by maximum so that neither source can make them regress
MONOTONIC_COUNTERS = (
    "totalSessions",
    "completedSessions",
    "totalMinutes",
    "completedMinutes",
    "longestStreak",
)

_EPOCH = datetime.fromtimestamp(0, tz=timezone.utc)


def merge_stats(
    remote_stats: Optional[dict[str, Any]],
    local_stats: Optional[dict[str, Any]],
) -> Optional[dict[str, Any]]:
    """Merge the two statistics records of one user.

    Fields come from the side with the newer ``updatedAt``; counters take the
    maximum of both sides.
    """
    if not local_stats:
        return remote_stats
    if not remote_stats:
        return local_stats

    local_updated = parse_timestamp(local_stats.get("updatedAt")) or _EPOCH
    remote_updated = parse_timestamp(remote_stats.get("updatedAt")) or _EPOCH
    if local_updated > remote_updated:
        newer, older = local_stats, remote_stats
    else:
        newer, older = remote_stats, local_stats

    merged = {**older, **{k: v for k, v in newer.items() if v is not None}}
    for counter in MONOTONIC_COUNTERS:
        merged[counter] = max(remote_stats.get(counter) or 0, local_stats.get(counter) or 0)
    return merged


class HybridManager:
    """Wraps local user operations with opportunistic remote mirroring."""

    def __init__(
        self,
        local_users: LocalUserRepository,
        user_status: UserStatusStore,
        sync_queue: SyncQueue,
        remote: Optional[RemoteStore] = None,
        recovery: Optional[RecoveryManager] = None,
        locks: Optional[UserLockManager] = None,
        config: Optional[HybridConfig] = None,
        metrics: Optional[MigratorMetrics] = None,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        """Initialize hybrid manager.

        Args:
            local_users: Local-side user operations
            user_status: Per-user migration status map
            sync_queue: Queue of deferred remote writes
            remote: Remote store client (None behaves as permanently offline)
            recovery: Recovery manager, used to restore single users
            locks: Per-user locks shared with the migration manager
            config: Hybrid mode configuration
            metrics: Optional metrics collector
            logger: Optional logger instance
        """
        self.local_users = local_users
        self.user_status = user_status
        self.sync_queue = sync_queue
        self.remote = remote
        self.recovery = recovery
        self.locks = locks or UserLockManager()
        self.config = config or HybridConfig()
        self.metrics = metrics
        self.logger = logger or get_logger("hybrid_manager")

        self._online = True
        self._sync_task: Optional[asyncio.Task] = None
        self._background: set[asyncio.Task] = set()

    # Mode and connectivity

    @property
    def enabled(self) -> bool:
        return bool(self.user_status.get_summary().get("enabled", False))

    def is_online(self) -> bool:
        return self._online and self.remote is not None

    async def set_online(self, online: bool) -> Optional[dict[str, Any]]:
        """Record a connectivity change; reconnecting drains the sync queue.

        Returns:
            The drain report when the queue was processed
        """
        was_online = self._online
        self._online = online
        if online and not was_online:
            self.logger.info("Connection restored, processing sync queue")
            return await self.process_sync_queue()
        if not online and was_online:
            self.logger.warning("Connection lost, continuing with local store only")
        return None

    async def test_connection(self) -> bool:
        if not self.is_online():
            return False
        return await self.remote.test_connection()

    def enable(self, start_sync_loop: bool = False) -> dict[str, Any]:
        """Turn hybrid mode on.

        Args:
            start_sync_loop: Also start the periodic sync queue drain

        Returns:
            The hybrid status summary
        """
        summary = self.user_status.get_summary()
        fields: dict[str, Any] = {"mode": "hybrid", "enabled": True}
        if not summary.get("start_time"):
            fields["start_time"] = iso_now()
        self.user_status.set_summary(**fields)
        if start_sync_loop:
            self.start_sync_loop()
        self.logger.info("Hybrid mode enabled", sync_loop=start_sync_loop)
        return self.get_hybrid_status()

    async def disable(self) -> dict[str, Any]:
        """Drain the sync queue once, stop the sync loop and turn hybrid mode off.

        Returns:
            The final drain report
        """
        await self.stop_sync_loop()
        report = await self.process_sync_queue()
        self.user_status.set_summary(enabled=False, disabled_at=iso_now())
        self.logger.info("Hybrid mode disabled", remaining=len(self.sync_queue))
        return report

    # Per-user status

    def _mark_for_migration(self, user_id: str, reason: str) -> None:
        status = self.user_status.get(user_id)
        if status.migrated:
            return
        status.needs_migration = True
        status.reason = reason
        self.user_status.save(status)

    def _mark_migrated(self, status: UserMigrationStatus, remote_id: str, reason: str) -> None:
        now = iso_now()
        status.migrated = True
        status.needs_migration = False
        status.reason = reason
        status.remote_id = remote_id
        status.migrated_at = now
        status.last_sync = now
        status.errors = []
        self.user_status.save(status)

        summary = self.user_status.get_summary()
        self.user_status.set_summary(migrated_users=summary.get("migrated_users", 0) + 1)

    # User operations

    async def register_user(
        self,
        user_id: str,
        user_data: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """Register locally, then create the remote account when possible."""
        user = self.local_users.register_user(user_id, user_data)
        self._mark_for_migration(user_id, "registration")
        if not self.enabled:
            return user

        if not self.is_online():
            self.sync_queue.enqueue(SyncOperation.REGISTER, user_id, error="offline")
            return user

        try:
            await self._apply(SyncOperation.REGISTER, user_id, {})
            self.logger.info("User registered in both stores", user_id=user_id)
        except MigratorError as e:
            self.logger.warning("User registered locally only", user_id=user_id, error=e.message)
            self.sync_queue.enqueue(SyncOperation.REGISTER, user_id, error=e.message)
        return user

    async def login_user(
        self,
        user_id: str,
        user_data: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """Log in locally; migrated users are synced, others scheduled for migration."""
        user = self.local_users.login_user(user_id, user_data)
        if not self.enabled:
            return user

        status = self.user_status.get(user_id)
        if status.migrated and self.is_online():
            try:
                await self.sync_user_data(user_id)
            except MigratorError as e:
                self.logger.warning("Sync on login failed", user_id=user_id, error=e.message)
        elif not status.migrated:
            self.schedule_user_migration(user_id)
        return user

    def get_current_user(self) -> Optional[dict[str, Any]]:
        return self.local_users.get_current_user()

    async def get_user_stats(self, user_id: str) -> Optional[dict[str, Any]]:
        """Statistics merged from both stores for migrated users."""
        local_stats = self.local_users.get_stats(user_id)
        status = self.user_status.get(user_id)
        if not (self.enabled and status.migrated and status.remote_id and self.is_online()):
            return local_stats
        try:
            remote_stats = await self.remote.get_user_stats(status.remote_id)
        except MigratorError as e:
            self.logger.warning("Remote stats unavailable", user_id=user_id, error=e.message)
            return local_stats
        return merge_stats(remote_stats, local_stats)

    async def create_session(self, user_id: str, session_data: dict[str, Any]) -> dict[str, Any]:
        session = self.local_users.create_session(user_id, session_data)
        await self._mirror(
            SyncOperation.CREATE_SESSION,
            user_id,
            {"session_id": session["id"], "session": session},
        )
        return session

    async def complete_session(self, user_id: str, session_id: str) -> Optional[dict[str, Any]]:
        record = self.local_users.complete_session(user_id, session_id)
        if record is not None:
            await self._mirror(SyncOperation.COMPLETE_SESSION, user_id, {"session_id": session_id})
        return record

    async def stop_session(self, user_id: str, session_id: str) -> Optional[dict[str, Any]]:
        record = self.local_users.stop_session(user_id, session_id)
        if record is not None:
            await self._mirror(SyncOperation.STOP_SESSION, user_id, {"session_id": session_id})
        return record

    async def save_meeting(self, user_id: str, meeting: dict[str, Any]) -> dict[str, Any]:
        record = self.local_users.save_meeting(user_id, meeting)
        await self._mirror(SyncOperation.SAVE_MEETING, user_id, {"meeting": record})
        return record

    async def _mirror(
        self,
        operation: SyncOperation,
        user_id: str,
        payload: dict[str, Any],
    ) -> str:
        """Mirror a local mutation remotely.

        Unmigrated users are left alone; their data moves with their migration.

        Returns:
            'local_only', 'mirrored' or 'queued'
        """
        if not self.enabled:
            return "local_only"
        status = self.user_status.get(user_id)
        if not status.migrated:
            return "local_only"
        if not self.is_online():
            self.sync_queue.enqueue(operation, user_id, payload, error="offline")
            return "queued"
        try:
            await self._apply(operation, user_id, payload)
        except MigratorError as e:
            self.logger.warning(
                "Remote mirror failed, queued for retry",
                operation=str(operation),
                user_id=user_id,
                error=e.message,
            )
            self.sync_queue.enqueue(operation, user_id, payload, error=e.message)
            return "queued"
        return "mirrored"

    def _remote_user_id(self, user_id: str) -> str:
        status = self.user_status.get(user_id)
        if not status.migrated or not status.remote_id:
            raise SyncError(
                f"User {user_id} has not been migrated",
                context={"user_id": user_id},
            )
        return status.remote_id

    def _remote_session_id(self, user_id: str, session_id: str) -> str:
        session = self.local_users.get_session(user_id, session_id)
        remote_session_id = (session or {}).get("remoteId")
        if not remote_session_id:
            raise SyncError(
                f"Session {session_id} has not been mirrored yet",
                context={"user_id": user_id, "session_id": session_id},
            )
        return remote_session_id

    async def _apply(self, operation: SyncOperation, user_id: str, payload: dict[str, Any]) -> None:
        """Perform one remote write.

        Raises:
            MigratorError: If the write cannot be performed
        """
        if self.remote is None:
            raise ConfigurationError("No remote store configured")

        if operation in (SyncOperation.REGISTER, SyncOperation.MIGRATE_USER):
            result = await self.migrate_user(
                user_id,
                force_remigration=bool(payload.get("force_remigration", False)),
            )
            if not result["success"]:
                raise SyncError(
                    f"Migration of user {user_id} failed",
                    context={"errors": result["errors"]},
                )
            return

        if operation == SyncOperation.SYNC_USER:
            result = await self.sync_user_data(user_id)
            if not result["success"]:
                raise SyncError(
                    f"Sync of user {user_id} failed",
                    context={"errors": result["errors"]},
                )
            return

        remote_user_id = self._remote_user_id(user_id)
        if operation == SyncOperation.CREATE_SESSION:
            session_id = payload["session_id"]
            if self._session_mirrored(user_id, session_id):
                return
            session = self.local_users.get_session(user_id, session_id) or payload["session"]
            remote_session_id = await self.remote.create_session(remote_user_id, session)
            self.local_users.set_session_remote_id(user_id, session_id, remote_session_id)
        elif operation == SyncOperation.COMPLETE_SESSION:
            remote_session_id = self._remote_session_id(user_id, payload["session_id"])
            if not await self.remote.complete_session(remote_user_id, remote_session_id):
                raise SyncError(
                    "Remote store rejected session completion",
                    context={"session_id": payload["session_id"]},
                )
        elif operation == SyncOperation.STOP_SESSION:
            remote_session_id = self._remote_session_id(user_id, payload["session_id"])
            if not await self.remote.stop_session(remote_user_id, remote_session_id):
                raise SyncError(
                    "Remote store rejected session stop",
                    context={"session_id": payload["session_id"]},
                )
        elif operation == SyncOperation.SAVE_MEETING:
            await self.remote.save_meeting(remote_user_id, payload["meeting"])
        else:
            raise SyncError(f"Unknown sync operation: {operation}")

    def _session_mirrored(self, user_id: str, session_id: str) -> bool:
        session = self.local_users.get_session(user_id, session_id)
        return bool(session and session.get("remoteId"))

    # Migration of single users

    async def migrate_user(
        self,
        user_id: str,
        force_remigration: bool = False,
        sync_only: bool = False,
    ) -> dict[str, Any]:
        """Transfer one user's profile, stats, sessions and meetings.

        The user is flagged as migrated only when every section succeeded.

        Args:
            user_id: Local user id
            force_remigration: Transfer again even if already migrated
            sync_only: Skip the profile and push sections to the existing remote user

        Returns:
            Dictionary with 'success', 'skipped', 'operations' and 'errors'

        Raises:
            ConfigurationError: If no remote store is configured
            LockError: If a migration of this user is already running
            SyncError: If the user does not exist locally
        """
        status = self.user_status.get(user_id)
        if status.migrated and not force_remigration:
            self.logger.debug("User already migrated, skipping", user_id=user_id)
            if self.metrics:
                self.metrics.record_user("skipped")
            return {
                "user_id": user_id,
                "success": True,
                "skipped": True,
                "operations": [],
                "errors": [],
            }

        if self.remote is None:
            raise ConfigurationError("No remote store configured")
        user = self.local_users.get_user(user_id)
        if user is None:
            raise SyncError(
                f"User {user_id} not found in local store",
                context={"user_id": user_id},
            )

        async with self.locks.hold(user_id, LOCK_OWNER):
            operations: list[str] = []
            errors: list[str] = []
            remote_id = await self._transfer_profile(user_id, user, sync_only, operations, errors)
            if remote_id is not None:
                await self._transfer_sections(user_id, remote_id, operations, errors)

            if not errors:
                self._mark_migrated(status, remote_id, "sync" if sync_only else "full_migration")
                if self.metrics:
                    self.metrics.record_user("success")
                self.logger.info("User migrated", user_id=user_id, operations=operations)
            else:
                status.migrated = False
                status.needs_migration = True
                status.errors = errors
                self.user_status.save(status)
                if self.metrics:
                    self.metrics.record_user("failed")
                self.logger.warning("User migration incomplete", user_id=user_id, errors=errors)

        return {
            "user_id": user_id,
            "success": not errors,
            "skipped": False,
            "operations": operations,
            "errors": errors,
        }

    async def _transfer_profile(
        self,
        user_id: str,
        user: dict[str, Any],
        sync_only: bool,
        operations: list[str],
        errors: list[str],
    ) -> Optional[str]:
        try:
            existing = await self.remote.get_user_id(user_id)
            if sync_only or existing:
                if not existing:
                    errors.append("User profile: no remote profile to sync into")
                    return None
                return str(existing)

            profile = {k: v for k, v in user.items() if k != "preferences"}
            profile.setdefault("id", user_id)
            remote_id = await self.remote.migrate_user(profile)
            operations.append("user_profile")
            if isinstance(user.get("preferences"), dict):
                await self.remote.upsert_preferences(remote_id, user["preferences"])
                operations.append("user_preferences")
            return remote_id
        except MigratorError as e:
            errors.append(f"User profile: {e.message}")
            return None

    async def _transfer_sections(
        self,
        user_id: str,
        remote_id: str,
        operations: list[str],
        errors: list[str],
    ) -> None:
        try:
            await self.remote.migrate_user_stats(remote_id, self.local_users.get_stats(user_id))
            operations.append("user_stats")
        except MigratorError as e:
            errors.append(f"User stats: {e.message}")

        try:
            sessions = self.local_users.get_sessions(user_id)
            if sessions:
                await self.remote.migrate_sessions(remote_id, sessions)
                operations.append("pomodoro_sessions")
        except MigratorError as e:
            errors.append(f"Pomodoro sessions: {e.message}")

        try:
            meetings = self.local_users.get_meetings(user_id)
            if meetings:
                await self.remote.migrate_meetings(remote_id, meetings)
                operations.append("meetings")
        except MigratorError as e:
            errors.append(f"Meetings: {e.message}")

    def schedule_user_migration(self, user_id: str) -> Optional[asyncio.Task]:
        """Migrate a user in the background, or queue the migration when offline."""
        if not self.is_online():
            self.sync_queue.enqueue(SyncOperation.MIGRATE_USER, user_id, error="offline")
            return None
        task = asyncio.get_running_loop().create_task(self._background_migration(user_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _background_migration(self, user_id: str) -> None:
        try:
            await self.migrate_user(user_id)
        except MigratorError as e:
            self.logger.warning("Background migration failed", user_id=user_id, error=e.message)

    async def sync_user_data(self, user_id: str) -> dict[str, Any]:
        """Push sessions created since the last sync; unmigrated users are migrated instead.

        Raises:
            LockError: If a migration of this user is already running
        """
        status = self.user_status.get(user_id)
        if not status.migrated:
            return await self.migrate_user(user_id)
        if self.remote is None:
            raise ConfigurationError("No remote store configured")

        async with self.locks.hold(user_id, LOCK_OWNER):
            cutoff = parse_timestamp(status.last_sync) or _EPOCH
            recent = [
                session
                for session in self.local_users.get_sessions(user_id)
                if not session.get("remoteId")
                and (parse_timestamp(session.get("createdAt")) or _EPOCH) > cutoff
            ]
            synced = 0
            errors: list[str] = []
            for session in recent:
                try:
                    remote_session_id = await self.remote.create_session(status.remote_id, session)
                except MigratorError as e:
                    errors.append(f"Session {session.get('id')}: {e.message}")
                    continue
                self.local_users.set_session_remote_id(user_id, session["id"], remote_session_id)
                synced += 1

            status.last_sync = iso_now()
            self.user_status.save(status)

        self.logger.info(
            "User sync completed", user_id=user_id, sessions=synced, errors=len(errors)
        )
        return {
            "user_id": user_id,
            "success": not errors,
            "synced": {"sessions": synced},
            "errors": errors,
        }

    async def restore_user(self, user_id: str, backup_id: Optional[str] = None) -> dict[str, Any]:
        """Roll one user back from a backup and mark them unmigrated.

        Raises:
            ConfigurationError: If no recovery manager is configured
            LockError: If a migration of this user is running
        """
        if self.recovery is None:
            raise ConfigurationError("No recovery manager configured")
        async with self.locks.hold(user_id, LOCK_OWNER):
            result = self.recovery.perform_partial_rollback(user_id, backup_id)
            self.user_status.save(UserMigrationStatus(user_id=user_id, reason="restored"))
        return result

    # Sync queue

    async def _process_item(self, item: SyncQueueItem) -> None:
        await self._apply(item.operation, item.user_id, item.payload)

    async def process_sync_queue(self) -> dict[str, Any]:
        """Replay queued remote writes once.

        Returns:
            Drain report; ``skipped`` is set when offline
        """
        if not self.is_online():
            return {"skipped": True, "queue_size": len(self.sync_queue)}
        report = await self.sync_queue.drain(self._process_item)
        self.user_status.set_summary(last_sync=iso_now())
        return report

    def start_sync_loop(self, interval: Optional[float] = None) -> asyncio.Task:
        """Drain the sync queue every ``interval`` seconds while online."""
        if self._sync_task is not None and not self._sync_task.done():
            return self._sync_task
        seconds = interval or self.config.sync_interval_seconds
        self._sync_task = asyncio.get_running_loop().create_task(self._sync_loop(seconds))
        self.logger.debug("Sync loop started", interval=seconds)
        return self._sync_task

    async def _sync_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            if not self.is_online():
                continue
            try:
                await self.process_sync_queue()
            except Exception as e:
                self.logger.error("Periodic sync failed", error=str(e))

    async def stop_sync_loop(self) -> None:
        task, self._sync_task = self._sync_task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        self.logger.debug("Sync loop stopped")

    async def shutdown(self) -> None:
        """Stop the sync loop and cancel background migrations still running."""
        await self.stop_sync_loop()
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            self.logger.info("Background migrations cancelled", count=len(tasks))

    def get_hybrid_status(self) -> dict[str, Any]:
        statuses = self.user_status.all()
        migrated = sum(1 for s in statuses.values() if s.migrated)
        return {
            "mode": "hybrid",
            "enabled": self.enabled,
            "online": self.is_online(),
            "summary": self.user_status.get_summary(),
            "users": {
                "tracked": len(statuses),
                "migrated": migrated,
                "pending": len(statuses) - migrated,
            },
            "sync_queue_size": len(self.sync_queue),
            "permanently_failed": len(self.sync_queue.failures()),
            "sync_loop_running": self._sync_task is not None and not self._sync_task.done(),
        }
