"""Full backups, ring-buffered snapshots and rollback of the local store."""

import json
from typing import Any, Optional

import structlog

from migrator.exceptions import BackupError
from migrator.extractor import Extractor
from migrator.local_store import (
    CURRENT_USER_KEY,
    RECOVERY_BACKUP_KEY,
    RECOVERY_METADATA_KEY,
    RECOVERY_SNAPSHOTS_KEY,
    USER_SESSIONS_KEY,
    USERS_KEY,
    LocalStore,
    section_key,
)
from migrator.metrics import MigratorMetrics
from migrator.models import Backup, Conflict, generate_id, iso_now
from migrator.remote_store import RemoteStore
from migrator.status_store import MigrationStatusStore
from recovery.backup_sink import BackupSink
from recovery.compressor import PayloadCompressor
from recovery.conflict_resolver import ConflictReport, ConflictResolver, ConflictStrategy
from utils.checksum import ChecksumCalculator, canonical_json
from utils.logging import get_logger

LOCAL_SOURCE = "localStorage"
REMOTE_SOURCE = "remote"

# (section used in store keys, section name in backup data)
USER_SECTIONS = (
    ("sessions", "sessions"),
    ("stats", "stats"),
    ("meetings", "meetings"),
    ("active_session", "active_sessions"),
)


def namespace_to_keys(data: dict[str, Any], user_id: Optional[str] = None) -> dict[str, Any]:
    """Map backup data back onto store keys.

    Args:
        data: Namespace document as produced by ``Extractor.read_namespace``
        user_id: Restrict to one user's sections

    Returns:
        Store key to value mapping
    """
    keys: dict[str, Any] = {}
    if user_id is None:
        keys[USERS_KEY] = data.get("users") or {}
        system = data.get("system") or {}
        if "current_user" in system:
            keys[CURRENT_USER_KEY] = system["current_user"]
        if "user_sessions" in system:
            keys[USER_SESSIONS_KEY] = system["user_sessions"]

    for section, name in USER_SECTIONS:
        for owner, value in (data.get(name) or {}).items():
            if user_id is None or owner == user_id:
                keys[section_key(section, owner)] = value
    return keys


class RecoveryManager:
    """Creates backups and snapshots and restores the local store from them."""

    def __init__(
        self,
        store: LocalStore,
        extractor: Extractor,
        status_store: MigrationStatusStore,
        sink: Optional[BackupSink] = None,
        remote: Optional[RemoteStore] = None,
        compressor: Optional[PayloadCompressor] = None,
        checksum: Optional[ChecksumCalculator] = None,
        conflict_resolver: Optional[ConflictResolver] = None,
        max_snapshots: int = 10,
        max_backup_history: int = 20,
        metrics: Optional[MigratorMetrics] = None,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        """Initialize recovery manager.

        Args:
            store: Local key-value store
            extractor: Reader of the application namespace
            status_store: Migration status record, cleared by full rollbacks
            sink: Optional destination for exported backup files
            remote: Optional remote store, required for remote-source backups
            compressor: Payload compressor
            checksum: Checksum calculator
            conflict_resolver: Resolver used during restores
            max_snapshots: Snapshot ring buffer capacity
            max_backup_history: Number of backup metadata entries kept
            metrics: Optional metrics collector
            logger: Optional logger instance
        """
        self.store = store
        self.extractor = extractor
        self.status_store = status_store
        self.sink = sink
        self.remote = remote
        self.compressor = compressor or PayloadCompressor()
        self.checksum = checksum or ChecksumCalculator()
        self.conflict_resolver = conflict_resolver or ConflictResolver()
        self.max_snapshots = max_snapshots
        self.max_backup_history = max_backup_history
        self.metrics = metrics
        self.logger = logger or get_logger("recovery")

    # Backups

    def _local_namespace(self) -> dict[str, Any]:
        namespace = self.extractor.read_namespace()
        warnings = namespace.pop("warnings", [])
        if warnings:
            self.logger.warning("Backup skipped unreadable entries", skipped=len(warnings))
        return namespace

    async def create_full_backup(
        self,
        source: str = LOCAL_SOURCE,
        include_snapshots: bool = False,
        compress: bool = True,
        checksum: bool = True,
    ) -> Backup:
        """Copy the full namespace into a new backup.

        Local backups become the latest-backup record and can be restored.
        Remote backups copy the remote tables for verification only.

        Args:
            source: 'localStorage' or 'remote'
            include_snapshots: Embed the current snapshot list in the backup
            compress: Store the payload gzipped
            checksum: Store a SHA-256 checksum of the payload

        Returns:
            The created backup

        Raises:
            BackupError: If the source cannot be read or the backup cannot be stored
        """
        if source == LOCAL_SOURCE:
            data = self._local_namespace()
        elif source == REMOTE_SOURCE:
            if self.remote is None:
                raise BackupError("Remote backup requested but no remote store is configured")
            try:
                data = {"tables": await self.remote.export_tables()}
            except Exception as e:
                raise BackupError(f"Failed to read remote tables: {e}") from e
        else:
            raise BackupError(f"Unknown backup source: {source}", context={"source": source})

        if include_snapshots:
            data["snapshots"] = [snapshot.to_dict() for snapshot in self.list_snapshots()]

        serialized = canonical_json(data)
        digest = self.checksum.calculate_document(data) if checksum else None
        payload: Any = self.compressor.compress_document(data) if compress else data

        backup = Backup(
            id=generate_id("backup"),
            timestamp=iso_now(),
            source=source,
            data=payload,
            compressed=compress,
            checksum=digest,
            kind="full",
            size_bytes=len(serialized.encode("utf-8")),
        )

        if source == LOCAL_SOURCE:
            self.store.set_json(RECOVERY_BACKUP_KEY, backup.to_dict())
        self._record_history(backup)
        self._export(backup)

        if self.metrics:
            self.metrics.record_backup("full")
        self.logger.info(
            "Full backup created",
            backup_id=backup.id,
            source=source,
            size_bytes=backup.size_bytes,
            compressed=compress,
        )
        return backup

    def _record_history(self, backup: Backup) -> None:
        history = self.list_backups()
        history.append(backup.summary())
        self.store.set_json(RECOVERY_METADATA_KEY, history[-self.max_backup_history :])

    def _export(self, backup: Backup) -> None:
        """Write a secondary copy through the sink. Failure only warns."""
        if self.sink is None:
            return
        blob = json.dumps(backup.to_dict(), default=str).encode("utf-8")
        try:
            location = self.sink.write(blob, f"{backup.id}.json", backup.summary())
            self.logger.debug("Backup exported", backup_id=backup.id, location=location)
        except BackupError as e:
            self.logger.warning("Backup export failed", backup_id=backup.id, error=str(e))

    def list_backups(self) -> list[dict[str, Any]]:
        """Backup metadata history, oldest first."""
        history = self.store.get_json(RECOVERY_METADATA_KEY, [])
        return history if isinstance(history, list) else []

    # Snapshots

    def create_snapshot(self, event: str, description: str = "", persist: bool = True) -> Backup:
        """Take a lightweight point-in-time copy tied to an event.

        The snapshot list is a ring buffer; the oldest snapshot is evicted
        once capacity is reached. With ``persist=False`` the snapshot is only
        built and returned, and the stored list is not touched.
        """
        data = self._local_namespace()
        snapshot = Backup(
            id=generate_id("snapshot"),
            timestamp=iso_now(),
            source=LOCAL_SOURCE,
            data=data,
            compressed=False,
            checksum=self.checksum.calculate_document(data),
            kind="snapshot",
            event=event,
            description=description,
            size_bytes=len(canonical_json(data).encode("utf-8")),
        )
        if not persist:
            return snapshot

        snapshots = self._raw_snapshots()
        snapshots.append(snapshot.to_dict())
        evicted = snapshots[: -self.max_snapshots]
        self.store.set_json(RECOVERY_SNAPSHOTS_KEY, snapshots[-self.max_snapshots :])

        if self.metrics:
            self.metrics.record_backup("snapshot")
        self.logger.info(
            "Snapshot created",
            snapshot_id=snapshot.id,
            trigger=event,
            evicted=[s.get("id") for s in evicted],
        )
        return snapshot

    def _raw_snapshots(self) -> list[dict[str, Any]]:
        snapshots = self.store.get_json(RECOVERY_SNAPSHOTS_KEY, [])
        return snapshots if isinstance(snapshots, list) else []

    def list_snapshots(self) -> list[Backup]:
        """Snapshots, oldest first."""
        result = []
        for raw in self._raw_snapshots():
            try:
                result.append(Backup.from_dict(raw))
            except (KeyError, TypeError, ValueError) as e:
                self.logger.warning("Ignoring corrupt snapshot entry", error=str(e))
        return result

    def discard_snapshot(self, snapshot_id: str) -> bool:
        """Remove one snapshot. Returns whether it existed."""
        snapshots = self._raw_snapshots()
        remaining = [s for s in snapshots if s.get("id") != snapshot_id]
        if len(remaining) == len(snapshots):
            return False
        self.store.set_json(RECOVERY_SNAPSHOTS_KEY, remaining)
        return True

    # Lookup and validation

    def get_backup(self, backup_id: Optional[str] = None) -> Backup:
        """Find a backup by id, or the latest full backup when no id is given.

        Snapshots and exported backup files are searched as well.

        Raises:
            BackupError: If no matching backup exists
        """
        latest_raw = self.store.get_json(RECOVERY_BACKUP_KEY)
        latest = None
        if isinstance(latest_raw, dict):
            try:
                latest = Backup.from_dict(latest_raw)
            except (KeyError, TypeError, ValueError) as e:
                raise BackupError(f"Latest backup record is corrupt: {e}") from e

        if backup_id is None:
            if latest is None:
                raise BackupError("No backup available for rollback")
            return latest

        if latest is not None and latest.id == backup_id:
            return latest
        for snapshot in self.list_snapshots():
            if snapshot.id == backup_id:
                return snapshot

        if self.sink is not None:
            blob = self.sink.read(f"{backup_id}.json")
            if blob is not None:
                try:
                    return Backup.from_dict(json.loads(blob.decode("utf-8")))
                except (KeyError, TypeError, ValueError) as e:
                    raise BackupError(
                        f"Exported backup is corrupt: {e}",
                        context={"backup_id": backup_id},
                    ) from e

        raise BackupError(f"Backup not found: {backup_id}", context={"backup_id": backup_id})

    def decode(self, backup: Backup) -> dict[str, Any]:
        """Return the backup's namespace document, decompressing if needed.

        Raises:
            BackupError: If the payload cannot be decoded
        """
        data = backup.data
        if backup.compressed:
            data = self.compressor.decompress_document(backup.data)
        if not isinstance(data, dict):
            raise BackupError("Backup payload is not an object", context={"backup_id": backup.id})
        return data

    def validate_backup(self, backup: Backup) -> dict[str, Any]:
        """Check a backup's shape and checksum.

        Returns:
            Dictionary with 'valid' and 'errors'
        """
        errors: list[str] = []
        if not backup.id or not backup.timestamp:
            errors.append("Backup is missing id or timestamp")

        try:
            data = self.decode(backup)
        except BackupError as e:
            return {"valid": False, "errors": errors + [e.message]}

        if backup.source == REMOTE_SOURCE:
            if not isinstance(data.get("tables"), dict):
                errors.append("Remote backup has no table data")
        else:
            if not isinstance(data.get("users"), dict):
                errors.append("Backup has no user index")
            for _, name in USER_SECTIONS:
                if name in data and not isinstance(data[name], dict):
                    errors.append(f"Backup section {name} must be an object")

        if backup.checksum and not self.checksum.verify_document(data, backup.checksum):
            errors.append("Checksum mismatch")

        return {"valid": not errors, "errors": errors}

    # Restore

    def _resolve_restore(
        self,
        target: dict[str, Any],
        strategy: ConflictStrategy,
    ) -> tuple[dict[str, Any], ConflictReport]:
        """Work out the values a restore would write, without writing them.

        Keys present locally but absent from the backup are left untouched.
        """
        report = ConflictReport(strategy)
        resolved_values: dict[str, Any] = {}

        # Resolve everything first so an ask-user failure writes nothing
        for key, backup_value in target.items():
            local_value = self.store.get_json(key)
            conflict = self.conflict_resolver.detect(key, local_value, backup_value)
            if conflict is None:
                if local_value is None:
                    resolved_values[key] = backup_value
                continue
            report.add(conflict)
            resolved = self.conflict_resolver.resolve(conflict, strategy)
            if resolved != local_value:
                resolved_values[key] = resolved
        return resolved_values, report

    def _write_values(self, values: dict[str, Any]) -> list[str]:
        for key, value in values.items():
            self.store.set_json(key, value)
        return list(values)

    def verify_restore(
        self,
        data: dict[str, Any],
        pending: Optional[dict[str, Any]] = None,
    ) -> None:
        """Confirm the user index matches the backup.

        Args:
            data: Decoded backup namespace
            pending: Values about to be written; their user index is checked
                instead of the stored one, so a mismatch is caught before any write

        Raises:
            BackupError: If the user count or any user's email differs
        """
        expected = data.get("users") or {}
        if pending is not None and USERS_KEY in pending:
            actual = pending[USERS_KEY] or {}
        else:
            actual = self.store.get_json(USERS_KEY) or {}
        if not isinstance(actual, dict):
            raise BackupError("Restored user index is not an object")

        mismatches = [
            user_id
            for user_id, profile in expected.items()
            if (actual.get(user_id) or {}).get("email") != (profile or {}).get("email")
        ]
        if len(actual) != len(expected) or mismatches:
            raise BackupError(
                "Rollback verification failed: restored users do not match backup",
                context={
                    "expected_users": len(expected),
                    "restored_users": len(actual),
                    "mismatched": mismatches[:10],
                },
            )

    def _load_restorable(
        self,
        backup_id: Optional[str],
        validate: bool,
    ) -> tuple[Backup, dict[str, Any]]:
        backup = self.get_backup(backup_id)
        if backup.source != LOCAL_SOURCE:
            raise BackupError(
                "Only local backups can be restored",
                context={"backup_id": backup.id, "source": backup.source},
            )
        if validate:
            validation = self.validate_backup(backup)
            if not validation["valid"]:
                raise BackupError(
                    "Backup failed validation",
                    context={"backup_id": backup.id, "errors": validation["errors"]},
                )
        return backup, self.decode(backup)

    def perform_full_rollback(
        self,
        backup_id: Optional[str] = None,
        validate_before_rollback: bool = True,
        create_pre_rollback_snapshot: bool = True,
        skip_integrity_check: bool = False,
        conflict_strategy: ConflictStrategy = ConflictStrategy.PREFER_BACKUP,
    ) -> dict[str, Any]:
        """Restore every namespace section from a backup.

        Args:
            backup_id: Backup or snapshot to restore (latest full backup if None)
            validate_before_rollback: Verify shape and checksum first
            create_pre_rollback_snapshot: Snapshot the current state so the
                rollback itself can be undone
            skip_integrity_check: Skip post-restore verification of users
            conflict_strategy: Handling of keys whose local value differs

        Returns:
            Dictionary describing the rollback

        Raises:
            BackupError: If the backup is missing, invalid or verification fails
            ConflictError: If a conflict needs user input
        """
        pre_snapshot = None
        if create_pre_rollback_snapshot:
            pre_snapshot = self.create_snapshot("pre_rollback", "State before full rollback")

        try:
            backup, data = self._load_restorable(backup_id, validate_before_rollback)
            resolved, report = self._resolve_restore(namespace_to_keys(data), conflict_strategy)
            if not skip_integrity_check:
                self.verify_restore(data, pending=resolved)
            restored_keys = self._write_values(resolved)
        except Exception:
            if self.metrics:
                self.metrics.record_rollback("full", "failure")
            raise

        self.status_store.clear()
        post_snapshot = self.create_snapshot("post_rollback", f"State after restoring {backup.id}")

        if self.metrics:
            self.metrics.record_rollback("full", "success")
        self.logger.info(
            "Full rollback completed",
            backup_id=backup.id,
            restored_keys=len(restored_keys),
            conflicts=report.total_conflicts,
        )
        return {
            "success": True,
            "backup_id": backup.id,
            "backup_timestamp": backup.timestamp,
            "restored_keys": restored_keys,
            "conflicts": report.to_dict(),
            "pre_rollback_snapshot_id": pre_snapshot.id if pre_snapshot else None,
            "post_rollback_snapshot_id": post_snapshot.id,
        }

    def perform_partial_rollback(
        self,
        user_id: str,
        backup_id: Optional[str] = None,
        conflict_strategy: ConflictStrategy = ConflictStrategy.PREFER_BACKUP,
    ) -> dict[str, Any]:
        """Restore one user's profile and sections, leaving other users alone.

        Raises:
            BackupError: If the backup is unusable or does not contain the user
            ConflictError: If a conflict needs user input
        """
        try:
            backup, data = self._load_restorable(backup_id, validate=True)
            profile = (data.get("users") or {}).get(user_id)
            if profile is None:
                raise BackupError(
                    f"User {user_id} not found in backup",
                    context={"backup_id": backup.id, "user_id": user_id},
                )

            target = namespace_to_keys(data, user_id=user_id)
            users_index = self.store.get_json(USERS_KEY) or {}
            if not isinstance(users_index, dict):
                users_index = {}
            target[USERS_KEY] = {**users_index, user_id: profile}
            resolved, report = self._resolve_restore(target, conflict_strategy)
            restored_keys = self._write_values(resolved)
        except Exception:
            if self.metrics:
                self.metrics.record_rollback("partial", "failure")
            raise

        if self.metrics:
            self.metrics.record_rollback("partial", "success")
        self.logger.info(
            "Partial rollback completed",
            backup_id=backup.id,
            user_id=user_id,
            restored_keys=len(restored_keys),
        )
        return {
            "success": True,
            "backup_id": backup.id,
            "user_id": user_id,
            "restored_keys": restored_keys,
            "conflicts": report.to_dict(),
        }

    def resolve_conflict(self, conflict: Conflict, strategy: ConflictStrategy) -> Any:
        """Resolve a single conflict without writing anything."""
        return self.conflict_resolver.resolve(conflict, strategy)

    def perform_conflict_resolution(
        self,
        conflicts: list[Conflict],
        strategy: ConflictStrategy,
    ) -> ConflictReport:
        """Resolve a batch of conflicts and write the outcomes to the store.

        Raises:
            ConflictError: If the strategy needs user input (nothing is written)
        """
        report = ConflictReport(strategy)
        resolved = []
        for conflict in conflicts:
            resolved.append((conflict.key, self.conflict_resolver.resolve(conflict, strategy)))
            report.add(conflict)
        for key, value in resolved:
            if value is None:
                self.store.remove(key)
            else:
                self.store.set_json(key, value)
        return report

    def get_recovery_status(self) -> dict[str, Any]:
        """Summary of the stored backup state."""
        latest = self.store.get_json(RECOVERY_BACKUP_KEY)
        snapshots = self.list_snapshots()
        latest_summary = None
        if isinstance(latest, dict):
            latest_summary = {k: v for k, v in latest.items() if k != "data"}
        return {
            "latest_backup": latest_summary,
            "backup_history": len(self.list_backups()),
            "snapshots": len(snapshots),
            "latest_snapshot": snapshots[-1].summary() if snapshots else None,
            "max_snapshots": self.max_snapshots,
        }
