"""Domain records shared by the extraction, migration and recovery components."""

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any, Optional

DATA_VERSION = "4.0.0"
COMPATIBLE_DATA_VERSIONS = ("4.0.0", "3.9.9", "3.9.8")
SCHEMA_VERSION = 1


def iso_now() -> str:
    """Current UTC time as an ISO-8601 string with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp, returning None for missing or malformed values."""
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def generate_id(prefix: str) -> str:
    """Generate ids like ``backup_1718000000000_3f9a1c2b7``."""
    return f"{prefix}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class EntityType(StrEnum):
    """Record types carried by an export dataset."""

    USER = "user"
    SESSION = "session"
    STATS = "stats"
    MEETING = "meeting"


class ExportDataset:
    """Point-in-time copy of all user-owned records, keyed by user id."""

    def __init__(
        self,
        users: dict[str, dict[str, Any]],
        sessions: dict[str, list[dict[str, Any]]],
        stats: dict[str, dict[str, Any]],
        meetings: dict[str, list[dict[str, Any]]],
        metadata: Optional[dict[str, Any]] = None,
        timestamp: Optional[str] = None,
        source: str = "localStorage",
        version: str = DATA_VERSION,
        schema_version: int = SCHEMA_VERSION,
    ) -> None:
        """Initialize dataset.

        Args:
            users: User profiles by user id
            sessions: Session lists by owner id
            stats: Statistics record by owner id
            meetings: Meeting lists by owner id
            metadata: Extraction metadata (statistics, system keys, warnings)
            timestamp: Extraction time (defaults to now)
            source: Where the data was read from
            version: Application data version
            schema_version: Version of this dataset layout
        """
        self.users = users
        self.sessions = sessions
        self.stats = stats
        self.meetings = meetings
        self.metadata = metadata or {}
        self.timestamp = timestamp or iso_now()
        self.source = source
        self.version = version
        self.schema_version = schema_version

    @property
    def user_ids(self) -> set[str]:
        """Ids of all users in the dataset."""
        return set(self.users.keys())

    def counts(self) -> dict[str, int]:
        """Record counts per entity type."""
        return {
            "users": len(self.users),
            "sessions": sum(len(items) for items in self.sessions.values()),
            "stats": len(self.stats),
            "meetings": sum(len(items) for items in self.meetings.values()),
        }

    def orphan_owner_ids(self) -> dict[str, list[str]]:
        """Owner ids of child sections that do not resolve to a user."""
        known = self.user_ids
        return {
            "sessions": sorted(uid for uid in self.sessions if uid not in known),
            "stats": sorted(uid for uid in self.stats if uid not in known),
            "meetings": sorted(uid for uid in self.meetings if uid not in known),
        }

    def to_dict(self) -> dict[str, Any]:
        """Convert dataset to dictionary."""
        return {
            "schema_version": self.schema_version,
            "version": self.version,
            "timestamp": self.timestamp,
            "source": self.source,
            "users": self.users,
            "sessions": self.sessions,
            "stats": self.stats,
            "meetings": self.meetings,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExportDataset":
        """Create dataset from dictionary.

        Raises:
            ValueError: If a required section is missing or has the wrong type
        """
        for section in ("users", "sessions", "stats", "meetings"):
            if not isinstance(data.get(section), dict):
                raise ValueError(f"Dataset section '{section}' must be an object")
        return cls(
            users=data["users"],
            sessions=data["sessions"],
            stats=data["stats"],
            meetings=data["meetings"],
            metadata=data.get("metadata") or {},
            timestamp=data.get("timestamp"),
            source=data.get("source", "localStorage"),
            version=data.get("version", DATA_VERSION),
            schema_version=data.get("schema_version", SCHEMA_VERSION),
        )


class MigrationStep(StrEnum):
    """Ordered steps of a migration run."""

    EXPORT = "export"
    VALIDATE_EXPORT = "validate-export"
    CREATE_BACKUP = "create-backup"
    MIGRATE_USERS = "migrate-users"
    MIGRATE_PREFERENCES = "migrate-preferences"
    MIGRATE_STATS = "migrate-stats"
    MIGRATE_SESSIONS = "migrate-sessions"
    MIGRATE_MEETINGS = "migrate-meetings"
    VALIDATE_MIGRATION = "validate-migration"
    CLEANUP = "cleanup"


MIGRATION_STEPS: tuple[MigrationStep, ...] = tuple(MigrationStep)


class RunState(StrEnum):
    """Lifecycle of a migration run."""

    NOT_STARTED = "not-started"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class MigrationStatus:
    """Persisted progress of a single migration run."""

    def __init__(
        self,
        state: RunState = RunState.NOT_STARTED,
        current_step: Optional[MigrationStep] = None,
        completed_steps: Optional[list[MigrationStep]] = None,
        errors: Optional[list[dict[str, Any]]] = None,
        start_time: Optional[str] = None,
        end_time: Optional[str] = None,
        backup_id: Optional[str] = None,
        dry_run: bool = False,
        skipped_steps: Optional[list[MigrationStep]] = None,
        remote_ids: Optional[dict[str, str]] = None,
        failed_users: Optional[list[str]] = None,
        existing_users: Optional[list[str]] = None,
    ) -> None:
        """Initialize status.

        Args:
            state: Run state
            current_step: Step currently executing (or last executed)
            completed_steps: Steps finished, in execution order
            errors: Error log entries
            start_time: When the run started
            end_time: When the run finished or failed
            backup_id: Backup taken before any remote write
            dry_run: Whether the run stops before remote writes
            skipped_steps: Completed steps whose work was skipped on request
            remote_ids: Remote id of each user transferred by this run
            failed_users: Users whose transfer failed and who are skipped by later steps
            existing_users: Users whose remote profile already existed
        """
        self.state = state
        self.current_step = current_step
        self.completed_steps = list(completed_steps or [])
        self.errors = list(errors or [])
        self.start_time = start_time
        self.end_time = end_time
        self.backup_id = backup_id
        self.dry_run = dry_run
        self.skipped_steps = list(skipped_steps or [])
        self.remote_ids = dict(remote_ids or {})
        self.failed_users = list(failed_users or [])
        self.existing_users = list(existing_users or [])

    @property
    def started(self) -> bool:
        return self.state != RunState.NOT_STARTED

    @property
    def completed(self) -> bool:
        return self.state == RunState.COMPLETED

    @property
    def progress(self) -> float:
        """Percentage of steps completed (always derived, never stored)."""
        return 100 * len(self.completed_steps) / len(MIGRATION_STEPS)

    @property
    def next_step(self) -> Optional[MigrationStep]:
        """First step in the fixed order that has not completed yet."""
        for step in MIGRATION_STEPS:
            if step not in self.completed_steps:
                return step
        return None

    def complete_step(self, step: MigrationStep, skipped: bool = False) -> None:
        """Mark a step as completed. Completing a step twice is a no-op."""
        if step not in self.completed_steps:
            self.completed_steps.append(step)
        if skipped and step not in self.skipped_steps:
            self.skipped_steps.append(step)

    def record_error(
        self,
        message: str,
        step: Optional[MigrationStep] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        """Append an entry to the run's error log."""
        self.errors.append(
            {
                "timestamp": iso_now(),
                "step": str(step) if step else None,
                "message": message,
                "context": context or {},
            }
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert status to dictionary."""
        return {
            "version": "1.0",
            "state": str(self.state),
            "started": self.started,
            "completed": self.completed,
            "current_step": str(self.current_step) if self.current_step else None,
            "completed_steps": [str(step) for step in self.completed_steps],
            "skipped_steps": [str(step) for step in self.skipped_steps],
            "progress": self.progress,
            "errors": self.errors,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "backup_id": self.backup_id,
            "dry_run": self.dry_run,
            "remote_ids": self.remote_ids,
            "failed_users": self.failed_users,
            "existing_users": self.existing_users,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MigrationStatus":
        """Create status from dictionary.

        Raises:
            ValueError: If a step or state name is unknown
        """
        current = data.get("current_step")
        return cls(
            state=RunState(data.get("state", RunState.NOT_STARTED)),
            current_step=MigrationStep(current) if current else None,
            completed_steps=[MigrationStep(s) for s in data.get("completed_steps", [])],
            errors=data.get("errors", []),
            start_time=data.get("start_time"),
            end_time=data.get("end_time"),
            backup_id=data.get("backup_id"),
            dry_run=data.get("dry_run", False),
            skipped_steps=[MigrationStep(s) for s in data.get("skipped_steps", [])],
            remote_ids=data.get("remote_ids") or {},
            failed_users=data.get("failed_users") or [],
            existing_users=data.get("existing_users") or [],
        )


@dataclass(frozen=True)
class Backup:
    """Immutable copy of the application namespace.

    ``data`` holds the namespace document, or its gzip+base64 text when
    ``compressed`` is set. Snapshots are backups with ``kind == "snapshot"``
    and a triggering ``event``.
    """

    id: str
    timestamp: str
    source: str
    data: Any
    compressed: bool = False
    checksum: Optional[str] = None
    kind: str = "full"
    version: str = DATA_VERSION
    event: Optional[str] = None
    description: Optional[str] = None
    size_bytes: int = 0

    @property
    def is_snapshot(self) -> bool:
        return self.kind == "snapshot"

    def summary(self) -> dict[str, Any]:
        """Metadata entry without the payload."""
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "source": self.source,
            "kind": self.kind,
            "event": self.event,
            "description": self.description,
            "size_bytes": self.size_bytes,
            "checksum": self.checksum,
            "compressed": self.compressed,
        }

    def to_dict(self) -> dict[str, Any]:
        """Convert backup to dictionary."""
        return {**self.summary(), "version": self.version, "data": self.data}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Backup":
        """Create backup from dictionary.

        Raises:
            KeyError: If id, timestamp or data is missing
        """
        return cls(
            id=data["id"],
            timestamp=data["timestamp"],
            source=data.get("source", "localStorage"),
            data=data["data"],
            compressed=bool(data.get("compressed", False)),
            checksum=data.get("checksum"),
            kind=data.get("kind", "full"),
            version=data.get("version", DATA_VERSION),
            event=data.get("event"),
            description=data.get("description"),
            size_bytes=int(data.get("size_bytes", 0)),
        )


class UserMigrationStatus:
    """Per-user migration state tracked by the hybrid manager."""

    def __init__(
        self,
        user_id: str,
        migrated: bool = False,
        needs_migration: bool = True,
        reason: Optional[str] = None,
        last_sync: Optional[str] = None,
        migrated_at: Optional[str] = None,
        remote_id: Optional[str] = None,
        errors: Optional[list[str]] = None,
    ) -> None:
        self.user_id = user_id
        self.migrated = migrated
        self.needs_migration = needs_migration
        self.reason = reason
        self.last_sync = last_sync
        self.migrated_at = migrated_at
        self.remote_id = remote_id
        self.errors = list(errors or [])

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "migrated": self.migrated,
            "needs_migration": self.needs_migration,
            "reason": self.reason,
            "last_sync": self.last_sync,
            "migrated_at": self.migrated_at,
            "remote_id": self.remote_id,
            "errors": self.errors,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "UserMigrationStatus":
        return cls(
            user_id=data["user_id"],
            migrated=bool(data.get("migrated", False)),
            needs_migration=bool(data.get("needs_migration", True)),
            reason=data.get("reason"),
            last_sync=data.get("last_sync"),
            migrated_at=data.get("migrated_at"),
            remote_id=data.get("remote_id"),
            errors=data.get("errors", []),
        )


class SyncOperation(StrEnum):
    """Remote operations that can be deferred in the sync queue."""

    REGISTER = "register"
    MIGRATE_USER = "migrate_user"
    SYNC_USER = "sync_user"
    CREATE_SESSION = "create_session"
    COMPLETE_SESSION = "complete_session"
    STOP_SESSION = "stop_session"
    SAVE_MEETING = "save_meeting"


class SyncQueueItem:
    """Deferred remote write with a bounded number of attempts."""

    def __init__(
        self,
        operation: SyncOperation,
        user_id: str,
        payload: Optional[dict[str, Any]] = None,
        max_attempts: int = 3,
        attempts: int = 0,
        timestamp: Optional[str] = None,
        item_id: Optional[str] = None,
        last_error: Optional[str] = None,
    ) -> None:
        """Initialize queue item.

        Args:
            operation: Operation to replay
            user_id: Local user id the operation acts for
            payload: Operation arguments
            max_attempts: Attempts before the item is permanently failed
            attempts: Attempts made so far
            timestamp: When the item was queued
            item_id: Queue item identifier
            last_error: Error of the most recent attempt
        """
        self.id = item_id or generate_id("sync")
        self.operation = SyncOperation(operation)
        self.user_id = user_id
        self.payload = payload or {}
        self.max_attempts = max_attempts
        self.attempts = attempts
        self.timestamp = timestamp or iso_now()
        self.last_error = last_error

    @property
    def exhausted(self) -> bool:
        """No attempts left; the item is permanently failed."""
        return self.attempts >= self.max_attempts

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "operation": str(self.operation),
            "user_id": self.user_id,
            "payload": self.payload,
            "timestamp": self.timestamp,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SyncQueueItem":
        return cls(
            operation=SyncOperation(data["operation"]),
            user_id=data["user_id"],
            payload=data.get("payload") or {},
            max_attempts=int(data.get("max_attempts", 3)),
            attempts=int(data.get("attempts", 0)),
            timestamp=data.get("timestamp"),
            item_id=data.get("id"),
            last_error=data.get("last_error"),
        )


@dataclass
class Conflict:
    """A key whose local value differs from the backup being restored."""

    key: str
    local_value: Any
    backup_value: Any
    resolution: Optional[str] = field(default=None)
