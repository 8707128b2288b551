"""Persisted engine state: migration status, run log and per-user status."""

from typing import Any, Optional

import structlog

from migrator.exceptions import StoreError
from migrator.local_store import (
    HYBRID_STATUS_KEY,
    MIGRATION_LOG_KEY,
    MIGRATION_STATUS_KEY,
    USER_MIGRATION_STATUS_KEY,
    LocalStore,
)
from migrator.models import MigrationStatus, UserMigrationStatus, iso_now
from utils.logging import get_logger


class MigrationStatusStore:
    """Owns the MigrationStatus record of the current run.

    The migration manager is its only writer; everyone else reads.
    """

    def __init__(
        self,
        store: LocalStore,
        key: str = MIGRATION_STATUS_KEY,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        """Initialize status store.

        Args:
            store: Local key-value store holding the record
            key: Store key of the record
            logger: Optional logger instance
        """
        self.store = store
        self.key = key
        self.logger = logger or get_logger("migration_status")

    def init(self, dry_run: bool = False) -> MigrationStatus:
        """Start a fresh run record, replacing any previous one."""
        status = MigrationStatus(dry_run=dry_run, start_time=iso_now())
        self.update(status)
        return status

    def read(self) -> MigrationStatus:
        """Load the current record, or a not-started status if there is none.

        Raises:
            StoreError: If the stored record is corrupt
        """
        data = self.store.get_json(self.key)
        if data is None:
            return MigrationStatus()
        if not isinstance(data, dict):
            raise StoreError("Corrupt migration status record", context={"key": self.key})
        try:
            return MigrationStatus.from_dict(data)
        except (KeyError, ValueError, TypeError) as e:
            raise StoreError(
                f"Invalid migration status record: {e}",
                context={"key": self.key},
            ) from e

    def update(self, status: MigrationStatus) -> None:
        """Persist the record."""
        self.store.set_json(self.key, status.to_dict())
        self.logger.debug(
            "Migration status saved",
            state=str(status.state),
            current_step=str(status.current_step) if status.current_step else None,
            progress=status.progress,
        )

    def clear(self) -> None:
        """Remove the record entirely."""
        self.store.remove(self.key)
        self.logger.info("Migration status cleared")


class MigrationLog:
    """Bounded textual log kept in the local store for post-mortem inspection."""

    def __init__(
        self,
        store: LocalStore,
        max_entries: int = 200,
        key: str = MIGRATION_LOG_KEY,
    ) -> None:
        self.store = store
        self.max_entries = max_entries
        self.key = key

    def append(self, message: str, level: str = "info", **context: Any) -> None:
        """Append an entry, dropping the oldest ones beyond the cap."""
        entries = self.entries()
        entries.append({"timestamp": iso_now(), "level": level, "message": message, **context})
        self.store.set_json(self.key, entries[-self.max_entries :])

    def entries(self) -> list[dict[str, Any]]:
        data = self.store.get_json(self.key, [])
        return data if isinstance(data, list) else []

    def clear(self) -> None:
        self.store.remove(self.key)


class UserStatusStore:
    """Per-user migration status map plus the hybrid-mode summary record."""

    def __init__(
        self,
        store: LocalStore,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        self.store = store
        self.logger = logger or get_logger("user_status")

    def _load(self) -> dict[str, Any]:
        data = self.store.get_json(USER_MIGRATION_STATUS_KEY, {})
        return data if isinstance(data, dict) else {}

    def get(self, user_id: str) -> UserMigrationStatus:
        """Status of one user; unknown users start unmigrated."""
        entry = self._load().get(user_id)
        if not isinstance(entry, dict):
            return UserMigrationStatus(user_id=user_id, reason="new_user")
        return UserMigrationStatus.from_dict({**entry, "user_id": user_id})

    def save(self, status: UserMigrationStatus) -> None:
        data = self._load()
        data[status.user_id] = status.to_dict()
        self.store.set_json(USER_MIGRATION_STATUS_KEY, data)

    def all(self) -> dict[str, UserMigrationStatus]:
        return {
            user_id: UserMigrationStatus.from_dict({**entry, "user_id": user_id})
            for user_id, entry in self._load().items()
            if isinstance(entry, dict)
        }

    def clear(self) -> None:
        self.store.remove(USER_MIGRATION_STATUS_KEY)

    def get_summary(self) -> dict[str, Any]:
        """Hybrid-mode summary (enabled flag, timestamps)."""
        data = self.store.get_json(HYBRID_STATUS_KEY, {})
        return data if isinstance(data, dict) else {}

    def set_summary(self, **fields: Any) -> dict[str, Any]:
        summary = {**self.get_summary(), **fields, "updated_at": iso_now()}
        self.store.set_json(HYBRID_STATUS_KEY, summary)
        return summary
